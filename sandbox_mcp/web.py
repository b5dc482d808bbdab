import re
import json
import html
import shlex
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse, parse_qs

from sandbox_mcp.config import (
    DEFAULT_FETCH_MAX_TIME, DEFAULT_SEARCH_RESULTS, MAX_OUTPUT_CHARS,
    UNTRUSTED_OPEN, UNTRUSTED_CLOSE,
)
from sandbox_mcp.errors import SecretNotFound
from sandbox_mcp.exec_queue import ExecutionQueue
from sandbox_mcp.pacing import PacedQuery, QueryResult, status_write_out
from sandbox_mcp.secrets_store import SecretStore
from sandbox_mcp.utils import truncate

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"

@dataclass
class SearchResult:
    url: str
    title: str
    excerpt: str

def wrap_untrusted(text: str, source: str) -> str:
    # Content must not be able to close the wrapper early.
    body = (text or "").replace(UNTRUSTED_CLOSE, "&lt;/untrusted-content&gt;")
    opening = UNTRUSTED_OPEN.format(source=html.escape(source, quote=True))
    return f"{opening}\n{body}\n{UNTRUSTED_CLOSE}"

def validate_url(url: str) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"only http(s) URLs can be fetched: {url!r}")
    if any(ch in url for ch in "\r\n\x00"):
        raise ValueError("URL contains control characters")
    return url

def fetch_command(url: str, raw: bool = False, max_time: int = DEFAULT_FETCH_MAX_TIME) -> str:
    curl = (
        f"curl -sSL --compressed --max-time {int(max_time)} "
        f"-A {shlex.quote(USER_AGENT)} {shlex.quote(url)}"
    )
    if raw:
        return curl
    return f"{curl} | w3m -dump -T text/html -cols 120 -O UTF-8"

# ========= Result parsers =========
_TAGS = re.compile(r"<[^>]+>")
_DDG_LINK = re.compile(
    r'<a[^>]+class="result__a"[^>]+href="(?P<href>[^"]+)"[^>]*>(?P<title>.*?)</a>',
    re.S,
)
_DDG_SNIPPET = re.compile(r'<a[^>]+class="result__snippet"[^>]*>(?P<snippet>.*?)</a>', re.S)

def _plain(fragment: str) -> str:
    return " ".join(html.unescape(_TAGS.sub("", fragment or "")).split())

def _ddg_target(href: str) -> str:
    href = html.unescape(href)
    if href.startswith("//"):
        href = "https:" + href
    parsed = urlparse(href)
    if parsed.netloc.endswith("duckduckgo.com") and parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
    return href

def parse_duckduckgo(body: str, limit: int = DEFAULT_SEARCH_RESULTS) -> List[SearchResult]:
    links = list(_DDG_LINK.finditer(body or ""))
    snippets = [m.group("snippet") for m in _DDG_SNIPPET.finditer(body or "")]
    results: List[SearchResult] = []
    for index, match in enumerate(links):
        url = _ddg_target(match.group("href"))
        if not url.startswith("http") or "duckduckgo.com/y.js" in url:
            continue
        excerpt = _plain(snippets[index]) if index < len(snippets) else ""
        results.append(SearchResult(url=url, title=_plain(match.group("title")), excerpt=excerpt))
        if len(results) >= limit:
            break
    return results

def parse_brave(body: str, limit: int = DEFAULT_SEARCH_RESULTS) -> List[SearchResult]:
    try:
        payload = json.loads(body or "{}")
    except ValueError:
        return []
    rows = (payload.get("web") or {}).get("results") or []
    results: List[SearchResult] = []
    for row in rows[:limit]:
        url = row.get("url")
        if not url:
            continue
        results.append(SearchResult(
            url=url,
            title=_plain(row.get("title", "")),
            excerpt=_plain(row.get("description", "")),
        ))
    return results

# ========= Engines =========
@dataclass
class SearchEngine:
    name: str
    endpoint: str
    parse: Callable[[str, int], List[SearchResult]]
    secret_key: Optional[str] = None
    secret_header: Optional[str] = None

    def command(self, query: str, count: int, status_token: str) -> str:
        parts = [
            "curl -sS --compressed --max-time", str(DEFAULT_FETCH_MAX_TIME),
            "-A", shlex.quote(USER_AGENT),
            status_write_out(status_token),
        ]
        if self.secret_header:
            parts += ["-H @-", "-H", shlex.quote("Accept: application/json")]
        parts += ["-G", "--data-urlencode", shlex.quote(f"q={query}")]
        if self.name == "brave":
            parts += ["--data-urlencode", f"count={int(count)}"]
        parts.append(shlex.quote(self.endpoint))
        curl = " ".join(parts)
        if self.secret_header:
            # printf is a builtin, so the header value never shows up in a process listing.
            return f"printf '{self.secret_header}: %s\\n' {{secret}} | {curl}"
        return curl

ENGINES: Dict[str, SearchEngine] = {
    "duckduckgo": SearchEngine(
        name="duckduckgo",
        endpoint="https://html.duckduckgo.com/html/",
        parse=parse_duckduckgo,
    ),
    "brave": SearchEngine(
        name="brave",
        endpoint="https://api.search.brave.com/res/v1/web/search",
        parse=parse_brave,
        secret_key="BRAVE_API_KEY",
        secret_header="X-Subscription-Token",
    ),
}

def render_results(results: List[SearchResult]) -> str:
    lines = []
    for index, result in enumerate(results, 1):
        lines.append(f"{index}. {result.title}\n   {result.url}")
        if result.excerpt:
            lines.append(f"   {result.excerpt}")
    return "\n".join(lines)

class WebTools:
    """fetch/search on top of the execution queue. Every returned text is wrapped as untrusted."""

    def __init__(self, queue: ExecutionQueue, pacer: PacedQuery, secrets: SecretStore):
        self.queue = queue
        self.pacer = pacer
        self.secrets = secrets

    def fetch(self, url: str, timeout: float, raw: bool = False) -> Dict[str, Any]:
        try:
            url = validate_url(url)
        except ValueError as exc:
            return {"success": False, "error": str(exc)}
        max_time = max(5, int(timeout) - 5)
        result = self.queue.run_sync(fetch_command(url, raw=raw, max_time=max_time), timeout)
        if not result.success:
            return {"success": False, "error": f"fetch failed: {result.error}", "url": url}
        text = truncate(result.output, MAX_OUTPUT_CHARS)
        return {
            "success": True,
            "url": url,
            "chars": len(result.output),
            "content": wrap_untrusted(text, url),
        }

    def _builder(self, engine: SearchEngine, query: str, count: int) -> Callable[[str], Tuple[str, Optional[bytearray]]]:
        def build(status_token: str) -> Tuple[str, Optional[bytearray]]:
            command = engine.command(query, count, status_token)
            if engine.secret_key is None:
                return command, None
            secret = self.secrets.lookup(engine.secret_key)
            if secret is None:
                raise SecretNotFound(engine.secret_key)
            return command, secret
        return build

    def search(self, query: str, engine_name: str, count: int, timeout: float) -> Dict[str, Any]:
        query = (query or "").strip()
        if not query:
            return {"success": False, "error": "query is required"}
        engine = ENGINES.get((engine_name or "").strip().lower())
        if engine is None:
            return {"success": False, "error": f"unknown engine '{engine_name}' (known: {', '.join(sorted(ENGINES))})"}

        outcome: QueryResult = self.pacer.query_sync(engine.name, self._builder(engine, query, count), timeout)
        data = outcome.to_dict()
        data["engine"] = engine.name
        if not outcome.success:
            return data
        results = engine.parse(outcome.body, count)
        data["results"] = [asdict(r) for r in results]
        data["content"] = wrap_untrusted(render_results(results), f"{engine.name}:{query}")
        return data
