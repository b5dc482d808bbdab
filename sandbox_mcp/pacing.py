import time
import shlex
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Set, Tuple

from sandbox_mcp.channel import CommandResult
from sandbox_mcp.config import STATUS_PREFIX
from sandbox_mcp.errors import SandboxError
from sandbox_mcp.exec_queue import ExecutionQueue
from sandbox_mcp.markers import new_marker, extract_between
from sandbox_mcp.secrets_store import wipe
from sandbox_mcp.utils import log_error

# build(status_token) -> (command text, secret copy or None)
AttemptBuilder = Callable[[str], Tuple[str, Optional[bytearray]]]

def status_write_out(token: str) -> str:
    """curl option that appends the HTTP status between two copies of token."""
    return "-w " + shlex.quote("\\n" + token + "%{http_code}" + token + "\\n")

def split_status(text: str, token: str) -> Tuple[str, Optional[int]]:
    raw_status = extract_between(text, token, token)
    if raw_status is None:
        return text, None
    body = text[:text.find(token)].rstrip("\r\n")
    try:
        return body, int(raw_status.strip())
    except ValueError:
        return body, None

@dataclass
class QueryResult:
    target: str
    body: str = ""
    status: Optional[int] = None
    attempts: int = 0
    error: Optional[SandboxError] = None

    @property
    def success(self) -> bool:
        return self.error is None and not attempt_failed(self.body, self.status)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "target": self.target,
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.error is not None:
            data["error"] = str(self.error)
        elif not self.success:
            data["error"] = "empty response" if not self.body.strip() else f"HTTP status {self.status}"
        return data

def attempt_failed(body: str, status: Optional[int]) -> bool:
    if not body.strip():
        return True
    return status is not None and not (200 <= status < 300)

@dataclass
class _Request:
    target: str
    build: AttemptBuilder
    timeout: float
    on_done: Callable[[QueryResult], None]
    attempts: int = 0

class PacedQuery:
    """Spaces out queries per rate-limited target and retries a failed attempt once.

    Queries to one target run strictly one after another; different targets
    only share the execution queue.
    """

    MAX_ATTEMPTS = 2

    def __init__(
        self,
        queue: ExecutionQueue,
        min_spacing: float,
        backoff: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.min_spacing = min_spacing
        self.backoff = backoff
        self.clock = clock
        self.lock = threading.Lock()
        self.last_attempt: Dict[str, float] = {}
        self.pending: Dict[str, Deque[_Request]] = {}
        self.busy: Set[str] = set()

    def query(self, target: str, build: AttemptBuilder, timeout: float,
              on_done: Callable[[QueryResult], None]) -> None:
        request = _Request(target=target, build=build, timeout=timeout, on_done=on_done)
        with self.lock:
            self.pending.setdefault(target, deque()).append(request)
        self._start_next(target)

    def query_sync(self, target: str, build: AttemptBuilder, timeout: float) -> QueryResult:
        done = threading.Event()
        box: Dict[str, QueryResult] = {}

        def _on_done(result: QueryResult) -> None:
            box["result"] = result
            done.set()

        self.query(target, build, timeout, _on_done)
        while not done.wait(0.1):
            pass
        return box["result"]

    def _start_next(self, target: str) -> None:
        with self.lock:
            queue = self.pending.get(target)
            if target in self.busy or not queue:
                return
            request = queue.popleft()
            self.busy.add(target)
        self._schedule(request, 0.0)

    def _schedule(self, request: _Request, min_delay: float) -> None:
        with self.lock:
            last = self.last_attempt.get(request.target)
            spacing_left = 0.0 if last is None else self.min_spacing - (self.clock() - last)
            delay = max(min_delay, spacing_left, 0.0)
        if delay <= 0:
            self._attempt(request)
            return
        timer = threading.Timer(delay, self._attempt, args=(request,))
        timer.daemon = True
        timer.start()

    def _attempt(self, request: _Request) -> None:
        with self.lock:
            request.attempts += 1
        token = new_marker(STATUS_PREFIX)

        def _on_start() -> None:
            # Spacing counts from when the command reaches the channel, not from queueing.
            with self.lock:
                self.last_attempt[request.target] = self.clock()

        def _on_done(result: CommandResult) -> None:
            self._attempt_done(request, token, result)

        secret: Optional[bytearray] = None
        try:
            command, secret = request.build(token)
            if secret is None:
                self.queue.submit(command, request.timeout, _on_done, on_start=_on_start)
            else:
                self.queue.submit_secret(command, secret, request.timeout, _on_done, on_start=_on_start)
        except Exception as exc:
            wipe(secret)
            error = exc if isinstance(exc, SandboxError) else SandboxError(
                f"query setup failed: {exc.__class__.__name__}: {exc}"
            )
            log_error(f"{request.target}: {error}")
            self._finish(request, QueryResult(target=request.target, attempts=request.attempts, error=error))

    def _attempt_done(self, request: _Request, token: str, result: CommandResult) -> None:
        if not result.success:
            self._finish(request, QueryResult(target=request.target, attempts=request.attempts, error=result.error))
            return
        body, status = split_status(result.output, token)
        if attempt_failed(body, status) and request.attempts < self.MAX_ATTEMPTS:
            log_error(
                f"{request.target}: attempt {request.attempts} "
                f"{'returned nothing' if not body.strip() else f'got HTTP {status}'}, "
                f"retrying in {self.backoff:.1f}s"
            )
            self._schedule(request, self.backoff)
            return
        self._finish(request, QueryResult(target=request.target, body=body, status=status, attempts=request.attempts))

    def _finish(self, request: _Request, result: QueryResult) -> None:
        try:
            request.on_done(result)
        except Exception as exc:
            log_error(f"query continuation failed ({request.target}): {exc}")
        finally:
            with self.lock:
                self.busy.discard(request.target)
            self._start_next(request.target)
