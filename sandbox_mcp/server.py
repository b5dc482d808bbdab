import json
from typing import Any, Dict, Optional
from sandbox_mcp.config import (
    DEFAULT_COMMAND_TIMEOUT, MAX_COMMAND_TIMEOUT, DEFAULT_FETCH_TIMEOUT,
    DEFAULT_SEARCH_TIMEOUT, DEFAULT_SEARCH_RESULTS, MAX_SEARCH_RESULTS
)
from sandbox_mcp.utils import (
    log_error, to_bool, clamp_int, clamp_float
)

def project_tool_result(tool_name: str, result: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(result, dict):
        return {"success": False, "error": "tool returned non-object result"}

    projected: Dict[str, Any] = {}
    if not result.get("success", False):
        projected["error"] = result.get("error", "unknown error")
        projected["success"] = False
        if "error_type" in result: projected["error_type"] = result["error_type"]
        if "tunnel" in result: projected["tunnel"] = result["tunnel"]
        return projected

    # Output first, ids/status after
    if tool_name in {"sandbox_run", "sandbox_run_secret"}:
        projected["output"] = result.get("output", "")
        projected["duration"] = result.get("duration")
    elif tool_name == "web_fetch":
        projected["output"] = result.get("content", "")
        projected["url"] = result.get("url")
    elif tool_name == "web_search":
        projected["output"] = result.get("content", "")
        projected["engine"] = result.get("engine")
        projected["attempts"] = result.get("attempts")
    elif tool_name == "sandbox_status":
        return result
    else:
        projected["message"] = result.get("message", "OK")
        for key in ("channel", "tunnel"):
            if key in result: projected[key] = result[key]
    return projected

def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def tools_list() -> Dict[str, Any]:
    timeout_param = {
        "type": "number",
        "description": "Optional. Seconds to wait for the completion marker. The remote command keeps running after a timeout.",
    }
    tools = [
        {
            "name": "sandbox_run",
            "description": (
                "Run a shell command in the ephemeral sandbox instance and return its output. "
                "The instance is launched on first use. Commands run one at a time, in order."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command text."},
                    "timeout": timeout_param,
                },
                "required": ["command"],
            },
        },
        {
            "name": "sandbox_run_secret",
            "description": (
                "Run a command that needs a stored secret. Put {secret} where the value goes, "
                "e.g. printf 'Authorization: Bearer %s\\n' {secret} | curl -H @- URL. "
                "The secret is sent over stdin after the sandbox is ready and never appears in the command line."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Command template containing {secret}."},
                    "secret_key": {"type": "string", "description": "Lookup key in the secret store."},
                    "timeout": timeout_param,
                },
                "required": ["command", "secret_key"],
            },
        },
        {
            "name": "web_fetch",
            "description": "Fetch a URL from inside the sandbox and return it as plain text (or raw with raw=true).",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "url": {"type": "string", "description": "http(s) URL."},
                    "raw": {"type": "boolean", "description": "Optional. Return the response body without HTML rendering."},
                    "timeout": timeout_param,
                },
                "required": ["url"],
            },
        },
        {
            "name": "web_search",
            "description": "Search the web from inside the sandbox. Engines: duckduckgo (default), brave (needs BRAVE_API_KEY).",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query."},
                    "engine": {"type": "string", "description": "Optional. duckduckgo or brave."},
                    "count": {"type": "number", "description": "Optional. Max results."},
                    "timeout": timeout_param,
                },
                "required": ["query"],
            },
        },
        {
            "name": "sandbox_status",
            "description": "Channel state, queue depth and tunnel state.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "sandbox_stop",
            "description": "Power off the sandbox instance. Queued commands are dropped.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "tunnel_start",
            "description": "Make sure the local relay to the proxy instance is running (adopts a verified orphan relay).",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "tunnel_stop",
            "description": "Stop the relay owned by this server.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}

def run_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    command = args.get("command", "")
    if not command or not str(command).strip():
        return {"success": False, "error": "command is required"}
    timeout = clamp_float(args.get("timeout"), DEFAULT_COMMAND_TIMEOUT, 0.5, MAX_COMMAND_TIMEOUT)
    return manager.run(str(command), timeout)

def run_secret_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    command = str(args.get("command", "") or "")
    secret_key = str(args.get("secret_key", "") or "").strip()
    if not command.strip() or not secret_key:
        return {"success": False, "error": "command and secret_key are required"}
    timeout = clamp_float(args.get("timeout"), DEFAULT_COMMAND_TIMEOUT, 0.5, MAX_COMMAND_TIMEOUT)
    return manager.run_with_secret(command, secret_key, timeout)

def fetch_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    timeout = clamp_float(args.get("timeout"), DEFAULT_FETCH_TIMEOUT, 5.0, MAX_COMMAND_TIMEOUT)
    return manager.web.fetch(str(args.get("url", "") or ""), timeout, raw=to_bool(args.get("raw", False)))

def search_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    timeout = clamp_float(args.get("timeout"), DEFAULT_SEARCH_TIMEOUT, 5.0, MAX_COMMAND_TIMEOUT)
    count = clamp_int(args.get("count"), DEFAULT_SEARCH_RESULTS, 1, MAX_SEARCH_RESULTS)
    engine = str(args.get("engine") or "duckduckgo")
    return manager.web.search(str(args.get("query", "") or ""), engine, count, timeout)

def handle_request(request: Dict[str, Any], manager) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "sandbox-mcp", "version": "0.3.0"},
            },
        }

    if method == "notifications/initialized": return None
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        try:
            if tool_name == "sandbox_run":
                result = run_dispatch(args, manager)
            elif tool_name == "sandbox_run_secret":
                result = run_secret_dispatch(args, manager)
            elif tool_name == "web_fetch":
                result = fetch_dispatch(args, manager)
            elif tool_name == "web_search":
                result = search_dispatch(args, manager)
            elif tool_name == "sandbox_status":
                result = manager.status()
            elif tool_name == "sandbox_stop":
                result = manager.stop()
            elif tool_name == "tunnel_start":
                result = manager.tunnel_start()
            elif tool_name == "tunnel_stop":
                result = manager.tunnel_stop()
            else:
                return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}

            projected = project_tool_result(tool_name=str(tool_name), result=result)
            return make_response(req_id, projected, is_error=not result.get("success", False))
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, {"error": str(exc)}, is_error=True)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
