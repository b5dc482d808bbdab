import sys
import io
import json
import argparse
from sandbox_mcp.config import config
from sandbox_mcp.utils import (
    log_error, resolve_runtime_paths, make_cache_dirs
)
from sandbox_mcp.server import handle_request

manager = None

# Force UTF-8 I/O; page text often carries characters cp1252 can't encode
_stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sandbox MCP server (one persistent shell on an ephemeral instance, web fetch/search, proxy tunnel)"
    )
    parser.add_argument("--transport", choices=["ssh", "exec"], help="Shell transport (overrides SANDBOX_TRANSPORT env)")
    parser.add_argument("--launch-cmd", help="Command that creates the instance (overrides SANDBOX_LAUNCH_CMD env)")
    parser.add_argument("--terminate-cmd", help="Command that destroys the instance (overrides SANDBOX_TERMINATE_CMD env)")
    parser.add_argument("--exec-cmd", help="Local command whose stdio is the instance shell, for --transport exec")
    parser.add_argument("--host", help="Instance SSH host (overrides SANDBOX_SSH_HOST env)")
    parser.add_argument("--user", help="Instance SSH user (overrides SANDBOX_SSH_USER env)")
    parser.add_argument("--port", type=int, help="Instance SSH port (overrides SANDBOX_SSH_PORT env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SANDBOX_SSH_KEY_PATH env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify the instance host key against known_hosts")
    parser.add_argument("--tunnel-port", type=int, help="Local port for the proxy relay (overrides TUNNEL_LOCAL_PORT env)")
    parser.add_argument("--tunnel-remote", help="HOST:PORT reached through the proxy (overrides TUNNEL_REMOTE_HOST/PORT env)")
    parser.add_argument("--tunnel-proxy", help="Proxy instance ssh destination (overrides TUNNEL_PROXY_HOST env)")
    parser.add_argument("--secret-cmd", help="Secret lookup command, {key} is replaced (overrides SANDBOX_SECRET_CMD env)")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def main() -> None:
    global manager
    from sandbox_mcp.manager import SandboxManager

    # Pre-load from environment
    config.load_from_env()

    parser = build_arg_parser()
    args = parser.parse_args()

    # Apply args over env vars
    if args.transport: config.TRANSPORT = args.transport
    if args.launch_cmd: config.LAUNCH_COMMAND = args.launch_cmd
    if args.terminate_cmd: config.TERMINATE_COMMAND = args.terminate_cmd
    if args.exec_cmd: config.EXEC_COMMAND = args.exec_cmd
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.port: config.SSH_PORT = args.port
    if args.key: config.SSH_KEY_PATH = args.key
    if args.verify_host: config.SSH_VERIFY_HOST_KEY = True
    if args.tunnel_port: config.TUNNEL_LOCAL_PORT = args.tunnel_port
    if args.tunnel_proxy: config.TUNNEL_PROXY_HOST = args.tunnel_proxy
    if args.secret_cmd: config.SECRET_COMMAND = args.secret_cmd
    if args.tunnel_remote:
        host, _, port = args.tunnel_remote.rpartition(":")
        if not host or not port.isdigit():
            parser.error("--tunnel-remote must look like HOST:PORT")
        config.TUNNEL_REMOTE_HOST = host
        config.TUNNEL_REMOTE_PORT = int(port)

    # Validation
    if config.TRANSPORT == "ssh" and not config.SSH_HOST:
        parser.error("SSH host is required for the ssh transport (via --host or SANDBOX_SSH_HOST env)")
    if config.TRANSPORT == "exec" and not config.EXEC_COMMAND:
        parser.error("--exec-cmd (or SANDBOX_EXEC_CMD env) is required for the exec transport")
    if config.TRANSPORT not in ("ssh", "exec"):
        parser.error(f"unknown transport: {config.TRANSPORT}")

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    manager = SandboxManager.from_config(config)

    log_error(
        f"sandbox MCP started. transport={config.TRANSPORT} "
        f"project_root={config.PROJECT_ROOT} cache={config.CACHE_DIRS['cache_root']} "
        f"tunnel={'on' if config.tunnel_configured() else 'off'}"
    )

    for line in _stdin:
        line = line.strip()
        if not line:
            continue
        try:
            response = handle_request(json.loads(line), manager)
            if response is not None:
                _write_response(response)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Attempt to send an error response back so the client doesn't hang
            req_id = None
            try:
                req_id = json.loads(line).get("id")
            except (ValueError, AttributeError):
                pass
            _write_response({
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })

    log_error("shutting down...")
    manager.close_all()

if __name__ == "__main__":
    main()
