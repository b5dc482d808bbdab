from typing import Any, Dict, Optional

from sandbox_mcp.channel import CommandChannel
from sandbox_mcp.config import ServerConfig, MAX_OUTPUT_CHARS
from sandbox_mcp.errors import SecretNotFound, TunnelError
from sandbox_mcp.exec_queue import ExecutionQueue
from sandbox_mcp.pacing import PacedQuery
from sandbox_mcp.secrets_store import SecretStore, EnvSecretStore, CommandSecretStore, held_secret
from sandbox_mcp.transport import Provisioner, build_transport
from sandbox_mcp.tunnel import TunnelManager
from sandbox_mcp.web import WebTools, wrap_untrusted
from sandbox_mcp.utils import log_error, truncate

class SandboxManager:
    """Owns the channel, its queue, the search pacer and the tunnel for one server process."""

    def __init__(
        self,
        channel: CommandChannel,
        secrets: SecretStore,
        tunnel: Optional[TunnelManager] = None,
        search_min_spacing: float = 2.0,
        search_backoff: float = 3.0,
    ):
        self.channel = channel
        self.queue = ExecutionQueue(channel)
        self.secrets = secrets
        self.pacer = PacedQuery(self.queue, min_spacing=search_min_spacing, backoff=search_backoff)
        self.web = WebTools(self.queue, self.pacer, secrets)
        self.tunnel = tunnel

    @classmethod
    def from_config(cls, cfg: ServerConfig) -> "SandboxManager":
        channel = CommandChannel(
            transport_factory=lambda: build_transport(cfg),
            provisioner=Provisioner(cfg.LAUNCH_COMMAND, cfg.TERMINATE_COMMAND),
            name=cfg.PROJECT_TAG or "sandbox",
            shutdown_instruction=cfg.SHUTDOWN_INSTRUCTION,
            log_dir=cfg.CACHE_DIRS.get("sessions_dir"),
        )
        secrets: SecretStore
        if cfg.SECRET_COMMAND:
            secrets = CommandSecretStore(cfg.SECRET_COMMAND)
        else:
            secrets = EnvSecretStore()
        tunnel = None
        if cfg.tunnel_configured():
            tunnel = TunnelManager(
                local_port=cfg.TUNNEL_LOCAL_PORT,
                relay_argv=cfg.relay_argv(),
                forward_spec=f"{cfg.TUNNEL_LOCAL_PORT}:{cfg.TUNNEL_REMOTE_HOST}:{cfg.TUNNEL_REMOTE_PORT}",
                log_path=cfg.CACHE_DIRS.get("tunnel_log"),
            )
        return cls(
            channel,
            secrets,
            tunnel=tunnel,
            search_min_spacing=cfg.SEARCH_MIN_SPACING,
            search_backoff=cfg.SEARCH_RETRY_BACKOFF,
        )

    def run(self, command: str, timeout: float) -> Dict[str, Any]:
        result = self.queue.run_sync(command, timeout)
        data = result.to_dict()
        if result.success:
            data["output"] = wrap_untrusted(truncate(result.output, MAX_OUTPUT_CHARS), "sandbox")
        return data

    def run_with_secret(self, command_template: str, secret_key: str, timeout: float) -> Dict[str, Any]:
        if "{secret}" not in command_template:
            return {"success": False, "error": "command must contain the {secret} placeholder"}
        try:
            with held_secret(self.secrets, secret_key) as secret:
                result = self.queue.run_sync(command_template, timeout, secret=secret)
        except SecretNotFound as exc:
            return {"success": False, "error": str(exc), "error_type": "SecretNotFound"}
        data = result.to_dict()
        if result.success:
            data["output"] = wrap_untrusted(truncate(result.output, MAX_OUTPUT_CHARS), "sandbox")
        return data

    def status(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": True, "channel": self.channel.status(), "queue": self.queue.status()}
        if self.tunnel is not None:
            data["tunnel"] = self.tunnel.info()
        return data

    def stop(self) -> Dict[str, Any]:
        self.queue.shutdown()
        return {"success": True, "message": "sandbox stopped", "channel": self.channel.status()}

    def tunnel_start(self) -> Dict[str, Any]:
        if self.tunnel is None:
            return {"success": False, "error": "tunnel is not configured (TUNNEL_LOCAL_PORT/TUNNEL_REMOTE_PORT/TUNNEL_PROXY_HOST)"}
        try:
            info = self.tunnel.ensure_running()
        except TunnelError as exc:
            return {"success": False, "error": str(exc), "tunnel": self.tunnel.info()}
        return {"success": True, "message": f"tunnel {info['state']} on port {info['local_port']}", "tunnel": info}

    def tunnel_stop(self) -> Dict[str, Any]:
        if self.tunnel is None:
            return {"success": False, "error": "tunnel is not configured"}
        return {"success": True, "message": "tunnel stopped", "tunnel": self.tunnel.stop()}

    def close_all(self) -> None:
        try:
            self.queue.shutdown()
        except Exception as exc:
            log_error(f"channel shutdown failed: {exc}")
        # The relay outlives this process; the next server adopts it.
