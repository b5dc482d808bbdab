class SandboxError(Exception):
    """Base class for every failure surfaced to tool callers."""

class ChannelError(SandboxError):
    pass

class ChannelUnavailable(ChannelError):
    pass

class LaunchFailed(ChannelError):
    pass

class CommandTimeout(ChannelError):
    """The end marker was not seen in time. The remote command may still be running."""

    def __init__(self, timeout: float, command: str = ""):
        self.timeout = timeout
        self.command = command
        super().__init__(f"no completion marker after {timeout:.1f}s")

class SecretNotFound(SandboxError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"secret '{key}' not found in secret store")

class TunnelError(SandboxError):
    pass

class TunnelPortConflict(TunnelError):
    def __init__(self, port: int, pid=None, detail: str = ""):
        self.port = port
        self.pid = pid
        message = f"port {port} is held by an unverified listener"
        if pid is not None:
            message += f" (pid {pid})"
        if detail:
            message += f": {detail}"
        super().__init__(message)

class TunnelStartFailed(TunnelError):
    pass
