import os
import re
import shlex
from typing import Optional, Dict, List

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
READ_POLL_INTERVAL = 0.05

LAUNCH_TIMEOUT = 180.0
READY_GRACE_PERIOD = 30.0
SHUTDOWN_GRACE_PERIOD = 5.0

DEFAULT_COMMAND_TIMEOUT = 30.0
MAX_COMMAND_TIMEOUT = 600.0
DEFAULT_FETCH_TIMEOUT = 45.0
DEFAULT_FETCH_MAX_TIME = 30
DEFAULT_SEARCH_TIMEOUT = 30.0
DEFAULT_SEARCH_RESULTS = 8
MAX_SEARCH_RESULTS = 20

MAX_BUFFER_CHARS = 2_000_000
MAX_OUTPUT_CHARS = 200_000

DEFAULT_SEARCH_MIN_SPACING = 2.0
DEFAULT_SEARCH_RETRY_BACKOFF = 3.0

TUNNEL_START_TIMEOUT = 10.0
TUNNEL_STOP_TIMEOUT = 5.0

MARKER_PREFIX = "SBXEND"
READY_PREFIX = "SBXRDY"
STATUS_PREFIX = "SBXHTTP"
SECRET_SHELL_VAR = "__sbx_in"

DEFAULT_SHUTDOWN_INSTRUCTION = "sudo poweroff || poweroff"
DEFAULT_RELAY_TEMPLATE = (
    "ssh -N -o ExitOnForwardFailure=yes -o ServerAliveInterval=30 "
    "-L {local_port}:{remote_host}:{remote_port} {proxy_host}"
)

UNTRUSTED_OPEN = "<untrusted-content source=\"{source}\">"
UNTRUSTED_CLOSE = "</untrusted-content>"

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.TRANSPORT: str = "ssh"
        self.LAUNCH_COMMAND: Optional[str] = None
        self.TERMINATE_COMMAND: Optional[str] = None
        self.EXEC_COMMAND: Optional[str] = None
        self.SHUTDOWN_INSTRUCTION: str = DEFAULT_SHUTDOWN_INSTRUCTION

        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = False  # ephemeral instances get a fresh host key on every launch

        self.TUNNEL_LOCAL_PORT: int = 0
        self.TUNNEL_REMOTE_HOST: str = "127.0.0.1"
        self.TUNNEL_REMOTE_PORT: int = 0
        self.TUNNEL_PROXY_HOST: Optional[str] = None
        self.TUNNEL_RELAY_TEMPLATE: str = DEFAULT_RELAY_TEMPLATE

        self.SEARCH_MIN_SPACING: float = DEFAULT_SEARCH_MIN_SPACING
        self.SEARCH_RETRY_BACKOFF: float = DEFAULT_SEARCH_RETRY_BACKOFF
        self.SECRET_COMMAND: Optional[str] = None

        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.TRANSPORT = os.environ.get("SANDBOX_TRANSPORT", self.TRANSPORT).strip().lower()
        self.LAUNCH_COMMAND = os.environ.get("SANDBOX_LAUNCH_CMD", self.LAUNCH_COMMAND)
        self.TERMINATE_COMMAND = os.environ.get("SANDBOX_TERMINATE_CMD", self.TERMINATE_COMMAND)
        self.EXEC_COMMAND = os.environ.get("SANDBOX_EXEC_CMD", self.EXEC_COMMAND)
        self.SHUTDOWN_INSTRUCTION = os.environ.get("SANDBOX_SHUTDOWN", self.SHUTDOWN_INSTRUCTION)

        self.SSH_HOST = os.environ.get("SANDBOX_SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SANDBOX_SSH_USER", self.SSH_USER)
        self.SSH_PORT = int(os.environ.get("SANDBOX_SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SANDBOX_SSH_KEY_PATH", self.SSH_KEY_PATH)

        verify_host_env = os.environ.get("SANDBOX_SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
             self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

        self.TUNNEL_LOCAL_PORT = int(os.environ.get("TUNNEL_LOCAL_PORT", self.TUNNEL_LOCAL_PORT))
        self.TUNNEL_REMOTE_HOST = os.environ.get("TUNNEL_REMOTE_HOST", self.TUNNEL_REMOTE_HOST)
        self.TUNNEL_REMOTE_PORT = int(os.environ.get("TUNNEL_REMOTE_PORT", self.TUNNEL_REMOTE_PORT))
        self.TUNNEL_PROXY_HOST = os.environ.get("TUNNEL_PROXY_HOST", self.TUNNEL_PROXY_HOST)
        self.TUNNEL_RELAY_TEMPLATE = os.environ.get("TUNNEL_RELAY_TEMPLATE", self.TUNNEL_RELAY_TEMPLATE)

        self.SEARCH_MIN_SPACING = float(os.environ.get("SEARCH_MIN_SPACING", self.SEARCH_MIN_SPACING))
        self.SEARCH_RETRY_BACKOFF = float(os.environ.get("SEARCH_RETRY_BACKOFF", self.SEARCH_RETRY_BACKOFF))
        self.SECRET_COMMAND = os.environ.get("SANDBOX_SECRET_CMD", self.SECRET_COMMAND)

    def relay_argv(self) -> List[str]:
        rendered = self.TUNNEL_RELAY_TEMPLATE.format(
            local_port=self.TUNNEL_LOCAL_PORT,
            remote_host=self.TUNNEL_REMOTE_HOST,
            remote_port=self.TUNNEL_REMOTE_PORT,
            proxy_host=self.TUNNEL_PROXY_HOST or "",
        )
        return shlex.split(rendered)

    def tunnel_configured(self) -> bool:
        return bool(self.TUNNEL_LOCAL_PORT and self.TUNNEL_REMOTE_PORT and self.TUNNEL_PROXY_HOST)

# Global instance
config = ServerConfig()
