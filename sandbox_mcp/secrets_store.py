import os
import shlex
import subprocess
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Protocol, Union

from sandbox_mcp.errors import SecretNotFound
from sandbox_mcp.utils import log_error

SecretBuffer = bytearray

def wipe(buffer: Optional[Union[bytearray, memoryview]]) -> None:
    """Overwrite a mutable secret buffer in place."""
    if buffer is None:
        return
    for i in range(len(buffer)):
        buffer[i] = 0

class SecretStore(Protocol):
    def lookup(self, key: str) -> Optional[SecretBuffer]:
        """Return a fresh copy of the secret, or None. Callers own and wipe the copy."""
        ...

class EnvSecretStore:
    """Secrets from environment variables, e.g. BRAVE_API_KEY."""

    def __init__(self, environ: Optional[Dict[str, str]] = None, prefix: str = ""):
        self.environ = environ if environ is not None else os.environ
        self.prefix = prefix

    def lookup(self, key: str) -> Optional[SecretBuffer]:
        value = self.environ.get(self.prefix + key)
        if not value:
            return None
        return bytearray(value.encode("utf-8"))

class CommandSecretStore:
    """Secrets printed by a local command such as `pass show {key}`."""

    def __init__(self, command_template: str, timeout: float = 15.0):
        self.command_template = command_template
        self.timeout = timeout

    def lookup(self, key: str) -> Optional[SecretBuffer]:
        argv = [part.replace("{key}", key) for part in shlex.split(self.command_template)]
        try:
            proc = subprocess.run(argv, capture_output=True, timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            log_error(f"secret command failed for '{key}': {exc.__class__.__name__}")
            return None
        if proc.returncode != 0 or not proc.stdout:
            return None
        first_line = proc.stdout.split(b"\n", 1)[0].rstrip(b"\r")
        return bytearray(first_line) if first_line else None

@contextmanager
def held_secret(store: SecretStore, key: str) -> Iterator[SecretBuffer]:
    secret = store.lookup(key)
    if secret is None:
        raise SecretNotFound(key)
    try:
        yield secret
    finally:
        wipe(secret)
