import os
import time
import shlex
import queue
import threading
import subprocess
from typing import Optional, Union, List
import paramiko

from sandbox_mcp.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, READ_POLL_INTERVAL, LAUNCH_TIMEOUT,
    ServerConfig,
)
from sandbox_mcp.errors import LaunchFailed
from sandbox_mcp.utils import log_error

Payload = Union[str, bytes, bytearray]

def _as_sendable(data: Payload):
    if isinstance(data, str):
        return data.encode("utf-8")
    return data

class Provisioner:
    """Issues the external launch/terminate calls for the ephemeral instance."""

    def __init__(self, launch_command: Optional[str], terminate_command: Optional[str],
                 timeout: float = LAUNCH_TIMEOUT):
        self.launch_command = launch_command
        self.terminate_command = terminate_command
        self.timeout = timeout

    def launch(self) -> None:
        if not self.launch_command:
            return
        try:
            proc = subprocess.run(
                shlex.split(self.launch_command),
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise LaunchFailed(f"launch command did not finish within {self.timeout:.0f}s")
        except OSError as exc:
            raise LaunchFailed(f"launch command could not start: {exc}")
        if proc.returncode != 0:
            tail = proc.stderr.decode("utf-8", errors="replace").strip()[-300:]
            raise LaunchFailed(f"launch command exited with {proc.returncode}: {tail}")

    def terminate(self) -> None:
        if not self.terminate_command:
            return
        try:
            subprocess.run(shlex.split(self.terminate_command), capture_output=True, timeout=60, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            log_error(f"terminate command failed: {exc}")

class ShellTransport:
    """A raw interactive shell: text in, an append-only stream of bytes out."""

    def open(self, deadline: float) -> None:
        raise NotImplementedError

    def send(self, data: Payload) -> None:
        raise NotImplementedError

    def recv(self, timeout: float) -> Optional[bytes]:
        """Next chunk, None when nothing arrived in time, b"" once the stream has ended."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__

class SSHTransport(ShellTransport):
    def __init__(self, host: str, user: Optional[str], port: int = 22,
                 key_path: Optional[str] = None, verify_host_key: bool = False):
        self.host = host
        self.user = user
        self.port = port
        self.key_path = key_path
        self.verify_host_key = verify_host_key
        self.client: Optional[paramiko.SSHClient] = None
        self.channel: Optional[paramiko.Channel] = None

    def describe(self) -> str:
        return f"ssh://{self.user or ''}@{self.host}:{self.port}"

    def open(self, deadline: float) -> None:
        last_error: Optional[Exception] = None
        # sshd on a fresh instance needs a moment before it accepts connections
        while True:
            try:
                self._connect()
                return
            except (paramiko.SSHException, OSError) as exc:
                last_error = exc
                self.close()
            if time.monotonic() + 1.0 >= deadline:
                break
            time.sleep(1.0)
        raise LaunchFailed(f"ssh connect to {self.host}:{self.port} failed: {last_error}")

    def _connect(self) -> None:
        self.client = paramiko.SSHClient()
        if self.verify_host_key:
            self.client.load_system_host_keys()
        else:
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": self.host,
            "port": self.port,
            "username": self.user,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self.key_path:
            connect_kwargs["key_filename"] = self.key_path
        self.client.connect(**connect_kwargs)

        transport = self.client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)

        self.channel = self.client.invoke_shell(width=512, height=200)
        self.channel.settimeout(1.0)

    def send(self, data: Payload) -> None:
        if not self.channel or self.channel.closed:
            raise OSError("ssh channel is closed")
        self.channel.sendall(_as_sendable(data))

    def recv(self, timeout: float) -> Optional[bytes]:
        channel = self.channel
        if channel is None:
            return b""
        waited = 0.0
        while True:
            if channel.recv_ready():
                return channel.recv(BUFFER_SIZE)
            if channel.closed or channel.exit_status_ready() or channel.eof_received:
                return b""
            if waited >= timeout:
                return None
            time.sleep(READ_POLL_INTERVAL)
            waited += READ_POLL_INTERVAL

    def close(self) -> None:
        try:
            if self.channel:
                self.channel.close()
        except Exception as exc:
            log_error(f"ssh channel close: {exc}")
        self.channel = None

        try:
            if self.client:
                self.client.close()
        except Exception as exc:
            log_error(f"ssh client close: {exc}")
        self.client = None

class ExecTransport(ShellTransport):
    """A local process whose stdio is the remote shell, e.g. `incus exec box -- bash`."""

    def __init__(self, argv: List[str]):
        self.argv = argv
        self.proc: Optional[subprocess.Popen] = None
        self._chunks: "queue.Queue[bytes]" = queue.Queue()
        self._pump: Optional[threading.Thread] = None

    def describe(self) -> str:
        return "exec:" + " ".join(self.argv)

    def open(self, deadline: float) -> None:
        try:
            self.proc = subprocess.Popen(
                self.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=0,
            )
        except OSError as exc:
            raise LaunchFailed(f"exec transport could not start {self.argv[0]!r}: {exc}")
        self._pump = threading.Thread(target=self._pump_loop, daemon=True)
        self._pump.start()

    def _pump_loop(self) -> None:
        proc = self.proc
        if proc is None or proc.stdout is None:
            self._chunks.put(b"")
            return
        fd = proc.stdout.fileno()
        try:
            while True:
                chunk = os.read(fd, BUFFER_SIZE)
                self._chunks.put(chunk)
                if not chunk:
                    return
        except OSError:
            self._chunks.put(b"")

    def send(self, data: Payload) -> None:
        if not self.proc or not self.proc.stdin or self.proc.poll() is not None:
            raise OSError("exec transport is not running")
        self.proc.stdin.write(_as_sendable(data))
        self.proc.stdin.flush()

    def recv(self, timeout: float) -> Optional[bytes]:
        try:
            return self._chunks.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        proc = self.proc
        self.proc = None
        if proc is None:
            return
        try:
            if proc.stdin:
                proc.stdin.close()
        except OSError:
            pass
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=3)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=3)

def build_transport(cfg: ServerConfig) -> ShellTransport:
    if cfg.TRANSPORT == "exec":
        if not cfg.EXEC_COMMAND:
            raise ValueError("exec transport needs SANDBOX_EXEC_CMD")
        return ExecTransport(shlex.split(cfg.EXEC_COMMAND))
    if cfg.TRANSPORT == "ssh":
        if not cfg.SSH_HOST:
            raise ValueError("ssh transport needs SANDBOX_SSH_HOST")
        return SSHTransport(
            host=cfg.SSH_HOST,
            user=cfg.SSH_USER,
            port=cfg.SSH_PORT,
            key_path=cfg.SSH_KEY_PATH,
            verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
        )
    raise ValueError(f"unknown transport: {cfg.TRANSPORT}")
