import os
import time
import socket
import threading
import subprocess
from enum import Enum
from typing import Any, Dict, List, Optional
import psutil

from sandbox_mcp.config import TUNNEL_START_TIMEOUT, TUNNEL_STOP_TIMEOUT
from sandbox_mcp.errors import TunnelPortConflict, TunnelStartFailed
from sandbox_mcp.utils import log_error, iso_now

class TunnelState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ORPHAN_DETECTED_VERIFIED = "orphan_detected_verified"
    ORPHAN_DETECTED_UNVERIFIED = "orphan_detected_unverified"

def port_is_listening(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False

def listener_pid(port: int) -> Optional[int]:
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        return None
    for conn in connections:
        if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port and conn.pid:
            return conn.pid
    return None

def forward_values(argv: List[str]) -> List[str]:
    """Values of every -L option, written either as `-L spec` or `-Lspec`."""
    values = []
    for index, part in enumerate(argv[1:], start=1):
        if part == "-L" and index + 1 < len(argv):
            values.append(argv[index + 1])
        elif part.startswith("-L") and len(part) > 2:
            values.append(part[2:])
    return values

class TunnelManager:
    """Local port relayed to a fixed endpoint behind the long-lived proxy instance.

    A listener this process did not start is adopted only after its command
    line proves it is the same relay; anything else is a port conflict.
    """

    def __init__(self, local_port: int, relay_argv: List[str], forward_spec: Optional[str] = None,
                 start_timeout: float = TUNNEL_START_TIMEOUT, log_path: Optional[str] = None):
        if not relay_argv:
            raise ValueError("relay command is empty")
        self.local_port = local_port
        self.relay_argv = relay_argv
        self.forward_spec = forward_spec
        self.start_timeout = start_timeout
        self.log_path = log_path

        self.lock = threading.Lock()
        self.state = TunnelState.STOPPED
        self.proc: Optional[subprocess.Popen] = None
        self.adopted: Optional[psutil.Process] = None
        self.pid: Optional[int] = None
        self.started_at: Optional[str] = None
        self.last_warning = ""

    def _identity_matches(self, cmdline: List[str]) -> bool:
        if not cmdline:
            return False
        program = os.path.basename(self.relay_argv[0])
        if os.path.basename(cmdline[0]) != program:
            return False
        if not self.forward_spec:
            return cmdline[1:] == self.relay_argv[1:]
        # Exactly our one forward, to our proxy host.
        return forward_values(cmdline) == [self.forward_spec] and cmdline[-1] == self.relay_argv[-1]

    def _owned_alive(self) -> bool:
        if self.proc is not None:
            return self.proc.poll() is None
        if self.adopted is not None:
            try:
                return self.adopted.is_running() and self.adopted.status() != psutil.STATUS_ZOMBIE
            except psutil.NoSuchProcess:
                return False
        return False

    def ensure_running(self) -> Dict[str, Any]:
        with self.lock:
            if self._owned_alive():
                return self.info_locked()
            self.proc = None
            self.adopted = None
            self.pid = None

            if port_is_listening(self.local_port):
                self._adopt_or_refuse()
            else:
                self._spawn()
            return self.info_locked()

    def _adopt_or_refuse(self) -> None:
        pid = listener_pid(self.local_port)
        cmdline: List[str] = []
        if pid is not None:
            try:
                candidate = psutil.Process(pid)
                cmdline = candidate.cmdline()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                candidate = None
            if candidate is not None and self._identity_matches(cmdline):
                self.state = TunnelState.ORPHAN_DETECTED_VERIFIED
                self.adopted = candidate
                self.pid = pid
                self.started_at = iso_now()
                self.state = TunnelState.RUNNING
                log_error(f"tunnel: adopted existing relay pid={pid} on port {self.local_port}")
                return

        self.state = TunnelState.ORPHAN_DETECTED_UNVERIFIED
        detail = "owner unknown" if pid is None else f"owner cmdline {' '.join(cmdline)[:200]!r}"
        self.last_warning = f"port {self.local_port} is in use by a process that is not this relay ({detail})"
        log_error(f"tunnel: {self.last_warning}")
        raise TunnelPortConflict(self.local_port, pid, detail)

    def _spawn(self) -> None:
        self.state = TunnelState.STARTING
        log_offset = 0
        log_file = None
        try:
            if self.log_path:
                log_file = open(self.log_path, "ab")
                log_offset = log_file.tell()
            proc = subprocess.Popen(
                self.relay_argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log_file if log_file is not None else subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            self.state = TunnelState.STOPPED
            raise TunnelStartFailed(f"relay could not start: {exc}")
        finally:
            # The relay holds its own descriptor.
            if log_file is not None:
                log_file.close()

        deadline = time.monotonic() + self.start_timeout
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                break
            if port_is_listening(self.local_port):
                self.proc = proc
                self.pid = proc.pid
                self.started_at = iso_now()
                self.state = TunnelState.RUNNING
                log_error(f"tunnel: relay pid={proc.pid} listening on {self.local_port}")
                return
            time.sleep(0.1)

        stderr_tail = ""
        if proc.poll() is None:
            _terminate_popen(proc)
        elif self.log_path:
            stderr_tail = self._log_tail(log_offset)
        self.state = TunnelState.STOPPED
        raise TunnelStartFailed(
            f"relay did not listen on port {self.local_port} within {self.start_timeout:.0f}s"
            + (f": {stderr_tail}" if stderr_tail else "")
        )

    def _log_tail(self, offset: int) -> str:
        try:
            with open(self.log_path, "rb") as handle:
                handle.seek(offset)
                data = handle.read()
        except OSError as exc:
            log_error(f"tunnel: relay log unreadable ({self.log_path}): {exc}")
            return ""
        return data.decode("utf-8", errors="replace").strip()[-300:]

    def stop(self) -> Dict[str, Any]:
        with self.lock:
            if self.proc is not None:
                _terminate_popen(self.proc)
            elif self.adopted is not None:
                try:
                    self.adopted.terminate()
                    self.adopted.wait(timeout=TUNNEL_STOP_TIMEOUT)
                except psutil.TimeoutExpired:
                    self.adopted.kill()
                except psutil.NoSuchProcess:
                    pass
                except psutil.AccessDenied as exc:
                    log_error(f"tunnel: not allowed to stop relay pid={self.pid}: {exc}")
                    self.last_warning = f"relay pid={self.pid} could not be stopped (access denied)"
            self.proc = None
            self.adopted = None
            self.pid = None
            self.started_at = None
            self.state = TunnelState.STOPPED
            return self.info_locked()

    def info_locked(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "local_port": self.local_port,
            "pid": self.pid,
            "started_at": self.started_at,
            "adopted": self.adopted is not None,
            "warning": self.last_warning,
        }

    def info(self) -> Dict[str, Any]:
        with self.lock:
            if self.state == TunnelState.RUNNING and not self._owned_alive():
                self.state = TunnelState.STOPPED
                self.proc = None
                self.adopted = None
                self.pid = None
            return self.info_locked()

def _terminate_popen(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=TUNNEL_STOP_TIMEOUT)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait(timeout=TUNNEL_STOP_TIMEOUT)
