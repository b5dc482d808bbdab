import os
import time
import codecs
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from sandbox_mcp.config import (
    MAX_BUFFER_CHARS, READY_GRACE_PERIOD, SHUTDOWN_GRACE_PERIOD, DEFAULT_SHUTDOWN_INSTRUCTION,
    MARKER_PREFIX, READY_PREFIX, SECRET_SHELL_VAR, READ_POLL_INTERVAL, LAUNCH_TIMEOUT,
)
from sandbox_mcp.errors import ChannelError, ChannelUnavailable, LaunchFailed, CommandTimeout
from sandbox_mcp.markers import new_marker, emit_instruction, output_before, drop_through
from sandbox_mcp.secrets_store import wipe
from sandbox_mcp.transport import ShellTransport, Provisioner
from sandbox_mcp.utils import log_error, iso_now, json_line, safe_name, clean_output

SETUP_INSTRUCTION = (
    "export PS1='' PS2='' PROMPT_COMMAND=''; "
    "bind 'set enable-bracketed-paste off' 2>/dev/null; "
    "stty -echo 2>/dev/null"
)

class ChannelState(Enum):
    CLOSED = "closed"
    LAUNCHING = "launching"
    READY = "ready"
    EXECUTING = "executing"
    SHUTTING_DOWN = "shutting_down"

class WaitKind(Enum):
    READY_MARKER = "ready_marker"
    MARKER = "marker"

@dataclass
class CommandResult:
    success: bool
    output: str = ""
    error: Optional[ChannelError] = None
    duration: float = 0.0

    @classmethod
    def failure(cls, error: ChannelError) -> "CommandResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "duration": round(self.duration, 3)}
        if self.success:
            data["output"] = self.output
        else:
            data["error"] = str(self.error) if self.error else "command failed"
            data["error_type"] = type(self.error).__name__ if self.error else ""
        return data

OnDone = Callable[[CommandResult], None]

@dataclass
class Waiter:
    kind: WaitKind
    marker: str
    label: str
    timeout: float
    on_done: OnDone
    started_at: float = field(default_factory=time.monotonic)
    ready_marker: Optional[str] = None
    secret: Optional[bytearray] = None
    timer: Optional[threading.Timer] = None

    def discard_secret(self) -> None:
        wipe(self.secret)
        self.secret = None

class CommandChannel:
    """One persistent interactive shell on the sandbox instance.

    All state changes happen under ``self.lock``. The reader thread is the
    only consumer of the stream; it appends to ``self.buffer`` and checks the
    current waiter inside the same critical section, so installing or
    retiring a waiter can never race with incoming output. Continuations run
    outside the lock.
    """

    def __init__(
        self,
        transport_factory: Callable[[], ShellTransport],
        provisioner: Optional[Provisioner] = None,
        name: str = "sandbox",
        shutdown_instruction: str = DEFAULT_SHUTDOWN_INSTRUCTION,
        ready_grace_period: float = READY_GRACE_PERIOD,
        shutdown_grace_period: float = SHUTDOWN_GRACE_PERIOD,
        connect_timeout: float = LAUNCH_TIMEOUT,
        log_dir: Optional[str] = None,
    ):
        self.name = name
        self.transport_factory = transport_factory
        self.provisioner = provisioner or Provisioner(None, None)
        self.shutdown_instruction = shutdown_instruction
        self.ready_grace_period = ready_grace_period
        self.shutdown_grace_period = shutdown_grace_period
        self.connect_timeout = connect_timeout

        self.lock = threading.Lock()
        self.state = ChannelState.CLOSED
        self.transport: Optional[ShellTransport] = None
        self.buffer = ""
        self.waiter: Optional[Waiter] = None
        self.stale_markers: Deque[str] = deque(maxlen=16)
        self.close_listeners: List[Callable[[ChannelError], None]] = []

        self.launched_at: Optional[datetime] = None
        self.commands_run = 0
        self.timeouts = 0
        self.last_error = ""
        self._stream_ended = threading.Event()
        self._launch_settled = threading.Event()
        self._launch_settled.set()
        self._reader: Optional[threading.Thread] = None

        self.log_path: Optional[str] = None
        if log_dir:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_path = os.path.join(log_dir, f"{safe_name(name)}__{stamp}.log")

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {"ts": iso_now(), "dir": direction, "channel": self.name}
        data.update(payload)
        json_line(self.log_path, data)

    def add_close_listener(self, listener: Callable[[ChannelError], None]) -> None:
        self.close_listeners.append(listener)

    def _notify_closed(self, error: ChannelError) -> None:
        for listener in list(self.close_listeners):
            try:
                listener(error)
            except Exception as exc:
                log_error(f"close listener failed: {exc}")

    def is_ready(self) -> bool:
        with self.lock:
            return self.state == ChannelState.READY

    # ---------------------------------------------------------------- lifecycle

    def launch(self) -> None:
        with self.lock:
            if self.state in (ChannelState.READY, ChannelState.EXECUTING):
                return
            if self.state != ChannelState.CLOSED:
                raise ChannelUnavailable(f"channel is {self.state.value}")
            self.state = ChannelState.LAUNCHING
            self._launch_settled.clear()
        self._log("SYS", {"event": "launch_start"})
        try:
            self._bring_up()
        finally:
            self._launch_settled.set()

    def _bring_up(self) -> None:
        transport: Optional[ShellTransport] = None
        provisioned = False
        try:
            self.provisioner.launch()
            provisioned = True
            transport = self.transport_factory()
            transport.open(time.monotonic() + self.connect_timeout)
        except Exception as exc:
            reason = str(exc) if isinstance(exc, LaunchFailed) else f"{exc.__class__.__name__}: {exc}"
            # Once the instance exists it has to be released, even if the shell never opened.
            self._launch_failed(transport, reason, terminate=provisioned)
            if isinstance(exc, LaunchFailed):
                raise
            raise LaunchFailed(reason) from exc

        with self.lock:
            if self.state != ChannelState.LAUNCHING:
                aborted = True
                self.state = ChannelState.CLOSED
                self.last_error = "shutdown requested during launch"
            else:
                aborted = False
                self.transport = transport
                self.buffer = ""
                self._stream_ended.clear()
        if aborted:
            transport.close()
            self.provisioner.terminate()
            raise LaunchFailed("shutdown requested during launch")

        self._reader = threading.Thread(target=self._reader_loop, args=(transport,), daemon=True)
        self._reader.start()

        ready_event = threading.Event()
        outcome: Dict[str, CommandResult] = {}

        def _on_ready(result: CommandResult) -> None:
            outcome["result"] = result
            ready_event.set()

        ready_marker = new_marker(READY_PREFIX)
        waiter = Waiter(
            kind=WaitKind.MARKER,
            marker=ready_marker,
            label="<readiness>",
            timeout=self.ready_grace_period,
            on_done=_on_ready,
        )
        self._start_wait(waiter, f"{SETUP_INSTRUCTION}; {emit_instruction(ready_marker)}\n",
                         expected=ChannelState.LAUNCHING)
        ready_event.wait(self.ready_grace_period + 1.0)
        result = outcome.get("result")

        with self.lock:
            if result is not None and result.success and self.state == ChannelState.LAUNCHING:
                self.state = ChannelState.READY
                self.launched_at = datetime.now()
                self.last_error = ""
                ok = True
            else:
                ok = False
        if ok:
            self._log("SYS", {"event": "ready", "transport": transport.describe()})
            log_error(f"channel '{self.name}' ready via {transport.describe()}")
            return

        reason = str(result.error) if result is not None and result.error else "no readiness token"
        self._launch_failed(transport, f"instance never became ready within {self.ready_grace_period:.0f}s ({reason})")
        raise LaunchFailed(self.last_error)

    def _launch_failed(self, transport: Optional[ShellTransport], reason: str, terminate: bool = True) -> None:
        with self.lock:
            # shutdown() leaves an instance whose shell was never published to the launching thread.
            owned = self.state == ChannelState.LAUNCHING or (
                self.state == ChannelState.SHUTTING_DOWN and self.transport is None
            )
            if owned:
                self.state = ChannelState.CLOSED
                self.transport = None
                if self.waiter is not None and self.waiter.timer is not None:
                    self.waiter.timer.cancel()
                self.waiter = None
            self.last_error = reason
        if owned:
            if transport is not None:
                transport.close()
            if terminate:
                self.provisioner.terminate()
        self._log("SYS", {"event": "launch_failed", "reason": reason})
        log_error(f"channel '{self.name}' launch failed: {reason}")

    def shutdown(self) -> None:
        with self.lock:
            if self.state in (ChannelState.CLOSED, ChannelState.SHUTTING_DOWN):
                return
            mid_launch = self.state == ChannelState.LAUNCHING and self.transport is None
            self.state = ChannelState.SHUTTING_DOWN
            transport = self.transport
            waiter = self._take_waiter()
        self._log("SYS", {"event": "shutdown_start"})

        error = ChannelUnavailable("channel is shutting down")
        if waiter is not None:
            self._finish(waiter, CommandResult.failure(error))
        self._notify_closed(error)

        if mid_launch:
            # The launching thread terminates the instance once provisioning returns.
            if not self._launch_settled.wait(self.provisioner.timeout + self.connect_timeout):
                log_error(f"channel '{self.name}' launch did not settle during shutdown")
            self._log("SYS", {"event": "shutdown_done"})
            return

        if transport is not None:
            try:
                transport.send(self.shutdown_instruction + "\n")
            except OSError as exc:
                self._log("SYS", {"event": "shutdown_send_failed", "error": str(exc)})
            if not self._stream_ended.wait(self.shutdown_grace_period):
                self._log("SYS", {"event": "shutdown_grace_expired"})
            transport.close()
        self.provisioner.terminate()

        with self.lock:
            self.state = ChannelState.CLOSED
            self.transport = None
            self.buffer = ""
        self._log("SYS", {"event": "shutdown_done"})

    # ------------------------------------------------------------------ reader

    def _reader_loop(self, transport: ShellTransport) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        reason = "stream closed"
        try:
            while True:
                with self.lock:
                    if self.transport is not transport:
                        return
                chunk = transport.recv(READ_POLL_INTERVAL * 4)
                if chunk is None:
                    continue
                if chunk == b"":
                    break
                self._feed(decoder.decode(chunk))
        except Exception as exc:
            reason = f"stream error: {exc}"
        self._stream_end(transport, reason)

    def _feed(self, text: str) -> None:
        if not text:
            return
        finished: Optional[Waiter] = None
        result: Optional[CommandResult] = None
        with self.lock:
            self.buffer += text
            for stale in list(self.stale_markers):
                if stale in self.buffer:
                    self.buffer = drop_through(self.buffer, stale)
                    self.stale_markers.remove(stale)
            overflow = len(self.buffer) - MAX_BUFFER_CHARS
            if overflow > 0:
                self.buffer = self.buffer[overflow:]

            waiter = self.waiter
            if waiter is None:
                return

            if waiter.kind == WaitKind.READY_MARKER:
                if waiter.ready_marker is None or waiter.ready_marker not in self.buffer:
                    return
                error = self._transmit_secret(waiter)
                if error is not None:
                    finished = self._take_waiter()
                    result = CommandResult.failure(error)
            else:
                before = output_before(self.buffer, waiter.marker)
                if before is None:
                    return
                self.buffer = drop_through(self.buffer, waiter.marker)
                finished = self._take_waiter()
                result = CommandResult(
                    success=True,
                    output=clean_output(before),
                    duration=time.monotonic() - waiter.started_at,
                )
        if finished is not None and result is not None:
            self._finish(finished, result)

    def _transmit_secret(self, waiter: Waiter) -> Optional[ChannelError]:
        # Called with self.lock held, right after the remote side printed the ready marker.
        self.buffer = ""
        payload = bytearray()
        try:
            if waiter.secret is None:
                return ChannelUnavailable("secret payload already discarded")
            if self.transport is None:
                return ChannelUnavailable("stream closed before secret transmission")
            payload += waiter.secret
            payload += b"\n"
            self.transport.send(payload)
        except OSError as exc:
            return ChannelUnavailable(f"secret transmission failed: {exc}")
        finally:
            wipe(payload)
            waiter.discard_secret()
        self._log("IN", {"event": "secret_sent", "label": waiter.label})
        waiter.kind = WaitKind.MARKER
        return None

    def _stream_end(self, transport: ShellTransport, reason: str) -> None:
        with self.lock:
            if self.transport is not transport:
                return
            self._stream_ended.set()
            if self.state == ChannelState.SHUTTING_DOWN:
                return
            # A launch in progress keeps the state and releases the instance itself.
            if self.state != ChannelState.LAUNCHING:
                self.state = ChannelState.CLOSED
            self.transport = None
            self.buffer = ""
            self.last_error = reason
            waiter = self._take_waiter()
        self._log("SYS", {"event": "stream_closed", "reason": reason})
        log_error(f"channel '{self.name}' closed: {reason}")
        transport.close()
        error = ChannelUnavailable(reason)
        if waiter is not None:
            self._finish(waiter, CommandResult.failure(error))
        self._notify_closed(error)

    # --------------------------------------------------------------- waiting

    def _take_waiter(self) -> Optional[Waiter]:
        # Caller holds self.lock.
        waiter = self.waiter
        self.waiter = None
        if waiter is not None and self.state == ChannelState.EXECUTING:
            self.state = ChannelState.READY
        return waiter

    def _finish(self, waiter: Waiter, result: CommandResult) -> None:
        if waiter.timer is not None:
            waiter.timer.cancel()
        waiter.discard_secret()
        if result.success:
            self._log("OUT", {"event": "command_done", "label": waiter.label,
                              "duration": round(result.duration, 3), "chars": len(result.output)})
        else:
            self._log("OUT", {"event": "command_failed", "label": waiter.label, "error": str(result.error)})
        try:
            waiter.on_done(result)
        except Exception as exc:
            log_error(f"command continuation failed ({waiter.label}): {exc}")

    def _on_timeout(self, waiter: Waiter) -> None:
        with self.lock:
            if self.waiter is not waiter:
                return
            self._take_waiter()
            self.stale_markers.append(waiter.marker)
            self.buffer = ""
            self.timeouts += 1
            transport = self.transport
            blocked_on_read = waiter.kind == WaitKind.READY_MARKER
        self._log("SYS", {"event": "timeout", "label": waiter.label, "timeout": waiter.timeout})
        if blocked_on_read and transport is not None:
            # The remote `read` would otherwise swallow the next instruction as its secret line.
            try:
                transport.send("\n")
            except OSError as exc:
                self._log("SYS", {"event": "unblock_failed", "error": str(exc)})
        self._finish(waiter, CommandResult.failure(CommandTimeout(waiter.timeout, waiter.label)))

    def _start_wait(self, waiter: Waiter, instruction: str, expected: ChannelState = ChannelState.READY) -> None:
        with self.lock:
            if self.state != expected or self.transport is None or self.waiter is not None:
                state = self.state
                busy = self.waiter is not None
                transport = None
            else:
                transport = self.transport
                # Whatever is left belongs to an earlier command.
                self.buffer = ""
                self.waiter = waiter
                if expected == ChannelState.READY:
                    self.state = ChannelState.EXECUTING
                    self.commands_run += 1
                waiter.started_at = time.monotonic()
                waiter.timer = threading.Timer(waiter.timeout, self._on_timeout, args=(waiter,))
                waiter.timer.daemon = True
        if transport is None:
            reason = "channel is busy" if busy else f"channel is {state.value}"
            self._finish(waiter, CommandResult.failure(ChannelUnavailable(reason)))
            return

        self._log("IN", {"event": "command_sent", "label": waiter.label, "kind": waiter.kind.value})
        try:
            transport.send(instruction)
        except OSError as exc:
            self._stream_end(transport, f"send failed: {exc}")
            return
        if waiter.timer is not None:
            waiter.timer.start()

    def run_async(self, command: str, timeout: float, on_done: OnDone) -> None:
        marker = new_marker(MARKER_PREFIX)
        waiter = Waiter(kind=WaitKind.MARKER, marker=marker, label=command, timeout=timeout, on_done=on_done)
        self._start_wait(waiter, f"{command}\n{emit_instruction(marker)}\n")

    def run_secret_async(self, command_template: str, secret: bytearray, timeout: float, on_done: OnDone) -> None:
        """Run a command that needs a secret without putting the secret in its text.

        ``{secret}`` in the template becomes a reference to a shell variable
        that is filled by ``read`` from the channel's input once the remote
        side signals it is waiting for it.
        """
        if "{secret}" not in command_template:
            wipe(secret)
            raise ValueError("command template must contain {secret}")
        marker = new_marker(MARKER_PREFIX)
        ready_marker = new_marker(READY_PREFIX)
        command = command_template.replace("{secret}", f'"${SECRET_SHELL_VAR}"')
        # One brace group: bash parses all of it before `read` runs, so the
        # next line on the input is the secret and not part of the instruction.
        instruction = (
            "{ __sbx_tty=$(stty -g 2>/dev/null); stty -echo 2>/dev/null; "
            f"{emit_instruction(ready_marker)}; IFS= read -r {SECRET_SHELL_VAR}\n"
            f"{command}\n"
            f'unset {SECRET_SHELL_VAR}; stty "$__sbx_tty" 2>/dev/null; unset __sbx_tty; '
            f"{emit_instruction(marker)}; }}\n"
        )
        waiter = Waiter(
            kind=WaitKind.READY_MARKER,
            marker=marker,
            ready_marker=ready_marker,
            label=command_template,
            timeout=timeout,
            on_done=on_done,
            secret=secret,
        )
        self._start_wait(waiter, instruction)

    def _wait_sync(self, start: Callable[[OnDone], None]) -> str:
        done = threading.Event()
        box: Dict[str, CommandResult] = {}

        def _on_done(result: CommandResult) -> None:
            box["result"] = result
            done.set()

        start(_on_done)
        # Short waits so a Ctrl-C in the host process is still delivered.
        while not done.wait(0.1):
            pass
        result = box["result"]
        if not result.success:
            raise result.error or ChannelError("command failed")
        return result.output

    def run(self, command: str, timeout: float) -> str:
        return self._wait_sync(lambda cb: self.run_async(command, timeout, cb))

    def run_secret(self, command_template: str, secret: bytearray, timeout: float) -> str:
        return self._wait_sync(lambda cb: self.run_secret_async(command_template, secret, timeout, cb))

    def status(self) -> Dict[str, Any]:
        with self.lock:
            transport = self.transport
            return {
                "name": self.name,
                "state": self.state.value,
                "transport": transport.describe() if transport else None,
                "launched_at": self.launched_at.isoformat() if self.launched_at else None,
                "busy": self.waiter is not None,
                "commands_run": self.commands_run,
                "timeouts": self.timeouts,
                "last_error": self.last_error,
                "log_path": self.log_path,
            }
