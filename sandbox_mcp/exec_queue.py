import time
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

from sandbox_mcp.channel import ChannelState, CommandChannel, CommandResult, OnDone
from sandbox_mcp.errors import ChannelError, ChannelUnavailable
from sandbox_mcp.secrets_store import wipe
from sandbox_mcp.utils import log_error

@dataclass
class QueueEntry:
    command: str
    timeout: float
    on_done: OnDone
    secret: Optional[bytearray] = None
    on_start: Optional[Callable[[], None]] = None
    submitted_at: float = field(default_factory=time.monotonic)

    @property
    def label(self) -> str:
        return self.command

class ExecutionQueue:
    """Single-flight FIFO in front of one CommandChannel.

    The next entry starts only after the previous entry's continuation has
    returned, so continuations fire in submission order and never overlap.
    """

    def __init__(self, channel: CommandChannel, auto_launch: bool = True):
        self.channel = channel
        self.auto_launch = auto_launch
        self.lock = threading.Lock()
        self.pending: Deque[QueueEntry] = deque()
        self.active: Optional[QueueEntry] = None
        self.launching = False
        self.completed = 0
        channel.add_close_listener(self._on_channel_closed)

    def submit(self, command: str, timeout: float, on_done: OnDone,
               on_start: Optional[Callable[[], None]] = None) -> None:
        """Queue a command; ``on_start`` runs right before it is handed to the channel."""
        self._enqueue(QueueEntry(command=command, timeout=timeout, on_done=on_done, on_start=on_start))

    def submit_secret(self, command_template: str, secret: bytearray, timeout: float, on_done: OnDone,
                      on_start: Optional[Callable[[], None]] = None) -> None:
        if "{secret}" not in command_template:
            wipe(secret)
            raise ValueError("command template must contain {secret}")
        self._enqueue(QueueEntry(command=command_template, timeout=timeout, on_done=on_done,
                                 secret=secret, on_start=on_start))

    def run_sync(self, command: str, timeout: float, secret: Optional[bytearray] = None) -> CommandResult:
        done = threading.Event()
        box: Dict[str, CommandResult] = {}

        def _on_done(result: CommandResult) -> None:
            box["result"] = result
            done.set()

        if secret is None:
            self.submit(command, timeout, _on_done)
        else:
            self.submit_secret(command, secret, timeout, _on_done)
        while not done.wait(0.1):
            pass
        return box["result"]

    def _enqueue(self, entry: QueueEntry) -> None:
        start_launch = False
        with self.lock:
            state = self.channel.state
            if state == ChannelState.SHUTTING_DOWN:
                rejected = True
            else:
                rejected = False
                self.pending.append(entry)
                if state == ChannelState.CLOSED and self.auto_launch and not self.launching:
                    self.launching = True
                    start_launch = True
        if rejected:
            self._fail(entry, ChannelUnavailable("channel is shutting down"))
            return
        if start_launch:
            threading.Thread(target=self._launch, daemon=True).start()
        else:
            self._pump()

    def _launch(self) -> None:
        error: Optional[ChannelError] = None
        try:
            self.channel.launch()
        except ChannelError as exc:
            error = exc
        with self.lock:
            self.launching = False
        if error is not None:
            self.drain(error)
        else:
            self._pump()

    def _pump(self) -> None:
        with self.lock:
            if self.active is not None or self.launching or not self.pending:
                return
            if not self.channel.is_ready():
                return
            entry = self.pending.popleft()
            self.active = entry

        def _on_done(result: CommandResult, entry: QueueEntry = entry) -> None:
            self._entry_done(entry, result)

        if entry.on_start is not None:
            try:
                entry.on_start()
            except Exception as exc:
                log_error(f"start hook failed ({entry.label}): {exc}")
        if entry.secret is None:
            self.channel.run_async(entry.command, entry.timeout, _on_done)
        else:
            secret, entry.secret = entry.secret, None
            self.channel.run_secret_async(entry.command, secret, entry.timeout, _on_done)

    def _entry_done(self, entry: QueueEntry, result: CommandResult) -> None:
        try:
            entry.on_done(result)
        except Exception as exc:
            log_error(f"queued continuation failed ({entry.label}): {exc}")
        finally:
            with self.lock:
                if self.active is entry:
                    self.active = None
                self.completed += 1
            self._pump()

    def _fail(self, entry: QueueEntry, error: ChannelError) -> None:
        wipe(entry.secret)
        entry.secret = None
        try:
            entry.on_done(CommandResult.failure(error))
        except Exception as exc:
            log_error(f"queued continuation failed ({entry.label}): {exc}")

    def drain(self, error: ChannelError) -> int:
        with self.lock:
            drained = list(self.pending)
            self.pending.clear()
        for entry in drained:
            self._fail(entry, error)
        return len(drained)

    def _on_channel_closed(self, error: ChannelError) -> None:
        count = self.drain(error)
        if count:
            log_error(f"dropped {count} queued command(s): {error}")

    def shutdown(self) -> None:
        self.channel.shutdown()
        self.drain(ChannelUnavailable("channel is shutting down"))

    def status(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "pending": len(self.pending),
                "active": self.active.label if self.active else None,
                "launching": self.launching,
                "completed": self.completed,
            }
