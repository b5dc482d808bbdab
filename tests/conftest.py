"""Shared test fixtures."""

import re
import queue
import shlex
import threading
import time
from typing import Callable, Dict, List, Optional

import pytest

from sandbox_mcp.channel import CommandChannel
from sandbox_mcp.errors import LaunchFailed
from sandbox_mcp.transport import Provisioner, ShellTransport

Handler = Callable[[List[str], Dict[str, str]], str]

_VAR = re.compile(r"\$(\w+)")
_ASSIGNMENT = re.compile(r"^[A-Za-z_]\w*=")


class FakeShell(ShellTransport):
    """In-process stand-in for an interactive bash on the instance.

    Understands just enough of what the channel sends: `; `-separated
    statements, `{ ...; }` groups spanning lines, the two-half printf used
    for markers, `read`, `echo`, `sleep`, `stty -echo`, `unset` and
    poweroff. Anything else is looked up in ``handlers``.
    """

    def __init__(self, echo: bool = False, mute: bool = False, fail_open: bool = False,
                 handlers: Optional[Dict[str, Handler]] = None, die_on: Optional[str] = None):
        self.echo = echo
        self.die_on = die_on
        self.mute = mute
        self.fail_open = fail_open
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.env: Dict[str, str] = {}
        self.sent: List[bytes] = []
        self.lines: List[str] = []
        self.closed = False

        self._inbox: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._outbox: "queue.Queue[bytes]" = queue.Queue()
        self._stop = threading.Event()
        self._group: Optional[List[str]] = None
        self._read_var: Optional[str] = None
        self._pending: List[str] = []

    def describe(self) -> str:
        return "fake-shell"

    def open(self, deadline: float) -> None:
        if self.fail_open:
            raise LaunchFailed("connection refused")
        threading.Thread(target=self._loop, daemon=True).start()

    def send(self, data) -> None:
        if self.closed or self._stop.is_set():
            raise OSError("fake shell is closed")
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self.sent.append(raw)
        self._inbox.put(raw)

    def recv(self, timeout: float) -> Optional[bytes]:
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True
        self._stop.set()
        self._inbox.put(None)

    def die(self) -> None:
        """Drop the connection as if the instance went away."""
        self._stop.set()
        self._outbox.put(b"")

    # ------------------------------------------------------------------

    def _emit(self, text: str) -> None:
        if text and not self.mute and not self._stop.is_set():
            self._outbox.put(text.encode("utf-8"))

    def _loop(self) -> None:
        partial = b""
        while not self._stop.is_set():
            chunk = self._inbox.get()
            if chunk is None:
                return
            partial += chunk
            while b"\n" in partial:
                line, partial = partial.split(b"\n", 1)
                self._line(line.decode("utf-8", errors="replace"))

    def _line(self, line: str) -> None:
        if self._read_var is not None:
            self.env[self._read_var] = line
            self._read_var = None
            statements, self._pending = self._pending, []
            self._run(statements)
            return

        self.lines.append(line)
        if self.die_on and self.die_on in line:
            self.die()
            return
        if self.echo:
            self._emit(line + "\n")

        if self._group is not None or line.startswith("{ "):
            if self._group is None:
                self._group = []
                line = line[2:]
            closing = line.endswith("; }")
            if closing:
                line = line[:-3]
            self._group.extend(line.split("; "))
            if closing:
                statements, self._group = self._group, None
                self._run(statements)
            return

        self._run(line.split("; ") if line else [])

    def _expand(self, arg: str) -> str:
        return _VAR.sub(lambda m: self.env.get(m.group(1), ""), arg)

    def _run(self, statements: List[str]) -> None:
        for index, statement in enumerate(statements):
            if self._stop.is_set():
                return
            try:
                argv = shlex.split(statement.strip())
            except ValueError:
                continue
            # Leading NAME=value words only set the environment of the command.
            while len(argv) > 1 and _ASSIGNMENT.match(argv[0]):
                argv = argv[1:]
            if not argv:
                continue
            name = argv[0]
            if name == "read":
                self._read_var = argv[-1]
                self._pending = statements[index + 1:]
                return
            if "poweroff" in argv or name == "exit":
                self.die()
                return
            if name == "printf" and len(argv) == 4 and argv[1] == "%s%s\\n":
                self._emit(argv[2] + argv[3] + "\n")
            elif name == "echo":
                self._emit(" ".join(self._expand(a) for a in argv[1:]) + "\n")
            elif name == "sleep":
                self._stop.wait(float(argv[1]))
            elif name == "stty" and "-echo" in argv:
                self.echo = False
            elif name == "unset":
                for var in argv[1:]:
                    self.env.pop(var, None)
            elif name in self.handlers:
                self._emit(self.handlers[name]([self._expand(a) for a in argv[1:]], self.env))


class RecordingProvisioner(Provisioner):
    def __init__(self, fail_launch: bool = False):
        super().__init__(None, None)
        self.fail_launch = fail_launch
        self.calls: List[str] = []

    def launch(self) -> None:
        self.calls.append("launch")
        if self.fail_launch:
            raise LaunchFailed("instance quota exceeded")

    def terminate(self) -> None:
        self.calls.append("terminate")


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def shells() -> List[FakeShell]:
    """Every FakeShell the channel factory handed out, in launch order."""
    return []


@pytest.fixture()
def make_channel(shells):
    created: List[CommandChannel] = []

    def _make(provisioner: Optional[Provisioner] = None, ready_grace_period: float = 2.0,
              log_dir: Optional[str] = None, **shell_options) -> CommandChannel:
        def factory() -> FakeShell:
            shell = FakeShell(**shell_options)
            shells.append(shell)
            return shell

        channel = CommandChannel(
            transport_factory=factory,
            provisioner=provisioner or RecordingProvisioner(),
            name="test",
            ready_grace_period=ready_grace_period,
            shutdown_grace_period=0.5,
            log_dir=log_dir,
        )
        created.append(channel)
        return channel

    yield _make
    for channel in created:
        channel.shutdown()


@pytest.fixture()
def channel(make_channel) -> CommandChannel:
    return make_channel()
