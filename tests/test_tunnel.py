import subprocess

import psutil
import pytest

from sandbox_mcp import tunnel as tunnel_module
from sandbox_mcp.errors import TunnelPortConflict, TunnelStartFailed
from sandbox_mcp.tunnel import TunnelManager, TunnelState

RELAY = ["ssh", "-N", "-L", "15432:db.internal:5432", "proxy.example"]
FORWARD = "15432:db.internal:5432"


class FakeProcess:
    def __init__(self, pid, cmdline, running=True):
        self.pid = pid
        self._cmdline = cmdline
        self.running = running
        self.terminated = False

    def cmdline(self):
        return self._cmdline

    def is_running(self):
        return self.running

    def status(self):
        return psutil.STATUS_SLEEPING

    def terminate(self):
        self.terminated = True
        self.running = False

    def wait(self, timeout=None):
        return 0

    def kill(self):
        self.running = False


class FakePopen:
    def __init__(self, argv, exit_code=None, stderr_text=b"", **kwargs):
        self.argv = argv
        self.kwargs = kwargs
        self.pid = 4242
        self.exit_code = exit_code
        target = kwargs.get("stderr")
        if stderr_text and hasattr(target, "write"):
            target.write(stderr_text)
        self.terminated = False

    def poll(self):
        return self.exit_code

    def terminate(self):
        self.terminated = True
        self.exit_code = -15

    def wait(self, timeout=None):
        return self.exit_code

    def kill(self):
        self.exit_code = -9


@pytest.fixture()
def listener(monkeypatch):
    """Pretend something listens on the port; the test picks its command line."""
    state = {"process": None}
    monkeypatch.setattr(tunnel_module, "port_is_listening", lambda port, **kw: True)
    monkeypatch.setattr(tunnel_module, "listener_pid", lambda port: state["process"].pid if state["process"] else None)
    monkeypatch.setattr(tunnel_module.psutil, "Process", lambda pid: state["process"])
    return state


def test_verified_orphan_is_adopted(listener):
    listener["process"] = FakeProcess(777, ["/usr/bin/ssh", "-N", "-o", "ServerAliveInterval=30", "-L", FORWARD, "proxy.example"])
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    info = manager.ensure_running()
    assert info["state"] == "running"
    assert info["adopted"] is True
    assert info["pid"] == 777


def test_unverified_listener_is_refused(listener):
    listener["process"] = FakeProcess(888, ["python3", "-m", "http.server", "15432"])
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    with pytest.raises(TunnelPortConflict) as excinfo:
        manager.ensure_running()
    assert excinfo.value.pid == 888
    assert manager.state == TunnelState.ORPHAN_DETECTED_UNVERIFIED
    info = manager.info()
    assert info["state"] != "running"
    assert "http.server" in info["warning"]


def test_ssh_with_a_different_forward_is_refused(listener):
    listener["process"] = FakeProcess(889, ["ssh", "-N", "-L", "15432:other.host:80", "proxy.example"])
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    with pytest.raises(TunnelPortConflict):
        manager.ensure_running()


def test_listener_with_unknown_owner_is_refused(listener):
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    with pytest.raises(TunnelPortConflict, match="owner unknown"):
        manager.ensure_running()
    assert manager.state == TunnelState.ORPHAN_DETECTED_UNVERIFIED


def test_adopted_relay_is_stopped(listener):
    process = FakeProcess(777, ["ssh", "-N", "-L", FORWARD, "proxy.example"])
    listener["process"] = process
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    manager.ensure_running()
    info = manager.stop()
    assert process.terminated
    assert info["state"] == "stopped"
    assert manager.stop()["state"] == "stopped"


def test_spawns_relay_when_port_is_free(monkeypatch):
    answers = iter([False, False, True])
    spawned = []
    monkeypatch.setattr(tunnel_module, "port_is_listening", lambda port, **kw: next(answers, True))

    def _popen(argv, **kwargs):
        proc = FakePopen(argv, **kwargs)
        spawned.append(proc)
        return proc

    monkeypatch.setattr(tunnel_module.subprocess, "Popen", _popen)
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD, start_timeout=2)
    info = manager.ensure_running()
    assert info["state"] == "running"
    assert info["pid"] == 4242
    assert spawned[0].argv == RELAY
    # Already running: no second spawn.
    manager.ensure_running()
    assert len(spawned) == 1

    manager.stop()
    assert spawned[0].terminated


def test_relay_that_exits_reports_its_log_tail(monkeypatch, tmp_path):
    log_path = tmp_path / "tunnel-relay.log"
    log_path.write_bytes(b"earlier run: connection reset\n")
    monkeypatch.setattr(tunnel_module, "port_is_listening", lambda port, **kw: False)
    monkeypatch.setattr(
        tunnel_module.subprocess, "Popen",
        lambda argv, **kwargs: FakePopen(argv, exit_code=255, stderr_text=b"bind: Address already in use\n", **kwargs),
    )
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD, start_timeout=1, log_path=str(log_path))
    with pytest.raises(TunnelStartFailed, match="Address already in use") as excinfo:
        manager.ensure_running()
    assert "earlier run" not in str(excinfo.value)
    assert manager.state == TunnelState.STOPPED


def test_relay_stderr_is_never_a_pipe(monkeypatch, tmp_path):
    spawned = []
    answers = iter([False, True])
    monkeypatch.setattr(tunnel_module, "port_is_listening", lambda port, **kw: next(answers, True))

    def _popen(argv, **kwargs):
        proc = FakePopen(argv, **kwargs)
        spawned.append(proc)
        return proc

    monkeypatch.setattr(tunnel_module.subprocess, "Popen", _popen)
    TunnelManager(15432, RELAY, forward_spec=FORWARD, start_timeout=1).ensure_running()
    assert spawned[0].kwargs["stderr"] is subprocess.DEVNULL

    log_path = tmp_path / "tunnel-relay.log"
    answers = iter([False, True])
    TunnelManager(15432, RELAY, forward_spec=FORWARD, start_timeout=1, log_path=str(log_path)).ensure_running()
    stderr = spawned[1].kwargs["stderr"]
    assert stderr is not subprocess.PIPE
    assert stderr.name == str(log_path)
    assert stderr.closed


def test_dead_relay_is_reported_stopped(monkeypatch):
    procs = []
    monkeypatch.setattr(tunnel_module, "port_is_listening", lambda port, **kw: bool(procs))

    def _popen(argv, **kwargs):
        proc = FakePopen(argv)
        procs.append(proc)
        return proc

    monkeypatch.setattr(tunnel_module.subprocess, "Popen", _popen)
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD, start_timeout=1)
    manager.ensure_running()
    procs[0].exit_code = 1
    assert manager.info()["state"] == "stopped"


def test_empty_relay_command_is_rejected():
    with pytest.raises(ValueError):
        TunnelManager(15432, [])


def test_foreign_ssh_with_overlapping_forward_text_is_refused(listener):
    relay = ["ssh", "-N", "-L", "8080:127.0.0.1:80", "proxy.example"]
    manager = TunnelManager(8080, relay, forward_spec="8080:127.0.0.1:80")
    foreign = ["/usr/bin/ssh", "-N", "-D", "8080", "-L", "18080:127.0.0.1:80", "elsewhere"]
    assert not manager._identity_matches(foreign)

    listener["process"] = FakeProcess(901, foreign)
    with pytest.raises(TunnelPortConflict):
        manager.ensure_running()
    assert manager.state == TunnelState.ORPHAN_DETECTED_UNVERIFIED


def test_same_forward_to_another_host_is_refused(listener):
    listener["process"] = FakeProcess(902, ["ssh", "-N", "-L", FORWARD, "other-proxy.example"])
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    with pytest.raises(TunnelPortConflict):
        manager.ensure_running()


def test_joined_forward_option_is_recognised():
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    assert manager._identity_matches(["ssh", "-N", "-L" + FORWARD, "proxy.example"])
    assert not manager._identity_matches(["ssh", "-N", "-L", FORWARD, "-L", "9000:x:1", "proxy.example"])


class ProtectedProcess(FakeProcess):
    def terminate(self):
        raise psutil.AccessDenied(self.pid)


def test_stop_of_protected_adopted_relay_still_resets(listener):
    listener["process"] = ProtectedProcess(778, ["ssh", "-N", "-L", FORWARD, "proxy.example"])
    manager = TunnelManager(15432, RELAY, forward_spec=FORWARD)
    manager.ensure_running()
    info = manager.stop()
    assert info["state"] == "stopped"
    assert info["pid"] is None
    assert "access denied" in info["warning"]
