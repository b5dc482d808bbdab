import re
import threading
import time
from typing import Callable, List, Optional

import pytest

from sandbox_mcp.channel import CommandResult
from sandbox_mcp.errors import ChannelUnavailable, SecretNotFound
from sandbox_mcp.exec_queue import ExecutionQueue
from sandbox_mcp.pacing import PacedQuery, QueryResult, attempt_failed, split_status, status_write_out

from conftest import wait_for

_TOKEN = re.compile(r"\\n(SBXHTTP[0-9a-f]+)%\{http_code\}")


class ScriptedQueue:
    """Answers submitted commands from a list of (body, status) replies, curl style."""

    def __init__(self, replies: List[tuple]):
        self.replies = list(replies)
        self.submitted: List[tuple] = []
        self.secrets: List[bytes] = []
        self.lock = threading.Lock()

    def _reply(self, command: str, on_done: Callable[[CommandResult], None], on_start=None) -> None:
        if on_start is not None:
            on_start()
        with self.lock:
            self.submitted.append((time.monotonic(), command))
            reply = self.replies.pop(0) if self.replies else ("", 200)
        if isinstance(reply, Exception):
            on_done(CommandResult.failure(reply))
            return
        body, status = reply
        token = _TOKEN.search(command).group(1)
        on_done(CommandResult(success=True, output=f"{body}\n{token}{status}{token}"))

    def submit(self, command: str, timeout: float, on_done, on_start=None) -> None:
        self._reply(command, on_done, on_start)

    def submit_secret(self, command: str, secret: bytearray, timeout: float, on_done, on_start=None) -> None:
        self.secrets.append(bytes(secret))
        for i in range(len(secret)):
            secret[i] = 0
        self._reply(command, on_done, on_start)


def _plain_builder(token: str):
    return f"curl -sS {status_write_out(token)} https://example.com/", None


def test_status_write_out_uses_curl_escapes():
    option = status_write_out("TOK")
    assert option == "-w '\\nTOK%{http_code}TOK\\n'"


def test_split_status():
    assert split_status("hello\nTOK200TOK", "TOK") == ("hello", 200)
    assert split_status("\nTOK429TOK", "TOK") == ("", 429)
    assert split_status("no status", "TOK") == ("no status", None)


def test_attempt_failed():
    assert attempt_failed("", 200)
    assert attempt_failed("   \n", None)
    assert attempt_failed("rate limited", 429)
    assert not attempt_failed("results", 200)
    assert not attempt_failed("results", None)


def test_single_query_success():
    queue = ScriptedQueue([("results", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.0)
    result = pacer.query_sync("ddg", _plain_builder, 5)
    assert result.success
    assert result.body == "results"
    assert result.status == 200
    assert result.attempts == 1


def test_empty_attempt_is_retried_once_and_only_retry_body_is_kept():
    queue = ScriptedQueue([("", 200), ("three results", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.1)
    result = pacer.query_sync("ddg", _plain_builder, 5)
    assert result.success
    assert result.attempts == 2
    assert result.body == "three results"
    assert queue.submitted[1][0] - queue.submitted[0][0] >= 0.09


def test_retry_happens_at_most_once():
    queue = ScriptedQueue([("", 200), ("slow down", 429), ("never asked", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.05)
    result = pacer.query_sync("ddg", _plain_builder, 5)
    assert not result.success
    assert result.attempts == 2
    assert len(queue.submitted) == 2
    assert result.to_dict()["error"] == "HTTP status 429"


def test_channel_failure_is_not_retried():
    queue = ScriptedQueue([ChannelUnavailable("stream closed"), ("results", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.0)
    result = pacer.query_sync("ddg", _plain_builder, 5)
    assert not result.success
    assert isinstance(result.error, ChannelUnavailable)
    assert len(queue.submitted) == 1


def test_queries_to_one_target_are_spaced():
    queue = ScriptedQueue([("a", 200), ("b", 200), ("c", 200)])
    pacer = PacedQuery(queue, min_spacing=0.2, backoff=0.0)
    results: List[QueryResult] = []
    for _ in range(3):
        pacer.query("ddg", _plain_builder, 5, results.append)
    assert wait_for(lambda: len(results) == 3)
    times = [t for t, _ in queue.submitted]
    assert times[1] - times[0] >= 0.19
    assert times[2] - times[1] >= 0.19
    assert [r.body for r in results] == ["a", "b", "c"]


def test_different_targets_are_not_spaced_against_each_other():
    queue = ScriptedQueue([("a", 200), ("b", 200)])
    pacer = PacedQuery(queue, min_spacing=5.0, backoff=0.0)
    results: List[QueryResult] = []
    pacer.query("ddg", _plain_builder, 5, results.append)
    pacer.query("brave", _plain_builder, 5, results.append)
    assert wait_for(lambda: len(results) == 2, timeout=1.0)


def test_spacing_uses_injected_clock():
    now = [100.0]
    queue = ScriptedQueue([("a", 200), ("b", 200)])
    pacer = PacedQuery(queue, min_spacing=10.0, backoff=0.0, clock=lambda: now[0])
    pacer.query_sync("ddg", _plain_builder, 5)
    now[0] += 10.0
    start = time.monotonic()
    pacer.query_sync("ddg", _plain_builder, 5)
    assert time.monotonic() - start < 1.0


def test_secret_builder_hands_secret_to_queue_not_command():
    queue = ScriptedQueue([("results", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.0)

    def build(token: str):
        return f"printf '%s\\n' {{secret}} | curl -H @- {status_write_out(token)} https://api", bytearray(b"key-1")

    result = pacer.query_sync("brave", build, 5)
    assert result.success
    assert queue.secrets == [b"key-1"]
    assert all("key-1" not in command for _, command in queue.submitted)


def test_builder_error_finishes_query_and_frees_target():
    queue = ScriptedQueue([("results", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.0)

    def build(token: str):
        raise SecretNotFound("BRAVE_API_KEY")

    result = pacer.query_sync("brave", build, 5)
    assert isinstance(result.error, SecretNotFound)
    assert queue.submitted == []
    assert pacer.query_sync("brave", _plain_builder, 5).success


def test_spacing_counts_from_execution_on_a_busy_channel(make_channel):
    executed: List[float] = []

    def curl(args, env):
        executed.append(time.monotonic())
        token = _TOKEN.search(" ".join(args)).group(1)
        return f"results\n{token}200{token}\n"

    channel = make_channel(handlers={"curl": curl})
    queue = ExecutionQueue(channel)
    pacer = PacedQuery(queue, min_spacing=0.5, backoff=0.0)
    queue.submit("sleep 0.6", 5, lambda result: None)

    assert pacer.query_sync("ddg", _plain_builder, 5).success
    assert pacer.query_sync("ddg", _plain_builder, 5).success
    assert len(executed) == 2
    assert executed[1] - executed[0] >= 0.45


def test_unexpected_builder_error_finishes_query_and_frees_target():
    queue = ScriptedQueue([("results", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.0)

    def build(token: str):
        raise RuntimeError("template exploded")

    result = pacer.query_sync("ddg", build, 5)
    assert not result.success
    assert "RuntimeError: template exploded" in result.to_dict()["error"]
    assert pacer.query_sync("ddg", _plain_builder, 5).success


class RefusingQueue(ScriptedQueue):
    def submit_secret(self, command, secret, timeout, on_done, on_start=None):
        raise OSError("queue unavailable")


def test_submit_failure_wipes_secret_and_frees_target():
    queue = RefusingQueue([("results", 200)])
    pacer = PacedQuery(queue, min_spacing=0.0, backoff=0.0)
    handed_out = []

    def build(token: str):
        secret = bytearray(b"key-1")
        handed_out.append(secret)
        return f"curl -H {{secret}} {status_write_out(token)} https://api", secret

    result = pacer.query_sync("brave", build, 5)
    assert "OSError" in str(result.error)
    assert handed_out[0] == bytearray(5)
    assert pacer.query_sync("brave", _plain_builder, 5).success
