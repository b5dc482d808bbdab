import os
import socket
import hashlib
import itertools
import time
import shlex
from typing import Optional

from sandbox_mcp.config import MARKER_PREFIX

_counter = itertools.count(1)

def new_marker(prefix: str = MARKER_PREFIX) -> str:
    """Return a single-use end-of-output token.

    The digest mixes fresh randomness, the process identity and wall-clock
    time, so two invocations never share a token in practice.
    """
    seed = b"|".join([
        os.urandom(32),
        str(os.getpid()).encode(),
        socket.gethostname().encode("utf-8", errors="replace"),
        str(time.time_ns()).encode(),
        str(next(_counter)).encode(),
    ])
    return prefix + hashlib.sha256(seed).hexdigest()

def emit_instruction(marker: str) -> str:
    # Printed in two halves so an echoing shell never shows the joined token.
    half = len(marker) // 2
    return f"printf '%s%s\\n' {shlex.quote(marker[:half])} {shlex.quote(marker[half:])}"

def find_marker(buffer: str, marker: str) -> Optional[int]:
    index = buffer.find(marker)
    return index if index >= 0 else None

def output_before(buffer: str, marker: str) -> Optional[str]:
    index = find_marker(buffer, marker)
    if index is None:
        return None
    return buffer[:index]

def drop_through(buffer: str, marker: str) -> str:
    """Remove everything up to and including the marker line."""
    index = find_marker(buffer, marker)
    if index is None:
        return buffer
    rest = buffer[index + len(marker):]
    if rest.startswith("\r\n"):
        return rest[2:]
    if rest.startswith("\n"):
        return rest[1:]
    return rest

def extract_between(text: str, start_marker: str, end_marker: str) -> Optional[str]:
    if not text:
        return None

    start_pos = text.find(start_marker)
    if start_pos < 0:
        return None

    content_start = start_pos + len(start_marker)
    if text[content_start:content_start + 2] == "\r\n":
        content_start += 2
    elif text[content_start:content_start + 1] == "\n":
        content_start += 1

    end_pos = text.find(end_marker, content_start)
    if end_pos < 0:
        return None

    content_end = end_pos
    if content_end > content_start and text[content_end - 1] == "\n":
        content_end -= 1
        if content_end > content_start and text[content_end - 1] == "\r":
            content_end -= 1

    return text[content_start:content_end]
