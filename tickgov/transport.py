"""Transport stall classification for agent subprocess failures.

A narrowly scoped classifier: it only recognises known stall and timeout
signatures in agent CLI error text so the tick can report a blocked verdict
with a request id instead of an opaque failure.
"""

import re
from dataclasses import dataclass
from typing import Literal

StallStage = Literal["ORCHESTRATE", "BUILD", "REVIEW"]

STALL_PATTERNS: tuple[str, ...] = (
    "Connection stalled",
    "streamFromAgentBackend",
    "ECONNRESET",
    "ETIMEDOUT",
    "socket hang up",
)

REQUEST_ID_RE = re.compile(r"[Rr]equest[_\s]?[Ii][Dd][:\s]+([a-zA-Z0-9_-]+)")

RAW_ERROR_MAX_CHARS = 500


@dataclass(frozen=True)
class TransportStall:
    stalled: bool
    request_id: str | None = None
    matched_pattern: str | None = None


def detect_transport_stall(text: str) -> TransportStall:
    """Classify error text as a transport stall or not."""
    if not text:
        return TransportStall(stalled=False)
    for pattern in STALL_PATTERNS:
        if pattern in text:
            match = REQUEST_ID_RE.search(text)
            return TransportStall(
                stalled=True,
                request_id=match.group(1) if match else None,
                matched_pattern=pattern,
            )
    return TransportStall(stalled=False)


def truncate_raw_error(text: str) -> str:
    if len(text) <= RAW_ERROR_MAX_CHARS:
        return text
    return text[:RAW_ERROR_MAX_CHARS] + "..."


def stall_diagnostics(stage: StallStage, stall: TransportStall, raw_error: str) -> dict:
    """Diagnostics recorded in BLOCKED.json for a stalled transport."""
    return {
        "stage": stage,
        "request_id": stall.request_id,
        "matched_pattern": stall.matched_pattern,
        "raw_error": truncate_raw_error(raw_error),
    }


def classify_agent_error(message: str, stderr: str = "", exit_code: int | None = None) -> TransportStall:
    """Classify an agent invocation failure.

    A known stall pattern, or a timeout (exit code 124 or a "timed out"
    message), counts as a stall.
    """
    text = message + (f"\n{stderr}" if stderr else "")
    stall = detect_transport_stall(text)
    if stall.stalled:
        return stall
    if exit_code == 124 or "timed out" in message:
        match = REQUEST_ID_RE.search(text)
        return TransportStall(
            stalled=True,
            request_id=match.group(1) if match else None,
            matched_pattern="timeout",
        )
    return stall
