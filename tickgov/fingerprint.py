"""Canonical task fingerprints.

Two tasks with the same semantic content hash to the same digest regardless
of key order, surrounding whitespace in strings, or task id. The loop driver
uses this to detect redispatch of an identical failed task.
"""

import hashlib
import json
from typing import Any

from tickgov.models import Task

IDENTITY_FIELDS = frozenset({"task_id"})


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _normalize(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    if isinstance(value, str):
        return value.strip()
    return value


def canonicalize(task: Task | dict[str, Any]) -> str:
    """Return the canonical JSON text of a task's semantic content."""
    data = task.to_dict() if isinstance(task, Task) else dict(task)
    semantic = {k: v for k, v in data.items() if k not in IDENTITY_FIELDS}
    return json.dumps(
        _normalize(semantic), separators=(",", ":"), ensure_ascii=False, sort_keys=True
    )


def fingerprint(task: Task | dict[str, Any]) -> str:
    """SHA-256 hex digest of ``canonicalize(task)``."""
    return hashlib.sha256(canonicalize(task).encode("utf-8")).hexdigest()
