"""JSON Schemas for agent-produced documents.

Planner output (Task), builder output (BuilderResult) and reviewer output are
validated with jsonschema (Draft 2020-12) before any field is trusted.
"""

from typing import Any

from jsonschema import Draft202012Validator

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

TASK_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Task",
    "type": "object",
    "required": ["task_id", "milestone_id", "task_kind", "intent"],
    "properties": {
        "task_id": {"type": "string", "minLength": 1},
        "milestone_id": {"type": "string", "minLength": 1},
        "task_kind": {"enum": ["execute", "verify_only", "question"]},
        "intent": {"type": "string"},
        "scope": {
            "type": "object",
            "properties": {
                "allowed_globs": _STRING_LIST,
                "forbidden_globs": _STRING_LIST,
                "allow_new_files": {"type": "boolean"},
                "allow_lockfile_changes": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "diff_limits": {
            "type": "object",
            "properties": {
                "max_files_touched": {"type": "integer", "minimum": 1},
                "max_lines_changed": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "verification": {
            "type": "object",
            "properties": {
                "fast": _STRING_LIST,
                "slow": _STRING_LIST,
                "params": {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "additionalProperties": {
                            "type": ["string", "integer", "boolean", "null"]
                        },
                    },
                },
            },
            "additionalProperties": False,
        },
        "builder": {
            "type": "object",
            "required": ["mode"],
            "properties": {
                "mode": {"enum": ["agent", "patch", "external"]},
                "max_turns": {"type": "integer", "minimum": 1},
                "instructions": {"type": "string"},
                "patch": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "control": {
            "type": "object",
            "required": ["signal"],
            "properties": {
                "signal": {"enum": ["stop"]},
                "reason": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "question": {
            "type": "object",
            "required": ["prompt"],
            "properties": {
                "prompt": {"type": "string", "minLength": 1},
                "choices": _STRING_LIST,
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}

BUILDER_RESULT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "BuilderResult",
    "type": "object",
    "required": ["summary", "files_intended", "commands_ran", "notes"],
    "properties": {
        "summary": {"type": "string"},
        "files_intended": _STRING_LIST,
        "commands_ran": _STRING_LIST,
        "notes": _STRING_LIST,
    },
}

REVIEWER_RESULT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "ReviewerResult",
    "type": "object",
    "required": ["decision"],
    "properties": {
        "decision": {"enum": ["proceed", "force_patch", "ask_question"]},
        "reason": {"type": "string"},
        "question": {
            "type": "object",
            "required": ["prompt"],
            "properties": {
                "prompt": {"type": "string"},
                "choices": _STRING_LIST,
            },
        },
    },
}


def validate_against(schema: dict[str, Any], data: Any) -> list[str]:
    """Validate data against a JSON Schema.

    Args:
        schema: One of the schemas in this module
        data: Parsed JSON document

    Returns:
        List of "path: message" errors (empty if valid)
    """
    validator = Draft202012Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")
    return errors
