"""Prompt templates for the planner, builder and reviewer agents.

Templates use ``{{NAME}}`` placeholders. Built-in defaults can be replaced
per role with files named in the config (paths relative to the repo root).
"""

import re
from pathlib import Path

PLACEHOLDER_RE = re.compile(r"\{\{([A-Z_]+)\}\}")

PLANNER_SYSTEM = """\
You are the planning agent of a governed build loop. Each call you propose
exactly ONE small task and reply with a single JSON object and nothing else.
"""

PLANNER_USER = """\
Propose the next task.

Required fields: task_id, milestone_id, task_kind ("execute", "verify_only"
or "question"), intent. Optional: scope {allowed_globs, forbidden_globs,
allow_new_files, allow_lockfile_changes}, diff_limits {max_files_touched,
max_lines_changed}, verification {fast: [template ids], slow: [template ids],
params: {template_id: {name: value}}}, builder {mode: "agent" | "patch" |
"external", instructions, max_turns, patch}, control {signal: "stop",
reason}, question {prompt, choices}.

Use control.signal "stop" when the milestone is complete. Use a "question"
task when you need a human decision.

Available verification templates: {{VERIFY_TEMPLATES}}

Current milestone: {{MILESTONE_ID}}
Last verdict: {{LAST_VERDICT}} ({{LAST_CODE}})

Last report:
{{LAST_REPORT_MD}}
"""

BUILDER_SYSTEM = """\
You are the builder agent of a governed build loop. Make only the change
described, stay inside the allowed scope, do not commit, and finish with a
single JSON object: {"summary": str, "files_intended": [str],
"commands_ran": [str], "notes": [str]}.
"""

BUILDER_USER = """\
Task {{TASK_ID}} ({{MILESTONE_ID}}): {{INTENT}}

Instructions:
{{INSTRUCTIONS}}

Allowed paths: {{ALLOWED_GLOBS}}
Forbidden paths: {{FORBIDDEN_GLOBS}}
New files allowed: {{ALLOW_NEW_FILES}}
Lockfile changes allowed: {{ALLOW_LOCKFILE_CHANGES}}
Limits: at most {{MAX_FILES_TOUCHED}} files and {{MAX_LINES_CHANGED}} changed lines.
"""

REVIEWER_SYSTEM = """\
You review risky steps of a governed build loop. Reply with a single JSON
object: {"decision": "proceed" | "force_patch" | "ask_question",
"reason": str, "question": {"prompt": str, "choices": [str]}}.
"""

REVIEWER_USER = """\
Risk flags: {{RISK_FLAGS}}

Proposed task:
{{TASK_JSON}}

Last report:
{{LAST_REPORT_MD}}

Recently touched paths:
{{TOUCHED_PATHS}}
"""


def render(template: str, values: dict[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders; unknown names are left as is."""
    return PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def load_template(repo_root: Path, path: str | None, default: str) -> str:
    """Read a prompt file, or return the built-in default when unset.

    Raises:
        OSError: If a configured prompt file cannot be read
    """
    if not path:
        return default
    return (repo_root / path).read_text(encoding="utf-8")
