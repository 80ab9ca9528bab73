"""Glob matching for repository-relative paths.

``*`` and ``?`` stay within one path segment; ``**`` crosses directories.
A leading ``**/`` also matches at the repository root, and a trailing
``/**`` matches the directory itself and everything below it. A bare
``*.ext`` pattern matches the basename at any depth.
"""

import posixpath
import re
from functools import lru_cache

GLOB_CHARS = frozenset("*?[")


def normalize_path(path: str) -> str:
    """Normalize a git path to forward slashes without a leading ``./``."""
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            j = i
            while j < n and pattern[j] == "*":
                j += 1
            if j - i == 1:
                out.append("[^/]*")
            elif j < n and pattern[j] == "/" and (i == 0 or pattern[i - 1] == "/"):
                out.append("(?:.*/)?")
                j += 1
            elif j == n and i > 0 and pattern[i - 1] == "/":
                out[-1] = "(?:/.*)?"
            else:
                out.append(".*")
            i = j
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                out.append(re.escape(c))
                i += 1
                continue
            body = pattern[i + 1 : j].replace("\\", "\\\\")
            if body[0] in "!^":
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = j + 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("(?s:" + "".join(out) + r")\Z")


def match_glob(path: str, pattern: str) -> bool:
    """Check one path against one pattern."""
    path = normalize_path(path)
    if _compile(pattern).match(path):
        return True
    if pattern.startswith("*.") and "/" not in pattern:
        return bool(_compile(pattern).match(posixpath.basename(path)))
    return False


def matches_any(path: str, patterns: list[str]) -> bool:
    return any(match_glob(path, pattern) for pattern in patterns)


def is_lockfile(path: str, lockfiles: list[str]) -> bool:
    """Check whether path is a dependency lockfile.

    Plain names (``pnpm-lock.yaml``) match by basename at any depth;
    entries containing glob characters are matched as globs.
    """
    path = normalize_path(path)
    for entry in lockfiles:
        if GLOB_CHARS.intersection(entry):
            if match_glob(path, entry):
                return True
        elif path == entry or posixpath.basename(path) == entry:
            return True
    return False


def globs_overlap(pattern: str, other: str) -> bool:
    """Conservative check for whether two globs can match a common path.

    Used to flag a task whose allowed scope reaches into sensitive areas
    before any file has been touched.
    """
    if pattern == other or match_glob(pattern, other) or match_glob(other, pattern):
        return True
    return match_glob(_literal_prefix(pattern), other) or match_glob(
        _literal_prefix(other), pattern
    )


def _literal_prefix(pattern: str) -> str:
    parts = []
    for part in normalize_path(pattern).split("/"):
        if GLOB_CHARS.intersection(part):
            break
        parts.append(part)
    return "/".join(parts)
