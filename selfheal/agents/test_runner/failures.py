"""Failure extraction – turns raw test/build output into located errors.

A bank of compiled patterns is run over the combined output; each match
yields a file, a 1-indexed line, a message and a bug category.  Patterns
are ordered most specific first and the first hit for a location wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from selfheal.shared.schemas import BugCategory


@dataclass(frozen=True)
class TestError:
    """One located failure reported by the test run."""

    __test__ = False  # not a pytest test class

    file_path: str
    line: int
    message: str
    type: BugCategory

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "line": self.line,
            "message": self.message,
            "type": self.type.value,
        }


# ── Exception name → category ────────────────────────────────────────

_KIND_CATEGORIES: dict[str, BugCategory] = {
    "SyntaxError": BugCategory.SYNTAX,
    "IndentationError": BugCategory.SYNTAX,
    "TabError": BugCategory.SYNTAX,
    "TypeError": BugCategory.TYPE,
    "ImportError": BugCategory.IMPORT,
    "ModuleNotFoundError": BugCategory.IMPORT,
    "AssertionError": BugCategory.LOGIC,
}


def category_for(kind: str | None, unnamed: BugCategory = BugCategory.RUNTIME) -> BugCategory:
    """Category for an exception name.

    Any named exception outside the table is RUNTIME.  *unnamed* applies
    only when the output names no exception at all, e.g. a bare pytest
    ``assert`` line.
    """
    if not kind:
        return unnamed
    return _KIND_CATEGORIES.get(kind, BugCategory.RUNTIME)


# ── Pattern bank ─────────────────────────────────────────────────────
#
# Groups: ``file``, ``detail``, optional ``line`` (defaults to 1) and
# optional ``kind`` (exception name, used to pick the category when the
# rule has none of its own).

_RULES: list[tuple[re.Pattern[str], BugCategory | None, str]] = []

_JS_EXT = r"(?:js|jsx|ts|tsx|mjs|cjs|vue|svelte)"
_NOT_FRAME = r'(?!\s*File ")'


def _rule(pattern: str, category: BugCategory | None, template: str = "{detail}") -> None:
    _RULES.append((re.compile(pattern, re.MULTILINE), category, template))


# Python traceback: innermost frame followed by the exception line.
_rule(
    r'File "(?P<file>[^"]+)", line (?P<line>\d+)[^\n]*\n'
    rf"(?:{_NOT_FRAME}[^\n]*\n){{0,4}}?"
    r"(?P<detail>(?P<kind>[A-Z]\w*(?:Error|Exception))\b[^\n]*)",
    None,
)

# pytest --tb=short: "path.py:12: in test_x" … "E   SomeError: …" / "E   assert …"
_rule(
    r"^(?P<file>[^\s:]+\.py):(?P<line>\d+): in [^\n]*\n"
    r"(?:(?![^\s:]+\.py:\d+: )[^\n]*\n){0,12}?"
    r"E\s+(?P<detail>(?:(?P<kind>[A-Z]\w*(?:Error|Exception))\b|assert\b)[^\n]*)",
    None,
)

# pytest --tb=long trailer: "tests/test_x.py:12: AssertionError"
_rule(
    r"^(?P<file>[^\s:]+\.py):(?P<line>\d+): (?P<detail>(?P<kind>[A-Z]\w*(?:Error|Exception)))\s*$",
    None,
)

# py_compile one-liner: Sorry: SyntaxError: msg ('file.py', line 8)
_rule(
    r"Sorry:\s*(?P<detail>(?P<kind>\w+Error):.+?)\s*\('?(?P<file>[^',]+?)'?,\s*line\s+(?P<line>\d+)\)",
    None,
)

# flake8 / ruff: path:line:col: CODE message
_rule(
    r"^(?P<file>[^\s:]+\.py):(?P<line>\d+):\d+:\s*(?P<detail>[EWFCB]\d+\s.+)$",
    BugCategory.LINTING,
)

# tsc: path(line,col): error TSnnnn: …  and  path:line:col - error TSnnnn: …
_rule(
    r"(?P<file>[^\s(]+\.tsx?)\((?P<line>\d+),\d+\):\s*error\s+(?P<detail>TS\d+:[^\n]+)",
    BugCategory.TYPE,
)
_rule(
    r"(?P<file>[^\s:]+\.tsx?):(?P<line>\d+):\d+\s*-\s*error\s+(?P<detail>TS\d+:[^\n]+)",
    BugCategory.TYPE,
)

# Node syntax error banner: path.js:10 / source / caret / SyntaxError: …
_rule(
    rf"^(?P<file>[^\s:]+\.{_JS_EXT}):(?P<line>\d+)\s*\n(?:[^\n]*\n){{0,4}}?\s*(?P<detail>SyntaxError:[^\n]+)",
    BugCategory.SYNTAX,
)

# Jest/Vitest missing module: Cannot find module 'x' from 'src/a.test.js'
_rule(
    r"Cannot find module '(?P<detail>[^']+)' from '(?P<file>[^']+)'",
    BugCategory.IMPORT,
    "Cannot find module '{detail}'",
)

# Jest expect() failure followed by its stack frame
_rule(
    r"(?P<detail>expect\([^\n]*\)\.[^\n]*)\n"
    r"(?:[^\n]*\n){0,24}?"
    rf"\s+(?:at\s[^\n]*?\(?|❯\s)(?P<file>[^\s():]+\.{_JS_EXT}):(?P<line>\d+):\d+",
    BugCategory.LOGIC,
    "Assertion failure: {detail}",
)

# JS runtime error followed by its first stack frame (node, jest, vitest)
_rule(
    r"(?P<detail>(?P<kind>[A-Z]\w*Error): [^\n]+)\n"
    r"(?:[^\n]*\n){0,12}?"
    rf"\s+(?:at\s[^\n]*?\(?|❯\s)(?P<file>[^\s():]+\.{_JS_EXT}):(?P<line>\d+):\d+",
    None,
)


# ── Path normalisation ───────────────────────────────────────────────

_FOREIGN_MARKERS = ("site-packages/", "dist-packages/", "node_modules/", "node:internal")

# mount point used by the Docker backend
_CONTAINER_ROOT = "/workspace/"


def normalize_path(raw: str, workspace: str | Path | None) -> str | None:
    """Return *raw* relative to the workspace, or None for foreign files."""
    path = raw.strip().replace("\\", "/")
    if not path or path.startswith("<") or any(m in path for m in _FOREIGN_MARKERS):
        return None
    if path.startswith("file://"):
        path = path[len("file://"):]
    if path.startswith(_CONTAINER_ROOT):
        return path[len(_CONTAINER_ROOT):]

    if path.startswith("/"):
        if workspace is None:
            return None
        root = Path(workspace)
        for base in (root, root.resolve()):
            try:
                return Path(path).relative_to(base).as_posix()
            except ValueError:
                continue
        return None

    while path.startswith("./"):
        path = path[2:]
    return path or None


def parse_test_errors(output: str, workspace: str | Path | None = None) -> list[TestError]:
    """Extract located errors from *output*, deduplicated by (file, line)."""
    if not output:
        return []

    seen: set[tuple[str, int]] = set()
    errors: list[TestError] = []

    for pattern, category, template in _RULES:
        for match in pattern.finditer(output):
            groups = match.groupdict()
            file_path = normalize_path(groups["file"], workspace)
            if file_path is None:
                continue
            line = int(groups.get("line") or 1)
            if (file_path, line) in seen:
                continue
            seen.add((file_path, line))

            detail = (groups.get("detail") or "").strip()
            errors.append(TestError(
                file_path=file_path,
                line=max(line, 1),
                message=template.format(detail=detail),
                type=category or category_for(groups.get("kind"), unnamed=BugCategory.LOGIC),
            ))

    return errors
