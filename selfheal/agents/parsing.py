"""Parsing boundary for free-text model replies.

Model output is untrusted: it may wrap JSON in commentary, omit fields or
return nothing usable at all.  Every function here returns either
:class:`Parsed` or :class:`ParseFailed` and never raises, so callers get a
single place to decide between "proceed" and "degrade".
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from selfheal.shared.schemas import BugCategory, HealingBug, Severity

T = TypeVar("T")

# First "[" to last "]", tolerant of prose around the array.
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
# A closing fence sits alone on its line, so ``` inside a line of code
# does not end the block.  A fence glued to the end of the reply also closes.
_CODE_BLOCK_RE = re.compile(
    r"```[\w+-]*[ \t]*\r?\n(.*?)(?:^```[ \t]*\r?$|```\s*\Z)",
    re.MULTILINE | re.DOTALL,
)


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class ParseFailed:
    reason: str


ParseResult = Union[Parsed[T], ParseFailed]


def _to_line(raw: Any) -> int:
    try:
        line = int(raw)
    except (TypeError, ValueError):
        return 1
    return line if line >= 1 else 1


def bug_from_item(item: dict[str, Any]) -> HealingBug | None:
    """Build a bug from one reported object, or None if it has no file."""
    file_path = item.get("filePath") or item.get("file_path") or item.get("file")
    if not file_path or not isinstance(file_path, str):
        return None
    file_path = file_path.strip()
    if file_path.startswith("./"):
        file_path = file_path[2:]
    return HealingBug(
        category=BugCategory.coerce(item.get("category")),
        file_path=file_path,
        line=_to_line(item.get("line")),
        message=str(item.get("message") or "").strip() or "Unspecified issue",
        severity=Severity.coerce(item.get("severity")),
    )


def parse_bug_array(text: str) -> ParseResult[list[HealingBug]]:
    """Extract the bug array from a scanner reply.

    An empty array is a successful parse.  Entries that are not objects or
    carry no file path are dropped.
    """
    if not text or not text.strip():
        return ParseFailed("empty response")

    match = _JSON_ARRAY_RE.search(text)
    if match is None:
        return ParseFailed("no JSON array in response")

    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        return ParseFailed(f"invalid JSON array: {exc.msg}")

    if not isinstance(items, list):
        return ParseFailed("JSON value is not an array")

    bugs = [
        bug
        for bug in (bug_from_item(i) for i in items if isinstance(i, dict))
        if bug is not None
    ]
    return Parsed(bugs)


def extract_code_block(text: str) -> ParseResult[str]:
    """Return the body of the first fenced code block in *text*.

    CRLF line endings are normalised to ``\\n``, matching how files are read.
    """
    if not text:
        return ParseFailed("No code block in AI response")
    match = _CODE_BLOCK_RE.search(text)
    if match is None:
        return ParseFailed("No code block in AI response")
    return Parsed(match.group(1).replace("\r\n", "\n"))
