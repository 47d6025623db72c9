"""Fix Engineer – rewrites one file per call to resolve its reported bugs.

For every affected file the model receives the line-numbered source and the
bug list and must answer with the complete corrected file in a single
fenced code block.  A missing block, an unchanged body or a missing file
is reported per bug as ``applied=False`` with a reason; it never raises.

Files are fixed concurrently.  Each task owns a distinct path, and the
inference client's semaphore keeps the endpoint within its rate limit.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from selfheal.agents.llm import InferenceClient
from selfheal.agents.parsing import ParseFailed, extract_code_block
from selfheal.agents.scanner import number_lines
from selfheal.shared.determinism import FIX_TEMPERATURE
from selfheal.shared.errors import InferenceError
from selfheal.shared.schemas import HealingBug

logger = logging.getLogger(__name__)

TEST_OUTPUT_CONTEXT_CHARS = 3000

ENGINEER_SYSTEM_PROMPT = """\
You are a senior software engineer whose only job is to fix reported bugs.

RULES:
1. You receive one file WITH line numbers and the list of bugs in it.
2. Output the COMPLETE corrected file, never a fragment or a diff.
3. Output ONLY the file inside one fenced code block, with no explanation.
4. Make MINIMAL changes. Fix the listed bugs and nothing else; do not refactor.
5. Do not introduce new bugs.
6. Preserve existing formatting, indentation and style.
7. If a bug needs more context than you have, apply the safest plausible fix.
8. Never change hard-coded values, config strings or constants unless they cause a failure.
9. Never add parameterisation, environment variables or other flexibility.
10. Never remove or rename existing functions, classes or exports.

Typical fixes by category:
- SYNTAX: brackets, parentheses, quotes, colons, semicolons, indentation
- IMPORT: missing imports, wrong import paths
- TYPE: type mismatches, wrong call signatures
- RUNTIME: null/undefined guards, bad indexing
- LOGIC: conditions, comparisons, off-by-one errors, return values
- LINTING: unused variables and imports
- DEPENDENCY: package references

OUTPUT FORMAT:
```<language>
<complete fixed file content>
```"""


@dataclass
class FixResult:
    file_path: str
    bug_id: str
    description: str
    applied: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "bug_id": self.bug_id,
            "description": self.description,
            "applied": self.applied,
            "error": self.error,
        }


@dataclass
class FixBatchResult:
    results: list[FixResult] = field(default_factory=list)
    files_changed: int = 0
    bugs_fixed: int = 0

    @property
    def applied(self) -> list[FixResult]:
        return [r for r in self.results if r.applied]


def group_by_file(bugs: list[HealingBug]) -> "OrderedDict[str, list[HealingBug]]":
    grouped: OrderedDict[str, list[HealingBug]] = OrderedDict()
    for bug in bugs:
        grouped.setdefault(bug.file_path, []).append(bug)
    return grouped


def build_fix_prompt(
    file_path: str,
    content: str,
    bugs: list[HealingBug],
    test_output: str | None = None,
) -> str:
    language = Path(file_path).suffix.lstrip(".")
    bug_lines = "\n".join(
        f"- [{b.category.value}] Line {b.line}: {b.message} (severity: {b.severity.value})"
        for b in bugs
    )
    parts = [
        "Fix the following bugs in this file:\n",
        f"**File:** {file_path}\n",
        f"**Bugs to fix:**\n{bug_lines}\n",
    ]
    if test_output:
        parts.append(
            "**Test error output (for context):**\n"
            f"```\n{test_output[:TEST_OUTPUT_CONTEXT_CHARS]}\n```\n"
        )
    parts.append(f"**Current file content:**\n```{language}\n{number_lines(content)}\n```\n")
    parts.append(
        "Output the COMPLETE fixed file content in a code block. "
        "Do NOT include line numbers in your output."
    )
    return "\n".join(parts)


class FixEngineer:
    """Agent C ("the Engineer"): per-file model rewrites."""

    def __init__(self, llm: InferenceClient, custom_rules: str = ""):
        self.llm = llm
        self.custom_rules = custom_rules.strip()

    @property
    def system_prompt(self) -> str:
        if not self.custom_rules:
            return ENGINEER_SYSTEM_PROMPT
        return (
            f"{ENGINEER_SYSTEM_PROMPT}\n\n"
            "ADDITIONAL RULES FROM THE USER (follow these strictly when writing fixes):\n"
            f"{self.custom_rules}"
        )

    async def fix_file(
        self,
        workspace: str | Path,
        file_path: str,
        bugs: list[HealingBug],
        test_output: str | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> list[FixResult]:
        def rejected(reason: str, description: str | None = None) -> list[FixResult]:
            return [
                FixResult(file_path, b.id, description or reason, applied=False, error=reason)
                for b in bugs
            ]

        root = Path(workspace).resolve()
        target = (root / file_path).resolve()
        if not target.is_relative_to(root) or not target.is_file():
            logger.warning("[FixEngineer] File not found: %s", file_path)
            return rejected("File not found")

        original = target.read_text(encoding="utf-8", errors="replace")
        prompt = build_fix_prompt(file_path, original, bugs, test_output)

        logger.info("[FixEngineer] Generating fixes for %s (%d bug(s))", file_path, len(bugs))
        if on_log is not None:
            on_log(f"Generating fixes for {file_path} ({len(bugs)} bug(s))")

        try:
            reply = await self.llm.complete(self.system_prompt, prompt, temperature=FIX_TEMPERATURE)
        except InferenceError as exc:
            logger.error("[FixEngineer] Inference failed for %s: %s", file_path, exc)
            return rejected(str(exc), f"AI fix failed: {exc}")

        block = extract_code_block(reply)
        if isinstance(block, ParseFailed):
            logger.warning("[FixEngineer] No code block in reply for %s", file_path)
            return rejected(block.reason, "AI did not return a code block")

        fixed = block.value
        if fixed.strip() == original.strip():
            logger.warning("[FixEngineer] Reply identical to original for %s", file_path)
            return rejected("Fixed content identical to original", "No changes applied")

        target.write_text(fixed, encoding="utf-8")
        logger.info("[FixEngineer] Applied fixes to %s", file_path)
        return [
            FixResult(file_path, b.id, f"Fixed {b.category.value} error at line {b.line}", applied=True)
            for b in bugs
        ]

    async def fix_all(
        self,
        workspace: str | Path,
        bugs: list[HealingBug],
        test_output: str | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> FixBatchResult:
        grouped = group_by_file(bugs)
        logger.info("[FixEngineer] Fixing %d bug(s) across %d file(s)", len(bugs), len(grouped))

        per_file = await asyncio.gather(*(
            self.fix_file(workspace, path, file_bugs, test_output, on_log)
            for path, file_bugs in grouped.items()
        ))

        batch = FixBatchResult()
        for results in per_file:
            batch.results.extend(results)
            applied = [r for r in results if r.applied]
            if applied:
                batch.files_changed += 1
                batch.bugs_fixed += len(applied)

        logger.info(
            "[FixEngineer] Fixed %d/%d bug(s) in %d file(s)",
            batch.bugs_fixed, len(bugs), batch.files_changed,
        )
        return batch
