"""Bug Scanner – finds bug candidates in a workspace with the inference endpoint.

Strategy
────────
1.  **File discovery** – walk the workspace, skipping build/dependency/VCS
    directories and dot-directories, keeping known source extensions,
    bounded by per-file size and total file count.
2.  **Batch scan** – send line-numbered files (plus the current test
    failures, when there are any) to the model in fixed-size batches and
    parse the JSON array it returns.  A batch whose reply cannot be parsed
    is logged and skipped.
3.  **Reconciliation** – every test failure not already covered by a
    reported bug at the same ``(file_path, line)`` becomes a bug of its own
    with severity ``high``.

The scanner never raises: if the endpoint is unreachable the result
degrades to the test-derived bugs, or an empty list.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from selfheal.agents.llm import InferenceClient
from selfheal.agents.parsing import ParseFailed, parse_bug_array
from selfheal.agents.test_runner.failures import TestError
from selfheal.shared.determinism import LLM_TEMPERATURE
from selfheal.shared.errors import InferenceError
from selfheal.shared.schemas import HealingBug, Severity

logger = logging.getLogger(__name__)

ANALYZABLE_EXTENSIONS = frozenset({
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".py", ".rb", ".go", ".rs", ".java", ".kt",
    ".c", ".cpp", ".h", ".hpp", ".cs",
    ".php", ".vue", ".svelte",
})

EXCLUDED_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", ".next", "out",
    "coverage", "vendor", "__pycache__", ".venv", "venv",
    ".tox", ".mypy_cache", ".pytest_cache", "target",
})

MAX_FILE_BYTES = 50_000
MAX_FILES = 30
BATCH_SIZE = 10

SCANNER_SYSTEM_PROMPT = """\
You are a meticulous code reviewer hunting for real bugs.

Return a JSON array.  Each element describes one bug:
{
  "category": "<one of SYNTAX, LINTING, RUNTIME, LOGIC, IMPORT, TYPE, DEPENDENCY>",
  "filePath": "<path exactly as given in the FILE header>",
  "line": <1-indexed line number>,
  "message": "<CATEGORY> error in <filePath> line <line>: <short description>",
  "severity": "<one of critical, high, medium, low>"
}

Categories:
- SYNTAX      invalid syntax, unbalanced brackets, bad indentation
- LINTING     unused variables or imports, leftover debug output
- RUNTIME     null/undefined access, division by zero, bad indexing
- LOGIC       wrong conditions, off-by-one, wrong operator
- IMPORT      missing imports, wrong import paths
- TYPE        type mismatches, wrong call signatures
- DEPENDENCY  missing or incompatible packages

Report real defects only, never style preferences.  When test failures are
listed, make sure each one is explained by a bug.  If nothing is wrong
return [].  Output ONLY the JSON array.
"""


@dataclass
class ScannedFile:
    path: str
    content: str
    language: str
    size: int


def scan_file_tree(
    workspace: str | Path,
    max_files: int = MAX_FILES,
    max_file_bytes: int = MAX_FILE_BYTES,
) -> list[ScannedFile]:
    """Collect analyzable source files, depth first in name order."""
    root = Path(workspace)
    files: list[ScannedFile] = []

    def walk(directory: Path) -> None:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError:
            return
        for entry in entries:
            if len(files) >= max_files:
                return
            if entry.is_dir(follow_symlinks=False):
                if entry.name not in EXCLUDED_DIRS and not entry.name.startswith("."):
                    walk(Path(entry.path))
                continue
            if not entry.is_file(follow_symlinks=False):
                continue
            suffix = Path(entry.name).suffix.lower()
            if suffix not in ANALYZABLE_EXTENSIONS:
                continue
            try:
                size = entry.stat().st_size
                if size == 0 or size > max_file_bytes:
                    continue
                content = Path(entry.path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            files.append(ScannedFile(
                path=Path(entry.path).relative_to(root).as_posix(),
                content=content,
                language=suffix[1:],
                size=size,
            ))

    walk(root)
    return files


def number_lines(content: str) -> str:
    return "\n".join(f"{i}: {line}" for i, line in enumerate(content.split("\n"), start=1))


def render_file(f: ScannedFile) -> str:
    return f"### FILE: {f.path} ({f.language})\n```{f.language}\n{number_lines(f.content)}\n```"


def render_test_errors(errors: list[TestError]) -> str:
    if not errors:
        return ""
    lines = "\n".join(
        f"- {e.type.value} in {e.file_path} line {e.line}: {e.message}" for e in errors
    )
    return f"\n\n### TEST FAILURES (use these to find the bugs):\n{lines}"


def bug_from_test_error(error: TestError) -> HealingBug:
    return HealingBug(
        category=error.type,
        file_path=error.file_path,
        line=error.line,
        message=f"{error.type.value} error in {error.file_path} line {error.line}: {error.message}",
        severity=Severity.HIGH,
    )


class BugScanner:
    """Agent A ("the Scout"): model-driven bug discovery."""

    def __init__(
        self,
        llm: InferenceClient,
        max_files: int = MAX_FILES,
        max_file_bytes: int = MAX_FILE_BYTES,
        batch_size: int = BATCH_SIZE,
    ):
        self.llm = llm
        self.max_files = max_files
        self.max_file_bytes = max_file_bytes
        self.batch_size = max(1, batch_size)

    async def scan(
        self,
        workspace: str | Path,
        test_errors: list[TestError] | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> list[HealingBug]:
        test_errors = test_errors or []

        def log(message: str) -> None:
            if on_log is not None:
                on_log(message)
            else:
                logger.info(message)

        try:
            files = scan_file_tree(workspace, self.max_files, self.max_file_bytes)
            log(f"[BugScanner] Found {len(files)} analyzable file(s)")
            bugs = await self._scan_batches(files, test_errors, log) if files else []
        except Exception as exc:
            logger.warning("[BugScanner] Scan failed, using test failures only: %s", exc)
            bugs = []

        for error in test_errors:
            if not any(b.location == (error.file_path, error.line) for b in bugs):
                bugs.append(bug_from_test_error(error))

        log(f"[BugScanner] {len(bugs)} bug candidate(s)")
        return bugs

    async def _scan_batches(
        self,
        files: list[ScannedFile],
        test_errors: list[TestError],
        log: Callable[[str], None],
    ) -> list[HealingBug]:
        rendered = [render_file(f) for f in files]
        context = render_test_errors(test_errors)
        total = (len(rendered) + self.batch_size - 1) // self.batch_size
        bugs: list[HealingBug] = []

        for index in range(total):
            batch = rendered[index * self.batch_size:(index + 1) * self.batch_size]
            log(f"[BugScanner] Scanning batch {index + 1}/{total}")
            prompt = (
                "Scan these code files for bugs and return a JSON array:\n\n"
                + "\n\n".join(batch)
                + context
            )
            try:
                reply = await self.llm.complete(
                    SCANNER_SYSTEM_PROMPT, prompt, temperature=LLM_TEMPERATURE
                )
            except InferenceError as exc:
                # endpoint is down; later batches would fail the same way
                logger.warning("[BugScanner] Inference failed on batch %d: %s", index + 1, exc)
                break

            parsed = parse_bug_array(reply)
            if isinstance(parsed, ParseFailed):
                logger.warning("[BugScanner] Skipping batch %d: %s", index + 1, parsed.reason)
                continue
            for bug in parsed.value:
                log(f"[BugScanner] Found {bug.category.value} in {bug.file_path}:{bug.line}")
            bugs.extend(parsed.value)

        return bugs
