"""Test Runner – discovers and executes a workspace's tests.

``TestRunner.run(workspace)`` returns pass/fail, the combined output and the
located errors parsed out of it.  Tests run either as a local subprocess or
inside the Docker sandbox; a workspace with no recognisable test framework
gets a Python syntax check instead.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from selfheal.agents.test_runner.discovery import DiscoveryResult, discover_test_commands
from selfheal.agents.test_runner.failures import TestError, parse_test_errors
from selfheal.sandbox.executor import SandboxExecutor

logger = logging.getLogger(__name__)

SYNTAX_CHECK_COMMAND = "compile(*.py)"

__all__ = ["TestError", "TestRunResult", "TestRunner"]


@dataclass
class TestRunResult:
    __test__ = False  # not a pytest test class

    passed: bool
    full_output: str
    errors: list[TestError] = field(default_factory=list)
    command: str = ""
    framework: str | None = None
    duration_s: float = 0.0
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "full_output": self.full_output,
            "errors": [e.to_dict() for e in self.errors],
            "command": self.command,
            "framework": self.framework,
            "duration_s": round(self.duration_s, 2),
            "timed_out": self.timed_out,
        }


class TestRunner:
    """Runs the detected test command and parses its failures."""

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        backend: str = "local",
        timeout: int = 300,
        sandbox: SandboxExecutor | None = None,
        command: str | None = None,
    ):
        if backend not in ("local", "docker"):
            raise ValueError(f"Unknown test backend: {backend!r}")
        self.backend = backend
        self.timeout = timeout
        self.command = command
        self._sandbox = sandbox

    @property
    def sandbox(self) -> SandboxExecutor:
        if self._sandbox is None:
            self._sandbox = SandboxExecutor(timeout=self.timeout)
        return self._sandbox

    async def run(self, workspace: str | Path) -> TestRunResult:
        workspace = str(workspace)
        discovery: DiscoveryResult = await asyncio.to_thread(discover_test_commands, workspace)

        framework = discovery.primary
        command = self.command or (framework.command if framework else None)

        if command is None:
            logger.info("[TestRunner] No test framework detected, running syntax check")
            result = await asyncio.to_thread(
                self._syntax_check, workspace, discovery.python_files
            )
        elif self.backend == "docker":
            result = await self._run_docker(workspace, command)
        else:
            result = await asyncio.to_thread(self._run_local, workspace, command)

        result.framework = framework.framework if framework and not self.command else None
        result.errors = parse_test_errors(result.full_output, workspace)
        logger.info(
            "[TestRunner] %s | passed=%s | errors=%d | %.1fs",
            result.command, result.passed, len(result.errors), result.duration_s,
        )
        return result

    # ── Backends ─────────────────────────────────────────────────

    def _run_local(self, workspace: str, command: str) -> TestRunResult:
        argv = shlex.split(command)
        if argv and argv[0] == "python":
            argv[0] = sys.executable

        env = {**os.environ, "CI": "true", "PYTHONDONTWRITEBYTECODE": "1"}
        t0 = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=workspace,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as exc:
            partial = _decode(exc.stdout) + _decode(exc.stderr)
            return TestRunResult(
                passed=False,
                full_output=f"{partial}\nTest command timed out after {self.timeout}s",
                command=command,
                duration_s=time.monotonic() - t0,
                timed_out=True,
            )
        except FileNotFoundError as exc:
            return TestRunResult(
                passed=False,
                full_output=f"Test command not found: {exc}",
                command=command,
                duration_s=time.monotonic() - t0,
            )

        output = "\n".join(part for part in (proc.stdout, proc.stderr) if part)
        return TestRunResult(
            passed=proc.returncode == 0,
            full_output=output,
            command=command,
            duration_s=time.monotonic() - t0,
        )

    async def _run_docker(self, workspace: str, command: str) -> TestRunResult:
        execution = await self.sandbox.run_tests(workspace, command, install_deps=True)
        output = execution.output
        if execution.timed_out:
            output += f"\nTest command timed out after {self.timeout}s"
        return TestRunResult(
            passed=execution.success,
            full_output=output,
            command=command,
            duration_s=execution.duration_s,
            timed_out=execution.timed_out,
        )

    def _syntax_check(self, workspace: str, python_files: list[Path]) -> TestRunResult:
        """Compile every Python source; pass iff none fails."""
        root = Path(workspace).resolve()
        t0 = time.monotonic()
        lines: list[str] = []
        failures = 0

        for path in python_files:
            rel = os.path.relpath(path, root)
            try:
                compile(path.read_bytes(), rel, "exec", dont_inherit=True)
            except SyntaxError as err:
                failures += 1
                lines.append(
                    f'  File "{rel}", line {err.lineno or 1}\n{type(err).__name__}: {err.msg}'
                )
            except (ValueError, OSError) as err:
                failures += 1
                lines.append(f'  File "{rel}", line 1\nSyntaxError: {err}')

        lines.append(
            f"Syntax check: {len(python_files)} file(s) compiled, {failures} failed"
        )
        return TestRunResult(
            passed=failures == 0,
            full_output="\n".join(lines),
            command=SYNTAX_CHECK_COMMAND,
            duration_s=time.monotonic() - t0,
        )


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
