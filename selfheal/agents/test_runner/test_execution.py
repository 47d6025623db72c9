"""Tests for TestRunner backends: local subprocess, Docker (mocked) and syntax check."""

from __future__ import annotations

import asyncio
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from selfheal.agents.test_runner import SYNTAX_CHECK_COMMAND, TestRunner
from selfheal.sandbox.executor import ExecutionResult
from selfheal.shared.schemas import BugCategory


def _make_repo(tmp: Path, body: str = "return a - b") -> Path:
    (tmp / "calc.py").write_text(f"def add(a, b):\n    {body}\n")
    (tmp / "test_calc.py").write_text(textwrap.dedent("""\
        from calc import add


        def test_add():
            assert add(1, 2) == 3
    """))
    return tmp


class TestLocalBackend:

    def test_failing_pytest_run(self, tmp_path):
        repo = _make_repo(tmp_path)

        result = asyncio.run(TestRunner().run(repo))

        assert result.passed is False
        assert result.framework == "pytest"
        assert result.command == "python -m pytest -q --tb=short"
        assert any(e.file_path == "test_calc.py" for e in result.errors)

    def test_passing_pytest_run(self, tmp_path):
        repo = _make_repo(tmp_path, body="return a + b")

        result = asyncio.run(TestRunner().run(repo))

        assert result.passed is True
        assert result.errors == []

    def test_timeout(self, tmp_path):
        runner = TestRunner(timeout=1, command="python -c 'import time; time.sleep(10)'")

        result = asyncio.run(runner.run(tmp_path))

        assert result.passed is False
        assert result.timed_out is True
        assert "timed out after 1s" in result.full_output
        assert result.framework is None

    def test_missing_binary(self, tmp_path):
        runner = TestRunner(command="definitely-not-a-real-binary --run")

        result = asyncio.run(runner.run(tmp_path))

        assert result.passed is False
        assert result.full_output.startswith("Test command not found")


class TestSyntaxCheck:

    def test_broken_source_fails(self, tmp_path):
        (tmp_path / "ok.py").write_text("x = 1\n")
        (tmp_path / "broken.py").write_text("def f(:\n    pass\n")

        result = asyncio.run(TestRunner().run(tmp_path))

        assert result.passed is False
        assert result.command == SYNTAX_CHECK_COMMAND
        assert "2 file(s) compiled, 1 failed" in result.full_output
        [error] = result.errors
        assert (error.file_path, error.line, error.type) == ("broken.py", 1, BugCategory.SYNTAX)

    def test_clean_sources_pass(self, tmp_path):
        (tmp_path / "ok.py").write_text("x = 1\n")

        result = asyncio.run(TestRunner().run(tmp_path))

        assert result.passed is True
        assert result.framework is None

    def test_no_sources_pass(self, tmp_path):
        assert asyncio.run(TestRunner().run(tmp_path)).passed is True


class TestDockerBackend:

    def test_delegates_to_sandbox(self, tmp_path):
        repo = _make_repo(tmp_path)
        sandbox = MagicMock()
        sandbox.run_tests = AsyncMock(return_value=ExecutionResult(
            exit_code=1,
            stdout="test_calc.py:5: in test_add\n    assert add(1, 2) == 3\nE   assert -1 == 3\n",
            stderr="",
            duration_s=2.0,
        ))

        result = asyncio.run(TestRunner(backend="docker", sandbox=sandbox).run(repo))

        sandbox.run_tests.assert_awaited_once_with(str(repo), "python -m pytest -q --tb=short", install_deps=True)
        assert result.passed is False
        assert [(e.file_path, e.line) for e in result.errors] == [("test_calc.py", 5)]

    def test_container_timeout(self, tmp_path):
        sandbox = MagicMock()
        sandbox.run_tests = AsyncMock(return_value=ExecutionResult(
            exit_code=124, stdout="", stderr="", timed_out=True,
        ))

        result = asyncio.run(TestRunner(backend="docker", sandbox=sandbox, command="npm test", timeout=5).run(tmp_path))

        assert result.timed_out is True
        assert "timed out after 5s" in result.full_output


def test_unknown_backend():
    with pytest.raises(ValueError):
        TestRunner(backend="k8s")
