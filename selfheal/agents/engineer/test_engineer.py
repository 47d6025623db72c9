"""Tests for the Fix Engineer with a mocked inference client."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from selfheal.agents.engineer import ENGINEER_SYSTEM_PROMPT, FixEngineer, build_fix_prompt
from selfheal.shared.errors import InferenceError
from selfheal.shared.schemas import BugCategory, HealingBug

BROKEN = "def greet(name)\n    return f'Hello, {name}!'\n"
FIXED = "def greet(name):\n    return f'Hello, {name}!'\n"


def _bug(path: str = "app.py", line: int = 1) -> HealingBug:
    return HealingBug(category=BugCategory.SYNTAX, file_path=path, line=line, message="missing colon")


def _llm(reply) -> MagicMock:
    llm = MagicMock()
    llm.complete = AsyncMock(side_effect=reply if isinstance(reply, list) else [reply])
    return llm


class TestFixFile:

    def test_applies_rewrite(self, tmp_path):
        (tmp_path / "app.py").write_text(BROKEN)
        bug = _bug()
        engineer = FixEngineer(_llm(f"```python\n{FIXED}```"))

        [result] = asyncio.run(engineer.fix_file(tmp_path, "app.py", [bug]))

        assert result.applied is True
        assert result.bug_id == bug.id
        assert result.description == "Fixed SYNTAX error at line 1"
        assert (tmp_path / "app.py").read_text() == FIXED

    def test_identical_reply_leaves_file_untouched(self, tmp_path):
        (tmp_path / "app.py").write_text(BROKEN)
        engineer = FixEngineer(_llm(f"```python\n\n{BROKEN}\n```"))

        results = asyncio.run(engineer.fix_file(tmp_path, "app.py", [_bug(), _bug(line=2)]))

        assert [r.applied for r in results] == [False, False]
        assert results[0].error == "Fixed content identical to original"
        assert (tmp_path / "app.py").read_text() == BROKEN

    def test_no_code_block(self, tmp_path):
        (tmp_path / "app.py").write_text(BROKEN)
        engineer = FixEngineer(_llm("I think you should add a colon."))

        [result] = asyncio.run(engineer.fix_file(tmp_path, "app.py", [_bug()]))

        assert result.applied is False
        assert result.description == "AI did not return a code block"

    def test_missing_file(self, tmp_path):
        llm = _llm("unused")

        [result] = asyncio.run(FixEngineer(llm).fix_file(tmp_path, "gone.py", [_bug("gone.py")]))

        assert result.applied is False
        assert result.error == "File not found"
        llm.complete.assert_not_awaited()

    def test_path_escaping_workspace_is_not_found(self, tmp_path):
        workspace = tmp_path / "ws"
        workspace.mkdir()
        (tmp_path / "outside.py").write_text(BROKEN)

        [result] = asyncio.run(
            FixEngineer(_llm("unused")).fix_file(workspace, "../outside.py", [_bug("../outside.py")])
        )

        assert result.error == "File not found"

    def test_inference_failure_is_reported(self, tmp_path):
        (tmp_path / "app.py").write_text(BROKEN)
        engineer = FixEngineer(_llm(InferenceError("quota")))

        [result] = asyncio.run(engineer.fix_file(tmp_path, "app.py", [_bug()]))

        assert result.applied is False
        assert result.description == "AI fix failed: quota"


class TestFixAll:

    def test_groups_by_file(self, tmp_path):
        (tmp_path / "a.py").write_text("a = 1\n")
        (tmp_path / "b.py").write_text("b = 1\n")
        bugs = [_bug("a.py", 1), _bug("b.py", 1), _bug("a.py", 2)]

        async def reply(system_prompt, prompt, temperature=0.0):
            if "**File:** a.py" in prompt:
                return "```python\na = 2\n```"
            return "no idea"

        llm = MagicMock()
        llm.complete = AsyncMock(side_effect=reply)

        batch = asyncio.run(FixEngineer(llm).fix_all(tmp_path, bugs))

        assert llm.complete.await_count == 2
        assert batch.files_changed == 1
        assert batch.bugs_fixed == 2
        assert {r.file_path for r in batch.applied} == {"a.py"}


class TestPrompts:

    def test_custom_rules_extend_system_prompt(self):
        engineer = FixEngineer(MagicMock(), custom_rules="  Never touch tests.  ")
        assert engineer.system_prompt.startswith(ENGINEER_SYSTEM_PROMPT)
        assert engineer.system_prompt.endswith("Never touch tests.")
        assert FixEngineer(MagicMock()).system_prompt == ENGINEER_SYSTEM_PROMPT

    def test_fix_prompt_truncates_test_output(self):
        prompt = build_fix_prompt("a.py", "x = 1", [_bug("a.py")], "E" * 5000)
        assert "E" * 3000 in prompt
        assert "E" * 3001 not in prompt
        assert "1: x = 1" in prompt
        assert "[SYNTAX] Line 1: missing colon (severity: medium)" in prompt
