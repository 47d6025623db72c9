"""Heal Loop – the attempt-bounded test → scan → fix → push cycle.

Each attempt is one run of a compiled LangGraph ``StateGraph``::

    test ──passed──▶ END
      │
      └─failed─▶ scan ─▶ fix ─▶ push ─▶ END

The outer loop is driven by an explicit :class:`RetryPolicy` (attempt
budget plus optional backoff between attempts) and stops at the first
attempt whose tests pass.  When the budget is exhausted one final test
run decides the outcome.

The loop owns the session while it runs: it appends bugs and sealed
attempts, flips bugs to fixed, persists after every status transition and
publishes progress events through :class:`LoopHooks`.  Push failures are
not caught here; they end the session at the orchestrator's top level.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterator, Protocol, TypedDict

from langgraph.graph import END, StateGraph

from selfheal.agents.engineer import FixBatchResult, FixEngineer
from selfheal.agents.scanner import BugScanner
from selfheal.agents.test_runner import TestRunner, TestRunResult
from selfheal.shared.schemas import (
    AttemptStatus,
    HealingAttempt,
    HealingBug,
    HealingSession,
    HealingStatus,
)

logger = logging.getLogger(__name__)

TEST_EVENT_OUTPUT_CHARS = 2000
ATTEMPT_OUTPUT_CHARS = 5000


class CommitTarget(Protocol):
    """The slice of the repository manager the loop needs."""

    def format_commit_message(self, message: str) -> str: ...

    async def commit(self, workspace: str, message: str) -> str | None: ...

    async def push(self, workspace: str, branch: str) -> None: ...


class LoopHooks:
    """Progress and persistence callbacks; the defaults do nothing."""

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        pass

    async def persist(self, session: HealingSession) -> None:
        pass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_seconds: float = 0.0

    def attempts(self) -> Iterator[int]:
        return iter(range(1, self.max_attempts + 1))

    async def pause(self, attempt: int) -> None:
        if self.backoff_seconds > 0 and attempt < self.max_attempts:
            await asyncio.sleep(self.backoff_seconds)


@dataclass
class HealLoopOutcome:
    passed: bool
    attempts_used: int
    final_test: TestRunResult


class AttemptState(TypedDict, total=False):
    attempt: int
    test: TestRunResult
    new_bugs: list[HealingBug]
    current: list[HealingBug]
    fix: FixBatchResult
    commit_sha: str | None
    commit_message: str | None


class HealLoop:
    """Drives attempts against one workspace until tests pass or budget runs out."""

    def __init__(
        self,
        test_runner: TestRunner,
        scanner: BugScanner,
        engineer: FixEngineer,
        repo: CommitTarget,
        policy: RetryPolicy | None = None,
    ):
        self.test_runner = test_runner
        self.scanner = scanner
        self.engineer = engineer
        self.repo = repo
        self.policy = policy or RetryPolicy()

    async def run(
        self,
        session: HealingSession,
        workspace: str,
        hooks: LoopHooks | None = None,
    ) -> HealLoopOutcome:
        hooks = hooks or LoopHooks()
        graph = self._build_graph(session, workspace, hooks)
        max_attempts = self.policy.max_attempts

        for attempt in self.policy.attempts():
            logger.info("[HealLoop] ═══ Attempt %d/%d ═══", attempt, max_attempts)
            session.current_attempt = attempt
            await hooks.persist(session)
            self._log(hooks, f"Attempt {attempt}/{max_attempts}")

            started = time.monotonic()
            state: AttemptState = await graph.ainvoke(
                {"attempt": attempt}, {"recursion_limit": 25}
            )
            duration_ms = int((time.monotonic() - started) * 1000)
            test = state["test"]

            if test.passed:
                record = HealingAttempt(
                    attempt=attempt,
                    status=AttemptStatus.PASSED,
                    test_output=test.full_output[:ATTEMPT_OUTPUT_CHARS],
                    bugs_found=0,
                    bugs_fixed=0,
                    duration_ms=duration_ms,
                )
                await self._seal(session, record, hooks)
                self._log(hooks, f"Tests passed on attempt {attempt}")
                return HealLoopOutcome(passed=True, attempts_used=attempt, final_test=test)

            fix = state.get("fix") or FixBatchResult()
            record = HealingAttempt(
                attempt=attempt,
                status=AttemptStatus.FAILED,
                test_output=test.full_output[:ATTEMPT_OUTPUT_CHARS],
                bugs_found=len(state.get("new_bugs") or []),
                bugs_fixed=fix.bugs_fixed,
                duration_ms=duration_ms,
                commit_sha=state.get("commit_sha"),
                commit_message=state.get("commit_message"),
            )
            await self._seal(session, record, hooks)
            await self.policy.pause(attempt)

        # Budget exhausted: one last run decides completed vs failed.
        await self._transition(session, hooks, HealingStatus.TESTING, "Final verification run")
        final = await self.test_runner.run(workspace)
        self._publish_test_result(hooks, final, max_attempts)
        return HealLoopOutcome(passed=final.passed, attempts_used=max_attempts, final_test=final)

    # ── Graph ────────────────────────────────────────────────────

    def _build_graph(self, session: HealingSession, workspace: str, hooks: LoopHooks):
        max_attempts = self.policy.max_attempts

        async def run_tests(state: AttemptState) -> AttemptState:
            attempt = state["attempt"]
            await self._transition(
                session, hooks, HealingStatus.TESTING,
                f"Running tests (attempt {attempt}/{max_attempts})",
            )
            result = await self.test_runner.run(workspace)
            self._publish_test_result(hooks, result, attempt)
            return {"test": result}

        async def scan(state: AttemptState) -> AttemptState:
            await self._transition(session, hooks, HealingStatus.SCANNING, "Scanning for bugs")
            candidates = await self.scanner.scan(
                workspace,
                state["test"].errors,
                on_log=lambda m: self._log(hooks, m),
            )
            new_bugs = session.merge_bugs(candidates)
            for bug in new_bugs:
                hooks.publish("bug_found", bug.to_dict())

            # this scan's candidates, resolved to the session's records
            current: dict[str, HealingBug] = {}
            for candidate in candidates:
                bug = session.find_bug(candidate.file_path, candidate.line)
                if bug is not None:
                    current.setdefault(bug.id, bug)
            self._log(hooks, f"{len(new_bugs)} new bug(s), {len(session.bugs)} total")
            return {"new_bugs": new_bugs, "current": list(current.values())}

        async def fix(state: AttemptState) -> AttemptState:
            attempt = state["attempt"]
            current = state.get("current") or []
            pending = [b for b in current if not b.fixed] or list(current)
            await self._transition(
                session, hooks, HealingStatus.FIXING, f"Fixing {len(pending)} bug(s)"
            )
            if not pending:
                return {"fix": FixBatchResult()}

            batch = await self.engineer.fix_all(
                workspace,
                pending,
                state["test"].full_output,
                on_log=lambda m: self._log(hooks, m),
            )
            by_id = {b.id: b for b in session.bugs}
            for result in batch.applied:
                bug = by_id.get(result.bug_id)
                if bug is not None:
                    bug.mark_fixed(attempt)
                hooks.publish("fix_applied", {
                    "file_path": result.file_path,
                    "description": result.description,
                    "bug_id": result.bug_id,
                })
            return {"fix": batch}

        async def push(state: AttemptState) -> AttemptState:
            attempt = state["attempt"]
            batch = state.get("fix") or FixBatchResult()
            await self._transition(session, hooks, HealingStatus.PUSHING, "Committing fixes")

            message = f"Fix {batch.bugs_fixed} bug(s) - attempt {attempt}/{max_attempts}"
            sha = await self.repo.commit(workspace, message)
            if sha is None:
                self._log(hooks, "No changes to commit this attempt", level="warn")
                return {"commit_sha": None, "commit_message": None}

            await self.repo.push(workspace, session.branch_name)
            self._log(hooks, f"Pushed {sha[:8]} to {session.branch_name}")
            return {
                "commit_sha": sha,
                "commit_message": self.repo.format_commit_message(message),
            }

        def after_test(state: AttemptState) -> str:
            return END if state["test"].passed else "scan"

        graph = StateGraph(AttemptState)
        graph.add_node("test", run_tests)
        graph.add_node("scan", scan)
        graph.add_node("fix", fix)
        graph.add_node("push", push)
        graph.set_entry_point("test")
        graph.add_conditional_edges("test", after_test, {"scan": "scan", END: END})
        graph.add_edge("scan", "fix")
        graph.add_edge("fix", "push")
        graph.add_edge("push", END)
        return graph.compile()

    # ── Helpers ──────────────────────────────────────────────────

    async def _transition(
        self,
        session: HealingSession,
        hooks: LoopHooks,
        status: HealingStatus,
        message: str,
    ) -> None:
        session.status = status
        await hooks.persist(session)
        hooks.publish("status", {"status": status.value, "message": message})

    async def _seal(self, session: HealingSession, record: HealingAttempt, hooks: LoopHooks) -> None:
        session.attempts.append(record)
        hooks.publish("attempt_complete", record.to_dict())
        await hooks.persist(session)

    @staticmethod
    def _publish_test_result(hooks: LoopHooks, result: TestRunResult, attempt: int) -> None:
        hooks.publish("test_result", {
            "passed": result.passed,
            "output": result.full_output[:TEST_EVENT_OUTPUT_CHARS],
            "error_count": len(result.errors),
            "attempt": attempt,
        })

    @staticmethod
    def _log(hooks: LoopHooks, message: str, level: str = "info") -> None:
        hooks.publish("log", {"message": message, "level": level})
