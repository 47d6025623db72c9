"""Background orchestrator – drives one healing session end to end.

Workflow:
  1. Parse the repository URL (an invalid URL fails the session at once)
  2. Fork when the bot cannot push to the target, then clone and branch
  3. Run the heal loop (test → scan → fix → push, up to MAX_ATTEMPTS)
  4. Score, finalize as completed/failed, open a PR (partial PRs included)
  5. Record one audit-ledger attestation per fixed bug
  6. Always clean up the sandbox and schedule progress-channel teardown
"""

from __future__ import annotations

import logging
import time
from typing import Any

from selfheal.agents.engineer import FixEngineer
from selfheal.agents.heal_loop import HealLoop, HealLoopOutcome, LoopHooks, RetryPolicy
from selfheal.agents.llm import InferenceClient
from selfheal.agents.scanner import BugScanner
from selfheal.agents.test_runner import TestRunner
from selfheal.app.config import Settings, settings
from selfheal.app.progress import ProgressBus
from selfheal.app.services.ledger import AttestationInput, HttpAuditLedger, NullAuditLedger, build_ledger
from selfheal.app.services.repo_manager import RepoManager, RepoRef, parse_repo_url
from selfheal.app.store import SessionStore
from selfheal.sandbox.executor import SandboxExecutor
from selfheal.shared.errors import InvalidUrlError, RepositoryError
from selfheal.shared.schemas import HealingSession, HealingStatus, utcnow_iso
from selfheal.shared.scoring import calculate_score

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class SessionHooks(LoopHooks):
    """Publishes to the progress bus and persists to the store for one session."""

    def __init__(self, session_id: str, bus: ProgressBus, store: SessionStore):
        self.session_id = session_id
        self.bus = bus
        self.store = store

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        if event_type == "log":
            level = _LOG_LEVELS.get(str(data.get("level", "info")), logging.INFO)
            logger.log(level, "[Orchestrator] [%s] %s", self.session_id[:8], data.get("message", ""))
        self.bus.publish(self.session_id, event_type, data)

    def log(self, message: str, level: str = "info") -> None:
        self.publish("log", {"message": message, "level": level})

    async def persist(self, session: HealingSession) -> None:
        await self.store.save(session)


class Orchestrator:
    """Owns the lifecycle of every session it runs; one instance per process."""

    def __init__(
        self,
        store: SessionStore,
        bus: ProgressBus,
        repo: RepoManager,
        llm: InferenceClient,
        test_runner: TestRunner,
        scanner: BugScanner,
        ledger: HttpAuditLedger | NullAuditLedger | None = None,
        policy: RetryPolicy | None = None,
        use_fork: bool = True,
        teardown_delay: float = 10.0,
    ):
        self.store = store
        self.bus = bus
        self.repo = repo
        self.llm = llm
        self.test_runner = test_runner
        self.scanner = scanner
        self.ledger = ledger or NullAuditLedger()
        self.policy = policy or RetryPolicy()
        self.use_fork = use_fork
        self.teardown_delay = teardown_delay

    def new_session(self, session_id: str, repo_url: str, user_id: str = "", custom_rules: str = "") -> HealingSession:
        return HealingSession(
            id=session_id,
            user_id=user_id,
            repo_url=repo_url,
            branch_name=self.repo.branch_name,
            max_attempts=self.policy.max_attempts,
            custom_rules=custom_rules,
        )

    async def run(self, session: HealingSession) -> HealingSession:
        """Drive *session* to a terminal status.

        Every failure inside the run is recorded on the session; only a
        failing store write can escape.
        """
        self.bus.open(session.id)
        hooks = SessionHooks(session.id, self.bus, self.store)
        started = time.monotonic()

        try:
            try:
                ref = parse_repo_url(session.repo_url)
            except InvalidUrlError as exc:
                await self._fail(session, hooks, str(exc))
                return session

            session.repo_owner, session.repo_name = ref.owner, ref.repo
            session.branch_name = self.repo.branch_name

            workspace = await self._stage(session, ref, hooks)

            loop = HealLoop(
                test_runner=self.test_runner,
                scanner=self.scanner,
                engineer=FixEngineer(self.llm, session.custom_rules),
                repo=self.repo,
                policy=self.policy,
            )
            outcome = await loop.run(session, workspace, hooks)

            await self._finalize(session, ref, workspace, outcome, started, hooks)

        except Exception as exc:
            logger.exception("[Orchestrator] Session %s crashed", session.id)
            if session.status.is_terminal:
                # already finalized; only the PR/attestation tail failed
                hooks.publish("error", {"message": str(exc)})
                hooks.publish("status", {"status": session.status.value, "message": str(exc)})
            else:
                await self._fail(session, hooks, str(exc))
        finally:
            self.repo.cleanup(session.id)
            self.bus.schedule_close(session.id, self.teardown_delay)

        return session

    # ── Phases ───────────────────────────────────────────────────

    async def _stage(self, session: HealingSession, ref: RepoRef, hooks: SessionHooks) -> str:
        """Fork if needed, clone and check out the healing branch."""
        remote_url = f"https://github.com/{ref.full_name}"

        if self.use_fork and self.repo.token and not await self.repo.can_push(ref):
            hooks.log(f"No push access to {ref.full_name}, forking")
            fork = await self.repo.fork(ref)
            if not fork.success:
                raise RepositoryError(["github", "fork", ref.full_name], 1, fork.error or "fork failed")
            session.fork_owner = fork.fork_owner
            session.fork_url = fork.fork_url
            remote_url = fork.fork_url
            hooks.log(f"Forked to {fork.fork_url}")

        await self._transition(session, hooks, HealingStatus.CLONING, f"Cloning {remote_url}")
        workspace = await self.repo.clone(remote_url, session.id)
        branch = await self.repo.create_branch(workspace)
        session.branch_name = branch
        await hooks.persist(session)
        hooks.log(f"Working on branch {branch}")
        return workspace

    async def _finalize(
        self,
        session: HealingSession,
        ref: RepoRef,
        workspace: str,
        outcome: HealLoopOutcome,
        started: float,
        hooks: SessionHooks,
    ) -> None:
        total_commits = await self.repo.get_commit_count(workspace, session.branch_name)
        score = calculate_score(
            total_bugs=len(session.bugs),
            bugs_fixed=session.bugs_fixed,
            tests_passed=outcome.passed,
            attempts=outcome.attempts_used,
            total_commits=total_commits,
            elapsed_seconds=time.monotonic() - started,
        )
        session.score = score

        final_status = HealingStatus.COMPLETED if outcome.passed else HealingStatus.FAILED
        if outcome.passed:
            message = f"Tests passing after {outcome.attempts_used} attempt(s)"
        else:
            message = f"Tests still failing after {outcome.attempts_used} attempt(s)"
            session.error = message
        session.status = final_status
        session.completed_at = utcnow_iso()
        await hooks.persist(session)
        hooks.publish("score", score.to_dict())
        hooks.log(f"Final score {score.final_score}/100 ({session.bugs_fixed}/{len(session.bugs)} bugs fixed)")

        if outcome.passed or session.bugs_fixed > 0:
            await self._open_pull_request(session, ref, outcome, hooks)

        await self._attest(session, outcome, hooks)
        hooks.publish("status", {"status": final_status.value, "message": message})

    async def _open_pull_request(
        self,
        session: HealingSession,
        ref: RepoRef,
        outcome: HealLoopOutcome,
        hooks: SessionHooks,
    ) -> None:
        score = session.score
        result = await self.repo.create_pull_request(
            upstream=ref,
            branch=session.branch_name,
            fork_owner=session.fork_owner,
            bugs_fixed=session.bugs_fixed,
            total_bugs=len(session.bugs),
            attempts=outcome.attempts_used,
            final_score=score.final_score if score else 0,
        )
        if not result.success:
            hooks.log(f"Pull request not created: {result.error}", level="warn")
            return

        session.pr_url = result.pr_url
        session.pr_number = result.pr_number
        await hooks.persist(session)
        hooks.log(f"Pull request: {result.pr_url}")

    async def _attest(self, session: HealingSession, outcome: HealLoopOutcome, hooks: SessionHooks) -> None:
        if not self.ledger.enabled:
            return

        commits = {a.attempt: a.commit_sha for a in session.attempts}
        for bug in session.bugs:
            if not bug.fixed:
                continue
            result = await self.ledger.record(AttestationInput(
                session_id=session.id,
                bug_category=bug.category.value,
                file_path=bug.file_path,
                line=bug.line,
                error_message=bug.message,
                fix_description=f"Fixed {bug.category.value} error at line {bug.line}",
                test_before_passed=False,
                test_after_passed=outcome.passed,
                commit_sha=commits.get(bug.fixed_at_attempt or 0) or "",
            ))
            if result.success:
                session.attestations.append({"bug_id": bug.id, **result.to_dict()})
            else:
                logger.warning("[Orchestrator] Attestation skipped for %s: %s", bug.location, result.error)

        if session.attestations:
            await hooks.persist(session)
            hooks.log(f"Recorded {len(session.attestations)} attestation(s)")

    # ── Helpers ──────────────────────────────────────────────────

    async def _transition(
        self,
        session: HealingSession,
        hooks: SessionHooks,
        status: HealingStatus,
        message: str,
    ) -> None:
        session.status = status
        await hooks.persist(session)
        hooks.publish("status", {"status": status.value, "message": message})

    async def _fail(self, session: HealingSession, hooks: SessionHooks, error: str) -> None:
        session.error = error
        session.status = HealingStatus.FAILED
        session.completed_at = utcnow_iso()
        hooks.publish("error", {"message": error})
        await hooks.persist(session)
        hooks.publish("status", {"status": HealingStatus.FAILED.value, "message": error})


def build_orchestrator(store: SessionStore, bus: ProgressBus, cfg: Settings = settings) -> Orchestrator:
    """Wire every collaborator from settings."""
    llm = InferenceClient(
        api_key=cfg.GEMINI_API_KEY,
        api_base=cfg.GEMINI_API_BASE,
        model=cfg.GEMINI_MODEL,
        timeout=cfg.LLM_TIMEOUT,
        max_retries=cfg.LLM_MAX_RETRIES,
        max_concurrency=cfg.LLM_MAX_CONCURRENCY,
        max_tokens=cfg.LLM_MAX_TOKENS,
    )
    sandbox = None
    if cfg.TEST_BACKEND == "docker":
        sandbox = SandboxExecutor(
            image=cfg.SANDBOX_IMAGE,
            timeout=cfg.TEST_TIMEOUT,
            memory_limit=cfg.SANDBOX_MEMORY_LIMIT,
            cpu_limit=cfg.SANDBOX_CPU_LIMIT,
        )
    repo = RepoManager(
        token=cfg.GITHUB_TOKEN,
        sandbox_base=cfg.SANDBOX_BASE,
        team_name=cfg.TEAM_NAME,
        leader_name=cfg.LEADER_NAME,
        commit_prefix=cfg.COMMIT_PREFIX,
        author_name=cfg.GIT_AUTHOR_NAME,
        author_email=cfg.GIT_AUTHOR_EMAIL,
        clone_depth=cfg.CLONE_DEPTH,
        clone_timeout=cfg.CLONE_TIMEOUT,
        push_timeout=cfg.PUSH_TIMEOUT,
        git_timeout=cfg.GIT_TIMEOUT,
    )
    return Orchestrator(
        store=store,
        bus=bus,
        repo=repo,
        llm=llm,
        test_runner=TestRunner(backend=cfg.TEST_BACKEND, timeout=cfg.TEST_TIMEOUT, sandbox=sandbox),
        scanner=BugScanner(
            llm,
            max_files=cfg.SCAN_MAX_FILES,
            max_file_bytes=cfg.SCAN_MAX_FILE_BYTES,
            batch_size=cfg.SCAN_BATCH_SIZE,
        ),
        ledger=build_ledger(cfg.LEDGER_URL, cfg.LEDGER_API_KEY),
        policy=RetryPolicy(max_attempts=cfg.MAX_ATTEMPTS, backoff_seconds=cfg.RETRY_BACKOFF_SECONDS),
        use_fork=cfg.USE_FORK,
        teardown_delay=cfg.PROGRESS_TEARDOWN_DELAY,
    )
