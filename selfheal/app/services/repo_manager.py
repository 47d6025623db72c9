"""Repository manager – fork, clone, branch, commit, push and open PRs.

Uses PyGithub for the GitHub API and subprocess (git CLI) for local
repository operations.  Every blocking call is pushed to a worker thread
so one session's git traffic never stalls another session's loop.

Each session works in its own sandbox directory ``<SANDBOX_BASE>/<session_id>``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from github import Auth, Github, GithubException

from selfheal.shared.errors import InvalidUrlError, RepositoryError

logger = logging.getLogger(__name__)

BRANCH_SUFFIX = "AI_Fix"

_URL_PATTERNS = [
    re.compile(r"github\.com/([^/]+)/([^/.]+?)(?:\.git)?$"),
    re.compile(r"github\.com/([^/]+)/([^/]+?)/?$"),
]

# Written to .git/info/exclude so dependency installs and test caches
# are never committed.
_LOCAL_EXCLUDES = (
    "node_modules/",
    "__pycache__/",
    ".pytest_cache/",
    "*.pyc",
)


# ── Helpers ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RepoRef:
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass
class ForkResult:
    success: bool
    fork_owner: str = ""
    fork_repo: str = ""
    fork_url: str = ""
    error: str | None = None


@dataclass
class PullRequestResult:
    success: bool
    pr_url: str | None = None
    pr_number: int | None = None
    created: bool = False
    error: str | None = None


def parse_repo_url(url: str) -> RepoRef:
    """Extract owner/repo from a GitHub URL or raise :class:`InvalidUrlError`."""
    cleaned = (url or "").strip()
    for pattern in _URL_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            return RepoRef(owner=match.group(1), repo=match.group(2))
    raise InvalidUrlError(url)


def build_branch_name(team_name: str, leader_name: str) -> str:
    """TEAM_LEADER_AI_Fix, upper-cased, spaces and dashes as underscores.

    ("Code Warriors", "John Doe") → "CODE_WARRIORS_JOHN_DOE_AI_Fix"
    """
    def _clean(raw: str) -> str:
        s = raw.strip().upper().replace(" ", "_").replace("-", "_")
        s = re.sub(r"[^A-Z0-9_]", "", s)
        return re.sub(r"_+", "_", s).strip("_")

    return f"{_clean(team_name)}_{_clean(leader_name)}_{BRANCH_SUFFIX}"


def build_pr_body(
    branch: str,
    bugs_fixed: int,
    total_bugs: int,
    attempts: int,
    final_score: int,
    commit_prefix: str,
) -> str:
    return (
        "## Automated Self-Healing Fixes\n\n"
        "This PR was opened automatically after an AI test/scan/fix loop.\n\n"
        f"- **Bugs fixed:** {bugs_fixed}/{total_bugs}\n"
        f"- **Attempts:** {attempts}\n"
        f"- **Score:** {final_score}/100\n"
        f"- **Branch:** `{branch}`\n"
        f"- All commits are prefixed with `{commit_prefix}`\n"
    )


# ── Repository manager ───────────────────────────────────────────────

class RepoManager:
    """All version-control side effects of a healing session."""

    def __init__(
        self,
        token: str = "",
        sandbox_base: str | Path = "/tmp/self-healing",
        team_name: str = "TECH_CHAOS",
        leader_name: str = "ANURAG_MISHRA",
        commit_prefix: str = "[AI-AGENT]",
        author_name: str = "selfheal-bot",
        author_email: str = "selfheal-bot@users.noreply.github.com",
        clone_depth: int = 50,
        clone_timeout: int = 120,
        push_timeout: int = 60,
        git_timeout: int = 60,
        github: Github | None = None,
        fork_ready_timeout: int = 30,
        pr_retry_delay: float = 5.0,
    ):
        self.token = token
        self.sandbox_base = Path(sandbox_base)
        self.branch_name = build_branch_name(team_name, leader_name)
        self.commit_prefix = commit_prefix
        self.author_name = author_name
        self.author_email = author_email
        self.clone_depth = clone_depth
        self.clone_timeout = clone_timeout
        self.push_timeout = push_timeout
        self.git_timeout = git_timeout
        self.fork_ready_timeout = fork_ready_timeout
        self.pr_retry_delay = pr_retry_delay
        self._gh = github

    # -- PyGithub client (lazy) ----------------------------------------

    @property
    def gh(self) -> Github:
        if self._gh is None:
            if not self.token:
                raise RepositoryError(["github", "auth"], 1, "GITHUB_TOKEN is not set")
            self._gh = Github(auth=Auth.Token(self.token))
        return self._gh

    # -- Git CLI wrapper -------------------------------------------------

    def _redact(self, text: str) -> str:
        return text.replace(self.token, "***") if self.token else text

    def _git(
        self,
        args: list[str],
        cwd: str | Path,
        timeout: int | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        shown = [self._redact(part) for part in cmd]
        timeout = timeout or self.git_timeout
        logger.debug("[RepoManager] %s  (cwd=%s)", " ".join(shown), cwd)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise RepositoryError(shown, -1, f"timed out after {timeout}s") from None
        if check and result.returncode != 0:
            stderr = self._redact(result.stderr.strip())
            logger.error("[RepoManager] %s failed: %s", " ".join(shown), stderr)
            raise RepositoryError(shown, result.returncode, stderr)
        return result

    # -- Sandbox ---------------------------------------------------------

    def sandbox_dir(self, session_id: str) -> Path:
        return self.sandbox_base / session_id

    def _authenticated_url(self, url: str) -> str:
        if url.startswith("https://") and not url.endswith(".git"):
            url = url.rstrip("/") + ".git"
        if self.token and url.startswith("https://github.com"):
            return url.replace("https://github.com", f"https://{self.token}@github.com", 1)
        return url

    # -- Clone ----------------------------------------------------------

    async def clone(self, remote_url: str, session_id: str) -> str:
        """Shallow-clone *remote_url* into a fresh sandbox for *session_id*."""
        return await asyncio.to_thread(self._clone_sync, remote_url, session_id)

    def _clone_sync(self, remote_url: str, session_id: str) -> str:
        dest = self.sandbox_dir(session_id)
        self.sandbox_base.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            shutil.rmtree(dest, ignore_errors=True)

        logger.info("[RepoManager] Cloning %s → %s", remote_url, dest)
        self._git(
            ["clone", f"--depth={self.clone_depth}", self._authenticated_url(remote_url), str(dest)],
            cwd=self.sandbox_base,
            timeout=self.clone_timeout,
        )

        exclude = dest / ".git" / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with exclude.open("a", encoding="utf-8") as fh:
            fh.write("\n" + "\n".join(_LOCAL_EXCLUDES) + "\n")

        logger.info("[RepoManager] Clone successful (%d top-level entries)", len(list(dest.iterdir())))
        return str(dest)

    # -- Branch ---------------------------------------------------------

    async def create_branch(self, workspace: str) -> str:
        """Check out the healing branch, reusing it if it exists on the remote."""
        return await asyncio.to_thread(self._create_branch_sync, workspace)

    def _create_branch_sync(self, workspace: str) -> str:
        branch = self.branch_name
        remote_ref = f"refs/remotes/origin/{branch}"
        try:
            self._git(
                ["fetch", f"--depth={self.clone_depth}", "origin", f"+refs/heads/{branch}:{remote_ref}"],
                cwd=workspace,
            )
            self._git(["checkout", "-B", branch, remote_ref], cwd=workspace)
            logger.info("[RepoManager] Checked out existing branch %s", branch)
        except RepositoryError:
            self._git(["checkout", "-B", branch], cwd=workspace)
            logger.info("[RepoManager] Created branch %s", branch)
        return branch

    # -- Commit ---------------------------------------------------------

    def format_commit_message(self, message: str) -> str:
        return f"{self.commit_prefix} {message}"

    async def commit(self, workspace: str, message: str) -> str | None:
        """Stage everything and commit; ``None`` when there is nothing to commit."""
        return await asyncio.to_thread(self._commit_sync, workspace, message)

    def _commit_sync(self, workspace: str, message: str) -> str | None:
        self._git(["config", "user.name", self.author_name], cwd=workspace)
        self._git(["config", "user.email", self.author_email], cwd=workspace)
        self._git(["add", "-A"], cwd=workspace)

        staged = self._git(["diff", "--cached", "--quiet"], cwd=workspace, check=False)
        if staged.returncode == 0:
            logger.info("[RepoManager] No changes to commit")
            return None
        if staged.returncode != 1:
            raise RepositoryError(["git", "diff", "--cached", "--quiet"], staged.returncode, staged.stderr.strip())

        full_message = self.format_commit_message(message)
        self._git(["commit", "-m", full_message], cwd=workspace)
        sha = self._git(["rev-parse", "HEAD"], cwd=workspace).stdout.strip()
        logger.info("[RepoManager] Committed %s: %s", sha[:7], full_message)
        return sha

    # -- Push -----------------------------------------------------------

    async def push(self, workspace: str, branch: str) -> None:
        await asyncio.to_thread(
            self._git,
            ["push", "-u", "origin", branch, "--force"],
            workspace,
            self.push_timeout,
        )
        logger.info("[RepoManager] Pushed branch %s", branch)

    # -- Commit count ----------------------------------------------------

    def default_branch(self, workspace: str) -> str:
        try:
            ref = self._git(["symbolic-ref", "refs/remotes/origin/HEAD"], cwd=workspace).stdout.strip()
            return ref.replace("refs/remotes/origin/", "")
        except RepositoryError:
            pass
        try:
            self._git(["rev-parse", "--verify", "origin/main"], cwd=workspace)
            return "main"
        except RepositoryError:
            return "master"

    async def get_commit_count(self, workspace: str, branch: str) -> int:
        """Commits on *branch* not on the default branch; 0 on any git error."""
        def _count() -> int:
            base = self.default_branch(workspace)
            out = self._git(["rev-list", "--count", f"{base}..{branch}"], cwd=workspace).stdout
            return int(out.strip() or 0)

        try:
            return await asyncio.to_thread(_count)
        except (RepositoryError, ValueError) as exc:
            logger.warning("[RepoManager] Commit count unavailable: %s", exc)
            return 0

    # -- Fork -----------------------------------------------------------

    async def can_push(self, ref: RepoRef) -> bool:
        def _check() -> bool:
            try:
                perms = self.gh.get_repo(ref.full_name).permissions
                return perms is not None and bool(perms.push or perms.admin)
            except GithubException:
                return False

        return await asyncio.to_thread(_check)

    async def fork(self, ref: RepoRef) -> ForkResult:
        """Fork *ref* into the bot account, reusing an existing fork."""
        return await asyncio.to_thread(self._fork_sync, ref)

    def _fork_sync(self, ref: RepoRef) -> ForkResult:
        try:
            source = self.gh.get_repo(ref.full_name)
            user = self.gh.get_user()
            fork_full_name = f"{user.login}/{source.name}"
            try:
                existing = self.gh.get_repo(fork_full_name)
                logger.info("[RepoManager] Fork already exists: %s", existing.html_url)
                return ForkResult(True, user.login, existing.name, existing.html_url)
            except GithubException:
                pass

            fork = user.create_fork(source)
            logger.info("[RepoManager] Forked %s → %s", ref.full_name, fork.html_url)
        except (GithubException, RepositoryError) as exc:
            return ForkResult(False, error=f"Failed to fork {ref.full_name}: {exc}")

        if not self._wait_for_fork_ready(fork.full_name):
            logger.warning("[RepoManager] Fork %s not ready yet, continuing anyway", fork.full_name)
        return ForkResult(True, fork.owner.login, fork.name, fork.html_url)

    def _wait_for_fork_ready(self, full_name: str) -> bool:
        """Poll until GitHub has propagated the new fork."""
        start = time.monotonic()
        interval = 3
        while (time.monotonic() - start) < self.fork_ready_timeout:
            try:
                if self.gh.get_repo(full_name).default_branch:
                    return True
            except GithubException:
                pass
            time.sleep(interval)
            interval = min(interval + 2, 10)
        return False

    # -- Pull request ----------------------------------------------------

    async def create_pull_request(
        self,
        upstream: RepoRef,
        branch: str,
        fork_owner: str,
        bugs_fixed: int,
        total_bugs: int,
        attempts: int,
        final_score: int,
        max_retries: int = 3,
    ) -> PullRequestResult:
        """Open (or reuse) a PR from the healing branch; never raises."""
        return await asyncio.to_thread(
            self._create_pull_request_sync,
            upstream, branch, fork_owner, bugs_fixed, total_bugs, attempts, final_score, max_retries,
        )

    def _create_pull_request_sync(
        self,
        upstream: RepoRef,
        branch: str,
        fork_owner: str,
        bugs_fixed: int,
        total_bugs: int,
        attempts: int,
        final_score: int,
        max_retries: int,
    ) -> PullRequestResult:
        head = f"{fork_owner}:{branch}" if fork_owner and fork_owner != upstream.owner else branch
        title = f"{self.commit_prefix} Self-healing fixes: {bugs_fixed}/{total_bugs} bugs (score {final_score}/100)"
        body = build_pr_body(branch, bugs_fixed, total_bugs, attempts, final_score, self.commit_prefix)

        try:
            target = self.gh.get_repo(upstream.full_name)
            base = target.default_branch
            for pr in target.get_pulls(state="open", head=f"{fork_owner or upstream.owner}:{branch}"):
                logger.info("[RepoManager] PR already open: #%d %s", pr.number, pr.html_url)
                return PullRequestResult(True, pr.html_url, pr.number, created=False)
        except (GithubException, RepositoryError) as exc:
            logger.warning("[RepoManager] Cannot prepare PR for %s: %s", upstream.full_name, exc)
            return PullRequestResult(False, error=str(exc))

        last_error: Exception | None = None
        for attempt in range(1, max_retries + 1):
            try:
                pr = target.create_pull(title=title, body=body, head=head, base=base)
                logger.info("[RepoManager] Created PR #%d: %s", pr.number, pr.html_url)
                return PullRequestResult(True, pr.html_url, pr.number, created=True)
            except GithubException as exc:
                last_error = exc
                logger.warning(
                    "[RepoManager] PR creation attempt %d/%d failed: %s",
                    attempt, max_retries, exc,
                )
                if attempt < max_retries:
                    time.sleep(self.pr_retry_delay * attempt)

        return PullRequestResult(False, error=str(last_error))

    # -- Cleanup --------------------------------------------------------

    def cleanup(self, session_id: str) -> None:
        """Remove the session sandbox.  Never raises."""
        path = self.sandbox_dir(session_id)
        if path.exists():
            logger.info("[RepoManager] Cleaning up sandbox %s", path)
        shutil.rmtree(path, ignore_errors=True)
