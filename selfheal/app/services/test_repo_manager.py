"""Tests for RepoManager.

Git operations run for real against a bare repository in ``tmp_path``;
the GitHub API is a MagicMock.
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from github import GithubException

from selfheal.app.services.repo_manager import (
    RepoManager,
    RepoRef,
    build_branch_name,
    build_pr_body,
    parse_repo_url,
)
from selfheal.shared.errors import InvalidUrlError, RepositoryError


def _run(*args: str, cwd: Path) -> str:
    return subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True,
    ).stdout.strip()


@pytest.fixture
def remote(tmp_path) -> Path:
    """A bare remote with one commit on ``main``."""
    bare = tmp_path / "remote.git"
    bare.mkdir()
    _run("init", "--bare", cwd=bare)
    _run("symbolic-ref", "HEAD", "refs/heads/main", cwd=bare)

    seed = tmp_path / "seed"
    seed.mkdir()
    _run("init", cwd=seed)
    (seed / "app.py").write_text("x = 1\n")
    _run("add", "-A", cwd=seed)
    _run("-c", "user.name=seed", "-c", "user.email=seed@example.com", "commit", "-m", "initial", cwd=seed)
    _run("branch", "-M", "main", cwd=seed)
    _run("remote", "add", "origin", str(bare), cwd=seed)
    _run("push", "origin", "main", cwd=seed)
    return bare


def _manager(tmp_path: Path, **kwargs) -> RepoManager:
    return RepoManager(
        sandbox_base=tmp_path / "sandboxes",
        team_name="Code Warriors",
        leader_name="John Doe",
        **kwargs,
    )


# ── Pure helpers ─────────────────────────────────────────────────────

class TestParseRepoUrl:

    @pytest.mark.parametrize("url", [
        "https://github.com/octo/widgets",
        "https://github.com/octo/widgets.git",
        "https://github.com/octo/widgets/",
        "github.com/octo/widgets",
    ])
    def test_valid(self, url):
        assert parse_repo_url(url) == RepoRef("octo", "widgets")

    @pytest.mark.parametrize("url", ["", "https://gitlab.com/octo/widgets", "not a url"])
    def test_invalid(self, url):
        with pytest.raises(InvalidUrlError):
            parse_repo_url(url)


class TestBranchName:

    def test_upper_cased_with_suffix(self):
        assert build_branch_name("Code Warriors", "John Doe") == "CODE_WARRIORS_JOHN_DOE_AI_Fix"

    def test_dashes_and_punctuation(self):
        assert build_branch_name("rift-2026!", " ana  maria ") == "RIFT_2026_ANA_MARIA_AI_Fix"

    def test_pr_body_mentions_prefix_and_counts(self):
        body = build_pr_body("B_AI_Fix", 2, 3, 4, 95, "[AI-AGENT]")
        assert "2/3" in body
        assert "95/100" in body
        assert "`[AI-AGENT]`" in body


# ── Git against a local remote ───────────────────────────────────────

class TestGitWorkflow:

    def test_clone_branch_commit_push(self, tmp_path, remote):
        manager = _manager(tmp_path)

        async def scenario():
            workspace = await manager.clone(str(remote), "s1")
            branch = await manager.create_branch(workspace)
            nothing = await manager.commit(workspace, "no-op")
            Path(workspace, "app.py").write_text("x = 2\n")
            sha = await manager.commit(workspace, "Fix 1 bug(s) - attempt 1/5")
            await manager.push(workspace, branch)
            count = await manager.get_commit_count(workspace, branch)
            return workspace, branch, nothing, sha, count

        workspace, branch, nothing, sha, count = asyncio.run(scenario())

        assert branch == "CODE_WARRIORS_JOHN_DOE_AI_Fix"
        assert nothing is None
        assert len(sha) == 40
        assert count == 1
        assert _run("log", "-1", "--format=%s", branch, cwd=remote) == "[AI-AGENT] Fix 1 bug(s) - attempt 1/5"
        assert _run("log", "-1", "--format=%an", branch, cwd=remote) == "selfheal-bot"
        assert "__pycache__/" in (Path(workspace) / ".git" / "info" / "exclude").read_text()

    def test_existing_remote_branch_is_reused(self, tmp_path, remote):
        manager = _manager(tmp_path)

        async def first_session():
            workspace = await manager.clone(str(remote), "s1")
            branch = await manager.create_branch(workspace)
            Path(workspace, "fix.py").write_text("y = 1\n")
            await manager.commit(workspace, "first")
            await manager.push(workspace, branch)

        async def second_session():
            workspace = await manager.clone(str(remote), "s2")
            await manager.create_branch(workspace)
            return workspace

        asyncio.run(first_session())
        workspace = asyncio.run(second_session())

        assert Path(workspace, "fix.py").exists()

    def test_ignored_artifacts_are_not_committed(self, tmp_path, remote):
        manager = _manager(tmp_path)

        async def scenario():
            workspace = await manager.clone(str(remote), "s1")
            await manager.create_branch(workspace)
            cache = Path(workspace, "__pycache__")
            cache.mkdir()
            (cache / "app.cpython-312.pyc").write_bytes(b"\x00")
            return await manager.commit(workspace, "cache only")

        assert asyncio.run(scenario()) is None

    def test_clone_failure_raises(self, tmp_path):
        manager = _manager(tmp_path)
        with pytest.raises(RepositoryError) as exc_info:
            asyncio.run(manager.clone(str(tmp_path / "missing.git"), "s1"))
        assert exc_info.value.cmd[:2] == ["git", "clone"]

    def test_commit_count_is_zero_outside_a_repo(self, tmp_path):
        assert asyncio.run(_manager(tmp_path).get_commit_count(str(tmp_path), "x")) == 0

    def test_cleanup_removes_sandbox(self, tmp_path, remote):
        manager = _manager(tmp_path)
        workspace = asyncio.run(manager.clone(str(remote), "s1"))

        manager.cleanup("s1")
        manager.cleanup("s1")

        assert not Path(workspace).exists()


class TestUrlHandling:

    def test_token_injected_and_redacted(self, tmp_path):
        manager = _manager(tmp_path, token="ghp_secret")

        assert manager._authenticated_url("https://github.com/o/r") == "https://ghp_secret@github.com/o/r.git"
        assert manager._redact("fatal: https://ghp_secret@github.com") == "fatal: https://***@github.com"

    def test_no_token_leaves_url(self, tmp_path):
        assert _manager(tmp_path)._authenticated_url("https://github.com/o/r.git") == "https://github.com/o/r.git"

    def test_github_client_requires_token(self, tmp_path):
        with pytest.raises(RepositoryError):
            _ = _manager(tmp_path).gh


# ── GitHub API (mocked) ──────────────────────────────────────────────

def _pr(number: int) -> SimpleNamespace:
    return SimpleNamespace(number=number, html_url=f"https://github.com/o/r/pull/{number}")


class TestPullRequest:

    def _repo(self, gh_repo: MagicMock, tmp_path: Path) -> RepoManager:
        github = MagicMock()
        github.get_repo.return_value = gh_repo
        return _manager(tmp_path, token="t", github=github, pr_retry_delay=0)

    def test_creates_pr_from_fork(self, tmp_path):
        gh_repo = MagicMock(default_branch="main")
        gh_repo.get_pulls.return_value = []
        gh_repo.create_pull.return_value = _pr(7)
        manager = self._repo(gh_repo, tmp_path)

        result = asyncio.run(manager.create_pull_request(
            RepoRef("o", "r"), "B_AI_Fix", "bot", bugs_fixed=2, total_bugs=3, attempts=2, final_score=104,
        ))

        assert (result.success, result.pr_number, result.created) == (True, 7, True)
        kwargs = gh_repo.create_pull.call_args.kwargs
        assert kwargs["head"] == "bot:B_AI_Fix"
        assert kwargs["base"] == "main"
        assert kwargs["title"].startswith("[AI-AGENT]")

    def test_reuses_open_pr(self, tmp_path):
        gh_repo = MagicMock(default_branch="main")
        gh_repo.get_pulls.return_value = [_pr(3)]
        manager = self._repo(gh_repo, tmp_path)

        result = asyncio.run(manager.create_pull_request(RepoRef("o", "r"), "B", "", 1, 1, 1, 100))

        assert (result.success, result.pr_number, result.created) == (True, 3, False)
        gh_repo.create_pull.assert_not_called()

    def test_retries_then_reports_failure(self, tmp_path):
        gh_repo = MagicMock(default_branch="main")
        gh_repo.get_pulls.return_value = []
        gh_repo.create_pull.side_effect = GithubException(422, {"message": "Validation Failed"}, None)
        manager = self._repo(gh_repo, tmp_path)

        result = asyncio.run(manager.create_pull_request(RepoRef("o", "r"), "B", "", 1, 1, 1, 100, max_retries=3))

        assert result.success is False
        assert "Validation Failed" in result.error
        assert gh_repo.create_pull.call_count == 3
        assert gh_repo.create_pull.call_args.kwargs["head"] == "B"


class TestFork:

    def test_reuses_existing_fork(self, tmp_path):
        source = MagicMock()
        source.name = "r"
        existing = MagicMock(html_url="https://github.com/bot/r")
        existing.name = "r"
        github = MagicMock()
        github.get_repo.side_effect = lambda name: source if name == "o/r" else existing
        github.get_user.return_value = SimpleNamespace(login="bot", create_fork=MagicMock())
        manager = _manager(tmp_path, token="t", github=github)

        result = asyncio.run(manager.fork(RepoRef("o", "r")))

        assert (result.success, result.fork_owner, result.fork_url) == (True, "bot", "https://github.com/bot/r")
        github.get_user.return_value.create_fork.assert_not_called()

    def test_creates_fork_and_waits(self, tmp_path):
        source = MagicMock()
        source.name = "r"
        fork = MagicMock(full_name="bot/r", html_url="https://github.com/bot/r", default_branch="main")
        fork.name = "r"
        fork.owner.login = "bot"

        def get_repo(name):
            if name == "o/r":
                return source
            if get_repo.first_lookup:
                get_repo.first_lookup = False
                raise GithubException(404, {"message": "Not Found"}, None)
            return fork
        get_repo.first_lookup = True

        user = MagicMock(login="bot")
        user.create_fork.return_value = fork
        github = MagicMock()
        github.get_repo.side_effect = get_repo
        github.get_user.return_value = user
        manager = _manager(tmp_path, token="t", github=github)

        result = asyncio.run(manager.fork(RepoRef("o", "r")))

        assert result.success is True
        assert result.fork_owner == "bot"
        user.create_fork.assert_called_once_with(source)

    def test_api_failure_is_reported(self, tmp_path):
        github = MagicMock()
        github.get_repo.side_effect = GithubException(403, {"message": "Forbidden"}, None)
        manager = _manager(tmp_path, token="t", github=github)

        result = asyncio.run(manager.fork(RepoRef("o", "r")))

        assert result.success is False
        assert "o/r" in result.error

    def test_can_push(self, tmp_path):
        github = MagicMock()
        github.get_repo.return_value = MagicMock(permissions=SimpleNamespace(push=False, admin=False))
        manager = _manager(tmp_path, token="t", github=github)
        assert asyncio.run(manager.can_push(RepoRef("o", "r"))) is False

        github.get_repo.return_value = MagicMock(permissions=SimpleNamespace(push=True, admin=False))
        assert asyncio.run(manager.can_push(RepoRef("o", "r"))) is True
