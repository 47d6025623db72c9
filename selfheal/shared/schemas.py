"""Healing session data model shared by the agents, the store and the API."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────

class HealingStatus(str, Enum):
    QUEUED = "queued"
    CLONING = "cloning"
    SCANNING = "scanning"
    TESTING = "testing"
    FIXING = "fixing"
    PUSHING = "pushing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (HealingStatus.COMPLETED, HealingStatus.FAILED)


class BugCategory(str, Enum):
    SYNTAX = "SYNTAX"
    LINTING = "LINTING"
    RUNTIME = "RUNTIME"
    LOGIC = "LOGIC"
    IMPORT = "IMPORT"
    TYPE = "TYPE"
    DEPENDENCY = "DEPENDENCY"

    @classmethod
    def coerce(cls, raw: Any, default: "BugCategory | None" = None) -> "BugCategory":
        """Map free-form model/test output onto the closed category set."""
        fallback = default or cls.RUNTIME
        if isinstance(raw, cls):
            return raw
        text = str(raw or "").strip().upper()
        if not text:
            return fallback
        if text in cls.__members__:
            return cls[text]
        aliases = {
            "TYPE_ERROR": cls.TYPE,
            "TYPEERROR": cls.TYPE,
            "INDENTATION": cls.SYNTAX,
            "LINT": cls.LINTING,
            "ASSERTION": cls.LOGIC,
            "IMPORTERROR": cls.IMPORT,
            "MODULENOTFOUNDERROR": cls.IMPORT,
        }
        return aliases.get(text, fallback)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @classmethod
    def coerce(cls, raw: Any) -> "Severity":
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.MEDIUM


class AttemptStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


# ── Records ──────────────────────────────────────────────────────────

@dataclass
class HealingBug:
    """One located, categorized defect candidate."""

    category: BugCategory
    file_path: str
    line: int
    message: str
    severity: Severity = Severity.MEDIUM
    fixed: bool = False
    fixed_at_attempt: int | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def location(self) -> tuple[str, int]:
        return (self.file_path, self.line)

    def mark_fixed(self, attempt: int) -> None:
        """Flip to fixed; a fixed bug keeps its first fixing attempt."""
        if self.fixed:
            return
        self.fixed = True
        self.fixed_at_attempt = attempt

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "file_path": self.file_path,
            "line": self.line,
            "message": self.message,
            "severity": self.severity.value,
            "fixed": self.fixed,
            "fixed_at_attempt": self.fixed_at_attempt,
        }


@dataclass(frozen=True)
class HealingAttempt:
    """Sealed log entry for one test → scan → fix → push iteration."""

    attempt: int
    status: AttemptStatus
    test_output: str
    bugs_found: int
    bugs_fixed: int
    duration_ms: int
    commit_sha: str | None = None
    commit_message: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class HealingScore:
    total_bugs: int
    bugs_fixed: int
    tests_passed: bool
    attempts: int
    total_commits: int
    time_seconds: int
    speed_bonus: int
    commit_penalty: int
    final_score: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HealingSession:
    """Live state of one end-to-end run, owned by the orchestrator."""

    id: str
    user_id: str
    repo_url: str
    repo_owner: str = ""
    repo_name: str = ""
    branch_name: str = ""
    fork_owner: str = ""
    fork_url: str = ""
    status: HealingStatus = HealingStatus.QUEUED
    current_attempt: int = 0
    max_attempts: int = 5
    bugs: list[HealingBug] = field(default_factory=list)
    attempts: list[HealingAttempt] = field(default_factory=list)
    score: HealingScore | None = None
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    error: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    custom_rules: str = ""
    attestations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def bugs_fixed(self) -> int:
        return sum(1 for b in self.bugs if b.fixed)

    def find_bug(self, file_path: str, line: int) -> HealingBug | None:
        for bug in self.bugs:
            if bug.location == (file_path, line):
                return bug
        return None

    def merge_bugs(self, candidates: list[HealingBug]) -> list[HealingBug]:
        """Append candidates not yet seen at the same (file_path, line).

        Returns only the newly added bugs.
        """
        added: list[HealingBug] = []
        for bug in candidates:
            if self.find_bug(bug.file_path, bug.line) is None:
                self.bugs.append(bug)
                added.append(bug)
        return added

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "repo_url": self.repo_url,
            "repo_owner": self.repo_owner,
            "repo_name": self.repo_name,
            "branch_name": self.branch_name,
            "fork_owner": self.fork_owner,
            "fork_url": self.fork_url,
            "status": self.status.value,
            "current_attempt": self.current_attempt,
            "max_attempts": self.max_attempts,
            "bugs": [b.to_dict() for b in self.bugs],
            "attempts": [a.to_dict() for a in self.attempts],
            "score": self.score.to_dict() if self.score else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "pr_url": self.pr_url,
            "pr_number": self.pr_number,
            "attestations": self.attestations,
        }
