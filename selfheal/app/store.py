"""In-memory session store keyed by session id.

Records are plain JSON-shaped dicts (the ``HealingSession.to_dict`` shape
plus ``updated_at``).  Every write stamps ``updated_at`` so orphaned
sessions can be detected by staleness.  Once a record reaches a terminal
status only the post-finalization fields may change.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any

from selfheal.shared.errors import HealingError
from selfheal.shared.schemas import HealingSession, HealingStatus, utcnow_iso

TERMINAL_STATUSES = {HealingStatus.COMPLETED.value, HealingStatus.FAILED.value}

# PR creation and attestation happen after the session is finalized
POST_TERMINAL_FIELDS = {"pr_url", "pr_number", "attestations"}


class SessionNotFoundError(HealingError, KeyError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SessionClosedError(HealingError):
    """Raised when a write would change a finalized session."""


def is_terminal(record: dict[str, Any]) -> bool:
    return record.get("status") in TERMINAL_STATUSES


def is_stale(record: dict[str, Any], window_seconds: float, now: datetime | None = None) -> bool:
    """Non-terminal and not written for longer than *window_seconds*."""
    if is_terminal(record):
        return False
    stamp = record.get("updated_at") or record.get("started_at")
    if not stamp:
        return False
    now = now or datetime.now(timezone.utc)
    age = (now - datetime.fromisoformat(stamp)).total_seconds()
    return age > window_seconds


class SessionStore:
    """Async put/get/update over session records."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: HealingSession) -> dict[str, Any]:
        record = session.to_dict()
        record["updated_at"] = utcnow_iso()
        async with self._lock:
            self._records[session.id] = record
        return copy.deepcopy(record)

    async def get(self, session_id: str) -> dict[str, Any] | None:
        record = self._records.get(session_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, session_id: str, **fields: Any) -> dict[str, Any]:
        """Merge *fields* into the record and stamp ``updated_at``."""
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            if is_terminal(record):
                changed = {k for k, v in fields.items() if record.get(k) != v}
                illegal = changed - POST_TERMINAL_FIELDS
                if illegal:
                    raise SessionClosedError(
                        f"Session {session_id} is {record['status']}; "
                        f"cannot change {sorted(illegal)}"
                    )
            record.update(copy.deepcopy(fields))
            record["updated_at"] = utcnow_iso()
            return copy.deepcopy(record)

    async def save(self, session: HealingSession) -> dict[str, Any]:
        """Persist the full live state of *session*."""
        return await self.update(session.id, **session.to_dict())

    async def list_sessions(self, user_id: str | None = None) -> list[dict[str, Any]]:
        records = [
            r for r in self._records.values()
            if user_id is None or r.get("user_id") == user_id
        ]
        records.sort(key=lambda r: r.get("started_at") or "", reverse=True)
        return copy.deepcopy(records)
