"""Audit ledger client – best-effort, write-once records of applied fixes.

The ledger is an opaque HTTP endpoint that stores one immutable record per
fix.  Nothing in the healing loop depends on it: every failure comes back
as ``AttestationResult(success=False, error=...)`` and is only logged.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 500


@dataclass
class AttestationInput:
    session_id: str
    bug_category: str
    file_path: str
    line: int
    error_message: str
    fix_description: str
    test_before_passed: bool
    test_after_passed: bool
    commit_sha: str

    def to_payload(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_message"] = self.error_message[:MAX_TEXT_CHARS]
        data["fix_description"] = self.fix_description[:MAX_TEXT_CHARS]
        return data


@dataclass
class AttestationResult:
    success: bool
    record_id: str | None = None
    reference: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class NullAuditLedger:
    """Used when no ledger endpoint is configured."""

    enabled = False

    async def record(self, entry: AttestationInput) -> AttestationResult:
        return AttestationResult(success=False, error="Audit ledger not configured")


class HttpAuditLedger:
    """POSTs each attestation as JSON to ``LEDGER_URL``."""

    enabled = True

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def record(self, entry: AttestationInput) -> AttestationResult:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        logger.info(
            "[AuditLedger] Recording %s fix in %s:%d",
            entry.bug_category, entry.file_path, entry.line,
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=entry.to_payload(), headers=headers)
            if resp.status_code >= 400:
                return AttestationResult(
                    success=False,
                    error=f"Ledger returned {resp.status_code}: {resp.text[:200]}",
                )
            body = resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[AuditLedger] Record failed: %s", exc)
            return AttestationResult(success=False, error=str(exc))

        record_id = body.get("id") if isinstance(body, dict) else None
        reference = body.get("reference") if isinstance(body, dict) else None
        return AttestationResult(
            success=True,
            record_id=str(record_id) if record_id is not None else None,
            reference=reference,
        )


def build_ledger(url: str, api_key: str = "") -> HttpAuditLedger | NullAuditLedger:
    return HttpAuditLedger(url, api_key) if url else NullAuditLedger()
