"""Inference client for an OpenAI-compatible ``/chat/completions`` endpoint.

The endpoint is treated as an unreliable, rate-limited oracle: every call
has a hard timeout, 429s and transport errors are retried with exponential
backoff (2, 4, 8 … seconds), and concurrent callers share a semaphore so a
burst of scanner batches or per-file fixes does not trip the rate limiter.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from selfheal.shared.determinism import LLM_DETERMINISTIC_PARAMS
from selfheal.shared.errors import InferenceError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta/openai"
DEFAULT_MODEL = "gemini-2.0-flash"


class InferenceClient:
    """Thin async wrapper around one chat-completions endpoint."""

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_API_BASE,
        model: str = DEFAULT_MODEL,
        timeout: float = 90.0,
        max_retries: int = 3,
        max_concurrency: int = 2,
        max_tokens: int = 8192,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_base: float = 2.0,
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_tokens = max_tokens
        self.backoff_base = backoff_base
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _payload(self, system_prompt: str, user_prompt: str, temperature: float) -> dict[str, Any]:
        return {
            "model": self.model,
            **LLM_DETERMINISTIC_PARAMS,
            "temperature": temperature,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.0,
    ) -> str:
        """Return the assistant text for one system/user exchange.

        Raises :class:`InferenceError` once retries are exhausted, on a
        non-retryable HTTP status, or when no API key is configured.
        """
        if not self.api_key:
            raise InferenceError("GEMINI_API_KEY is not configured")

        payload = self._payload(system_prompt, user_prompt, temperature)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async with self._semaphore:
            last_error = "unknown error"
            for attempt in range(self.max_retries + 1):
                delay = self.backoff_base ** (attempt + 1)
                try:
                    async with httpx.AsyncClient(
                        timeout=self.timeout, transport=self._transport
                    ) as client:
                        resp = await client.post(
                            f"{self.api_base}/chat/completions",
                            headers=headers,
                            json=payload,
                        )
                except httpx.TransportError as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
                    if attempt < self.max_retries:
                        logger.warning(
                            "[LLM] Transport error (attempt %d/%d): %s, retrying in %.0fs",
                            attempt + 1, self.max_retries, last_error, delay,
                        )
                        await asyncio.sleep(delay)
                        continue
                    break

                if resp.status_code == 429:
                    last_error = "rate limited (HTTP 429)"
                    if attempt < self.max_retries:
                        logger.warning(
                            "[LLM] Rate-limited (429), retrying in %.0fs (attempt %d/%d)",
                            delay, attempt + 1, self.max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue
                    break

                if resp.status_code != 200:
                    logger.error(
                        "[LLM] HTTP %d from %s: %s",
                        resp.status_code, self.api_base, resp.text[:500],
                    )
                    raise InferenceError(f"HTTP {resp.status_code}: {resp.text[:200]}")

                try:
                    content = resp.json()["choices"][0]["message"]["content"]
                except (ValueError, KeyError, IndexError, TypeError) as exc:
                    raise InferenceError(f"Malformed completion payload: {exc}") from exc

                content = (content or "").strip()
                logger.info(
                    "[LLM] Received %d chars from %s/%s",
                    len(content), self.api_base, self.model,
                )
                return content

        logger.warning("[LLM] Giving up after %d retries: %s", self.max_retries, last_error)
        raise InferenceError(f"Inference failed after {self.max_retries} retries: {last_error}")
