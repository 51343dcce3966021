from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx

from research_scheduler.errors import ExternalAPIError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AIConfig:
    base_url: str
    api_key: str
    model: str
    timeout_seconds: int
    max_retries: int
    max_tokens: int = 1000
    temperature: float = 0.2
    top_p: float = 0.9


@dataclass(frozen=True)
class Completion:
    model: str
    content: str
    usage: dict[str, Any]
    citations: list[Any]


def _redact_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 240:
        detail = detail[:240] + "…"
    return detail


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return _redact_detail(resp.text or f"HTTP {resp.status_code}")
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return _redact_detail(str(err["message"]))
    return f"HTTP {resp.status_code}"


def parse_completion(data: Any) -> Completion:
    """Pull the first choice out of a chat-completions body."""
    if not isinstance(data, dict):
        raise ExternalAPIError("malformed response: not an object")
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ExternalAPIError("malformed response: no choices")
    message = choices[0].get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise ExternalAPIError("malformed response: no message content")

    usage = data.get("usage")
    citations = data.get("citations")
    return Completion(
        model=str(data.get("model") or ""),
        content=content,
        usage=usage if isinstance(usage, dict) else {},
        citations=citations if isinstance(citations, list) else [],
    )


class AnswerClient:
    """Chat-completions client for the answer-generation API."""

    def __init__(self, cfg: AIConfig, transport: httpx.AsyncBaseTransport | None = None):
        self._cfg = cfg
        self._client = httpx.AsyncClient(
            base_url=cfg.base_url.rstrip("/"),
            timeout=httpx.Timeout(cfg.timeout_seconds),
            headers={
                "Authorization": f"Bearer {cfg.api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @property
    def model(self) -> str:
        return self._cfg.model

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict) -> dict:
        # Retry on transient network errors and 429/5xx
        attempts = max(0, int(self._cfg.max_retries)) + 1

        for i in range(attempts):
            try:
                resp = await self._client.post(path, json=payload)
            except httpx.TransportError as e:
                if i >= attempts - 1:
                    raise ExternalAPIError(_redact_detail(str(e) or type(e).__name__)) from e
                await self._backoff(i)
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                if i >= attempts - 1:
                    raise ExternalAPIError(_error_message(resp), status_code=resp.status_code)
                logger.info("ai retryable status=%s attempt=%s", resp.status_code, i + 1)
                await self._backoff(i)
                continue

            if resp.status_code >= 400:
                raise ExternalAPIError(_error_message(resp), status_code=resp.status_code)

            try:
                return resp.json()
            except ValueError as e:
                raise ExternalAPIError("malformed response: invalid JSON", status_code=resp.status_code) from e

        raise ExternalAPIError("ai request failed")

    async def _backoff(self, attempt: int) -> None:
        # exponential backoff + jitter
        base = min(20.0, (2.0**attempt))
        await asyncio.sleep(base + random.uniform(0.0, 1.0))

    async def complete(
        self,
        messages: list[dict[str, str]],
        domain_filter: list[str] | None = None,
        recency_filter: str | None = None,
    ) -> Completion:
        if not self._cfg.api_key:
            raise ExternalAPIError("AI_API_KEY is not configured")

        payload: dict[str, Any] = {
            "model": self._cfg.model,
            "messages": messages,
            "max_tokens": self._cfg.max_tokens,
            "temperature": self._cfg.temperature,
            "top_p": self._cfg.top_p,
            "search_domain_filter": list(domain_filter or []),
        }
        if recency_filter:
            payload["search_recency_filter"] = recency_filter

        data = await self._post("/chat/completions", payload)
        return parse_completion(data)

    async def check_connection(self) -> bool:
        try:
            await self.complete([{"role": "user", "content": "Hello, this is a test query"}])
        except ExternalAPIError as e:
            logger.warning("answer API connection failed: %s", e)
            return False
        logger.info("answer API connected")
        return True
