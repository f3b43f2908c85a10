"""Messages API completion client built on httpx."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from novel_pipeline.completion.base import CompletionError, CompletionUsage
from novel_pipeline.queue.rate_limit import RATE_LIMIT_ERROR_TYPE, RateLimitError
from novel_pipeline.queue.session import SessionTracker
from novel_pipeline.storage.common import to_utc_aware_datetime

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_SECONDS = 600.0
DEFAULT_MAX_RETRIES = 2
_RESET_HEADERS: tuple[str, ...] = (
    "anthropic-ratelimit-requests-reset",
    "anthropic-ratelimit-tokens-reset",
    "anthropic-ratelimit-output-tokens-reset",
)


class AnthropicCompletionClient:
    """Synchronous completion client with timeout and transport retries."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        session_tracker: SessionTracker | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self.session_tracker = session_tracker
        self.last_usage = CompletionUsage()
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": API_VERSION,
                "content-type": "application/json",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        if self.session_tracker is not None:
            self.session_tracker.record_request()
        try:
            response = self._client.post(
                "/v1/messages",
                json={
                    "model": self.model,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "system": system_prompt,
                    "messages": [{"role": "user", "content": user_prompt}],
                },
            )
        except httpx.TimeoutException as error:
            raise CompletionError(f"Completion request timed out: {error}") from error
        except httpx.HTTPError as error:
            raise CompletionError(f"Completion request failed: {error}") from error

        payload = _json_or_empty(response)
        if response.status_code == 429 or _error_type(payload) == RATE_LIMIT_ERROR_TYPE:
            raise _rate_limit_error(response, payload)
        if not response.is_success:
            raise CompletionError(
                f"Completion request failed with HTTP {response.status_code}: "
                f"{_error_message(payload) or response.text[:200]}",
                status_code=response.status_code,
            )

        usage = payload.get("usage") or {}
        self.last_usage = CompletionUsage(
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
        )
        logger.debug(
            "Completion done: input_tokens=%d output_tokens=%d",
            self.last_usage.input_tokens,
            self.last_usage.output_tokens,
        )
        text = "".join(
            block.get("text", "")
            for block in payload.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        )
        if not text:
            raise CompletionError("Completion response contained no text.")
        return text

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AnthropicCompletionClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_type(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("type"), str):
        return error["type"]
    return None


def _error_message(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return None


def _rate_limit_error(response: httpx.Response, payload: dict[str, Any]) -> RateLimitError:
    message = _error_message(payload) or "Rate limit exceeded"
    retry_after: float | None = None
    raw_retry_after = response.headers.get("retry-after")
    if raw_retry_after:
        try:
            retry_after = float(raw_retry_after)
        except ValueError:
            logger.warning("Ignoring unparseable retry-after header: %r", raw_retry_after)
    reset_at: datetime | None = None
    for header in _RESET_HEADERS:
        raw_reset = response.headers.get(header)
        if not raw_reset:
            continue
        try:
            candidate = to_utc_aware_datetime(datetime.fromisoformat(raw_reset))
        except ValueError:
            logger.warning("Ignoring unparseable %s header: %r", header, raw_reset)
            continue
        if reset_at is None or candidate > reset_at:
            reset_at = candidate
    return RateLimitError(message, reset_at=reset_at, retry_after_seconds=retry_after)
