from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import allure
import httpx
import pytest

from novel_pipeline.completion import AnthropicCompletionClient, CompletionError, EchoCompletionClient
from novel_pipeline.queue.rate_limit import RateLimitError, classify_failure
from novel_pipeline.queue.session import UsageWindowTracker

pytestmark = [
    allure.epic("Completion Service"),
    allure.feature("HTTP Client"),
]


def _client(
    handler: httpx.MockTransport,
    *,
    session_tracker: UsageWindowTracker | None = None,
) -> AnthropicCompletionClient:
    return AnthropicCompletionClient(
        api_key="test-key",
        model="test-model",
        base_url="https://api.example.com",
        session_tracker=session_tracker,
        transport=handler,
    )


def _complete(client: AnthropicCompletionClient) -> str:
    return client.complete(
        system_prompt="You are an editor.",
        user_prompt="STAGE: line_review\nChapter 1",
        max_tokens=100,
        temperature=0.3,
    )


def test_successful_completion_returns_text_and_usage() -> None:
    captured: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Hello, "},
                    {"type": "text", "text": "world."},
                ],
                "usage": {"input_tokens": 12, "output_tokens": 4},
            },
        )

    tracker = UsageWindowTracker()
    with _client(httpx.MockTransport(_handler), session_tracker=tracker) as client:
        assert _complete(client) == "Hello, world."
        assert client.last_usage.input_tokens == 12
        assert client.last_usage.output_tokens == 4

    request = captured[0]
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == "test-key"
    body = json.loads(request.content)
    assert body["model"] == "test-model"
    assert body["system"] == "You are an editor."
    assert body["messages"] == [{"role": "user", "content": "STAGE: line_review\nChapter 1"}]
    assert tracker.requests_in_session == 1


def test_http_429_raises_rate_limit_error_with_retry_after() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"retry-after": "90"},
            json={"type": "error", "error": {"type": "rate_limit_error", "message": "Slow down"}},
        )

    with _client(httpx.MockTransport(_handler)) as client:
        with pytest.raises(RateLimitError) as excinfo:
            _complete(client)

    error = excinfo.value
    assert str(error) == "Slow down"
    assert error.retry_after_seconds == 90.0
    assert classify_failure(error).is_rate_limit is True


def test_reset_header_is_used_when_no_retry_after() -> None:
    reset_at = datetime(2026, 10, 19, 17, 0, tzinfo=UTC)

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"anthropic-ratelimit-tokens-reset": reset_at.isoformat()},
            json={"error": {"type": "rate_limit_error", "message": "Quota"}},
        )

    with _client(httpx.MockTransport(_handler)) as client:
        with pytest.raises(RateLimitError) as excinfo:
            _complete(client)

    assert excinfo.value.reset_at == reset_at
    assert excinfo.value.cool_down(now=reset_at - timedelta(minutes=5)) == timedelta(minutes=5)


def test_server_error_raises_completion_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"type": "api_error", "message": "Overloaded"}})

    with _client(httpx.MockTransport(_handler)) as client:
        with pytest.raises(CompletionError, match="HTTP 500: Overloaded") as excinfo:
            _complete(client)

    assert excinfo.value.status_code == 500
    assert classify_failure(excinfo.value).is_rate_limit is False


def test_transport_error_raises_completion_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _client(httpx.MockTransport(_handler)) as client:
        with pytest.raises(CompletionError, match="Completion request failed"):
            _complete(client)


def test_empty_completion_is_an_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"content": []})

    with _client(httpx.MockTransport(_handler)) as client:
        with pytest.raises(CompletionError, match="no text"):
            _complete(client)


def test_echo_client_follows_stage_marker() -> None:
    client = EchoCompletionClient(approve_reviews=False, words=12)

    prose = client.complete(
        system_prompt="",
        user_prompt="STAGE: generate_chapter\nChapter 1",
        max_tokens=10,
        temperature=1.0,
    )
    review = client.complete(
        system_prompt="",
        user_prompt="STAGE: structural_review\nChapter 1",
        max_tokens=10,
        temperature=0.3,
    )

    assert len(prose.split()) == 12
    assert json.loads(review)["approved"] is False
    assert client.calls == ["generate_chapter", "structural_review"]


def test_reset_header_without_timezone_is_utc() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"anthropic-ratelimit-requests-reset": "2026-10-19T17:00:00"},
            json={"error": {"type": "rate_limit_error", "message": "Quota"}},
        )

    with _client(httpx.MockTransport(_handler)) as client:
        with pytest.raises(RateLimitError) as excinfo:
            _complete(client)

    reset_at = datetime(2026, 10, 19, 17, 0, tzinfo=UTC)
    assert excinfo.value.reset_at == reset_at
    assert excinfo.value.cool_down(now=reset_at - timedelta(minutes=2)) == timedelta(minutes=2)
