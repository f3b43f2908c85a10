"""Completion service contract used by stage handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class CompletionError(RuntimeError):
    """Completion request failed for a reason other than throttling."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class CompletionUsage:
    """Token counts reported by the service for one request."""

    input_tokens: int = 0
    output_tokens: int = 0


class CompletionService(Protocol):
    """Prompt in, text out; raises RateLimitError when throttled.

    ``last_usage`` holds the token counts of the most recent successful call.
    """

    last_usage: CompletionUsage

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str: ...
