"""Deterministic offline completion service for smoke runs and tests."""

from __future__ import annotations

import json
import re

from novel_pipeline.completion.base import CompletionUsage

_STAGE_MARKER = re.compile(r"^STAGE:\s*(?P<stage>[a-z_]+)\s*$", re.MULTILINE)

_LOREM = (
    "The rain had not stopped for three days. Mara counted the drops on the glass "
    "and waited for the knock she knew would come. \"You came back,\" she said "
    "when the door finally opened. He did not answer. "
)


class EchoCompletionClient:
    """Returns canned, well-formed output for every stage prompt.

    Prompts built by ``novel_pipeline.pipeline.prompts`` carry a ``STAGE:`` marker
    line; the reply shape follows it so every stage can parse the output.
    """

    def __init__(self, *, approve_reviews: bool = True, words: int = 300) -> None:
        self.approve_reviews = approve_reviews
        self.words = words
        self.calls: list[str] = []
        self.last_usage = CompletionUsage()

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        match = _STAGE_MARKER.search(user_prompt)
        stage = match.group("stage") if match else "generate_chapter"
        self.calls.append(stage)
        reply = self._reply(stage)
        # Word counts stand in for tokens.
        self.last_usage = CompletionUsage(
            input_tokens=len(system_prompt.split()) + len(user_prompt.split()),
            output_tokens=len(reply.split()),
        )
        return reply

    def _reply(self, stage: str) -> str:
        if stage in {"generate_chapter", "revision"}:
            return self._prose()
        if stage == "structural_review":
            return json.dumps(
                {
                    "approved": self.approve_reviews,
                    "issues": [] if self.approve_reviews else ["Midpoint lacks stakes"],
                    "suggestions": [] if self.approve_reviews else ["Raise the cost of failure"],
                },
            )
        if stage == "generate_summary":
            return "Mara waits out the storm and confronts the visitor she feared."
        if stage == "update_states":
            return json.dumps({"Mara": {"location": "cottage", "emotional_state": "wary"}})
        return json.dumps({"flags": []})

    def _prose(self) -> str:
        words = _LOREM.split()
        repeated = (words * (self.words // len(words) + 1))[: self.words]
        return " ".join(repeated)
