"""Shared fixtures: a scripted completion provider and engine factory."""

import asyncio
import inspect
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from parley.services.completion_provider import CompletionProvider
from parley.services.negotiation_engine import NegotiationEngine


class ScriptedProvider(CompletionProvider):
    """Replays canned agent responses, one per call, in fragments.

    Args:
        responses: Full response text for each successive call
        fragment_size: Characters per streamed fragment
        fail_at: Call index that raises ``error`` instead of responding
        hang_at: Call index that streams its first fragment and then blocks
    """

    def __init__(
        self,
        responses: List[str],
        fragment_size: int = 8,
        fail_at: Optional[int] = None,
        error: Optional[Exception] = None,
        hang_at: Optional[int] = None
    ):
        self.responses = list(responses)
        self.fragment_size = fragment_size
        self.fail_at = fail_at
        self.error = error or RuntimeError("provider failed")
        self.hang_at = hang_at
        self.calls = []
        self.hanging = asyncio.Event()

    async def stream_completion(self, api_key, model, messages, on_delta):
        index = len(self.calls)
        self.calls.append({"api_key": api_key, "model": model, "messages": messages})

        if index == self.fail_at:
            raise self.error

        text = self.responses[index]
        fragments = [text[i:i + self.fragment_size] for i in range(0, len(text), self.fragment_size)]
        for position, fragment in enumerate(fragments):
            result = on_delta(fragment)
            if inspect.isawaitable(result):
                await result
            if index == self.hang_at and position == 0:
                self.hanging.set()
                await asyncio.Event().wait()
        return text


@pytest.fixture
def scripted_provider():
    """Factory for ``ScriptedProvider`` instances."""
    return ScriptedProvider


@pytest.fixture
def make_engine():
    """Factory returning ``(engine, provider)`` with no inter-turn delay."""
    def factory(responses, max_rounds=20, **provider_kwargs):
        provider = ScriptedProvider(responses, **provider_kwargs)
        engine = NegotiationEngine(
            provider,
            api_key="test-key",
            max_rounds=max_rounds,
            turn_delay_seconds=0,
            audit_logger=MagicMock(),
        )
        return engine, provider
    return factory


LAUNCH_RESPONSES = [
    "<think>ok</think><propose_plan>Launch v1</propose_plan>",
    "<critique>Missing rollback plan</critique>",
    "<propose_plan>Launch v1 with rollback</propose_plan>",
    "<agree>looks complete</agree>",
    "<agree>agreed</agree>",
]


@pytest.fixture
def launch_responses():
    """Five scripted turns that end in agreement after two rounds."""
    return list(LAUNCH_RESPONSES)
