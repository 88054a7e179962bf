"""
Shared fixtures: a controllable clock and a scripted provider client.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from llm_mediator.core.limiter import LLMResponse
from llm_mediator.core.token_counter import TokenUsage

# 2025-09-15T00:00:00Z
SEPTEMBER_15 = datetime(2025, 9, 15, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Clock whose sleep advances time instantly and records the delay."""

    def __init__(self, start: float = SEPTEMBER_15):
        self.now = start
        self.sleeps = []

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedProvider:
    """Provider client that plays back a list of responses and failures.

    The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def send(self, prompt, options):
        self.calls.append((prompt, options))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_response(model="gpt-4o-mini", prompt_tokens=100, completion_tokens=50, content="ok"):
    return LLMResponse(
        id="resp_123",
        model=model,
        created_at=int(SEPTEMBER_15),
        content=content,
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        raw={},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def provider_factory():
    return ScriptedProvider


@pytest.fixture
def clock_factory():
    return FakeClock
