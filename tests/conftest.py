"""Shared test fixtures: FakeCompletionClient for testing without model servers."""

import random

import pytest

from triad.roles import Role, TriadConfig, Utterance
from triad.completion_client import CompletionCancelled, DebugLog, ResponseMetadata


class FakeCompletionClient:
    """Completion client that returns scripted replies. No HTTP calls.

    Each scripted item is either a string (the reply) or an exception
    instance (raised from complete()).
    """

    def __init__(self, responses=None, default="Done."):
        self._responses = list(responses or [])
        self._default = default
        self.requests = []  # record all requests for assertions
        self.debug_log = DebugLog(10)

    def complete(self, request, cancel_event=None, on_delta=None):
        if cancel_event is not None and cancel_event.is_set():
            raise CompletionCancelled("Completion cancelled before request")
        self.requests.append(request)
        item = self._responses.pop(0) if self._responses else self._default
        if isinstance(item, Exception):
            raise item
        if on_delta:
            for token in item.split(" "):
                on_delta(token)
        return item, ResponseMetadata(
            model=request.model,
            provider=request.provider,
            latency_ms=100.0,
            streamed=True,
            prompt_tokens=10,
            completion_tokens=5,
            total_tokens=15,
        )


def make_utterance(role, text, timestamp=0.0, **kwargs):
    return Utterance(role=role, text=text, timestamp=timestamp, **kwargs)


def make_history(*pairs, start=1000.0, gap=2.0):
    """Build utterances from (role, text) pairs with evenly spaced timestamps."""
    return [
        make_utterance(role, text, timestamp=start + i * gap)
        for i, (role, text) in enumerate(pairs)
    ]


@pytest.fixture
def fake_client():
    return FakeCompletionClient()


@pytest.fixture
def fake_client_with_responses():
    def _factory(responses, default="Done."):
        return FakeCompletionClient(responses=responses, default=default)
    return _factory


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def triad_config():
    return TriadConfig(max_turns=2, strategy="round_robin", seed=7)


@pytest.fixture
def refrigerator_history():
    return make_history(
        (Role.MODERATOR, "Today's theme is refrigerators. Why do they hum?"),
        (Role.INITIATOR, "Refrigerators hum because they miss the ice age and sing about it."),
        (Role.REACTOR, "No, the hum is the compressor keeping refrigerators cold."),
    )
