"""
Speaker selection for TRIAD dialogues.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

Three interchangeable strategies pick which role speaks next:

1. round_robin: fixed cycle (moderator, initiator, reactor), ignores metrics
2. balanced: fewest utterances so far, never the previous speaker
3. reactive: moderator steps in on drift, tension, stalled momentum or
   a long absence; otherwise initiator and reactor alternate

Randomness goes through an injected random.Random for reproducibility.
"""

import random
from typing import Dict, Optional, Sequence, Tuple

from .roles import Role, ROLE_ORDER, Utterance
from .metrics import MetricsSnapshot


# Stricter than the forecast thresholds in metrics.py; the forecast is advisory.
INTERVENTION_DRIFT = 0.85
INTERVENTION_TENSION = 0.9
INTERVENTION_MOMENTUM = 0.2
INTERVENTION_MAX_ABSENCE = 10


def turns_since_moderator(history: Sequence[Utterance]) -> int:
    """Utterances since the moderator last spoke (whole history if never)."""
    for offset, utterance in enumerate(reversed(history)):
        if utterance.role == Role.MODERATOR:
            return offset
    return len(history)


def should_moderator_intervene(metrics: Optional[MetricsSnapshot], since_moderator: int) -> bool:
    """True when the moderator must take the next turn."""
    if since_moderator > INTERVENTION_MAX_ABSENCE:
        return True
    if metrics is None:
        return False
    return (
        metrics.topic_drift > INTERVENTION_DRIFT
        or metrics.tension > INTERVENTION_TENSION
        or metrics.momentum < INTERVENTION_MOMENTUM
    )


class SpeakerPolicy:
    """Base strategy. Subclasses implement select()."""

    name = "base"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def select(self, history: Sequence[Utterance], metrics: Optional[MetricsSnapshot]) -> Role:
        raise NotImplementedError

    def reset(self):
        """Forget any internal cursor."""


class RoundRobinPolicy(SpeakerPolicy):
    """Cyclic fixed order."""

    name = "round_robin"

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        order: Tuple[Role, ...] = (Role.MODERATOR, Role.INITIATOR, Role.REACTOR)
    ):
        super().__init__(rng)
        self.order = tuple(order)
        self.cursor = 0

    def select(self, history, metrics):
        role = self.order[self.cursor % len(self.order)]
        self.cursor = (self.cursor + 1) % len(self.order)
        return role

    def reset(self):
        self.cursor = 0


class BalancedPolicy(SpeakerPolicy):
    """Fewest utterances among roles other than the previous speaker."""

    name = "balanced"

    def select(self, history, metrics):
        counts: Dict[Role, int] = {role: 0 for role in ROLE_ORDER}
        for utterance in history:
            counts[utterance.role] += 1

        last = history[-1].role if history else None
        best = None
        for role in ROLE_ORDER:
            if role == last:
                continue
            if best is None or counts[role] < counts[best]:
                best = role
        return best


class ReactivePolicy(SpeakerPolicy):
    """
    Metrics-driven selection (default).

    The moderator opens an empty conversation and steps in when
    should_moderator_intervene() fires. After the moderator, the
    next speaker is drawn uniformly from initiator and reactor.
    """

    name = "reactive"

    def select(self, history, metrics):
        if not history:
            return Role.MODERATOR

        if should_moderator_intervene(metrics, turns_since_moderator(history)):
            return Role.MODERATOR

        last = history[-1].role
        if last == Role.INITIATOR:
            return Role.REACTOR
        if last == Role.REACTOR:
            return Role.INITIATOR
        return self.rng.choice([Role.INITIATOR, Role.REACTOR])


POLICIES = {
    RoundRobinPolicy.name: RoundRobinPolicy,
    BalancedPolicy.name: BalancedPolicy,
    ReactivePolicy.name: ReactivePolicy,
}


def create_policy(name: str, rng: Optional[random.Random] = None) -> SpeakerPolicy:
    """Build a strategy by name."""
    try:
        return POLICIES[name](rng)
    except KeyError:
        raise ValueError(f"Unknown strategy: {name!r} (expected one of {list(POLICIES)})")
