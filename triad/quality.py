"""
Quality scoring for TRIAD experiment outcomes.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

One weighting, used by every path that produces QualityMetrics:
overall = sum(QUALITY_WEIGHTS[k] * component[k]). Humor is reported
but does not enter the overall score.
"""

from typing import Dict

from .roles import Role
from .metrics import MetricsSnapshot
from .evolution import QualityMetrics


QUALITY_WEIGHTS: Dict[str, float] = {
    "coherence": 1 / 3,
    "engagement": 1 / 3,
    "topic_relevance": 1 / 3,
}

# Used by the text heuristic, which has no topic signal of its own
NEUTRAL_TOPIC_RELEVANCE = 0.7


def overall_score(coherence: float, engagement: float, topic_relevance: float) -> float:
    score = (
        QUALITY_WEIGHTS["coherence"] * coherence
        + QUALITY_WEIGHTS["engagement"] * engagement
        + QUALITY_WEIGHTS["topic_relevance"] * topic_relevance
    )
    return max(0.0, min(1.0, score))


def quality_from_metrics(snapshot: MetricsSnapshot) -> QualityMetrics:
    """Score an utterance from the analyzer snapshot taken after it."""
    topic_relevance = 1 - snapshot.topic_drift
    return QualityMetrics(
        coherence=snapshot.coherence,
        engagement=snapshot.engagement,
        humor=snapshot.humor,
        topic_relevance=topic_relevance,
        overall=overall_score(snapshot.coherence, snapshot.engagement, topic_relevance),
    )


def quality_from_text(text: str, role: Role) -> QualityMetrics:
    """
    Heuristic fallback when analysis is disabled.

    Longer replies read as more coherent; questions and exclamations
    read as more engaging.
    """
    length_score = min(len(text) / 100, 1.0)
    coherence = 0.2 + 0.8 * length_score
    engagement = 0.5 + (0.2 if "?" in text else 0.0) + (0.2 if "!" in text else 0.0)
    humor = 0.7 if role == Role.INITIATOR else 0.5

    return QualityMetrics(
        coherence=coherence,
        engagement=engagement,
        humor=humor,
        topic_relevance=NEUTRAL_TOPIC_RELEVANCE,
        overall=overall_score(coherence, engagement, NEUTRAL_TOPIC_RELEVANCE),
    )


def quality_from_rating(rating: float) -> QualityMetrics:
    """Map a 1-5 user rating onto every component."""
    score = max(0.0, min(1.0, rating / 5))
    return QualityMetrics(
        coherence=score,
        engagement=score,
        humor=score,
        topic_relevance=score,
        overall=score,
    )
