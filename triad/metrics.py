"""
Conversation metrics for TRIAD dialogue analysis.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

Turns a rolling utterance history into a normalized snapshot:

- Momentum: recent vs older utterance length and arrival-time variance
- Topic drift: inverse keyword density against the session topic
- Tension: short replies, exclamation/question marks, negative words
- Coherence: keyword overlap between adjacent utterances
- Engagement: speaker diversity, length variation, question rate
- Humor: laughter markers plus the initiator's baseline

Every metric has an explicit neutral default for short or empty
histories, so analysis never produces NaN and never raises.
"""

import re
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

import numpy as np

from .roles import Role, ROLE_ORDER, Utterance


# =============================================================================
# Vocabulary
# =============================================================================

STOP_WORDS = frozenset("""
a an the and or but if then so of to in on at by for with about as into from
is are was were be been being am do does did have has had i you he she it we
they me him her us them my your his its our their this that these those there
here what which who whom whose why how when where not no yes just very too can
could would should will shall may might must also than let lets im youre dont
""".split())

NEGATIVE_WORDS = frozenset([
    "no", "not", "never", "wrong", "nope", "but", "however", "nonsense", "stop",
])

HUMOR_MARKERS = (
    "haha", "lol", "lmao", "rofl", "hehe", "funny", "hilarious", "laugh", "joke",
)

_TOKEN_SPLIT = re.compile(r"[^\w']+")


def extract_keywords(text: str) -> Set[str]:
    """Lowercase word set with stop words and single characters removed."""
    words = set()
    for token in _TOKEN_SPLIT.split(text.lower()):
        token = token.strip("'")
        if len(token) <= 1 or token in STOP_WORDS:
            continue
        words.add(token)
    return words


def _words(text: str) -> Set[str]:
    return {t.strip("'") for t in _TOKEN_SPLIT.split(text.lower()) if t.strip("'")}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return float(max(low, min(high, value)))


# =============================================================================
# Snapshot Dataclasses
# =============================================================================

class Phase(str, Enum):
    """Coarse conversation stage, ordered."""
    OPENING = "opening"
    WARM_UP = "warm_up"
    DEVELOPMENT = "development"
    PEAK = "peak"
    CLOSING = "closing"

    @property
    def rank(self) -> int:
        return list(Phase).index(self)


# (phase, band start, band end); the closing band also absorbs ratios above 1
PHASE_BANDS = (
    (Phase.OPENING, 0.0, 0.15),
    (Phase.WARM_UP, 0.15, 0.3),
    (Phase.DEVELOPMENT, 0.3, 0.7),
    (Phase.PEAK, 0.7, 0.85),
    (Phase.CLOSING, 0.85, 1.0),
)


@dataclass(frozen=True)
class SpeakerStats:
    """Per-role participation statistics."""
    utterance_count: int = 0
    total_chars: int = 0
    average_length: float = 0.0
    last_spoke_index: int = -1
    contribution_score: float = 0.0
    topic_relevance: float = 0.0
    pattern: str = "balanced"            # leading | following | balanced


@dataclass(frozen=True)
class Recommendation:
    kind: str                            # energy_boost | topic_shift | intervention | clarification
    urgency: str                         # low | medium | high
    message: str
    target: Optional[Role] = None


@dataclass(frozen=True)
class NextSpeakerForecast:
    role: Role
    confidence: float
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class MetricsSnapshot:
    """Results of one analysis pass. Replaced every step, never mutated."""
    momentum: float
    topic_drift: float
    tension: float
    coherence: float
    engagement: float
    humor: float
    average_response_length: float
    response_time_variance: float
    keyword_density: float
    turn_balance: float
    repetition_rate: float
    speaker_stats: Dict[Role, SpeakerStats]
    phase: Phase
    phase_progress: float
    recommendations: List[Recommendation]
    forecast: NextSpeakerForecast

    def to_dict(self) -> Dict:
        return {
            "momentum": self.momentum,
            "topic_drift": self.topic_drift,
            "tension": self.tension,
            "coherence": self.coherence,
            "engagement": self.engagement,
            "humor": self.humor,
            "average_response_length": self.average_response_length,
            "response_time_variance": self.response_time_variance,
            "keyword_density": self.keyword_density,
            "turn_balance": self.turn_balance,
            "repetition_rate": self.repetition_rate,
            "speaker_stats": {
                role.value: {
                    "utterance_count": s.utterance_count,
                    "total_chars": s.total_chars,
                    "average_length": s.average_length,
                    "last_spoke_index": s.last_spoke_index,
                    "contribution_score": s.contribution_score,
                    "topic_relevance": s.topic_relevance,
                    "pattern": s.pattern,
                }
                for role, s in self.speaker_stats.items()
            },
            "phase": self.phase.value,
            "phase_progress": self.phase_progress,
            "recommendations": [
                {
                    "kind": r.kind,
                    "urgency": r.urgency,
                    "message": r.message,
                    "target": r.target.value if r.target else None,
                }
                for r in self.recommendations
            ],
            "forecast": {
                "role": self.forecast.role.value,
                "confidence": self.forecast.confidence,
                "reasons": list(self.forecast.reasons),
            },
        }


# =============================================================================
# Phase
# =============================================================================

def phase_for(current_turn: int, max_turns: int) -> Phase:
    """Map turn progress to a phase band."""
    return _phase_and_progress(current_turn, max_turns)[0]


def _phase_and_progress(current_turn: int, max_turns: int):
    ratio = current_turn / max_turns if max_turns > 0 else 0.0
    ratio = max(ratio, 0.0)

    for phase, start, end in PHASE_BANDS:
        if ratio < end or phase == Phase.CLOSING:
            progress = _clamp((ratio - start) / (end - start))
            return phase, progress
    return Phase.CLOSING, 1.0


# =============================================================================
# Engine
# =============================================================================

class MetricsEngine:
    """
    Conversation analyzer.

    Holds no state beyond the cached topic keyword set, which is
    rebuilt only when the topic string changes.
    """

    def __init__(self, topic: str = ""):
        self._topic = topic
        self._topic_keywords = extract_keywords(topic)

    @property
    def topic_keywords(self) -> Set[str]:
        return set(self._topic_keywords)

    def set_topic(self, topic: str):
        if topic != self._topic:
            self._topic = topic
            self._topic_keywords = extract_keywords(topic)

    def analyze(
        self,
        history: Sequence[Utterance],
        topic: str,
        current_turn: int,
        max_turns: int
    ) -> MetricsSnapshot:
        """
        Compute a fresh snapshot.

        Args:
            history: Ordered utterances (error utterances should be excluded by the caller)
            topic: Session topic
            current_turn: Completed turn count
            max_turns: Planned turn count

        Returns:
            MetricsSnapshot
        """
        self.set_topic(topic)
        messages = list(history)

        momentum = self.momentum(messages)
        topic_drift = self.topic_drift(messages)
        tension = self.tension(messages)
        coherence = self.coherence(messages)
        engagement = self.engagement(messages)
        humor = self.humor(messages)

        speaker_stats = self.speaker_stats(messages)
        phase, phase_progress = _phase_and_progress(current_turn, max_turns)

        recommendations = self.recommendations(momentum, topic_drift, tension)
        forecast = self.forecast(messages, speaker_stats, phase, topic_drift, tension)

        return MetricsSnapshot(
            momentum=momentum,
            topic_drift=topic_drift,
            tension=tension,
            coherence=coherence,
            engagement=engagement,
            humor=humor,
            average_response_length=self._average_length(messages),
            response_time_variance=_interval_std_ms(messages),
            keyword_density=self._keyword_density(messages),
            turn_balance=_turn_balance(messages),
            repetition_rate=self.repetition_rate(messages),
            speaker_stats=speaker_stats,
            phase=phase,
            phase_progress=phase_progress,
            recommendations=recommendations,
            forecast=forecast,
        )

    # -------------------------------------------------------------------------
    # Core metrics
    # -------------------------------------------------------------------------

    def momentum(self, messages: Sequence[Utterance]) -> float:
        if len(messages) < 3:
            return 0.5

        recent = messages[-5:]
        older = messages[-10:-5]
        if not older:
            return 0.7

        recent_avg = float(np.mean([len(m.text) for m in recent]))
        older_avg = float(np.mean([len(m.text) for m in older]))
        length_momentum = min(recent_avg / max(older_avg, 1.0), 2.0) / 2

        recent_sd = _interval_std_ms(recent)
        older_sd = _interval_std_ms(older)
        if older_sd > 0:
            time_momentum = min(older_sd / max(recent_sd, 1.0), 2.0) / 2
        else:
            time_momentum = 0.5

        return _clamp((length_momentum + time_momentum) / 2)

    def topic_drift(self, messages: Sequence[Utterance]) -> float:
        if not messages or not self._topic_keywords:
            return 0.0

        matches, total = self._keyword_counts(messages[-5:])
        if total == 0:
            return 0.5

        density = matches / total
        return _clamp(1 - density * 10)

    def tension(self, messages: Sequence[Utterance]) -> float:
        if len(messages) < 2:
            return 0.3

        recent = messages[-5:]
        n = len(recent)
        avg_length = float(np.mean([len(m.text) for m in recent]))

        if avg_length < 30:
            length_tension = 0.8
        elif avg_length < 60:
            length_tension = 0.5
        else:
            length_tension = 0.3

        marks = sum(m.text.count("!") + m.text.count("?") for m in recent)
        negatives = sum(len(_words(m.text) & NEGATIVE_WORDS) for m in recent)

        exclamation_tension = min(marks / n, 1.0)
        negative_tension = min(negatives / n, 1.0)

        return (length_tension + exclamation_tension + negative_tension) / 3

    def coherence(self, messages: Sequence[Utterance]) -> float:
        if len(messages) < 2:
            return 1.0

        pairs = min(len(messages) - 1, 5)
        linked = 0
        for i in range(len(messages) - pairs, len(messages)):
            prev_words = extract_keywords(messages[i - 1].text)
            if prev_words & extract_keywords(messages[i].text):
                linked += 1
        return linked / pairs

    def engagement(self, messages: Sequence[Utterance]) -> float:
        if len(messages) < 3:
            return 0.5

        recent = messages[-10:]
        diversity = len({m.role for m in recent}) / 3

        lengths = np.array([len(m.text) for m in recent], dtype=float)
        mean = lengths.mean()
        variation = min(float(lengths.std() / mean), 1.0) if mean > 0 else 0.0

        questions = sum(1 for m in recent if "?" in m.text)
        question_rate = questions / len(recent)

        return _clamp((diversity + variation + question_rate) / 3)

    def humor(self, messages: Sequence[Utterance]) -> float:
        if not messages:
            return 0.0

        recent = messages[-5:]
        score = 0.0
        for m in recent:
            lowered = m.text.lower()
            score += 0.2 * sum(1 for marker in HUMOR_MARKERS if marker in lowered)
            if m.role == Role.INITIATOR:
                score += 0.1
        return min(score / len(recent), 1.0)

    def repetition_rate(self, messages: Sequence[Utterance]) -> float:
        if len(messages) < 2:
            return 0.0

        recent = messages[-5:]
        repeats = 0
        for prev, curr in zip(recent, recent[1:]):
            shared = extract_keywords(prev.text) & extract_keywords(curr.text)
            repeats += sum(1 for w in shared if len(w) > 2)
        return min(repeats / (len(recent) * 3), 1.0)

    # -------------------------------------------------------------------------
    # Speakers
    # -------------------------------------------------------------------------

    def speaker_stats(self, messages: Sequence[Utterance]) -> Dict[Role, SpeakerStats]:
        stats = {}
        for role in ROLE_ORDER:
            own = [m for m in messages if m.role == role]
            if not own:
                stats[role] = SpeakerStats()
                continue

            total_chars = sum(len(m.text) for m in own)
            avg_length = total_chars / len(own)
            last_index = max(i for i, m in enumerate(messages) if m.role == role)
            relevance = self._speaker_relevance(own)
            contribution = (len(own) / len(messages)) * (avg_length / 100) * relevance

            stats[role] = SpeakerStats(
                utterance_count=len(own),
                total_chars=total_chars,
                average_length=avg_length,
                last_spoke_index=last_index,
                contribution_score=min(contribution, 1.0),
                topic_relevance=relevance,
                pattern=_response_pattern(messages, role),
            )
        return stats

    def _speaker_relevance(self, own: Sequence[Utterance]) -> float:
        if not self._topic_keywords:
            return 0.0
        matches, total = self._keyword_counts(own)
        return matches / total if total else 0.0

    # -------------------------------------------------------------------------
    # Advice
    # -------------------------------------------------------------------------

    @staticmethod
    def recommendations(momentum: float, topic_drift: float, tension: float) -> List[Recommendation]:
        advice = []
        if momentum < 0.3:
            advice.append(Recommendation(
                kind="energy_boost",
                urgency="high",
                message="Momentum is dropping. Open the topic up from a new angle.",
                target=Role.INITIATOR,
            ))
        if topic_drift > 0.7:
            advice.append(Recommendation(
                kind="topic_shift",
                urgency="medium",
                message="The conversation is drifting off topic. Consider a moderator intervention.",
                target=Role.MODERATOR,
            ))
        if tension > 0.8:
            advice.append(Recommendation(
                kind="intervention",
                urgency="high",
                message="Tension is rising. A calming line is needed.",
                target=Role.MODERATOR,
            ))
        return advice

    @staticmethod
    def forecast(
        messages: Sequence[Utterance],
        speaker_stats: Dict[Role, SpeakerStats],
        phase: Phase,
        topic_drift: float,
        tension: float
    ) -> NextSpeakerForecast:
        """Advisory next-speaker prediction, independent of the active policy."""
        reasons = []
        role = Role.INITIATOR
        confidence = 0.5
        last = messages[-1].role if messages else None

        if topic_drift > 0.7 or tension > 0.8:
            role = Role.MODERATOR
            confidence = 0.9
            reasons.append("conversation needs steering")
            if topic_drift > 0.7:
                reasons.append("drifting off topic")
            if tension > 0.8:
                reasons.append("tension is high")
        elif last == Role.INITIATOR:
            role = Role.REACTOR
            confidence = 0.85
            reasons.append("initiator's line invites a reaction")
        elif last == Role.REACTOR:
            role = Role.INITIATOR
            confidence = 0.8
            reasons.append("reaction calls for a comeback")
        elif last == Role.MODERATOR:
            initiator_count = speaker_stats[Role.INITIATOR].utterance_count
            reactor_count = speaker_stats[Role.REACTOR].utterance_count
            if initiator_count < reactor_count:
                role = Role.INITIATOR
                reasons.append("initiator has spoken less")
            else:
                role = Role.REACTOR
                reasons.append("keeping the balance")
            confidence = 0.7

        if phase == Phase.OPENING:
            confidence *= 0.9
            reasons.append("opening is fluid")
        elif phase == Phase.PEAK:
            confidence *= 1.1
            reasons.append("peak is predictable")

        return NextSpeakerForecast(role=role, confidence=min(confidence, 1.0), reasons=reasons)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _keyword_counts(self, messages: Iterable[Utterance]):
        """(topic keyword matches, distinct keywords) summed over messages."""
        matches = 0
        total = 0
        for m in messages:
            words = extract_keywords(m.text)
            total += len(words)
            matches += len(words & self._topic_keywords)
        return matches, total

    def _keyword_density(self, messages: Sequence[Utterance]) -> float:
        matches, total = self._keyword_counts(messages)
        return matches / total if total else 0.0

    @staticmethod
    def _average_length(messages: Sequence[Utterance]) -> float:
        if not messages:
            return 0.0
        return float(np.mean([len(m.text) for m in messages]))


def _interval_std_ms(messages: Sequence[Utterance]) -> float:
    """Standard deviation of inter-arrival times in milliseconds."""
    if len(messages) < 2:
        return 0.0
    intervals = [
        (curr.timestamp - prev.timestamp) * 1000
        for prev, curr in zip(messages, messages[1:])
        if curr.timestamp and prev.timestamp
    ]
    if not intervals:
        return 0.0
    return float(np.std(intervals))


def _turn_balance(messages: Sequence[Utterance]) -> float:
    counts = {}
    for m in messages:
        counts[m.role] = counts.get(m.role, 0) + 1
    if not counts:
        return 0.0
    return min(counts.values()) / max(counts.values())


def _response_pattern(messages: Sequence[Utterance], role: Role) -> str:
    indices = [i for i, m in enumerate(messages) if m.role == role]
    if len(indices) < 2:
        return "balanced"

    leading = 0
    following = 0
    for i in indices:
        if i == 0 or messages[i - 1].role == Role.MODERATOR:
            leading += 1
        else:
            following += 1

    if leading > following * 1.5:
        return "leading"
    if following > leading * 1.5:
        return "following"
    return "balanced"
