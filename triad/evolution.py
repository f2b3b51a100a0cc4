"""
Adaptive prompt evolution for TRIAD roles.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

Each role owns one VariantPopulation: a capped arena of competing
prompt formulations (system text + style text + temperature).

- Selection is a bandit: cold-start variants first, then UCB
  exploration with probability exploration_rate, else the promoted best
- Every experiment outcome updates one ledger by incremental mean
- Weak variants breed improved children by mutation, crossover or
  heuristic repair; every third experiment also spawns a diversity mutant
- The population is pruned to max_variants; the baseline is never removed

AdaptivePromptSystem bundles the three populations with the global
experiment log and exports/imports the whole state as a JSON-ready dict.
"""

import math
import random
import threading
import time
from dataclasses import dataclass, field, asdict, fields
from typing import Callable, Dict, List, Optional

from .roles import Role, ROLE_ORDER, RoleConfig, parse_role


class ConfigurationError(RuntimeError):
    """Raised when a population is used before it is configured."""


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class EvolutionConfig:
    """Immutable tunables, supplied once at population construction."""
    exploration_rate: float = 0.2
    min_sample_size: int = 5
    confidence_threshold: float = 0.95
    mutation_rate: float = 0.1
    crossover_rate: float = 0.3
    selection_pressure: float = 1.5
    max_variants: int = 10
    max_generations: int = 20
    auto_improve: bool = True
    improvement_threshold: float = 0.1

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "EvolutionConfig":
        """Build from a mapping, ignoring unknown keys."""
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict:
        return asdict(self)


# =============================================================================
# Ledger & Variant Dataclasses
# =============================================================================

@dataclass
class UserRating:
    timestamp: float
    score: float
    comment: Optional[str] = None
    conversation_id: str = ""


@dataclass
class PerformanceLedger:
    """Running statistics for one variant. Updated only by incremental means."""
    total_uses: int = 0
    success_rate: float = 0.0
    avg_quality_score: float = 0.5
    avg_response_length: float = 0.0
    avg_response_time: float = 0.0
    coherence_score: float = 0.5
    engagement_score: float = 0.5
    topic_relevance_score: float = 0.5
    user_ratings: List[UserRating] = field(default_factory=list)
    avg_user_rating: float = 0.0
    confidence_estimate: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict) -> "PerformanceLedger":
        data = dict(data)
        data["user_ratings"] = [UserRating(**r) for r in data.get("user_ratings", [])]
        return cls(**data)


@dataclass
class PromptVariant:
    """One candidate prompt formulation for a role."""
    id: str
    role: Role
    version: int
    generation: int
    system_text: str
    style_text: str
    temperature: float
    performance: PerformanceLedger = field(default_factory=PerformanceLedger)
    created_at: float = field(default_factory=time.time)
    parent_id: Optional[str] = None
    mutation_kind: str = "manual"        # manual | auto | crossover | mutation
    experiment_count: int = 0
    is_active: bool = True
    is_baseline: bool = False

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "PromptVariant":
        data = dict(data)
        data["role"] = parse_role(data["role"])
        data["performance"] = PerformanceLedger.from_dict(data.get("performance", {}))
        return cls(**data)


@dataclass
class QualityMetrics:
    coherence: float
    engagement: float
    humor: float
    topic_relevance: float
    overall: float


@dataclass
class ResponseMetrics:
    avg_length: float
    avg_time: float
    turn_count: int


@dataclass
class UserFeedback:
    rating: float                        # 1-5
    comment: Optional[str] = None


@dataclass
class ExperimentOutcome:
    """Write-once result of using one variant for one utterance."""
    variant_id: str
    conversation_id: str
    timestamp: float
    quality: QualityMetrics
    response: ResponseMetrics
    user_feedback: Optional[UserFeedback] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "ExperimentOutcome":
        feedback = data.get("user_feedback")
        return cls(
            variant_id=data["variant_id"],
            conversation_id=data["conversation_id"],
            timestamp=data["timestamp"],
            quality=QualityMetrics(**data["quality"]),
            response=ResponseMetrics(**data["response"]),
            user_feedback=UserFeedback(**feedback) if feedback else None,
        )


@dataclass
class EvolutionStats:
    """Aggregate view of one role's population."""
    total_variants: int
    active_variants: int
    max_generation: int
    best_score: float
    improvement_rate: float
    experiment_count: int

    def to_dict(self) -> Dict:
        return asdict(self)


# =============================================================================
# Breeding vocabulary
# =============================================================================

TEXT_MUTATIONS: List[Callable[[str], str]] = [
    lambda p: p + "\nSay it in one short line.",
    lambda p: p + "\nInclude one concrete example.",
    lambda p: p + "\nLean harder into humor.",
    lambda p: p + "\nRespond directly to the previous line.",
    lambda p: p + "\nTake an unexpected angle.",
    lambda p: p.replace(". ", ".\n"),
    lambda p: p.replace("concise", "detailed"),
    lambda p: p.replace("detailed", "concise"),
    lambda p: p + "\nKeep a clear link to what was just said.",
    lambda p: p + "\nDo not stray far from the topic.",
    lambda p: p + "\nAsk questions actively.",
]

TEMPERATURE_MUTATIONS = ("raise", "lower", "reset")

MAJOR_MUTATION_RATE = 0.1
MAJOR_MUTATION_PREFIX = "Fresh style: "

IMPROVEMENT_CEILING = 0.7
CROSSOVER_PARTNER_FLOOR = 0.6
SUCCESS_THRESHOLD = 0.5
DIVERSITY_INTERVAL = 3
SCORE_TOLERANCE = 1e-9


# =============================================================================
# Population
# =============================================================================

class VariantPopulation:
    """
    Per-role arena of prompt variants.

    Variants are kept in creation order; ids are assigned from a
    monotonic per-population serial so lineage lookups are plain
    id lookups.
    """

    def __init__(
        self,
        role: Role,
        config: Optional[EvolutionConfig] = None,
        rng: Optional[random.Random] = None,
        verbose: bool = False
    ):
        self.role = role
        self.config = config or EvolutionConfig()
        self.rng = rng or random.Random()
        self.verbose = verbose

        self.variants: List[PromptVariant] = []
        self.current_best_id: Optional[str] = None
        self.serial = 0

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.variants)

    def get(self, variant_id: str) -> Optional[PromptVariant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    @property
    def baseline(self) -> Optional[PromptVariant]:
        for variant in self.variants:
            if variant.is_baseline:
                return variant
        return None

    @property
    def current_best(self) -> Optional[PromptVariant]:
        if self.current_best_id is None:
            return None
        return self.get(self.current_best_id)

    def active_variants(self) -> List[PromptVariant]:
        return [v for v in self.variants if v.is_active]

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def register_baseline(self, system_text: str, style_text: str, temperature: float) -> PromptVariant:
        """Create the generation-1 baseline and promote it to current best."""
        if self.baseline is not None:
            raise ConfigurationError(f"Baseline already registered for role {self.role.value}")

        baseline = PromptVariant(
            id=f"{self.role.value}_v1_baseline",
            role=self.role,
            version=1,
            generation=1,
            system_text=system_text,
            style_text=style_text,
            temperature=temperature,
            mutation_kind="manual",
            is_baseline=True,
        )
        self.variants.append(baseline)
        self.current_best_id = baseline.id
        return baseline

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def select_prompt(self) -> PromptVariant:
        """
        Pick the variant to use for the next utterance.

        Cold-start variants (experiment_count < min_sample_size) are
        returned first regardless of the exploration draw.

        Raises:
            ConfigurationError: If no variants are registered
        """
        if not self.variants:
            raise ConfigurationError(
                f"No variants registered for role {self.role.value}; call register_baseline first"
            )

        active = self.active_variants()
        for variant in active:
            if variant.experiment_count < self.config.min_sample_size:
                return variant

        if active and self.rng.random() < self.config.exploration_rate:
            return self._ucb_choice(active)

        best = self.current_best
        if best is not None and best.is_active:
            return best
        return active[0] if active else self.variants[0]

    @staticmethod
    def _ucb_choice(active: List[PromptVariant]) -> PromptVariant:
        total_trials = sum(v.experiment_count for v in active)
        best_variant = active[0]
        best_score = -math.inf
        for variant in active:
            if variant.experiment_count == 0:
                return variant
            bonus = math.sqrt(2 * math.log(max(total_trials, 1)) / variant.experiment_count)
            score = variant.performance.avg_quality_score + bonus
            if score > best_score:
                best_score = score
                best_variant = variant
        return best_variant

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def record_experiment(self, outcome: ExperimentOutcome) -> Optional[PromptVariant]:
        """
        Fold one outcome into its variant's ledger, then maybe breed.

        Returns:
            The updated variant, or None if the id is unknown
        """
        variant = self.get(outcome.variant_id)
        if variant is None:
            return None

        self._update_ledger(variant, outcome)
        variant.experiment_count += 1
        self._update_best()

        if self.verbose:
            perf = variant.performance
            print(f"  [Evolution] {variant.id}: score={perf.avg_quality_score:.3f}, uses={perf.total_uses}")

        if self.config.auto_improve:
            self._check_and_improve(variant)

        return variant

    def _update_ledger(self, variant: PromptVariant, outcome: ExperimentOutcome):
        perf = variant.performance
        n = perf.total_uses

        def step(old: float, sample: float) -> float:
            return (old * n + sample) / (n + 1)

        quality = outcome.quality
        perf.avg_quality_score = step(perf.avg_quality_score, quality.overall)
        perf.coherence_score = step(perf.coherence_score, quality.coherence)
        perf.engagement_score = step(perf.engagement_score, quality.engagement)
        perf.topic_relevance_score = step(perf.topic_relevance_score, quality.topic_relevance)
        perf.avg_response_length = step(perf.avg_response_length, outcome.response.avg_length)
        perf.avg_response_time = step(perf.avg_response_time, outcome.response.avg_time)
        perf.success_rate = step(perf.success_rate, 1.0 if quality.overall >= SUCCESS_THRESHOLD else 0.0)
        perf.total_uses = n + 1

        if outcome.user_feedback is not None:
            perf.user_ratings.append(UserRating(
                timestamp=outcome.timestamp,
                score=outcome.user_feedback.rating,
                comment=outcome.user_feedback.comment,
                conversation_id=outcome.conversation_id,
            ))
            k = len(perf.user_ratings)
            perf.avg_user_rating = (perf.avg_user_rating * (k - 1) + outcome.user_feedback.rating) / k

        if perf.total_uses >= self.config.min_sample_size:
            perf.confidence_estimate = confidence_estimate(perf.avg_quality_score, perf.total_uses)

    def _update_best(self):
        """Promote a better-sampled variant only on a clear, confident gain."""
        eligible = [
            v for v in self.active_variants()
            if v.experiment_count >= self.config.min_sample_size
        ]
        if not eligible:
            return

        candidate = max(eligible, key=lambda v: v.performance.avg_quality_score)
        incumbent = self.current_best
        if incumbent is None:
            self.current_best_id = candidate.id
            return
        if candidate.id == incumbent.id:
            return

        if self.is_significantly_better(candidate, incumbent):
            self.current_best_id = candidate.id
            if self.verbose:
                print(f"  [Evolution] New best for {self.role.value}: {candidate.id} "
                      f"(score: {candidate.performance.avg_quality_score:.3f})")

    def is_significantly_better(self, candidate: PromptVariant, incumbent: PromptVariant) -> bool:
        gap = candidate.performance.avg_quality_score - incumbent.performance.avg_quality_score
        if gap + SCORE_TOLERANCE < self.config.improvement_threshold:
            return False
        return candidate.performance.confidence_estimate > self.config.confidence_threshold

    # -------------------------------------------------------------------------
    # Breeding
    # -------------------------------------------------------------------------

    def _check_and_improve(self, variant: PromptVariant):
        if variant.experiment_count < 1:
            return

        if variant.performance.avg_quality_score < IMPROVEMENT_CEILING:
            child = self.generate_improved_variant(variant)
            if child is not None and self.add_variant(child) and self.verbose:
                print(f"  [Evolution] Improved {variant.id} -> {child.id} ({child.mutation_kind})")

        if (variant.experiment_count >= DIVERSITY_INTERVAL
                and variant.experiment_count % DIVERSITY_INTERVAL == 0
                and variant.generation < self.config.max_generations):
            mutant = self.mutate(variant)
            if self.add_variant(mutant) and self.verbose:
                print(f"  [Evolution] Diversity mutant {mutant.id}")

    def generate_improved_variant(self, parent: PromptVariant) -> Optional[PromptVariant]:
        """
        Breed one child from a weak parent.

        Mechanism draw: below mutation_rate mutates, below
        mutation_rate + crossover_rate crosses over, otherwise repairs.
        Crossover without a partner falls back to repair.
        """
        if parent.generation >= self.config.max_generations:
            return None

        draw = self.rng.random()
        if draw < self.config.mutation_rate:
            return self.mutate(parent)
        if draw < self.config.mutation_rate + self.config.crossover_rate:
            child = self.crossover(parent)
            if child is not None:
                return child
        return self.repair(parent)

    def mutate(self, parent: PromptVariant) -> PromptVariant:
        """Apply one random transform to text or temperature."""
        system_text = parent.system_text
        style_text = parent.style_text
        temperature = parent.temperature

        choice = self.rng.randrange(len(TEXT_MUTATIONS) + len(TEMPERATURE_MUTATIONS))
        if choice < len(TEXT_MUTATIONS):
            transform = TEXT_MUTATIONS[choice]
            if self.rng.random() < 0.5:
                system_text = transform(system_text)
            else:
                style_text = transform(style_text)
        else:
            op = TEMPERATURE_MUTATIONS[choice - len(TEXT_MUTATIONS)]
            if op == "raise":
                temperature = min(1.0, temperature + 0.15)
            elif op == "lower":
                temperature = max(0.1, temperature - 0.15)
            else:
                temperature = self.rng.uniform(0.1, 1.0)

        if self.rng.random() < MAJOR_MUTATION_RATE:
            style_text = MAJOR_MUTATION_PREFIX + style_text
            temperature = self.rng.uniform(0.2, 1.0)

        return self._child(
            parent, "mutation", "mut",
            system_text=system_text,
            style_text=style_text,
            temperature=temperature,
        )

    def crossover(self, parent: PromptVariant) -> Optional[PromptVariant]:
        """
        Combine the parent with the best eligible partner.

        Returns:
            The child, or None when no active non-parent variant
            scores above the partner floor
        """
        partners = [
            v for v in self.active_variants()
            if v.id != parent.id and v.performance.avg_quality_score > CROSSOVER_PARTNER_FLOOR
        ]
        if not partners:
            return None

        other = max(partners, key=lambda v: v.performance.avg_quality_score)
        pp, op = parent.performance, other.performance

        return self._child(
            parent, "crossover", "cross",
            system_text=parent.system_text if pp.coherence_score > op.coherence_score else other.system_text,
            style_text=parent.style_text if pp.engagement_score > op.engagement_score else other.style_text,
            temperature=(parent.temperature + other.temperature) / 2,
            version=max(parent.version, other.version) + 1,
            generation=max(parent.generation, other.generation) + 1,
        )

    def repair(self, parent: PromptVariant) -> PromptVariant:
        """Append one corrective directive per ledger weakness."""
        perf = parent.performance
        system_text = parent.system_text
        style_text = parent.style_text

        if perf.coherence_score < 0.5:
            system_text += "\nBuild on what was just said."
        if perf.engagement_score < 0.5:
            style_text += "\nReact actively to the other speaker."
        if perf.topic_relevance_score < 0.5:
            system_text += "\nStay close to the topic."
        if perf.avg_response_length < 30:
            style_text += "\nExplain a little more."
        if perf.avg_response_length > 200:
            style_text += "\nKeep it brief."

        if system_text == parent.system_text and style_text == parent.style_text:
            style_text += "\nMake every line count."

        return self._child(
            parent, "auto", "improved",
            system_text=system_text,
            style_text=style_text,
            temperature=parent.temperature,
        )

    def _child(
        self,
        parent: PromptVariant,
        kind: str,
        tag: str,
        system_text: str,
        style_text: str,
        temperature: float,
        version: Optional[int] = None,
        generation: Optional[int] = None
    ) -> PromptVariant:
        version = version if version is not None else parent.version + 1
        self.serial += 1
        return PromptVariant(
            id=f"{self.role.value}_v{version}_{tag}_{self.serial}",
            role=self.role,
            version=version,
            generation=generation if generation is not None else parent.generation + 1,
            system_text=system_text,
            style_text=style_text,
            temperature=round(temperature, 4),
            parent_id=parent.id,
            mutation_kind=kind,
        )

    # -------------------------------------------------------------------------
    # Capacity
    # -------------------------------------------------------------------------

    def add_variant(self, variant: PromptVariant) -> bool:
        """
        Insert a variant, pruning first when at capacity.

        Returns:
            False if the population is full and nothing could be pruned
        """
        if len(self.variants) >= self.config.max_variants:
            if self.prune_worst_variant() is None:
                return False
        self.variants.append(variant)
        return True

    def prune_worst_variant(self) -> Optional[PromptVariant]:
        """
        Remove the lowest-scoring non-baseline variant.

        Active variants are considered first. The baseline is never
        removed.

        Returns:
            The removed variant, or None when nothing was prunable
        """
        if len(self.variants) <= 1:
            return None

        candidates = [v for v in self.variants if not v.is_baseline and v.is_active]
        if not candidates:
            candidates = [v for v in self.variants if not v.is_baseline]
        if not candidates:
            return None

        worst = min(candidates, key=lambda v: v.performance.avg_quality_score)
        self.variants.remove(worst)

        if worst.id == self.current_best_id:
            baseline = self.baseline
            self.current_best_id = baseline.id if baseline else None

        if self.verbose:
            print(f"  [Evolution] Pruned {worst.id} (score: {worst.performance.avg_quality_score:.3f})")
        return worst

    def set_active(self, variant_id: str, active: bool) -> bool:
        """Toggle a non-baseline variant. Returns False if not allowed."""
        variant = self.get(variant_id)
        if variant is None or variant.is_baseline:
            return False
        variant.is_active = active
        return True

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def stats(self) -> EvolutionStats:
        best = self.current_best
        baseline = self.baseline

        improvement = 0.0
        if best and baseline and baseline.performance.avg_quality_score > 0:
            improvement = (
                (best.performance.avg_quality_score - baseline.performance.avg_quality_score)
                / baseline.performance.avg_quality_score
            )

        return EvolutionStats(
            total_variants=len(self.variants),
            active_variants=len(self.active_variants()),
            max_generation=max((v.generation for v in self.variants), default=0),
            best_score=best.performance.avg_quality_score if best else 0.0,
            improvement_rate=improvement,
            experiment_count=sum(v.experiment_count for v in self.variants),
        )

    def to_dict(self) -> Dict:
        return {
            "variants": [v.to_dict() for v in self.variants],
            "current_best": self.current_best_id,
            "serial": self.serial,
        }

    def load_dict(self, data: Dict):
        self.variants = [PromptVariant.from_dict(v) for v in data.get("variants", [])]
        self.current_best_id = data.get("current_best")
        self.serial = int(data.get("serial", 0))


def confidence_estimate(p: float, n: int) -> float:
    """Normal-approximation confidence heuristic: 1 - 1.96 * SE, in [0, 1]."""
    if n < 2:
        return 0.0
    margin = 1.96 * math.sqrt(max(p * (1 - p), 0.0) / n)
    return max(0.0, min(1.0, 1 - margin))


# =============================================================================
# Facade
# =============================================================================

class AdaptivePromptSystem:
    """
    One VariantPopulation per role plus the global experiment log.

    Every public operation holds the instance lock, so a session's worker
    thread and request threads may share one instance.
    """

    def __init__(
        self,
        config: Optional[EvolutionConfig] = None,
        rng: Optional[random.Random] = None,
        verbose: bool = False
    ):
        self.config = config or EvolutionConfig()
        self.rng = rng or random.Random()
        self.verbose = verbose
        self.populations: Dict[Role, VariantPopulation] = {
            role: VariantPopulation(role, self.config, self.rng, verbose) for role in ROLE_ORDER
        }
        self.experiments: List[ExperimentOutcome] = []
        self._lock = threading.RLock()

    def population(self, role: Role) -> VariantPopulation:
        return self.populations[parse_role(role)]

    def register_baseline(self, role: Role, role_config: RoleConfig) -> PromptVariant:
        with self._lock:
            return self.population(role).register_baseline(
                role_config.prompt_system,
                role_config.prompt_style,
                role_config.temperature,
            )

    def select_prompt(self, role: Role) -> PromptVariant:
        with self._lock:
            return self.population(role).select_prompt()

    def get_variant(self, variant_id: str) -> Optional[PromptVariant]:
        with self._lock:
            for population in self.populations.values():
                variant = population.get(variant_id)
                if variant is not None:
                    return variant
            return None

    def record_experiment(self, outcome: ExperimentOutcome) -> Optional[PromptVariant]:
        """Route an outcome to its variant's population. Unknown ids are ignored."""
        with self._lock:
            for population in self.populations.values():
                if population.get(outcome.variant_id) is not None:
                    self.experiments.append(outcome)
                    return population.record_experiment(outcome)
            return None

    def prune_worst_variant(self, role: Role) -> Optional[PromptVariant]:
        with self._lock:
            return self.population(role).prune_worst_variant()

    def variants(self, role: Role) -> List[PromptVariant]:
        with self._lock:
            return list(self.population(role).variants)

    def current_best(self, role: Role) -> Optional[PromptVariant]:
        with self._lock:
            return self.population(role).current_best

    def get_evolution_stats(self, role: Role) -> EvolutionStats:
        with self._lock:
            return self.population(role).stats()

    def export_state(self) -> Dict:
        """Snapshot of every population and the experiment log, JSON-ready."""
        with self._lock:
            return {
                "config": self.config.to_dict(),
                "populations": {
                    role.value: population.to_dict() for role, population in self.populations.items()
                },
                "experiments": [e.to_dict() for e in self.experiments],
            }

    def import_state(self, state: Dict):
        """Restore a snapshot produced by export_state()."""
        with self._lock:
            for role_name, data in state.get("populations", {}).items():
                self.population(parse_role(role_name)).load_dict(data)
            self.experiments = [ExperimentOutcome.from_dict(e) for e in state.get("experiments", [])]
