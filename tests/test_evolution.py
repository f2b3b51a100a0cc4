"""Tests for variant populations and the adaptive prompt system."""

import json
import random
import threading

import pytest

from triad.roles import Role, RoleConfig, ROLE_ORDER
from triad.evolution import (
    AdaptivePromptSystem,
    ConfigurationError,
    EvolutionConfig,
    ExperimentOutcome,
    PromptVariant,
    QualityMetrics,
    ResponseMetrics,
    UserFeedback,
    VariantPopulation,
    confidence_estimate,
)


def _outcome(variant_id, overall=0.5, coherence=0.5, engagement=0.5, topic=0.5,
             length=80.0, feedback=None):
    return ExperimentOutcome(
        variant_id=variant_id,
        conversation_id="conv-1",
        timestamp=1000.0,
        quality=QualityMetrics(
            coherence=coherence,
            engagement=engagement,
            humor=0.5,
            topic_relevance=topic,
            overall=overall,
        ),
        response=ResponseMetrics(avg_length=length, avg_time=250.0, turn_count=1),
        user_feedback=feedback,
    )


def _population(seed=1, **config):
    population = VariantPopulation(
        Role.INITIATOR, EvolutionConfig(**config), random.Random(seed)
    )
    population.register_baseline("Be bold.", "Short lines.", 0.9)
    return population


def _variant(vid, score=0.5, count=0, generation=2, **kwargs):
    variant = PromptVariant(
        id=vid,
        role=Role.INITIATOR,
        version=2,
        generation=generation,
        system_text=f"system {vid}",
        style_text=f"style {vid}",
        temperature=0.5,
        parent_id="initiator_v1_baseline",
        mutation_kind="mutation",
        experiment_count=count,
        **kwargs,
    )
    variant.performance.avg_quality_score = score
    return variant


class TestEvolutionConfig:
    def test_defaults(self):
        config = EvolutionConfig()
        assert config.exploration_rate == 0.2
        assert config.min_sample_size == 5
        assert config.max_variants == 10
        assert config.auto_improve is True

    def test_from_dict_ignores_unknown_keys(self):
        config = EvolutionConfig.from_dict({"max_variants": 3, "colour": "blue"})
        assert config.max_variants == 3

    def test_frozen(self):
        with pytest.raises(Exception):
            EvolutionConfig().max_variants = 4


class TestBaseline:
    def test_register(self):
        population = _population()
        baseline = population.baseline
        assert baseline.id == "initiator_v1_baseline"
        assert baseline.generation == 1
        assert baseline.is_baseline
        assert population.current_best is baseline

    def test_register_twice(self):
        population = _population()
        with pytest.raises(ConfigurationError):
            population.register_baseline("x", "y", 0.5)

    def test_select_before_register(self):
        population = VariantPopulation(Role.REACTOR)
        with pytest.raises(ConfigurationError):
            population.select_prompt()

    def test_baseline_cannot_be_deactivated(self):
        population = _population()
        assert not population.set_active("initiator_v1_baseline", False)
        assert population.baseline.is_active


class TestSelection:
    def test_cold_start_first(self):
        population = _population(exploration_rate=1.0, auto_improve=False)
        population.baseline.experiment_count = 5
        child = _variant("initiator_v2_mut_1", score=0.1, count=0)
        population.add_variant(child)
        for _ in range(10):
            assert population.select_prompt() is child

    def test_exploit_current_best(self):
        population = _population(exploration_rate=0.0, auto_improve=False)
        population.baseline.experiment_count = 5
        population.add_variant(_variant("initiator_v2_mut_1", score=0.9, count=5))
        assert population.select_prompt() is population.baseline

    def test_ucb_prefers_higher_score_at_equal_counts(self):
        population = _population(exploration_rate=1.0, auto_improve=False)
        population.baseline.experiment_count = 10
        population.baseline.performance.avg_quality_score = 0.4
        strong = _variant("initiator_v2_mut_1", score=0.6, count=10)
        population.add_variant(strong)
        assert population.select_prompt() is strong

    def test_inactive_variants_not_selected(self):
        population = _population(auto_improve=False)
        population.baseline.experiment_count = 5
        child = _variant("initiator_v2_mut_1", count=0)
        population.add_variant(child)
        population.set_active(child.id, False)
        assert population.select_prompt() is population.baseline


class TestLedger:
    def test_incremental_means(self):
        population = _population(auto_improve=False)
        vid = population.baseline.id
        population.record_experiment(_outcome(vid, overall=0.6, coherence=0.8, length=40))
        population.record_experiment(_outcome(vid, overall=0.4, coherence=0.2, length=60))

        perf = population.baseline.performance
        assert perf.total_uses == 2
        assert population.baseline.experiment_count == 2
        assert perf.avg_quality_score == pytest.approx(0.5)
        assert perf.coherence_score == pytest.approx(0.5)
        assert perf.avg_response_length == pytest.approx(50)
        assert perf.success_rate == pytest.approx(0.5)

    def test_confidence_only_after_min_samples(self):
        population = _population(auto_improve=False, min_sample_size=3)
        vid = population.baseline.id
        population.record_experiment(_outcome(vid, overall=0.9))
        population.record_experiment(_outcome(vid, overall=0.9))
        assert population.baseline.performance.confidence_estimate == 0.0
        population.record_experiment(_outcome(vid, overall=0.9))
        assert population.baseline.performance.confidence_estimate == pytest.approx(
            confidence_estimate(0.9, 3)
        )

    def test_user_feedback_tracked(self):
        population = _population(auto_improve=False)
        vid = population.baseline.id
        population.record_experiment(_outcome(vid, feedback=UserFeedback(rating=4, comment="nice")))
        population.record_experiment(_outcome(vid, feedback=UserFeedback(rating=2)))

        perf = population.baseline.performance
        assert [r.score for r in perf.user_ratings] == [4, 2]
        assert perf.user_ratings[0].comment == "nice"
        assert perf.avg_user_rating == pytest.approx(3)

    def test_unknown_variant_ignored(self):
        population = _population()
        assert population.record_experiment(_outcome("initiator_v9_mut_99")) is None
        assert population.baseline.experiment_count == 0

    def test_confidence_estimate(self):
        assert confidence_estimate(0.5, 1) == 0.0
        assert confidence_estimate(1.0, 10) == 1.0
        assert 0.0 <= confidence_estimate(0.5, 2) < 0.5


class TestPromotion:
    def test_significantly_better(self):
        population = _population(improvement_threshold=0.1, confidence_threshold=0.95)
        incumbent = _variant("a", score=0.7)
        candidate = _variant("b", score=0.8)

        candidate.performance.confidence_estimate = 0.97
        assert population.is_significantly_better(candidate, incumbent)

        candidate.performance.confidence_estimate = 0.95
        assert not population.is_significantly_better(candidate, incumbent)

        candidate.performance.confidence_estimate = 0.99
        candidate.performance.avg_quality_score = 0.75
        assert not population.is_significantly_better(candidate, incumbent)

    def test_promoted_after_confident_gain(self):
        population = _population(
            auto_improve=False, min_sample_size=2,
            confidence_threshold=0.5, improvement_threshold=0.1,
        )
        baseline_id = population.baseline.id
        population.record_experiment(_outcome(baseline_id, overall=0.5))
        population.record_experiment(_outcome(baseline_id, overall=0.5))

        child = _variant("initiator_v2_mut_1", score=0.5)
        population.add_variant(child)
        population.record_experiment(_outcome(child.id, overall=0.9))
        assert population.current_best_id == baseline_id

        population.record_experiment(_outcome(child.id, overall=0.9))
        assert population.current_best_id == child.id

    def test_not_promoted_without_confidence(self):
        population = _population(
            auto_improve=False, min_sample_size=2,
            confidence_threshold=0.95, improvement_threshold=0.1,
        )
        baseline_id = population.baseline.id
        for _ in range(2):
            population.record_experiment(_outcome(baseline_id, overall=0.5))

        child = _variant("initiator_v2_mut_1", score=0.5)
        population.add_variant(child)
        for _ in range(2):
            population.record_experiment(_outcome(child.id, overall=0.9))

        assert population.current_best_id == baseline_id


class TestBreeding:
    def test_weak_outcome_breeds_one_child(self):
        population = _population()
        baseline = population.baseline
        population.record_experiment(_outcome(baseline.id, overall=0.65))

        assert baseline.experiment_count == 1
        assert len(population) == 2
        child = population.variants[-1]
        assert child.parent_id == baseline.id
        assert child.generation == 2
        assert child.mutation_kind in ("mutation", "crossover", "auto")

    def test_weak_sampled_variant_breeds_exactly_one_child(self):
        population = _population()
        baseline = population.baseline
        baseline.performance.avg_quality_score = 0.65
        baseline.performance.total_uses = 1
        baseline.experiment_count = 1

        population.record_experiment(_outcome(baseline.id, overall=0.6))

        assert baseline.performance.avg_quality_score == pytest.approx(0.625)
        assert baseline.experiment_count == 2
        children = [v for v in population.variants if v.id != baseline.id]
        assert len(children) == 1
        assert children[0].parent_id == baseline.id
        assert children[0].generation == baseline.generation + 1

    def test_strong_outcome_breeds_nothing(self):
        population = _population()
        population.record_experiment(_outcome(population.baseline.id, overall=0.9))
        assert len(population) == 1

    def test_diversity_mutant_every_third_experiment(self):
        population = _population(min_sample_size=1, exploration_rate=0.0)
        vid = population.baseline.id
        for _ in range(3):
            population.record_experiment(_outcome(vid, overall=0.9))
        assert len(population) == 2
        assert population.variants[-1].mutation_kind == "mutation"

    def test_no_children_past_max_generations(self):
        population = _population(max_generations=1)
        population.record_experiment(_outcome(population.baseline.id, overall=0.1))
        assert len(population) == 1

    def test_repair_addresses_weaknesses(self):
        population = _population(auto_improve=False)
        baseline = population.baseline
        population.record_experiment(
            _outcome(baseline.id, overall=0.2, coherence=0.2, engagement=0.2, topic=0.2, length=10)
        )
        child = population.repair(baseline)

        assert child.id == "initiator_v2_improved_1"
        assert child.mutation_kind == "auto"
        assert "Build on what was just said." in child.system_text
        assert "Stay close to the topic." in child.system_text
        assert "React actively to the other speaker." in child.style_text
        assert "Explain a little more." in child.style_text
        assert child.temperature == baseline.temperature

    def test_repair_without_weakness_still_changes_text(self):
        population = _population(auto_improve=False)
        baseline = population.baseline
        baseline.performance.avg_response_length = 100
        child = population.repair(baseline)
        assert child.system_text == baseline.system_text
        assert child.style_text == baseline.style_text + "\nMake every line count."

    def test_crossover_needs_partner(self):
        population = _population(auto_improve=False)
        assert population.crossover(population.baseline) is None

    def test_crossover_takes_stronger_parts(self):
        population = _population(auto_improve=False)
        baseline = population.baseline
        partner = _variant("initiator_v2_mut_1", score=0.8, generation=3)
        partner.performance.coherence_score = 0.9
        partner.performance.engagement_score = 0.1
        population.add_variant(partner)

        child = population.crossover(baseline)
        assert child.system_text == partner.system_text
        assert child.style_text == baseline.style_text
        assert child.temperature == pytest.approx((0.9 + 0.5) / 2)
        assert child.generation == 4
        assert child.version == 3
        assert child.parent_id == baseline.id
        assert child.mutation_kind == "crossover"

    def test_mutation_keeps_temperature_in_range(self):
        for seed in range(50):
            population = _population(seed=seed, auto_improve=False)
            child = population.mutate(population.baseline)
            assert 0.1 <= child.temperature <= 1.0
            assert child.parent_id == population.baseline.id
            assert child.mutation_kind == "mutation"
            assert "_mut_" in child.id

    def test_child_ids_unique(self):
        population = _population(auto_improve=False)
        ids = {population.mutate(population.baseline).id for _ in range(20)}
        assert len(ids) == 20


class TestCapacity:
    def test_prune_on_insert_at_capacity(self):
        population = _population(max_variants=2, auto_improve=False)
        weak = _variant("initiator_v2_mut_1", score=0.3)
        population.add_variant(weak)

        fresh = _variant("initiator_v2_mut_2", score=0.5)
        assert population.add_variant(fresh)

        ids = [v.id for v in population.variants]
        assert ids == ["initiator_v1_baseline", "initiator_v2_mut_2"]

    def test_full_with_only_baseline(self):
        population = _population(max_variants=1, auto_improve=False)
        assert not population.add_variant(_variant("initiator_v2_mut_1"))
        assert len(population) == 1

    def test_prune_prefers_active_variants(self):
        population = _population(auto_improve=False)
        dormant = _variant("initiator_v2_mut_1", score=0.1)
        active = _variant("initiator_v2_mut_2", score=0.4)
        population.add_variant(dormant)
        population.add_variant(active)
        population.set_active(dormant.id, False)

        assert population.prune_worst_variant() is active
        assert population.prune_worst_variant() is dormant
        assert population.prune_worst_variant() is None
        assert population.baseline is not None

    def test_pruning_best_falls_back_to_baseline(self):
        population = _population(auto_improve=False)
        child = _variant("initiator_v2_mut_1", score=0.2)
        population.add_variant(child)
        population.current_best_id = child.id

        population.prune_worst_variant()
        assert population.current_best_id == "initiator_v1_baseline"

    def test_bounded_under_load(self):
        rng = random.Random(9)
        population = _population(seed=9, max_variants=4, min_sample_size=2)
        for _ in range(80):
            variant = population.select_prompt()
            population.record_experiment(_outcome(variant.id, overall=rng.random()))
            assert len(population) <= 4
            assert population.baseline is not None
            assert population.current_best is not None

        ids = [v.id for v in population.variants]
        assert len(ids) == len(set(ids))


class TestAdaptivePromptSystem:
    def _system(self, **config):
        system = AdaptivePromptSystem(EvolutionConfig(**config), random.Random(5))
        for role in ROLE_ORDER:
            system.register_baseline(role, RoleConfig.default_for(role))
        return system

    def test_baselines_per_role(self):
        system = self._system()
        for role in ROLE_ORDER:
            assert system.current_best(role).id == f"{role.value}_v1_baseline"
        assert system.population("reactor").role == Role.REACTOR

    def test_routes_outcomes_and_logs_them(self):
        system = self._system(auto_improve=False)
        system.record_experiment(_outcome("reactor_v1_baseline", overall=0.8))
        assert system.get_variant("reactor_v1_baseline").experiment_count == 1
        assert len(system.experiments) == 1

    def test_unknown_id_not_logged(self):
        system = self._system()
        assert system.record_experiment(_outcome("ghost_v1")) is None
        assert system.experiments == []

    def test_stats(self):
        system = self._system(auto_improve=False)
        system.record_experiment(_outcome("moderator_v1_baseline", overall=0.8))
        stats = system.get_evolution_stats(Role.MODERATOR)
        assert stats.total_variants == 1
        assert stats.active_variants == 1
        assert stats.experiment_count == 1
        assert stats.best_score == pytest.approx(0.8)

    def test_export_import(self):
        system = self._system(min_sample_size=1)
        for score in (0.2, 0.4, 0.9):
            system.record_experiment(_outcome("initiator_v1_baseline", overall=score))
        system.record_experiment(
            _outcome("reactor_v1_baseline", overall=0.6, feedback=UserFeedback(rating=5, comment="ha"))
        )

        blob = json.loads(json.dumps(system.export_state()))

        restored = AdaptivePromptSystem(EvolutionConfig(min_sample_size=1), random.Random(5))
        restored.import_state(blob)

        for role in ROLE_ORDER:
            assert [v.to_dict() for v in restored.variants(role)] == [v.to_dict() for v in system.variants(role)]
            assert restored.population(role).current_best_id == system.population(role).current_best_id
            assert restored.population(role).serial == system.population(role).serial
        assert len(restored.experiments) == len(system.experiments)
        assert restored.experiments[-1].user_feedback.comment == "ha"

    def test_concurrent_recording_keeps_ledger_consistent(self):
        system = self._system(max_variants=4)
        errors = []

        def hammer():
            try:
                for _ in range(2000):
                    system.record_experiment(_outcome("initiator_v1_baseline", overall=0.3))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=hammer) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        baseline = system.get_variant("initiator_v1_baseline")
        assert errors == []
        assert baseline.experiment_count == 4000
        assert baseline.performance.total_uses == 4000
        assert len(system.experiments) == 4000
        assert len(system.variants(Role.INITIATOR)) <= 4
