"""Tests for the dialogue orchestrator."""

import json
import threading
from unittest.mock import patch

import pytest

from triad.roles import Role, TriadConfig
from triad.completion_client import CompletionCancelled, CompletionError
from triad.metrics import Phase
from triad.orchestrator import DialogueOrchestrator, run_session
from conftest import FakeCompletionClient


def _orchestrator(client=None, **config):
    defaults = dict(max_turns=2, strategy="round_robin", seed=7)
    defaults.update(config)
    return DialogueOrchestrator(
        TriadConfig(**defaults),
        client=client or FakeCompletionClient(default="Refrigerators hum because they are happy!"),
        verbose=False,
    )


class TestOpening:
    def test_moderator_opens(self):
        orch = _orchestrator()
        orch.start()

        assert len(orch.history) == 1
        opening = orch.history[0]
        assert opening.role == Role.MODERATOR
        assert opening.text == "Today's theme is 'Why do refrigerators hum?'. Let's begin."
        assert orch.utterance_count == 0
        assert orch.metrics.phase == Phase.OPENING

    def test_start_is_idempotent(self):
        orch = _orchestrator()
        orch.start()
        orch.start()
        assert len(orch.history) == 1


class TestRun:
    def test_produces_three_utterances_per_turn(self):
        client = FakeCompletionClient(default="Refrigerators hum because they are happy!")
        orch = _orchestrator(client=client)
        history = orch.run()

        assert orch.utterance_count == 6
        assert len(history) == 7
        assert [u.role for u in history[1:]] == [
            Role.MODERATOR, Role.INITIATOR, Role.REACTOR,
        ] * 2
        assert len(client.requests) == 6

    def test_every_step_records_an_experiment(self):
        orch = _orchestrator()
        orch.run()

        assert len(orch.prompts.experiments) == 6
        assert all(u.variant_id for u in orch.history[1:])

    def test_messages_carry_system_style_and_transcript(self):
        client = FakeCompletionClient(default="A line.")
        orch = _orchestrator(client=client, max_turns=1)
        orch.run()

        messages = client.requests[0].messages
        assert messages[0]["role"] == "system"
        assert messages[1]["content"].startswith("[STYLE]\n")
        assert "Moderator: Today's theme is" in messages[-1]["content"]
        assert messages[-1]["content"].endswith("Continue the conversation with your next line only.")

    def test_context_window(self):
        orch = _orchestrator(context_window=2, max_turns=2)
        orch.run()
        prompt = orch.build_messages(Role.INITIATOR, "sys", "style")[-1]["content"]
        transcript = prompt.split("Conversation so far:\n")[1].split("\n\n")[0]
        assert len(transcript.splitlines()) == 2

    def test_open_prompt_without_history(self):
        orch = _orchestrator()
        prompt = orch.build_messages(Role.INITIATOR, "", "")[-1]["content"]
        assert "Open the conversation" in prompt

    def test_variant_temperature_used(self):
        client = FakeCompletionClient()
        orch = _orchestrator(client=client, max_turns=1)
        orch.run()
        first = client.requests[0]
        assert first.temperature == orch.config.roles[Role.MODERATOR].temperature
        assert first.stream is True

    def test_same_seed_same_dialogue_shape(self):
        runs = []
        for _ in range(2):
            orch = _orchestrator(strategy="reactive", max_turns=3)
            orch.run()
            runs.append([(u.role, u.variant_id) for u in orch.history])
        assert runs[0] == runs[1]

    def test_stop_ends_run(self):
        orch = _orchestrator(max_turns=5)

        def stop_after_two(view):
            if view.utterance_count >= 2:
                orch.stop()

        orch.add_observer(stop_after_two)
        orch.run()
        assert orch.utterance_count == 2


class TestErrors:
    def test_error_becomes_visible_utterance(self):
        client = FakeCompletionClient([CompletionError(503, "Cannot connect to ollama")])
        orch = _orchestrator(client=client)
        orch.start()

        utterance = orch.step()

        assert utterance.is_error
        assert utterance.text == "[error] Cannot connect to ollama"
        assert orch.utterance_count == 1
        assert orch.prompts.experiments == []
        assert len(orch.turn_errors) == 1
        assert orch.turn_errors[0].status == 503

    def test_errors_excluded_from_analysis(self):
        client = FakeCompletionClient([CompletionError(500, "boom")])
        orch = _orchestrator(client=client)
        orch.start()
        orch.step()
        assert orch.analyzed_history() == orch.history[:1]

    def test_loop_continues_after_error(self):
        client = FakeCompletionClient([CompletionError(500, "boom")], default="fine")
        orch = _orchestrator(client=client)
        orch.run()
        assert orch.utterance_count == 6
        assert sum(1 for u in orch.history if u.is_error) == 1

    def test_cancelled_turn_appends_nothing(self):
        client = FakeCompletionClient([CompletionCancelled("cancelled")])
        orch = _orchestrator(client=client)
        orch.start()

        assert orch.step() is None
        assert orch.utterance_count == 0
        assert len(orch.history) == 1


class TestObservers:
    def test_views_after_start_and_each_step(self):
        orch = _orchestrator()
        views = []
        orch.add_observer(views.append)
        orch.run()

        assert len(views) == 7
        assert views[-1].utterance_count == 6
        assert views[-1].max_utterances == 6
        assert views[-1].metrics is not None
        assert set(views[-1].evolution_stats) == {Role.INITIATOR, Role.REACTOR, Role.MODERATOR}

    def test_view_is_a_copy(self):
        orch = _orchestrator()
        orch.start()
        view = orch.observer_view()
        view.current_best[Role.INITIATOR].system_text = "tampered"
        assert orch.prompts.current_best(Role.INITIATOR).system_text != "tampered"

    def test_deltas_forwarded(self):
        client = FakeCompletionClient(default="one two three")
        orch = _orchestrator(client=client, max_turns=1)
        deltas = []
        orch.add_delta_observer(lambda role, delta: deltas.append((role, delta)))
        orch.run()
        assert deltas[:3] == [(Role.MODERATOR, "one"), (Role.MODERATOR, "two"), (Role.MODERATOR, "three")]

    def test_view_to_dict_is_json_ready(self):
        orch = _orchestrator()
        orch.run()
        json.dumps(orch.observer_view().to_dict())


class TestControls:
    def test_set_strategy(self):
        orch = _orchestrator()
        orch.set_strategy("balanced")
        assert orch.strategy == "balanced"
        assert orch.config.strategy == "balanced"

    def test_set_unknown_strategy(self):
        orch = _orchestrator()
        with pytest.raises(ValueError):
            orch.set_strategy("loudest")
        assert orch.strategy == "round_robin"

    def test_set_topic(self):
        orch = _orchestrator()
        orch.set_topic("Why do penguins waddle?")
        assert orch.engine.topic_keywords == {"penguins", "waddle"}

    def test_shared_prompt_system_continues(self):
        first = _orchestrator()
        first.run()
        experiments = len(first.prompts.experiments)

        second = DialogueOrchestrator(
            TriadConfig(max_turns=1, strategy="round_robin"),
            client=FakeCompletionClient(), prompts=first.prompts, verbose=False,
        )
        second.run()
        assert len(second.prompts.experiments) == experiments + 3

    def test_analysis_disabled_uses_text_quality(self):
        orch = _orchestrator(analysis_enabled=False)
        orch.run()
        assert orch.metrics is None
        assert len(orch.prompts.experiments) == 6
        assert orch.prompts.experiments[0].quality.topic_relevance == pytest.approx(0.7)

    def test_adaptive_prompts_disabled(self):
        client = FakeCompletionClient()
        orch = _orchestrator(client=client, adaptive_prompts=False, max_turns=1)
        orch.run()
        assert orch.prompts.experiments == []
        assert client.requests[0].messages[0]["content"] == orch.config.roles[Role.MODERATOR].prompt_system


class TestFeedback:
    def test_rating_recorded(self):
        orch = _orchestrator()
        variant = orch.record_feedback("initiator_v1_baseline", 5, "great")

        assert variant.performance.user_ratings[0].score == 5
        assert variant.performance.avg_quality_score == pytest.approx(1.0)
        assert orch.prompts.experiments[-1].user_feedback.comment == "great"

    def test_unknown_variant(self):
        assert _orchestrator().record_feedback("ghost_v1", 3) is None

    @pytest.mark.parametrize("rating", [0, 6, -1])
    def test_out_of_range(self, rating):
        with pytest.raises(ValueError):
            _orchestrator().record_feedback("initiator_v1_baseline", rating)


class TestPersistence:
    def test_session_log_written(self, tmp_path):
        client = FakeCompletionClient([CompletionError(500, "boom")], default="fine")
        orch = DialogueOrchestrator(
            TriadConfig(max_turns=1, strategy="round_robin"),
            client=client, output_dir=tmp_path, session_id="abc", verbose=False,
        )
        orch.run()

        data = json.loads((tmp_path / "session_abc.json").read_text())
        assert len(data["turns"]) == 4
        assert data["error_count"] == 1
        assert data["turns"][0]["content"].startswith("Today's theme")
        assert set(data["evolution_stats"]) == {"initiator", "reactor", "moderator"}
        assert (tmp_path / "session_abc_checkpoint.json").exists()

    def test_population_round_trip(self, tmp_path):
        orch = _orchestrator()
        orch.run()
        path = orch.save_state(tmp_path / "population.json")

        fresh = _orchestrator()
        fresh.load_state(path)
        for role in (Role.INITIATOR, Role.REACTOR, Role.MODERATOR):
            assert [v.id for v in fresh.prompts.variants(role)] == [v.id for v in orch.prompts.variants(role)]

    def test_run_session_from_yaml(self, tmp_path):
        config_path = tmp_path / "session.yaml"
        config_path.write_text(
            "dialogue:\n"
            "  topic: Why do penguins waddle?\n"
            "  max_turns: 1\n"
            "  strategy: round_robin\n"
            "seed: 3\n"
        )
        population_path = tmp_path / "population.json"

        with patch("triad.orchestrator.CompletionClient", return_value=FakeCompletionClient()):
            orch = run_session(
                config_path, output_dir=tmp_path / "sessions", population_path=population_path,
            )

        assert orch.config.topic == "Why do penguins waddle?"
        assert orch.utterance_count == 3
        assert population_path.exists()
        assert list((tmp_path / "sessions").glob("session_*.json"))

    def test_run_session_rejects_unknown_strategy(self, tmp_path):
        config_path = tmp_path / "session.yaml"
        config_path.write_text("dialogue:\n  max_turns: 1\n")
        with pytest.raises(ValueError):
            run_session(config_path, strategy="loudest")


class GatedClient(FakeCompletionClient):
    """Blocks inside complete() until released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def complete(self, request, cancel_event=None, on_delta=None):
        self.entered.set()
        assert self.release.wait(timeout=5.0)
        return super().complete(request, cancel_event=cancel_event, on_delta=on_delta)


class TestConcurrency:
    def test_cancel_between_steps_applies_to_next_call(self):
        client = FakeCompletionClient(default="fine")
        orch = _orchestrator(client=client)
        orch.start()

        orch.cancel_turn()
        assert orch.step() is None
        assert client.requests == []

        assert orch.step() is not None
        assert orch.utterance_count == 1

    def test_feedback_not_blocked_by_in_flight_call(self):
        client = GatedClient(default="fine")
        orch = _orchestrator(client=client, max_turns=1)
        orch.start()

        worker = threading.Thread(target=orch.step)
        worker.start()
        assert client.entered.wait(timeout=5.0)

        variant = orch.record_feedback("reactor_v1_baseline", 4)
        assert variant.experiment_count == 1
        exported = orch.export_state()
        assert exported["populations"]["reactor"]["variants"][0]["experiment_count"] == 1

        client.release.set()
        worker.join(timeout=5.0)
        assert not worker.is_alive()
        assert orch.utterance_count == 1
        assert len(orch.prompts.experiments) == 2

    def test_feedback_during_run_keeps_ledgers_consistent(self):
        orch = _orchestrator(max_turns=10)
        errors = []

        def rate():
            try:
                for _ in range(200):
                    orch.record_feedback("initiator_v1_baseline", 2)
            except Exception as e:
                errors.append(e)

        rater = threading.Thread(target=rate)
        rater.start()
        orch.run()
        rater.join(timeout=10.0)

        assert errors == []
        assert orch.utterance_count == 30
        rated = [e for e in orch.prompts.experiments if e.user_feedback is not None]
        assert len(rated) == 200
        assert len(orch.prompts.experiments) <= 230
        assert orch.prompts.get_variant("initiator_v1_baseline").experiment_count >= 200
        for role in (Role.INITIATOR, Role.REACTOR, Role.MODERATOR):
            for variant in orch.prompts.variants(role):
                assert variant.performance.total_uses == variant.experiment_count
