"""
Dialogue orchestration for TRIAD three-role conversations.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

One sequential loop per session. Each step:
history -> metrics -> speaker policy -> role -> prompt variant ->
completion -> utterance -> history, then the outcome is fed back into
the role's variant population as an experiment.
"""

import copy
import random
import threading
import time
import uuid
from pathlib import Path
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .roles import Role, ROLE_ORDER, STRATEGIES, TriadConfig, RolePromptLoader, Utterance
from .completion_client import (
    CompletionClient,
    CompletionRequest,
    CompletionError,
    CompletionCancelled,
    ResponseMetadata,
)
from .metrics import MetricsEngine, MetricsSnapshot
from .speaker_policy import SpeakerPolicy, create_policy
from .evolution import (
    AdaptivePromptSystem,
    EvolutionConfig,
    EvolutionStats,
    ExperimentOutcome,
    PromptVariant,
    ResponseMetrics,
    UserFeedback,
)
from .quality import quality_from_metrics, quality_from_text, quality_from_rating
from .session_logger import SessionLogger, save_population, load_population


@dataclass
class TurnError:
    """Record of a failed turn."""
    turn_number: int
    role: str
    model: str
    status: int
    detail: str
    timestamp: str


@dataclass(frozen=True)
class ObserverView:
    """Read-only state handed to observers after each step."""
    history: tuple
    metrics: Optional[MetricsSnapshot]
    current_best: Dict[Role, Optional[PromptVariant]]
    evolution_stats: Dict[Role, EvolutionStats]
    strategy: str
    utterance_count: int
    max_utterances: int

    def to_dict(self) -> Dict:
        return {
            "history": [u.to_dict() for u in self.history],
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "current_best": {
                role.value: (v.to_dict() if v else None) for role, v in self.current_best.items()
            },
            "evolution_stats": {
                role.value: s.to_dict() for role, s in self.evolution_stats.items()
            },
            "strategy": self.strategy,
            "utterance_count": self.utterance_count,
            "max_utterances": self.max_utterances,
        }


class DialogueOrchestrator:
    """
    Orchestrates three-role dialogue sessions.

    Coordinates:
    - Speaker selection from live metrics
    - Prompt variant selection and experiment recording per role
    - Streaming generation via the completion client
    - Session logging with checkpoints
    - Turn-level error recovery (error utterances, loop continues)
    """

    def __init__(
        self,
        config: TriadConfig,
        client: Optional[CompletionClient] = None,
        prompts: Optional[AdaptivePromptSystem] = None,
        rng: Optional[random.Random] = None,
        output_dir: Optional[Path] = None,
        session_id: Optional[str] = None,
        config_path: Optional[str] = None,
        verbose: bool = True
    ):
        """
        Initialize orchestrator.

        Args:
            config: Session configuration
            client: Completion client (default: one built from config)
            prompts: Prompt system to continue from (default: fresh baselines from config)
            rng: Random source for policy and evolution draws (default: seeded from config.seed)
            output_dir: Directory for session logs (None disables logging)
            session_id: Optional session identifier
            config_path: Path to config file (for logging)
            verbose: Print progress to the console
        """
        self.config = config
        self.verbose = verbose
        self.rng = rng or random.Random(config.seed)
        self.client = client or CompletionClient(debug_capacity=config.debug_log_size, verbose=verbose)
        self.config_path = config_path

        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.engine = MetricsEngine(config.topic)
        self.policy: SpeakerPolicy = create_policy(config.strategy, self.rng)
        self.prompts = prompts or AdaptivePromptSystem(
            EvolutionConfig.from_dict(config.evolution), self.rng, verbose=verbose
        )
        for role in ROLE_ORDER:
            if self.prompts.population(role).baseline is None:
                self.prompts.register_baseline(role, config.roles[role])

        self.logger = SessionLogger(output_dir, self.session_id) if output_dir else None

        # Runtime state
        self.history: List[Utterance] = []
        self.metrics: Optional[MetricsSnapshot] = None
        self.utterance_count = 0
        self.turn_errors: List[TurnError] = []

        self._observers: List[Callable[[ObserverView], None]] = []
        self._delta_observers: List[Callable[[Role, str], None]] = []
        # Guards history, metrics, policy and the session log. Never held
        # across a completion call.
        self._lock = threading.RLock()
        self._cancel_event = threading.Event()
        self._stop_event = threading.Event()
        self._started = False
        self._start_time: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def max_utterances(self) -> int:
        return self.config.max_turns * 3

    @property
    def current_turn(self) -> int:
        return self.utterance_count // 3

    @property
    def strategy(self) -> str:
        return self.policy.name

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def analyzed_history(self) -> List[Utterance]:
        """History without error utterances."""
        return [u for u in self.history if not u.is_error]

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def add_observer(self, callback: Callable[[ObserverView], None]):
        """Register a callable that receives an ObserverView after each step."""
        self._observers.append(callback)

    def add_delta_observer(self, callback: Callable[[Role, str], None]):
        """Register a callable that receives (role, token delta) while streaming."""
        self._delta_observers.append(callback)

    def observer_view(self) -> ObserverView:
        with self._lock:
            return ObserverView(
                history=tuple(self.history),
                metrics=self.metrics,
                current_best={role: copy.deepcopy(self.prompts.current_best(role)) for role in ROLE_ORDER},
                evolution_stats={role: self.prompts.get_evolution_stats(role) for role in ROLE_ORDER},
                strategy=self.strategy,
                utterance_count=self.utterance_count,
                max_utterances=self.max_utterances,
            )

    def evolution_view(self, roles: Optional[List[Role]] = None) -> Dict[str, Dict]:
        """Stats, current best id and full variant list per role, JSON-ready."""
        view = {}
        with self._lock:
            for role in roles or ROLE_ORDER:
                best = self.prompts.current_best(role)
                view[role.value] = {
                    "stats": self.prompts.get_evolution_stats(role).to_dict(),
                    "current_best": best.id if best else None,
                    "variants": [v.to_dict() for v in self.prompts.variants(role)],
                }
        return view

    def _notify(self):
        if not self._observers:
            return
        view = self.observer_view()
        for callback in self._observers:
            callback(view)

    # -------------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------------

    def set_strategy(self, name: str):
        """Swap the speaker strategy. History is kept; a new cursor starts at zero."""
        with self._lock:
            self.policy = create_policy(name, self.rng)
            self.config.strategy = name
        if self.verbose:
            print(f"  [Session] Strategy -> {name}")

    def set_topic(self, topic: str):
        with self._lock:
            self.config.topic = topic
            self.engine.set_topic(topic)

    def cancel_turn(self):
        """
        Abort the in-flight completion. The loop continues.

        A cancel that arrives between steps applies to the next step's call.
        A call still waiting for response headers stops once they arrive.
        """
        self._cancel_event.set()

    def stop(self):
        """Cancel the in-flight completion and end the loop."""
        self._stop_event.set()
        self._cancel_event.set()

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def start(self):
        """Seed the moderator's opening line and start the session log."""
        if self._started:
            return
        self._started = True
        self._start_time = datetime.now()

        if self.logger:
            self.logger.start_session(
                topic=self.config.topic,
                strategy=self.strategy,
                model_assignments={r.value: c.model for r, c in self.config.roles.items()},
                temperature_assignments={r.value: c.temperature for r, c in self.config.roles.items()},
                seed=self.config.seed,
                config_path=self.config_path,
            )

        if self.verbose:
            print(f"\n{'='*60}")
            print("TRIAD Dialogue Session")
            print(f"Session: {self.session_id}")
            print(f"Strategy: {self.strategy}")
            print(f"Turns: {self.config.max_turns} ({self.max_utterances} utterances)")
            print(f"Models: {', '.join(sorted({c.model for c in self.config.roles.values()}))}")
            print(f"{'='*60}\n")
            print(f"Topic:\n{self.config.topic}\n")
            print(f"{'='*60}\n")

        with self._lock:
            if self.history:
                self._analyze()
                return

            moderator = self.config.roles[Role.MODERATOR]
            opening = Utterance(
                role=Role.MODERATOR,
                text=self.config.opening_line.format(topic=self.config.topic),
                timestamp=time.time(),
                model=moderator.model,
                provider=moderator.provider,
            )
            self.history.append(opening)
            self._analyze(current_turn=0)
            self._log(opening, temperature=moderator.temperature, latency_ms=0.0)

        if self.verbose:
            print(f"  {Role.MODERATOR.value}: {opening.text}\n")
        self._notify()

    def run(self, max_utterances: Optional[int] = None) -> List[Utterance]:
        """
        Run steps until the utterance budget is spent or stop() is called.

        Args:
            max_utterances: Override for max_turns * 3

        Returns:
            The full history
        """
        limit = max_utterances if max_utterances is not None else self.max_utterances
        self.start()

        while self.utterance_count < limit and not self.stopped:
            self.step()

        self.finish()
        return list(self.history)

    def finish(self) -> Optional[Path]:
        """Close the session log and print a summary."""
        session_path = None
        with self._lock:
            if self.logger and self.logger.session and self.logger.session.end_time is None:
                stats = {r.value: self.prompts.get_evolution_stats(r).to_dict() for r in ROLE_ORDER}
                session_path = self.logger.end_session(evolution_stats=stats)

        if self.verbose and self._start_time is not None:
            elapsed = datetime.now() - self._start_time
            print(f"{'='*60}")
            print(f"Session complete in {self._format_duration(elapsed)}")
            print(f"Utterances: {self.utterance_count} | Errors: {len(self.turn_errors)}")
            for role in ROLE_ORDER:
                stats = self.prompts.get_evolution_stats(role)
                print(f"  {role.value}: {stats.total_variants} variants, "
                      f"best {stats.best_score:.3f}, {stats.experiment_count} experiments")
            if session_path:
                print(f"Saved to: {session_path}")
            print(f"{'='*60}\n")

        return session_path

    # -------------------------------------------------------------------------
    # The step
    # -------------------------------------------------------------------------

    def step(self) -> Optional[Utterance]:
        """
        Produce one utterance.

        Returns:
            The appended utterance (possibly an error utterance), or None
            if the turn was cancelled or the session is stopped
        """
        self.start()
        if self.stopped:
            return None

        with self._lock:
            role = self.policy.select(self.analyzed_history(), self.metrics)
            role_config = self.config.roles[role]

            variant = self.prompts.select_prompt(role) if self.config.adaptive_prompts else None
            if variant is not None:
                system_text, style_text, temperature = variant.system_text, variant.style_text, variant.temperature
            else:
                system_text, style_text, temperature = (
                    role_config.prompt_system, role_config.prompt_style, role_config.temperature
                )

            request = CompletionRequest(
                provider=role_config.provider,
                model=role_config.model,
                messages=self.build_messages(role, system_text, style_text),
                endpoint=role_config.endpoint,
                api_key=role_config.api_key,
                temperature=temperature,
                top_p=role_config.top_p,
                max_tokens=role_config.max_tokens,
                repetition_penalty=role_config.repetition_penalty,
                stream=True,
                timeout_s=role_config.timeout_s,
            )

        if self.verbose:
            label = f"{role.value} ({role_config.model}"
            label += f", {variant.id})" if variant else ")"
            print(f"[Turn {self.utterance_count + 1}/{self.max_utterances}] {label}...")

        try:
            text, metadata = self.client.complete(
                request,
                cancel_event=self._cancel_event,
                on_delta=lambda delta: self._emit_delta(role, delta),
            )
        except CompletionCancelled:
            if self.verbose:
                print("  [Cancel] Turn cancelled\n")
            return None
        except CompletionError as e:
            return self._record_failure(role, role_config.model, role_config.provider, temperature, variant, e)
        finally:
            # A cancel only ever applies to one call
            self._cancel_event.clear()

        with self._lock:
            utterance = Utterance(
                role=role,
                text=text.strip(),
                timestamp=time.time(),
                model=role_config.model,
                provider=role_config.provider,
                variant_id=variant.id if variant else None,
            )
            self.history.append(utterance)
            self.utterance_count += 1
            self._analyze()

            if variant is not None:
                self._record_outcome(variant, utterance, metadata)

            self._log(utterance, temperature=temperature, latency_ms=metadata.latency_ms, metadata=metadata)

        if self.verbose:
            print(f"  Latency: {metadata.latency_ms:.0f}ms | Tokens: {metadata.total_tokens or '?'}")
            preview = utterance.text[:100] + ('...' if len(utterance.text) > 100 else '')
            print(f"  {role.value}: {preview}\n")

        self._notify()
        return utterance

    def _emit_delta(self, role: Role, delta: str):
        for callback in self._delta_observers:
            callback(role, delta)

    def _record_failure(
        self,
        role: Role,
        model: str,
        provider: str,
        temperature: float,
        variant: Optional[PromptVariant],
        error: CompletionError
    ) -> Utterance:
        """Append a visible error utterance. No experiment is recorded."""
        with self._lock:
            self.turn_errors.append(TurnError(
                turn_number=self.utterance_count + 1,
                role=role.value,
                model=model,
                status=error.status,
                detail=error.detail,
                timestamp=datetime.now().isoformat(),
            ))

            utterance = Utterance(
                role=role,
                text=f"[error] {error.detail}",
                timestamp=time.time(),
                model=model,
                provider=provider,
                variant_id=variant.id if variant else None,
                is_error=True,
            )
            self.history.append(utterance)
            self.utterance_count += 1
            self._log(utterance, temperature=temperature, latency_ms=0.0)

        if self.verbose:
            print(f"  [Error] {role.value} ({model}): {error.status} {error.detail}\n")

        self._notify()
        return utterance

    def _analyze(self, current_turn: Optional[int] = None):
        if not self.config.analysis_enabled:
            return
        self.metrics = self.engine.analyze(
            self.analyzed_history(),
            self.config.topic,
            self.current_turn if current_turn is None else current_turn,
            self.config.max_turns,
        )

    def _record_outcome(self, variant: PromptVariant, utterance: Utterance, metadata: ResponseMetadata):
        if self.config.analysis_enabled and self.metrics is not None:
            quality = quality_from_metrics(self.metrics)
        else:
            quality = quality_from_text(utterance.text, utterance.role)

        self.prompts.record_experiment(ExperimentOutcome(
            variant_id=variant.id,
            conversation_id=self.session_id,
            timestamp=time.time(),
            quality=quality,
            response=ResponseMetrics(
                avg_length=len(utterance.text),
                avg_time=metadata.latency_ms,
                turn_count=self.current_turn,
            ),
        ))

    def _log(
        self,
        utterance: Utterance,
        temperature: float,
        latency_ms: float,
        metadata: Optional[ResponseMetadata] = None
    ):
        if not self.logger:
            return
        self.logger.log_turn(
            role=utterance.role.value,
            content=utterance.text,
            model=utterance.model,
            provider=utterance.provider,
            temperature=temperature,
            latency_ms=latency_ms,
            variant_id=utterance.variant_id,
            is_error=utterance.is_error,
            prompt_tokens=metadata.prompt_tokens if metadata else None,
            completion_tokens=metadata.completion_tokens if metadata else None,
            metrics=self.metrics.to_dict() if self.metrics and not utterance.is_error else None,
        )

    # -------------------------------------------------------------------------
    # Prompt context
    # -------------------------------------------------------------------------

    def build_messages(self, role: Role, system_text: str, style_text: str) -> List[Dict[str, str]]:
        """
        Build the message context for a role.

        Args:
            role: The role who will speak
            system_text: Variant (or configured) system prompt
            style_text: Variant (or configured) style prompt

        Returns:
            List of messages in chat format
        """
        messages = []
        if system_text:
            messages.append({"role": "system", "content": system_text})
        if style_text:
            messages.append({"role": "system", "content": f"[STYLE]\n{style_text}"})

        recent = self.analyzed_history()[-self.config.context_window:]
        if recent:
            transcript = "\n".join(f"{u.role.label}: {u.text}" for u in recent)
            prompt = (
                f"Topic: {self.config.topic}\n\n"
                f"Conversation so far:\n{transcript}\n\n"
                f"You are the {role.label}. Continue the conversation with your next line only."
            )
        else:
            prompt = (
                f"Topic: {self.config.topic}\n\n"
                f"You are the {role.label}. Open the conversation with your first line."
            )
        messages.append({"role": "user", "content": prompt})
        return messages

    # -------------------------------------------------------------------------
    # Feedback & persistence
    # -------------------------------------------------------------------------

    def record_feedback(
        self,
        variant_id: str,
        rating: float,
        comment: Optional[str] = None
    ) -> Optional[PromptVariant]:
        """
        Record a 1-5 user rating against a variant as an experiment.

        Returns:
            The updated variant, or None if the id is unknown
        """
        with self._lock:
            variant = self.prompts.get_variant(variant_id)
            if variant is None:
                return None

            if not 1 <= rating <= 5:
                raise ValueError(f"Rating must be between 1 and 5, got {rating}")

            return self.prompts.record_experiment(ExperimentOutcome(
                variant_id=variant_id,
                conversation_id=self.session_id,
                timestamp=time.time(),
                quality=quality_from_rating(rating),
                response=ResponseMetrics(
                    avg_length=variant.performance.avg_response_length,
                    avg_time=variant.performance.avg_response_time,
                    turn_count=self.current_turn,
                ),
                user_feedback=UserFeedback(rating=rating, comment=comment),
            ))

    def export_state(self) -> Dict:
        with self._lock:
            return self.prompts.export_state()

    def import_state(self, state: Dict):
        with self._lock:
            self.prompts.import_state(state)

    def save_state(self, path: Path) -> Path:
        return save_population(path, self.export_state())

    def load_state(self, path: Path):
        self.import_state(load_population(path))

    @staticmethod
    def _format_duration(td: timedelta) -> str:
        """Format timedelta as human-readable string."""
        total_seconds = int(td.total_seconds())
        hours, remainder = divmod(total_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h{minutes:02d}m"
        elif minutes > 0:
            return f"{minutes}m{seconds:02d}s"
        else:
            return f"{seconds}s"


# Convenience function
def run_session(
    config_path: Path,
    output_dir: Optional[Path] = None,
    topic: Optional[str] = None,
    max_turns: Optional[int] = None,
    strategy: Optional[str] = None,
    population_path: Optional[Path] = None,
    prompts_dir: Optional[Path] = None
) -> DialogueOrchestrator:
    """
    Run a complete session from a YAML config.

    Args:
        config_path: Path to session config YAML
        output_dir: Directory for session logs
        topic: Override topic
        max_turns: Override turn count
        strategy: Override speaker strategy
        population_path: Load the prompt population from here before running,
            and save it back afterwards
        prompts_dir: Directory of <role>.md prompt overrides

    Returns:
        The finished orchestrator
    """
    config = TriadConfig.from_yaml(config_path)
    if prompts_dir:
        RolePromptLoader(prompts_dir).load_into(config)
    if topic:
        config.topic = topic
    if max_turns:
        config.max_turns = max_turns
    if strategy:
        config.strategy = strategy

    if config.strategy not in STRATEGIES:
        raise ValueError(f"Unknown strategy: {config.strategy!r} (expected one of {list(STRATEGIES)})")

    orchestrator = DialogueOrchestrator(config, output_dir=output_dir, config_path=str(config_path))

    if population_path and Path(population_path).exists():
        orchestrator.load_state(population_path)
        print(f"  [Session] Loaded prompt population from {population_path}")

    orchestrator.run()

    if population_path:
        orchestrator.save_state(population_path)
        print(f"  [Session] Saved prompt population to {population_path}")

    return orchestrator
