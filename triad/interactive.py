"""
Interactive TRIAD sessions driven from a background thread.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

Architecture: Queue-based event streaming
- Dialogue loop runs in background thread, one orchestrator step at a time
- Events (state, token deltas, turns, metrics) pushed to thread-safe queue
- SSE endpoint reads from queue (survives reconnection)
- Pause/resume between steps; cancel aborts the in-flight completion only
"""

import queue
import random
import threading
import time
import traceback
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Union

from .roles import Role, TriadConfig
from .completion_client import CompletionClient
from .orchestrator import DialogueOrchestrator, ObserverView


class SessionState(Enum):
    """Possible states for an interactive session."""
    IDLE = "idle"              # Not started
    RUNNING = "running"        # Roles conversing
    PAUSED = "paused"          # Manually paused
    COMPLETE = "complete"      # Session ended


@dataclass
class TurnEvent:
    """Event emitted when an utterance is appended."""
    turn_number: int
    role: str
    text: str
    model: str
    variant_id: Optional[str] = None
    is_error: bool = False
    type: str = "turn"


@dataclass
class DeltaEvent:
    """Streamed token delta for the utterance in progress."""
    role: str
    delta: str
    type: str = "delta"


@dataclass
class MetricsEvent:
    """Snapshot and evolution stats after a step."""
    turn_number: int
    metrics: Optional[Dict[str, Any]]
    evolution: Dict[str, Any] = field(default_factory=dict)
    strategy: str = ""
    type: str = "metrics"


@dataclass
class StateEvent:
    """Event emitted when session state changes."""
    state: SessionState
    next_speaker: Optional[str] = None
    message: Optional[str] = None
    type: str = "state"


Event = Union[TurnEvent, DeltaEvent, MetricsEvent, StateEvent]


def event_to_dict(event: Event) -> Dict[str, Any]:
    data = asdict(event)
    if isinstance(event, StateEvent):
        data["state"] = event.state.value
    return data


class InteractiveSession:
    """
    Runs one DialogueOrchestrator in a worker thread.

    Each session owns its orchestrator, and therefore its own
    prompt populations; nothing is shared between sessions.
    """

    def __init__(
        self,
        config: TriadConfig,
        output_dir: Optional[Path] = None,
        client: Optional[CompletionClient] = None,
        rng: Optional[random.Random] = None,
        session_id: Optional[str] = None,
        verbose: bool = True
    ):
        """
        Initialize interactive session.

        Args:
            config: Session configuration
            output_dir: Directory for session logs (None disables logging)
            client: Completion client override
            rng: Random source override
            session_id: Optional session identifier
            verbose: Print worker progress
        """
        self.orchestrator = DialogueOrchestrator(
            config,
            client=client,
            rng=rng,
            output_dir=output_dir,
            session_id=session_id,
            verbose=verbose,
        )
        self.session_id = self.orchestrator.session_id
        self.verbose = verbose
        self.state = SessionState.IDLE

        # Queue-based event streaming
        self._event_queue: queue.Queue = queue.Queue()
        self._stop_event: threading.Event = threading.Event()
        self._pause_event: threading.Event = threading.Event()
        self._worker_thread: Optional[threading.Thread] = None
        self._started: bool = False
        self._finalized: bool = False
        self._finalize_lock = threading.Lock()

        self.orchestrator.add_observer(self._on_step)
        self.orchestrator.add_delta_observer(self._on_delta)

    # -------------------------------------------------------------------------
    # Observer hooks
    # -------------------------------------------------------------------------

    def _on_step(self, view: ObserverView):
        self._event_queue.put(MetricsEvent(
            turn_number=view.utterance_count,
            metrics=view.metrics.to_dict() if view.metrics else None,
            evolution={role.value: stats.to_dict() for role, stats in view.evolution_stats.items()},
            strategy=view.strategy,
        ))

    def _on_delta(self, role: Role, delta: str):
        self._event_queue.put(DeltaEvent(role=role.value, delta=delta))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def get_state(self) -> Dict:
        """Current session state for the API."""
        view = self.orchestrator.observer_view()
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "topic": self.orchestrator.config.topic,
            "strategy": view.strategy,
            "utterance_count": view.utterance_count,
            "max_utterances": view.max_utterances,
            "history": [u.to_dict() for u in view.history],
            "metrics": view.metrics.to_dict() if view.metrics else None,
        }

    def start(self) -> "InteractiveSession":
        """
        Start the dialogue session.

        Launches background worker thread and returns self.
        Call get_next_event() to receive events.
        """
        if self._started:
            return self

        self._started = True
        self._worker_thread = threading.Thread(
            target=self._dialogue_loop,
            daemon=True,
            name=f"triad-session-{self.session_id}"
        )
        self._worker_thread.start()
        return self

    def get_next_event(self, timeout: float = 30.0) -> Optional[Event]:
        """
        Get the next event from the queue.

        Args:
            timeout: How long to wait for an event (seconds)

        Returns:
            Event or None on timeout
        """
        try:
            return self._event_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def has_events(self) -> bool:
        """Check if there are pending events in the queue."""
        return not self._event_queue.empty()

    def _dialogue_loop(self):
        """Background thread: runs the dialogue, pushing events to queue."""
        try:
            self._run_dialogue()
        except Exception as e:
            print(f"Worker thread error: {e}\n{traceback.format_exc()}")
            self.state = SessionState.COMPLETE
            self._event_queue.put(StateEvent(state=self.state, message=f"Error: {e}"))

    def _run_dialogue(self):
        """Inner dialogue loop - separated for clean error handling."""
        orchestrator = self.orchestrator
        self.state = SessionState.RUNNING
        self._event_queue.put(StateEvent(state=self.state, message="Session started"))

        orchestrator.start()
        if orchestrator.history:
            opening = orchestrator.history[-1]
            self._event_queue.put(TurnEvent(
                turn_number=0,
                role=opening.role.value,
                text=opening.text,
                model=opening.model,
            ))

        while orchestrator.utterance_count < orchestrator.max_utterances and not self._stop_event.is_set():
            if self._pause_event.is_set():
                self.state = SessionState.PAUSED
                self._event_queue.put(StateEvent(state=self.state, message="Paused"))
                while self._pause_event.is_set() and not self._stop_event.is_set():
                    time.sleep(0.1)
                if self._stop_event.is_set():
                    break
                self.state = SessionState.RUNNING
                self._event_queue.put(StateEvent(state=self.state, message="Resumed"))

            utterance = orchestrator.step()
            if utterance is None:
                continue

            self._event_queue.put(TurnEvent(
                turn_number=orchestrator.utterance_count,
                role=utterance.role.value,
                text=utterance.text,
                model=utterance.model,
                variant_id=utterance.variant_id,
                is_error=utterance.is_error,
            ))

        if not self._stop_event.is_set():
            self._finalize()
            self._event_queue.put(StateEvent(state=self.state, message="Session complete"))

    # -------------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------------

    def pause(self):
        """Pause the session after the current step."""
        if self.state == SessionState.RUNNING:
            self._pause_event.set()

    def resume(self):
        """Resume a paused session."""
        self._pause_event.clear()

    def cancel_turn(self):
        """Abort the in-flight completion; the loop moves on to the next step."""
        self.orchestrator.cancel_turn()

    def set_strategy(self, name: str):
        self.orchestrator.set_strategy(name)

    def record_feedback(self, variant_id: str, rating: float, comment: Optional[str] = None):
        return self.orchestrator.record_feedback(variant_id, rating, comment)

    def end_session(self, timeout: float = 5.0) -> Optional[Path]:
        """Stop the worker and finalize the log."""
        self._stop_event.set()
        self._pause_event.clear()
        self.orchestrator.stop()

        if self._worker_thread is not None and self._worker_thread is not threading.current_thread():
            self._worker_thread.join(timeout=timeout)

        path = self._finalize()
        self._event_queue.put(StateEvent(state=self.state, message="Session ended"))
        return path

    def _finalize(self) -> Optional[Path]:
        with self._finalize_lock:
            if self._finalized:
                return None
            self._finalized = True
            self.state = SessionState.COMPLETE
            return self.orchestrator.finish()
