"""
Session logging for TRIAD dialogues.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

Logs dialogue sessions to JSON with per-turn metrics and variant ids.
Supports incremental checkpointing after each turn, and stores the
prompt population snapshot as an opaque JSON blob.
"""

import json
from datetime import datetime
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Any


@dataclass
class TurnRecord:
    """Record of a single dialogue turn."""
    turn_number: int
    role: str
    content: str
    model: str
    provider: str
    temperature: float
    latency_ms: float
    variant_id: Optional[str] = None
    is_error: bool = False
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    metrics: Optional[Dict[str, Any]] = None


@dataclass
class SessionRecord:
    """Complete record of a dialogue session."""
    session_id: str
    topic: str
    strategy: str
    seed: Optional[int]
    config_path: Optional[str]
    start_time: str
    end_time: Optional[str] = None
    turns: List[TurnRecord] = field(default_factory=list)

    # Aggregate metadata
    total_latency_ms: float = 0.0
    total_tokens: int = 0
    error_count: int = 0
    role_turn_counts: Dict[str, int] = field(default_factory=dict)

    # Configuration snapshot
    model_assignments: Dict[str, str] = field(default_factory=dict)
    temperature_assignments: Dict[str, float] = field(default_factory=dict)

    # Filled at end_session
    evolution_stats: Dict[str, Any] = field(default_factory=dict)


class SessionLogger:
    """
    Logger for TRIAD dialogue sessions.

    Writes session_<id>_checkpoint.json after every turn and
    session_<id>.json when the session ends.
    """

    def __init__(self, output_dir: Path, session_id: Optional[str] = None):
        """
        Initialize session logger.

        Args:
            output_dir: Directory for session output files
            session_id: Optional custom session ID (default: timestamp-based)
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.session_id = session_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self._session: Optional[SessionRecord] = None

    @property
    def session(self) -> Optional[SessionRecord]:
        return self._session

    def start_session(
        self,
        topic: str,
        strategy: str,
        model_assignments: Dict[str, str],
        temperature_assignments: Dict[str, float],
        seed: Optional[int] = None,
        config_path: Optional[str] = None
    ) -> SessionRecord:
        """
        Initialize a new session record.

        Args:
            topic: The session topic
            strategy: Speaker strategy name at start
            model_assignments: Dict mapping role -> model
            temperature_assignments: Dict mapping role -> baseline temperature
            seed: Random seed, if one was fixed
            config_path: Path to config file used

        Returns:
            The initialized SessionRecord
        """
        self._session = SessionRecord(
            session_id=self.session_id,
            topic=topic,
            strategy=strategy,
            seed=seed,
            config_path=config_path,
            start_time=datetime.now().isoformat(),
            model_assignments=model_assignments,
            temperature_assignments=temperature_assignments
        )
        return self._session

    def log_turn(
        self,
        role: str,
        content: str,
        model: str,
        provider: str,
        temperature: float,
        latency_ms: float,
        variant_id: Optional[str] = None,
        is_error: bool = False,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        metrics: Optional[Dict[str, Any]] = None,
        checkpoint: bool = True
    ) -> TurnRecord:
        """
        Log a dialogue turn.

        Args:
            role: Speaking role name
            content: The utterance text (or error text)
            model: Model used for generation
            provider: Completion provider
            temperature: Temperature used
            latency_ms: Generation latency in milliseconds
            variant_id: Prompt variant used, if adaptive prompts are on
            is_error: True for an upstream failure placeholder
            prompt_tokens: Optional prompt token count
            completion_tokens: Optional completion token count
            metrics: Snapshot dict computed after this turn
            checkpoint: Save checkpoint after this turn

        Returns:
            The TurnRecord
        """
        if self._session is None:
            raise RuntimeError("Session not started. Call start_session() first.")

        turn = TurnRecord(
            turn_number=len(self._session.turns) + 1,
            role=role,
            content=content,
            model=model,
            provider=provider,
            temperature=temperature,
            latency_ms=latency_ms,
            variant_id=variant_id,
            is_error=is_error,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            metrics=metrics
        )
        self._session.turns.append(turn)

        # Update aggregates
        self._session.total_latency_ms += latency_ms
        if prompt_tokens and completion_tokens:
            self._session.total_tokens += prompt_tokens + completion_tokens
        if is_error:
            self._session.error_count += 1

        self._session.role_turn_counts[role] = self._session.role_turn_counts.get(role, 0) + 1

        if checkpoint:
            self._save_checkpoint()

        return turn

    def end_session(self, evolution_stats: Optional[Dict[str, Any]] = None) -> Path:
        """
        Finalize and save the session.

        Returns:
            Path to the saved session JSON file
        """
        if self._session is None:
            raise RuntimeError("No active session to end.")

        self._session.end_time = datetime.now().isoformat()
        if evolution_stats:
            self._session.evolution_stats = evolution_stats

        return self._save_json()

    def _save_checkpoint(self):
        """Save intermediate checkpoint."""
        self._save_json(suffix="_checkpoint")

    def _save_json(self, suffix: str = "") -> Path:
        """Save session to JSON file."""
        path = self.output_dir / f"session_{self.session_id}{suffix}.json"

        with open(path, 'w') as f:
            json.dump(asdict(self._session), f, indent=2)

        return path

    @staticmethod
    def load_session(path: Path) -> Dict[str, Any]:
        """Load a saved session from JSON."""
        with open(path) as f:
            return json.load(f)


def save_population(path: Path, blob: Dict[str, Any]) -> Path:
    """Write an exported prompt population snapshot."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(blob, f, indent=2)
    return path


def load_population(path: Path) -> Dict[str, Any]:
    """Read a prompt population snapshot written by save_population()."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Population snapshot not found: {path}")
    with open(path) as f:
        return json.load(f)


# Test if run directly
if __name__ == "__main__":
    import tempfile

    print("Session Logger Test")
    print("=" * 50)

    with tempfile.TemporaryDirectory() as tmpdir:
        logger = SessionLogger(Path(tmpdir))
        logger.start_session(
            topic="Why do refrigerators hum?",
            strategy="reactive",
            model_assignments={"initiator": "gemma3:4b", "reactor": "gemma3:4b"},
            temperature_assignments={"initiator": 0.9, "reactor": 0.4},
        )
        logger.log_turn(
            role="initiator",
            content="My fridge hums because it forgot the lyrics!",
            model="gemma3:4b",
            provider="ollama",
            temperature=0.9,
            latency_ms=812.0,
            variant_id="initiator_v1_baseline",
        )
        path = logger.end_session()

        data = SessionLogger.load_session(path)
        print(f"Session saved to: {path}")
        print(f"Turns: {len(data['turns'])}")
        print(f"Role turn counts: {data['role_turn_counts']}")
