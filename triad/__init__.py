"""
TRIAD - Three-role dialogue orchestrator

Initiator, reactor and moderator models in one conversation, with live
dialogue metrics, metric-driven speaker selection and self-improving
role prompts.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A
"""

__version__ = "0.1.0"

# Core infrastructure
from .roles import (
    Role,
    Utterance,
    RoleConfig,
    TriadConfig,
    RolePromptLoader,
    ROLE_ORDER,
    STRATEGIES,
)
from .completion_client import (
    CompletionClient,
    CompletionRequest,
    CompletionError,
    CompletionCancelled,
    ResponseMetadata,
    DebugLog,
)
from .session_logger import SessionLogger, SessionRecord, TurnRecord

# Analysis & policy
from .metrics import (
    MetricsEngine,
    MetricsSnapshot,
    NextSpeakerForecast,
    Phase,
    Recommendation,
    SpeakerStats,
)
from .speaker_policy import (
    SpeakerPolicy,
    RoundRobinPolicy,
    BalancedPolicy,
    ReactivePolicy,
    create_policy,
    should_moderator_intervene,
)

# Prompt evolution
from .evolution import (
    AdaptivePromptSystem,
    ConfigurationError,
    EvolutionConfig,
    ExperimentOutcome,
    PromptVariant,
    VariantPopulation,
)

# Orchestration
from .orchestrator import DialogueOrchestrator, ObserverView, run_session
from .interactive import InteractiveSession, SessionState

__all__ = [
    # Version
    "__version__",
    # Roles & config
    "Role",
    "Utterance",
    "RoleConfig",
    "TriadConfig",
    "RolePromptLoader",
    "ROLE_ORDER",
    "STRATEGIES",
    # Completion client
    "CompletionClient",
    "CompletionRequest",
    "CompletionError",
    "CompletionCancelled",
    "ResponseMetadata",
    "DebugLog",
    # Session logging
    "SessionLogger",
    "SessionRecord",
    "TurnRecord",
    # Metrics
    "MetricsEngine",
    "MetricsSnapshot",
    "NextSpeakerForecast",
    "Phase",
    "Recommendation",
    "SpeakerStats",
    # Speaker policy
    "SpeakerPolicy",
    "RoundRobinPolicy",
    "BalancedPolicy",
    "ReactivePolicy",
    "create_policy",
    "should_moderator_intervene",
    # Evolution
    "AdaptivePromptSystem",
    "ConfigurationError",
    "EvolutionConfig",
    "ExperimentOutcome",
    "PromptVariant",
    "VariantPopulation",
    # Orchestration
    "DialogueOrchestrator",
    "ObserverView",
    "run_session",
    "InteractiveSession",
    "SessionState",
]
