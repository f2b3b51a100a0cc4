"""
Roles, utterances and session configuration for TRIAD.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

The cast is fixed at three roles. Each role carries a completion
backend assignment plus its seed prompt (system text, style text,
temperature). Configuration loads from YAML, and role prompts can be
overridden from markdown files with YAML frontmatter.
"""

import re
import yaml
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Optional


class Role(str, Enum):
    """The three fixed conversational roles."""
    INITIATOR = "initiator"
    REACTOR = "reactor"
    MODERATOR = "moderator"

    @property
    def label(self) -> str:
        return self.value.capitalize()


ROLE_ORDER = (Role.INITIATOR, Role.REACTOR, Role.MODERATOR)

STRATEGIES = ("round_robin", "balanced", "reactive")

PROVIDERS = ("ollama", "lmstudio", "vllm", "openai_compatible")


DEFAULT_PROMPTS = {
    Role.INITIATOR: (
        "You are the initiator of a comedy duo. Bold, absurd, heavy on metaphor. "
        "Fire off short lines in quick succession. No crude jokes, insults or real names.",
        "Sentences of 12-40 characters. Fast tempo. Playful word choice.",
    ),
    Role.REACTOR: (
        "You are the reactor of a comedy duo. Logical, quick to respond, short and punchy. "
        "Never abusive and never attack the person.",
        "One short sentence. Respond instantly. Point out the fact, then land a light punchline.",
    ),
    Role.MODERATOR: (
        "You are the moderator. You manage the purpose, pace and safety of the "
        "conversation and nominate who speaks next.",
        "Meta perspective. Give stage directions. Wrap up briefly every three turns.",
    ),
}

DEFAULT_TEMPERATURES = {
    Role.INITIATOR: 0.9,
    Role.REACTOR: 0.4,
    Role.MODERATOR: 0.6,
}


def parse_role(value) -> Role:
    """Accept a Role or its string name."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).lower())
    except ValueError:
        raise ValueError(f"Unknown role: {value!r} (expected one of {[r.value for r in Role]})")


@dataclass(frozen=True)
class Utterance:
    """One line of the conversation. Immutable once appended."""
    role: Role
    text: str
    timestamp: float
    model: str = ""
    provider: str = ""
    variant_id: Optional[str] = None
    is_error: bool = False

    def to_dict(self) -> Dict:
        return {
            "role": self.role.value,
            "text": self.text,
            "timestamp": self.timestamp,
            "model": self.model,
            "provider": self.provider,
            "variant_id": self.variant_id,
            "is_error": self.is_error,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Utterance":
        return cls(
            role=parse_role(data["role"]),
            text=data["text"],
            timestamp=float(data.get("timestamp", 0.0)),
            model=data.get("model", ""),
            provider=data.get("provider", ""),
            variant_id=data.get("variant_id"),
            is_error=bool(data.get("is_error", False)),
        )


@dataclass
class RoleConfig:
    """Per-role backend and prompt configuration."""
    provider: str = "ollama"
    model: str = "gemma3:4b"
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 512
    repetition_penalty: float = 1.05
    timeout_s: float = 30.0
    prompt_system: str = ""
    prompt_style: str = ""

    @classmethod
    def default_for(cls, role: Role) -> "RoleConfig":
        system, style = DEFAULT_PROMPTS[role]
        return cls(
            temperature=DEFAULT_TEMPERATURES[role],
            timeout_s=20.0 if role == Role.INITIATOR else 30.0,
            prompt_system=system,
            prompt_style=style,
        )

    def merged(self, data: Dict) -> "RoleConfig":
        """Return a copy with fields overridden from a YAML mapping."""
        provider = str(data.get("provider", self.provider)).lower()
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {provider!r} (expected one of {list(PROVIDERS)})")
        return RoleConfig(
            provider=provider,
            model=data.get("model", self.model),
            endpoint=data.get("endpoint", self.endpoint),
            api_key=data.get("api_key", self.api_key),
            temperature=float(data.get("temperature", self.temperature)),
            top_p=float(data.get("top_p", self.top_p)),
            max_tokens=int(data.get("max_tokens", self.max_tokens)),
            repetition_penalty=float(data.get("repetition_penalty", self.repetition_penalty)),
            timeout_s=float(data.get("timeout_s", self.timeout_s)),
            prompt_system=data.get("prompt_system", self.prompt_system),
            prompt_style=data.get("prompt_style", self.prompt_style),
        )


@dataclass
class TriadConfig:
    """
    Configuration for one three-role session.

    Can be loaded from YAML or constructed programmatically.
    """
    roles: Dict[Role, RoleConfig] = field(
        default_factory=lambda: {r: RoleConfig.default_for(r) for r in ROLE_ORDER}
    )
    topic: str = "Why do refrigerators hum?"
    max_turns: int = 10
    strategy: str = "reactive"
    context_window: int = 10
    opening_line: str = "Today's theme is '{topic}'. Let's begin."
    adaptive_prompts: bool = True
    analysis_enabled: bool = True
    evolution: Dict[str, object] = field(default_factory=dict)
    debug_log_size: int = 200
    seed: Optional[int] = None

    def __post_init__(self):
        if self.strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy: {self.strategy!r} (expected one of {list(STRATEGIES)})")

    @classmethod
    def from_yaml(cls, path: Path) -> "TriadConfig":
        """Load session configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        defaults = data.get("defaults", {})
        roles = {}
        for role in ROLE_ORDER:
            base = RoleConfig.default_for(role).merged(defaults)
            roles[role] = base.merged(data.get("roles", {}).get(role.value) or {})

        dialogue = data.get("dialogue", {})

        return cls(
            roles=roles,
            topic=dialogue.get("topic", cls.topic),
            max_turns=int(dialogue.get("max_turns", cls.max_turns)),
            strategy=dialogue.get("strategy", cls.strategy),
            context_window=int(dialogue.get("context_window", cls.context_window)),
            opening_line=dialogue.get("opening_line", cls.opening_line),
            adaptive_prompts=data.get("adaptive_prompts", True),
            analysis_enabled=data.get("analysis_enabled", True),
            evolution=data.get("evolution", {}) or {},
            debug_log_size=int(data.get("debug_log_size", cls.debug_log_size)),
            seed=data.get("seed"),
        )

    def role_config(self, role: Role) -> RoleConfig:
        return self.roles[role]


class RolePromptLoader:
    """
    Loads role prompt overrides from a directory of markdown files.

    Each file is named after a role (initiator.md, reactor.md,
    moderator.md). Frontmatter may set temperature, model and style;
    the markdown body becomes the system text.
    """

    def __init__(self, prompts_dir: Path):
        self.prompts_dir = Path(prompts_dir)

    def load_into(self, config: TriadConfig) -> TriadConfig:
        """Apply every role file found to the config in place."""
        if not self.prompts_dir.exists():
            raise FileNotFoundError(f"Prompts directory not found: {self.prompts_dir}")

        for role in ROLE_ORDER:
            path = self.prompts_dir / f"{role.value}.md"
            if not path.exists():
                continue
            overrides = self._parse_prompt_file(path)
            if overrides:
                config.roles[role] = config.roles[role].merged(overrides)
        return config

    def _parse_prompt_file(self, path: Path) -> Optional[Dict]:
        """Parse a single role markdown file."""
        content = path.read_text()

        match = re.match(r'^---\n(.*?)\n---\n(.*)$', content, re.DOTALL)
        if not match:
            body = content.strip()
            return {"prompt_system": body} if body else None

        try:
            meta = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError:
            meta = {}

        overrides = {}
        for key in ("model", "provider", "temperature", "endpoint"):
            if key in meta:
                overrides[key] = meta[key]
        if "style" in meta:
            overrides["prompt_style"] = str(meta["style"]).strip()

        body = match.group(2).strip()
        if body:
            overrides["prompt_system"] = body
        return overrides
