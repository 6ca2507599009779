"""
ReviewConfigSet schema.

Defines the human-authored, reviewable source artifact for the review
engine's configuration.  YAML files are parsed into these types by the
loader and translated into kernel inputs by the bridges.

Key distinction:
  ReviewConfigSet = source artifact (human-authored, versioned YAML)
  TemplateSpec / EngineOptions = kernel inputs built by review_config.bridges
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EngineSettingsDef:
    """Deployment-wide engine settings."""

    platform_account_owner: str
    treasury_account_owner: str
    commitment_window_hours: int = 72
    author_award_points: int = 2
    reviewer_award_points: int = 1
    # None waits for busy aggregate locks without limit
    lock_timeout_seconds: float | None = None


@dataclass(frozen=True)
class StageDef:
    key: str
    stage_type: str
    display_name: str = ""
    deadline_days: int | None = None
    round_number: int | None = None
    is_initial: bool = False
    is_terminal: bool = False


@dataclass(frozen=True)
class TransitionDef:
    """An edge as written in YAML; ``condition`` is still the raw mapping."""

    from_stage: str
    to_stage: str
    condition: dict[str, Any]
    is_automatic: bool = True
    transition_order: int = 0


@dataclass(frozen=True)
class RankRewardDef:
    rank: int
    tokens: int


@dataclass(frozen=True)
class TemplateDef:
    name: str
    version: int
    activity_kind: str
    reviewer_count: int
    total_tokens: int
    stages: tuple[StageDef, ...]
    transitions: tuple[TransitionDef, ...]
    rank_rewards: tuple[RankRewardDef, ...] = ()
    insurance_fraction: str = "0"
    description: str | None = None


@dataclass(frozen=True)
class ReviewConfigSet:
    """One complete configuration set: engine settings plus templates."""

    config_id: str
    engine: EngineSettingsDef
    templates: tuple[TemplateDef, ...]
    checksum: str = ""

    def template(self, name: str) -> TemplateDef:
        for template in self.templates:
            if template.name == name:
                return template
        raise KeyError(f"No template named {name!r} in config set {self.config_id}")
