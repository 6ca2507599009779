"""
Bridges -- translate parsed configuration into kernel inputs.

The kernel never imports review_config.  These functions turn the frozen
schema objects into the kernel's own types: ``EngineOptions`` for the
engine facade and ``TemplateSpec`` for template registration.  Condition
mappings are parsed here, so a malformed condition fails while the
configuration is loaded rather than when an activity first evaluates it.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from review_config.loader import ConfigLoadError
from review_config.schema import EngineSettingsDef, ReviewConfigSet, TemplateDef
from review_kernel.domain.conditions import parse_condition
from review_kernel.domain.dtos import EngineOptions
from review_kernel.domain.template_graph import (
    RankRewardSpec,
    StageSpec,
    TemplateSpec,
    TransitionSpec,
)
from review_kernel.enums import StageType


def _owner_id(value: str, field: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise ConfigLoadError("engine.yaml", field, f"not a UUID: {value!r}") from None


def to_engine_options(settings: EngineSettingsDef) -> EngineOptions:
    return EngineOptions(
        platform_owner_id=_owner_id(settings.platform_account_owner, "platform_account_owner"),
        treasury_owner_id=_owner_id(settings.treasury_account_owner, "treasury_account_owner"),
        commitment_window=timedelta(hours=settings.commitment_window_hours),
        author_award_points=settings.author_award_points,
        reviewer_award_points=settings.reviewer_award_points,
    )


def to_template_spec(template: TemplateDef) -> TemplateSpec:
    """Build a TemplateSpec; unknown stage types raise ConfigLoadError."""
    stages = []
    for stage in template.stages:
        try:
            stage_type = StageType(stage.stage_type)
        except ValueError:
            raise ConfigLoadError(
                template.name, f"stages.{stage.key}.type", f"unknown stage type {stage.stage_type!r}"
            ) from None
        stages.append(
            StageSpec(
                key=stage.key,
                stage_type=stage_type,
                display_name=stage.display_name or stage.key,
                deadline_days=stage.deadline_days,
                round_number=stage.round_number,
                is_initial=stage.is_initial,
                is_terminal=stage.is_terminal,
            )
        )

    return TemplateSpec(
        name=template.name,
        version=template.version,
        activity_kind=template.activity_kind,
        description=template.description,
        reviewer_count=template.reviewer_count,
        total_tokens=template.total_tokens,
        insurance_fraction=Decimal(template.insurance_fraction),
        stages=tuple(stages),
        transitions=tuple(
            TransitionSpec(
                from_stage=edge.from_stage,
                to_stage=edge.to_stage,
                condition=parse_condition(edge.condition),
                is_automatic=edge.is_automatic,
                transition_order=edge.transition_order,
            )
            for edge in template.transitions
        ),
        rank_rewards=tuple(RankRewardSpec(rank=r.rank, tokens=r.tokens) for r in template.rank_rewards),
    )


def template_specs(config: ReviewConfigSet) -> list[TemplateSpec]:
    return [to_template_spec(t) for t in config.templates]
