"""
TemplateService -- registration and loading of workflow templates.

Responsibility:
    Validates a TemplateSpec, persists it as template, stage, transition and
    rank-reward rows, and compiles stored templates back into
    CompiledTemplate objects for the state machine.

Architecture position:
    Kernel > Services.  Called by ReviewEngine (register, create_activity)
    and by the state machine (through the engine) for every transition.

Invariants enforced:
    - TEMPLATE_WELL_FORMED: a template failing validate_template() is never
      written, so no activity can attach to it.
    - Definitions are immutable once written (db/immutability.py).  Only
      is_active may change, through retire().
    - (name, version) is unique.

Failure modes:
    - TemplateValidationError with every structural issue found.
    - DuplicateTemplateError for an existing (name, version).
    - TemplateNotFoundError on load of an unknown id.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from review_kernel.domain.clock import Clock, SystemClock
from review_kernel.domain.conditions import parse_condition, to_wire
from review_kernel.domain.template_graph import (
    CompiledTemplate,
    RankRewardSpec,
    StageSpec,
    TemplateSpec,
    TransitionSpec,
    require_valid_template,
)
from review_kernel.enums import StageType
from review_kernel.exceptions import DuplicateTemplateError, TemplateNotFoundError
from review_kernel.logging_config import get_logger
from review_kernel.models.template import (
    RankReward,
    StageDefinition,
    TransitionDefinition,
    WorkflowTemplate,
)
from review_kernel.services.base import BaseService

logger = get_logger("services.templates")


class TemplateService(BaseService[WorkflowTemplate]):
    """Registers templates and serves compiled, read-only copies."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._compiled: dict[UUID, CompiledTemplate] = {}

    def register(self, spec: TemplateSpec, actor_id: UUID) -> CompiledTemplate:
        """Validate and persist a new template version."""
        require_valid_template(spec)

        existing = self.session.execute(
            select(WorkflowTemplate.id).where(
                WorkflowTemplate.name == spec.name,
                WorkflowTemplate.version == spec.version,
            )
        ).first()
        if existing is not None:
            raise DuplicateTemplateError(spec.name, spec.version)

        template = WorkflowTemplate(
            name=spec.name,
            version=spec.version,
            activity_kind=spec.activity_kind,
            description=spec.description,
            reviewer_count=spec.reviewer_count,
            total_tokens=spec.total_tokens,
            insurance_fraction=spec.insurance_fraction,
            is_active=True,
            created_by_id=actor_id,
        )
        self.session.add(template)
        self.session.flush()

        for position, stage in enumerate(spec.stages):
            self.session.add(
                StageDefinition(
                    template_id=template.id,
                    stage_key=stage.key,
                    stage_type=stage.stage_type.value,
                    display_name=stage.display_name or stage.key,
                    deadline_days=stage.deadline_days,
                    round_number=stage.round_number,
                    is_initial=stage.is_initial,
                    is_terminal=stage.is_terminal,
                    position=position,
                )
            )
        for edge in spec.transitions:
            self.session.add(
                TransitionDefinition(
                    template_id=template.id,
                    from_stage_key=edge.from_stage,
                    to_stage_key=edge.to_stage,
                    condition_expression=to_wire(edge.condition),
                    is_automatic=edge.is_automatic,
                    transition_order=edge.transition_order,
                )
            )
        for reward in spec.rank_rewards:
            self.session.add(
                RankReward(template_id=template.id, rank=reward.rank, tokens=reward.tokens)
            )
        self.session.flush()

        compiled = CompiledTemplate.build(template.id, spec)
        self._compiled[template.id] = compiled
        logger.info(
            "template_registered",
            extra={
                "template_id": str(template.id),
                "template_name": spec.name,
                "template_version": spec.version,
                "stage_count": len(spec.stages),
                "transition_count": len(spec.transitions),
            },
        )
        return compiled

    def get_row(self, template_id: UUID) -> WorkflowTemplate:
        template = self.session.get(WorkflowTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(str(template_id))
        return template

    def find_id(self, name: str, version: int | None = None) -> UUID:
        """Id of the named template; the highest version when none is given."""
        query = select(WorkflowTemplate.id).where(WorkflowTemplate.name == name)
        if version is not None:
            query = query.where(WorkflowTemplate.version == version)
        found = self.session.execute(
            query.order_by(WorkflowTemplate.version.desc()).limit(1)
        ).scalar_one_or_none()
        if found is None:
            raise TemplateNotFoundError(name if version is None else f"{name} v{version}")
        return found

    def load(self, template_id: UUID) -> CompiledTemplate:
        """Compile a stored template.  Compiled copies are cached per service."""
        cached = self._compiled.get(template_id)
        if cached is not None:
            return cached

        template = self.session.execute(
            select(WorkflowTemplate)
            .where(WorkflowTemplate.id == template_id)
            .options(
                selectinload(WorkflowTemplate.stages),
                selectinload(WorkflowTemplate.transitions),
                selectinload(WorkflowTemplate.rank_rewards),
            )
        ).scalar_one_or_none()
        if template is None:
            raise TemplateNotFoundError(str(template_id))

        compiled = CompiledTemplate.build(template.id, self._to_spec(template))
        self._compiled[template_id] = compiled
        return compiled

    def retire(self, template_id: UUID, actor_id: UUID) -> None:
        """Stop new activities from attaching; running activities continue."""
        template = self.get_row(template_id)
        template.is_active = False
        template.updated_by_id = actor_id
        self.session.flush()
        logger.info("template_retired", extra={"template_id": str(template_id)})

    @staticmethod
    def _to_spec(template: WorkflowTemplate) -> TemplateSpec:
        return TemplateSpec(
            name=template.name,
            version=template.version,
            activity_kind=template.activity_kind,
            description=template.description,
            reviewer_count=template.reviewer_count,
            total_tokens=template.total_tokens,
            insurance_fraction=Decimal(template.insurance_fraction),
            stages=tuple(
                StageSpec(
                    key=s.stage_key,
                    stage_type=StageType(s.stage_type),
                    display_name=s.display_name,
                    deadline_days=s.deadline_days,
                    round_number=s.round_number,
                    is_initial=s.is_initial,
                    is_terminal=s.is_terminal,
                )
                for s in template.stages
            ),
            transitions=tuple(
                TransitionSpec(
                    from_stage=t.from_stage_key,
                    to_stage=t.to_stage_key,
                    condition=parse_condition(t.condition_expression),
                    is_automatic=t.is_automatic,
                    transition_order=t.transition_order,
                )
                for t in template.transitions
            ),
            rank_rewards=tuple(
                RankRewardSpec(rank=r.rank, tokens=r.tokens) for r in template.rank_rewards
            ),
        )
