"""
Module: review_kernel.models.template
Responsibility: ORM persistence for workflow templates -- the stage graph,
    its guarded transitions, and the rank-to-tokens reward table.
Architecture position: Kernel > Models.  May import from db/ and enums only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - (name, version) is unique; a new workflow shape is a new version.
    - Stage keys are unique within a template.
    - Stage, transition and rank rows are append-only; the template row's
      structural fields are frozen (db/immutability.py).  Only is_active may
      change, which retires a template for new activities.
    - Deleting a template leaves its child rows alone (passive_deletes="all"),
      so the template's own delete listener is the one that refuses it.

Failure modes:
    - IntegrityError on duplicate (name, version) or duplicate stage key.
    - ImmutabilityViolationError on UPDATE/DELETE of definition rows.

Audit relevance:
    Every activity pins the exact template row it was created from, so its
    history can always be read against the graph it actually ran.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from review_kernel.db.base import Base, TrackedBase, UUIDString
from review_kernel.enums import StageType


class WorkflowTemplate(TrackedBase):
    """
    A named, versioned workflow definition.

    Guarantees:
        - reviewer_count is the reviewer team capacity and the number of
          distinct reviews a round needs.
        - total_tokens is the reward pool the template is designed for.
        - insurance_fraction is the share of the pool reserved as leftover
          for the platform account.
    """

    __tablename__ = "workflow_templates"
    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_template_name_version"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    activity_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    reviewer_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_tokens: Mapped[int] = mapped_column(nullable=False)
    insurance_fraction: Mapped[Decimal] = mapped_column(
        Numeric(6, 4), nullable=False, default=Decimal("0")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    stages: Mapped[list["StageDefinition"]] = relationship(
        back_populates="template",
        passive_deletes="all",
        order_by="StageDefinition.position",
    )
    transitions: Mapped[list["TransitionDefinition"]] = relationship(
        back_populates="template",
        passive_deletes="all",
        order_by="TransitionDefinition.transition_order",
    )
    rank_rewards: Mapped[list["RankReward"]] = relationship(
        back_populates="template",
        passive_deletes="all",
        order_by="RankReward.rank",
    )

    def __repr__(self) -> str:
        return f"<WorkflowTemplate {self.name} v{self.version}>"


class StageDefinition(Base):
    """A node of a template's stage graph."""

    __tablename__ = "template_stages"
    __table_args__ = (
        UniqueConstraint("template_id", "stage_key", name="uq_stage_template_key"),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_templates.id"), nullable=False
    )
    stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    stage_type: Mapped[StageType] = mapped_column(String(40), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Null means the stage has no deadline
    deadline_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    round_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_initial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    template: Mapped[WorkflowTemplate] = relationship(back_populates="stages")

    def __repr__(self) -> str:
        return f"<StageDefinition {self.stage_key} ({self.stage_type})>"


class TransitionDefinition(Base):
    """A guarded, directed edge between two stages of one template.

    condition_expression holds the canonical wire form of the parsed
    condition tree; it was validated when the template was registered.
    """

    __tablename__ = "template_transitions"
    __table_args__ = (
        UniqueConstraint(
            "template_id", "from_stage_key", "to_stage_key",
            name="uq_transition_edge",
        ),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_templates.id"), nullable=False
    )
    from_stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    to_stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    condition_expression: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    transition_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    template: Mapped[WorkflowTemplate] = relationship(back_populates="transitions")

    def __repr__(self) -> str:
        mode = "auto" if self.is_automatic else "manual"
        return f"<TransitionDefinition {self.from_stage_key}->{self.to_stage_key} {mode}>"


class RankReward(Base):
    """Tokens paid to every reviewer holding a given final rank."""

    __tablename__ = "template_rank_rewards"
    __table_args__ = (
        UniqueConstraint("template_id", "rank", name="uq_rank_reward"),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_templates.id"), nullable=False
    )
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    tokens: Mapped[int] = mapped_column(nullable=False)

    template: Mapped[WorkflowTemplate] = relationship(back_populates="rank_rewards")
