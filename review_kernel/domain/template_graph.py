"""
Template Graph -- pure definition and validation of workflow stage graphs.

Responsibility:
    Holds the immutable, in-memory form of a workflow template (stages,
    guarded transitions, rank table) and validates its structure.  The same
    types describe a template before registration (from configuration) and
    after it is loaded back from the database (CompiledTemplate).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Exactly one initial stage.
    - Every stage reachable from the initial stage.
    - No cycles.
    - Every edge references stages of the same template.
    - Terminal stages have no outgoing edges; every other stage has one.
    - Terminal stages carry a type from the canonical terminal set, and only
      terminal stages do.
    - Automatic edges never reference the manual predicate.
    - transition_order is unique among a stage's outgoing edges.
    - Rank table ranks are 1..N, at most reviewer_count entries, positive
      token amounts, and together with the insurance share fit the pool.

Failure modes:
    validate_template() returns every issue it finds; require_valid_template()
    raises TemplateValidationError carrying them.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from review_kernel.domain.conditions import ConditionNode, PredicateKind, references
from review_kernel.enums import TERMINAL_STAGE_TYPES, StageType
from review_kernel.exceptions import TemplateValidationError


@dataclass(frozen=True)
class StageSpec:
    key: str
    stage_type: StageType
    display_name: str = ""
    deadline_days: int | None = None
    round_number: int | None = None
    is_initial: bool = False
    is_terminal: bool = False


@dataclass(frozen=True)
class TransitionSpec:
    from_stage: str
    to_stage: str
    condition: ConditionNode
    is_automatic: bool = True
    transition_order: int = 0


@dataclass(frozen=True)
class RankRewardSpec:
    rank: int
    tokens: int


@dataclass(frozen=True)
class TemplateSpec:
    """A workflow template as supplied for registration."""

    name: str
    activity_kind: str
    reviewer_count: int
    total_tokens: int
    stages: tuple[StageSpec, ...]
    transitions: tuple[TransitionSpec, ...]
    rank_rewards: tuple[RankRewardSpec, ...] = ()
    insurance_fraction: Decimal = Decimal("0")
    version: int = 1
    description: str | None = None

    @property
    def insurance_tokens(self) -> int:
        return insurance_share(self.total_tokens, self.insurance_fraction)


@dataclass(frozen=True)
class StructuralIssue:
    code: str
    message: str
    stage_key: str | None = None

    def __str__(self) -> str:
        if self.stage_key:
            return f"[{self.code}] {self.stage_key}: {self.message}"
        return f"[{self.code}] {self.message}"


def insurance_share(total_tokens: int, fraction: Decimal) -> int:
    """Whole tokens reserved for the platform account, rounded down."""
    return int((Decimal(total_tokens) * fraction).to_integral_value(rounding=ROUND_FLOOR))


def validate_template(spec: TemplateSpec) -> list[StructuralIssue]:
    """Return every structural issue in the template; empty means valid."""
    issues: list[StructuralIssue] = []

    if spec.reviewer_count < 1:
        issues.append(StructuralIssue("REVIEWER_COUNT", "reviewer_count must be at least 1"))
    if spec.total_tokens < 0:
        issues.append(StructuralIssue("TOKEN_POOL", "total_tokens must not be negative"))
    if not Decimal("0") <= spec.insurance_fraction < Decimal("1"):
        issues.append(StructuralIssue("INSURANCE", "insurance_fraction must be in [0, 1)"))

    stages: dict[str, StageSpec] = {}
    for stage in spec.stages:
        if stage.key in stages:
            issues.append(StructuralIssue("DUPLICATE_STAGE", "stage key is not unique", stage.key))
        stages[stage.key] = stage
        if stage.deadline_days is not None and stage.deadline_days < 0:
            issues.append(StructuralIssue("DEADLINE", "deadline_days must not be negative", stage.key))
        if stage.is_initial and stage.is_terminal:
            issues.append(StructuralIssue("INITIAL_TERMINAL", "a stage cannot be both initial and terminal", stage.key))
        if stage.is_terminal and stage.stage_type not in TERMINAL_STAGE_TYPES:
            issues.append(StructuralIssue(
                "TERMINAL_TYPE",
                f"terminal stage must have type completed or cancelled, not {stage.stage_type.value}",
                stage.key,
            ))
        if not stage.is_terminal and stage.stage_type in TERMINAL_STAGE_TYPES:
            issues.append(StructuralIssue(
                "TERMINAL_TYPE", f"{stage.stage_type.value} stage must be terminal", stage.key
            ))

    initial = [s.key for s in spec.stages if s.is_initial]
    if len(initial) != 1:
        issues.append(StructuralIssue(
            "INITIAL_STAGE", f"expected exactly one initial stage, found {len(initial)}"
        ))

    outgoing: dict[str, list[TransitionSpec]] = defaultdict(list)
    for edge in spec.transitions:
        label = f"{edge.from_stage}->{edge.to_stage}"
        if edge.from_stage not in stages or edge.to_stage not in stages:
            issues.append(StructuralIssue("DANGLING_EDGE", f"edge {label} references an unknown stage"))
            continue
        outgoing[edge.from_stage].append(edge)
        if edge.is_automatic and references(edge.condition, PredicateKind.MANUAL):
            issues.append(StructuralIssue(
                "MANUAL_ON_AUTOMATIC",
                f"automatic edge {label} uses the manual predicate",
                edge.from_stage,
            ))

    for key, edges in outgoing.items():
        orders = [e.transition_order for e in edges]
        if len(orders) != len(set(orders)):
            issues.append(StructuralIssue(
                "AMBIGUOUS_ORDER", "outgoing edges share a transition_order", key
            ))
        targets = [e.to_stage for e in edges]
        if len(targets) != len(set(targets)):
            issues.append(StructuralIssue("DUPLICATE_EDGE", "two edges to the same stage", key))

    for stage in spec.stages:
        if stage.is_terminal and outgoing.get(stage.key):
            issues.append(StructuralIssue("TERMINAL_OUTGOING", "terminal stage has outgoing edges", stage.key))
        if not stage.is_terminal and not outgoing.get(stage.key):
            issues.append(StructuralIssue("DEAD_END", "non-terminal stage has no outgoing edge", stage.key))

    if len(initial) == 1 and initial[0] in stages:
        reachable = _reachable_from(initial[0], outgoing)
        for stage in spec.stages:
            if stage.key not in reachable:
                issues.append(StructuralIssue("UNREACHABLE", "stage is unreachable from the initial stage", stage.key))

    cycle = _find_cycle(stages.keys(), outgoing)
    if cycle:
        issues.append(StructuralIssue("CYCLE", "cycle through " + " -> ".join(cycle)))

    issues.extend(_validate_rank_table(spec))
    return issues


def require_valid_template(spec: TemplateSpec) -> None:
    issues = validate_template(spec)
    if issues:
        raise TemplateValidationError(spec.name, issues)


def _reachable_from(start: str, outgoing: dict[str, list[TransitionSpec]]) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        for edge in outgoing.get(queue.popleft(), ()):
            if edge.to_stage not in seen:
                seen.add(edge.to_stage)
                queue.append(edge.to_stage)
    return seen


def _find_cycle(keys, outgoing: dict[str, list[TransitionSpec]]) -> list[str] | None:
    """Depth-first search with colors; returns one cycle path or None."""
    white, grey, black = 0, 1, 2
    color = {key: white for key in keys}
    stack: list[str] = []

    def visit(key: str) -> list[str] | None:
        color[key] = grey
        stack.append(key)
        for edge in outgoing.get(key, ()):
            nxt = edge.to_stage
            if color.get(nxt) == grey:
                return stack[stack.index(nxt):] + [nxt]
            if color.get(nxt) == white:
                found = visit(nxt)
                if found:
                    return found
        stack.pop()
        color[key] = black
        return None

    for key in list(color):
        if color[key] == white:
            found = visit(key)
            if found:
                return found
    return None


def _validate_rank_table(spec: TemplateSpec) -> list[StructuralIssue]:
    issues: list[StructuralIssue] = []
    ranks = sorted(r.rank for r in spec.rank_rewards)
    if ranks != list(range(1, len(ranks) + 1)):
        issues.append(StructuralIssue("RANK_TABLE", f"ranks must be 1..N without gaps, got {ranks}"))
    if len(ranks) > spec.reviewer_count:
        issues.append(StructuralIssue("RANK_TABLE", "more ranks than reviewer seats"))
    if any(r.tokens <= 0 for r in spec.rank_rewards):
        issues.append(StructuralIssue("RANK_TABLE", "rank rewards must be positive"))
    payout = sum(r.tokens for r in spec.rank_rewards)
    if payout + spec.insurance_tokens > spec.total_tokens:
        issues.append(StructuralIssue(
            "RANK_TABLE",
            f"rank rewards ({payout}) plus insurance ({spec.insurance_tokens}) "
            f"exceed the token pool ({spec.total_tokens})",
        ))
    return issues


# ---------------------------------------------------------------------------
# Compiled (registered) templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompiledTemplate:
    """A registered template, loaded once and shared read-only."""

    template_id: UUID
    spec: TemplateSpec
    stages_by_key: dict[str, StageSpec] = field(default_factory=dict)
    outgoing: dict[str, tuple[TransitionSpec, ...]] = field(default_factory=dict)

    @classmethod
    def build(cls, template_id: UUID, spec: TemplateSpec) -> "CompiledTemplate":
        grouped: dict[str, list[TransitionSpec]] = defaultdict(list)
        for edge in spec.transitions:
            grouped[edge.from_stage].append(edge)
        return cls(
            template_id=template_id,
            spec=spec,
            stages_by_key={s.key: s for s in spec.stages},
            outgoing={
                key: tuple(sorted(edges, key=lambda e: e.transition_order))
                for key, edges in grouped.items()
            },
        )

    @property
    def initial_stage(self) -> StageSpec:
        return next(s for s in self.spec.stages if s.is_initial)

    def stage(self, key: str) -> StageSpec:
        return self.stages_by_key[key]

    def edges_from(self, key: str) -> tuple[TransitionSpec, ...]:
        """Outgoing edges ordered by transition_order."""
        return self.outgoing.get(key, ())

    def edge(self, from_key: str, to_key: str) -> TransitionSpec | None:
        for edge in self.edges_from(from_key):
            if edge.to_stage == to_key:
                return edge
        return None

    def rank_table(self) -> dict[int, int]:
        return {r.rank: r.tokens for r in self.spec.rank_rewards}
