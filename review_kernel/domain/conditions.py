"""
Conditions -- typed condition expressions guarding stage transitions.

Responsibility:
    Defines the predicate kinds, their typed configurations, and the
    AND/OR/NOT expression tree.  Parses the wire form (JSON/YAML mappings)
    into that tree once, when a template is registered, and serializes it
    back for persistence.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Evaluation against
    activity state lives in services/condition_evaluator.py.

Wire form:
    leaf:      {"predicate": "<kind>", "config": {...}}
    operator:  {"op": "AND" | "OR" | "NOT", "children": [...]}

Invariants enforced:
    - Every leaf names a PredicateKind; its config matches that kind's
      config dataclass exactly (no unknown keys, required keys present,
      integer values >= 1).
    - AND/OR have at least one child; NOT has exactly one.

Failure modes:
    - UnknownPredicateError for an unrecognized predicate name.
    - MalformedExpressionError for any other shape problem.  The error's
      ``path`` locates the offending node (e.g. ``$.children[1].config``).
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, fields, MISSING
from enum import Enum
from typing import Any, Union

from review_kernel.exceptions import MalformedExpressionError, UnknownPredicateError


class PredicateKind(str, Enum):
    """Every predicate a condition leaf may name."""

    FIRST_REVIEW_SUBMITTED = "first_review_submitted"
    MIN_REVIEWERS_LOCKED_IN = "min_reviewers_locked_in"
    ALL_REVIEWS_SUBMITTED = "all_reviews_submitted"
    AUTHOR_RESPONSE_SUBMITTED = "author_response_submitted"
    ALL_FINALIZED = "all_finalized"
    ALL_AWARDS_DISTRIBUTED = "all_awards_distributed"
    DEADLINE_REACHED = "deadline_reached"
    MANUAL = "manual"


class BoolOp(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


# ---------------------------------------------------------------------------
# Typed predicate configurations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoConfig:
    """Configuration for predicates that take no parameters."""


@dataclass(frozen=True)
class RoundConfig:
    round_number: int = 1


@dataclass(frozen=True)
class MinCountConfig:
    min_count: int


PredicateConfig = Union[NoConfig, RoundConfig, MinCountConfig]

CONFIG_TYPES: dict[PredicateKind, type] = {
    PredicateKind.FIRST_REVIEW_SUBMITTED: RoundConfig,
    PredicateKind.MIN_REVIEWERS_LOCKED_IN: MinCountConfig,
    PredicateKind.ALL_REVIEWS_SUBMITTED: RoundConfig,
    PredicateKind.AUTHOR_RESPONSE_SUBMITTED: RoundConfig,
    PredicateKind.ALL_FINALIZED: NoConfig,
    PredicateKind.ALL_AWARDS_DISTRIBUTED: NoConfig,
    PredicateKind.DEADLINE_REACHED: NoConfig,
    PredicateKind.MANUAL: NoConfig,
}


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PredicateLeaf:
    kind: PredicateKind
    config: PredicateConfig


@dataclass(frozen=True)
class OperatorNode:
    op: BoolOp
    children: tuple[ConditionNode, ...]


ConditionNode = Union[PredicateLeaf, OperatorNode]


def leaf(kind: PredicateKind, **config: int) -> PredicateLeaf:
    """Build a leaf, validating the config the same way the parser does."""
    return PredicateLeaf(kind=kind, config=_parse_config(kind, config, "$.config"))


def all_of(*children: ConditionNode) -> OperatorNode:
    return OperatorNode(op=BoolOp.AND, children=tuple(children))


def any_of(*children: ConditionNode) -> OperatorNode:
    return OperatorNode(op=BoolOp.OR, children=tuple(children))


def negate(child: ConditionNode) -> OperatorNode:
    return OperatorNode(op=BoolOp.NOT, children=(child,))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_condition(raw: Any, path: str = "$") -> ConditionNode:
    """Parse the wire form of a condition into a typed tree."""
    if not isinstance(raw, Mapping):
        raise MalformedExpressionError(path, f"expected a mapping, got {type(raw).__name__}")

    if "predicate" in raw:
        extra = set(raw) - {"predicate", "config"}
        if extra:
            raise MalformedExpressionError(path, f"unexpected leaf keys {sorted(extra)}")
        name = raw["predicate"]
        try:
            kind = PredicateKind(name)
        except ValueError:
            raise UnknownPredicateError(str(name)) from None
        config = raw.get("config") or {}
        return PredicateLeaf(kind=kind, config=_parse_config(kind, config, f"{path}.config"))

    if "op" in raw:
        extra = set(raw) - {"op", "children"}
        if extra:
            raise MalformedExpressionError(path, f"unexpected operator keys {sorted(extra)}")
        try:
            op = BoolOp(str(raw["op"]).upper())
        except ValueError:
            raise MalformedExpressionError(path, f"unknown operator {raw['op']!r}") from None
        children = raw.get("children")
        if not isinstance(children, list | tuple):
            raise MalformedExpressionError(path, "operator node needs a 'children' list")
        if op is BoolOp.NOT and len(children) != 1:
            raise MalformedExpressionError(
                path, f"NOT takes exactly one child, got {len(children)}"
            )
        if not children:
            raise MalformedExpressionError(path, f"{op.value} needs at least one child")
        return OperatorNode(
            op=op,
            children=tuple(
                parse_condition(child, f"{path}.children[{i}]")
                for i, child in enumerate(children)
            ),
        )

    raise MalformedExpressionError(path, "node has neither 'predicate' nor 'op'")


def _parse_config(kind: PredicateKind, raw: Any, path: str) -> PredicateConfig:
    if not isinstance(raw, Mapping):
        raise MalformedExpressionError(path, "config must be a mapping")
    config_cls = CONFIG_TYPES[kind]
    known = {f.name: f for f in fields(config_cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise MalformedExpressionError(
            path, f"{kind.value} does not accept {sorted(unknown)}"
        )
    values: dict[str, int] = {}
    for name, field in known.items():
        if name not in raw:
            if field.default is MISSING:
                raise MalformedExpressionError(path, f"{kind.value} requires '{name}'")
            continue
        value = raw[name]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise MalformedExpressionError(
                f"{path}.{name}", f"expected a positive integer, got {value!r}"
            )
        values[name] = value
    return config_cls(**values)


# ---------------------------------------------------------------------------
# Serialization and inspection
# ---------------------------------------------------------------------------


def to_wire(node: ConditionNode) -> dict[str, Any]:
    """Canonical wire form of a parsed condition."""
    if isinstance(node, PredicateLeaf):
        return {"predicate": node.kind.value, "config": asdict(node.config)}
    return {"op": node.op.value, "children": [to_wire(c) for c in node.children]}


def iter_leaves(node: ConditionNode) -> Iterator[PredicateLeaf]:
    if isinstance(node, PredicateLeaf):
        yield node
        return
    for child in node.children:
        yield from iter_leaves(child)


def references(node: ConditionNode, kind: PredicateKind) -> bool:
    return any(lf.kind is kind for lf in iter_leaves(node))


# Default guard of a manual edge
MANUAL_CONDITION = PredicateLeaf(kind=PredicateKind.MANUAL, config=NoConfig())
