"""
ConditionEvaluator -- recursive evaluation of typed condition trees.

Responsibility:
    Decides whether a transition's guard holds for an activity right now.
    AND short-circuits on the first false child, OR on the first true child,
    NOT inverts its single child.  Leaves dispatch through a fixed
    PredicateKind -> Predicate map.

Architecture position:
    Kernel > Services.  Called by the state machine for every candidate edge.

Invariants enforced:
    - A leaf whose kind has no implementation raises UnknownPredicateError.
      It is never treated as false.
    - A malformed operator node raises MalformedExpressionError.

Failure modes:
    - StructuralError subclasses only; predicate query failures propagate.
"""

from collections.abc import Mapping

from review_kernel.domain.conditions import (
    BoolOp,
    ConditionNode,
    OperatorNode,
    PredicateKind,
    PredicateLeaf,
)
from review_kernel.exceptions import MalformedExpressionError, UnknownPredicateError
from review_kernel.logging_config import get_logger
from review_kernel.services.predicates import DEFAULT_PREDICATES, Predicate, PredicateContext

logger = get_logger("services.conditions")


class ConditionEvaluator:
    """Evaluates condition trees against one activity."""

    def __init__(self, predicates: Mapping[PredicateKind, Predicate] | None = None):
        self._predicates = dict(DEFAULT_PREDICATES if predicates is None else predicates)

    def evaluate(self, node: ConditionNode, ctx: PredicateContext) -> bool:
        if isinstance(node, PredicateLeaf):
            predicate = self._predicates.get(node.kind)
            if predicate is None:
                raise UnknownPredicateError(node.kind.value)
            result = bool(predicate(ctx, node.config))
            logger.debug(
                "predicate_evaluated",
                extra={
                    "predicate": node.kind.value,
                    "stage_key": ctx.stage_key,
                    "result": result,
                },
            )
            return result

        if isinstance(node, OperatorNode):
            if node.op is BoolOp.AND:
                return all(self.evaluate(child, ctx) for child in node.children)
            if node.op is BoolOp.OR:
                return any(self.evaluate(child, ctx) for child in node.children)
            if node.op is BoolOp.NOT:
                if len(node.children) != 1:
                    raise MalformedExpressionError(
                        "$", f"NOT takes exactly one child, got {len(node.children)}"
                    )
                return not self.evaluate(node.children[0], ctx)
            raise MalformedExpressionError("$", f"unknown operator {node.op!r}")

        raise MalformedExpressionError("$", f"not a condition node: {type(node).__name__}")
