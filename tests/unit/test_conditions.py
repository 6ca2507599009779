"""Tests for condition parsing, serialization and evaluation."""

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from review_kernel.domain.conditions import (
    BoolOp,
    MinCountConfig,
    NoConfig,
    OperatorNode,
    PredicateKind,
    PredicateLeaf,
    RoundConfig,
    all_of,
    any_of,
    iter_leaves,
    leaf,
    negate,
    parse_condition,
    references,
    to_wire,
)
from review_kernel.exceptions import MalformedExpressionError, UnknownPredicateError
from review_kernel.services.condition_evaluator import ConditionEvaluator
from review_kernel.services.predicates import PredicateContext


class TestParseLeaf:

    def test_leaf_with_typed_config(self):
        node = parse_condition(
            {"predicate": "min_reviewers_locked_in", "config": {"min_count": 2}}
        )
        assert node == PredicateLeaf(PredicateKind.MIN_REVIEWERS_LOCKED_IN, MinCountConfig(2))

    def test_round_config_defaults_to_first_round(self):
        node = parse_condition({"predicate": "all_reviews_submitted"})
        assert node.config == RoundConfig(round_number=1)

    def test_no_config_predicate(self):
        node = parse_condition({"predicate": "deadline_reached", "config": {}})
        assert node.config == NoConfig()

    def test_unknown_predicate_rejected(self):
        with pytest.raises(UnknownPredicateError) as exc_info:
            parse_condition({"predicate": "reviewers_are_happy"})
        assert exc_info.value.predicate == "reviewers_are_happy"

    def test_missing_required_config_key(self):
        with pytest.raises(MalformedExpressionError, match="requires 'min_count'"):
            parse_condition({"predicate": "min_reviewers_locked_in", "config": {}})

    def test_unknown_config_key(self):
        with pytest.raises(MalformedExpressionError) as exc_info:
            parse_condition({"predicate": "deadline_reached", "config": {"days": 3}})
        assert exc_info.value.path == "$.config"

    @pytest.mark.parametrize("value", [0, -1, "2", 1.5, True])
    def test_config_values_must_be_positive_integers(self, value):
        with pytest.raises(MalformedExpressionError):
            parse_condition(
                {"predicate": "min_reviewers_locked_in", "config": {"min_count": value}}
            )

    def test_extra_leaf_keys_rejected(self):
        with pytest.raises(MalformedExpressionError, match="unexpected leaf keys"):
            parse_condition({"predicate": "manual", "note": "x"})


class TestParseOperators:

    def test_nested_tree(self):
        node = parse_condition({
            "op": "OR",
            "children": [
                {"predicate": "all_reviews_submitted", "config": {"round_number": 1}},
                {"op": "AND", "children": [
                    {"predicate": "deadline_reached"},
                    {"op": "NOT", "children": [{"predicate": "first_review_submitted"}]},
                ]},
            ],
        })
        assert isinstance(node, OperatorNode)
        assert node.op is BoolOp.OR
        assert [lf.kind for lf in iter_leaves(node)] == [
            PredicateKind.ALL_REVIEWS_SUBMITTED,
            PredicateKind.DEADLINE_REACHED,
            PredicateKind.FIRST_REVIEW_SUBMITTED,
        ]

    def test_operator_is_case_insensitive(self):
        node = parse_condition({"op": "and", "children": [{"predicate": "manual"}]})
        assert node.op is BoolOp.AND

    def test_not_takes_exactly_one_child(self):
        with pytest.raises(MalformedExpressionError, match="exactly one child"):
            parse_condition({"op": "NOT", "children": [
                {"predicate": "manual"}, {"predicate": "deadline_reached"},
            ]})

    def test_empty_and_rejected(self):
        with pytest.raises(MalformedExpressionError, match="at least one child"):
            parse_condition({"op": "AND", "children": []})

    def test_error_path_points_at_nested_node(self):
        with pytest.raises(MalformedExpressionError) as exc_info:
            parse_condition({"op": "AND", "children": [
                {"predicate": "manual"},
                {"predicate": "min_reviewers_locked_in", "config": {"min_count": 0}},
            ]})
        assert exc_info.value.path == "$.children[1].config.min_count"

    def test_unknown_operator(self):
        with pytest.raises(MalformedExpressionError, match="unknown operator"):
            parse_condition({"op": "XOR", "children": [{"predicate": "manual"}]})

    def test_node_without_predicate_or_op(self):
        with pytest.raises(MalformedExpressionError):
            parse_condition({"children": []})

    def test_non_mapping_rejected(self):
        with pytest.raises(MalformedExpressionError, match="expected a mapping"):
            parse_condition(["manual"])


class TestWireForm:

    def test_to_wire_is_parseable(self):
        tree = all_of(
            leaf(PredicateKind.ALL_REVIEWS_SUBMITTED, round_number=2),
            negate(leaf(PredicateKind.DEADLINE_REACHED)),
        )
        wire = to_wire(tree)
        assert wire == {
            "op": "AND",
            "children": [
                {"predicate": "all_reviews_submitted", "config": {"round_number": 2}},
                {"op": "NOT", "children": [{"predicate": "deadline_reached", "config": {}}]},
            ],
        }
        assert parse_condition(wire) == tree

    def test_references(self):
        tree = all_of(leaf(PredicateKind.MANUAL), leaf(PredicateKind.DEADLINE_REACHED))
        assert references(tree, PredicateKind.MANUAL)
        assert not references(tree, PredicateKind.ALL_FINALIZED)

    def test_leaf_builder_validates(self):
        with pytest.raises(MalformedExpressionError):
            leaf(PredicateKind.MIN_REVIEWERS_LOCKED_IN)


def _context() -> PredicateContext:
    return PredicateContext(
        session=None,
        activity_id=uuid4(),
        activity_kind="preprint_review",
        stage_key="review_1",
        now=datetime(2026, 1, 1, tzinfo=UTC),
        creator_id=uuid4(),
        reviewer_count=3,
    )


class TestEvaluation:

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def evaluator(self, calls):
        def recorded(kind, value):
            def predicate(ctx, config):
                calls.append(kind)
                return value
            return predicate

        return ConditionEvaluator(
            {
                PredicateKind.DEADLINE_REACHED: recorded(PredicateKind.DEADLINE_REACHED, False),
                PredicateKind.MANUAL: recorded(PredicateKind.MANUAL, True),
                PredicateKind.ALL_FINALIZED: recorded(PredicateKind.ALL_FINALIZED, True),
            }
        )

    def test_unregistered_kind_raises_at_evaluation(self):
        with pytest.raises(UnknownPredicateError):
            ConditionEvaluator({}).evaluate(leaf(PredicateKind.DEADLINE_REACHED), _context())

    def test_unregistered_kind_inside_tree_raises(self, evaluator):
        tree = all_of(leaf(PredicateKind.MANUAL), leaf(PredicateKind.ALL_AWARDS_DISTRIBUTED))
        with pytest.raises(UnknownPredicateError):
            evaluator.evaluate(tree, _context())

    def test_and_stops_at_first_false(self, evaluator, calls):
        tree = all_of(leaf(PredicateKind.DEADLINE_REACHED), leaf(PredicateKind.ALL_FINALIZED))
        assert evaluator.evaluate(tree, _context()) is False
        assert calls == [PredicateKind.DEADLINE_REACHED]

    def test_or_stops_at_first_true(self, evaluator, calls):
        tree = any_of(leaf(PredicateKind.MANUAL), leaf(PredicateKind.ALL_FINALIZED))
        assert evaluator.evaluate(tree, _context()) is True
        assert calls == [PredicateKind.MANUAL]

    def test_skipped_child_may_be_unregistered(self, evaluator, calls):
        tree = any_of(leaf(PredicateKind.MANUAL), leaf(PredicateKind.ALL_AWARDS_DISTRIBUTED))
        assert evaluator.evaluate(tree, _context()) is True
        assert calls == [PredicateKind.MANUAL]

    def test_every_child_evaluated_when_needed(self, evaluator, calls):
        tree = all_of(leaf(PredicateKind.MANUAL), negate(leaf(PredicateKind.DEADLINE_REACHED)))
        assert evaluator.evaluate(tree, _context()) is True
        assert calls == [PredicateKind.MANUAL, PredicateKind.DEADLINE_REACHED]
