"""Structural validation of template graphs (review_kernel/domain/template_graph.py)."""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest

from review_kernel.domain.conditions import MANUAL_CONDITION, PredicateKind, leaf
from review_kernel.domain.template_graph import (
    CompiledTemplate,
    RankRewardSpec,
    StageSpec,
    TransitionSpec,
    insurance_share,
    require_valid_template,
    validate_template,
)
from review_kernel.enums import StageType
from review_kernel.exceptions import TemplateValidationError


def _codes(spec) -> set[str]:
    return {issue.code for issue in validate_template(spec)}


def _with_stage(spec, key, **changes):
    return replace(
        spec,
        stages=tuple(replace(s, **changes) if s.key == key else s for s in spec.stages),
    )


class TestValidTemplate:

    def test_builder_template_is_valid(self, template_spec):
        assert validate_template(template_spec) == []
        require_valid_template(template_spec)

    def test_compiled_edges_are_ordered(self, template_spec):
        compiled = CompiledTemplate.build(uuid4(), template_spec)
        assert compiled.initial_stage.key == "posted"
        assert [e.to_stage for e in compiled.edges_from("review_1")] == ["assessment", "cancelled"]
        assert compiled.edge("posted", "awards") is None
        assert compiled.rank_table() == {1: 4, 2: 3, 3: 2}


class TestStructuralIssues:

    def test_two_initial_stages(self, template_spec):
        spec = _with_stage(template_spec, "review_1", is_initial=True)
        assert "INITIAL_STAGE" in _codes(spec)

    def test_no_initial_stage(self, template_spec):
        spec = _with_stage(template_spec, "posted", is_initial=False)
        assert "INITIAL_STAGE" in _codes(spec)

    def test_cycle_detected(self, template_spec):
        back_edge = TransitionSpec(
            "assessment", "review_1", leaf(PredicateKind.DEADLINE_REACHED), transition_order=3
        )
        spec = replace(template_spec, transitions=template_spec.transitions + (back_edge,))
        issues = validate_template(spec)
        cycle = [i for i in issues if i.code == "CYCLE"]
        assert cycle and "review_1" in cycle[0].message

    def test_dangling_edge(self, template_spec):
        edge = TransitionSpec("awards", "published", leaf(PredicateKind.MANUAL),
                              is_automatic=False, transition_order=5)
        spec = replace(template_spec, transitions=template_spec.transitions + (edge,))
        assert "DANGLING_EDGE" in _codes(spec)

    def test_unreachable_stage(self, template_spec):
        orphan = StageSpec("orphan", StageType.REVIEW_ROUND, round_number=2)
        exit_edge = TransitionSpec("orphan", "cancelled", leaf(PredicateKind.DEADLINE_REACHED))
        spec = replace(
            template_spec,
            stages=template_spec.stages + (orphan,),
            transitions=template_spec.transitions + (exit_edge,),
        )
        issues = validate_template(spec)
        assert any(i.code == "UNREACHABLE" and i.stage_key == "orphan" for i in issues)

    def test_dead_end_stage(self, template_spec):
        spec = replace(
            template_spec,
            transitions=tuple(t for t in template_spec.transitions if t.from_stage != "awards"),
        )
        assert "DEAD_END" in _codes(spec)

    def test_terminal_with_outgoing_edge(self, template_spec):
        edge = TransitionSpec("completed", "cancelled", MANUAL_CONDITION, is_automatic=False)
        spec = replace(template_spec, transitions=template_spec.transitions + (edge,))
        assert "TERMINAL_OUTGOING" in _codes(spec)

    def test_terminal_flag_requires_terminal_type(self, template_spec):
        spec = _with_stage(template_spec, "awards", is_terminal=True)
        assert "TERMINAL_TYPE" in _codes(spec)

    def test_completed_type_must_be_terminal(self, template_spec):
        spec = _with_stage(template_spec, "completed", is_terminal=False)
        assert "TERMINAL_TYPE" in _codes(spec)

    def test_manual_predicate_on_automatic_edge(self, template_spec):
        spec = replace(
            template_spec,
            transitions=tuple(
                replace(t, is_automatic=True) if t.condition == MANUAL_CONDITION else t
                for t in template_spec.transitions
            ),
        )
        assert "MANUAL_ON_AUTOMATIC" in _codes(spec)

    def test_shared_transition_order(self, template_spec):
        spec = replace(
            template_spec,
            transitions=tuple(
                replace(t, transition_order=1) if t.from_stage == "review_1" else t
                for t in template_spec.transitions
            ),
        )
        assert "AMBIGUOUS_ORDER" in _codes(spec)

    def test_duplicate_stage_key(self, template_spec):
        spec = replace(template_spec, stages=template_spec.stages + (template_spec.stages[1],))
        assert "DUPLICATE_STAGE" in _codes(spec)

    def test_require_valid_template_raises_with_issues(self, template_spec):
        spec = replace(template_spec, reviewer_count=0)
        with pytest.raises(TemplateValidationError) as exc_info:
            require_valid_template(spec)
        assert any(i.code == "REVIEWER_COUNT" for i in exc_info.value.issues)


class TestRankTable:

    def test_rank_gap(self, template_builder):
        spec = template_builder()
        spec = replace(spec, rank_rewards=(RankRewardSpec(1, 4), RankRewardSpec(3, 2)))
        assert "RANK_TABLE" in _codes(spec)

    def test_more_ranks_than_seats(self, template_builder):
        spec = template_builder(reviewer_count=2, rank_tokens=(4, 3, 2))
        assert "RANK_TABLE" in _codes(spec)

    def test_payouts_exceed_pool(self, template_builder):
        spec = template_builder(total_tokens=8, rank_tokens=(4, 3, 2))
        assert "RANK_TABLE" in _codes(spec)

    def test_insurance_counts_against_pool(self, template_builder):
        spec = replace(template_builder(total_tokens=10), insurance_fraction=Decimal("0.2"))
        assert spec.insurance_tokens == 2
        assert "RANK_TABLE" in _codes(spec)

    def test_insurance_fraction_bounds(self, template_spec):
        spec = replace(template_spec, insurance_fraction=Decimal("1"))
        assert "INSURANCE" in _codes(spec)

    def test_insurance_share_rounds_down(self):
        assert insurance_share(15, Decimal("0.1")) == 1
        assert insurance_share(20, Decimal("0.1")) == 2
        assert insurance_share(9, Decimal("0")) == 0
