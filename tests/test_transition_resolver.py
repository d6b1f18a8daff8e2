"""
Tests for the transition resolver (pure, no database).

Covers:
  - Exact, case-sensitive trigger matching
  - Numeric conditions (">=90") on number answers
  - Question-scoped rules beat stage-only rules
  - Priority tie-breaking, and equal priorities as ConfigurationError
  - Rules targeting retired or missing stages
  - next_question ordering and skip handling on the graph snapshot
"""

import pytest

from app.core.exceptions import ConfigurationError
from app.services.skip_conditions import parse_skip_conditions
from app.services.stage_config_service import (
    QuestionInfo,
    RuleInfo,
    StageGraph,
    StageInfo,
    next_question,
    normalize_stage_name,
)
from app.services.transition_resolver import parse_numeric_condition, resolve


def _stage(id, seq, name=None, status="active", active=True, color="#111111"):
    return StageInfo(
        id=id, name=name or f"Stage {id}", color=color, sequence_order=seq,
        stage_type="standard", maps_to_status=status, active=active,
    )


def _question(id, stage_id, seq=1, rtype="yes_no", skip=None, required=True):
    return QuestionInfo(
        id=id, stage_id=stage_id, question_text=f"Q{id}?", response_type=rtype,
        sequence_order=seq, is_required=required,
        skip_condition=parse_skip_conditions(skip),
    )


def _rule(id, frm, to, trigger, *, question_id=None, condition=None, priority=0, automatic=True):
    return RuleInfo(
        id=id, from_stage_id=frm, to_stage_id=to, trigger_response=trigger,
        is_automatic=automatic, priority=priority,
        question_id=str(question_id) if question_id is not None else None,
        condition=condition,
    )


def _graph(rules, stages=None, questions=None):
    return StageGraph(
        tenant_id=1,
        version=3,
        stages=tuple(stages or (_stage(1, 1), _stage(2, 2), _stage(3, 3), _stage(4, 4))),
        questions=tuple(questions or (_question(10, 1), _question(11, 1, seq=2), _question(20, 2, rtype="number"))),
        rules=tuple(rules),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Matching
# ═════════════════════════════════════════════════════════════════════════════


class TestMatching:
    def test_exact_trigger_match(self):
        g = _graph([_rule(100, 1, 2, "Yes")])
        proposal = resolve(g, 1, g.question(10), "Yes")
        assert proposal.rule_id == 100
        assert proposal.to_stage_id == 2
        assert proposal.from_stage_id == 1
        assert proposal.is_automatic is True
        assert proposal.response_value == "Yes"

    def test_match_is_case_sensitive(self):
        g = _graph([_rule(100, 1, 2, "Yes")])
        assert resolve(g, 1, g.question(10), "yes") is None

    def test_no_rule_returns_none(self):
        g = _graph([_rule(100, 1, 2, "Yes")])
        assert resolve(g, 1, g.question(10), "No") is None

    def test_rules_of_other_stages_ignored(self):
        g = _graph([_rule(100, 2, 3, "Yes")])
        assert resolve(g, 1, g.question(10), "Yes") is None

    def test_rule_scoped_to_other_question_ignored(self):
        g = _graph([_rule(100, 1, 2, "Yes", question_id=11)])
        assert resolve(g, 1, g.question(10), "Yes") is None
        assert resolve(g, 1, g.question(11), "Yes").rule_id == 100

    def test_numeric_condition(self):
        g = _graph([_rule(100, 2, 3, "pass", condition=">=90")])
        q = g.question(20)
        assert resolve(g, 2, q, "90").to_stage_id == 3
        assert resolve(g, 2, q, "95.5").to_stage_id == 3
        assert resolve(g, 2, q, "89") is None

    def test_numeric_condition_ignores_non_numbers(self):
        g = _graph([_rule(100, 2, 3, "pass", condition=">=90")])
        assert resolve(g, 2, g.question(20), "lots") is None

    def test_manual_rule_requires_confirmation(self):
        g = _graph([_rule(100, 1, 3, "No", automatic=False)])
        proposal = resolve(g, 1, g.question(10), "No")
        assert proposal.is_automatic is False
        assert proposal.requires_confirmation is True

    @pytest.mark.parametrize("text,ok", [(">=90", True), ("< 5", True), ("==1.5", True), ("90", False), ("~3", False)])
    def test_parse_numeric_condition(self, text, ok):
        assert (parse_numeric_condition(text) is not None) is ok


# ═════════════════════════════════════════════════════════════════════════════
# Precedence
# ═════════════════════════════════════════════════════════════════════════════


class TestPrecedence:
    def test_question_scoped_beats_stage_rule(self):
        g = _graph([
            _rule(100, 1, 2, "Yes", priority=50),
            _rule(101, 1, 3, "Yes", question_id=10),
        ])
        assert resolve(g, 1, g.question(10), "Yes").rule_id == 101

    def test_higher_priority_wins(self):
        g = _graph([
            _rule(100, 1, 2, "Yes", priority=1),
            _rule(101, 1, 3, "Yes", priority=5),
        ])
        assert resolve(g, 1, g.question(10), "Yes").to_stage_id == 3

    def test_equal_priority_is_configuration_error(self):
        g = _graph([
            _rule(100, 1, 2, "Yes"),
            _rule(101, 1, 3, "Yes"),
        ])
        with pytest.raises(ConfigurationError) as exc:
            resolve(g, 1, g.question(10), "Yes")
        assert exc.value.rule_ids == [100, 101]

    def test_trigger_and_condition_rules_tie(self):
        """A literal trigger match and a numeric condition match are equally specific."""
        g = _graph([
            _rule(100, 2, 3, "95"),
            _rule(101, 2, 4, "pass", condition=">=90"),
        ])
        with pytest.raises(ConfigurationError):
            resolve(g, 2, g.question(20), "95")

    def test_resolution_is_deterministic(self):
        g = _graph([
            _rule(100, 1, 2, "Yes", priority=1),
            _rule(101, 1, 3, "Yes", priority=2),
        ])
        results = {resolve(g, 1, g.question(10), "Yes").rule_id for _ in range(10)}
        assert results == {101}


class TestTargets:
    def test_retired_target_is_configuration_error(self):
        stages = (_stage(1, 1), _stage(2, 2, active=False))
        g = _graph([_rule(100, 1, 2, "Yes")], stages=stages)
        with pytest.raises(ConfigurationError) as exc:
            resolve(g, 1, g.question(10), "Yes")
        assert exc.value.rule_ids == [100]

    def test_missing_target_is_configuration_error(self):
        g = _graph([_rule(100, 1, 99, "Yes")])
        with pytest.raises(ConfigurationError):
            resolve(g, 1, g.question(10), "Yes")


# ═════════════════════════════════════════════════════════════════════════════
# Graph snapshot
# ═════════════════════════════════════════════════════════════════════════════


class TestStageGraph:
    def test_initial_stage_skips_retired(self):
        g = _graph([], stages=(_stage(1, 1, active=False), _stage(2, 2), _stage(3, 3)))
        assert g.initial_stage().id == 2
        assert g.position(3) == 2
        assert g.position(1) is None

    def test_initial_stage_none_when_no_active(self):
        g = _graph([], stages=(_stage(1, 1, active=False),))
        assert g.initial_stage() is None

    def test_stage_by_normalized_name(self):
        g = _graph([], stages=(_stage(1, 1, name="3/12 Quote & Prep"),))
        assert g.stage_by_name("Quote & Prep").id == 1
        assert g.stage_by_name("quote prep").id == 1
        assert g.stage_by_name("Install") is None

    def test_normalize_stage_name(self):
        assert normalize_stage_name("3/12 Quote & Prep") == "quote_prep"
        assert normalize_stage_name("  Lead  ") == "lead"
        assert normalize_stage_name(None) == ""

    def test_snapshot_is_frozen(self):
        g = _graph([])
        with pytest.raises(AttributeError):
            g.version = 4


class TestNextQuestion:
    def test_returns_questions_in_sequence(self):
        g = _graph([])
        assert next_question(g, 1, {}).id == 10
        assert next_question(g, 1, {10: "Yes"}).id == 11
        assert next_question(g, 1, {10: "Yes", 11: "No"}) is None

    def test_skips_question_whose_condition_holds(self):
        questions = (
            _question(10, 1),
            _question(11, 1, seq=2, skip={"all": [{"question_id": 10, "value": "Yes"}]}),
            _question(12, 1, seq=3),
        )
        g = _graph([], questions=questions)
        assert next_question(g, 1, {10: "Yes"}).id == 12
        assert next_question(g, 1, {10: "No"}).id == 11

    def test_answered_narrows_to_current_visit(self):
        """Answers from an earlier visit to the stage count for skips but not as answered."""
        g = _graph([])
        assert next_question(g, 1, {10: "Yes"}, answered=set()).id == 10

    def test_stage_without_questions(self):
        g = _graph([])
        assert next_question(g, 3, {}) is None
