"""
Transition Resolver.

Pure function over a :class:`~app.services.stage_config_service.StageGraph`:

    resolve(graph, stage_id, question, response_value) -> TransitionProposal | None

Matching
    A rule of the current stage matches when its ``trigger_response`` equals
    the response exactly (case-sensitive), or when its numeric ``condition``
    (e.g. ">=90") holds for a numeric response. Rules scoped to a different
    question of the stage never match.

Precedence (explicit, documented in DESIGN.md)
    1. Rules naming this question beat stage-only rules.
    2. Within the winning tier, the single highest ``priority`` wins.
    3. Anything still tied is a ConfigurationError — never guess.

No database access happens here.
"""

import logging
import operator
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_CONDITION = re.compile(r"^\s*(>=|<=|==|>|<|=)\s*(-?\d+(?:\.\d+)?)\s*$")

_COMPARATORS = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "=": operator.eq,
    "==": operator.eq,
}


@dataclass(frozen=True)
class TransitionProposal:
    """Outcome of a successful resolution."""

    rule_id: int
    from_stage_id: int
    to_stage_id: int
    is_automatic: bool
    question_id: int | None = None
    response_value: str | None = None
    action: str | None = None

    @property
    def requires_confirmation(self) -> bool:
        return not self.is_automatic

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "is_automatic": self.is_automatic,
            "requires_confirmation": self.requires_confirmation,
            "question_id": self.question_id,
            "response_value": self.response_value,
            "action": self.action,
        }


def parse_numeric_condition(condition):
    """Split ">=90" into (comparator, Decimal('90')); None if unparseable."""
    if condition is None:
        return None
    match = _CONDITION.match(str(condition))
    if not match:
        return None
    return _COMPARATORS[match.group(1)], Decimal(match.group(2))


def _condition_holds(condition, response_value: str) -> bool:
    parsed = parse_numeric_condition(condition)
    if parsed is None:
        logger.warning("Unparseable transition condition %r ignored", condition)
        return False
    compare, threshold = parsed
    try:
        value = Decimal(str(response_value).strip())
    except (InvalidOperation, ValueError):
        return False
    return compare(value, threshold)


def rule_matches(rule, question_id, response_value: str) -> bool:
    """True if ``rule`` structurally matches this answer."""
    if rule.question_id is not None and rule.question_id != str(question_id):
        return False
    if rule.trigger_response == response_value:
        return True
    if rule.condition is not None:
        return _condition_holds(rule.condition, response_value)
    return False


def _pick(tier: list, label: str, stage_id, response_value):
    top = max(r.priority for r in tier)
    winners = [r for r in tier if r.priority == top]
    if len(winners) > 1:
        ids = sorted(r.id for r in winners)
        raise ConfigurationError(
            f"Ambiguous {label} transition rules {ids} from stage {stage_id} "
            f"for response {response_value!r}",
            rule_ids=ids,
        )
    return winners[0]


def resolve(graph, stage_id, question, response_value) -> TransitionProposal | None:
    """Resolve the next stage for an answered question.

    Args:
        graph: StageGraph snapshot of the tenant configuration.
        stage_id: The job's current stage.
        question: QuestionInfo (or anything with ``.id``) that was answered.
        response_value: The validated, normalised response string.

    Returns:
        TransitionProposal, or None when no rule matches (the job stays put
        awaiting manual resolution).

    Raises:
        ConfigurationError: ambiguous match, or a matched rule targets a
            stage that is missing or retired.
    """
    response_value = str(response_value)
    candidates = [
        rule for rule in graph.rules_from(stage_id)
        if rule_matches(rule, question.id, response_value)
    ]
    if not candidates:
        logger.debug("No transition rule from stage %s for %r", stage_id, response_value)
        return None

    specific = [r for r in candidates if r.question_id is not None]
    if specific:
        rule = _pick(specific, "question-scoped", stage_id, response_value)
    else:
        rule = _pick(candidates, "stage-scoped", stage_id, response_value)

    target = graph.stage(rule.to_stage_id)
    if target is None or not target.active:
        raise ConfigurationError(
            f"Transition rule {rule.id} targets unavailable stage {rule.to_stage_id}",
            rule_ids=[rule.id],
        )

    return TransitionProposal(
        rule_id=rule.id,
        from_stage_id=stage_id,
        to_stage_id=rule.to_stage_id,
        is_automatic=rule.is_automatic,
        question_id=question.id,
        response_value=response_value,
        action=rule.action,
    )
