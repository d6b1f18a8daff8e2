"""
Skip-condition predicates for stage questions.

A question's ``skip_conditions`` JSON is parsed into a conjunction of
clauses ``(question_id, operator, value)``. The question is skipped iff
*every* clause holds against this job's recorded responses.

Stored forms accepted:

    {"all": [{"question_id": 4, "operator": "eq", "value": "Yes"}]}
    {"previous_responses": [{"question_id": 4, "response_value": "Yes"}]}   # legacy

Operators live in ``OPERATORS``; register a new one with
:func:`register_operator` without touching the progression engine.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def _as_list(value) -> list[str]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v) for v in value]
    return [str(value)]


OPERATORS: dict[str, Callable[[str, object], bool]] = {
    "eq": lambda actual, expected: actual == str(expected),
    "ne": lambda actual, expected: actual != str(expected),
    "in": lambda actual, expected: actual in _as_list(expected),
    "not_in": lambda actual, expected: actual not in _as_list(expected),
}


def register_operator(name: str, fn: Callable[[str, object], bool]) -> None:
    """Add (or replace) a clause operator."""
    OPERATORS[name] = fn


@dataclass(frozen=True)
class SkipClause:
    question_id: str
    operator: str
    value: object

    def holds(self, prior_responses: dict) -> bool:
        """True iff the referenced question was answered and the operator holds.

        An unanswered referenced question never satisfies a clause.
        """
        if self.question_id not in prior_responses:
            return False
        actual = prior_responses[self.question_id]
        if actual is None:
            return False
        return OPERATORS[self.operator](str(actual), self.value)

    def to_dict(self) -> dict:
        return {"question_id": self.question_id, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class SkipCondition:
    """Conjunction of clauses. An empty condition never skips."""

    clauses: tuple = ()

    def __bool__(self) -> bool:
        return bool(self.clauses)

    def is_satisfied(self, prior_responses: dict) -> bool:
        if not self.clauses:
            return False
        return all(clause.holds(prior_responses) for clause in self.clauses)

    def referenced_questions(self) -> set[str]:
        return {clause.question_id for clause in self.clauses}

    def to_dict(self) -> dict:
        return {"all": [clause.to_dict() for clause in self.clauses]}


def _clause_from_dict(raw: dict, *, legacy: bool) -> SkipClause:
    if not isinstance(raw, dict) or raw.get("question_id") in (None, ""):
        raise ValidationError(
            "Skip condition clause needs a question_id",
            details={"clause": raw},
        )
    if legacy:
        operator, value = "eq", raw.get("response_value")
    else:
        operator, value = raw.get("operator", "eq"), raw.get("value")
    if operator not in OPERATORS:
        raise ValidationError(
            f"Unknown skip condition operator '{operator}'",
            details={"valid_operators": sorted(OPERATORS)},
        )
    if value is None:
        raise ValidationError(
            "Skip condition clause needs a value",
            details={"clause": raw},
        )
    return SkipClause(question_id=str(raw["question_id"]), operator=operator, value=value)


def parse_skip_conditions(raw) -> SkipCondition:
    """Parse stored skip-condition JSON into a :class:`SkipCondition`.

    Raises:
        ValidationError: malformed clause or unknown operator.
    """
    if not raw:
        return SkipCondition()
    if not isinstance(raw, dict):
        raise ValidationError("skip_conditions must be an object", details={"value": raw})

    clauses = [_clause_from_dict(c, legacy=False) for c in raw.get("all") or []]
    clauses += [_clause_from_dict(c, legacy=True) for c in raw.get("previous_responses") or []]

    ignored = set(raw) - {"all", "previous_responses"}
    if ignored:
        logger.debug("Ignoring unsupported skip_conditions keys: %s", sorted(ignored))

    return SkipCondition(clauses=tuple(clauses))
