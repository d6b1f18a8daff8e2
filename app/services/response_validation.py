"""
Response validation per question ``response_type``.

``validate_response(question, value)`` returns the canonical string stored
in ``stage_responses.response_value`` and compared against transition
``trigger_response`` values, or raises ValidationError.

Canonical forms:
    yes_no           "Yes" | "No"           (bools and any letter case accepted)
    number           "90", "12.5"           (integral values lose their ".0")
    date             "2024-01-31"
    text             stripped text
    file_upload      non-empty file reference
    multiple_choice  one of the question's response_options, verbatim
"""

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, localcontext

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_YES = {"yes", "y", "true"}
_NO = {"no", "n", "false"}

# Decimal exponent bound for numeric answers (|x| < 10**31, |x| >= 10**-30)
MAX_NUMBER_EXPONENT = 30


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _yes_no(value) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    text = str(value).strip().lower()
    if text in _YES:
        return "Yes"
    if text in _NO:
        return "No"
    raise ValidationError(f"Invalid yes/no response: {value!r}", details={"expected": ["Yes", "No"]})


def _number(value) -> str:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid number format: {value!r}")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid number format: {value!r}") from None
    if not number.is_finite():
        raise ValidationError(f"Invalid number format: {value!r}")
    if number.is_zero():
        return "0"
    if abs(number.adjusted()) > MAX_NUMBER_EXPONENT:
        raise ValidationError(
            f"Number out of range: {value!r}",
            details={"max_exponent": MAX_NUMBER_EXPONENT},
        )
    with localcontext() as ctx:
        ctx.prec = 2 * MAX_NUMBER_EXPONENT + 2
        if number == number.to_integral_value():
            return format(number.quantize(Decimal(1)), "f")
        return format(number.normalize(), "f")


def _date(value) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValidationError(
            f"Invalid date format: {value!r}", details={"expected": "YYYY-MM-DD"},
        ) from None


def _text(value) -> str:
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ValidationError(f"Invalid text response: {value!r}")
    return str(value).strip()


def _file_upload(value) -> str:
    if not isinstance(value, str):
        raise ValidationError("File upload response must be a file reference string")
    return value.strip()


_VALIDATORS = {
    "yes_no": _yes_no,
    "number": _number,
    "date": _date,
    "text": _text,
    "file_upload": _file_upload,
}


def validate_response(question, value) -> str:
    """Validate ``value`` for ``question`` and return its canonical string.

    Raises:
        ValidationError: missing required value, type mismatch, or an option
            outside ``response_options``.
    """
    if _is_blank(value):
        if question.is_required:
            raise ValidationError(
                "A response is required for this question",
                details={"question_id": question.id},
            )
        return ""

    if question.response_type == "multiple_choice":
        options = [str(o) for o in (question.response_options or ())]
        choice = str(value).strip()
        if choice not in options:
            raise ValidationError(
                f"Invalid choice: {value!r}",
                details={"question_id": question.id, "valid_options": options},
            )
        return choice

    validator = _VALIDATORS.get(question.response_type)
    if validator is None:
        raise ValidationError(
            f"Unsupported response type '{question.response_type}'",
            details={"question_id": question.id},
        )
    canonical = validator(value)
    if canonical == "" and question.is_required:
        raise ValidationError(
            "A response is required for this question",
            details={"question_id": question.id},
        )
    return canonical
