"""
Field and step validation.

Pure functions of (definition, answers): no I/O, so feedback is immediate
whatever the state of the network.
"""
from typing import Any, Dict, List, Optional

from .models import FieldDefinition, FieldKind, StepDefinition, Template

ErrorMap = Dict[str, str]

REQUIRED_MESSAGE = "This field is required."


def is_blank(value: Any) -> bool:
    """Absent, empty, whitespace-only, or a list with no non-blank entries."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return not _filled_items(value)
    return False


def _filled_items(values) -> List[str]:
    return [v for v in values if not (isinstance(v, str) and not v.strip()) and v is not None]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_applicable(field: FieldDefinition, answers: Dict[str, Any]) -> bool:
    """False while the field's `depends_on` condition is unmet; such a field is neither shown nor checked."""
    return field.depends_on is None or field.depends_on.holds(answers)


def validate_field(field: FieldDefinition, value: Any) -> Optional[str]:
    """Returns the error message for `value`, or None if it is acceptable."""
    if is_blank(value):
        if field.required:
            return field.message or REQUIRED_MESSAGE
        # Optional and unanswered: nothing else to check.
        return None

    if field.kind == FieldKind.FREE_TEXT:
        text = str(value).strip()
        if field.min_length is not None and len(text) < field.min_length:
            return f"Please enter at least {field.min_length} characters."
        if field.max_length is not None and len(text) > field.max_length:
            return f"Maximum {field.max_length} characters allowed."
        return None

    if field.kind == FieldKind.NUMERIC_SCALE:
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                return "Please choose a value on the scale."
        if not _is_number(value):
            return "Please choose a value on the scale."
        low, high = field.scale_min, field.scale_max
        if (low is not None and value < low) or (high is not None and value > high):
            return f"Please choose a value between {_fmt(low)} and {_fmt(high)}."
        return None

    allowed = {o.value for o in field.options}

    if field.kind == FieldKind.SINGLE_CHOICE:
        if allowed and value not in allowed:
            return "Please choose one of the available options."
        return None

    # MULTI_SELECT
    items = _filled_items(value if isinstance(value, (list, tuple)) else [value])
    if allowed and any(item not in allowed for item in items):
        return "Please choose from the available options."
    if field.min_items is not None and len(items) < field.min_items:
        return f"Please provide at least {field.min_items}."
    return None


def _fmt(bound: Optional[float]) -> str:
    if bound is None:
        return "-"
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def validate_step(step: StepDefinition, answers: Dict[str, Any]) -> ErrorMap:
    """
    Evaluates every applicable field of `step` against `answers`.
    Returns field id -> message; empty when the step is valid.
    """
    errors: ErrorMap = {}
    for field in step.fields:
        if not is_applicable(field, answers):
            continue
        message = validate_field(field, answers.get(field.id))
        if message:
            errors[field.id] = message
    return errors


def validate_template(template: Template, answers: Dict[str, Any]) -> ErrorMap:
    """Runs `validate_step` over every step; first message per field wins."""
    errors: ErrorMap = {}
    for step in template.steps:
        for field_id, message in validate_step(step, answers).items():
            errors.setdefault(field_id, message)
    return errors
