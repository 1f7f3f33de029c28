from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import FieldDefinition, FieldKind, Template
from .validation import is_applicable, is_blank

NOT_PROVIDED = "Not provided"


def render_value(field: FieldDefinition, value: Any) -> str:
    """Human-readable form of one answer; blanks render as the placeholder."""
    if is_blank(value):
        return NOT_PROVIDED

    if field.kind == FieldKind.NUMERIC_SCALE:
        text = _number(value)
        return f"{text}/{_number(field.scale_max)}" if field.scale_max is not None else text

    if field.kind == FieldKind.SINGLE_CHOICE:
        return field.option_label(str(value))

    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value if v is not None and str(v).strip()]
        if field.kind == FieldKind.MULTI_SELECT:
            items = [field.option_label(v) for v in items]
        return ", ".join(items)

    return str(value).strip()


def _number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip() if isinstance(value, str) else str(value)


def project_summary(
    template: Template,
    answers: Dict[str, Any],
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Flat text summary of a reflection, one block per step in template order.

    Output depends only on the arguments: the same (template, answers) pair
    always yields the same string, whatever order `answers` was filled in.
    Every applicable field declared for the summary appears, answered or
    not; fields hidden by `depends_on` are left out.
    """
    lines: List[str] = [f"{template.title.upper()} SUMMARY"]
    if generated_at is not None:
        lines.append(f"Generated: {generated_at.isoformat()}")

    for step in template.steps:
        fields = [f for f in step.fields if f.include_in_summary and is_applicable(f, answers)]
        if not fields:
            continue
        lines.append("")
        lines.append(step.title.upper())
        for field in fields:
            lines.append(f"{field.label}: {render_value(field, answers.get(field.id))}")

    return "\n".join(lines) + "\n"
