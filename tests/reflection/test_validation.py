import pytest

from services.reflection_engine.models import ChoiceOption, FieldCondition, FieldDefinition, FieldKind, StepDefinition
from services.reflection_engine.registry import default_registry
from services.reflection_engine.validation import (
    REQUIRED_MESSAGE,
    is_applicable,
    is_blank,
    validate_field,
    validate_step,
    validate_template,
)


@pytest.mark.parametrize("value", [None, "", "   ", [], ["", "  "]])
def test_blank_values(value):
    assert is_blank(value)


@pytest.mark.parametrize("value", ["x", 0, 3.5, ["a"]])
def test_non_blank_values(value):
    assert not is_blank(value)


def test_required_blank_uses_default_message():
    field = FieldDefinition(id="f", label="F", required=True)
    assert validate_field(field, "   ") == REQUIRED_MESSAGE


def test_required_blank_uses_custom_message():
    field = FieldDefinition(id="f", label="F", required=True, message="Tell us what happened.")
    assert validate_field(field, None) == "Tell us what happened."


def test_min_length_counts_trimmed_text():
    field = FieldDefinition(id="f", label="F", required=True, min_length=10)
    assert validate_field(field, "  short    ") == "Please enter at least 10 characters."
    assert validate_field(field, "this is long enough") is None


def test_optional_blank_field_skips_min_length():
    field = FieldDefinition(id="f", label="F", min_length=10)
    assert validate_field(field, "") is None
    assert validate_field(field, "tiny") == "Please enter at least 10 characters."


def test_numeric_scale_bounds():
    field = FieldDefinition(id="s", label="S", kind=FieldKind.NUMERIC_SCALE, required=True, scale_min=1, scale_max=10)
    assert validate_field(field, 7) is None
    assert validate_field(field, "7") is None
    assert validate_field(field, 11) == "Please choose a value between 1 and 10."
    assert validate_field(field, "high") == "Please choose a value on the scale."
    assert validate_field(field, True) == "Please choose a value on the scale."


def test_single_choice_must_be_an_option():
    field = FieldDefinition(
        id="c", label="C", kind=FieldKind.SINGLE_CHOICE,
        options=[ChoiceOption(value="a", label="A"), ChoiceOption(value="b", label="B")],
    )
    assert validate_field(field, "a") is None
    assert validate_field(field, "z") == "Please choose one of the available options."


def test_multi_select_options_and_min_items():
    field = FieldDefinition(
        id="m", label="M", kind=FieldKind.MULTI_SELECT, required=True, min_items=2,
        options=[ChoiceOption(value="a", label="A"), ChoiceOption(value="b", label="B")],
    )
    assert validate_field(field, ["a", "b"]) is None
    assert validate_field(field, ["a"]) == "Please provide at least 2."
    assert validate_field(field, ["a", "z"]) == "Please choose from the available options."
    assert validate_field(field, []) == REQUIRED_MESSAGE


def test_validate_step_reports_each_invalid_field(two_step_template):
    step = two_step_template.steps[1]
    errors = validate_step(step, {"score": 4, "lesson": "short"})
    assert errors == {"lesson": "Please enter at least 10 characters."}
    assert validate_step(step, {"score": 4, "lesson": "long enough now"}) == {}


def test_validate_template_covers_all_steps(two_step_template):
    errors = validate_template(two_step_template, {"lesson": "long enough now"})
    assert set(errors) == {"topic", "score"}


def test_max_length_counts_trimmed_text():
    field = FieldDefinition(id="t", label="T", max_length=5)
    assert validate_field(field, "  hello  ") is None
    assert validate_field(field, "hello!") == "Maximum 5 characters allowed."


def _follow_up_step():
    return StepDefinition(id="load", title="Load", fields=[
        FieldDefinition(
            id="load", label="Load", kind=FieldKind.SINGLE_CHOICE, required=True,
            options=[ChoiceOption(value="light", label="Light"), ChoiceOption(value="heavy", label="Heavy")],
        ),
        FieldDefinition(
            id="why", label="Why", required=True, depends_on=FieldCondition(field="load", value="heavy"),
        ),
    ])


def test_dependent_field_only_checked_when_condition_holds():
    step = _follow_up_step()
    why = step.fields[1]
    assert not is_applicable(why, {"load": "light"})
    assert is_applicable(why, {"load": "heavy"})

    assert validate_step(step, {"load": "light"}) == {}
    assert validate_step(step, {"load": "heavy"}) == {"why": REQUIRED_MESSAGE}
    assert validate_step(step, {"load": "heavy", "why": "deadlines"}) == {}


def test_condition_on_multi_select_matches_membership():
    condition = FieldCondition(field="tags", value="b")
    assert condition.holds({"tags": ["a", "b"]})
    assert not condition.holds({"tags": ["a"]})
    assert not condition.holds({})


def test_packaged_burnout_follow_up():
    template = default_registry().get_template("burnout_check")
    answers = {"energy_level": 4, "stress_level": 8, "emotional_load": "heavy"}
    assert validate_template(template, answers) == {"heavy_load_source": "Please name what is making today heavy."}
    answers["emotional_load"] = "moderate"
    assert validate_template(template, answers) == {}
