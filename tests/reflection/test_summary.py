from datetime import datetime, timezone

from services.reflection_engine.models import ChoiceOption, FieldDefinition, FieldKind
from services.reflection_engine.registry import default_registry, load_template_data
from services.reflection_engine.summary import NOT_PROVIDED, project_summary, render_value


def test_summary_layout(two_step_template):
    text = project_summary(two_step_template, {"topic": "Planning", "score": 7.0, "lesson": "  ship small  "})
    assert text == (
        "TWO STEP CHECK-IN SUMMARY\n"
        "\n"
        "CONTEXT\n"
        "Topic: Planning\n"
        f"Notes: {NOT_PROVIDED}\n"
        "\n"
        "RATING\n"
        "Score: 7/10\n"
        "Lesson: ship small\n"
    )


def test_summary_is_deterministic_and_ordered_by_steps(two_step_template):
    forward = {"topic": "Planning", "notes": "n", "score": 3, "lesson": "long enough text"}
    backward = dict(reversed(list(forward.items())))

    first = project_summary(two_step_template, forward)
    assert first == project_summary(two_step_template, forward)
    assert first == project_summary(two_step_template, backward)
    assert first.index("CONTEXT") < first.index("RATING")


def test_generated_line_when_timestamp_given(two_step_template):
    stamp = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    lines = project_summary(two_step_template, {}, generated_at=stamp).splitlines()
    assert lines[0] == "TWO STEP CHECK-IN SUMMARY"
    assert lines[1] == "Generated: 2026-03-01T12:00:00+00:00"


def test_choice_fields_render_labels():
    single = FieldDefinition(
        id="mood", label="Mood", kind=FieldKind.SINGLE_CHOICE,
        options=[ChoiceOption(value="calm", label="Calm and focused")],
    )
    multi = FieldDefinition(
        id="care", label="Care", kind=FieldKind.MULTI_SELECT,
        options=[ChoiceOption(value="walk", label="Walk"), ChoiceOption(value="sleep", label="Sleep early")],
    )
    assert render_value(single, "calm") == "Calm and focused"
    assert render_value(multi, ["walk", "sleep"]) == "Walk, Sleep early"
    assert render_value(multi, []) == NOT_PROVIDED


def test_excluded_fields_and_empty_steps_are_skipped():
    template = load_template_data({
        "id": "private",
        "title": "Private Notes",
        "steps": [
            {"id": "open", "title": "Open", "fields": [
                {"id": "shared_note", "label": "Shared note"},
                {"id": "private_note", "label": "Private note", "include_in_summary": False},
            ]},
            {"id": "hidden", "title": "Hidden", "fields": [
                {"id": "scratch", "label": "Scratch", "include_in_summary": False},
            ]},
        ],
    })
    text = project_summary(template, {"shared_note": "hello", "private_note": "secret", "scratch": "x"})
    assert text == "PRIVATE NOTES SUMMARY\n\nOPEN\nShared note: hello\n"


def test_packaged_template_summary_header():
    template = default_registry().get_template("post_assignment_debrief")
    text = project_summary(template, {"lessons_learned": "pace matters more"})
    assert text.startswith("POST-ASSIGNMENT DEBRIEF SUMMARY\n")
    assert "Lessons learned: pace matters more\n" in text
    assert "Overall satisfaction: Not provided\n" in text


def test_fields_hidden_by_condition_are_left_out():
    template = load_template_data({
        "id": "load",
        "title": "Load",
        "steps": [{"id": "today", "title": "Today", "fields": [
            {"id": "load", "label": "Load", "kind": "single_choice",
             "options": [{"value": "light", "label": "Light"}, {"value": "heavy", "label": "Heavy"}]},
            {"id": "why", "label": "Why", "depends_on": {"field": "load", "value": "heavy"}},
        ]}],
    })
    assert project_summary(template, {"load": "light", "why": "stale"}) == "LOAD SUMMARY\n\nTODAY\nLoad: Light\n"
    assert project_summary(template, {"load": "heavy", "why": "deadlines"}) == (
        "LOAD SUMMARY\n\nTODAY\nLoad: Heavy\nWhy: deadlines\n"
    )
