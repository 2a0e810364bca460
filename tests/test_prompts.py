"""Tests for agent prompt construction."""

from datetime import date

from futureself.models import Generic, Personalized, Reflection, TimeMode
from futureself.prompts import FIRST_MESSAGES, TIME_MODE_PLACEHOLDER, build_system_prompt, prompt_for


def test_generic_prompt_has_only_default_framing():
    prompt = prompt_for(Generic(reason="extraction_failure"))
    assert TIME_MODE_PLACEHOLDER in prompt
    assert "You are the user's self at this date." in prompt
    assert "Goals:" not in prompt
    assert "Fears:" not in prompt


def test_personalized_prompt_includes_ground_truth_fields():
    reflection = Reflection(
        goals=["finish thesis", "run a marathon"],
        fears=["running out of money"],
        situation="Final year grad student",
        currentWork="PhD",
    )
    prompt = prompt_for(
        Personalized(reflection=reflection, transcript="..."),
        title="My past self",
        snapshot_date=date(2026, 1, 5),
    )
    assert 'You are the user\'s "My past self" at 2026-01-05.' in prompt
    assert "Goals: finish thesis; run a marathon" in prompt
    assert "Fears: running out of money" in prompt
    assert "Situation: Final year grad student" in prompt
    assert "Current work/school: PhD" in prompt
    assert "Other notes" not in prompt


def test_empty_fields_are_omitted():
    prompt = build_system_prompt(reflection=Reflection(goals=["", "  "], situation=""))
    assert "Goals:" not in prompt
    assert "Situation:" not in prompt
    assert "\n\n" not in prompt


def test_first_messages_per_direction():
    assert "from the future" in FIRST_MESSAGES[TimeMode.FUTURE]
    assert "from the past" in FIRST_MESSAGES[TimeMode.PAST]
