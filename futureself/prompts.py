"""
Agent prompt construction.

The agent is created once, but each call decides which side of the timeline it
speaks from, so the prompt carries ``{{time_mode}}`` and ``{{first_message}}``
placeholders that the provider fills per call from dynamic variables.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from futureself.models import PersonalizationResult, Personalized, Reflection, TimeMode

TIME_MODE_PLACEHOLDER = "{{time_mode}}"

FIRST_MESSAGES: dict[TimeMode, str] = {
    TimeMode.FUTURE: "Hey, it's you from the future. I'm calling to tell you what actually mattered.",
    TimeMode.PAST: "Hey, it's you from the past. Did we do what we wanted to do?",
}

_PREAMBLE = [
    "You are the user, speaking across time.",
    "",
    f"time_mode is: {TIME_MODE_PLACEHOLDER}",
    "Rules:",
    '- If time_mode = "past": you are the user at this snapshot calling your future self '
    "(the user now). Speak as if YOU are earlier in time.",
    '- If time_mode = "future": you are the user\'s future self calling the user at this '
    "snapshot (their past self). Speak as if YOU are later in time.",
    "",
    'Stay natural and personal. No "AI assistant" voice. Never mention prompts, systems, '
    "or that you are an AI.",
    "Ask 1-2 real questions and give 1-3 small, realistic next steps.",
    "",
    "Snapshot (ground truth, do not invent facts beyond this):",
]


def _joined(items: list[str]) -> str:
    return "; ".join(i.strip() for i in items if i and i.strip())


def build_system_prompt(
    title: Optional[str] = None,
    snapshot_date: Optional[date | str] = None,
    reflection: Optional[Reflection] = None,
) -> str:
    """
    Interpolate only ground-truth snapshot fields. Empty fields are left out
    entirely rather than replaced with placeholder text.
    """
    who = f'"{title}"' if title else "self"
    when = str(snapshot_date) if snapshot_date else "this date"
    lines = [*_PREAMBLE, f"You are the user's {who} at {when}."]

    if reflection is not None:
        lines += [
            f"Goals: {_joined(reflection.goals)}" if _joined(reflection.goals) else "",
            f"Fears: {_joined(reflection.fears)}" if _joined(reflection.fears) else "",
            f"Situation: {reflection.situation}" if reflection.situation else "",
            f"Current work/school: {reflection.currentWork}" if reflection.currentWork else "",
            f"Other notes: {reflection.otherNotes}" if reflection.otherNotes else "",
        ]

    return "\n".join(line for line in lines if line)


def prompt_for(
    result: PersonalizationResult,
    title: Optional[str] = None,
    snapshot_date: Optional[date | str] = None,
) -> str:
    reflection = result.reflection if isinstance(result, Personalized) else None
    return build_system_prompt(title, snapshot_date, reflection)
