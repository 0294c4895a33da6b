from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .insights import evidence_qualified
from .models import CareOption, ChatMessage, Episode, InsightCard, Task


@dataclass(frozen=True)
class StageSignals:
    engaged: bool
    has_insights: bool
    has_follow_ups: bool
    has_places: bool
    all_done: bool


def stage_signals(
    *,
    messages: Iterable[ChatMessage],
    insights: Iterable[InsightCard],
    places: Iterable[CareOption],
    tasks: Iterable[Task],
    evidence_lock: bool = True,
) -> StageSignals:
    messages = tuple(messages)
    insights = tuple(insights)
    places = tuple(places)
    tasks = tuple(tasks)
    has_follow_ups = bool(tasks)
    return StageSignals(
        engaged=any(message.role == "user" for message in messages) or bool(insights) or bool(places),
        has_insights=any(evidence_qualified(card, evidence_lock) for card in insights),
        has_follow_ups=has_follow_ups,
        has_places=bool(places),
        all_done=has_follow_ups and all(task.status == "done" for task in tasks),
    )


def derive_stage(signals: StageSignals, previous: str = "intake") -> str:
    """Map progress signals to a stage; rules are checked in order.

    Nothing is remembered beyond ``previous``, so removing tasks or places can
    move the stage backwards.
    """
    if not signals.engaged:
        return "intake"
    if not signals.has_insights:
        return "triage"
    if signals.has_insights and not signals.has_follow_ups and not signals.has_places:
        return "plan"
    if (signals.has_follow_ups or signals.has_places) and not signals.all_done:
        return "actions"
    if signals.all_done:
        return "wrap"
    return previous


def stage_for(episode: Episode) -> str:
    signals = stage_signals(
        messages=episode.messages,
        insights=episode.insights,
        places=episode.places,
        tasks=episode.tasks,
        evidence_lock=episode.evidence_lock,
    )
    return derive_stage(signals, episode.stage)
