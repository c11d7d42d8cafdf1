from enum import Enum
from typing import Optional, Union

from app.models.analysis import Analysis


class ConversationStatus(str, Enum):
    JUST_STARTED = "just_started"
    MASTERY = "mastery"
    PROGRESSING = "progressing"
    STRUGGLING = "struggling"
    NEEDS_HELP = "needs_help"


def classify_status(
    latest: Optional[Union[Analysis, int, float]],
    message_count: int,
) -> ConversationStatus:
    """
    Teacher-facing status for a conversation.

    Uses the rubric when one is available and falls back to the legacy
    0-100 understanding score otherwise. Fewer than three messages means
    there is not enough evidence yet.
    """
    if message_count < 3:
        return ConversationStatus.JUST_STARTED

    if isinstance(latest, Analysis):
        content = latest.content_understanding.level
        communication = latest.communication_effectiveness.level
        engagement = latest.engagement_level.level

        if content >= 4 and communication >= 3:
            return ConversationStatus.MASTERY
        if content >= 3:
            return ConversationStatus.PROGRESSING
        if engagement >= 3:
            return ConversationStatus.STRUGGLING
        if engagement <= 2:
            return ConversationStatus.NEEDS_HELP
        return ConversationStatus.STRUGGLING

    understanding_level = latest or 0
    if understanding_level >= 80:
        return ConversationStatus.MASTERY
    if understanding_level >= 60:
        return ConversationStatus.PROGRESSING
    if understanding_level >= 40:
        return ConversationStatus.STRUGGLING
    return ConversationStatus.NEEDS_HELP
