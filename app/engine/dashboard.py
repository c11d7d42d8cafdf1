import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from app.engine.errors import PersistenceFailure
from app.engine.status import ConversationStatus, classify_status
from app.models.analysis import Analysis
from app.models.conversation import Conversation, ConversationState
from app.storage.store import ConversationStore

logger = logging.getLogger(__name__)

UNKNOWN_STUDENT = "Unknown Student"


class DashboardEntry(BaseModel):
    conversation_id: str
    student_id: str
    student_name: str
    topic: str
    message_count: int
    understanding_level: int
    duration_minutes: int
    latest_analysis: Optional[Analysis] = None
    status: ConversationStatus
    state: ConversationState
    is_blocked: bool
    blocked_reason: Optional[str] = None
    off_topic_warnings: int
    student_response_count: int
    max_student_responses: int
    started_at: datetime
    last_updated: datetime


class DashboardSummary(BaseModel):
    total_students: int
    average_understanding: int
    status_counts: Dict[str, int]


class TeacherDashboard(BaseModel):
    session_id: str
    conversations: List[DashboardEntry]
    summary: DashboardSummary


def build_entry(conversation: Conversation, student_name: str) -> DashboardEntry:
    latest = conversation.latest_analysis
    status = classify_status(
        latest if latest is not None else conversation.current_understanding_level,
        conversation.message_count,
    )
    return DashboardEntry(
        conversation_id=conversation.conversation_id,
        student_id=conversation.student_id,
        student_name=student_name,
        topic=conversation.config.topic,
        message_count=conversation.message_count,
        understanding_level=conversation.current_understanding_level,
        duration_minutes=conversation.duration_minutes,
        latest_analysis=latest,
        status=status,
        state=conversation.state,
        is_blocked=conversation.is_blocked,
        blocked_reason=conversation.blocked_reason,
        off_topic_warnings=conversation.off_topic_warnings,
        student_response_count=conversation.student_response_count,
        max_student_responses=conversation.config.max_student_responses,
        started_at=conversation.started_at,
        last_updated=conversation.last_updated,
    )


def summarize(entries: List[DashboardEntry]) -> DashboardSummary:
    levels = [entry.understanding_level for entry in entries]
    counts = Counter(entry.status.value for entry in entries)
    return DashboardSummary(
        total_students=len({entry.student_id for entry in entries}),
        average_understanding=round(sum(levels) / len(levels)) if levels else 0,
        status_counts={status.value: counts.get(status.value, 0) for status in ConversationStatus},
    )


class DashboardAggregator:
    """Read-only teacher view over every conversation in a session."""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def get_teacher_dashboard(self, session_id: str) -> TeacherDashboard:
        try:
            conversations = await self.store.list_for_session(session_id)
            names = await self.store.get_student_names(session_id)
        except PersistenceFailure:
            raise
        except Exception as e:
            logger.error("Failed to load dashboard for session %s: %s", session_id, e)
            raise PersistenceFailure(f"Failed to load dashboard for session {session_id}: {e}") from e

        conversations.sort(key=lambda c: c.last_updated, reverse=True)
        entries = [build_entry(c, names.get(c.student_id, UNKNOWN_STUDENT)) for c in conversations]
        return TeacherDashboard(
            session_id=session_id,
            conversations=entries,
            summary=summarize(entries),
        )
