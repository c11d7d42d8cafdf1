"""Persistence for conversations and the teacher's topic settings.

Stores hold raw rows: flat dicts whose list and history columns may be
JSON text or already-decoded structures, as a JSONB column would return
them. Every row passes through ``Conversation.from_record`` on the way out,
so callers only ever see typed ``Conversation`` objects.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from app.engine.errors import (
    ConcurrentModification,
    ConversationAlreadyExists,
    PersistenceFailure,
    TopicAlreadyExists,
)
from app.models.conversation import Conversation
from app.models.topic import TopicSettings

logger = logging.getLogger(__name__)


def load_record(record: Dict[str, Any]) -> Conversation:
    try:
        return Conversation.from_record(record)
    except (ValidationError, ValueError, KeyError) as e:
        logger.error("Unreadable conversation record %s: %s", record.get("id"), e)
        raise PersistenceFailure(f"Unreadable conversation record {record.get('id')}: {e}") from e


class ConversationStore(ABC):
    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find(self, session_id: str, student_id: str, topic: str) -> Optional[Conversation]:
        """Look up the conversation for one student and topic in a session."""

    @abstractmethod
    async def insert(self, conversation: Conversation) -> Conversation:
        """Raise ``ConversationAlreadyExists`` for a duplicate id or (session, student, topic)."""

    @abstractmethod
    async def update(self, conversation: Conversation, expected_version: int) -> Conversation:
        """Replace the stored row if its version still equals ``expected_version``.

        Returns the stored conversation with its version bumped; raises
        ``ConcurrentModification`` when another write got there first.
        """

    @abstractmethod
    async def list_for_session(self, session_id: str) -> List[Conversation]:
        ...

    @abstractmethod
    async def register_student(self, session_id: str, student_id: str, student_name: str) -> None:
        ...

    @abstractmethod
    async def get_student_names(self, session_id: str) -> Dict[str, str]:
        ...

    @abstractmethod
    async def create_topic(self, topic: TopicSettings) -> TopicSettings:
        """Raise ``TopicAlreadyExists`` when the session already has a topic by that name."""

    @abstractmethod
    async def get_topic(self, topic_id: str) -> Optional[TopicSettings]:
        ...

    @abstractmethod
    async def find_topic(self, session_id: str, topic: str) -> Optional[TopicSettings]:
        """Look up an active topic by name within a session."""

    @abstractmethod
    async def update_topic(self, topic: TopicSettings) -> TopicSettings:
        ...

    @abstractmethod
    async def delete_topic(self, topic_id: str) -> bool:
        ...

    @abstractmethod
    async def list_topics(self, session_id: str) -> List[TopicSettings]:
        """Active topics of a session, oldest first."""


class InMemoryConversationStore(ConversationStore):
    """Process-local store, suitable for a single worker and for tests."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._students: Dict[str, Dict[str, str]] = {}
        self._topics: Dict[str, TopicSettings] = {}
        self._lock = asyncio.Lock()

    def put_record(self, record: Dict[str, Any]) -> None:
        """Insert a raw row as-is, e.g. one migrated from an older schema."""
        self._records[str(record["id"])] = copy.deepcopy(record)

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        record = self._records.get(str(conversation_id))
        return load_record(record) if record is not None else None

    async def find(self, session_id: str, student_id: str, topic: str) -> Optional[Conversation]:
        for record in self._records.values():
            if (
                record["session_id"] == session_id
                and record["student_id"] == student_id
                and record["topic"] == topic
            ):
                return load_record(record)
        return None

    async def insert(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            if conversation.conversation_id in self._records:
                raise ConversationAlreadyExists(conversation_id=conversation.conversation_id)
            existing = await self.find(conversation.session_id, conversation.student_id, conversation.config.topic)
            if existing is not None:
                raise ConversationAlreadyExists(conversation_id=existing.conversation_id)
            self._records[conversation.conversation_id] = conversation.to_record()
        return conversation

    async def update(self, conversation: Conversation, expected_version: int) -> Conversation:
        async with self._lock:
            current = self._records.get(conversation.conversation_id)
            if current is None:
                raise PersistenceFailure(f"Conversation {conversation.conversation_id} disappeared before update")
            if (current.get("version") or 0) != expected_version:
                raise ConcurrentModification(
                    f"Conversation {conversation.conversation_id} is at version {current.get('version')}, "
                    f"expected {expected_version}"
                )
            stored = conversation.model_copy(update={"version": expected_version + 1})
            self._records[conversation.conversation_id] = stored.to_record()
        return stored

    async def list_for_session(self, session_id: str) -> List[Conversation]:
        return [load_record(record) for record in self._records.values() if record["session_id"] == session_id]

    async def register_student(self, session_id: str, student_id: str, student_name: str) -> None:
        self._students.setdefault(session_id, {})[student_id] = student_name

    async def get_student_names(self, session_id: str) -> Dict[str, str]:
        return dict(self._students.get(session_id, {}))

    async def create_topic(self, topic: TopicSettings) -> TopicSettings:
        async with self._lock:
            self._check_topic_name(topic)
            self._topics[topic.topic_id] = topic.model_copy(deep=True)
        return topic

    async def get_topic(self, topic_id: str) -> Optional[TopicSettings]:
        topic = self._topics.get(topic_id)
        return topic.model_copy(deep=True) if topic is not None else None

    async def find_topic(self, session_id: str, topic: str) -> Optional[TopicSettings]:
        for settings in self._topics.values():
            if settings.session_id == session_id and settings.topic == topic and settings.is_active:
                return settings.model_copy(deep=True)
        return None

    async def update_topic(self, topic: TopicSettings) -> TopicSettings:
        async with self._lock:
            if topic.topic_id not in self._topics:
                raise PersistenceFailure(f"Topic {topic.topic_id} disappeared before update")
            self._check_topic_name(topic)
            self._topics[topic.topic_id] = topic.model_copy(deep=True)
        return topic

    async def delete_topic(self, topic_id: str) -> bool:
        async with self._lock:
            return self._topics.pop(topic_id, None) is not None

    async def list_topics(self, session_id: str) -> List[TopicSettings]:
        topics = [
            topic.model_copy(deep=True)
            for topic in self._topics.values()
            if topic.session_id == session_id and topic.is_active
        ]
        return sorted(topics, key=lambda topic: topic.created_at)

    def _check_topic_name(self, topic: TopicSettings):
        # Names are unique per session, inactive topics included.
        for other in self._topics.values():
            if other.topic_id != topic.topic_id and other.session_id == topic.session_id and other.topic == topic.topic:
                raise TopicAlreadyExists(topic_id=other.topic_id)
