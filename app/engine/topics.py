"""Teacher-managed topic settings.

A teacher sets up each topic of a session once; students starting a
conversation on that topic name it and get the teacher's budget, focus
and lesson context regardless of what their own request carries.
"""

import logging
import uuid
from typing import Optional

from app.engine.errors import PersistenceFailure, TopicAlreadyExists, TopicNotFound
from app.models.topic import SessionTopics, TopicCreate, TopicSettings, TopicUpdate
from app.storage.store import ConversationStore

logger = logging.getLogger(__name__)


class TopicRegistry:
    def __init__(self, store: ConversationStore):
        self.store = store

    async def create_topic(self, request: TopicCreate) -> TopicSettings:
        topic = TopicSettings(topic_id=str(uuid.uuid4()), **request.model_dump())
        topic = await self._call_store(self.store.create_topic(topic))
        logger.info("Created topic %r for session %s", topic.topic, topic.session_id)
        return topic

    async def get_topic(self, topic_id: str) -> TopicSettings:
        topic = await self._call_store(self.store.get_topic(topic_id))
        if topic is None:
            raise TopicNotFound(topic_id=topic_id)
        return topic

    async def update_topic(self, topic_id: str, changes: TopicUpdate) -> TopicSettings:
        current = await self.get_topic(topic_id)
        # Fields left out or sent as null keep their current value.
        merged = {**current.model_dump(), **changes.model_dump(exclude_none=True)}
        topic = await self._call_store(self.store.update_topic(TopicSettings(**merged)))
        logger.info("Updated topic %s in session %s", topic_id, topic.session_id)
        return topic

    async def delete_topic(self, topic_id: str) -> None:
        if not await self._call_store(self.store.delete_topic(topic_id)):
            raise TopicNotFound(topic_id=topic_id)
        logger.info("Deleted topic %s", topic_id)

    async def list_session_topics(self, session_id: str, student_id: Optional[str] = None) -> SessionTopics:
        topics = await self._call_store(self.store.list_topics(session_id))
        if student_id:
            topics = [topic for topic in topics if topic.available_to(student_id)]
        return SessionTopics(session_id=session_id, topics=topics, total_topics=len(topics))

    async def _call_store(self, operation):
        try:
            return await operation
        except (PersistenceFailure, TopicAlreadyExists):
            raise
        except Exception as e:
            logger.error("Topic store operation failed: %s", e)
            raise PersistenceFailure(f"Topic store operation failed: {e}") from e
