"""The reverse tutoring conversation state machine.

A conversation starts with one persona turn, then accepts student turns
until the per-topic response budget or the hard message ceiling is reached,
or until the student is removed for going off topic. Each accepted turn is
committed as a single write after both generation and analysis are done.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from app.agents.comprehension_agent import ComprehensionAnalyzer, vocabulary_used
from app.agents.scaffolding_agent import ScaffoldingAgent
from app.engine.errors import (
    ConversationAlreadyExists,
    ConversationBlocked,
    ConversationNotFound,
    InvalidStudentMessage,
    MessageLimitExceeded,
    PersistenceFailure,
    ResponseLimitExceeded,
)
from app.engine.status import classify_status
from app.engine.topic_policy import BLOCKED_REASON
from app.graph.exchange_graph import build_exchange_graph
from app.llm.gateway import TextGenerationGateway
from app.models.conversation import (
    MAX_MESSAGES,
    Conversation,
    ConversationConfig,
    ConversationState,
    ExchangeMetadata,
    ExchangeResult,
    OffTopicWarning,
    Scaffolding,
    StartConversationResult,
    Transcript,
    Turn,
    TurnRole,
    utcnow,
)
from app.prompts.persona import compose_persona_instruction, get_opening_request
from app.storage.store import ConversationStore
from app.utils.logger import AnalyticsLogger

logger = logging.getLogger(__name__)

OPENING_MAX_TOKENS = 200
UNKNOWN_STUDENT = "Unknown Student"


class ConversationEngine:
    """Runs reverse tutoring conversations against injected collaborators."""

    def __init__(
        self,
        gateway: TextGenerationGateway,
        store: ConversationStore,
        analytics: AnalyticsLogger,
        analyzer: Optional[ComprehensionAnalyzer] = None,
        scaffolder: Optional[ScaffoldingAgent] = None,
        persona_name: str = "Alex",
        persona_temperature: Optional[float] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.analytics = analytics
        self.analyzer = analyzer or ComprehensionAnalyzer(gateway)
        self.scaffolder = scaffolder or ScaffoldingAgent(gateway)
        self.persona_name = persona_name
        self.persona_temperature = persona_temperature
        self.exchange_graph = build_exchange_graph(gateway, self.analyzer, temperature=persona_temperature)
        # One lock per conversation with a turn in flight; dropped when the last waiter leaves.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def start_conversation(
        self,
        session_id: str,
        student_id: str,
        config: ConversationConfig,
        student_name: Optional[str] = None,
    ) -> StartConversationResult:
        topic = await self._call_store(self.store.find_topic(session_id, config.topic))
        if topic is not None:
            config = topic.apply_to(config)

        existing = await self._call_store(self.store.find(session_id, student_id, config.topic))
        if existing is not None:
            if existing.is_blocked:
                raise ConversationBlocked(
                    conversation_id=existing.conversation_id,
                    reason=existing.blocked_reason or BLOCKED_REASON,
                )
            raise ConversationAlreadyExists(conversation_id=existing.conversation_id)

        instruction = compose_persona_instruction(
            config,
            remaining_responses=config.max_student_responses,
            message_count=0,
            opening=True,
            persona_name=self.persona_name,
        )
        ai_message = await self.gateway.generate(
            instruction,
            [{"role": "student", "content": get_opening_request(config)}],
            max_tokens=OPENING_MAX_TOKENS,
            temperature=self.persona_temperature,
        )

        now = utcnow()
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            session_id=session_id,
            student_id=student_id,
            config=config,
            message_count=1,
            history=[Turn(role=TurnRole.AI, content=ai_message, timestamp=now)],
            started_at=now,
            last_updated=now,
        )
        # Registered before the insert; a failed registration leaves no conversation behind.
        if student_name:
            await self._call_store(self.store.register_student(session_id, student_id, student_name))
        await self._call_store(self.store.insert(conversation))
        logger.info("Started conversation %s for student %s on %r", conversation.conversation_id, student_id, config.topic)

        self._emit("reverse_tutoring_started", session_id, {
            "conversationId": conversation.conversation_id,
            "topic": config.topic,
            "subject": config.subject,
        })

        return StartConversationResult(
            conversation_id=conversation.conversation_id,
            ai_message=ai_message,
            persona=self.persona_name,
            message_count=conversation.message_count,
        )

    async def continue_conversation(
        self,
        conversation_id: str,
        student_message: str,
        metadata: Optional[ExchangeMetadata] = None,
    ) -> ExchangeResult:
        if not student_message or not student_message.strip():
            raise InvalidStudentMessage()
        student_message = student_message.strip()
        metadata = metadata or ExchangeMetadata()

        async with self._exclusive(conversation_id):
            conversation = await self._load(conversation_id)
            self._check_can_continue(conversation)

            state = await self.exchange_graph.ainvoke({
                "conversation": conversation,
                "student_message": student_message,
                "metadata": metadata,
                "persona_name": self.persona_name,
            })

            updated = self._apply_exchange(conversation, student_message, state)
            updated = await self._call_store(self.store.update(updated, expected_version=conversation.version))

        analysis = state["analysis"]
        self._emit("reverse_tutoring_exchange", updated.session_id, {
            "conversationId": conversation_id,
            "messageNumber": updated.message_count,
            "understandingLevel": analysis.legacy_score.understanding_level,
            "contentLevel": analysis.content_understanding.level,
            "vocabularyUsed": vocabulary_used(analysis) or metadata.vocabulary_used,
            "helpNeeded": metadata.help_needed,
            "analysisDegraded": analysis.degraded,
            "offTopicAction": state.get("off_topic_action"),
        })
        if state.get("blocked"):
            logger.info("Student %s removed from conversation %s for off-topic discussion", updated.student_id, conversation_id)
            self._emit("reverse_tutoring_blocked", updated.session_id, {
                "conversationId": conversation_id,
                "offTopicWarnings": updated.off_topic_warnings,
            })
        elif updated.state == ConversationState.CONCLUDED:
            self._emit("reverse_tutoring_completed", updated.session_id, {
                "conversationId": conversation_id,
                "messageCount": updated.message_count,
                "studentResponses": updated.student_response_count,
                "finalUnderstandingLevel": updated.current_understanding_level,
                "status": classify_status(analysis, updated.message_count).value,
            })

        off_topic_warning = None
        if state.get("off_topic_action"):
            off_topic_warning = OffTopicWarning(
                action=state["off_topic_action"],
                count=updated.off_topic_warnings,
                topic=updated.config.topic,
            )

        return ExchangeResult(
            conversation_id=conversation_id,
            ai_message=state["reply"],
            analysis=analysis,
            message_count=updated.message_count,
            remaining_responses=updated.remaining_responses,
            off_topic_warning=off_topic_warning,
            is_blocked=updated.is_blocked,
            state=updated.state,
        )

    async def get_scaffolding(
        self,
        conversation_id: str,
        struggle_area: str = "explaining the concept",
    ) -> Scaffolding:
        conversation = await self._load(conversation_id)
        if conversation.is_blocked:
            raise ConversationBlocked(reason=conversation.blocked_reason or BLOCKED_REASON)

        scaffolding = await self.scaffolder.generate(conversation.config, struggle_area)
        self._emit("reverse_tutoring_help_requested", conversation.session_id, {
            "conversationId": conversation_id,
            "struggleArea": struggle_area,
        })
        return scaffolding

    async def get_conversation_transcript(self, conversation_id: str) -> Transcript:
        conversation = await self._load(conversation_id)
        names = await self._call_store(self.store.get_student_names(conversation.session_id))
        config = conversation.config
        return Transcript(
            conversation_id=conversation.conversation_id,
            session_id=conversation.session_id,
            student_id=conversation.student_id,
            student_name=names.get(conversation.student_id, UNKNOWN_STUDENT),
            topic=config.topic,
            subject=config.subject,
            grade_level=config.grade_level,
            key_vocabulary=config.key_vocabulary,
            message_count=conversation.message_count,
            current_understanding_level=conversation.current_understanding_level,
            started_at=conversation.started_at,
            last_updated=conversation.last_updated,
            duration_minutes=conversation.duration_minutes,
            is_blocked=conversation.is_blocked,
            off_topic_warnings=conversation.off_topic_warnings,
            state=conversation.state,
            transcript=conversation.history,
        )

    async def get_student_conversation(self, session_id: str, student_id: str, topic: str) -> Conversation:
        conversation = await self._call_store(self.store.find(session_id, student_id, topic))
        if conversation is None:
            raise ConversationNotFound()
        return conversation

    @asynccontextmanager
    async def _exclusive(self, conversation_id: str):
        """Serialize turns on one conversation."""
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    def _check_can_continue(self, conversation: Conversation):
        """Checked before any generation call."""
        if conversation.is_blocked:
            raise ConversationBlocked(reason=conversation.blocked_reason or BLOCKED_REASON)
        if conversation.student_response_count >= conversation.config.max_student_responses:
            raise ResponseLimitExceeded(max_student_responses=conversation.config.max_student_responses)
        if conversation.message_count >= MAX_MESSAGES:
            raise MessageLimitExceeded(max_messages=MAX_MESSAGES)

    def _apply_exchange(self, conversation: Conversation, student_message: str, state: Dict[str, Any]) -> Conversation:
        now = utcnow()
        analysis = state["analysis"]
        update: Dict[str, Any] = {
            "history": [
                *conversation.history,
                Turn(role=TurnRole.STUDENT, content=student_message, timestamp=now, analysis=analysis),
                Turn(role=TurnRole.AI, content=state["reply"], timestamp=now),
            ],
            "message_count": conversation.message_count + 2,
            "student_response_count": conversation.student_response_count + 1,
            "off_topic_warnings": max(conversation.off_topic_warnings, state.get("off_topic_warnings", 0)),
            "current_understanding_level": analysis.legacy_score.understanding_level,
            "last_updated": now,
        }
        if state.get("blocked"):
            update.update(is_blocked=True, blocked_reason=BLOCKED_REASON, blocked_at=now)
        return conversation.model_copy(update=update)

    async def _load(self, conversation_id: str) -> Conversation:
        conversation = await self._call_store(self.store.get(conversation_id))
        if conversation is None:
            raise ConversationNotFound(conversation_id=conversation_id)
        return conversation

    async def _call_store(self, operation):
        """Await a store operation, reporting unexpected errors as persistence failures."""
        try:
            return await operation
        except (PersistenceFailure, ConversationAlreadyExists):
            raise
        except Exception as e:
            logger.error("Conversation store operation failed: %s", e)
            raise PersistenceFailure(f"Conversation store operation failed: {e}") from e

    def _emit(self, event_type: str, session_id: str, properties: Dict[str, Any]):
        # Runs after the commit; a failed write never undoes the turn.
        try:
            self.analytics.log_event(event_type, session_id, properties)
        except OSError as e:
            logger.warning("Failed to record analytics event %s: %s", event_type, e)
