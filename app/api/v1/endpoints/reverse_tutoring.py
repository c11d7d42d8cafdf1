import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.api.deps import get_dashboard, get_engine, get_topics
from app.config import settings
from app.engine.conversation_engine import ConversationEngine
from app.engine.dashboard import DashboardAggregator, TeacherDashboard
from app.engine.errors import ReverseTutoringError
from app.engine.topics import TopicRegistry
from app.models.conversation import (
    Conversation,
    ConversationConfig,
    ExchangeMetadata,
    ExchangeResult,
    Scaffolding,
    StartConversationResult,
    Transcript,
)
from app.models.topic import SessionTopics, TopicCreate, TopicSettings, TopicUpdate

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response models
class StartConversationRequest(BaseModel):
    """What a student sends; the topic's teacher settings are looked up by name."""
    session_id: str
    student_id: str
    student_name: Optional[str] = None
    topic: str = Field(min_length=1)
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    key_vocabulary: List[str] = []
    language_proficiency: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    native_language: str = "en"

    def to_config(self) -> ConversationConfig:
        # Only what the student actually sent, so the topic can fill in the rest.
        fields = self.model_dump(
            exclude={"session_id", "student_id", "student_name"}, exclude_unset=True, exclude_none=True
        )
        return ConversationConfig(max_student_responses=settings.default_max_student_responses, **fields)


class SendMessageRequest(BaseModel):
    message: str
    language: str = settings.default_language
    help_needed: bool = False
    vocabulary_used: List[str] = []


class HelpRequest(BaseModel):
    struggle_area: str = "explaining the concept"


def _raise_http(error: ReverseTutoringError):
    if error.status_code >= 500:
        logger.error("Reverse tutoring request failed: %s", error)
    raise HTTPException(status_code=error.status_code, detail=error.to_detail())


@router.post("/start", response_model=StartConversationResult, status_code=201)
async def start_conversation(
    request: StartConversationRequest,
    engine: ConversationEngine = Depends(get_engine),
):
    """Start a reverse tutoring conversation for one student and topic."""
    try:
        return await engine.start_conversation(
            session_id=request.session_id,
            student_id=request.student_id,
            config=request.to_config(),
            student_name=request.student_name,
        )
    except ReverseTutoringError as e:
        _raise_http(e)


@router.post("/{conversation_id}/message", response_model=ExchangeResult)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    engine: ConversationEngine = Depends(get_engine),
):
    """Send the student's explanation and receive the persona's reply plus its analysis."""
    metadata = ExchangeMetadata(
        language=request.language,
        help_needed=request.help_needed,
        vocabulary_used=request.vocabulary_used,
    )
    try:
        return await engine.continue_conversation(conversation_id, request.message, metadata)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.post("/{conversation_id}/help", response_model=Scaffolding)
async def get_help(
    conversation_id: str,
    request: Optional[HelpRequest] = None,
    engine: ConversationEngine = Depends(get_engine),
):
    """Sentence starters, vocabulary and a hint for a struggling student."""
    struggle_area = request.struggle_area if request else HelpRequest().struggle_area
    try:
        return await engine.get_scaffolding(conversation_id, struggle_area)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.get("/session/{session_id}/dashboard", response_model=TeacherDashboard)
async def get_teacher_dashboard(
    session_id: str,
    dashboard: DashboardAggregator = Depends(get_dashboard),
):
    try:
        return await dashboard.get_teacher_dashboard(session_id)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.get("/{conversation_id}/transcript", response_model=Transcript)
async def get_transcript(
    conversation_id: str,
    engine: ConversationEngine = Depends(get_engine),
):
    try:
        return await engine.get_conversation_transcript(conversation_id)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.get("/student/{student_id}/conversation", response_model=Conversation)
async def get_student_conversation(
    student_id: str,
    session_id: str = Query(...),
    topic: str = Query(...),
    engine: ConversationEngine = Depends(get_engine),
):
    """Look up an existing conversation so a returning student can resume it."""
    try:
        return await engine.get_student_conversation(session_id, student_id, topic)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.post("/topics", response_model=TopicSettings, status_code=201)
async def create_topic(
    request: TopicCreate,
    topics: TopicRegistry = Depends(get_topics),
):
    """Set up a topic's budget, focus and lesson context for a session."""
    try:
        return await topics.create_topic(request)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.get("/session/{session_id}/topics", response_model=SessionTopics)
async def list_session_topics(
    session_id: str,
    student_id: Optional[str] = Query(None),
    topics: TopicRegistry = Depends(get_topics),
):
    """Active topics of a session; with ``student_id``, only those assigned to that student."""
    try:
        return await topics.list_session_topics(session_id, student_id)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.get("/topics/{topic_id}", response_model=TopicSettings)
async def get_topic(
    topic_id: str,
    topics: TopicRegistry = Depends(get_topics),
):
    try:
        return await topics.get_topic(topic_id)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.put("/topics/{topic_id}", response_model=TopicSettings)
async def update_topic(
    topic_id: str,
    request: TopicUpdate,
    topics: TopicRegistry = Depends(get_topics),
):
    """Change a topic's settings. Conversations already started keep theirs."""
    try:
        return await topics.update_topic(topic_id, request)
    except ReverseTutoringError as e:
        _raise_http(e)


@router.delete("/topics/{topic_id}")
async def delete_topic(
    topic_id: str,
    topics: TopicRegistry = Depends(get_topics),
):
    try:
        await topics.delete_topic(topic_id)
    except ReverseTutoringError as e:
        _raise_http(e)
    return {"success": True, "message": "Topic deleted successfully"}
