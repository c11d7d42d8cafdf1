import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.analysis import Analysis, normalize_analysis

# Hard ceiling on turns in a conversation, independent of the per-topic budget.
MAX_MESSAGES = 15
SYSTEM_LIMIT_WARNING_AT = MAX_MESSAGES - 2
WRAP_UP_THRESHOLD = 2

_QUOTES = re.compile(r"^[\"']|[\"']$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Plain TIMESTAMP columns come back without a zone; they hold UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def strip_text(value):
    return value.strip() if isinstance(value, str) else value


def ordered_vocabulary(value) -> List[str]:
    """Comma text or a list, trimmed and de-duplicated case-insensitively in order."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    terms: List[str] = []
    seen = set()
    for term in value:
        term = _QUOTES.sub("", str(term).strip()).strip()
        if term and term.lower() not in seen:
            seen.add(term.lower())
            terms.append(term)
    return terms


def non_blank_entries(value) -> List[str]:
    if value is None:
        return []
    return [str(item).strip() for item in value if item and str(item).strip()]


class TurnRole(str, Enum):
    AI = "ai"
    STUDENT = "student"


class LanguageComplexity(str, Enum):
    SIMPLE = "simple"
    STANDARD = "standard"
    ADVANCED = "advanced"


class ResponseLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class ConversationState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    WRAPPING_UP = "wrapping_up"
    CONCLUDED = "concluded"
    BLOCKED = "blocked"


class ConversationConfig(BaseModel):
    """Per-topic settings a conversation is started with. Never changes afterwards."""
    topic: str = Field(min_length=1)
    subject: str = "Science"
    grade_level: str = "7th grade"
    key_vocabulary: List[str] = []
    language_proficiency: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    native_language: str = "en"
    language_complexity: LanguageComplexity = LanguageComplexity.STANDARD
    response_length: ResponseLength = ResponseLength.MEDIUM
    max_student_responses: int = Field(default=10, ge=1)
    enforce_topic_focus: bool = True

    # Lesson context supplied by the teacher
    concepts_covered: List[str] = []
    expected_explanations: List[str] = []
    critical_thinking_topics: List[str] = []
    critical_thinking_depth: Literal["none", "light", "moderate"] = "none"
    document_context: Optional[str] = None

    class Config:
        frozen = True

    @field_validator("topic", mode="before")
    @classmethod
    def strip_topic(cls, value):
        return strip_text(value)

    @field_validator("key_vocabulary", mode="before")
    @classmethod
    def vocabulary_as_ordered_set(cls, value):
        return ordered_vocabulary(value)

    @field_validator("concepts_covered", "expected_explanations", "critical_thinking_topics", mode="before")
    @classmethod
    def drop_blank_entries(cls, value):
        return non_blank_entries(value)


class ExchangeMetadata(BaseModel):
    """Client-side context sent along with a student message."""
    language: str = "en"
    help_needed: bool = False
    vocabulary_used: List[str] = []


class Turn(BaseModel):
    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    analysis: Optional[Analysis] = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_in_utc(cls, value):
        return as_utc(value)

    @field_validator("analysis", mode="before")
    @classmethod
    def interpret_analysis(cls, value):
        if value is None:
            return None
        return normalize_analysis(value)

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.analysis is not None:
            data["analysis"] = self.analysis.to_json()
        return data


_JSON_CONFIG_FIELDS = ("key_vocabulary", "concepts_covered", "expected_explanations", "critical_thinking_topics")


def _decode_json(value: Any, default: Any) -> Any:
    """Columns may hold JSON text or already-decoded structures."""
    if value is None:
        return default
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value) if value.strip() else default
    return value


class Conversation(BaseModel):
    conversation_id: str
    session_id: str
    student_id: str
    config: ConversationConfig
    message_count: int = 1
    student_response_count: int = 0
    off_topic_warnings: int = 0
    current_understanding_level: int = 0
    is_blocked: bool = False
    blocked_reason: Optional[str] = None
    blocked_at: Optional[datetime] = None
    history: List[Turn] = []
    started_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator("started_at", "last_updated", "blocked_at")
    @classmethod
    def timestamps_in_utc(cls, value):
        return as_utc(value)

    @property
    def remaining_responses(self) -> int:
        return self.config.max_student_responses - self.student_response_count

    @property
    def latest_analysis(self) -> Optional[Analysis]:
        for turn in reversed(self.history):
            if turn.role == TurnRole.STUDENT and turn.analysis is not None:
                return turn.analysis
        return None

    @property
    def duration_minutes(self) -> int:
        return round((self.last_updated - self.started_at).total_seconds() / 60)

    @property
    def state(self) -> ConversationState:
        if self.is_blocked:
            return ConversationState.BLOCKED
        if self.remaining_responses <= 0 or self.message_count >= MAX_MESSAGES:
            return ConversationState.CONCLUDED
        if self.student_response_count == 0:
            return ConversationState.CREATED
        if self.remaining_responses <= WRAP_UP_THRESHOLD or self.message_count >= SYSTEM_LIMIT_WARNING_AT:
            return ConversationState.WRAPPING_UP
        return ConversationState.ACTIVE

    def to_record(self) -> Dict[str, Any]:
        """Flatten into a storage row; list columns are JSON-encoded."""
        record: Dict[str, Any] = {
            "id": self.conversation_id,
            "session_id": self.session_id,
            "student_id": self.student_id,
        }
        for name, value in self.config.model_dump(mode="json").items():
            record[name] = json.dumps(value) if name in _JSON_CONFIG_FIELDS else value
        record.update({
            "conversation_history": json.dumps([turn.to_json() for turn in self.history]),
            "message_count": self.message_count,
            "student_response_count": self.student_response_count,
            "off_topic_warnings": self.off_topic_warnings,
            "current_understanding_level": self.current_understanding_level,
            "is_blocked": self.is_blocked,
            "blocked_reason": self.blocked_reason,
            "blocked_at": self.blocked_at.isoformat() if self.blocked_at else None,
            "started_at": self.started_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "version": self.version,
        })
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Conversation":
        """Build a typed conversation from a storage row.

        Raises ``ValueError`` (including pydantic's ``ValidationError``) when
        the row cannot be interpreted.
        """
        config = {}
        for name in ConversationConfig.model_fields:
            value = record.get(name)
            if name in _JSON_CONFIG_FIELDS:
                value = _decode_json(value, None)
            if value is not None:
                config[name] = value

        history = _decode_json(record.get("conversation_history"), [])
        if not isinstance(history, list):
            raise ValueError("conversation_history must be a list of turns")

        started_at = record.get("started_at")
        if not started_at and history and isinstance(history[0], dict):
            started_at = history[0].get("timestamp")
        started_at = started_at or record.get("last_updated") or utcnow()
        return cls(
            conversation_id=str(record["id"]),
            session_id=str(record["session_id"]),
            student_id=str(record["student_id"]),
            config=ConversationConfig(**config),
            message_count=record.get("message_count") or len(history),
            student_response_count=record.get("student_response_count") or 0,
            off_topic_warnings=record.get("off_topic_warnings") or 0,
            current_understanding_level=record.get("current_understanding_level") or 0,
            is_blocked=bool(record.get("is_blocked")),
            blocked_reason=record.get("blocked_reason"),
            blocked_at=record.get("blocked_at"),
            history=history,
            started_at=started_at,
            last_updated=record.get("last_updated") or started_at,
            version=record.get("version") or 0,
        )


class StartConversationResult(BaseModel):
    conversation_id: str
    ai_message: str
    persona: str
    message_count: int


class OffTopicWarning(BaseModel):
    action: Literal["warning", "final_warning", "removed"]
    count: int
    topic: str


class ExchangeResult(BaseModel):
    conversation_id: str
    ai_message: str
    analysis: Analysis
    message_count: int
    remaining_responses: int
    off_topic_warning: Optional[OffTopicWarning] = None
    is_blocked: bool = False
    state: ConversationState


class VocabularyHint(BaseModel):
    word: str
    definition: str = ""


class Scaffolding(BaseModel):
    sentence_starters: List[str]
    vocabulary: List[VocabularyHint] = []
    hint: str


class Transcript(BaseModel):
    conversation_id: str
    session_id: str
    student_id: str
    student_name: str
    topic: str
    subject: str
    grade_level: str
    key_vocabulary: List[str]
    message_count: int
    current_understanding_level: int
    started_at: datetime
    last_updated: datetime
    duration_minutes: int
    is_blocked: bool
    off_topic_warnings: int
    state: ConversationState
    transcript: List[Turn]
