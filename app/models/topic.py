from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.conversation import (
    ConversationConfig,
    LanguageComplexity,
    ResponseLength,
    as_utc,
    non_blank_entries,
    ordered_vocabulary,
    strip_text,
    utcnow,
)

# Settings only the teacher controls; a student's start request never sets these.
TEACHER_CONTROLLED_FIELDS = (
    "language_complexity",
    "response_length",
    "max_student_responses",
    "enforce_topic_focus",
    "concepts_covered",
    "expected_explanations",
    "critical_thinking_topics",
    "critical_thinking_depth",
    "document_context",
)

# Taken from the student's request when sent, otherwise from the topic.
STUDENT_DEFAULTED_FIELDS = ("subject", "grade_level", "key_vocabulary")


class TopicCreate(BaseModel):
    session_id: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    subject: str = "Science"
    grade_level: str = "7th grade"
    key_vocabulary: List[str] = []
    language_complexity: LanguageComplexity = LanguageComplexity.STANDARD
    response_length: ResponseLength = ResponseLength.MEDIUM
    max_student_responses: int = Field(default=10, ge=1)
    enforce_topic_focus: bool = True
    assigned_student_ids: List[str] = []  # Empty means every student in the session
    concepts_covered: List[str] = []
    expected_explanations: List[str] = []
    critical_thinking_topics: List[str] = []
    critical_thinking_depth: Literal["none", "light", "moderate"] = "none"
    document_context: Optional[str] = None

    @field_validator("topic", mode="before")
    @classmethod
    def strip_topic(cls, value):
        return strip_text(value)

    @field_validator("key_vocabulary", mode="before")
    @classmethod
    def vocabulary_as_ordered_set(cls, value):
        return ordered_vocabulary(value)

    @field_validator(
        "concepts_covered", "expected_explanations", "critical_thinking_topics", "assigned_student_ids",
        mode="before",
    )
    @classmethod
    def drop_blank_entries(cls, value):
        return non_blank_entries(value)


class TopicSettings(TopicCreate):
    """A topic a teacher has set up for a session."""
    topic_id: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def created_in_utc(cls, value):
        return as_utc(value)

    def available_to(self, student_id: str) -> bool:
        return not self.assigned_student_ids or student_id in self.assigned_student_ids

    def apply_to(self, config: ConversationConfig) -> ConversationConfig:
        """Overlay the teacher's settings on a student's requested config.

        The student keeps the topic name and their language profile. Subject,
        grade and vocabulary the request left out or sent empty come from
        the topic.
        """
        update = {name: getattr(self, name) for name in TEACHER_CONTROLLED_FIELDS}
        for name in STUDENT_DEFAULTED_FIELDS:
            if name not in config.model_fields_set or not getattr(config, name):
                update[name] = getattr(self, name)
        return ConversationConfig(**{**config.model_dump(), **update})


class TopicUpdate(BaseModel):
    """Partial update; only the fields sent are changed."""
    topic: Optional[str] = Field(default=None, min_length=1)
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    key_vocabulary: Optional[List[str]] = None
    language_complexity: Optional[LanguageComplexity] = None
    response_length: Optional[ResponseLength] = None
    max_student_responses: Optional[int] = Field(default=None, ge=1)
    enforce_topic_focus: Optional[bool] = None
    assigned_student_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None
    concepts_covered: Optional[List[str]] = None
    expected_explanations: Optional[List[str]] = None
    critical_thinking_topics: Optional[List[str]] = None
    critical_thinking_depth: Optional[Literal["none", "light", "moderate"]] = None
    document_context: Optional[str] = None

    @field_validator("topic", mode="before")
    @classmethod
    def strip_topic(cls, value):
        return strip_text(value)


class SessionTopics(BaseModel):
    session_id: str
    topics: List[TopicSettings]
    total_topics: int
