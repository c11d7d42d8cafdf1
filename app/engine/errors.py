"""Errors raised by the reverse tutoring engine.

Each error carries an HTTP status and a short message that is safe to show
to a student or teacher. Infrastructure failures share a generic
retry-suggesting message; the underlying cause stays in ``str(error)``.
"""

from typing import Any, Dict, Optional


class ReverseTutoringError(Exception):
    status_code = 500
    code = "reverse_tutoring_error"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, **extra: Any):
        super().__init__(message or self.user_message)
        self.extra = extra

    def to_detail(self) -> Dict[str, Any]:
        return {"message": self.user_message, "error": self.code, **self.extra}


class InvalidStudentMessage(ReverseTutoringError):
    status_code = 400
    code = "invalid_student_message"
    user_message = "Student message is required."


class ConversationNotFound(ReverseTutoringError):
    status_code = 404
    code = "conversation_not_found"
    user_message = "Conversation not found."


class ConversationAlreadyExists(ReverseTutoringError):
    status_code = 409
    code = "conversation_exists"
    user_message = "Conversation already exists for this topic."


class ConversationBlocked(ReverseTutoringError):
    status_code = 403
    code = "conversation_blocked"
    user_message = (
        "You have been removed from this conversation for off-topic discussion. "
        "Please ask your teacher for permission to rejoin."
    )


class ResponseLimitExceeded(ReverseTutoringError):
    status_code = 409
    code = "response_limit_exceeded"
    user_message = "Maximum responses reached for this conversation."


class MessageLimitExceeded(ReverseTutoringError):
    status_code = 409
    code = "message_limit_exceeded"
    user_message = "This conversation has reached its message limit."


class LLMServiceFailure(ReverseTutoringError):
    status_code = 502
    code = "llm_service_failure"
    user_message = "Alex is having trouble responding right now. Please try again in a moment."


class PersistenceFailure(ReverseTutoringError):
    status_code = 503
    code = "persistence_failure"
    user_message = "We couldn't save the conversation. Please try again in a moment."


class ConcurrentModification(PersistenceFailure):
    code = "concurrent_modification"


class TopicNotFound(ReverseTutoringError):
    status_code = 404
    code = "topic_not_found"
    user_message = "Topic not found."


class TopicAlreadyExists(ReverseTutoringError):
    status_code = 409
    code = "topic_exists"
    user_message = "Topic already exists for this session."
