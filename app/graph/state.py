from typing import TypedDict, Optional
from app.models.analysis import Analysis
from app.models.conversation import Conversation, ExchangeMetadata


class ExchangeState(TypedDict, total=False):
    """State for one student turn flowing through the exchange graph."""
    conversation: Conversation  # As loaded, before this turn
    student_message: str
    metadata: ExchangeMetadata
    persona_name: str
    remaining_responses: int  # After this turn is counted
    instruction: Optional[str]  # Composed persona instruction
    reply: Optional[str]  # Generated persona reply, marker stripped
    off_topic_flagged: bool
    off_topic_warnings: int
    off_topic_action: Optional[str]  # warning, final_warning or removed
    blocked: bool
    analysis: Optional[Analysis]
