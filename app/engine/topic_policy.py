"""Off-topic escalation: three strikes and the student is removed."""

from typing import Optional, Tuple

OFF_TOPIC_MARKER = "[OFF_TOPIC]"
MAX_OFF_TOPIC_WARNINGS = 3
BLOCKED_REASON = "Removed for repeatedly discussing off-topic content"

OFF_TOPIC_ACTIONS = {
    1: "warning",
    2: "final_warning",
    3: "removed",
}


def strip_off_topic_marker(reply: str) -> Tuple[str, bool]:
    """Remove the marker if the reply starts with it.

    The marker only counts as the very first thing in the reply; anywhere
    else it is left in place and the reply is not flagged.
    """
    reply = reply.strip()
    if reply.startswith(OFF_TOPIC_MARKER):
        return reply[len(OFF_TOPIC_MARKER):].strip(), True
    return reply, False


def escalate(warnings: int) -> Tuple[int, str, bool]:
    """Return (new warning count, action, blocked) for one more offense."""
    count = min(warnings + 1, MAX_OFF_TOPIC_WARNINGS)
    return count, OFF_TOPIC_ACTIONS[count], count >= MAX_OFF_TOPIC_WARNINGS


def redirect_message(topic: str) -> str:
    return f"That's interesting, but I really need help understanding {topic}. Can you explain that to me?"


def removal_notice(reply: Optional[str], topic: str) -> str:
    notice = (
        "We've gotten off track too many times, so I have to end our conversation about "
        f"{topic} here. Please talk to your teacher if you'd like to continue."
    )
    return f"{reply}\n\n{notice}" if reply else notice
