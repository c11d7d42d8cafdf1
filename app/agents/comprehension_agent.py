import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from app.llm.gateway import TextGenerationGateway
from app.models.analysis import Analysis, fallback_analysis, normalize_analysis
from app.prompts.analysis import get_analysis_prompt

logger = logging.getLogger(__name__)

ANALYSIS_MAX_TOKENS = 800


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first JSON object embedded in ``text``, or None.

    Tolerates commentary and code fences around the object.
    """
    if not isinstance(text, str):
        return None
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def parse_analysis(text: str) -> Analysis:
    """Turn raw model output into a rubric, falling back when it can't be read."""
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("No JSON object found in analysis response, using fallback")
        return fallback_analysis()
    return normalize_analysis(payload)


class ComprehensionAnalyzer:
    """
    Scores a single student explanation against the comprehension rubric.

    ``analyze`` never raises: a failed or timed-out call and any malformed
    response all produce the degraded fallback rubric, so a turn is never
    lost because scoring failed.
    """

    def __init__(
        self,
        gateway: TextGenerationGateway,
        temperature: float = 0.3,
        max_tokens: int = ANALYSIS_MAX_TOKENS,
    ):
        self.gateway = gateway
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.prompt = get_analysis_prompt()

    async def analyze(
        self,
        student_message: str,
        topic: str,
        key_vocabulary: Sequence[str],
        grade_level: Optional[str] = None,
    ) -> Analysis:
        system, request = self.prompt.format_messages(
            topic=topic,
            grade_level=grade_level or "Unknown",
            key_vocabulary=", ".join(key_vocabulary) or "(none provided)",
            student_message=student_message,
        )

        try:
            text = await self.gateway.generate(
                system.content,
                [{"role": "student", "content": request.content}],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            # Scoring is best-effort; the exchange goes ahead with the fallback.
            logger.warning("Comprehension analysis call failed, using fallback: %s", e)
            return fallback_analysis()

        analysis = parse_analysis(text)
        if analysis.degraded:
            logger.warning("Comprehension analysis degraded for topic %r", topic)
        return analysis


def vocabulary_used(analysis: Analysis) -> List[str]:
    """Terms the student used, preferring the rubric over the legacy list."""
    return analysis.vocabulary_usage.terms_used or analysis.legacy_score.vocabulary_used
