"""Comprehension rubric attached to every student turn.

The rubric scores four dimensions on a 1-4 scale and carries the older
single 0-100 ``legacyScore`` so that consumers written against the legacy
shape keep working. The JSON form is camelCase, which is what the model is
asked to produce and what stored conversation histories contain.

``normalize_analysis`` is the single place where a raw payload (new rubric,
legacy score, or garbage) becomes an ``Analysis``. It never raises.
"""

import logging
import math
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

Priority = Literal["urgent", "high", "medium", "low", "monitor"]
ActionType = Literal["content_gap", "language_support", "vocabulary_support", "engagement", "none"]

PRIORITIES = ("urgent", "high", "medium", "low", "monitor")
ACTION_TYPES = ("content_gap", "language_support", "vocabulary_support", "engagement", "none")

MIN_LEVEL = 1
MAX_LEVEL = 4
FALLBACK_LEVEL = 2
FALLBACK_UNDERSTANDING = 50
FALLBACK_SUGGESTION = "manual review needed"


def _coerce_int(value: Any, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"expected a number, got {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"expected a finite number, got {value!r}")
    return max(low, min(high, int(round(number))))


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    raise ValueError(f"expected a list of strings, got {value!r}")


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


class RubricModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class LevelledDimension(RubricModel):
    level: int
    evidence: str = ""

    @field_validator("level", mode="before")
    @classmethod
    def clamp_level(cls, value):
        return _coerce_int(value, MIN_LEVEL, MAX_LEVEL)

    @field_validator("evidence", mode="before")
    @classmethod
    def evidence_text(cls, value):
        return _as_text(value)


class ContentUnderstanding(LevelledDimension):
    gaps: List[str] = []
    misconceptions: List[str] = []

    @field_validator("gaps", "misconceptions", mode="before")
    @classmethod
    def string_lists(cls, value):
        return _as_list(value)


class CommunicationEffectiveness(LevelledDimension):
    language_barriers: Optional[str] = None

    @field_validator("language_barriers", mode="before")
    @classmethod
    def barriers_text(cls, value):
        if value is None:
            return None
        if isinstance(value, (list, tuple)):
            value = "; ".join(str(item) for item in value if item)
        return str(value) or None


class VocabularyUsage(RubricModel):
    level: int
    terms_used: List[str] = []
    terms_missed: List[str] = []
    used_correctly: bool = False

    @field_validator("level", mode="before")
    @classmethod
    def clamp_level(cls, value):
        return _coerce_int(value, MIN_LEVEL, MAX_LEVEL)

    @field_validator("terms_used", "terms_missed", mode="before")
    @classmethod
    def string_lists(cls, value):
        return _as_list(value)


class EngagementLevel(LevelledDimension):
    pass


class TeacherAction(RubricModel):
    priority: Priority = "medium"
    type: ActionType = "none"
    suggestion: str = ""

    @field_validator("priority", mode="before")
    @classmethod
    def known_priority(cls, value):
        value = _as_text(value).strip().lower()
        return value if value in PRIORITIES else "medium"

    @field_validator("type", mode="before")
    @classmethod
    def known_type(cls, value):
        value = _as_text(value).strip().lower()
        return value if value in ACTION_TYPES else "none"

    @field_validator("suggestion", mode="before")
    @classmethod
    def suggestion_text(cls, value):
        return _as_text(value)


class LegacyScore(RubricModel):
    understanding_level: int
    concepts_demonstrated: List[str] = []
    misconceptions: List[str] = []
    vocabulary_used: List[str] = []
    areas_for_improvement: List[str] = []
    teacher_suggestion: Optional[str] = None

    @field_validator("understanding_level", mode="before")
    @classmethod
    def clamp_score(cls, value):
        return _coerce_int(value, 0, 100)

    @field_validator(
        "concepts_demonstrated", "misconceptions", "vocabulary_used", "areas_for_improvement",
        mode="before",
    )
    @classmethod
    def string_lists(cls, value):
        return _as_list(value)


class Analysis(RubricModel):
    content_understanding: ContentUnderstanding
    communication_effectiveness: CommunicationEffectiveness
    vocabulary_usage: VocabularyUsage
    engagement_level: EngagementLevel
    teacher_action: TeacherAction
    legacy_score: LegacyScore
    # Set when the rubric could not be produced and this is the fallback.
    degraded: bool = False

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def fallback_analysis() -> Analysis:
    """Neutral rubric used when the model output cannot be interpreted."""
    return Analysis(
        content_understanding=ContentUnderstanding(level=FALLBACK_LEVEL),
        communication_effectiveness=CommunicationEffectiveness(level=FALLBACK_LEVEL),
        vocabulary_usage=VocabularyUsage(level=FALLBACK_LEVEL),
        engagement_level=EngagementLevel(level=FALLBACK_LEVEL),
        teacher_action=TeacherAction(
            priority="medium", type="content_gap", suggestion=FALLBACK_SUGGESTION
        ),
        legacy_score=LegacyScore(understanding_level=FALLBACK_UNDERSTANDING),
        degraded=True,
    )


def level_from_score(understanding_level: int) -> int:
    """Map a 0-100 score onto the 1-4 rubric scale."""
    return max(MIN_LEVEL, min(MAX_LEVEL, math.ceil(understanding_level / 25)))


def from_legacy_score(legacy: LegacyScore) -> Analysis:
    """Build a rubric from a single-score analysis, keeping the score untouched."""
    level = level_from_score(legacy.understanding_level)
    if level >= 3:
        priority = "low"
    elif level == 2:
        priority = "medium"
    else:
        priority = "high"

    return Analysis(
        content_understanding=ContentUnderstanding(
            level=level,
            evidence=f"Converted from legacy understanding score of {legacy.understanding_level}",
            gaps=legacy.areas_for_improvement,
            misconceptions=legacy.misconceptions,
        ),
        communication_effectiveness=CommunicationEffectiveness(
            level=3, evidence="Assumed adequate (not assessed by legacy analysis)"
        ),
        vocabulary_usage=VocabularyUsage(
            level=3 if legacy.vocabulary_used else 2,
            terms_used=legacy.vocabulary_used,
            used_correctly=bool(legacy.vocabulary_used),
        ),
        engagement_level=EngagementLevel(
            level=3, evidence="Assumed engaged (not assessed by legacy analysis)"
        ),
        teacher_action=TeacherAction(
            priority=priority,
            type="none" if level >= 3 else "content_gap",
            suggestion=legacy.teacher_suggestion or "",
        ),
        legacy_score=legacy,
    )


def _field(raw: Dict[str, Any], name: str) -> Any:
    if name in raw:
        return raw[name]
    return raw.get(to_camel(name))


def _has_field(raw: Dict[str, Any], name: str) -> bool:
    return name in raw or to_camel(name) in raw


def normalize_analysis(raw: Any) -> Analysis:
    """Interpret any analysis payload as a full rubric.

    Multi-dimensional payloads are used as they are (a missing legacy score is
    derived from the content level). Legacy single-score payloads are
    converted. Everything else yields ``fallback_analysis()``.
    """
    if isinstance(raw, Analysis):
        return raw
    if not isinstance(raw, dict):
        logger.warning("Analysis payload is not an object (%s), using fallback", type(raw).__name__)
        return fallback_analysis()

    try:
        if _has_field(raw, "content_understanding"):
            if not _has_field(raw, "legacy_score"):
                content = ContentUnderstanding.model_validate(_field(raw, "content_understanding"))
                raw = {
                    **raw,
                    "legacyScore": {
                        "understandingLevel": content.level * 25,
                        "misconceptions": content.misconceptions,
                        "areasForImprovement": content.gaps,
                    },
                }
            return Analysis.model_validate(raw)
        if _has_field(raw, "understanding_level"):
            return from_legacy_score(LegacyScore.model_validate(raw))
        if _has_field(raw, "legacy_score"):
            return from_legacy_score(LegacyScore.model_validate(_field(raw, "legacy_score")))
    except ValidationError as e:
        logger.warning("Analysis payload failed validation (%d errors), using fallback", e.error_count())
        return fallback_analysis()

    logger.warning("Analysis payload has an unrecognized shape, using fallback")
    return fallback_analysis()
