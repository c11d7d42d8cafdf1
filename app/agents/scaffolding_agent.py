import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from app.agents.comprehension_agent import extract_json_object
from app.llm.gateway import TextGenerationGateway
from app.models.conversation import ConversationConfig, Scaffolding, VocabularyHint
from app.prompts.scaffolding import get_scaffolding_prompt

logger = logging.getLogger(__name__)

SCAFFOLDING_MAX_TOKENS = 500
SENTENCE_STARTER_COUNT = 3
MAX_VOCABULARY_HINTS = 5


def default_scaffolding(config: ConversationConfig) -> Scaffolding:
    """Generic scaffolding used when the generated help can't be read."""
    return Scaffolding(
        sentence_starters=[
            f"{config.topic} is about...",
            f"One important part of {config.topic} is... because...",
            f"For example, ... shows how {config.topic} works because...",
        ],
        vocabulary=[VocabularyHint(word=term) for term in config.key_vocabulary[:MAX_VOCABULARY_HINTS]],
        hint=f"Think about what happens first in {config.topic}, then explain it one step at a time.",
    )


def _coerce_scaffolding(payload: Dict[str, Any], config: ConversationConfig) -> Scaffolding:
    fallback = default_scaffolding(config)

    raw_starters = payload.get("sentenceStarters") or payload.get("sentence_starters") or []
    if isinstance(raw_starters, str):
        raw_starters = [raw_starters]
    starters = [str(item).strip() for item in raw_starters if str(item).strip()]
    # Always exactly three starters, padded from the generic set.
    starters = (starters + fallback.sentence_starters[len(starters):])[:SENTENCE_STARTER_COUNT]

    vocabulary: List[VocabularyHint] = []
    for item in payload.get("vocabulary") or []:
        if isinstance(item, dict) and item.get("word"):
            vocabulary.append(VocabularyHint.model_validate(item))
        elif isinstance(item, str) and item.strip():
            vocabulary.append(VocabularyHint(word=item.strip()))

    hint = str(payload.get("hint") or "").strip() or fallback.hint
    return Scaffolding(
        sentence_starters=starters,
        vocabulary=vocabulary[:MAX_VOCABULARY_HINTS] or fallback.vocabulary,
        hint=hint,
    )


class ScaffoldingAgent:
    """Generates sentence starters, vocabulary and a hint for a struggling student."""

    def __init__(self, gateway: TextGenerationGateway, temperature: float = 0.7):
        self.gateway = gateway
        self.temperature = temperature
        self.prompt = get_scaffolding_prompt()

    async def generate(self, config: ConversationConfig, struggle_area: str) -> Scaffolding:
        """
        Generate scaffolding scoped to the conversation's topic.

        Gateway failures propagate as ``LLMServiceFailure``; unreadable output
        falls back to ``default_scaffolding``.
        """
        system, request = self.prompt.format_messages(
            grade_level=config.grade_level,
            topic=config.topic,
            subject=config.subject,
            struggle_area=struggle_area,
            key_vocabulary=", ".join(config.key_vocabulary) or "(none provided)",
        )
        text = await self.gateway.generate(
            system.content,
            [{"role": "student", "content": request.content}],
            max_tokens=SCAFFOLDING_MAX_TOKENS,
            temperature=self.temperature,
        )

        payload = extract_json_object(text)
        if payload is None:
            logger.warning("Scaffolding response had no JSON object, using default scaffolding")
            return default_scaffolding(config)
        try:
            return _coerce_scaffolding(payload, config)
        except (ValidationError, TypeError) as e:
            logger.warning("Scaffolding response was malformed, using default scaffolding: %s", e)
            return default_scaffolding(config)
