"""Shared fixtures: a scripted gateway in place of the model, an in-memory store,
and an analytics log under the test's tmp_path."""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("OPENAI_API_KEY", "test-key")

from app.engine.conversation_engine import ConversationEngine  # noqa: E402
from app.llm.gateway import TextGenerationGateway  # noqa: E402
from app.models.conversation import ConversationConfig  # noqa: E402
from app.prompts.analysis import ANALYSIS_SYSTEM_PROMPT  # noqa: E402
from app.prompts.scaffolding import SCAFFOLDING_SYSTEM_PROMPT  # noqa: E402
from app.storage.store import InMemoryConversationStore  # noqa: E402
from app.utils.logger import AnalyticsLogger  # noqa: E402

DEFAULT_PERSONA_REPLY = "Hmm, I think I get part of it. Can you tell me more?"


def rubric_json(
    content: int = 3,
    communication: int = 3,
    vocabulary: int = 3,
    engagement: int = 3,
    understanding: int = 75,
    terms_used: Optional[List[str]] = None,
) -> str:
    return json.dumps({
        "contentUnderstanding": {"level": content, "evidence": "explained the main idea", "gaps": [], "misconceptions": []},
        "communicationEffectiveness": {"level": communication, "evidence": "clear", "languageBarriers": None},
        "vocabularyUsage": {"level": vocabulary, "termsUsed": terms_used or [], "termsMissed": [], "usedCorrectly": True},
        "engagementLevel": {"level": engagement, "evidence": "answered every question"},
        "teacherAction": {"priority": "low", "type": "none", "suggestion": "keep going"},
        "legacyScore": {
            "understandingLevel": understanding,
            "conceptsDemonstrated": ["main idea"],
            "misconceptions": [],
            "vocabularyUsed": terms_used or [],
            "areasForImprovement": [],
            "teacherSuggestion": None,
        },
    })


class FakeGateway(TextGenerationGateway):
    """Scripted gateway that routes on the system instruction.

    Persona, analysis and scaffolding calls each have their own queue of
    replies; when a queue is empty a sensible default is returned. Setting
    one of the ``*_error`` attributes makes that kind of call raise it.
    """

    def __init__(self):
        self.persona_replies: List[str] = []
        self.analysis_replies: List[str] = []
        self.scaffolding_replies: List[str] = []
        self.persona_error: Optional[Exception] = None
        self.analysis_error: Optional[Exception] = None
        self.scaffolding_error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    @staticmethod
    def kind_of(system_instruction: str) -> str:
        if system_instruction.startswith(ANALYSIS_SYSTEM_PROMPT[:40]):
            return "analysis"
        if system_instruction.startswith(SCAFFOLDING_SYSTEM_PROMPT[:40]):
            return "scaffolding"
        return "persona"

    def calls_of(self, kind: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["kind"] == kind]

    async def generate(self, system_instruction, turns, max_tokens=None, temperature=None):
        # Yield so that concurrent callers interleave the way real I/O would.
        await asyncio.sleep(0)
        kind = self.kind_of(system_instruction)
        self.calls.append({
            "kind": kind,
            "instruction": system_instruction,
            "turns": list(turns),
            "max_tokens": max_tokens,
            "temperature": temperature,
        })

        if kind == "analysis":
            if self.analysis_error:
                raise self.analysis_error
            return self.analysis_replies.pop(0) if self.analysis_replies else rubric_json()
        if kind == "scaffolding":
            if self.scaffolding_error:
                raise self.scaffolding_error
            return self.scaffolding_replies.pop(0) if self.scaffolding_replies else "{}"
        if self.persona_error:
            raise self.persona_error
        return self.persona_replies.pop(0) if self.persona_replies else DEFAULT_PERSONA_REPLY


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def analytics(tmp_path):
    return AnalyticsLogger(str(tmp_path / "logs"))


@pytest.fixture
def engine(gateway, store, analytics):
    return ConversationEngine(gateway=gateway, store=store, analytics=analytics)


@pytest.fixture
def config():
    return ConversationConfig(
        topic="Photosynthesis",
        subject="Science",
        grade_level="7th grade",
        key_vocabulary=["chlorophyll", "glucose", "sunlight"],
        max_student_responses=5,
    )
