"""Composition root: builds the engine from settings for the HTTP layer.

Tests replace these with ``app.dependency_overrides``.
"""

from functools import lru_cache

from app.agents.comprehension_agent import ComprehensionAnalyzer
from app.agents.scaffolding_agent import ScaffoldingAgent
from app.config import settings
from app.engine.conversation_engine import ConversationEngine
from app.engine.dashboard import DashboardAggregator
from app.engine.topics import TopicRegistry
from app.llm.gateway import OpenAIGateway
from app.storage.store import ConversationStore, InMemoryConversationStore
from app.utils.logger import AnalyticsLogger


@lru_cache()
def get_store() -> ConversationStore:
    return InMemoryConversationStore()


@lru_cache()
def get_engine() -> ConversationEngine:
    gateway = OpenAIGateway(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        temperature=settings.persona_temperature,
        timeout=settings.generation_timeout_seconds,
    )
    return ConversationEngine(
        gateway=gateway,
        store=get_store(),
        analytics=AnalyticsLogger(settings.log_dir),
        analyzer=ComprehensionAnalyzer(gateway, temperature=settings.analysis_temperature),
        scaffolder=ScaffoldingAgent(gateway, temperature=settings.persona_temperature),
        persona_name=settings.persona_name,
        persona_temperature=settings.persona_temperature,
    )


@lru_cache()
def get_dashboard() -> DashboardAggregator:
    return DashboardAggregator(get_store())


@lru_cache()
def get_topics() -> TopicRegistry:
    return TopicRegistry(get_store())
