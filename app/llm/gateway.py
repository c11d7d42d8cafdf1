import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_openai import ChatOpenAI

from app.engine.errors import LLMServiceFailure

logger = logging.getLogger(__name__)


class TextGenerationGateway(ABC):
    """Generates text from a system instruction and a turn history.

    Turns are ``{"role": "ai" | "student", "content": str}`` dicts, oldest
    first. Implementations raise ``LLMServiceFailure`` for any failure,
    including timeouts and empty output.
    """

    @abstractmethod
    async def generate(
        self,
        system_instruction: str,
        turns: Sequence[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        ...


def to_chat_messages(turns: Sequence[Dict[str, str]]) -> List[BaseMessage]:
    return [
        AIMessage(content=turn["content"]) if turn.get("role") == "ai" else HumanMessage(content=turn["content"])
        for turn in turns
    ]


class OpenAIGateway(TextGenerationGateway):
    """Gateway backed by an OpenAI chat model through LangChain."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        timeout: float = 30.0,
    ):
        self.timeout = timeout
        self.llm = ChatOpenAI(
            model=model,
            temperature=temperature,
            api_key=api_key,
            max_retries=1
        )
        self.prompt = ChatPromptTemplate.from_messages([
            ("system", "{instruction}"),
            MessagesPlaceholder("history")
        ])

    async def generate(
        self,
        system_instruction: str,
        turns: Sequence[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        overrides = {}
        if max_tokens is not None:
            overrides["max_tokens"] = max_tokens
        if temperature is not None:
            overrides["temperature"] = temperature
        llm = self.llm.bind(**overrides) if overrides else self.llm
        chain = self.prompt | llm

        try:
            response = await asyncio.wait_for(
                chain.ainvoke({
                    "instruction": system_instruction,
                    "history": to_chat_messages(turns)
                }),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error("Text generation timed out after %.1fs", self.timeout)
            raise LLMServiceFailure(f"Text generation timed out after {self.timeout}s") from e
        except Exception as e:
            logger.error("Text generation failed: %s", e)
            raise LLMServiceFailure(f"Text generation failed: {e}") from e

        content = response.content if hasattr(response, "content") else response
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        text = str(content).strip()
        if not text:
            raise LLMServiceFailure("Text generation returned an empty response")
        return text
