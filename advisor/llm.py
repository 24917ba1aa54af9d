from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from advisor.core.errors import UpstreamFailure
from advisor.core.models import SystemInstruction, Turn
from config.settings import Settings


logger = logging.getLogger(__name__)


class LLMClient(Protocol):
    async def generate(self, history: List[Turn], system_instruction: SystemInstruction) -> str: ...


def build_llm(settings: Settings) -> ChatGoogleGenerativeAI:
    if not settings.google_api_key:
        raise RuntimeError("API_KEY not set. Please configure it in environment or .env")

    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        google_api_key=settings.google_api_key,
        temperature=settings.temperature,
        top_p=settings.top_p,
    )


def _turn_content(turn: Turn) -> Any:
    texts = turn.texts()
    if len(texts) == 1:
        return texts[0]
    return [{"type": "text", "text": text} for text in texts]


def to_lc_messages(history: List[Turn], system_instruction: SystemInstruction) -> List[BaseMessage]:
    messages: List[BaseMessage] = [SystemMessage(content=system_instruction.as_text())]
    for turn in history or []:
        if not turn.texts():
            logger.warning("Skipping %s turn with no text", turn.role)
            continue
        if turn.role == "user":
            messages.append(HumanMessage(content=_turn_content(turn)))
        else:
            messages.append(AIMessage(content=_turn_content(turn)))
    return messages


def extract_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        chunks = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                chunks.append(block.get("text") or "")
        return "".join(chunks).strip()
    return ""


class GeminiClient:
    """Stateless Gemini chat call. Every request carries the full history."""

    def __init__(self, settings: Settings, llm: Optional[Any] = None) -> None:
        self._llm = llm if llm is not None else build_llm(settings)
        self._timeout = settings.llm_timeout

    async def generate(self, history: List[Turn], system_instruction: SystemInstruction) -> str:
        messages = to_lc_messages(history, system_instruction)
        try:
            result = await asyncio.wait_for(self._llm.ainvoke(messages), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamFailure(f"LLM call timed out after {self._timeout:g}s") from exc
        except Exception as exc:
            raise UpstreamFailure(f"LLM call failed: {exc.__class__.__name__}") from exc

        text = extract_text(result)
        if not text:
            raise UpstreamFailure("LLM returned an empty response")
        return text
