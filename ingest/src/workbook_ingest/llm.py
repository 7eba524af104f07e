"""Text-generation adapter around LangChain chat models."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol, TypeVar

from langchain_core.messages import BaseMessage, BaseMessageChunk, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

ModelT = TypeVar("ModelT", bound=BaseModel)


class TextGenerator(Protocol):
    """Black-box text generation: prompt in, text or structured object out."""

    async def generate_text(self, prompt: str, *, system: str | None = None) -> str: ...

    async def generate_structured(self, prompt: str, schema: type[ModelT]) -> ModelT: ...

    def stream_text(self, prompt: str) -> AsyncIterator[str]: ...


class LangChainTextGenerator:
    """``TextGenerator`` backed by a LangChain chat model."""

    def __init__(self, llm: ChatOpenAI) -> None:
        self._llm = llm

    async def generate_text(self, prompt: str, *, system: str | None = None) -> str:
        messages: list[BaseMessage] = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))
        response = await self._llm.ainvoke(messages)
        return message_content_to_text(response).strip()

    async def generate_structured(self, prompt: str, schema: type[ModelT]) -> ModelT:
        runnable = self._llm.with_structured_output(schema)
        result = await runnable.ainvoke([HumanMessage(content=prompt)])
        if isinstance(result, schema):
            return result
        return schema.model_validate(result)

    async def stream_text(self, prompt: str) -> AsyncIterator[str]:
        async for chunk in self._llm.astream([HumanMessage(content=prompt)]):
            text = message_content_to_text(chunk)
            if text:
                yield text


def create_text_generator(
    *,
    model: str,
    temperature: float,
    api_key: str | None,
    api_base: str | None = None,
    max_tokens: int | None = None,
) -> LangChainTextGenerator:
    """Build a generator for one pipeline step."""

    if not api_key:
        raise RuntimeError("OpenAI API key required for text generation.")

    kwargs: dict[str, Any] = {}
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens

    llm = ChatOpenAI(
        model=model,
        temperature=temperature,
        openai_api_key=api_key,
        openai_api_base=api_base,
        **kwargs,
    )
    return LangChainTextGenerator(llm)


def message_content_to_text(message: BaseMessage | BaseMessageChunk) -> str:
    """Coerce message content into a plain string."""

    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence from model output."""

    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("```", 2)[1] if stripped.count("```") >= 2 else stripped.lstrip("`")
        first_line, _, remainder = stripped.partition("\n")
        if first_line.strip().lower() in {"sql", "json", "duckdb"}:
            stripped = remainder
    return stripped.strip()
