"""Anthropic-backed chat model for knowledge-base answers.

Implements the ChatModel protocol: ``generate`` for the non-streaming path and
``stream_generate`` which yields source events for every retrieved candidate,
then text chunks as they arrive, then one finish event.
"""

from collections.abc import AsyncIterator

import anthropic

from app.core.config import get_settings
from app.core.errors import ModelCallError
from app.core.interfaces import ModelChunk, ModelEvent, ModelFinish, ModelResponse, ModelSource
from app.core.llm import get_anthropic_client
from app.core.logging import get_logger
from app.core.retrieval import RetrievalContext
from app.core.retrieval_format import format_retrieval_for_context
from app.core.schemas_chat import Message, SourceCitation, Usage

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are an AI assistant with access to your organization's video knowledge base.

Your capabilities:
- Answer questions based on video transcripts and decisions
- Cite sources when referencing specific content
- Provide relevant context from past discussions

Guidelines:
- Use the provided context to answer questions accurately
- Cite your sources by mentioning which videos or decisions you found information from
- If the context doesn't contain relevant information, say so honestly
- Be concise but thorough in your responses
- When referencing timestamps, format them as MM:SS or HH:MM:SS"""


def build_system_prompt(messages: list[Message], context: RetrievalContext, max_context_tokens: int = 3000) -> str:
    """Conversation system prompt (or the default) followed by the retrieved context."""
    custom = "\n\n".join(m.content for m in messages if m.role == "system" and m.content.strip())
    prompt = custom or DEFAULT_SYSTEM_PROMPT
    context_block = format_retrieval_for_context(context, max_tokens=max_context_tokens)
    if context_block:
        prompt = f"{prompt}\n\n{context_block}"
    return prompt


def to_anthropic_messages(messages: list[Message]) -> list[dict[str, str]]:
    """Drop system/empty messages and merge consecutive turns of the same role."""
    result: list[dict[str, str]] = []
    for m in messages:
        if m.role == "system" or not m.content.strip():
            continue
        if result and result[-1]["role"] == m.role:
            result[-1]["content"] += "\n\n" + m.content
        else:
            result.append({"role": m.role, "content": m.content})

    # The API requires the first turn to come from the user
    while result and result[0]["role"] != "user":
        result.pop(0)
    return result


def context_sources(context: RetrievalContext) -> list[SourceCitation]:
    return [c.to_citation() for c in context.candidates]


def _usage(final_message) -> Usage:
    usage = getattr(final_message, "usage", None)
    prompt_tokens = getattr(usage, "input_tokens", 0) or 0
    completion_tokens = getattr(usage, "output_tokens", 0) or 0
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


class AnthropicChatModel:
    """ChatModel using the Anthropic Messages API."""

    def __init__(self, model: str | None = None, max_tokens: int | None = None):
        settings = get_settings()
        self.model = model or settings.CHAT_MODEL
        self.max_tokens = max_tokens or settings.CHAT_RESPONSE_BUFFER

    def _client(self) -> anthropic.AsyncAnthropic:
        client = get_anthropic_client()
        if client is None:
            raise ModelCallError("No Anthropic API key configured")
        return client

    async def generate(self, messages: list[Message], context: RetrievalContext) -> ModelResponse:
        client = self._client()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=build_system_prompt(messages, context),
                messages=to_anthropic_messages(messages),
            )
        except anthropic.APIError as e:
            raise ModelCallError(f"Chat model call failed: {e}") from e

        text = "".join(block.text for block in response.content if block.type == "text")
        return ModelResponse(content=text, sources=context_sources(context), usage=_usage(response))

    async def stream_generate(self, messages: list[Message], context: RetrievalContext) -> AsyncIterator[ModelEvent]:
        sources = context_sources(context)
        for source in sources:
            yield ModelSource(source=source)

        client = self._client()
        content = ""
        try:
            async with client.messages.stream(
                model=self.model,
                max_tokens=self.max_tokens,
                system=build_system_prompt(messages, context),
                messages=to_anthropic_messages(messages),
            ) as stream:
                async for event in stream:
                    if event.type == "content_block_delta" and hasattr(event.delta, "text"):
                        content += event.delta.text
                        yield ModelChunk(content=event.delta.text)

                final_message = await stream.get_final_message()
        except anthropic.APIError as e:
            raise ModelCallError(f"Chat model stream failed: {e}") from e

        usage = _usage(final_message)
        logger.info(
            f"Chat model: {usage.prompt_tokens} in / {usage.completion_tokens} out "
            f"({self.model}, {len(sources)} sources)"
        )
        yield ModelFinish(content=content, sources=sources, usage=usage)
