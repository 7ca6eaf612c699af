"""
Language Model Capability Provider

Thin async wrapper over an OpenAI-compatible endpoint (Gemini's OpenAI
compatibility layer by default) exposing the two capabilities the pipeline
needs:

    generate(messages, model, system_instruction, tools, tool_choice)
        -> GenerationResult(text, total_tokens, tool_calls, assistant_message)
    embed(text) -> EmbeddingResult(vector, total_tokens)

Provider failures are wrapped in ProviderError / EmbeddingError so callers
never see SDK exception types.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from .config import ModelSettings
from .errors import EmbeddingError, ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """A structured request from the model to run a declared tool."""
    id: str
    name: str
    arguments: dict


@dataclass
class GenerationResult:
    """One model turn."""
    text: str
    total_tokens: Optional[int] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    # The turn in chat-message form, ready to append to a working history
    assistant_message: dict = field(default_factory=dict)


@dataclass
class EmbeddingResult:
    vector: list[float]
    total_tokens: Optional[int] = None


class LLMClient:
    """
    Async capability provider for generation and embeddings.

    Safe for concurrent use: each call is an independent request on a shared
    AsyncOpenAI client.
    """

    def __init__(self, settings: Optional[ModelSettings] = None, client=None):
        """
        Args:
            settings: Model names and endpoint. Defaults are used if omitted.
            client: Pre-built AsyncOpenAI-compatible client (tests inject fakes).
        """
        self.settings = settings or ModelSettings()
        self._client = client

    @property
    def client(self):
        if self._client is None:
            api_key = os.getenv(self.settings.api_key_env)
            if not api_key:
                raise RuntimeError(
                    f"{self.settings.api_key_env} environment variable is not set. "
                    "Set it in .env or as an environment variable."
                )
            self._client = AsyncOpenAI(
                base_url=self.settings.base_url,
                api_key=api_key,
                timeout=self.settings.timeout,
            )
        return self._client

    async def generate(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        tools: Optional[list[dict]] = None,
        tool_choice: str = "auto",
        temperature: Optional[float] = None,
    ) -> GenerationResult:
        """
        Run one chat completion.

        Args:
            messages: Ordered chat messages (role/content, plus tool turns)
            model: Model identifier, defaults to the flash tier
            system_instruction: Prepended as a system message
            tools: Tool declarations in function-calling format
            tool_choice: Tool calling mode when tools are declared

        Returns:
            GenerationResult

        Raises:
            ProviderError: the call failed or returned no choices
        """
        model = model or self.settings.flash_model
        payload = list(messages)
        if system_instruction:
            payload.insert(0, {"role": "system", "content": system_instruction})

        kwargs = {"model": model, "messages": payload}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = tool_choice
        if temperature is not None:
            kwargs["temperature"] = temperature

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.error(f"Generation failed ({model}): {type(e).__name__}: {e}")
            raise ProviderError(f"Generation failed: {type(e).__name__}: {e}") from e

        if not response.choices:
            raise ProviderError(f"Generation returned no choices ({model})")

        message = response.choices[0].message
        usage = getattr(response, "usage", None)
        total_tokens = usage.total_tokens if usage is not None else None

        tool_calls = []
        raw_calls = []
        for tc in message.tool_calls or []:
            try:
                arguments = json.loads(tc.function.arguments or "{}")
            except json.JSONDecodeError as e:
                raise ProviderError(
                    f"Malformed arguments for tool {tc.function.name}: {e}"
                ) from e
            tool_calls.append(ToolCall(id=tc.id, name=tc.function.name, arguments=arguments))
            raw_calls.append({
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.function.name, "arguments": tc.function.arguments or "{}"},
            })

        assistant_message = {"role": "assistant", "content": message.content}
        if raw_calls:
            assistant_message["tool_calls"] = raw_calls

        return GenerationResult(
            text=message.content or "",
            total_tokens=total_tokens,
            tool_calls=tool_calls,
            assistant_message=assistant_message,
        )

    async def embed(self, text: str, model: Optional[str] = None) -> EmbeddingResult:
        """
        Embed a single text.

        Raises:
            EmbeddingError: no vector returned, or wrong dimensionality
            ProviderError: the call itself failed
        """
        model = model or self.settings.embedding_model
        try:
            response = await self.client.embeddings.create(model=model, input=text)
        except OpenAIError as e:
            logger.error(f"Embedding failed ({model}): {type(e).__name__}: {e}")
            raise ProviderError(f"Embedding failed: {type(e).__name__}: {e}") from e

        if not response.data or not response.data[0].embedding:
            raise EmbeddingError("Embedding provider returned no vectors")

        vector = list(response.data[0].embedding)
        expected = self.settings.embedding_dimensions
        if expected and len(vector) != expected:
            raise EmbeddingError(f"Expected {expected}-d embedding, got {len(vector)}")

        usage = getattr(response, "usage", None)
        return EmbeddingResult(
            vector=vector,
            total_tokens=usage.total_tokens if usage is not None else None,
        )
