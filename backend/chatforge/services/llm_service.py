"""Chat completions for tenant bots, with a deterministic fallback provider."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional

from openai import AsyncOpenAI

from chatforge.config import settings

logger = logging.getLogger(__name__)

TONE_INSTRUCTIONS = {
    "Friendly": "You are warm, approachable and helpful.",
    "Professional": "You are polite, knowledgeable and efficient.",
    "Casual": "You are relaxed and conversational.",
    "Formal": "You are respectful, precise and businesslike.",
    "Playful": "You are upbeat and enthusiastic.",
}

CORE_GUIDELINES = (
    "Only answer from the business information provided. "
    "If you do not know something, say so and offer to connect the visitor with the team. "
    "Keep answers to a few sentences."
)

FALLBACK_REPLY = (
    "Thanks for your message! I can't reach our assistant right now. "
    "Please leave your email and the team will get back to you."
)


@dataclass
class LLMResponse:
    """Unified language model response."""

    content: str
    usage: Dict[str, int]
    model: str
    provider: str
    latency_ms: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


class BaseProvider:
    """Common interface all providers implement."""

    name: str = "unknown"

    async def generate_response(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        raise NotImplementedError

    async def generate_stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncGenerator[str, None]:
        raise NotImplementedError


class OpenAIProvider(BaseProvider):
    """Async OpenAI chat completions wrapper."""

    name = "openai"

    def __init__(self, api_key: str) -> None:
        self.client = AsyncOpenAI(api_key=api_key)

    async def generate_response(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        choice = response.choices[0]
        usage = {
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        }
        return LLMResponse(
            content=choice.message.content or "",
            usage=usage,
            model=response.model,
            provider=self.name,
            metadata={"response_id": response.id, "finish_reason": choice.finish_reason or "stop"},
        )

    async def generate_stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncGenerator[str, None]:
        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
        )

        async def iterator() -> AsyncGenerator[str, None]:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta

        return iterator()


class FallbackProvider(BaseProvider):
    """Deterministic fallback when no provider is configured."""

    name = "fallback"

    async def generate_response(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        return LLMResponse(
            content=FALLBACK_REPLY,
            usage={"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
            model="fallback",
            provider=self.name,
        )

    async def generate_stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncGenerator[str, None]:
        async def iterator() -> AsyncGenerator[str, None]:
            yield FALLBACK_REPLY

        return iterator()


class LLMService:
    """Builds the bot prompt and asks the configured provider for a reply."""

    def __init__(self, provider: Optional[BaseProvider] = None) -> None:
        self.model = settings.llm_model
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens
        self.fallback = FallbackProvider()
        self.provider = provider or self._initialize_provider()

    def _initialize_provider(self) -> BaseProvider:
        if settings.openai_api_key:
            logger.info("OpenAI provider initialized")
            return OpenAIProvider(settings.openai_api_key)
        logger.warning("No external LLM provider configured; using fallback")
        return self.fallback

    @staticmethod
    def build_system_prompt(
        *,
        business_name: str,
        business_context: str,
        tone: str = "Friendly",
        greeting: Optional[str] = None,
        restrictions: Optional[str] = None,
        detected_intent: Optional[List[str]] = None,
    ) -> str:
        sections = [
            f"You are the assistant for {business_name}.",
            TONE_INSTRUCTIONS.get(tone, TONE_INSTRUCTIONS["Friendly"]),
        ]
        if greeting:
            sections.append(f'When the visitor says hello, reply with: "{greeting}"')
        if business_context:
            sections.append(f"BUSINESS INFORMATION:\n{business_context}")
        else:
            sections.append("No business information is available right now; apologise and offer to take contact details.")
        if restrictions:
            sections.append(f"RESTRICTIONS:\n{restrictions}")
        sections.append(CORE_GUIDELINES)
        if detected_intent:
            sections.append(
                "The visitor is interested in: "
                + ", ".join(detected_intent)
                + ". Answer first, then ask once whether the team may reach out by email."
            )
        return "\n\n".join(sections)

    @staticmethod
    def build_messages(system_prompt: str, history: List[Dict[str, str]], user_message: str) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        messages.extend(history)
        if not history or history[-1] != {"role": "user", "content": user_message}:
            messages.append({"role": "user", "content": user_message})
        return messages

    async def generate_reply(
        self,
        *,
        system_prompt: str,
        history: List[Dict[str, str]],
        user_message: str,
    ) -> LLMResponse:
        messages = self.build_messages(system_prompt, history, user_message)

        started = time.perf_counter()
        try:
            response = await self.provider.generate_response(
                messages,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            logger.error("LLM provider failed; using fallback reply", extra={"error": str(exc)})
            response = await self.fallback.generate_response(
                messages,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        response.latency_ms = int((time.perf_counter() - started) * 1000)
        return response

    async def stream_reply(
        self,
        *,
        system_prompt: str,
        history: List[Dict[str, str]],
        user_message: str,
    ) -> AsyncGenerator[str, None]:
        """Yield reply text as the provider produces it.

        A provider that cannot open a stream is replaced by the fallback reply.
        Failures after the first chunk end the stream early with what was sent.
        """
        messages = self.build_messages(system_prompt, history, user_message)
        options = {"model": self.model, "temperature": self.temperature, "max_tokens": self.max_tokens}
        try:
            stream = await self.provider.generate_stream(messages, **options)
        except Exception as exc:
            logger.error("LLM stream could not start; using fallback reply", extra={"error": str(exc)})
            stream = await self.fallback.generate_stream(messages, **options)

        try:
            async for chunk in stream:
                yield chunk
        except Exception as exc:
            logger.error("LLM stream interrupted", extra={"error": str(exc)})

    def get_available_providers(self) -> List[str]:
        return [self.provider.name]
