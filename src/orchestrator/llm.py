"""LLM Integration Layer using LlamaIndex.

Supports the decision model through LlamaIndex-compatible packages:
- OpenAI
- Azure OpenAI
- A scripted provider for tests and offline runs

The LLM has no direct access to the governance backend; it only sees
tool definitions and the results the agent loop feeds back.
"""

from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Optional, Union

from openai import APIConnectionError, APITimeoutError, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import LLMSettings
from shared.logging import get_logger
from shared.models import ConversationMessage, LLMResponse

logger = get_logger(__name__)

# Failures worth another attempt; anything else propagates at once
TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    LLM Integration Rules:
    - LLM receives only the registered tools and the conversation
    - LLM outputs either structured tool calls or a final answer
    - LLM must not access APIs directly
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        tool_choice: Optional[str] = None
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation history
            tools: Available tools in OpenAI function format
            temperature: Sampling temperature
            tool_choice: Tool selection mode (e.g. "auto")

        Returns:
            LLM response with content and/or tool calls
        """
        pass


class LlamaIndexProvider(LLMProvider):
    """Shared LlamaIndex chat plumbing for OpenAI-compatible models."""

    def __init__(self, settings: LLMSettings) -> None:
        self.settings = settings
        self._llm = None

    @abstractmethod
    def _build_llm(self):
        """Create the underlying LlamaIndex LLM."""
        pass

    def _get_llm(self):
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    def _convert_messages(self, messages: list[ConversationMessage]) -> list:
        """Convert internal messages to LlamaIndex format."""
        from llama_index.core.llms import ChatMessage, MessageRole

        role_map = {
            "user": MessageRole.USER,
            "assistant": MessageRole.ASSISTANT,
            "system": MessageRole.SYSTEM,
            "tool": MessageRole.TOOL,
        }

        result = []
        for msg in messages:
            additional_kwargs: dict[str, Any] = {}
            if msg.tool_calls:
                additional_kwargs["tool_calls"] = msg.tool_calls
            if msg.tool_call_id:
                additional_kwargs["tool_call_id"] = msg.tool_call_id

            result.append(ChatMessage(
                role=role_map.get(msg.role, MessageRole.USER),
                content=msg.content,
                additional_kwargs=additional_kwargs,
            ))

        return result

    @staticmethod
    def _extract_tool_calls(message: Any) -> Optional[list[dict[str, Any]]]:
        """Read OpenAI tool calls off a LlamaIndex response message."""
        raw_calls = (getattr(message, "additional_kwargs", None) or {}).get("tool_calls")
        if not raw_calls:
            return None

        tool_calls = []
        for tc in raw_calls:
            if isinstance(tc, dict):
                call_id = tc.get("id")
                function = tc.get("function") or {}
                name, arguments = function.get("name"), function.get("arguments")
            else:
                call_id = tc.id
                name, arguments = tc.function.name, tc.function.arguments

            tool_calls.append({
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": arguments or "{}"}
            })
        return tool_calls

    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        tool_choice: Optional[str] = None
    ) -> LLMResponse:
        """Generate completion, retrying transient connection failures."""
        llm = self._get_llm()
        chat_messages = self._convert_messages(messages)

        kwargs: dict[str, Any] = {
            "temperature": self.settings.temperature if temperature is None else temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = tool_choice or self.settings.tool_choice

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_retries),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=True
            ):
                with attempt:
                    response = await llm.achat(chat_messages, **kwargs)
        except Exception as e:
            logger.error("LLM completion failed", provider=self.settings.provider, error=str(e))
            raise

        tool_calls = self._extract_tool_calls(response.message)
        usage = {}
        raw = getattr(response, "raw", None)
        raw_usage = getattr(raw, "usage", None) if raw is not None else None
        if raw_usage is not None:
            usage = {
                "prompt_tokens": getattr(raw_usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(raw_usage, "completion_tokens", 0) or 0,
            }

        return LLMResponse(
            content=response.message.content if response.message else None,
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else "stop",
            usage=usage
        )


class OpenAIProvider(LlamaIndexProvider):
    """OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self):
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.settings.model,
            api_key=self.settings.api_key,
            api_base=self.settings.api_base,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class AzureOpenAIProvider(LlamaIndexProvider):
    """Azure OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self):
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            engine=self.settings.deployment_name or self.settings.model,
            model=self.settings.model,
            api_key=self.settings.api_key,
            azure_endpoint=self.settings.api_base,
            api_version=self.settings.api_version,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


ScriptedTurn = Union[LLMResponse, Callable[[list[ConversationMessage]], LLMResponse]]


class ScriptedLLMProvider(LLMProvider):
    """
    Provider that replays queued responses without API calls.

    Each queued turn is either an LLMResponse or a callable receiving the
    conversation so far and returning one. Once the queue is empty a
    plain final answer is returned.
    """

    def __init__(
        self,
        settings: Optional[LLMSettings] = None,
        turns: Optional[list[ScriptedTurn]] = None
    ) -> None:
        self.settings = settings
        self.call_history: list[dict[str, Any]] = []
        self._turns: deque[ScriptedTurn] = deque(turns or [])

    def queue(self, *turns: ScriptedTurn) -> None:
        """Append turns to replay."""
        self._turns.extend(turns)

    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        tool_choice: Optional[str] = None
    ) -> LLMResponse:
        """Return the next scripted response."""
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "temperature": temperature,
            "tool_choice": tool_choice
        })

        if self._turns:
            turn = self._turns.popleft()
            return turn(list(messages)) if callable(turn) else turn

        return LLMResponse(
            content="No further action required.",
            tool_calls=None,
            finish_reason="stop",
            usage={"prompt_tokens": 10, "completion_tokens": 5}
        )


def create_llm_provider(settings: LLMSettings) -> LLMProvider:
    """
    Factory function to create appropriate LLM provider.

    Supports:
    - openai: OpenAI API
    - azure_openai: Azure OpenAI Service
    - scripted: Replays queued responses, for tests and offline runs

    Args:
        settings: LLM configuration settings

    Returns:
        Configured LLM provider

    Raises:
        ValueError: If provider is not supported
    """
    providers = {
        "openai": OpenAIProvider,
        "azure_openai": AzureOpenAIProvider,
        "scripted": ScriptedLLMProvider,
    }

    provider_class = providers.get(settings.provider)
    if not provider_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(providers.keys())}"
        )

    logger.info("Creating LLM provider", provider=settings.provider, model=settings.model)
    return provider_class(settings)
