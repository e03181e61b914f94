"""
ToolRelay Providers - Model client interface used by the agent loop.

The agent only needs ``LLMClient.complete``. ``OpenAICompatibleClient``
talks to any OpenAI-style chat completions endpoint over httpx;
``ScriptedClient`` replays canned replies for demos and tests.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

from toolrelay.core.state import (
    AssistantMessage,
    Conversation,
    SystemMessage,
    ToolCall,
    ToolMessage,
    UserMessage,
)
from toolrelay.errors import ConfigurationError, ContextExhaustedError, ModelClientError
from toolrelay.tools.registry import ToolFunction
from toolrelay.validation.config import ModelConfig

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    """Response from a model client."""

    message: AssistantMessage
    model: str = ""
    token_usage: int = 0
    finish_reason: str = "stop"
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMClient(ABC):
    """
    Abstract base class for model clients.

    Implementations raise ``ModelClientError`` (or ``ConfigurationError``)
    when no completion can be produced; the agent turns either into a
    failed run.
    """

    @abstractmethod
    def complete(self, conversation: Conversation, tools: List[ToolFunction]) -> Completion:
        """
        Generate the next assistant message.

        Args:
            conversation: The full conversation so far.
            tools: Tools the model may call.

        Returns:
            Completion holding the assistant message.
        """
        pass


class ScriptedClient(LLMClient):
    """Replays a fixed sequence of assistant messages, one per call."""

    def __init__(self, replies: Iterable[AssistantMessage]):
        self._replies = list(replies)
        self.calls: List[Conversation] = []

    def complete(self, conversation: Conversation, tools: List[ToolFunction]) -> Completion:
        self.calls.append(conversation)
        if not self._replies:
            raise ModelClientError("Scripted client has no replies left")
        return Completion(message=self._replies.pop(0), model="scripted")


def _arguments_text(arguments: Any) -> str:
    return arguments if isinstance(arguments, str) else json.dumps(arguments)


def to_openai_messages(conversation: Conversation) -> List[Dict[str, Any]]:
    """Convert a conversation to chat completions ``messages``."""
    messages: List[Dict[str, Any]] = []
    for message in conversation:
        if isinstance(message, (SystemMessage, UserMessage)):
            messages.append({"role": message.role, "content": message.content})
        elif isinstance(message, ToolMessage):
            messages.append({"role": "tool", "tool_call_id": message.call_id, "content": message.content})
        elif isinstance(message, AssistantMessage):
            entry: Dict[str, Any] = {"role": "assistant", "content": message.content}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": _arguments_text(call.arguments)},
                    }
                    for call in message.tool_calls
                ]
            messages.append(entry)
    return messages


def parse_openai_message(data: Dict[str, Any]) -> AssistantMessage:
    """Build an ``AssistantMessage`` from a chat completions ``message`` object."""
    calls = []
    for raw in data.get("tool_calls") or []:
        function = raw.get("function") or {}
        arguments = function.get("arguments") or "{}"
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError as e:
                # Kept as text; the agent reports it back to the model as a failed call.
                logger.warning("Model sent malformed tool arguments for %s: %s", function.get("name"), e)
        calls.append(ToolCall(id=raw.get("id", ""), name=function.get("name", ""), arguments=arguments))
    return AssistantMessage(content=data.get("content"), tool_calls=tuple(calls))


class OpenAICompatibleClient(LLMClient):
    """
    Client for providers that expose an OpenAI-compatible chat completions API.

    Speaks the wire format directly over httpx; no vendor SDK is needed.
    """

    def __init__(self, config: ModelConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client or httpx.Client(timeout=config.timeout)

    def _get_key(self) -> str:
        api_key = os.environ.get(self.config.api_key_env)
        if not api_key:
            raise ConfigurationError(f"API key not configured. Set {self.config.api_key_env}.")
        return api_key

    def complete(self, conversation: Conversation, tools: List[ToolFunction]) -> Completion:
        payload: Dict[str, Any] = {
            "model": self.config.name,
            "messages": to_openai_messages(conversation),
            "temperature": self.config.temperature,
        }
        if tools:
            payload["tools"] = [fn.to_openai_tool(self.config.strict_tools) for fn in tools]

        try:
            response = self._client.post(
                f"{self.config.api_base.rstrip('/')}/chat/completions",
                headers={"Authorization": f"Bearer {self._get_key()}"},
                json=payload,
            )
        except httpx.HTTPError as e:
            raise ModelClientError(f"Model request failed: {e}")

        if response.status_code >= 400:
            body = response.text
            if "context_length_exceeded" in body:
                raise ContextExhaustedError(f"Context window exhausted: {body}")
            raise ModelClientError(f"HTTP {response.status_code}: {body}")

        try:
            data = response.json()
            choice = data["choices"][0]
            message = parse_openai_message(choice["message"])
            usage = data.get("usage") or {}
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise ModelClientError(f"Malformed completion response: {e!r}")
        logger.debug("Completion from %s: finish_reason=%s", self.config.name, choice.get("finish_reason"))

        return Completion(
            message=message,
            model=data.get("model", self.config.name),
            token_usage=usage.get("total_tokens", 0),
            finish_reason=choice.get("finish_reason") or "stop",
        )
