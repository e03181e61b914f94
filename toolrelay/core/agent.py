"""
ToolRelay Agent - Tool-calling loop.

The agent alternates between two phases until the model answers without
requesting tools:

1. IN_PROGRESS: ask the model for the next message, offering every tool
   the registry knows about.
2. WAITING_FOR_TOOLS: run the requested tool calls one after another, in
   the order the model asked for them, and append one result per call.

Tool failures are reported back to the model as message content. Only a
model client failure ends the run as FAILED.
"""

import json
import logging
from typing import Any, Optional

from toolrelay.core.state import (
    AgentState,
    AgentStatus,
    Conversation,
    SystemMessage,
    ToolMessage,
    UserMessage,
)
from toolrelay.errors import ConfigurationError, ModelClientError
from toolrelay.providers.base import LLMClient
from toolrelay.tools.registry import ToolCallError, ToolCallResult, ToolRegistry
from toolrelay.validation.config import DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

LOG_PREVIEW_CHARS = 200


def format_tool_result(result: ToolCallResult) -> str:
    """Render a tool call result as message content for the model."""
    if not result.ok:
        return json.dumps({"isError": True, "error": result.error.message})
    return _stringify(result.value)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _preview(text: Optional[str]) -> str:
    text = text or ""
    if len(text) > LOG_PREVIEW_CHARS:
        return text[:LOG_PREVIEW_CHARS] + "..."
    return text


class Agent:
    """
    Drives one conversation through completion and tool execution.

    The Agent holds no per-run state: every method takes an ``AgentState``
    and returns a new one.

    Example:
        >>> agent = Agent(client)
        >>> state = agent.run("What's the weather in Paris?", registry, max_steps=10)
        >>> state.final_response()
    """

    def __init__(self, client: LLMClient, system_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self.client = client
        self.system_prompt = system_prompt

    def initialize(self, query: str, registry: ToolRegistry) -> AgentState:
        """Create a conversation holding the system prompt and the user query."""
        conversation = Conversation().add_message(SystemMessage(self.system_prompt)).add_message(UserMessage(query))
        return AgentState(
            conversation=conversation,
            status=AgentStatus.IN_PROGRESS,
            registry=registry,
            logs=(f"[system] Starting run for query: {_preview(query)}",),
            user_query=query,
        )

    def run_step(self, state: AgentState) -> AgentState:
        """Perform exactly one transition. Terminal states are returned unchanged."""
        if state.status is AgentStatus.IN_PROGRESS:
            return self._request_completion(state)
        if state.status is AgentStatus.WAITING_FOR_TOOLS:
            return self._execute_tools(state)
        return state

    def run(self, query: str, registry: ToolRegistry, max_steps: Optional[int] = None) -> AgentState:
        """
        Run a new conversation until it finishes or ``max_steps`` transitions ran.

        Args:
            query: The user's request.
            registry: Where tool calls are resolved.
            max_steps: Upper bound on transitions; unbounded if None.

        Returns:
            The last state reached.
        """
        return self.resume(self.initialize(query, registry), max_steps)

    def resume(self, state: AgentState, max_steps: Optional[int] = None) -> AgentState:
        """Continue an existing state; see ``run``."""
        steps = 0
        while not state.status.is_terminal:
            if max_steps is not None and steps >= max_steps:
                state = state.log(f"[system] Step limit of {max_steps} reached in state {state.status.value}")
                break
            before = state.status
            state = self.run_step(state)
            steps += 1
            logger.info("Step %d: %s -> %s", steps, before.value, state.status.value)
            state = state.log(f"[system] Step {steps}: {before.value} -> {state.status.value}")
        return state

    # ── Phases ────────────────────────────────────────────────────────────

    def _request_completion(self, state: AgentState) -> AgentState:
        try:
            completion = self.client.complete(state.conversation, state.registry.tools())
        except (ModelClientError, ConfigurationError) as e:
            logger.error("Model client failed: %s", e)
            return state.log(f"[system] Model client failed: {e}").fail(str(e))

        message = completion.message
        state = state.add_message(message)
        if message.content:
            state = state.log(f"[assistant] {_preview(message.content)}")

        if message.has_tool_calls:
            names = ", ".join(call.name for call in message.tool_calls)
            state = state.log(f"[assistant] Requested {len(message.tool_calls)} tool call(s): {names}")
            return state.with_status(AgentStatus.WAITING_FOR_TOOLS)
        return state.with_status(AgentStatus.COMPLETE)

    def _execute_tools(self, state: AgentState) -> AgentState:
        calls = state.pending_tool_calls
        state = state.log(f"[tools] Executing {len(calls)} tool call(s)")

        for call in calls:
            try:
                request = call.to_request()
            except ValueError as e:
                result = ToolCallResult(error=ToolCallError.execution_error(call.name, str(e)))
            else:
                result = state.registry.execute(request)
            content = format_tool_result(result)
            if result.ok:
                entry = f"[tool] {call.name} -> {_preview(content)}"
            else:
                entry = f"[tool] {call.name} failed: {result.error.message}"
                logger.warning("Tool %s failed: %s", call.name, result.error.message)
            state = state.add_message(ToolMessage(call_id=call.id, content=content)).log(entry)

        return state.with_status(AgentStatus.IN_PROGRESS)
