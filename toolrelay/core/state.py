"""
ToolRelay State - Conversation and agent state for the tool-calling loop.

Every value here is immutable. Operations return a new object, so a state
handed back to a caller can be read (or persisted) without copying.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar, Dict, Iterator, Optional, Tuple, Union

from toolrelay.errors import AgentFailure
from toolrelay.tools.registry import ToolCallRequest, ToolRegistry


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model in one assistant turn."""

    id: str
    name: str
    arguments: Any = field(default_factory=dict)

    def to_request(self) -> ToolCallRequest:
        """
        Build the registry request for this call.

        Raises:
            ValueError: If the model sent arguments that are not a JSON object.
        """
        if not isinstance(self.arguments, dict):
            raise ValueError(
                f"Arguments for tool '{self.name}' must be a JSON object, got {type(self.arguments).__name__}"
            )
        return ToolCallRequest(function_name=self.name, arguments=dict(self.arguments))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class SystemMessage:
    content: str
    role: ClassVar[str] = "system"

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class UserMessage:
    content: str
    role: ClassVar[str] = "user"

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ToolMessage:
    """The result of one tool call, linked to it by ``call_id``."""

    call_id: str
    content: str
    role: ClassVar[str] = "tool"

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "call_id": self.call_id, "content": self.content}


@dataclass(frozen=True)
class AssistantMessage:
    content: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()
    role: ClassVar[str] = "assistant"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        return data


Message = Union[SystemMessage, UserMessage, ToolMessage, AssistantMessage]


@dataclass(frozen=True)
class Conversation:
    """Chronological, append-only sequence of messages."""

    messages: Tuple[Message, ...] = ()

    def add_message(self, message: Message) -> "Conversation":
        return Conversation(self.messages + (message,))

    def __iter__(self) -> Iterator[Message]:
        return iter(self.messages)

    def __len__(self) -> int:
        return len(self.messages)

    def last_assistant_message(self) -> Optional[AssistantMessage]:
        for message in reversed(self.messages):
            if isinstance(message, AssistantMessage):
                return message
        return None

    def to_dicts(self):
        return [message.to_dict() for message in self.messages]


class AgentStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    WAITING_FOR_TOOLS = "waiting_for_tools"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETE, AgentStatus.FAILED)


_TRANSITIONS = {
    AgentStatus.IN_PROGRESS: {AgentStatus.WAITING_FOR_TOOLS, AgentStatus.COMPLETE, AgentStatus.FAILED},
    AgentStatus.WAITING_FOR_TOOLS: {AgentStatus.IN_PROGRESS, AgentStatus.FAILED},
    AgentStatus.COMPLETE: set(),
    AgentStatus.FAILED: set(),
}


@dataclass(frozen=True)
class AgentState:
    """
    Snapshot of one agent run.

    ``registry`` is a reference only; it is not part of equality or of the
    serialized form returned by ``to_dict``.
    """

    conversation: Conversation
    status: AgentStatus
    registry: ToolRegistry = field(compare=False, repr=False)
    logs: Tuple[str, ...] = ()
    user_query: str = ""
    failure_reason: Optional[str] = None

    def with_status(self, status: AgentStatus, reason: Optional[str] = None) -> "AgentState":
        """
        Transition to ``status``.

        Raises:
            ValueError: If the transition is not allowed from the current status.
        """
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Illegal agent transition {self.status.value} -> {status.value}")
        if status is AgentStatus.FAILED and not reason:
            raise ValueError("A failed state needs a reason")
        return replace(self, status=status, failure_reason=reason if status is AgentStatus.FAILED else None)

    def fail(self, reason: str) -> "AgentState":
        return self.with_status(AgentStatus.FAILED, reason)

    def add_message(self, message: Message) -> "AgentState":
        return replace(self, conversation=self.conversation.add_message(message))

    def log(self, entry: str) -> "AgentState":
        return replace(self, logs=self.logs + (entry,))

    def with_user_message(self, text: str) -> "AgentState":
        """Start a new turn on a finished (or failed) conversation."""
        if self.status is AgentStatus.WAITING_FOR_TOOLS:
            raise ValueError("Cannot add a user message while tool calls are pending")
        return replace(
            self,
            conversation=self.conversation.add_message(UserMessage(text)),
            status=AgentStatus.IN_PROGRESS,
            failure_reason=None,
        ).log(f"[user] {text}")

    @property
    def pending_tool_calls(self) -> Tuple[ToolCall, ...]:
        if self.status is not AgentStatus.WAITING_FOR_TOOLS:
            return ()
        last = self.conversation.last_assistant_message()
        return last.tool_calls if last else ()

    def final_response(self) -> Optional[str]:
        """
        Text of the last assistant message that requested no tools.

        Raises:
            AgentFailure: If the run ended in ``FAILED``.
        """
        if self.status is AgentStatus.FAILED:
            raise AgentFailure(self.failure_reason or "agent failed")
        for message in reversed(self.conversation.messages):
            if isinstance(message, AssistantMessage) and not message.has_tool_calls:
                return message.content
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert state to a dictionary for serialization."""
        return {
            "user_query": self.user_query,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "conversation": self.conversation.to_dicts(),
            "logs": list(self.logs),
        }
