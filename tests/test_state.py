"""Tests for conversation and agent state."""

import dataclasses
import threading

import pytest

from toolrelay.core.cache import ToolCache
from toolrelay.core.state import (
    AgentState,
    AgentStatus,
    AssistantMessage,
    Conversation,
    SystemMessage,
    ToolCall,
    ToolMessage,
    UserMessage,
)
from toolrelay.errors import AgentFailure
from toolrelay.tools.registry import ToolRegistry


@pytest.fixture
def state():
    conversation = Conversation().add_message(SystemMessage("sys")).add_message(UserMessage("hi"))
    return AgentState(conversation=conversation, status=AgentStatus.IN_PROGRESS, registry=ToolRegistry(), user_query="hi")


class TestConversation:
    """Tests for Conversation."""

    def test_add_message_returns_new_conversation(self):
        empty = Conversation()
        one = empty.add_message(UserMessage("a"))

        assert len(empty) == 0
        assert len(one) == 1

    def test_messages_are_immutable(self):
        message = UserMessage("a")

        with pytest.raises(dataclasses.FrozenInstanceError):
            message.content = "b"

    def test_last_assistant_message(self):
        conversation = (
            Conversation()
            .add_message(AssistantMessage(content="first"))
            .add_message(ToolMessage("c1", "result"))
            .add_message(AssistantMessage(content="second"))
        )

        assert conversation.last_assistant_message().content == "second"

    def test_to_dicts(self):
        call = ToolCall(id="c1", name="ping", arguments={})
        conversation = Conversation().add_message(AssistantMessage(tool_calls=(call,))).add_message(ToolMessage("c1", "pong"))

        assert conversation.to_dicts() == [
            {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "name": "ping", "arguments": {}}]},
            {"role": "tool", "call_id": "c1", "content": "pong"},
        ]


class TestAgentState:
    """Tests for AgentState transitions."""

    def test_allowed_cycle(self, state):
        state = state.with_status(AgentStatus.WAITING_FOR_TOOLS)
        state = state.with_status(AgentStatus.IN_PROGRESS)
        state = state.with_status(AgentStatus.COMPLETE)

        assert state.status.is_terminal

    def test_illegal_transition(self, state):
        with pytest.raises(ValueError):
            state.with_status(AgentStatus.COMPLETE).with_status(AgentStatus.IN_PROGRESS)

    def test_failed_from_any_non_terminal(self, state):
        assert state.fail("boom").failure_reason == "boom"
        assert state.with_status(AgentStatus.WAITING_FOR_TOOLS).fail("boom").status is AgentStatus.FAILED

    def test_failed_needs_reason(self, state):
        with pytest.raises(ValueError):
            state.with_status(AgentStatus.FAILED)

    def test_final_response_raises_on_failure(self, state):
        with pytest.raises(AgentFailure, match="boom"):
            state.fail("boom").final_response()

    def test_final_response_skips_tool_requests(self, state):
        call = ToolCall(id="c1", name="ping")
        state = (
            state.add_message(AssistantMessage(content="answer"))
            .add_message(UserMessage("more"))
            .add_message(AssistantMessage(content="let me check", tool_calls=(call,)))
        )

        assert state.final_response() == "answer"

    def test_with_user_message(self, state):
        done = state.add_message(AssistantMessage(content="hello")).with_status(AgentStatus.COMPLETE)

        continued = done.with_user_message("and then?")

        assert continued.status is AgentStatus.IN_PROGRESS
        assert continued.conversation.messages[-1] == UserMessage("and then?")
        assert continued.logs[-1] == "[user] and then?"

    def test_with_user_message_rejected_while_tools_pending(self, state):
        with pytest.raises(ValueError):
            state.with_status(AgentStatus.WAITING_FOR_TOOLS).with_user_message("wait")

    def test_to_dict(self, state):
        data = state.log("[system] started").fail("broken").to_dict()

        assert data == {
            "user_query": "hi",
            "status": "failed",
            "failure_reason": "broken",
            "conversation": [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}],
            "logs": ["[system] started"],
        }


class TestToolCache:
    """Tests for the TTL cache."""

    def test_expiry(self, clock):
        cache = ToolCache(ttl=10, clock=clock)
        cache.set("srv", ["a", "b"])

        clock.advance(9)
        assert cache.get("srv") == ("a", "b")
        clock.advance(1)
        assert cache.get("srv") is None

    def test_set_replaces_entry(self, clock):
        cache = ToolCache(ttl=10, clock=clock)
        first = cache.set("srv", ["a"])
        second = cache.set("srv", ["b"])

        assert first is not second
        assert first.tools == ("a",)
        assert cache.get("srv") == ("b",)

    def test_invalidate_and_clear(self, clock):
        cache = ToolCache(ttl=10, clock=clock)
        cache.set("a", [1])
        cache.set("b", [2])

        assert cache.invalidate("a")
        assert not cache.invalidate("a")
        assert cache.clear() == 1
        assert cache.get("b") is None

    def test_stats(self, clock):
        cache = ToolCache(ttl=10, clock=clock)
        cache.get("missing")
        cache.set("srv", [1])
        cache.get("srv")

        stats = cache.stats()

        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["refreshes"] == 1
        assert stats["fresh_entries"] == 1

    def test_stats_count_concurrent_lookups(self, clock):
        cache = ToolCache(ttl=10, clock=clock)
        cache.set("srv", [1])

        def lookup():
            for _ in range(500):
                cache.get("srv")
                cache.get("missing")

        threads = [threading.Thread(target=lookup) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = cache.stats()
        assert stats["hits"] == 4000
        assert stats["misses"] == 4000
