"""
ToolRelay providers module.

This module provides the model client interface used by the agent loop.
"""

from toolrelay.providers.base import Completion, LLMClient, OpenAICompatibleClient, ScriptedClient

__all__ = ["Completion", "LLMClient", "OpenAICompatibleClient", "ScriptedClient"]
