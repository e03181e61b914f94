"""
ToolRelay validation module.

This module provides configuration validation and schema enforcement.
"""

from toolrelay.errors import ConfigurationError
from toolrelay.validation.config import Config, MCPServerConfig, ToolRelayConfig

__all__ = ["Config", "ConfigurationError", "MCPServerConfig", "ToolRelayConfig"]
