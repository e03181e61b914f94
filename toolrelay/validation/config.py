"""
ToolRelay Configuration - Configuration loading and validation.

This module provides the Config class for managing ToolRelay configuration
from both global (~/.toolrelay/config.yaml) and local (.toolrelay/config.yaml)
sources.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from toolrelay.errors import ConfigurationError

if TYPE_CHECKING:
    from toolrelay.mcp.registry import MCPToolRegistry
    from toolrelay.tools.registry import ToolFunction


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to tools. "
    "Call a tool whenever it helps answer the user's request, "
    "then answer concisely using the tool results."
)


class StdioTransportConfig(BaseModel):
    """Launch the server as a subprocess speaking JSON-RPC on stdin/stdout."""

    kind: Literal["stdio"] = "stdio"
    command: List[str]
    cwd: Optional[str] = None

    @field_validator("command")
    @classmethod
    def _command_not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("command must contain at least the executable")
        return value


class HttpTransportConfig(BaseModel):
    """Talk to the server with HTTP POST (and GET/DELETE for sessions)."""

    kind: Literal["http"] = "http"
    url: str
    path: str = "/mcp"
    headers: Dict[str, str] = Field(default_factory=dict)


TransportConfig = Annotated[
    Union[StdioTransportConfig, HttpTransportConfig], Field(discriminator="kind")
]


class MCPServerConfig(BaseModel):
    """Configuration for a single MCP server."""

    name: str
    transport: TransportConfig
    timeout: float = 30.0
    env: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @classmethod
    def stdio(
        cls,
        name: str,
        command: Sequence[str],
        timeout: float = 30.0,
        env: Optional[Dict[str, str]] = None,
    ) -> "MCPServerConfig":
        return cls(
            name=name,
            transport=StdioTransportConfig(command=list(command)),
            timeout=timeout,
            env=env or {},
        )

    @classmethod
    def http(cls, name: str, url: str, path: str = "/mcp", timeout: float = 30.0) -> "MCPServerConfig":
        return cls(name=name, transport=HttpTransportConfig(url=url, path=path), timeout=timeout)

    @classmethod
    def sse(cls, name: str, url: str, timeout: float = 30.0) -> "MCPServerConfig":
        """Legacy stateless endpoint served at ``/sse``."""
        return cls.http(name, url, path="/sse", timeout=timeout)


class AgentConfig(BaseModel):
    """Configuration for the agent loop."""

    max_steps: Optional[int] = 10
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class ModelConfig(BaseModel):
    """An OpenAI-compatible chat completions endpoint."""

    name: str = "gpt-4o-mini"
    api_base: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.0
    timeout: float = 120.0
    strict_tools: bool = True


class MCPConfig(BaseModel):
    """Configuration for remote tool servers."""

    cache_ttl: float = 600.0
    protocol_version: str = "2025-03-26"
    client_name: str = "toolrelay"
    servers: List[MCPServerConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_server_names(self) -> "MCPConfig":
        seen = set()
        for server in self.servers:
            if server.name in seen:
                raise ValueError(f"duplicate MCP server name: {server.name}")
            seen.add(server.name)
        return self


class ToolRelayConfig(BaseModel):
    """Complete ToolRelay configuration schema."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)


class Config:
    """
    ToolRelay configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.toolrelay/config.yaml
    - Local: .toolrelay/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> registry = config.build_registry()
        >>> registry.tools()
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".toolrelay"
    LOCAL_CONFIG_DIR = Path(".toolrelay")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[ToolRelayConfig] = None

    @classmethod
    def load(cls, local_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Args:
            local_path: Explicit project config file; searched for if omitted.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(local_path or cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / ".toolrelay" / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> ToolRelayConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = ToolRelayConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration: {e}")
        return self._merged

    def get_mcp_servers(self) -> List[MCPServerConfig]:
        """Enabled MCP servers, in configured order."""
        return [server for server in self.merged.mcp.servers if server.enabled]

    def build_registry(self, local_tools: Sequence["ToolFunction"] = ()) -> "MCPToolRegistry":
        """Create a caching tool registry from the configured servers."""
        from toolrelay.mcp.client import ClientSettings
        from toolrelay.mcp.registry import MCPToolRegistry

        mcp = self.merged.mcp
        return MCPToolRegistry(
            mcp_servers=self.get_mcp_servers(),
            local_tools=local_tools,
            cache_ttl=mcp.cache_ttl,
            client_settings=ClientSettings(
                protocol_version=mcp.protocol_version,
                client_name=mcp.client_name,
            ),
        )

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
