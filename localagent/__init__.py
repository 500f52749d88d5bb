"""localagent: a conversational agent runner with MCP tools and multi-step task continuation."""

from .errors import AgentError, ConfigError, ProviderError
from .session import Session

__all__ = ["AgentError", "ConfigError", "ProviderError", "Session"]
