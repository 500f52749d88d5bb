"""Exception hierarchy for localagent."""


class AgentError(Exception):
    """Raised by the session loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid or missing configuration files. Fatal at startup."""


class ProviderError(AgentError):
    """Raised when a model provider cannot be resolved or initialized.

    Carries the offending provider name. Recoverable errors abort the
    current turn only; the session keeps running.
    """

    def __init__(self, message: str, provider: str, recoverable: bool = True):
        super().__init__(message)
        self.provider = provider
        self.recoverable = recoverable


class UnsupportedProviderError(ProviderError):
    """No implementation is registered for the provider name."""

    def __init__(self, provider: str):
        super().__init__(
            f"Unsupported AI provider: {provider}", provider, recoverable=False
        )


class ProviderLoadError(ProviderError):
    """A registered provider factory raised while constructing the provider."""


class ToolError(AgentError):
    """Raised when the tool subsystem itself is unusable (not for per-call failures)."""


class ModelTimeoutError(AgentError):
    """Raised when a model call exceeds the request timeout."""
