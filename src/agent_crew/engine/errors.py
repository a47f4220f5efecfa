"""Exception taxonomy for the execution engine."""

from __future__ import annotations


class AgentCrewError(RuntimeError):
    """Base class for engine errors."""


class ConfigurationError(AgentCrewError):
    """Unit of work cannot run: missing agent, team, credential or invalid config."""


class UnsupportedProviderError(ConfigurationError):
    """Provider is not in the provider table or lacks the requested capability."""


class ProviderError(AgentCrewError):
    """Vendor API rejected a call or returned an unusable response."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ToolError(AgentCrewError):
    """Tool implementation failure; converted to text for the model."""


class PolicyExhaustionError(AgentCrewError):
    """Pipeline step exhausted its failure policy."""


class RunCancelledError(AgentCrewError):
    """Work unit was cancelled by an operator; not a failure."""
