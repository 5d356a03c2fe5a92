"""Exception hierarchy for flowrelay."""

from __future__ import annotations


class FlowRelayError(Exception):
    """Base error for flowrelay."""


class PermanentError(FlowRelayError):
    """Indicates the operation should not be retried."""


class ConfigurationError(PermanentError):
    """A graph, node or provider is configured incorrectly."""


class GraphValidationError(ConfigurationError):
    """The graph cannot be traversed (no entry point, reachable cycle)."""


class UnknownProviderError(ConfigurationError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"Unknown provider: {provider}")
        self.provider = provider


class ConnectionNotFoundError(ConfigurationError):
    """No usable provider connection exists."""


class ConnectionMismatchError(ConfigurationError):
    """A stored connection belongs to a different provider."""


class PollingTimeoutError(PermanentError):
    """Polling ran out of attempts before the remote run finished."""


class ProviderError(FlowRelayError):
    """A provider API call failed."""


class ProviderExecutionError(FlowRelayError):
    """The remote back-end reported a failed execution."""


class InvalidTransitionError(PermanentError):
    """A run status change is not allowed by the state machine."""


class LocalFlowError(FlowRelayError):
    """Calling a local sub-flow failed."""


class RetryExhaustedError(FlowRelayError):
    """Raised when every retry attempt of an action failed."""

    def __init__(self, context: str, attempts: int, last_error: BaseException | None) -> None:
        message = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"{context} failed after {attempts} attempts: {message}")
        self.attempts = attempts
        self.last_error = last_error


class NotFoundError(FlowRelayError):
    """A requested graph, run or connection does not exist."""


class AuthenticationError(FlowRelayError):
    """Provider credentials were rejected."""


class StaleRunError(FlowRelayError):
    """The run was modified by someone else since it was loaded."""


class RunLockedError(FlowRelayError):
    """Another worker holds the lease on this run."""
