"""Exception hierarchy shared across the workflow and integration layers.

Expected failure paths (reauthorization, exhausted retries, skipped jobs) are
reported through result objects. These exceptions cover programmer errors and
the boundaries where a result object is built from a failure.
"""


class PestOpsError(Exception):
    """Base class for all package errors."""


class ConfigurationError(PestOpsError):
    """Raised when the application is wired or configured incorrectly."""


class TriggerValidationError(PestOpsError):
    """Raised when a trigger definition violates the trigger invariants."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class IntegrationError(PestOpsError):
    """Base class for failures talking to an external provider."""

    def __init__(
        self, message: str, provider: str, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientIntegrationError(IntegrationError):
    """Network failure, timeout, rate limit or 5xx. Worth retrying."""


class ProviderRequestError(IntegrationError):
    """The provider rejected the request. Retrying will not help."""


class ReauthorizationRequiredError(IntegrationError):
    """The stored credential can no longer be refreshed; the user must reconnect."""
