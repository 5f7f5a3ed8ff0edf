# errors.py
# Exception taxonomy for the crkd agent core.
#
# The dispatcher converts every one of these into an ActionResult and never
# lets them cross its public boundary. The conversation buffer and the
# escalation policy raise them directly: those signal caller contract
# violations, not runtime failures.


class CrkdError(Exception):
    """Base class for every error raised by the agent core."""


# ---------------------------------------------------------------------------
# Action parsing and dispatch
# ---------------------------------------------------------------------------


class MalformedTagError(CrkdError):
    """Raised when model output does not have a usable tag structure."""


class UnknownActionError(CrkdError):
    """Raised when no tag in the response matches a registered action."""

    def __init__(self, tag: str) -> None:
        super().__init__(f"Unknown action type: {tag}")
        self.tag = tag


class ValidationError(CrkdError):
    """Raised when a required parameter is missing or has the wrong type."""

    def __init__(self, parameter: str, message: str) -> None:
        super().__init__(message)
        self.parameter = parameter


class HandlerError(CrkdError):
    """Wraps any failure from a side-effecting action. The cause is preserved."""


class NetworkError(CrkdError):
    """Raised by the URL fetcher on transport failure."""


# ---------------------------------------------------------------------------
# Conversation buffer
# ---------------------------------------------------------------------------


class InvalidRoleError(CrkdError, ValueError):
    """Raised when a message role is not one of system, user, assistant."""


class EmptyContentError(CrkdError, ValueError):
    """Raised when a message's trimmed content is empty."""


# ---------------------------------------------------------------------------
# Provider, session and configuration
# ---------------------------------------------------------------------------


class ProviderError(CrkdError):
    """Raised when the model provider call fails."""


class RequestCancelledError(CrkdError):
    """Raised when a cancel token fires during an in-flight request."""


class SessionTimeoutError(CrkdError, TimeoutError):
    """Raised when the interactive loop sees no input before its timeout."""


class ConfigError(CrkdError):
    """Raised when configuration is missing or invalid."""
