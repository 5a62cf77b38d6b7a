"""Exception hierarchy for agenthost.

Every agenthost-specific exception inherits from AgentHostError. The
provider layer further splits failures into transient ones (worth a
retry) and terminal ones (surface immediately), which is what the
orchestrator and the HTTP layer key their behaviour on.
"""

from __future__ import annotations

from typing import Any


class AgentHostError(Exception):
    """Base exception for all agenthost errors."""


class ConfigurationError(AgentHostError):
    """Raised for invalid configuration or missing required settings."""


class CredentialError(ConfigurationError):
    """Raised when stored credentials are missing or cannot be decrypted."""


class InvalidTransitionError(AgentHostError):
    """Raised when a setup record update would break its lifecycle rules."""


# =============================================================================
# Provider errors
# =============================================================================


class ProviderError(AgentHostError):
    """Raised when a cloud provider call fails."""


class TransientProviderError(ProviderError):
    """Timeouts, throttling and temporary unavailability. Safe to retry."""


class CreateUncertainError(TransientProviderError):
    """Create call failed in a way that may still have produced an instance.

    ``secret`` carries access material minted before the call (for example a
    generated SSH key) so an instance found afterwards is still reachable.
    """

    def __init__(self, name: str, reason: str, secret: Any = None) -> None:
        self.name = name
        self.reason = reason
        self.secret = secret
        super().__init__(f"Create of '{name}' did not complete: {reason}")


class InstanceNotReadyError(TransientProviderError):
    """The instance exists but is still booting and cannot serve the request."""


class ProviderTimeoutError(TransientProviderError, TimeoutError):
    """A provider request got no answer within its deadline."""


class TerminalProviderError(ProviderError):
    """Invalid credentials, forbidden operations, malformed requests."""


class BillingRequiredError(TerminalProviderError):
    """The account must add a payment method before this size can launch."""

    def __init__(self, size: str, reason: str = "") -> None:
        self.size = size
        self.reason = reason
        super().__init__(reason or f"Billing required for instance size {size}")

    @property
    def error_message(self) -> str:
        return f"BILLING_REQUIRED:{self.size}"


class PlanLimitError(TerminalProviderError):
    """The provider plan does not allow the requested machine."""


class ScreenshotTooLargeError(TerminalProviderError):
    """The captured screen exceeds the size the server will relay."""


class InstanceNotFoundError(AgentHostError):
    """Raised when an instance or setup record does not exist."""


class UnsupportedProviderError(AgentHostError):
    """Raised when a provider does not support the requested operation."""


# =============================================================================
# Channel errors
# =============================================================================


class ChannelConnectionError(AgentHostError):
    """Raised when the remote execution channel cannot be established or is lost."""


class ChannelTimeoutError(ChannelConnectionError, TimeoutError):
    """Raised when connecting or probing a channel exceeds its deadline."""


class ChannelBusyError(AgentHostError):
    """Raised when a channel is used while attached to an interactive shell."""


# =============================================================================
# Pipeline and session errors
# =============================================================================


class SetupStepError(AgentHostError):
    """Raised when a pipeline step fails for good."""

    def __init__(self, step: str, reason: str) -> None:
        self.step = step
        self.reason = reason
        super().__init__(f"{step} failed: {reason}")


class SetupConflictError(AgentHostError):
    """Raised when a setup is already running or already finished."""


class PipelineCancelledError(AgentHostError):
    """Raised at a step boundary after the setup task was cancelled."""


class SessionNotFoundError(AgentHostError):
    """Raised when a terminal session id is unknown."""


class SessionOwnershipError(AgentHostError):
    """Raised when a caller uses a session id that is not theirs."""
