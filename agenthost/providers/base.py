"""Cloud adapter contract and helpers shared by every provider."""

from __future__ import annotations

import secrets
import string
from typing import Protocol, runtime_checkable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from agenthost.api.model import Instance, InstanceConfig, InstanceSecret, Provider, Screenshot
from agenthost.channel.base import CommandResult


@runtime_checkable
class CloudAdapter(Protocol):
    """Thin wrapper over one provider's instance API.

    Implementations translate provider failures into the agenthost hierarchy:
    TransientProviderError (retryable), CreateUncertainError (the create may
    have gone through), TerminalProviderError and its BillingRequiredError /
    PlanLimitError refinements, and InstanceNotFoundError.
    """

    provider: Provider

    async def create_instance(self, config: InstanceConfig) -> tuple[Instance, InstanceSecret]:
        """Launch a machine and return it with any access material minted for it."""
        ...

    async def get_instance(self, instance_id: str) -> Instance:
        """Current view of a machine, including its latest address."""
        ...

    async def find_instance(self, name: str) -> Instance | None:
        """Look a machine up by the name it was created with."""
        ...

    async def delete_instance(self, instance_id: str) -> None: ...

    async def run_remote_command(
        self, instance_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        """Execute through the provider API. SSH providers raise UnsupportedProviderError."""
        ...

    async def validate_credentials(self) -> None:
        """Raise TerminalProviderError when the credentials cannot be used."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class SupportsScreenshot(Protocol):
    """Adapters whose machines have a desktop that can be captured."""

    async def screenshot(self, instance_id: str, timeout: float | None = None) -> Screenshot: ...

    async def close(self) -> None: ...


# =============================================================================
# Helpers
# =============================================================================

_ADJECTIVES = ("swift", "bright", "calm", "bold", "keen", "wise", "warm", "cool")
_NOUNS = ("falcon", "eagle", "wolf", "hawk", "bear", "lion", "deer", "raven")


def generate_instance_name(prefix: str = "agenthost") -> str:
    adj = secrets.choice(_ADJECTIVES)
    noun = secrets.choice(_NOUNS)
    return f"{prefix}-{adj}-{noun}-{secrets.randbelow(1000)}"


def generate_ssh_keypair(comment: str = "agenthost") -> tuple[str, str]:
    """Return (private key in OpenSSH PEM, public key in authorized_keys format)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=4096)
    private = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    return private, f"{public} {comment}"


def generate_password(length: int = 20) -> str:
    """Random password meeting cloud complexity rules (upper, lower, digit, symbol)."""
    alphabet = string.ascii_letters + string.digits
    body = "".join(secrets.choice(alphabet) for _ in range(length - 4))
    return (
        body
        + secrets.choice(string.ascii_uppercase)
        + secrets.choice(string.ascii_lowercase)
        + secrets.choice(string.digits)
        + "!"
    )
