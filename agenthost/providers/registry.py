"""Driver registry: provider name to a ready ProviderDriver.

Provider SDKs are imported lazily so a deployment that only uses Orgo
never loads boto or the Azure SDK.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from loguru import logger

from agenthost.api.model import Provider
from agenthost.config import Settings
from agenthost.core.exceptions import CredentialError, UnsupportedProviderError
from agenthost.infra.crypto import CredentialCipher

if TYPE_CHECKING:
    from agenthost.providers.driver import ProviderDriver

log = logger.bind(component="registry")

type Credentials = Mapping[str, str]
type DriverBuilder = Callable[[Settings, Credentials, Mapping[str, str]], ProviderDriver]

REQUIRED_CREDENTIALS: dict[Provider, tuple[str, ...]] = {
    Provider.ORGO: ("api_key",),
    Provider.AWS: ("access_key_id", "secret_access_key"),
    Provider.AZURE: ("tenant_id", "client_id", "client_secret", "subscription_id"),
    Provider.E2B: ("api_key",),
}


def credential_slot(provider: Provider, name: str) -> str:
    """Key of a provider credential inside ``SetupRecord.credentials``."""
    return f"{provider.value}.{name}"


def ssh_username(settings: Settings, provider: Provider) -> str | None:
    """Login user for providers reached over SSH, None for command-API providers."""
    match provider:
        case Provider.AWS:
            return settings.providers.aws.username
        case Provider.AZURE:
            return settings.providers.azure.username
        case _:
            return None


def _build_default(
    provider: Provider, settings: Settings, creds: Credentials, prefs: Mapping[str, str]
) -> ProviderDriver:
    defaults = settings.providers
    match provider:
        case Provider.ORGO:
            from agenthost.providers.orgo import OrgoAdapter, OrgoDriver

            return OrgoDriver(OrgoAdapter(creds["api_key"], defaults.orgo), settings)
        case Provider.AWS:
            from agenthost.providers.aws import AWSAdapter, AWSDriver

            adapter = AWSAdapter(
                creds["access_key_id"],
                creds["secret_access_key"],
                defaults.aws,
                region=prefs.get("region"),
            )
            return AWSDriver(adapter, settings)
        case Provider.AZURE:
            from agenthost.providers.azure import AzureAdapter, AzureDriver

            adapter = AzureAdapter(
                creds["tenant_id"],
                creds["client_id"],
                creds["client_secret"],
                creds["subscription_id"],
                defaults.azure,
                region=prefs.get("region"),
            )
            return AzureDriver(adapter, settings)
        case Provider.E2B:
            from agenthost.providers.e2b import E2BAdapter, E2BDriver

            return E2BDriver(E2BAdapter(creds["api_key"], defaults.e2b), settings)
        case _:
            raise UnsupportedProviderError(f"No driver for provider {provider}")


class DriverRegistry:
    """Builds drivers from stored, encrypted provider credentials.

    ``register`` replaces the builder for one provider, which is how tests
    swap in fakes.
    """

    def __init__(self, settings: Settings, cipher: CredentialCipher) -> None:
        self.settings = settings
        self.cipher = cipher
        self._builders: dict[Provider, DriverBuilder] = {}

    def register(self, provider: Provider, builder: DriverBuilder) -> None:
        self._builders[provider] = builder

    def encrypt_credentials(
        self, provider: Provider, credentials: Mapping[str, str]
    ) -> dict[str, str]:
        """Validate presence of every required field and encrypt them into slots."""
        missing = [
            name for name in REQUIRED_CREDENTIALS[provider] if not credentials.get(name)
        ]
        if missing:
            raise CredentialError(f"Missing {provider} credential(s): {', '.join(missing)}")
        return {
            credential_slot(provider, name): self.cipher.encrypt(value)
            for name, value in credentials.items()
            if name in REQUIRED_CREDENTIALS[provider] and value
        }

    def decrypt_credentials(
        self, provider: Provider, stored: Mapping[str, str]
    ) -> dict[str, str]:
        creds: dict[str, str] = {}
        for name in REQUIRED_CREDENTIALS[provider]:
            token = stored.get(credential_slot(provider, name))
            if not token:
                raise CredentialError(
                    f"{provider} credentials are incomplete: {name} has not been stored"
                )
            creds[name] = self.cipher.decrypt(token)
        return creds

    def build(
        self,
        provider: Provider,
        credentials: Credentials,
        preferences: Mapping[str, str] | None = None,
    ) -> ProviderDriver:
        prefs = preferences or {}
        log.debug("Building driver for {provider}", provider=provider.value)
        if builder := self._builders.get(provider):
            return builder(self.settings, credentials, prefs)
        return _build_default(provider, self.settings, credentials, prefs)
