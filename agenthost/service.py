"""Service facade: every external operation in one place.

The HTTP layer is a thin translation of requests into these calls and of
exceptions into status codes; nothing here knows about HTTP.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Mapping
from typing import Any

from loguru import logger

from agenthost.api.model import (
    RESTARTABLE,
    InstanceConfig,
    Provider,
    SetupRecord,
    SetupStatus,
    VmRecord,
)
from agenthost.config import Settings
from agenthost.core.exceptions import (
    ConfigurationError,
    InstanceNotFoundError,
    UnsupportedProviderError,
)
from agenthost.infra.crypto import CredentialCipher, FernetCipher
from agenthost.orchestrator.pipeline import Orchestrator, SetupRequest
from agenthost.orchestrator.tasks import ADMIN_PASSWORD, SSH_PRIVATE_KEY, ProgressCallback
from agenthost.providers.base import SupportsScreenshot
from agenthost.providers.registry import DriverRegistry
from agenthost.session.manager import SessionManager
from agenthost.session.registry import SessionRegistry
from agenthost.session.streamer import OutputStreamer
from agenthost.store import InMemoryStatusStore, StatusStore

log = logger.bind(component="service")

# providerConfig keys accepted on instance creation, camelCase or snake_case
_PREFERENCE_KEYS = {
    "size": "size",
    "instanceType": "size",
    "vmSize": "size",
    "region": "region",
    "ram": "ram",
    "cpu": "cpu",
    "template": "template",
    "templateId": "template",
    "timeout": "timeout",
}


def parse_provider(value: str) -> Provider:
    try:
        return Provider(value)
    except ValueError as e:
        valid = ", ".join(p.value for p in Provider)
        raise ConfigurationError(f"Unknown provider '{value}'. Valid: {valid}") from e


def normalize_preferences(raw: Mapping[str, Any] | None) -> dict[str, str]:
    prefs: dict[str, str] = {}
    for key, value in (raw or {}).items():
        if (target := _PREFERENCE_KEYS.get(key)) and value not in (None, ""):
            prefs[target] = str(value)
    return prefs


def _empty_status() -> dict[str, Any]:
    return {
        "status": SetupStatus.PENDING.value,
        "vmCreated": False,
        "agentInstalled": False,
        "channelConfigured": False,
        "gatewayStarted": False,
    }


class AgentHostService:
    """Instances, credentials, setup and terminal sessions for every user."""

    def __init__(
        self,
        store: StatusStore,
        drivers: DriverRegistry,
        orchestrator: Orchestrator,
        sessions: SessionManager,
        streamer: OutputStreamer,
    ) -> None:
        self.store = store
        self.drivers = drivers
        self.orchestrator = orchestrator
        self.sessions = sessions
        self.streamer = streamer

    @classmethod
    def create(
        cls,
        settings: Settings,
        *,
        store: StatusStore | None = None,
        cipher: CredentialCipher | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentHostService:
        store = store or InMemoryStatusStore()
        cipher = cipher or FernetCipher.from_key(settings.encryption_key)
        drivers = DriverRegistry(settings, cipher)
        registry = SessionRegistry()
        return cls(
            store=store,
            drivers=drivers,
            orchestrator=Orchestrator(store, drivers, settings, on_progress),
            sessions=SessionManager(registry, store, cipher, settings),
            streamer=OutputStreamer(registry, settings.stream),
        )

    @property
    def cipher(self) -> CredentialCipher:
        return self.drivers.cipher

    async def close(self) -> None:
        await self.orchestrator.close()
        await self.sessions.close()

    async def _provider_credentials(self, user_id: str, provider: Provider) -> dict[str, str]:
        record = await self.store.get(user_id)
        return self.drivers.decrypt_credentials(provider, record.credentials if record else {})

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def create_instance(
        self,
        user_id: str,
        name: str,
        provider: str | Provider,
        provider_config: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Declare a machine, and launch it right away when ``provisionNow`` is set.

        Raises:
            ConfigurationError: Missing name, unknown provider or missing credentials.
            PlanLimitError: The provider plan does not allow this machine.
        """
        if not name:
            raise ConfigurationError("Name and provider are required")
        provider = parse_provider(provider) if isinstance(provider, str) else provider
        provider_config = provider_config or {}
        prefs = normalize_preferences(provider_config)
        options = {k: v for k, v in prefs.items() if k not in ("size", "region")}

        vm = VmRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=name,
            provider=provider,
            config=InstanceConfig(
                name=name,
                size=prefs.get("size", ""),
                region=prefs.get("region", ""),
                options=options,
            ),
        )

        if provider_config.get("provisionNow") or provider_config.get("provision_now"):
            creds = await self._provider_credentials(user_id, provider)
            driver = self.drivers.build(provider, creds, prefs)
            try:
                config = driver.instance_config(name, prefs)
                instance, secret = await driver.create_instance(config)
            finally:
                await driver.adapter.close()
            vm.config = config
            vm.instance = instance
            vm.vm_created = True
            if secret.ssh_private_key:
                vm.credentials[SSH_PRIVATE_KEY] = self.cipher.encrypt(secret.ssh_private_key)
            if secret.admin_password:
                vm.credentials[ADMIN_PASSWORD] = self.cipher.encrypt(secret.admin_password)
            log.bind(user_id=user_id, provider=provider.value).info(
                "Provisioned {name} immediately as {id}", name=name, id=instance.id
            )

        await self.store.save_vm(vm)
        return vm.to_dict()

    async def list_instances(self, user_id: str) -> list[dict[str, Any]]:
        return [vm.to_dict() for vm in await self.store.list_vms(user_id)]

    async def delete_instance(self, user_id: str, vm_id: str) -> None:
        """Forget a declared machine, terminating it at the provider if it exists.

        Raises:
            InstanceNotFoundError: Unknown ``vm_id``.
        """
        vm = await self.store.get_vm(user_id, vm_id)
        if vm is None:
            raise InstanceNotFoundError(f"Instance {vm_id} not found")

        if vm.instance is not None:
            for session in self.sessions.registry.for_user(user_id):
                if session.instance_id == vm.instance.id:
                    await self.sessions.registry.remove(session.id)

            creds = await self._provider_credentials(user_id, vm.provider)
            driver = self.drivers.build(vm.provider, creds, {"region": vm.config.region})
            try:
                await driver.adapter.delete_instance(vm.instance.id)
            except InstanceNotFoundError:
                log.info("Instance {id} was already gone at the provider", id=vm.instance.id)
            finally:
                await driver.adapter.close()

        await self.store.delete_vm(user_id, vm_id)

    # -------------------------------------------------------------------------
    # Credentials and setup
    # -------------------------------------------------------------------------

    async def store_credentials(
        self,
        user_id: str,
        provider: str | Provider,
        credentials: Mapping[str, str],
        *,
        validate: bool = False,
        preferences: Mapping[str, Any] | None = None,
    ) -> None:
        """Encrypt and keep provider credentials, optionally checking them first.

        Raises:
            CredentialError: A required field is missing.
            TerminalProviderError: ``validate`` is set and the provider rejects them.
        """
        provider = parse_provider(provider) if isinstance(provider, str) else provider
        encrypted = self.drivers.encrypt_credentials(provider, credentials)

        if validate:
            driver = self.drivers.build(provider, credentials)
            try:
                await driver.adapter.validate_credentials()
            finally:
                await driver.adapter.close()

        record = await self.store.get(user_id)
        if record is None:
            record = await self.store.create(SetupRecord(user_id=user_id, provider=provider))

        changes: dict[str, Any] = {}
        if record.status in RESTARTABLE:
            changes["provider"] = provider
        await self.store.merge(
            user_id,
            credentials=encrypted,
            preferences=normalize_preferences(preferences),
            **changes,
        )
        log.bind(user_id=user_id, provider=provider.value).info("Stored provider credentials")

    async def start_setup(
        self,
        user_id: str,
        credential_key: str,
        *,
        messaging_token: str | None = None,
        messaging_user_id: str | None = None,
        instance_id: str | None = None,
        provider: str | Provider | None = None,
    ) -> dict[str, str]:
        if isinstance(provider, str):
            provider = parse_provider(provider)
        task = await self.orchestrator.start(
            SetupRequest(
                user_id=user_id,
                credential_key=credential_key,
                provider=provider,
                messaging_token=messaging_token,
                messaging_user_id=messaging_user_id,
                vm_id=instance_id,
            )
        )
        return {"setupId": task.setup_id, "provider": task.provider.value}

    async def get_setup_status(self, user_id: str) -> dict[str, Any]:
        record = await self.store.get(user_id)
        return record.status_view() if record else _empty_status()

    async def get_screenshot(self, user_id: str, vm_id: str | None = None) -> dict[str, str]:
        """Capture the desktop of an Orgo machine: the given VM, else the setup's instance.

        Raises:
            InstanceNotFoundError: Unknown VM, or no machine has been created yet.
            ConfigurationError: The machine is not an Orgo computer.
            ProviderTimeoutError: Orgo did not answer in time.
        """
        if vm_id:
            vm = await self.store.get_vm(user_id, vm_id)
            if vm is None:
                raise InstanceNotFoundError("VM not found")
            provider = vm.provider
            instance_id = vm.instance.id if vm.instance else None
        else:
            record = await self.store.get(user_id)
            provider = record.provider if record else Provider.ORGO
            instance_id = record.instance_id if record else None
        if provider is not Provider.ORGO:
            raise ConfigurationError("Screenshot only available for Orgo VMs")
        if not instance_id:
            raise InstanceNotFoundError("VM not created yet")

        creds = await self._provider_credentials(user_id, provider)
        adapter = self.drivers.build(provider, creds).adapter
        try:
            if not isinstance(adapter, SupportsScreenshot):
                raise UnsupportedProviderError(f"{provider.value} machines cannot be captured")
            shot = await adapter.screenshot(
                instance_id, timeout=self.drivers.settings.timeouts.screenshot
            )
        finally:
            await adapter.close()
        return shot.to_dict()

    # -------------------------------------------------------------------------
    # Terminal
    # -------------------------------------------------------------------------

    async def terminal_connect(
        self, user_id: str, cols: int = 80, rows: int = 24, instance_id: str | None = None
    ) -> str:
        return await self.sessions.connect(user_id, cols, rows, instance_id)

    def terminal_stream(self, user_id: str, session_id: str) -> AsyncIterator[str]:
        return self.streamer.stream(user_id, session_id)

    async def terminal_input(self, user_id: str, session_id: str, data: str) -> None:
        await self.sessions.write(user_id, session_id, data)

    def terminal_resize(self, user_id: str, session_id: str, cols: int, rows: int) -> None:
        self.sessions.resize(user_id, session_id, cols, rows)

    async def terminal_disconnect(self, user_id: str, session_id: str) -> None:
        await self.sessions.disconnect(user_id, session_id)
