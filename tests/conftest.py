from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

import pytest
from cryptography.fernet import Fernet

from agenthost.api.model import (
    Instance,
    InstanceConfig,
    InstanceSecret,
    Provider,
    Screenshot,
    SetupRecord,
)
from agenthost.channel.base import (
    BaseChannel,
    CloseCallback,
    CommandResult,
    OutputCallback,
    default_run_policy,
)
from agenthost.config import BootDelays, Retries, Settings, Timeouts
from agenthost.core.exceptions import InstanceNotFoundError, UnsupportedProviderError
from agenthost.infra.crypto import FernetCipher
from agenthost.observability.logging import LogConfig
from agenthost.providers import scripts
from agenthost.providers.driver import ProviderDriver
from agenthost.providers.registry import DriverRegistry
from agenthost.store import InMemoryStatusStore

USER = "user-1"

type Responder = Callable[[str], CommandResult]


def default_responder(command: str) -> CommandResult:
    """Answers like a freshly provisioned machine where everything works."""
    if command == 'echo "ready"':
        return CommandResult("ready\n", 0)
    if command == 'echo "$HOME"':
        return CommandResult("/home/agent\n", 0)
    if "package.json" in command:
        return CommandResult("2026.2.1\n", 0)
    if command.startswith("pgrep"):
        return CommandResult(f"{scripts.PROCESS_MARKER}\n", 0)
    if "netstat" in command:
        return CommandResult(f"{scripts.PORT_MARKER}\n", 0)
    if command.startswith("nohup"):
        return CommandResult("4242\n", 0)
    return CommandResult("", 0)


# =============================================================================
# Fakes
# =============================================================================


class FakeShell:
    def __init__(self, on_output: OutputCallback, on_close: CloseCallback) -> None:
        self.on_output = on_output
        self.on_close = on_close
        self.written: list[str] = []
        self.size: tuple[int, int] | None = None
        self.closed = False

    async def write(self, data: str) -> None:
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    async def close(self) -> None:
        self.closed = True


class FakeChannel(BaseChannel):
    """In-memory channel. ``responder`` may raise to simulate transport failures."""

    def __init__(
        self,
        responder: Responder = default_responder,
        *,
        label: str = "fake-host",
        open_error: BaseException | None = None,
        open_delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("run_policy", default_run_policy(3, 0.0))
        super().__init__(label, **kwargs)
        self.responder = responder
        self.open_error = open_error
        self.open_delay = open_delay
        self.commands: list[str] = []
        self.opens = 0
        self.shell: FakeShell | None = None

    async def _open(self) -> None:
        self.opens += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error

    async def _exec(self, command: str, timeout: float | None) -> CommandResult:
        self.commands.append(command)
        return self.responder(command)

    async def _attach(
        self, on_output: OutputCallback, cols: int, rows: int, on_close: CloseCallback
    ) -> FakeShell:
        self.shell = FakeShell(on_output, on_close)
        self.shell.resize(cols, rows)
        return self.shell

    async def _shutdown(self) -> None:
        pass

    def ran(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]


class FakeAdapter:
    provider = Provider.ORGO

    def __init__(self) -> None:
        self.instances: dict[str, Instance] = {}
        self.created: list[InstanceConfig] = []
        self.deleted: list[str] = []
        self.create_error: Exception | None = None
        self.validate_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.found: Instance | None = None
        self.closed = 0
        self.shot = Screenshot(image="aGVsbG8=", image_url=None)
        self.captured: list[tuple[str, float | None]] = []

    def add(self, instance_id: str, name: str = "keen-wolf") -> Instance:
        instance = Instance(
            id=instance_id, provider=self.provider, name=name, status="running", ip="10.0.0.5"
        )
        self.instances[instance_id] = instance
        return instance

    async def create_instance(self, config: InstanceConfig) -> tuple[Instance, InstanceSecret]:
        self.created.append(config)
        if self.gate is not None:
            await self.gate.wait()
        if self.create_error is not None:
            raise self.create_error
        instance = self.add(f"vm-{len(self.created)}", config.name)
        return instance, InstanceSecret(ssh_private_key="PRIVATE KEY")

    async def get_instance(self, instance_id: str) -> Instance:
        if instance_id not in self.instances:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        return self.instances[instance_id]

    async def find_instance(self, name: str) -> Instance | None:
        return self.found

    async def delete_instance(self, instance_id: str) -> None:
        if self.instances.pop(instance_id, None) is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        self.deleted.append(instance_id)

    async def run_remote_command(
        self, instance_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        raise UnsupportedProviderError("commands go through the fake channel")

    async def screenshot(self, instance_id: str, timeout: float | None = None) -> Screenshot:
        self.captured.append((instance_id, timeout))
        return self.shot

    async def validate_credentials(self) -> None:
        if self.validate_error is not None:
            raise self.validate_error

    async def close(self) -> None:
        self.closed += 1


class FakeDriver(ProviderDriver):
    provider = Provider.ORGO
    prepares_package_manager = False

    def __init__(self, adapter: Any, settings: Settings, channel: BaseChannel) -> None:
        super().__init__(adapter, settings)
        self.channel = channel

    def instance_config(self, name: str, preferences: Mapping[str, Any]) -> InstanceConfig:
        return InstanceConfig(
            name=name,
            size=preferences.get("size", "small"),
            region=preferences.get("region", ""),
        )

    def open_channel(self, instance: Instance, secret: InstanceSecret | None) -> BaseChannel:
        return self.channel


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Production shape with every sleep set to zero."""
    return Settings(
        timeouts=Timeouts(
            readiness_interval=0,
            gateway_interval=0,
            gateway_start_grace=0,
            gateway_kill_grace=0,
        ),
        retries=Retries(tooling_delay=0, channel_step=0, create_delay=0, create_recheck_delay=0),
        boot=BootDelays(orgo=0, aws=0, azure=0, e2b=0),
        logging=LogConfig(file="", console=False),
    )


@pytest.fixture
def cipher() -> FernetCipher:
    return FernetCipher(Fernet.generate_key())


@pytest.fixture
def store() -> InMemoryStatusStore:
    return InMemoryStatusStore()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def registry(
    settings: Settings, cipher: FernetCipher, adapter: FakeAdapter, channel: FakeChannel
) -> DriverRegistry:
    drivers = DriverRegistry(settings, cipher)
    drivers.register(
        Provider.ORGO, lambda s, _creds, _prefs: FakeDriver(adapter, s, channel)
    )
    return drivers


@pytest.fixture
async def seeded(store: InMemoryStatusStore, registry: DriverRegistry) -> SetupRecord:
    """A user who has stored Orgo credentials and nothing else."""
    return await store.create(
        SetupRecord(
            user_id=USER,
            provider=Provider.ORGO,
            credentials=registry.encrypt_credentials(Provider.ORGO, {"api_key": "orgo-key"}),
        )
    )
