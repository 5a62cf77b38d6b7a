from __future__ import annotations

import asyncio
import json

import pytest

from agenthost.api.model import (
    Instance,
    InstanceConfig,
    Provider,
    SetupRecord,
    VmRecord,
)
from agenthost.channel.base import ChannelState
from agenthost.config import Settings
from agenthost.core.exceptions import (
    ChannelConnectionError,
    ConfigurationError,
    InstanceNotFoundError,
    SessionNotFoundError,
    SessionOwnershipError,
    UnsupportedProviderError,
)
from agenthost.infra.crypto import FernetCipher
from agenthost.orchestrator.tasks import SSH_PRIVATE_KEY
from agenthost.session.manager import SessionManager
from agenthost.session.registry import SessionRegistry, owns
from agenthost.store import InMemoryStatusStore
from tests.conftest import USER, FakeChannel

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class ChannelFactory:
    def __init__(self) -> None:
        self.built: list[tuple[str, str, str]] = []
        self.channels: list[FakeChannel] = []
        self.open_error: BaseException | None = None
        self.open_delay = 0.0

    def __call__(self, host: str, username: str, private_key: str) -> FakeChannel:
        self.built.append((host, username, private_key))
        channel = FakeChannel(label=host, open_error=self.open_error, open_delay=self.open_delay)
        self.channels.append(channel)
        return channel


@pytest.fixture
def factory() -> ChannelFactory:
    return ChannelFactory()


@pytest.fixture
def sessions(
    store: InMemoryStatusStore, cipher: FernetCipher, settings: Settings, factory: ChannelFactory
) -> SessionManager:
    return SessionManager(SessionRegistry(), store, cipher, settings, channel_factory=factory)


async def provisioned(
    store: InMemoryStatusStore,
    cipher: FernetCipher,
    provider: Provider = Provider.AWS,
    ip: str | None = "54.1.2.3",
) -> SetupRecord:
    return await store.create(
        SetupRecord(
            user_id=USER,
            provider=provider,
            instance_id="i-123",
            public_ip=ip,
            credentials={SSH_PRIVATE_KEY: cipher.encrypt("PEM")},
        )
    )


class TestConnect:
    async def test_opens_shell_on_provisioned_instance(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)

        session_id = await sessions.connect(USER, cols=120, rows=40)

        assert owns(USER, session_id)
        assert factory.built == [("54.1.2.3", "ubuntu", "PEM")]
        channel = factory.channels[0]
        assert channel.state == ChannelState.INTERACTIVE
        assert channel.shell is not None and channel.shell.size == (120, 40)
        session = sessions.registry.get(session_id)
        assert session is not None and session.instance_id == "i-123"

    async def test_azure_uses_its_own_login_user(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher, Provider.AZURE)

        await sessions.connect(USER)

        assert factory.built[0][1] == "agenthost"

    async def test_connects_to_declared_vm(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await store.save_vm(
            VmRecord(
                id="box",
                user_id=USER,
                name="box",
                provider=Provider.AWS,
                config=InstanceConfig(name="box", size="t3.micro"),
                instance=Instance(
                    id="i-9", provider=Provider.AWS, name="box", status="running", ip="3.3.3.3"
                ),
                credentials={SSH_PRIVATE_KEY: cipher.encrypt("VM-PEM")},
            )
        )

        await sessions.connect(USER, instance_id="box")

        assert factory.built == [("3.3.3.3", "ubuntu", "VM-PEM")]

    async def test_ids_are_unique_per_connect(
        self, sessions: SessionManager, store: InMemoryStatusStore, cipher: FernetCipher
    ) -> None:
        await provisioned(store, cipher)

        first = await sessions.connect(USER)
        second = await sessions.connect(USER)

        assert first != second
        assert int(second.rsplit("-", 1)[1]) > int(first.rsplit("-", 1)[1])

    async def test_reconnect_evicts_previous_session(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)

        first = await sessions.connect(USER)
        second = await sessions.connect(USER)

        assert first not in sessions.registry
        assert second in sessions.registry
        assert len(sessions.registry) == 1
        assert factory.channels[0].state == ChannelState.DISCONNECTED

    async def test_concurrent_connects_leave_one_session(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)
        factory.open_delay = 0.01

        first, second = await asyncio.gather(sessions.connect(USER), sessions.connect(USER))

        assert [s.id for s in sessions.registry.for_user(USER)] == [second]
        assert first not in sessions.registry
        assert factory.channels[0].state == ChannelState.DISCONNECTED
        assert factory.channels[1].state == ChannelState.INTERACTIVE

    async def test_command_api_provider_is_unsupported(
        self, sessions: SessionManager, store: InMemoryStatusStore, cipher: FernetCipher
    ) -> None:
        await provisioned(store, cipher, Provider.ORGO)

        with pytest.raises(UnsupportedProviderError):
            await sessions.connect(USER)

    async def test_nothing_provisioned(self, sessions: SessionManager) -> None:
        with pytest.raises(InstanceNotFoundError):
            await sessions.connect(USER)

    async def test_missing_address(
        self, sessions: SessionManager, store: InMemoryStatusStore, cipher: FernetCipher
    ) -> None:
        await provisioned(store, cipher, ip=None)

        with pytest.raises(ConfigurationError):
            await sessions.connect(USER)

    async def test_failed_connect_closes_channel(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)
        factory.open_error = ConnectionRefusedError("refused")

        with pytest.raises(ChannelConnectionError):
            await sessions.connect(USER)

        assert len(sessions.registry) == 0
        assert factory.channels[0].state == ChannelState.DISCONNECTED


class TestSessionIO:
    async def test_output_lands_in_buffer(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)
        session_id = await sessions.connect(USER)
        shell = factory.channels[0].shell
        assert shell is not None

        shell.on_output("$ ")

        session = sessions.registry.get(session_id)
        assert session is not None
        [chunk] = session.buffer.read_from(0)
        assert json.loads(chunk.data) == {"type": "output", "data": "$ "}

    async def test_write_and_resize_reach_shell(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)
        session_id = await sessions.connect(USER)

        await sessions.write(USER, session_id, "ls\r")
        sessions.resize(USER, session_id, 100, 30)

        shell = factory.channels[0].shell
        assert shell is not None
        assert shell.written == ["ls\r"]
        assert shell.size == (100, 30)

    async def test_foreign_session_is_rejected(
        self, sessions: SessionManager, store: InMemoryStatusStore, cipher: FernetCipher
    ) -> None:
        await provisioned(store, cipher)
        session_id = await sessions.connect(USER)

        with pytest.raises(SessionOwnershipError):
            await sessions.write("intruder", session_id, "rm -rf /\r")

    async def test_remote_close_ends_session_and_releases_channel(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)
        session_id = await sessions.connect(USER)
        shell = factory.channels[0].shell
        assert shell is not None

        shell.on_close("exit status 0")

        session = sessions.registry.get(session_id)
        assert session is not None and not session.alive
        for _ in range(5):
            await asyncio.sleep(0)
        assert factory.channels[0].state == ChannelState.DISCONNECTED
        last = json.loads(session.buffer.read_from(0)[-1].data)
        assert last["type"] == "system"
        assert "Connection closed" in last["data"]
        with pytest.raises(SessionNotFoundError):
            await sessions.write(USER, session_id, "x")

    async def test_disconnect_removes_session(
        self,
        sessions: SessionManager,
        store: InMemoryStatusStore,
        cipher: FernetCipher,
        factory: ChannelFactory,
    ) -> None:
        await provisioned(store, cipher)
        session_id = await sessions.connect(USER)

        await sessions.disconnect(USER, session_id)

        assert session_id not in sessions.registry
        assert factory.channels[0].state == ChannelState.DISCONNECTED
        with pytest.raises(SessionNotFoundError):
            await sessions.disconnect(USER, session_id)

    async def test_close_drops_everything(
        self, sessions: SessionManager, store: InMemoryStatusStore, cipher: FernetCipher
    ) -> None:
        await provisioned(store, cipher)
        await sessions.connect(USER)

        await sessions.close()

        assert len(sessions.registry) == 0
