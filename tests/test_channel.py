from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from agenthost.api.model import Instance, Provider
from agenthost.channel.api import CommandApiChannel
from agenthost.channel.base import ChannelState, CommandResult, is_connection_error
from agenthost.core.exceptions import (
    ChannelBusyError,
    ChannelConnectionError,
    ChannelTimeoutError,
    TransientProviderError,
    UnsupportedProviderError,
)
from tests.conftest import FakeChannel

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class DropsConnection:
    """Responder that fails at the transport level a fixed number of times."""

    def __init__(self, drops: int) -> None:
        self.drops = drops
        self.calls = 0

    def __call__(self, command: str) -> CommandResult:
        self.calls += 1
        if self.calls <= self.drops:
            raise ConnectionResetError("ECONNRESET")
        return CommandResult("done\n", 0)


class TestLifecycle:
    async def test_connect_and_close(self) -> None:
        channel = FakeChannel()
        assert channel.state == ChannelState.DISCONNECTED

        await channel.connect()
        assert channel.state == ChannelState.READY

        await channel.close()
        await channel.close()
        assert channel.state == ChannelState.DISCONNECTED

    async def test_connect_is_idempotent(self) -> None:
        channel = FakeChannel()
        await channel.connect()
        await channel.connect()
        assert channel.opens == 1

    async def test_connect_timeout(self) -> None:
        class SlowChannel(FakeChannel):
            async def _open(self) -> None:
                await asyncio.sleep(10)

        channel = SlowChannel(connect_timeout=0.01)

        with pytest.raises(ChannelTimeoutError):
            await channel.connect()
        assert channel.state == ChannelState.FAILED

    async def test_refused_connection(self) -> None:
        channel = FakeChannel(open_error=ConnectionRefusedError("refused"))

        with pytest.raises(ChannelConnectionError, match="refused"):
            await channel.connect()
        assert channel.state == ChannelState.FAILED

    async def test_context_manager(self) -> None:
        async with FakeChannel() as channel:
            result = await channel.execute("echo hi")
        assert result.ok
        assert channel.state == ChannelState.DISCONNECTED


class TestExecute:
    async def test_requires_connection(self) -> None:
        with pytest.raises(ChannelConnectionError):
            await FakeChannel().execute("ls")

    async def test_non_zero_exit_is_returned(self) -> None:
        channel = FakeChannel(lambda _: CommandResult("nope", 2))
        await channel.connect()

        result = await channel.execute("false")

        assert not result.ok
        assert result.exit_code == 2
        assert channel.state == ChannelState.READY

    async def test_busy_while_interactive(self) -> None:
        channel = FakeChannel()
        await channel.connect()
        await channel.attach_interactive(lambda _: None)

        assert channel.state == ChannelState.INTERACTIVE
        with pytest.raises(ChannelBusyError):
            await channel.execute("ls")

    async def test_shell_close_returns_channel_to_ready(self) -> None:
        reasons: list[str | None] = []
        channel = FakeChannel()
        await channel.connect()
        await channel.attach_interactive(lambda _: None, on_close=reasons.append)

        assert channel.shell is not None
        channel.shell.on_close(None)

        assert channel.state == ChannelState.READY
        assert reasons == [None]


class TestRun:
    async def test_reconnects_after_transport_failure(self) -> None:
        responder = DropsConnection(2)
        channel = FakeChannel(responder)

        result = await channel.run("apt-get update", "Update package index")

        assert result.ok
        assert responder.calls == 3
        assert channel.opens == 3

    async def test_failed_command_is_not_retried(self) -> None:
        calls: list[str] = []

        def respond(command: str) -> CommandResult:
            calls.append(command)
            return CommandResult("E: no space", 100)

        result = await FakeChannel(respond).run("apt-get install git")

        assert result.exit_code == 100
        assert len(calls) == 1

    async def test_exhausted_transport_retries_become_failed_result(self) -> None:
        channel = FakeChannel(DropsConnection(10))

        result = await channel.run("ls")

        assert result.exit_code == -1
        assert "ECONNRESET" in result.output

    def test_connection_error_classification(self) -> None:
        assert is_connection_error(ChannelConnectionError("lost"))
        assert is_connection_error(RuntimeError("read ECONNRESET"))
        assert not is_connection_error(ValueError("bad input"))

    def test_unrelated_errors_mentioning_ssh_are_not_transport_failures(self) -> None:
        assert not is_connection_error(RuntimeError("package openssh-server has no candidate"))
        assert not is_connection_error(FileNotFoundError("/home/agent/.ssh/config"))


class TestCommandApiChannel:
    @pytest.fixture
    def adapter(self) -> AsyncMock:
        adapter = AsyncMock()
        adapter.provider = Provider.ORGO
        adapter.get_instance.return_value = Instance(
            id="c-1", provider=Provider.ORGO, name="box", status="running"
        )
        adapter.run_remote_command.return_value = CommandResult("ready\n", 0)
        return adapter

    async def test_executes_through_adapter(self, adapter: AsyncMock) -> None:
        async with CommandApiChannel(adapter, "c-1") as channel:
            result = await channel.execute('echo "ready"', timeout=5)

        assert result.output == "ready\n"
        adapter.run_remote_command.assert_awaited_once_with("c-1", 'echo "ready"', timeout=5)

    async def test_transient_errors_become_connection_errors(self, adapter: AsyncMock) -> None:
        adapter.run_remote_command.side_effect = TransientProviderError("502")
        channel = CommandApiChannel(adapter, "c-1")
        await channel.connect()

        with pytest.raises(ChannelConnectionError):
            await channel.execute("ls")

    async def test_no_interactive_shell(self, adapter: AsyncMock) -> None:
        channel = CommandApiChannel(adapter, "c-1")
        await channel.connect()

        with pytest.raises(UnsupportedProviderError):
            await channel.attach_interactive(lambda _: None)
