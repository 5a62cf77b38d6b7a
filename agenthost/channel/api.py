"""Channel for providers that run commands through their own API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agenthost.channel.base import (
    BaseChannel,
    CloseCallback,
    CommandResult,
    InteractiveShell,
    OutputCallback,
)
from agenthost.core.exceptions import (
    ChannelConnectionError,
    TransientProviderError,
    UnsupportedProviderError,
)
from agenthost.infra.retry import RetryPolicy

if TYPE_CHECKING:
    from agenthost.providers.base import CloudAdapter


class CommandApiChannel(BaseChannel):
    """Executes through ``adapter.run_remote_command``. No interactive shell."""

    def __init__(
        self,
        adapter: CloudAdapter,
        instance_id: str,
        *,
        connect_timeout: float = 30.0,
        command_timeout: float | None = None,
        run_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(
            instance_id,
            connect_timeout=connect_timeout,
            command_timeout=command_timeout,
            run_policy=run_policy,
        )
        self._adapter = adapter
        self._instance_id = instance_id

    async def _open(self) -> None:
        try:
            await self._adapter.get_instance(self._instance_id)
        except TransientProviderError as e:
            raise ChannelConnectionError(str(e)) from e

    async def _exec(self, command: str, timeout: float | None) -> CommandResult:
        try:
            return await self._adapter.run_remote_command(
                self._instance_id, command, timeout=timeout
            )
        except TransientProviderError as e:
            raise ChannelConnectionError(str(e)) from e

    async def _attach(
        self, on_output: OutputCallback, cols: int, rows: int, on_close: CloseCallback
    ) -> InteractiveShell:
        raise UnsupportedProviderError(
            f"{self._adapter.provider} machines do not support interactive terminals"
        )

    async def _shutdown(self) -> None:
        pass
