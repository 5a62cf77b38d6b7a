"""Remote execution channel contract and shared state machine.

A channel is the one way the orchestrator and the terminal sessions talk to
a machine. Implementations only provide the transport primitives
(``_open``, ``_exec``, ``_attach``, ``_shutdown``); state tracking,
timeouts, single-owner locking and the reconnecting command runner live
here.

States:

    disconnected -> connecting -> ready -> executing -> ready
                                 ready -> interactive -> ready
    any -> disconnected (close)        connecting|executing -> failed
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from loguru import logger

from agenthost.core.exceptions import (
    ChannelBusyError,
    ChannelConnectionError,
    ChannelTimeoutError,
)
from agenthost.infra.retry import (
    RetryPolicy,
    any_of,
    linear,
    on_exception,
    on_exception_message,
)

type OutputCallback = Callable[[str], None]
type CloseCallback = Callable[[str | None], None]


class ChannelState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    EXECUTING = "executing"
    INTERACTIVE = "interactive"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Output of one command, stdout and stderr interleaved in arrival order."""

    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.output.strip().splitlines()[-lines:])


class InteractiveShell(Protocol):
    async def write(self, data: str) -> None: ...
    def resize(self, cols: int, rows: int) -> None: ...
    async def close(self) -> None: ...


is_connection_error = any_of(
    on_exception((ChannelConnectionError, ConnectionError, TimeoutError)),
    on_exception_message("ECONNREFUSED", "ETIMEDOUT", "ECONNRESET", "timed out"),
)
"""True for failures of the transport itself, as opposed to a command that ran and failed."""


def default_run_policy(attempts: int = 3, step: float = 5.0) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, backoff=linear(step), retry_on=is_connection_error)


class BaseChannel(ABC):
    """State machine shared by every channel implementation.

    Args:
        label: Human readable target (host or instance id) for logs and errors.
        connect_timeout: Deadline for ``connect``.
        command_timeout: Default deadline for ``execute``.
        run_policy: Policy used by ``run``; reconnects between attempts.
    """

    def __init__(
        self,
        label: str,
        *,
        connect_timeout: float = 30.0,
        command_timeout: float | None = None,
        run_policy: RetryPolicy | None = None,
    ) -> None:
        self.label = label
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._run_policy = run_policy or default_run_policy()
        self._state = ChannelState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._shell: InteractiveShell | None = None
        self._log = logger.bind(component="channel", instance_id=label)

    @property
    def state(self) -> ChannelState:
        return self._state

    # -------------------------------------------------------------------------
    # Transport primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _open(self) -> None: ...

    @abstractmethod
    async def _exec(self, command: str, timeout: float | None) -> CommandResult: ...

    @abstractmethod
    async def _attach(
        self, on_output: OutputCallback, cols: int, rows: int, on_close: CloseCallback
    ) -> InteractiveShell: ...

    @abstractmethod
    async def _shutdown(self) -> None: ...

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the channel within ``connect_timeout``.

        Raises:
            ChannelTimeoutError: The deadline passed.
            ChannelConnectionError: The transport refused or dropped the connection.
        """
        if self._state in (ChannelState.READY, ChannelState.EXECUTING, ChannelState.INTERACTIVE):
            return

        self._state = ChannelState.CONNECTING
        self._log.debug("Connecting")
        try:
            await asyncio.wait_for(self._open(), timeout=self.connect_timeout)
        except TimeoutError as e:
            self._state = ChannelState.FAILED
            raise ChannelTimeoutError(
                f"Connection to {self.label} timed out after {self.connect_timeout:.0f}s"
            ) from e
        except OSError as e:
            self._state = ChannelState.FAILED
            raise ChannelConnectionError(f"Connection to {self.label} failed: {e}") from e
        except BaseException:
            self._state = ChannelState.FAILED
            raise

        self._state = ChannelState.READY
        self._log.debug("Connected")

    async def close(self) -> None:
        """Release the channel. Safe to call any number of times."""
        if self._state == ChannelState.DISCONNECTED and self._shell is None:
            return
        shell, self._shell = self._shell, None
        try:
            if shell is not None:
                await shell.close()
            await self._shutdown()
        finally:
            self._state = ChannelState.DISCONNECTED
            self._log.debug("Closed")

    async def __aenter__(self) -> BaseChannel:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run one command and wait for it to finish.

        A non-zero exit is returned, not raised.

        Raises:
            ChannelBusyError: An interactive shell owns the channel.
            ChannelConnectionError: Not connected, or the transport failed mid-command.
        """
        async with self._lock:
            if self._state == ChannelState.INTERACTIVE:
                raise ChannelBusyError(f"Channel to {self.label} is attached to a shell")
            if self._state != ChannelState.READY:
                raise ChannelConnectionError(f"Channel to {self.label} is {self._state}")

            self._state = ChannelState.EXECUTING
            try:
                result = await self._exec(command, timeout or self.command_timeout)
            except TimeoutError as e:
                self._state = ChannelState.FAILED
                raise ChannelTimeoutError(f"Command on {self.label} timed out") from e
            except BaseException:
                self._state = ChannelState.FAILED
                raise
            self._state = ChannelState.READY
            return result

    async def run(
        self, command: str, step: str = "command", timeout: float | None = None
    ) -> CommandResult:
        """Execute with the channel's retry policy.

        Transport failures close the channel, back off and reconnect before the
        next attempt. A command that ran and exited non-zero is returned as is.
        When transport retries run out the last error comes back as a failed
        CommandResult so step logic has one failure shape to handle.
        """

        async def attempt() -> CommandResult:
            if self._state in (ChannelState.DISCONNECTED, ChannelState.FAILED):
                await self.connect()
            return await self.execute(command, timeout)

        async def reconnect(_: int, error: Exception) -> None:
            self._log.info(
                "Reconnecting after {kind}: {error}", kind=type(error).__name__, error=error
            )
            await self.close()

        policy = self._run_policy.with_name(step)
        try:
            result = await policy.run(attempt, on_retry=reconnect)
        except Exception as e:
            if not is_connection_error(e):
                raise
            self._log.warning(
                "{step} gave up after {n} attempts: {error}",
                step=step, n=policy.max_attempts, error=e,
            )
            return CommandResult(output=str(e), exit_code=-1)

        if not result.ok:
            self._log.warning("{step} exited with {code}", step=step, code=result.exit_code)
        return result

    # -------------------------------------------------------------------------
    # Interactive
    # -------------------------------------------------------------------------

    async def attach_interactive(
        self,
        on_output: OutputCallback,
        cols: int = 80,
        rows: int = 24,
        on_close: CloseCallback | None = None,
    ) -> InteractiveShell:
        """Open a PTY shell whose output is pushed to ``on_output`` as it arrives.

        ``on_close`` is called once with a reason (None on clean exit) when the
        remote side ends the shell.
        """
        async with self._lock:
            if self._state != ChannelState.READY:
                raise ChannelBusyError(f"Channel to {self.label} is {self._state}")

            def closed(reason: str | None) -> None:
                if self._state == ChannelState.INTERACTIVE:
                    self._state = ChannelState.READY
                self._shell = None
                if on_close is not None:
                    on_close(reason)

            shell = await self._attach(on_output, cols, rows, closed)
            self._shell = shell
            self._state = ChannelState.INTERACTIVE
            return shell
