"""AsyncSSH-backed channel.

Connection parameters are bound at construction; the private key arrives
as PEM/OpenSSH text (decrypted from the store just before use) and never
touches disk.
"""

from __future__ import annotations

import asyncio
import contextlib

import asyncssh

from agenthost.channel.base import (
    BaseChannel,
    CloseCallback,
    CommandResult,
    OutputCallback,
)
from agenthost.core.exceptions import (
    ChannelConnectionError,
    ChannelTimeoutError,
    CredentialError,
)
from agenthost.infra.retry import RetryPolicy

READ_CHUNK = 4096
TERM_TYPE = "xterm-256color"


class SSHShell:
    """A PTY session on an SSH connection, pumping output to a callback."""

    def __init__(
        self,
        process: asyncssh.SSHClientProcess,
        on_output: OutputCallback,
        on_close: CloseCallback,
    ) -> None:
        self._process = process
        self._on_output = on_output
        self._on_close = on_close
        self._closed = False
        self._reader = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        reason: str | None = None
        try:
            while chunk := await self._process.stdout.read(READ_CHUNK):
                self._on_output(chunk)
        except (asyncssh.Error, OSError) as e:
            reason = str(e) or type(e).__name__
        finally:
            self._closed = True
            self._on_close(reason)

    async def write(self, data: str) -> None:
        if self._closed:
            raise ChannelConnectionError("Shell is closed")
        self._process.stdin.write(data)

    def resize(self, cols: int, rows: int) -> None:
        if not self._closed:
            self._process.change_terminal_size(cols, rows)

    async def close(self) -> None:
        self._process.close()
        with contextlib.suppress(TimeoutError, asyncssh.Error, OSError):
            await asyncio.wait_for(asyncio.shield(self._reader), timeout=5.0)
        if not self._reader.done():
            self._reader.cancel()


class SSHChannel(BaseChannel):
    """Channel over a single SSH connection.

    Example:
        >>> channel = SSHChannel("10.0.0.1", "ubuntu", private_key_pem)
        >>> async with channel:
        ...     result = await channel.execute("uname -a")
    """

    def __init__(
        self,
        host: str,
        username: str,
        private_key: str,
        *,
        port: int = 22,
        connect_timeout: float = 30.0,
        command_timeout: float | None = None,
        run_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(
            host,
            connect_timeout=connect_timeout,
            command_timeout=command_timeout,
            run_policy=run_policy,
        )
        self.host = host
        self.port = port
        self.username = username
        self._private_key = private_key
        self._conn: asyncssh.SSHClientConnection | None = None

    async def _open(self) -> None:
        try:
            key = asyncssh.import_private_key(self._private_key)
        except (asyncssh.KeyImportError, ValueError) as e:
            raise CredentialError(f"Stored private key for {self.host} is unusable: {e}") from e

        try:
            self._conn = await asyncssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                client_keys=[key],
                known_hosts=None,
                connect_timeout=self.connect_timeout,
                keepalive_interval=30,
            )
        except asyncssh.Error as e:
            raise ChannelConnectionError(f"SSH connection to {self.host} failed: {e}") from e

    def _require_connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise ChannelConnectionError(f"Not connected to {self.host}")
        return self._conn

    async def _exec(self, command: str, timeout: float | None) -> CommandResult:
        conn = self._require_connection()
        try:
            result = await conn.run(command, check=False, timeout=timeout, stderr=asyncssh.STDOUT)
        except asyncssh.TimeoutError as e:
            raise ChannelTimeoutError(f"Command on {self.host} exceeded {timeout}s") from e
        except (asyncssh.Error, OSError) as e:
            raise ChannelConnectionError(f"SSH session to {self.host} lost: {e}") from e

        output = result.stdout or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        exit_code = result.exit_status if result.exit_status is not None else -1
        return CommandResult(output=output, exit_code=exit_code)

    async def _attach(
        self, on_output: OutputCallback, cols: int, rows: int, on_close: CloseCallback
    ) -> SSHShell:
        conn = self._require_connection()
        try:
            process = await conn.create_process(
                term_type=TERM_TYPE,
                term_size=(cols, rows),
                stderr=asyncssh.STDOUT,
                encoding="utf-8",
                errors="replace",
            )
        except (asyncssh.Error, OSError) as e:
            raise ChannelConnectionError(f"Shell on {self.host} failed to start: {e}") from e
        return SSHShell(process, on_output, on_close)

    async def _shutdown(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(conn.wait_closed(), timeout=5.0)
