"""Interactive terminal sessions over SSH.

A user has at most one live session. Connecting again evicts the previous
one before the new channel is opened, so a reconnecting browser never
leaves a shell behind.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from agenthost.api.model import Provider
from agenthost.channel.base import BaseChannel
from agenthost.channel.ssh import SSHChannel
from agenthost.config import Settings
from agenthost.core.exceptions import (
    ConfigurationError,
    InstanceNotFoundError,
    SessionNotFoundError,
    UnsupportedProviderError,
)
from agenthost.infra.crypto import CredentialCipher
from agenthost.orchestrator.tasks import SSH_PRIVATE_KEY
from agenthost.providers.registry import ssh_username
from agenthost.session.buffer import OutputBuffer
from agenthost.session.registry import Session, SessionRegistry
from agenthost.store import StatusStore

type ChannelFactory = Callable[[str, str, str], BaseChannel]
"""(host, username, private key PEM) -> unconnected channel."""


@dataclass(frozen=True, slots=True)
class Target:
    provider: Provider
    host: str | None
    encrypted_key: str | None
    instance_id: str | None


class SessionManager:
    """Opens, drives and closes terminal sessions.

    Args:
        registry: Shared session scope, also read by OutputStreamer.
        store: Source of the user's instance address and access key.
        cipher: Decrypts the stored key right before connecting.
        settings: Buffer limits, timeouts and SSH login users.
        channel_factory: Builds the channel for a host. Defaults to SSHChannel.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: StatusStore,
        cipher: CredentialCipher,
        settings: Settings,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.cipher = cipher
        self.settings = settings
        self._channel_factory = channel_factory or self._ssh_channel
        self._last_stamp = 0
        self._locks: dict[str, asyncio.Lock] = {}
        self._closing: set[asyncio.Task[None]] = set()
        self._log = logger.bind(component="sessions")

    def _ssh_channel(self, host: str, username: str, private_key: str) -> BaseChannel:
        t = self.settings.timeouts
        return SSHChannel(host, username, private_key, connect_timeout=t.channel_connect)

    def _session_id(self, user_id: str) -> str:
        stamp = int(time.monotonic() * 1000)
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return f"{user_id}-{stamp}"

    async def _target(self, user_id: str, instance_id: str | None) -> Target:
        if instance_id:
            vm = await self.store.get_vm(user_id, instance_id)
            if vm is None:
                raise InstanceNotFoundError(f"Instance {instance_id} not found")
            if vm.instance is None:
                raise InstanceNotFoundError(f"Instance {instance_id} has not been created yet")
            return Target(
                vm.provider, vm.instance.ip, vm.credentials.get(SSH_PRIVATE_KEY), vm.instance.id
            )

        record = await self.store.get(user_id)
        if record is None or not record.instance_id:
            raise InstanceNotFoundError("No instance has been provisioned yet")
        return Target(
            record.provider,
            record.public_ip,
            record.credentials.get(SSH_PRIVATE_KEY),
            record.instance_id,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(
        self, user_id: str, cols: int = 80, rows: int = 24, instance_id: str | None = None
    ) -> str:
        """Open a PTY shell on the user's instance and return the new session id.

        Raises:
            InstanceNotFoundError: Nothing to connect to.
            UnsupportedProviderError: The provider is not reachable over SSH.
            ConfigurationError: The instance has no address or no stored key.
            ChannelTimeoutError: The SSH connection did not open in time.
        """
        target = await self._target(user_id, instance_id)
        username = ssh_username(self.settings, target.provider)
        if username is None:
            raise UnsupportedProviderError(
                f"Terminal access is not available for {target.provider} instances"
            )
        if not target.host:
            raise ConfigurationError("Instance has no public address yet")
        if not target.encrypted_key:
            raise ConfigurationError("No access key is stored for this instance")

        private_key = self.cipher.decrypt(target.encrypted_key)

        # Evict, open and register as one step so concurrent connects cannot both survive.
        async with self._locks.setdefault(user_id, asyncio.Lock()):
            evicted = await self.cleanup_user_sessions(user_id)
            if evicted:
                self._log.bind(user_id=user_id).info(
                    "Replaced {n} previous session(s)", n=evicted
                )

            session_id = self._session_id(user_id)
            channel = self._channel_factory(target.host, username, private_key)
            limits = self.settings.buffer
            buffer = OutputBuffer(
                limits.max_entries,
                limits.max_bytes,
                max_entry_bytes=self.settings.stream.max_batch_bytes,
            )
            session = Session(
                session_id, user_id, channel, buffer, instance_id=target.instance_id
            )

            try:
                await channel.connect()
                session.shell = await channel.attach_interactive(
                    buffer.output,
                    cols,
                    rows,
                    on_close=lambda reason: self._ended(session, reason),
                )
            except BaseException:
                await channel.close()
                raise

            self.add_session(session)

        self._log.bind(user_id=user_id, session_id=session_id).info(
            "Terminal connected to {host}", host=target.host
        )
        return session_id

    def add_session(self, session: Session) -> None:
        self.registry.add(session)

    def _ended(self, session: Session, reason: str | None) -> None:
        if not session.alive:
            return
        detail = f": {reason}" if reason else ""
        session.buffer.system(f"\r\n[Connection closed{detail}]\r\n")
        session.alive = False
        self._log.bind(session_id=session.id).info("Remote shell ended{detail}", detail=detail)

        # The buffer stays registered so the stream can still deliver the closing event.
        task = asyncio.get_running_loop().create_task(session.channel.close())
        self._closing.add(task)
        task.add_done_callback(self._channel_closed)

    def _channel_closed(self, task: asyncio.Task[None]) -> None:
        self._closing.discard(task)
        if not task.cancelled() and (error := task.exception()) is not None:
            self._log.warning("Closing ended session failed: {error}", error=error)

    async def cleanup_user_sessions(self, user_id: str) -> int:
        return await self.registry.remove_user(user_id)

    async def disconnect(self, user_id: str, session_id: str) -> None:
        self.registry.require(user_id, session_id)
        await self.registry.remove(session_id)
        self._log.bind(user_id=user_id, session_id=session_id).info("Terminal disconnected")

    async def close(self) -> None:
        await self.registry.close()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    def _live(self, user_id: str, session_id: str) -> Session:
        session = self.registry.require(user_id, session_id)
        if not session.alive or session.shell is None:
            raise SessionNotFoundError(f"Session {session_id} has ended")
        return session

    async def write(self, user_id: str, session_id: str, data: str) -> None:
        await self._live(user_id, session_id).shell.write(data)  # type: ignore[union-attr]

    def resize(self, user_id: str, session_id: str, cols: int, rows: int) -> None:
        self._live(user_id, session_id).shell.resize(cols, rows)  # type: ignore[union-attr]
