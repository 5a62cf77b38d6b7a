"""Handles and shared state for running setup pipelines."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agenthost.api.model import (
    Instance,
    InstanceConfig,
    InstanceSecret,
    Provider,
    SetupRecord,
)
from agenthost.channel.base import BaseChannel
from agenthost.core.exceptions import CredentialError, PipelineCancelledError
from agenthost.infra.crypto import CredentialCipher

# Credential slots inside SetupRecord.credentials
API_KEY = "agent.api_key"
MESSAGING_TOKEN = "messaging.token"
SSH_PRIVATE_KEY = "instance.ssh_private_key"
ADMIN_PASSWORD = "instance.admin_password"


class CancellationToken:
    """Cooperative cancellation checked by the pipeline between steps."""

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = "Setup cancelled"

    def cancel(self, reason: str | None = None) -> None:
        if reason:
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelledError(self.reason)


@dataclass(frozen=True, slots=True)
class SetupProgress:
    step: str
    message: str
    success: bool = True
    output: str | None = None


type ProgressCallback = Callable[[SetupProgress], None]
type Persist = Callable[..., Awaitable[SetupRecord]]


@dataclass(slots=True)
class PipelineContext:
    """Everything one pipeline run needs, passed to each driver step.

    Secrets stay encrypted in ``record.credentials`` and are decrypted on access.
    """

    user_id: str
    setup_id: str
    provider: Provider
    config: InstanceConfig
    record: SetupRecord
    cipher: CredentialCipher
    persist: Persist
    token: CancellationToken = field(default_factory=CancellationToken)
    on_progress: ProgressCallback | None = None
    messaging_user_id: str | None = None
    instance: Instance | None = None
    secret: InstanceSecret | None = None
    channel: BaseChannel | None = None
    reused_instance: bool = False
    agent_version: str | None = None

    def credential(self, name: str) -> str | None:
        token = self.record.credentials.get(name)
        return self.cipher.decrypt(token) if token else None

    def require_credential(self, name: str) -> str:
        value = self.credential(name)
        if not value:
            raise CredentialError(f"Missing credential {name}")
        return value

    @property
    def api_key(self) -> str:
        return self.require_credential(API_KEY)

    @property
    def messaging_token(self) -> str | None:
        return self.credential(MESSAGING_TOKEN)

    def stored_secret(self) -> InstanceSecret:
        return InstanceSecret(
            ssh_private_key=self.credential(SSH_PRIVATE_KEY),
            admin_password=self.credential(ADMIN_PASSWORD),
        )

    def encrypted_secret(self, secret: InstanceSecret) -> dict[str, str]:
        """Encrypted slots for ``secret`` alone, to be merged into the stored record."""
        creds: dict[str, str] = {}
        if secret.ssh_private_key:
            creds[SSH_PRIVATE_KEY] = self.cipher.encrypt(secret.ssh_private_key)
        if secret.admin_password:
            creds[ADMIN_PASSWORD] = self.cipher.encrypt(secret.admin_password)
        return creds

    async def update(self, **changes: Any) -> SetupRecord:
        self.record = await self.persist(**changes)
        return self.record

    def report(
        self, step: str, message: str, success: bool = True, output: str | None = None
    ) -> None:
        if self.on_progress is not None:
            self.on_progress(SetupProgress(step, message, success, output))

    def checkpoint(self) -> None:
        self.token.raise_if_cancelled()


@dataclass(slots=True)
class SetupTask:
    """Handle to a pipeline running in the background."""

    setup_id: str
    user_id: str
    provider: Provider
    token: CancellationToken
    task: asyncio.Task[Any] | None = None

    def cancel(self, reason: str | None = None) -> None:
        self.token.cancel(reason)

    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> None:
        if self.task is not None:
            await asyncio.shield(self.task)
