"""Provisioning orchestrator.

Runs the setup pipeline for one user as a background asyncio task:

    acquire instance -> wait until ready -> install tooling -> install agent
    -> configure messaging and start the gateway (or store the API key) -> ready

The orchestrator knows nothing about any single provider. Everything
provider-specific sits behind ProviderDriver; the orchestrator owns the
record, the status transitions, cancellation, failure mapping and cleanup.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from agenthost.api.model import (
    MILESTONES,
    RESTARTABLE,
    Instance,
    Provider,
    SetupRecord,
    SetupStatus,
    VmRecord,
    new_setup_id,
)
from agenthost.config import Settings
from agenthost.core.exceptions import (
    AgentHostError,
    ConfigurationError,
    InstanceNotFoundError,
    InvalidTransitionError,
    PipelineCancelledError,
    SetupConflictError,
)
from agenthost.infra.crypto import CredentialCipher
from agenthost.orchestrator.tasks import (
    ADMIN_PASSWORD,
    API_KEY,
    MESSAGING_TOKEN,
    SSH_PRIVATE_KEY,
    CancellationToken,
    PipelineContext,
    ProgressCallback,
    SetupProgress,
    SetupTask,
)
from agenthost.providers.base import generate_instance_name
from agenthost.providers.driver import ProviderDriver
from agenthost.providers.registry import DriverRegistry
from agenthost.store import StatusStore

log = logger.bind(component="orchestrator")

_INSTANCE_SLOTS = (SSH_PRIVATE_KEY, ADMIN_PASSWORD)
_SESSION_SLOTS = (API_KEY, MESSAGING_TOKEN, *_INSTANCE_SLOTS)


@dataclass(frozen=True, slots=True)
class SetupRequest:
    """One call to start (or resume) provisioning.

    Args:
        user_id: Owner of the setup record.
        credential_key: Agent API key, stored encrypted and exported on the machine.
        provider: Target provider. Defaults to the selected VM's or the record's.
        messaging_token: Bot token. Falls back to the configured default.
        messaging_user_id: Messaging account allowed to talk to the agent.
        vm_id: A declared VmRecord to provision or resume.
        preferences: Region/size overrides for this run.
    """

    user_id: str
    credential_key: str
    provider: Provider | None = None
    messaging_token: str | None = None
    messaging_user_id: str | None = None
    vm_id: str | None = None
    preferences: dict[str, str] = field(default_factory=dict)


def _instance_changes(instance: Instance) -> dict[str, Any]:
    return {
        "instance_id": instance.id,
        "instance_name": instance.name,
        "public_ip": instance.ip,
        "vm_status": instance.status,
        "specific": dict(instance.specific),
    }


def describe_failure(error: BaseException) -> str:
    """Human readable failure for ``error_message``."""
    if isinstance(error, AgentHostError):
        return str(error) or type(error).__name__
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__


class Orchestrator:
    """Starts setup pipelines and tracks the one live task each user may have.

    Args:
        store: Where setup and VM records live.
        registry: Builds drivers and owns the credential cipher.
        settings: Timeouts, retries and provider defaults.
        on_progress: Receives every SetupProgress after it is logged.
    """

    def __init__(
        self,
        store: StatusStore,
        registry: DriverRegistry,
        settings: Settings,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings
        self.on_progress = on_progress
        self._tasks: dict[str, SetupTask] = {}
        self._starting: set[str] = set()

    @property
    def cipher(self) -> CredentialCipher:
        return self.registry.cipher

    def running(self, user_id: str) -> SetupTask | None:
        task = self._tasks.get(user_id)
        return task if task is not None and not task.done() else None

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    async def start(self, request: SetupRequest) -> SetupTask:
        """Validate, write the record and launch the pipeline in the background.

        Raises:
            SetupConflictError: A pipeline is already running, or setup already finished.
            ConfigurationError: The API key is missing or provider credentials are
                incomplete (CredentialError).
            InstanceNotFoundError: ``vm_id`` names an unknown VM.
        """
        user_id = request.user_id
        if self.running(user_id) or user_id in self._starting:
            raise SetupConflictError(f"Setup already running for user {user_id}")
        if not request.credential_key:
            raise ConfigurationError("An agent API key is required")

        self._starting.add(user_id)
        try:
            return await self._launch(request)
        finally:
            self._starting.discard(user_id)

    async def _launch(self, request: SetupRequest) -> SetupTask:
        user_id = request.user_id
        vm: VmRecord | None = None
        if request.vm_id:
            vm = await self.store.get_vm(user_id, request.vm_id)
            if vm is None:
                raise InstanceNotFoundError(f"Instance {request.vm_id} not found")

        record = await self.store.get(user_id)
        provider = request.provider or (vm.provider if vm else None) or (
            record.provider if record else None
        )
        if provider is None:
            raise ConfigurationError("No provider selected")

        creds = self.registry.decrypt_credentials(provider, record.credentials if record else {})
        record = await self._prepare_record(request, provider, record, vm)
        driver = self.registry.build(provider, creds, record.preferences)

        token = CancellationToken()
        name = record.instance_name or (vm.name if vm else None) or generate_instance_name()
        ctx = PipelineContext(
            user_id=user_id,
            setup_id=record.setup_id,
            provider=provider,
            config=driver.instance_config(name, record.preferences),
            record=record,
            cipher=self.cipher,
            persist=lambda **changes: self._persist(ctx, **changes),
            token=token,
            on_progress=self._progress(user_id),
            messaging_user_id=request.messaging_user_id or self.settings.messaging.user_id,
        )

        # Only now does the record leave its resting state.
        ctx.record = await self.store.update(
            user_id, status=SetupStatus.PROVISIONING, error_message=None
        )

        handle = SetupTask(record.setup_id, user_id, provider, token)
        handle.task = asyncio.create_task(
            self._run(driver, ctx), name=f"setup-{user_id}-{record.setup_id[:8]}"
        )
        handle.task.add_done_callback(lambda _: self._forget(handle))
        self._tasks[user_id] = handle
        log.bind(user_id=user_id, provider=provider.value, setup_id=record.setup_id).info(
            "Setup started"
        )
        return handle

    def _forget(self, handle: SetupTask) -> None:
        if self._tasks.get(handle.user_id) is handle:
            del self._tasks[handle.user_id]

    async def _prepare_record(
        self,
        request: SetupRequest,
        provider: Provider,
        record: SetupRecord | None,
        vm: VmRecord | None,
    ) -> SetupRecord:
        """Create or reset the record so the next status move is to provisioning."""
        cipher = self.cipher
        user_id = request.user_id
        fresh = (
            record is None
            or record.provider != provider
            or (vm is not None and vm.id != record.vm_id)
        )

        if not fresh:
            assert record is not None
            if record.status == SetupStatus.READY:
                raise SetupConflictError("Setup already complete")
            if record.status not in RESTARTABLE:
                # A pipeline died with the process that ran it.
                record = await self.store.update(
                    user_id, status=SetupStatus.FAILED, error_message="Setup interrupted"
                )
        else:
            carried = {
                k: v
                for k, v in (record.credentials if record else {}).items()
                if k not in _SESSION_SLOTS
            }
            record = SetupRecord(user_id=user_id, provider=provider, credentials=carried)
            if vm is not None:
                record.vm_id = vm.id
                record.instance_name = vm.name
                record.preferences = {
                    k: str(v)
                    for k, v in {
                        "size": vm.config.size,
                        "region": vm.config.region,
                        **dict(vm.config.options),
                    }.items()
                    if v
                }
                record.credentials.update(vm.credentials)
                if vm.instance is not None:
                    record.instance_id = vm.instance.id
                    record.public_ip = vm.instance.ip
                    record.vm_created = vm.vm_created
                    record.agent_installed = vm.agent_installed
            record = await self.store.create(record)

        slots = {API_KEY: cipher.encrypt(request.credential_key)}
        messaging_token = request.messaging_token or self.settings.messaging.token
        if messaging_token:
            slots[MESSAGING_TOKEN] = cipher.encrypt(messaging_token)

        return await self.store.merge(
            user_id,
            credentials=slots,
            preferences={k: v for k, v in request.preferences.items() if v},
            drop_credentials=() if messaging_token else (MESSAGING_TOKEN,),
            setup_id=record.setup_id if fresh else new_setup_id(),
        )

    # -------------------------------------------------------------------------
    # Persistence and progress
    # -------------------------------------------------------------------------

    async def _persist(
        self,
        ctx: PipelineContext,
        *,
        merge_credentials: Mapping[str, str] | None = None,
        **changes: Any,
    ) -> SetupRecord:
        if merge_credentials:
            record = await self.store.merge(
                ctx.user_id, credentials=merge_credentials, **changes
            )
        else:
            record = await self.store.update(ctx.user_id, **changes)
        if record.vm_id:
            mirror: dict[str, Any] = {
                "status": record.status,
                "error_message": record.error_message,
                **{m: getattr(record, m) for m in MILESTONES},
                "credentials": {
                    k: v for k, v in record.credentials.items() if k in _INSTANCE_SLOTS
                },
            }
            if ctx.instance is not None:
                mirror["instance"] = ctx.instance
            try:
                await self.store.update_vm(ctx.user_id, record.vm_id, **mirror)
            except InstanceNotFoundError:
                log.warning("VM record {vm} disappeared during setup", vm=record.vm_id)
        return record

    def _progress(self, user_id: str) -> ProgressCallback:
        bound = log.bind(user_id=user_id)
        callback = self.on_progress

        def report(progress: SetupProgress) -> None:
            if progress.success:
                bound.info("[{step}] {message}", step=progress.step, message=progress.message)
            else:
                bound.warning("[{step}] {message}", step=progress.step, message=progress.message)
            if callback is not None:
                callback(progress)

        return report

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _run(self, driver: ProviderDriver, ctx: PipelineContext) -> None:
        """Run the pipeline and convert every outcome into a final status. Never raises
        except to propagate task cancellation.
        """
        bound = log.bind(user_id=ctx.user_id, provider=ctx.provider.value, setup_id=ctx.setup_id)
        try:
            await self._pipeline(driver, ctx)
            bound.info("Setup finished")
        except asyncio.CancelledError:
            await self._finish(ctx, SetupStatus.FAILED, ctx.token.reason)
            raise
        except PipelineCancelledError as e:
            await self._finish(ctx, SetupStatus.FAILED, str(e))
        except Exception as e:
            billing = driver.classify_failure(e, ctx)
            if billing is not None:
                bound.warning("Setup needs billing: {error}", error=e)
                await self._finish(ctx, SetupStatus.REQUIRES_PAYMENT, billing.error_message)
            else:
                bound.opt(exception=e).error("Setup failed: {error}", error=e)
                await self._finish(ctx, SetupStatus.FAILED, describe_failure(e))
        finally:
            if ctx.channel is not None:
                await ctx.channel.close()
            await driver.adapter.close()

    async def _finish(self, ctx: PipelineContext, status: SetupStatus, message: str) -> None:
        try:
            await ctx.update(status=status, error_message=message)
        except (InvalidTransitionError, InstanceNotFoundError) as e:
            log.error("Could not record {status} for {user}: {error}",
                      status=status, user=ctx.user_id, error=e)

    async def _pipeline(self, driver: ProviderDriver, ctx: PipelineContext) -> None:
        ctx.checkpoint()
        acquired = await driver.acquire_instance(ctx)
        ctx.instance = acquired.instance
        ctx.secret = acquired.secret
        ctx.reused_instance = acquired.reused
        secret = {} if acquired.reused else ctx.encrypted_secret(acquired.secret)
        await ctx.update(
            vm_created=True, merge_credentials=secret, **_instance_changes(acquired.instance)
        )

        ctx.checkpoint()
        ctx.instance = await driver.wait_until_ready(ctx)
        await ctx.update(
            status=SetupStatus.CONFIGURING_VM,
            public_ip=ctx.instance.ip,
            vm_status=ctx.instance.status,
        )
        channel = ctx.channel
        assert channel is not None

        ctx.checkpoint()
        if ctx.record.agent_installed:
            ctx.report("Install agent", "Agent already installed, skipping installation")
            ctx.agent_version = await driver.detect_agent_version(channel)
        else:
            await driver.install_tooling(ctx, channel)
            ctx.checkpoint()
            ctx.agent_version = await driver.install_agent(ctx, channel)
            await ctx.update(agent_installed=True)

        ctx.checkpoint()
        token = ctx.messaging_token
        if not token:
            await driver.store_api_key(ctx, channel)
            await ctx.update(status=SetupStatus.READY)
            return

        await driver.configure_messaging(ctx, channel, token)
        await ctx.update(channel_configured=True)
        ctx.checkpoint()

        check = await driver.start_gateway(ctx, channel)
        if check.running:
            await ctx.update(status=SetupStatus.READY, gateway_started=True)
        else:
            await ctx.update(
                status=SetupStatus.READY,
                error_message=f"Gateway failed to start: {check.log_tail}".strip(),
            )

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self, user_id: str, reason: str | None = None) -> bool:
        """Ask the user's running pipeline to stop at its next step boundary."""
        task = self.running(user_id)
        if task is None:
            return False
        task.cancel(reason)
        return True

    async def close(self) -> None:
        """Cancel every running pipeline and wait for them to record their outcome."""
        handles = list(self._tasks.values())
        for handle in handles:
            handle.cancel()
            if handle.task is not None:
                handle.task.cancel()
        for handle in handles:
            if handle.task is not None:
                await asyncio.gather(handle.task, return_exceptions=True)
