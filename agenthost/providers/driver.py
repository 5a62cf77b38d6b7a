"""Provider drivers: the five setup steps, specialised per provider.

The orchestrator only talks to ProviderDriver. Each subclass decides how
its machines are created, how readiness is established, which channel
reaches them and which packages they need; the shared step logic
(tooling with retries, agent install, messaging configuration, gateway
verification) lives here.
"""

from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from loguru import logger

from agenthost.api.model import Instance, InstanceConfig, InstanceSecret, Provider
from agenthost.channel.api import CommandApiChannel
from agenthost.channel.base import BaseChannel, ChannelState, CommandResult, default_run_policy
from agenthost.channel.ssh import SSHChannel
from agenthost.config import Settings
from agenthost.core.exceptions import (
    BillingRequiredError,
    ChannelTimeoutError,
    ConfigurationError,
    CreateUncertainError,
    InstanceNotFoundError,
    SetupStepError,
    TransientProviderError,
)
from agenthost.infra.retry import RetryPolicy, fixed, on_exception
from agenthost.infra.wait import poll_until
from agenthost.providers import scripts
from agenthost.providers.registry import ssh_username as login_user

if TYPE_CHECKING:
    from agenthost.orchestrator.tasks import PipelineContext
    from agenthost.providers.base import CloudAdapter

STEP_CREATE = "Create instance"
STEP_WAIT = "Wait for instance"
STEP_TOOLING = "Install tooling"
STEP_AGENT = "Install agent"
STEP_CONFIGURE = "Configure messaging"
STEP_GATEWAY = "Start gateway"
STEP_API_KEY = "Store API key"


class CommandFailedError(Exception):
    """A remote command ran and exited non-zero."""

    def __init__(self, step: str, result: CommandResult) -> None:
        self.step = step
        self.result = result
        super().__init__(f"{step} exited with {result.exit_code}: {result.tail(5)}")


@dataclass(frozen=True, slots=True)
class Acquired:
    instance: Instance
    secret: InstanceSecret
    reused: bool


@dataclass(frozen=True, slots=True)
class GatewayCheck:
    running: bool
    log_tail: str = ""


class ProviderDriver(ABC):
    """Per-provider implementation of the setup pipeline steps.

    Class attributes tune the shared steps:
        polls_readiness: Actively poll ``echo ready`` after the boot sleep.
        prepares_package_manager: Wait for cloud-init and clear apt locks first.
        tooling_packages: Packages for the baseline tooling step.
        installs_sdks: Best-effort pip install of the agent SDKs.
    """

    provider: ClassVar[Provider]
    polls_readiness: ClassVar[bool] = False
    prepares_package_manager: ClassVar[bool] = True
    tooling_packages: ClassVar[tuple[str, ...]] = scripts.TOOLING_PACKAGES
    installs_sdks: ClassVar[bool] = True

    def __init__(self, adapter: CloudAdapter, settings: Settings) -> None:
        self.adapter = adapter
        self.settings = settings
        self._log = logger.bind(component="driver", provider=self.provider.value)

    # -------------------------------------------------------------------------
    # Provider specifics
    # -------------------------------------------------------------------------

    @property
    def ssh_username(self) -> str | None:
        return login_user(self.settings, self.provider)

    @property
    def supports_terminal(self) -> bool:
        return self.ssh_username is not None

    @abstractmethod
    def instance_config(self, name: str, preferences: Mapping[str, Any]) -> InstanceConfig:
        """Launch parameters from provider defaults overlaid with user preferences."""

    def classify_failure(
        self, error: Exception, ctx: PipelineContext
    ) -> BillingRequiredError | None:
        """Return a billing failure if ``error`` means the account must add payment."""
        return error if isinstance(error, BillingRequiredError) else None

    def open_channel(self, instance: Instance, secret: InstanceSecret | None) -> BaseChannel:
        t = self.settings.timeouts
        r = self.settings.retries
        policy = default_run_policy(r.channel_attempts, r.channel_step)

        if self.ssh_username is None:
            return CommandApiChannel(
                self.adapter,
                instance.id,
                connect_timeout=t.channel_connect,
                command_timeout=t.command,
                run_policy=policy,
            )

        if not instance.ip:
            raise ConfigurationError(f"Instance {instance.id} has no public address yet")
        if secret is None or not secret.ssh_private_key:
            raise ConfigurationError(f"No access key stored for instance {instance.id}")
        return SSHChannel(
            instance.ip,
            self.ssh_username,
            secret.ssh_private_key,
            connect_timeout=t.channel_connect,
            command_timeout=t.command,
            run_policy=policy,
        )

    # -------------------------------------------------------------------------
    # Step 1: acquire
    # -------------------------------------------------------------------------

    async def create_instance(self, config: InstanceConfig) -> tuple[Instance, InstanceSecret]:
        """Create with retries. A create that may have succeeded is looked up by
        name before trying again, so a lost acknowledgment never doubles a machine.
        """
        r = self.settings.retries

        async def attempt() -> tuple[Instance, InstanceSecret]:
            try:
                return await self.adapter.create_instance(config)
            except CreateUncertainError as e:
                self._log.warning(
                    "Create of {name} unconfirmed ({reason}), checking whether it exists",
                    name=config.name, reason=e.reason,
                )
                await asyncio.sleep(r.create_recheck_delay)
                found = await self.adapter.find_instance(config.name)
                if found is None:
                    raise
                self._log.info("Found {name} after unconfirmed create", name=config.name)
                return found, e.secret or InstanceSecret()

        policy = RetryPolicy(
            max_attempts=r.create_attempts,
            backoff=fixed(r.create_delay),
            retry_on=on_exception(TransientProviderError),
            name=STEP_CREATE,
        )
        return await policy.run(attempt)

    async def acquire_instance(self, ctx: PipelineContext) -> Acquired:
        record = ctx.record
        if record.instance_id:
            try:
                instance = await self.adapter.get_instance(record.instance_id)
            except InstanceNotFoundError as e:
                if record.vm_created:
                    raise SetupStepError(
                        STEP_CREATE, f"instance {record.instance_id} no longer exists"
                    ) from e
                self._log.info("Stale instance {id}, creating a new one", id=record.instance_id)
            else:
                self._log.info("Reusing instance {id}", id=instance.id)
                return Acquired(instance, ctx.stored_secret(), reused=True)

        ctx.report(STEP_CREATE, f"Creating {ctx.config.size} instance {ctx.config.name}...")
        instance, secret = await self.create_instance(ctx.config)
        self._log.info("Created instance {id} ({name})", id=instance.id, name=instance.name)
        return Acquired(instance, secret, reused=False)

    # -------------------------------------------------------------------------
    # Step 2: readiness
    # -------------------------------------------------------------------------

    async def refresh_instance(self, instance: Instance) -> Instance:
        return await self.adapter.get_instance(instance.id)

    async def wait_until_ready(self, ctx: PipelineContext) -> Instance:
        """Boot sleep, address refresh, channel open and (optionally) active probing.

        The opened channel is left on ``ctx.channel`` for the following steps.
        """
        assert ctx.instance is not None
        delay = self.settings.boot.for_provider(self.provider)
        if delay and not ctx.reused_instance:
            ctx.report(STEP_WAIT, f"Waiting {delay:.0f}s for the instance to boot...")
            await asyncio.sleep(delay)

        instance = ctx.instance
        if self.ssh_username is not None and (not ctx.reused_instance or not instance.ip):
            instance = await self.refresh_instance(instance)

        ctx.channel = self.open_channel(instance, ctx.secret)
        if self.polls_readiness:
            await self._await_ready(ctx.channel)
        else:
            await ctx.channel.connect()
        ctx.report(STEP_WAIT, "Instance is reachable")
        return instance

    async def _await_ready(self, channel: BaseChannel) -> None:
        t = self.settings.timeouts

        async def check() -> bool | None:
            if channel.state == ChannelState.FAILED:
                await channel.close()
            await channel.connect()
            result = await channel.execute('echo "ready"')
            return True if result.ok and "ready" in result.output else None

        try:
            await poll_until(
                check,
                attempts=t.readiness_attempts,
                interval=t.readiness_interval,
                description=f"instance {channel.label}",
            )
        except TimeoutError as e:
            raise ChannelTimeoutError(str(e)) from e

    # -------------------------------------------------------------------------
    # Step 3: baseline tooling
    # -------------------------------------------------------------------------

    async def _run_checked(self, channel: BaseChannel, step: scripts.Step) -> CommandResult:
        name, command = step
        result = await channel.run(command, name)
        if not result.ok:
            raise CommandFailedError(name, result)
        return result

    async def install_tooling(self, ctx: PipelineContext, channel: BaseChannel) -> None:
        r = self.settings.retries
        if self.prepares_package_manager:
            ctx.report(STEP_TOOLING, "Waiting for cloud-init to finish...")
            for name, command in scripts.package_manager_prep():
                await channel.run(command, name)

        policy = RetryPolicy(
            max_attempts=r.tooling_attempts,
            backoff=fixed(r.tooling_delay),
            retry_on=on_exception(CommandFailedError),
        )
        for step in scripts.tooling_install(self.tooling_packages):
            ctx.report(STEP_TOOLING, f"{step[0]}...")
            try:
                await policy.with_name(step[0]).run(self._run_checked, channel, step)
            except CommandFailedError as e:
                raise SetupStepError(STEP_TOOLING, str(e)) from e

        if self.installs_sdks and self.settings.agent.sdk_packages:
            name, command = scripts.sdk_install(self.settings.agent.sdk_packages)
            result = await channel.run(command, name)
            if not result.ok:
                self._log.warning("SDK install failed, continuing: {tail}", tail=result.tail(3))
                ctx.report(STEP_TOOLING, "SDK installation had issues, continuing...")
        ctx.report(STEP_TOOLING, "Baseline tooling installed")

    # -------------------------------------------------------------------------
    # Step 4: agent
    # -------------------------------------------------------------------------

    async def detect_agent_version(self, channel: BaseChannel) -> str:
        name, command = scripts.agent_version(self.settings.agent)
        result = await channel.run(command, name)
        version = result.output.strip() if result.ok else ""
        return version or self.settings.agent.fallback_version

    async def install_agent(self, ctx: PipelineContext, channel: BaseChannel) -> str:
        for step in scripts.agent_install(self.settings.agent):
            ctx.report(STEP_AGENT, f"{step[0]}...")
            try:
                await self._run_checked(channel, step)
            except CommandFailedError as e:
                raise SetupStepError(STEP_AGENT, str(e)) from e

        version = await self.detect_agent_version(channel)
        ctx.report(STEP_AGENT, f"{self.settings.agent.package} {version} installed")
        return version

    # -------------------------------------------------------------------------
    # Step 5: messaging, gateway, credentials
    # -------------------------------------------------------------------------

    async def remote_home(self, channel: BaseChannel) -> str:
        result = await channel.run('echo "$HOME"', "Resolve home directory")
        home = result.output.strip().splitlines()[-1] if result.ok and result.output.strip() else ""
        return home or f"/home/{self.ssh_username or 'user'}"

    async def configure_messaging(
        self, ctx: PipelineContext, channel: BaseChannel, token: str
    ) -> None:
        agent = self.settings.agent
        home = await self.remote_home(channel)
        messaging = scripts.MessagingConfig(
            token=token,
            user_id=ctx.messaging_user_id,
            gateway_token=secrets.token_hex(24),
            version=ctx.agent_version or agent.fallback_version,
            workspace=f"{home}/{agent.workspace_dir}",
        )
        for step in scripts.configure_messaging(agent, messaging, ctx.api_key):
            try:
                await self._run_checked(channel, step)
            except CommandFailedError as e:
                raise SetupStepError(STEP_CONFIGURE, str(e)) from e
        ctx.report(STEP_CONFIGURE, "Agent configured for messaging")

    async def start_gateway(self, ctx: PipelineContext, channel: BaseChannel) -> GatewayCheck:
        agent = self.settings.agent
        t = self.settings.timeouts
        launch = scripts.gateway_launch(agent)

        try:
            await self._run_checked(channel, launch["script"])
        except CommandFailedError as e:
            return GatewayCheck(running=False, log_tail=e.result.tail())

        name, command = launch["stop"]
        await channel.run(command, name)
        await asyncio.sleep(t.gateway_kill_grace)

        name, command = launch["start"]
        await channel.run(command, name)
        ctx.report(STEP_GATEWAY, "Gateway launched, verifying...")
        await asyncio.sleep(t.gateway_start_grace)

        async def check() -> bool | None:
            name, command = scripts.gateway_process_check(agent)
            result = await channel.run(command, name)
            if not scripts.has_marker(result.output, scripts.PROCESS_MARKER):
                return None
            name, command = scripts.gateway_port_check(agent)
            result = await channel.run(command, name)
            return True if scripts.has_marker(result.output, scripts.PORT_MARKER) else None

        try:
            await poll_until(
                check,
                attempts=t.gateway_attempts,
                interval=t.gateway_interval,
                description="gateway",
            )
        except TimeoutError:
            name, command = scripts.gateway_log_tail(agent)
            tail = (await channel.run(command, name)).output.strip()
            self._log.warning("Gateway did not come up: {tail}", tail=tail)
            ctx.report(
                STEP_GATEWAY, f"Gateway failed to start. Check {agent.log_path}", False, tail
            )
            return GatewayCheck(running=False, log_tail=tail)

        ctx.report(STEP_GATEWAY, "Gateway is running")
        return GatewayCheck(running=True)

    async def store_api_key(self, ctx: PipelineContext, channel: BaseChannel) -> None:
        try:
            await self._run_checked(channel, scripts.store_api_key(ctx.api_key))
        except CommandFailedError as e:
            raise SetupStepError(STEP_API_KEY, str(e)) from e
        ctx.report(STEP_API_KEY, "API key stored")
