"""E2B sandbox adapter built on the async SDK."""

from __future__ import annotations

import contextlib

from e2b import (
    AsyncSandbox,
    AuthenticationException,
    CommandExitException,
    NotFoundException,
    RateLimitException,
    SandboxException,
    TimeoutException,
)
from loguru import logger

from agenthost.api.model import Instance, InstanceConfig, InstanceSecret, Provider
from agenthost.channel.base import CommandResult
from agenthost.config import E2BDefaults
from agenthost.core.exceptions import (
    InstanceNotFoundError,
    ProviderError,
    TerminalProviderError,
    TransientProviderError,
)

log = logger.bind(component="e2b", provider="e2b")


def classify(exc: Exception) -> ProviderError:
    match exc:
        case AuthenticationException():
            return TerminalProviderError(f"E2B rejected the API key: {exc}")
        case RateLimitException() | TimeoutException():
            return TransientProviderError(str(exc))
        case _:
            return TerminalProviderError(str(exc))


class E2BAdapter:
    """CloudAdapter for E2B sandboxes.

    Sandboxes are connected once and cached by id; commands run through
    ``sandbox.commands.run``.
    """

    provider = Provider.E2B

    def __init__(self, api_key: str, defaults: E2BDefaults | None = None) -> None:
        self.defaults = defaults or E2BDefaults()
        self._api_key = api_key
        self._sandboxes: dict[str, AsyncSandbox] = {}
        self._names: dict[str, str] = {}

    def _to_instance(self, sandbox: AsyncSandbox, name: str, running: bool = True) -> Instance:
        return Instance(
            id=sandbox.sandbox_id,
            provider=Provider.E2B,
            name=name,
            status="running" if running else "stopped",
            size=self.defaults.template,
            specific={"template": self.defaults.template},
        )

    async def _sandbox(self, instance_id: str) -> AsyncSandbox:
        if sandbox := self._sandboxes.get(instance_id):
            return sandbox
        try:
            sandbox = await AsyncSandbox.connect(instance_id, api_key=self._api_key)
        except NotFoundException as e:
            raise InstanceNotFoundError(f"E2B sandbox {instance_id} not found") from e
        except SandboxException as e:
            raise classify(e) from e
        self._sandboxes[instance_id] = sandbox
        return sandbox

    async def create_instance(self, config: InstanceConfig) -> tuple[Instance, InstanceSecret]:
        template = config.size or self.defaults.template
        timeout = int(config.options.get("timeout", self.defaults.timeout))
        try:
            sandbox = await AsyncSandbox.create(
                template=template,
                timeout=timeout,
                metadata={"name": config.name, "createdBy": "agenthost"},
                api_key=self._api_key,
            )
        except SandboxException as e:
            raise classify(e) from e

        self._sandboxes[sandbox.sandbox_id] = sandbox
        self._names[sandbox.sandbox_id] = config.name
        log.info("Created sandbox {id} from {template}", id=sandbox.sandbox_id, template=template)
        return self._to_instance(sandbox, config.name), InstanceSecret()

    async def get_instance(self, instance_id: str) -> Instance:
        sandbox = await self._sandbox(instance_id)
        try:
            running = await sandbox.is_running()
        except SandboxException as e:
            raise classify(e) from e
        return self._to_instance(sandbox, self._names.get(instance_id, instance_id), running)

    async def find_instance(self, name: str) -> Instance | None:
        for instance_id, known in self._names.items():
            if known == name:
                return await self.get_instance(instance_id)
        return None

    async def delete_instance(self, instance_id: str) -> None:
        sandbox = await self._sandbox(instance_id)
        try:
            await sandbox.kill()
        except SandboxException as e:
            raise classify(e) from e
        self._sandboxes.pop(instance_id, None)
        self._names.pop(instance_id, None)
        log.info("Killed sandbox {id}", id=instance_id)

    async def run_remote_command(
        self, instance_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        sandbox = await self._sandbox(instance_id)
        try:
            result = await sandbox.commands.run(command, timeout=timeout or 60)
        except CommandExitException as e:
            return CommandResult(output=(e.stdout or "") + (e.stderr or ""), exit_code=e.exit_code)
        except SandboxException as e:
            raise classify(e) from e
        return CommandResult(
            output=(result.stdout or "") + (result.stderr or ""), exit_code=result.exit_code
        )

    async def validate_credentials(self) -> None:
        try:
            sandbox = await AsyncSandbox.create(
                template=self.defaults.template, timeout=60, api_key=self._api_key
            )
        except SandboxException as e:
            raise classify(e) from e
        with contextlib.suppress(SandboxException):
            await sandbox.kill()

    async def close(self) -> None:
        self._sandboxes.clear()
