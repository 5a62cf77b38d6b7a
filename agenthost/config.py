"""TOML-based service configuration.

Loads ~/.agenthost/defaults.toml (global) and agenthost.toml (project),
merges them, applies environment overrides and builds a frozen Settings
tree. Every section and key is optional; anything left out keeps the
defaults below.

Example agenthost.toml:

    encryption_key = "..."

    [timeouts]
    channel_connect = 30

    [providers.aws]
    region = "eu-west-1"
    instance_type = "t3.small"

    [logging]
    level = "DEBUG"
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from agenthost.api.model import Provider
from agenthost.core.exceptions import ConfigurationError
from agenthost.observability.logging import LogConfig

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".agenthost" / "defaults.toml"
PROJECT_CONFIG_NAME = "agenthost.toml"

ENV_ENCRYPTION_KEY = "AGENTHOST_ENCRYPTION_KEY"
ENV_MESSAGING_TOKEN = "AGENTHOST_MESSAGING_TOKEN"
ENV_MESSAGING_USER_ID = "AGENTHOST_MESSAGING_USER_ID"


# =============================================================================
# Sections
# =============================================================================


@dataclass(frozen=True, slots=True)
class Timeouts:
    """Deadlines and polling cadences, all in seconds."""

    channel_connect: float = 30.0
    readiness_attempts: int = 20
    readiness_interval: float = 15.0
    gateway_attempts: int = 5
    gateway_interval: float = 5.0
    gateway_start_grace: float = 8.0
    gateway_kill_grace: float = 2.0
    command: float = 600.0
    screenshot: float = 10.0


@dataclass(frozen=True, slots=True)
class Retries:
    tooling_attempts: int = 5
    tooling_delay: float = 10.0
    channel_attempts: int = 3
    channel_step: float = 5.0
    create_attempts: int = 3
    create_delay: float = 3.0
    create_recheck_delay: float = 5.0


@dataclass(frozen=True, slots=True)
class BootDelays:
    """Fixed sleep after instance creation, before any readiness probing."""

    orgo: float = 10.0
    aws: float = 30.0
    azure: float = 60.0
    e2b: float = 0.0

    def for_provider(self, provider: Provider) -> float:
        return getattr(self, provider.value)


@dataclass(frozen=True, slots=True)
class BufferLimits:
    max_entries: int = 500
    max_bytes: int = 5 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class StreamSettings:
    active_interval: float = 0.1
    idle_interval: float = 0.5
    idle_after: int = 5
    max_batch_chunks: int = 50
    max_batch_bytes: int = 100_000


@dataclass(frozen=True, slots=True)
class AgentSettings:
    """What gets installed on the machine and how its gateway is run."""

    package: str = "clawdbot"
    fallback_version: str = "2026.1.22"
    nvm_version: str = "v0.40.0"
    node_version: str = "22"
    gateway_port: int = 18789
    heartbeat_minutes: int = 30
    log_path: str = "/tmp/clawdbot.log"
    startup_script: str = "/tmp/start-clawdbot.sh"
    workspace_dir: str = "clawd"
    sdk_packages: tuple[str, ...] = ("anthropic", "langchain-anthropic", "requests", "Pillow")

    @property
    def config_dir(self) -> str:
        return f".{self.package}"

    @property
    def config_file(self) -> str:
        return f"{self.package}.json"


@dataclass(frozen=True, slots=True)
class OrgoDefaults:
    base_url: str = "https://www.orgo.ai/api"
    project: str = "agenthost"
    ram: int = 4
    cpu: int = 2


@dataclass(frozen=True, slots=True)
class AWSDefaults:
    region: str = "us-east-1"
    instance_type: str = "t3.micro"
    ami_parameter: str = (
        "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
    )
    disk_gb: int = 30
    username: str = "ubuntu"


@dataclass(frozen=True, slots=True)
class AzureDefaults:
    region: str = "eastus"
    vm_size: str = "Standard_B2s"
    resource_group: str = "agenthost-vms"
    disk_gb: int = 30
    username: str = "agenthost"


@dataclass(frozen=True, slots=True)
class E2BDefaults:
    template: str = "base"
    timeout: int = 3600


@dataclass(frozen=True, slots=True)
class ProviderDefaults:
    orgo: OrgoDefaults = field(default_factory=OrgoDefaults)
    aws: AWSDefaults = field(default_factory=AWSDefaults)
    azure: AzureDefaults = field(default_factory=AzureDefaults)
    e2b: E2BDefaults = field(default_factory=E2BDefaults)


@dataclass(frozen=True, slots=True)
class MessagingDefaults:
    """Fallback messaging credentials used when a setup request carries none."""

    token: str | None = None
    user_id: str | None = None


@dataclass(frozen=True, slots=True)
class Settings:
    timeouts: Timeouts = field(default_factory=Timeouts)
    retries: Retries = field(default_factory=Retries)
    boot: BootDelays = field(default_factory=BootDelays)
    buffer: BufferLimits = field(default_factory=BufferLimits)
    stream: StreamSettings = field(default_factory=StreamSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    providers: ProviderDefaults = field(default_factory=ProviderDefaults)
    messaging: MessagingDefaults = field(default_factory=MessagingDefaults)
    logging: LogConfig = field(default_factory=LogConfig)
    encryption_key: str | None = None


# =============================================================================
# Loading
# =============================================================================


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    config_path: Path | None = None,
) -> RawConfig:
    """Read and merge the global and project TOML files.

    ``config_path`` replaces the project file lookup when given.
    """
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = config_path or (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    if config_path is not None and not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")
    project_cfg = _read_toml(project_path)
    return _deep_merge(global_cfg, project_cfg)


def _build[T](cls: type[T], raw: Any, section: str) -> T:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"[{section}] must be a table, got {type(raw).__name__}")

    known = {f.name: f for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - set(known)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{section}]: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(known)}"
        )

    kwargs: dict[str, Any] = {}
    defaults = cls()
    for key, value in raw.items():
        current = getattr(defaults, key)
        if hasattr(current, "__dataclass_fields__"):
            kwargs[key] = _build(type(current), value, f"{section}.{key}")
        elif isinstance(current, tuple):
            kwargs[key] = tuple(value)
        else:
            kwargs[key] = value
    return cls(**kwargs)


def settings_from_raw(raw: RawConfig, environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from merged TOML data plus environment overrides."""
    settings = _build(Settings, raw, "root")
    env = os.environ if environ is None else environ

    if key := env.get(ENV_ENCRYPTION_KEY):
        settings = replace(settings, encryption_key=key)

    token = env.get(ENV_MESSAGING_TOKEN)
    user_id = env.get(ENV_MESSAGING_USER_ID)
    if token or user_id:
        settings = replace(
            settings,
            messaging=MessagingDefaults(
                token=token or settings.messaging.token,
                user_id=user_id or settings.messaging.user_id,
            ),
        )
    return settings


def load_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    raw = load_config(project_dir=project_dir, global_path=global_path, config_path=config_path)
    return settings_from_raw(raw, environ)
