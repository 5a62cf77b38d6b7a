from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
from typing import Any, Literal

from agenthost.core.exceptions import InvalidTransitionError


class Provider(StrEnum):
    ORGO = "orgo"
    AWS = "aws"
    AZURE = "azure"
    E2B = "e2b"


type InstanceStatus = Literal["creating", "starting", "running", "stopped", "error"]


# =============================================================================
# Instances
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceConfig:
    """What to launch. ``options`` carries provider-specific knobs."""

    name: str
    size: str
    region: str = ""
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Instance:
    """A machine as reported by its provider."""

    id: str
    provider: Provider
    name: str
    status: InstanceStatus
    size: str = ""
    region: str = ""
    ip: str | None = None
    url: str | None = None
    specific: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider.value,
            "name": self.name,
            "status": self.status,
            "size": self.size,
            "region": self.region,
            "ip": self.ip,
            "url": self.url,
            **dict(self.specific),
        }


@dataclass(frozen=True, slots=True)
class InstanceSecret:
    """Access material minted at creation time. Encrypted before it is stored."""

    ssh_private_key: str | None = None
    admin_password: str | None = None


# =============================================================================
# Setup record
# =============================================================================


class SetupStatus(StrEnum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    CONFIGURING_VM = "configuring_vm"
    READY = "ready"
    FAILED = "failed"
    REQUIRES_PAYMENT = "requires_payment"


MILESTONES = ("vm_created", "agent_installed", "channel_configured", "gateway_started")

_TRANSITIONS: dict[SetupStatus, frozenset[SetupStatus]] = {
    SetupStatus.PENDING: frozenset({SetupStatus.PROVISIONING}),
    SetupStatus.PROVISIONING: frozenset({
        SetupStatus.PROVISIONING,
        SetupStatus.CONFIGURING_VM,
        SetupStatus.FAILED,
        SetupStatus.REQUIRES_PAYMENT,
    }),
    SetupStatus.CONFIGURING_VM: frozenset({
        SetupStatus.CONFIGURING_VM,
        SetupStatus.READY,
        SetupStatus.FAILED,
        SetupStatus.REQUIRES_PAYMENT,
    }),
    SetupStatus.FAILED: frozenset({SetupStatus.PROVISIONING}),
    SetupStatus.REQUIRES_PAYMENT: frozenset({SetupStatus.PROVISIONING}),
    SetupStatus.READY: frozenset(),
}

RESTARTABLE = frozenset({SetupStatus.PENDING, SetupStatus.FAILED, SetupStatus.REQUIRES_PAYMENT})


def can_transition(current: SetupStatus, target: SetupStatus) -> bool:
    return target in _TRANSITIONS[current]


def new_setup_id() -> str:
    return uuid.uuid4().hex


def _check_milestones(record: Any, changes: Mapping[str, Any]) -> None:
    after = {m: changes.get(m, getattr(record, m)) for m in MILESTONES}
    for name in MILESTONES:
        if getattr(record, name) and not after[name]:
            raise InvalidTransitionError(f"Milestone {name} cannot be reset once reached")
    for earlier, later in zip(MILESTONES, MILESTONES[1:], strict=False):
        if after[later] and not after[earlier]:
            raise InvalidTransitionError(f"{later} cannot be set before {earlier}")


@dataclass(slots=True)
class SetupRecord:
    """Per-user provisioning progress, the single source of truth for status polling."""

    user_id: str
    provider: Provider
    setup_id: str = field(default_factory=new_setup_id)
    status: SetupStatus = SetupStatus.PENDING
    vm_created: bool = False
    agent_installed: bool = False
    channel_configured: bool = False
    gateway_started: bool = False
    error_message: str | None = None
    instance_id: str | None = None
    instance_name: str | None = None
    public_ip: str | None = None
    vm_status: str | None = None
    vm_id: str | None = None
    specific: dict[str, str] = field(default_factory=dict)
    credentials: dict[str, str] = field(default_factory=dict)
    preferences: dict[str, str] = field(default_factory=dict)

    def apply(self, changes: Mapping[str, Any]) -> SetupRecord:
        """Return a copy with ``changes`` applied, enforcing lifecycle rules.

        Raises:
            InvalidTransitionError: On an illegal status move, a milestone reset
                or out-of-order milestone, or a failure status without a message.
        """
        valid = {f.name for f in fields(self)}
        unknown = set(changes) - valid
        if unknown:
            raise InvalidTransitionError(f"Unknown setup field(s): {', '.join(sorted(unknown))}")

        if "status" in changes:
            target = SetupStatus(changes["status"])
            if target != self.status and not can_transition(self.status, target):
                raise InvalidTransitionError(
                    f"Illegal status transition {self.status} -> {target}"
                )
            if target == self.status == SetupStatus.READY and len(changes) > 1:
                raise InvalidTransitionError("A ready setup is final")

        _check_milestones(self, changes)

        updated = replace(self, **changes)
        if updated.status in (SetupStatus.FAILED, SetupStatus.REQUIRES_PAYMENT) and not (
            updated.error_message
        ):
            raise InvalidTransitionError(f"Status {updated.status} requires an error message")
        return updated

    def copy(self) -> SetupRecord:
        return replace(
            self,
            specific=dict(self.specific),
            credentials=dict(self.credentials),
            preferences=dict(self.preferences),
        )

    def status_view(self) -> dict[str, Any]:
        view: dict[str, Any] = {
            "status": self.status.value,
            "vmCreated": self.vm_created,
            "agentInstalled": self.agent_installed,
            "channelConfigured": self.channel_configured,
            "gatewayStarted": self.gateway_started,
        }
        if self.error_message:
            view["errorMessage"] = self.error_message
        if self.instance_id:
            view["instanceId"] = self.instance_id
            view["publicIp"] = self.public_ip
            view["vmStatus"] = self.vm_status
        return view


# =============================================================================
# VM records
# =============================================================================


@dataclass(slots=True)
class VmRecord:
    """A machine the user declared, created now or later by the setup pipeline."""

    id: str
    user_id: str
    name: str
    provider: Provider
    config: InstanceConfig
    instance: Instance | None = None
    status: SetupStatus = SetupStatus.PENDING
    vm_created: bool = False
    agent_installed: bool = False
    channel_configured: bool = False
    gateway_started: bool = False
    error_message: str | None = None
    credentials: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider.value,
            "size": self.config.size,
            "region": self.config.region,
            "status": self.status.value,
            "vmCreated": self.vm_created,
            "agentInstalled": self.agent_installed,
            "channelConfigured": self.channel_configured,
            "gatewayStarted": self.gateway_started,
            "errorMessage": self.error_message,
            "instance": self.instance.to_dict() if self.instance else None,
        }


@dataclass(frozen=True, slots=True)
class Screenshot:
    """One capture of an instance's screen: base64 image data, a URL to it, or both."""

    image: str | None = None
    image_url: str | None = None

    def to_dict(self) -> dict[str, str]:
        view: dict[str, str] = {}
        if self.image is not None:
            view["image"] = self.image
        if self.image_url is not None:
            view["imageUrl"] = self.image_url
        return view
