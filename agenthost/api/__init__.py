"""Public data model."""

from .model import (
    MILESTONES,
    Instance,
    InstanceConfig,
    InstanceSecret,
    InstanceStatus,
    Provider,
    SetupRecord,
    SetupStatus,
    VmRecord,
)

__all__ = [
    "MILESTONES",
    "Instance",
    "InstanceConfig",
    "InstanceSecret",
    "InstanceStatus",
    "Provider",
    "SetupRecord",
    "SetupStatus",
    "VmRecord",
]
