"""Persistence boundary for setup records and declared machines."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from agenthost.api.model import SetupRecord, VmRecord
from agenthost.core.exceptions import InstanceNotFoundError, InvalidTransitionError


@runtime_checkable
class StatusStore(Protocol):
    """Keyed persistence for setup progress.

    Implementations must route every update through ``SetupRecord.apply`` so the
    lifecycle rules hold regardless of which component writes, and must return
    copies so readers never observe a half-applied update.
    """

    async def get(self, user_id: str) -> SetupRecord | None: ...
    async def create(self, record: SetupRecord) -> SetupRecord: ...
    async def update(self, user_id: str, **changes: Any) -> SetupRecord: ...
    async def merge(
        self,
        user_id: str,
        *,
        credentials: Mapping[str, str] | None = None,
        preferences: Mapping[str, str] | None = None,
        drop_credentials: Iterable[str] = (),
        **changes: Any,
    ) -> SetupRecord: ...

    async def save_vm(self, vm: VmRecord) -> VmRecord: ...
    async def get_vm(self, user_id: str, vm_id: str) -> VmRecord | None: ...
    async def list_vms(self, user_id: str) -> list[VmRecord]: ...
    async def update_vm(self, user_id: str, vm_id: str, **changes: Any) -> VmRecord: ...
    async def delete_vm(self, user_id: str, vm_id: str) -> None: ...


class InMemoryStatusStore:
    """Process-local StatusStore. Suitable for a single server instance and tests."""

    def __init__(self) -> None:
        self._records: dict[str, SetupRecord] = {}
        self._vms: dict[tuple[str, str], VmRecord] = {}
        self._lock = asyncio.Lock()
        self._log = logger.bind(component="store")

    async def get(self, user_id: str) -> SetupRecord | None:
        async with self._lock:
            record = self._records.get(user_id)
            return record.copy() if record else None

    async def create(self, record: SetupRecord) -> SetupRecord:
        async with self._lock:
            self._records[record.user_id] = record.copy()
            self._log.debug("Created setup record for {user}", user=record.user_id)
            return record.copy()

    async def update(self, user_id: str, **changes: Any) -> SetupRecord:
        async with self._lock:
            current = self._records.get(user_id)
            if current is None:
                raise InstanceNotFoundError(f"No setup record for user {user_id}")
            updated = current.apply(changes)
            self._records[user_id] = updated
            return updated.copy()

    async def merge(
        self,
        user_id: str,
        *,
        credentials: Mapping[str, str] | None = None,
        preferences: Mapping[str, str] | None = None,
        drop_credentials: Iterable[str] = (),
        **changes: Any,
    ) -> SetupRecord:
        """Update with the maps merged into the stored ones, not into a caller's copy."""
        async with self._lock:
            current = self._records.get(user_id)
            if current is None:
                raise InstanceNotFoundError(f"No setup record for user {user_id}")
            merged = {**current.credentials, **(credentials or {})}
            for slot in drop_credentials:
                merged.pop(slot, None)
            changes["credentials"] = merged
            changes["preferences"] = {**current.preferences, **(preferences or {})}
            updated = current.apply(changes)
            self._records[user_id] = updated
            return updated.copy()

    async def save_vm(self, vm: VmRecord) -> VmRecord:
        async with self._lock:
            self._vms[(vm.user_id, vm.id)] = replace(vm, credentials=dict(vm.credentials))
            return replace(vm)

    async def get_vm(self, user_id: str, vm_id: str) -> VmRecord | None:
        async with self._lock:
            vm = self._vms.get((user_id, vm_id))
            return replace(vm, credentials=dict(vm.credentials)) if vm else None

    async def list_vms(self, user_id: str) -> list[VmRecord]:
        async with self._lock:
            return [replace(vm) for (owner, _), vm in self._vms.items() if owner == user_id]

    async def update_vm(self, user_id: str, vm_id: str, **changes: Any) -> VmRecord:
        async with self._lock:
            vm = self._vms.get((user_id, vm_id))
            if vm is None:
                raise InstanceNotFoundError(f"Instance {vm_id} not found")
            try:
                updated = replace(vm, **changes)
            except TypeError as e:
                raise InvalidTransitionError(str(e)) from e
            self._vms[(user_id, vm_id)] = updated
            return replace(updated)

    async def delete_vm(self, user_id: str, vm_id: str) -> None:
        async with self._lock:
            if self._vms.pop((user_id, vm_id), None) is None:
                raise InstanceNotFoundError(f"Instance {vm_id} not found")
