"""Azure VM adapter built on the async management SDK.

Every machine lives in one shared resource group with its own NSG, VNet,
static public IP and NIC, all named after the VM. The VM name is the
instance id.
"""

from __future__ import annotations

import base64
import contextlib
from typing import Any

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import ClientSecretCredential
from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.network.aio import NetworkManagementClient
from azure.mgmt.resource.resources.aio import ResourceManagementClient
from loguru import logger

from agenthost.api.model import Instance, InstanceConfig, InstanceSecret, InstanceStatus, Provider
from agenthost.channel.base import CommandResult
from agenthost.config import AzureDefaults
from agenthost.core.exceptions import (
    BillingRequiredError,
    CreateUncertainError,
    InstanceNotFoundError,
    ProviderError,
    TerminalProviderError,
    TransientProviderError,
    UnsupportedProviderError,
)
from agenthost.providers.base import generate_password, generate_ssh_keypair

log = logger.bind(component="azure", provider="azure")

UBUNTU_IMAGE = {
    "publisher": "Canonical",
    "offer": "0001-com-ubuntu-server-jammy",
    "sku": "22_04-lts-gen2",
    "version": "latest",
}
TAGS = {"CreatedBy": "agenthost"}

_POWER_STATES: dict[str, InstanceStatus] = {
    "PowerState/starting": "starting",
    "PowerState/running": "running",
    "PowerState/stopping": "stopped",
    "PowerState/stopped": "stopped",
    "PowerState/deallocating": "stopped",
    "PowerState/deallocated": "stopped",
}
_QUOTA_MARKERS = ("QuotaExceeded", "OperationNotAllowed", "SkuNotAvailable", "subscription")


def cloud_init(username: str) -> str:
    return f"""#!/bin/bash
apt-get update -y
apt-get install -y curl git python3 python3-pip openssh-client procps
useradd -m -s /bin/bash {username} || true
echo "{username} ALL=(ALL) NOPASSWD:ALL" > /etc/sudoers.d/{username}
touch /tmp/agenthost-ready
"""


def classify(exc: Exception, size: str = "") -> ProviderError:
    """Map an azure-core failure onto the agenthost provider hierarchy."""
    if isinstance(exc, ClientAuthenticationError):
        return TerminalProviderError(f"Azure rejected the credentials: {exc.message}")
    if isinstance(exc, HttpResponseError):
        status = exc.status_code or 0
        code = (exc.error.code if exc.error else "") or ""
        if status == 403 or code == "AuthorizationFailed":
            return TerminalProviderError(
                "Insufficient permissions. The service principal needs Contributor access."
            )
        if status == 409 and any(m in code or m in str(exc) for m in _QUOTA_MARKERS):
            return BillingRequiredError(size, exc.message or str(exc))
        if status == 429 or status >= 500:
            return TransientProviderError(str(exc))
        return TerminalProviderError(exc.message or str(exc))
    if isinstance(exc, (ServiceRequestError, ServiceResponseError, TimeoutError)):
        return TransientProviderError(str(exc))
    return TerminalProviderError(str(exc))


class AzureAdapter:
    """CloudAdapter for Azure virtual machines."""

    provider = Provider.AZURE

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        subscription_id: str,
        defaults: AzureDefaults | None = None,
        region: str | None = None,
    ) -> None:
        self.defaults = defaults or AzureDefaults()
        self.region = region or self.defaults.region
        self.resource_group = self.defaults.resource_group
        self._credential = ClientSecretCredential(tenant_id, client_id, client_secret)
        self._compute = ComputeManagementClient(self._credential, subscription_id)
        self._network = NetworkManagementClient(self._credential, subscription_id)
        self._resources = ResourceManagementClient(self._credential, subscription_id)

    # -------------------------------------------------------------------------
    # Networking
    # -------------------------------------------------------------------------

    async def _ensure_resource_group(self) -> None:
        try:
            await self._resources.resource_groups.get(self.resource_group)
        except ResourceNotFoundError:
            log.info("Creating resource group {rg}", rg=self.resource_group)
            await self._resources.resource_groups.create_or_update(
                self.resource_group, {"location": self.region, "tags": TAGS}
            )

    async def _create_network(self, name: str) -> str:
        """Create NSG, VNet, public IP and NIC for ``name`` and return the NIC id."""
        rg = self.resource_group
        nsg = await (
            await self._network.network_security_groups.begin_create_or_update(
                rg,
                f"{name}-nsg",
                {
                    "location": self.region,
                    "security_rules": [{
                        "name": "SSH",
                        "protocol": "Tcp",
                        "source_port_range": "*",
                        "destination_port_range": "22",
                        "source_address_prefix": "*",
                        "destination_address_prefix": "*",
                        "access": "Allow",
                        "priority": 1000,
                        "direction": "Inbound",
                    }],
                    "tags": TAGS,
                },
            )
        ).result()

        vnet = await (
            await self._network.virtual_networks.begin_create_or_update(
                rg,
                f"{name}-vnet",
                {
                    "location": self.region,
                    "address_space": {"address_prefixes": ["10.0.0.0/16"]},
                    "subnets": [{"name": f"{name}-subnet", "address_prefix": "10.0.0.0/24"}],
                    "tags": TAGS,
                },
            )
        ).result()

        ip = await (
            await self._network.public_ip_addresses.begin_create_or_update(
                rg,
                f"{name}-ip",
                {
                    "location": self.region,
                    "public_ip_allocation_method": "Static",
                    "sku": {"name": "Standard"},
                    "tags": TAGS,
                },
            )
        ).result()

        nic = await (
            await self._network.network_interfaces.begin_create_or_update(
                rg,
                f"{name}-nic",
                {
                    "location": self.region,
                    "ip_configurations": [{
                        "name": "ipconfig1",
                        "subnet": {"id": vnet.subnets[0].id},
                        "public_ip_address": {"id": ip.id},
                    }],
                    "network_security_group": {"id": nsg.id},
                    "tags": TAGS,
                },
            )
        ).result()
        return nic.id

    async def _public_ip(self, name: str) -> str | None:
        try:
            ip = await self._network.public_ip_addresses.get(self.resource_group, f"{name}-ip")
        except ResourceNotFoundError:
            return None
        return ip.ip_address

    async def _delete_network(self, name: str) -> None:
        rg = self.resource_group
        steps = (
            (self._network.network_interfaces, f"{name}-nic"),
            (self._network.public_ip_addresses, f"{name}-ip"),
            (self._network.virtual_networks, f"{name}-vnet"),
            (self._network.network_security_groups, f"{name}-nsg"),
        )
        for operations, resource in steps:
            try:
                await (await operations.begin_delete(rg, resource)).result()
            except HttpResponseError as e:
                log.warning("Could not delete {resource}: {error}", resource=resource, error=e)

    # -------------------------------------------------------------------------
    # CloudAdapter
    # -------------------------------------------------------------------------

    async def _to_instance(self, vm: Any) -> Instance:
        status: InstanceStatus = "creating"
        view = getattr(vm, "instance_view", None)
        if view is not None:
            for s in view.statuses or []:
                if s.code in _POWER_STATES:
                    status = _POWER_STATES[s.code]
        elif vm.provisioning_state == "Succeeded":
            status = "running"
        elif vm.provisioning_state == "Failed":
            status = "error"

        ip = await self._public_ip(vm.name)
        return Instance(
            id=vm.name,
            provider=Provider.AZURE,
            name=vm.name,
            status=status,
            size=vm.hardware_profile.vm_size if vm.hardware_profile else "",
            region=vm.location,
            ip=ip,
            url=f"ssh://{self.defaults.username}@{ip}" if ip else None,
            specific={"resource_group": self.resource_group, "resource_id": vm.id},
        )

    async def create_instance(self, config: InstanceConfig) -> tuple[Instance, InstanceSecret]:
        size = config.size or self.defaults.vm_size
        username = self.defaults.username
        private_key, public_key = generate_ssh_keypair(f"agenthost@{config.name}")
        secret = InstanceSecret(ssh_private_key=private_key, admin_password=generate_password())
        submitted = False

        try:
            await self._ensure_resource_group()
            nic_id = await self._create_network(config.name)
            submitted = True
            poller = await self._compute.virtual_machines.begin_create_or_update(
                self.resource_group,
                config.name,
                {
                    "location": self.region,
                    "hardware_profile": {"vm_size": size},
                    "storage_profile": {
                        "image_reference": UBUNTU_IMAGE,
                        "os_disk": {
                            "create_option": "FromImage",
                            "managed_disk": {"storage_account_type": "Standard_LRS"},
                            "disk_size_gb": self.defaults.disk_gb,
                            "delete_option": "Delete",
                        },
                    },
                    "os_profile": {
                        "computer_name": "".join(c for c in config.name if c.isalnum())[:15],
                        "admin_username": username,
                        "admin_password": secret.admin_password,
                        "linux_configuration": {
                            "disable_password_authentication": False,
                            "ssh": {
                                "public_keys": [{
                                    "path": f"/home/{username}/.ssh/authorized_keys",
                                    "key_data": public_key,
                                }],
                            },
                        },
                        "custom_data": base64.b64encode(cloud_init(username).encode()).decode(),
                    },
                    "network_profile": {
                        "network_interfaces": [{"id": nic_id, "primary": True}],
                    },
                    "tags": {**TAGS, "Name": config.name},
                },
            )
            vm = await poller.result()
        except (ServiceResponseError, TimeoutError) as e:
            if submitted:
                raise CreateUncertainError(config.name, str(e), secret) from e
            raise classify(e, size) from e
        except (HttpResponseError, ServiceRequestError) as e:
            raise classify(e, size) from e

        instance = await self._to_instance(vm)
        log.info("Created VM {name} ({size}) in {region}", name=config.name, size=size,
                 region=self.region)
        return instance, secret

    async def get_instance(self, instance_id: str) -> Instance:
        try:
            vm = await self._compute.virtual_machines.get(
                self.resource_group, instance_id, expand="instanceView"
            )
        except ResourceNotFoundError as e:
            raise InstanceNotFoundError(f"Azure VM {instance_id} not found") from e
        except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
            raise classify(e) from e
        return await self._to_instance(vm)

    async def find_instance(self, name: str) -> Instance | None:
        try:
            return await self.get_instance(name)
        except InstanceNotFoundError:
            return None

    async def delete_instance(self, instance_id: str) -> None:
        try:
            await (
                await self._compute.virtual_machines.begin_delete(self.resource_group, instance_id)
            ).result()
        except ResourceNotFoundError as e:
            raise InstanceNotFoundError(f"Azure VM {instance_id} not found") from e
        except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
            raise classify(e) from e
        await self._delete_network(instance_id)
        log.info("Deleted VM {name}", name=instance_id)

    async def run_remote_command(
        self, instance_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        raise UnsupportedProviderError("Azure VMs are reached over SSH")

    async def validate_credentials(self) -> None:
        try:
            async for _ in self._resources.resource_groups.list():
                break
        except (HttpResponseError, ClientAuthenticationError, ServiceRequestError) as e:
            raise classify(e) from e

    async def close(self) -> None:
        for client in (self._compute, self._network, self._resources, self._credential):
            with contextlib.suppress(Exception):
                await client.close()
