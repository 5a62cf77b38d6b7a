from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agenthost.api.model import InstanceConfig, Provider
from agenthost.providers.driver import ProviderDriver


class AzureDriver(ProviderDriver):
    """Azure VM over SSH. Cloud-init runs long on first boot, hence the longer sleep."""

    provider = Provider.AZURE
    polls_readiness = True

    def instance_config(self, name: str, preferences: Mapping[str, Any]) -> InstanceConfig:
        defaults = self.settings.providers.azure
        return InstanceConfig(
            name=name,
            size=preferences.get("size") or defaults.vm_size,
            region=preferences.get("region") or defaults.region,
            options={"resource_group": defaults.resource_group},
        )
