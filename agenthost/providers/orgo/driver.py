from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agenthost.api.model import InstanceConfig, Provider
from agenthost.providers.driver import ProviderDriver


class OrgoDriver(ProviderDriver):
    provider = Provider.ORGO
    prepares_package_manager = False

    def instance_config(self, name: str, preferences: Mapping[str, Any]) -> InstanceConfig:
        defaults = self.settings.providers.orgo
        ram = int(preferences.get("ram") or defaults.ram)
        cpu = int(preferences.get("cpu") or defaults.cpu)
        return InstanceConfig(
            name=name,
            size=f"{ram}GB/{cpu}cpu",
            options={"ram": ram, "cpu": cpu},
        )
