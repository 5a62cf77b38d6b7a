from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agenthost.api.model import InstanceConfig, Provider
from agenthost.providers import scripts
from agenthost.providers.driver import ProviderDriver


class E2BDriver(ProviderDriver):
    """Sandboxes are up when create returns; the template ships most tooling already."""

    provider = Provider.E2B
    prepares_package_manager = False
    tooling_packages = scripts.ESSENTIAL_PACKAGES

    def instance_config(self, name: str, preferences: Mapping[str, Any]) -> InstanceConfig:
        defaults = self.settings.providers.e2b
        return InstanceConfig(
            name=name,
            size=preferences.get("template") or defaults.template,
            options={"timeout": int(preferences.get("timeout") or defaults.timeout)},
        )
