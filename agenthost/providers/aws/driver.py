from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from agenthost.api.model import InstanceConfig, Provider
from agenthost.core.exceptions import BillingRequiredError
from agenthost.providers.aws.adapter import is_billing_error
from agenthost.providers.driver import ProviderDriver

if TYPE_CHECKING:
    from agenthost.orchestrator.tasks import PipelineContext


class AWSDriver(ProviderDriver):
    """EC2 over SSH: boot sleep, address refresh, then ``echo ready`` probing."""

    provider = Provider.AWS
    polls_readiness = True

    def instance_config(self, name: str, preferences: Mapping[str, Any]) -> InstanceConfig:
        defaults = self.settings.providers.aws
        return InstanceConfig(
            name=name,
            size=preferences.get("size") or defaults.instance_type,
            region=preferences.get("region") or defaults.region,
        )

    def classify_failure(
        self, error: Exception, ctx: PipelineContext
    ) -> BillingRequiredError | None:
        if isinstance(error, BillingRequiredError):
            return error if error.size else BillingRequiredError(ctx.config.size, error.reason)
        if is_billing_error(error):
            return BillingRequiredError(ctx.config.size, str(error))
        return None
