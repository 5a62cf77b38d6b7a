"""Azure virtual machine provider."""

from agenthost.providers.azure.adapter import AzureAdapter
from agenthost.providers.azure.driver import AzureDriver

__all__ = ["AzureAdapter", "AzureDriver"]
