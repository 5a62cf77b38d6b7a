"""AWS EC2 provider."""

from agenthost.providers.aws.adapter import AWSAdapter
from agenthost.providers.aws.driver import AWSDriver

__all__ = ["AWSAdapter", "AWSDriver"]
