"""E2B sandboxes, driven through the e2b SDK."""

from agenthost.providers.e2b.adapter import E2BAdapter
from agenthost.providers.e2b.driver import E2BDriver

__all__ = ["E2BAdapter", "E2BDriver"]
