"""Orgo cloud computers, driven through their REST API."""

from agenthost.providers.orgo.adapter import OrgoAdapter
from agenthost.providers.orgo.driver import OrgoDriver

__all__ = ["OrgoAdapter", "OrgoDriver"]
