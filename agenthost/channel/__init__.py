"""Remote execution channels."""

from .api import CommandApiChannel
from .base import (
    BaseChannel,
    ChannelState,
    CommandResult,
    InteractiveShell,
    default_run_policy,
    is_connection_error,
)
from .ssh import SSHChannel, SSHShell

__all__ = [
    "BaseChannel",
    "ChannelState",
    "CommandApiChannel",
    "CommandResult",
    "InteractiveShell",
    "SSHChannel",
    "SSHShell",
    "default_run_policy",
    "is_connection_error",
]
