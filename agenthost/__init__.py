"""agenthost: provision cloud machines for a chat agent and stream live terminals to them.

Example:
    from agenthost import AgentHostService, create_app, load_settings

    service = AgentHostService.create(load_settings())
    app = create_app(service)
"""

from agenthost.config import Settings, load_settings
from agenthost.server import create_app
from agenthost.service import AgentHostService

__version__ = "0.1.0"

__all__ = [
    "AgentHostService",
    "Settings",
    "__version__",
    "create_app",
    "load_settings",
]
