"""Run the agenthost HTTP server.

    python -m agenthost --port 8080 --config ./agenthost.toml
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from aiohttp import web
from loguru import logger

from agenthost.config import Settings, load_settings
from agenthost.observability.logging import setup_logging, teardown_logging
from agenthost.server import create_app
from agenthost.service import AgentHostService


async def serve(settings: Settings, host: str, port: int) -> None:
    app = create_app(AgentHostService.create(settings))
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.bind(component="http").info("Listening on http://{host}:{port}", host=host, port=port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def main() -> None:
    parser = argparse.ArgumentParser(description="agenthost provisioning and terminal service")
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--config", type=Path, default=None, help="Path to an agenthost.toml")
    args = parser.parse_args()

    settings = load_settings(config_path=args.config)
    handlers = setup_logging(settings.logging)
    try:
        asyncio.run(serve(settings, args.host, args.port))
    except KeyboardInterrupt:
        pass
    finally:
        teardown_logging(handlers)


if __name__ == "__main__":
    main()
