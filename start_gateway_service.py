"""Startup script for the agent gateway."""

import os
import sys

import uvicorn

from gateway.config import get_config
from gateway.logger import setup_logger


if __name__ == "__main__":
    config = get_config()
    logger = setup_logger(config.logging)

    logger.info("=" * 60)
    logger.info("Agent Gateway {}", config.server.version)
    logger.info("=" * 60)
    logger.info("HTTP      : http://{}:{}", config.server.host, config.server.port)
    if config.websocket.enabled:
        logger.info("WebSocket : ws://{}:{}{}", config.server.host, config.server.port, config.websocket.path)
    if config.auth.enabled and not config.auth.token:
        logger.warning("AUTH__ENABLED is set without AUTH__TOKEN; all requests will be rejected")

    try:
        from gateway.agent import Agent
        from gateway.app import create_app
    except Exception as e:
        logger.error(f"Cannot import gateway app: {e}")
        logger.error("Please install dependencies first: pip install -e .")
        sys.exit(1)

    app = create_app(config, agent=Agent(id=os.getenv("AGENT_ID", "agent")))
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )
