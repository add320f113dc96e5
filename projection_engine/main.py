"""
main.py - Main entry point for the projection engine
"""
import logging
import os

import uvicorn

from projection_engine.config import config_manager
from projection_engine.rest_api import create_api

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Setup logging for the engine"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main():
    """
    Start the projection engine server.
    """
    config = config_manager.load_config("env")
    setup_logging(config.log_level)

    api = create_api(config)
    app = api.get_app()

    port = int(os.getenv("PROJECTION_PORT", "8000"))
    logger.info("Starting projection engine on port %d", port)
    logger.info("Write store: %s, ledger/read store: %s, CDC: %s",
                config.write_store_uri, config.store_type, config.cdc_provider)

    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
