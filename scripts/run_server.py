#!/usr/bin/env python3
"""Script to run the fieldsync sync server.

Loads configuration, configures logging, creates missing tables and serves
the FastAPI application with uvicorn.

Usage:
    python scripts/run_server.py [--config CONFIG_PATH] [--host HOST] [--port PORT]
"""

import argparse
import sys

import structlog
import uvicorn

from fieldsync.server.api import create_app
from fieldsync.storage.database import Database
from fieldsync.storage.tables import ServerBase
from fieldsync.utils.config_loader import ConfigLoader, ConfigurationError
from fieldsync.utils.logging_config import configure_from_config

log = structlog.stdlib.get_logger()


def main():
    """Main entry point for the sync server."""
    parser = argparse.ArgumentParser(description="Run the fieldsync sync server")
    parser.add_argument("--config", type=str, help="Path to configuration file", default=None)
    parser.add_argument("--host", type=str, help="Override server.host", default=None)
    parser.add_argument("--port", type=int, help="Override server.port", default=None)
    args = parser.parse_args()

    loader = ConfigLoader()
    try:
        config = loader.load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_from_config(config.logging)
    loader.validate_config(config)

    database = Database(config.database.url, ServerBase.metadata, echo=config.database.echo)
    database.create_all()
    app = create_app(config, database=database)

    host = args.host or config.server.host
    port = args.port or config.server.port
    log.info("starting_sync_server", host=host, port=port)

    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
