#!/usr/bin/env python3
"""
One-shot synchronization of a device's local replica.

This script:
- Pushes queued local changes to the sync server
- Pulls server changes since the stored cursor
- Prints a summary of the run

Designed to be run on a schedule (e.g., via cron) or on demand.

Usage:
    python scripts/sync_device.py [--config CONFIG_PATH] [--retry-failed] [--status]

Exit codes:
    0: Sync completed without errors
    1: Sync failed or reported errors
"""

import argparse
import json
import sys

import structlog

from fieldsync.client.transport import HttpSyncTransport
from fieldsync.storage.client_tables import ClientBase
from fieldsync.storage.database import Database
from fieldsync.sync.sync_coordinator import SyncCoordinator
from fieldsync.utils.config_loader import ConfigLoader, ConfigurationError
from fieldsync.utils.logging_config import configure_from_config

log = structlog.stdlib.get_logger()


def build_coordinator(config_path: str | None = None) -> SyncCoordinator:
    """
    Create a coordinator for the configured device.

    Args:
        config_path: Optional path to configuration file

    Returns:
        SyncCoordinator bound to the local replica and HTTP transport
    """
    config = ConfigLoader().load_config(config_path)
    configure_from_config(config.logging)

    client = config.client
    database = Database(client.local_database_url, ClientBase.metadata)
    database.create_all()

    transport = HttpSyncTransport(
        base_url=client.server_url,
        api_token=client.api_token,
        timeout=client.request_timeout_seconds,
        retries=client.transport_retries,
    )
    return SyncCoordinator(database, transport, client)


def main():
    """Main entry point for device sync."""
    parser = argparse.ArgumentParser(description="Synchronize a fieldsync device")
    parser.add_argument("--config", type=str, help="Path to configuration file", default=None)
    parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Make failed outbox entries eligible again before syncing",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print pending/failed/conflict counts and exit without syncing",
    )
    args = parser.parse_args()

    try:
        coordinator = build_coordinator(args.config)
    except ConfigurationError as e:
        print(json.dumps({"success": False, "error": str(e)}, indent=2))
        sys.exit(1)

    if args.status:
        status = coordinator.status()
        print(json.dumps(status.model_dump(mode="json"), indent=2))
        sys.exit(0)

    if args.retry_failed:
        reset = coordinator.retry_failed()
        log.info("failed_entries_reset", count=reset)

    report = coordinator.sync_once()
    status = coordinator.status()

    summary = report.model_dump(mode="json")
    summary["success"] = report.success
    summary["status"] = status.model_dump(mode="json")
    print(json.dumps(summary, indent=2))

    sys.exit(0 if report.success else 1)


if __name__ == "__main__":
    main()
