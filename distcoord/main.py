#!/usr/bin/env python3
"""
Main entry point for running a coordination node.

Usage:
    # One node of a four-node peer set
    python -m distcoord.main --node-id 1 --peers 4 --base-port 5000 --data-dir ./data/node-1

The business layer embeds CoordinationNode and registers its own
handlers; run standalone, the node keeps an in-memory record store so the
coordination core can be exercised on its own.
"""

import argparse
import asyncio
import re
import signal
import sys
from typing import Any, Dict, List, Optional

from distcoord.clock.lamport import LAMPORT_FIELD
from distcoord.durability.oplog import OperationLogEntry
from distcoord.errors import DuplicateOperationError, StartupError
from distcoord.handlers import BusinessHandlers, RestoredRecord
from distcoord.node import CoordinationNode
from distcoord.utils.config import Config
from distcoord.utils.logging import configure_from_config, get_logger, set_role_provider

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="distcoord node - leader election, durable operation log and reliable delivery"
    )

    parser.add_argument(
        "--node-id",
        type=int,
        help="Numeric peer id in 1..K (overrides config and NODE_ID/WORKER_ID)",
    )

    parser.add_argument(
        "--peers",
        type=int,
        help="Peer set size K",
    )

    parser.add_argument(
        "--host",
        type=str,
        help="Host shared by all peers (default: localhost)",
    )

    parser.add_argument(
        "--base-port",
        type=int,
        help="Port of peer 1; peer n listens on base-port + n - 1 (default: 5000)",
    )

    parser.add_argument(
        "--data-dir",
        type=str,
        help="Directory for checkpoints and the operation log (default: ./data)",
    )

    parser.add_argument(
        "--config",
        type=str,
        help="YAML configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "console"],
        help="Log output format (default: json)",
    )

    return parser.parse_args(argv)


def build_config(args) -> Config:
    """Load configuration and apply command-line overrides."""
    config = Config(args.config)

    overrides = {
        "node.id": args.node_id,
        "peers.count": args.peers,
        "peers.host": args.host,
        "peers.base_port": args.base_port,
        "node.data_dir": args.data_dir,
        "logging.level": args.log_level,
        "logging.format": args.log_format,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)

    return config


class InMemoryRecords:
    """Record store used when the node runs without a business layer."""

    DELETE_ACTIONS = ("delete", "remove")

    def __init__(self):
        self.collections: Dict[str, Dict[str, Any]] = {}
        self.applied_operations: set = set()

    @staticmethod
    def _key(data: Any) -> str:
        return str(data.get("id")) if isinstance(data, dict) and "id" in data else repr(data)

    def apply_restored_record(self, record: RestoredRecord) -> None:
        self.collections.setdefault(record.collection, {})[self._key(record.data)] = record.data

    def apply_replayed_operation(self, entry: OperationLogEntry) -> None:
        """
        Apply a logged operation to the record it names.

        Operation types read "<collection>.<action>" or "<collection>-<action>";
        a "collection" payload field overrides the prefix. Delete actions drop
        the record, any other action merges the payload into it.

        Raises:
            DuplicateOperationError: If the operation was already applied
            ValueError: If the payload carries no record id
        """
        if entry.id in self.applied_operations:
            raise DuplicateOperationError(entry.id)

        parts = re.split(r"[.-]", entry.operation_type, maxsplit=1)
        collection = entry.payload.get("collection") or parts[0]
        action = parts[1] if len(parts) > 1 else ""

        data = {
            k: v for k, v in entry.payload.items()
            if k not in ("collection", LAMPORT_FIELD)
        }
        if "id" not in data:
            raise ValueError(f"Operation {entry.id} has no record id")

        records = self.collections.setdefault(collection, {})
        key = self._key(data)

        if action in self.DELETE_ACTIONS:
            records.pop(key, None)
        else:
            records[key] = {**records.get(key, {}), **data}

        self.applied_operations.add(entry.id)

    def snapshot(self, window_days: int) -> Dict[str, List[Any]]:
        return {name: list(records.values()) for name, records in self.collections.items()}

    def handlers(self) -> BusinessHandlers:
        return BusinessHandlers(
            apply_restored_record=self.apply_restored_record,
            apply_replayed_operation=self.apply_replayed_operation,
            snapshot=self.snapshot,
        )


async def run(config: Config) -> int:
    """Run one node until SIGINT/SIGTERM."""
    node = CoordinationNode.from_config(config)
    set_role_provider(lambda: node.elector.state.value)
    node.register_business_handlers(InMemoryRecords().handlers())

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await node.start()
    except StartupError as e:
        logger.error("Node failed to start", node_id=node.node_id, error=str(e))
        await node.stop(final_checkpoint=False)
        return 1

    logger.info("Node running", node_id=node.node_id, status=node.status())

    await stop_event.wait()

    logger.info("Shutdown signal received", node_id=node.node_id)
    await node.stop(final_checkpoint=True)

    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    configure_from_config(config)

    logger.info(
        "Starting distcoord node",
        node_id=config.get("node.id"),
        peers=config.get("peers.count"),
        base_port=config.get("peers.base_port"),
        data_dir=config.get("node.data_dir"),
    )

    try:
        exit_code = asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
        exit_code = 0
    except Exception as e:
        logger.error("Node error", error=str(e), exc_info=True)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
