"""
StreamDB admin CLI - Main entry point.

Usage:
    streamdb-admin delete-stream --tenant-id <id> --stream-id <id> [--merge | --no-merge]
    streamdb-admin deletions --tenant-id <id> [--since <unix ms>]

The first delete-stream on a stream moves it to the trash; running it again
deletes the stream, its descendants and (per --merge/--no-merge) the events
linked to them. An interrupted deletion is completed by re-running it.

Configuration is entirely via environment variables.
See config.py for all available settings.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import json_log_formatter

from .config import ServerConfig
from .deletion import StreamDeletionEngine
from .errors import NotFoundError, StreamDbError

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


async def run_delete(
    config: ServerConfig,
    tenant_id: str,
    stream_id: str,
    merge: bool | None,
    actor: str,
) -> dict[str, Any]:
    engine = StreamDeletionEngine.from_config(config)
    try:
        outcome = await engine.delete(tenant_id, stream_id, merge, actor=actor)
    finally:
        await engine.close()
    return {
        **outcome.result,
        "notifications": [n.to_dict() for n in outcome.notifications],
    }


async def run_deletions(config: ServerConfig, tenant_id: str, since: int) -> dict[str, Any]:
    engine = StreamDeletionEngine.from_config(config)
    if not await engine.stream_store.db.tenant_exists(tenant_id):
        raise NotFoundError("tenant", tenant_id)
    deletions = await engine.stream_store.find_deletions(tenant_id, since)
    return {"streamDeletions": [{"id": d.id, "deleted": d.deleted} for d in deletions]}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamdb-admin", description="StreamDB admin tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    delete = subparsers.add_parser("delete-stream", help="Trash or delete a stream")
    delete.add_argument("--tenant-id", required=True, help="Tenant ID")
    delete.add_argument("--stream-id", required=True, help="Stream to delete")
    delete.add_argument("--actor", default="admin", help="Actor recorded on changes")
    merge = delete.add_mutually_exclusive_group()
    merge.add_argument(
        "--merge",
        dest="merge",
        action="store_const",
        const=True,
        help="Move linked events to the parent stream",
    )
    merge.add_argument(
        "--no-merge",
        dest="merge",
        action="store_const",
        const=False,
        help="Detach and delete linked events",
    )
    delete.set_defaults(merge=None)

    deletions = subparsers.add_parser("deletions", help="List stream deletions")
    deletions.add_argument("--tenant-id", required=True, help="Tenant ID")
    deletions.add_argument("--since", type=int, default=0, help="Unix ms lower bound")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    config = ServerConfig.from_env()
    setup_logging(config)
    config.log_config()

    try:
        if args.command == "delete-stream":
            result = asyncio.run(
                run_delete(config, args.tenant_id, args.stream_id, args.merge, args.actor)
            )
        else:
            result = asyncio.run(run_deletions(config, args.tenant_id, args.since))
    except StreamDbError as e:
        print(json.dumps(e.to_dict(), indent=2))
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
