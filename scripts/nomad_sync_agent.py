"""Simple CLI entrypoint for the NomadNote sync agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path

from nomadnote.app import NomadNote
from nomadnote.const import (
    CONF_API_URL,
    CONF_REQUEST_TIMEOUT,
    CONF_SYNC_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
    ENV_API_URL,
)
from nomadnote.sync.manager import SyncConfig

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synchronize the NomadNote local store with the remote API")
    parser.add_argument("--db", type=Path, default=Path(".nomadnote.db"), help="SQLite path for local data")
    parser.add_argument(
        "--base-url",
        default=os.environ.get(ENV_API_URL, ""),
        help=f"Remote API base URL (defaults to ${ENV_API_URL}; empty means offline-only)",
    )
    parser.add_argument("--interval", type=int, default=DEFAULT_SYNC_INTERVAL, help="Sync interval in seconds")
    parser.add_argument("--timeout", type=float, default=DEFAULT_REQUEST_TIMEOUT, help="Request timeout in seconds")
    parser.add_argument("--once", action="store_true", help="Run a single sync cycle and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SyncConfig:
    return SyncConfig.from_options(
        {
            CONF_API_URL: args.base_url,
            CONF_SYNC_INTERVAL: args.interval,
            CONF_REQUEST_TIMEOUT: args.timeout,
        }
    )


async def main_async(args: argparse.Namespace) -> dict:
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    config = build_config(args)
    app = NomadNote.open(args.db, config)
    try:
        if args.once:
            result = await app.sync.sync_all()
            _LOGGER.info("Sync finished: %s", result.to_dict())
            return app.sync.status()
        _LOGGER.info("Starting sync loop every %s seconds", config.interval)
        await app.sync.run_forever()
    finally:
        await app.async_close()
    return app.sync.status()  # pragma: no cover - loop exits only by cancellation


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        status = asyncio.run(main_async(args))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")
        return
    print(json.dumps(status, indent=2))


if __name__ == "__main__":
    main()
