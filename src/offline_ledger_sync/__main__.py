"""Command-line entry point: ``python -m offline_ledger_sync``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import uvicorn
from fastapi.encoders import jsonable_encoder

from offline_ledger_sync.api.app import create_app
from offline_ledger_sync.config import Settings, get_settings
from offline_ledger_sync.logging_config import configure_logging
from offline_ledger_sync.service import OfflineSyncService
from offline_ledger_sync.storage.database import DatabaseManager, StoreUnavailableError
from offline_ledger_sync.sync.extractor import ExtractionError

logger = logging.getLogger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(jsonable_encoder(payload), indent=2))


async def _with_service(
    settings: Settings, action: Callable[[OfflineSyncService], Awaitable[Any]]
) -> Any:
    async with OfflineSyncService(settings) as service:
        return await action(service)


def _serve(settings: Settings, args: argparse.Namespace) -> int:
    app = create_app(OfflineSyncService(settings), manage_lifecycle=True)
    uvicorn.run(
        app,
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def _init_db(settings: Settings, args: argparse.Namespace) -> int:
    async def run() -> None:
        manager = DatabaseManager(
            settings.database.url,
            busy_timeout_seconds=settings.database.busy_timeout_seconds,
        )
        try:
            await manager.init_schema()
        finally:
            await manager.dispose()

    asyncio.run(run())
    _print_json({"ok": True, "database": settings.redacted_summary()["database_url"]})
    return 0


def _sync_session(settings: Settings, args: argparse.Namespace) -> int:
    try:
        payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        _print_json({"success": False, "errors": [f"Cannot read {args.file}: {e}"]})
        return 1

    try:
        result = asyncio.run(_with_service(settings, lambda s: s.sync_session_state(payload)))
    except ExtractionError as e:
        _print_json({"success": False, "errors": [str(e)]})
        return 1
    _print_json(result.to_dict())
    return 0 if result.success else 1


def _sync_ledger(settings: Settings, args: argparse.Namespace) -> int:
    result = asyncio.run(
        _with_service(settings, lambda s: s.sync_ledger(args.account, args.indexer_url))
    )
    _print_json(result.to_dict())
    return 0 if result.success else 1


def _status(settings: Settings, args: argparse.Namespace) -> int:
    entries = asyncio.run(_with_service(settings, lambda s: s.get_sync_status(args.account)))
    _print_json(entries)
    return 0


COMMANDS: dict[str, Callable[[Settings, argparse.Namespace], int]] = {
    "serve": _serve,
    "init-db": _init_db,
    "sync-session": _sync_session,
    "sync-ledger": _sync_ledger,
    "status": _status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="offline_ledger_sync",
        description="Sync session state and ledger data into a local SQLite cache",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the local HTTP API")
    serve.add_argument("--host", help="Override API host")
    serve.add_argument("--port", type=int, help="Override API port")

    sub.add_parser("init-db", help="Create tables and views in the local store")

    session = sub.add_parser("sync-session", help="Sync a session-state snapshot file")
    session.add_argument("file", help="Path to a JSON snapshot")

    ledger = sub.add_parser("sync-ledger", help="Fetch and sync ledger data for an account")
    ledger.add_argument("account", help="Ledger account address")
    ledger.add_argument("--indexer-url", help="Override the indexer base URL for this pass")

    status = sub.add_parser("status", help="Show sync ledger entries for an account")
    status.add_argument("account", help="Ledger account address")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.get_logging_level())
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        return COMMANDS[args.command](settings, args)
    except StoreUnavailableError as e:
        logger.error("Local store unavailable: %s", e)
        _print_json({"success": False, "errors": [str(e)]})
        return 1


if __name__ == "__main__":
    sys.exit(main())
