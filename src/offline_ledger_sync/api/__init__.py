"""HTTP API - FastAPI application over the sync service."""

from offline_ledger_sync.api.app import create_app

__all__ = ["create_app"]
