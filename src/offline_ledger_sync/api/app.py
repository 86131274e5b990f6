"""HTTP API for the offline sync service."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from offline_ledger_sync.service import OfflineSyncService
from offline_ledger_sync.storage.database import StoreUnavailableError
from offline_ledger_sync.sync.extractor import ExtractionError
from offline_ledger_sync.sync.records import SyncResult

logger = logging.getLogger(__name__)


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _result_response(result: SyncResult) -> JSONResponse:
    return JSONResponse(result.to_dict(), status_code=200 if result.success else 500)


def create_app(service: OfflineSyncService, *, manage_lifecycle: bool = False) -> FastAPI:
    """Build the API around a service.

    With ``manage_lifecycle`` the service is started and stopped with the
    application; otherwise the caller must start it first.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="Offline Ledger Sync", lifespan=lifespan if manage_lifecycle else None)

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(_: Request, exc: StoreUnavailableError) -> JSONResponse:
        logger.error("Local store unavailable: %s", exc)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=503)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.post("/sync/session-state")
    async def sync_session_state(request: Request) -> JSONResponse:
        payload = await _json_object(request)
        try:
            result = await service.sync_session_state(payload)
        except ExtractionError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return _result_response(result)

    @app.post("/sync/ledger-data")
    async def sync_ledger_data(request: Request) -> JSONResponse:
        body = await _json_object(request)
        account_id = body.get("accountId")
        if not isinstance(account_id, str) or not account_id:
            raise HTTPException(status_code=400, detail="accountId required")
        base_url = body.get("serviceBaseUrl") or None
        if base_url is not None and not isinstance(base_url, str):
            raise HTTPException(status_code=400, detail="serviceBaseUrl must be a string")
        result = await service.sync_ledger(account_id, base_url)
        return _result_response(result)

    @app.get("/sync/status/{account_id}")
    async def sync_status(account_id: str) -> Any:
        return jsonable_encoder(await service.get_sync_status(account_id))

    @app.get("/account/{account_id}")
    async def account(account_id: str) -> Any:
        return jsonable_encoder(await service.get_account(account_id))

    @app.get("/account/{account_id}/portfolio")
    async def portfolio(account_id: str) -> Any:
        return jsonable_encoder(await service.get_portfolio(account_id))

    @app.get("/markets")
    async def markets() -> Any:
        return jsonable_encoder(await service.get_markets())

    return app
