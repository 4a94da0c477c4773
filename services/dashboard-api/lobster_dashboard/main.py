"""FastAPI application entrypoint for the lobster inventory dashboard."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import AuthStateFeed
from .cache import ReferenceDataCache
from .config import (
    CORS_ORIGINS,
    DATABASE_URL,
    DEBOUNCE_S,
    LEDGER_NOTIFY_CHANNEL,
    LEDGER_NOTIFY_ENABLED,
    configure_logging,
)
from .dashboard import DashboardService, ViewRegistry
from .deps import SessionLocal, engine
from .feed import CONNECT_ERRORS, ChangeFeed, PostgresNotifyBridge, asyncpg_dsn
from .ledger import LedgerFetcher
from .procedures import InventoryProcedure
from .routers import auth, dashboard, reference, stock, transactions
from .routers.transactions import forget_commands_on_sign_out

configure_logging()
logger = logging.getLogger("lobster-dashboard")

app = FastAPI(title="Lobster Dashboard API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def _start_services() -> None:
    """Build the shared cache, fetcher and live-view registry, then attach the change feed."""

    feed = ChangeFeed()
    fetcher = LedgerFetcher(SessionLocal)
    cache = ReferenceDataCache(fetcher.fetch_lobster_types, fetcher.fetch_weight_classes)
    service = DashboardService(fetcher, cache)
    views = ViewRegistry(service, feed, debounce_s=DEBOUNCE_S)
    auth_feed = AuthStateFeed()
    auth_feed.on_auth_state_change(views.on_auth_state_change)
    commands: dict = {}
    auth_feed.on_auth_state_change(forget_commands_on_sign_out(commands))

    app.state.feed = feed
    app.state.fetcher = fetcher
    app.state.cache = cache
    app.state.dashboard = service
    app.state.views = views
    app.state.auth_feed = auth_feed
    app.state.procedure = InventoryProcedure(SessionLocal)
    app.state.commands = commands
    app.state.bridge = None

    if LEDGER_NOTIFY_ENABLED:
        bridge = PostgresNotifyBridge(feed, asyncpg_dsn(DATABASE_URL), LEDGER_NOTIFY_CHANNEL)
        try:
            await bridge.start()
        except CONNECT_ERRORS as exc:
            logger.error("Could not listen on %s, retrying in the background: %s", LEDGER_NOTIFY_CHANNEL, exc)
            bridge.schedule_reconnect()
        app.state.bridge = bridge
    logger.info("Dashboard services ready")


@app.on_event("shutdown")
async def _stop_services() -> None:
    await app.state.views.close_all()
    if app.state.bridge is not None:
        await app.state.bridge.stop()
    app.state.cache.clear()
    await engine.dispose()
    logger.info("Dashboard services stopped")


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - integration glue
    detail = exc.detail
    if isinstance(detail, dict):
        payload: dict[str, Any] = {
            "detail": str(detail.get("detail", "Internal error")),
            "code": str(detail.get("code", f"http.{exc.status_code}")),
        }
    elif isinstance(detail, str):
        payload = {"detail": detail, "code": f"http.{exc.status_code}"}
    else:
        payload = {"detail": "Unexpected error", "code": "http.unexpected"}
    if exc.headers:
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:  # pragma: no cover - integration glue
    payload = {"detail": "Validation error", "code": "validation_error", "errors": exc.errors()}
    return JSONResponse(status_code=422, content=payload)


app.include_router(auth.router, prefix="/auth", tags=["auth"])
app.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
app.include_router(stock.router, prefix="/stock", tags=["stock"])
app.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
app.include_router(reference.router, prefix="/reference", tags=["reference"])


@app.get("/health", tags=["health"])
async def health() -> dict[str, Any]:
    bridge = getattr(app.state, "bridge", None)
    return {"status": "ok", "live_updates": bridge is not None and bridge.connected}
