"""FastAPI application factory for the quest engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import engine_config as config
from chain_reader import ChainReader
from errors import QuestNotFound
from progression_store import MongoProgressionStore, ProgressionStore, build_store
from quest_catalog import MongoQuestCatalog, QuestCatalog
from quest_engine import QuestEngine
from reward_issuer import RewardIssuer
from timers import ReconcileTimerRunner

log = logging.getLogger(__name__)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(QuestNotFound)
    async def _quest_not_found(request: Request, exc: QuestNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(PermissionError)
    async def _permission_error(request: Request, exc: PermissionError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def _generic(request: Request, exc: Exception) -> JSONResponse:
        log.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": f"internal server error: {exc}"})


def build_engine(store: ProgressionStore | None = None) -> QuestEngine:
    """Wire the production engine from configuration."""
    store = store or build_store()
    if isinstance(store, MongoProgressionStore):
        catalog: QuestCatalog | MongoQuestCatalog = MongoQuestCatalog(store.database)
    else:
        catalog = QuestCatalog.from_file()
    return QuestEngine(
        catalog=catalog,
        store=store,
        reader=ChainReader(),
        issuer=RewardIssuer(store),
    )


def create_app(
    engine: QuestEngine | None = None,
    reconcile_timer: ReconcileTimerRunner | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without arguments (production) the store, engine and reconcile timer are
    created inside the lifespan context. With an explicit engine (tests) that
    engine is used directly and no timer is managed.
    """
    _provided_engine = engine
    _provided_timer = reconcile_timer

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if _provided_engine is not None:
            yield
            return

        _engine = build_engine()
        _timer = ReconcileTimerRunner(engine=_engine, interval_seconds=config.RECONCILE_INTERVAL_SECONDS)
        _timer.start()
        app.state.engine = _engine
        app.state.reconcile_timer = _timer
        yield
        _timer.stop()
        _engine.close()

    app = FastAPI(title="Quest Engine", lifespan=lifespan)

    if _provided_engine is not None:
        app.state.engine = _provided_engine
        app.state.reconcile_timer = _provided_timer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )

    _register_exception_handlers(app)

    from handler import router  # noqa: PLC0415
    app.include_router(router)

    return app
