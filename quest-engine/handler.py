"""FastAPI router for quest progression."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

import engine_config as config
from felt import normalize_address
from quest_engine import QuestEngine
from timers import ReconcileTimerRunner

router = APIRouter()

# ---------------------------------------------------------------------------
# Dependency providers
# ---------------------------------------------------------------------------


def get_engine(request: Request) -> QuestEngine:
    return request.app.state.engine  # type: ignore[no-any-return]


def get_reconcile_timer(request: Request) -> ReconcileTimerRunner | None:
    return getattr(request.app.state, "reconcile_timer", None)


def _get_user_address(x_user_address: str = Header(default="")) -> str:
    raw = x_user_address.strip()
    if not raw:
        raise ValueError("X-User-Address header is required")
    try:
        return normalize_address(raw)
    except ValueError:
        raise ValueError(f"invalid user address: {raw}") from None


def _require_admin(x_admin_key: str = Header(default="")) -> None:
    if not config.ADMIN_API_KEY:
        raise PermissionError("admin API is disabled")
    if x_admin_key.strip() != config.ADMIN_API_KEY:
        raise PermissionError("invalid admin key")


# ---------------------------------------------------------------------------
# Public routes
# ---------------------------------------------------------------------------


@router.get("/healthz")
def route_healthz() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@router.get("/quests")
def route_list_quests(engine: QuestEngine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse({"quests": engine.list_quests()})


@router.post("/quests/{quest_id}/check")
def route_check_progress(
    quest_id: int,
    user: str = Depends(_get_user_address),
    engine: QuestEngine = Depends(get_engine),
) -> JSONResponse:
    snapshot = engine.check_progress(user, quest_id)
    return JSONResponse(snapshot.to_dict())


@router.get("/quests/{quest_id}/progress")
def route_get_progress(
    quest_id: int,
    user: str = Depends(_get_user_address),
    engine: QuestEngine = Depends(get_engine),
) -> JSONResponse:
    return JSONResponse(engine.get_progress(user, quest_id).to_dict())


@router.get("/quests/{quest_id}/participants")
def route_participants(quest_id: int, engine: QuestEngine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse({"quest_id": quest_id, **engine.quest_participants(quest_id)})


# ---------------------------------------------------------------------------
# Admin routes
# ---------------------------------------------------------------------------


@router.get("/admin/quests/{quest_id}/users", dependencies=[Depends(_require_admin)])
def route_quest_users(quest_id: int, engine: QuestEngine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse({"quest_id": quest_id, "users": engine.quest_users(quest_id)})


@router.post("/admin/quests/{quest_id}/reconcile", dependencies=[Depends(_require_admin)])
def route_reconcile(quest_id: int, engine: QuestEngine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(engine.reconcile(quest_id))


@router.get("/admin/reconcile/timer/status", dependencies=[Depends(_require_admin)])
def route_timer_status(
    reconcile_timer: ReconcileTimerRunner | None = Depends(get_reconcile_timer),
) -> JSONResponse:
    return JSONResponse(
        {
            "enabled": reconcile_timer is not None,
            "is_running": reconcile_timer.is_running if reconcile_timer else False,
            "interval_seconds": reconcile_timer.interval_seconds if reconcile_timer else config.RECONCILE_INTERVAL_SECONDS,
            "last_run_at": reconcile_timer.last_run_at if reconcile_timer else None,
            "last_result": reconcile_timer.last_result if reconcile_timer else None,
            "last_error": reconcile_timer.last_error if reconcile_timer else None,
        }
    )
