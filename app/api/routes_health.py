import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.domain.clock import ensure_utc, utcnow
from app.domain.ops.db_models import JobHeartbeat
from app.jobs.heartbeat import RUNNER_HEARTBEAT_NAME

router = APIRouter()
logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]


def _expected_heads() -> list[str] | None:
    """Alembic heads shipped with the code, or ``None`` when migrations are not packaged."""
    alembic_ini = REPO_ROOT / "alembic.ini"
    script_location = REPO_ROOT / "alembic"
    if not alembic_ini.exists() or not script_location.exists():
        return None
    try:
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(script_location))
        return list(ScriptDirectory.from_config(cfg).get_heads())
    except Exception as exc:  # noqa: BLE001
        logger.warning("migrations_check_error_loading_alembic", extra={"extra": {"reason": type(exc).__name__}})
        return []


async def _current_revision(session) -> str | None:
    try:
        result = await session.execute(text("SELECT version_num FROM alembic_version"))
    except SQLAlchemyError:
        return None
    row = result.first()
    return row[0] if row else None


async def _database_status(request: Request) -> dict[str, Any]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return {"ok": False, "message": "database session factory unavailable", "migrations_current": False}

    expected = _expected_heads()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            current = await _current_revision(session)
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return {
            "ok": False,
            "message": "database check failed",
            "migrations_current": False,
            "error": exc.__class__.__name__,
        }

    if expected is None:
        migrations_current, check = True, "skipped_no_alembic_files"
    else:
        migrations_current, check = bool(expected) and current in expected, "ok"
    return {
        "ok": True,
        "message": "database reachable",
        "migrations_current": migrations_current,
        "migrations_check": check,
        "current_version": current,
        "expected_heads": expected or [],
    }


async def _heartbeat_status(request: Request) -> dict[str, Any]:
    app_settings = request.app.state.app_settings
    if not app_settings.job_heartbeat_required:
        return {"ok": True, "required": False}
    session_factory = request.app.state.db_session_factory
    try:
        async with session_factory() as session:
            heartbeat = await session.get(JobHeartbeat, RUNNER_HEARTBEAT_NAME)
    except Exception as exc:  # noqa: BLE001
        return {"ok": False, "required": True, "error": exc.__class__.__name__}
    if heartbeat is None:
        return {"ok": False, "required": True, "last_heartbeat": None}
    last = ensure_utc(heartbeat.last_heartbeat)
    fresh = utcnow() - last <= timedelta(seconds=app_settings.job_heartbeat_ttl_seconds)
    return {"ok": fresh, "required": True, "last_heartbeat": last.isoformat()}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    database = await _database_status(request)
    jobs = await _heartbeat_status(request)
    overall_ok = bool(database.get("ok")) and bool(database.get("migrations_current")) and bool(jobs.get("ok"))
    return JSONResponse(
        status_code=200 if overall_ok else 503,
        content={"status": "ok" if overall_ok else "unhealthy", "database": database, "jobs": jobs},
    )
