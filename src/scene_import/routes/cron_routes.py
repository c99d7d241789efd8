"""
Maintenance routes for an external scheduler.
POST|GET /cron/imports/process?limit=&staleMinutes= — sweep stale import jobs (defaults from settings)
Authenticated with `Authorization: Bearer <CRON_SECRET>`.
"""
import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from sqlalchemy.orm import Session

from scene_import.database import get_db
from scene_import.agents.import_agent import PipelineDeps
from scene_import.errors import PersistenceError
from scene_import.routes.import_routes import get_pipeline_deps
from scene_import.services.sweeper import sweep_stale_jobs

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cron", tags=["Cron"])


def require_cron_auth(
    authorization: str | None = Header(None),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    secret = deps.settings.cron_secret
    if not secret:
        raise HTTPException(status_code=401, detail="CRON_SECRET is not set")
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization[len("bearer "):].strip()
    if not hmac.compare_digest(token, secret):
        raise HTTPException(status_code=401, detail="Invalid token")


@router.api_route("/imports/process", methods=["GET", "POST"], dependencies=[Depends(require_cron_auth)])
def process_stale_imports(
    limit: int | None = Query(None, ge=1, le=100),
    stale_minutes: int | None = Query(None, alias="staleMinutes", ge=1),
    db: Session = Depends(get_db),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    """Omitted parameters fall back to SWEEP_BATCH_LIMIT / SWEEP_STALE_MINUTES."""
    try:
        return sweep_stale_jobs(
            db,
            deps,
            stale_minutes=stale_minutes or deps.settings.sweep_stale_minutes,
            limit=limit or deps.settings.sweep_batch_limit,
        )
    except PersistenceError as e:
        logger.error("[Sweeper] sweep aborted: %s", e)
        raise HTTPException(status_code=500, detail=e.message)
