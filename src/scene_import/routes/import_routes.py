"""
Scene import routes.
POST /imports/files            — upload one file into the caller's folder
POST /imports                  — submit files (mode=background → job to poll; preview|create → NDJSON stream)
GET  /imports                  — caller's jobs (filterable by status)
GET  /imports/{job_id}         — poll one job
POST /imports/{job_id}/retry   — re-run a failed / stuck job from scratch
POST /imports/commit           — turn a (possibly edited) draft into a private scene
"""
import uuid
import logging
import threading
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, Header, Request, UploadFile, File
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from scene_import.database import get_db, get_session_factory
from scene_import.agents.import_agent import PipelineDeps, run_import_job
from scene_import.dao.job_store import JobStore
from scene_import.dao.scene_dao import commit_draft
from scene_import.errors import ImportPipelineError, PersistenceError
from scene_import.models.import_job import ImportJobStatus
from scene_import.services.progress import StreamEmitter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["Imports"])


class SubmitRequest(BaseModel):
    file_paths: list[str] = Field(..., alias="filePaths")
    consent_to_ai: bool = Field(False, alias="consentToAI")
    mode: Literal["background", "preview", "create"] = "background"

    model_config = {"populate_by_name": True}


class CommitRequest(BaseModel):
    draft: dict
    job_id: str | None = Field(None, alias="jobId")

    model_config = {"populate_by_name": True}


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_current_user_id(x_user_id: str | None = Header(None, alias="X-User-Id")) -> str:
    """Identity comes from the upstream auth layer; this service only reads it."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def get_pipeline_deps(request: Request) -> PipelineDeps:
    return request.app.state.pipeline_deps


# ── Workers ───────────────────────────────────────────────────────────────────

def _process_job_background(job_id: str, session_factory, deps: PipelineDeps):
    """Runs after the response is sent, on its own session — never the request's."""
    db: Session = session_factory()
    try:
        outcome = run_import_job(job_id, db, deps)
        logger.info("Background import %s finished ok=%s kind=%s", job_id, outcome.ok, outcome.kind)
    finally:
        db.close()


def _stream_job(job_id: str, mode: str, owner_id: str, session_factory, deps: PipelineDeps):
    """Run the pipeline on a worker thread and relay its events as NDJSON lines."""
    emitter = StreamEmitter()

    def worker():
        db: Session = session_factory()
        try:
            outcome = run_import_job(job_id, db, deps, emitter)
            if not outcome.ok:
                emitter.error(outcome.error or "Import failed", outcome.details)
                return
            if mode == "create":
                try:
                    scene = commit_draft(db, owner_id, outcome.draft, job_id=job_id)
                except ImportPipelineError as e:
                    emitter.error(f"Scene creation failed: {e.message}", e.details)
                    return
                emitter.done("create", scene_id=scene.id)
            else:
                emitter.done("preview", draft=outcome.draft)
        except Exception as e:
            logger.exception("Streaming import %s crashed", job_id)
            emitter.error("Internal error", str(e))
        finally:
            db.close()

    threading.Thread(target=worker, name=f"import-{job_id}", daemon=True).start()
    yield from emitter.iter_ndjson()


# ── POST /imports/files ──────────────────────────────────────────────────────

@router.post("/files", status_code=201)
async def upload_import_file(
    file: UploadFile = File(...),
    owner_id: str = Depends(get_current_user_id),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    """Store an upload under "<owner_id>/" and return the path to submit."""
    data = await file.read()
    if len(data) > deps.settings.max_file_size_bytes:
        raise HTTPException(status_code=413, detail="File too large")

    safe_name = (file.filename or "file").replace("/", "_").replace("\\", "_")
    path = f"{owner_id}/{uuid.uuid4().hex}_{safe_name}"
    try:
        deps.file_store.upload(path, data, file.content_type)
    except ImportPipelineError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return {"path": path, "size": len(data)}


# ── POST /imports ─────────────────────────────────────────────────────────────

@router.post("")
def submit_import(
    req: SubmitRequest,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    if not req.file_paths:
        raise HTTPException(status_code=400, detail="No file path provided")
    if deps.settings.require_ai_consent and not req.consent_to_ai:
        raise HTTPException(status_code=400, detail="Consent to third-party AI processing is required")

    # ── Create job record BEFORE processing — clients can poll immediately ──
    try:
        job = JobStore(db).create(owner_id, req.file_paths, req.consent_to_ai)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=e.message)

    if req.mode == "background":
        background_tasks.add_task(_process_job_background, job.id, session_factory, deps)
        return JSONResponse(
            status_code=202,
            content={
                "job_id"  : job.id,
                "status"  : job.status.value,
                "poll_url": f"/imports/{job.id}",
            },
        )

    return StreamingResponse(
        _stream_job(job.id, req.mode, owner_id, session_factory, deps),
        media_type="application/x-ndjson",
        headers={"X-Import-Job-Id": job.id, "Cache-Control": "no-cache"},
    )


# ── GET /imports ──────────────────────────────────────────────────────────────

@router.get("")
def list_imports(
    status: str | None = None,
    limit: int = 50,
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    job_status = None
    if status:
        try:
            job_status = ImportJobStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid status '{status}'. Valid: {[s.value for s in ImportJobStatus]}",
            )
    jobs = JobStore(db).list_for_owner(owner_id, job_status, limit)
    return {"count": len(jobs), "jobs": [j.to_dict() for j in jobs]}


# ── POST /imports/commit ──────────────────────────────────────────────────────

@router.post("/commit")
def commit_import(
    req: CommitRequest,
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        scene = commit_draft(db, owner_id, req.draft, job_id=req.job_id)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=e.message)
    except ImportPipelineError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {
        "scene_id"        : scene.id,
        "title"           : scene.title,
        "author"          : scene.author,
        "characters_count": len(scene.characters),
        "lines_count"     : len(scene.lines),
    }


# ── GET /imports/{job_id} ─────────────────────────────────────────────────────

@router.get("/{job_id}")
def get_import(job_id: str, owner_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    job = JobStore(db).get_for_owner(job_id, owner_id)
    if not job:
        raise HTTPException(status_code=404, detail="Import job not found or access denied")
    return job.to_dict()


# ── POST /imports/{job_id}/retry ─────────────────────────────────────────────

@router.post("/{job_id}/retry", status_code=202)
def retry_import(
    job_id: str,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    """Re-run the whole pipeline — same entry point as the sweeper."""
    job = JobStore(db).get_for_owner(job_id, owner_id)
    if not job:
        raise HTTPException(status_code=404, detail="Import job not found or access denied")
    if job.status in (ImportJobStatus.COMPLETED, ImportJobStatus.PREVIEW_READY):
        raise HTTPException(status_code=400, detail=f"Import job is already '{job.status.value}'")

    background_tasks.add_task(_process_job_background, job.id, session_factory, deps)
    return {"job_id": job.id, "status": "retry_queued", "poll_url": f"/imports/{job.id}"}
