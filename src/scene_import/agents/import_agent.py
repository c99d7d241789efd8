"""
Import job pipeline — LangGraph StateGraph.
Nodes: validate → download → extract → parse → finalize
Any node failure routes to `fail`, which persists status=error with the stage it happened at.

`run_import_job` is the single entry point used by background submission,
streaming submission, manual retry and the stale-job sweeper. It is safe to
call on pending / processing / error jobs: every run starts from a clean slate.
"""
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langgraph.graph import StateGraph, START, END
from sqlalchemy.orm import Session
from scene_import.config import Settings
from scene_import.dao.job_store import JobStore
from scene_import.errors import ImportPipelineError, InternalError, PersistenceError, ValidationError
from scene_import.models.import_job import ImportJobStatus, ProcessingStage
from scene_import.services.deadline import Deadline
from scene_import.services.file_store import FileStore, build_file_store
from scene_import.services.llm import build_chat_model
from scene_import.services.progress import ProgressEmitter, JobStoreEmitter
from scene_import.states.state import ImportState, RunOutcome
from scene_import.tools.extraction_tools import build_strategies, extract_text_from_files
from scene_import.tools.ocr_tools import LocalOcrEngine
from scene_import.tools.structuring_tool import structure_scene

logger = logging.getLogger(__name__)

RUNNABLE_STATUSES = (ImportJobStatus.PENDING, ImportJobStatus.PROCESSING, ImportJobStatus.ERROR)


@dataclass
class PipelineDeps:
    """Collaborators of one run. Built once at start-up; tests swap in fakes."""
    settings: Settings
    file_store: FileStore
    vision_model: Optional[BaseChatModel] = None
    text_model: Optional[BaseChatModel] = None
    ocr_engine: Any = None


def build_pipeline_deps(settings: Settings) -> PipelineDeps:
    return PipelineDeps(
        settings     = settings,
        file_store   = build_file_store(settings),
        vision_model = build_chat_model(settings, "vision"),
        text_model   = build_chat_model(settings, "structuring"),
        ocr_engine   = LocalOcrEngine(settings.tesseract_lang) if settings.allow_local_ocr_fallback else None,
    )


def _stage_node(stage: ProcessingStage):
    """Classify whatever a node raises and park it in state["error"] tagged with the stage."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(state: ImportState) -> dict:
            try:
                return fn(state)
            except ImportPipelineError as e:
                e.stage = e.stage or stage.value
                logger.warning("Job %s failed at %s [%s]: %s", state["job_id"], stage.value, e.kind, e)
                return {"error": e}
            except Exception as e:
                logger.exception("Job %s crashed at %s", state["job_id"], stage.value)
                return {"error": InternalError(f"Internal error: {e}", stage=stage.value)}
        return wrapper
    return decorator


def _route(next_node: str):
    def route(state: ImportState) -> str:
        return "fail" if state.get("error") else next_node
    return route


def build_import_graph(store: JobStore, deps: PipelineDeps, emitter: ProgressEmitter, deadline: Deadline):
    """Build and compile the import StateGraph with its collaborators injected."""
    settings = deps.settings

    @_stage_node(ProcessingStage.VALIDATING)
    def node_validate(state: ImportState) -> dict:
        emitter.progress(ProcessingStage.VALIDATING, "Validating files…", 0.0)
        paths = state["file_paths"]
        if not isinstance(paths, list) or not paths:
            raise ValidationError("No file is attached to this import.")

        # Defense in depth: never touch blobs outside the owner's folder, whatever the storage policy says
        prefix = f"{state['owner_id']}/"
        for path in paths:
            if not isinstance(path, str) or not path.startswith(prefix) or ".." in path.split("/"):
                raise ValidationError("Invalid file path (access denied).")

        if settings.require_ai_consent and not state["consent_to_ai"]:
            raise ValidationError("Consent to third-party AI processing is required for imports.")

        deadline.check("validation")
        emitter.progress(ProcessingStage.VALIDATING, "Files validated", 1.0)
        return {"error": None}

    @_stage_node(ProcessingStage.DOWNLOADING)
    def node_download(state: ImportState) -> dict:
        paths = state["file_paths"]
        total = len(paths)
        files = []
        for index, path in enumerate(paths):
            deadline.check(f"downloading {path}")
            name = path.rsplit("/", 1)[-1] or "file"
            emitter.progress(
                ProcessingStage.DOWNLOADING, f"Downloading {name}", index / total,
                current=index + 1, total=total, file_name=name,
            )
            files.append(deps.file_store.download(path))
        emitter.progress(ProcessingStage.DOWNLOADING, "Files downloaded", 1.0, current=total, total=total)
        return {"files": files}

    @_stage_node(ProcessingStage.EXTRACTING)
    def node_extract(state: ImportState) -> dict:
        strategies = build_strategies(settings, deps.vision_model, deps.ocr_engine)
        text = extract_text_from_files(
            state["files"], settings, state["consent_to_ai"], strategies, deadline, emitter,
        )
        emitter.progress(ProcessingStage.EXTRACTING, "Text extracted", 1.0)
        # Blobs are no longer needed; keep the state light
        return {"aggregated_text": text, "files": []}

    @_stage_node(ProcessingStage.PARSING)
    def node_parse(state: ImportState) -> dict:
        deadline.check("structuring")
        emitter.progress(ProcessingStage.PARSING, "Parsing / structuring the text…", 0.0)
        scene = structure_scene(
            state["aggregated_text"],
            model=deps.text_model,
            consent_to_ai=state["consent_to_ai"],
            allow_heuristic=settings.allow_heuristic_structuring,
        )
        emitter.progress(ProcessingStage.PARSING, "Scene structured", 1.0)
        return {"draft": scene.to_draft()}

    @_stage_node(ProcessingStage.FINALIZING)
    def node_finalize(state: ImportState) -> dict:
        emitter.progress(ProcessingStage.FINALIZING, "Finalizing the preview…", 0.0)
        emitter.progress(ProcessingStage.FINALIZING, "Preview ready", 1.0)
        # Terminal write last: polling clients must not see a stage after preview_ready
        store.update(
            state["job_id"],
            status              = ImportJobStatus.PREVIEW_READY,
            processing_stage    = None,
            progress_percentage = 100,
            status_message      = None,
            draft_data          = state["draft"],
            error_message       = None,
            error_kind          = None,
        )
        logger.info("Job %s preview ready", state["job_id"])
        return {"draft": state["draft"]}

    def node_fail(state: ImportState) -> dict:
        error: ImportPipelineError = state["error"]
        try:
            store.update(
                state["job_id"],
                status           = ImportJobStatus.ERROR,
                processing_stage = ProcessingStage(error.stage) if error.stage else None,
                status_message   = None,
                error_message    = error.message,
                error_kind       = error.kind,
            )
        except PersistenceError as e:
            logger.error("Could not persist failure of job %s: %s", state["job_id"], e)
        return {"error": error}

    graph = StateGraph(ImportState)

    graph.add_node("validate", node_validate)
    graph.add_node("download", node_download)
    graph.add_node("extract", node_extract)
    graph.add_node("parse", node_parse)
    graph.add_node("finalize", node_finalize)
    graph.add_node("fail", node_fail)

    graph.add_edge(START, "validate")
    graph.add_conditional_edges("validate", _route("download"), {"download": "download", "fail": "fail"})
    graph.add_conditional_edges("download", _route("extract"), {"extract": "extract", "fail": "fail"})
    graph.add_conditional_edges("extract", _route("parse"), {"parse": "parse", "fail": "fail"})
    graph.add_conditional_edges("parse", _route("finalize"), {"finalize": "finalize", "fail": "fail"})
    graph.add_conditional_edges("finalize", _route(END), {END: END, "fail": "fail"})
    graph.add_edge("fail", END)

    return graph.compile()


def run_import_job(
    job_id: str,
    db: Session,
    deps: PipelineDeps,
    emitter: Optional[ProgressEmitter] = None,
) -> RunOutcome:
    """
    Drive one job to preview_ready or error. Never raises.
    Terminal stream events are left to the caller, which knows the submission mode.
    """
    store = JobStore(db)
    try:
        job = store.get(job_id)
    except PersistenceError as e:
        return RunOutcome(ok=False, job_id=job_id, error=e.message, kind=e.kind)
    if job is None:
        return RunOutcome(ok=False, job_id=job_id, error="Import job not found", kind="validation")
    if job.status not in RUNNABLE_STATUSES:
        return RunOutcome(
            ok=False, job_id=job_id, kind="validation",
            error=f"Import job is '{job.status.value}' and cannot be processed again",
        )

    emitter = emitter or JobStoreEmitter(store, job_id)
    emitter.reset()
    deadline = Deadline(deps.settings.soft_timeout_ms)
    initial_state: ImportState = {
        "job_id"         : job.id,
        "owner_id"       : job.owner_id,
        "file_paths"     : job.file_paths,
        "consent_to_ai"  : bool(job.consent_to_ai),
        "files"          : [],
        "aggregated_text": "",
        "draft"          : None,
        "error"          : None,
    }

    try:
        store.begin_attempt(job_id, (job.attempt_count or 0) + 1)
        logger.info("Job %s: attempt %d started (%d files)", job_id, (job.attempt_count or 0) + 1, len(job.file_paths or []))
        result = build_import_graph(store, deps, emitter, deadline).invoke(initial_state)
    except Exception as e:
        logger.exception("Import pipeline crashed for job %s: %s", job_id, e)
        error = e if isinstance(e, ImportPipelineError) else InternalError(f"Internal error: {e}")
        try:
            store.update(job_id, status=ImportJobStatus.ERROR, error_message=error.message, error_kind=error.kind)
        except PersistenceError:
            logger.error("Job %s: failure could not be persisted either", job_id)
        return RunOutcome(ok=False, job_id=job_id, error=error.message, kind=error.kind, details=error.details)

    error = result.get("error")
    if error:
        return RunOutcome(ok=False, job_id=job_id, error=error.message, kind=error.kind, details=error.details)
    return RunOutcome(ok=True, job_id=job_id, draft=result.get("draft"))
