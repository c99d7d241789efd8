import json

import pytest

from scene_import.agents.import_agent import run_import_job
from scene_import.dao.job_store import JobStore
from scene_import.dao.scene_dao import commit_draft
from scene_import.models.import_job import ImportJobStatus, ProcessingStage
from scene_import.services.progress import StreamEmitter
from conftest import (
    OWNER, SCENE_JSON, SCRIPT_TEXT, FakeChatModel, FakeOcrEngine, make_settings, png_bytes,
)

STAGE_ORDER = list(ProcessingStage)


class ReadTimeout(Exception):
    pass


@pytest.fixture
def writes(monkeypatch):
    """Every field write made on a job, in order."""
    recorded = []
    original = JobStore.update

    def update(self, job_id, **fields):
        recorded.append(dict(fields))
        return original(self, job_id, **fields)

    monkeypatch.setattr(JobStore, "update", update)
    return recorded


def _typed_pdf(file_store, fake_pdf, name="scene.pdf"):
    path = f"{OWNER}/{name}"
    file_store.files[path] = (fake_pdf([SCRIPT_TEXT]), "application/pdf")
    return path


def _scan(file_store, name="scan.png"):
    path = f"{OWNER}/{name}"
    file_store.files[path] = (png_bytes(), "image/png")
    return path


# ── Happy paths ───────────────────────────────────────────────────────────────

def test_typed_pdf_with_consent_reaches_preview_without_ocr(store, db, file_store, fake_pdf, make_deps, writes):
    vision, ocr, text_model = FakeChatModel(["remote"]), FakeOcrEngine(default="local"), FakeChatModel([SCENE_JSON])
    job = store.create(OWNER, [_typed_pdf(file_store, fake_pdf)], consent_to_ai=True)

    outcome = run_import_job(job.id, db, make_deps(vision=vision, text=text_model, ocr=ocr))

    assert outcome.ok, outcome.error
    job = store.get(job.id)
    assert job.status == ImportJobStatus.PREVIEW_READY
    assert job.progress_percentage == 100
    assert job.processing_stage is None
    assert job.error_message is None and job.error_kind is None
    assert job.attempt_count == 1
    assert job.draft_data["title"] == "Le Misanthrope"
    assert [l["order"] for l in job.draft_data["lines"]] == [1, 2]
    assert outcome.draft == job.draft_data
    assert vision.calls == [] and ocr.calls == 0
    assert len(text_model.calls) == 1

    statuses = [w["status"] for w in writes if "status" in w]
    assert statuses == [ImportJobStatus.PROCESSING, ImportJobStatus.PREVIEW_READY]

    percentages = [w["progress_percentage"] for w in writes if "progress_percentage" in w]
    assert percentages == sorted(percentages)
    assert percentages[-1] == 100

    stages = [STAGE_ORDER.index(w["processing_stage"]) for w in writes if w.get("processing_stage")]
    assert stages == sorted(stages)
    assert stages[0] == 0 and stages[-1] == STAGE_ORDER.index(ProcessingStage.FINALIZING)


def test_scan_without_consent_stays_local(store, db, file_store, make_deps):
    vision, text_model = FakeChatModel(["remote"]), FakeChatModel([SCENE_JSON])
    ocr = FakeOcrEngine([SCRIPT_TEXT])
    job = store.create(OWNER, [_scan(file_store)], consent_to_ai=False)

    outcome = run_import_job(job.id, db, make_deps(vision=vision, text=text_model, ocr=ocr))

    assert outcome.ok, outcome.error
    assert vision.calls == [] and text_model.calls == []
    assert ocr.calls == 1
    job = store.get(job.id)
    assert job.status == ImportJobStatus.PREVIEW_READY
    assert job.draft_data["title"] == "LE MISANTHROPE"
    assert job.draft_data["characters"] == ["ALCESTE", "PHILINTE"]


def test_blank_and_typed_files_keep_the_typed_text(store, db, file_store, fake_pdf, make_deps):
    blank = f"{OWNER}/blank.pdf"
    file_store.files[blank] = (fake_pdf(["", ""]), "application/pdf")
    job = store.create(OWNER, [blank, _typed_pdf(file_store, fake_pdf)], consent_to_ai=False)

    outcome = run_import_job(job.id, db, make_deps(ocr=FakeOcrEngine(default="")))

    assert outcome.ok, outcome.error
    assert store.get(job.id).draft_data["title"] == "LE MISANTHROPE"


def test_stream_emitter_receives_progress_while_job_row_tracks_status(store, db, file_store, fake_pdf, make_deps):
    job = store.create(OWNER, [_typed_pdf(file_store, fake_pdf)], consent_to_ai=False)
    emitter = StreamEmitter()

    outcome = run_import_job(job.id, db, make_deps(), emitter)
    emitter.done("preview", draft=outcome.draft)

    events = [json.loads(line) for line in emitter.iter_ndjson()]
    progress = [e["progress"] for e in events if e["type"] == "progress"]
    assert progress == sorted(progress)
    assert progress[-1] == 1.0
    assert events[-1]["type"] == "done"
    assert store.get(job.id).status == ImportJobStatus.PREVIEW_READY


# ── Failures ──────────────────────────────────────────────────────────────────

def test_missing_required_consent_fails_validation(store, db, file_store, fake_pdf, make_deps):
    vision = FakeChatModel(["remote"])
    deps = make_deps(settings=make_settings(require_ai_consent=True), vision=vision)
    job = store.create(OWNER, [_typed_pdf(file_store, fake_pdf)], consent_to_ai=False)

    outcome = run_import_job(job.id, db, deps)

    assert not outcome.ok and outcome.kind == "validation"
    job = store.get(job.id)
    assert job.status == ImportJobStatus.ERROR
    assert job.error_kind == "validation"
    assert job.processing_stage == ProcessingStage.VALIDATING
    assert file_store.downloads == [] and vision.calls == []


@pytest.mark.parametrize("path", ["someone-else/a.pdf", f"{OWNER}/../someone-else/a.pdf"])
def test_paths_outside_owner_folder_are_rejected(store, db, file_store, make_deps, path):
    job = store.create(OWNER, [path], consent_to_ai=False)

    outcome = run_import_job(job.id, db, make_deps())

    assert outcome.kind == "validation"
    assert "access denied" in store.get(job.id).error_message
    assert file_store.downloads == []


def test_download_failure_is_recorded_at_downloading(store, db, make_deps):
    job = store.create(OWNER, [f"{OWNER}/missing.pdf"], consent_to_ai=False)

    outcome = run_import_job(job.id, db, make_deps())

    assert outcome.kind == "download"
    job = store.get(job.id)
    assert job.status == ImportJobStatus.ERROR
    assert job.processing_stage == ProcessingStage.DOWNLOADING
    assert "missing.pdf" in job.error_message


def test_scan_with_no_text_fails_extraction(store, db, file_store, make_deps):
    job = store.create(OWNER, [_scan(file_store)], consent_to_ai=False)

    outcome = run_import_job(job.id, db, make_deps(ocr=FakeOcrEngine(default="")))

    assert outcome.kind == "extraction"
    job = store.get(job.id)
    assert job.processing_stage == ProcessingStage.EXTRACTING
    assert job.error_message == "No text could be extracted from the files"
    assert job.draft_data is None


def test_scanned_pdf_with_failing_ocr_keeps_the_strategy_failures(store, db, file_store, fake_pdf, make_deps):
    path = f"{OWNER}/scan.pdf"
    file_store.files[path] = (fake_pdf(["", ""]), "application/pdf")
    job = store.create(OWNER, [path], consent_to_ai=False)

    outcome = run_import_job(job.id, db, make_deps(ocr=FakeOcrEngine(default=RuntimeError("tesseract crashed"))))

    assert outcome.kind == "extraction"
    assert "every page" in outcome.details
    job = store.get(job.id)
    assert job.status == ImportJobStatus.ERROR
    assert job.error_message.startswith("Extraction failed for scan.pdf")


def test_invalid_ai_response_fails_structuring(store, db, file_store, fake_pdf, make_deps):
    job = store.create(OWNER, [_typed_pdf(file_store, fake_pdf)], consent_to_ai=True)

    outcome = run_import_job(job.id, db, make_deps(text=FakeChatModel(["definitely not json"])))

    assert outcome.kind == "structuring"
    job = store.get(job.id)
    assert job.status == ImportJobStatus.ERROR
    assert job.processing_stage == ProcessingStage.PARSING


def test_structuring_timeout_is_classified(store, db, file_store, fake_pdf, make_deps):
    job = store.create(OWNER, [_typed_pdf(file_store, fake_pdf)], consent_to_ai=True)

    outcome = run_import_job(job.id, db, make_deps(text=FakeChatModel(error=ReadTimeout("timed out"))))

    assert outcome.kind == "timeout"
    assert store.get(job.id).error_kind == "timeout"


def test_unexpected_exception_becomes_internal_error(store, db, file_store, make_deps):
    def explode(path):
        raise RuntimeError("disk on fire")

    file_store.download = explode
    job = store.create(OWNER, [f"{OWNER}/a.pdf"], consent_to_ai=False)

    outcome = run_import_job(job.id, db, make_deps())

    assert outcome.kind == "internal"
    job = store.get(job.id)
    assert job.status == ImportJobStatus.ERROR
    assert "disk on fire" in job.error_message


# ── Re-runs ───────────────────────────────────────────────────────────────────

def test_retry_after_error_starts_from_scratch(store, db, file_store, fake_pdf, make_deps):
    path = f"{OWNER}/late.pdf"
    job = store.create(OWNER, [path], consent_to_ai=False)
    deps = make_deps()

    assert run_import_job(job.id, db, deps).kind == "download"

    file_store.files[path] = (fake_pdf([SCRIPT_TEXT]), "application/pdf")
    outcome = run_import_job(job.id, db, deps)

    assert outcome.ok, outcome.error
    job = store.get(job.id)
    assert job.status == ImportJobStatus.PREVIEW_READY
    assert job.attempt_count == 2
    assert job.error_message is None and job.error_kind is None
    assert job.progress_percentage == 100


def test_running_twice_yields_the_same_draft(store, db, file_store, fake_pdf, make_deps):
    job = store.create(OWNER, [_typed_pdf(file_store, fake_pdf)], consent_to_ai=False)
    deps = make_deps()

    first = run_import_job(job.id, db, deps)
    # A stuck job is reset to processing by the sweeper path; emulate that
    store.update(job.id, status=ImportJobStatus.PROCESSING)
    second = run_import_job(job.id, db, deps)

    assert first.ok and second.ok
    assert first.draft == second.draft


def test_completed_and_preview_ready_jobs_are_not_reprocessed(store, db, file_store, fake_pdf, make_deps):
    job = store.create(OWNER, [_typed_pdf(file_store, fake_pdf)], consent_to_ai=False)
    deps = make_deps()
    assert run_import_job(job.id, db, deps).ok

    refused = run_import_job(job.id, db, deps)
    assert not refused.ok and "preview_ready" in refused.error

    commit_draft(db, OWNER, store.get(job.id).draft_data, job_id=job.id)
    refused = run_import_job(job.id, db, deps)

    assert not refused.ok and "completed" in refused.error
    job = store.get(job.id)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.attempt_count == 1


def test_unknown_job(db, make_deps):
    outcome = run_import_job("nope", db, make_deps())
    assert not outcome.ok
    assert outcome.error == "Import job not found"
