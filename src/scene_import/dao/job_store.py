import uuid
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from scene_import.models.import_job import ImportJob, ImportJobStatus, ACTIVE_STATUSES
from scene_import.errors import PersistenceError

logger = logging.getLogger(__name__)


class JobStore:
    """
    Persistence boundary for `import_jobs`.
    Writes are plain field updates keyed by job id — there is no version column,
    so two concurrent runners on the same job both win field by field.
    """

    def __init__(self, db: Session):
        self.db = db

    def _commit(self, action: str, job_id: str | None = None):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("JobStore %s failed for job %s: %s", action, job_id, e)
            raise PersistenceError(f"Could not {action} import job: {e}") from e

    def create(self, owner_id: str, file_paths: list[str], consent_to_ai: bool) -> ImportJob:
        job = ImportJob(
            id            = str(uuid.uuid4()),
            owner_id      = owner_id,
            file_paths    = list(file_paths),
            consent_to_ai = bool(consent_to_ai),
            status        = ImportJobStatus.PENDING,
        )
        self.db.add(job)
        self._commit("create", job.id)
        self.db.refresh(job)
        logger.info("Created import job %s for owner %s (%d files)", job.id, owner_id, len(file_paths))
        return job

    def get(self, job_id: str) -> ImportJob | None:
        try:
            job = self.db.query(ImportJob).filter_by(id=job_id).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load import job: {e}") from e
        if job is not None:
            # Another session (stream worker, sweeper) may have written since
            self.db.refresh(job)
        return job

    def get_for_owner(self, job_id: str, owner_id: str) -> ImportJob | None:
        job = self.get(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    def list_for_owner(self, owner_id: str, status: ImportJobStatus | None = None, limit: int = 50) -> list[ImportJob]:
        q = self.db.query(ImportJob).filter_by(owner_id=owner_id)
        if status:
            q = q.filter_by(status=status)
        return q.order_by(ImportJob.created_at.desc()).limit(limit).all()

    def update(self, job_id: str, **fields) -> None:
        fields.setdefault("updated_at", datetime.utcnow())
        try:
            self.db.query(ImportJob).filter_by(id=job_id).update(fields, synchronize_session=False)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Could not update import job: {e}") from e
        self._commit("update", job_id)

    def begin_attempt(self, job_id: str, attempt_count: int) -> None:
        """Reset every per-run field. A retry starts from scratch, never mid-stage."""
        now = datetime.utcnow()
        self.update(
            job_id,
            status              = ImportJobStatus.PROCESSING,
            processing_stage    = None,
            progress_percentage = 0,
            status_message      = None,
            draft_data          = None,
            error_message       = None,
            error_kind          = None,
            attempt_count       = attempt_count,
            last_attempt_at     = now,
            updated_at          = now,
        )

    def list_stale(self, cutoff: datetime, limit: int) -> list[ImportJob]:
        """Oldest-first jobs still pending/processing whose last write predates `cutoff`."""
        try:
            return (
                self.db.query(ImportJob)
                .filter(ImportJob.status.in_(ACTIVE_STATUSES))
                .filter(ImportJob.updated_at < cutoff)
                .order_by(ImportJob.updated_at.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not query stale import jobs: {e}") from e
