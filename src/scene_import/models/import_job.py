# scene_import/models/import_job.py
import enum
from datetime import datetime
from sqlalchemy import Column, String, Integer, Text, DateTime, Enum, JSON, Boolean
from scene_import.database import Base


class ImportJobStatus(str, enum.Enum):
    PENDING       = "pending"
    PROCESSING    = "processing"
    PREVIEW_READY = "preview_ready"
    ERROR         = "error"
    COMPLETED     = "completed"


class ProcessingStage(str, enum.Enum):
    VALIDATING  = "validating"
    DOWNLOADING = "downloading"
    EXTRACTING  = "extracting"
    PARSING     = "parsing"
    FINALIZING  = "finalizing"


# Statuses the sweeper treats as possibly abandoned
ACTIVE_STATUSES = (ImportJobStatus.PENDING, ImportJobStatus.PROCESSING)


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id                  = Column(String(64), primary_key=True)
    owner_id            = Column(String(128), nullable=False, index=True)
    file_paths          = Column(JSON, nullable=False)                  # ["<owner_id>/<file>", ...]
    consent_to_ai       = Column(Boolean, nullable=False, default=False)
    status              = Column(Enum(ImportJobStatus), nullable=False, default=ImportJobStatus.PENDING)
    processing_stage    = Column(Enum(ProcessingStage), nullable=True)
    progress_percentage = Column(Integer, nullable=False, default=0)
    status_message      = Column(String(512), nullable=True)
    draft_data          = Column(JSON, nullable=True)                   # ParsedScene, camelCase keys
    error_message       = Column(Text, nullable=True)
    error_kind          = Column(String(32), nullable=True)             # validation | extraction | ...
    scene_id            = Column(String(64), nullable=True)             # set once the draft is committed
    attempt_count       = Column(Integer, nullable=False, default=0)
    created_at          = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at          = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    last_attempt_at     = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id"                 : self.id,
            "owner_id"           : self.owner_id,
            "file_paths"         : self.file_paths,
            "consent_to_ai"      : self.consent_to_ai,
            "status"             : self.status.value,
            "processing_stage"   : self.processing_stage.value if self.processing_stage else None,
            "progress_percentage": self.progress_percentage,
            "status_message"     : self.status_message,
            "draft_data"         : self.draft_data,
            "error_message"      : self.error_message,
            "error_kind"         : self.error_kind,
            "scene_id"           : self.scene_id,
            "attempt_count"      : self.attempt_count,
            "created_at"         : self.created_at.isoformat() if self.created_at else None,
            "updated_at"         : self.updated_at.isoformat() if self.updated_at else None,
            "last_attempt_at"    : self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }
