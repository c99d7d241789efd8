from dataclasses import dataclass, field
from typing import TypedDict, Optional, Any
from pydantic import BaseModel, ConfigDict, Field


# ── Structured scene schema ──────────────────────────────────────────────────

class DraftLine(BaseModel):
    """A single dialogue line. `order` is dense and 1-based once validated."""
    model_config = ConfigDict(populate_by_name=True)

    character_name: str = Field(..., alias="characterName")
    text: str
    order: int


class ParsedScene(BaseModel):
    """Structured output of the structuring step, stored as `import_jobs.draft_data`."""
    model_config = ConfigDict(populate_by_name=True)

    title: str
    author: Optional[str] = None
    characters: list[str]
    lines: list[DraftLine]

    def to_draft(self) -> dict:
        return self.model_dump(by_alias=True)


# ── Extraction contracts ─────────────────────────────────────────────────────

@dataclass
class ExtractionResult:
    """Uniform return contract of every extraction strategy."""
    text: str
    success: bool
    error: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return self.success and bool(self.text.strip())

    @classmethod
    def failed(cls, error: str) -> "ExtractionResult":
        return cls(text="", success=False, error=error)


@dataclass
class StoredFile:
    """A blob downloaded from the file store."""
    path: str
    name: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class RunOutcome:
    """What `run_import_job` reports back to its caller (route, sweeper, stream)."""
    ok: bool
    job_id: str
    error: Optional[str] = None
    kind: Optional[str] = None
    details: Optional[str] = None
    draft: Optional[dict] = None


# ── LangGraph state ──────────────────────────────────────────────────────────

class ImportState(TypedDict):
    """State for the import job pipeline."""
    job_id: str
    owner_id: str
    file_paths: list[str]
    consent_to_ai: bool
    files: list[StoredFile]
    aggregated_text: str
    draft: Optional[dict]
    error: Optional[Any]                        # ImportPipelineError once a node failed
