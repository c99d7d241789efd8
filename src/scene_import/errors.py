"""
Error taxonomy for the import pipeline.
Every failure persisted on a job carries one of these kinds in `error_kind`.
"""


class ImportPipelineError(Exception):
    kind = "internal"

    def __init__(self, message: str, stage: str | None = None, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.details = details

    def __str__(self) -> str:
        return self.message


class ValidationError(ImportPipelineError):
    """Bad path, unsupported type, oversized file or missing consent."""
    kind = "validation"


class DownloadError(ImportPipelineError):
    kind = "download"


class ExtractionError(ImportPipelineError):
    """Every extraction strategy was exhausted for a file."""
    kind = "extraction"


class ImportTimeoutError(ImportPipelineError):
    """Soft deadline or per-call hard timeout exceeded."""
    kind = "timeout"


class StructuringError(ImportPipelineError):
    kind = "structuring"


class PersistenceError(ImportPipelineError):
    kind = "persistence"


class InternalError(ImportPipelineError):
    kind = "internal"


def is_timeout(exc: BaseException) -> bool:
    """HTTP client timeouts surface under different names depending on the provider SDK."""
    if isinstance(exc, (TimeoutError, ImportTimeoutError)):
        return True
    return any("timeout" in cls.__name__.lower() for cls in type(exc).__mro__)
