"""
Extraction orchestrator — aggregated plain text from an ordered list of files.

Strategies are an ordered list evaluated by one dispatcher:
    native PDF text → remote vision OCR (batched) → local OCR (page by page)
Each returns an ExtractionResult, so strategies can be added, removed or
reordered without touching the dispatcher.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from PIL import Image
from langchain_core.language_models.chat_models import BaseChatModel
from scene_import.config import Settings
from scene_import.errors import ExtractionError, ImportPipelineError, ValidationError
from scene_import.models.import_job import ProcessingStage
from scene_import.services.deadline import Deadline
from scene_import.services.progress import ProgressEmitter
from scene_import.states.state import ExtractionResult, StoredFile
from scene_import.tools.pdf_tools import extract_native_text, render_pages
from scene_import.tools.ocr_tools import transcribe_pages_remote, ocr_pages_locally

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
PDF_TYPE = "application/pdf"
FILE_SEPARATOR = "\n\n"
MAX_REPORTED_FAILURES = 3


def is_pdf(file: StoredFile) -> bool:
    return file.content_type == PDF_TYPE


def validate_file(file: StoredFile, settings: Settings):
    if file.size > settings.max_file_size_bytes:
        limit_mb = settings.max_file_size_bytes / 1024 / 1024
        raise ValidationError(f"File '{file.name}' is too large. Maximum size: {limit_mb:g}MB")
    if file.content_type not in SUPPORTED_IMAGE_TYPES and file.content_type != PDF_TYPE:
        raise ValidationError(
            f"Unsupported format '{file.content_type}' for '{file.name}'. "
            f"Accepted: {', '.join(SUPPORTED_IMAGE_TYPES)}, {PDF_TYPE}"
        )


# ── Per-file context shared by the strategies ────────────────────────────────

@dataclass
class FileContext:
    file: StoredFile
    settings: Settings
    consent_to_ai: bool
    deadline: Deadline
    on_page: Optional[Callable[[int, int, str], None]] = None
    _pages: Optional[list[Image.Image]] = field(default=None, repr=False)
    _render_error: Optional[str] = None

    @property
    def is_pdf(self) -> bool:
        return is_pdf(self.file)

    def pages(self) -> list[Image.Image]:
        """Rendered lazily, once, and shared by every OCR strategy."""
        if self._pages is None and self._render_error is None:
            try:
                self._pages = render_pages(
                    self.file,
                    self.is_pdf,
                    scale=self.settings.pdf_ocr_scale,
                    max_pages=self.settings.max_pages_per_document,
                    deadline=self.deadline,
                    on_page=lambda page, total: self._notify(page, total, "Rendering pages…"),
                )
            except ImportPipelineError:
                raise
            except Exception as e:
                logger.warning("Rendering %s failed: %s", self.file.name, e)
                self._render_error = f"page rendering failed: {e}"
        return self._pages or []

    @property
    def render_error(self) -> Optional[str]:
        return self._render_error

    def _notify(self, page: int, total: int, message: str):
        if self.on_page:
            self.on_page(page, total, message)


# ── Strategies ───────────────────────────────────────────────────────────────

class ExtractionStrategy:
    name = "strategy"
    # Silent skips (e.g. native text on a raster image) are not reported as failures
    silent_skip = False

    def skip_reason(self, ctx: FileContext) -> Optional[str]:
        return None

    def extract(self, ctx: FileContext) -> ExtractionResult:
        raise NotImplementedError


class NativeTextStrategy(ExtractionStrategy):
    name = "native"
    silent_skip = True

    def skip_reason(self, ctx):
        return None if ctx.is_pdf else "not a paginated document"

    def extract(self, ctx):
        return extract_native_text(ctx.file.data)


class RemoteVisionStrategy(ExtractionStrategy):
    name = "remote_ocr"

    def __init__(self, model: Optional[BaseChatModel]):
        self.model = model

    def skip_reason(self, ctx):
        if not ctx.consent_to_ai:
            return "remote OCR disabled (no consent to third-party AI)"
        if self.model is None:
            return "remote OCR not configured"
        return None

    def extract(self, ctx):
        pages = ctx.pages()
        if not pages:
            return ExtractionResult.failed(ctx.render_error or "no page could be rendered for OCR")
        ctx.deadline.check(f"remote OCR of {ctx.file.name}")
        ctx._notify(len(pages), len(pages), "OCR analysis (remote AI)…")
        return transcribe_pages_remote(self.model, pages)


class LocalOcrStrategy(ExtractionStrategy):
    name = "local_ocr"

    def __init__(self, engine, enabled: bool = True):
        self.engine = engine
        self.enabled = enabled

    def skip_reason(self, ctx):
        if not self.enabled:
            return "local OCR fallback disabled"
        if self.engine is None:
            return "local OCR engine unavailable"
        return None

    def extract(self, ctx):
        pages = ctx.pages()
        if not pages:
            return ExtractionResult.failed(ctx.render_error or "no page could be rendered for OCR")
        return ocr_pages_locally(
            self.engine, pages, deadline=ctx.deadline,
            on_page=lambda page, total: ctx._notify(page, total, "Local OCR…"),
        )


def build_strategies(settings: Settings, vision_model: Optional[BaseChatModel], ocr_engine) -> list[ExtractionStrategy]:
    return [
        NativeTextStrategy(),
        RemoteVisionStrategy(vision_model),
        LocalOcrStrategy(ocr_engine, enabled=settings.allow_local_ocr_fallback),
    ]


# ── Dispatcher ───────────────────────────────────────────────────────────────

def dispatch(strategies: list[ExtractionStrategy], ctx: FileContext) -> ExtractionResult:
    """
    Run strategies in order until one yields text.
    - text                            → that result
    - last strategy that ran is blank → success with empty text (file contributes nothing)
    - otherwise                       → failure listing up to MAX_REPORTED_FAILURES reasons
    An empty native result on a scan is only a fallthrough: if OCR ran after it
    and failed, the file fails.
    ImportTimeoutError from the soft deadline propagates untouched.
    """
    failures: list[str] = []
    blank = False  # outcome of the last strategy that actually ran

    for strategy in strategies:
        reason = strategy.skip_reason(ctx)
        if reason:
            if not strategy.silent_skip:
                failures.append(reason)
            logger.debug("%s: skipping %s (%s)", ctx.file.name, strategy.name, reason)
            continue

        try:
            result = strategy.extract(ctx)
        except ImportPipelineError:
            raise
        except Exception as e:
            logger.exception("%s: strategy %s crashed", ctx.file.name, strategy.name)
            result = ExtractionResult.failed(f"{strategy.name} crashed: {e}")

        if result.has_text:
            logger.info("%s: extracted %d chars via %s", ctx.file.name, len(result.text), strategy.name)
            return ExtractionResult(text=result.text.strip(), success=True)
        if result.success:
            blank = True
            logger.info("%s: %s produced no text", ctx.file.name, strategy.name)
        else:
            blank = False
            failures.append(f"{strategy.name}: {result.error}")
            logger.warning("%s: %s failed — %s", ctx.file.name, strategy.name, result.error)

    if blank:
        return ExtractionResult(text="", success=True)
    shown = failures[:MAX_REPORTED_FAILURES]
    if len(failures) > len(shown):
        shown.append(f"(+{len(failures) - len(shown)} more)")
    return ExtractionResult.failed("; ".join(shown) or "no extraction strategy available")


# ── Orchestration across files ───────────────────────────────────────────────

def extract_text_from_files(
    files: list[StoredFile],
    settings: Settings,
    consent_to_ai: bool,
    strategies: list[ExtractionStrategy],
    deadline: Deadline,
    emitter: ProgressEmitter,
) -> str:
    """
    Extract every file in submission order and join the non-empty texts.
    Any file whose strategies all failed aborts the whole extraction.
    """
    total = len(files)
    parts: list[str] = []

    for index, file in enumerate(files):
        deadline.check(f"before extracting {file.name}")
        emitter.progress(
            ProcessingStage.EXTRACTING, f"Extracting text: {file.name}", index / total,
            current=index + 1, total=total, file_name=file.name,
        )
        validate_file(file, settings)

        def on_page(page: int, total_pages: int, message: str, _index=index, _file=file):
            emitter.progress(
                ProcessingStage.EXTRACTING, message, (_index + page / max(total_pages, 1)) / total,
                current=_index + 1, total=total, file_name=_file.name, page=page, total_pages=total_pages,
            )

        ctx = FileContext(file=file, settings=settings, consent_to_ai=consent_to_ai, deadline=deadline, on_page=on_page)
        result = dispatch(strategies, ctx)
        if not result.success:
            raise ExtractionError(f"Extraction failed for {file.name}: {result.error}", details=result.error)
        if result.text.strip():
            parts.append(result.text.strip())

    aggregated = FILE_SEPARATOR.join(parts)
    if not aggregated.strip():
        raise ExtractionError("No text could be extracted from the files")
    return aggregated
