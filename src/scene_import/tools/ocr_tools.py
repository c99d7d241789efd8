"""
OCR adapters.
Remote — one batched vision request carrying every rendered page of a file.
Local  — Tesseract, page by page, in-process and CPU-bound.
"""
import base64
import logging
from typing import Callable, Optional

import pytesseract
from PIL import Image
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage
from scene_import.errors import is_timeout
from scene_import.services.deadline import Deadline
from scene_import.states.state import ExtractionResult
from scene_import.tools.pdf_tools import image_to_png_bytes, PAGE_BREAK

logger = logging.getLogger(__name__)

_VISION_PROMPT = (
    "Transcribe all readable text in these images, in order. "
    "Reply with the raw text only, keeping line breaks where they matter "
    "(speaker names, stage directions, new lines of dialogue)."
)


def format_ai_error(error: Exception) -> str:
    """Compact one-line description of a provider SDK exception."""
    if is_timeout(error):
        return f"timeout ({type(error).__name__})"
    parts = []
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status:
        parts.append(f"status={status}")
    code = getattr(error, "code", None)
    if code:
        parts.append(f"code={code}")
    request_id = getattr(error, "request_id", None)
    if request_id:
        parts.append(f"requestId={request_id}")
    parts.append(f"message={getattr(error, 'message', None) or error}")
    return " | ".join(parts)


def message_text(content) -> str:
    """Chat model content may be a plain string or a list of content blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                chunks.append(block.get("text", ""))
        return "".join(chunks)
    return ""


def build_vision_message(images: list[Image.Image]) -> HumanMessage:
    content: list[dict] = [{"type": "text", "text": _VISION_PROMPT}]
    for image in images:
        encoded = base64.b64encode(image_to_png_bytes(image)).decode("ascii")
        content.append({"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}})
    return HumanMessage(content=content)


def transcribe_pages_remote(model: BaseChatModel, images: list[Image.Image]) -> ExtractionResult:
    """Single request for all pages — N pages never means N round trips."""
    if not images:
        return ExtractionResult.failed("no rendered page to send to remote OCR")
    try:
        response = model.invoke([build_vision_message(images)])
    except Exception as e:
        logger.warning("Remote vision OCR failed (%d pages): %s", len(images), e)
        return ExtractionResult.failed(f"Remote vision OCR error: {format_ai_error(e)}")

    text = message_text(response.content).strip()
    if not text:
        return ExtractionResult.failed("Remote vision OCR returned no text")
    logger.info("Remote vision OCR: %d pages -> %d chars", len(images), len(text))
    return ExtractionResult(text=text, success=True)


class LocalOcrEngine:
    """Tesseract via pytesseract. Requires the `tesseract` binary on PATH."""

    def __init__(self, lang: str = "fra+eng"):
        self.lang = lang

    def recognize(self, image: Image.Image) -> str:
        return pytesseract.image_to_string(image, lang=self.lang)


def ocr_pages_locally(
    engine,
    images: list[Image.Image],
    deadline: Optional[Deadline] = None,
    on_page: Optional[Callable[[int, int], None]] = None,
) -> ExtractionResult:
    """
    OCR each page independently. Page failures are collected; the file only
    fails when every page failed.
    """
    if not images:
        return ExtractionResult.failed("no rendered page for local OCR")

    texts: list[str] = []
    page_errors: list[str] = []
    total = len(images)
    for page_num, image in enumerate(images, start=1):
        if deadline:
            deadline.check(f"local OCR page {page_num}")
        if on_page:
            on_page(page_num, total)
        try:
            page_text = (engine.recognize(image) or "").strip()
        except Exception as e:
            logger.warning("Local OCR failed on page %d/%d: %s", page_num, total, e)
            page_errors.append(f"page {page_num}: {e}")
            continue
        if page_text:
            texts.append(page_text)

    if len(page_errors) == total:
        return ExtractionResult.failed("Local OCR failed on every page (" + "; ".join(page_errors[:3]) + ")")
    if page_errors:
        logger.info("Local OCR: %d/%d pages failed, keeping the rest", len(page_errors), total)
    return ExtractionResult(text=PAGE_BREAK.join(texts), success=True)
