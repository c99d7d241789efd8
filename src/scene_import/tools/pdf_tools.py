"""
Document access — native text extraction and page rasterization.
Pure Python, zero AI cost. Both use pdfplumber; raster uploads go through Pillow.
"""
import io
import logging
from typing import Callable, Optional

import pdfplumber
from PIL import Image
from scene_import.services.deadline import Deadline
from scene_import.states.state import ExtractionResult, StoredFile

logger = logging.getLogger(__name__)

PDF_BASE_DPI = 72
PAGE_BREAK = "\n\n"

PageCallback = Callable[[int, int], None]


def extract_native_text(data: bytes) -> ExtractionResult:
    """
    Pull embedded text objects page by page. A scanned PDF yields an empty
    but successful result — the caller decides whether to fall back to OCR.
    """
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [(page.extract_text() or "").strip() for page in pdf.pages]
    except Exception as e:
        logger.warning("Native PDF text extraction failed: %s", e)
        return ExtractionResult.failed(f"PDF text extraction failed: {e}")

    text = PAGE_BREAK.join(p for p in pages if p)
    logger.debug("Native extraction: %d pages, %d chars", len(pages), len(text))
    return ExtractionResult(text=text, success=True)


def render_pages(
    file: StoredFile,
    is_pdf: bool,
    scale: float,
    max_pages: int,
    deadline: Optional[Deadline] = None,
    on_page: Optional[PageCallback] = None,
) -> list[Image.Image]:
    """
    Rasterize up to `max_pages` pages as RGB images. A raster upload is its own single page.
    Raises ValueError for unreadable input; ImportTimeoutError when the deadline passes.
    """
    if not is_pdf:
        with Image.open(io.BytesIO(file.data)) as img:
            img.load()
            if on_page:
                on_page(1, 1)
            return [img.convert("RGB")]

    resolution = int(PDF_BASE_DPI * (scale if scale and scale > 0 else 1.5))
    images: list[Image.Image] = []
    with pdfplumber.open(io.BytesIO(file.data)) as pdf:
        num_pages = len(pdf.pages)
        if not num_pages:
            raise ValueError("unreadable PDF (0 pages detected)")
        to_render = min(num_pages, max_pages)
        if num_pages > to_render:
            logger.info("%s: rendering first %d of %d pages", file.name, to_render, num_pages)
        for page_num, page in enumerate(pdf.pages[:to_render], start=1):
            if deadline:
                deadline.check(f"rendering page {page_num} of {file.name}")
            if on_page:
                on_page(page_num, to_render)
            images.append(page.to_image(resolution=resolution).original.convert("RGB"))
    return images


def image_to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()
