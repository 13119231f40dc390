"""
ClientDesk - PDF Service

Text layer extraction, text quality assessment and page rasterization for
uploaded PDF documents.

Scanned identity documents often carry an empty or garbage text layer; the
quality gate decides whether the text is worth sending to the extraction
model or whether the page should be rendered to an image instead.
"""

import asyncio
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF
from PIL import Image
from pypdf import PdfReader

from app.config import settings
from app.utils.error_handling import DocumentExtractionException

logger = logging.getLogger(__name__)


# ===========================================
# TEXT LAYER
# ===========================================

def extract_text(pdf_bytes: bytes) -> str:
    """Concatenated text layer of every page."""
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as e:
        logger.error(f"Failed to extract text from PDF: {e}")
        raise DocumentExtractionException(
            f"Failed to extract text from PDF: {e}",
            original_error=e,
        )
    return "\n".join(pages)


def normalize_text(text: str) -> str:
    """
    Normalize whitespace in extracted text.

    CRLF becomes LF, runs of spaces/tabs become one space and three or more
    consecutive newlines become two.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


@dataclass
class TextQuality:
    """Result of the text quality gate."""
    length: int
    word_count: int
    unique_chars: int
    reasons: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.reasons

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "length": self.length,
            "word_count": self.word_count,
            "unique_chars": self.unique_chars,
            "reasons": self.reasons,
        }


def assess_text_quality(
    text: Optional[str],
    min_length: int = settings.text_quality_min_length,
    min_words: int = settings.text_quality_min_words,
    min_unique_chars: int = settings.text_quality_min_unique_chars,
) -> TextQuality:
    """
    Decide whether extracted text is usable.

    Fails when the text is too short, has too few distinct non-whitespace
    characters, or has too few words longer than two characters. Every
    failing check is reported.
    """
    text = text or ""
    words = [w for w in text.split() if len(w) > 2]
    unique_chars = {c for c in text if not c.isspace()}

    quality = TextQuality(
        length=len(text),
        word_count=len(words),
        unique_chars=len(unique_chars),
    )
    if quality.length < min_length:
        quality.reasons.append("too_short")
    if quality.unique_chars < min_unique_chars:
        quality.reasons.append("low_character_diversity")
    if quality.word_count < min_words:
        quality.reasons.append("too_few_words")
    return quality


# ===========================================
# RASTERIZATION
# ===========================================

PIXMAP_MODES = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}


def _to_png(image: Image.Image) -> bytes:
    if image.mode != "RGB":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def render_first_page(pdf_bytes: bytes, scale: float = settings.pdf_render_scale) -> bytes:
    """Render page 1 to PNG at `scale` times its natural resolution."""
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        if doc.page_count == 0:
            raise ValueError("PDF has no pages")
        page = doc.load_page(0)
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        image = Image.frombytes(PIXMAP_MODES[pix.n], (pix.width, pix.height), pix.samples)
        return _to_png(image)


def extract_embedded_image(pdf_bytes: bytes) -> bytes:
    """
    First raster image XObject in the PDF, as PNG.

    Handles grayscale, RGB and RGBA pixel layouts; CMYK and other colorspaces
    are converted to RGB first.
    """
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        for page in doc:
            for image_info in page.get_images(full=True):
                xref = image_info[0]
                pix = fitz.Pixmap(doc, xref)
                if pix.n - pix.alpha > 3:
                    pix = fitz.Pixmap(fitz.csRGB, pix)
                mode = PIXMAP_MODES.get(pix.n)
                if mode is None:
                    continue
                image = Image.frombytes(mode, (pix.width, pix.height), pix.samples)
                return _to_png(image)
    raise ValueError("No embedded images found in PDF")


async def rasterize_pdf(
    pdf_bytes: bytes,
    scale: float = settings.pdf_render_scale,
    timeout: float = settings.rasterization_timeout_seconds,
) -> bytes:
    """
    Produce a PNG of the document for the vision model.

    Renders page 1 in a worker thread; if rendering fails, falls back to the
    first embedded image. Raises DocumentExtractionException when both fail.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(render_first_page, pdf_bytes, scale),
            timeout=timeout,
        )
    except Exception as render_error:
        logger.warning(f"Page rendering failed, trying embedded image: {render_error!r}")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(extract_embedded_image, pdf_bytes),
                timeout=timeout,
            )
        except Exception as image_error:
            logger.error(f"Embedded image extraction failed: {image_error!r}")
            raise DocumentExtractionException(
                f"Failed to convert PDF to image: {render_error!r}; "
                f"embedded image fallback failed: {image_error!r}",
                original_error=image_error,
            )
