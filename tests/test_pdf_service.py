"""
ClientDesk - PDF Service Tests

Tests for text normalization, the text quality gate and rasterization
fallbacks.
"""

import io
from unittest.mock import patch

import fitz
import pytest
from PIL import Image

from app.services import pdf_service
from app.services.pdf_service import (
    assess_text_quality,
    extract_embedded_image,
    normalize_text,
    rasterize_pdf,
    render_first_page,
)
from app.utils.error_handling import DocumentExtractionException


class TestNormalizeText:
    """Whitespace normalization."""

    def test_line_endings_and_spaces(self):
        assert normalize_text("Trade\r\nLicense  \t No:\t123") == "Trade\nLicense No: 123"

    def test_blank_line_runs_collapse(self):
        assert normalize_text("Name\n\n\n\n\nAddress") == "Name\n\nAddress"


class TestTextQuality:
    """Text quality gate."""

    def test_usable_text_passes(self):
        words = ["abcdefghijklmno"[i % 15] * 3 + "xyz"[i % 3] * 6 for i in range(20)]
        text = " ".join(words)[:200]
        quality = assess_text_quality(text)

        assert quality.passed
        assert quality.reasons == []

    def test_short_text_fails(self):
        quality = assess_text_quality("Emirates ID 784-1990-1234567-1 ok")

        assert not quality.passed
        assert "too_short" in quality.reasons

    def test_repeated_character_fails_diversity(self):
        quality = assess_text_quality("a" * 60)

        assert "low_character_diversity" in quality.reasons
        assert "too_few_words" in quality.reasons
        assert "too_short" not in quality.reasons

    def test_empty_text(self):
        quality = assess_text_quality(None)

        assert quality.length == 0
        assert set(quality.reasons) == {"too_short", "low_character_diversity", "too_few_words"}

    def test_to_dict(self):
        data = assess_text_quality("a" * 60).to_dict()
        assert data["passed"] is False
        assert data["length"] == 60


class TestRasterizePdf:
    """Rendering with embedded-image fallback."""

    @pytest.mark.asyncio
    async def test_rendered_page_returned(self):
        with patch.object(pdf_service, "render_first_page", return_value=b"png") as render:
            assert await rasterize_pdf(b"%PDF-1.4", scale=2.0, timeout=5) == b"png"
        render.assert_called_once_with(b"%PDF-1.4", 2.0)

    @pytest.mark.asyncio
    async def test_falls_back_to_embedded_image(self):
        with patch.object(pdf_service, "render_first_page", side_effect=RuntimeError("broken page")), \
                patch.object(pdf_service, "extract_embedded_image", return_value=b"embedded"):
            assert await rasterize_pdf(b"%PDF-1.4", timeout=5) == b"embedded"

    @pytest.mark.asyncio
    async def test_both_fail(self):
        with patch.object(pdf_service, "render_first_page", side_effect=RuntimeError("broken page")), \
                patch.object(pdf_service, "extract_embedded_image", side_effect=ValueError("no images")):
            with pytest.raises(DocumentExtractionException) as exc_info:
                await rasterize_pdf(b"%PDF-1.4", timeout=5)
        assert "Failed to convert PDF to image" in exc_info.value.message

    def test_extract_text_rejects_garbage(self):
        with pytest.raises(DocumentExtractionException):
            pdf_service.extract_text(b"not a pdf")


def _png(mode: str, size=(20, 10)) -> bytes:
    color = {"L": 128, "RGB": (200, 30, 30), "RGBA": (30, 30, 200, 128)}[mode]
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def _pdf_with_image(mode: str) -> bytes:
    doc = fitz.open()
    page = doc.new_page(width=595, height=842)
    page.insert_image(fitz.Rect(50, 50, 250, 150), stream=_png(mode))
    data = doc.tobytes()
    doc.close()
    return data


def _text_pdf() -> bytes:
    doc = fitz.open()
    page = doc.new_page(width=595, height=842)
    page.insert_text((72, 72), "Trade License No. CN-1234567")
    data = doc.tobytes()
    doc.close()
    return data


class TestPdfImages:
    """Rendering and image extraction on real PDFs."""

    @pytest.mark.parametrize("mode", ["L", "RGB", "RGBA"])
    def test_embedded_image_layouts(self, mode):
        png = extract_embedded_image(_pdf_with_image(mode))
        image = Image.open(io.BytesIO(png))

        assert image.format == "PNG"
        assert image.mode == "RGB"
        assert image.size == (20, 10)

    def test_no_embedded_image(self):
        with pytest.raises(ValueError):
            extract_embedded_image(_text_pdf())

    def test_render_scale(self):
        natural = Image.open(io.BytesIO(render_first_page(_text_pdf(), 1.0)))
        doubled = Image.open(io.BytesIO(render_first_page(_text_pdf(), 2.0)))

        assert natural.size == (595, 842)
        assert doubled.size == (1190, 1684)
        assert doubled.mode == "RGB"

    @pytest.mark.asyncio
    async def test_fallback_extracts_real_image(self):
        with patch.object(pdf_service, "render_first_page", side_effect=RuntimeError("broken page")):
            png = await rasterize_pdf(_pdf_with_image("RGBA"), timeout=5)

        assert Image.open(io.BytesIO(png)).size == (20, 10)

    def test_text_layer_of_real_pdf(self):
        assert "CN-1234567" in pdf_service.extract_text(_text_pdf())
