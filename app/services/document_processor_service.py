"""
ClientDesk - Document Processor Service

Runs the extraction pipeline for one stored document:

1. Acquire the bytes and classify them as PDF or image.
2. Images go to the vision model. PDFs have their text layer extracted and
   checked; person documents with unusable text are rendered to an image
   instead, everything else goes to the text model.
3. Person documents whose text-based result lacks the critical field or is
   low-confidence are rendered and re-extracted once with the vision model.
4. Metadata (confidence, method, timing) is attached to the result.

The escalation steps are an ordered list of tiers, each with an
applicability check, an extractor and an acceptance gate.
"""

import asyncio
import base64
import io
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from PIL import Image

from app.config import settings
from app.models.client import DocumentCategory
from app.services import pdf_service
from app.services.extraction_oracle import (
    DocumentSchema,
    ExtractionOracle,
    OracleRequest,
    schema_for_category,
)
from app.services.file_storage_service import FileStorageService
from app.services.pdf_service import TextQuality
from app.utils.clock import Clock, system_clock
from app.utils.error_handling import (
    DocumentAcquisitionException,
    DocumentExtractionException,
    DocumentProcessingException,
    OpenAIAPIException,
)

logger = logging.getLogger(__name__)

ExtractedData = Dict[str, Dict[str, Any]]


class FileType(str, Enum):
    PDF = "pdf"
    IMAGE = "image"


class ExtractionMethod(str, Enum):
    """How the final extraction result was obtained."""
    TEXT_EXTRACTION = "text_extraction"
    VISION_API = "vision_api"
    VISION_API_FALLBACK = "vision_api_fallback"
    HYBRID_VISION_FALLBACK = "hybrid_vision_fallback"


def detect_file_type(data: bytes, file_key: str) -> FileType:
    """PDF by extension or %PDF magic number, image otherwise."""
    if file_key.lower().endswith(".pdf"):
        return FileType.PDF
    if data[:4] == b"%PDF":
        return FileType.PDF
    return FileType.IMAGE


def detect_image_mime_type(data: bytes) -> str:
    """MIME type of an image payload; JPEG when Pillow cannot tell."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return Image.MIME.get(image.format, "image/jpeg")
    except Exception:
        return "image/jpeg"


# ===========================================
# RESULT METRICS
# ===========================================

def average_confidence(extracted: ExtractedData) -> float:
    """Mean field confidence, 0 when nothing was extracted."""
    if not extracted:
        return 0.0
    return sum(f.get("confidence") or 0 for f in extracted.values()) / len(extracted)


def low_confidence_fields(
    extracted: ExtractedData,
    threshold: float = settings.extraction_confidence_threshold,
) -> List[str]:
    return [name for name, f in extracted.items() if (f.get("confidence") or 0) < threshold]


def has_critical_fields(schema: DocumentSchema, extracted: ExtractedData) -> bool:
    """True when the schema's critical field has a value, or the schema has none."""
    if schema.critical_field is None:
        return True
    entry = extracted.get(schema.critical_field) or {}
    return bool(entry.get("value"))


def is_acceptable_person_result(
    schema: DocumentSchema,
    extracted: ExtractedData,
    threshold: float = settings.extraction_confidence_threshold,
) -> bool:
    return has_critical_fields(schema, extracted) and average_confidence(extracted) >= threshold


# ===========================================
# PIPELINE STATE
# ===========================================

@dataclass
class ExtractionContext:
    """Everything the tiers need to know about the document being processed."""
    category: DocumentCategory
    schema: DocumentSchema
    file_key: str
    file_type: FileType
    data: bytes
    text: Optional[str] = None
    text_quality: Optional[TextQuality] = None
    rendered_image: Optional[bytes] = None
    rejected: List[ExtractionMethod] = field(default_factory=list)

    @property
    def is_person_document(self) -> bool:
        return self.category.is_person_document

    @property
    def is_pdf(self) -> bool:
        return self.file_type == FileType.PDF

    @property
    def text_usable(self) -> bool:
        return self.text_quality is not None and self.text_quality.passed


@dataclass(frozen=True)
class ExtractionTier:
    """One step of the escalation chain."""
    method: ExtractionMethod
    applies: Callable[[ExtractionContext], bool]
    extract: Callable[[ExtractionContext], Awaitable[ExtractedData]]
    accept: Callable[[ExtractionContext, ExtractedData], bool]


@dataclass
class ExtractionResult:
    """Extracted fields plus processing metadata, ready to persist."""
    extracted_data: ExtractedData
    processing_metadata: Dict[str, Any]

    @property
    def extraction_method(self) -> str:
        return self.processing_metadata["extractionMethod"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "extracted_data": self.extracted_data,
            "processing_metadata": self.processing_metadata,
        }


class DocumentProcessorService:
    """
    Extraction pipeline for client documents.

    Storage, oracle, text extractor and rasterizer are injectable so the
    pipeline can be exercised without external services.
    """

    def __init__(
        self,
        storage: Optional[FileStorageService] = None,
        oracle: Optional[ExtractionOracle] = None,
        text_extractor: Optional[Callable[[bytes], str]] = None,
        rasterizer: Optional[Callable[[bytes], Awaitable[bytes]]] = None,
        clock: Clock = system_clock,
    ):
        self.storage = storage or FileStorageService()
        self.oracle = oracle or ExtractionOracle()
        self.text_extractor = text_extractor or pdf_service.extract_text
        self.rasterizer = rasterizer or pdf_service.rasterize_pdf
        self.clock = clock
        self.tiers = self._build_tiers()

    def _build_tiers(self) -> List[ExtractionTier]:
        return [
            ExtractionTier(
                method=ExtractionMethod.VISION_API,
                applies=lambda ctx: not ctx.is_pdf,
                extract=self._extract_from_upload_image,
                accept=lambda ctx, data: True,
            ),
            ExtractionTier(
                method=ExtractionMethod.TEXT_EXTRACTION,
                applies=lambda ctx: ctx.is_pdf and (ctx.text_usable or not ctx.is_person_document),
                extract=self._extract_from_text,
                accept=lambda ctx, data: (
                    not ctx.is_person_document or is_acceptable_person_result(ctx.schema, data)
                ),
            ),
            ExtractionTier(
                method=ExtractionMethod.VISION_API_FALLBACK,
                applies=lambda ctx: ctx.is_pdf and ctx.is_person_document and not ctx.text_usable,
                extract=self._extract_from_rendered_page,
                accept=lambda ctx, data: True,
            ),
            ExtractionTier(
                method=ExtractionMethod.HYBRID_VISION_FALLBACK,
                applies=lambda ctx: ExtractionMethod.TEXT_EXTRACTION in ctx.rejected,
                extract=self._extract_from_rendered_page,
                accept=lambda ctx, data: True,
            ),
        ]

    # ---------------------------------------
    # Extractors
    # ---------------------------------------

    async def _extract_from_upload_image(self, ctx: ExtractionContext) -> ExtractedData:
        return await self.oracle.extract(OracleRequest(
            category=ctx.category,
            image_base64=base64.b64encode(ctx.data).decode("ascii"),
            image_mime_type=detect_image_mime_type(ctx.data),
        ))

    async def _extract_from_text(self, ctx: ExtractionContext) -> ExtractedData:
        return await self.oracle.extract(OracleRequest(category=ctx.category, text=ctx.text))

    async def _extract_from_rendered_page(self, ctx: ExtractionContext) -> ExtractedData:
        if ctx.rendered_image is None:
            ctx.rendered_image = await self.rasterizer(ctx.data)
        return await self.oracle.extract(OracleRequest(
            category=ctx.category,
            image_base64=base64.b64encode(ctx.rendered_image).decode("ascii"),
            image_mime_type="image/png",
        ))

    # ---------------------------------------
    # Pipeline
    # ---------------------------------------

    async def _acquire(self, category: DocumentCategory, file_key: str) -> bytes:
        try:
            data, _ = await self.storage.download_file(file_key)
        except FileNotFoundError as e:
            logger.error(f"File {file_key} not found in storage")
            raise DocumentAcquisitionException(
                file_key, str(e), category=category.value, status_code=404, original_error=e,
            )
        except Exception as e:
            logger.error(f"Error downloading {file_key}: {e}")
            raise DocumentAcquisitionException(
                file_key, str(e), category=category.value, original_error=e,
            )
        return data

    async def _prepare_text(self, ctx: ExtractionContext) -> None:
        raw_text = await asyncio.to_thread(self.text_extractor, ctx.data)
        ctx.text = pdf_service.normalize_text(raw_text)
        ctx.text_quality = pdf_service.assess_text_quality(ctx.text)
        logger.info(
            f"Text extracted from PDF {ctx.file_key}: {ctx.text_quality.length} chars, "
            f"{ctx.text_quality.word_count} words, passed={ctx.text_quality.passed}"
        )

    async def _run_tiers(self, ctx: ExtractionContext):
        method, extracted = None, None
        for tier in self.tiers:
            if not tier.applies(ctx):
                continue
            method = tier.method
            extracted = await tier.extract(ctx)
            if tier.accept(ctx, extracted):
                return method, extracted
            logger.info(
                f"{method.value} result for {ctx.category.value} rejected "
                f"(critical={has_critical_fields(ctx.schema, extracted)}, "
                f"avg_confidence={average_confidence(extracted):.2f}); escalating"
            )
            ctx.rejected.append(method)
        if method is None:
            raise DocumentExtractionException(
                f"No extraction route for {ctx.file_type.value} document",
                category=ctx.category.value,
                file_key=ctx.file_key,
            )
        return method, extracted

    async def process_document(
        self,
        category: Union[DocumentCategory, str],
        file_key: str,
    ) -> ExtractionResult:
        """
        Extract structured data from a stored document.

        Raises:
            UnsupportedDocumentCategoryException: unknown category, before any I/O
            DocumentAcquisitionException: file could not be fetched
            DocumentExtractionException: text, rasterization or model failure,
                or any other unexpected error during extraction
        """
        schema = schema_for_category(category)
        category = DocumentCategory(category)
        logger.info(f"Starting document processing: {category.value} {file_key}")

        data = await self._acquire(category, file_key)
        file_type = detect_file_type(data, file_key)
        logger.info(f"File type detected for {file_key}: {file_type.value}")

        ctx = ExtractionContext(
            category=category,
            schema=schema,
            file_key=file_key,
            file_type=file_type,
            data=data,
        )

        started = time.perf_counter()
        try:
            if ctx.is_pdf:
                await self._prepare_text(ctx)
            method, extracted = await self._run_tiers(ctx)
        except DocumentProcessingException as e:
            logger.error(f"Error processing {category.value} document {file_key}: {e.message}")
            raise e.with_context(category.value, file_key)
        except OpenAIAPIException as e:
            logger.error(f"Error processing {category.value} document {file_key}: {e.message}")
            raise DocumentExtractionException(
                e.message, category=category.value, file_key=file_key, original_error=e,
            )
        except Exception as e:
            logger.exception(f"Unexpected error processing {category.value} document {file_key}")
            raise DocumentExtractionException(
                f"Unexpected extraction error: {e!r}",
                category=category.value, file_key=file_key, original_error=e,
            )
        extraction_time = int((time.perf_counter() - started) * 1000)

        metadata = {
            "processedAt": self.clock.now().isoformat(),
            "extractionTime": extraction_time,
            "extractionMethod": method.value,
            "averageConfidence": average_confidence(extracted),
            "fileType": file_type.value,
            "hasCriticalFields": has_critical_fields(schema, extracted),
            "lowConfidenceFields": low_confidence_fields(extracted),
        }
        if ctx.text_quality is not None:
            metadata["textQuality"] = ctx.text_quality.to_dict()

        logger.info(
            f"Document processing completed: {category.value} {file_key} via {method.value} "
            f"in {extraction_time}ms, avg confidence {metadata['averageConfidence']:.2f}"
        )
        return ExtractionResult(extracted_data=extracted, processing_metadata=metadata)
