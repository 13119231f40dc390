"""
ClientDesk - Extraction Oracle

Structured field extraction from UAE business and identity documents using
OpenAI chat completions.

Each document type declares its field set once in DOCUMENT_SCHEMAS; the same
schema drives both the image (vision) and text variants of the prompt, and
every field comes back as {"value": ..., "confidence": 0..1}.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from openai import AsyncOpenAI

from app.config import settings
from app.models.client import DocumentCategory
from app.utils.error_handling import OpenAIAPIException, UnsupportedDocumentCategoryException

logger = logging.getLogger(__name__)


class DocumentType(str, Enum):
    """Extraction schema families."""
    TRADE_LICENSE = "TRADE_LICENSE"
    VAT_CERTIFICATE = "VAT_CERTIFICATE"
    CORPORATE_TAX_CERTIFICATE = "CORPORATE_TAX_CERTIFICATE"
    EMIRATES_ID = "EMIRATES_ID"
    PASSPORT = "PASSPORT"


@dataclass(frozen=True)
class FieldSpec:
    """One requested field of a document schema."""
    name: str
    description: str
    example: Union[str, list] = "..."
    is_list: bool = False


@dataclass(frozen=True)
class DocumentSchema:
    """Prompt contract for one document type."""
    document_type: DocumentType
    title: str
    fields: Tuple[FieldSpec, ...]
    critical_field: Optional[str] = None
    guidance: Optional[str] = None
    max_tokens: int = 1000

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)


DATE_EXAMPLE = "YYYY-MM-DD"

DOCUMENT_SCHEMAS: Dict[DocumentType, DocumentSchema] = {
    DocumentType.TRADE_LICENSE: DocumentSchema(
        document_type=DocumentType.TRADE_LICENSE,
        title="Trade License",
        max_tokens=2000,
        fields=(
            FieldSpec("legalNameEnglish", "Legal name in English"),
            FieldSpec("legalNameArabic", "Legal name in Arabic (if available)"),
            FieldSpec("licenseNumber", "License number"),
            FieldSpec("licenseStartDate", "Start date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("licenseExpiryDate", "Expiry date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("address", "Complete business address"),
            FieldSpec("emirate", "Emirate name (Dubai, Abu Dhabi, Sharjah, etc.)"),
            FieldSpec("managerName", "Manager name if mentioned"),
            FieldSpec(
                "partners",
                'Array of partner names if mentioned (e.g., ["Partner 1", "Partner 2"])',
                ["...", "..."],
                is_list=True,
            ),
        ),
    ),
    DocumentType.VAT_CERTIFICATE: DocumentSchema(
        document_type=DocumentType.VAT_CERTIFICATE,
        title="VAT Certificate",
        fields=(
            FieldSpec("trn", "Tax Registration Number (TRN)"),
            FieldSpec("registrationStatus", "Registration status (Active, Inactive, etc.)"),
            FieldSpec("vatReturnCycle", 'Return cycle - either "MONTHLY" or "QUARTERLY"', "MONTHLY or QUARTERLY"),
            FieldSpec("registrationDate", "Registration date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("legalNameEnglish", "Legal name in English (if available)"),
            FieldSpec("legalNameArabic", "Legal name in Arabic (if available)"),
            FieldSpec("address", "Business address (if available)"),
            FieldSpec("emirate", "Emirate name (Dubai, Abu Dhabi, Sharjah, etc.) (if available)"),
        ),
    ),
    DocumentType.CORPORATE_TAX_CERTIFICATE: DocumentSchema(
        document_type=DocumentType.CORPORATE_TAX_CERTIFICATE,
        title="Corporate Tax Certificate",
        fields=(
            FieldSpec("ctrn", "Corporate Tax Registration Number (CTRN)"),
            FieldSpec("taxPeriodDueDate", "Tax period due date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("registrationDate", "Registration date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("legalNameEnglish", "Legal name in English (if available)"),
            FieldSpec("legalNameArabic", "Legal name in Arabic (if available)"),
            FieldSpec("address", "Business address (if available)"),
            FieldSpec("emirate", "Emirate name (Dubai, Abu Dhabi, Sharjah, etc.) (if available)"),
        ),
    ),
    DocumentType.EMIRATES_ID: DocumentSchema(
        document_type=DocumentType.EMIRATES_ID,
        title="Emirates ID",
        critical_field="idNumber",
        guidance=(
            "IMPORTANT: The Emirates ID number is typically a 15-digit number. Look for fields "
            'labeled "ID Number", "Identity Number", "Emirates ID", or similar. Extract the '
            "complete ID number exactly as shown."
        ),
        fields=(
            FieldSpec("name", "Full name of the card holder"),
            FieldSpec(
                "idNumber",
                "Emirates ID number - the complete 15-digit ID number (this is critical, extract it accurately)",
            ),
            FieldSpec("issueDate", "Issue date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("expiryDate", "Expiry date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("nationality", "Nationality"),
        ),
    ),
    DocumentType.PASSPORT: DocumentSchema(
        document_type=DocumentType.PASSPORT,
        title="Passport",
        critical_field="passportNumber",
        guidance=(
            "IMPORTANT: The Passport number is typically found in the machine-readable zone (MRZ) "
            'or in a field labeled "Passport No", "Passport Number", "Document Number", or similar. '
            "Extract the complete passport number exactly as shown, including any letters and numbers."
        ),
        fields=(
            FieldSpec("name", "Full name of the passport holder"),
            FieldSpec(
                "passportNumber",
                "Passport number - the complete passport/document number (this is critical, "
                "extract it accurately from the MRZ or passport number field)",
            ),
            FieldSpec("issueDate", "Issue date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("expiryDate", "Expiry date in YYYY-MM-DD format", DATE_EXAMPLE),
            FieldSpec("nationality", "Nationality"),
            FieldSpec("dateOfBirth", "Date of birth in YYYY-MM-DD format", DATE_EXAMPLE),
        ),
    ),
}

CATEGORY_DOCUMENT_TYPES: Dict[DocumentCategory, DocumentType] = {
    DocumentCategory.TRADE_LICENSE: DocumentType.TRADE_LICENSE,
    DocumentCategory.VAT_CERTIFICATE: DocumentType.VAT_CERTIFICATE,
    DocumentCategory.CORPORATE_TAX_CERTIFICATE: DocumentType.CORPORATE_TAX_CERTIFICATE,
    DocumentCategory.EMIRATES_ID_PARTNER: DocumentType.EMIRATES_ID,
    DocumentCategory.EMIRATES_ID_MANAGER: DocumentType.EMIRATES_ID,
    DocumentCategory.PASSPORT_PARTNER: DocumentType.PASSPORT,
    DocumentCategory.PASSPORT_MANAGER: DocumentType.PASSPORT,
}


def schema_for_category(category: Union[DocumentCategory, str]) -> DocumentSchema:
    """Extraction schema for a document category."""
    try:
        document_type = CATEGORY_DOCUMENT_TYPES[DocumentCategory(category)]
    except (KeyError, ValueError):
        raise UnsupportedDocumentCategoryException(str(getattr(category, "value", category)))
    return DOCUMENT_SCHEMAS[document_type]


def build_prompt(schema: DocumentSchema, text: Optional[str] = None) -> str:
    """
    Prompt for a schema. With `text` the document text is embedded;
    without it the prompt accompanies an image.
    """
    subject = f"this {schema.title} document text" if text is not None else f"this {schema.title} document"
    lines = [
        f"Analyze {subject} and extract the following information. Return a JSON object with "
        "the exact structure below. For each field, provide the extracted value and a "
        "confidence score (0-1).",
        "",
    ]
    if schema.guidance:
        lines.extend([schema.guidance, ""])
    if text is not None:
        lines.extend(["Document Text:", text, ""])

    lines.append("Required fields:")
    for spec in schema.fields:
        kind = "array" if spec.is_list else "string"
        lines.append(f"- {spec.name} ({kind}): {spec.description}")

    example = {spec.name: {"value": spec.example, "confidence": 0.9} for spec in schema.fields}
    lines.extend(["", "Return JSON format:", json.dumps(example, indent=2, ensure_ascii=False)])
    return "\n".join(lines)


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, confidence))


def normalize_extraction(schema: DocumentSchema, raw: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Keep only the schema's fields, each as {"value", "confidence"}.

    Fields the model left out are omitted; bare values get confidence 0.
    """
    extracted: Dict[str, Dict[str, Any]] = {}
    for name in schema.field_names:
        if name not in raw:
            continue
        entry = raw[name]
        if isinstance(entry, dict):
            extracted[name] = {
                "value": entry.get("value"),
                "confidence": _clamp_confidence(entry.get("confidence")),
            }
        else:
            extracted[name] = {"value": entry, "confidence": 0.0}
    return extracted


@dataclass
class OracleRequest:
    """Material sent to the model for one extraction."""
    category: DocumentCategory
    image_base64: Optional[str] = None
    image_mime_type: str = "image/png"
    text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_vision(self) -> bool:
        return self.image_base64 is not None


class ExtractionOracle:
    """
    OpenAI-backed structured extraction.

    One generic `extract` serves every category: the schema table picks the
    fields and the request decides between the vision and text variants.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        vision_model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.model = model or settings.openai_model
        self.vision_model = vision_model or settings.openai_vision_model
        self.timeout = timeout or settings.oracle_timeout_seconds

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_configured:
                raise OpenAIAPIException("OpenAI API key is not configured")
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    def _messages(self, schema: DocumentSchema, request: OracleRequest):
        if request.is_vision:
            return [{
                "role": "user",
                "content": [
                    {"type": "text", "text": build_prompt(schema)},
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:{request.image_mime_type};base64,{request.image_base64}",
                        },
                    },
                ],
            }]
        return [
            {
                "role": "system",
                "content": "You extract structured data from UAE business and identity documents. "
                           "Always respond with valid JSON.",
            },
            {"role": "user", "content": build_prompt(schema, text=request.text or "")},
        ]

    async def extract(self, request: OracleRequest) -> Dict[str, Dict[str, Any]]:
        """
        Extract the category's fields from an image or from text.

        Raises:
            UnsupportedDocumentCategoryException: no schema for the category
            OpenAIAPIException: API failure, timeout or unparseable response
        """
        schema = schema_for_category(request.category)
        variant = "vision" if request.is_vision else "text"
        model = self.vision_model if request.is_vision else self.model

        logger.info(f"Extracting {schema.title} via {variant} model {model}")

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model,
                    messages=self._messages(schema, request),
                    max_tokens=min(schema.max_tokens, settings.openai_max_tokens),
                    response_format={"type": "json_object"},
                    temperature=0,
                ),
                timeout=self.timeout,
            )
        except OpenAIAPIException:
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"{schema.title} extraction timed out after {self.timeout}s")
            raise OpenAIAPIException(f"{schema.title} extraction timed out", original_error=e)
        except Exception as e:
            logger.error(f"Error extracting {schema.title} data: {e}")
            raise OpenAIAPIException(f"Failed to extract {schema.title} data: {e}", original_error=e)

        content = response.choices[0].message.content or ""
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"{schema.title} extraction returned invalid JSON")
            raise OpenAIAPIException(f"Invalid JSON in {schema.title} extraction response", original_error=e)
        if not isinstance(raw, dict):
            raise OpenAIAPIException(f"Unexpected {schema.title} extraction response shape")

        extracted = normalize_extraction(schema, raw)
        logger.info(f"{schema.title} extraction completed ({variant}): {len(extracted)} fields")
        return extracted
