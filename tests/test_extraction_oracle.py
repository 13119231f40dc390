"""
ClientDesk - Extraction Oracle Tests

Tests for the schema table, prompts, response normalization and OpenAI
error handling. The OpenAI client is mocked.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.client import DocumentCategory
from app.services.extraction_oracle import (
    DocumentType,
    ExtractionOracle,
    OracleRequest,
    build_prompt,
    normalize_extraction,
    schema_for_category,
)
from app.utils.error_handling import OpenAIAPIException, UnsupportedDocumentCategoryException


def openai_client(content=None, side_effect=None):
    """AsyncOpenAI stand-in returning `content` as the message body."""
    client = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=side_effect)
    return client


class TestSchemaTable:
    """Category to schema dispatch."""

    def test_partner_and_manager_share_schema(self):
        assert schema_for_category(DocumentCategory.EMIRATES_ID_PARTNER) is schema_for_category("EMIRATES_ID_MANAGER")
        assert schema_for_category("PASSPORT_PARTNER").document_type == DocumentType.PASSPORT

    def test_field_sets(self):
        assert schema_for_category("TRADE_LICENSE").field_names == (
            "legalNameEnglish", "legalNameArabic", "licenseNumber", "licenseStartDate",
            "licenseExpiryDate", "address", "emirate", "managerName", "partners",
        )
        assert schema_for_category("PASSPORT_MANAGER").critical_field == "passportNumber"
        assert schema_for_category("EMIRATES_ID_PARTNER").critical_field == "idNumber"
        assert schema_for_category("VAT_CERTIFICATE").critical_field is None

    def test_unknown_category(self):
        with pytest.raises(UnsupportedDocumentCategoryException):
            schema_for_category("UTILITY_BILL")


class TestPrompt:
    """Prompt construction."""

    def test_text_prompt_embeds_document(self):
        prompt = build_prompt(schema_for_category("VAT_CERTIFICATE"), text="TRN 100234567890003")
        assert "Document Text:" in prompt
        assert "TRN 100234567890003" in prompt
        assert "- trn (string)" in prompt

    def test_image_prompt_has_guidance(self):
        prompt = build_prompt(schema_for_category("EMIRATES_ID_MANAGER"))
        assert "Document Text:" not in prompt
        assert "15-digit" in prompt
        assert '"idNumber"' in prompt


class TestNormalizeExtraction:
    """Response normalization."""

    def test_unknown_fields_dropped_and_confidence_clamped(self):
        schema = schema_for_category("EMIRATES_ID_PARTNER")
        raw = {
            "idNumber": {"value": "784-1990-1234567-1", "confidence": 1.4},
            "name": {"value": "Ahmed", "confidence": "high"},
            "bloodType": {"value": "O+", "confidence": 0.9},
            "nationality": "Egypt",
        }
        assert normalize_extraction(schema, raw) == {
            "idNumber": {"value": "784-1990-1234567-1", "confidence": 1.0},
            "name": {"value": "Ahmed", "confidence": 0.0},
            "nationality": {"value": "Egypt", "confidence": 0.0},
        }


class TestExtractionOracle:
    """OpenAI calls."""

    @pytest.mark.asyncio
    async def test_vision_request(self):
        client = openai_client(json.dumps({"passportNumber": {"value": "N1234567", "confidence": 0.9}}))
        oracle = ExtractionOracle(client=client, model="text-model", vision_model="vision-model")

        result = await oracle.extract(OracleRequest(
            category=DocumentCategory.PASSPORT_PARTNER,
            image_base64="aGVsbG8=",
            image_mime_type="image/jpeg",
        ))

        assert result == {"passportNumber": {"value": "N1234567", "confidence": 0.9}}
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "vision-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        image_part = kwargs["messages"][0]["content"][1]
        assert image_part["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="

    @pytest.mark.asyncio
    async def test_text_request_uses_text_model(self):
        client = openai_client(json.dumps({"trn": {"value": "100", "confidence": 0.8}}))
        oracle = ExtractionOracle(client=client, model="text-model", vision_model="vision-model")

        await oracle.extract(OracleRequest(category=DocumentCategory.VAT_CERTIFICATE, text="TRN 100"))

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "text-model"
        assert "TRN 100" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        oracle = ExtractionOracle(client=openai_client("not json"))
        with pytest.raises(OpenAIAPIException):
            await oracle.extract(OracleRequest(category=DocumentCategory.TRADE_LICENSE, text="x"))

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self):
        oracle = ExtractionOracle(client=openai_client(side_effect=RuntimeError("connection reset")))
        with pytest.raises(OpenAIAPIException) as exc_info:
            await oracle.extract(OracleRequest(category=DocumentCategory.TRADE_LICENSE, text="x"))
        assert "connection reset" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        client = MagicMock()
        client.chat.completions.create = slow
        oracle = ExtractionOracle(client=client, timeout=0.01)

        with pytest.raises(OpenAIAPIException) as exc_info:
            await oracle.extract(OracleRequest(category=DocumentCategory.VAT_CERTIFICATE, text="x"))
        assert "timed out" in exc_info.value.message
