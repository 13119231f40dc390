"""
ClientDesk - Schemas Package

Pydantic schemas for request/response validation.
"""

from app.schemas.client import (
    BusinessInfo,
    ClientCreateRequest,
    ClientDocumentRecord,
    ClientRecord,
    ClientResponse,
    IdentityDocument,
    NameValidationResult,
    PersonRecord,
    TaxPeriod,
)

__all__ = [
    "BusinessInfo",
    "ClientCreateRequest",
    "ClientDocumentRecord",
    "ClientRecord",
    "ClientResponse",
    "IdentityDocument",
    "NameValidationResult",
    "PersonRecord",
    "TaxPeriod",
]
