"""
ClientDesk - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin
from app.models.client import (
    Client,
    ClientDocument,
    ClientPerson,
    ClientStatus,
    DocumentCategory,
    PersonRole,
    ProcessingStatus,
    UploadStatus,
    VatReturnCycle,
    BUSINESS_DOCUMENT_CATEGORIES,
    PERSON_DOCUMENT_CATEGORIES,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "Client",
    "ClientDocument",
    "ClientPerson",
    "ClientStatus",
    "DocumentCategory",
    "PersonRole",
    "ProcessingStatus",
    "UploadStatus",
    "VatReturnCycle",
    "BUSINESS_DOCUMENT_CATEGORIES",
    "PERSON_DOCUMENT_CATEGORIES",
]
