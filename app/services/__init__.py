"""
ClientDesk - Services Package

Business logic services.
"""

from app.services.file_storage_service import FileStorageService
from app.services.extraction_oracle import ExtractionOracle
from app.services.document_processor_service import DocumentProcessorService
from app.services.client_service import ClientService
from app.services.compliance_service import ComplianceService, calculate_compliance_status
from app.services.vat_period_parser import parse_vat_return_month

__all__ = [
    "FileStorageService",
    "ExtractionOracle",
    "DocumentProcessorService",
    "ClientService",
    "ComplianceService",
    "calculate_compliance_status",
    "parse_vat_return_month",
]
