"""
ClientDesk - FastAPI Dependencies

Shared dependencies for services that need a database session, the clock,
file storage or the extraction pipeline. Tests override these through
``app.dependency_overrides``.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.services.client_service import ClientService
from app.services.compliance_service import ComplianceService
from app.services.document_processor_service import DocumentProcessorService
from app.services.file_storage_service import FileStorageService, get_file_storage_service
from app.utils.clock import Clock, get_clock


async def get_client_service(
    db: AsyncSession = Depends(get_async_session),
) -> ClientService:
    return ClientService(db)


async def get_compliance_service(
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
) -> ComplianceService:
    return ComplianceService(db, clock=clock)


async def get_document_processor(
    storage: FileStorageService = Depends(get_file_storage_service),
    clock: Clock = Depends(get_clock),
) -> DocumentProcessorService:
    """Extraction pipeline wired to the configured storage backend."""
    return DocumentProcessorService(storage=storage, clock=clock)
