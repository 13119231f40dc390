"""
ClientDesk - Clients Router

API endpoints for client files: clients, partners/managers, and documents
(upload by category, extraction, verification).
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse

from app.config import settings
from app.dependencies import get_client_service, get_document_processor
from app.models.client import ClientStatus, DocumentCategory
from app.schemas.client import (
    BusinessInfoUpdateRequest,
    ClientCreateRequest,
    ClientDocumentResponse,
    ClientListResponse,
    ClientResponse,
    ClientUpdateRequest,
    DocumentProcessResponse,
    DocumentVerifyRequest,
    MessageResponse,
    PersonCreateRequest,
    PersonResponse,
    PersonSyncResponse,
    PersonUpdateRequest,
    ProcessingQueuedResponse,
)
from app.services.client_service import ClientService
from app.services.document_processor_service import DocumentProcessorService
from app.services.file_storage_service import FileStorageService, get_file_storage_service
from app.tasks.celery_tasks import process_client_document_task


router = APIRouter()

ALLOWED_CONTENT_TYPES = ["application/pdf", "image/jpeg", "image/jpg", "image/png", "image/webp"]


# ===========================================
# CLIENTS
# ===========================================

@router.get(
    "",
    response_model=ClientListResponse,
    summary="List clients",
)
async def list_clients(
    client_status: Optional[ClientStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, description="Search by English or Arabic name"),
    service: ClientService = Depends(get_client_service),
):
    clients = await service.list_clients(status=client_status, search=search)
    return ClientListResponse(
        clients=[ClientResponse.model_validate(c) for c in clients],
        total=len(clients),
    )


@router.post(
    "",
    response_model=ClientResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create client",
)
async def create_client(
    request: ClientCreateRequest,
    service: ClientService = Depends(get_client_service),
):
    client = await service.create_client(request)
    return ClientResponse.model_validate(client)


@router.get(
    "/{client_id}",
    response_model=ClientResponse,
    summary="Get client",
    description="Client with business info, documents, partners and managers.",
)
async def get_client(
    client_id: UUID,
    service: ClientService = Depends(get_client_service),
):
    client = await service.get_client(client_id)
    return ClientResponse.model_validate(client)


@router.patch(
    "/{client_id}",
    response_model=ClientResponse,
    summary="Update client contact details",
)
async def update_client(
    client_id: UUID,
    request: ClientUpdateRequest,
    service: ClientService = Depends(get_client_service),
):
    client = await service.update_client(client_id, request)
    return ClientResponse.model_validate(client)


@router.patch(
    "/{client_id}/business-info",
    response_model=ClientResponse,
    summary="Update business info",
    description="Manual edit of names, registration numbers, VAT cycle/periods and license data.",
)
async def update_business_info(
    client_id: UUID,
    request: BusinessInfoUpdateRequest,
    service: ClientService = Depends(get_client_service),
):
    client = await service.update_business_info(client_id, request)
    return ClientResponse.model_validate(client)


@router.delete(
    "/{client_id}",
    response_model=MessageResponse,
    summary="Delete client",
)
async def delete_client(
    client_id: UUID,
    service: ClientService = Depends(get_client_service),
):
    await service.delete_client(client_id)
    return MessageResponse(message="Client deleted")


# ===========================================
# PARTNERS AND MANAGERS
# ===========================================

@router.post(
    "/{client_id}/persons",
    response_model=PersonResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add partner or manager",
)
async def add_person(
    client_id: UUID,
    request: PersonCreateRequest,
    service: ClientService = Depends(get_client_service),
):
    person = await service.add_person(client_id, request)
    return PersonResponse.model_validate(person)


@router.patch(
    "/{client_id}/persons/{person_id}",
    response_model=PersonResponse,
    summary="Update partner or manager",
)
async def update_person(
    client_id: UUID,
    person_id: UUID,
    request: PersonUpdateRequest,
    service: ClientService = Depends(get_client_service),
):
    person = await service.update_person(client_id, person_id, request)
    return PersonResponse.model_validate(person)


@router.delete(
    "/{client_id}/persons/{person_id}",
    response_model=MessageResponse,
    summary="Remove partner or manager",
)
async def remove_person(
    client_id: UUID,
    person_id: UUID,
    service: ClientService = Depends(get_client_service),
):
    await service.remove_person(client_id, person_id)
    return MessageResponse(message="Person removed")


@router.post(
    "/{client_id}/persons/sync",
    response_model=PersonSyncResponse,
    summary="Sync identity documents to persons",
    description="Copy Emirates ID and passport data from processed documents to matching partners/managers.",
)
async def sync_persons(
    client_id: UUID,
    service: ClientService = Depends(get_client_service),
):
    count = await service.sync_document_data_to_persons(client_id)
    return PersonSyncResponse(persons_updated=count)


# ===========================================
# DOCUMENTS
# ===========================================

@router.post(
    "/{client_id}/documents/{category}",
    response_model=ClientDocumentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload document by category",
)
async def upload_document(
    client_id: UUID,
    category: DocumentCategory,
    file: UploadFile = File(...),
    assigned_to_person_id: Optional[UUID] = Form(None),
    service: ClientService = Depends(get_client_service),
    storage: FileStorageService = Depends(get_file_storage_service),
):
    """
    Upload a document into a client's file.

    A new upload replaces the previous document of the same category (and,
    for identity documents, the same assigned person) and resets it to
    PENDING processing.

    Supported formats: PDF, JPEG, PNG, WEBP
    """
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file type. Allowed: {ALLOWED_CONTENT_TYPES}",
        )

    file_content = await file.read()

    max_size = settings.max_upload_size_mb * 1024 * 1024
    if len(file_content) > max_size:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File too large. Maximum size is {settings.max_upload_size_mb}MB",
        )

    document = await service.upload_document_by_category(
        client_id=client_id,
        category=category.value,
        filename=file.filename or category.value.lower(),
        file_content=file_content,
        content_type=file.content_type,
        storage=storage,
        assigned_to_person_id=assigned_to_person_id,
    )
    return ClientDocumentResponse.model_validate(document)


@router.get(
    "/{client_id}/documents/{document_id}",
    response_model=ClientDocumentResponse,
    summary="Get document",
)
async def get_document(
    client_id: UUID,
    document_id: UUID,
    service: ClientService = Depends(get_client_service),
):
    document = await service.get_document(client_id, document_id)
    return ClientDocumentResponse.model_validate(document)


@router.post(
    "/{client_id}/documents/{document_id}/process",
    response_model=DocumentProcessResponse,
    responses={202: {"model": ProcessingQueuedResponse}},
    summary="Process or reprocess document",
)
async def process_document(
    client_id: UUID,
    document_id: UUID,
    background: bool = Query(False, description="Queue on the Celery worker instead of running inline"),
    service: ClientService = Depends(get_client_service),
    processor: DocumentProcessorService = Depends(get_document_processor),
):
    """
    Run AI extraction on a document and apply the results to the client.

    Returns 409 if the document is already being processed.
    """
    if background:
        # Fail fast on unknown document before queueing
        await service.get_document(client_id, document_id)
        task = process_client_document_task.delay(str(client_id), str(document_id))
        queued = ProcessingQueuedResponse(document_id=document_id, task_id=task.id)
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=queued.model_dump(mode="json"))

    return await service.run_document_pipeline(client_id, document_id, processor)


@router.post(
    "/{client_id}/documents/{document_id}/verify",
    response_model=ClientDocumentResponse,
    summary="Verify document",
)
async def verify_document(
    client_id: UUID,
    document_id: UUID,
    request: DocumentVerifyRequest,
    service: ClientService = Depends(get_client_service),
):
    document = await service.verify_document(client_id, document_id, request.verified_fields)
    return ClientDocumentResponse.model_validate(document)


@router.delete(
    "/{client_id}/documents/{document_id}",
    response_model=MessageResponse,
    summary="Delete document",
)
async def delete_document(
    client_id: UUID,
    document_id: UUID,
    service: ClientService = Depends(get_client_service),
    storage: FileStorageService = Depends(get_file_storage_service),
):
    await service.delete_document(client_id, document_id, storage)
    return MessageResponse(message="Document deleted")
