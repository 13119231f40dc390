"""
ClientDesk - Client Service

Business logic for client files: clients, partners/managers, uploaded
documents, and the state transitions around document extraction.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.client import (
    Client,
    ClientDocument,
    ClientPerson,
    ClientStatus,
    DocumentCategory,
    PersonRole,
    ProcessingStatus,
    UploadStatus,
)
from app.schemas.client import (
    BusinessInfo,
    BusinessInfoUpdateRequest,
    ClientCreateRequest,
    ClientDocumentRecord,
    ClientRecord,
    ClientUpdateRequest,
    DocumentProcessResponse,
    IdentityDocument,
    PersonCreateRequest,
    PersonUpdateRequest,
)
from app.services.document_mapping import (
    map_extracted_data_to_business_info,
    map_extracted_data_to_person,
    names_match,
    person_updates_from_documents,
    validate_name_consistency,
)
from app.services.document_processor_service import DocumentProcessorService, ExtractionResult
from app.services.file_storage_service import FileStorageService
from app.utils.error_handling import (
    BusinessRuleException,
    ClientNotFoundException,
    DocumentAlreadyProcessingException,
    DocumentNotFoundException,
    PersonNotFoundException,
    UnsupportedDocumentCategoryException,
)

logger = logging.getLogger(__name__)

CLIENT_FIELD_PATHS = {"name": "name", "nameArabic": "name_arabic"}
IDENTITY_ATTRIBUTES = {"emiratesId": "emirates_id", "passport": "passport"}


def _set_identity_fields(person: ClientPerson, prefix: str, values: Dict[str, Any]) -> None:
    attribute = IDENTITY_ATTRIBUTES[prefix]
    current = getattr(person, attribute) or {}
    merged = IdentityDocument.model_validate({**current, **values})
    # New dict so the JSON column is flagged dirty
    setattr(person, attribute, merged.to_storage())


def apply_person_updates(person: ClientPerson, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Apply dotted updates (``name``, ``emiratesId.number``...) to a person."""
    applied: Dict[str, Any] = {}
    grouped: Dict[str, Dict[str, Any]] = {}
    for path, value in updates.items():
        if path == "name":
            person.name = value
            applied[path] = value
            continue
        prefix, _, key = path.partition(".")
        if prefix in IDENTITY_ATTRIBUTES and key:
            grouped.setdefault(prefix, {})[key] = value
            applied[path] = value
        else:
            logger.warning(f"Ignoring unknown person field '{path}'")
    for prefix, values in grouped.items():
        _set_identity_fields(person, prefix, values)
    return applied


def apply_client_updates(client: Client, updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply AI-derived dotted updates to a client.

    Side-channel keys (leading underscore) and fields a human has verified
    are skipped. Applied paths are added to ``businessInfo.aiExtractedFields``.
    """
    info = BusinessInfo.model_validate(client.business_info or {})
    verified = set(info.verified_fields)
    stored = dict(client.business_info or {})
    applied: Dict[str, Any] = {}

    for path, value in updates.items():
        if path.startswith("_") or path in verified:
            continue
        if path in CLIENT_FIELD_PATHS:
            setattr(client, CLIENT_FIELD_PATHS[path], value)
            applied[path] = value
            continue
        prefix, _, key = path.partition(".")
        if prefix == "businessInfo" and key:
            stored[key] = value
            applied[path] = value
        else:
            logger.warning(f"Ignoring unknown client field '{path}'")

    if applied:
        merged = BusinessInfo.model_validate(stored)
        merged.ai_extracted_fields = sorted(set(info.ai_extracted_fields) | set(applied))
        client.business_info = merged.to_storage()
    return applied


class ClientService:
    """Service for client file operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ===========================================
    # CLIENTS
    # ===========================================

    def _client_query(self):
        return select(Client).options(
            selectinload(Client.documents),
            selectinload(Client.persons),
        )

    async def get_client(self, client_id: uuid.UUID) -> Client:
        """Get a client with documents and persons loaded."""
        result = await self.db.execute(
            self._client_query()
            .where(Client.id == client_id)
            .execution_options(populate_existing=True)
        )
        client = result.scalar_one_or_none()
        if client is None:
            raise ClientNotFoundException(client_id)
        return client

    async def get_client_record(self, client_id: uuid.UUID) -> ClientRecord:
        client = await self.get_client(client_id)
        return ClientRecord.model_validate(client)

    async def list_clients(
        self,
        status: Optional[ClientStatus] = None,
        search: Optional[str] = None,
    ) -> List[Client]:
        """List clients, optionally filtered by status and name."""
        query = self._client_query()
        if status:
            query = query.where(Client.status == status)
        if search:
            search_term = f"%{search}%"
            query = query.where(or_(
                Client.name.ilike(search_term),
                Client.name_arabic.ilike(search_term),
            ))
        query = query.order_by(Client.name)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_active_client_records(self) -> List[ClientRecord]:
        clients = await self.list_clients(status=ClientStatus.ACTIVE)
        return [ClientRecord.model_validate(c) for c in clients]

    async def create_client(self, request: ClientCreateRequest) -> Client:
        """Create a new client."""
        client = Client(
            name=request.name,
            name_arabic=request.name_arabic,
            contact_person=request.contact_person,
            email=request.email,
            phone=request.phone,
            status=request.status,
            business_info=(request.business_info or BusinessInfo()).to_storage(),
        )
        self.db.add(client)
        await self.db.commit()

        logger.info(f"Created client {client.id} ({client.name})")
        return await self.get_client(client.id)

    async def update_client(self, client_id: uuid.UUID, request: ClientUpdateRequest) -> Client:
        """Update contact details and status."""
        client = await self.get_client(client_id)
        for key, value in request.model_dump(exclude_unset=True).items():
            setattr(client, key, value)
        await self.db.commit()
        return await self.get_client(client_id)

    async def update_business_info(
        self,
        client_id: uuid.UUID,
        request: BusinessInfoUpdateRequest,
    ) -> Client:
        """Manually edit name and business info; only fields sent are changed."""
        client = await self.get_client(client_id)
        data = request.model_dump(mode="json", exclude_unset=True)

        for field_name in ("name", "name_arabic"):
            if field_name in data:
                value = data.pop(field_name)
                if value is not None or field_name == "name_arabic":
                    setattr(client, field_name, value)

        if data:
            current = BusinessInfo.model_validate(client.business_info or {}).model_dump(mode="json")
            client.business_info = BusinessInfo.model_validate({**current, **data}).to_storage()

        await self.db.commit()
        logger.info(f"Updated business info for client {client_id}: {sorted(data)}")
        return await self.get_client(client_id)

    async def delete_client(self, client_id: uuid.UUID) -> None:
        client = await self.get_client(client_id)
        await self.db.delete(client)
        await self.db.commit()

    # ===========================================
    # PARTNERS AND MANAGERS
    # ===========================================

    def _find_person(self, client: Client, person_id: uuid.UUID) -> ClientPerson:
        for person in client.persons:
            if person.id == person_id:
                return person
        raise PersonNotFoundException(person_id)

    def _check_partner_link(
        self,
        client: Client,
        role: PersonRole,
        linked_partner_id: Optional[uuid.UUID],
    ) -> None:
        if linked_partner_id is None:
            return
        if role != PersonRole.MANAGER:
            raise BusinessRuleException(
                "Only managers can be linked to a partner",
                rule="manager_partner_link",
            )
        partner = self._find_person(client, linked_partner_id)
        if partner.role != PersonRole.PARTNER:
            raise BusinessRuleException(
                "Linked person must be a partner",
                rule="manager_partner_link",
            )

    async def add_person(self, client_id: uuid.UUID, request: PersonCreateRequest) -> ClientPerson:
        """Add a partner or manager to a client."""
        client = await self.get_client(client_id)
        self._check_partner_link(client, request.role, request.linked_partner_id)

        person = ClientPerson(
            client_id=client.id,
            role=request.role,
            name=request.name,
            emirates_id=request.emirates_id.to_storage() if request.emirates_id else None,
            passport=request.passport.to_storage() if request.passport else None,
            linked_partner_id=request.linked_partner_id,
        )
        self.db.add(person)
        await self.db.commit()
        await self.db.refresh(person)

        logger.info(f"Added {person.role.value.lower()} {person.id} to client {client_id}")
        return person

    async def update_person(
        self,
        client_id: uuid.UUID,
        person_id: uuid.UUID,
        request: PersonUpdateRequest,
    ) -> ClientPerson:
        client = await self.get_client(client_id)
        person = self._find_person(client, person_id)
        data = request.model_dump(exclude_unset=True)

        if "linked_partner_id" in data:
            self._check_partner_link(client, person.role, data["linked_partner_id"])
            person.linked_partner_id = data["linked_partner_id"]
        if data.get("name"):
            person.name = data["name"]
        for field_name in ("emirates_id", "passport"):
            if field_name in data:
                value = getattr(request, field_name)
                setattr(person, field_name, value.to_storage() if value else None)

        await self.db.commit()
        await self.db.refresh(person)
        return person

    async def remove_person(self, client_id: uuid.UUID, person_id: uuid.UUID) -> None:
        client = await self.get_client(client_id)
        person = self._find_person(client, person_id)
        client.persons.remove(person)
        await self.db.commit()
        logger.info(f"Removed person {person_id} from client {client_id}")

    # ===========================================
    # DOCUMENTS
    # ===========================================

    async def get_document(self, client_id: uuid.UUID, document_id: uuid.UUID) -> ClientDocument:
        result = await self.db.execute(
            select(ClientDocument)
            .where(ClientDocument.id == document_id)
            .where(ClientDocument.client_id == client_id)
            .execution_options(populate_existing=True)
        )
        document = result.scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundException(document_id)
        return document

    def _document_to_replace(
        self,
        client: Client,
        category: DocumentCategory,
        assigned_to_person_id: Optional[uuid.UUID],
    ) -> Optional[ClientDocument]:
        """
        Existing document an upload supersedes.

        Business documents are one per category; person documents are one per
        category and assigned person, and unassigned ones are never replaced.
        """
        if category.is_person_document and assigned_to_person_id is None:
            return None
        candidates = [
            d for d in client.documents
            if d.category == category
            and (category.is_business_document or d.assigned_to_person_id == assigned_to_person_id)
        ]
        return candidates[-1] if candidates else None

    async def upload_document_by_category(
        self,
        client_id: uuid.UUID,
        category: str,
        filename: str,
        file_content: bytes,
        content_type: str,
        storage: FileStorageService,
        assigned_to_person_id: Optional[uuid.UUID] = None,
    ) -> ClientDocument:
        """Store a file and attach it to the client under a category."""
        try:
            category = DocumentCategory(category)
        except ValueError:
            raise UnsupportedDocumentCategoryException(str(category))

        client = await self.get_client(client_id)
        if assigned_to_person_id is not None:
            self._find_person(client, assigned_to_person_id)

        existing = self._document_to_replace(client, category, assigned_to_person_id)
        if existing is not None and existing.processing_status == ProcessingStatus.PROCESSING:
            raise DocumentAlreadyProcessingException(existing.id)

        stored = await storage.upload_file(
            client_id=client.id,
            file_content=file_content,
            filename=filename,
            content_type=content_type,
            category=category.value,
            metadata={"client_id": str(client.id), "category": category.value},
        )

        if existing is not None:
            old_key = existing.key
            document = existing
            document.version += 1
        else:
            old_key = None
            document = ClientDocument(client_id=client.id, category=category)
            self.db.add(document)

        document.name = stored["filename"]
        document.key = stored["key"]
        document.url = stored["url"]
        document.content_type = stored["content_type"]
        document.size = stored["size"]
        document.assigned_to_person_id = assigned_to_person_id
        document.upload_status = UploadStatus.UPLOADED
        document.processing_status = ProcessingStatus.PENDING
        document.extracted_data = None
        document.processing_metadata = None
        document.processing_error = None

        await self.db.commit()
        await self.db.refresh(document)

        if old_key and old_key != document.key:
            try:
                await storage.delete_file(old_key)
            except Exception as e:
                logger.warning(f"Could not delete replaced file {old_key}: {e}")

        logger.info(f"Uploaded {category.value} document {document.id} for client {client_id}")
        return document

    async def verify_document(
        self,
        client_id: uuid.UUID,
        document_id: uuid.UUID,
        verified_fields: List[str],
    ) -> ClientDocument:
        """Mark a document reviewed and record which extracted fields were confirmed."""
        client = await self.get_client(client_id)
        document = await self.get_document(client_id, document_id)
        document.upload_status = UploadStatus.VERIFIED

        if verified_fields:
            info = BusinessInfo.model_validate(client.business_info or {})
            info.verified_fields = sorted(set(info.verified_fields) | set(verified_fields))
            client.business_info = info.to_storage()

        await self.db.commit()
        await self.db.refresh(document)
        return document

    async def delete_document(
        self,
        client_id: uuid.UUID,
        document_id: uuid.UUID,
        storage: FileStorageService,
    ) -> None:
        document = await self.get_document(client_id, document_id)
        if document.processing_status == ProcessingStatus.PROCESSING:
            raise DocumentAlreadyProcessingException(document_id)
        key = document.key
        await self.db.delete(document)
        await self.db.commit()
        await storage.delete_file(key)
        logger.info(f"Deleted document {document_id} ({key})")

    # ===========================================
    # PROCESSING STATE
    # ===========================================

    async def mark_processing(self, client_id: uuid.UUID, document_id: uuid.UUID) -> ClientDocument:
        """
        Move a document into PROCESSING.

        Compare-and-set on version and status: of two concurrent requests
        only one succeeds, the other gets DocumentAlreadyProcessingException.
        """
        document = await self.get_document(client_id, document_id)
        result = await self.db.execute(
            update(ClientDocument)
            .where(ClientDocument.id == document.id)
            .where(ClientDocument.version == document.version)
            .where(ClientDocument.processing_status != ProcessingStatus.PROCESSING)
            .values(
                processing_status=ProcessingStatus.PROCESSING,
                processing_error=None,
                version=ClientDocument.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            logger.warning(f"Document {document_id} is already being processed")
            raise DocumentAlreadyProcessingException(document_id)

        await self.db.commit()
        await self.db.refresh(document)
        return document

    async def complete_processing(
        self,
        document: ClientDocument,
        result: ExtractionResult,
    ) -> ClientDocument:
        document.extracted_data = result.extracted_data
        document.processing_metadata = result.processing_metadata
        document.processing_status = ProcessingStatus.COMPLETED
        document.processing_error = None
        document.version += 1
        await self.db.commit()
        await self.db.refresh(document)
        return document

    async def fail_processing(self, document: ClientDocument, error: Exception) -> ClientDocument:
        document.processing_status = ProcessingStatus.FAILED
        document.processing_error = getattr(error, "message", None) or str(error)
        document.version += 1
        await self.db.commit()
        await self.db.refresh(document)
        return document

    # ===========================================
    # EXTRACTED DATA -> RECORDS
    # ===========================================

    def _sync_persons(self, client: Client) -> int:
        planned = person_updates_from_documents(ClientRecord.model_validate(client))
        persons = {p.id: p for p in client.persons}
        for person_id, updates in planned.items():
            apply_person_updates(persons[person_id], updates)
            logger.info(f"Filled {sorted(updates)} on person {person_id}")
        return len(planned)

    async def sync_document_data_to_persons(self, client_id: uuid.UUID) -> int:
        """
        Copy identity data from processed Emirates ID/passport documents to
        matching partners and managers. Returns the number of persons updated.
        """
        client = await self.get_client(client_id)
        count = self._sync_persons(client)
        if count:
            await self.db.commit()
        logger.info(f"Synced identity documents to {count} persons for client {client_id}")
        return count

    def _create_persons_from_license(self, client: Client, updates: Dict[str, Any]) -> int:
        """Add the trade license's manager and partners when not on file yet."""
        created = 0
        manager_name = updates.get("_managerName")
        if manager_name and not client.managers:
            client.persons.append(ClientPerson(role=PersonRole.MANAGER, name=manager_name))
            created += 1

        for partner_name in updates.get("_partners") or []:
            if any(names_match(partner_name, p.name) for p in client.partners):
                continue
            client.persons.append(ClientPerson(role=PersonRole.PARTNER, name=partner_name))
            created += 1

        if created:
            logger.info(f"Created {created} persons from trade license for client {client.id}")
        return created

    def _apply_business_document(
        self,
        client: Client,
        document: ClientDocument,
    ) -> Tuple[Dict[str, Any], Any, int]:
        category = document.category
        extracted = document.extracted_data or {}

        validation = validate_name_consistency(ClientRecord.model_validate(client), extracted, category)
        mapping = map_extracted_data_to_business_info(category, extracted)

        updates = mapping.updates
        if not validation.is_valid:
            logger.warning(
                f"Name mismatch on {category.value} for client {client.id}; keeping stored names"
            )
            updates = {k: v for k, v in updates.items() if k not in CLIENT_FIELD_PATHS}

        applied = apply_client_updates(client, updates)
        created = 0
        if category == DocumentCategory.TRADE_LICENSE:
            created = self._create_persons_from_license(client, mapping.updates)

        document.processing_metadata = {
            **(document.processing_metadata or {}),
            "nameValidation": validation.model_dump(mode="json", by_alias=True),
        }
        return applied, validation, created

    def _apply_person_document(self, client: Client, document: ClientDocument) -> int:
        if document.assigned_to_person_id is None:
            return self._sync_persons(client)

        person = self._find_person(client, document.assigned_to_person_id)
        updates = map_extracted_data_to_person(document.category, document.extracted_data or {})
        if person.name:
            updates.pop("name", None)
        return 1 if apply_person_updates(person, updates) else 0

    async def run_document_pipeline(
        self,
        client_id: uuid.UUID,
        document_id: uuid.UUID,
        processor: DocumentProcessorService,
    ) -> DocumentProcessResponse:
        """
        Extract a document and apply the results to the client file.

        Business documents update the client's names and business info
        (names are left alone when they conflict with what is on file);
        identity documents update the assigned or name-matched person.
        On extraction failure the document is marked FAILED and the error
        is re-raised.
        """
        document = await self.mark_processing(client_id, document_id)

        try:
            result = await processor.process_document(document.category, document.key)
        except Exception as e:
            logger.error(f"Processing failed for document {document_id}: {e}")
            await self.fail_processing(document, e)
            raise

        document = await self.complete_processing(document, result)
        client = await self.get_client(client_id)
        document = next(d for d in client.documents if d.id == document.id)

        response = DocumentProcessResponse(document=ClientDocumentRecord.model_validate(document))
        if document.category.is_business_document:
            applied, validation, created = self._apply_business_document(client, document)
            response.applied_updates = applied
            response.ai_extracted_fields = list(applied)
            response.name_validation = validation
            response.persons_created = created
        else:
            response.persons_updated = self._apply_person_document(client, document)

        await self.db.commit()
        await self.db.refresh(document)
        response.document = ClientDocumentRecord.model_validate(document)

        logger.info(
            f"Applied {document.category.value} document {document_id}: "
            f"{len(response.applied_updates)} client fields, {response.persons_updated} persons updated, "
            f"{response.persons_created} persons created"
        )
        return response
