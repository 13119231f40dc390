"""
ClientDesk - Client Schemas

Pydantic schemas for clients, their documents and partner/manager records.

Business info, tax periods and identity documents are stored as JSON with
camelCase keys; the embedded schemas below read and write that shape so the
dotted update paths produced by document mapping (``businessInfo.trn``,
``emiratesId.expiryDate``) line up with what is persisted.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from app.models.client import (
    ClientStatus,
    DocumentCategory,
    PersonRole,
    ProcessingStatus,
    UploadStatus,
    VatReturnCycle,
)


class CamelModel(BaseModel):
    """Base for documents embedded as camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_storage(self) -> Dict[str, Any]:
        """Serialize for a JSON column."""
        return self.model_dump(mode="json", by_alias=True)


# ===========================================
# EMBEDDED DOCUMENTS
# ===========================================

class TaxPeriod(CamelModel):
    """A VAT tax period; the return is due a fixed window after `end_date`."""
    start_date: date
    end_date: date


class IdentityDocument(CamelModel):
    """Emirates ID or passport details held on a person record."""
    number: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    verified: bool = False


class BusinessInfo(CamelModel):
    """Registration and filing data for a client business."""
    address: Optional[str] = None
    emirate: Optional[str] = None
    trn: Optional[str] = Field(None, description="VAT Tax Registration Number")
    ctrn: Optional[str] = Field(None, description="Corporate Tax Registration Number")
    # Free-form: unrecognized cycles yield no computed VAT due date
    vat_return_cycle: Optional[str] = None
    vat_tax_periods: List[TaxPeriod] = Field(default_factory=list)
    corporate_tax_due_date: Optional[date] = None
    license_number: Optional[str] = None
    license_start_date: Optional[date] = None
    license_expiry_date: Optional[date] = None
    remarks: Optional[str] = None
    ai_extracted_fields: List[str] = Field(default_factory=list)
    verified_fields: List[str] = Field(default_factory=list)


# ===========================================
# RECORDS (read from the ORM)
# ===========================================

class PersonRecord(BaseModel):
    """Partner or manager as seen by compliance and mapping logic."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    role: PersonRole
    name: Optional[str] = None
    emirates_id: Optional[IdentityDocument] = None
    passport: Optional[IdentityDocument] = None
    linked_partner_id: Optional[UUID] = None


class ClientDocumentRecord(BaseModel):
    """Document metadata and extraction results."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    category: DocumentCategory
    name: str
    key: str
    url: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    assigned_to_person_id: Optional[UUID] = None
    upload_status: UploadStatus = UploadStatus.UPLOADED
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    extracted_data: Optional[Dict[str, Any]] = None
    processing_metadata: Optional[Dict[str, Any]] = None
    processing_error: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ClientRecord(BaseModel):
    """
    Complete client file: business info, documents, partners and managers.

    This is the input of the compliance engine and of name validation.
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    name_arabic: Optional[str] = None
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: ClientStatus = ClientStatus.ACTIVE
    business_info: BusinessInfo = Field(default_factory=BusinessInfo)
    documents: List[ClientDocumentRecord] = Field(default_factory=list)
    partners: List[PersonRecord] = Field(default_factory=list)
    managers: List[PersonRecord] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def find_document(self, category: DocumentCategory) -> Optional[ClientDocumentRecord]:
        """Most recent document of a category, if any."""
        matches = [d for d in self.documents if d.category == category]
        return matches[-1] if matches else None


# ===========================================
# REQUEST SCHEMAS
# ===========================================

class BusinessInfoUpdateRequest(BaseModel):
    """Partial update of a client's name and business info. Unset fields are left alone."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    name_arabic: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    emirate: Optional[str] = Field(None, max_length=100)
    trn: Optional[str] = Field(None, max_length=50)
    ctrn: Optional[str] = Field(None, max_length=50)
    vat_return_cycle: Optional[VatReturnCycle] = None
    vat_tax_periods: Optional[List[TaxPeriod]] = None
    corporate_tax_due_date: Optional[date] = None
    license_number: Optional[str] = Field(None, max_length=100)
    license_start_date: Optional[date] = None
    license_expiry_date: Optional[date] = None
    remarks: Optional[str] = None
    verified_fields: Optional[List[str]] = None


class ClientCreateRequest(BaseModel):
    """Schema for creating a client."""
    name: str = Field(..., min_length=1, max_length=255)
    name_arabic: Optional[str] = Field(None, max_length=255)
    contact_person: Optional[str] = Field(None, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    status: ClientStatus = ClientStatus.ACTIVE
    business_info: Optional[BusinessInfo] = None


class ClientUpdateRequest(BaseModel):
    """Schema for updating client contact details."""
    contact_person: Optional[str] = Field(None, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    status: Optional[ClientStatus] = None


class PersonCreateRequest(BaseModel):
    """Schema for adding a partner or manager."""
    role: PersonRole
    name: str = Field(..., min_length=1, max_length=255)
    emirates_id: Optional[IdentityDocument] = None
    passport: Optional[IdentityDocument] = None
    linked_partner_id: Optional[UUID] = Field(
        None,
        description="Manager only: partner whose identity documents this manager shares",
    )


class PersonUpdateRequest(BaseModel):
    """Schema for updating a partner or manager."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    emirates_id: Optional[IdentityDocument] = None
    passport: Optional[IdentityDocument] = None
    linked_partner_id: Optional[UUID] = None


class DocumentVerifyRequest(BaseModel):
    """Mark a document verified, optionally confirming AI-extracted fields."""
    verified_fields: List[str] = Field(default_factory=list)


class VatReturnMonthParseRequest(BaseModel):
    """Free-text VAT return months, e.g. "Feb May Aug Nov"."""
    text: str = Field(..., max_length=200)
    year: Optional[int] = Field(None, ge=2000, le=2100)


# ===========================================
# RESPONSE SCHEMAS
# ===========================================

class PersonResponse(PersonRecord):
    """Partner/manager response."""
    client_id: UUID
    created_at: datetime
    updated_at: datetime


class ClientDocumentResponse(ClientDocumentRecord):
    """Document response."""
    client_id: UUID


class ClientResponse(ClientRecord):
    """Client response with nested documents and persons."""
    pass


class ClientListResponse(BaseModel):
    """Schema for list of clients."""
    clients: List[ClientResponse]
    total: int


class NameValidationIssue(BaseModel):
    """A single legal-name conflict."""
    field: str
    message: str
    values: Dict[str, Optional[str]]
    document_category: str = Field(..., alias="documentCategory")

    model_config = ConfigDict(populate_by_name=True)


class NameValidationResult(BaseModel):
    """Outcome of comparing an extracted legal name with what is on file."""
    is_valid: bool = Field(..., alias="isValid")
    errors: List[NameValidationIssue] = Field(default_factory=list)
    warnings: List[NameValidationIssue] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class DocumentProcessResponse(BaseModel):
    """Result of running the extraction pipeline on a document."""
    document: ClientDocumentRecord
    applied_updates: Dict[str, Any] = Field(default_factory=dict)
    ai_extracted_fields: List[str] = Field(default_factory=list)
    name_validation: Optional[NameValidationResult] = None
    persons_updated: int = 0
    persons_created: int = 0


class TaxPeriodsParseResponse(BaseModel):
    """Parsed VAT return cycle and periods."""
    vat_return_cycle: Optional[VatReturnCycle] = None
    vat_tax_periods: List[TaxPeriod] = Field(default_factory=list)


class PersonSyncResponse(BaseModel):
    """Number of persons updated from processed identity documents."""
    persons_updated: int


class ProcessingQueuedResponse(BaseModel):
    """Document queued for background extraction."""
    document_id: UUID
    task_id: str
    status: str = "queued"


class MessageResponse(BaseModel):
    """Generic message response."""
    message: str
    success: bool = True
