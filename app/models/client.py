"""
ClientDesk - Client Models

Clients of the practice, their uploaded documents, and the partner/manager
records whose identity documents are tracked for compliance.
"""

import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import ForeignKey, Integer, JSON, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class ClientStatus(str, Enum):
    """Engagement status of a client."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class VatReturnCycle(str, Enum):
    """How often a client files VAT returns."""
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    OTHER = "OTHER"


class DocumentCategory(str, Enum):
    """Kinds of documents kept on a client file."""
    TRADE_LICENSE = "TRADE_LICENSE"
    VAT_CERTIFICATE = "VAT_CERTIFICATE"
    CORPORATE_TAX_CERTIFICATE = "CORPORATE_TAX_CERTIFICATE"
    EMIRATES_ID_PARTNER = "EMIRATES_ID_PARTNER"
    EMIRATES_ID_MANAGER = "EMIRATES_ID_MANAGER"
    PASSPORT_PARTNER = "PASSPORT_PARTNER"
    PASSPORT_MANAGER = "PASSPORT_MANAGER"

    @property
    def is_person_document(self) -> bool:
        return self in PERSON_DOCUMENT_CATEGORIES

    @property
    def is_business_document(self) -> bool:
        return self in BUSINESS_DOCUMENT_CATEGORIES


BUSINESS_DOCUMENT_CATEGORIES = frozenset({
    DocumentCategory.TRADE_LICENSE,
    DocumentCategory.VAT_CERTIFICATE,
    DocumentCategory.CORPORATE_TAX_CERTIFICATE,
})

PERSON_DOCUMENT_CATEGORIES = frozenset({
    DocumentCategory.EMIRATES_ID_PARTNER,
    DocumentCategory.EMIRATES_ID_MANAGER,
    DocumentCategory.PASSPORT_PARTNER,
    DocumentCategory.PASSPORT_MANAGER,
})


class UploadStatus(str, Enum):
    """Human-facing review state of an uploaded file."""
    PENDING = "PENDING"
    UPLOADED = "UPLOADED"
    VERIFIED = "VERIFIED"


class ProcessingStatus(str, Enum):
    """State of the extraction pipeline for a document."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PersonRole(str, Enum):
    """Role a person holds in a client business."""
    PARTNER = "PARTNER"
    MANAGER = "MANAGER"


class Client(BaseModel):
    """
    Client model - a business serviced by the practice.

    Business registration data (trade license, VAT and corporate tax details)
    is kept in the `business_info` JSON document, keyed in camelCase so that
    dotted update paths such as ``businessInfo.trn`` address it directly.
    """

    __tablename__ = "clients"

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name_arabic: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_person: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[ClientStatus] = mapped_column(
        SQLEnum(ClientStatus),
        default=ClientStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    business_info: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
        comment="Address, TRN/CTRN, VAT cycle and tax periods, license data",
    )

    documents: Mapped[List["ClientDocument"]] = relationship(
        "ClientDocument",
        back_populates="client",
        cascade="all, delete-orphan",
        order_by="ClientDocument.created_at",
    )
    persons: Mapped[List["ClientPerson"]] = relationship(
        "ClientPerson",
        back_populates="client",
        cascade="all, delete-orphan",
        foreign_keys="ClientPerson.client_id",
        order_by="ClientPerson.created_at",
    )

    @property
    def partners(self) -> List["ClientPerson"]:
        return [p for p in self.persons if p.role == PersonRole.PARTNER]

    @property
    def managers(self) -> List["ClientPerson"]:
        return [p for p in self.persons if p.role == PersonRole.MANAGER]


class ClientPerson(BaseModel):
    """
    Partner or manager of a client business.

    A manager may point at a partner through `linked_partner_id`, meaning the
    same individual holds both roles and shares the partner's identity
    documents.
    """

    __tablename__ = "client_persons"

    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[PersonRole] = mapped_column(SQLEnum(PersonRole), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # {"number", "issueDate", "expiryDate", "verified"}
    emirates_id: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    passport: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    linked_partner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("client_persons.id", ondelete="SET NULL"),
        nullable=True,
    )

    client: Mapped["Client"] = relationship(
        "Client",
        back_populates="persons",
        foreign_keys=[client_id],
    )


class ClientDocument(BaseModel):
    """
    Document uploaded to a client file.

    `version` is bumped on every pipeline state transition and guards the
    move into PROCESSING against concurrent requests.
    """

    __tablename__ = "client_documents"

    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category: Mapped[DocumentCategory] = mapped_column(
        SQLEnum(DocumentCategory),
        nullable=False,
        index=True,
    )
    assigned_to_person_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("client_persons.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Stored file
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    content_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    upload_status: Mapped[UploadStatus] = mapped_column(
        SQLEnum(UploadStatus),
        default=UploadStatus.UPLOADED,
        nullable=False,
    )
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        SQLEnum(ProcessingStatus),
        default=ProcessingStatus.PENDING,
        nullable=False,
        index=True,
    )

    # field -> {"value", "confidence"}
    extracted_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    processing_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    client: Mapped["Client"] = relationship("Client", back_populates="documents")
