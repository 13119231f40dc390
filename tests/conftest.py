"""
ClientDesk - Test Configuration

Pytest fixtures and configuration.

Service and API tests run against an in-memory SQLite database (aiosqlite)
shared through a StaticPool; external services (OpenAI, blob storage) are
replaced with mocks or local storage under tmp_path.
"""

from datetime import date, datetime, timezone
from typing import AsyncGenerator, Callable, List, Optional
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base, get_async_session
from app.dependencies import get_document_processor
from app.models.client import DocumentCategory, PersonRole, ProcessingStatus, UploadStatus
from app.schemas.client import (
    BusinessInfo,
    ClientDocumentRecord,
    ClientRecord,
    IdentityDocument,
    PersonRecord,
)
from app.services.document_processor_service import DocumentProcessorService
from app.services.file_storage_service import (
    FileStorageService,
    StorageProvider,
    get_file_storage_service,
)
from app.utils.clock import FixedClock, get_clock
from main import app


TEST_DATABASE_URL = "sqlite+aiosqlite://"

# Create test engine
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def fixed_clock() -> FixedClock:
    return FixedClock(NOW)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def storage(tmp_path) -> FileStorageService:
    """Local file storage rooted in a temporary directory."""
    return FileStorageService(provider=StorageProvider.LOCAL, local_storage_path=str(tmp_path))


@pytest.fixture
def mock_oracle() -> AsyncMock:
    """Extraction oracle stub; set `extract.return_value` per test."""
    oracle = AsyncMock()
    oracle.extract = AsyncMock(return_value={})
    return oracle


@pytest.fixture
def processor(storage, mock_oracle, fixed_clock) -> DocumentProcessorService:
    return DocumentProcessorService(
        storage=storage,
        oracle=mock_oracle,
        text_extractor=lambda data: "",
        rasterizer=AsyncMock(return_value=b"\x89PNG rendered"),
        clock=fixed_clock,
    )


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    storage: FileStorageService,
    processor: DocumentProcessorService,
    fixed_clock: FixedClock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database, clock, storage and pipeline overrides."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session
    app.dependency_overrides[get_clock] = lambda: fixed_clock
    app.dependency_overrides[get_file_storage_service] = lambda: storage
    app.dependency_overrides[get_document_processor] = lambda: processor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# RECORD BUILDERS (pure compliance/mapping tests)
# ===========================================

def field(value, confidence: float = 0.95) -> dict:
    """An extracted field in the oracle's shape."""
    return {"value": value, "confidence": confidence}


def make_document(
    category: DocumentCategory,
    upload_status: UploadStatus = UploadStatus.VERIFIED,
    extracted_data: Optional[dict] = None,
    processing_status: ProcessingStatus = ProcessingStatus.COMPLETED,
) -> ClientDocumentRecord:
    return ClientDocumentRecord(
        id=uuid4(),
        category=category,
        name=f"{category.value.lower()}.pdf",
        key=f"test/{category.value.lower()}.pdf",
        upload_status=upload_status,
        processing_status=processing_status,
        extracted_data=extracted_data,
    )


def make_person(
    role: PersonRole = PersonRole.PARTNER,
    name: str = "Ahmed Ali Hassan",
    emirates_id_expiry: Optional[date] = None,
    passport_expiry: Optional[date] = None,
    emirates_id_number: Optional[str] = None,
) -> PersonRecord:
    emirates_id = None
    if emirates_id_expiry or emirates_id_number:
        emirates_id = IdentityDocument(number=emirates_id_number, expiry_date=emirates_id_expiry)
    passport = IdentityDocument(expiry_date=passport_expiry) if passport_expiry else None
    return PersonRecord(id=uuid4(), role=role, name=name, emirates_id=emirates_id, passport=passport)


def make_client(
    name: str = "Falcon Trading LLC",
    name_arabic: Optional[str] = None,
    documents: Optional[List[ClientDocumentRecord]] = None,
    partners: Optional[List[PersonRecord]] = None,
    managers: Optional[List[PersonRecord]] = None,
    **business_info,
) -> ClientRecord:
    return ClientRecord(
        id=uuid4(),
        name=name,
        name_arabic=name_arabic,
        business_info=BusinessInfo(**business_info),
        documents=documents or [],
        partners=partners or [],
        managers=managers or [],
    )


@pytest.fixture
def client_factory() -> Callable[..., ClientRecord]:
    return make_client


@pytest.fixture
def all_documents_verified() -> List[ClientDocumentRecord]:
    return [
        make_document(DocumentCategory.TRADE_LICENSE),
        make_document(DocumentCategory.VAT_CERTIFICATE),
        make_document(DocumentCategory.CORPORATE_TAX_CERTIFICATE),
    ]
