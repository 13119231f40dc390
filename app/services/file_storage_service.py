"""
ClientDesk - File Storage Service

File storage for uploaded client documents.

Supports:
- Azure Blob Storage (production)
- Local file storage (development)
"""

import asyncio
import hashlib
import logging
import mimetypes
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from azure.storage.blob import BlobServiceClient, ContentSettings

from app.config import settings

logger = logging.getLogger(__name__)


class StorageProvider(str, Enum):
    """Storage provider types."""
    AZURE_BLOB = "azure"
    LOCAL = "local"


class FileStorageService:
    """
    File storage service for client documents.

    Uses Azure Blob Storage when configured,
    falls back to local storage for development.
    """

    def __init__(
        self,
        provider: Optional[StorageProvider] = None,
        local_storage_path: Optional[str] = None,
    ):
        self.azure_connection_string = settings.azure_storage_connection_string
        self.azure_container = settings.azure_storage_container
        self.local_storage_path = Path(local_storage_path or settings.storage_local_path)
        self.provider = provider or self._determine_provider()

        # Ensure local storage directory exists
        if self.provider == StorageProvider.LOCAL:
            self.local_storage_path.mkdir(parents=True, exist_ok=True)

    def _determine_provider(self) -> StorageProvider:
        """Determine which storage provider to use."""
        if settings.storage_backend == StorageProvider.AZURE_BLOB.value and self.azure_connection_string:
            return StorageProvider.AZURE_BLOB
        return StorageProvider.LOCAL

    def _blob_service(self) -> BlobServiceClient:
        return BlobServiceClient.from_connection_string(self.azure_connection_string)

    def _generate_blob_name(
        self,
        client_id: uuid.UUID,
        category: str,
        original_filename: str,
    ) -> str:
        """
        Generate a unique blob name with organized path structure.

        Format: client_id/category/year/month/unique_id_filename
        """
        now = datetime.utcnow()
        file_id = uuid.uuid4().hex[:12]

        # Sanitize filename
        safe_filename = "".join(
            c if c.isalnum() or c in ".-_" else "_"
            for c in original_filename
        )

        return f"{client_id}/{category.lower()}/{now.year}/{now.month:02d}/{file_id}_{safe_filename}"

    async def upload_file(
        self,
        client_id: uuid.UUID,
        file_content: bytes,
        filename: str,
        content_type: str,
        category: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Upload a file to storage.

        Args:
            client_id: Owning client
            file_content: Raw file bytes
            filename: Original filename
            content_type: MIME type
            category: Document category
            metadata: Additional metadata

        Returns:
            Dict with key, url, and metadata
        """
        blob_name = self._generate_blob_name(client_id, category, filename)
        file_hash = hashlib.md5(file_content).hexdigest()

        if self.provider == StorageProvider.AZURE_BLOB:
            url = await asyncio.to_thread(
                self._upload_to_azure, blob_name, file_content, content_type, metadata
            )
        else:
            url = await self._upload_to_local(blob_name, file_content)

        logger.info(f"Stored {filename} ({len(file_content)} bytes) as {blob_name}")

        return {
            "key": blob_name,
            "url": url,
            "filename": filename,
            "content_type": content_type,
            "size": len(file_content),
            "hash": file_hash,
            "provider": self.provider.value,
        }

    def _upload_to_azure(
        self,
        blob_name: str,
        file_content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Upload file to Azure Blob Storage."""
        container_client = self._blob_service().get_container_client(self.azure_container)

        # Ensure container exists
        if not container_client.exists():
            container_client.create_container()

        blob_client = container_client.get_blob_client(blob_name)
        blob_client.upload_blob(
            file_content,
            content_settings=ContentSettings(content_type=content_type),
            metadata=metadata,
            overwrite=True,
        )
        return blob_client.url

    async def _upload_to_local(
        self,
        blob_name: str,
        file_content: bytes,
    ) -> str:
        """Upload file to local storage."""
        file_path = self.local_storage_path / blob_name
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "wb") as f:
            f.write(file_content)

        # Return local URL (for development)
        return f"/uploads/{blob_name}"

    async def download_file(
        self,
        file_id: str,
    ) -> Tuple[bytes, str]:
        """
        Download a file from storage.

        Args:
            file_id: The file key (blob name)

        Returns:
            Tuple of (file_content, content_type)
        """
        if self.provider == StorageProvider.AZURE_BLOB:
            return await asyncio.to_thread(self._download_from_azure, file_id)
        return await self._download_from_local(file_id)

    def _download_from_azure(
        self,
        blob_name: str,
    ) -> Tuple[bytes, str]:
        """Download file from Azure Blob Storage."""
        blob_client = self._blob_service().get_blob_client(
            container=self.azure_container,
            blob=blob_name,
        )
        content = blob_client.download_blob().readall()
        properties = blob_client.get_blob_properties()
        content_type = properties.content_settings.content_type or "application/octet-stream"
        return content, content_type

    async def _download_from_local(
        self,
        blob_name: str,
    ) -> Tuple[bytes, str]:
        """Download file from local storage."""
        file_path = self.local_storage_path / blob_name

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {blob_name}")

        with open(file_path, "rb") as f:
            content = f.read()

        content_type, _ = mimetypes.guess_type(str(file_path))
        return content, content_type or "application/octet-stream"

    async def delete_file(
        self,
        file_id: str,
    ) -> bool:
        """
        Delete a file from storage.

        Returns:
            True if a file was deleted
        """
        if self.provider == StorageProvider.AZURE_BLOB:
            return await asyncio.to_thread(self._delete_from_azure, file_id)
        return await self._delete_from_local(file_id)

    def _delete_from_azure(
        self,
        blob_name: str,
    ) -> bool:
        """Delete file from Azure Blob Storage."""
        blob_client = self._blob_service().get_blob_client(
            container=self.azure_container,
            blob=blob_name,
        )
        blob_client.delete_blob()
        return True

    async def _delete_from_local(
        self,
        blob_name: str,
    ) -> bool:
        """Delete file from local storage."""
        file_path = self.local_storage_path / blob_name

        if file_path.exists():
            file_path.unlink()
            return True

        return False


def get_file_storage_service() -> FileStorageService:
    """FastAPI dependency for the configured storage backend."""
    return FileStorageService()
