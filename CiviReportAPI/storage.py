# storage.py
import logging
import os
import uuid
from typing import Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Clients are created on first use so imports never need Azure credentials.
_blob_service_client = None
_container_client = None


class BlobStoreError(RuntimeError):
    """Raised when the blob store cannot store or return a blob."""


class BlobNotFound(BlobStoreError):
    pass


def _clean(value: Optional[str]) -> Optional[str]:
    # strip surrounding quotes that may be present in .env values
    if value:
        return value.strip('"').strip("'")
    return value


def _init_clients():
    """Initialize Azure Blob clients. Raises descriptive errors if configuration is missing."""
    global _blob_service_client, _container_client
    if _blob_service_client and _container_client:
        return

    load_dotenv()

    conn_str = _clean(os.getenv('AZURE_STORAGE_CONNECTION_STRING'))
    container = _clean(os.getenv('AZURE_CONTAINER_NAME'))

    if not conn_str or not container:
        raise BlobStoreError(
            "Azure storage configuration is missing. Set AZURE_STORAGE_CONNECTION_STRING and AZURE_CONTAINER_NAME."
        )

    try:
        _blob_service_client = BlobServiceClient.from_connection_string(conn_str)
        _container_client = _blob_service_client.get_container_client(container)
    except (AzureError, ValueError) as e:
        raise BlobStoreError(f"Failed to initialize Azure Blob Storage client: {e}") from e


def photo_key(prefix: str, filename: Optional[str]) -> str:
    """Build a unique blob key such as `issues/3f2c...-pothole.jpg`."""
    safe_name = os.path.basename(filename or "photo").replace(" ", "_")
    return f"{prefix}/{uuid.uuid4().hex}-{safe_name}"


class AzureBlobStore:
    """
    Opaque photo store backed by an Azure Blob Storage container.

    Keys are blob names inside the configured container.
    """

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        _init_clients()
        try:
            _container_client.upload_blob(
                name=key,
                data=data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type or "application/octet-stream"),
            )
        except AzureError as e:
            logger.exception("Upload of blob %s failed", key)
            raise BlobStoreError(f"Failed to upload {key}: {e}") from e
        return key

    def get(self, key: str) -> bytes:
        _init_clients()
        try:
            return _container_client.download_blob(key).readall()
        except ResourceNotFoundError as e:
            raise BlobNotFound(f"Blob not found: {key}") from e
        except AzureError as e:
            raise BlobStoreError(f"Failed to download {key}: {e}") from e

    def delete(self, key: str) -> None:
        _init_clients()
        try:
            _container_client.delete_blob(key)
        except ResourceNotFoundError:
            return
        except AzureError:
            logger.exception("Failed to delete blob %s", key)


_default_store = AzureBlobStore()


def get_blob_store():
    """FastAPI dependency returning the configured blob store."""
    return _default_store
