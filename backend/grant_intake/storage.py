"""Azure Blob Storage integration for grant application uploads.

Files are addressed by an opaque id generated at intake time and written
as they stream in: chunks are staged as uncommitted blocks and the block
list is committed only once the whole file has arrived.  Cancelling a
write before the commit therefore never produces a readable blob; Azure
garbage-collects the orphaned uncommitted blocks on its own.

Usage::

    from grant_intake.storage import get_blob_store

    store = get_blob_store()
    size = await store.write(file_id, chunks, content_type="application/pdf")
"""

import logging
import os
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Protocol

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobBlock, ContentSettings
from azure.storage.blob.aio import BlobServiceClient
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CONTAINER_NAME = os.getenv("GRANT_UPLOADS_CONTAINER", "grant-uploads")
BLOCK_SIZE_BYTES = 1024 * 1024  # 1 MB staged per block


@dataclass
class StoredBlob:
    """An open, streamable blob. ``chunks`` can be iterated once."""

    file_id: str
    content_type: str
    size: Optional[int]
    chunks: AsyncIterator[bytes]
    metadata: dict[str, str] = field(default_factory=dict)


class BlobStore(Protocol):
    """Streaming binary storage keyed by generated ids."""

    async def write(
        self,
        file_id: str,
        chunks: AsyncIterator[bytes],
        *,
        content_type: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> int:
        """Consume ``chunks`` into a new blob and return its size in bytes."""
        ...

    async def open(self, file_id: str) -> Optional[StoredBlob]:
        """Open a blob for streaming reads, or ``None`` if it does not exist."""
        ...

    async def delete(self, file_id: str) -> None:
        """Delete a blob. Deleting a missing blob is a no-op."""
        ...


def _require_connection(connection_string: str | None) -> str:
    if not connection_string:
        raise RuntimeError(
            "AZURE_STORAGE_CONNECTION_STRING is not set. "
            "Grant uploads require Azure Blob Storage configuration."
        )
    return connection_string


class AzureBlobStore:
    """Async wrapper around Azure Blob Storage for grant uploads."""

    def __init__(
        self,
        connection_string: str | None = None,
        container: str = CONTAINER_NAME,
    ) -> None:
        self.connection_string = connection_string or os.getenv(
            "AZURE_STORAGE_CONNECTION_STRING"
        )
        self.container = container

        if not self.connection_string:
            logger.warning(
                "AZURE_STORAGE_CONNECTION_STRING not set; "
                "grant uploads will fail at call time"
            )

    @property
    def configured(self) -> bool:
        return bool(self.connection_string)

    def _client(self) -> BlobServiceClient:
        return BlobServiceClient.from_connection_string(
            _require_connection(self.connection_string)
        )

    async def write(
        self,
        file_id: str,
        chunks: AsyncIterator[bytes],
        *,
        content_type: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> int:
        """Stage each incoming chunk as a block, then commit the block list."""
        async with self._client() as client:
            blob_client = client.get_blob_client(container=self.container, blob=file_id)
            block_ids: list[str] = []
            buffer = bytearray()
            size = 0

            async def stage(data: bytes) -> None:
                block_id = f"{len(block_ids):08d}"
                await blob_client.stage_block(block_id=block_id, data=data)
                block_ids.append(block_id)

            async for chunk in chunks:
                size += len(chunk)
                buffer.extend(chunk)
                if len(buffer) >= BLOCK_SIZE_BYTES:
                    await stage(bytes(buffer))
                    buffer.clear()
            if buffer:
                await stage(bytes(buffer))

            await blob_client.commit_block_list(
                [BlobBlock(block_id=b) for b in block_ids],
                content_settings=ContentSettings(content_type=content_type),
                metadata=metadata,
            )
        logger.info("Stored blob %s (%d bytes)", file_id, size)
        return size

    async def open(self, file_id: str) -> Optional[StoredBlob]:
        client = self._client()
        blob_client = client.get_blob_client(container=self.container, blob=file_id)
        try:
            downloader = await blob_client.download_blob()
        except ResourceNotFoundError:
            await client.close()
            return None
        except Exception:
            await client.close()
            raise

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in downloader.chunks():
                    yield chunk
            finally:
                await client.close()

        settings = downloader.properties.content_settings
        return StoredBlob(
            file_id=file_id,
            content_type=(settings.content_type if settings else None)
            or "application/octet-stream",
            size=downloader.size,
            chunks=_chunks(),
            metadata=dict(downloader.properties.metadata or {}),
        )

    async def delete(self, file_id: str) -> None:
        async with self._client() as client:
            blob_client = client.get_blob_client(container=self.container, blob=file_id)
            try:
                await blob_client.delete_blob(delete_snapshots="include")
            except ResourceNotFoundError:
                logger.debug("Blob %s already absent", file_id)
                return
        logger.info("Deleted blob: %s", file_id)


# Module-level singleton
_blob_store: AzureBlobStore | None = None


def get_blob_store() -> AzureBlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = AzureBlobStore()
    return _blob_store
