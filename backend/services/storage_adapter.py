"""
Storage Adapter - GridFS-backed object store addressed by path.

Task artifacts live under deterministic paths ({client_id}/{task_id}/...), so a
write to an existing path replaces what was there (upsert) and a task's storage
can be reclaimed by deleting its path prefix.

Buckets:
- task_documents    generated documents
- signed_documents  signed copies uploaded against a template
- additional_files  any other file attached to a task
- template_files    DOCX template sources
"""
import re
import io
import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorGridFSBucket
from database import database

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StoredFileNotFoundError(StorageError):
    pass


class FileMetadata:
    def __init__(
        self,
        file_id: str,
        path: str,
        content_type: str,
        size_bytes: int,
        sha256_hash: str,
        upload_timestamp: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.file_id = file_id
        self.path = path
        self.content_type = content_type
        self.size_bytes = size_bytes
        self.sha256_hash = sha256_hash
        self.upload_timestamp = upload_timestamp
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "path": self.path,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "sha256_hash": self.sha256_hash,
            "upload_timestamp": self.upload_timestamp.isoformat() if self.upload_timestamp else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_gridfs(cls, file_doc: Dict[str, Any]) -> "FileMetadata":
        gridfs_meta = file_doc.get("metadata") or {}
        uploaded = gridfs_meta.get("upload_timestamp")
        return cls(
            file_id=str(file_doc["_id"]),
            path=file_doc["filename"],
            content_type=gridfs_meta.get("content_type", "application/octet-stream"),
            size_bytes=file_doc.get("length", 0),
            sha256_hash=gridfs_meta.get("sha256_hash", ""),
            upload_timestamp=datetime.fromisoformat(uploaded) if uploaded else file_doc.get("uploadDate"),
            metadata=gridfs_meta.get("custom_metadata", {}),
        )


class StorageAdapter(ABC):
    """Path-addressed object store."""

    @abstractmethod
    async def upsert_file(
        self,
        path: str,
        content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileMetadata:
        """Write content at path, replacing any existing file there."""
        pass

    @abstractmethod
    async def download_file(self, path: str) -> tuple[bytes, FileMetadata]:
        pass

    @abstractmethod
    async def delete_file(self, path: str) -> int:
        """Delete every revision stored at path. Returns the number removed."""
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        pass

    @abstractmethod
    async def list_files(self, prefix: Optional[str] = None, limit: int = 100) -> List[FileMetadata]:
        pass


class GridFSStorageAdapter(StorageAdapter):
    def __init__(self, bucket_name: str):
        self.bucket_name = bucket_name
        self._bucket = None

    def _get_bucket(self) -> AsyncIOMotorGridFSBucket:
        if self._bucket is None:
            db = database.get_db()
            self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=self.bucket_name)
        return self._bucket

    def _files(self):
        return database.get_db()[f"{self.bucket_name}.files"]

    def _calculate_hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    async def upsert_file(
        self,
        path: str,
        content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileMetadata:
        """
        Upload a new revision at path, then drop the older revisions.
        Readers always see either the old or the new content, never none.
        """
        if isinstance(content, str):
            content = content.encode("utf-8")
        bucket = self._get_bucket()
        now = datetime.now(timezone.utc)
        sha256_hash = self._calculate_hash(content)

        try:
            file_id = await bucket.upload_from_stream(
                path,
                io.BytesIO(content),
                metadata={
                    "content_type": content_type,
                    "sha256_hash": sha256_hash,
                    "upload_timestamp": now.isoformat(),
                    "custom_metadata": metadata or {},
                },
            )
        except Exception as e:
            raise StorageError(f"Upload failed for {self.bucket_name}/{path}: {e}") from e

        stale = await self._files().find(
            {"filename": path, "_id": {"$ne": file_id}},
            {"_id": 1},
        ).to_list(None)
        for doc in stale:
            try:
                await bucket.delete(doc["_id"])
            except Exception as e:
                logger.warning(f"Could not remove stale revision {doc['_id']} of {path}: {e}")

        logger.info(f"Stored {self.bucket_name}/{path} ({len(content)} bytes)")
        return FileMetadata(
            file_id=str(file_id),
            path=path,
            content_type=content_type,
            size_bytes=len(content),
            sha256_hash=sha256_hash,
            upload_timestamp=now,
            metadata=metadata,
        )

    async def download_file(self, path: str) -> tuple[bytes, FileMetadata]:
        file_doc = await self._files().find_one({"filename": path}, sort=[("uploadDate", -1)])
        if not file_doc:
            raise StoredFileNotFoundError(f"File not found: {self.bucket_name}/{path}")

        stream = io.BytesIO()
        try:
            await self._get_bucket().download_to_stream(file_doc["_id"], stream)
        except Exception as e:
            raise StorageError(f"Download failed for {self.bucket_name}/{path}: {e}") from e
        return stream.getvalue(), FileMetadata.from_gridfs(file_doc)

    async def delete_file(self, path: str) -> int:
        docs = await self._files().find({"filename": path}, {"_id": 1}).to_list(None)
        return await self._delete_ids([d["_id"] for d in docs])

    async def delete_prefix(self, prefix: str) -> int:
        if not prefix:
            raise StorageError("Refusing to delete with an empty prefix")
        docs = await self._files().find(
            {"filename": {"$regex": f"^{re.escape(prefix)}"}},
            {"_id": 1},
        ).to_list(None)
        removed = await self._delete_ids([d["_id"] for d in docs])
        logger.info(f"Reclaimed {removed} file(s) under {self.bucket_name}/{prefix}")
        return removed

    async def _delete_ids(self, ids: List[ObjectId]) -> int:
        bucket = self._get_bucket()
        removed = 0
        for object_id in ids:
            try:
                await bucket.delete(object_id)
                removed += 1
            except Exception as e:
                raise StorageError(f"Delete failed for {self.bucket_name}/{object_id}: {e}") from e
        return removed

    async def list_files(self, prefix: Optional[str] = None, limit: int = 100) -> List[FileMetadata]:
        query = {}
        if prefix:
            query["filename"] = {"$regex": f"^{re.escape(prefix)}"}
        cursor = self._files().find(query).sort("filename", 1).limit(limit)
        return [FileMetadata.from_gridfs(doc) async for doc in cursor]


task_documents_storage = GridFSStorageAdapter("task_documents")
signed_documents_storage = GridFSStorageAdapter("signed_documents")
additional_files_storage = GridFSStorageAdapter("additional_files")
template_files_storage = GridFSStorageAdapter("template_files")

TASK_STORAGES = (task_documents_storage, signed_documents_storage, additional_files_storage)


def task_prefix(client_id: str, task_id: str) -> str:
    return f"{client_id}/{task_id}/"


def generated_document_path(client_id: str, task_id: str, template_id: str, extension: str) -> str:
    return f"{client_id}/{task_id}/{template_id}.{extension}"


def signed_document_path(client_id: str, task_id: str, template_id: str, extension: str) -> str:
    return f"{client_id}/{task_id}/{template_id}/signed-document.{extension}"


def additional_file_path(client_id: str, task_id: str, file_id: str, file_name: str) -> str:
    safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", file_name or "file")
    return f"{client_id}/{task_id}/additional/{file_id}-{safe_name}"


async def reclaim_task_storage(client_id: str, task_id: str) -> Dict[str, int]:
    """Delete everything stored for a task across all task buckets."""
    prefix = task_prefix(client_id, task_id)
    return {storage.bucket_name: await storage.delete_prefix(prefix) for storage in TASK_STORAGES}
