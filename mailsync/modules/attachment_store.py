"""
Attachment Store Module
File-system backed, content-addressable attachment storage

Blobs are addressed by the SHA-256 of their bytes and laid out as
``<base>/<h[0:2]>/<h[2:4]>/<hash><ext>``. Storing identical bytes twice,
whatever the display name or content type, returns the same path and hash
and only writes once.

PATTERN RECOGNITION: The hash -> blob index is a single owned table. The
"check existing, else write" sequence runs under a striped per-hash lock,
so two concurrent stores of the same content cannot both decide to write.
Writes land in a temp file that is renamed into place, which means a blob
path never points at a half-written file.
"""

import asyncio
import hashlib
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from .email_data import AttachmentBlob, AttachmentStoreResult
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import is_within_directory, safe_extension


HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")
LOCK_STRIPES = 64
TEMP_SUFFIX = ".partial"


class AttachmentStore:
    """Content-addressable attachment store"""

    def __init__(self, base_path: str):
        """
        Initialize the store, creating the directory and indexing blobs
        already on disk

        Args:
            base_path: Root directory for blobs
        """
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger("AttachmentStore")

        self._index: Dict[str, AttachmentBlob] = {}
        self._by_path: Dict[str, str] = {}
        self._index_lock = threading.Lock()
        self._stripes: List[asyncio.Lock] = [asyncio.Lock() for _ in range(LOCK_STRIPES)]

        self._rebuild_index()

    def _rebuild_index(self) -> None:
        """Index existing blobs and drop leftovers from interrupted writes"""
        for path in self.base_path.rglob("*"):
            if not path.is_file():
                continue
            if path.name.endswith(TEMP_SUFFIX):
                self.logger.info(f"Removing incomplete blob {path.name}")
                path.unlink(missing_ok=True)
                continue
            content_hash = path.name.split(".", 1)[0]
            if not HASH_PATTERN.match(content_hash):
                continue
            self._add_to_index(AttachmentBlob(
                content_hash=content_hash,
                storage_path=str(path),
                size=path.stat().st_size,
            ))

        if self._index:
            self.logger.info(
                f"Indexed {len(self._index)} existing attachment blob(s) in {self.base_path}"
            )

    def _add_to_index(self, blob: AttachmentBlob) -> None:
        with self._index_lock:
            self._index[blob.content_hash] = blob
            self._by_path[blob.storage_path] = blob.content_hash

    def _remove_from_index(self, storage_path: str) -> Optional[AttachmentBlob]:
        with self._index_lock:
            content_hash = self._by_path.pop(storage_path, None)
            if content_hash is None:
                return None
            return self._index.pop(content_hash, None)

    def _stripe_for(self, content_hash: str) -> asyncio.Lock:
        return self._stripes[int(content_hash[:4], 16) % LOCK_STRIPES]

    @staticmethod
    def compute_hash(data: bytes) -> str:
        """Lowercase hex SHA-256 of the full payload"""
        return hashlib.sha256(data).hexdigest()

    def build_path(self, content_hash: str, display_name: str) -> Path:
        """Storage path for a hash, keeping the display name's extension"""
        directory = self.base_path / content_hash[:2] / content_hash[2:4]
        return directory / f"{content_hash}{safe_extension(display_name)}"

    async def store(
        self,
        display_name: str,
        content_type: str,
        data: bytes,
    ) -> AttachmentStoreResult:
        """
        Store a payload, deduplicating by content hash

        Args:
            display_name: Original filename (only its extension is used)
            content_type: MIME type of the payload
            data: Payload bytes

        Returns:
            AttachmentStoreResult with is_new=False when the content was
            already stored

        Raises:
            ValueError: If data is None/empty, or display_name/content_type
                is None
            OSError: If the blob cannot be written
        """
        if data is None:
            raise ValueError("Attachment payload is required")
        if len(data) == 0:
            raise ValueError("Attachment payload cannot be empty")
        if display_name is None:
            raise ValueError("Attachment display name is required")
        if content_type is None:
            raise ValueError("Attachment content type is required")

        content_hash = self.compute_hash(data)
        safe_name = sanitize_for_logging(display_name)

        async with self._stripe_for(content_hash):
            existing = self._index.get(content_hash)
            if existing is not None:
                if Path(existing.storage_path).is_file():
                    self.logger.debug(f"Reused attachment {safe_name} from {existing.storage_path}")
                    return AttachmentStoreResult(existing.storage_path, content_hash, False)
                self.logger.warning(
                    f"Indexed attachment {existing.storage_path} is missing on disk, rewriting"
                )
                self._remove_from_index(existing.storage_path)

            path = self.build_path(content_hash, display_name)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, _write_atomically, path, data)

            blob = AttachmentBlob(
                content_hash=content_hash,
                storage_path=str(path),
                size=len(data),
            )
            self._add_to_index(blob)

        self.logger.debug(f"Stored attachment {safe_name} ({content_type}) -> {path}")
        return AttachmentStoreResult(blob.storage_path, content_hash, True)

    def _resolve_store_path(self, storage_path: str) -> Path:
        if storage_path is None or not str(storage_path).strip():
            raise ValueError("Storage path must not be empty")
        path = Path(storage_path).expanduser()
        if not is_within_directory(path, self.base_path):
            raise ValueError(
                f"Path {sanitize_for_logging(str(storage_path))} is outside the attachment store"
            )
        return path.resolve()

    async def open_read(self, storage_path: str) -> BinaryIO:
        """
        Open a stored blob for reading

        Returns:
            Binary file object; the caller closes it

        Raises:
            ValueError: If storage_path is empty or outside the store
            FileNotFoundError: If no blob exists at storage_path
        """
        path = self._resolve_store_path(storage_path)
        if not path.is_file():
            raise FileNotFoundError(f"Attachment not found: {storage_path}")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, open, path, "rb")

    async def delete(self, storage_path: str) -> None:
        """
        Delete a blob; a missing path is a no-op

        Raises:
            ValueError: If storage_path is empty or outside the store
        """
        path = self._resolve_store_path(storage_path)
        content_hash = path.name.split(".", 1)[0]
        if HASH_PATTERN.match(content_hash):
            # Serialized with store() of the same content
            async with self._stripe_for(content_hash):
                await self._delete_path(path)
        else:
            await self._delete_path(path)

    async def _delete_path(self, path: Path) -> None:
        blob = self._remove_from_index(str(path))
        loop = asyncio.get_running_loop()
        removed = await loop.run_in_executor(None, _unlink_if_exists, path)
        if removed:
            self.logger.debug(f"Deleted attachment {path}")
        elif blob is not None:
            self.logger.warning(f"Indexed attachment {path} was already missing on disk")

    async def total_size(self) -> int:
        """Sum of the byte lengths of every resident blob"""
        with self._index_lock:
            return sum(blob.size for blob in self._index.values())

    def get(self, content_hash: str) -> Optional[AttachmentBlob]:
        """Look up a blob by content hash"""
        with self._index_lock:
            return self._index.get(content_hash.lower())

    @property
    def blob_count(self) -> int:
        with self._index_lock:
            return len(self._index)


def _write_atomically(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=TEMP_SUFFIX)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _unlink_if_exists(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
