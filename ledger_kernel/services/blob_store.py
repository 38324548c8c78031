"""
Raw-file blob store.

The parse engine consumes raw files through the ``BlobStore`` protocol:
``put`` returns an id and checksum, ``get`` returns the bytes after
re-verifying the checksum.  ``DatabaseBlobStore`` keeps the bytes in the
``raw_files`` table so a file and the ledger lines derived from it live in
the same transactional store.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock
from ledger_kernel.exceptions import ProvenanceIntegrityError, RawFileNotFoundError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.raw_file import RawFileModel
from ledger_kernel.services.base import BaseService

logger = get_logger("services.blob_store")


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True)
class StoredBlob:
    """Handle returned by ``BlobStore.put``."""

    id: UUID
    checksum: str
    size_bytes: int
    filename: str


@runtime_checkable
class BlobStore(Protocol):
    def put(self, content: bytes, filename: str, actor_id: UUID) -> StoredBlob:
        ...

    def get(self, blob_id: UUID) -> bytes:
        ...

    def describe(self, blob_id: UUID) -> StoredBlob:
        ...


class DatabaseBlobStore(BaseService):
    """
    Blob store backed by ``RawFileModel``.

    Identical content is stored once: ``put`` of bytes whose checksum is
    already present returns the existing blob.
    """

    def __init__(self, session: Session, clock: Clock):
        super().__init__(session)
        self._clock = clock

    def put(self, content: bytes, filename: str, actor_id: UUID) -> StoredBlob:
        checksum = sha256_hex(content)
        existing = self.session.execute(
            select(RawFileModel).where(RawFileModel.checksum == checksum)
        ).scalars().first()
        if existing is not None:
            logger.info(
                "raw_file_deduplicated",
                extra={"raw_file_id": str(existing.id), "checksum": checksum},
            )
            return _to_blob(existing)

        model = RawFileModel(
            filename=filename,
            content=content,
            checksum=checksum,
            size_bytes=len(content),
            arrived_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self.session.add(model)
        self.session.flush()
        logger.info(
            "raw_file_stored",
            extra={
                "raw_file_id": str(model.id),
                "raw_filename": filename,
                "size_bytes": len(content),
                "checksum": checksum,
            },
        )
        return _to_blob(model)

    def get(self, blob_id: UUID) -> bytes:
        """
        Return the stored bytes, re-verifying the checksum.

        Raises:
            RawFileNotFoundError: No raw file with that id.
            ProvenanceIntegrityError: Stored bytes no longer hash to the
                recorded checksum.
        """
        model = self._load(blob_id)
        actual = sha256_hex(model.content)
        if actual != model.checksum:
            logger.error(
                "raw_file_checksum_mismatch",
                extra={
                    "raw_file_id": str(blob_id),
                    "expected": model.checksum,
                    "actual": actual,
                },
            )
            raise ProvenanceIntegrityError(
                entity_type="RawFile",
                entity_id=str(blob_id),
                reason=f"checksum mismatch: expected {model.checksum}, got {actual}",
            )
        return model.content

    def describe(self, blob_id: UUID) -> StoredBlob:
        return _to_blob(self._load(blob_id))

    def _load(self, blob_id: UUID) -> RawFileModel:
        model = self.session.get(RawFileModel, blob_id)
        if model is None:
            raise RawFileNotFoundError(str(blob_id))
        return model


def _to_blob(model: RawFileModel) -> StoredBlob:
    return StoredBlob(
        id=model.id,
        checksum=model.checksum,
        size_bytes=model.size_bytes,
        filename=model.filename,
    )
