"""Kernel services (flush-only writers)."""

from ledger_kernel.services.blob_store import BlobStore, DatabaseBlobStore, StoredBlob

__all__ = ["BlobStore", "DatabaseBlobStore", "StoredBlob"]
