"""Database layer - engine, base classes and immutability listeners."""

from ledger_kernel.db.base import UUID, Base, ExactDecimal, TrackedBase, UUIDString
from ledger_kernel.db.engine import (
    build_engine,
    build_session_factory,
    create_tables,
    drop_tables,
    session_scope,
)

__all__ = [
    "UUID",
    "Base",
    "ExactDecimal",
    "TrackedBase",
    "UUIDString",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "drop_tables",
    "session_scope",
]
