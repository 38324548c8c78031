"""
Ledger Kernel

The lowest layer of the cascade ledger core:
- Typed exceptions and structured logging
- Injectable clock and exact-decimal amount helpers
- Append-only ORM models for raw files, source rows, plan versions,
  ledger transactions, checkpoints and the reconciliation audit trail
- Read-only selectors for lineage and audit queries
"""

__version__ = "0.1.0"
