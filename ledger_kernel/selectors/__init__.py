"""Read-only selectors for ledger, lineage and audit queries."""

from ledger_kernel.selectors.audit_selector import AuditSelector
from ledger_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["AuditSelector", "LedgerSelector"]
