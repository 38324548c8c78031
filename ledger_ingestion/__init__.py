"""
ledger_ingestion -- Versioned parse plans and parse runs.

Reads raw files through a dialect, types and transforms each row under a
parse plan version, and hands mapped rows to the ledger materializer with
full lineage.

Architecture:
    ledger_ingestion/ is a top-level package. It may import ledger_kernel,
    ledger_engines and ledger_config. Nothing in kernel/ or engines/
    imports from ingestion.
"""
