"""
Typed Exception Hierarchy for the Cascade Ledger core.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the parse and reconciliation engines must react to failures
precisely: a dialect mismatch is fatal to a run, a schema violation on one
row is not, a stale working-copy revision means "re-read and retry".  Every
error therefore has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA stored as attributes (not parsed out of the message)

Example:

    try:
        store.commit(plan_id, "tighten date format", expected_revision=4)
    except ConcurrentEditError as e:
        draft = store.get_draft(e.plan_id)   # re-read, then retry
        ...

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerError (base)
    |
    +-- IngestionError
    |   +-- DialectError
    |   +-- SchemaViolation
    |   +-- TransformError
    |   +-- ValidationFailure
    |   +-- MalformedDescriptorError
    |
    +-- PlanError
    |   +-- PlanNotFoundError
    |   +-- PlanVersionNotFoundError
    |   +-- RunNotFoundError
    |   +-- RunNotResumableError
    |
    +-- ProvenanceError
    |   +-- ProvenanceIntegrityError
    |   +-- RawFileNotFoundError
    |
    +-- PostingError
    |   +-- DoubleEntryViolation
    |
    +-- ConcurrencyError
    |   +-- ConcurrentEditError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolation
    |
    +-- ReconciliationError
        +-- SessionInProgressError
        +-- SessionNotFoundError
        +-- DiscrepancyUnresolved
        +-- ReconciliationNonConvergence
        +-- StagedFixNotFoundError
        +-- FixRejectedError
        +-- AssistantResponseError
        +-- AssistantTimeoutError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Ingestion       | DIALECT_ERROR               | File does not match declared dialect
                | SCHEMA_VIOLATION            | Field type / constraint failure
                | TRANSFORM_ERROR             | Evaluator failure, timeout, bad output
                | VALIDATION_FAILURE          | Validation rule failed for a row
                | MALFORMED_DESCRIPTOR        | Plan descriptor cannot be parsed
----------------|-----------------------------|-----------------------------------------
Plan            | PLAN_NOT_FOUND              | Plan id does not exist
                | PLAN_VERSION_NOT_FOUND      | Version id does not exist
                | RUN_NOT_FOUND               | Parse run id does not exist
                | RUN_NOT_RESUMABLE           | Run is not cancelled / commit mode
----------------|-----------------------------|-----------------------------------------
Provenance      | PROVENANCE_INTEGRITY        | Missing or checksum-mismatched source
                | RAW_FILE_NOT_FOUND          | Blob id does not exist
----------------|-----------------------------|-----------------------------------------
Posting         | DOUBLE_ENTRY_VIOLATION      | Debits != credits beyond tolerance
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONCURRENT_EDIT             | Working copy revision changed
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only record
----------------|-----------------------------|-----------------------------------------
Reconciliation  | SESSION_IN_PROGRESS         | Account already has an active session
                | SESSION_NOT_FOUND           | Session id does not exist
                | DISCREPANCY_UNRESOLVED      | Confidence below the apply threshold
                | RECONCILIATION_NON_CONVERGENCE | Max iterations exhausted
                | STAGED_FIX_NOT_FOUND        | Staged fix id does not exist / decided
                | FIX_REJECTED                | Fix failed validation or dry-run
                | ASSISTANT_RESPONSE_INVALID  | Assistant reply fails the response schema
                | ASSISTANT_TIMEOUT           | Assistant exceeded its time ceiling

===============================================================================
PROPAGATION
===============================================================================

Row-level ingestion errors are collected into the run report; they are
raised only by the single-row helpers that produce them.  Structural errors
(unknown plan version, malformed descriptor, undecodable file) abort the
operation that hit them.  Reconciliation never raises for unresolved
discrepancies or non-convergence: those are terminal session states, and
``ReconciliationResult.raise_for_status()`` converts them on request.
"""


class LedgerError(Exception):
    """
    Base exception for all cascade ledger errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "LEDGER_ERROR"


# Ingestion-related exceptions


class IngestionError(LedgerError):
    """Base exception for row extraction, mapping and validation errors."""

    code: str = "INGESTION_ERROR"


class DialectError(IngestionError):
    """Raw file does not match its declared dialect."""

    code: str = "DIALECT_ERROR"

    def __init__(self, reason: str, row_number: int | None = None):
        self.reason = reason
        self.row_number = row_number
        where = f" (row {row_number})" if row_number is not None else ""
        super().__init__(f"Dialect mismatch{where}: {reason}")


class SchemaViolation(IngestionError):
    """A field failed its declared type or constraint."""

    code: str = "SCHEMA_VIOLATION"

    def __init__(self, field: str, reason: str, row_number: int | None = None):
        self.field = field
        self.reason = reason
        self.row_number = row_number
        super().__init__(f"Schema violation on field {field!r}: {reason}")


class TransformError(IngestionError):
    """A transform step failed, timed out, or returned a malformed row."""

    code: str = "TRANSFORM_ERROR"

    def __init__(self, step_name: str, reason: str, row_number: int | None = None):
        self.step_name = step_name
        self.reason = reason
        self.row_number = row_number
        super().__init__(f"Transform step {step_name!r} failed: {reason}")


class ValidationFailure(IngestionError):
    """A validation rule failed for a row."""

    code: str = "VALIDATION_FAILURE"

    def __init__(self, rule_name: str, reason: str, row_number: int | None = None):
        self.rule_name = rule_name
        self.reason = reason
        self.row_number = row_number
        super().__init__(f"Validation rule {rule_name!r} failed: {reason}")


class MalformedDescriptorError(IngestionError):
    """A plan descriptor (dialect, schema, steps, rules) cannot be parsed."""

    code: str = "MALFORMED_DESCRIPTOR"

    def __init__(self, section: str, reason: str):
        self.section = section
        self.reason = reason
        super().__init__(f"Malformed descriptor section {section!r}: {reason}")


# Plan / run lookup exceptions


class PlanError(LedgerError):
    """Base exception for parse plan and parse run errors."""

    code: str = "PLAN_ERROR"


class PlanNotFoundError(PlanError):
    """Parse plan with given ID was not found."""

    code: str = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Parse plan not found: {plan_id}")


class PlanVersionNotFoundError(PlanError):
    """Parse plan version with given ID was not found."""

    code: str = "PLAN_VERSION_NOT_FOUND"

    def __init__(self, version_id: str):
        self.version_id = version_id
        super().__init__(f"Parse plan version not found: {version_id}")


class RunNotFoundError(PlanError):
    """Parse run with given ID was not found."""

    code: str = "RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Parse run not found: {run_id}")


class RunNotResumableError(PlanError):
    """Only cancelled or failed commit-mode runs can be resumed."""

    code: str = "RUN_NOT_RESUMABLE"

    def __init__(self, run_id: str, status: str, mode: str):
        self.run_id = run_id
        self.status = status
        self.mode = mode
        super().__init__(
            f"Parse run {run_id} cannot be resumed (mode={mode}, status={status})"
        )


# Provenance exceptions


class ProvenanceError(LedgerError):
    """Base exception for lineage and raw-file errors."""

    code: str = "PROVENANCE_ERROR"


class ProvenanceIntegrityError(ProvenanceError):
    """
    An entry references a missing or checksum-mismatched source.

    Raised on lineage queries and blob retrieval; never returned as a null.
    """

    code: str = "PROVENANCE_INTEGRITY"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Provenance integrity failure on {entity_type} {entity_id}: {reason}"
        )


class RawFileNotFoundError(ProvenanceError):
    """Raw file with given ID is not in the blob store."""

    code: str = "RAW_FILE_NOT_FOUND"

    def __init__(self, raw_file_id: str):
        self.raw_file_id = raw_file_id
        super().__init__(f"Raw file not found: {raw_file_id}")


# Posting exceptions


class PostingError(LedgerError):
    """Base exception for ledger write errors."""

    code: str = "POSTING_ERROR"


class DoubleEntryViolation(PostingError):
    """Transaction debits do not equal credits beyond tolerance."""

    code: str = "DOUBLE_ENTRY_VIOLATION"

    def __init__(self, debits: str, credits: str, tolerance: str):
        self.debits = debits
        self.credits = credits
        self.tolerance = tolerance
        super().__init__(
            f"Unbalanced transaction: debits={debits}, credits={credits} "
            f"(tolerance {tolerance})"
        )


# Concurrency exceptions


class ConcurrencyError(LedgerError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentEditError(ConcurrencyError):
    """The working copy changed since the caller last read it."""

    code: str = "CONCURRENT_EDIT"

    def __init__(self, plan_id: str, expected_revision: int, actual_revision: int):
        self.plan_id = plan_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        super().__init__(
            f"Working copy of plan {plan_id} is at revision {actual_revision}, "
            f"caller expected {expected_revision}"
        )


# Immutability exceptions


class ImmutabilityError(LedgerError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolation(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Reconciliation exceptions


class ReconciliationError(LedgerError):
    """Base exception for reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"


class SessionInProgressError(ReconciliationError):
    """Only one active reconciliation session per account is allowed."""

    code: str = "SESSION_IN_PROGRESS"

    def __init__(self, account_id: str, active_session_id: str | None = None):
        self.account_id = account_id
        self.active_session_id = active_session_id
        super().__init__(
            f"Account {account_id} already has an active reconciliation session"
            + (f" ({active_session_id})" if active_session_id else "")
        )


class SessionNotFoundError(ReconciliationError):
    """Reconciliation session with given ID was not found."""

    code: str = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Reconciliation session not found: {session_id}")


class DiscrepancyUnresolved(ReconciliationError):
    """Discrepancies remain that no fix was confident enough to resolve."""

    code: str = "DISCREPANCY_UNRESOLVED"

    def __init__(self, account_id: str, remaining: int):
        self.account_id = account_id
        self.remaining = remaining
        super().__init__(
            f"{remaining} discrepancy(ies) on account {account_id} need manual review"
        )


class ReconciliationNonConvergence(ReconciliationError):
    """Maximum iterations exhausted with discrepancies remaining."""

    code: str = "RECONCILIATION_NON_CONVERGENCE"

    def __init__(self, session_id: str, iterations: int, remaining: int):
        self.session_id = session_id
        self.iterations = iterations
        self.remaining = remaining
        super().__init__(
            f"Session {session_id} did not converge after {iterations} "
            f"iteration(s); {remaining} discrepancy(ies) remain"
        )


class StagedFixNotFoundError(ReconciliationError):
    """Staged fix does not exist or was already decided."""

    code: str = "STAGED_FIX_NOT_FOUND"

    def __init__(self, staged_fix_id: str):
        self.staged_fix_id = staged_fix_id
        super().__init__(f"No pending staged fix: {staged_fix_id}")


class FixRejectedError(ReconciliationError):
    """A proposed fix failed target validation or its dry-run."""

    code: str = "FIX_REJECTED"

    def __init__(self, reason: str, fix_index: int | None = None):
        self.reason = reason
        self.fix_index = fix_index
        super().__init__(f"Fix rejected: {reason}")


class AssistantResponseError(ReconciliationError):
    """The Assistant's reply does not match the investigation response schema."""

    code: str = "ASSISTANT_RESPONSE_INVALID"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid assistant response at {path}: {reason}")


class AssistantTimeoutError(ReconciliationError):
    """The Assistant did not answer within its time ceiling."""

    code: str = "ASSISTANT_TIMEOUT"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Assistant did not respond within {timeout_seconds}s")
