"""Exception hierarchy shared by every Concierge layer.

Store-level failures are logged with context and translated into one of these
before reaching callers. Idempotency conflicts (duplicate message sid, reused
idempotency key) are intended outcomes and never raise.
"""

from __future__ import annotations


class ConciergeError(Exception):
    """Base class for all Concierge errors."""

    code: str = "INTERNAL"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ConciergeError, ValueError):
    """Rejected input (bad source type, missing field, bad status value)."""

    code = "INVALID_INPUT"


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------


class CapacityError(ConciergeError):
    """A configured cap was reached. Deterministic; the caller may act on it."""

    code = "CAPACITY"

    def __init__(self, message: str, *, current: int, limit: int) -> None:
        super().__init__(message)
        self.current = current
        self.limit = limit


class DocumentLimitError(CapacityError):
    code = "DOC_LIMIT_REACHED"


class ChunkLimitError(CapacityError):
    code = "CHUNK_LIMIT_EXCEEDED"


# ---------------------------------------------------------------------------
# Ownership / lookup
# ---------------------------------------------------------------------------


class AccessDeniedError(ConciergeError):
    """Caller is not the recorded owner of the resource."""

    code = "SESSION_ACCESS_DENIED"


class NotFoundError(ConciergeError):
    code = "NOT_FOUND"


class TenantNotFoundError(NotFoundError):
    code = "TENANT_NOT_FOUND"


class DocumentNotFoundError(NotFoundError):
    code = "DOC_NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"


class ReceiptNotFoundError(NotFoundError):
    code = "RECEIPT_NOT_FOUND"


class SessionClosedError(ConciergeError):
    code = "SESSION_CLOSED"


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ProviderError(ConciergeError):
    """Embedding, generation, or message gateway call failed."""

    code = "PROVIDER_FAILED"


class ProviderTimeoutError(ProviderError):
    code = "PROVIDER_TIMEOUT"


class DimensionMismatchError(ConciergeError, ValueError):
    """Vector length does not match the configured embedding dimension."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding has {actual} dimensions; the index expects {expected}."
        )
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class IngestionError(ConciergeError):
    """Ingestion failed after the document was created.

    The document has been marked ``failed`` (best effort) with *code*.
    """

    def __init__(self, message: str, *, document_id: str, code: str) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.code = code


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreError(ConciergeError):
    """Unexpected database failure. The enclosing transaction was rolled back."""

    code = "STORE_FAILED"


class AlreadyExistsError(StoreError):
    """Insert-only write collided with an existing primary key."""

    code = "ALREADY_EXISTS"


class TransactionPhaseError(StoreError):
    """A read was issued after the transaction had started writing."""

    code = "TRANSACTION_PHASE"
