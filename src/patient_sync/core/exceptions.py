"""
Exception taxonomy for the patient sync pipeline.

Document-level errors (ScoringError, WriteConflictError, non-systemic
StorageError) are contained by the orchestrator: the document is counted as
failed and processing continues. Page-level errors (FetchError, ParseError)
that survive the retry budget fail the batch with its cursor preserved.
"""

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Structured form used for audit error_details."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            **self.details,
        }


class FetchError(PipelineError):
    """Network, timeout or HTTP failure talking to the clinical API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str | None = None,
        retryable: bool = True,
        attempts: int = 0,
    ):
        self.status_code = status_code
        self.url = url
        self.retryable = retryable
        self.attempts = attempts
        super().__init__(
            message,
            {"status_code": status_code, "url": url, "attempts": attempts},
        )


class ParseError(PipelineError):
    """Fetched page is not a well-formed page container."""

    def __init__(self, message: str, url: str | None = None, attempts: int = 0):
        self.url = url
        self.attempts = attempts
        super().__init__(message, {"url": url, "attempts": attempts})


class ScoringError(PipelineError):
    """Document is malformed and cannot be scored or keyed."""

    def __init__(self, message: str, field_name: str | None = None):
        self.field_name = field_name
        super().__init__(message, {"field_name": field_name})


class StorageError(PipelineError):
    """
    Persistence failure.

    systemic=True means the store itself is unavailable (lost connection,
    pool exhausted), which fails the whole batch instead of one document.
    """

    def __init__(self, message: str, systemic: bool = False):
        self.systemic = systemic
        super().__init__(message, {"systemic": systemic})


class WriteConflictError(StorageError):
    """Concurrent writers collided on the same natural key twice in a row."""

    def __init__(self, source_record_id: str, source_system: str, message: str):
        self.source_record_id = source_record_id
        self.source_system = source_system
        super().__init__(message, systemic=False)
        self.details.update({
            "source_record_id": source_record_id,
            "source_system": source_system,
        })


class BatchNotFoundError(PipelineError):
    """No SyncBatch exists for the given batch id."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}", {"batch_id": batch_id})


class BatchAlreadyRunningError(PipelineError):
    """Another batch is already running for this source system."""

    def __init__(self, source_system: str):
        self.source_system = source_system
        super().__init__(
            f"A batch is already running for source system '{source_system}'",
            {"source_system": source_system},
        )


class InvalidBatchStateError(PipelineError):
    """Requested operation is not allowed in the batch's current status."""

    def __init__(self, batch_id: str, status: str, operation: str):
        self.batch_id = batch_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} batch {batch_id} in status '{status}'",
            {"batch_id": batch_id, "status": status, "operation": operation},
        )


class ConcurrentProgressError(PipelineError):
    """
    The batch moved past the page this process was working on.

    Raised when a progress write finds the batch no longer at the page and
    cursor the page started from, which means another orchestrator is
    driving the same batch.
    """

    def __init__(self, batch_id: str, page_number: int, current_page: int):
        self.batch_id = batch_id
        self.page_number = page_number
        self.current_page = current_page
        super().__init__(
            f"Batch {batch_id} advanced to page {current_page} while page {page_number} "
            f"was being processed elsewhere",
            {"batch_id": batch_id, "page_number": page_number, "current_page": current_page},
        )
