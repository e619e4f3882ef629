"""
Batch orchestration for paginated patient extraction.

Coordinates the flow per page: cancel check → fetch → extract → score and
store (parallel within the page) → persist progress

Pages are processed strictly in cursor order by a single thread. Only the
per-document score-and-store step fans out to a bounded worker pool, and
the page's counters are folded back on the orchestrator thread before the
single progress write that ends each page.
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable

from patient_sync.core.exceptions import (
    ConcurrentProgressError,
    FetchError,
    InvalidBatchStateError,
    ParseError,
    PipelineError,
    ScoringError,
    StorageError,
)
from patient_sync.core.models import (
    AuditStatus,
    BatchStatus,
    DocumentOutcome,
    OperationType,
    PageResult,
    PatientRecord,
    SourceConfig,
    SyncBatch,
)
from patient_sync.core.scoring import QualityScorer
from patient_sync.observability import metrics
from patient_sync.observability.logger import get_logger, log_operation
from patient_sync.utils.validation import validate_batch_id, validate_source_system
from patient_sync.warehouse.audit import AuditLogger
from patient_sync.warehouse.batch_store import BatchStore
from patient_sync.warehouse.quality_metrics import MetricsAggregator
from patient_sync.warehouse.upsert import PatientRecordWriter

from .readers import PageFetcher, RateLimiter, extract, source_record_id

logger = get_logger(__name__)

FINAL_AUDIT_STATUS = {
    BatchStatus.COMPLETED: AuditStatus.SUCCESS,
    BatchStatus.CANCELLED: AuditStatus.INFO,
    BatchStatus.FAILED: AuditStatus.ERROR,
}

FetcherFactory = Callable[..., PageFetcher]


def _fails_batch_quietly(error: Exception) -> bool:
    """Errors that end in a failed, resumable batch rather than an exception."""
    if isinstance(error, (FetchError, ParseError)):
        return True
    return isinstance(error, StorageError) and error.systemic


class BatchOrchestrator:
    """
    Drives SyncBatch runs from start to a terminal status.

    Lifecycle:
        running → completed   next cursor exhausted
        running → failed      fetch/parse retries exhausted, or storage down
        running → cancelled   cancellation flag observed between pages

    A batch left running by a crashed process is resumed in place by calling
    run_to_completion with its id. Failed and cancelled batches are resumed
    by resume_batch, which starts a new batch seeded with their cursor.
    """

    def __init__(
        self,
        batch_store: BatchStore,
        record_writer: PatientRecordWriter,
        audit_logger: AuditLogger,
        metrics_aggregator: MetricsAggregator | None = None,
        scorer: QualityScorer | None = None,
        fetcher_factory: FetcherFactory = PageFetcher,
        source_configs: dict[str, SourceConfig] | None = None,
    ):
        """
        Initialize batch orchestrator.

        Args:
            batch_store: SyncBatch persistence
            record_writer: Patient record upsert writer
            audit_logger: Audit trail writer
            metrics_aggregator: Quality rollup, run at batch completion (optional)
            scorer: Quality scorer (defaults to standard weights)
            fetcher_factory: Called as fetcher_factory(source_config,
                on_retry=..., rate_limiter=...)
            source_configs: Known sources by name, used when running a batch
                without an explicit SourceConfig
        """
        self.batch_store = batch_store
        self.record_writer = record_writer
        self.audit_logger = audit_logger
        self.metrics_aggregator = metrics_aggregator
        self.scorer = scorer or QualityScorer()
        self.fetcher_factory = fetcher_factory
        self.source_configs: dict[str, SourceConfig] = dict(source_configs or {})
        # One limiter per source, shared by every run this orchestrator drives
        self.rate_limiters: dict[str, RateLimiter] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start_batch(self, source_config: SourceConfig, batch_id: str | None = None) -> str:
        """
        Create a running batch positioned at the source's first page.

        Args:
            source_config: Source to extract from
            batch_id: Caller-supplied id (a uuid4 hex is generated when omitted)

        Returns:
            The batch id

        Raises:
            BatchAlreadyRunningError: The source already has a running batch
        """
        source_system = validate_source_system(source_config.source_system)
        batch_id = validate_batch_id(batch_id) if batch_id else uuid.uuid4().hex
        self.source_configs[source_system] = source_config

        batch = SyncBatch(
            batch_id=batch_id,
            source_system=source_system,
            base_endpoint=source_config.base_endpoint,
            page_size=source_config.page_size,
            next_cursor=source_config.first_page_url(),
        )
        return self._create(batch)

    def run_to_completion(
        self,
        batch_id: str,
        source_config: SourceConfig | None = None,
    ) -> SyncBatch:
        """
        Process pages until the batch reaches a terminal status.

        Fetch and parse failures that exhaust their retries, and systemic
        storage failures, mark the batch failed and return it; the cursor
        and page count are preserved for resume. Any other exception also
        fails the batch and is re-raised.

        Args:
            batch_id: A running batch
            source_config: Overrides the registered config for the batch's source

        Returns:
            The batch in its terminal state

        Raises:
            BatchNotFoundError: Unknown batch id
            InvalidBatchStateError: Batch is not running
            ConcurrentProgressError: Another process committed a page of this
                batch first; the batch is left running for that process
        """
        batch = self.batch_store.get(validate_batch_id(batch_id))
        if batch.status is not BatchStatus.RUNNING:
            raise InvalidBatchStateError(batch.batch_id, batch.status.value, "run")

        config = source_config or self._source_config_for(batch)
        fetcher = self.fetcher_factory(
            config,
            on_retry=self._retry_recorder(batch.batch_id),
            rate_limiter=self._rate_limiter_for(config),
        )

        with log_operation(
            "Batch run",
            logger=logger,
            batch_id=batch.batch_id,
            source_system=batch.source_system,
            page=batch.last_processed_page,
        ):
            try:
                with fetcher, metrics.batches_running.labels(batch.source_system).track_inprogress():
                    return self._run_pages(batch, config, fetcher)
            except ConcurrentProgressError as e:
                # The batch belongs to whichever process committed first
                self.audit_logger.log_error(e, "batch", batch_id=batch.batch_id, resource_id=batch.batch_id)
                logger.error(
                    f"Stopping run of batch {batch.batch_id}: {e.message}",
                    extra={"batch_id": batch.batch_id, "page": e.page_number},
                )
                raise
            except Exception as e:
                failed = self._fail(batch.batch_id, e)
                if _fails_batch_quietly(e):
                    return failed
                raise

    def cancel_batch(self, batch_id: str) -> bool:
        """
        Ask a running batch to stop after its current page.

        Returns:
            True if the cancellation flag was set, False if the batch is
            already terminal

        Raises:
            BatchNotFoundError: Unknown batch id
        """
        batch_id = validate_batch_id(batch_id)
        if self.batch_store.request_cancel(batch_id):
            logger.info(f"Cancellation requested for batch {batch_id}", extra={"batch_id": batch_id})
            return True

        batch = self.batch_store.get(batch_id)
        logger.info(
            f"Batch {batch_id} is already {batch.status.value}, nothing to cancel",
            extra={"batch_id": batch_id},
        )
        return False

    def resume_batch(self, batch_id: str, new_batch_id: str | None = None) -> str:
        """
        Start a new batch continuing where a failed or cancelled one stopped.

        The new batch copies the cursor and page count of the old one and
        references it through resumed_from. The old batch stays terminal.

        Args:
            batch_id: A failed or cancelled batch
            new_batch_id: Id for the new batch (generated when omitted)

        Returns:
            The new batch id

        Raises:
            InvalidBatchStateError: The batch is running or completed
            BatchAlreadyRunningError: The source already has a running batch
        """
        previous = self.batch_store.get(validate_batch_id(batch_id))
        if previous.status not in (BatchStatus.FAILED, BatchStatus.CANCELLED):
            raise InvalidBatchStateError(previous.batch_id, previous.status.value, "resume")

        batch = SyncBatch(
            batch_id=validate_batch_id(new_batch_id) if new_batch_id else uuid.uuid4().hex,
            source_system=previous.source_system,
            base_endpoint=previous.base_endpoint,
            page_size=previous.page_size,
            last_processed_page=previous.last_processed_page,
            next_cursor=previous.next_cursor,
            resumed_from=previous.batch_id,
        )
        return self._create(batch)

    def sync(self, source_config: SourceConfig, batch_id: str | None = None) -> SyncBatch:
        """Start a batch for a source and run it to completion."""
        batch_id = self.start_batch(source_config, batch_id)
        return self.run_to_completion(batch_id, source_config)

    # ------------------------------------------------------------------
    # Page loop
    # ------------------------------------------------------------------

    def _run_pages(self, batch: SyncBatch, config: SourceConfig, fetcher: PageFetcher) -> SyncBatch:
        while batch.next_cursor is not None:
            if self.batch_store.is_cancel_requested(batch.batch_id):
                return self._finalize(batch.batch_id, BatchStatus.CANCELLED)

            page_number = batch.last_processed_page + 1
            cursor = batch.next_cursor

            with self.audit_logger.timed(
                OperationType.FETCH,
                "page",
                batch_id=batch.batch_id,
                resource_id=str(page_number),
                metadata={"cursor": cursor},
            ) as fetch_meta:
                raw_page, _ = fetcher.fetch_page(cursor)
                documents, next_cursor = extract(raw_page, config.resource_type, url=cursor)
                fetch_meta["entries"] = len(documents)
                fetch_meta["has_next"] = next_cursor is not None

            page = self._process_page(batch, config, documents, page_number)
            if page.systemic_error is not None:
                raise StorageError(page.systemic_error, systemic=True)

            page.next_cursor = next_cursor
            batch = self.batch_store.record_page_progress(batch.batch_id, page, expected_cursor=cursor)

            logger.info(
                f"Page {page_number}: {page.successful}/{page.total} stored, {page.failed} failed",
                extra={
                    "batch_id": batch.batch_id,
                    "source_system": batch.source_system,
                    "page": page_number,
                    "cursor": next_cursor,
                },
            )

        completed = self._finalize(batch.batch_id, BatchStatus.COMPLETED)
        self._rollup(completed)
        return completed

    def _process_page(
        self,
        batch: SyncBatch,
        config: SourceConfig,
        documents: list[dict[str, Any]],
        page_number: int,
    ) -> PageResult:
        """Score and store a page's documents, then fold their outcomes."""
        outcomes: list[DocumentOutcome] = []
        if documents:
            workers = min(config.max_workers, len(documents))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync-worker") as executor:
                outcomes = list(
                    executor.map(
                        lambda document: self._process_document(document, batch, page_number),
                        documents,
                    )
                )

        page = PageResult(page_number=page_number, total=len(outcomes))
        for outcome in outcomes:
            if outcome.success:
                page.successful += 1
            else:
                page.failed += 1
                if outcome.systemic and page.systemic_error is None:
                    page.systemic_error = outcome.error_message
        return page

    def _process_document(
        self,
        document: dict[str, Any],
        batch: SyncBatch,
        page_number: int,
    ) -> DocumentOutcome:
        source = batch.source_system
        record_id: str | None = None
        try:
            record_id = source_record_id(document)
            quality = self.scorer.score(document)
            record = PatientRecord(
                source_record_id=record_id,
                source_system=source,
                document=document,
                quality_score=quality.score,
                quality_flags=quality.flag_names(),
                batch_id=batch.batch_id,
            )
        except ScoringError as e:
            return self._document_failed(e, batch, page_number, record_id)
        except Exception as e:
            # Any other shape problem is still confined to this document
            error = ScoringError(f"Unusable document ({type(e).__name__}: {e})")
            return self._document_failed(error, batch, page_number, record_id)

        try:
            result = self.record_writer.upsert(record)
        except StorageError as e:
            return self._document_failed(e, batch, page_number, record_id, score=quality.score)

        metrics.increment_counter(
            metrics.records_processed_total, source_system=source, status="success"
        )
        metrics.observe_histogram(metrics.quality_score, quality.score, source_system=source)
        if quality.is_test_data:
            metrics.increment_counter(metrics.test_data_flagged_total, source_system=source)

        return DocumentOutcome(
            source_record_id=record_id,
            success=True,
            score=quality.score,
            upsert_outcome=result.outcome,
        )

    def _document_failed(
        self,
        error: ScoringError | StorageError,
        batch: SyncBatch,
        page_number: int,
        record_id: str | None,
        score: float | None = None,
    ) -> DocumentOutcome:
        """Count, audit and log one document that could not be stored."""
        metrics.increment_counter(
            metrics.records_processed_total, source_system=batch.source_system, status="failed"
        )
        self.audit_logger.log_error(
            error,
            "patient",
            batch_id=batch.batch_id,
            resource_id=record_id,
            metadata={"page": page_number},
        )
        logger.warning(
            f"Document {record_id or '<no id>'} not stored: {error.message}",
            extra={"batch_id": batch.batch_id, "page": page_number, "error_type": type(error).__name__},
        )
        systemic = isinstance(error, StorageError) and error.systemic
        return DocumentOutcome(
            source_record_id=record_id,
            success=False,
            score=score,
            error_type=type(error).__name__,
            error_message=error.message,
            systemic=systemic,
        )

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _create(self, batch: SyncBatch) -> str:
        try:
            created = self.batch_store.create(batch)
        except PipelineError as e:
            self.audit_logger.log_error(e, "batch", batch_id=batch.batch_id, resource_id=batch.batch_id)
            raise

        self.audit_logger.log_event(
            OperationType.BATCH_START,
            "batch",
            AuditStatus.INFO,
            batch_id=created.batch_id,
            resource_id=created.batch_id,
            metadata={
                "source_system": created.source_system,
                "cursor": created.next_cursor,
                "last_processed_page": created.last_processed_page,
                "resumed_from": created.resumed_from,
            },
        )
        logger.info(
            f"Started batch {created.batch_id} for {created.source_system}",
            extra={
                "batch_id": created.batch_id,
                "source_system": created.source_system,
                "cursor": created.next_cursor,
            },
        )
        return created.batch_id

    def _finalize(
        self,
        batch_id: str,
        status: BatchStatus,
        error_message: str | None = None,
    ) -> SyncBatch:
        batch = self.batch_store.finalize(batch_id, status, error_message)

        duration = 0.0
        if batch.ended_at is not None:
            duration = (batch.ended_at - batch.started_at).total_seconds()
        metrics.record_batch_finalized(batch.source_system, status.value, duration)

        self.audit_logger.log_event(
            OperationType.BATCH_END,
            "batch",
            FINAL_AUDIT_STATUS[status],
            batch_id=batch_id,
            resource_id=batch_id,
            duration_ms=duration * 1000,
            metadata={
                "status": status.value,
                "total_records": batch.total_records,
                "successful_records": batch.successful_records,
                "failed_records": batch.failed_records,
                "last_processed_page": batch.last_processed_page,
                "cursor": batch.next_cursor,
            },
        )
        logger.info(
            f"Batch {batch_id} {status.value}: {batch.successful_records}/{batch.total_records} stored",
            extra={"batch_id": batch_id, "source_system": batch.source_system},
        )
        return batch

    def _fail(self, batch_id: str, error: Exception) -> SyncBatch:
        self.audit_logger.log_error(error, "batch", batch_id=batch_id, resource_id=batch_id)
        message = error.message if isinstance(error, PipelineError) else f"{type(error).__name__}: {error}"
        logger.error(f"Batch {batch_id} failed: {message}", extra={"batch_id": batch_id})

        try:
            return self._finalize(batch_id, BatchStatus.FAILED, message)
        except InvalidBatchStateError as e:
            logger.warning(
                f"Batch {batch_id} was finalized elsewhere ({e.status}), keeping that status",
                extra={"batch_id": batch_id},
            )
            return self.batch_store.get(batch_id)

    def _rollup(self, batch: SyncBatch) -> None:
        """
        Refresh the quality aggregates for every day the batch wrote records
        on, and for earlier days whose records this batch re-processed.
        """
        if self.metrics_aggregator is None:
            return

        today = datetime.now(timezone.utc).date()
        try:
            periods = set(self.metrics_aggregator.periods_for_batch(batch.batch_id))
            periods.update(self.metrics_aggregator.stale_periods(batch.source_system))
            periods.add(today)
            for period in sorted(periods):
                self.metrics_aggregator.rollup(period, batch.source_system)
        except StorageError as e:
            self.audit_logger.log_error(e, "quality_metrics", batch_id=batch.batch_id)
            logger.error(
                f"Quality rollup after batch {batch.batch_id} failed: {e.message}",
                extra={"batch_id": batch.batch_id, "source_system": batch.source_system},
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _source_config_for(self, batch: SyncBatch) -> SourceConfig:
        registered = self.source_configs.get(batch.source_system)
        if registered is not None:
            return registered
        return SourceConfig(
            source_system=batch.source_system,
            base_endpoint=batch.base_endpoint,
            page_size=batch.page_size,
        )

    def _rate_limiter_for(self, config: SourceConfig) -> RateLimiter:
        limiter = self.rate_limiters.get(config.source_system)
        if limiter is None:
            limiter = RateLimiter(config.min_request_interval)
            self.rate_limiters[config.source_system] = limiter
        else:
            limiter.min_interval = config.min_request_interval
        return limiter

    def _retry_recorder(self, batch_id: str) -> Callable[[int, PipelineError, float], None]:
        def record_retry(attempt: int, error: PipelineError, delay: float) -> None:
            self.audit_logger.log_event(
                OperationType.RETRY,
                "page",
                AuditStatus.WARNING,
                batch_id=batch_id,
                error_details=error.to_dict(),
                metadata={"attempt": attempt, "delay_seconds": delay},
            )

        return record_retry
