"""
On-demand trigger for patient sync batches.

Usage:
    patient-sync run --source <name> --config <sources.yaml> [options]
    patient-sync run --source <name> --endpoint <url> [options]
    patient-sync resume --batch-id <id> [--config <sources.yaml>]
    patient-sync cancel --batch-id <id>
    patient-sync status --batch-id <id>
"""

import argparse
import sys

from patient_sync.batch.orchestrator import BatchOrchestrator
from patient_sync.core.config import PipelineSettings, SourceConfigLoader
from patient_sync.core.exceptions import PipelineError
from patient_sync.core.models import BatchStatus, SourceConfig, SyncBatch
from patient_sync.observability import metrics
from patient_sync.observability.logger import get_logger
from patient_sync.utils.validation import validate_endpoint
from patient_sync.warehouse import (
    AuditLogger,
    BatchStore,
    DatabaseConnectionPool,
    MetricsAggregator,
    PatientRecordWriter,
)

from .common import add_db_arguments, build_pool, format_timestamp, load_settings

logger = get_logger(__name__)


def build_orchestrator(
    pool: DatabaseConnectionPool,
    source_configs: dict[str, SourceConfig] | None = None,
) -> BatchOrchestrator:
    """Wire an orchestrator to the stores backed by one pool."""
    audit_logger = AuditLogger(pool)
    return BatchOrchestrator(
        batch_store=BatchStore(pool),
        record_writer=PatientRecordWriter(pool, audit_logger),
        audit_logger=audit_logger,
        metrics_aggregator=MetricsAggregator(pool),
        source_configs=source_configs,
    )


def resolve_source(args: argparse.Namespace, settings: PipelineSettings) -> SourceConfig:
    """
    Build the SourceConfig for `run` from a config file or an endpoint.

    Raises:
        ValueError: If neither --config nor --endpoint is usable
    """
    if args.config:
        source = SourceConfigLoader(args.config, settings).load_source(args.source)
    elif args.endpoint:
        source = SourceConfig(
            source_system=args.source,
            base_endpoint=validate_endpoint(args.endpoint),
            **settings.source_defaults(),
        )
    else:
        raise ValueError("Either --config or --endpoint is required")

    if args.page_size is not None:
        source = source.model_copy(update={"page_size": args.page_size})
    return source


def print_batch(batch: SyncBatch) -> None:
    print(f"\n{'=' * 60}")
    print(f"BATCH {batch.batch_id}")
    print(f"{'=' * 60}")
    print(f"  Source:            {batch.source_system}")
    print(f"  Endpoint:          {batch.base_endpoint}")
    print(f"  Status:            {batch.status.value}")
    print(f"  Started:           {format_timestamp(batch.started_at)}")
    print(f"  Ended:             {format_timestamp(batch.ended_at)}")
    print(f"  Pages processed:   {batch.last_processed_page}")
    print(f"  Records total:     {batch.total_records}")
    print(f"  Records stored:    {batch.successful_records}")
    print(f"  Records failed:    {batch.failed_records}")
    if batch.next_cursor:
        print(f"  Next cursor:       {batch.next_cursor}")
    if batch.resumed_from:
        print(f"  Resumed from:      {batch.resumed_from}")
    if batch.cancel_requested and not batch.is_terminal:
        print("  Cancellation:      requested")
    if batch.error_message:
        print(f"  Error:             {batch.error_message}")
    print(f"{'=' * 60}\n")


def exit_code_for(batch: SyncBatch) -> int:
    return 1 if batch.status is BatchStatus.FAILED else 0


def run_command(args: argparse.Namespace) -> int:
    """Start a batch for one source and run it to completion."""
    settings = load_settings(args)
    source = resolve_source(args, settings)

    if args.metrics_port or settings.metrics_port:
        metrics.start_metrics_server(args.metrics_port or settings.metrics_port)

    with build_pool(settings) as pool:
        orchestrator = build_orchestrator(pool, {source.source_system: source})
        batch = orchestrator.sync(source, batch_id=args.batch_id)

    print_batch(batch)
    return exit_code_for(batch)


def resume_command(args: argparse.Namespace) -> int:
    """
    Continue a batch.

    A running batch (left behind by a crashed process) is resumed in place;
    a failed or cancelled one is continued by a new batch.
    """
    settings = load_settings(args)
    source_configs = SourceConfigLoader(args.config, settings).load_sources() if args.config else None

    with build_pool(settings) as pool:
        orchestrator = build_orchestrator(pool, source_configs)
        previous = orchestrator.batch_store.get(args.batch_id)
        if previous.status is BatchStatus.RUNNING:
            batch_id = previous.batch_id
        else:
            batch_id = orchestrator.resume_batch(previous.batch_id, new_batch_id=args.new_batch_id)
            print(f"Resuming {previous.batch_id} as new batch {batch_id}")
        batch = orchestrator.run_to_completion(batch_id)

    print_batch(batch)
    return exit_code_for(batch)


def cancel_command(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    with build_pool(settings) as pool:
        flagged = build_orchestrator(pool).cancel_batch(args.batch_id)

    if flagged:
        print(f"Cancellation requested for batch {args.batch_id}; it stops after its current page")
        return 0
    print(f"Batch {args.batch_id} is not running")
    return 1


def status_command(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    with build_pool(settings) as pool:
        batch = BatchStore(pool).get(args.batch_id)
    print_batch(batch)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="patient-sync",
        description="Incremental patient record sync from clinical APIs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync a source defined in a config file
  patient-sync run --source hapi_fhir_r4 --config config/sources.yaml

  # Sync an ad-hoc endpoint with 100 entries per page
  patient-sync run --source hapi_fhir_r4 --endpoint https://hapi.fhir.org/baseR4 --page-size 100

  # Continue a failed batch from its last recorded page
  patient-sync resume --batch-id 9f1c2a7e4b6d4e0f8a3b5c7d9e1f2a3b --config config/sources.yaml
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start and run a batch")
    run_parser.add_argument("--source", required=True, help="Source system name")
    run_parser.add_argument("--config", help="Path to sources YAML file")
    run_parser.add_argument("--endpoint", help="Base endpoint URL (instead of --config)")
    run_parser.add_argument("--page-size", type=int, help="Entries per page (default: 50)")
    run_parser.add_argument("--batch-id", help="Batch id (default: generated)")
    run_parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    add_db_arguments(run_parser)

    resume_parser = subparsers.add_parser("resume", help="Resume a failed, cancelled or orphaned batch")
    resume_parser.add_argument("--batch-id", required=True, help="Batch to resume")
    resume_parser.add_argument("--new-batch-id", help="Id for the continuation batch (default: generated)")
    resume_parser.add_argument("--config", help="Path to sources YAML file")
    add_db_arguments(resume_parser)

    cancel_parser = subparsers.add_parser("cancel", help="Request cancellation of a running batch")
    cancel_parser.add_argument("--batch-id", required=True, help="Batch to cancel")
    add_db_arguments(cancel_parser)

    status_parser = subparsers.add_parser("status", help="Show a batch's progress")
    status_parser.add_argument("--batch-id", required=True, help="Batch to show")
    add_db_arguments(status_parser)

    return parser


COMMANDS = {
    "run": run_command,
    "resume": resume_command,
    "cancel": cancel_command,
    "status": status_command,
}


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return COMMANDS[args.command](args)
    except (PipelineError, ValueError, KeyError, FileNotFoundError) as e:
        message = e.message if isinstance(e, PipelineError) else str(e)
        logger.error(f"{args.command} failed: {message}")
        print(f"\nError: {message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
