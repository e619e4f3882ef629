"""
Admin CLI for the patient sync store.

Usage:
    patient-sync-admin init-db
    patient-sync-admin batches [--source <name>] [--status <status>] [--limit N]
    patient-sync-admin quality-trend --source <name> [--days N]
    patient-sync-admin audit-counts [--hours N]
    patient-sync-admin audit-trail --batch-id <id> [--limit N]
    patient-sync-admin rollup --source <name> [--date YYYY-MM-DD]
"""

import argparse
import sys
from datetime import date, datetime, timezone

from patient_sync.core.exceptions import PipelineError
from patient_sync.core.models import BatchStatus
from patient_sync.observability.logger import get_logger
from patient_sync.utils.validation import validate_limit, validate_source_system
from patient_sync.warehouse import AuditLogger, BatchStore, MetricsAggregator, SchemaManager

from .common import add_db_arguments, build_pool, format_timestamp, load_settings

logger = get_logger(__name__)


def init_db_command(args: argparse.Namespace) -> int:
    """Create tables and indexes (safe to re-run)."""
    with build_pool(load_settings(args)) as pool:
        manager = SchemaManager(pool)
        manager.create_tables()
        tables = manager.existing_tables()

    print(f"Schema ready: {', '.join(tables)}")
    return 0


def batches_command(args: argparse.Namespace) -> int:
    """Batch counts by status, followed by the most recent batches."""
    source = validate_source_system(args.source) if args.source else None
    status = BatchStatus(args.status) if args.status else None

    with build_pool(load_settings(args)) as pool:
        store = BatchStore(pool)
        counts = store.count_by_status(source)
        batches = store.list_batches(status=status, source_system=source, limit=validate_limit(args.limit))

    print(f"\n{'=' * 60}")
    print("BATCHES BY STATUS")
    if source:
        print(f"Source: {source}")
    print(f"{'=' * 60}\n")
    for batch_status in BatchStatus:
        print(f"  {batch_status.value:<12} {counts.get(batch_status.value, 0):>8}")

    if batches:
        print(f"\n{'Batch':<34} {'Source':<18} {'Status':<10} {'Pages':>5} {'Stored':>8} {'Failed':>7}  Started")
        print(f"{'-' * 110}")
        for batch in batches:
            print(
                f"{batch.batch_id:<34} {batch.source_system:<18} {batch.status.value:<10} "
                f"{batch.last_processed_page:>5} {batch.successful_records:>8} "
                f"{batch.failed_records:>7}  {format_timestamp(batch.started_at)}"
            )
    print()
    return 0


def quality_trend_command(args: argparse.Namespace) -> int:
    """Daily quality aggregates for one source."""
    source = validate_source_system(args.source)
    with build_pool(load_settings(args)) as pool:
        trend = MetricsAggregator(pool).quality_trend(source, days=args.days)

    if not trend:
        print(f"\nNo quality metrics for {source} in the last {args.days} days")
        return 0

    print(f"\n{'=' * 80}")
    print(f"QUALITY TREND: {source} (last {args.days} days)")
    print(f"{'=' * 80}\n")
    print(f"{'Period':<12} {'Records':>8} {'Avg':>7} {'High':>6} {'Medium':>7} {'Low':>6} {'Errors':>7} {'Warnings':>9}")
    print(f"{'-' * 80}")
    for row in trend:
        average = f"{row.average_quality_score:.4f}" if row.average_quality_score is not None else "-"
        print(
            f"{row.period.isoformat():<12} {row.total_records:>8} {average:>7} "
            f"{row.high_quality_count:>6} {row.medium_quality_count:>7} {row.low_quality_count:>6} "
            f"{row.validation_errors:>7} {row.validation_warnings:>9}"
        )
    print()
    return 0


def audit_counts_command(args: argparse.Namespace) -> int:
    """Audit entries by operation type over a recent window."""
    with build_pool(load_settings(args)) as pool:
        counts = AuditLogger(pool).count_by_operation(hours=args.hours)

    print(f"\nAudit entries in the last {args.hours}h:")
    if not counts:
        print("  (none)")
    for operation_type, count in sorted(counts.items(), key=lambda x: x[1], reverse=True):
        print(f"  {operation_type:<14} {count:>8}")
    print()
    return 0


def audit_trail_command(args: argparse.Namespace) -> int:
    """Audit entries of one batch, oldest first."""
    with build_pool(load_settings(args)) as pool:
        entries = AuditLogger(pool).query_by_batch(args.batch_id, limit=validate_limit(args.limit))

    if not entries:
        print(f"\nNo audit trail found for batch {args.batch_id}")
        return 0

    print(f"\n{'Timestamp':<20} {'Operation':<12} {'Status':<8} {'Resource':<10} {'Id':<24} Duration")
    print(f"{'-' * 90}")
    for entry in entries:
        duration = f"{entry['duration_ms']:.1f}ms" if entry["duration_ms"] is not None else "-"
        print(
            f"{format_timestamp(entry['created_at']):<20} {entry['operation_type']:<12} "
            f"{entry['status']:<8} {entry['resource_type']:<10} {(entry['resource_id'] or '-'):<24} {duration}"
        )
    print()
    return 0


def rollup_command(args: argparse.Namespace) -> int:
    """Recompute one day's quality aggregate."""
    source = validate_source_system(args.source)
    period = date.fromisoformat(args.date) if args.date else datetime.now(timezone.utc).date()

    with build_pool(load_settings(args)) as pool:
        aggregate = MetricsAggregator(pool).rollup(period, source)

    print(
        f"Rollup {period.isoformat()} {source}: {aggregate.total_records} records, "
        f"avg {aggregate.average_quality_score}, "
        f"high/medium/low {aggregate.high_quality_count}/{aggregate.medium_quality_count}/"
        f"{aggregate.low_quality_count}"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="patient-sync-admin",
        description="Administration and monitoring for the patient sync store",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Create tables and indexes")
    add_db_arguments(init_parser)

    batches_parser = subparsers.add_parser("batches", help="Batches by status")
    batches_parser.add_argument("--source", help="Filter by source system")
    batches_parser.add_argument(
        "--status", choices=[s.value for s in BatchStatus], help="Filter the listing by status"
    )
    batches_parser.add_argument("--limit", type=int, default=20, help="Batches to list (default: 20)")
    add_db_arguments(batches_parser)

    trend_parser = subparsers.add_parser("quality-trend", help="Quality trend by day")
    trend_parser.add_argument("--source", required=True, help="Source system")
    trend_parser.add_argument("--days", type=int, default=30, help="Window in days (default: 30)")
    add_db_arguments(trend_parser)

    counts_parser = subparsers.add_parser("audit-counts", help="Audit counts by operation type")
    counts_parser.add_argument("--hours", type=int, default=24, help="Window in hours (default: 24)")
    add_db_arguments(counts_parser)

    trail_parser = subparsers.add_parser("audit-trail", help="Audit trail of one batch")
    trail_parser.add_argument("--batch-id", required=True, help="Batch id")
    trail_parser.add_argument("--limit", type=int, default=200, help="Entries to show (default: 200)")
    add_db_arguments(trail_parser)

    rollup_parser = subparsers.add_parser("rollup", help="Recompute a daily quality aggregate")
    rollup_parser.add_argument("--source", required=True, help="Source system")
    rollup_parser.add_argument("--date", help="UTC date YYYY-MM-DD (default: today)")
    add_db_arguments(rollup_parser)

    return parser


COMMANDS = {
    "init-db": init_db_command,
    "batches": batches_command,
    "quality-trend": quality_trend_command,
    "audit-counts": audit_counts_command,
    "audit-trail": audit_trail_command,
    "rollup": rollup_command,
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
    except (PipelineError, ValueError) as e:
        message = e.message if isinstance(e, PipelineError) else str(e)
        logger.error(f"{args.command} failed: {message}")
        print(f"\nError: {message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
