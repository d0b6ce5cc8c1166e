"""Plate Reader command line.

Usage:
    # Import a spreadsheet (CSV or XLSX) as a new batch:
    plate-reader import data/45_ROCHA.csv

    # Run one scheduling cycle (oldest batch with a backlog):
    plate-reader run

    # Process a specific batch:
    plate-reader run --batch 45_ROCHA

    # Reset photos stuck in processing:
    plate-reader reset-stale 45_ROCHA --minutes 5

    # Export results:
    plate-reader export 45_ROCHA -o results.csv

    # Aggregate status:
    plate-reader status 45_ROCHA

    # Run the periodic trigger in the foreground
    # (also imports new sheets from DRIVE_FOLDER_ID when set):
    plate-reader worker
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

from plate_reader.core.config import config
from plate_reader.core.errors import BatchNotFoundError, PlateReaderError
from plate_reader.core.export import render_csv, status_snapshot
from plate_reader.worker import manager
from plate_reader.worker.database import BatchDatabase, PhotoDatabase
from plate_reader.worker.recovery import StaleSweeper
from plate_reader.worker.service import SchedulerWorker


async def _require_batch(name: str):
    batch = await BatchDatabase(manager.get_client()).get_by_name(name)
    if batch is None:
        raise BatchNotFoundError(f"Batch {name} not found")
    return batch


async def cmd_import(args) -> int:
    if not args.file.exists():
        print(f"ERROR: File not found: {args.file}")
        return 1

    report = await manager.get_importer().import_batch(
        args.file.read_bytes(),
        args.file.name,
        name=args.name,
        source_file_id=args.source_id,
    )
    if not report.created:
        print(f"SKIP: {args.file.name} already imported as batch {report.batch.name}")
        return 0

    print(f"\n{'='*60}")
    print(f"Batch:      {report.batch.name}" + (" (resumed)" if report.resumed else ""))
    print(f"Imported:   {report.imported}")
    print(f"Duplicates: {report.duplicates}")
    print(f"Invalid:    {report.invalid}")
    print(f"Est. cost:  US$ {report.batch.estimated_cost:.3f}")
    print(f"{'='*60}")
    return 0


async def cmd_run(args) -> int:
    report = await manager.get_scheduler().run_pending_batches(args.batch)
    if report.already_in_progress:
        print(f"SKIP: a cycle is already in progress ({report.elapsed_seconds}s)")
        return 0
    if report.error:
        print(f"ERROR: {report.error}")
        return 1
    if not report.batch_name:
        print("No pending batches.")
        return 0

    state = "concluded" if report.batches_processed else "still processing"
    print(f"\n{'='*60}")
    print(f"Batch:    {report.batch_name} ({state})")
    print(f"Photos:   {report.total_photos}")
    print(f"Success:  {report.successes}")
    print(f"Failures: {report.failures}")
    print(f"Elapsed:  {report.elapsed_seconds}s")
    print(f"{'='*60}")
    return 0


async def cmd_reset_stale(args) -> int:
    batch = await _require_batch(args.name)
    sweeper = StaleSweeper(PhotoDatabase(manager.get_client()), stale_minutes=config.stale_minutes)
    staleness = timedelta(minutes=args.minutes) if args.minutes is not None else None
    count = await sweeper.reset_stale(batch.id, staleness)
    print(f"OK: {count} photo(s) reset to pending in {batch.name}")
    return 0


async def cmd_export(args) -> int:
    batch = await _require_batch(args.name)
    photos = await PhotoDatabase(manager.get_client()).list_terminal(batch.id)
    content = render_csv(photos)
    if args.output:
        args.output.write_text(content, encoding="utf-8")
        print(f"OK: {len(photos)} rows written to {args.output}")
    else:
        sys.stdout.write(content)
    return 0


async def cmd_status(args) -> int:
    batch = await _require_batch(args.name)
    print(json.dumps(status_snapshot(batch), indent=2, ensure_ascii=False))
    return 0


async def cmd_worker(args) -> int:
    interval = args.interval or config.scheduler_interval_seconds
    worker = SchedulerWorker(
        manager.get_scheduler(),
        interval_seconds=interval,
        ingester=manager.build_ingester(),
    )
    await worker.start()
    return 0


COMMANDS = {
    "import": cmd_import,
    "run": cmd_run,
    "reset-stale": cmd_reset_stale,
    "export": cmd_export,
    "status": cmd_status,
    "worker": cmd_worker,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plate-reader",
        description="Plate Reader - read identification plate numbers from photo batches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import", help="Import a spreadsheet as a new batch")
    p_import.add_argument("file", type=Path, help="CSV or XLSX file listing photo ids and links")
    p_import.add_argument("--name", default=None, help="Batch name (defaults to the file name)")
    p_import.add_argument("--source-id", default=None, help="Reference of the file in its origin")

    p_run = sub.add_parser("run", help="Run one scheduling cycle")
    p_run.add_argument("--batch", default=None, help="Process this batch instead of the oldest pending one")

    p_reset = sub.add_parser("reset-stale", help="Reset photos stuck in processing")
    p_reset.add_argument("name", help="Batch name")
    p_reset.add_argument("--minutes", type=int, default=None, help="Staleness window (defaults to STALE_MINUTES)")

    p_export = sub.add_parser("export", help="Export a batch's results as CSV")
    p_export.add_argument("name", help="Batch name")
    p_export.add_argument("--output", "-o", type=Path, default=None, help="Output file (stdout if omitted)")

    p_status = sub.add_parser("status", help="Show a batch's aggregate status")
    p_status.add_argument("name", help="Batch name")

    p_worker = sub.add_parser("worker", help="Run the periodic trigger in the foreground")
    p_worker.add_argument("--interval", type=int, default=None, help="Seconds between cycles")

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        code = asyncio.run(COMMANDS[args.command](args))
    except PlateReaderError as e:
        print(f"ERROR [{e.kind}]: {e.message}")
        code = 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
