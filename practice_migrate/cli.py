"""Command line interface for the practice data migration engine."""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from dotenv import load_dotenv

from .errors import MigrationError
from .models.migration import SKIPPABLE_PHASES, MigrationConfig, Phase
from .models.schema import EntityType
from .orchestrator import MigrationOrchestrator
from .services.checkpoint import FileCheckpointStore
from .services.pg_checkpoint import PostgresCheckpointStore
from .services.report import MigrationReport

logger = logging.getLogger(__name__)

ENTITY_CHOICES = [e.value for e in EntityType]
PHASE_CHOICES = sorted(p.value for p in SKIPPABLE_PHASES)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="practice-migrate",
        description="Migrate legacy dispatch data into the practice-management schema",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    migrate_parser = subparsers.add_parser("migrate", help="Run or resume a migration")
    _add_common_arguments(migrate_parser)
    migrate_parser.add_argument(
        "--phases",
        help=f"Comma-separated optional phases to run ({', '.join(PHASE_CHOICES)}); the others are skipped",
    )
    migrate_parser.add_argument(
        "--skip-phase", action="append", default=[], choices=PHASE_CHOICES, help="Skip an optional phase"
    )
    migrate_parser.add_argument("--dry-run", action="store_true", help="Run every phase without writing")
    migrate_parser.add_argument(
        "--continue-on-error", dest="continue_on_error", action="store_true", default=None,
        help="Keep going with independent entity types after a failure",
    )
    migrate_parser.add_argument(
        "--stop-on-error", dest="continue_on_error", action="store_false",
        help="Stop the run at the first failed entity type",
    )
    migrate_parser.add_argument(
        "--resume", metavar="RUN_ID", nargs="?", const="latest",
        help="Resume a run from its checkpoints (the latest unfinished run if no id is given)",
    )

    # Validate source data
    validate_parser = subparsers.add_parser(
        "validate", help="Extract, validate and transform without writing anything"
    )
    _add_common_arguments(validate_parser)

    # Run status
    status_parser = subparsers.add_parser("status", help="Show the status of migration runs")
    status_parser.add_argument("run_id", nargs="?", help="Run to show (all runs if omitted)")
    status_parser.add_argument("--config", help="Path to migration config file")
    status_parser.add_argument("--checkpoints", action="store_true", help="Include batch checkpoints")
    status_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to migration config file (JSON)")
    parser.add_argument("--skip-entity", action="append", default=[], choices=ENTITY_CHOICES)
    parser.add_argument("--only-entity", action="append", default=[], choices=ENTITY_CHOICES)
    parser.add_argument("--batch-size", type=int, help="Records per batch")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")


def load_config(args: argparse.Namespace) -> MigrationConfig:
    """Load the config file (if any), apply environment overrides and CLI flags."""
    config = MigrationConfig.from_file(args.config) if getattr(args, "config", None) else MigrationConfig()
    config.apply_env()

    if getattr(args, "batch_size", None):
        config.batch_size = args.batch_size
    if getattr(args, "skip_entity", None):
        config.skip_entities = sorted(set(config.skip_entities) | set(args.skip_entity))
    if getattr(args, "only_entity", None):
        config.only_entities = list(args.only_entity)
    if getattr(args, "dry_run", False):
        config.dry_run = True
    if getattr(args, "continue_on_error", None) is not None:
        config.continue_on_error = args.continue_on_error

    skip = set(config.skip_phases)
    if getattr(args, "phases", None):
        wanted = {p.strip() for p in args.phases.split(",") if p.strip()}
        unknown = wanted - set(PHASE_CHOICES)
        if unknown:
            raise ValueError(f"Unknown phases: {', '.join(sorted(unknown))}")
        skip |= set(PHASE_CHOICES) - wanted
    skip |= set(getattr(args, "skip_phase", None) or [])
    config.skip_phases = sorted(skip)
    return config


def _install_signal_handler(orchestrator: MigrationOrchestrator) -> None:
    def handle_interrupt(signum, frame):
        if orchestrator.cancel_event.is_set():
            raise KeyboardInterrupt
        orchestrator.cancel()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, handle_interrupt)


def run_migrate(args: argparse.Namespace) -> int:
    """Run a migration from config file."""
    config = load_config(args)
    orchestrator = MigrationOrchestrator.from_config(config)
    _install_signal_handler(orchestrator)

    try:
        resume_run_id = args.resume
        if resume_run_id == "latest":
            latest = orchestrator.checkpoints.latest_resumable_run(config.name, dry_run=config.dry_run)
            if latest is None:
                print("No unfinished run to resume")
                return 1
            resume_run_id = latest.run_id
        result = orchestrator.run_migration(resume_run_id=resume_run_id)
    finally:
        orchestrator.close()

    _print_result(result)
    return 0 if result.status.succeeded else 1


def run_validate(args: argparse.Namespace) -> int:
    """Validate source data without writing."""
    config = load_config(args)
    orchestrator = MigrationOrchestrator.from_config(config)
    _install_signal_handler(orchestrator)
    try:
        result = orchestrator.validate_only()
    finally:
        orchestrator.close()

    _print_result(result)
    return 0 if result.status.succeeded else 1


def run_status(args: argparse.Namespace) -> int:
    """Show run status from the checkpoint store."""
    config = MigrationConfig.from_file(args.config) if args.config else MigrationConfig()
    config.apply_env()
    if config.checkpoint_backend == "postgres":
        store = PostgresCheckpointStore(config.target)
    else:
        store = FileCheckpointStore(config.checkpoint_dir)

    try:
        if not args.run_id:
            runs = store.list_runs()
            if not runs:
                print("No migration runs recorded")
                return 0
            for run in sorted(runs, key=lambda r: r.started_at):
                print(f"{run.run_id}  {run.started_at:%Y-%m-%d %H:%M:%S}  {run.status.value:<24} {run.name}")
            return 0

        run = store.load_run(args.run_id)
        if run is None:
            print(f"Run not found: {args.run_id}")
            return 1
        print(MigrationReport.from_run(run).summary_text())
        if args.checkpoints:
            print("\nCheckpoints:")
            for checkpoint in store.list_checkpoints(run.run_id):
                print(json.dumps(checkpoint.to_dict(), default=str))
        return 0
    finally:
        store.close()


def _print_result(result) -> None:
    print("\n" + "=" * 60)
    print("MIGRATION " + result.status.value.upper().replace("_", " "))
    print("=" * 60)
    print(MigrationReport.from_run(result).summary_text())


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        if args.command == "migrate":
            return run_migrate(args)
        elif args.command == "validate":
            return run_validate(args)
        elif args.command == "status":
            return run_status(args)
        else:
            parser.print_help()
            return 2
    except (MigrationError, ValueError, OSError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
