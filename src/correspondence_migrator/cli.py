"""
Command-line interface for the correspondence migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

from .aggregator import ALL_ENTITY_TYPES, RelatedDataImporter, source_importers
from .config import MigrationSettings
from .engine import PhaseEngine
from .exceptions import ConfigurationError, MigrationError
from .models import Category, Phase, RunReport, RunStatus
from .pipelines import build_pipeline
from .runner import BatchRunner
from .source import HttpSourceProvider
from .stats import MigrationStatistics
from .store import SqlAlchemyStore
from .utils import setup_logging

if TYPE_CHECKING:
    from .stats import CategoryStatistics

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Migrate correspondences into the destination records-management system, phase by phase"
    )
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    _ = parser.add_argument(
        "--api-key-pass-path",
        help="Path for the source API key in pass utility (default: correspondence-migrator/source_api_key)",
    )
    _ = parser.add_argument(
        "--keycloak-pass-path",
        help="Path for the Keycloak password in pass utility (default: correspondence-migrator/keycloak_password)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    categories = [category.value for category in Category]
    phases = [phase.value for phase in Phase if phase != Phase.COMPLETED]

    _ = commands.add_parser("init-db", help="Create the migration tables")

    run_phase = commands.add_parser("run-phase", help="Advance every item sitting in a phase")
    _ = run_phase.add_argument("category", choices=categories)
    _ = run_phase.add_argument("phase", choices=phases)
    _ = run_phase.add_argument(
        "--item", "-i", action="append", dest="items", help="Only process this item id. Can be given multiple times."
    )

    retry = commands.add_parser("retry", help="Re-run the current phase of every retryable item")
    _ = retry.add_argument("category", choices=categories)

    reset = commands.add_parser("reset", help="Clear the error state of one item")
    _ = reset.add_argument("category", choices=categories)
    _ = reset.add_argument("item")
    _ = reset.add_argument("--restart", action="store_true", help="Start the item over from its first phase")

    stats = commands.add_parser("stats", help="Show migration statistics")
    _ = stats.add_argument("category", nargs="?", choices=categories)

    import_related = commands.add_parser("import-related", help="Import the dependent collections of items")
    _ = import_related.add_argument("--category", "-c", choices=categories, help="Only items of this category")
    _ = import_related.add_argument(
        "--parent", "-p", action="append", dest="parents", help="Only this parent item id. Can be repeated."
    )
    _ = import_related.add_argument(
        "--entity", "-e", action="append", dest="entities", choices=ALL_ENTITY_TYPES, help="Only this entity type"
    )

    _ = commands.add_parser("retry-related", help="Re-import the failed entity types of every retryable item")

    reset_related = commands.add_parser("reset-related", help="Reset the related-data status of one item")
    _ = reset_related.add_argument("parent")

    return parser.parse_args(argv)


def _print_report(report: RunReport) -> None:
    print(f"{report.operation}: {report.status}")
    print(f"  Total={report.total} Succeeded={report.succeeded} Failed={report.failed}")
    for error in report.errors:
        print(f"  - {error}")


def _print_statistics(stats: CategoryStatistics) -> None:
    print(f"{stats.category}: {stats.total} item(s), {stats.retryable} retryable, {stats.exhausted} exhausted")
    for phase, count in sorted(stats.by_phase.items()):
        print(f"  {phase}: {count}")
        for step, step_count in sorted(stats.steps_by_phase.get(phase, {}).items()):
            print(f"    {step}: {step_count}")
    for status, count in sorted(stats.by_overall_status.items()):
        print(f"  overall {status}: {count}")


def _source(settings: MigrationSettings) -> HttpSourceProvider:
    if not settings.source_url:
        msg = "CORRMIG_SOURCE_URL is not set"
        raise ConfigurationError(msg)
    return HttpSourceProvider(settings.source_url, settings.source_api_key, credentials=settings.build_credentials())


def _runner(settings: MigrationSettings, store: SqlAlchemyStore, category: Category) -> BatchRunner:
    engine = PhaseEngine(
        build_pipeline(category, register_settle_seconds=settings.register_settle_seconds),
        store,
        _source(settings),
        settings.build_destination(),
        default_user=settings.default_user,
        max_retries=settings.max_retries,
        lease_seconds=settings.lease_seconds,
    )
    return BatchRunner(engine, item_delay=settings.item_delay)


def _related_importer(settings: MigrationSettings, store: SqlAlchemyStore) -> RelatedDataImporter:
    return RelatedDataImporter(
        store,
        source_importers(_source(settings), store),
        max_retries=settings.max_retries,
        lease_seconds=settings.lease_seconds,
        item_delay=settings.item_delay,
    )


def run_command(args: argparse.Namespace, settings: MigrationSettings) -> bool:
    """Execute one subcommand; True when it fully succeeded."""
    store = SqlAlchemyStore.from_url(settings.database_url)
    store.create_schema()
    command: str = args.command

    if command == "init-db":
        return True

    if command == "stats":
        statistics = MigrationStatistics(store)
        selected = [Category(args.category)] if args.category else list(Category)
        for category in selected:
            _print_statistics(statistics.for_category(category))
        summary = statistics.import_summary()
        print(f"related data: {summary['total']} item(s) {summary['by_overall_status']}")
        return True

    if command == "reset":
        engine = PhaseEngine(
            build_pipeline(Category(args.category)),
            store,
            _Unavailable("source"),  # type: ignore[arg-type]
            _Unavailable("destination"),  # type: ignore[arg-type]
            lease_seconds=settings.lease_seconds,
        )
        found = BatchRunner(engine).reset_item(args.item, restart=args.restart)
        print(f"{args.item}: {'reset' if found else 'no migration record'}")
        return found

    if command == "reset-related":
        found = RelatedDataImporter(store, {}).reset(args.parent)
        print(f"{args.parent}: {'reset' if found else 'no related-data status'}")
        return found

    if command in ("run-phase", "retry"):
        runner = _runner(settings, store, Category(args.category))
        if command == "retry":
            report = runner.retry_failed()
        elif args.items:
            report = runner.run_for_items(Phase(args.phase), args.items)
        else:
            report = runner.run_phase(Phase(args.phase))
    elif command == "import-related":
        importer = _related_importer(settings, store)
        parents: list[str] | None = args.parents
        if not parents:
            source = _source(settings)
            selected = [Category(args.category)] if args.category else list(Category)
            parents = [item_id for category in selected for item_id in source.list_item_ids(category)]
        report = importer.import_many(parents, args.entities)
    elif command == "retry-related":
        report = _related_importer(settings, store).retry_failed_imports()
    else:
        msg = f"Unknown command: {command}"
        raise ConfigurationError(msg)

    _print_report(report)
    return report.status == RunStatus.SUCCESS


class _Unavailable:
    """Stand-in collaborator for commands that only touch the store."""

    def __init__(self, role: str) -> None:
        self._role = role

    def __getattr__(self, name: str) -> object:
        msg = f"{self._role} call {name} is not available for this command"
        raise ConfigurationError(msg)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        settings = MigrationSettings.from_env(
            api_key_pass_path=args.api_key_pass_path,
            keycloak_pass_path=args.keycloak_pass_path,
        )
        succeeded = run_command(args, settings)
    except MigrationError as e:
        logger.error(f"{args.command} failed: {e}")  # noqa: TRY400
        sys.exit(1)
    except Exception:
        logger.exception(f"{args.command} failed")
        sys.exit(1)

    sys.exit(0 if succeeded else 1)
