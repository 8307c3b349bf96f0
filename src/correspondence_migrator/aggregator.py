"""Related-data import with per-entity-type status tracking.

Some items are migrated as "import N dependent collections" rather than by
walking a phase pipeline. Each collection type (attachments, comments, links,
...) gets its own status, error and imported count inside one
SubEntityImportStatus, and the parent's overall status is derived from them:

- IN_PROGRESS if any type is IN_PROGRESS
- COMPLETED if every type is SUCCESS
- FAILED if any type is FAILED (and none is IN_PROGRESS)
- PENDING otherwise

The status is saved after every single entity type, so a crash half-way
through the list keeps the types already imported. retry_failed_only() reruns
just the FAILED types, leaving the successful ones alone.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Final

from .engine import DEFAULT_LEASE_SECONDS, default_owner
from .exceptions import ConfigurationError, ItemLockedError
from .models import EntityStatus, EntityType, ImportStatus, RunReport, SubEntityImportStatus

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .protocols import MigrationStore, SourceDataProvider

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

Importer = Callable[[str], int]

ALL_ENTITY_TYPES: Final[list[str]] = [entity_type.value for entity_type in EntityType]


class SourceDependentImporter:
    """Copy one dependent collection of a parent from the source into staging."""

    def __init__(self, source: SourceDataProvider, store: MigrationStore, entity_type: str) -> None:
        self._source = source
        self._store = store
        self.entity_type = entity_type

    def __call__(self, parent_id: str) -> int:
        dependents = self._source.fetch_dependents(parent_id, self.entity_type)
        return self._store.replace_dependents(parent_id, self.entity_type, dependents)


def source_importers(
    source: SourceDataProvider, store: MigrationStore, entity_types: list[str] | None = None
) -> dict[str, Importer]:
    return {
        entity_type: SourceDependentImporter(source, store, entity_type)
        for entity_type in (entity_types or ALL_ENTITY_TYPES)
    }


class RelatedDataImporter:
    """Imports the dependent collections of parent items and tracks their status."""

    _store: MigrationStore
    _importers: dict[str, Importer]

    def __init__(
        self,
        store: MigrationStore,
        importers: dict[str, Importer],
        *,
        max_retries: int = 3,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        owner: str | None = None,
        item_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._importers = importers
        self._max_retries = max_retries
        self._lease = timedelta(seconds=lease_seconds)
        self._owner = owner or default_owner()
        self._item_delay = item_delay
        self._sleep = sleep

    @property
    def entity_types(self) -> list[str]:
        return list(self._importers)

    def import_all(self, parent_id: str, entity_types: list[str] | None = None) -> bool:
        """Import the dependent collections of one parent.

        Without ``entity_types`` every tracked type is imported and the result is
        True once the parent is COMPLETED. With ``entity_types`` only those are
        imported and the result is True when all of them succeeded; the other
        registered types stay tracked, so the parent is not COMPLETED until they
        are imported too.
        """
        requested = list(entity_types) if entity_types else self.entity_types
        # Every registered type is tracked, plus any requested one without an importer
        tracked = list(dict.fromkeys([*self.entity_types, *requested]))
        status = self._ensure_status(parent_id, tracked)
        if status.is_completed and all(entity_type in status.entities for entity_type in tracked):
            logger.debug(f"Related data of {parent_id} already imported")
            return True

        with self._lease_on(parent_id):
            status = self._store.get_import_status(parent_id) or status
            added = status.track(tracked)
            if added:
                logger.info(f"Now tracking {', '.join(added)} of {parent_id}")
            if status.is_completed:
                return True
            return self._run(status, requested if entity_types else list(status.entities))

    def retry_failed_only(self, parent_id: str) -> bool:
        """Re-import only the entity types currently FAILED."""
        status = self._store.get_import_status(parent_id)
        if status is None:
            logger.warning(f"No related-data import status for {parent_id}")
            return False
        if status.is_completed:
            return True

        failed = status.failed_entity_types()
        if not failed:
            logger.info(f"Nothing failed for {parent_id} (status {status.overall_status})")
            return False

        with self._lease_on(parent_id):
            status = self._store.get_import_status(parent_id) or status
            return self._run(status, status.failed_entity_types())

    def reset(self, parent_id: str) -> bool:
        """Put every entity type of a parent back to PENDING."""
        status = self._store.get_import_status(parent_id)
        if status is None:
            return False
        with self._lease_on(parent_id):
            status = self._store.get_import_status(parent_id) or status
            status.reset()
            self._store.save_import_status(status)
        logger.info(f"Reset related-data import status of {parent_id}")
        return True

    def find_retryable(self) -> list[SubEntityImportStatus]:
        return [status for status in self._store.find_retryable_imports() if status.is_retryable]

    def import_many(self, parent_ids: list[str], entity_types: list[str] | None = None) -> RunReport:
        report = RunReport(operation="import related data")
        self._process(parent_ids, report, lambda parent_id: self.import_all(parent_id, entity_types))
        logger.info(report.message)
        return report

    def retry_failed_imports(self) -> RunReport:
        operation = "retry related data"
        try:
            parent_ids = [status.parent_id for status in self.find_retryable()]
        except Exception as e:
            logger.exception("Could not select retryable related-data imports")
            return RunReport.setup_failure(operation, str(e) or type(e).__name__)

        report = RunReport(operation=operation)
        self._process(parent_ids, report, self.retry_failed_only)
        logger.info(report.message)
        return report

    def _process(self, parent_ids: list[str], report: RunReport, action: Callable[[str], bool]) -> None:
        for index, parent_id in enumerate(dict.fromkeys(parent_ids)):
            if index and self._item_delay > 0:
                self._sleep(self._item_delay)
            try:
                succeeded = action(parent_id)
            except ItemLockedError as e:
                logger.warning(str(e))
                report.record_failure(parent_id, str(e))
                continue
            except Exception as e:
                logger.exception(f"Unexpected error while importing related data of {parent_id}")
                report.record_failure(parent_id, str(e) or type(e).__name__)
                continue

            if succeeded:
                report.record_success()
            else:
                report.record_failure(parent_id, self._failure_summary(parent_id))

    def _ensure_status(self, parent_id: str, entity_types: list[str]) -> SubEntityImportStatus:
        status = self._store.get_import_status(parent_id)
        if status is None:
            status = self._store.add_import_status(
                SubEntityImportStatus.new(parent_id, entity_types, max_retries=self._max_retries)
            )
            logger.debug(f"Created related-data import status for {parent_id}")
        return status

    def _run(self, status: SubEntityImportStatus, entity_types: list[str]) -> bool:
        parent_id = status.parent_id
        try:
            for entity_type in entity_types:
                status.mark_in_progress(entity_type)
                self._store.save_import_status(status)
                try:
                    importer = self._importers.get(entity_type)
                    if importer is None:
                        msg = f"No importer registered for {entity_type}"
                        raise ConfigurationError(msg)
                    count = importer(parent_id)
                except Exception as e:
                    logger.warning(f"Importing {entity_type} of {parent_id} failed: {e}")
                    status.mark_failed(entity_type, str(e) or type(e).__name__)
                else:
                    logger.debug(f"Imported {count} {entity_type} of {parent_id}")
                    status.mark_success(entity_type, count)
                self._store.save_import_status(status)

            status.refresh()
            if status.overall_status == ImportStatus.FAILED:
                status.retry_count += 1
            self._store.save_import_status(status)
        except Exception as e:
            logger.exception(f"Related-data import of {parent_id} aborted")
            status.mark_aborted(str(e) or type(e).__name__)
            self._store.save_import_status(status)
            return False

        logger.info(
            f"Related data of {parent_id}: {status.overall_status} "
            f"({status.successful_entities_count}/{status.total_entities_count} succeeded)"
        )
        if status.is_completed:
            return True
        return bool(entity_types) and all(
            status.entities[entity_type].status == EntityStatus.SUCCESS for entity_type in entity_types
        )

    def _failure_summary(self, parent_id: str) -> str:
        status = self._store.get_import_status(parent_id)
        if status is None:
            return "import failed"
        errors = [f"{name}: {state.error}" for name, state in status.entities.items() if state.error]
        return "; ".join(errors) or f"import {status.overall_status}"

    @contextmanager
    def _lease_on(self, parent_id: str) -> Iterator[None]:
        if not self._store.claim_import(parent_id, self._owner, self._lease):
            msg = f"Related data of {parent_id} is being imported by another run"
            raise ItemLockedError(msg)
        try:
            yield
        finally:
            self._store.release_import(parent_id, self._owner)
