"""
Selection of migration records that may be processed again.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Category, MigrationRecord, Phase
    from .protocols import MigrationStore

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


class RetrySelector:
    """Finds records whose current phase failed but still has attempts left.

    Retries always resume at the record's own current phase (and step), never
    at the start of the pipeline. Exhausted records stay out of the selection
    until an operator resets them.
    """

    def __init__(self, store: MigrationStore, category: Category) -> None:
        self._store = store
        self._category = category

    def find_retryable(self) -> list[MigrationRecord]:
        """Return ERROR records below their retry cap, oldest error first."""
        records = [record for record in self._store.find_retryable(self._category) if record.is_retryable]
        logger.debug(f"{len(records)} retryable {self._category} record(s)")
        return records

    def group_by_phase(self) -> dict[Phase, list[MigrationRecord]]:
        groups: dict[Phase, list[MigrationRecord]] = defaultdict(list)
        for record in self.find_retryable():
            groups[record.current_phase].append(record)
        return dict(groups)

    def find_exhausted(self) -> list[MigrationRecord]:
        """Return records that need a manual reset before they run again."""
        return [record for record in self._store.iter_records(self._category) if record.is_exhausted]
