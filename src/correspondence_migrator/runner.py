"""
Batch runner: drives the phase engine over many items.

Items are processed strictly one after another, with an optional pause
between them to keep the load on the destination system bounded. One item's
failure never stops the batch; it is counted and its error text lands in the
run report. Only a failure to select the items at all turns the whole run
into an ERROR report.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from .exceptions import ItemLockedError
from .models import Outcome, Phase, RunReport
from .retry import RetrySelector

if TYPE_CHECKING:
    from .engine import PhaseEngine

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


class BatchRunner:
    """Runs one phase (or the retry queue) of one pipeline variant."""

    def __init__(
        self,
        engine: PhaseEngine,
        *,
        item_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._item_delay = item_delay
        self._sleep = sleep

    @property
    def engine(self) -> PhaseEngine:
        return self._engine

    def run_phase(self, phase: Phase) -> RunReport:
        """Advance every item currently sitting in ``phase``.

        For the entry phase, source items without a record get one first.
        """
        engine = self._engine
        operation = f"run {phase}"
        try:
            if phase == engine.pipeline.entry_phase:
                self._register_new_items()
            records = engine.store.find_by_phase(engine.category, phase)
        except Exception as e:
            logger.exception(f"Could not select {engine.category} items for {phase}")
            return RunReport.setup_failure(operation, str(e) or type(e).__name__, engine.category)

        logger.info(f"Running {phase} for {len(records)} {engine.category} item(s)")
        report = RunReport(operation=operation, category=engine.category)
        self._process([record.item_id for record in records], report)
        logger.info(report.message)
        return report

    def run_for_items(self, phase: Phase, item_ids: list[str]) -> RunReport:
        """Advance a caller-chosen subset of items that are in ``phase``."""
        engine = self._engine
        report = RunReport(operation=f"run {phase} for selected items", category=engine.category)
        eligible: list[str] = []
        for item_id in dict.fromkeys(item_ids):
            try:
                record = engine.store.get_record(engine.category, item_id)
            except Exception as e:
                logger.exception(f"Could not load record of item {item_id}")
                report.record_failure(item_id, str(e) or type(e).__name__)
                continue
            if record is None and phase != engine.pipeline.entry_phase:
                report.record_failure(item_id, "no migration record")
                continue
            if record is not None and record.current_phase not in (phase, Phase.COMPLETED):
                report.record_failure(item_id, f"item is at {record.current_phase}, not {phase}")
                continue
            eligible.append(item_id)

        self._process(eligible, report)
        logger.info(report.message)
        return report

    def retry_failed(self) -> RunReport:
        """Re-run the current phase of every retryable item."""
        engine = self._engine
        operation = "retry failed"
        try:
            records = RetrySelector(engine.store, engine.category).find_retryable()
        except Exception as e:
            logger.exception(f"Could not select retryable {engine.category} items")
            return RunReport.setup_failure(operation, str(e) or type(e).__name__, engine.category)

        logger.info(f"Retrying {len(records)} {engine.category} item(s)")
        report = RunReport(operation=operation, category=engine.category)
        self._process([record.item_id for record in records], report)
        logger.info(report.message)
        return report

    def reset_item(self, item_id: str, *, restart: bool = False) -> bool:
        return self._engine.reset(item_id, restart=restart) is not None

    def _register_new_items(self) -> int:
        engine = self._engine
        source_ids = engine.source.list_item_ids(engine.category)
        existing = engine.store.existing_item_ids(engine.category)
        missing = [item_id for item_id in dict.fromkeys(source_ids) if item_id not in existing]
        for item_id in missing:
            engine.store.add_record(engine.new_record(item_id))
        logger.info(f"Registered {len(missing)} new {engine.category} item(s) out of {len(source_ids)} in the source")
        return len(missing)

    def _process(self, item_ids: list[str], report: RunReport) -> None:
        for index, item_id in enumerate(item_ids):
            if index and self._item_delay > 0:
                self._sleep(self._item_delay)
            try:
                outcome = self._engine.advance(item_id)
            except ItemLockedError as e:
                logger.warning(str(e))
                report.record_failure(item_id, str(e))
                continue
            except Exception as e:
                logger.exception(f"Unexpected error while processing item {item_id}")
                report.record_failure(item_id, str(e) or type(e).__name__)
                continue

            if outcome == Outcome.SUCCESS:
                report.record_success()
            else:
                report.record_failure(item_id, self._last_error(item_id))

    def _last_error(self, item_id: str) -> str:
        record = self._engine.store.get_record(self._engine.category, item_id)
        if record is None or not record.last_error:
            return "phase failed"
        return record.last_error
