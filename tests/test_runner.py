"""
Tests for the batch runner and retry selection.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING
from unittest.mock import Mock

import pytest

from correspondence_migrator.engine import PhaseEngine
from correspondence_migrator.exceptions import SourceError
from correspondence_migrator.models import Category, Phase, PhaseStatus, RunStatus
from correspondence_migrator.retry import RetrySelector
from correspondence_migrator.runner import BatchRunner

if TYPE_CHECKING:
    from conftest import FakeSource

    from correspondence_migrator.store import SqlAlchemyStore

EngineFactory = Callable[..., PhaseEngine]


def _runner(engine_factory: EngineFactory, **kwargs: object) -> BatchRunner:
    return BatchRunner(engine_factory(), **kwargs)  # type: ignore[arg-type]


@pytest.mark.unit
class TestRunPhase:
    def test_entry_phase_registers_source_items(
        self, engine_factory: EngineFactory, source: FakeSource, store: SqlAlchemyStore
    ) -> None:
        for item_id in ("item-1", "item-2", "item-3"):
            source.add_item(item_id)
        source.add_item("other", category=Category.OUTGOING)

        report = _runner(engine_factory).run_phase(Phase.PREPARE_DATA)

        assert report.status == RunStatus.SUCCESS
        assert report.total == 3
        assert report.succeeded == 3
        assert store.existing_item_ids(Category.INCOMING) == {"item-1", "item-2", "item-3"}
        assert len(store.find_by_phase(Category.INCOMING, Phase.CREATION)) == 3

    def test_registration_is_idempotent(
        self, engine_factory: EngineFactory, source: FakeSource, store: SqlAlchemyStore
    ) -> None:
        source.add_item("item-1")
        runner = _runner(engine_factory)
        runner.run_phase(Phase.PREPARE_DATA)

        report = runner.run_phase(Phase.PREPARE_DATA)

        assert report.total == 0
        assert report.status == RunStatus.SUCCESS
        assert len(list(store.iter_records(Category.INCOMING))) == 1

    def test_one_failure_does_not_stop_the_batch(self, engine_factory: EngineFactory, source: FakeSource) -> None:
        for item_id in ("item-1", "item-2", "item-3"):
            source.add_item(item_id)
        source.failures[("fetch", "item-2")] = SourceError("HTTP 503")

        report = _runner(engine_factory).run_phase(Phase.PREPARE_DATA)

        assert report.status == RunStatus.PARTIAL_SUCCESS
        assert report.succeeded == 2
        assert report.failed == 1
        assert report.errors == ["item-2: HTTP 503"]

    def test_all_failed_is_an_error(self, engine_factory: EngineFactory, source: FakeSource) -> None:
        source.add_item("item-1")
        source.failures[("fetch", "item-1")] = SourceError("HTTP 503")

        report = _runner(engine_factory).run_phase(Phase.PREPARE_DATA)

        assert report.status == RunStatus.ERROR
        assert report.setup_error is None

    def test_selection_failure_is_a_setup_error(self, engine_factory: EngineFactory, source: FakeSource) -> None:
        source.failures[("list", Category.INCOMING.value)] = SourceError("source unreachable")

        report = _runner(engine_factory).run_phase(Phase.PREPARE_DATA)

        assert report.status == RunStatus.ERROR
        assert report.setup_error == "source unreachable"
        assert report.total == 0

    def test_only_items_in_the_phase_run(
        self, engine_factory: EngineFactory, source: FakeSource, destination: Mock
    ) -> None:
        source.add_item("item-1")
        source.add_item("item-2")
        runner = _runner(engine_factory)
        runner.run_phase(Phase.PREPARE_DATA)
        runner.run_for_items(Phase.CREATION, ["item-1"])

        report = runner.run_phase(Phase.CREATION)

        assert report.total == 1
        assert destination.create_correspondence.call_count == 2

    def test_later_phase_does_not_register(self, engine_factory: EngineFactory, source: FakeSource) -> None:
        source.add_item("item-1")

        report = _runner(engine_factory).run_phase(Phase.CREATION)

        assert report.total == 0
        assert report.status == RunStatus.SUCCESS

    def test_delay_between_items(self, engine_factory: EngineFactory, source: FakeSource) -> None:
        for item_id in ("item-1", "item-2", "item-3"):
            source.add_item(item_id)
        sleep = Mock()

        _runner(engine_factory, item_delay=0.5, sleep=sleep).run_phase(Phase.PREPARE_DATA)

        assert sleep.call_count == 2
        sleep.assert_called_with(0.5)

    def test_locked_item_is_reported(
        self, engine_factory: EngineFactory, source: FakeSource, store: SqlAlchemyStore
    ) -> None:
        source.add_item("item-1")
        source.add_item("item-2")
        runner = BatchRunner(engine_factory(owner="run-a"))
        runner.engine.load_or_create("item-1")
        store.claim_record(Category.INCOMING, "item-1", "run-b", timedelta(minutes=5))

        report = runner.run_phase(Phase.PREPARE_DATA)

        assert report.status == RunStatus.PARTIAL_SUCCESS
        assert "another run" in report.errors[0]


@pytest.mark.unit
class TestRunForItems:
    def test_mismatched_items_are_failures(
        self, engine_factory: EngineFactory, source: FakeSource, destination: Mock
    ) -> None:
        source.add_item("item-1")
        source.add_item("item-2")
        runner = _runner(engine_factory)
        runner.run_phase(Phase.PREPARE_DATA)
        runner.run_for_items(Phase.CREATION, ["item-2"])

        report = runner.run_for_items(Phase.CREATION, ["item-1", "item-2", "unknown"])

        assert report.succeeded == 1
        assert report.failed == 2
        assert report.errors == ["item-2: item is at ASSIGNMENT, not CREATION", "unknown: no migration record"]

    def test_duplicates_run_once(self, engine_factory: EngineFactory, source: FakeSource, destination: Mock) -> None:
        source.add_item("item-1")
        runner = _runner(engine_factory)
        runner.run_phase(Phase.PREPARE_DATA)

        report = runner.run_for_items(Phase.CREATION, ["item-1", "item-1"])

        assert report.total == 1
        destination.create_correspondence.assert_called_once()

    def test_entry_phase_creates_missing_records(
        self, engine_factory: EngineFactory, source: FakeSource, store: SqlAlchemyStore
    ) -> None:
        source.add_item("item-1")

        report = _runner(engine_factory).run_for_items(Phase.PREPARE_DATA, ["item-1"])

        assert report.status == RunStatus.SUCCESS
        assert store.get_record(Category.INCOMING, "item-1") is not None

    def test_completed_item_is_an_idempotent_success(
        self, engine_factory: EngineFactory, source: FakeSource, destination: Mock
    ) -> None:
        source.add_item("item-1")
        engine = engine_factory()
        for _ in engine.pipeline.phases:
            engine.advance("item-1")
        destination.reset_mock()

        report = BatchRunner(engine).run_for_items(Phase.CLOSING, ["item-1"])

        assert report.status == RunStatus.SUCCESS
        assert destination.method_calls == []


@pytest.mark.unit
class TestRetry:
    def test_retry_failed_resumes_current_phase(
        self, engine_factory: EngineFactory, source: FakeSource, destination: Mock, store: SqlAlchemyStore
    ) -> None:
        source.add_item("item-1")
        source.add_item("item-2")
        destination.create_correspondence.side_effect = ["doc-1", "", "doc-2"]
        runner = _runner(engine_factory)
        runner.run_phase(Phase.PREPARE_DATA)
        first = runner.run_phase(Phase.CREATION)
        assert first.status == RunStatus.PARTIAL_SUCCESS

        report = runner.retry_failed()

        assert report.status == RunStatus.SUCCESS
        assert report.total == 1
        assert len(store.find_by_phase(Category.INCOMING, Phase.ASSIGNMENT)) == 2

    def test_selector_skips_exhausted_records(
        self, engine_factory: EngineFactory, source: FakeSource, store: SqlAlchemyStore
    ) -> None:
        source.add_item("item-1")
        source.add_item("item-2")
        source.failures[("fetch", "item-1")] = SourceError("gone")
        source.failures[("fetch", "item-2")] = SourceError("timeout")
        engine = engine_factory()
        for _ in range(3):
            engine.advance("item-1")
        engine.advance("item-2")

        selector = RetrySelector(store, Category.INCOMING)

        assert [r.item_id for r in selector.find_retryable()] == ["item-2"]
        assert [r.item_id for r in selector.find_exhausted()] == ["item-1"]
        assert list(selector.group_by_phase()) == [Phase.PREPARE_DATA]

    def test_retry_with_nothing_to_do(self, engine_factory: EngineFactory) -> None:
        report = _runner(engine_factory).retry_failed()
        assert report.status == RunStatus.SUCCESS
        assert report.total == 0

    def test_reset_item(self, engine_factory: EngineFactory, source: FakeSource, store: SqlAlchemyStore) -> None:
        source.add_item("item-1")
        source.failures[("fetch", "item-1")] = SourceError("gone")
        runner = _runner(engine_factory)
        for _ in range(3):
            runner.run_phase(Phase.PREPARE_DATA)

        assert runner.reset_item("item-1")
        assert not runner.reset_item("unknown")
        record = store.get_record(Category.INCOMING, "item-1")
        assert record is not None
        assert record.phase_status == PhaseStatus.PENDING
        assert record.retry_count == 0
