"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings (failure paths log them on purpose)

It also provides the shared fakes: an in-memory SQLite store, a scriptable
source system and a Mock destination that accepts every call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from typing_extensions import override
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from correspondence_migrator.engine import PhaseEngine
from correspondence_migrator.exceptions import SourceError
from correspondence_migrator.models import Category, Dependent, ItemDetails
from correspondence_migrator.pipelines import build_pipeline
from correspondence_migrator.store import SqlAlchemyStore

if TYPE_CHECKING:
    from collections.abc import Generator

# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        if self.test_nodeid not in _integration_test_warnings:
            _integration_test_warnings[self.test_nodeid] = []
        _integration_test_warnings[self.test_nodeid].append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    This fixture captures logging output and fails the test if any WARNING or ERROR
    level logs are detected during integration tests. These would come from logger.warning()
    or logger.error() calls in the source code.

    Warnings from the test code itself (via warnings.warn()) are allowed, as they are
    just informational output. This fixture specifically targets logger warnings which
    indicate issues in the code under test.

    Warnings are acceptable when running the tool as a user, but in the test context
    we don't expect any warnings from the migrator code and treat them as test failures.
    """
    # Check if this is an integration test
    is_integration_test = request.node.get_closest_marker("integration") is not None

    if not is_integration_test:
        # For unit tests and other tests, don't check for warnings
        yield
        return

    # For integration tests, set up warning capture
    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    # Add handler to root logger to capture all warnings
    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        # Clean up - remove the handler
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """
    Hook to check for warnings after test execution and mark test as failed if warnings were detected.

    This runs after the test completes but before pytest generates the final report.
    """
    # Execute the test and get the report
    outcome = yield
    report = outcome.get_result()

    # Only check during the test call phase (not setup or teardown)
    if call.when == "call" and report.outcome == "passed":
        # Check if this test has any captured warnings
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            # Format warning messages for better readability
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]

            # Mark the test as failed
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        # Clean up the warnings for this test
        _integration_test_warnings.pop(test_nodeid, None)


# ---------------------------------------------------------------------------
# Shared fakes
# ---------------------------------------------------------------------------

DESTINATION_BOOL_CALLS = (
    "upload_file",
    "create_attachment",
    "create_physical_attachment",
    "set_ready_to_register",
    "register_with_reference",
    "start_work",
    "set_owner",
    "approve",
    "send",
    "assign",
    "add_business_log",
    "add_comment",
    "close",
)


class FakeSource:
    """In-memory SourceDataProvider with injectable failures.

    Failures are keyed by ``(operation, item_id)`` where operation is ``list``,
    ``fetch`` or a dependent entity type.
    """

    def __init__(self) -> None:
        self.items: dict[str, ItemDetails] = {}
        self.dependents: dict[tuple[str, str], list[Dependent]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def add_item(self, item_id: str, category: Category = Category.INCOMING, **kwargs: Any) -> ItemDetails:
        details = ItemDetails(item_id=item_id, category=category, **kwargs)
        self.items[item_id] = details
        return details

    def add_dependents(self, item_id: str, entity_type: str, count: int) -> list[Dependent]:
        dependents = [
            Dependent(dependent_id=f"{entity_type}-{n}", entity_type=entity_type, payload={"n": n})
            for n in range(1, count + 1)
        ]
        self.dependents[(item_id, entity_type)] = dependents
        return dependents

    def list_item_ids(self, category: Category) -> list[str]:
        self._maybe_fail("list", category.value)
        return [item_id for item_id, details in self.items.items() if details.category == category]

    def fetch(self, item_id: str) -> ItemDetails:
        self.calls.append(("fetch", item_id))
        self._maybe_fail("fetch", item_id)
        if item_id not in self.items:
            msg = f"Correspondence {item_id} not found in the source system"
            raise SourceError(msg)
        return self.items[item_id]

    def fetch_dependents(self, item_id: str, entity_type: str) -> list[Dependent]:
        self.calls.append((entity_type, item_id))
        self._maybe_fail(entity_type, item_id)
        return list(self.dependents.get((item_id, entity_type), []))

    def _maybe_fail(self, operation: str, key: str) -> None:
        error = self.failures.get((operation, key))
        if error is not None:
            raise error


def make_destination() -> Mock:
    """Mock destination accepting every call."""
    destination = Mock()
    destination.create_batch.return_value = "batch-1"
    destination.create_correspondence.return_value = "doc-1"
    for name in DESTINATION_BOOL_CALLS:
        getattr(destination, name).return_value = True
    return destination


@pytest.fixture
def store() -> Generator[SqlAlchemyStore]:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    sqlite_store = SqlAlchemyStore(engine)
    sqlite_store.create_schema()
    yield sqlite_store
    engine.dispose()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def destination() -> Mock:
    return make_destination()


@pytest.fixture
def engine_factory(
    store: SqlAlchemyStore, source: FakeSource, destination: Mock
) -> Callable[..., PhaseEngine]:
    """Build a PhaseEngine over the shared fakes; settle delays never sleep."""

    def build(category: Category = Category.INCOMING, **kwargs: Any) -> PhaseEngine:
        pipeline = build_pipeline(category, sleep=lambda _seconds: None)
        return PhaseEngine(pipeline, store, source, destination, **kwargs)

    return build
