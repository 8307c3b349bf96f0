"""Phase engine: advances one item by one phase of its pipeline.

Advance Flow
------------
1. Load the item's MigrationRecord, creating it at the entry phase if missing
2. COMPLETED records are a no-op success; FAILED (exhausted) records are
   reported as failed without touching any collaborator
3. Claim the item's lease in the store so no other run works on it
4. Mark the current phase IN_PROGRESS and run its handler
5. Success: complete the phase, move to the next one (or to COMPLETED),
   reset the retry counter
   Failure: record the error on the phase, bump the retry counter, and mark
   the record FAILED once the counter reaches max_retries
6. Persist, release the lease, return the outcome

While the lease is held a heartbeat thread renews it, and every save checks
that this run still owns the item. A run that lost its item raises
LeaseLostError and writes nothing more.

Every transition is saved before advance() returns. Multi-call handlers save
their own step checkpoints through the PhaseContext they are given.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Final

from .checkpoint import PhaseContext
from .exceptions import ItemLockedError, LeaseLostError, MigrationError
from .models import Category, MigrationRecord, Outcome

if TYPE_CHECKING:
    from .pipelines import Pipeline
    from .protocols import DestinationClient, MigrationStore, SourceDataProvider

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_USER: Final[str] = "itba-emp1"
DEFAULT_LEASE_SECONDS: Final[int] = 600


def default_owner() -> str:
    """Identify this process as a lease holder."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseHeartbeat:
    """Background thread renewing a lease until stopped.

    ``renew`` returns False once the lease belongs to someone else; the
    heartbeat then stops and reports ``lost``.

    Usage:
        heartbeat = LeaseHeartbeat(lambda: store.claim_record(...), interval=200.0)
        heartbeat.start()
        ...
        heartbeat.stop()
    """

    lost: bool

    def __init__(self, renew: Callable[[], bool], interval: float, *, name: str = "lease-heartbeat") -> None:
        self._renew = renew
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._beat, name=name, daemon=True)
        self.lost = False

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()

    def _beat(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                renewed = self._renew()
            except Exception:
                logger.exception(f"{self._thread.name}: could not renew lease")
                continue
            if not renewed:
                logger.warning(f"{self._thread.name}: lease was taken over by another run")
                self.lost = True
                return


class PhaseEngine:
    """Runs the handler of an item's current phase and records the outcome.

    Usage:
        engine = PhaseEngine(build_pipeline(Category.INCOMING), store, source, destination)
        outcome = engine.advance("item-42")
    """

    pipeline: Pipeline
    _store: MigrationStore
    _source: SourceDataProvider
    _destination: DestinationClient

    def __init__(
        self,
        pipeline: Pipeline,
        store: MigrationStore,
        source: SourceDataProvider,
        destination: DestinationClient,
        *,
        default_user: str = DEFAULT_USER,
        max_retries: int = 3,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        owner: str | None = None,
    ) -> None:
        self.pipeline = pipeline
        self._store = store
        self._source = source
        self._destination = destination
        self._default_user = default_user
        self._max_retries = max_retries
        self._lease = timedelta(seconds=lease_seconds)
        self._owner = owner or default_owner()

    @property
    def category(self) -> Category:
        return self.pipeline.category

    @property
    def store(self) -> MigrationStore:
        return self._store

    @property
    def source(self) -> SourceDataProvider:
        return self._source

    def new_record(self, item_id: str) -> MigrationRecord:
        return MigrationRecord.new(
            self.category,
            item_id,
            self.pipeline.phases,
            first_step=self.pipeline.first_step(self.pipeline.entry_phase),
            max_retries=self._max_retries,
        )

    def load_or_create(self, item_id: str) -> MigrationRecord:
        record = self._store.get_record(self.category, item_id)
        if record is None:
            record = self._store.add_record(self.new_record(item_id))
            logger.info(f"Created {self.category} migration record for item {item_id}")
        return record

    def advance(self, item_id: str) -> Outcome:
        """Run the current phase of one item.

        Raises:
            ItemLockedError: If another run currently holds the item's lease
            LeaseLostError: If another run took the item over while its phase was running
        """
        record = self.load_or_create(item_id)
        if record.is_completed:
            logger.debug(f"Item {item_id} already completed")
            return Outcome.SUCCESS
        if record.is_exhausted:
            logger.warning(f"Item {item_id} exhausted its retries at {record.current_phase}: {record.last_error}")
            return Outcome.FAILED

        with self._lease_on(item_id) as heartbeat:
            # Re-read under the lease; another run may have moved it meanwhile
            record = self._store.get_record(self.category, item_id) or record
            if record.is_completed:
                return Outcome.SUCCESS
            if record.is_exhausted:
                return Outcome.FAILED
            return self._run_current_phase(record, heartbeat)

    def reset(self, item_id: str, *, restart: bool = False) -> MigrationRecord | None:
        """Clear the error state of an item so it is picked up again."""
        record = self._store.get_record(self.category, item_id)
        if record is None:
            return None
        with self._lease_on(item_id) as heartbeat:
            record = self._store.get_record(self.category, item_id) or record
            record.reset(
                self.pipeline.phases,
                first_step=self.pipeline.first_step(self.pipeline.entry_phase),
                restart=restart,
            )
            self._save(heartbeat, record)
        logger.info(f"Reset item {item_id} ({'full restart' if restart else 'current phase'})")
        return record

    def _run_current_phase(self, record: MigrationRecord, heartbeat: LeaseHeartbeat) -> Outcome:
        phase = record.current_phase
        handler = self.pipeline.handler_for(phase)

        def save(checkpointed: MigrationRecord) -> MigrationRecord:
            return self._save(heartbeat, checkpointed)

        record.begin_phase()
        save(record)
        ctx = PhaseContext(
            record=record,
            source=self._source,
            destination=self._destination,
            save=save,
            default_user=self._default_user,
        )

        try:
            accepted = handler(ctx)
        except LeaseLostError:
            logger.error(f"Item {record.item_id} was taken over by another run during {phase}; stopping")
            raise
        except MigrationError as e:
            logger.warning(f"Item {record.item_id} failed in {phase} at step {record.current_step}: {e}")
            return self._fail(heartbeat, record, str(e))
        except Exception as e:
            logger.exception(f"Item {record.item_id} failed in {phase} at step {record.current_step}")
            return self._fail(heartbeat, record, f"{type(e).__name__}: {e}")

        if accepted is False:
            logger.warning(f"Item {record.item_id}: {phase} handler reported failure")
            return self._fail(heartbeat, record, f"{phase} handler reported failure")

        successor = self.pipeline.successor(phase)
        record.mark_phase_completed(
            successor,
            self.pipeline.successor(successor) if successor else None,
            self.pipeline.first_step(successor),
        )
        save(record)
        logger.info(f"Item {record.item_id} completed {phase}, now at {record.current_phase}")
        return Outcome.SUCCESS

    def _fail(self, heartbeat: LeaseHeartbeat, record: MigrationRecord, error: str) -> Outcome:
        record.mark_phase_error(error)
        self._save(heartbeat, record)
        if record.is_exhausted:
            logger.error(
                f"Item {record.item_id} marked FAILED after {record.retry_count} attempt(s) at {record.current_phase}"
            )
        return Outcome.FAILED

    def _save(self, heartbeat: LeaseHeartbeat, record: MigrationRecord) -> MigrationRecord:
        """Persist ``record`` only while this run still owns the item.

        Raises:
            LeaseLostError: If the heartbeat lost the lease or the stored owner differs
        """
        if heartbeat.lost:
            msg = f"Lease on item {record.item_id} was lost; not saving"
            raise LeaseLostError(msg)
        return self._store.save_record(record, owner=self._owner)

    @contextmanager
    def _lease_on(self, item_id: str) -> Iterator[LeaseHeartbeat]:
        if not self._store.claim_record(self.category, item_id, self._owner, self._lease):
            msg = f"Item {item_id} is being processed by another run"
            raise ItemLockedError(msg)
        heartbeat = LeaseHeartbeat(
            lambda: self._store.claim_record(self.category, item_id, self._owner, self._lease),
            self._lease.total_seconds() / 3,
            name=f"lease-{self.category}-{item_id}",
        )
        heartbeat.start()
        try:
            yield heartbeat
        finally:
            heartbeat.stop()
            self._store.release_record(self.category, item_id, self._owner)
