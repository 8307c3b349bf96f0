"""Step checkpointing for phases made of several remote calls.

A multi-call phase is an ordered list of named steps. The record's
``current_step`` names the next step to run; after every successful step the
token moves forward and the record is persisted immediately. A failing step
leaves the token where it was, so the next attempt retries exactly that call
and never repeats one that already succeeded. The terminal token is
``COMPLETED``.

Dependent-list phases (assignments, business logs, comments) run one step per
dependent, named ``<entity_type>:<dependent_id>``. The list is fetched
again on every attempt and progress is the set of step names already applied
(``applied_steps``), not a position in the list.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .exceptions import DataIntegrityError, StepFailedError
from .models import STEP_COMPLETED, Dependent, ItemDetails, MigrationRecord, Phase

if TYPE_CHECKING:
    from .protocols import DestinationClient, SourceDataProvider

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class PhaseContext:
    """Everything a phase handler needs to work on one record."""

    record: MigrationRecord
    source: SourceDataProvider
    destination: DestinationClient
    save: Callable[[MigrationRecord], MigrationRecord]
    default_user: str
    _details: ItemDetails | None = field(default=None, repr=False)

    @property
    def details(self) -> ItemDetails:
        # Reading the source is side-effect free, so a resumed phase refetches
        if self._details is None:
            self._details = self.source.fetch(self.record.item_id)
        return self._details

    @details.setter
    def details(self, value: ItemDetails) -> None:
        self._details = value

    @property
    def as_user(self) -> str:
        return self.details.as_user or self.default_user

    def checkpoint(self) -> None:
        self.save(self.record)


def require_destination_id(ctx: PhaseContext, step: str) -> str:
    """Return the destination id or fail loudly if an earlier step lost it."""
    document_id = ctx.record.created_destination_id
    if not document_id:
        msg = (
            f"step {step} of {ctx.record.current_phase} needs the destination id of item "
            f"{ctx.record.item_id}, but none was recorded"
        )
        raise DataIntegrityError(msg)
    return document_id


def expect_success(accepted: bool, action: str) -> None:
    if not accepted:
        msg = f"Destination rejected {action}"
        raise StepFailedError(msg)


@dataclass(frozen=True)
class Step:
    name: str
    action: Callable[[PhaseContext], None]
    settle_seconds: float = 0.0


class StepSequence:
    """Phase handler running a fixed list of checkpointed steps."""

    phase: Phase
    _steps: list[Step]

    def __init__(self, phase: Phase, steps: list[Step], *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.phase = phase
        self._steps = steps
        self._sleep = sleep

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self._steps]

    def first_step(self) -> str | None:
        return self._steps[0].name if self._steps else None

    def steps_for(self, ctx: PhaseContext) -> list[Step]:  # noqa: ARG002
        return self._steps

    def __call__(self, ctx: PhaseContext) -> bool:
        record = ctx.record
        if record.current_step == STEP_COMPLETED:
            return True

        steps = self.steps_for(ctx)
        names = [step.name for step in steps]
        if record.current_step is None:
            start = 0
        elif record.current_step in names:
            start = names.index(record.current_step)
        else:
            msg = f"checkpoint {record.current_step!r} of item {record.item_id} is not a step of {self.phase}"
            raise DataIntegrityError(msg)

        if start:
            logger.info(f"Resuming {self.phase} of item {record.item_id} at step {names[start]}")

        for index in range(start, len(steps)):
            step = steps[index]
            logger.debug(f"Item {record.item_id}: running {self.phase}/{step.name}")
            step.action(ctx)
            record.current_step = names[index + 1] if index + 1 < len(names) else STEP_COMPLETED
            ctx.checkpoint()
            if step.settle_seconds:
                self._sleep(step.settle_seconds)

        record.current_step = STEP_COMPLETED
        return True


class DependentSequence(StepSequence):
    """Phase handler replaying one dependent list, one checkpointed step per dependent.

    Each dependent is replayed once regardless of the order the source returns
    them in. A dependent id seen more than once gets ``#2``, ``#3`` and so on
    appended to its step name.
    """

    entity_type: str

    def __init__(
        self,
        phase: Phase,
        entity_type: str,
        apply: Callable[[DestinationClient, str, Dependent, str], bool],
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(phase, [], sleep=sleep)
        self.entity_type = entity_type
        self._apply = apply

    def first_step(self) -> str | None:
        return None

    def steps_for(self, ctx: PhaseContext) -> list[Step]:
        dependents = ctx.source.fetch_dependents(ctx.record.item_id, self.entity_type)
        logger.debug(f"Item {ctx.record.item_id}: {len(dependents)} {self.entity_type} to replay")
        seen: Counter[str] = Counter()
        steps: list[Step] = []
        for dependent in dependents:
            seen[dependent.dependent_id] += 1
            name = f"{self.entity_type}:{dependent.dependent_id}"
            if seen[dependent.dependent_id] > 1:
                name = f"{name}#{seen[dependent.dependent_id]}"
            steps.append(Step(name, self._action(dependent, name)))
        return steps

    def __call__(self, ctx: PhaseContext) -> bool:
        record = ctx.record
        if record.current_step == STEP_COMPLETED:
            return True

        applied = set(record.applied_steps)
        pending = [step for step in self.steps_for(ctx) if step.name not in applied]
        if applied:
            logger.info(
                f"Resuming {self.phase} of item {record.item_id}: "
                f"{len(applied)} already replayed, {len(pending)} to go"
            )

        for index, step in enumerate(pending):
            logger.debug(f"Item {record.item_id}: running {self.phase}/{step.name}")
            step.action(ctx)
            record.applied_steps.append(step.name)
            record.current_step = pending[index + 1].name if index + 1 < len(pending) else STEP_COMPLETED
            ctx.checkpoint()

        record.current_step = STEP_COMPLETED
        return True

    def _action(self, dependent: Dependent, step: str) -> Callable[[PhaseContext], None]:
        def run(ctx: PhaseContext) -> None:
            document_id = require_destination_id(ctx, step)
            expect_success(self._apply(ctx.destination, document_id, dependent, ctx.as_user), step)

        return run
