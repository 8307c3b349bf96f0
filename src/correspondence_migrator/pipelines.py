"""
Pipeline variants, one per correspondence category.

All three categories share the same engine; they only differ in their ordered
phase list and in which creation and approval steps they run.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from .exceptions import ConfigurationError
from .handlers import (
    ClosingHandler,
    PrepareDataHandler,
    approval_handler,
    assignment_handler,
    business_log_handler,
    comment_handler,
    creation_handler,
)
from .models import ApprovalStep, Category, CreationStep, Phase

if TYPE_CHECKING:
    from .protocols import PhaseHandler

PHASES: Final[dict[Category, list[Phase]]] = {
    Category.INCOMING: [
        Phase.PREPARE_DATA,
        Phase.CREATION,
        Phase.ASSIGNMENT,
        Phase.BUSINESS_LOG,
        Phase.COMMENT,
        Phase.CLOSING,
    ],
    Category.OUTGOING: [
        Phase.PREPARE_DATA,
        Phase.CREATION,
        Phase.ASSIGNMENT,
        Phase.APPROVAL,
        Phase.BUSINESS_LOG,
        Phase.COMMENT,
        Phase.CLOSING,
    ],
    Category.INTERNAL: [
        Phase.PREPARE_DATA,
        Phase.CREATION,
        Phase.ASSIGNMENT,
        Phase.APPROVAL,
        Phase.BUSINESS_LOG,
        Phase.CLOSING,
    ],
}

_BASE_CREATION_STEPS: Final[list[CreationStep]] = [
    CreationStep.GET_DETAILS,
    CreationStep.UPLOAD_MAIN_ATTACHMENT,
    CreationStep.CREATE_PRIMARY_OBJECT,
    CreationStep.UPLOAD_OTHER_ATTACHMENTS,
    CreationStep.CREATE_PHYSICAL_ATTACHMENT,
]

CREATION_STEPS: Final[dict[Category, list[CreationStep]]] = {
    Category.INCOMING: [
        *_BASE_CREATION_STEPS,
        CreationStep.SET_READY_TO_REGISTER,
        CreationStep.REGISTER_WITH_REFERENCE,
        CreationStep.START_WORK,
        CreationStep.SET_OWNER,
    ],
    Category.OUTGOING: list(_BASE_CREATION_STEPS),
    Category.INTERNAL: list(_BASE_CREATION_STEPS),
}

APPROVAL_STEPS: Final[dict[Category, list[ApprovalStep]]] = {
    Category.OUTGOING: [
        ApprovalStep.APPROVE_CORRESPONDENCE,
        ApprovalStep.REGISTER_WITH_REFERENCE,
        ApprovalStep.SEND_CORRESPONDENCE,
    ],
    Category.INTERNAL: [
        ApprovalStep.APPROVE_CORRESPONDENCE,
        ApprovalStep.REGISTER_WITH_REFERENCE,
        ApprovalStep.SEND_CORRESPONDENCE,
        ApprovalStep.SET_OWNER,
    ],
}

DEFAULT_REGISTER_SETTLE_SECONDS: Final[float] = 1.0


@dataclass
class Pipeline:
    """Ordered phase list plus the handler registered for each phase."""

    category: Category
    phases: list[Phase]
    handlers: dict[Phase, PhaseHandler]

    @property
    def entry_phase(self) -> Phase:
        return self.phases[0]

    def successor(self, phase: Phase) -> Phase | None:
        if phase not in self.phases:
            msg = f"{phase} is not part of the {self.category} pipeline"
            raise ConfigurationError(msg)
        index = self.phases.index(phase)
        return self.phases[index + 1] if index + 1 < len(self.phases) else None

    def handler_for(self, phase: Phase) -> PhaseHandler:
        try:
            return self.handlers[phase]
        except KeyError as e:
            msg = f"No handler registered for {phase} in the {self.category} pipeline"
            raise ConfigurationError(msg) from e

    def first_step(self, phase: Phase | None) -> str | None:
        if phase is None:
            return None
        return self.handler_for(phase).first_step()


def build_pipeline(
    category: Category,
    *,
    register_settle_seconds: float = DEFAULT_REGISTER_SETTLE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Pipeline:
    """Assemble the pipeline of one category from the variant tables."""
    handlers: dict[Phase, PhaseHandler] = {
        Phase.PREPARE_DATA: PrepareDataHandler(),
        Phase.CREATION: creation_handler(
            CREATION_STEPS[category],
            settle_seconds={CreationStep.REGISTER_WITH_REFERENCE: register_settle_seconds},
            sleep=sleep,
        ),
        Phase.ASSIGNMENT: assignment_handler(sleep=sleep),
        Phase.BUSINESS_LOG: business_log_handler(sleep=sleep),
        Phase.COMMENT: comment_handler(sleep=sleep),
        Phase.CLOSING: ClosingHandler(),
    }
    if category in APPROVAL_STEPS:
        handlers[Phase.APPROVAL] = approval_handler(APPROVAL_STEPS[category], sleep=sleep)

    phases = list(PHASES[category])
    return Pipeline(category=category, phases=phases, handlers={phase: handlers[phase] for phase in phases})
