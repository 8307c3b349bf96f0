"""
Phase handlers for the correspondence workflow.

Single-call phases (prepare data, closing) are plain callables. Multi-call
phases (creation, approval) are StepSequence instances assembled from the
step actions below, and dependent-list phases are DependentSequence instances.
Every handler receives a PhaseContext and either returns True, returns False
or raises; the engine records the latter two as a phase error.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Final

from .checkpoint import DependentSequence, PhaseContext, Step, StepSequence, expect_success, require_destination_id
from .exceptions import DataIntegrityError, StepFailedError
from .models import ASSIGNMENTS, BUSINESS_LOGS, ApprovalStep, CreationStep, Dependent, EntityType, Phase
from .protocols import DestinationClient

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

PRIMARY_FILE_NAME: Final[str] = "primary_document.pdf"

StepAction = Callable[[PhaseContext], None]


class PrepareDataHandler:
    """Confirm the item is readable and decide whether it must be closed later."""

    phase: Phase = Phase.PREPARE_DATA

    def first_step(self) -> str | None:
        return None

    def __call__(self, ctx: PhaseContext) -> bool:
        details = ctx.source.fetch(ctx.record.item_id)
        ctx.details = details
        ctx.record.need_to_close = details.needs_closing
        logger.debug(
            f"Prepared item {details.item_id}: {len(details.attachments)} attachment(s), "
            f"need_to_close={ctx.record.need_to_close}"
        )
        return True


class ClosingHandler:
    """Close the destination object, or do nothing for items that stay open."""

    phase: Phase = Phase.CLOSING

    def first_step(self) -> str | None:
        return None

    def __call__(self, ctx: PhaseContext) -> bool:
        if not ctx.record.need_to_close:
            logger.info(f"Item {ctx.record.item_id} does not need closing, skipping")
            return True
        document_id = require_destination_id(ctx, "CLOSE")
        return ctx.destination.close(document_id, ctx.details, ctx.as_user)


# ---------------------------------------------------------------------------
# Creation steps
# ---------------------------------------------------------------------------


def _get_details(ctx: PhaseContext) -> None:
    ctx.details = ctx.source.fetch(ctx.record.item_id)


def _upload_main_attachment(ctx: PhaseContext) -> None:
    primary = ctx.details.primary_attachment()
    if primary is None or not primary.is_uploadable:
        logger.info(f"Item {ctx.record.item_id} has no uploadable main attachment")
        ctx.record.batch_id = None
        return

    batch_id = ctx.record.batch_id
    if batch_id:
        logger.debug(f"Item {ctx.record.item_id}: reusing upload batch {batch_id}")
    else:
        batch_id = ctx.destination.create_batch(ctx.as_user)
        if not batch_id:
            msg = "Destination returned no upload batch id"
            raise StepFailedError(msg)
        # Saved before the upload so a retry fills the same batch
        ctx.record.batch_id = batch_id
        ctx.checkpoint()

    accepted = ctx.destination.upload_file(
        batch_id, 0, primary.file_name(PRIMARY_FILE_NAME), primary.data or "", ctx.as_user
    )
    expect_success(accepted, f"upload of main attachment {primary.attachment_id}")


def _create_primary_object(ctx: PhaseContext) -> None:
    primary = ctx.details.primary_attachment()
    if primary is not None and primary.is_uploadable and not ctx.record.batch_id:
        msg = (
            f"main attachment of item {ctx.record.item_id} was checkpointed as uploaded "
            "but no upload batch id was recorded"
        )
        raise DataIntegrityError(msg)

    document_id = ctx.destination.create_correspondence(ctx.details, ctx.record.batch_id, ctx.as_user)
    if not document_id:
        msg = "Destination returned no id for the created correspondence"
        raise StepFailedError(msg)
    ctx.record.created_destination_id = document_id
    logger.info(f"Created destination object {document_id} for item {ctx.record.item_id}")


def _upload_other_attachments(ctx: PhaseContext) -> None:
    document_id = require_destination_id(ctx, CreationStep.UPLOAD_OTHER_ATTACHMENTS)
    for attachment in ctx.details.other_attachments():
        if not attachment.is_uploadable:
            logger.warning(
                f"Skipping attachment {attachment.attachment_id} of item {ctx.record.item_id}: "
                f"no data or larger than the upload limit ({attachment.estimated_size} bytes)"
            )
            continue
        accepted = ctx.destination.create_attachment(document_id, attachment, ctx.as_user)
        expect_success(accepted, f"attachment {attachment.attachment_id}")


def _document_call(step: str, call: Callable[[DestinationClient, str, PhaseContext], bool]) -> StepAction:
    def run(ctx: PhaseContext) -> None:
        document_id = require_destination_id(ctx, step)
        expect_success(call(ctx.destination, document_id, ctx), step)

    return run


CREATION_ACTIONS: Final[dict[CreationStep, StepAction]] = {
    CreationStep.GET_DETAILS: _get_details,
    CreationStep.UPLOAD_MAIN_ATTACHMENT: _upload_main_attachment,
    CreationStep.CREATE_PRIMARY_OBJECT: _create_primary_object,
    CreationStep.UPLOAD_OTHER_ATTACHMENTS: _upload_other_attachments,
    CreationStep.CREATE_PHYSICAL_ATTACHMENT: _document_call(
        CreationStep.CREATE_PHYSICAL_ATTACHMENT,
        lambda dest, doc, ctx: dest.create_physical_attachment(doc, ctx.details, ctx.as_user),
    ),
    CreationStep.SET_READY_TO_REGISTER: _document_call(
        CreationStep.SET_READY_TO_REGISTER, lambda dest, doc, ctx: dest.set_ready_to_register(doc, ctx.as_user)
    ),
    CreationStep.REGISTER_WITH_REFERENCE: _document_call(
        CreationStep.REGISTER_WITH_REFERENCE,
        lambda dest, doc, ctx: dest.register_with_reference(doc, ctx.details, ctx.as_user),
    ),
    CreationStep.START_WORK: _document_call(
        CreationStep.START_WORK, lambda dest, doc, ctx: dest.start_work(doc, ctx.as_user)
    ),
    CreationStep.SET_OWNER: _document_call(CreationStep.SET_OWNER, lambda dest, doc, ctx: dest.set_owner(doc, ctx.as_user)),
}

APPROVAL_ACTIONS: Final[dict[ApprovalStep, StepAction]] = {
    ApprovalStep.APPROVE_CORRESPONDENCE: _document_call(
        ApprovalStep.APPROVE_CORRESPONDENCE, lambda dest, doc, ctx: dest.approve(doc, ctx.as_user)
    ),
    ApprovalStep.REGISTER_WITH_REFERENCE: _document_call(
        ApprovalStep.REGISTER_WITH_REFERENCE,
        lambda dest, doc, ctx: dest.register_with_reference(doc, ctx.details, ctx.as_user),
    ),
    ApprovalStep.SEND_CORRESPONDENCE: _document_call(
        ApprovalStep.SEND_CORRESPONDENCE, lambda dest, doc, ctx: dest.send(doc, ctx.as_user)
    ),
    ApprovalStep.SET_OWNER: _document_call(ApprovalStep.SET_OWNER, lambda dest, doc, ctx: dest.set_owner(doc, ctx.as_user)),
}


def creation_handler(
    steps: list[CreationStep],
    *,
    settle_seconds: dict[CreationStep, float] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StepSequence:
    settle = settle_seconds or {}
    return StepSequence(
        Phase.CREATION,
        [Step(step.value, CREATION_ACTIONS[step], settle.get(step, 0.0)) for step in steps],
        sleep=sleep,
    )


def approval_handler(steps: list[ApprovalStep], *, sleep: Callable[[float], None] = time.sleep) -> StepSequence:
    return StepSequence(Phase.APPROVAL, [Step(step.value, APPROVAL_ACTIONS[step]) for step in steps], sleep=sleep)


# ---------------------------------------------------------------------------
# Dependent-list phases
# ---------------------------------------------------------------------------


def _assign(destination: DestinationClient, document_id: str, dependent: Dependent, as_user: str) -> bool:
    return destination.assign(document_id, dependent, as_user)


def _add_business_log(destination: DestinationClient, document_id: str, dependent: Dependent, as_user: str) -> bool:
    return destination.add_business_log(document_id, dependent, as_user)


def _add_comment(destination: DestinationClient, document_id: str, dependent: Dependent, as_user: str) -> bool:
    return destination.add_comment(document_id, dependent, as_user)


def assignment_handler(*, sleep: Callable[[float], None] = time.sleep) -> DependentSequence:
    return DependentSequence(Phase.ASSIGNMENT, ASSIGNMENTS, _assign, sleep=sleep)


def business_log_handler(*, sleep: Callable[[float], None] = time.sleep) -> DependentSequence:
    return DependentSequence(Phase.BUSINESS_LOG, BUSINESS_LOGS, _add_business_log, sleep=sleep)


def comment_handler(*, sleep: Callable[[float], None] = time.sleep) -> DependentSequence:
    return DependentSequence(Phase.COMMENT, EntityType.COMMENTS.value, _add_comment, sleep=sleep)
