"""
Tests for pipeline variants and phase handlers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import Mock

import pytest

from correspondence_migrator.checkpoint import DependentSequence, PhaseContext, StepSequence
from correspondence_migrator.exceptions import ConfigurationError, StepFailedError
from correspondence_migrator.handlers import ClosingHandler, PrepareDataHandler, creation_handler
from correspondence_migrator.models import (
    PRIMARY_ATTACHMENT_CAPTION,
    ApprovalStep,
    Attachment,
    Category,
    CreationStep,
    MigrationRecord,
    Phase,
)
from correspondence_migrator.pipelines import PHASES, build_pipeline

if TYPE_CHECKING:
    from conftest import FakeSource


def _context(source: FakeSource, destination: Mock, phase: Phase, step: str | None = None) -> PhaseContext:
    record = MigrationRecord.new(Category.INCOMING, "item-1", [phase], first_step=step)
    return PhaseContext(
        record=record,
        source=source,
        destination=destination,
        save=lambda r: r,
        default_user="itba-emp1",
    )


@pytest.mark.unit
class TestPipelineVariants:
    def test_phase_lists(self) -> None:
        assert build_pipeline(Category.INCOMING).phases == [
            Phase.PREPARE_DATA,
            Phase.CREATION,
            Phase.ASSIGNMENT,
            Phase.BUSINESS_LOG,
            Phase.COMMENT,
            Phase.CLOSING,
        ]
        assert Phase.APPROVAL in build_pipeline(Category.OUTGOING).phases
        assert Phase.COMMENT not in build_pipeline(Category.INTERNAL).phases

    @pytest.mark.parametrize("category", list(Category))
    def test_every_phase_has_a_handler(self, category: Category) -> None:
        pipeline = build_pipeline(category)
        assert set(pipeline.handlers) == set(PHASES[category])
        for phase, handler in pipeline.handlers.items():
            assert handler.phase == phase

    def test_successor(self) -> None:
        pipeline = build_pipeline(Category.OUTGOING)
        assert pipeline.successor(Phase.ASSIGNMENT) == Phase.APPROVAL
        assert pipeline.successor(Phase.CLOSING) is None
        with pytest.raises(ConfigurationError):
            build_pipeline(Category.INTERNAL).successor(Phase.COMMENT)

    def test_first_steps(self) -> None:
        pipeline = build_pipeline(Category.INTERNAL)
        assert pipeline.first_step(Phase.CREATION) == CreationStep.GET_DETAILS
        assert pipeline.first_step(Phase.APPROVAL) == ApprovalStep.APPROVE_CORRESPONDENCE
        assert pipeline.first_step(Phase.ASSIGNMENT) is None
        assert pipeline.first_step(None) is None

    def test_incoming_creation_registers_and_starts_work(self) -> None:
        creation = build_pipeline(Category.INCOMING).handler_for(Phase.CREATION)
        assert isinstance(creation, StepSequence)
        assert creation.step_names[-4:] == ["SET_READY_TO_REGISTER", "REGISTER_WITH_REFERENCE", "START_WORK", "SET_OWNER"]

    def test_outgoing_creation_stops_at_physical_attachment(self) -> None:
        creation = build_pipeline(Category.OUTGOING).handler_for(Phase.CREATION)
        assert isinstance(creation, StepSequence)
        assert creation.step_names[-1] == "CREATE_PHYSICAL_ATTACHMENT"

    def test_internal_approval_ends_with_owner(self) -> None:
        approval = build_pipeline(Category.INTERNAL).handler_for(Phase.APPROVAL)
        assert isinstance(approval, StepSequence)
        assert approval.step_names == ["APPROVE_CORRESPONDENCE", "REGISTER_WITH_REFERENCE", "SEND_CORRESPONDENCE", "SET_OWNER"]

    def test_dependent_phases(self) -> None:
        pipeline = build_pipeline(Category.OUTGOING)
        entity_types = {
            phase: handler.entity_type
            for phase, handler in pipeline.handlers.items()
            if isinstance(handler, DependentSequence)
        }
        assert entity_types == {
            Phase.ASSIGNMENT: "assignments",
            Phase.BUSINESS_LOG: "business_logs",
            Phase.COMMENT: "comments",
        }

    def test_register_settles(self, source: FakeSource, destination: Mock) -> None:
        source.add_item("item-1")
        sleep = Mock()
        creation = build_pipeline(Category.INCOMING, register_settle_seconds=2.0, sleep=sleep).handler_for(
            Phase.CREATION
        )
        ctx = _context(source, destination, Phase.CREATION, CreationStep.GET_DETAILS)

        assert creation(ctx) is True

        sleep.assert_called_once_with(2.0)


@pytest.mark.unit
class TestSingleCallHandlers:
    def test_prepare_data_decides_closing(self, source: FakeSource, destination: Mock) -> None:
        source.add_item("item-1", is_archive=True)
        ctx = _context(source, destination, Phase.PREPARE_DATA)

        assert PrepareDataHandler()(ctx) is True

        assert ctx.record.need_to_close is True
        assert destination.method_calls == []

    def test_closing_uses_destination_id(self, source: FakeSource, destination: Mock) -> None:
        details = source.add_item("item-1", as_user="author")
        ctx = _context(source, destination, Phase.CLOSING)
        ctx.record.need_to_close = True
        ctx.record.created_destination_id = "doc-9"

        assert ClosingHandler()(ctx) is True

        destination.close.assert_called_once_with("doc-9", details, "author")


@pytest.mark.unit
class TestCreationSteps:
    def test_non_uploadable_attachments_are_skipped(
        self, source: FakeSource, destination: Mock, caplog: pytest.LogCaptureFixture
    ) -> None:
        source.add_item(
            "item-1",
            attachments=[
                Attachment("att-1", name="a.pdf", file_type="Attachment", caption=PRIMARY_ATTACHMENT_CAPTION, data="QUJD"),
                Attachment("att-2", name="empty.txt", file_type="Other", data=None),
                Attachment("att-3", name="b.txt", file_type="Other", data="REVG"),
            ],
        )
        ctx = _context(source, destination, Phase.CREATION, CreationStep.UPLOAD_OTHER_ATTACHMENTS)
        ctx.record.created_destination_id = "doc-1"
        handler = creation_handler([CreationStep.UPLOAD_OTHER_ATTACHMENTS], sleep=Mock())

        assert handler(ctx) is True

        assert destination.create_attachment.call_count == 1
        assert destination.create_attachment.call_args.args[1].attachment_id == "att-3"
        assert "Skipping attachment att-2" in caplog.text

    def test_rejected_attachment_fails_the_step(self, source: FakeSource, destination: Mock) -> None:
        source.add_item("item-1", attachments=[Attachment("att-9", file_type="Other", data="QUJD")])
        destination.create_attachment.return_value = False
        ctx = _context(source, destination, Phase.CREATION, CreationStep.UPLOAD_OTHER_ATTACHMENTS)
        ctx.record.created_destination_id = "doc-1"
        handler = creation_handler([CreationStep.UPLOAD_OTHER_ATTACHMENTS], sleep=Mock())

        with pytest.raises(StepFailedError, match="att-9"):
            handler(ctx)

    def test_missing_created_id_fails_the_step(self, source: FakeSource, destination: Mock) -> None:
        source.add_item("item-1")
        destination.create_correspondence.return_value = ""
        ctx = _context(source, destination, Phase.CREATION, CreationStep.CREATE_PRIMARY_OBJECT)
        handler = creation_handler([CreationStep.CREATE_PRIMARY_OBJECT], sleep=Mock())

        with pytest.raises(StepFailedError, match="no id"):
            handler(ctx)
        assert ctx.record.created_destination_id is None
