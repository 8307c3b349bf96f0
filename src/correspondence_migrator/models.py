"""Data models for the correspondence migration workflow.

These models carry the durable per-item state (MigrationRecord and
SubEntityImportStatus), the normalized data read from the source system,
and the report returned by every batch run. State changes happen through the
transition methods defined here; the engine and aggregator never assign the
status fields directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final

MAX_ATTACHMENT_BYTES: Final[int] = 200 * 1024 * 1024
PRIMARY_ATTACHMENT_CAPTION: Final[str] = "مرفق"  # "attachment" in the source system's UI language
ATTACHMENT_FILE_TYPE: Final[str] = "Attachment"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Category(StrEnum):
    """Correspondence category; each one has its own pipeline variant."""

    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"
    INTERNAL = "INTERNAL"


class Phase(StrEnum):
    PREPARE_DATA = "PREPARE_DATA"
    CREATION = "CREATION"
    ASSIGNMENT = "ASSIGNMENT"
    APPROVAL = "APPROVAL"
    BUSINESS_LOG = "BUSINESS_LOG"
    COMMENT = "COMMENT"
    CLOSING = "CLOSING"
    COMPLETED = "COMPLETED"  # terminal, never has a handler


class PhaseStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class OverallStatus(StrEnum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ImportStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EntityStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RunStatus(StrEnum):
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    ERROR = "ERROR"


class Outcome(StrEnum):
    """Result of advancing one item by one phase."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CreationStep(StrEnum):
    GET_DETAILS = "GET_DETAILS"
    UPLOAD_MAIN_ATTACHMENT = "UPLOAD_MAIN_ATTACHMENT"
    CREATE_PRIMARY_OBJECT = "CREATE_PRIMARY_OBJECT"
    UPLOAD_OTHER_ATTACHMENTS = "UPLOAD_OTHER_ATTACHMENTS"
    CREATE_PHYSICAL_ATTACHMENT = "CREATE_PHYSICAL_ATTACHMENT"
    SET_READY_TO_REGISTER = "SET_READY_TO_REGISTER"
    REGISTER_WITH_REFERENCE = "REGISTER_WITH_REFERENCE"
    START_WORK = "START_WORK"
    SET_OWNER = "SET_OWNER"
    COMPLETED = "COMPLETED"


class ApprovalStep(StrEnum):
    APPROVE_CORRESPONDENCE = "APPROVE_CORRESPONDENCE"
    REGISTER_WITH_REFERENCE = "REGISTER_WITH_REFERENCE"
    SEND_CORRESPONDENCE = "SEND_CORRESPONDENCE"
    SET_OWNER = "SET_OWNER"
    COMPLETED = "COMPLETED"


STEP_COMPLETED: Final[str] = "COMPLETED"


class EntityType(StrEnum):
    """Dependent collections imported by the related-data path."""

    ATTACHMENTS = "attachments"
    COMMENTS = "comments"
    COPY_TOS = "copy_tos"
    CURRENT_DEPARTMENTS = "current_departments"
    CURRENT_POSITIONS = "current_positions"
    CURRENT_USERS = "current_users"
    CUSTOM_FIELDS = "custom_fields"
    LINKS = "links"
    SEND_TOS = "send_tos"
    TRANSACTIONS = "transactions"


# Dependents replayed by the workflow phases rather than staged
ASSIGNMENTS: Final[str] = "assignments"
BUSINESS_LOGS: Final[str] = "business_logs"


# ---------------------------------------------------------------------------
# Migration record
# ---------------------------------------------------------------------------


@dataclass
class PhaseState:
    status: PhaseStatus = PhaseStatus.PENDING
    error: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"status": self.status.value, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        return cls(status=PhaseStatus(data.get("status", PhaseStatus.PENDING)), error=data.get("error"))


@dataclass
class MigrationRecord:
    """Durable migration state of one source item in one pipeline variant.

    The record is the resume point: it says which phase the item is in, how far
    the current phase got (``current_step``), and which destination artifacts
    were already produced. ``phase_states`` keeps a status/error pair for every
    phase of the pipeline, including phases that are no longer current.
    """

    category: Category
    item_id: str
    current_phase: Phase
    next_phase: Phase | None
    phase_states: dict[Phase, PhaseState]
    phase_status: PhaseStatus = PhaseStatus.PENDING
    current_step: str | None = None
    applied_steps: list[str] = field(default_factory=list)  # dependent steps already replayed
    created_destination_id: str | None = None
    batch_id: str | None = None  # upload batch holding the main attachment
    need_to_close: bool = False
    retry_count: int = 0
    max_retries: int = 3
    overall_status: OverallStatus = OverallStatus.IN_PROGRESS
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error_at: datetime | None = None
    created_at: datetime | None = None
    last_modified_at: datetime | None = None
    id: int | None = None

    @classmethod
    def new(
        cls,
        category: Category,
        item_id: str,
        phases: list[Phase],
        *,
        first_step: str | None = None,
        max_retries: int = 3,
    ) -> MigrationRecord:
        """Create a record positioned at the first phase of ``phases``."""
        return cls(
            category=category,
            item_id=item_id,
            current_phase=phases[0],
            next_phase=phases[1] if len(phases) > 1 else None,
            phase_states={phase: PhaseState() for phase in phases},
            current_step=first_step,
            max_retries=max_retries,
            created_at=utcnow(),
        )

    @property
    def is_completed(self) -> bool:
        return self.overall_status == OverallStatus.COMPLETED

    @property
    def is_exhausted(self) -> bool:
        return self.overall_status == OverallStatus.FAILED

    @property
    def is_retryable(self) -> bool:
        return self.phase_status == PhaseStatus.ERROR and self.retry_count < self.max_retries

    @property
    def last_error(self) -> str | None:
        state = self.phase_states.get(self.current_phase)
        return state.error if state else None

    def phase_state(self, phase: Phase) -> PhaseState:
        return self.phase_states.setdefault(phase, PhaseState())

    def begin_phase(self) -> None:
        self.phase_status = PhaseStatus.IN_PROGRESS
        self.phase_state(self.current_phase).status = PhaseStatus.IN_PROGRESS
        if self.started_at is None:
            self.started_at = utcnow()

    def mark_phase_completed(
        self,
        new_phase: Phase | None,
        new_next_phase: Phase | None,
        first_step: str | None = None,
    ) -> None:
        """Complete the current phase and move to ``new_phase``.

        ``new_phase`` of ``None`` means the pipeline is finished: the record moves
        to the terminal COMPLETED phase and its overall status becomes COMPLETED.
        """
        state = self.phase_state(self.current_phase)
        state.status = PhaseStatus.COMPLETED
        state.error = None
        self.retry_count = 0
        self.applied_steps = []

        if new_phase is None:
            self.current_phase = Phase.COMPLETED
            self.next_phase = None
            self.phase_status = PhaseStatus.COMPLETED
            self.current_step = None
            self.overall_status = OverallStatus.COMPLETED
            self.completed_at = utcnow()
            return

        self.current_phase = new_phase
        self.next_phase = new_next_phase
        self.phase_status = PhaseStatus.PENDING
        self.current_step = first_step

    def mark_phase_error(self, error: str) -> None:
        state = self.phase_state(self.current_phase)
        state.status = PhaseStatus.ERROR
        state.error = error
        self.phase_status = PhaseStatus.ERROR
        self.last_error_at = utcnow()
        self.retry_count += 1
        if self.retry_count >= self.max_retries:
            self.overall_status = OverallStatus.FAILED

    def reset(
        self,
        phases: list[Phase],
        *,
        first_step: str | None = None,
        restart: bool = False,
    ) -> None:
        """Make the record processable again after manual intervention.

        Without ``restart`` only the current phase is cleared, so the item resumes
        at its checkpoint. With ``restart`` every phase and artifact is cleared and
        the item goes back to the first phase of ``phases``.
        """
        if not restart and self.current_phase == Phase.COMPLETED:
            return

        self.retry_count = 0
        self.overall_status = OverallStatus.IN_PROGRESS
        self.phase_status = PhaseStatus.PENDING

        if not restart:
            state = self.phase_state(self.current_phase)
            state.status = PhaseStatus.PENDING
            state.error = None
            return

        self.phase_states = {phase: PhaseState() for phase in phases}
        self.current_phase = phases[0]
        self.next_phase = phases[1] if len(phases) > 1 else None
        self.current_step = first_step
        self.created_destination_id = None
        self.applied_steps = []
        self.batch_id = None
        self.need_to_close = False
        self.started_at = None
        self.completed_at = None
        self.last_error_at = None


# ---------------------------------------------------------------------------
# Related-data import status
# ---------------------------------------------------------------------------


@dataclass
class EntityState:
    status: EntityStatus = EntityStatus.PENDING
    error: str | None = None
    imported_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "error": self.error, "imported_count": self.imported_count}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityState:
        return cls(
            status=EntityStatus(data.get("status", EntityStatus.PENDING)),
            error=data.get("error"),
            imported_count=int(data.get("imported_count", 0)),
        )


def derive_overall_status(statuses: list[EntityStatus]) -> ImportStatus:
    """Roll per-entity statuses up into one import status.

    IN_PROGRESS wins over everything, then all-SUCCESS means COMPLETED, then any
    FAILED means FAILED. Anything else (including no entities at all) is PENDING.
    """
    if EntityStatus.IN_PROGRESS in statuses:
        return ImportStatus.IN_PROGRESS
    if statuses and all(status == EntityStatus.SUCCESS for status in statuses):
        return ImportStatus.COMPLETED
    if EntityStatus.FAILED in statuses:
        return ImportStatus.FAILED
    return ImportStatus.PENDING


@dataclass
class SubEntityImportStatus:
    """Import progress of every dependent collection of one parent item."""

    parent_id: str
    entities: dict[str, EntityState]
    overall_status: ImportStatus = ImportStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    successful_entities_count: int = 0
    failed_entities_count: int = 0
    total_entities_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error_at: datetime | None = None
    created_at: datetime | None = None
    last_modified_at: datetime | None = None
    id: int | None = None

    @classmethod
    def new(cls, parent_id: str, entity_types: list[str], *, max_retries: int = 3) -> SubEntityImportStatus:
        status = cls(
            parent_id=parent_id,
            entities={entity_type: EntityState() for entity_type in entity_types},
            max_retries=max_retries,
            created_at=utcnow(),
        )
        status.refresh()
        return status

    @property
    def is_completed(self) -> bool:
        return self.overall_status == ImportStatus.COMPLETED

    @property
    def is_retryable(self) -> bool:
        return self.overall_status == ImportStatus.FAILED and self.retry_count < self.max_retries

    def failed_entity_types(self) -> list[str]:
        return [name for name, state in self.entities.items() if state.status == EntityStatus.FAILED]

    def track(self, entity_types: list[str]) -> list[str]:
        """Add the entity types not tracked yet as PENDING and return them."""
        added = [entity_type for entity_type in entity_types if entity_type not in self.entities]
        for entity_type in added:
            self.entities[entity_type] = EntityState()
        if added:
            self.completed_at = None
            self.refresh()
        return added

    def mark_in_progress(self, entity_type: str) -> None:
        state = self.entities.setdefault(entity_type, EntityState())
        state.status = EntityStatus.IN_PROGRESS
        state.error = None
        if self.started_at is None:
            self.started_at = utcnow()
        self.refresh()

    def mark_success(self, entity_type: str, imported_count: int) -> None:
        state = self.entities.setdefault(entity_type, EntityState())
        state.status = EntityStatus.SUCCESS
        state.error = None
        state.imported_count = imported_count
        self.refresh()

    def mark_failed(self, entity_type: str, error: str) -> None:
        state = self.entities.setdefault(entity_type, EntityState())
        state.status = EntityStatus.FAILED
        state.error = error
        self.last_error_at = utcnow()
        self.refresh()

    def refresh(self) -> None:
        """Recompute counts and the derived overall status from ``entities``."""
        self.overall_status = derive_overall_status(self._recount())
        if self.overall_status == ImportStatus.COMPLETED and self.completed_at is None:
            self.completed_at = utcnow()

    def mark_aborted(self, error: str) -> None:
        """Record an unexpected failure of the whole import run."""
        self.overall_status = ImportStatus.FAILED
        self.last_error_at = utcnow()
        self.retry_count += 1
        for state in self.entities.values():
            if state.status == EntityStatus.IN_PROGRESS:
                state.status = EntityStatus.FAILED
                state.error = error
        self._recount()

    def _recount(self) -> list[EntityStatus]:
        statuses = [state.status for state in self.entities.values()]
        self.total_entities_count = len(statuses)
        self.successful_entities_count = statuses.count(EntityStatus.SUCCESS)
        self.failed_entities_count = statuses.count(EntityStatus.FAILED)
        return statuses

    def reset(self) -> None:
        for state in self.entities.values():
            state.status = EntityStatus.PENDING
            state.error = None
            state.imported_count = 0
        self.retry_count = 0
        self.started_at = None
        self.completed_at = None
        self.last_error_at = None
        self.refresh()


# ---------------------------------------------------------------------------
# Source data
# ---------------------------------------------------------------------------


@dataclass
class Attachment:
    """A file attached to a correspondence in the source system."""

    attachment_id: str
    name: str = ""
    file_type: str = ""
    caption: str = ""
    data: str | None = None  # base64 encoded file content

    @property
    def estimated_size(self) -> int:
        return len(self.data) * 3 // 4 if self.data else 0

    @property
    def is_uploadable(self) -> bool:
        return bool(self.data) and self.estimated_size <= MAX_ATTACHMENT_BYTES

    def file_name(self, default: str = "attachment.pdf") -> str:
        return self.name.strip() or default


@dataclass
class ItemDetails:
    """A correspondence as read from the source system."""

    item_id: str
    category: Category
    subject: str = ""
    as_user: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    is_final: bool = False
    is_archive: bool = False
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def needs_closing(self) -> bool:
        return self.is_final or self.is_archive

    def primary_attachment(self) -> Attachment | None:
        """Pick the attachment uploaded as the correspondence's main document.

        Prefers a PDF attachment carrying the attachment caption, then falls back
        to the first plain attachment.
        """
        candidates = [a for a in self.attachments if a.file_type == ATTACHMENT_FILE_TYPE]
        for attachment in candidates:
            if "pdf" in attachment.name.lower() and attachment.caption == PRIMARY_ATTACHMENT_CAPTION:
                return attachment
        return candidates[0] if candidates else None

    def other_attachments(self) -> list[Attachment]:
        primary = self.primary_attachment()
        return [a for a in self.attachments if primary is None or a.attachment_id != primary.attachment_id]


@dataclass
class Dependent:
    """One dependent sub-record of an item (comment, assignment, log entry, ...)."""

    dependent_id: str
    entity_type: str
    payload: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Run reporting
# ---------------------------------------------------------------------------


def determine_run_status(succeeded: int, failed: int) -> RunStatus:
    if failed == 0:
        return RunStatus.SUCCESS
    if succeeded > 0:
        return RunStatus.PARTIAL_SUCCESS
    return RunStatus.ERROR


@dataclass
class RunReport:
    """Outcome of one batch or targeted run."""

    operation: str
    category: Category | None = None
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    setup_error: str | None = None

    @classmethod
    def setup_failure(cls, operation: str, error: str, category: Category | None = None) -> RunReport:
        return cls(operation=operation, category=category, setup_error=error, errors=[error])

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def status(self) -> RunStatus:
        if self.setup_error is not None:
            return RunStatus.ERROR
        return determine_run_status(self.succeeded, self.failed)

    @property
    def message(self) -> str:
        if self.setup_error is not None:
            return f"{self.operation} failed: {self.setup_error}"
        return f"{self.operation}: {self.succeeded} succeeded, {self.failed} failed out of {self.total}"

    def record_success(self) -> None:
        self.succeeded += 1

    def record_failure(self, item_id: str, error: str) -> None:
        self.failed += 1
        self.errors.append(f"{item_id}: {error}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "category": self.category.value if self.category else None,
            "status": self.status.value,
            "message": self.message,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
        }
