"""Protocols defining the contracts of the systems the migration engine drives.

The workflow core only ever talks to four collaborators:

1. SourceDataProvider: reads correspondences and their dependents
2. DestinationClient: performs the side-effecting remote actions
3. MigrationStore: persists records, import statuses and item leases
4. CredentialProvider: hands out a valid credential on demand

Phase handlers implement PhaseHandler and are registered per phase in a
Pipeline.

Every destination call is treated as non-idempotent: the engine checkpoints
after each one and never repeats a call that was already checkpointed past.
Timeouts and transport errors are raised by the implementations and are
recorded by the engine like any other step failure.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from datetime import timedelta

    from .checkpoint import PhaseContext
    from .models import (
        Attachment,
        Category,
        Dependent,
        ItemDetails,
        MigrationRecord,
        Phase,
        SubEntityImportStatus,
    )


class SourceDataProvider(Protocol):
    """Protocol for reading items from the source record store."""

    def list_item_ids(self, category: Category) -> list[str]:
        """Return the ids of all migratable items of a category.

        Deleted, draft and cancelled items are expected to be filtered out by
        the implementation.
        """
        ...

    def fetch(self, item_id: str) -> ItemDetails:
        """Fetch one item with its attachments."""
        ...

    def fetch_dependents(self, item_id: str, entity_type: str) -> list[Dependent]:
        """Fetch the dependents of one type for an item, in source order."""
        ...


class DestinationClient(Protocol):
    """Protocol for the destination records-management system.

    Methods returning ``bool`` report whether the destination accepted the
    action; ``False`` is treated as a failed step. Methods returning ``str``
    return the identifier the destination assigned.
    """

    def create_batch(self, as_user: str) -> str:
        """Create an upload batch and return its id."""
        ...

    def upload_file(self, batch_id: str, index: int, file_name: str, data: str, as_user: str) -> bool:
        """Upload base64 ``data`` into slot ``index`` of a batch."""
        ...

    def create_correspondence(self, details: ItemDetails, batch_id: str | None, as_user: str) -> str:
        """Create the primary object and return its destination id."""
        ...

    def create_attachment(self, document_id: str, attachment: Attachment, as_user: str) -> bool: ...

    def create_physical_attachment(self, document_id: str, details: ItemDetails, as_user: str) -> bool: ...

    def set_ready_to_register(self, document_id: str, as_user: str) -> bool: ...

    def register_with_reference(self, document_id: str, details: ItemDetails, as_user: str) -> bool: ...

    def start_work(self, document_id: str, as_user: str) -> bool: ...

    def set_owner(self, document_id: str, as_user: str) -> bool: ...

    def approve(self, document_id: str, as_user: str) -> bool: ...

    def send(self, document_id: str, as_user: str) -> bool: ...

    def assign(self, document_id: str, dependent: Dependent, as_user: str) -> bool: ...

    def add_business_log(self, document_id: str, dependent: Dependent, as_user: str) -> bool: ...

    def add_comment(self, document_id: str, dependent: Dependent, as_user: str) -> bool: ...

    def close(self, document_id: str, details: ItemDetails, as_user: str) -> bool: ...


class MigrationStore(Protocol):
    """Protocol for durable storage of migration state.

    Each save is its own transaction. The claim methods provide the per-item
    mutual exclusion: a claim succeeds only if the item is free, its lease has
    expired, or the lease is already held by ``owner``.
    """

    def get_record(self, category: Category, item_id: str) -> MigrationRecord | None: ...

    def add_record(self, record: MigrationRecord) -> MigrationRecord:
        """Insert a new record; returns the existing one if it was created concurrently."""
        ...

    def save_record(self, record: MigrationRecord, *, owner: str | None = None) -> MigrationRecord:
        """Persist a record; with ``owner``, only while that owner still holds the lease."""
        ...

    def find_by_phase(self, category: Category, phase: Phase) -> list[MigrationRecord]: ...

    def find_retryable(self, category: Category) -> list[MigrationRecord]: ...

    def existing_item_ids(self, category: Category) -> set[str]: ...

    def iter_records(self, category: Category) -> Iterator[MigrationRecord]: ...

    def claim_record(self, category: Category, item_id: str, owner: str, lease: timedelta) -> bool: ...

    def release_record(self, category: Category, item_id: str, owner: str) -> None: ...

    def get_import_status(self, parent_id: str) -> SubEntityImportStatus | None: ...

    def add_import_status(self, status: SubEntityImportStatus) -> SubEntityImportStatus: ...

    def save_import_status(self, status: SubEntityImportStatus) -> SubEntityImportStatus: ...

    def find_retryable_imports(self) -> list[SubEntityImportStatus]: ...

    def iter_import_statuses(self) -> Iterator[SubEntityImportStatus]: ...

    def claim_import(self, parent_id: str, owner: str, lease: timedelta) -> bool: ...

    def release_import(self, parent_id: str, owner: str) -> None: ...

    def replace_dependents(self, parent_id: str, entity_type: str, dependents: list[Dependent]) -> int:
        """Stage the dependents of one type for a parent, replacing earlier copies."""
        ...


class CredentialProvider(Protocol):
    """Protocol for anything able to hand out a currently valid credential."""

    def current_credential(self) -> str: ...


class PhaseHandler(Protocol):
    """Protocol for the work done while an item sits in one phase.

    Returning True completes the phase. Returning False or raising marks the
    phase as failed; multi-call handlers checkpoint their progress through
    ``PhaseContext.checkpoint`` before that happens.
    """

    phase: Phase

    def first_step(self) -> str | None:
        """Return the step token a record gets when this phase becomes current."""
        ...

    def __call__(self, ctx: PhaseContext) -> bool: ...
