"""
SQLAlchemy persistence for migration state.

Tables:
- migration_records: one row per (category, item_id), the workflow resume point
- related_import_statuses: one row per parent item of the related-data import
- staged_dependents: dependent sub-records copied from the source system

Every public method runs in its own short transaction. The lease columns
(locked_by / locked_until) are only ever written through a single conditional
UPDATE, which is what gives per-item mutual exclusion across runs, threads and
processes sharing the same database.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Column,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .exceptions import LeaseLostError
from .models import (
    Category,
    Dependent,
    EntityState,
    ImportStatus,
    MigrationRecord,
    OverallStatus,
    Phase,
    PhaseState,
    PhaseStatus,
    SubEntityImportStatus,
    utcnow,
)

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

Base = declarative_base()


class MigrationRecordRow(Base):
    __tablename__ = "migration_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(20), nullable=False)
    item_id = Column(String(100), nullable=False)
    current_phase = Column(String(30), nullable=False)
    next_phase = Column(String(30), nullable=True)
    phase_status = Column(String(20), nullable=False, default=PhaseStatus.PENDING.value)
    phase_states = Column(JSON, nullable=False)
    current_step = Column(String(100), nullable=True)
    applied_steps = Column(JSON, nullable=False, default=list)
    created_destination_id = Column(String(100), nullable=True)
    batch_id = Column(String(100), nullable=True)
    need_to_close = Column(Boolean, nullable=False, default=False)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    overall_status = Column(String(20), nullable=False, default=OverallStatus.IN_PROGRESS.value)
    started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    last_error_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=True)
    last_modified_at = Column(TIMESTAMP(timezone=True), nullable=True)
    locked_by = Column(String(100), nullable=True)
    locked_until = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("category", "item_id", name="uq_migration_records_category_item"),
        Index("idx_migration_records_phase", "category", "current_phase"),
        Index("idx_migration_records_status", "category", "phase_status"),
    )


class ImportStatusRow(Base):
    __tablename__ = "related_import_statuses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(String(100), nullable=False, unique=True)
    entities = Column(JSON, nullable=False)
    overall_status = Column(String(20), nullable=False, default=ImportStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    successful_entities_count = Column(Integer, nullable=False, default=0)
    failed_entities_count = Column(Integer, nullable=False, default=0)
    total_entities_count = Column(Integer, nullable=False, default=0)
    started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    last_error_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=True)
    last_modified_at = Column(TIMESTAMP(timezone=True), nullable=True)
    locked_by = Column(String(100), nullable=True)
    locked_until = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (Index("idx_related_import_statuses_status", "overall_status"),)


class StagedDependentRow(Base):
    __tablename__ = "staged_dependents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    dependent_id = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    imported_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (Index("idx_staged_dependents_parent", "parent_id", "entity_type"),)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _record_from_row(row: MigrationRecordRow) -> MigrationRecord:
    states: dict[str, Any] = row.phase_states or {}
    return MigrationRecord(
        id=row.id,
        category=Category(row.category),
        item_id=row.item_id,
        current_phase=Phase(row.current_phase),
        next_phase=Phase(row.next_phase) if row.next_phase else None,
        phase_status=PhaseStatus(row.phase_status),
        phase_states={Phase(name): PhaseState.from_dict(data) for name, data in states.items()},
        current_step=row.current_step,
        applied_steps=list(row.applied_steps or []),
        created_destination_id=row.created_destination_id,
        batch_id=row.batch_id,
        need_to_close=bool(row.need_to_close),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        overall_status=OverallStatus(row.overall_status),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        last_error_at=_aware(row.last_error_at),
        created_at=_aware(row.created_at),
        last_modified_at=_aware(row.last_modified_at),
    )


def _apply_record(row: MigrationRecordRow, record: MigrationRecord) -> None:
    row.category = record.category.value
    row.item_id = record.item_id
    row.current_phase = record.current_phase.value
    row.next_phase = record.next_phase.value if record.next_phase else None
    row.phase_status = record.phase_status.value
    row.phase_states = {phase.value: state.to_dict() for phase, state in record.phase_states.items()}
    row.current_step = record.current_step
    row.applied_steps = list(record.applied_steps)
    row.created_destination_id = record.created_destination_id
    row.batch_id = record.batch_id
    row.need_to_close = record.need_to_close
    row.retry_count = record.retry_count
    row.max_retries = record.max_retries
    row.overall_status = record.overall_status.value
    row.started_at = record.started_at
    row.completed_at = record.completed_at
    row.last_error_at = record.last_error_at
    row.created_at = record.created_at
    row.last_modified_at = record.last_modified_at


def _import_status_from_row(row: ImportStatusRow) -> SubEntityImportStatus:
    entities: dict[str, Any] = row.entities or {}
    return SubEntityImportStatus(
        id=row.id,
        parent_id=row.parent_id,
        entities={name: EntityState.from_dict(data) for name, data in entities.items()},
        overall_status=ImportStatus(row.overall_status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        successful_entities_count=row.successful_entities_count,
        failed_entities_count=row.failed_entities_count,
        total_entities_count=row.total_entities_count,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        last_error_at=_aware(row.last_error_at),
        created_at=_aware(row.created_at),
        last_modified_at=_aware(row.last_modified_at),
    )


def _apply_import_status(row: ImportStatusRow, status: SubEntityImportStatus) -> None:
    row.parent_id = status.parent_id
    row.entities = {name: state.to_dict() for name, state in status.entities.items()}
    row.overall_status = status.overall_status.value
    row.retry_count = status.retry_count
    row.max_retries = status.max_retries
    row.successful_entities_count = status.successful_entities_count
    row.failed_entities_count = status.failed_entities_count
    row.total_entities_count = status.total_entities_count
    row.started_at = status.started_at
    row.completed_at = status.completed_at
    row.last_error_at = status.last_error_at
    row.created_at = status.created_at
    row.last_modified_at = status.last_modified_at


class SqlAlchemyStore:
    """MigrationStore backed by any database SQLAlchemy can reach.

    Usage:
        store = SqlAlchemyStore.from_url("sqlite:///migration.db")
        store.create_schema()
    """

    _engine: Engine
    _session_factory: sessionmaker[Session]

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> SqlAlchemyStore:
        return cls(create_engine(url, **engine_kwargs))

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)
        logger.info(f"Migration schema ready on {self._engine.url.render_as_string(hide_password=True)}")

    # -- migration records -------------------------------------------------

    def get_record(self, category: Category, item_id: str) -> MigrationRecord | None:
        with self._session_factory() as session:
            row = self._record_row(session, category, item_id)
            return _record_from_row(row) if row else None

    def add_record(self, record: MigrationRecord) -> MigrationRecord:
        record.last_modified_at = utcnow()
        row = MigrationRecordRow()
        _apply_record(row, record)
        with self._session_factory() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug(f"Record for {record.category}/{record.item_id} created concurrently, reusing it")
                existing = self._record_row(session, record.category, record.item_id)
                if existing is None:
                    raise
                return _record_from_row(existing)
            record.id = row.id
            return record

    def save_record(self, record: MigrationRecord, *, owner: str | None = None) -> MigrationRecord:
        """Persist ``record``.

        Raises:
            LeaseLostError: If ``owner`` is given and the item's lease is now held by someone else
        """
        with self._session_factory() as session:
            row = self._record_row(session, record.category, record.item_id)
            if owner is not None and row is not None and row.locked_by != owner:
                msg = f"Item {record.item_id} was taken over by {row.locked_by or 'nobody'}; not saving"
                raise LeaseLostError(msg)
            if row is None:
                row = MigrationRecordRow()
                session.add(row)
            record.last_modified_at = utcnow()
            _apply_record(row, record)
            session.commit()
            record.id = row.id
            return record

    def find_by_phase(self, category: Category, phase: Phase) -> list[MigrationRecord]:
        stmt = (
            select(MigrationRecordRow)
            .where(MigrationRecordRow.category == category.value, MigrationRecordRow.current_phase == phase.value)
            .order_by(MigrationRecordRow.id)
        )
        with self._session_factory() as session:
            return [_record_from_row(row) for row in session.scalars(stmt)]

    def find_retryable(self, category: Category) -> list[MigrationRecord]:
        stmt = (
            select(MigrationRecordRow)
            .where(
                MigrationRecordRow.category == category.value,
                MigrationRecordRow.phase_status == PhaseStatus.ERROR.value,
                MigrationRecordRow.retry_count < MigrationRecordRow.max_retries,
            )
            .order_by(MigrationRecordRow.last_error_at, MigrationRecordRow.id)
        )
        with self._session_factory() as session:
            return [_record_from_row(row) for row in session.scalars(stmt)]

    def existing_item_ids(self, category: Category) -> set[str]:
        stmt = select(MigrationRecordRow.item_id).where(MigrationRecordRow.category == category.value)
        with self._session_factory() as session:
            return set(session.scalars(stmt))

    def iter_records(self, category: Category) -> Iterator[MigrationRecord]:
        stmt = (
            select(MigrationRecordRow)
            .where(MigrationRecordRow.category == category.value)
            .order_by(MigrationRecordRow.id)
        )
        with self._session_factory() as session:
            for row in session.scalars(stmt):
                yield _record_from_row(row)

    def claim_record(self, category: Category, item_id: str, owner: str, lease: timedelta) -> bool:
        now = utcnow()
        stmt = (
            update(MigrationRecordRow)
            .where(
                MigrationRecordRow.category == category.value,
                MigrationRecordRow.item_id == item_id,
                or_(
                    MigrationRecordRow.locked_by.is_(None),
                    MigrationRecordRow.locked_until < now,
                    MigrationRecordRow.locked_by == owner,
                ),
            )
            .values(locked_by=owner, locked_until=now + lease)
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def release_record(self, category: Category, item_id: str, owner: str) -> None:
        stmt = (
            update(MigrationRecordRow)
            .where(
                MigrationRecordRow.category == category.value,
                MigrationRecordRow.item_id == item_id,
                MigrationRecordRow.locked_by == owner,
            )
            .values(locked_by=None, locked_until=None)
        )
        with self._session_factory() as session:
            session.execute(stmt)
            session.commit()

    # -- related-data import status ----------------------------------------

    def get_import_status(self, parent_id: str) -> SubEntityImportStatus | None:
        with self._session_factory() as session:
            row = self._import_row(session, parent_id)
            return _import_status_from_row(row) if row else None

    def add_import_status(self, status: SubEntityImportStatus) -> SubEntityImportStatus:
        status.last_modified_at = utcnow()
        row = ImportStatusRow()
        _apply_import_status(row, status)
        with self._session_factory() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._import_row(session, status.parent_id)
                if existing is None:
                    raise
                return _import_status_from_row(existing)
            status.id = row.id
            return status

    def save_import_status(self, status: SubEntityImportStatus) -> SubEntityImportStatus:
        with self._session_factory() as session:
            row = self._import_row(session, status.parent_id)
            if row is None:
                row = ImportStatusRow()
                session.add(row)
            status.last_modified_at = utcnow()
            _apply_import_status(row, status)
            session.commit()
            status.id = row.id
            return status

    def find_retryable_imports(self) -> list[SubEntityImportStatus]:
        stmt = (
            select(ImportStatusRow)
            .where(
                ImportStatusRow.overall_status == ImportStatus.FAILED.value,
                ImportStatusRow.retry_count < ImportStatusRow.max_retries,
            )
            .order_by(ImportStatusRow.last_error_at, ImportStatusRow.id)
        )
        with self._session_factory() as session:
            return [_import_status_from_row(row) for row in session.scalars(stmt)]

    def iter_import_statuses(self) -> Iterator[SubEntityImportStatus]:
        with self._session_factory() as session:
            for row in session.scalars(select(ImportStatusRow).order_by(ImportStatusRow.id)):
                yield _import_status_from_row(row)

    def claim_import(self, parent_id: str, owner: str, lease: timedelta) -> bool:
        now = utcnow()
        stmt = (
            update(ImportStatusRow)
            .where(
                ImportStatusRow.parent_id == parent_id,
                or_(
                    ImportStatusRow.locked_by.is_(None),
                    ImportStatusRow.locked_until < now,
                    ImportStatusRow.locked_by == owner,
                ),
            )
            .values(locked_by=owner, locked_until=now + lease)
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def release_import(self, parent_id: str, owner: str) -> None:
        stmt = (
            update(ImportStatusRow)
            .where(ImportStatusRow.parent_id == parent_id, ImportStatusRow.locked_by == owner)
            .values(locked_by=None, locked_until=None)
        )
        with self._session_factory() as session:
            session.execute(stmt)
            session.commit()

    # -- staged dependents -------------------------------------------------

    def replace_dependents(self, parent_id: str, entity_type: str, dependents: list[Dependent]) -> int:
        now = utcnow()
        with self._session_factory() as session:
            session.execute(
                delete(StagedDependentRow).where(
                    StagedDependentRow.parent_id == parent_id,
                    StagedDependentRow.entity_type == entity_type,
                )
            )
            session.add_all(
                StagedDependentRow(
                    parent_id=parent_id,
                    entity_type=entity_type,
                    dependent_id=dependent.dependent_id,
                    payload=dependent.payload,
                    imported_at=now,
                )
                for dependent in dependents
            )
            session.commit()
        return len(dependents)

    def staged_dependents(self, parent_id: str, entity_type: str) -> list[Dependent]:
        stmt = (
            select(StagedDependentRow)
            .where(StagedDependentRow.parent_id == parent_id, StagedDependentRow.entity_type == entity_type)
            .order_by(StagedDependentRow.id)
        )
        with self._session_factory() as session:
            return [
                Dependent(dependent_id=row.dependent_id, entity_type=row.entity_type, payload=row.payload or {})
                for row in session.scalars(stmt)
            ]

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _record_row(session: Session, category: Category, item_id: str) -> MigrationRecordRow | None:
        stmt = select(MigrationRecordRow).where(
            MigrationRecordRow.category == category.value, MigrationRecordRow.item_id == item_id
        )
        return session.scalars(stmt).first()

    @staticmethod
    def _import_row(session: Session, parent_id: str) -> ImportStatusRow | None:
        return session.scalars(select(ImportStatusRow).where(ImportStatusRow.parent_id == parent_id)).first()
