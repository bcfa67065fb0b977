"""
RMA Ticket Store
================

Overview
--------
Persistence for processed RMA tickets: one table, `rma_tickets`, keyed by a
generated id with a unique constraint on `rma_number`.

Runtime Contract
----------------
    TicketStore.get_by_number(rma_number) -> TicketRecord | None
    TicketStore.upsert_processing(rma_number) -> TicketRecord
    TicketStore.update(ticket_id, **fields) -> TicketRecord
    TicketStore.list(limit, offset) -> List[TicketRecord]      newest first
    TicketStore.delete_by_number(rma_number) -> None            idempotent

Every mutation is a single-row write. There are no multi-row transactions and
no optimistic concurrency token: the last write wins. Database failures are
raised as ExternalServiceError("Database", ...).
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import logging                                           # Module logger
import uuid                                              # Generated primary keys
from contextlib import contextmanager                    # Session scope helper
from datetime import datetime, timezone                  # Row timestamps
from enum import Enum                                    # Lifecycle states
from typing import Any, Callable, Dict, Iterator, List, Optional

# Third-party libraries
from pydantic import BaseModel, ConfigDict               # API-facing record model
from pydantic.alias_generators import to_camel           # camelCase JSON keys
from sqlalchemy import JSON, DateTime, Integer, String, Text, create_engine, delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Local modules
from errors import ExternalServiceError, NotFoundError

logger = logging.getLogger(__name__)

TABLE_NAME = "rma_tickets"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

# -----------------------------------------------------------------------------
# Table
# -----------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class RmaTicketRow(Base):
    __tablename__ = TABLE_NAME

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    rma_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    ticket_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_information: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    device_ids: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    primary_reason: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    specific_issue: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_impact: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timeline: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    additional_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    raw_ticket_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    conversation_search_results: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    conversation_search_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processing_status: Mapped[str] = mapped_column(String(16), default=ProcessingStatus.PENDING.value)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

# -----------------------------------------------------------------------------
# Record model
# -----------------------------------------------------------------------------

class TicketRecord(BaseModel):
    """
    A persisted RMA ticket as returned to callers.

    Field names are snake_case in Python and camelCase on the wire
    (`to_api()`).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    rma_number: str
    created_at: datetime
    updated_at: datetime
    ticket_date: Optional[datetime] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_information: Optional[str] = None
    status: Optional[str] = None
    source_status_code: Optional[int] = None
    device_ids: Optional[str] = None
    primary_reason: Optional[str] = None
    specific_issue: Optional[str] = None
    customer_impact: Optional[str] = None
    timeline: Optional[str] = None
    additional_notes: Optional[str] = None
    raw_ticket_data: Optional[Any] = None
    conversation_search_results: Optional[Any] = None
    conversation_search_summary: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    error_message: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


_COLUMNS = [c.key for c in RmaTicketRow.__table__.columns]


def _to_record(row: RmaTicketRow) -> TicketRecord:
    return TicketRecord.model_validate({key: getattr(row, key) for key in _COLUMNS})

# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------

class TicketStore:
    """
    SQLAlchemy-backed store. Build one per process and share it.

    Parameters
    ----------
    engine : sqlalchemy.engine.Engine
        Connected engine; tables are created on construction.
    clock : callable, optional
        Returns the current timestamp. Tests inject a deterministic clock.
    """

    def __init__(self, engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self._clock = clock
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str, clock: Callable[[], datetime] = utcnow) -> "TicketStore":
        if url.startswith("sqlite"):
            kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            engine = create_engine(url, echo=False, **kwargs)
        else:
            engine = create_engine(url, echo=False, pool_pre_ping=True)
        return cls(engine, clock=clock)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as err:
            session.rollback()
            logger.error("Database operation failed: %s", err)
            raise ExternalServiceError("Database", str(err)) from err
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_by_number(self, rma_number: str) -> Optional[TicketRecord]:
        with self._transaction() as session:
            row = session.scalars(select(RmaTicketRow).where(RmaTicketRow.rma_number == rma_number)).first()
            return _to_record(row) if row else None

    def upsert_processing(self, rma_number: str) -> TicketRecord:
        """
        Create the record in `processing` state, or move an existing record
        with the same number back to `processing`.
        """
        now = self._clock()
        values = {
            "id": str(uuid.uuid4()),
            "rma_number": rma_number,
            "processing_status": ProcessingStatus.PROCESSING.value,
            "created_at": now,
            "updated_at": now,
        }
        on_conflict = {"processing_status": ProcessingStatus.PROCESSING.value, "updated_at": now}
        dialect = self.engine.dialect.name

        with self._transaction() as session:
            if dialect in ("sqlite", "postgresql"):
                insert = sqlite_insert if dialect == "sqlite" else pg_insert
                stmt = insert(RmaTicketRow).values(**values).on_conflict_do_update(
                    index_elements=["rma_number"], set_=on_conflict,
                )
                session.execute(stmt)
            else:
                row = session.scalars(select(RmaTicketRow).where(RmaTicketRow.rma_number == rma_number)).first()
                if row is None:
                    session.add(RmaTicketRow(**values))
                else:
                    for key, value in on_conflict.items():
                        setattr(row, key, value)

        record = self.get_by_number(rma_number)
        if record is None:
            raise ExternalServiceError("Database", f"Failed to create processing record for RMA {rma_number}")
        return record

    def update(self, ticket_id: str, **fields: Any) -> TicketRecord:
        """Apply `fields` to one record and stamp `updated_at`."""
        with self._transaction() as session:
            row = session.get(RmaTicketRow, ticket_id)
            if row is None:
                raise NotFoundError(f"RMA ticket {ticket_id}")
            for key, value in fields.items():
                if isinstance(value, Enum):
                    value = value.value
                setattr(row, key, value)
            row.updated_at = self._clock()
            session.flush()
            session.refresh(row)
            return _to_record(row)

    def list(self, limit: int = 50, offset: int = 0) -> List[TicketRecord]:
        with self._transaction() as session:
            stmt = (
                select(RmaTicketRow)
                .order_by(RmaTicketRow.created_at.desc(), RmaTicketRow.id)
                .offset(offset)
                .limit(limit)
            )
            return [_to_record(row) for row in session.scalars(stmt)]

    def delete_by_number(self, rma_number: str) -> None:
        with self._transaction() as session:
            session.execute(delete(RmaTicketRow).where(RmaTicketRow.rma_number == rma_number))
