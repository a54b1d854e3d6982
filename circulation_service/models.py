import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    text,
)

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookCondition(str, enum.Enum):
    GOOD = "good"
    DAMAGED = "damaged"


class BookTitle(Base):
    """
    Copy counts for one title. Only the ledger writes these two columns.
    """
    __tablename__ = "book_title"
    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="ck_available_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="ck_available_within_total"
        ),
    )

    isbn = Column(String(20), primary_key=True)
    title = Column(String(255))
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class CirculationRecord(Base):
    """
    One physical-copy loan. Append-only: closed exactly once, never deleted.
    """
    __tablename__ = "circulation_record"
    __table_args__ = (
        Index("ix_circulation_member_open", "member_id", "actual_return_date"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    isbn = Column(String(20), nullable=False, index=True)
    member_id = Column(String(255), nullable=False)
    issue_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    due_date = Column(DateTime(timezone=True))
    actual_return_date = Column(DateTime(timezone=True))
    condition = Column(
        Enum(
            BookCondition,
            name="book_condition",
            values_callable=lambda e: [m.value for m in e],
        )
    )
    damage_fine = Column(Numeric(10, 2))
    renewal_count = Column(Integer, nullable=False, default=0)
    reservation_id = Column(String(36))

    @property
    def is_open(self):
        return self.actual_return_date is None


class Reservation(Base):
    __tablename__ = "reservation"
    __table_args__ = (
        Index("ix_reservation_queue", "isbn", "status", "created_at"),
        # at most one pending reservation per member per title
        Index(
            "uq_reservation_pending",
            "isbn",
            "member_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    isbn = Column(String(20), nullable=False)
    member_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    status = Column(
        Enum(
            ReservationStatus,
            name="reservation_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ReservationStatus.PENDING,
    )


class FineSettings(Base):
    """Singleton row; edited by the admin workflow."""
    __tablename__ = "fine_settings"

    id = Column(Integer, primary_key=True, default=1)
    per_day_fine = Column(Numeric(10, 2), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class MemberFineBalance(Base):
    """
    Display cache of each member's outstanding fine. Always rebuildable from
    circulation_record and fine_settings.
    """
    __tablename__ = "member_fine_balance"

    member_id = Column(String(255), primary_key=True)
    outstanding_fine = Column(Numeric(10, 2), nullable=False, default=0)
    computed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
