import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List

from sqlalchemy import select

from .dates import coerce, days_between, utcnow
from .errors import (
    AlreadyReturned,
    InvalidReturn,
    RecordNotFound,
    RenewalLimitExceeded,
)
from .models import BookCondition, CirculationRecord
from .store import retry_on_conflict

logger = logging.getLogger(__name__)


def open_record(session, isbn, member_id, issued_at, loan_period_days, reservation_id=None):
    """Insert an open circulation record. The caller has already taken a copy."""
    record = CirculationRecord(
        isbn=isbn,
        member_id=member_id,
        issue_date=issued_at,
        due_date=issued_at + timedelta(days=loan_period_days),
        actual_return_date=None,
        renewal_count=0,
        reservation_id=reservation_id,
    )
    session.add(record)
    session.flush()
    return record


@dataclass
class ReturnQuote:
    """What a return at `as_of` would cost; nothing is written."""
    circulation_id: str
    member_id: str
    as_of: datetime
    overdue_days: int
    overdue_fine: Decimal
    outstanding_fine: Decimal

    @property
    def requires_acknowledgement(self):
        return self.outstanding_fine > 0


@dataclass
class ReturnReceipt:
    record: CirculationRecord
    overdue_fine: Decimal
    damage_fine: Decimal
    outstanding_fine: Decimal


def _parse_condition(condition):
    if isinstance(condition, BookCondition):
        return condition
    try:
        return BookCondition(str(condition).lower())
    except ValueError:
        raise InvalidReturn(f"Unknown condition {condition!r}; expected good or damaged")


def _parse_damage_fine(condition, damage_fine):
    if damage_fine is None:
        return None
    try:
        amount = Decimal(str(damage_fine))
    except InvalidOperation:
        raise InvalidReturn(f"Damage fine {damage_fine!r} is not a number")
    if amount < 0:
        raise InvalidReturn("Damage fine cannot be negative")
    if condition != BookCondition.DAMAGED and amount > 0:
        raise InvalidReturn("A damage fine needs the copy to be returned as damaged")
    return amount


class CirculationService:
    def __init__(self, store, ledger, fine_engine, loan_period_days, max_renewals):
        self.store = store
        self.ledger = ledger
        self.fine_engine = fine_engine
        self.loan_period_days = loan_period_days
        self.max_renewals = max_renewals

    @retry_on_conflict
    def issue_direct(self, isbn, member_id, now=None) -> CirculationRecord:
        now = coerce(now) or utcnow()
        with self.store.transaction() as session:
            self.ledger.take_copy(session, isbn)
            record = open_record(
                session,
                isbn=isbn,
                member_id=member_id,
                issued_at=now,
                loan_period_days=self.loan_period_days,
            )
        logger.info("Loan %s opened: %s to %s", record.id, isbn, member_id)
        return record

    def quote_return(self, circulation_id, now=None) -> ReturnQuote:
        now = coerce(now) or utcnow()
        with self.store.read_session() as session:
            record = self._get(session, circulation_id)
            if not record.is_open:
                raise AlreadyReturned(circulation_id)
            return self._quote(session, record, now)

    @retry_on_conflict
    def record_return(self, circulation_id, condition, damage_fine=None, now=None) -> ReturnReceipt:
        """
        Close a loan and put the copy back. The member's fine is computed in
        the same transaction and from the same `now` stamped on the record.
        """
        now = coerce(now) or utcnow()
        condition = _parse_condition(condition)
        damage = _parse_damage_fine(condition, damage_fine)

        with self.store.transaction() as session:
            record = self._get(session, circulation_id, lock=True)
            if not record.is_open:
                raise AlreadyReturned(circulation_id)

            record.actual_return_date = now
            record.condition = condition
            record.damage_fine = damage
            session.flush()

            self.ledger.put_back_copy(session, record.isbn)

            per_day = self.fine_engine.per_day_fine(session)
            overdue_fine = self.fine_engine.record_fine(record, per_day, now)
            outstanding = self.fine_engine.member_fine(
                session, record.member_id, now, per_day=per_day
            )
            self.fine_engine.store_balance(session, record.member_id, outstanding, now)

        logger.info(
            "Loan %s returned (%s); overdue fine %s, member %s owes %s",
            circulation_id,
            condition.value,
            overdue_fine,
            record.member_id,
            outstanding,
        )
        return ReturnReceipt(
            record=record,
            overdue_fine=overdue_fine,
            damage_fine=damage or Decimal("0"),
            outstanding_fine=outstanding,
        )

    @retry_on_conflict
    def renew(self, circulation_id) -> CirculationRecord:
        with self.store.transaction() as session:
            record = self._get(session, circulation_id, lock=True)
            if not record.is_open:
                raise AlreadyReturned(circulation_id)
            if record.renewal_count >= self.max_renewals:
                raise RenewalLimitExceeded(circulation_id, self.max_renewals)

            record.due_date = coerce(record.due_date) + timedelta(days=self.loan_period_days)
            record.renewal_count += 1
        logger.info(
            "Loan %s renewed (%d/%d), now due %s",
            circulation_id,
            record.renewal_count,
            self.max_renewals,
            record.due_date.isoformat(),
        )
        return record

    def get_record(self, circulation_id) -> CirculationRecord:
        with self.store.read_session() as session:
            return self._get(session, circulation_id)

    def active_loans(self, member_id) -> List[CirculationRecord]:
        with self.store.read_session() as session:
            q = (
                select(CirculationRecord)
                .where(
                    CirculationRecord.member_id == member_id,
                    CirculationRecord.actual_return_date.is_(None),
                )
                .order_by(CirculationRecord.issue_date)
            )
            return session.execute(q).scalars().all()

    def overdue_loans(self, now=None) -> List[CirculationRecord]:
        now = coerce(now) or utcnow()
        with self.store.read_session() as session:
            q = (
                select(CirculationRecord)
                .where(
                    CirculationRecord.actual_return_date.is_(None),
                    CirculationRecord.due_date.is_not(None),
                )
                .order_by(CirculationRecord.due_date)
            )
            records = session.execute(q).scalars().all()
        # whole calendar days, the same rule the fine is charged on
        return [r for r in records if days_between(r.due_date, now) > 0]

    def _quote(self, session, record, now) -> ReturnQuote:
        per_day = self.fine_engine.per_day_fine(session)
        return ReturnQuote(
            circulation_id=record.id,
            member_id=record.member_id,
            as_of=now,
            overdue_days=self.fine_engine.overdue_days(record, now),
            overdue_fine=self.fine_engine.record_fine(record, per_day, now),
            outstanding_fine=self.fine_engine.member_fine(
                session, record.member_id, now, per_day=per_day
            ),
        )

    def _get(self, session, circulation_id, lock=False) -> CirculationRecord:
        q = select(CirculationRecord).where(CirculationRecord.id == circulation_id)
        if lock:
            q = q.with_for_update()
        record = session.execute(q).scalar_one_or_none()
        if record is None:
            raise RecordNotFound(circulation_id)
        return record
