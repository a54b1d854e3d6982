"""
Overdue fine computation.

`compute_fines` is a pure function of (records, per-day rate, now): it never
reads the clock or the store. `FineEngine` wraps it with the store reads and
the idempotent upsert of each member's cached balance.

Billing rules:

* open loans accrue up to `now`;
* closed loans accrue only up to their actual return date, so a late return
  is billed once for its lateness and never grows afterwards;
* days are whole UTC calendar days between the due date and that end point;
* every member seen in the batch is in the result, at 0 if nothing is owed.
"""
import logging
from decimal import Decimal
from typing import Dict, Iterable

from sqlalchemy import select

from .dates import coerce, days_between, utcnow
from .errors import MalformedTimestamp
from .models import CirculationRecord, FineSettings, MemberFineBalance
from .store import retry_on_conflict

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def overdue_days(record, now) -> int:
    """Days `record` is overdue as of `now`; 0 when it has no due date."""
    due = coerce(record.due_date)
    if due is None:
        return 0
    end = coerce(record.actual_return_date) or coerce(now)
    return max(0, days_between(due, end))


def compute_fines(records: Iterable, per_day_fine, now) -> Dict[str, Decimal]:
    """
    Total overdue fine per member. A record whose timestamps cannot be parsed
    is logged and skipped; it neither adds to nor registers its member.
    """
    rate = Decimal(str(per_day_fine))
    now = coerce(now)
    totals: Dict[str, Decimal] = {}

    for record in records:
        try:
            days = overdue_days(record, now)
        except MalformedTimestamp as exc:
            logger.warning(
                "Skipping circulation record %s for %s: %s",
                getattr(record, "id", "?"),
                record.member_id,
                exc,
            )
            continue
        totals[record.member_id] = totals.get(record.member_id, ZERO) + days * rate

    return totals


def damage_totals(records: Iterable) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = {}
    for record in records:
        if record.damage_fine:
            totals[record.member_id] = totals.get(record.member_id, ZERO) + Decimal(
                str(record.damage_fine)
            )
    return totals


class FineEngine:
    def __init__(self, store, default_per_day_fine):
        self.store = store
        self.default_per_day_fine = Decimal(str(default_per_day_fine))

    # settings

    def per_day_fine(self, session) -> Decimal:
        settings = session.get(FineSettings, 1)
        if settings is None:
            return self.default_per_day_fine
        return Decimal(str(settings.per_day_fine))

    @retry_on_conflict
    def set_per_day_fine(self, value) -> Decimal:
        rate = Decimal(str(value))
        if rate < 0:
            raise ValueError("per-day fine cannot be negative")
        with self.store.transaction() as session:
            settings = session.get(FineSettings, 1)
            if settings:
                settings.per_day_fine = rate
            else:
                session.add(FineSettings(id=1, per_day_fine=rate))
        logger.info("Per-day fine set to %s", rate)
        return rate

    # single record / single member

    def overdue_days(self, record, now) -> int:
        return overdue_days(record, now)

    def record_fine(self, record, per_day, now) -> Decimal:
        return overdue_days(record, now) * Decimal(str(per_day))

    def member_fine(self, session, member_id, now, per_day=None) -> Decimal:
        """Overdue fines plus recorded damage fines for one member."""
        if per_day is None:
            per_day = self.per_day_fine(session)
        records = session.execute(
            select(CirculationRecord).where(CirculationRecord.member_id == member_id)
        ).scalars().all()
        overdue = compute_fines(records, per_day, now).get(member_id, ZERO)
        damage = damage_totals(records).get(member_id, ZERO)
        return overdue + damage

    def current_fine(self, member_id, now=None) -> Decimal:
        now = coerce(now) or utcnow()
        with self.store.read_session() as session:
            return self.member_fine(session, member_id, now)

    # batch

    def store_balance(self, session, member_id, amount, now):
        """Upsert one cached balance. Safe to repeat with the same figures."""
        balance = session.get(MemberFineBalance, member_id)
        if balance:
            balance.outstanding_fine = amount
            balance.computed_at = now
        else:
            session.add(
                MemberFineBalance(
                    member_id=member_id,
                    outstanding_fine=amount,
                    computed_at=now,
                )
            )

    @retry_on_conflict
    def recompute_all(self, now=None) -> Dict[str, Decimal]:
        """
        Full scan of circulation history; rewrites every member's cached
        balance, including resetting fully-settled members to 0.
        """
        now = coerce(now) or utcnow()
        with self.store.transaction() as session:
            per_day = self.per_day_fine(session)
            records = session.execute(select(CirculationRecord)).scalars().all()

            totals = compute_fines(records, per_day, now)
            for member_id, damage in damage_totals(records).items():
                totals[member_id] = totals.get(member_id, ZERO) + damage

            for member_id, amount in totals.items():
                self.store_balance(session, member_id, amount, now)

        owing = sum(1 for amount in totals.values() if amount > 0)
        logger.info(
            "Fine recomputation: %d members, %d owing, rate %s/day",
            len(totals),
            owing,
            per_day,
        )
        return totals

    def cached_balance(self, member_id):
        with self.store.read_session() as session:
            balance = session.get(MemberFineBalance, member_id)
            if balance is None:
                return None
            return Decimal(str(balance.outstanding_fine))
