import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .circulation import open_record
from .dates import coerce, utcnow
from .errors import ReservationNotFound, ReservationNotPending
from .models import BookTitle, Reservation, ReservationStatus
from .store import retry_on_conflict

logger = logging.getLogger(__name__)


def _find_pending(session, isbn, member_id):
    return session.execute(
        select(Reservation).where(
            Reservation.isbn == isbn,
            Reservation.member_id == member_id,
            Reservation.status == ReservationStatus.PENDING,
        )
    ).scalar_one_or_none()


def add_pending_reservation(session, isbn, member_id):
    """
    Queue `member_id` for `isbn`. A member holds at most one pending
    reservation per title; asking again returns the existing one.
    """
    existing = _find_pending(session, isbn, member_id)
    if existing:
        logger.info("Member %s already queued for %s", member_id, isbn)
        return existing

    reservation = Reservation(
        isbn=isbn,
        member_id=member_id,
        created_at=utcnow(),
        status=ReservationStatus.PENDING,
    )
    try:
        with session.begin_nested():
            session.add(reservation)
    except IntegrityError:
        # a concurrent request queued the same member first
        existing = _find_pending(session, isbn, member_id)
        if existing is None:
            raise
        logger.info("Member %s was queued for %s concurrently", member_id, isbn)
        return existing

    logger.info("Reservation %s created: %s for %s", reservation.id, isbn, member_id)
    return reservation


class ReservationService:
    def __init__(self, store, ledger, loan_period_days):
        self.store = store
        self.ledger = ledger
        self.loan_period_days = loan_period_days

    @retry_on_conflict
    def create_reservation(self, isbn, member_id):
        # no availability check: copies are only counted at issue time
        with self.store.transaction() as session:
            self.ledger.require_title(session, isbn)
            reservation = add_pending_reservation(session, isbn, member_id)
        return reservation

    @retry_on_conflict
    def cancel_reservation(self, reservation_id):
        with self.store.transaction() as session:
            reservation = self._locked(session, reservation_id)
            if reservation.status != ReservationStatus.PENDING:
                logger.info(
                    "Reservation %s already %s; cancel ignored",
                    reservation_id,
                    reservation.status.value,
                )
                return reservation
            reservation.status = ReservationStatus.CANCELLED
            logger.info("Reservation %s cancelled", reservation_id)
        return reservation

    @retry_on_conflict
    def convert_to_issue(self, reservation_id, now=None):
        """
        Turn a pending reservation into an open loan. The decrement, the new
        circulation record and the status change commit together or not at
        all; on any failure the rollback restores the copy count and the
        reservation stays pending.
        """
        now = coerce(now) or utcnow()
        with self.store.transaction() as session:
            reservation = self._locked(session, reservation_id)
            if reservation.status != ReservationStatus.PENDING:
                raise ReservationNotPending(reservation_id, reservation.status.value)

            self.ledger.take_copy(session, reservation.isbn)
            record = open_record(
                session,
                isbn=reservation.isbn,
                member_id=reservation.member_id,
                issued_at=now,
                loan_period_days=self.loan_period_days,
                reservation_id=reservation.id,
            )
            reservation.status = ReservationStatus.COMPLETED

        logger.info(
            "Reservation %s issued as loan %s (due %s)",
            reservation_id,
            record.id,
            record.due_date.isoformat(),
        )
        return record

    def get_reservation(self, reservation_id):
        with self.store.read_session() as session:
            reservation = session.get(Reservation, reservation_id)
            if reservation is None:
                raise ReservationNotFound(reservation_id)
            return reservation

    def pending_reservations(self, isbn=None):
        """Active queue, oldest first, with the title's current availability."""
        with self.store.read_session() as session:
            q = (
                select(Reservation, BookTitle.available_copies)
                .join(BookTitle, BookTitle.isbn == Reservation.isbn)
                .where(Reservation.status == ReservationStatus.PENDING)
                .order_by(Reservation.created_at, Reservation.id)
            )
            if isbn:
                q = q.where(Reservation.isbn == isbn)
            return [(r, available) for r, available in session.execute(q).all()]

    def _locked(self, session, reservation_id):
        q = select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        reservation = session.execute(q).scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        return reservation
