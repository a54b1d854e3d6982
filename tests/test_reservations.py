from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from circulation_service import reservations as reservation_module
from circulation_service.errors import (
    NoCopiesAvailable,
    ReservationNotFound,
    ReservationNotPending,
    TitleNotFound,
)
from circulation_service.models import Reservation, ReservationStatus

from conftest import run_concurrently, utc


def test_reservation_needs_an_existing_title(reservations):
    with pytest.raises(TitleNotFound):
        reservations.create_reservation("missing", "ann@example.com")


def test_reservation_is_created_even_without_copies(ledger, reservations):
    ledger.register_title("111", 1)
    ledger.issue_copy("111")

    reservation = reservations.create_reservation("111", "ann@example.com")
    assert reservation.status == ReservationStatus.PENDING
    assert ledger.get_title("111").available_copies == 0


def test_one_pending_reservation_per_member_and_title(ledger, reservations):
    ledger.register_title("111", 1)
    first = reservations.create_reservation("111", "ann@example.com")
    again = reservations.create_reservation("111", "ann@example.com")
    other = reservations.create_reservation("111", "bob@example.com")

    assert again.id == first.id
    assert other.id != first.id
    assert len(reservations.pending_reservations("111")) == 2


def test_convert_issues_with_ten_day_loan(ledger, reservations):
    ledger.register_title("111", 2)
    reservation = reservations.create_reservation("111", "ann@example.com")

    now = utc(2024, 1, 1, 9, 30)
    record = reservations.convert_to_issue(reservation.id, now=now)

    assert record.isbn == "111"
    assert record.member_id == "ann@example.com"
    assert record.reservation_id == reservation.id
    assert record.issue_date == now
    assert record.due_date == now + timedelta(days=10)
    assert record.actual_return_date is None
    assert ledger.get_title("111").available_copies == 1
    assert reservations.get_reservation(reservation.id).status == ReservationStatus.COMPLETED
    assert reservations.pending_reservations("111") == []


def test_convert_without_copies_leaves_everything_untouched(ledger, reservations, circulation):
    ledger.register_title("111", 1)
    circulation.issue_direct("111", "bob@example.com")
    reservation = reservations.create_reservation("111", "ann@example.com")

    with pytest.raises(NoCopiesAvailable):
        reservations.convert_to_issue(reservation.id)

    assert reservations.get_reservation(reservation.id).status == ReservationStatus.PENDING
    assert ledger.get_title("111").available_copies == 0
    assert circulation.active_loans("ann@example.com") == []


def test_convert_twice_is_refused(ledger, reservations):
    ledger.register_title("111", 3)
    reservation = reservations.create_reservation("111", "ann@example.com")
    reservations.convert_to_issue(reservation.id)

    with pytest.raises(ReservationNotPending):
        reservations.convert_to_issue(reservation.id)
    assert ledger.get_title("111").available_copies == 2


def test_convert_unknown_reservation(reservations):
    with pytest.raises(ReservationNotFound):
        reservations.convert_to_issue("does-not-exist")


def test_failure_after_decrement_rolls_the_copy_back(ledger, reservations, monkeypatch):
    ledger.register_title("111", 1)
    reservation = reservations.create_reservation("111", "ann@example.com")

    def broken_open_record(*args, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr("circulation_service.reservations.open_record", broken_open_record)
    with pytest.raises(RuntimeError):
        reservations.convert_to_issue(reservation.id)

    assert ledger.get_title("111").available_copies == 1
    assert reservations.get_reservation(reservation.id).status == ReservationStatus.PENDING


def test_cancel_is_idempotent(ledger, reservations):
    ledger.register_title("111", 1)
    reservation = reservations.create_reservation("111", "ann@example.com")

    assert reservations.cancel_reservation(reservation.id).status == ReservationStatus.CANCELLED
    assert reservations.cancel_reservation(reservation.id).status == ReservationStatus.CANCELLED
    with pytest.raises(ReservationNotPending):
        reservations.convert_to_issue(reservation.id)


def test_cancel_after_completion_is_a_no_op(ledger, reservations):
    ledger.register_title("111", 1)
    reservation = reservations.create_reservation("111", "ann@example.com")
    reservations.convert_to_issue(reservation.id)

    assert reservations.cancel_reservation(reservation.id).status == ReservationStatus.COMPLETED
    assert ledger.get_title("111").available_copies == 0


def test_cancel_unknown_reservation(reservations):
    with pytest.raises(ReservationNotFound):
        reservations.cancel_reservation("does-not-exist")


def test_queue_is_ordered_oldest_first(ledger, reservations):
    ledger.register_title("111", 0)
    ledger.register_title("222", 1)
    first = reservations.create_reservation("111", "ann@example.com")
    second = reservations.create_reservation("111", "bob@example.com")
    reservations.create_reservation("222", "cat@example.com")

    queue = reservations.pending_reservations("111")
    assert [r.id for r, _ in queue] == [first.id, second.id]
    assert all(available == 0 for _, available in queue)
    assert len(reservations.pending_reservations()) == 3


def test_store_refuses_a_second_pending_row(store, ledger):
    ledger.register_title("111", 1)
    with pytest.raises(IntegrityError):
        with store.transaction() as session:
            session.add_all(
                [
                    Reservation(isbn="111", member_id="ann@example.com", status=ReservationStatus.PENDING),
                    Reservation(isbn="111", member_id="ann@example.com", status=ReservationStatus.PENDING),
                ]
            )
    with store.read_session() as session:
        assert session.execute(select(Reservation)).scalars().all() == []


def test_member_can_queue_again_after_cancelling(ledger, reservations):
    ledger.register_title("111", 1)
    first = reservations.create_reservation("111", "ann@example.com")
    reservations.cancel_reservation(first.id)

    again = reservations.create_reservation("111", "ann@example.com")
    assert again.id != first.id
    assert [r.id for r, _ in reservations.pending_reservations("111")] == [again.id]


def test_racing_duplicate_returns_the_reservation_that_won(ledger, reservations, monkeypatch):
    ledger.register_title("111", 1)
    first = reservations.create_reservation("111", "ann@example.com")

    real_find = reservation_module._find_pending
    lookups = []

    def missed_first_lookup(session, isbn, member_id):
        # the other request committed after this one looked
        lookups.append(isbn)
        if len(lookups) == 1:
            return None
        return real_find(session, isbn, member_id)

    monkeypatch.setattr(reservation_module, "_find_pending", missed_first_lookup)
    again = reservations.create_reservation("111", "ann@example.com")

    assert again.id == first.id
    assert len(lookups) == 2
    assert len(reservations.pending_reservations("111")) == 1


def test_concurrent_conversions_share_the_last_copy(ledger, reservations):
    ledger.register_title("111", 1)
    queued = [
        reservations.create_reservation("111", f"member{i}@example.com") for i in range(6)
    ]

    def attempt(i):
        try:
            reservations.convert_to_issue(queued[i].id)
            return "ok"
        except NoCopiesAvailable:
            return "none"

    outcomes = run_concurrently(6, attempt)

    assert sorted(outcomes) == ["none"] * 5 + ["ok"]
    assert ledger.get_title("111").available_copies == 0
    assert len(reservations.pending_reservations("111")) == 5


def test_same_reservation_converted_concurrently_issues_once(ledger, reservations, circulation):
    ledger.register_title("111", 3)
    reservation = reservations.create_reservation("111", "ann@example.com")

    def attempt(_):
        try:
            reservations.convert_to_issue(reservation.id)
            return "ok"
        except ReservationNotPending:
            return "done"

    outcomes = run_concurrently(6, attempt)

    assert sorted(outcomes) == ["done"] * 5 + ["ok"]
    assert ledger.get_title("111").available_copies == 2
    assert len(circulation.active_loans("ann@example.com")) == 1
