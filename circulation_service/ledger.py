"""
Copy inventory ledger.

Owns `total_copies` / `available_copies` for every title and is the only code
allowed to change them. Every change is a single conditional UPDATE evaluated
by the store, so concurrent librarians are linearised there instead of racing
on a read-then-write from Python.
"""
import logging

from sqlalchemy import select, update

from .errors import InvalidInventory, NoCopiesAvailable, TitleNotFound
from .models import BookTitle
from .reservations import add_pending_reservation
from .store import retry_on_conflict

logger = logging.getLogger(__name__)


class CopyInventoryLedger:
    def __init__(self, store):
        self.store = store

    # ------------------------------------------------------------------
    # primitives used inside a caller's transaction
    # ------------------------------------------------------------------

    def take_copy(self, session, isbn):
        """Decrement availability by one, or raise. Must run in a transaction."""
        result = session.execute(
            update(BookTitle)
            .where(BookTitle.isbn == isbn, BookTitle.available_copies > 0)
            .values(available_copies=BookTitle.available_copies - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        if session.get(BookTitle, isbn) is None:
            raise TitleNotFound(isbn)
        raise NoCopiesAvailable(isbn)

    def put_back_copy(self, session, isbn):
        """Increment availability by one, never past total_copies."""
        result = session.execute(
            update(BookTitle)
            .where(
                BookTitle.isbn == isbn,
                BookTitle.available_copies < BookTitle.total_copies,
            )
            .values(available_copies=BookTitle.available_copies + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        if session.get(BookTitle, isbn) is None:
            raise TitleNotFound(isbn)
        logger.warning(
            "Return for %s would exceed total copies; availability left at total",
            isbn,
        )

    def require_title(self, session, isbn):
        title = session.get(BookTitle, isbn)
        if title is None:
            raise TitleNotFound(isbn)
        return title

    # ------------------------------------------------------------------
    # public operations, one transaction each
    # ------------------------------------------------------------------

    @retry_on_conflict
    def issue_copy(self, isbn):
        with self.store.transaction() as session:
            self.take_copy(session, isbn)
        logger.info("Issued one copy of %s", isbn)

    @retry_on_conflict
    def return_copy(self, isbn):
        with self.store.transaction() as session:
            self.put_back_copy(session, isbn)
        logger.info("Returned one copy of %s", isbn)

    @retry_on_conflict
    def reserve_if_available(self, isbn, member_id):
        """
        Queue a reservation only while copies are on the shelf. Availability
        is not decremented: a reservation is a queue position, not a hold.
        """
        with self.store.transaction() as session:
            title = self.require_title(session, isbn)
            if title.available_copies <= 0:
                raise NoCopiesAvailable(isbn)
            reservation = add_pending_reservation(session, isbn, member_id)
        return reservation

    @retry_on_conflict
    def register_title(self, isbn, total_copies, title=None):
        """
        Create a title or resize it. Copies currently on loan stay on loan,
        so the title cannot shrink below that number.
        """
        if isinstance(total_copies, bool) or not isinstance(total_copies, int) or total_copies < 0:
            raise InvalidInventory("total_copies must be a non-negative integer")

        with self.store.transaction() as session:
            q = select(BookTitle).where(BookTitle.isbn == isbn).with_for_update()
            book = session.execute(q).scalar_one_or_none()

            if book:
                on_loan = book.total_copies - book.available_copies
                if total_copies < on_loan:
                    raise InvalidInventory(
                        f"{isbn} has {on_loan} copies on loan; "
                        f"cannot reduce total to {total_copies}"
                    )
                book.total_copies = total_copies
                book.available_copies = total_copies - on_loan
                if title:
                    book.title = title
                logger.info("Resized %s to %d copies", isbn, total_copies)
            else:
                book = BookTitle(
                    isbn=isbn,
                    title=title,
                    total_copies=total_copies,
                    available_copies=total_copies,
                )
                session.add(book)
                logger.info("Registered %s with %d copies", isbn, total_copies)
        return book

    def get_title(self, isbn):
        with self.store.read_session() as session:
            return self.require_title(session, isbn)
