"""
Failure taxonomy for the circulation core.

Every error carries enough to tell the caller *what kind* of failure it was:
"no copies" can be retried later, "already returned" is an operator mistake,
and store timeouts/conflicts can be retried right away.
"""


class CirculationError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def code(self):
        return self.__class__.__name__

    def to_dict(self):
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class NoCopiesAvailable(CirculationError):
    status_code = 409
    # a copy may come back later
    retryable = True

    def __init__(self, isbn):
        super().__init__(f"No copies available for {isbn}")
        self.isbn = isbn


class TitleNotFound(CirculationError):
    status_code = 404

    def __init__(self, isbn):
        super().__init__(f"Title {isbn} not found")
        self.isbn = isbn


class ReservationNotFound(CirculationError):
    status_code = 404

    def __init__(self, reservation_id):
        super().__init__(f"Reservation {reservation_id} not found")
        self.reservation_id = reservation_id


class ReservationNotPending(CirculationError):
    status_code = 409

    def __init__(self, reservation_id, status):
        super().__init__(f"Reservation {reservation_id} is {status}, not pending")
        self.reservation_id = reservation_id
        self.status = status


class RecordNotFound(CirculationError):
    status_code = 404

    def __init__(self, circulation_id):
        super().__init__(f"Circulation record {circulation_id} not found")
        self.circulation_id = circulation_id


class AlreadyReturned(CirculationError):
    status_code = 409

    def __init__(self, circulation_id):
        super().__init__(f"Circulation record {circulation_id} was already returned")
        self.circulation_id = circulation_id


class RenewalLimitExceeded(CirculationError):
    status_code = 409

    def __init__(self, circulation_id, limit):
        super().__init__(
            f"Circulation record {circulation_id} reached the renewal limit ({limit})"
        )
        self.circulation_id = circulation_id
        self.limit = limit


class InvalidReturn(CirculationError):
    status_code = 400


class InvalidInventory(CirculationError):
    status_code = 400


class MalformedTimestamp(CirculationError, ValueError):
    status_code = 400

    def __init__(self, raw):
        super().__init__(f"Unrecognised timestamp: {raw!r}")
        self.raw = raw


class StoreTimeout(CirculationError):
    """The store did not answer in time; the effect is unknown."""

    status_code = 504
    retryable = True


class StoreConflict(CirculationError):
    """Optimistic retries on a contended row were exhausted."""

    status_code = 503
    retryable = True
