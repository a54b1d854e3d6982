import os
import logging
from decimal import Decimal, InvalidOperation
from functools import wraps

from flask import Flask, jsonify, request
from flask_cors import CORS

from .circulation import CirculationService
from .config import Config
from .dates import coerce, utcnow
from .errors import CirculationError
from .fines import FineEngine
from .ledger import CopyInventoryLedger
from .reservations import ReservationService
from .scheduler import start_fine_scheduler
from .store import Store

logger = logging.getLogger(__name__)


# ----------------- serialisers -----------------

def _ts(value):
    value = coerce(value)
    return value.isoformat() if value else None


def _money(value):
    return str(value) if value is not None else None


def title_to_dict(book):
    return {
        "isbn": book.isbn,
        "title": book.title,
        "total_copies": book.total_copies,
        "available_copies": book.available_copies,
    }


def reservation_to_dict(r, available_copies=None):
    data = {
        "id": r.id,
        "isbn": r.isbn,
        "member_id": r.member_id,
        "created_at": _ts(r.created_at),
        "status": r.status.value,
    }
    if available_copies is not None:
        data["available_copies"] = available_copies
    return data


def record_to_dict(rec):
    return {
        "id": rec.id,
        "isbn": rec.isbn,
        "member_id": rec.member_id,
        "issue_date": _ts(rec.issue_date),
        "due_date": _ts(rec.due_date),
        "actual_return_date": _ts(rec.actual_return_date),
        "condition": rec.condition.value if rec.condition else None,
        "damage_fine": _money(rec.damage_fine),
        "renewal_count": rec.renewal_count,
        "reservation_id": rec.reservation_id,
    }


def quote_to_dict(quote):
    return {
        "circulation_id": quote.circulation_id,
        "member_id": quote.member_id,
        "as_of": _ts(quote.as_of),
        "overdue_days": quote.overdue_days,
        "overdue_fine": _money(quote.overdue_fine),
        "outstanding_fine": _money(quote.outstanding_fine),
    }


def _has_damage_fine(raw):
    if raw is None:
        return False
    try:
        return Decimal(str(raw)) > 0
    except InvalidOperation:
        # record_return reports the bad value
        return False


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    CORS(app)

    store = Store(config_object)
    store.create_all()

    ledger = CopyInventoryLedger(store)
    fines = FineEngine(store, app.config["DEFAULT_PER_DAY_FINE"])
    reservations = ReservationService(store, ledger, app.config["LOAN_PERIOD_DAYS"])
    circulation = CirculationService(
        store,
        ledger,
        fines,
        loan_period_days=app.config["LOAN_PERIOD_DAYS"],
        max_renewals=app.config["MAX_RENEWALS"],
    )
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
        # reloader watcher process; only the serving child runs the job
        logger.info("Debug reloader parent; fine scheduler not started")
        scheduler = None
    else:
        scheduler = start_fine_scheduler(fines, app.config["FINE_RECOMPUTE_MINUTES"])

    app.extensions["circulation"] = {
        "store": store,
        "ledger": ledger,
        "fines": fines,
        "reservations": reservations,
        "circulation": circulation,
        "scheduler": scheduler,
    }

    # ----------------- helpers: API key, errors -----------------

    def require_api_key(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            expected = app.config.get("SERVICE_API_KEY")
            sent = request.headers.get("X-API-Key")
            if not expected or sent != expected:
                logger.warning("Invalid API key on %s", request.path)
                return jsonify({"error": "Unauthorized", "message": "Invalid or missing service API key"}), 401
            return func(*args, **kwargs)

        return wrapper

    @app.errorhandler(CirculationError)
    def handle_circulation_error(error):
        logger.info("%s on %s: %s", error.code, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    def missing(*fields):
        return jsonify(
            {"error": "BadRequest", "message": f"{', '.join(fields)} required", "retryable": False}
        ), 400

    # ----------------- health -----------------

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok", "service": "circulation_service"})

    # ----------------- titles -----------------

    @app.post("/api/titles")
    @require_api_key
    def register_title():
        data = request.get_json(force=True)
        isbn = data.get("isbn")
        total = data.get("total_copies")
        if not isbn or total is None:
            return missing("isbn", "total_copies")

        book = ledger.register_title(isbn, total, title=data.get("title"))
        return jsonify(title_to_dict(book)), 201

    @app.get("/api/titles/<isbn>")
    def get_title(isbn):
        return jsonify(title_to_dict(ledger.get_title(isbn)))

    # ----------------- reservations -----------------

    @app.post("/api/reservations")
    def create_reservation():
        data = request.get_json(force=True)
        isbn = data.get("isbn")
        member_id = data.get("member_id")
        if not isbn or not member_id:
            return missing("isbn", "member_id")

        reservation = reservations.create_reservation(isbn, member_id)
        return jsonify(reservation_to_dict(reservation)), 201

    @app.get("/api/reservations")
    @require_api_key
    def list_reservations():
        queue = reservations.pending_reservations(isbn=request.args.get("isbn"))
        return jsonify([reservation_to_dict(r, available) for r, available in queue])

    @app.post("/api/reservations/<reservation_id>/cancel")
    def cancel_reservation(reservation_id):
        reservation = reservations.cancel_reservation(reservation_id)
        return jsonify(reservation_to_dict(reservation))

    @app.post("/api/reservations/<reservation_id>/issue")
    @require_api_key
    def convert_reservation(reservation_id):
        record = reservations.convert_to_issue(reservation_id)
        return jsonify(record_to_dict(record)), 201

    # ----------------- loans -----------------

    @app.post("/api/loans")
    @require_api_key
    def issue_direct():
        data = request.get_json(force=True)
        isbn = data.get("isbn")
        member_id = data.get("member_id")
        if not isbn or not member_id:
            return missing("isbn", "member_id")

        record = circulation.issue_direct(isbn, member_id)
        return jsonify(record_to_dict(record)), 201

    @app.get("/api/loans")
    @require_api_key
    def list_loans():
        """
        ?overdue=1       open loans past their due date
        ?member_id=...   a member's open loans
        """
        if request.args.get("overdue") in ("1", "true", "yes"):
            records = circulation.overdue_loans()
        else:
            member_id = request.args.get("member_id")
            if not member_id:
                return jsonify([])
            records = circulation.active_loans(member_id)
        return jsonify([record_to_dict(r) for r in records])

    @app.get("/api/loans/<circulation_id>")
    @require_api_key
    def get_loan(circulation_id):
        return jsonify(record_to_dict(circulation.get_record(circulation_id)))

    @app.post("/api/loans/<circulation_id>/renew")
    @require_api_key
    def renew_loan(circulation_id):
        return jsonify(record_to_dict(circulation.renew(circulation_id)))

    @app.get("/api/loans/<circulation_id>/return-quote")
    @require_api_key
    def return_quote(circulation_id):
        return jsonify(quote_to_dict(circulation.quote_return(circulation_id)))

    @app.post("/api/loans/<circulation_id>/return")
    @require_api_key
    def record_return(circulation_id):
        """
        Librarian return. When the member owes anything, or a damage fine is
        being charged, the librarian must confirm it was collected by sending
        "fine_acknowledged": true.
        """
        data = request.get_json(force=True)
        condition = data.get("condition", "good")
        damage_fine = data.get("damage_fine")

        now = utcnow()
        quote = circulation.quote_return(circulation_id, now=now)
        if (quote.requires_acknowledgement or _has_damage_fine(damage_fine)) and not data.get(
            "fine_acknowledged"
        ):
            body = quote_to_dict(quote)
            body.update(
                {
                    "error": "FineNotAcknowledged",
                    "message": "Collect the fine and resend with fine_acknowledged",
                    "retryable": False,
                    "damage_fine": _money(damage_fine),
                }
            )
            return jsonify(body), 409

        receipt = circulation.record_return(
            circulation_id, condition, damage_fine=damage_fine, now=now
        )
        return jsonify(
            {
                "record": record_to_dict(receipt.record),
                "overdue_fine": _money(receipt.overdue_fine),
                "damage_fine": _money(receipt.damage_fine),
                "outstanding_fine": _money(receipt.outstanding_fine),
            }
        )

    # ----------------- fines -----------------

    @app.get("/api/members/<member_id>/fine")
    def current_fine(member_id):
        return jsonify(
            {"member_id": member_id, "outstanding_fine": _money(fines.current_fine(member_id))}
        )

    @app.post("/api/fines/recompute")
    @require_api_key
    def recompute_fines():
        totals = fines.recompute_all()
        return jsonify({member: _money(amount) for member, amount in totals.items()})

    @app.put("/api/fines/settings")
    @require_api_key
    def update_fine_settings():
        data = request.get_json(force=True)
        if data.get("per_day_fine") is None:
            return missing("per_day_fine")
        try:
            rate = fines.set_per_day_fine(data["per_day_fine"])
        except (InvalidOperation, ValueError) as e:
            return jsonify({"error": "BadRequest", "message": str(e), "retryable": False}), 400
        return jsonify({"per_day_fine": _money(rate)})

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "5001"))
    app = create_app()
    app.run(host="0.0.0.0", port=port, debug=app.debug)
