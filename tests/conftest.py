import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from circulation_service.app import create_app
from circulation_service.circulation import CirculationService
from circulation_service.config import Config
from circulation_service.fines import FineEngine
from circulation_service.ledger import CopyInventoryLedger
from circulation_service.reservations import ReservationService
from circulation_service.store import Store

API_KEY = "test-key"


def make_config(db_file, **overrides):
    attrs = {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_file}",
        "SQLALCHEMY_ECHO": False,
        "DEBUG": False,
        "SERVICE_API_KEY": API_KEY,
        "LOAN_PERIOD_DAYS": 10,
        "MAX_RENEWALS": 2,
        "STORE_TIMEOUT_SECONDS": 15,
        "CONFLICT_RETRY_ATTEMPTS": 5,
        "CONFLICT_RETRY_BACKOFF": 0.01,
        "FINE_RECOMPUTE_MINUTES": 0,
        "DEFAULT_PER_DAY_FINE": Decimal("1.00"),
    }
    attrs.update(overrides)
    return type("TestConfig", (Config,), attrs)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def run_concurrently(count, attempt):
    """Start `count` threads together; collect what `attempt(i)` returns."""
    outcomes = []
    lock = threading.Lock()
    start = threading.Barrier(count)

    def worker(i):
        start.wait()
        result = attempt(i)
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


@pytest.fixture
def config(tmp_path, request):
    # unique database file per test
    return make_config(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def store(config):
    s = Store(config)
    s.create_all()
    yield s
    s.dispose()


@pytest.fixture
def ledger(store):
    return CopyInventoryLedger(store)


@pytest.fixture
def fines(store):
    return FineEngine(store, Decimal("1.00"))


@pytest.fixture
def reservations(store, ledger):
    return ReservationService(store, ledger, loan_period_days=10)


@pytest.fixture
def circulation(store, ledger, fines):
    return CirculationService(store, ledger, fines, loan_period_days=10, max_renewals=2)


@pytest.fixture
def app(config):
    flask_app = create_app(config)
    flask_app.config["TESTING"] = True
    yield flask_app
    flask_app.extensions["circulation"]["store"].dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth():
    return {"X-API-Key": API_KEY}
