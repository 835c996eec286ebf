import threading
from datetime import date, datetime, timedelta

import pytest

from cashdesk import create_app
from cashdesk.services import MembershipLedger, LedgerError
from config import TestingConfig


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=datetime(2024, 5, 1, 12, 0, 0)):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value):
        self.current = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(clock):
    """App with an in-memory database; the ledger is not yet initialized."""
    app = create_app(TestingConfig, ledger=MembershipLedger(clock=clock))
    with app.app_context():
        yield app


@pytest.fixture
def ledger(app):
    ledger = app.extensions['ledger']
    ledger.initialize()
    yield ledger
    ledger.shutdown()


@pytest.fixture
def member_id(ledger):
    return ledger.add_member('Ada', 'Lovelace', date(1815, 12, 10))


@pytest.fixture
def file_app(tmp_path):
    """App on a SQLite file so several threads can share the database."""
    class FileConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'cashdesk.db'}"

    app = create_app(FileConfig, ledger=MembershipLedger())
    ledger = app.extensions['ledger']
    with app.app_context():
        ledger.initialize()
    yield app
    with app.app_context():
        ledger.shutdown()


def run_concurrently(app, calls):
    """
    Start every call at the same moment, each in its own thread and app
    context. Returns 'ok' or the LedgerError class name per call, in order.
    """
    results = [None] * len(calls)
    barrier = threading.Barrier(len(calls))

    def worker(index, call):
        with app.app_context():
            barrier.wait()
            try:
                call()
                results[index] = 'ok'
            except LedgerError as e:
                results[index] = type(e).__name__

    threads = [
        threading.Thread(target=worker, args=(i, call))
        for i, call in enumerate(calls)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results
