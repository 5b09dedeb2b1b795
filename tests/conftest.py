import threading
from datetime import datetime

import mongomock
import mongomock.gridfs
import pytest
from fastapi.testclient import TestClient

from config import AppConfig, EmailConfig
from errors import TransportError
from main import Services, app
from schemas import USERS

mongomock.gridfs.enable_gridfs_integration()


class RecordingTransport:
    """Collects outgoing mail instead of talking to an SMTP server"""

    def __init__(self):
        self.sent = []
        self.failing = set()

    def send(self, to, subject, html):
        if to in self.failing:
            raise TransportError(f"Mailbox unavailable: {to}")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"<msg-{len(self.sent)}@test>"

    def sent_to(self, address):
        return [m for m in self.sent if m["to"] == address]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def app_config():
    return AppConfig(
        cron_token="cron-secret",
        email=EmailConfig(app_url="https://goals.example.com/", review_deadline="12-31"),
    )


@pytest.fixture
def services(transport, app_config):
    database = mongomock.MongoClient().db
    return Services(database, transport=transport, app_config=app_config)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def make_user(store):
    counter = {"n": 0}

    def _make(role="apprentice", first_name=None, email_notifications=True, **extra):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "first_name": first_name or f"User{n}",
            "last_name": "Test",
            "email": f"user{n}@example.com",
            "role": role,
            "email_notifications": email_notifications,
            "supervisor_request_status": "none",
            "created_at": datetime(2026, 1, 1),
        }
        data.update(extra)
        user_id = store.add(USERS, data)
        return store.get(USERS, user_id)

    return _make


@pytest.fixture
def client(services):
    app.state.services = services
    with TestClient(app) as c:
        yield c
    app.state.services = None


def auth(user):
    return {"Authorization": f"Bearer {user['id']}"}


def run_together(*calls):
    """Run each call on its own thread; results (or raised errors) come back in call order"""
    outcomes = [None] * len(calls)

    def run(i, call):
        try:
            outcomes[i] = call()
        except Exception as e:
            outcomes[i] = e

    threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    return outcomes


def meet_at_guarded_write(store, monkeypatch, collection, parties=2):
    """Hold every conditional write on `collection` until `parties` callers have reached it"""
    barrier = threading.Barrier(parties, timeout=5)
    update, push = store.update, store.push

    def held_update(name, doc_id, fields, where=None):
        if where is not None and name == collection:
            barrier.wait()
        return update(name, doc_id, fields, where=where)

    def held_push(name, doc_id, field, value, extra=None, where=None):
        if where is not None and name == collection:
            barrier.wait()
        return push(name, doc_id, field, value, extra=extra, where=where)

    monkeypatch.setattr(store, "update", held_update)
    monkeypatch.setattr(store, "push", held_push)
