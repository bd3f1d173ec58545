import os
import sys

import pytest
from sqlmodel import SQLModel

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import db as db_mod  # noqa: E402
import models  # noqa: E402,F401
import notifications  # noqa: E402


# ────────────────────────── fixtures ────────────────────────────────────────

@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh SQLite file."""
    new_engine = db_mod.make_engine(f"sqlite:///{tmp_path}/test.db")
    monkeypatch.setattr(db_mod, "engine", new_engine)
    SQLModel.metadata.create_all(new_engine)
    yield new_engine
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, title, message, type, data):
        self.sent.append({"user_id": user_id, "title": title, "message": message, "type": type, "data": data})

    def titles_for(self, user_id):
        return [n["title"] for n in self.sent if n["user_id"] == user_id]


@pytest.fixture
def notified(monkeypatch):
    recorder = RecordingNotifier()
    monkeypatch.setattr(notifications, "notifier", recorder)
    return recorder


@pytest.fixture
def live(monkeypatch):
    channel = notifications.LiveChannel()
    monkeypatch.setattr(notifications, "channel", channel)
    return channel
