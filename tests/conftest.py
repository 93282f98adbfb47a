from __future__ import annotations

import io
from types import SimpleNamespace

import pytest
from PIL import Image

from app import create_app
from extensions import db
from journey import secrets, store


UNIQUE_KEYS = {
    "secret_discoveries": ("user_id", "secret_id"),
    "journey_trips": ("user_id", "trip_id"),
    "traveller_profiles": ("user_id",),
}


class FakeQuery:
    """Just enough of the postgrest builder chain for the journey store."""

    def __init__(self, backend: "FakeSupabase", table: str):
        self.backend = backend
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters: list[tuple[str, object]] = []
        self.limit_n = None
        self.order_by: tuple[str, bool] | None = None
        self.conflict_keys: tuple[str, ...] = UNIQUE_KEYS.get(table, ())

    def select(self, *_columns):
        self.op = "select"
        return self

    def insert(self, payload, returning=None):
        self.op, self.payload = "insert", payload
        return self

    def upsert(self, payload, on_conflict=""):
        self.op, self.payload = "upsert", payload
        if on_conflict:
            self.conflict_keys = tuple(on_conflict.split(","))
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def delete(self):
        self.op = "delete"
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, count):
        self.limit_n = count
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self):
        if self.backend.fail or self.table in self.backend.fail_tables:
            raise RuntimeError("connection refused")
        rows = self.backend.tables.setdefault(self.table, [])
        if self.op == "select":
            found = [dict(row) for row in rows if self._matches(row)]
            if self.order_by:
                column, desc = self.order_by
                found.sort(key=lambda row: row.get(column) or "", reverse=desc)
            return SimpleNamespace(data=found[: self.limit_n] if self.limit_n else found)
        if self.op == "insert":
            keys = UNIQUE_KEYS.get(self.table, ())
            if keys and any(all(row.get(k) == self.payload.get(k) for k in keys) for row in rows):
                raise RuntimeError('duplicate key value violates unique constraint "uq"')
            rows.append(dict(self.payload))
            return SimpleNamespace(data=[dict(self.payload)])
        if self.op == "upsert":
            for row in rows:
                if all(row.get(k) == self.payload.get(k) for k in self.conflict_keys):
                    row.update(self.payload)
                    return SimpleNamespace(data=[dict(row)])
            rows.append(dict(self.payload))
            return SimpleNamespace(data=[dict(self.payload)])
        if self.op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated)
        if self.op == "delete":
            removed = [dict(row) for row in rows if self._matches(row)]
            rows[:] = [row for row in rows if not self._matches(row)]
            return SimpleNamespace(data=removed)
        raise AssertionError(f"unsupported op {self.op}")


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.fail = False
        self.fail_tables: set[str] = set()

    def table(self, name):
        return FakeQuery(self, name)


class FakeGemini:
    """Returns queued replies in order and records every prompt it was sent."""

    def __init__(self, *replies: str):
        self.replies = list(replies)
        self.calls: list[dict] = []

    def generate(self, parts, *, history=None):
        self.calls.append({"parts": parts, "history": history})
        if not self.replies:
            return ""
        return self.replies.pop(0)


def _make_app(**overrides):
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "USE_SUPABASE": False,
        "SUPABASE_CLIENT": None,
        "USE_JOURNEY": True,
        "GEMINI_API_KEY": None,
        "JOURNEY_SECRETS_PATH": None,
    }
    config.update(overrides)
    return create_app(config)


@pytest.fixture(autouse=True)
def _reset_module_state():
    secrets._catalog_cache.update({"path": None, "mtime": 0, "secrets": ()})
    store._subscribers.clear()
    yield
    store._subscribers.clear()


@pytest.fixture
def app():
    app = _make_app()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def supabase_app():
    fake = FakeSupabase()
    app = _make_app(USE_SUPABASE=True, SUPABASE_CLIENT=fake)
    with app.app_context():
        yield app, fake
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fake_gemini(app):
    fake = FakeGemini()
    app.config["GEMINI_CLIENT"] = fake
    return fake


@pytest.fixture
def photo_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), color=(200, 160, 90)).save(buffer, format="PNG")
    return buffer.getvalue()
