from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from src.config import settings
from src.db import get_supabase
from src.main import app
from src.observability import reset_metrics


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.insert_payload = None
        self.update_payload = None
        self.filters = []
        self.order_by = None
        self.limit_count = None

    def select(self, _fields: str = "*"):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.insert_payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.update_payload = payload
        return self

    def eq(self, key: str, value):
        self.filters.append(("eq", key, value))
        return self

    def is_(self, key: str, value):
        self.filters.append(("is", key, value))
        return self

    def in_(self, key: str, values):
        self.filters.append(("in", key, list(values)))
        return self

    def gte(self, key: str, value):
        self.filters.append(("gte", key, value))
        return self

    def contains(self, key: str, values):
        self.filters.append(("contains", key, list(values)))
        return self

    def order(self, key: str, desc: bool = False):
        self.order_by = (key, desc)
        return self

    def limit(self, count: int):
        self.limit_count = count
        return self

    def _matches(self, row: dict) -> bool:
        for kind, key, value in self.filters:
            if kind == "eq" and row.get(key) != value:
                return False
            if kind == "is" and value == "null" and row.get(key) is not None:
                return False
            if kind == "in" and row.get(key) not in value:
                return False
            if kind == "gte" and (row.get(key) or "") < value:
                return False
            if kind == "contains" and not set(value).issubset(set(row.get(key) or [])):
                return False
        return True

    def execute(self):
        self.db.calls.append((self.operation, self.table_name))
        if (self.operation, self.table_name) in self.db.fail_on:
            raise Exception(f"simulated {self.operation} failure on {self.table_name}")
        with self.db.lock:
            table = self.db.tables.setdefault(self.table_name, [])
            if self.operation == "insert":
                unique = self.db.unique_keys.get(self.table_name)
                if unique:
                    for row in table:
                        if all(row.get(k) == self.insert_payload.get(k) for k in unique):
                            raise Exception("duplicate key value violates unique constraint")
                row = dict(self.insert_payload or {})
                row.setdefault("id", f"{self.table_name}-{len(table)+1}")
                row.setdefault("created_at", _ts())
                table.append(row)
                return FakeResponse([dict(row)])

            if self.operation == "update":
                updated = []
                for row in table:
                    if self._matches(row):
                        row.update(self.update_payload or {})
                        updated.append(dict(row))
                return FakeResponse(updated)

            rows = [dict(row) for row in table if self._matches(row)]
            if self.order_by:
                key, desc = self.order_by
                rows.sort(key=lambda r: str(r.get(key) or ""), reverse=desc)
            if self.limit_count is not None:
                rows = rows[: self.limit_count]
            return FakeResponse(rows)


class FakeRpc:
    def __init__(self, name: str, params: dict, db: "FakeSupabase"):
        self.name = name
        self.params = params
        self.db = db

    def execute(self):
        self.db.calls.append(("rpc", self.name))
        if ("rpc", self.name) in self.db.fail_on:
            raise Exception(f"simulated rpc failure on {self.name}")
        with self.db.lock:
            if self.name == "apply_broadcast_event":
                return FakeResponse(self._apply_broadcast_event())
            if self.name == "record_user_webhook_failure":
                return FakeResponse(self._record_user_webhook_failure())
        raise Exception(f"unknown function {self.name}")

    def _apply_broadcast_event(self):
        updated = []
        counter = self.params["p_counter"]
        for row in self.db.tables.get("broadcast_jobs", []):
            if row.get("id") != self.params["p_broadcast_id"]:
                continue
            if counter == "success_count":
                ceiling = row.get("total_members")
                if ceiling is None or (row.get("success_count") or 0) < ceiling:
                    row["success_count"] = (row.get("success_count") or 0) + 1
            elif counter:
                row[counter] = (row.get(counter) or 0) + 1
            row["last_event"] = self.params["p_last_event"]
            row["last_event_at"] = _ts()
            row["updated_at"] = _ts()
            updated.append(dict(row))
        return updated

    def _record_user_webhook_failure(self):
        updated = []
        for row in self.db.tables.get("user_webhooks", []):
            if row.get("id") != self.params["p_webhook_id"]:
                continue
            row["retry_count"] = (row.get("retry_count") or 0) + 1
            row["last_failure_at"] = _ts()
            row["last_failure_reason"] = self.params["p_reason"]
            updated.append(dict(row))
        return updated


class FakeSupabase:
    def __init__(self, tables: dict | None = None, fail_on: set | None = None):
        self.tables = tables or {}
        self.fail_on = fail_on or set()
        self.unique_keys = {"inbound_webhook_events": ("provider_slug", "event_key")}
        self.calls = []
        self.lock = threading.Lock()

    def table(self, table_name: str):
        return FakeQuery(table_name, self)

    def rpc(self, name: str, params: dict):
        return FakeRpc(name, params, self)

    def writes(self):
        return [call for call in self.calls if call[0] in {"insert", "update", "rpc"}]


@pytest.fixture(autouse=True)
def _reset_state(monkeypatch):
    reset_metrics()
    monkeypatch.setattr(settings, "resend_webhook_secret", None)
    monkeypatch.setattr(settings, "resend_webhook_signature_mode", "permissive_audit")
    monkeypatch.setattr(settings, "webhook_forward_max_concurrent_workers", 4)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def make_client():
    def _make(fake_db: FakeSupabase) -> TestClient:
        app.dependency_overrides[get_supabase] = lambda: fake_db
        return TestClient(app)

    return _make


@pytest.fixture
def fake_supabase():
    return FakeSupabase
