"""
Shared pytest fixtures for webpilotx tests.

- FakeSupabase: in-memory stand-in for the Supabase table query builder
- settings pointed at a temporary pages_dir / unit dir
- a stub systemctl that records its arguments
"""

import stat
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from webpilotx.config import settings
from webpilotx.database.supabase_client import SupabaseClient


# =============================================================================
# Fake Supabase
# =============================================================================


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.op = "select"
        self.columns = None
        self.payload = None
        self.filters = []
        self.order_by = None
        self.limit_n = None
        self.single_row = False

    def select(self, columns: str = "*"):
        self.op = "select"
        if columns.strip() != "*":
            self.columns = [c.strip() for c in columns.split(",")]
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def is_(self, column, value):
        assert value == "null"
        self.filters.append(lambda row: row.get(column) is None)
        return self

    def in_(self, column, values):
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def maybe_single(self):
        self.single_row = True
        return self

    def _project(self, row):
        if self.columns is None:
            return dict(row)
        return {c: row.get(c) for c in self.columns}

    def execute(self):
        with self.db.lock:
            self.db.calls.append((self.table_name, self.op))
            if self.db.fail_tables.get(self.table_name):
                raise RuntimeError(f"{self.table_name} unavailable")
            rows = self.db.tables.setdefault(self.table_name, [])
            if self.op == "insert":
                items = self.payload if isinstance(self.payload, list) else [self.payload]
                created = [self.db._insert(self.table_name, item) for item in items]
                return SimpleNamespace(data=[dict(r) for r in created])

            matched = [r for r in rows if all(f(r) for f in self.filters)]
            if self.op == "update":
                for row in matched:
                    row.update(self.payload)
                return SimpleNamespace(data=[dict(r) for r in matched])
            if self.op == "delete":
                self.db.tables[self.table_name] = [r for r in rows if r not in matched]
                return SimpleNamespace(data=[dict(r) for r in matched])

            if self.order_by:
                column, desc = self.order_by
                matched = sorted(matched, key=lambda r: r.get(column), reverse=desc)
            if self.limit_n is not None:
                matched = matched[:self.limit_n]
            data = [self._project(r) for r in matched]
            if self.single_row:
                return SimpleNamespace(data=data[0] if data else None)
            return SimpleNamespace(data=data)


class FakeSupabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls = []
        self.fail_tables: Dict[str, bool] = {}
        self._ids: Dict[str, int] = {}
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def _insert(self, table: str, item: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(item)
        if table != "accounts" and "id" not in row:
            self._ids[table] = self._ids.get(table, 0) + 1
            row["id"] = self._ids[table]
        self._clock += timedelta(seconds=1)
        row.setdefault("created_at", self._clock.isoformat())
        if table == "deployments":
            row.setdefault("completed_at", None)
            row.setdefault("exit_code", None)
        if table == "pages":
            row.setdefault("account_login", None)
            row.setdefault("build_script", None)
            row.setdefault("build_output_dir", None)
        self.tables.setdefault(table, []).append(row)
        return row

    # Test helpers

    def add_page(self, **fields) -> Dict[str, Any]:
        fields.setdefault("name", f"page-{self._ids.get('pages', 0) + 1}")
        fields.setdefault("repo", "org/app")
        fields.setdefault("branch", "main")
        with self.lock:
            return dict(self._insert("pages", fields))

    def add_env(self, page_id: int, name: str, value: str) -> None:
        with self.lock:
            self._insert("env_vars", {"page_id": page_id, "name": name, "value": value})

    def add_account(self, login: str, access_token: str) -> None:
        with self.lock:
            self._insert("accounts", {"login": login, "access_token": access_token})

    def rows(self, table: str) -> List[Dict[str, Any]]:
        with self.lock:
            return [dict(r) for r in self.tables.get(table, [])]

    def deployment(self, deployment_id: int) -> Dict[str, Any]:
        return next(r for r in self.rows("deployments") if r["id"] == deployment_id)


@pytest.fixture()
def fake_db(monkeypatch) -> FakeSupabase:
    db = FakeSupabase()
    monkeypatch.setattr(SupabaseClient, "_client", db)
    monkeypatch.setattr(SupabaseClient, "_service_client", db)
    return db


# =============================================================================
# Settings and external tools
# =============================================================================


def write_systemctl_stub(directory: Path, exit_code: int = 0) -> Path:
    """Write a systemctl stand-in that appends its arguments to calls.log."""
    calls = directory / "calls.log"
    script = directory / "systemctl"
    script.write_text(f'#!/bin/sh\necho "$@" >> "{calls}"\nexit {exit_code}\n')
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def systemctl_calls(directory: Path) -> List[str]:
    calls = directory / "calls.log"
    if not calls.exists():
        return []
    return calls.read_text().splitlines()


@pytest.fixture()
def systemctl_dir(tmp_path) -> Path:
    directory = tmp_path / "systemctl"
    directory.mkdir()
    return directory


@pytest.fixture(autouse=True)
def app_settings(tmp_path, monkeypatch, systemctl_dir):
    monkeypatch.setattr(settings, "pages_dir", tmp_path / "pages_dir")
    monkeypatch.setattr(settings, "systemd_unit_dir", tmp_path / "units")
    monkeypatch.setattr(settings, "systemctl_binary", str(write_systemctl_stub(systemctl_dir)))
    monkeypatch.setattr(settings, "git_base_url", f"file://{tmp_path / 'remotes'}")
    monkeypatch.setattr(settings, "webhook_secret", "test-secret")
    monkeypatch.setattr(settings, "deploy_timeout_seconds", 60)
    monkeypatch.setattr(settings, "log_stream_poll_interval", 0.05)
    monkeypatch.setattr(settings, "reconcile_orphans_on_startup", False)
    monkeypatch.setattr(settings, "strict_provisioning", False)
    return settings


@pytest.fixture(autouse=True)
def clean_registries():
    """Page and deployment ids restart at 1 in every test; do not carry channels or queues over."""
    yield
    from webpilotx.modules.deployments import log_channel, worker_registry

    with log_channel._lock:
        log_channel._channels.clear()
    with worker_registry._queue_condition:
        worker_registry._page_queues.clear()
        worker_registry._queue_condition.notify_all()


@pytest.fixture()
def stub_sync(monkeypatch):
    """Replace git with a sync that just creates the working tree."""
    from webpilotx.modules.deployments.repository_sync import RepositorySync

    synced = []

    def fake_sync(self, repo, branch, work_dir, log, deployment_id=None, deadline=None):
        Path(work_dir).mkdir(parents=True, exist_ok=True)
        log.line(f"synced {repo}@{branch}")
        synced.append((repo, branch, self.token))
        return 0

    monkeypatch.setattr(RepositorySync, "sync", fake_sync)
    return synced


@pytest.fixture()
def client(fake_db):
    from fastapi.testclient import TestClient
    from webpilotx.main import app

    return TestClient(app, raise_server_exceptions=False)
