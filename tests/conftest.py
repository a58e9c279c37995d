import os
import sqlite3
import tempfile

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="vybes-test-"))

import pytest
from fastapi.testclient import TestClient

from vybes import config_db


@pytest.fixture
def db(tmp_path):
    previous = config_db.DB_PATH
    config_db.set_db_path(tmp_path / "vybes.sqlite3")
    config_db.init_db()
    yield config_db
    config_db.set_db_path(previous)


class _EqInsertFailingConnection:
    """Passes everything through except inserts into eq_sets."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql, *args):
        if sql.lstrip().startswith("INSERT INTO eq_sets"):
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


@pytest.fixture
def failing_eq_insert(db, monkeypatch):
    real_connect = config_db._connect
    monkeypatch.setattr(config_db, "_connect", lambda: _EqInsertFailingConnection(real_connect()))
    return monkeypatch


@pytest.fixture
def client(db):
    from vybes.server import app

    with TestClient(app) as c:
        yield c
