"""Test database helpers."""

from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


def provision_test_database(prefix: str = "studioledger_test") -> Tuple[str | None, str, bool]:
    """Create a throwaway SQLite file for a test, unless ``TEST_DATABASE_URL`` is set.

    Returns a tuple of (database_path, database_uri, managed_flag).
    When managed_flag is False the caller must not attempt to remove the database.
    """
    override_url = os.environ.get("TEST_DATABASE_URL")
    if override_url:
        return None, override_url, False

    temp_db = tempfile.NamedTemporaryFile(prefix=f"{prefix}_", suffix=".db", delete=False)
    temp_db_path = temp_db.name
    temp_db.close()
    return temp_db_path, f"sqlite:///{temp_db_path}", True


def cleanup_test_database(database_path: str | None) -> None:
    """Remove a previously provisioned SQLite file."""
    if not database_path:
        return
    path = Path(database_path)
    if path.exists():
        path.unlink()


def rebuild_database_engine(db, database_uri: str):
    """Ensure the SQLAlchemy engine reflects the provided database URI."""

    engines = db.engines
    engine = engines.pop(None, None)

    if engine is not None:
        engine.dispose()

    engine_options = getattr(db, "_engine_options", {}) or {}
    engines[None] = db.create_engine(database_uri, **engine_options)
    return engines[None]


class DatabaseTestCase(unittest.TestCase):
    """Runs each test against a freshly created schema and an empty aggregate cache."""

    def setUp(self):
        from app import app, db
        from services.aggregate_service import init_aggregate_cache

        self.app = app
        self.db = db
        self._original_database_uri = app.config.get("SQLALCHEMY_DATABASE_URI")
        self._original_testing = app.config.get("TESTING", False)
        (
            self._test_db_path,
            test_database_uri,
            self._managed_test_db,
        ) = provision_test_database()
        app.config["TESTING"] = True
        app.config["SQLALCHEMY_DATABASE_URI"] = test_database_uri

        self.ctx = app.app_context()
        self.ctx.push()
        db.session.remove()
        rebuild_database_engine(db, test_database_uri)
        db.drop_all()
        db.create_all()

        self.cache = init_aggregate_cache(app)

    def tearDown(self):
        db = self.db
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
        self.cache.clear()
        self.ctx.pop()

        if self._managed_test_db:
            cleanup_test_database(self._test_db_path)
        if self._original_database_uri is not None:
            self.app.config["SQLALCHEMY_DATABASE_URI"] = self._original_database_uri
        self.app.config["TESTING"] = self._original_testing


__all__ = [
    "DatabaseTestCase",
    "cleanup_test_database",
    "provision_test_database",
    "rebuild_database_engine",
]
