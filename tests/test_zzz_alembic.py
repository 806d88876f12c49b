"""Alembic migration tests.

File named test_zzz_alembic.py to sort LAST in pytest collection order.
Migrations run against a scratch SQLite file.
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect

from tapbattle.db import models  # noqa: F401
from tapbattle.db.base import Base

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _alembic(url: str, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "alembic", *args],
        capture_output=True,
        text=True,
        cwd=PROJECT_ROOT,
        env={**os.environ, "TAPBATTLE_DATABASE_URL": url},
    )


def _schema(url: str) -> dict[str, dict[str, object]]:
    """Tables with their columns, indexes and constraints, as reflected."""
    engine = create_engine(url)
    try:
        inspector = inspect(engine)
        schema = {}
        for table in inspector.get_table_names():
            if table == "alembic_version":
                continue
            schema[table] = {
                "columns": {c["name"]: c["nullable"] for c in inspector.get_columns(table)},
                "indexes": {i["name"]: tuple(i["column_names"]) for i in inspector.get_indexes(table)},
                "uniques": {tuple(u["column_names"]) for u in inspector.get_unique_constraints(table)},
                "checks": {c["name"] for c in inspector.get_check_constraints(table)},
                "foreign_keys": {
                    (tuple(fk["constrained_columns"]), fk["referred_table"]) for fk in inspector.get_foreign_keys(table)
                },
            }
        return schema
    finally:
        engine.dispose()


@pytest.fixture
def migrated_db(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'migrated.db'}"


def test_alembic_upgrade_head(migrated_db) -> None:
    """alembic upgrade head succeeds without errors."""
    result = _alembic(migrated_db, "upgrade", "head")
    assert result.returncode == 0, f"alembic upgrade failed: {result.stderr}"


def test_alembic_current_shows_head(migrated_db) -> None:
    """alembic current shows the latest revision."""
    assert _alembic(migrated_db, "upgrade", "head").returncode == 0
    result = _alembic(migrated_db, "current")
    assert result.returncode == 0
    assert "001_rooms_and_ledger" in result.stdout


def test_migration_matches_models(tmp_path) -> None:
    """The migrated schema has the tables, columns and constraints the models declare."""
    migrated = tmp_path / "migrated.db"
    declared = tmp_path / "declared.db"

    result = _alembic(f"sqlite+aiosqlite:///{migrated}", "upgrade", "head")
    assert result.returncode == 0, f"alembic upgrade failed: {result.stderr}"

    engine = create_engine(f"sqlite:///{declared}")
    Base.metadata.create_all(engine)
    engine.dispose()

    from_migration = _schema(f"sqlite:///{migrated}")
    from_models = _schema(f"sqlite:///{declared}")

    assert set(from_migration) == {"users", "rooms", "participants", "transactions"}
    assert from_migration == from_models
