from __future__ import annotations

import pytest

from database.base import Database, parse_database_dsn, to_dollar_params
from database.migrations.runner import run_migrations


def test_placeholders_are_numbered_for_postgres() -> None:
    query = "UPDATE tickets SET status = ? WHERE id = ? AND created_by = ?;"

    assert to_dollar_params(query) == "UPDATE tickets SET status = $1 WHERE id = $2 AND created_by = $3;"


def test_parse_database_dsn() -> None:
    assert parse_database_dsn("sqlite:///./data/helpdesk.db").value == "./data/helpdesk.db"
    assert parse_database_dsn("postgres://desk@db/desk").driver == "postgresql"
    with pytest.raises(ValueError):
        parse_database_dsn("mysql://desk@db/desk")


@pytest.mark.asyncio
async def test_migrations_apply_once(tmp_path) -> None:
    database = Database(f"sqlite:///{tmp_path / 'desk.db'}")
    await database.connect()
    try:
        assert await run_migrations(database) == ["0001_initial.sql"]
        assert await run_migrations(database) == []
        assert await database.fetchval("SELECT COUNT(*) AS count FROM tickets;") == 0
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_execute_reports_affected_rows(tmp_path) -> None:
    database = Database(f"sqlite:///{tmp_path / 'desk.db'}")
    await database.connect()
    try:
        await run_migrations(database)
        await database.execute("INSERT INTO counters(name, value) VALUES (?, ?);", ["a", 1])
        await database.execute("INSERT INTO counters(name, value) VALUES (?, ?);", ["b", 1])

        assert await database.execute("UPDATE counters SET value = value + 1;") == 2
        row = await database.execute_returning(
            "UPDATE counters SET value = value + 1 WHERE name = ? RETURNING value;", ["a"]
        )
        assert row == {"value": 3}
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sqlite_lower_folds_unicode(tmp_path) -> None:
    database = Database(f"sqlite:///{tmp_path / 'desk.db'}")
    await database.connect()
    try:
        assert await database.fetchval("SELECT LOWER(?) AS folded;", ["ÜBER Ärger"]) == "über ärger"
        assert await database.fetchval("SELECT LOWER(NULL) AS folded;") is None
    finally:
        await database.close()
