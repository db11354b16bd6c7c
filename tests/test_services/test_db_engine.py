"""
Tests for the process-wide database wiring.

Covers:
- Development start-up creates the schema
- Other environments leave the schema alone
- Shutdown disposes the engine and a later call starts fresh
"""

import pytest
from sqlalchemy import inspect

from trustgate.config import settings
from trustgate.db import engine as db_engine


@pytest.fixture
def sqlite_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path / 'wiring.db'}")


async def _table_names() -> set[str]:
    async with db_engine.get_session_factory()() as session:
        conn = await session.connection()
        return set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_development_creates_tables(self, sqlite_settings, monkeypatch):
        monkeypatch.setattr(settings, "environment", "development")
        await db_engine.init_db()
        try:
            assert {"trust_scores", "system_settings", "alerts"} <= await _table_names()
        finally:
            await db_engine.close_db()

    @pytest.mark.asyncio
    async def test_production_schema_is_external(self, sqlite_settings, monkeypatch):
        monkeypatch.setattr(settings, "environment", "production")
        await db_engine.init_db()
        try:
            assert await _table_names() == set()
        finally:
            await db_engine.close_db()

    @pytest.mark.asyncio
    async def test_close_resets_factory(self, sqlite_settings):
        first = db_engine.get_session_factory()
        assert db_engine.get_session_factory() is first
        await db_engine.close_db()
        await db_engine.close_db()

        second = db_engine.get_session_factory()
        assert second is not first
        await db_engine.close_db()
