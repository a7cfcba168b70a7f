"""
Unit tests for the request-scoped database session dependency.
"""

import inspect

import pytest
from fastapi import HTTPException
from sqlalchemy.orm import Session

from src.database.session import get_db_session, reset_engine


@pytest.fixture(autouse=True)
def fresh_engine():
    reset_engine()
    yield
    reset_engine()


class TestGetDbSession:

    def test_is_async_generator(self):
        assert inspect.isasyncgenfunction(get_db_session)

    @pytest.mark.asyncio
    async def test_yields_session_and_closes(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")

        dependency = get_db_session()
        session = await dependency.__anext__()

        assert isinstance(session, Session)
        with pytest.raises(StopAsyncIteration):
            await dependency.__anext__()

    @pytest.mark.asyncio
    async def test_unconfigured_database_is_503(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(HTTPException) as exc_info:
            await get_db_session().__anext__()

        assert exc_info.value.status_code == 503
