"""
Shared pytest fixtures.

Every test gets a clean temporary DATA_DIR via the `tmp_data_dir` fixture so
SQLite-backed tests are isolated from each other and from a real
data/search_cache.db.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and prevents cross-test pollution.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    # Patch the module-level DB_PATH that was already computed at import time
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "search_cache.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)

    # Also reset the internal lock so tests don't share state
    import asyncio
    monkeypatch.setattr(database, "_lock", asyncio.Lock())

    # The shared orchestrator must not leak between tests
    import product_search
    monkeypatch.setattr(product_search, "_orchestrator", None)
    monkeypatch.setattr(product_search, "_settings", None)

    yield data


class FakeClock:
    """Manually advanced clock for cache / history tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def fake_session(payload=None, status: int = 200, text: str = "error text", method: str = "get"):
    """
    A MagicMock standing in for aiohttp.ClientSession whose get()/post()
    returns a response with the given status and JSON payload.
    """
    from unittest.mock import AsyncMock, MagicMock

    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=payload if payload is not None else {})
    mock_resp.text = AsyncMock(return_value=text)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)

    mock_session = MagicMock()
    setattr(mock_session, method, MagicMock(return_value=mock_resp))
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=False)
    return mock_session
