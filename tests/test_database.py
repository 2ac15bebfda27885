from pathlib import Path
from types import SimpleNamespace

import pytest

from nhs_interop import database


class _FakeConn:
    async def run_sync(self, _fn) -> None:
        return None


class _FakeBeginFactory:
    def __init__(self, fail_times: int) -> None:
        self.fail_times = fail_times
        self.calls = 0

    def __call__(self):
        self.calls += 1
        call_number = self.calls
        fail_times = self.fail_times

        class _Ctx:
            async def __aenter__(self_nonlocal):
                if call_number <= fail_times:
                    raise ConnectionError("db not ready")
                return _FakeConn()

            async def __aexit__(self_nonlocal, exc_type, exc, tb):
                return False

        return _Ctx()


def _patch(monkeypatch: pytest.MonkeyPatch, begin_factory: _FakeBeginFactory, retries: int) -> None:
    monkeypatch.setattr(database, "engine", SimpleNamespace(begin=begin_factory))
    monkeypatch.setattr(database.settings, "debug", False, raising=False)
    monkeypatch.setattr(database.settings, "database_init_retries", retries, raising=False)
    monkeypatch.setattr(
        database.settings,
        "database_init_retry_delay_seconds",
        0.01,
        raising=False,
    )

    async def _noop_sleep(_seconds: float) -> None:
        return None

    monkeypatch.setattr(database.asyncio, "sleep", _noop_sleep)


@pytest.mark.anyio
async def test_init_db_retries_until_success(monkeypatch: pytest.MonkeyPatch) -> None:
    begin_factory = _FakeBeginFactory(fail_times=2)
    _patch(monkeypatch, begin_factory, retries=3)

    await database.init_db()

    assert begin_factory.calls == 3


@pytest.mark.anyio
async def test_init_db_raises_after_retries_exhausted(monkeypatch: pytest.MonkeyPatch) -> None:
    begin_factory = _FakeBeginFactory(fail_times=10)
    _patch(monkeypatch, begin_factory, retries=1)

    with pytest.raises(ConnectionError, match="db not ready"):
        await database.init_db()

    assert begin_factory.calls == 2


def test_alembic_versions_have_revisions():
    versions_dir = Path(__file__).resolve().parents[1] / "alembic" / "versions"
    files = sorted(versions_dir.glob("*.py"))
    assert files, "No alembic versions found"
    for path in files:
        text = path.read_text(encoding="utf-8")
        assert "revision" in text
        assert "down_revision" in text
