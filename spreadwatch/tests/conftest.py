import pytest

from spreadwatch.persistence.db import DB


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never hit the real exchange or Telegram accidentally.
    """
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")
    monkeypatch.setenv("AUTOSTART_MONITORING", "false")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "spreadwatch.db"))
