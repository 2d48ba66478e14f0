from __future__ import annotations

import base64

import pytest


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("ENYC_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("ENYC_ADMIN_TOKEN", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ENYC_LOG_FILE", raising=False)


@pytest.fixture
def master_key(monkeypatch):
    key = base64.urlsafe_b64encode(b"a" * 32).decode("utf-8")
    monkeypatch.setenv("ENYC_MASTER_KEY", key)
    monkeypatch.setenv("ENYC_KEY_ID", "v1")
    return key
