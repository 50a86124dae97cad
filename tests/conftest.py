from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_runtime_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep logs and data in temp and ignore secrets from the host environment."""
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("MAILWATCH_DATA_DIR", str(data_dir))
    monkeypatch.delenv("MAILWATCH_IMAP_PASSWORD", raising=False)
    monkeypatch.delenv("MAILWATCH_TELEGRAM_TOKEN", raising=False)
