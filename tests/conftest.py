from __future__ import annotations

import pytest

from stubs import RecordingEngine


@pytest.fixture
def engine() -> RecordingEngine:
    return RecordingEngine()


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SOUNDSCRIPT_LOG_DIR", str(tmp_path / "logs"))
