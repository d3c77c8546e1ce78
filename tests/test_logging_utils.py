import logging

from soundscript.logging_utils import configure_logging, get_log_dir, get_log_path, log_exception


def test_log_path_uses_env_override(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SOUNDSCRIPT_LOG_DIR", str(tmp_path))
    assert get_log_dir() == tmp_path
    assert get_log_path() == tmp_path / "soundscript.log"


def test_configure_logging_adds_file_handler(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SOUNDSCRIPT_LOG_DIR", str(tmp_path))
    configure_logging(force=True)

    logger = logging.getLogger("soundscript")
    assert any(isinstance(handler, logging.FileHandler) for handler in logger.handlers)
    assert logger.propagate


def test_log_exception_appends_traceback(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SOUNDSCRIPT_LOG_DIR", str(tmp_path))
    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        path = log_exception("render", exc)

    assert path == tmp_path / "soundscript.log"
    text = path.read_text(encoding="utf-8")
    assert "render failed: RuntimeError: boom" in text
    assert "Traceback" in text
