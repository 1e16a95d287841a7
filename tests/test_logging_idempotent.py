import logging
import sys

import pytest

from aperture.utils import configure_logging, log_event


@pytest.fixture
def bare_root():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    root.handlers = []
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)


def test_repeated_configuration_keeps_one_handler_each(bare_root, tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "worker.log"
    monkeypatch.setenv("AP_LOG_LEVEL", "warning")
    monkeypatch.setenv("AP_LOG_FILE", str(log_file))

    configure_logging("aperture.worker")
    configure_logging("aperture.worker")

    stdout_handlers = [
        handler
        for handler in bare_root.handlers
        if not isinstance(handler, logging.FileHandler)
        and getattr(handler, "stream", None) is sys.stdout
    ]
    file_handlers = [h for h in bare_root.handlers if isinstance(h, logging.FileHandler)]
    assert len(stdout_handlers) == 1
    assert [h.baseFilename for h in file_handlers] == [str(log_file)]
    assert bare_root.level == logging.WARNING
    assert log_file.parent.is_dir()


def test_per_logger_level_overrides(bare_root, monkeypatch):
    monkeypatch.setenv("AP_LOG_LEVELS", "aperture.llm=debug, bad-entry ,aperture.news=ERROR")
    monkeypatch.delenv("AP_LOG_FILE", raising=False)
    try:
        configure_logging("aperture")
        assert logging.getLogger("aperture.llm").level == logging.DEBUG
        assert logging.getLogger("aperture.news").level == logging.ERROR
    finally:
        logging.getLogger("aperture.llm").setLevel(logging.NOTSET)
        logging.getLogger("aperture.news").setLevel(logging.NOTSET)


def test_log_event_renders_key_value_pairs(caplog):
    logger = logging.getLogger("aperture.test")
    with caplog.at_level(logging.INFO, logger="aperture.test"):
        log_event(logger, logging.INFO, "task_claimed", task_id="task_1", version=2)
        log_event(logger, logging.INFO, "queue_idle")

    messages = [record.getMessage() for record in caplog.records[-2:]]
    assert messages == ["event=task_claimed task_id=task_1 version=2", "event=queue_idle"]
