import logging
import os
import sys

from vidpulse.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "app.log"
    monkeypatch.setenv("VP_LOG_LEVEL", "INFO")
    monkeypatch.setenv("VP_LOG_FILE", str(log_file))
    monkeypatch.setenv("VP_LOG_LEVELS", "vidpulse.broker=DEBUG")

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("vidpulse.worker")
        configure_logging("vidpulse.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
        assert logging.getLogger("vidpulse.broker").level == logging.DEBUG
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)
        logging.getLogger("vidpulse.broker").setLevel(logging.NOTSET)


def test_log_event_formats_key_values(caplog):
    logger = logging.getLogger("vidpulse.tests")
    with caplog.at_level(logging.INFO, logger="vidpulse.tests"):
        log_event(logger, logging.INFO, "item_enqueued", job_id="job-1", position="2/5")
    assert "event=item_enqueued job_id=job-1 position=2/5" in caplog.text
