import logging
import os
import sys

from autopress.utils import configure_logging


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("AP_LOG_LEVEL", "INFO")
    monkeypatch.setenv("AP_LOG_FILE", str(log_file))
    monkeypatch.setenv("AP_LOG_LEVELS", "autopress.fetch=DEBUG")

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("autopress.worker")
        configure_logging("autopress.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len([h for h in stream_handlers if h.stream is sys.stdout]) == 1
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(str(log_file))
        assert logging.getLogger("autopress.fetch").level == logging.DEBUG
    finally:
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)
        logging.getLogger("autopress.fetch").setLevel(logging.NOTSET)
