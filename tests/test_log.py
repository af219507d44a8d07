# tests/test_log.py
import logging

from escrowguard.log import HANDLER_NAME, LOG_FORMAT, configure_logging


def test_configure_logging_installs_one_named_handler():
    configure_logging("debug")
    configure_logging("info")

    logger = logging.getLogger("escrowguard")
    handlers = [h for h in logger.handlers if h.get_name() == HANDLER_NAME]
    assert len(handlers) == 1
    assert handlers[0].formatter._fmt == LOG_FORMAT
    assert logger.level == logging.INFO
