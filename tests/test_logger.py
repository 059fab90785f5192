import logging

from utils.logger import GATEWAY_LOGGER_NAME, TokenRedactFilter, gateway_logger, logger


def _record(message, args=None):
    return logging.LogRecord("t", logging.INFO, __file__, 1, message, args, None)


def test_token_query_parameter_is_masked():
    record = _record("Gateway 开始连接: ws://h:1/?x=1&token=s3cret&y=2")
    assert TokenRedactFilter().filter(record) is True
    assert record.getMessage() == "Gateway 开始连接: ws://h:1/?x=1&token=***&y=2"


def test_messages_without_token_are_untouched():
    record = _record("sessions.list 完成 limit=%d", (5,))
    TokenRedactFilter().filter(record)
    assert record.args == (5,)
    assert record.getMessage() == "sessions.list 完成 limit=5"


def test_set_level_applies_to_both_loggers():
    try:
        logger.set_level("warning")
        assert gateway_logger.level == logging.WARNING
        assert all(h.level == logging.WARNING for h in gateway_logger.handlers)
        logger.set_level("nonsense")
        assert logging.getLogger(GATEWAY_LOGGER_NAME).level == logging.INFO
    finally:
        logger.set_level("DEBUG")
