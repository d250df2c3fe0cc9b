"""Tests for the logging manager."""

import logging
import sys

from mongo_auto_rollback.managers import logging_manager
from mongo_auto_rollback.managers.logging_manager import PrefixFilter, get_logger


def test_prefixed_logger_is_child_of_base():
    logger = get_logger(prefix="[UndoLog]")

    assert logger.name == "Mongo_Auto_Rollback.UndoLog"
    assert any(isinstance(f, PrefixFilter) for f in logger.filters)


def test_prefix_filter_is_added_once():
    get_logger(prefix="[Twice]")
    logger = get_logger(prefix="[Twice]")

    assert sum(isinstance(f, PrefixFilter) for f in logger.filters) == 1


def test_console_handler_is_added_once():
    get_logger(name="test_console_once")
    logger = get_logger(name="test_console_once")

    stdout_handlers = [
        h for h in logger.handlers if isinstance(h, logging.StreamHandler) and h.stream is sys.stdout
    ]
    assert len(stdout_handlers) == 1


def test_messages_carry_prefix(caplog):
    logger = get_logger(name="test_prefix_messages", prefix="[DATABASE]")

    with caplog.at_level(logging.INFO, logger="test_prefix_messages"):
        logger.info("connected to %s", "migrations")

    assert "[DATABASE] connected to migrations" in caplog.messages


def test_prefix_is_applied_once_per_record():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None)
    prefix_filter = PrefixFilter("[A]")

    prefix_filter.filter(record)
    prefix_filter.filter(record)

    assert record.getMessage() == "[A] hello"


def test_loki_handler_only_when_enabled(monkeypatch):
    attached = []
    monkeypatch.setattr(logging_manager, "_ensure_loki_handler", attached.append)

    monkeypatch.setattr(logging_manager.settings, "LOKI_ENABLED", False)
    get_logger(name="test_loki_disabled")
    monkeypatch.setattr(logging_manager.settings, "LOKI_ENABLED", True)
    logger = get_logger(name="test_loki_enabled")
    get_logger(name="test_loki_skipped", add_loki=False)

    assert attached == [logger]
