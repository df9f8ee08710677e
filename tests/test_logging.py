from __future__ import annotations

import logging

import pytest

from chatsync.core.logging import configure_logging, resolve_level


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_resolve_level_prefers_explicit_level():
    assert resolve_level(debug=False) == logging.INFO
    assert resolve_level(debug=True) == logging.DEBUG
    assert resolve_level(debug=True, level="warning") == logging.WARNING


def test_resolve_level_rejects_unknown_names():
    with pytest.raises(ValueError):
        resolve_level(debug=False, level="chatty")


def test_configure_logging_keeps_relay_and_sessions_visible():
    assert configure_logging(debug=False, level="ERROR") == logging.ERROR

    assert logging.getLogger().level == logging.ERROR
    assert logging.getLogger("uvicorn.access").level == logging.ERROR
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert logging.getLogger("chatsync.store.dispatcher").level == logging.INFO
    assert logging.getLogger("chatsync.sync.session").level == logging.INFO


def test_configure_logging_debug_turns_on_sql_echo():
    configure_logging(debug=True)

    assert logging.getLogger("sqlalchemy.engine").level == logging.INFO
    assert logging.getLogger("chatsync.store.dispatcher").level == logging.DEBUG
