"""Pytest fixtures for unit tests built on the in-memory fakes.

What:
  Make ``tests/unit`` importable so test modules can ``import fakes`` and
  expose small factories for accounts, loggers, and history stores.

How:
  Append the unit directory to ``sys.path``; every fixture returns a fresh
  object so no state leaks between tests.

Interfaces:
  :func:`log_stream`, :func:`logger`, :func:`account`, :func:`history`.
"""

import io
import sys
from pathlib import Path

import pytest

from popfwd.config.schema import MailboxAccount
from popfwd.state.history import HistoryStore
from popfwd.utils.logging import get_logger

UNIT_DIR = Path(__file__).resolve().parent
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO):
    """JSON logger at ``DEBUG`` writing into :func:`log_stream`."""

    return get_logger("popfwd.test", level="DEBUG", stream=log_stream)


@pytest.fixture
def account() -> MailboxAccount:
    return MailboxAccount(
        email="source@example.com",
        app_password="source-secret",
        pop3_host="pop.example.com",
    )


@pytest.fixture
def history(tmp_path: Path, logger) -> HistoryStore:
    """Empty history store persisted under ``tmp_path``."""

    return HistoryStore(tmp_path / "state" / "state.json", logger=logger)
