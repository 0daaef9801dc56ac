from unittest.mock import MagicMock, Mock

import pytest

from whatsflow.config import settings


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture(autouse=True)
def _no_debug_log_writes(monkeypatch):
    monkeypatch.setattr(settings, "enable_debug_logs", False)


def _sql_result(row=None, rows=None, rowcount=0):
    result = MagicMock()
    result.mappings.return_value.first.return_value = row
    result.mappings.return_value.all.return_value = rows if rows is not None else []
    result.rowcount = rowcount
    return result


@pytest.fixture
def sql_result():
    """Factory for the object returned by Session.execute(text(...))."""
    return _sql_result
