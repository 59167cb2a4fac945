"""
Unit tests for core.exceptions module.

Tests:
- Hierarchy: every error derives from RelaySyncError
- Database and connectivity sub-hierarchies
- WorkerError exit code attribute
"""

import pytest

from relaysync.core.exceptions import (
    ConfigurationError,
    ConnectionPoolError,
    ConnectivityError,
    DatabaseError,
    ProtocolError,
    QueryError,
    RelaySyncError,
    RelayTimeoutError,
    WorkerError,
)


class TestHierarchy:
    """Exception class relationships."""

    @pytest.mark.parametrize(
        "exc_class",
        [
            ConfigurationError,
            DatabaseError,
            ConnectionPoolError,
            QueryError,
            ConnectivityError,
            RelayTimeoutError,
            ProtocolError,
            WorkerError,
        ],
    )
    def test_all_derive_from_base(self, exc_class):
        assert issubclass(exc_class, RelaySyncError)

    def test_database_errors(self):
        assert issubclass(ConnectionPoolError, DatabaseError)
        assert issubclass(QueryError, DatabaseError)
        assert not issubclass(QueryError, ConnectionPoolError)

    def test_timeout_is_connectivity_error(self):
        assert issubclass(RelayTimeoutError, ConnectivityError)

    def test_protocol_error_is_not_connectivity_error(self):
        assert not issubclass(ProtocolError, ConnectivityError)

    def test_catch_by_base(self):
        with pytest.raises(RelaySyncError, match="boom"):
            raise RelayTimeoutError("boom")


class TestWorkerError:
    """WorkerError carries the exit code."""

    def test_default_exitcode(self):
        err = WorkerError("unit died")
        assert err.exitcode is None
        assert str(err) == "unit died"

    def test_exitcode(self):
        err = WorkerError("unit died", exitcode=-9)
        assert err.exitcode == -9
