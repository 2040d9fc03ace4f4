"""Tests for dbforge.datasource module."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from asyncpg.exceptions import PostgresSyntaxError, UndefinedTableError

from dbforge.datasource import DataSource
from dbforge.errors import QueryError


def _mock_connection(records=None, status="CREATE FUNCTION"):
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=records or [])
    conn.execute = AsyncMock(return_value=status)
    conn.close = AsyncMock()
    conn.add_log_listener = MagicMock()
    return conn


class TestQuery:
    """Tests for DataSource.query."""

    def test_returns_rows_as_dicts(self, creds):
        conn = _mock_connection(records=[{"relname": "orm"}])

        with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.return_value = conn
            result = asyncio.run(DataSource().query("select 1", creds.for_database("dev")))

        assert result.rows == [{"relname": "orm"}]
        assert result.row_count == 1
        conn.close.assert_awaited_once()

    def test_connects_to_the_requested_database(self, creds):
        conn = _mock_connection()

        with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.return_value = conn
            asyncio.run(DataSource(command_timeout=30).query("select 1", creds.for_database("dev2")))

        kwargs = mock_connect.call_args.kwargs
        assert kwargs["database"] == "dev2"
        assert kwargs["host"] == "localhost"
        assert kwargs["user"] == "admin"
        assert kwargs["password"] == "secret"
        assert kwargs["command_timeout"] == 30

    def test_postgres_errors_become_query_errors(self, creds):
        conn = _mock_connection()
        conn.fetch = AsyncMock(side_effect=UndefinedTableError('relation "xt.orm" does not exist'))

        with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.return_value = conn
            with pytest.raises(QueryError) as exc_info:
                asyncio.run(DataSource().query("select * from xt.orm", creds.for_database("dev")))

        assert "xt.orm" in str(exc_info.value)
        assert exc_info.value.database == "dev"
        conn.close.assert_awaited_once()

    def test_connection_errors_become_query_errors(self, creds):
        with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.side_effect = ConnectionRefusedError("connection refused")
            with pytest.raises(QueryError, match="connection refused"):
                asyncio.run(DataSource().query("select 1", creds.for_database("dev")))

    def test_requires_a_database(self, creds):
        with pytest.raises(QueryError, match="No database"):
            asyncio.run(DataSource().query("select 1", creds))


class TestExecute:
    """Tests for DataSource.execute."""

    def test_executes_script_in_one_call(self, creds):
        conn = _mock_connection(status="DO")
        script = "select 1;select 2;"

        with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.return_value = conn
            status = asyncio.run(DataSource().execute(script, creds.for_database("dev")))

        assert status == "DO"
        conn.execute.assert_awaited_once_with(script)

    def test_syntax_error(self, creds):
        conn = _mock_connection()
        conn.execute = AsyncMock(side_effect=PostgresSyntaxError('syntax error at or near "select"'))

        with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.return_value = conn
            with pytest.raises(QueryError, match="syntax error"):
                asyncio.run(DataSource().execute("select", creds.for_database("dev")))

    def test_timeout(self, creds):
        conn = _mock_connection()
        conn.execute = AsyncMock(side_effect=asyncio.TimeoutError())

        with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.return_value = conn
            with pytest.raises(QueryError):
                asyncio.run(DataSource(command_timeout=1).execute("select pg_sleep(5);", creds.for_database("dev")))


def test_server_notices_are_logged(creds, caplog):
    conn = _mock_connection()
    datasource = DataSource()

    with patch("dbforge.datasource.asyncpg.connect", new_callable=AsyncMock) as mock_connect:
        mock_connect.return_value = conn
        asyncio.run(datasource.execute("select 1;", creds.for_database("dev")))

    listener = conn.add_log_listener.call_args.args[0]
    notice = MagicMock()
    notice.message = "Just ran file /src/a.sql"
    with caplog.at_level(logging.DEBUG, logger="dbforge.datasource"):
        listener(conn, notice)

    assert "Just ran file /src/a.sql" in caplog.text
    assert caplog.records[-1].database == "dev"
    assert caplog.records[-1].event == "server_notice"
