"""Tests for the pooler SQL installed through psycopg2"""

from unittest.mock import MagicMock, Mock

import psycopg2
import pytest

from postgres_operator.context import Context
from postgres_operator.database import DatabaseClient
from postgres_operator.errors import ReconcileCancelled


def make_client(connect, connect_timeout=10):
    return DatabaseClient(host="demo-primary.default.svc", port=5432, user="postgres",
                          password="secret", connect_timeout=connect_timeout, connect=connect)


def fake_connection(existing_role=None):
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchone.return_value = existing_role
    return conn, cursor


def test_cancelled_context_never_connects():
    connect = Mock()
    ctx = Context()
    ctx.cancel()

    with pytest.raises(ReconcileCancelled):
        make_client(connect).install_pgbouncer_auth(ctx, "_crunchypgbouncer", "pw")
    connect.assert_not_called()


def test_expired_deadline_never_connects():
    connect = Mock()
    ctx = Context(timeout=30)
    ctx.deadline -= 60

    with pytest.raises(ReconcileCancelled):
        make_client(connect).install_pgbouncer_auth(ctx, "_crunchypgbouncer", "pw")
    connect.assert_not_called()


def test_timeouts_follow_the_deadline():
    conn, _ = fake_connection()
    connect = Mock(return_value=conn)

    make_client(connect, connect_timeout=10).install_pgbouncer_auth(
        Context(timeout=5), "_crunchypgbouncer", "pw")

    kwargs = connect.call_args.kwargs
    assert 2 <= kwargs["connect_timeout"] <= 5
    milliseconds = int(kwargs["options"].split("=")[1])
    assert kwargs["options"].startswith("-c statement_timeout=")
    assert 0 < milliseconds <= 5000
    assert kwargs["sslmode"] == "require"


def test_unbounded_context_uses_the_connect_timeout():
    conn, _ = fake_connection()
    connect = Mock(return_value=conn)

    make_client(connect, connect_timeout=7).install_pgbouncer_auth(Context(), "_crunchypgbouncer", "pw")

    assert connect.call_args.kwargs["connect_timeout"] == 7
    assert "options" not in connect.call_args.kwargs


def test_install_creates_role_and_commits():
    conn, cursor = fake_connection(existing_role=None)

    make_client(Mock(return_value=conn)).install_pgbouncer_auth(Context(), "_crunchypgbouncer", "pw")

    statements = [str(c.args[0]) for c in cursor.execute.call_args_list]
    assert any("CREATE SCHEMA IF NOT EXISTS pgbouncer" in s for s in statements)
    conn.commit.assert_called_once()
    conn.close.assert_called_once()


def test_failure_rolls_back_and_closes():
    conn, cursor = fake_connection()
    cursor.execute.side_effect = psycopg2.OperationalError("canceling statement due to statement timeout")

    with pytest.raises(psycopg2.OperationalError):
        make_client(Mock(return_value=conn)).install_pgbouncer_auth(Context(), "_crunchypgbouncer", "pw")

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    conn.close.assert_called_once()
