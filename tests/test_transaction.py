"""
Tests for explicit transactions.

Covers:
- Atomicity: failed transactions leave no trace, committed ones are whole
- Automatic rollback when a query fails
- Context manager commit / rollback
- Closed-transaction errors and idempotent rollback
- One open transaction per session
- Connection handling on protocol errors and failed rollbacks
"""

import unittest
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from graphtx import (
    CypherSyntaxError,
    Driver,
    ProtocolError,
    ServiceUnavailable,
    TransactionClosedError,
    TransactionNestingError,
    TransactionState,
    UsageError,
)
from graphtx.bookmarks import Bookmarks
from graphtx.io import COMMIT, MemoryServer, TxHandle, TxRequest
from graphtx.transaction import Transaction

from conftest import CREATE_PERSON, FAST_RETRY, MATCH_NAMES, RETURN_RANGE, register_people_queries


def names(server):
    return sorted(row["name"] for row in server.rows("Person"))


class TestTransactionLifecycle:
    def test_commit_makes_writes_visible(self, server, session):
        tx = session.begin_transaction()
        tx.run(CREATE_PERSON, name="Alice")
        tx.run(CREATE_PERSON, name="Bob")
        assert names(server) == []
        tx.commit()
        assert tx.state == TransactionState.COMMITTED
        assert names(server) == ["Alice", "Bob"]

    def test_commit_returns_bookmark_to_session(self, server, session):
        tx = session.begin_transaction()
        tx.run(CREATE_PERSON, name="Alice")
        tx.commit()
        assert tx.bookmarks == Bookmarks.from_raw_values(["neo4j:1"])
        assert session.last_bookmarks() == tx.bookmarks

    def test_rollback_discards_writes(self, server, session):
        tx = session.begin_transaction()
        tx.run(CREATE_PERSON, name="Alice")
        tx.rollback()
        assert tx.state == TransactionState.ROLLED_BACK
        assert names(server) == []
        assert server.rollbacks == 1

    def test_rollback_is_idempotent(self, server, session):
        tx = session.begin_transaction()
        tx.rollback()
        tx.rollback()
        assert server.rollbacks == 1

    def test_rollback_after_commit_fails(self, session):
        tx = session.begin_transaction()
        tx.commit()
        with pytest.raises(TransactionClosedError):
            tx.rollback()

    def test_run_after_commit_fails(self, session):
        tx = session.begin_transaction()
        tx.commit()
        with pytest.raises(TransactionClosedError):
            tx.run(MATCH_NAMES)

    def test_commit_twice_fails(self, session):
        tx = session.begin_transaction()
        tx.commit()
        with pytest.raises(TransactionClosedError):
            tx.commit()

    def test_close_rolls_back_open_transaction(self, server, session):
        tx = session.begin_transaction()
        tx.run(CREATE_PERSON, name="Alice")
        tx.close()
        assert tx.closed()
        assert names(server) == []
        tx.close()

    def test_context_manager_commits(self, server, session):
        with session.begin_transaction() as tx:
            tx.run(CREATE_PERSON, name="Alice")
        assert tx.state == TransactionState.COMMITTED
        assert names(server) == ["Alice"]

    def test_context_manager_rolls_back_on_error(self, server, session):
        with pytest.raises(RuntimeError):
            with session.begin_transaction() as tx:
                tx.run(CREATE_PERSON, name="Alice")
                raise RuntimeError("application failure")
        assert tx.state == TransactionState.ROLLED_BACK
        assert names(server) == []

    def test_context_manager_leaves_closed_transaction_alone(self, server, session):
        with session.begin_transaction() as tx:
            tx.run(CREATE_PERSON, name="Alice")
            tx.rollback()
        assert tx.state == TransactionState.ROLLED_BACK
        assert names(server) == []

    def test_queries_run_in_call_order(self, server, session):
        with session.begin_transaction() as tx:
            for name in ("c", "a", "b"):
                tx.run(CREATE_PERSON, name=name)
        assert [e.parameters["name"] for e in server.executed(CREATE_PERSON)] == ["c", "a", "b"]
        assert len({e.tx_id for e in server.journal}) == 1

    def test_metadata_and_timeout_reach_server(self, server, session):
        with session.begin_transaction(metadata={"app": "tests"}, timeout=30) as tx:
            tx.run(MATCH_NAMES).consume()
        assert server.journal[-1].metadata == {"app": "tests"}

    def test_connection_released_after_commit(self, driver, session):
        tx = session.begin_transaction()
        assert driver._pool.in_use_count() == 1
        tx.commit()
        assert driver._pool.in_use_count() == 0


class TestFailingQueries:
    def test_failing_query_rolls_back_automatically(self, server, session):
        """Scenario: CREATE then invalid syntax leaves no Person behind."""
        tx = session.begin_transaction()
        tx.run(CREATE_PERSON, name="Alice")
        with pytest.raises(CypherSyntaxError):
            tx.run("INVALID SYNTAX")
        assert tx.state == TransactionState.ROLLED_BACK
        assert server.rollbacks == 1
        assert names(server) == []
        with pytest.raises(TransactionClosedError):
            tx.run(MATCH_NAMES)

    def test_session_usable_after_failed_transaction(self, server, session):
        tx = session.begin_transaction()
        with pytest.raises(CypherSyntaxError):
            tx.run("INVALID SYNTAX")
        with session.begin_transaction() as tx2:
            tx2.run(CREATE_PERSON, name="Bob")
        assert names(server) == ["Bob"]

    def test_stream_failure_rolls_back(self, server, session):
        error = ServiceUnavailable("connection reset")
        server.fail_next(RETURN_RANGE, error, after_records=2)
        tx = session.begin_transaction()
        tx.run(CREATE_PERSON, name="Alice")
        result = tx.run(RETURN_RANGE, n=5)
        assert [r["i"] for r in result.fetch(2)] == [1, 2]
        with pytest.raises(ServiceUnavailable):
            next(result)
        assert tx.state == TransactionState.ROLLED_BACK
        assert names(server) == []

    def test_commit_failure_rolls_back(self, server, session):
        server.fail_next(COMMIT, ServiceUnavailable("connection lost"))
        tx = session.begin_transaction()
        tx.run(CREATE_PERSON, name="Alice")
        with pytest.raises(ServiceUnavailable):
            tx.commit()
        assert tx.state == TransactionState.ROLLED_BACK
        assert names(server) == []

    def test_protocol_error_discards_connection(self, server, driver, session):
        server.fail_next(MATCH_NAMES, ProtocolError("unexpected message"))
        tx = session.begin_transaction()
        with pytest.raises(ProtocolError):
            tx.run(MATCH_NAMES)
        assert driver._pool.in_use_count() == 0
        assert driver._pool.idle_count() == 0


class TestAtomicity:
    @given(
        written=st.integers(min_value=0, max_value=6),
        fail=st.booleans(),
    )
    @settings(max_examples=30, deadline=None)
    def test_all_or_nothing(self, written, fail):
        server = register_people_queries(MemoryServer())
        with Driver(server.pool(), **FAST_RETRY) as driver:
            with driver.session() as session:
                tx = session.begin_transaction()
                for i in range(written):
                    tx.run(CREATE_PERSON, name=f"p{i}")
                if fail:
                    with pytest.raises(CypherSyntaxError):
                        tx.run("INVALID SYNTAX")
                else:
                    tx.commit()
        expected = 0 if fail else written
        assert len(server.rows("Person")) == expected


class TestSingleOpenTransaction:
    def test_second_begin_fails(self, session):
        tx = session.begin_transaction()
        with pytest.raises(TransactionNestingError):
            session.begin_transaction()
        tx.rollback()
        session.begin_transaction().rollback()

    def test_auto_commit_run_while_open_fails(self, session):
        session.begin_transaction()
        with pytest.raises(UsageError):
            session.run(MATCH_NAMES)

    def test_execute_write_while_open_fails(self, session):
        session.begin_transaction()
        with pytest.raises(TransactionNestingError):
            session.execute_write(lambda tx: tx.run(MATCH_NAMES).consume())


class TestRollbackFailures(unittest.TestCase):
    def make_tx(self, connection, on_closed=None):
        handle = TxHandle(tx_id=1, database="neo4j")
        return Transaction(
            connection, handle, TxRequest(database="neo4j"), 1000, on_closed=on_closed
        )

    def test_rollback_failure_after_primary_error_is_logged(self):
        connection = MagicMock()
        primary = CypherSyntaxError("bad", "Neo.ClientError.Statement.SyntaxError")
        connection.execute.side_effect = primary
        connection.rollback_tx.side_effect = ServiceUnavailable("gone")
        on_closed = MagicMock()
        tx = self.make_tx(connection, on_closed)

        with self.assertLogs("graphtx.transaction", level="WARNING") as logs:
            with self.assertRaises(CypherSyntaxError) as ctx:
                tx.run("BAD")
        self.assertIs(ctx.exception, primary)
        self.assertIn("ServiceUnavailable", logs.output[0])
        self.assertEqual(tx.state, TransactionState.ROLLED_BACK)
        connection.mark_defunct.assert_called_once()
        on_closed.assert_called_once_with(tx, None)

    def test_rollback_failure_without_primary_error_propagates(self):
        connection = MagicMock()
        connection.rollback_tx.side_effect = ServiceUnavailable("gone")
        tx = self.make_tx(connection)
        with self.assertRaises(ServiceUnavailable):
            tx.rollback()
        self.assertTrue(tx.closed())

    def test_context_manager_keeps_primary_error(self):
        connection = MagicMock()
        connection.rollback_tx.side_effect = ServiceUnavailable("gone")
        tx = self.make_tx(connection)
        with self.assertLogs("graphtx.transaction", level="WARNING"):
            with self.assertRaises(KeyError):
                with tx:
                    raise KeyError("primary")
