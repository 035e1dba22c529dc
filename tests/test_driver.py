"""
Tests for the Driver.

Covers:
- execute_query: eager results, routing, parameters, transformers
- causal chaining through the default execute_query bookmark manager
- driver options, config files and closed-driver errors
"""

from unittest.mock import MagicMock

import pytest

from graphtx import (
    AccessMode,
    ConfigurationError,
    Driver,
    DriverConfig,
    EagerResult,
    Query,
    ResultLeakError,
    RoutingControl,
    ServiceUnavailable,
    UsageError,
    bookmark_manager,
)
from graphtx.io import COMMIT

from conftest import COUNT_PEOPLE, CREATE_PERSON, FAST_RETRY, MATCH_NAMES, RETURN_RANGE


class TestExecuteQuery:
    def test_returns_eager_result(self, driver):
        result = driver.execute_query(RETURN_RANGE, {"n": 3})
        assert isinstance(result, EagerResult)
        records, summary, keys = result
        assert [r["i"] for r in records] == [1, 2, 3]
        assert keys == ["i"]
        assert summary.query == RETURN_RANGE
        assert summary.parameters == {"n": 3}

    def test_keyword_parameters_merge(self, server, driver):
        driver.execute_query(CREATE_PERSON, {"name": "ignored"}, name="Alice")
        assert server.journal[-1].parameters == {"name": "Alice"}
        assert [row["name"] for row in server.rows("Person")] == ["Alice"]

    def test_write_is_committed(self, server, driver):
        _, summary, _ = driver.execute_query(CREATE_PERSON, name="Alice")
        assert summary.counters.nodes_created == 1
        assert server.commits == 1
        assert server.open_transactions() == 0

    @pytest.mark.parametrize(
        "routing, expected",
        [
            (RoutingControl.READ, AccessMode.READ),
            (RoutingControl.WRITE, AccessMode.WRITE),
            ("r", AccessMode.READ),
            ("w", AccessMode.WRITE),
            ("READ", AccessMode.READ),
        ],
    )
    def test_routing(self, server, driver, routing, expected):
        driver.execute_query(MATCH_NAMES, routing=routing)
        assert server.journal[-1].access_mode == expected

    @pytest.mark.parametrize("routing", ["x", "", "both"])
    def test_invalid_routing(self, driver, routing):
        with pytest.raises(ConfigurationError):
            driver.execute_query(MATCH_NAMES, routing=routing)

    def test_result_transformer(self, driver):
        driver.execute_query(CREATE_PERSON, name="Alice")
        count = driver.execute_query(
            COUNT_PEOPLE, routing="r", result_transformer=lambda r: r.single()["n"]
        )
        assert count == 1

    def test_transformer_returning_result_is_rejected(self, server, driver):
        with pytest.raises(ResultLeakError):
            driver.execute_query(MATCH_NAMES, result_transformer=lambda r: r)
        assert server.open_transactions() == 0

    def test_query_object_options(self, server, driver):
        driver.execute_query(Query(MATCH_NAMES, metadata={"origin": "driver"}, timeout=3))
        assert server.journal[-1].metadata == {"origin": "driver"}

    def test_database_and_impersonation(self, server, driver):
        driver.execute_query(MATCH_NAMES, database="analytics", impersonated_user="bob")
        entry = server.journal[-1]
        assert entry.database == "analytics"
        assert entry.impersonated_user == "bob"

    def test_commit_failure_is_retried(self, server, driver):
        server.fail_next(COMMIT, ServiceUnavailable("connection reset"))
        driver.execute_query(CREATE_PERSON, name="Alice")
        assert len(server.rows("Person")) == 1


class TestExecuteQueryBookmarks:
    def test_default_manager_chains_calls(self, lagging_server):
        with Driver(lagging_server.pool(), **FAST_RETRY) as driver:
            driver.execute_query(CREATE_PERSON, name="Alice")
            records, _, _ = driver.execute_query(MATCH_NAMES, routing="r")
            manager = driver.execute_query_bookmark_manager
            assert manager.get_bookmarks("neo4j").raw_values == frozenset({"neo4j:1"})
        assert [r["name"] for r in records] == ["Alice"]

    def test_opting_out_can_read_stale_data(self, lagging_server):
        with Driver(lagging_server.pool(), **FAST_RETRY) as driver:
            driver.execute_query(CREATE_PERSON, name="Alice", bookmark_manager=None)
            records, _, _ = driver.execute_query(
                MATCH_NAMES, routing="r", bookmark_manager=None
            )
        assert records == []

    def test_custom_manager_is_updated(self, lagging_server):
        manager = bookmark_manager()
        with Driver(lagging_server.pool(), **FAST_RETRY) as driver:
            driver.execute_query(CREATE_PERSON, name="Alice", bookmark_manager=manager)
            with driver.session(bookmark_manager=manager) as session:
                names = session.execute_read(lambda tx: tx.run(MATCH_NAMES).value())
            assert driver.execute_query_bookmark_manager.get_bookmarks("neo4j").raw_values == frozenset()
        assert names == ["Alice"]


class TestDriverConfig:
    def test_defaults(self, server):
        driver = Driver(server.pool())
        assert driver.config.default_database == "neo4j"
        assert driver.config.fetch_size == 1000
        assert driver.retry_policy.max_retry_time == 30.0

    def test_options_override_config(self, server):
        driver = Driver(server.pool(), DriverConfig(fetch_size=10, initial_retry_delay=2), fetch_size=20)
        assert driver.config.fetch_size == 20
        assert driver.retry_policy.retry_delay == 2

    def test_unknown_option_rejected(self, server):
        with pytest.raises(ConfigurationError):
            Driver(server.pool(), retries_forever=True)

    def test_invalid_session_option_rejected(self, driver):
        with pytest.raises(ConfigurationError):
            driver.session(fetch_size=0)
        with pytest.raises(ConfigurationError):
            driver.session(databse="typo")

    def test_default_database_used_by_sessions(self, server):
        with Driver(server.pool(), default_database="analytics") as driver:
            with driver.session() as session:
                assert session.database == "analytics"
                session.run(MATCH_NAMES).consume()
        assert server.journal[-1].database == "analytics"

    def test_pool_options_applied_to_given_pool(self, server):
        driver = Driver(
            server.pool(), max_connection_pool_size=1, connection_acquisition_timeout=0
        )
        assert driver._pool.max_size == 1
        assert driver._pool.acquisition_timeout == 0
        with driver.session() as first, driver.session() as second:
            first.begin_transaction()
            with pytest.raises(ServiceUnavailable):
                second.begin_transaction()

    def test_unset_pool_options_keep_pool_settings(self, server):
        driver = Driver(server.pool(max_size=7, acquisition_timeout=3), fetch_size=5)
        assert driver._pool.max_size == 7
        assert driver._pool.acquisition_timeout == 3

    def test_pool_built_from_connection_factory(self, server):
        with Driver(
            server.connect, max_connection_pool_size=3, connection_acquisition_timeout=2
        ) as driver:
            assert driver._pool.max_size == 3
            assert driver._pool.acquisition_timeout == 2
            driver.execute_query(CREATE_PERSON, name="Alice")
        assert len(server.rows("Person")) == 1

    def test_pool_options_from_config_file(self, server, tmp_path):
        path = tmp_path / "pool.yaml"
        path.write_text("max_connection_pool_size: 4\n")
        driver = Driver.from_config_file(server.pool(acquisition_timeout=9), path)
        assert driver._pool.max_size == 4
        assert driver._pool.acquisition_timeout == 9

    def test_from_config_file(self, server, tmp_path, monkeypatch):
        monkeypatch.setenv("GRAPHTX_DB", "reports")
        path = tmp_path / "driver.yaml"
        path.write_text(
            "driver:\n"
            "  default_database: ${GRAPHTX_DB}\n"
            "  fetch_size: 50\n"
            "  max_transaction_retry_time: 7\n"
        )
        with Driver.from_config_file(server.pool(), path) as driver:
            assert driver.config.default_database == "reports"
            assert driver.config.fetch_size == 50
            assert driver.retry_policy.max_retry_time == 7


class TestDriverLifecycle:
    def test_verify_connectivity(self, driver):
        driver.verify_connectivity()
        assert driver._pool.in_use_count() == 0

    def test_close_is_idempotent(self, server):
        driver = Driver(server.pool())
        driver.close()
        driver.close()
        assert driver.closed()

    @pytest.mark.parametrize(
        "operation",
        [
            lambda d: d.session(),
            lambda d: d.execute_query(MATCH_NAMES),
            lambda d: d.verify_connectivity(),
        ],
    )
    def test_closed_driver_rejects_work(self, server, operation):
        driver = Driver(server.pool())
        driver.close()
        with pytest.raises(UsageError):
            operation(driver)

    def test_session_outliving_driver_fails_on_first_attempt(self, server):
        driver = Driver(server.pool(), max_transaction_retry_time=30)
        session = driver.session()
        driver.close()
        work = MagicMock()
        with pytest.raises(UsageError):
            session.execute_write(work)
        work.assert_not_called()

    def test_context_manager_closes_pool(self, server):
        with Driver(server.pool()) as driver:
            pass
        assert driver.closed()
        assert driver._pool.closed()
