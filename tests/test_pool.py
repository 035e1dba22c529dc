"""
Tests for the connection pool.
"""

import gc
import threading
import unittest

from graphtx import AccessMode, ServiceUnavailable, UsageError
from graphtx.io import ConnectionPool, MemoryServer, TxRequest


class TestConnectionPool(unittest.TestCase):
    def setUp(self):
        self.server = MemoryServer()
        self.pool = ConnectionPool(self.server.connect, max_size=2, acquisition_timeout=0.05)

    def acquire(self):
        return self.pool.acquire(AccessMode.WRITE, "neo4j")

    def test_released_connection_is_reused(self):
        first = self.acquire()
        self.pool.release(first)
        self.assertEqual(self.pool.idle_count(), 1)
        self.assertIs(self.acquire(), first)
        self.assertEqual(self.pool.in_use_count(), 1)

    def test_max_size_times_out(self):
        self.acquire()
        self.acquire()
        with self.assertRaises(ServiceUnavailable):
            self.acquire()

    def test_unreleased_connections_stay_counted(self):
        for _ in range(2):
            self.acquire()
        gc.collect()
        for _ in range(3):
            with self.assertRaises(ServiceUnavailable):
                self.acquire()
        self.assertEqual(self.pool.in_use_count(), 2)

    def test_configure(self):
        self.pool.configure(max_size=1, acquisition_timeout=0)
        self.acquire()
        with self.assertRaises(ServiceUnavailable):
            self.acquire()
        self.assertEqual(self.pool.max_size, 1)
        self.assertEqual(self.pool.acquisition_timeout, 0)

    def test_configure_keeps_unset_values(self):
        self.pool.configure()
        self.assertEqual(self.pool.max_size, 2)
        self.assertEqual(self.pool.acquisition_timeout, 0.05)
        with self.assertRaises(ValueError):
            self.pool.configure(max_size=0)

    def test_waiter_gets_released_connection(self):
        first = self.acquire()
        self.acquire()
        timer = threading.Timer(0.01, self.pool.release, [first])
        timer.start()
        try:
            connection = self.pool.acquire(AccessMode.READ, "neo4j", timeout=5)
        finally:
            timer.join()
        self.assertIs(connection, first)

    def test_defunct_connection_is_discarded(self):
        connection = self.acquire()
        connection.mark_defunct()
        self.pool.release(connection)
        self.assertEqual(self.pool.idle_count(), 0)
        self.assertTrue(connection.closed())
        self.assertIsNot(self.acquire(), connection)

    def test_closed_idle_connection_is_skipped(self):
        connection = self.acquire()
        self.pool.release(connection)
        connection.close()
        self.assertIsNot(self.acquire(), connection)

    def test_close(self):
        idle = self.acquire()
        busy = self.acquire()
        self.pool.release(idle)
        self.pool.close()
        self.assertTrue(self.pool.closed())
        self.assertTrue(idle.closed())
        self.assertFalse(busy.closed())
        self.pool.release(busy)
        self.assertTrue(busy.closed())
        with self.assertRaises(UsageError):
            self.acquire()

    def test_invalid_max_size(self):
        with self.assertRaises(ValueError):
            ConnectionPool(self.server.connect, max_size=0)

    def test_closing_connection_rolls_back_open_transactions(self):
        connection = self.acquire()
        connection.begin_tx(TxRequest(database="neo4j"))
        self.assertEqual(self.server.open_transactions(), 1)
        connection.mark_defunct()
        self.pool.release(connection)
        self.assertEqual(self.server.open_transactions(), 0)
