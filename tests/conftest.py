"""
Pytest configuration and shared fixtures for graphtx tests.

Fixtures build an in-memory server with a small set of registered
queries over ``Person`` rows, plus drivers and sessions on top of it.
"""

import sys
from pathlib import Path

import pytest

# Ensure src and tests directories are in path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from graphtx import Driver  # noqa: E402
from graphtx.io import MemoryServer  # noqa: E402

CREATE_PERSON = "CREATE (p:Person {name: $name})"
MATCH_NAMES = "MATCH (p:Person) RETURN p.name AS name ORDER BY name"
COUNT_PEOPLE = "MATCH (p:Person) RETURN count(p) AS n"
RETURN_RANGE = "UNWIND range(1, $n) AS i RETURN i"
DELETE_ALL = "MATCH (p:Person) DETACH DELETE p"


def create_person(ctx, params):
    ctx.create("Person", {"name": params["name"]})


def match_names(ctx, params):
    return [{"name": row["name"]} for row in sorted(ctx.match("Person"), key=lambda r: r["name"])]


def count_people(ctx, params):
    return [{"n": len(ctx.match("Person"))}]


def return_range(ctx, params):
    ctx.keys = ["i"]
    return [{"i": i} for i in range(1, params["n"] + 1)]


def delete_all(ctx, params):
    ctx.delete("Person")


def register_people_queries(server: MemoryServer) -> MemoryServer:
    server.register(CREATE_PERSON, create_person)
    server.register(MATCH_NAMES, match_names)
    server.register(COUNT_PEOPLE, count_people)
    server.register(RETURN_RANGE, return_range)
    server.register(DELETE_ALL, delete_all)
    return server


# Retry settings that never sleep for real
FAST_RETRY = {
    "initial_retry_delay": 0.0,
    "retry_delay_jitter_factor": 0.0,
    "max_transaction_retry_time": 5.0,
}


@pytest.fixture
def server():
    """In-memory server with the Person queries registered."""
    return register_people_queries(MemoryServer())


@pytest.fixture
def lagging_server():
    """In-memory server whose read replica only catches up on demand."""
    return register_people_queries(MemoryServer(lagging_replica=True))


@pytest.fixture
def driver(server):
    driver = Driver(server.pool(), **FAST_RETRY)
    yield driver
    driver.close()


@pytest.fixture
def session(driver):
    session = driver.session()
    yield session
    session.close()
