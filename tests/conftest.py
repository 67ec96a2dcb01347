"""
Pytest configuration for pgwire-client tests

Engine tests run against ``pg_server.ScriptedServer``: a socketpair whose far
end replays pre-encoded backend messages. No database server is needed.
"""

import pytest
import structlog

from pg_server import ScriptedServer
from pgwire_client import EngineConfig, QueryExecutor

logger = structlog.get_logger()

STARTUP_PARAMETERS = {
    'client_encoding': 'UTF8',
    'standard_conforming_strings': 'on',
    'server_version': '16.2',
}
BACKEND_KEY = (4242, 987654)


@pytest.fixture
def server():
    """Scripted backend; closed after the test."""
    scripted = ScriptedServer()
    yield scripted
    scripted.close()


@pytest.fixture
def make_engine(server):
    """
    Factory for engines wired to ``server``.

    Keyword arguments are EngineConfig fields.
    """
    engines = []

    def factory(**settings):
        engine = QueryExecutor(server.engine_socket, EngineConfig(**settings),
                               backend_key=BACKEND_KEY,
                               parameter_statuses=STARTUP_PARAMETERS,
                               connection_id=f"test-{len(engines)}")
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.abort()
    logger.debug("Test engines aborted", count=len(engines))


@pytest.fixture
def engine(make_engine):
    """Engine with default settings."""
    return make_engine()
