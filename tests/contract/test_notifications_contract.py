"""
Contract Test: Asynchronous Messages

Coverage:
- process_notifies timeout semantics
- Notifications arriving alone or interleaved with query replies
- Notices, parameter status changes and fatal errors outside a request
"""

import time

import pytest

from pg_server import (
    bind_complete,
    command_complete,
    error_response,
    no_data,
    notice_response,
    notification,
    parameter_status,
    parse_complete,
    ready_for_query,
)
from pgwire_client import ConnectionFatalError, QueryOptions

pytestmark = pytest.mark.contract


class TestProcessNotifies:

    def test_zero_timeout_returns_immediately(self, engine, server):
        started = time.monotonic()
        engine.process_notifies(0)
        assert time.monotonic() - started < 1.0
        assert engine.get_notifications() == []

    def test_bounded_wait_without_traffic(self, engine):
        started = time.monotonic()
        engine.process_notifies(0.05)
        assert time.monotonic() - started >= 0.04
        assert engine.get_notifications() == []

    def test_negative_timeout_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.process_notifies(-1)

    def test_queued_notifications_drained(self, engine, server):
        """
        GIVEN two notifications waiting on the socket
        WHEN process_notifies runs
        THEN both are queued in order and get_notifications drains them once
        """
        server.reply(notification(77, 'jobs', 'first'), notification(77, 'jobs', 'second'))

        engine.process_notifies(1.0)

        received = engine.get_notifications()
        assert [(n.channel, n.pid, n.payload) for n in received] == [
            ('jobs', 77, 'first'), ('jobs', 77, 'second')]
        assert engine.get_notifications() == []

    def test_unbounded_wait_returns_after_notification(self, engine, server):
        server.reply(notification(5, 'wake'))
        engine.process_notifies(None)
        assert [n.channel for n in engine.get_notifications()] == ['wake']

    def test_notice_and_parameter_status(self, engine, server):
        server.reply(notice_response('checkpoint soon'), parameter_status('application_name', 'worker'))

        engine.process_notifies(0.2)

        assert engine.get_warnings()[0].message == 'checkpoint soon'
        assert engine.get_parameter_status('application_name') == 'worker'

    def test_fatal_error_closes_connection(self, engine, server):
        server.reply(error_response('57P01', 'terminating connection due to administrator command',
                                    severity='FATAL'))

        with pytest.raises(ConnectionFatalError):
            engine.process_notifies(1.0)

        assert engine.is_closed

    def test_server_hangup_is_fatal(self, engine, server):
        server.close()

        with pytest.raises(ConnectionFatalError):
            engine.process_notifies(1.0)

        assert engine.is_closed


class TestNotificationsDuringQueries:

    def test_notification_between_replies(self, engine, server):
        server.reply(parse_complete(), bind_complete(), notification(9, 'events', 'row added'),
                     no_data(), command_complete('LISTEN'), ready_for_query(b'I'))

        handler = engine.execute(engine.create_simple_query("LISTEN events"),
                                 options=QueryOptions(suppress_begin=True))

        assert handler.statuses[0].status == 'LISTEN'
        assert [n.payload for n in engine.get_notifications()] == ['row added']
