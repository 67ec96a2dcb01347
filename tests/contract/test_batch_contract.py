"""
Contract Test: QueryExecutor.execute_batch

Coverage:
- Pipelined entries behind one Sync
- First failure: earlier entries completed, the rest not executed
- Intermediate Sync when the estimated reply size exceeds the buffer bound
- Generated keys, composite entries and the simple dialect
- One synchronization unit per entry when batching is disallowed
"""

import pytest

from pg_server import (
    begin_extended,
    bind_complete,
    command_complete,
    data_row,
    error_response,
    no_data,
    parse_complete,
    ready_for_query,
    row_description,
)
from pgwire_client import (
    BatchResultHandler,
    CallerContractError,
    QueryOptions,
    StatementError,
    TransactionState,
)
from pgwire_client.formats import Oid
from pgwire_client.handlers import OutcomeKind

pytestmark = pytest.mark.contract

INSERT_SQL = "INSERT INTO items (id) VALUES (?)"


class ProgressRecorder(BatchResultHandler):
    """Counts the points at which the engine drains replies mid-batch."""

    def __init__(self, count):
        super().__init__(count)
        self.progress_calls = 0

    def secure_progress(self):
        self.progress_calls += 1


def insert_batch(engine, count):
    entry = engine.borrow_query(INSERT_SQL)
    parameter_lists = []
    for number in range(count):
        parameters = entry.query.create_parameter_list()
        parameters.set_text(1, str(number))
        parameter_lists.append(parameters)
    return [entry.query] * count, parameter_lists


class TestPipelinedBatch:

    def test_failure_partitions_outcomes(self, make_engine, server):
        """
        GIVEN a batch of five inserts in an idle transaction
        WHEN the fourth entry fails
        THEN three entries completed, two were not executed and one Sync was sent
        """
        engine = make_engine(prepare_threshold=0, binary_transfer=False)
        queries, parameter_lists = insert_batch(engine, 5)
        ok = parse_complete() + bind_complete() + no_data() + command_complete('INSERT 0 1')
        server.reply(begin_extended(), ok, ok, ok,
                     parse_complete(), bind_complete(), no_data(),
                     error_response('23505', 'duplicate key value violates unique constraint'),
                     ready_for_query(b'E'))
        handler = BatchResultHandler(5)

        with pytest.raises(StatementError):
            engine.execute_batch(queries, parameter_lists, handler)

        assert [o.kind for o in handler.outcomes] == [OutcomeKind.COMPLETED] * 3 + [OutcomeKind.NOT_EXECUTED] * 2
        assert handler.update_counts[:3] == [1, 1, 1]
        assert handler.failed_index == 3
        assert engine.transaction_state is TransactionState.FAILED
        assert server.received_kinds().count('Sync') == 1

    def test_all_entries_complete(self, engine, server):
        queries, parameter_lists = insert_batch(engine, 2)
        ok = parse_complete() + bind_complete() + no_data() + command_complete('INSERT 0 1')
        server.reply(ok, ok, ready_for_query(b'I'))

        handler = engine.execute_batch(queries, parameter_lists, BatchResultHandler(2),
                                       options=QueryOptions(suppress_begin=True))

        assert handler.update_counts == [1, 1]
        assert handler.failed_index is None
        sent = server.received()
        assert [m.values for m in sent if m.kind == 'Bind'] == [(b'0',), (b'1',)]

    def test_small_buffer_forces_sync_per_entry(self, make_engine, server):
        """
        GIVEN max_buffered_recv_bytes=1
        WHEN a batch runs
        THEN replies are drained after every entry and sending stops at the failure
        """
        engine = make_engine(prepare_threshold=0, binary_transfer=False, max_buffered_recv_bytes=1)
        queries, parameter_lists = insert_batch(engine, 5)
        server.reply(begin_extended(),
                     parse_complete(), bind_complete(), no_data(), command_complete('INSERT 0 1'),
                     ready_for_query(b'T'),
                     parse_complete(), bind_complete(), command_complete('INSERT 0 1'), ready_for_query(b'T'),
                     parse_complete(), bind_complete(), command_complete('INSERT 0 1'), ready_for_query(b'T'),
                     parse_complete(), bind_complete(), error_response('23505'), ready_for_query(b'E'))
        handler = ProgressRecorder(5)

        with pytest.raises(StatementError):
            engine.execute_batch(queries, parameter_lists, handler)

        sent = server.received()
        assert [m.kind for m in sent].count('Sync') == 4
        assert len([m for m in sent if m.kind == 'Parse' and m.sql.startswith('INSERT')]) == 4
        assert handler.progress_calls == 4
        assert handler.failed_index == 3
        assert handler.outcomes[4].kind is OutcomeKind.NOT_EXECUTED

    def test_disallow_batching_syncs_every_entry(self, make_engine, server):
        """
        GIVEN disallow_batching and a large reply buffer
        WHEN three entries run
        THEN each entry is followed by its own Sync and no progress point is reported
        """
        engine = make_engine(prepare_threshold=0, binary_transfer=False)
        queries, parameter_lists = insert_batch(engine, 3)
        server.reply(parse_complete(), bind_complete(), no_data(), command_complete('INSERT 0 1'),
                     ready_for_query(b'I'),
                     parse_complete(), bind_complete(), command_complete('INSERT 0 1'), ready_for_query(b'I'),
                     parse_complete(), bind_complete(), command_complete('INSERT 0 1'), ready_for_query(b'I'))
        handler = ProgressRecorder(3)

        engine.execute_batch(queries, parameter_lists, handler,
                             options=QueryOptions(suppress_begin=True, disallow_batching=True))

        assert server.received_kinds() == ['Parse', 'Bind', 'Describe', 'Execute', 'Sync',
                                           'Parse', 'Bind', 'Execute', 'Sync',
                                           'Parse', 'Bind', 'Execute', 'Sync']
        assert handler.update_counts == [1, 1, 1]
        assert handler.progress_calls == 0


class TestBatchResults:

    def test_generated_keys_collected(self, engine, server):
        entry = engine.borrow_returning_query("INSERT INTO items (name) VALUES (?)", ['id'])
        assert entry.query.native_sql.endswith('RETURNING "id"')
        parameter_lists = []
        for name in ('a', 'b'):
            parameters = entry.query.create_parameter_list()
            parameters.set_text(1, name)
            parameter_lists.append(parameters)
        row = row_description(('id', Oid.INT4))
        server.reply(parse_complete(), bind_complete(), row, data_row('1'), command_complete('INSERT 0 1'),
                     parse_complete(), bind_complete(), row, data_row('2'), command_complete('INSERT 0 1'),
                     ready_for_query(b'I'))
        handler = BatchResultHandler(2, expect_generated_keys=True)

        engine.execute_batch([entry.query] * 2, parameter_lists, handler,
                             options=QueryOptions(suppress_begin=True))

        assert handler.generated_keys == [(b'1',), (b'2',)]
        assert handler.update_counts == [1, 1]

    def test_composite_entry_reports_final_status_only(self, engine, server):
        wrapped = engine.wrap([engine.create_simple_query("INSERT INTO a VALUES (1)"),
                               engine.create_simple_query("INSERT INTO b VALUES (1)")])
        ok = parse_complete() + bind_complete() + no_data() + command_complete('INSERT 0 1')
        server.reply(ok, ok, ready_for_query(b'I'))
        handler = BatchResultHandler(1)

        engine.execute_batch([wrapped], [None], handler, options=QueryOptions(suppress_begin=True))

        assert handler.update_counts == [1]

    def test_simple_dialect_round_trip_per_entry(self, make_engine, server):
        engine = make_engine(prefer_query_mode='simple')
        queries, parameter_lists = insert_batch(engine, 2)
        server.reply(command_complete('INSERT 0 1'), ready_for_query(b'I'),
                     command_complete('INSERT 0 1'), ready_for_query(b'I'))

        handler = engine.execute_batch(queries, parameter_lists, BatchResultHandler(2),
                                       options=QueryOptions(suppress_begin=True))

        assert [m.sql for m in server.received()] == ["INSERT INTO items (id) VALUES ('0')",
                                                      "INSERT INTO items (id) VALUES ('1')"]
        assert handler.update_counts == [1, 1]


class TestBatchArguments:

    def test_mismatched_lengths(self, engine):
        with pytest.raises(CallerContractError):
            engine.execute_batch([engine.create_simple_query("SELECT 1")], [], BatchResultHandler(1))

    def test_empty_batch_sends_nothing(self, engine, server):
        handler = engine.execute_batch([], [], BatchResultHandler(0))
        assert handler.outcomes == []
        assert server.received() == []


class TestSimpleDialectCompositeEntries:

    def test_each_entry_gets_its_last_statement_status(self, make_engine, server):
        """
        GIVEN a simple-dialect batch whose first entry holds two statements
        WHEN the server completes all three statements
        THEN the first entry reports its second statement and the second entry its own
        """
        engine = make_engine(prefer_query_mode='simple')
        wrapped = engine.wrap([engine.create_simple_query("INSERT INTO a VALUES (1)"),
                               engine.create_simple_query("INSERT INTO b VALUES (1)")])
        single = engine.create_simple_query("INSERT INTO c VALUES (1)")
        server.reply(command_complete('INSERT 0 1'), command_complete('INSERT 0 2'), ready_for_query(b'I'),
                     command_complete('INSERT 0 5'), ready_for_query(b'I'))

        handler = engine.execute_batch([wrapped, single], [None, None], BatchResultHandler(2),
                                       options=QueryOptions(suppress_begin=True))

        assert server.received_kinds() == ['Query', 'Query']
        assert handler.update_counts == [2, 5]
        assert handler.failed_index is None

    def test_failure_inside_composite_entry(self, make_engine, server):
        engine = make_engine(prefer_query_mode='simple')
        wrapped = engine.wrap([engine.create_simple_query("INSERT INTO a VALUES (1)"),
                               engine.create_simple_query("INSERT INTO b VALUES (1)")])
        single = engine.create_simple_query("INSERT INTO c VALUES (1)")
        server.reply(command_complete('INSERT 0 1'), error_response('23505'), ready_for_query(b'I'))
        handler = BatchResultHandler(2)

        with pytest.raises(StatementError):
            engine.execute_batch([wrapped, single], [None, None], handler,
                                 options=QueryOptions(suppress_begin=True))

        assert server.received_kinds() == ['Query']
        assert handler.failed_index == 0
        assert [o.kind for o in handler.outcomes] == [OutcomeKind.NOT_EXECUTED] * 2
