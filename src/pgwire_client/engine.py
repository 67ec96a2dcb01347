"""
Query Execution Engine

Drives one authenticated PostgreSQL connection with the v3 protocol:
- Simple query protocol ('Q') for the simple dialect and COPY
- Extended query protocol (Parse/Bind/Describe/Execute/Sync) with pipelining
- Forward cursors on named portals with optional adaptive fetch sizing
- Batches with bounded reply buffering
- Fastpath function calls (see ``fastpath.py``)

Replies are consumed in strict send order. Every message that expects a reply
pushes a ``_Pending`` entry onto one FIFO; each backend message is matched
against the head of that queue. An ErrorResponse in the extended protocol makes
the server skip to the next Sync, so pending entries up to that Sync are
dropped.

The engine owns an arena of query records keyed by query id. ``Query`` handles
and ``CachedQuery`` entries only carry the id.
"""

import enum
import itertools
import re
import threading
import time
import weakref
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from .cache import CachedQuery, QueryKey, StatementCache
from .config_schema import EngineConfig, PreferQueryMode
from .copy import CopyDual, CopyIn, CopyOperation, CopyOut
from .cursor import AdaptiveFetchCache, Portal
from .exceptions import (
    CallerContractError,
    ConnectionClosedError,
    ConnectionFatalError,
    CopyInProgressError,
    ForeignQueryError,
    InvalidStateError,
    ProtocolViolation,
    StatementError,
)
from .formats import BinaryFormatRegistry, FormatSnapshot
from .handlers import BatchResultHandler, CollectingResultHandler, ResultHandler, ResultHandlerBase
from .options import DEFAULT_OPTIONS, QueryOptions
from .protocol import (
    COPY_DONE_MESSAGE,
    FORMAT_TEXT,
    SYNC_MESSAGE,
    TARGET_PORTAL,
    TARGET_STATEMENT,
    BackendKeyData,
    BindComplete,
    CloseComplete,
    CommandComplete,
    CopyBothResponse,
    CopyData,
    CopyDone,
    CopyInResponse,
    CopyOutResponse,
    DataRow,
    EmptyQueryResponse,
    ErrorResponse,
    Field,
    FunctionCallResponse,
    NegotiateProtocolVersion,
    NoData,
    NoticeResponse,
    NotificationResponse,
    ParameterDescription,
    ParameterStatus,
    ParseComplete,
    PortalSuspended,
    ReadyForQuery,
    RowDescription,
    encode_bind,
    encode_close,
    encode_copy_data,
    encode_copy_fail,
    encode_describe,
    encode_execute,
    encode_parse,
    encode_query,
    parse_command_tag,
)
from .query import NativeStatement, ParameterList, Query, add_returning, parse_sql, rewrite_call_escape
from .stream import PGStream
from .transaction import (
    AUTOSAVE_NAME,
    QUERY_CANCELED,
    AutoSave,
    Notification,
    NotificationQueue,
    SavepointTracker,
    ServerWarning,
    TransactionState,
    WarningChain,
    will_heal_on_retry,
    will_heal_via_reparse,
)

logger = structlog.get_logger()

# CopyData is flushed once this much is queued
COPY_FLUSH_THRESHOLD = 64 * 1024

_DEALLOCATE_ALL_TAGS = ('DEALLOCATE ALL', 'DISCARD ALL')


class EngineState(enum.Enum):
    IDLE = 'idle'
    SENDING = 'sending'
    AWAITING_REPLY = 'awaiting_reply'
    SUSPENDED = 'suspended'
    DONE = 'done'
    FAILED = 'failed'


class _Reply(enum.Enum):
    """What the head of the pending queue is waiting for."""

    PARSE = 'parse'
    DESCRIBE_STATEMENT = 'describe_statement'
    BIND = 'bind'
    DESCRIBE_PORTAL = 'describe_portal'
    EXECUTE = 'execute'
    CLOSE = 'close'
    SYNC = 'sync'
    SIMPLE = 'simple'
    FUNCTION_CALL = 'function_call'


# Replies that end with ReadyForQuery
_UNIT_ENDS = (_Reply.SYNC, _Reply.SIMPLE, _Reply.FUNCTION_CALL)


@dataclass(eq=False)
class _QueryRecord:
    """Protocol state of one query, per native statement."""

    query_id: int
    statements: Tuple[NativeStatement, ...]
    statement_names: List[Optional[str]]
    prepared_types: List[Optional[Tuple[int, ...]]]
    param_oids: List[Optional[Tuple[int, ...]]]
    fields: List[Optional[Tuple[Field, ...]]]
    described: List[bool]

    @classmethod
    def create(cls, query_id: int, statements: Sequence[NativeStatement]) -> '_QueryRecord':
        count = len(statements)
        return cls(query_id, tuple(statements), [None] * count, [None] * count,
                   [None] * count, [None] * count, [False] * count)

    def forget_server_statements(self) -> List[str]:
        names = [name for name in self.statement_names if name]
        self.statement_names = [None] * len(self.statements)
        self.prepared_types = [None] * len(self.statements)
        return names

    @property
    def fully_prepared(self) -> bool:
        return all(self.statement_names)


@dataclass(eq=False)
class _Pending:
    """One expected reply, matched in FIFO order."""

    kind: _Reply
    handler: ResultHandler
    record: Optional[_QueryRecord] = None
    index: int = 0
    statement_name: str = ''
    param_types: Tuple[int, ...] = ()
    parameters: Optional[ParameterList] = None
    param_offset: int = 0
    param_oids: Optional[Tuple[int, ...]] = None
    portal: Optional[Portal] = None
    execute: Optional['_Pending'] = None
    fields: Optional[Tuple[Field, ...]] = None
    result_formats: Tuple[int, ...] = ()
    rows: list = field(default_factory=list)
    row_bytes: int = 0
    options: QueryOptions = DEFAULT_OPTIONS
    max_rows: int = 0
    internal: bool = False
    autosave: bool = False
    final: bool = True
    batch: bool = False
    statements_left: int = 1
    describe_only: bool = False
    copy: bool = False
    copy_rows: Optional[int] = None
    copy_rejected: bool = False
    value: Optional[bytes] = None


def _discard_record(engine_ref, query_id: int):
    engine = engine_ref()
    if engine is not None:
        engine._discard_record(query_id)


def parse_server_version(version: str) -> int:
    """
    Convert a ``server_version`` string to the numeric form.

    Examples:
        "9.6.3" -> 90603
        "14.5 (Debian 14.5-1)" -> 140005
        "16beta1" -> 160000
    """
    match = re.match(r'\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?', version)
    if not match:
        return 0
    major = int(match.group(1))
    minor = int(match.group(2) or 0)
    patch = int(match.group(3) or 0)
    if major >= 10:
        return major * 10000 + minor
    return major * 10000 + minor * 100 + patch


class QueryExecutor:
    """
    Protocol state machine for one connection.

    Args:
        sock: connected, authenticated socket
        config: engine settings (defaults when omitted)
        backend_key: (pid, secret) from BackendKeyData, for cancel requests
        parameter_statuses: ParameterStatus values received during startup
        cancel_address: (host, port) used for out-of-band cancel requests
        connection_id: identifier for log events
    """

    def __init__(self, sock, config: Optional[EngineConfig] = None,
                 backend_key: Optional[Tuple[int, int]] = None,
                 parameter_statuses: Optional[Mapping[str, str]] = None,
                 cancel_address: Optional[Tuple[str, int]] = None,
                 connection_id: Optional[str] = None):
        self.config = config or EngineConfig()
        self._token = object()
        self.connection_id = connection_id or f"conn-{id(self._token):x}"
        self._stream = PGStream(sock, self.connection_id, cancel_address, self.config.network_timeout)
        self._lock = threading.RLock()

        # Engine and transaction state
        self._state = EngineState.IDLE
        self._transaction_state = TransactionState.IDLE
        self._savepoints = SavepointTracker(self.config.max_savepoints)
        self._warnings = WarningChain()
        self._notifications = NotificationQueue()
        self._parameters: Dict[str, str] = {}
        self._standard_conforming_strings = True
        self._server_version = ''
        self._server_version_num = 0
        self._backend_pid: Optional[int] = None
        self._backend_secret: Optional[int] = None
        if backend_key is not None:
            self._backend_pid, self._backend_secret = backend_key

        # Settings that may change at runtime
        self._prefer_query_mode = self.config.prefer_query_mode
        self._autosave = self.config.autosave
        self._adaptive_fetch = self.config.adaptive_fetch
        self._flush_cache_on_deallocate = self.config.flush_cache_on_deallocate

        # Query arena and caches
        self._records: Dict[int, _QueryRecord] = {}
        self._query_ids = itertools.count(1)
        self._statement_ids = itertools.count(1)
        self._portal_ids = itertools.count(1)
        self._uncached_entries: 'weakref.WeakValueDictionary[int, CachedQuery]' = weakref.WeakValueDictionary()
        self._cache = StatementCache(self._create_cache_entry,
                                     max_queries=self.config.prepared_statement_cache_queries,
                                     max_size_bytes=self.config.prepared_statement_cache_size_bytes,
                                     on_evict=self._on_cache_evict)
        self._adaptive = AdaptiveFetchCache(self.config.adaptive_fetch_minimum,
                                            self.config.adaptive_fetch_maximum,
                                            self.config.max_result_buffer_bytes)
        if self.config.binary_transfer:
            self.formats = BinaryFormatRegistry.with_defaults(self.config.binary_transfer_enable,
                                                              self.config.binary_transfer_disable)
        else:
            self.formats = BinaryFormatRegistry()

        # Reply tracking
        self._pending: Deque[_Pending] = deque()
        self._pending_closes: Deque[Tuple[bytes, str]] = deque()
        self._open_portals: Dict[str, Portal] = {}
        self._unit_errors: List[Tuple[StatementError, Optional[_QueryRecord]]] = []
        self._in_flight = False
        self._copy_operation: Optional[CopyOperation] = None
        self._copy_item: Optional[_Pending] = None

        for name, value in (parameter_statuses or {}).items():
            self._parameter_status(name, value)

        logger.info("Query executor created", connection_id=self.connection_id,
                    prefer_query_mode=self._prefer_query_mode.value,
                    prepare_threshold=self.config.prepare_threshold)

    # ------------------------------------------------------------------
    # Properties and settings
    # ------------------------------------------------------------------

    @property
    def engine_token(self) -> object:
        return self._token

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def transaction_state(self) -> TransactionState:
        return self._transaction_state

    @property
    def savepoint_depth(self) -> int:
        return self._savepoints.depth

    @property
    def is_closed(self) -> bool:
        return self._stream.closed

    @property
    def backend_pid(self) -> Optional[int]:
        return self._backend_pid

    @property
    def server_version(self) -> str:
        return self._server_version

    @property
    def server_version_num(self) -> int:
        return self._server_version_num

    @property
    def standard_conforming_strings(self) -> bool:
        return self._standard_conforming_strings

    @property
    def parameter_statuses(self) -> Dict[str, str]:
        return dict(self._parameters)

    @property
    def statement_cache(self) -> StatementCache:
        return self._cache

    @property
    def copy_operation(self) -> Optional[CopyOperation]:
        return self._copy_operation

    def get_parameter_status(self, name: str) -> Optional[str]:
        return self._parameters.get(name)

    @property
    def prefer_query_mode(self) -> PreferQueryMode:
        return self._prefer_query_mode

    def set_prefer_query_mode(self, mode: Union[PreferQueryMode, str]):
        self._prefer_query_mode = PreferQueryMode(mode)

    @property
    def autosave(self) -> AutoSave:
        return self._autosave

    def set_autosave(self, autosave: Union[AutoSave, str]):
        self._autosave = AutoSave(autosave.lower())

    @property
    def adaptive_fetch(self) -> bool:
        return self._adaptive_fetch

    def set_adaptive_fetch(self, enabled: bool):
        self._adaptive_fetch = enabled

    def set_flush_cache_on_deallocate(self, flush: bool):
        """Whether DEALLOCATE ALL / DISCARD ALL drop the client's statement names."""
        self._flush_cache_on_deallocate = flush

    def set_network_timeout(self, seconds: Optional[float]):
        self._stream.set_network_timeout(seconds)

    def get_network_timeout(self) -> Optional[float]:
        return self._stream.get_network_timeout()

    def get_adaptive_fetch_size(self, portal: Portal) -> Optional[int]:
        entry = self._adaptive.get(portal.name)
        return entry.fetch_size if entry is not None else None

    def will_heal_on_retry(self, error: BaseException) -> bool:
        return will_heal_on_retry(error, self._autosave, self._transaction_state)

    # Binary format registry passthroughs

    def add_binary_receive_oid(self, oid: int):
        self.formats.add_binary_receive_oid(oid)

    def remove_binary_receive_oid(self, oid: int):
        self.formats.remove_binary_receive_oid(oid)

    def get_binary_receive_oids(self):
        return self.formats.get_binary_receive_oids()

    def set_binary_receive_oids(self, oids):
        self.formats.set_binary_receive_oids(oids)

    def use_binary_for_receive(self, oid: int) -> bool:
        return self.formats.use_binary_for_receive(oid)

    def add_binary_send_oid(self, oid: int):
        self.formats.add_binary_send_oid(oid)

    def remove_binary_send_oid(self, oid: int):
        self.formats.remove_binary_send_oid(oid)

    def get_binary_send_oids(self):
        return self.formats.get_binary_send_oids()

    def set_binary_send_oids(self, oids):
        self.formats.set_binary_send_oids(oids)

    def use_binary_for_send(self, oid: int) -> bool:
        return self.formats.use_binary_for_send(oid)

    # ------------------------------------------------------------------
    # Query factories
    # ------------------------------------------------------------------

    def _new_query(self, sql: str, is_parameterized: bool) -> Query:
        query_id = next(self._query_ids)
        statements = parse_sql(sql, is_parameterized)
        self._records[query_id] = _QueryRecord.create(query_id, statements)
        query = Query(query_id, tuple(statements), self._token, is_parameterized)
        weakref.finalize(query, _discard_record, weakref.ref(self), query_id)
        return query

    def _discard_record(self, query_id: int):
        # Runs from garbage collection; only appends to thread-safe queues.
        record = self._records.pop(query_id, None)
        if record is None:
            return
        for name in record.forget_server_statements():
            self._pending_closes.append((TARGET_STATEMENT, name))

    @staticmethod
    def _key_sql(key: QueryKey) -> str:
        sql = key.sql
        if key.is_callable:
            sql = rewrite_call_escape(sql)
        if key.column_names:
            sql = add_returning(sql, key.column_names)
        return sql

    def _create_cache_entry(self, key: QueryKey) -> CachedQuery:
        return CachedQuery(key, self._new_query(self._key_sql(key), key.is_parameterized))

    def _on_cache_evict(self, entry: CachedQuery):
        record = self._records.get(entry.query_id)
        if record is None:
            return
        for name in record.forget_server_statements():
            self._pending_closes.append((TARGET_STATEMENT, name))
        logger.debug("Evicted query scheduled for close", connection_id=self.connection_id,
                     query_id=entry.query_id)

    def create_simple_query(self, sql: str) -> Query:
        """Uncached, unparameterized query; never promoted to a named statement."""
        return self._new_query(sql, is_parameterized=False)

    def create_query_key(self, sql: str, escape_processing: bool = True, is_parameterized: bool = True,
                         column_names: Optional[Sequence[str]] = None) -> QueryKey:
        return QueryKey.create(sql, escape_processing, is_parameterized, column_names)

    def create_query_by_key(self, key: QueryKey) -> CachedQuery:
        """Entry for ``key`` that is not stored in the statement cache."""
        entry = self._create_cache_entry(key)
        self._uncached_entries[entry.query_id] = entry
        return entry

    def create_query(self, sql: str, escape_processing: bool = True, is_parameterized: bool = True,
                     column_names: Optional[Sequence[str]] = None) -> CachedQuery:
        return self.create_query_by_key(
            self.create_query_key(sql, escape_processing, is_parameterized, column_names))

    def borrow_query_by_key(self, key: QueryKey) -> CachedQuery:
        return self._cache.borrow(key)

    def borrow_query(self, sql: str) -> CachedQuery:
        return self.borrow_query_by_key(QueryKey.create(sql))

    def borrow_callable_query(self, sql: str) -> CachedQuery:
        return self.borrow_query_by_key(QueryKey.create(sql, is_callable=True))

    def borrow_returning_query(self, sql: str, column_names: Optional[Sequence[str]]) -> CachedQuery:
        return self.borrow_query_by_key(QueryKey.create(sql, column_names=column_names))

    def release_query(self, entry: CachedQuery):
        self._cache.release(entry)

    def wrap(self, queries: Sequence[Query]) -> Query:
        """Combine several queries into one composite query sent in one round trip."""
        if not queries:
            raise CallerContractError("Cannot wrap an empty list of queries.")
        for query in queries:
            self._record_for(query)
        if len(queries) == 1:
            return queries[0]
        statements = [s for query in queries for s in query.statements]
        query_id = next(self._query_ids)
        self._records[query_id] = _QueryRecord.create(query_id, statements)
        wrapped = Query(query_id, tuple(statements), self._token,
                        any(query.is_parameterized for query in queries))
        weakref.finalize(wrapped, _discard_record, weakref.ref(self), query_id)
        return wrapped

    def create_fastpath_parameters(self, count: int) -> ParameterList:
        return ParameterList(None, self._token, count)

    def _record_for(self, query: Query) -> _QueryRecord:
        if query.engine_token is not self._token:
            raise ForeignQueryError("This Query was not created by this connection.")
        record = self._records.get(query.query_id)
        if record is None:
            raise InvalidStateError(f"Query {query.query_id} is no longer known to this connection.")
        return record

    def _entry_for(self, query_id: int) -> Optional[CachedQuery]:
        entry = self._cache.entry_for_query(query_id)
        if entry is None:
            entry = self._uncached_entries.get(query_id)
        return entry

    # ------------------------------------------------------------------
    # Exclusive access and unit bookkeeping
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self, operation: str, copy_operation: Optional[CopyOperation] = None):
        with self._lock:
            if self._stream.closed:
                raise ConnectionClosedError()
            if copy_operation is None and self._copy_operation is not None:
                raise CopyInProgressError()
            if copy_operation is not None and copy_operation is not self._copy_operation:
                raise InvalidStateError("This COPY operation does not own the connection.")
            try:
                yield
            except ConnectionFatalError as e:
                self._fail_connection(operation, e)
                raise
            except Exception as e:
                if self._in_flight:
                    # Replies are still outstanding; the stream position is unknown.
                    self._fail_connection(operation, e)
                    raise
                self._stream.discard_pending()
                self._pending.clear()
                raise
            finally:
                if self._copy_operation is None and not self._stream.closed:
                    self._state = EngineState.IDLE

    def _fail_connection(self, operation: str, error: BaseException):
        logger.error("Connection failed", connection_id=self.connection_id,
                     operation=operation, error=str(error))
        self._stream.abort()
        self._pending.clear()
        self._in_flight = False
        self._copy_operation = None
        self._copy_item = None
        self._state = EngineState.FAILED

    def _start_unit(self):
        self._state = EngineState.SENDING
        self._unit_errors = []

    def _expect(self, kind: _Reply, handler: ResultHandler, **attributes) -> _Pending:
        item = _Pending(kind, handler, **attributes)
        self._pending.append(item)
        return item

    def _send_sync(self, handler: ResultHandler):
        self._stream.send(SYNC_MESSAGE)
        self._expect(_Reply.SYNC, handler)

    def _flush(self):
        self._stream.flush()
        self._in_flight = bool(self._pending)
        if self._state == EngineState.SENDING:
            self._state = EngineState.AWAITING_REPLY

    def _send_pending_closes(self, handler: ResultHandler):
        while self._pending_closes:
            target, name = self._pending_closes.popleft()
            self._stream.send(encode_close(target, name))
            self._expect(_Reply.CLOSE, handler, statement_name=name)
            logger.debug("Closing server object", connection_id=self.connection_id,
                         target=target.decode(), name=name)

    def _finish_unit(self, autosave_sent: bool = False):
        """Recover from statement errors and classify them once ReadyForQuery was read."""
        errors, self._unit_errors = self._unit_errors, []
        if errors:
            if (autosave_sent and self._transaction_state == TransactionState.FAILED
                    and (self._autosave == AutoSave.ALWAYS
                         or any(will_heal_via_reparse(e) for e, _ in errors))):
                self._run_internal(f"ROLLBACK TO SAVEPOINT {AUTOSAVE_NAME}")
            for error, record in errors:
                if record is not None and will_heal_via_reparse(error):
                    for name in record.forget_server_statements():
                        self._pending_closes.append((TARGET_STATEMENT, name))
                error.heal_on_retry = will_heal_on_retry(error, self._autosave, self._transaction_state)
            self._state = EngineState.FAILED
        else:
            if autosave_sent and self.config.cleanup_savepoints:
                self._run_internal(f"RELEASE SAVEPOINT {AUTOSAVE_NAME}", autosave=True)
            if self._state != EngineState.SUSPENDED:
                self._state = EngineState.DONE

    def _run_internal(self, sql: str, autosave: bool = False):
        """Run one engine-issued statement in its own round trip."""
        handler = ResultHandlerBase()
        outer_errors, self._unit_errors = self._unit_errors, []
        self._send_internal(sql, handler, simple=self._prefer_query_mode == PreferQueryMode.SIMPLE,
                            autosave=autosave)
        if self._prefer_query_mode != PreferQueryMode.SIMPLE:
            self._send_sync(handler)
        self._flush()
        self._process_results()
        self._unit_errors = outer_errors
        handler.handle_completion()

    # ------------------------------------------------------------------
    # Preamble: BEGIN and automatic savepoints
    # ------------------------------------------------------------------

    def _send_internal(self, sql: str, handler: ResultHandler, simple: bool, autosave: bool = False):
        if simple:
            self._stream.send(encode_query(sql))
            self._expect(_Reply.SIMPLE, handler, internal=True, autosave=autosave)
            return
        self._stream.send(encode_parse('', sql, ()))
        self._expect(_Reply.PARSE, handler)
        self._stream.send(encode_bind('', '', (), (), ()))
        self._expect(_Reply.BIND, handler)
        self._stream.send(encode_execute('', 1))
        self._expect(_Reply.EXECUTE, handler, internal=True, autosave=autosave)

    def _wants_savepoint(self, records: Sequence[_QueryRecord]) -> bool:
        if self._autosave == AutoSave.NEVER or self._transaction_state != TransactionState.OPEN:
            return False
        if self._autosave == AutoSave.ALWAYS:
            return True
        # conservative: only statements that may hit invalidated plans
        return any(len(record.statements) > 1 or any(s.returns_rows_hint for s in record.statements)
                   for record in records)

    def _send_preamble(self, handler: ResultHandler, options: QueryOptions,
                       records: Sequence[_QueryRecord], simple: bool,
                       allow_savepoint: bool = True) -> bool:
        """
        Queue BEGIN or an automatic savepoint ahead of the statements.

        Returns:
            True if an automatic savepoint was queued
        """
        if self._transaction_state == TransactionState.IDLE:
            if not options.suppress_begin:
                begin = 'BEGIN READ ONLY' if options.read_only_hint else 'BEGIN'
                self._send_internal(begin, handler, simple)
                logger.debug("Auto-begin queued", connection_id=self.connection_id, sql=begin)
            return False
        if not allow_savepoint or not self._wants_savepoint(records):
            return False
        if self._savepoints.at_limit:
            self._send_internal(f"RELEASE SAVEPOINT {AUTOSAVE_NAME}", handler, simple, autosave=True)
        self._send_internal(f"SAVEPOINT {AUTOSAVE_NAME}", handler, simple, autosave=True)
        return True

    # ------------------------------------------------------------------
    # Dialect selection and statement preparation
    # ------------------------------------------------------------------

    def _use_simple(self, query: Query, options: QueryOptions) -> bool:
        if options.describe_only:
            return False
        if options.execute_as_simple or self._prefer_query_mode == PreferQueryMode.SIMPLE:
            return True
        return (self._prefer_query_mode == PreferQueryMode.EXTENDED_FOR_PREPARED
                and not query.is_parameterized)

    def _effective_options(self, query: Query, options: Optional[QueryOptions]) -> QueryOptions:
        options = options or DEFAULT_OPTIONS
        if (not query.is_parameterized and not options.one_shot
                and self._prefer_query_mode != PreferQueryMode.EXTENDED_CACHE_EVERYTHING):
            options = options.but(one_shot=True)
        return options

    @staticmethod
    def _check_encodable(record: _QueryRecord, parameters: ParameterList, snapshot: FormatSnapshot,
                         options: QueryOptions):
        """Raise parameter errors before any statement name, count or queued Close changes."""
        if options.describe_only:
            return
        offset = 0
        for statement in record.statements:
            parameters.encode(snapshot, offset, statement.bind_count)
            offset += statement.bind_count

    def _should_prepare(self, record: _QueryRecord, options: QueryOptions) -> bool:
        """Promotion decision; counts this execution towards the threshold."""
        if options.one_shot:
            return False
        entry = self._entry_for(record.query_id)
        if entry is None:
            return False
        count = entry.increase_execute_count()
        threshold = self.config.prepare_threshold
        if record.fully_prepared:
            return True
        if threshold > 0 and count >= threshold:
            logger.debug("Promoting query to named statement", connection_id=self.connection_id,
                         query_id=record.query_id, execute_count=count)
            return True
        return False

    def _statement_name(self, record: _QueryRecord, index: int, types: Tuple[int, ...],
                        named: bool) -> Tuple[str, bool]:
        """Return (statement name, needs Parse)."""
        current = record.statement_names[index]
        if current is not None and record.prepared_types[index] == types:
            return current, False
        if not named:
            return '', True
        if current is not None:
            # Bound types changed; the old statement is superseded.
            self._pending_closes.append((TARGET_STATEMENT, current))
            record.statement_names[index] = None
            record.prepared_types[index] = None
            record.described[index] = False
        return f"S_{next(self._statement_ids)}", True

    def _send_parse(self, record: _QueryRecord, index: int, name: str, types: Tuple[int, ...],
                    handler: ResultHandler):
        self._stream.send(encode_parse(name, record.statements[index].sql, types))
        self._expect(_Reply.PARSE, handler, record=record, index=index,
                     statement_name=name, param_types=types)
        if name:
            # Bind messages pipelined behind this Parse already use the name;
            # it is withdrawn again if the server rejects the Parse.
            record.statement_names[index] = name
            record.prepared_types[index] = types

    def _describe_ahead(self, record: _QueryRecord, parameters: ParameterList,
                        snapshot: FormatSnapshot, handler: ResultHandler) -> bool:
        """
        Parse and describe named statements whose result shape is unknown.

        Binary result formats can only be requested when the column types are
        known at Bind time.

        Returns:
            False if the describe round trip failed
        """
        offset = 0
        sent = False
        for index, statement in enumerate(record.statements):
            count = statement.bind_count
            if not record.described[index]:
                types = parameters.type_oids_for(offset, count)
                name, needs_parse = self._statement_name(record, index, types, True)
                if needs_parse:
                    self._send_parse(record, index, name, types, handler)
                self._stream.send(encode_describe(TARGET_STATEMENT, name))
                self._expect(_Reply.DESCRIBE_STATEMENT, handler, record=record, index=index)
                sent = True
            offset += count
        if not sent:
            return True
        self._send_sync(handler)
        self._flush()
        self._process_results()
        return not self._unit_errors

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _send_query(self, record: _QueryRecord, parameters: ParameterList, handler: ResultHandler,
                    options: QueryOptions, snapshot: FormatSnapshot, max_rows: int,
                    fetch_size: int, adaptive: bool, batch: bool = False) -> bool:
        """
        Queue the extended-protocol messages for one query (no Sync).

        Returns:
            False if a describe pre-pass failed and nothing more was sent
        """
        named = self._should_prepare(record, options)
        if named and not options.describe_only and snapshot.wants_binary_results() \
                and not all(record.described):
            if not self._describe_ahead(record, parameters, snapshot, handler):
                return False

        self._send_pending_closes(handler)
        use_portal = (options.forward_cursor and fetch_size > 0 and not batch
                      and not (options.no_results or options.no_metadata or options.describe_only)
                      and len(record.statements) == 1)
        last = len(record.statements) - 1
        offset = 0
        for index, statement in enumerate(record.statements):
            count = statement.bind_count
            types = parameters.type_oids_for(offset, count)
            name, needs_parse = self._statement_name(record, index, types, named)
            if needs_parse:
                self._send_parse(record, index, name, types, handler)

            if options.describe_only:
                self._stream.send(encode_describe(TARGET_STATEMENT, name))
                self._expect(_Reply.DESCRIBE_STATEMENT, handler, record=record, index=index,
                             parameters=parameters, param_offset=offset, describe_only=True)
                offset += count
                continue

            formats, values = parameters.encode(snapshot, offset, count)
            known_fields = record.fields[index] if record.described[index] else None
            result_formats = tuple(snapshot.result_formats(known_fields))
            portal = None
            if use_portal:
                portal = Portal(f"C_{next(self._portal_ids)}", record.query_id, self._token,
                                known_fields, fetch_size)
            portal_name = portal.name if portal is not None else ''
            self._stream.send(encode_bind(portal_name, name, formats, values, result_formats))
            self._expect(_Reply.BIND, handler, record=record, index=index)

            item = _Pending(_Reply.EXECUTE, handler, record=record, index=index, portal=portal,
                            options=options, max_rows=max_rows, final=index == last, batch=batch,
                            result_formats=result_formats)
            if known_fields is not None:
                item.fields = _apply_formats(known_fields, result_formats)
            if not options.no_metadata and (not record.described[index] or options.force_describe_portal):
                self._stream.send(encode_describe(TARGET_PORTAL, portal_name))
                self._expect(_Reply.DESCRIBE_PORTAL, handler, record=record, index=index, execute=item)

            if options.no_results:
                limit = 1
            elif portal is not None:
                if adaptive:
                    fetch_size = self._adaptive.add(portal.name, fetch_size).fetch_size
                    portal.fetch_size = fetch_size
                limit = min(fetch_size, max_rows) if max_rows else fetch_size
            else:
                limit = max_rows
            self._stream.send(encode_execute(portal_name, limit))
            self._pending.append(item)
            offset += count
        return True

    def _simple_sql(self, query: Query, parameters: ParameterList) -> str:
        if query.parameter_count:
            return query.to_simple_sql(parameters, self._standard_conforming_strings)
        return query.native_sql

    def _send_simple(self, query: Query, sql: str, handler: ResultHandler,
                     options: QueryOptions, max_rows: int, batch: bool = False):
        self._stream.send(encode_query(sql))
        self._expect(_Reply.SIMPLE, handler, options=options, max_rows=max_rows, batch=batch,
                     statements_left=len(query.statements))

    # ------------------------------------------------------------------
    # Public execution API
    # ------------------------------------------------------------------

    def execute(self, query: Query, parameters: Optional[ParameterList] = None,
                handler: Optional[ResultHandler] = None, max_rows: int = 0, fetch_size: int = 0,
                options: Optional[QueryOptions] = None,
                adaptive_fetch: Optional[bool] = None) -> ResultHandler:
        """
        Execute a query and deliver its results to ``handler``.

        Args:
            query: query created by this engine
            parameters: values from ``query.create_parameter_list()``
            handler: result consumer (a CollectingResultHandler when omitted)
            max_rows: row limit, 0 for none
            fetch_size: rows per round trip for forward cursors
            options: execution options
            adaptive_fetch: override the connection's adaptive fetch setting

        Returns:
            The handler

        Raises:
            StatementError: the server reported an error
            CallerContractError: local misuse; nothing was sent
            ConnectionFatalError: the connection is broken and now closed
        """
        handler = handler if handler is not None else CollectingResultHandler()
        if max_rows < 0 or fetch_size < 0:
            raise CallerContractError("max_rows and fetch_size must be >= 0", '22023')
        with self._exclusive('execute'):
            record = self._record_for(query)
            options = self._effective_options(query, options)
            parameters = query.check_parameters(parameters, require_values=not options.describe_only)
            fetch_size = fetch_size or self.config.default_fetch_size
            adaptive = self._adaptive_fetch if adaptive_fetch is None else adaptive_fetch
            snapshot = self.formats.snapshot(force_text=options.no_binary_transfer)
            simple = self._use_simple(query, options)
            if simple:
                sql = self._simple_sql(query, parameters)
            else:
                self._check_encodable(record, parameters, snapshot, options)
            self._start_unit()
            autosave_sent = self._send_preamble(handler, options, [record], simple)
            if simple:
                self._send_simple(query, sql, handler, options, max_rows)
            else:
                if self._send_query(record, parameters, handler, options, snapshot,
                                    max_rows, fetch_size, adaptive):
                    self._send_sync(handler)
            if self._pending:
                self._flush()
                self._process_results()
            self._finish_unit(autosave_sent)
            logger.debug("Query executed", connection_id=self.connection_id, query_id=query.query_id,
                         simple=simple, state=self._state.value,
                         transaction=self._transaction_state.value)
            handler.handle_completion()
        return handler

    def execute_batch(self, queries: Sequence[Query], parameter_lists: Sequence[Optional[ParameterList]],
                      handler: BatchResultHandler, max_rows: int = 0, fetch_size: int = 0,
                      options: Optional[QueryOptions] = None,
                      adaptive_fetch: Optional[bool] = None) -> BatchResultHandler:
        """
        Execute many queries with pipelining.

        Messages are sent without waiting for replies; a Sync and a full reply
        drain is forced whenever the estimated size of the buffered replies
        exceeds ``max_buffered_recv_bytes``, or after every entry when
        ``disallow_batching`` is set. After the first failure no further
        statements are sent.
        """
        if len(queries) != len(parameter_lists):
            raise CallerContractError(
                f"Batch has {len(queries)} queries but {len(parameter_lists)} parameter lists.")
        with self._exclusive('execute_batch'):
            records = [self._record_for(query) for query in queries]
            bound = [query.check_parameters(params) for query, params in zip(queries, parameter_lists)]
            if not queries:
                handler.handle_completion()
                return handler
            base_options = options or DEFAULT_OPTIONS
            snapshot = self.formats.snapshot(force_text=base_options.no_binary_transfer)
            simple = self._use_simple(queries[0], base_options)
            if simple:
                texts = [self._simple_sql(query, params) for query, params in zip(queries, bound)]
            else:
                for record, params in zip(records, bound):
                    self._check_encodable(record, params, snapshot, base_options)
            self._start_unit()
            autosave_sent = self._send_preamble(handler, base_options, records, simple)
            estimated = 0
            for position, (query, record, params) in enumerate(zip(queries, records, bound)):
                query_options = self._effective_options(query, base_options)
                if simple:
                    self._send_simple(query, texts[position], handler, query_options, max_rows,
                                      batch=True)
                    self._flush()
                    self._process_results()
                    if self._unit_errors:
                        break
                    continue
                if not self._send_query(record, params, handler, query_options, snapshot,
                                        max_rows, 0, False, batch=True):
                    break
                estimated += self.config.nodata_query_response_size_bytes * len(record.statements)
                if estimated > self.config.max_buffered_recv_bytes:
                    handler.secure_progress()
                elif not base_options.disallow_batching:
                    continue
                self._send_sync(handler)
                self._flush()
                self._process_results()
                estimated = 0
                if self._unit_errors:
                    break
            if self._pending:
                self._send_sync(handler)
                self._flush()
                self._process_results()
            self._finish_unit(autosave_sent)
            logger.debug("Batch executed", connection_id=self.connection_id, count=len(queries),
                         failed_index=handler.failed_index,
                         transaction=self._transaction_state.value)
            handler.handle_completion()
        return handler

    def fetch(self, portal: Portal, handler: Optional[ResultHandler] = None, fetch_size: int = 0,
              adaptive_fetch: Optional[bool] = None) -> ResultHandler:
        """
        Fetch the next batch of rows from a suspended portal.

        An exhausted or closed portal only reports completion.
        """
        handler = handler if handler is not None else CollectingResultHandler()
        if portal.engine_token is not self._token:
            raise ForeignQueryError("This portal was not opened by this connection.")
        with self._exclusive('fetch'):
            if not portal.is_open:
                handler.handle_completion()
                return handler
            adaptive = self._adaptive_fetch if adaptive_fetch is None else adaptive_fetch
            if adaptive and portal.name in self._adaptive:
                size = self._adaptive.get_fetch_size(portal.name, fetch_size or portal.fetch_size)
            else:
                size = fetch_size or portal.fetch_size
            self._start_unit()
            self._send_pending_closes(handler)
            self._stream.send(encode_execute(portal.name, size))
            self._expect(_Reply.EXECUTE, handler, record=self._records.get(portal.query_id),
                         portal=portal, fields=portal.fields)
            self._send_sync(handler)
            self._flush()
            self._process_results()
            self._finish_unit()
            handler.handle_completion()
        return handler

    def close_portal(self, portal: Portal):
        """Close a cursor; the Close message goes out with the next round trip."""
        if portal.engine_token is not self._token:
            raise ForeignQueryError("This portal was not opened by this connection.")
        with self._lock:
            if portal.closed:
                return
            self._retire_portal(portal, send_close=True)

    def _retire_portal(self, portal: Portal, send_close: bool):
        portal.closed = True
        self._open_portals.pop(portal.name, None)
        self._adaptive.remove(portal.name)
        if send_close:
            self._pending_closes.append((TARGET_PORTAL, portal.name))
        logger.debug("Portal closed", connection_id=self.connection_id, portal=portal.name,
                     rows=portal.rows_fetched)

    # ------------------------------------------------------------------
    # Reply processing
    # ------------------------------------------------------------------

    def _process_results(self, stop_on_copy: bool = False):
        """
        Read replies until every pending entry has been answered.

        Returns:
            The Copy*Response message when ``stop_on_copy`` and the server
            entered COPY mode, otherwise None
        """
        while self._pending:
            message = self._stream.receive()
            if stop_on_copy and isinstance(message, (CopyInResponse, CopyOutResponse, CopyBothResponse)) \
                    and self._pending[0].copy:
                return message
            self._dispatch(message)
        self._in_flight = False
        return None

    def _head(self, message) -> _Pending:
        if not self._pending:
            raise ProtocolViolation(f"Unexpected {type(message).__name__} with no outstanding request")
        return self._pending[0]

    def _pop(self, message, *kinds: _Reply) -> _Pending:
        head = self._head(message)
        if head.kind not in kinds:
            raise ProtocolViolation(
                f"Unexpected {type(message).__name__} while waiting for {head.kind.value}")
        return self._pending.popleft()

    def _dispatch(self, message):
        if isinstance(message, (NoticeResponse, NotificationResponse, ParameterStatus,
                                BackendKeyData, NegotiateProtocolVersion)):
            self._handle_async(message, self._pending[0].handler if self._pending else None)
        elif isinstance(message, ParseComplete):
            item = self._pop(message, _Reply.PARSE)
            if item.statement_name and item.record is not None:
                logger.debug("Statement prepared", connection_id=self.connection_id,
                             statement_name=item.statement_name, query_id=item.record.query_id)
        elif isinstance(message, ParameterDescription):
            head = self._head(message)
            if head.kind != _Reply.DESCRIBE_STATEMENT:
                raise ProtocolViolation(f"Unexpected ParameterDescription while waiting for {head.kind.value}")
            head.param_oids = message.oids
        elif isinstance(message, (RowDescription, NoData)):
            fields = message.fields if isinstance(message, RowDescription) else None
            self._row_description(message, fields)
        elif isinstance(message, BindComplete):
            self._pop(message, _Reply.BIND)
        elif isinstance(message, DataRow):
            head = self._head(message)
            if head.kind not in (_Reply.EXECUTE, _Reply.SIMPLE):
                raise ProtocolViolation(f"Unexpected DataRow while waiting for {head.kind.value}")
            head.rows.append(message.values)
            head.row_bytes += message.size
        elif isinstance(message, (CommandComplete, EmptyQueryResponse)):
            tag = message.tag if isinstance(message, CommandComplete) else None
            head = self._head(message)
            if head.kind == _Reply.SIMPLE:
                self._simple_result(head, tag)
            else:
                self._execute_complete(self._pop(message, _Reply.EXECUTE), tag)
        elif isinstance(message, PortalSuspended):
            self._portal_suspended(self._pop(message, _Reply.EXECUTE))
        elif isinstance(message, CloseComplete):
            self._pop(message, _Reply.CLOSE)
        elif isinstance(message, ErrorResponse):
            self._statement_error(message)
        elif isinstance(message, ReadyForQuery):
            self._ready_for_query(self._pop(message, *_UNIT_ENDS), message.status)
        elif isinstance(message, (CopyInResponse, CopyOutResponse, CopyBothResponse)):
            self._reject_copy(message)
        elif isinstance(message, (CopyData, CopyDone)):
            head = self._head(message)
            if not (head.copy or head.copy_rejected):
                raise ProtocolViolation(f"Unexpected {type(message).__name__} outside of COPY")
        elif isinstance(message, FunctionCallResponse):
            head = self._head(message)
            if head.kind != _Reply.FUNCTION_CALL:
                raise ProtocolViolation("Unexpected FunctionCallResponse")
            head.value = message.value
        else:
            raise ProtocolViolation(f"Unexpected message {type(message).__name__}")

    def _row_description(self, message, fields: Optional[Tuple[Field, ...]]):
        head = self._head(message)
        if head.kind == _Reply.SIMPLE:
            head.fields = fields
            head.rows = []
            head.row_bytes = 0
            return
        item = self._pop(message, _Reply.DESCRIBE_STATEMENT, _Reply.DESCRIBE_PORTAL)
        record = item.record
        if record is not None:
            record.fields[item.index] = _apply_formats(fields, ()) if fields is not None else None
            record.described[item.index] = True
        if item.kind == _Reply.DESCRIBE_PORTAL:
            item.execute.fields = fields
            if item.execute.portal is not None:
                item.execute.portal.fields = fields
            return
        if record is not None:
            record.param_oids[item.index] = item.param_oids
        if item.describe_only:
            parameters = item.parameters
            if parameters is not None and item.param_oids:
                for number, oid in enumerate(item.param_oids, start=1):
                    if item.param_offset + number <= len(parameters):
                        parameters.set_resolved_type(item.param_offset + number, oid)
            if fields is not None:
                item.handler.handle_result_rows(fields, [], None)

    def _execute_complete(self, item: _Pending, tag: Optional[str]):
        if tag is not None:
            command, update_count, insert_oid = parse_command_tag(tag)
        else:
            command, update_count, insert_oid = 'EMPTY', None, None
        self._track_command(item, command, tag)
        if item.internal or item.copy_rejected:
            return
        portal = item.portal
        if portal is not None:
            portal.rows_fetched += len(item.rows)
            portal.exhausted = True
            self._adaptive.observe(portal.name, len(item.rows), item.row_bytes)
            self._retire_portal(portal, send_close=True)
        status = tag if tag is not None else command
        handler = item.handler
        if item.fields is not None or item.rows:
            rows = [] if item.options.no_results else item.rows
            handler.handle_result_rows(item.fields, rows, None)
            if item.options.both_rows_and_status or (item.batch and item.final):
                handler.handle_command_status(status, update_count, insert_oid)
        elif not item.batch or item.final:
            handler.handle_command_status(status, update_count, insert_oid)

    def _portal_suspended(self, item: _Pending):
        rows = [] if item.options.no_results else item.rows
        portal = item.portal
        if portal is None:
            # row limit reached on the unnamed portal
            item.handler.handle_result_rows(item.fields, rows, None)
            return
        portal.rows_fetched += len(item.rows)
        if item.fields is not None:
            portal.fields = item.fields
        self._open_portals[portal.name] = portal
        learned = self._adaptive.observe(portal.name, len(item.rows), item.row_bytes)
        if learned is not None:
            portal.fetch_size = learned
        self._state = EngineState.SUSPENDED
        logger.debug("Portal suspended", connection_id=self.connection_id, portal=portal.name,
                     rows=len(item.rows), fetch_size=portal.fetch_size)
        item.handler.handle_result_rows(portal.fields, rows, portal)

    def _simple_result(self, head: _Pending, tag: Optional[str]):
        if tag is not None:
            command, update_count, insert_oid = parse_command_tag(tag)
        else:
            command, update_count, insert_oid = 'EMPTY', None, None
        self._track_command(head, command, tag)
        fields, rows = head.fields, head.rows
        head.fields, head.rows, head.row_bytes = None, [], 0
        if head.copy:
            head.copy_rows = update_count
            return
        if head.copy_rejected:
            head.copy_rejected = False
            return
        if head.internal:
            return
        head.statements_left -= 1
        # a batch entry reports the status of its last statement only
        final = head.statements_left <= 0
        status = tag if tag is not None else command
        if fields is not None:
            if head.options.no_results:
                rows = []
            elif head.max_rows:
                rows = rows[:head.max_rows]
            head.handler.handle_result_rows(fields, rows, None)
            if head.options.both_rows_and_status or (head.batch and final):
                head.handler.handle_command_status(status, update_count, insert_oid)
        elif not head.batch or final:
            head.handler.handle_command_status(status, update_count, insert_oid)

    def _track_command(self, item: _Pending, command: str, tag: Optional[str]):
        if item.autosave:
            self._savepoints.acknowledge(command)
        if tag is not None and tag.upper().startswith(_DEALLOCATE_ALL_TAGS):
            self._on_deallocate_all(tag)

    def _on_deallocate_all(self, tag: str):
        if not self._flush_cache_on_deallocate:
            logger.debug("Statement names kept after deallocation", connection_id=self.connection_id,
                         tag=tag)
            return
        for record in list(self._records.values()):
            record.forget_server_statements()
        self._cache.reset_execute_counts()
        for entry in list(self._uncached_entries.values()):
            entry.reset_execute_count()
        logger.info("Server statements deallocated; statement names dropped",
                    connection_id=self.connection_id, tag=tag)

    def _statement_error(self, message: ErrorResponse):
        head = self._head(message)
        error = StatementError(message.error)
        self._unit_errors.append((error, head.record))
        self._state = EngineState.FAILED
        logger.debug("Statement error", connection_id=self.connection_id, sqlstate=error.sqlstate,
                     message=message.error.message)
        head.handler.handle_error(error)
        if head.kind in _UNIT_ENDS:
            return
        # The server skips everything up to the next Sync.
        while self._pending and self._pending[0].kind != _Reply.SYNC:
            item = self._pending.popleft()
            if item.kind == _Reply.PARSE and item.statement_name and item.record is not None:
                if item.record.statement_names[item.index] == item.statement_name:
                    item.record.statement_names[item.index] = None
                    item.record.prepared_types[item.index] = None

    def _ready_for_query(self, item: _Pending, status: bytes):
        self._transaction_state = TransactionState.from_status(status)
        if self._transaction_state == TransactionState.IDLE:
            self._savepoints.reset()
            for portal in list(self._open_portals.values()):
                self._retire_portal(portal, send_close=False)

    def _reject_copy(self, message):
        head = self._head(message)
        error = StatementError.local("COPY commands are only supported through start_copy.", '0A000')
        self._unit_errors.append((error, head.record))
        head.handler.handle_error(error)
        head.copy_rejected = True
        if isinstance(message, (CopyInResponse, CopyBothResponse)):
            self._stream.send(encode_copy_fail("COPY commands are only supported through start_copy"))
            self._stream.flush()

    def _handle_async(self, message, handler: Optional[ResultHandler] = None):
        if isinstance(message, NoticeResponse):
            warning = ServerWarning(message.notice)
            self._warnings.add(warning)
            logger.debug("Server notice", connection_id=self.connection_id,
                         sqlstate=warning.sqlstate, message=warning.message)
            if handler is not None:
                handler.handle_warning(warning)
        elif isinstance(message, NotificationResponse):
            self._notifications.add(Notification(message.channel, message.pid, message.payload))
            logger.debug("Notification received", connection_id=self.connection_id,
                         channel=message.channel, pid=message.pid)
        elif isinstance(message, ParameterStatus):
            self._parameter_status(message.name, message.value)
        elif isinstance(message, BackendKeyData):
            self._backend_pid, self._backend_secret = message.pid, message.secret
        elif isinstance(message, NegotiateProtocolVersion):
            logger.warning("Server negotiated protocol version", connection_id=self.connection_id,
                           minor=message.newest_minor, unrecognized=list(message.unrecognized_options))
        elif isinstance(message, ErrorResponse):
            error = message.error
            if error.severity in ('FATAL', 'PANIC'):
                raise ConnectionFatalError(str(error), error.sqlstate or '08006')
            raise StatementError(error)
        else:
            raise ProtocolViolation(f"Unexpected message {type(message).__name__} outside of a request")

    def _parameter_status(self, name: str, value: str):
        self._parameters[name] = value
        if name == 'client_encoding':
            if value.upper().replace('-', '') != 'UTF8':
                raise ConnectionFatalError(
                    f"The server's client_encoding parameter was changed to {value}. "
                    f"client_encoding must be UTF8 for correct operation.", '22021')
        elif name == 'standard_conforming_strings':
            if value not in ('on', 'off'):
                raise ConnectionFatalError(
                    f"Unexpected standard_conforming_strings value {value!r}", '08P01')
            self._standard_conforming_strings = value == 'on'
        elif name == 'server_version':
            self._server_version = value
            self._server_version_num = parse_server_version(value)
        elif name == 'server_version_num' and value.isdigit():
            self._server_version_num = int(value)

    # ------------------------------------------------------------------
    # COPY
    # ------------------------------------------------------------------

    def start_copy(self, sql: str, suppress_begin: bool = False) -> CopyOperation:
        """
        Send a COPY statement and return the operation that now owns the connection.

        Raises:
            StatementError: the server rejected the statement or it is not a COPY
        """
        handler = ResultHandlerBase()
        with self._exclusive('start_copy'):
            self._start_unit()
            self._send_preamble(handler, QueryOptions(suppress_begin=suppress_begin), [],
                                simple=True, allow_savepoint=False)
            self._stream.send(encode_query(sql))
            item = self._expect(_Reply.SIMPLE, handler, copy=True)
            self._flush()
            response = self._process_results(stop_on_copy=True)
            if response is None:
                self._finish_unit()
                handler.handle_completion()
                raise StatementError.local(f"Statement did not start a COPY: {sql[:100]}", '42601')
            if isinstance(response, CopyInResponse):
                operation = CopyIn(self, response.overall_format, response.column_formats)
            elif isinstance(response, CopyOutResponse):
                operation = CopyOut(self, response.overall_format, response.column_formats)
            else:
                operation = CopyDual(self, response.overall_format, response.column_formats)
            self._copy_operation = operation
            self._copy_item = item
            self._state = EngineState.AWAITING_REPLY
            logger.info("COPY started", connection_id=self.connection_id,
                        direction=operation.direction, format=operation.overall_format)
            return operation

    def _write_to_copy(self, operation: CopyOperation, data: bytes):
        with self._exclusive('copy_write', operation):
            self._stream.send(encode_copy_data(data))
            if self._stream.pending_bytes >= COPY_FLUSH_THRESHOLD:
                self._stream.flush()

    def _flush_copy(self, operation: CopyOperation):
        with self._exclusive('copy_flush', operation):
            self._stream.flush()

    def _end_copy(self, operation: CopyOperation) -> int:
        with self._exclusive('copy_end', operation):
            self._stream.send(COPY_DONE_MESSAGE)
            self._flush()
            self._process_results()
            rows = self._copy_item.copy_rows
            handler = self._copy_item.handler
            self._finish_copy(operation, rows)
            handler.handle_completion()
            return rows or 0

    def _read_from_copy(self, operation: CopyOperation, block: bool) -> Optional[bytes]:
        with self._exclusive('copy_read', operation):
            while self._pending:
                if not block and not self._stream.has_pending_message(0):
                    return None
                message = self._stream.receive()
                if isinstance(message, CopyData):
                    operation.bytes_transferred += len(message.data)
                    return message.data
                self._dispatch(message)
            self._in_flight = False
            rows = self._copy_item.copy_rows
            handler = self._copy_item.handler
            self._finish_copy(operation, rows)
            handler.handle_completion()
            return None

    def _cancel_copy(self, operation: CopyOperation):
        with self._exclusive('copy_cancel', operation):
            if isinstance(operation, CopyIn):
                self._stream.send(encode_copy_fail("COPY cancelled by the client"))
                self._flush()
            elif self._backend_pid is not None:
                self.send_query_cancel()
            self._process_results()
            handler = self._copy_item.handler
            self._finish_copy(operation, None)
            unexpected = [e for e in getattr(handler, 'errors', []) if e.sqlstate != QUERY_CANCELED]
            logger.info("COPY cancelled", connection_id=self.connection_id,
                        direction=operation.direction)
            if unexpected:
                raise unexpected[0]

    def _finish_copy(self, operation: CopyOperation, rows: Optional[int]):
        self._copy_operation = None
        self._copy_item = None
        self._finish_unit()
        operation._finished(rows)

    # ------------------------------------------------------------------
    # Notifications, warnings, cancel and shutdown
    # ------------------------------------------------------------------

    def process_notifies(self, timeout: Optional[float] = 0):
        """
        Read pending asynchronous messages from the socket.

        Args:
            timeout: 0 returns immediately, None waits until at least one
                notification arrives, a positive value waits at most that many
                seconds for the first notification
        """
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be >= 0 or None")
        with self._exclusive('process_notifies'):
            deadline = None if timeout is None else time.monotonic() + timeout
            received = 0
            while True:
                if received or timeout == 0:
                    wait = 0.0
                elif deadline is None:
                    wait = None
                else:
                    wait = max(0.0, deadline - time.monotonic())
                if not self._stream.has_pending_message(wait):
                    break
                message = self._stream.receive()
                if isinstance(message, NotificationResponse):
                    received += 1
                self._handle_async(message)

    def get_notifications(self) -> List[Notification]:
        """Drain notifications received so far; never reads the socket."""
        return self._notifications.drain()

    def get_warnings(self) -> Tuple[ServerWarning, ...]:
        return self._warnings.get()

    def clear_warnings(self):
        self._warnings.clear()

    def send_query_cancel(self):
        """Ask the server to cancel the running statement (advisory)."""
        if self._backend_pid is None or self._backend_secret is None:
            logger.warning("Cancel requested without backend key data", connection_id=self.connection_id)
            return
        if self._stream.cancel_address is None:
            logger.warning("Cancel requested without a cancel address", connection_id=self.connection_id)
            return
        self._stream.send_cancel(self._backend_pid, self._backend_secret)

    def abort(self):
        """Force-close the socket; usable from another thread to break a blocked read."""
        logger.info("Connection aborted", connection_id=self.connection_id)
        self._stream.abort()

    def close(self):
        if self._stream.closed:
            return
        with self._lock:
            self._stream.terminate()
            self._pending.clear()
            self._copy_operation = None
            self._open_portals.clear()
            self._adaptive.clear()
            logger.info("Connection closed", connection_id=self.connection_id)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def _apply_formats(fields: Optional[Tuple[Field, ...]], formats: Sequence[int]) -> Optional[Tuple[Field, ...]]:
    if fields is None:
        return None
    if not formats:
        return tuple(f if f.format == FORMAT_TEXT else f.with_format(FORMAT_TEXT) for f in fields)
    return tuple(f.with_format(code) for f, code in zip(fields, formats))
