"""
PostgreSQL Wire Protocol Client Engine

Client-side query execution engine for the PostgreSQL v3 wire protocol. It runs
over an already-authenticated socket and implements the simple and extended
query protocols, forward cursors, batches, COPY and fastpath calls.
"""

__version__ = "0.1.0"
__author__ = "PGWire Client Team"

from .config_schema import EngineConfig, PreferQueryMode
from .engine import EngineState, QueryExecutor
from .exceptions import (
    CallerContractError,
    ConnectionClosedError,
    ConnectionFatalError,
    CopyInProgressError,
    ForeignQueryError,
    InvalidStateError,
    PGWireError,
    ProtocolViolation,
    StatementError,
)
from .handlers import BatchResultHandler, CollectingResultHandler, ResultHandler, ResultHandlerBase
from .options import QueryOptions
from .transaction import AutoSave, TransactionState

__all__ = [
    "__version__",
    "__author__",
    "AutoSave",
    "BatchResultHandler",
    "CallerContractError",
    "CollectingResultHandler",
    "ConnectionClosedError",
    "ConnectionFatalError",
    "CopyInProgressError",
    "EngineConfig",
    "EngineState",
    "ForeignQueryError",
    "InvalidStateError",
    "PGWireError",
    "PreferQueryMode",
    "ProtocolViolation",
    "QueryExecutor",
    "QueryOptions",
    "ResultHandler",
    "ResultHandlerBase",
    "StatementError",
    "TransactionState",
]
