"""
Error taxonomy for the query execution engine.

Three families of failure are distinguished:

- Connection-fatal errors (I/O failure, malformed frame, protocol
  desynchronization). The engine closes the socket and refuses further use.
- Statement-level errors reported by the server through ErrorResponse. The
  connection stays usable once the server has sent ReadyForQuery.
- Caller contract violations detected locally, before anything is sent.

Server notices are not exceptions; they are queued as ``ServerWarning``
records by the transaction state (see ``transaction.py``).
"""

from dataclasses import dataclass, field
from typing import Dict, Optional


# ErrorResponse / NoticeResponse field codes
FIELD_SEVERITY = 'S'
FIELD_SEVERITY_NONLOCALIZED = 'V'
FIELD_SQLSTATE = 'C'
FIELD_MESSAGE = 'M'
FIELD_DETAIL = 'D'
FIELD_HINT = 'H'
FIELD_POSITION = 'P'
FIELD_INTERNAL_POSITION = 'p'
FIELD_INTERNAL_QUERY = 'q'
FIELD_WHERE = 'W'
FIELD_SCHEMA = 's'
FIELD_TABLE = 't'
FIELD_COLUMN = 'c'
FIELD_DATATYPE = 'd'
FIELD_CONSTRAINT = 'n'
FIELD_FILE = 'F'
FIELD_LINE = 'L'
FIELD_ROUTINE = 'R'


@dataclass(frozen=True)
class ServerErrorMessage:
    """
    Decoded body of an ErrorResponse or NoticeResponse message.

    Only the fields the engine reasons about get attributes; every field the
    server sent is kept in ``fields`` keyed by its one-letter code.
    """

    fields: Dict[str, str] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return self.fields.get(FIELD_SEVERITY_NONLOCALIZED) or self.fields.get(FIELD_SEVERITY, '')

    @property
    def sqlstate(self) -> str:
        return self.fields.get(FIELD_SQLSTATE, '')

    @property
    def message(self) -> str:
        return self.fields.get(FIELD_MESSAGE, '')

    @property
    def detail(self) -> Optional[str]:
        return self.fields.get(FIELD_DETAIL)

    @property
    def hint(self) -> Optional[str]:
        return self.fields.get(FIELD_HINT)

    @property
    def routine(self) -> Optional[str]:
        return self.fields.get(FIELD_ROUTINE)

    @property
    def position(self) -> Optional[int]:
        value = self.fields.get(FIELD_POSITION)
        return int(value) if value and value.isdigit() else None

    def __str__(self) -> str:
        text = f"{self.severity}: {self.message}"
        if self.detail:
            text += f"\n  Detail: {self.detail}"
        if self.hint:
            text += f"\n  Hint: {self.hint}"
        if self.position is not None:
            text += f"\n  Position: {self.position}"
        return text


class PGWireError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, sqlstate: Optional[str] = None):
        self.message = message
        self.sqlstate = sqlstate
        super().__init__(message)


class ConnectionFatalError(PGWireError):
    """I/O failure or broken stream. The connection is closed and unusable."""

    def __init__(self, message: str, sqlstate: str = '08006'):
        super().__init__(message, sqlstate)


class ProtocolViolation(ConnectionFatalError):
    """Malformed frame or unexpected message order from the server."""

    def __init__(self, message: str):
        super().__init__(message, '08P01')


class ConnectionClosedError(ConnectionFatalError):
    """The engine was used after close(), abort() or a fatal error."""

    def __init__(self, message: str = "This connection has been closed."):
        super().__init__(message, '08003')


class StatementError(PGWireError):
    """
    Error reported by the server for a single statement.

    Attributes:
        server_error: the decoded ErrorResponse
        heal_on_retry: set by the engine when re-running the statement is
            expected to succeed (e.g. a cached plan invalidated by DDL)
    """

    def __init__(self, server_error: ServerErrorMessage, heal_on_retry: bool = False):
        self.server_error = server_error
        self.heal_on_retry = heal_on_retry
        super().__init__(str(server_error), server_error.sqlstate or None)

    @classmethod
    def local(cls, message: str, sqlstate: str) -> 'StatementError':
        """Build a statement error for a condition the engine detected itself."""
        return cls(ServerErrorMessage({
            FIELD_SEVERITY: 'ERROR',
            FIELD_SQLSTATE: sqlstate,
            FIELD_MESSAGE: message,
        }))


class CallerContractError(PGWireError):
    """Local misuse of the engine; nothing was sent to the server."""

    def __init__(self, message: str, sqlstate: str = '55000'):
        super().__init__(message, sqlstate)


class ForeignQueryError(CallerContractError):
    """A Query or ParameterList was used with an engine or query that did not create it."""


class CopyInProgressError(CallerContractError):
    """An operation was attempted while a COPY owns the connection."""

    def __init__(self, message: str = "A COPY operation is in progress on this connection."):
        super().__init__(message, '55000')


class InvalidStateError(CallerContractError):
    """An operation is not valid in the current engine or object state."""
