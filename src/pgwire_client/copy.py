"""
COPY sub-protocol operations.

``QueryExecutor.start_copy`` sends a COPY statement and, depending on the
server's answer, returns one of:

- ``CopyIn`` (CopyInResponse 'G'): the caller streams rows with
  ``write_to_copy`` and finishes with ``end_copy``
- ``CopyOut`` (CopyOutResponse 'H'): the caller reads rows with
  ``read_from_copy`` until it returns None
- ``CopyDual`` (CopyBothResponse 'W'): both directions, used by replication

While an operation is active it owns the connection; every other engine call
raises ``CopyInProgressError``. ``cancel_copy`` abandons the operation and
leaves the connection usable.
"""

from typing import TYPE_CHECKING, Optional, Tuple

import structlog

from .exceptions import InvalidStateError
from .protocol import FORMAT_BINARY

if TYPE_CHECKING:
    from .engine import QueryExecutor

logger = structlog.get_logger()


class CopyOperation:
    """
    A live COPY session.

    Attributes:
        overall_format: 0 for text/CSV, 1 for binary COPY
        column_formats: per-column format codes announced by the server
        handled_rows: row count from the final CommandComplete, once known
    """

    direction = 'none'

    def __init__(self, engine: 'QueryExecutor', overall_format: int, column_formats: Tuple[int, ...]):
        self._engine = engine
        self.overall_format = overall_format
        self.column_formats = column_formats
        self.handled_rows: Optional[int] = None
        self.bytes_transferred = 0
        self.active = True

    @property
    def is_binary(self) -> bool:
        return self.overall_format == FORMAT_BINARY

    @property
    def field_count(self) -> int:
        return len(self.column_formats)

    def get_field_format(self, index: int) -> int:
        return self.column_formats[index]

    def cancel_copy(self):
        """Abandon the operation; the connection stays usable."""
        if not self.active:
            return
        self._engine._cancel_copy(self)

    def _check_active(self):
        if not self.active:
            raise InvalidStateError(f"COPY {self.direction} operation is no longer active.")

    def _finished(self, handled_rows: Optional[int]):
        self.active = False
        self.handled_rows = handled_rows
        logger.info("COPY finished", direction=self.direction, rows=handled_rows,
                    bytes=self.bytes_transferred)

    def __repr__(self) -> str:
        state = 'active' if self.active else 'finished'
        return f"{type(self).__name__}({state}, format={self.overall_format}, fields={self.field_count})"


class CopyIn(CopyOperation):
    """COPY ... FROM STDIN."""

    direction = 'in'

    def write_to_copy(self, data: bytes, offset: int = 0, size: Optional[int] = None):
        """Queue one CopyData message; bytes go out on ``flush_copy`` or ``end_copy``."""
        self._check_active()
        chunk = bytes(data[offset:] if size is None else data[offset:offset + size])
        self._engine._write_to_copy(self, chunk)
        self.bytes_transferred += len(chunk)

    def flush_copy(self):
        self._check_active()
        self._engine._flush_copy(self)

    def end_copy(self) -> int:
        """
        Finish the COPY and return the number of rows the server handled.

        Raises:
            StatementError: the server rejected the data
        """
        self._check_active()
        return self._engine._end_copy(self)


class CopyOut(CopyOperation):
    """COPY ... TO STDOUT."""

    direction = 'out'

    def read_from_copy(self, block: bool = True) -> Optional[bytes]:
        """
        Next CopyData payload, or None once the server finished the COPY.

        Args:
            block: wait for data; when False return None if nothing is buffered yet
        """
        if not self.active:
            return None
        return self._engine._read_from_copy(self, block)


class CopyDual(CopyIn, CopyOut):
    """CopyBoth: data flows in both directions until either side sends CopyDone."""

    direction = 'both'
