"""
Transaction, savepoint, warning and notification bookkeeping.

Transaction status only changes when the server reports it in ReadyForQuery;
savepoint depth only changes when the server acknowledges SAVEPOINT / RELEASE.
Notices are queued as warnings, notifications are queued until drained.
"""

import enum
import threading
from collections import deque
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .exceptions import PGWireError, ServerErrorMessage, StatementError

AUTOSAVE_NAME = 'PGWIRE_AUTOSAVE'

# SQLSTATEs that a re-parse can fix
INVALID_SQL_STATEMENT_NAME = '26000'
NOT_IMPLEMENTED = '0A000'
QUERY_CANCELED = '57014'
REPARSE_ROUTINES = frozenset({'RevalidateCachedQuery', 'RevalidateCachedPlan'})


class TransactionState(enum.Enum):
    """Transaction status as last reported by the server."""

    IDLE = 'idle'
    OPEN = 'open'
    FAILED = 'failed'

    @classmethod
    def from_status(cls, status: bytes) -> 'TransactionState':
        if status == b'I':
            return cls.IDLE
        if status == b'T':
            return cls.OPEN
        if status == b'E':
            return cls.FAILED
        raise ValueError(f"Unknown transaction status {status!r}")


class AutoSave(str, enum.Enum):
    """Automatic savepoint policy."""

    NEVER = 'never'
    ALWAYS = 'always'
    CONSERVATIVE = 'conservative'


@dataclass(frozen=True)
class Notification:
    """Asynchronous LISTEN/NOTIFY notification."""

    channel: str
    pid: int
    payload: str = ''


@dataclass(frozen=True)
class ServerWarning:
    """Non-fatal notice reported by the server."""

    notice: ServerErrorMessage

    @property
    def message(self) -> str:
        return self.notice.message

    @property
    def sqlstate(self) -> str:
        return self.notice.sqlstate

    def __str__(self) -> str:
        return str(self.notice)


class WarningChain:
    """Warnings accumulated since the last clear."""

    def __init__(self):
        self._warnings: List[ServerWarning] = []
        self._lock = threading.Lock()

    def add(self, warning: ServerWarning):
        with self._lock:
            self._warnings.append(warning)

    def get(self) -> Tuple[ServerWarning, ...]:
        with self._lock:
            return tuple(self._warnings)

    def clear(self):
        with self._lock:
            self._warnings.clear()

    def __len__(self) -> int:
        return len(self._warnings)


class NotificationQueue:
    """Notifications received but not yet handed to the caller."""

    def __init__(self):
        self._queue = deque()
        self._lock = threading.Lock()

    def add(self, notification: Notification):
        with self._lock:
            self._queue.append(notification)

    def drain(self) -> List[Notification]:
        with self._lock:
            drained = list(self._queue)
            self._queue.clear()
            return drained

    def __len__(self) -> int:
        return len(self._queue)


class SavepointTracker:
    """
    Depth of automatic savepoints inside the current transaction.

    Args:
        max_savepoints: number of autosave savepoints kept before the newest is
            released ahead of setting another
    """

    def __init__(self, max_savepoints: int = 1000):
        if max_savepoints < 1:
            raise ValueError("max_savepoints must be >= 1")
        self.max_savepoints = max_savepoints
        self.depth = 0

    @property
    def at_limit(self) -> bool:
        return self.depth >= self.max_savepoints

    def acknowledge(self, command: str):
        """Apply a CommandComplete tag for an autosave statement."""
        if command == 'SAVEPOINT':
            self.depth += 1
        elif command == 'RELEASE' and self.depth > 0:
            self.depth -= 1

    def reset(self):
        self.depth = 0


def will_heal_via_reparse(error: Optional[BaseException]) -> bool:
    """
    Whether re-preparing the statement is expected to fix ``error``.

    True for "prepared statement does not exist" and for "cached plan must
    not change result type" raised by plan revalidation.
    """
    if not isinstance(error, PGWireError) or not error.sqlstate:
        return False
    if error.sqlstate == INVALID_SQL_STATEMENT_NAME:
        return True
    if error.sqlstate != NOT_IMPLEMENTED or not isinstance(error, StatementError):
        return False
    return error.server_error.routine in REPARSE_ROUTINES


def will_heal_on_retry(error: Optional[BaseException], autosave: AutoSave,
                       state: TransactionState) -> bool:
    """
    Whether the caller can expect a retry of the failed statement to succeed.

    Without autosave a failed transaction stays failed, so nothing heals.
    """
    if autosave == AutoSave.NEVER and state == TransactionState.FAILED:
        return False
    return will_heal_via_reparse(error)
