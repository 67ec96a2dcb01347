"""
Result consumers.

The engine reports everything it reads back from the server through a
``ResultHandler`` supplied by the caller: row sets (with the row shape and, for
suspended portals, the cursor to resume), command outcomes, warnings, errors
and finally stream completion.
"""

import enum
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from .cursor import Portal
from .exceptions import PGWireError
from .protocol import Field
from .transaction import ServerWarning

logger = structlog.get_logger()

Row = Tuple[Optional[bytes], ...]


class ResultHandler:
    """
    Callbacks the engine invokes while consuming replies.

    The default implementation ignores everything; subclasses override the
    callbacks they care about.
    """

    def handle_result_rows(self, fields: Optional[Tuple[Field, ...]], rows: List[Row],
                           cursor: Optional[Portal]):
        """
        Rows of one result set.

        Args:
            fields: row shape, or None when metadata was not requested
            rows: raw column values, None for SQL NULL
            cursor: open portal to resume with ``fetch``, or None when complete
        """

    def handle_command_status(self, status: str, update_count: Optional[int],
                              insert_oid: Optional[int]):
        """A statement completed with command tag ``status``."""

    def handle_warning(self, warning: ServerWarning):
        pass

    def handle_error(self, error: PGWireError):
        pass

    def handle_completion(self):
        """The reply stream for this operation has been fully consumed."""

    def secure_progress(self):
        """Called before a mid-batch sync so partial results can be committed to memory."""


class ResultHandlerBase(ResultHandler):
    """
    Handler that collects errors and warnings and raises the first error on completion.

    Later errors are chained onto the first through ``__context__`` so no
    server report is lost.
    """

    def __init__(self):
        self.errors: List[PGWireError] = []
        self.warnings: List[ServerWarning] = []

    def handle_warning(self, warning: ServerWarning):
        self.warnings.append(warning)

    def handle_error(self, error: PGWireError):
        if self.errors:
            last = self.errors[-1]
            if last.__context__ is None and error is not last:
                last.__context__ = error
        self.errors.append(error)

    @property
    def first_error(self) -> Optional[PGWireError]:
        return self.errors[0] if self.errors else None

    def handle_completion(self):
        if self.errors:
            raise self.errors[0]


@dataclass
class ResultSet:
    fields: Optional[Tuple[Field, ...]]
    rows: List[Row]
    cursor: Optional[Portal] = None


@dataclass(frozen=True)
class CommandStatus:
    status: str
    update_count: Optional[int] = None
    insert_oid: Optional[int] = None


class CollectingResultHandler(ResultHandlerBase):
    """Keeps every result set and command status in arrival order."""

    def __init__(self):
        super().__init__()
        self.results: List[ResultSet] = []
        self.statuses: List[CommandStatus] = []

    def handle_result_rows(self, fields, rows, cursor):
        self.results.append(ResultSet(fields, list(rows), cursor))

    def handle_command_status(self, status, update_count, insert_oid):
        self.statuses.append(CommandStatus(status, update_count, insert_oid))

    @property
    def rows(self) -> List[Row]:
        return [row for result in self.results for row in result.rows]

    @property
    def fields(self) -> Optional[Tuple[Field, ...]]:
        for result in self.results:
            if result.fields is not None:
                return result.fields
        return None

    @property
    def cursor(self) -> Optional[Portal]:
        return self.results[-1].cursor if self.results else None

    @property
    def update_count(self) -> Optional[int]:
        return self.statuses[-1].update_count if self.statuses else None


class OutcomeKind(enum.Enum):
    COMPLETED = 'completed'
    SUCCESS_NO_INFO = 'success_no_info'
    NOT_EXECUTED = 'not_executed'


@dataclass(frozen=True)
class BatchOutcome:
    """Definite result of one batch entry."""

    kind: OutcomeKind
    update_count: Optional[int] = None

    @property
    def executed(self) -> bool:
        return self.kind != OutcomeKind.NOT_EXECUTED


NOT_EXECUTED = BatchOutcome(OutcomeKind.NOT_EXECUTED)
SUCCESS_NO_INFO = BatchOutcome(OutcomeKind.SUCCESS_NO_INFO)


class BatchResultHandler(ResultHandlerBase):
    """
    Handler for ``execute_batch``.

    The engine delivers exactly one command status per batch entry, in entry
    order, so the position of each status identifies its entry. Once an error
    arrives every entry without a status is reported as not executed.

    Args:
        count: number of entries in the batch
        expect_generated_keys: keep rows returned by DML (RETURNING) per entry
    """

    def __init__(self, count: int, expect_generated_keys: bool = False):
        super().__init__()
        self.count = count
        self.expect_generated_keys = expect_generated_keys
        self._outcomes: List[Optional[BatchOutcome]] = [None] * count
        self.generated_keys: List[Row] = []
        self.failed_index: Optional[int] = None
        self._next_index = 0

    @property
    def outcomes(self) -> List[BatchOutcome]:
        return [outcome if outcome is not None else NOT_EXECUTED for outcome in self._outcomes]

    @property
    def update_counts(self) -> List[Optional[int]]:
        return [outcome.update_count for outcome in self.outcomes]

    def handle_result_rows(self, fields, rows, cursor):
        if self.expect_generated_keys:
            self.generated_keys.extend(rows)

    def handle_command_status(self, status, update_count, insert_oid):
        if self._next_index >= self.count:
            logger.warning("Command status beyond batch size", status=status, count=self.count)
            return
        if update_count is None:
            outcome = SUCCESS_NO_INFO
        else:
            outcome = BatchOutcome(OutcomeKind.COMPLETED, update_count)
        self._outcomes[self._next_index] = outcome
        self._next_index += 1

    def handle_error(self, error):
        if self.failed_index is None:
            self.failed_index = self._next_index
        super().handle_error(error)

    def handle_completion(self):
        if self.errors:
            logger.debug("Batch failed", failed_index=self.failed_index, count=self.count)
        super().handle_completion()

