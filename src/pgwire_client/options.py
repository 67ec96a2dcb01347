"""
Per-execution options.

Each field replaces one bit of the classic executor flag mask. Combinations the
server protocol cannot honour are rejected when the options are built.
"""

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class QueryOptions:
    """
    Execution options for one call into the engine.

    Attributes:
        one_shot: the query will not be reused; no cache promotion bookkeeping
        no_metadata: the caller does not need the row shape
        no_results: rows may be discarded (at most one row is requested)
        forward_cursor: bind a named portal and fetch in batches
        suppress_begin: never synthesize BEGIN before this execution
        describe_only: parse and describe, do not execute
        both_rows_and_status: deliver rows and the command status (RETURNING)
        force_describe_portal: describe the portal even when the shape is known
        no_binary_transfer: use text for every parameter and column
        read_only_hint: a synthesized BEGIN starts a read-only transaction
        execute_as_simple: send with the simple query protocol
        disallow_batching: in a batch, sync and read replies after every entry
    """

    one_shot: bool = False
    no_metadata: bool = False
    no_results: bool = False
    forward_cursor: bool = False
    suppress_begin: bool = False
    describe_only: bool = False
    both_rows_and_status: bool = False
    force_describe_portal: bool = False
    no_binary_transfer: bool = False
    read_only_hint: bool = False
    execute_as_simple: bool = False
    disallow_batching: bool = False

    def __post_init__(self):
        if self.describe_only and self.forward_cursor:
            raise ValueError("describe_only cannot be combined with forward_cursor")
        if self.no_results and self.both_rows_and_status:
            raise ValueError("no_results cannot be combined with both_rows_and_status")
        if self.describe_only and self.execute_as_simple:
            raise ValueError("describe_only requires the extended query protocol")

    def but(self, **changes) -> 'QueryOptions':
        """Copy with some options changed (validated again)."""
        return replace(self, **changes)


DEFAULT_OPTIONS = QueryOptions()
