"""
Result cursors (named portals) and adaptive fetch sizing.

A ``Portal`` is the client-side record of a server portal bound for a
forward-only cursor. The engine executes it with a row limit and resumes it with
``fetch``; the portal is closed when the server reports completion, when the
caller closes it, or when the transaction that owns it ends.

``AdaptiveFetchCache`` learns a per-portal fetch size from the size of rows
actually received: the size is the per-round-trip memory target divided by the
largest average row size observed so far, clamped to configured bounds.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import structlog

from .protocol import Field

logger = structlog.get_logger()


class Portal:
    """
    Client-side handle of a suspended server portal.

    Attributes:
        name: server portal name
        query_id: id of the query record the portal was bound from
        fields: result shape used to interpret rows on subsequent fetches
        rows_fetched: rows delivered so far
    """

    def __init__(self, name: str, query_id: int, engine_token: object,
                 fields: Optional[Tuple[Field, ...]], fetch_size: int):
        self.name = name
        self.query_id = query_id
        self.engine_token = engine_token
        self.fields = fields
        self.fetch_size = fetch_size
        self.rows_fetched = 0
        self.exhausted = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not (self.closed or self.exhausted)

    def __repr__(self) -> str:
        state = 'open' if self.is_open else ('exhausted' if self.exhausted else 'closed')
        return f"Portal({self.name!r}, query_id={self.query_id}, {state}, rows={self.rows_fetched})"


@dataclass
class AdaptiveFetchEntry:
    """Learned fetch size of one portal."""

    fetch_size: int
    minimum: int
    maximum: int
    largest_average_row_bytes: int = 0
    round_trips: int = 0

    def clamp(self, size: int) -> int:
        return max(self.minimum, min(self.maximum, size))


class AdaptiveFetchCache:
    """
    Per-portal adaptive fetch state.

    Args:
        minimum: lower bound for learned sizes (raised to 1 if smaller)
        maximum: upper bound for learned sizes
        target_bytes: memory budget for one round trip of rows
    """

    def __init__(self, minimum: int = 0, maximum: int = 100_000, target_bytes: int = 1024 * 1024):
        if maximum < 1:
            raise ValueError("Adaptive fetch maximum must be >= 1")
        self.minimum = max(1, minimum)
        self.maximum = maximum
        if self.minimum > self.maximum:
            raise ValueError("Adaptive fetch minimum must not exceed maximum")
        self.target_bytes = target_bytes
        self._entries: Dict[str, AdaptiveFetchEntry] = {}

    def __contains__(self, portal_name: str) -> bool:
        return portal_name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, portal_name: str, initial_fetch_size: int) -> AdaptiveFetchEntry:
        entry = AdaptiveFetchEntry(fetch_size=0, minimum=self.minimum, maximum=self.maximum)
        entry.fetch_size = entry.clamp(initial_fetch_size)
        self._entries[portal_name] = entry
        return entry

    def get(self, portal_name: str) -> Optional[AdaptiveFetchEntry]:
        return self._entries.get(portal_name)

    def get_fetch_size(self, portal_name: str, default: int) -> int:
        entry = self._entries.get(portal_name)
        return entry.fetch_size if entry is not None else default

    def observe(self, portal_name: str, row_count: int, total_bytes: int) -> Optional[int]:
        """
        Record one round trip of rows and recompute the fetch size.

        The learned size only moves when a larger average row size is seen and
        never exceeds the current size, so it never increases for the portal.

        Returns:
            The fetch size for the next round trip, or None if the portal is untracked
        """
        entry = self._entries.get(portal_name)
        if entry is None:
            return None
        entry.round_trips += 1
        if row_count <= 0:
            return entry.fetch_size

        average = max(1, math.ceil(total_bytes / row_count))
        if entry.round_trips == 1 or average > entry.largest_average_row_bytes:
            entry.largest_average_row_bytes = max(entry.largest_average_row_bytes, average)
            learned = min(entry.clamp(self.target_bytes // entry.largest_average_row_bytes),
                          entry.fetch_size)
            if learned != entry.fetch_size:
                logger.debug("Adaptive fetch size changed", portal=portal_name,
                             previous=entry.fetch_size, fetch_size=learned,
                             average_row_bytes=average)
            entry.fetch_size = learned
        return entry.fetch_size

    def remove(self, portal_name: str):
        self._entries.pop(portal_name, None)

    def clear(self):
        self._entries.clear()
