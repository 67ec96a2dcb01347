"""
Binary Format Registry

Two independent sets of type OIDs:
- receive set: result columns of these types are requested in binary form
- send set: parameters of these types are sent in binary form when the caller
  supplied a binary value

The registry is owned by the engine and mutated only through add/remove/set.
Executions work on a ``FormatSnapshot`` taken when they start, so changes never
affect a statement already in flight.
"""

import threading
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Sequence

import structlog

from .protocol import FORMAT_BINARY, FORMAT_TEXT, Field

logger = structlog.get_logger()


class Oid:
    """Well-known type OIDs from pg_type."""

    UNSPECIFIED = 0
    BOOL = 16
    BYTEA = 17
    INT8 = 20
    INT2 = 21
    INT4 = 23
    TEXT = 25
    OID = 26
    FLOAT4 = 700
    FLOAT8 = 701
    POINT = 600
    BOX = 603
    BOOL_ARRAY = 1000
    BYTEA_ARRAY = 1001
    INT2_ARRAY = 1005
    INT4_ARRAY = 1007
    TEXT_ARRAY = 1009
    VARCHAR_ARRAY = 1015
    INT8_ARRAY = 1016
    FLOAT4_ARRAY = 1021
    FLOAT8_ARRAY = 1022
    OID_ARRAY = 1028
    VARCHAR = 1043
    DATE = 1082
    TIME = 1083
    TIMESTAMP = 1114
    TIMESTAMPTZ = 1184
    TIMETZ = 1266
    NUMERIC = 1700
    UUID = 2950


DEFAULT_BINARY_RECEIVE_OIDS = frozenset({
    Oid.BYTEA, Oid.INT2, Oid.INT4, Oid.INT8, Oid.FLOAT4, Oid.FLOAT8, Oid.NUMERIC,
    Oid.TIME, Oid.DATE, Oid.TIMETZ, Oid.TIMESTAMP, Oid.TIMESTAMPTZ,
    Oid.BYTEA_ARRAY, Oid.INT2_ARRAY, Oid.INT4_ARRAY, Oid.INT8_ARRAY, Oid.OID_ARRAY,
    Oid.FLOAT4_ARRAY, Oid.FLOAT8_ARRAY, Oid.VARCHAR_ARRAY, Oid.TEXT_ARRAY,
    Oid.POINT, Oid.BOX, Oid.UUID,
})

# Date/time values depend on session settings when parsed from binary, so they
# are received in binary but sent as text.
DEFAULT_BINARY_SEND_OIDS = DEFAULT_BINARY_RECEIVE_OIDS - {
    Oid.DATE, Oid.TIME, Oid.TIMETZ, Oid.TIMESTAMP, Oid.TIMESTAMPTZ,
}


@dataclass(frozen=True)
class FormatSnapshot:
    """Immutable view of the registry used by one execution."""

    send_oids: FrozenSet[int]
    receive_oids: FrozenSet[int]
    force_text: bool = False

    def use_binary_send(self, oid: int) -> bool:
        return not self.force_text and oid in self.send_oids

    def use_binary_receive(self, oid: int) -> bool:
        return not self.force_text and oid in self.receive_oids

    def result_formats(self, fields: Optional[Sequence[Field]]) -> List[int]:
        """
        Result format codes for Bind.

        Unknown result shape or no binary columns yields an empty list, which
        the server reads as "all text".
        """
        if not fields or self.force_text:
            return []
        codes = [FORMAT_BINARY if self.use_binary_receive(f.type_oid) else FORMAT_TEXT
                 for f in fields]
        if FORMAT_BINARY not in codes:
            return []
        return codes

    def wants_binary_results(self) -> bool:
        return not self.force_text and bool(self.receive_oids)


class BinaryFormatRegistry:
    """
    Mutable per-connection registry of binary-capable type OIDs.

    Args:
        send_oids: initial send set
        receive_oids: initial receive set
    """

    def __init__(self, send_oids: Iterable[int] = (), receive_oids: Iterable[int] = ()):
        self._lock = threading.Lock()
        self._send = set(send_oids)
        self._receive = set(receive_oids)

    @classmethod
    def with_defaults(cls, enable: Iterable[int] = (), disable: Iterable[int] = ()) -> 'BinaryFormatRegistry':
        """Registry seeded with the default OIDs, adjusted by the enable/disable lists."""
        enable = set(enable)
        disable = set(disable)
        return cls((DEFAULT_BINARY_SEND_OIDS | enable) - disable,
                   (DEFAULT_BINARY_RECEIVE_OIDS | enable) - disable)

    def add_binary_receive_oid(self, oid: int):
        with self._lock:
            self._receive.add(oid)
        logger.debug("Binary receive enabled", oid=oid)

    def remove_binary_receive_oid(self, oid: int):
        with self._lock:
            self._receive.discard(oid)
        logger.debug("Binary receive disabled", oid=oid)

    def set_binary_receive_oids(self, oids: Iterable[int]):
        with self._lock:
            self._receive = set(oids)

    def get_binary_receive_oids(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._receive)

    def use_binary_for_receive(self, oid: int) -> bool:
        with self._lock:
            return oid in self._receive

    def add_binary_send_oid(self, oid: int):
        with self._lock:
            self._send.add(oid)
        logger.debug("Binary send enabled", oid=oid)

    def remove_binary_send_oid(self, oid: int):
        with self._lock:
            self._send.discard(oid)
        logger.debug("Binary send disabled", oid=oid)

    def set_binary_send_oids(self, oids: Iterable[int]):
        with self._lock:
            self._send = set(oids)

    def get_binary_send_oids(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._send)

    def use_binary_for_send(self, oid: int) -> bool:
        with self._lock:
            return oid in self._send

    def snapshot(self, force_text: bool = False) -> FormatSnapshot:
        with self._lock:
            return FormatSnapshot(frozenset(self._send), frozenset(self._receive), force_text)
