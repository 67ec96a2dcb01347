"""
Engine configuration model.

Validated with pydantic. Field names are snake_case; the connection-property
spellings used by other PostgreSQL drivers (``prepareThreshold``,
``preferQueryMode`` ...) are accepted as aliases so a property map can be fed in
directly.
"""

import enum
from typing import FrozenSet, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .formats import Oid
from .transaction import AutoSave


class PreferQueryMode(str, enum.Enum):
    """Which protocol dialect the engine uses by default."""

    EXTENDED = 'extended'
    EXTENDED_FOR_PREPARED = 'extendedForPrepared'
    EXTENDED_CACHE_EVERYTHING = 'extendedCacheEverything'
    SIMPLE = 'simple'

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.replace('_', '').replace('-', '').lower()
            for member in cls:
                if member.value.lower() == normalized:
                    return member
        return None


def parse_oid_list(value: Union[str, int, None, FrozenSet[int], list, tuple, set]) -> FrozenSet[int]:
    """
    Parse a list of type OIDs.

    Accepts an iterable of ints or a comma separated string of numeric OIDs and
    type names known to ``Oid`` (``"int4,17,uuid"``).
    """
    if value is None or value == '':
        return frozenset()
    if isinstance(value, int):
        return frozenset({value})
    if isinstance(value, str):
        items = [item.strip() for item in value.split(',') if item.strip()]
    else:
        items = list(value)
    oids = set()
    for item in items:
        if isinstance(item, int):
            oids.add(item)
        elif item.isdigit():
            oids.add(int(item))
        else:
            oid = getattr(Oid, item.upper(), None)
            if not isinstance(oid, int):
                raise ValueError(f"Unknown type name in OID list: {item!r}")
            oids.add(oid)
    return frozenset(oids)


class EngineConfig(BaseModel):
    """
    Connection-level settings consumed by ``QueryExecutor``.

    Example:
        >>> EngineConfig(prepareThreshold=3, preferQueryMode='simple').prefer_query_mode
        <PreferQueryMode.SIMPLE: 'simple'>
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra='ignore')

    # Protocol
    prefer_query_mode: PreferQueryMode = Field(default=PreferQueryMode.EXTENDED, alias='preferQueryMode')
    prepare_threshold: int = Field(default=5, ge=0, alias='prepareThreshold')
    network_timeout: Optional[float] = Field(default=None, ge=0, alias='socketTimeout',
                                             description="Seconds per blocking read; 0 or None waits forever")

    # Transactions
    autosave: AutoSave = Field(default=AutoSave.NEVER, alias='autosave')
    cleanup_savepoints: bool = Field(default=False, alias='cleanupSavepoints')
    max_savepoints: int = Field(default=1000, ge=1)

    # Fetching
    default_fetch_size: int = Field(default=0, ge=0, alias='defaultRowFetchSize')
    adaptive_fetch: bool = Field(default=False, alias='adaptiveFetch')
    adaptive_fetch_minimum: int = Field(default=0, ge=0, alias='adaptiveFetchMinimum')
    adaptive_fetch_maximum: int = Field(default=100_000, ge=1, alias='adaptiveFetchMaximum')
    max_result_buffer_bytes: int = Field(default=1024 * 1024, ge=1, alias='maxResultBuffer')

    # Statement cache
    prepared_statement_cache_queries: int = Field(default=256, ge=0, alias='preparedStatementCacheQueries')
    prepared_statement_cache_size_mib: int = Field(default=5, ge=0, alias='preparedStatementCacheSizeMiB')
    flush_cache_on_deallocate: bool = True

    # Binary transfer
    binary_transfer: bool = Field(default=True, alias='binaryTransfer')
    binary_transfer_enable: FrozenSet[int] = Field(default=frozenset(), alias='binaryTransferEnable')
    binary_transfer_disable: FrozenSet[int] = Field(default=frozenset(), alias='binaryTransferDisable')

    # Batching
    max_buffered_recv_bytes: int = Field(default=64000, ge=1)
    nodata_query_response_size_bytes: int = Field(default=250, ge=1)

    @field_validator('binary_transfer_enable', 'binary_transfer_disable', mode='before')
    @classmethod
    def _parse_oids(cls, value):
        return parse_oid_list(value)

    @field_validator('autosave', mode='before')
    @classmethod
    def _normalize_autosave(cls, value):
        if isinstance(value, str):
            return value.lower()
        return value

    @field_validator('network_timeout')
    @classmethod
    def _zero_means_forever(cls, value):
        return value or None

    @model_validator(mode='after')
    def _check_fetch_bounds(self) -> 'EngineConfig':
        if self.adaptive_fetch_minimum > self.adaptive_fetch_maximum:
            raise ValueError(
                f"adaptive_fetch_minimum ({self.adaptive_fetch_minimum}) exceeds maximum "
                f"adaptive_fetch_maximum ({self.adaptive_fetch_maximum})")
        return self

    @classmethod
    def from_properties(cls, properties: Mapping[str, object]) -> 'EngineConfig':
        """Build from a driver property map; unknown properties are ignored."""
        return cls.model_validate(dict(properties))

    @property
    def prepared_statement_cache_size_bytes(self) -> int:
        return self.prepared_statement_cache_size_mib * 1024 * 1024
