"""
Fastpath function calls.

The FunctionCall message ('F') invokes a server function by OID without going
through the parser. It is deprecated in PostgreSQL but still used for large
object access. This module exposes it as a narrow capability over an engine
rather than as part of the main execution API.
"""

import struct
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .engine import QueryExecutor, _Reply
from .exceptions import ForeignQueryError
from .formats import Oid
from .handlers import ResultHandlerBase
from .options import QueryOptions
from .protocol import FORMAT_BINARY, encode_function_call
from .query import ParameterList

logger = structlog.get_logger()


@dataclass(frozen=True)
class FastpathArg:
    """One fastpath argument in binary or text form."""

    value: Optional[bytes]
    oid: int = Oid.UNSPECIFIED
    is_text: bool = False

    @classmethod
    def of_int4(cls, value: int) -> 'FastpathArg':
        return cls(struct.pack('!i', value), Oid.INT4)

    @classmethod
    def of_int8(cls, value: int) -> 'FastpathArg':
        return cls(struct.pack('!q', value), Oid.INT8)

    @classmethod
    def of_bytes(cls, value: bytes) -> 'FastpathArg':
        return cls(bytes(value), Oid.BYTEA)

    @classmethod
    def of_text(cls, value: str) -> 'FastpathArg':
        return cls(value.encode('utf-8'), Oid.TEXT, is_text=True)

    @classmethod
    def null(cls) -> 'FastpathArg':
        return cls(None)

    def bind(self, parameters: ParameterList, index: int):
        if self.value is None:
            parameters.set_null(index, self.oid)
        elif self.is_text:
            parameters.set_text(index, self.value.decode('utf-8'), self.oid)
        else:
            parameters.set_binary(index, self.value, self.oid)


def create_fastpath_parameters(engine: QueryExecutor, args: Sequence[FastpathArg]) -> ParameterList:
    """Parameter list for ``FastpathCall.call`` bound from ``args``."""
    parameters = engine.create_fastpath_parameters(len(args))
    for index, arg in enumerate(args, start=1):
        arg.bind(parameters, index)
    return parameters


class FastpathCall:
    """
    Fastpath capability of one engine.

    Args:
        engine: the engine whose connection carries the calls
    """

    def __init__(self, engine: QueryExecutor):
        self._engine = engine

    def call(self, function_oid: int, parameters: ParameterList,
             suppress_begin: bool = False) -> Optional[bytes]:
        """
        Invoke a server function.

        Args:
            function_oid: pg_proc OID of the function
            parameters: list from ``create_fastpath_parameters``
            suppress_begin: do not start a transaction first

        Returns:
            The binary result, or None for a NULL / void result

        Raises:
            StatementError: the server reported an error
        """
        engine = self._engine
        if parameters.engine_token is not engine.engine_token or parameters.query_id is not None:
            raise ForeignQueryError("Fastpath parameters must come from create_fastpath_parameters.")
        formats, values = parameters.raw_values()
        handler = ResultHandlerBase()
        with engine._exclusive('fastpath'):
            engine._start_unit()
            engine._send_preamble(handler, QueryOptions(suppress_begin=suppress_begin), [],
                                  simple=True, allow_savepoint=False)
            engine._stream.send(encode_function_call(function_oid, formats, values, FORMAT_BINARY))
            reply = engine._expect(_Reply.FUNCTION_CALL, handler)
            engine._flush()
            engine._process_results()
            engine._finish_unit()
            logger.debug("Fastpath call", connection_id=engine.connection_id,
                         function_oid=function_oid, args=len(values),
                         result_bytes=None if reply.value is None else len(reply.value))
            handler.handle_completion()
            return reply.value

    def get_integer(self, function_oid: int, parameters: ParameterList) -> int:
        """Call a function returning int4 or int8."""
        value = self.call(function_oid, parameters)
        if value is None or len(value) not in (4, 8):
            raise ValueError(f"Fastpath call returned {value!r}, expected an integer")
        return struct.unpack('!i' if len(value) == 4 else '!q', value)[0]
