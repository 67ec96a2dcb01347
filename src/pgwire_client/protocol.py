"""
PostgreSQL Wire Protocol Message Codec

Encodes the frontend (client -> server) messages the execution engine sends and
decodes the backend (server -> client) messages it consumes.
Message formats: https://www.postgresql.org/docs/current/protocol-message-formats.html

Every message except CancelRequest is framed as:
- Byte1: message type
- Int32: length of the message contents in bytes, including self
- Byte[]: body

Decoding is incremental: ``MessageReader`` accepts arbitrary chunks from the
socket and only yields a message once the full frame is buffered. Any malformed
frame raises ``ProtocolViolation``, which is connection-fatal.
"""

import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .exceptions import ProtocolViolation, ServerErrorMessage

# PostgreSQL protocol constants
CANCEL_REQUEST_CODE = 80877102
PROTOCOL_VERSION = 0x00030000  # PostgreSQL protocol version 3.0
CLIENT_ENCODING = 'utf-8'

# Frontend message types
MSG_QUERY = b'Q'
MSG_PARSE = b'P'
MSG_BIND = b'B'
MSG_DESCRIBE = b'D'
MSG_EXECUTE = b'E'
MSG_SYNC = b'S'
MSG_CLOSE = b'C'
MSG_FLUSH = b'H'
MSG_TERMINATE = b'X'
MSG_COPY_DATA = b'd'
MSG_COPY_DONE = b'c'
MSG_COPY_FAIL = b'f'
MSG_FUNCTION_CALL = b'F'

# Backend message types
MSG_AUTHENTICATION = b'R'
MSG_PARAMETER_STATUS = b'S'
MSG_BACKEND_KEY_DATA = b'K'
MSG_READY_FOR_QUERY = b'Z'
MSG_ERROR_RESPONSE = b'E'
MSG_NOTICE_RESPONSE = b'N'
MSG_NOTIFICATION_RESPONSE = b'A'
MSG_ROW_DESCRIPTION = b'T'
MSG_DATA_ROW = b'D'
MSG_COMMAND_COMPLETE = b'C'
MSG_EMPTY_QUERY_RESPONSE = b'I'
MSG_PARSE_COMPLETE = b'1'
MSG_BIND_COMPLETE = b'2'
MSG_CLOSE_COMPLETE = b'3'
MSG_PORTAL_SUSPENDED = b's'
MSG_PARAMETER_DESCRIPTION = b't'
MSG_NO_DATA = b'n'
MSG_COPY_IN_RESPONSE = b'G'
MSG_COPY_OUT_RESPONSE = b'H'
MSG_COPY_BOTH_RESPONSE = b'W'
MSG_FUNCTION_CALL_RESPONSE = b'V'
MSG_NEGOTIATE_PROTOCOL_VERSION = b'v'

# Describe / Close targets
TARGET_STATEMENT = b'S'
TARGET_PORTAL = b'P'

# Format codes
FORMAT_TEXT = 0
FORMAT_BINARY = 1

# Frames larger than this are treated as stream corruption
MAX_MESSAGE_LENGTH = 0x3FFFFFFF

SYNC_MESSAGE = MSG_SYNC + struct.pack('!I', 4)
FLUSH_MESSAGE = MSG_FLUSH + struct.pack('!I', 4)
TERMINATE_MESSAGE = MSG_TERMINATE + struct.pack('!I', 4)
COPY_DONE_MESSAGE = MSG_COPY_DONE + struct.pack('!I', 4)


# ---------------------------------------------------------------------------
# Backend messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Field:
    """One column of a RowDescription."""

    name: str
    table_oid: int
    column_index: int
    type_oid: int
    type_size: int
    type_modifier: int
    format: int = FORMAT_TEXT

    def with_format(self, format_code: int) -> 'Field':
        return Field(self.name, self.table_oid, self.column_index, self.type_oid,
                     self.type_size, self.type_modifier, format_code)


@dataclass(frozen=True)
class ParseComplete:
    pass


@dataclass(frozen=True)
class BindComplete:
    pass


@dataclass(frozen=True)
class CloseComplete:
    pass


@dataclass(frozen=True)
class NoData:
    pass


@dataclass(frozen=True)
class PortalSuspended:
    pass


@dataclass(frozen=True)
class EmptyQueryResponse:
    pass


@dataclass(frozen=True)
class CopyDone:
    pass


@dataclass(frozen=True)
class ParameterDescription:
    oids: Tuple[int, ...]


@dataclass(frozen=True)
class RowDescription:
    fields: Tuple[Field, ...]


@dataclass(frozen=True)
class DataRow:
    """A data row; ``None`` marks SQL NULL. ``size`` is the wire body length."""

    values: Tuple[Optional[bytes], ...]
    size: int


@dataclass(frozen=True)
class CommandComplete:
    tag: str

    @property
    def command(self) -> str:
        return parse_command_tag(self.tag)[0]

    @property
    def update_count(self) -> Optional[int]:
        return parse_command_tag(self.tag)[1]

    @property
    def insert_oid(self) -> Optional[int]:
        return parse_command_tag(self.tag)[2]


@dataclass(frozen=True)
class ReadyForQuery:
    status: bytes


@dataclass(frozen=True)
class ErrorResponse:
    error: ServerErrorMessage


@dataclass(frozen=True)
class NoticeResponse:
    notice: ServerErrorMessage


@dataclass(frozen=True)
class ParameterStatus:
    name: str
    value: str


@dataclass(frozen=True)
class BackendKeyData:
    pid: int
    secret: int


@dataclass(frozen=True)
class NotificationResponse:
    pid: int
    channel: str
    payload: str


@dataclass(frozen=True)
class CopyInResponse:
    overall_format: int
    column_formats: Tuple[int, ...]


@dataclass(frozen=True)
class CopyOutResponse:
    overall_format: int
    column_formats: Tuple[int, ...]


@dataclass(frozen=True)
class CopyBothResponse:
    overall_format: int
    column_formats: Tuple[int, ...]


@dataclass(frozen=True)
class CopyData:
    data: bytes


@dataclass(frozen=True)
class FunctionCallResponse:
    value: Optional[bytes]


@dataclass(frozen=True)
class NegotiateProtocolVersion:
    newest_minor: int
    unrecognized_options: Tuple[str, ...] = field(default_factory=tuple)


def parse_command_tag(tag: str) -> Tuple[str, Optional[int], Optional[int]]:
    """
    Split a CommandComplete tag into its parts.

    Examples:
        "INSERT 0 5" -> ("INSERT", 5, 0)
        "UPDATE 3"   -> ("UPDATE", 3, None)
        "CREATE TABLE" -> ("CREATE TABLE", None, None)

    Args:
        tag: command tag as sent by the server

    Returns:
        Tuple of (command, update_count, insert_oid)
    """
    parts = tag.split()
    if not parts:
        return '', None, None

    if parts[0] == 'INSERT' and len(parts) == 3 and parts[1].isdigit() and parts[2].isdigit():
        return 'INSERT', int(parts[2]), int(parts[1])

    if len(parts) >= 2 and parts[-1].isdigit():
        return ' '.join(parts[:-1]), int(parts[-1]), None

    return tag, None, None


# ---------------------------------------------------------------------------
# Frontend encoders
# ---------------------------------------------------------------------------

def _cstring(value: str) -> bytes:
    return value.encode(CLIENT_ENCODING) + b'\x00'


def _frame(msg_type: bytes, payload: bytes) -> bytes:
    return struct.pack('!cI', msg_type, len(payload) + 4) + payload


def encode_query(sql: str) -> bytes:
    """Query: Q + length + query string"""
    return _frame(MSG_QUERY, _cstring(sql))


def encode_parse(statement_name: str, sql: str, param_oids: Sequence[int]) -> bytes:
    """
    Parse: P + length + statement name + query + Int16 count + Int32[] type OIDs

    An OID of 0 leaves the type for the server to infer.
    """
    payload = _cstring(statement_name) + _cstring(sql)
    payload += struct.pack(f'!H{len(param_oids)}I', len(param_oids), *param_oids)
    return _frame(MSG_PARSE, payload)


def encode_bind(portal_name: str, statement_name: str,
                param_formats: Sequence[int],
                param_values: Sequence[Optional[bytes]],
                result_formats: Sequence[int]) -> bytes:
    """
    Bind message format:
    - portal_name (null-terminated string)
    - statement_name (null-terminated string)
    - num_param_format_codes (Int16) + param_format_codes (Int16 array)
    - num_param_values (Int16) + param_values (Int32 length or -1 for NULL, then data)
    - num_result_format_codes (Int16) + result_format_codes (Int16 array)
    """
    payload = _cstring(portal_name) + _cstring(statement_name)
    payload += struct.pack(f'!H{len(param_formats)}H', len(param_formats), *param_formats)
    payload += struct.pack('!H', len(param_values))
    for value in param_values:
        if value is None:
            payload += struct.pack('!i', -1)
        else:
            payload += struct.pack('!i', len(value)) + value
    payload += struct.pack(f'!H{len(result_formats)}H', len(result_formats), *result_formats)
    return _frame(MSG_BIND, payload)


def encode_describe(target: bytes, name: str) -> bytes:
    """Describe: D + length + 'S'|'P' + name"""
    return _frame(MSG_DESCRIBE, target + _cstring(name))


def encode_execute(portal_name: str, max_rows: int) -> bytes:
    """Execute: E + length + portal name + Int32 row limit (0 = no limit)"""
    return _frame(MSG_EXECUTE, _cstring(portal_name) + struct.pack('!I', max_rows))


def encode_close(target: bytes, name: str) -> bytes:
    """Close: C + length + 'S'|'P' + name"""
    return _frame(MSG_CLOSE, target + _cstring(name))


def encode_copy_data(data: bytes) -> bytes:
    """CopyData: d + length + data"""
    return _frame(MSG_COPY_DATA, bytes(data))


def encode_copy_fail(reason: str) -> bytes:
    """CopyFail: f + length + error message"""
    return _frame(MSG_COPY_FAIL, _cstring(reason))


def encode_function_call(function_oid: int, param_formats: Sequence[int],
                         param_values: Sequence[Optional[bytes]],
                         result_format: int = FORMAT_BINARY) -> bytes:
    """
    FunctionCall message format:
    - Int32 function OID
    - Int16 format code count + Int16[] format codes
    - Int16 argument count + (Int32 length or -1, Byte[] value) per argument
    - Int16 result format code
    """
    payload = struct.pack('!I', function_oid)
    payload += struct.pack(f'!H{len(param_formats)}H', len(param_formats), *param_formats)
    payload += struct.pack('!H', len(param_values))
    for value in param_values:
        if value is None:
            payload += struct.pack('!i', -1)
        else:
            payload += struct.pack('!i', len(value)) + value
    payload += struct.pack('!H', result_format)
    return _frame(MSG_FUNCTION_CALL, payload)


def encode_cancel_request(pid: int, secret: int) -> bytes:
    """CancelRequest: Int32 16 + Int32 80877102 + Int32 pid + Int32 secret key (no type byte)"""
    return struct.pack('!IIII', 16, CANCEL_REQUEST_CODE, pid, secret)


# ---------------------------------------------------------------------------
# Backend decoder
# ---------------------------------------------------------------------------

class _Body:
    """Cursor over one message body. Any overrun is a protocol violation."""

    __slots__ = ('data', 'pos', 'msg_type')

    def __init__(self, msg_type: bytes, data: bytes):
        self.msg_type = msg_type
        self.data = data
        self.pos = 0

    def _take(self, count: int) -> bytes:
        if count < 0 or self.pos + count > len(self.data):
            raise ProtocolViolation(
                f"Truncated {self.msg_type!r} message: needed {count} bytes at offset {self.pos}, "
                f"body has {len(self.data)}")
        chunk = self.data[self.pos:self.pos + count]
        self.pos += count
        return chunk

    def byte(self) -> int:
        return self._take(1)[0]

    def int16(self) -> int:
        return struct.unpack('!h', self._take(2))[0]

    def uint16(self) -> int:
        return struct.unpack('!H', self._take(2))[0]

    def int32(self) -> int:
        return struct.unpack('!i', self._take(4))[0]

    def uint32(self) -> int:
        return struct.unpack('!I', self._take(4))[0]

    def cstring(self) -> str:
        end = self.data.find(b'\x00', self.pos)
        if end == -1:
            raise ProtocolViolation(f"Invalid {self.msg_type!r} message: missing string terminator")
        value = self.data[self.pos:end]
        self.pos = end + 1
        try:
            return value.decode(CLIENT_ENCODING)
        except UnicodeDecodeError as e:
            raise ProtocolViolation(f"Invalid {self.msg_type!r} message: {e}") from e

    def rest(self) -> bytes:
        return self._take(len(self.data) - self.pos)

    def finish(self):
        if self.pos != len(self.data):
            raise ProtocolViolation(
                f"Invalid {self.msg_type!r} message: {len(self.data) - self.pos} trailing bytes")


def _decode_notice_fields(body: _Body) -> ServerErrorMessage:
    fields = {}
    while True:
        code = body.byte()
        if code == 0:
            break
        fields[chr(code)] = body.cstring()
    return ServerErrorMessage(fields)


def _decode_copy_response(body: _Body) -> Tuple[int, Tuple[int, ...]]:
    overall = body.byte()
    count = body.uint16()
    return overall, tuple(body.int16() for _ in range(count))


def _decode_row_description(body: _Body) -> RowDescription:
    count = body.uint16()
    fields = []
    for _ in range(count):
        name = body.cstring()
        table_oid = body.uint32()
        column_index = body.int16()
        type_oid = body.uint32()
        type_size = body.int16()
        type_modifier = body.int32()
        format_code = body.int16()
        fields.append(Field(name, table_oid, column_index, type_oid,
                            type_size, type_modifier, format_code))
    return RowDescription(tuple(fields))


def _decode_data_row(body: _Body) -> DataRow:
    count = body.uint16()
    values: List[Optional[bytes]] = []
    for _ in range(count):
        size = body.int32()
        if size == -1:
            values.append(None)
        elif size < 0:
            raise ProtocolViolation(f"Invalid DataRow column length {size}")
        else:
            values.append(body._take(size))
    return DataRow(tuple(values), len(body.data))


def _decode_function_call_response(body: _Body) -> FunctionCallResponse:
    size = body.int32()
    if size == -1:
        return FunctionCallResponse(None)
    if size < 0:
        raise ProtocolViolation(f"Invalid FunctionCallResponse length {size}")
    return FunctionCallResponse(body._take(size))


def decode_message(msg_type: bytes, payload: bytes):
    """
    Decode one backend message body.

    Args:
        msg_type: single type byte
        payload: message body (without type byte and length)

    Returns:
        The decoded message object

    Raises:
        ProtocolViolation: unknown type or malformed body
    """
    body = _Body(msg_type, payload)

    if msg_type == MSG_PARSE_COMPLETE:
        message = ParseComplete()
    elif msg_type == MSG_BIND_COMPLETE:
        message = BindComplete()
    elif msg_type == MSG_CLOSE_COMPLETE:
        message = CloseComplete()
    elif msg_type == MSG_NO_DATA:
        message = NoData()
    elif msg_type == MSG_PORTAL_SUSPENDED:
        message = PortalSuspended()
    elif msg_type == MSG_EMPTY_QUERY_RESPONSE:
        message = EmptyQueryResponse()
    elif msg_type == MSG_COPY_DONE:
        message = CopyDone()
    elif msg_type == MSG_PARAMETER_DESCRIPTION:
        count = body.uint16()
        message = ParameterDescription(tuple(body.uint32() for _ in range(count)))
    elif msg_type == MSG_ROW_DESCRIPTION:
        message = _decode_row_description(body)
    elif msg_type == MSG_DATA_ROW:
        message = _decode_data_row(body)
    elif msg_type == MSG_COMMAND_COMPLETE:
        message = CommandComplete(body.cstring())
    elif msg_type == MSG_READY_FOR_QUERY:
        status = bytes([body.byte()])
        if status not in (b'I', b'T', b'E'):
            raise ProtocolViolation(f"Invalid transaction status {status!r} in ReadyForQuery")
        message = ReadyForQuery(status)
    elif msg_type == MSG_ERROR_RESPONSE:
        message = ErrorResponse(_decode_notice_fields(body))
    elif msg_type == MSG_NOTICE_RESPONSE:
        message = NoticeResponse(_decode_notice_fields(body))
    elif msg_type == MSG_PARAMETER_STATUS:
        message = ParameterStatus(body.cstring(), body.cstring())
    elif msg_type == MSG_BACKEND_KEY_DATA:
        message = BackendKeyData(body.int32(), body.uint32())
    elif msg_type == MSG_NOTIFICATION_RESPONSE:
        message = NotificationResponse(body.int32(), body.cstring(), body.cstring())
    elif msg_type == MSG_COPY_IN_RESPONSE:
        message = CopyInResponse(*_decode_copy_response(body))
    elif msg_type == MSG_COPY_OUT_RESPONSE:
        message = CopyOutResponse(*_decode_copy_response(body))
    elif msg_type == MSG_COPY_BOTH_RESPONSE:
        message = CopyBothResponse(*_decode_copy_response(body))
    elif msg_type == MSG_COPY_DATA:
        message = CopyData(body.rest())
    elif msg_type == MSG_FUNCTION_CALL_RESPONSE:
        message = _decode_function_call_response(body)
    elif msg_type == MSG_NEGOTIATE_PROTOCOL_VERSION:
        minor = body.int32()
        count = body.int32()
        message = NegotiateProtocolVersion(minor, tuple(body.cstring() for _ in range(count)))
    else:
        raise ProtocolViolation(f"Unknown backend message type {msg_type!r}")

    body.finish()
    return message


class MessageReader:
    """
    Incremental frame decoder.

    Bytes from the socket are appended with ``feed``; ``next_message`` returns
    the next complete message or ``None`` when more bytes are needed. Partial
    frames stay buffered across calls.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes):
        self._buffer += data

    @property
    def buffered(self) -> int:
        """Number of bytes received but not yet decoded."""
        return len(self._buffer)

    def has_complete_message(self) -> bool:
        if len(self._buffer) < 5:
            return False
        length = struct.unpack_from('!I', self._buffer, 1)[0]
        return len(self._buffer) >= length + 1

    def next_message(self):
        if len(self._buffer) < 5:
            return None

        msg_type = bytes(self._buffer[0:1])
        length = struct.unpack_from('!I', self._buffer, 1)[0]
        if length < 4 or length > MAX_MESSAGE_LENGTH:
            raise ProtocolViolation(f"Invalid message length {length} for type {msg_type!r}")

        if len(self._buffer) < length + 1:
            return None

        payload = bytes(self._buffer[5:length + 1])
        del self._buffer[:length + 1]
        return decode_message(msg_type, payload)
