"""
Unit Tests: Wire Protocol Codec

Coverage:
- Frontend encoders (framing, field layout)
- Incremental backend decoding with partial frames
- Malformed frames raise ProtocolViolation
- Command tag parsing
"""

import struct

import pytest

import pg_server
from pgwire_client.exceptions import ConnectionFatalError, ProtocolViolation
from pgwire_client.protocol import (
    CANCEL_REQUEST_CODE,
    SYNC_MESSAGE,
    TARGET_PORTAL,
    CommandComplete,
    CopyInResponse,
    DataRow,
    ErrorResponse,
    FunctionCallResponse,
    MessageReader,
    NotificationResponse,
    ParameterDescription,
    ReadyForQuery,
    RowDescription,
    decode_message,
    encode_bind,
    encode_cancel_request,
    encode_close,
    encode_execute,
    encode_parse,
    encode_query,
    parse_command_tag,
)


def _decode_one(data: bytes):
    reader = MessageReader()
    reader.feed(data)
    message = reader.next_message()
    assert reader.buffered == 0
    return message


@pytest.mark.unit
class TestFrontendEncoders:
    """Messages the engine writes"""

    def test_query_framing(self):
        """Query is tag, Int32 length including itself, NUL-terminated text"""
        message = encode_query("SELECT 1")
        assert message[:1] == b'Q'
        assert struct.unpack('!I', message[1:5])[0] == 4 + len("SELECT 1") + 1
        assert message[5:] == b'SELECT 1\x00'

    def test_sync_constant(self):
        assert SYNC_MESSAGE == b'S\x00\x00\x00\x04'

    def test_parse_carries_name_text_and_types(self):
        message = encode_parse('S_1', 'SELECT $1', [23])
        decoded = pg_server.decode_frontend(message[:1], message[5:])
        assert decoded.kind == 'Parse'
        assert decoded.name == 'S_1'
        assert decoded.sql == 'SELECT $1'
        assert decoded.param_oids == (23,)

    def test_bind_with_null_and_result_formats(self):
        message = encode_bind('C_1', 'S_2', [0, 1], [b'abc', None], [1])
        decoded = pg_server.decode_frontend(message[:1], message[5:])
        assert decoded.portal == 'C_1'
        assert decoded.statement == 'S_2'
        assert decoded.param_formats == (0, 1)
        assert decoded.values == (b'abc', None)
        assert decoded.result_formats == (1,)

    def test_execute_row_limit(self):
        message = encode_execute('C_7', 50)
        decoded = pg_server.decode_frontend(message[:1], message[5:])
        assert decoded.portal == 'C_7'
        assert decoded.max_rows == 50

    def test_close_portal(self):
        message = encode_close(TARGET_PORTAL, 'C_3')
        decoded = pg_server.decode_frontend(message[:1], message[5:])
        assert decoded.kind == 'Close'
        assert decoded.target == 'P'
        assert decoded.name == 'C_3'

    def test_cancel_request_has_no_type_byte(self):
        message = encode_cancel_request(1234, 5678)
        assert message == struct.pack('!IIII', 16, CANCEL_REQUEST_CODE, 1234, 5678)


@pytest.mark.unit
class TestMessageReader:
    """Incremental decoding of backend messages"""

    def test_partial_frame_is_buffered(self):
        """GIVEN a DataRow split in two chunks WHEN fed THEN it decodes only once complete"""
        data = pg_server.data_row('abc', None)
        reader = MessageReader()
        reader.feed(data[:7])
        assert reader.next_message() is None
        assert not reader.has_complete_message()
        reader.feed(data[7:])
        message = reader.next_message()
        assert isinstance(message, DataRow)
        assert message.values == (b'abc', None)
        assert message.size == len(data) - 5

    def test_several_messages_in_one_chunk(self):
        reader = MessageReader()
        reader.feed(pg_server.command_complete('UPDATE 3') + pg_server.ready_for_query(b'T'))
        first = reader.next_message()
        second = reader.next_message()
        assert first == CommandComplete('UPDATE 3')
        assert second == ReadyForQuery(b'T')
        assert reader.next_message() is None

    def test_row_description_fields(self):
        message = _decode_one(pg_server.row_description(('id', 23), ('name', 25, 1)))
        assert isinstance(message, RowDescription)
        assert [f.name for f in message.fields] == ['id', 'name']
        assert message.fields[0].type_oid == 23
        assert message.fields[1].format == 1

    def test_parameter_description(self):
        message = _decode_one(pg_server.parameter_description(23, 25))
        assert message == ParameterDescription((23, 25))

    def test_error_response_fields(self):
        message = _decode_one(pg_server.error_response('0A000', 'cached plan must not change result type',
                                                       routine='RevalidateCachedQuery'))
        assert isinstance(message, ErrorResponse)
        assert message.error.sqlstate == '0A000'
        assert message.error.severity == 'ERROR'
        assert message.error.routine == 'RevalidateCachedQuery'
        assert 'cached plan' in str(message.error)

    def test_notification_response(self):
        message = _decode_one(pg_server.notification(99, 'jobs', 'ready'))
        assert message == NotificationResponse(99, 'jobs', 'ready')

    def test_copy_in_response(self):
        message = _decode_one(pg_server.copy_in_response(0, (0, 0, 0)))
        assert message == CopyInResponse(0, (0, 0, 0))

    def test_null_function_result(self):
        assert _decode_one(pg_server.function_call_response(None)) == FunctionCallResponse(None)

    def test_protocol_violation_is_connection_fatal(self):
        assert issubclass(ProtocolViolation, ConnectionFatalError)


@pytest.mark.unit
class TestMalformedFrames:
    """Every malformed frame is a ProtocolViolation"""

    def test_unknown_message_type(self):
        with pytest.raises(ProtocolViolation, match="Unknown backend message type"):
            _decode_one(b'?' + struct.pack('!I', 4))

    def test_length_below_minimum(self):
        reader = MessageReader()
        reader.feed(b'Z' + struct.pack('!I', 2))
        with pytest.raises(ProtocolViolation, match="Invalid message length"):
            reader.next_message()

    def test_trailing_bytes(self):
        with pytest.raises(ProtocolViolation, match="trailing bytes"):
            decode_message(b'1', b'x')

    def test_truncated_body(self):
        with pytest.raises(ProtocolViolation, match="Truncated"):
            decode_message(b'D', struct.pack('!H', 1))

    def test_invalid_transaction_status(self):
        with pytest.raises(ProtocolViolation, match="transaction status"):
            decode_message(b'Z', b'X')

    def test_missing_string_terminator(self):
        with pytest.raises(ProtocolViolation, match="terminator"):
            decode_message(b'C', b'SELECT 1')


@pytest.mark.unit
@pytest.mark.parametrize("tag,expected", [
    ("INSERT 0 5", ("INSERT", 5, 0)),
    ("UPDATE 3", ("UPDATE", 3, None)),
    ("SELECT 0", ("SELECT", 0, None)),
    ("COPY 12", ("COPY", 12, None)),
    ("CREATE TABLE", ("CREATE TABLE", None, None)),
    ("BEGIN", ("BEGIN", None, None)),
    ("", ("", None, None)),
])
def test_parse_command_tag(tag, expected):
    assert parse_command_tag(tag) == expected
