import json

import pytest

from lfsxfer.transfer import (
    Action, InitRequest, InitResponse, ProgressResponse, ProtocolError,
    TerminateRequest, TransferResponse, UploadRequest, decode_one_of, encode_message,
)
from lfsxfer.transfer.protocol import TRANSFER_RESPONSES, ObjectError, decode_message


def test_encode_init_uses_wire_names():
    line = encode_message(InitRequest(operation='upload', concurrent=True, concurrent_transfers=3))

    assert line.endswith(b'\n')
    assert line.count(b'\n') == 1
    assert json.loads(line) == {'operation': 'upload', 'concurrent': True, 'concurrenttransfers': 3}


def test_encode_upload_request():
    request = UploadRequest(
        oid='abc', size=10, local_path='/tmp/abc',
        action=Action(href='https://example.com/abc', header={'Authorization': 'Basic x'}),
    )

    data = json.loads(request.to_line())

    assert data == {
        'oid': 'abc',
        'size': 10,
        'path': '/tmp/abc',
        'action': {'href': 'https://example.com/abc', 'header': {'Authorization': 'Basic x'}},
    }


def test_encode_terminate():
    assert encode_message(TerminateRequest()) == b'{"complete":true}\n'


def test_embedded_newlines_are_escaped():
    request = UploadRequest(oid='a', size=1, local_path='/tmp/two\nlines',
                            action=Action(href='https://example.com'))
    line = encode_message(request)

    assert line.count(b'\n') == 1
    assert json.loads(line)['path'] == '/tmp/two\nlines'


def test_progress_line_decodes_as_progress():
    line = b'{"oid": "abc", "bytesSoFar": 3, "bytesSinceLast": 3}\n'

    index, response = decode_one_of(line, TRANSFER_RESPONSES)

    assert index == 0
    assert isinstance(response, ProgressResponse)
    assert response.bytes_so_far == 3
    assert response.bytes_since_last == 3


def test_terminal_line_decodes_as_transfer_response():
    index, response = decode_one_of('{"oid": "abc", "path": "/tmp/x"}', TRANSFER_RESPONSES)

    assert index == 1
    assert isinstance(response, TransferResponse)
    assert response.path == '/tmp/x'
    assert response.error is None


def test_partial_progress_is_not_progress():
    index, response = decode_one_of('{"oid": "abc", "bytesSoFar": 3}', TRANSFER_RESPONSES)

    assert index == 1
    assert isinstance(response, TransferResponse)


def test_embedded_error():
    _, response = decode_one_of('{"oid": "abc", "error": {"code": 2, "message": "nope"}}',
                                TRANSFER_RESPONSES)

    assert response.error.code == 2
    assert response.error.message == 'nope'
    assert str(response.error) == 'nope (code 2)'


def test_error_as_plain_string():
    response = decode_message('{"error": "unsupported operation"}', InitResponse)

    assert response.error.message == 'unsupported operation'
    assert response.error.code == 0
    assert str(response.error) == 'unsupported operation'


def test_empty_init_response_is_success():
    assert decode_message(b'{}\n', InitResponse).error is None


def test_unknown_fields_are_ignored():
    _, response = decode_one_of('{"oid": "abc", "agentVersion": "1.2"}', TRANSFER_RESPONSES)
    assert response.oid == 'abc'


@pytest.mark.parametrize('line', [
    b'hello\n',
    b'{"path": "/tmp/x"}\n',
    b'[1, 2, 3]\n',
    b'\xff\xfe\n',
])
def test_unmatched_lines_are_protocol_errors(line):
    with pytest.raises(ProtocolError):
        decode_one_of(line, TRANSFER_RESPONSES)


def test_protocol_error_names_candidates():
    with pytest.raises(ProtocolError, match=r'ProgressResponse, TransferResponse'):
        decode_one_of('{"nothing": 1}', TRANSFER_RESPONSES)


def test_object_error_defaults():
    error = ObjectError()
    assert error.code == 0
    assert str(error) == ''
