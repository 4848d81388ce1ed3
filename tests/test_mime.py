import base64
import email
import os

import pytest

from mailaio import MimePart


def split(raw):
    headers, body = raw.split(b'\r\n\r\n', 1)
    return headers, body


def test_text_leaf():
    part = MimePart('Hello', {'Content-Type': 'text/plain; charset=UTF-8'})

    assert bytes(part) == b'Content-Type: text/plain; charset=UTF-8\r\n\r\nHello'
    assert part.encoding == '7bit'


def test_default_content_type():
    assert bytes(MimePart(b'x')).startswith(b'Content-Type: application/octet-stream\r\n')


def test_newlines_are_normalized():
    part = MimePart('a\nb\rc\r\nd')

    assert split(bytes(part))[1] == b'a\r\nb\r\nc\r\nd'


def test_str_body_uses_charset():
    part = MimePart('é', {'Content-Type': 'text/plain; charset=ISO-8859-1'})
    part.encoding = '8bit'

    assert split(bytes(part))[1] == b'\xe9'


def test_text_is_wrapped():
    part = MimePart(' '.join(['lorem'] * 60))
    lines = split(bytes(part))[1].split(b'\r\n')

    assert len(lines) > 1
    assert all(len(line) <= 78 for line in lines)


def test_wrapping_can_be_disabled():
    part = MimePart(' '.join(['lorem'] * 60))
    part.wraptext = False

    assert b'\r\n' not in split(bytes(part))[1]


def test_long_line_escalates_to_quoted_printable():
    part = MimePart('x' * 1200 + '\nend')

    first = bytes(part)
    headers, body = split(first)

    assert part.encoding == 'quoted-printable'
    assert b'Content-Transfer-Encoding: quoted-printable' in headers
    assert all(len(line) <= 76 for line in body.split(b'\r\n'))

    # A second serialization doesn't escalate again:
    assert bytes(part) == first
    assert part.encoding == 'quoted-printable'


def test_long_binary_line_escalates_to_base64():
    data = b'\x00' * 2000
    part = MimePart(data)
    part.encoding = 'binary'

    headers, body = split(bytes(part))

    assert part.encoding == 'base64'
    assert base64.b64decode(body) == data


def test_base64_is_wrapped():
    data = os.urandom(300)
    part = MimePart(data)
    part.encoding = 'base64'

    lines = split(bytes(part))[1].split(b'\r\n')

    assert all(len(line) == 76 for line in lines[:-1])
    assert base64.b64decode(b''.join(lines)) == data


def test_quoted_printable():
    part = MimePart('a=b\n', {'Content-Transfer-Encoding': 'Quoted-Printable'})

    assert part.encoding == 'quoted-printable'
    assert split(bytes(part))[1] == b'a=3Db\r\n'


def test_unknown_encoding_is_dropped():
    part = MimePart('Hello', {'Content-Transfer-Encoding': 'x-uuencode'})

    assert b'Content-Transfer-Encoding' not in bytes(part)


def test_multipart_encoding_is_restricted():
    part = MimePart(headers={'Content-Type': 'multipart/mixed'})
    part.encoding = 'base64'
    part.add_subpart(MimePart('Hello'))

    bytes(part)

    assert part.encoding == '7bit'
    assert 'Content-Transfer-Encoding' not in part.headers


def test_multipart():
    root = MimePart('Preamble', {'Content-Type': 'multipart/mixed'})
    root.add_subpart([
        MimePart('Hello', {'Content-Type': 'text/plain'}),
        MimePart(b'\x00\x01', {'Content-Type': 'application/octet-stream',
                               'Content-Transfer-Encoding': 'base64'}),
    ])

    raw = bytes(root)
    boundary = root.headers.get('Content-Type').param('boundary').encode()

    assert raw.endswith(b'--' + boundary + b'--\r\n')
    assert raw.count(b'--' + boundary + b'\r\n') == 2

    message = email.message_from_bytes(raw)

    assert message.is_multipart()
    assert message.preamble.strip() == 'Preamble'

    text, data = message.get_payload()

    assert text.get_payload() == 'Hello'
    assert data.get_payload(decode=True) == b'\x00\x01'


def test_boundary_is_not_found_in_subparts(monkeypatch):
    boundaries = iter(['collision', 'unique-boundary'])
    monkeypatch.setattr(MimePart, 'make_boundary',
                        staticmethod(lambda: next(boundaries)))

    root = MimePart(headers={'Content-Type': 'multipart/mixed'})
    root.add_subpart(MimePart('there is a collision here'))

    bytes(root)

    assert root.headers.get('Content-Type').param('boundary') == 'unique-boundary'


def test_boundaries_differ():
    assert MimePart.make_boundary() != MimePart.make_boundary()


@pytest.mark.parametrize('body', [None, b'', ''])
def test_empty_body(body):
    assert split(bytes(MimePart(body)))[1] == b''
