import pytest

from mailaio.streams import SMTPStreamReader


def reader_with(data, limit=SMTPStreamReader.line_max_length):
    reader = SMTPStreamReader(limit=limit)
    reader.feed_data(data)
    reader.feed_eof()
    return reader


@pytest.mark.asyncio
async def test_multiline_reply():
    reader = reader_with(b'250-mail.example.org\r\n250-SIZE 1000\r\n250 HELP\r\n')

    assert await reader.read_reply() == (250, 'mail.example.org\nSIZE 1000\nHELP')


@pytest.mark.asyncio
async def test_inconsistent_codes():
    reader = reader_with(b'250-first\r\n251 second\r\n')

    with pytest.raises(ConnectionResetError):
        await reader.read_reply()


@pytest.mark.asyncio
async def test_long_line_is_truncated_and_skipped():
    reader = reader_with(b'250-' + b'x' * 40 + b'\r\n250 ok\r\n220 next\r\n',
                         limit=16)

    code, message = await reader.read_reply()

    assert code == 250
    assert message == 'x' * 12 + '\nok'

    # The next reply starts on its own line:
    assert await reader.read_reply() == (220, 'next')


@pytest.mark.asyncio
async def test_connection_lost():
    with pytest.raises(ConnectionResetError):
        await reader_with(b'').read_reply()
