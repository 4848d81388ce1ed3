import base64
import hashlib
import shlex
import sys

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from mailaio import (
    DeliveryError,
    DkimSigner,
    DkimWarning,
    Email,
    HandlerTransport,
    MessageError,
    SendmailTransport,
    SMTPCommandFailedError,
    SMTPTransport,
    Transport,
    get_transport,
)


@pytest.fixture()
def email():
    email = Email(hostname='x.tld')
    email.set_from('bob@x.tld', 'Bob')
    email.add_recipient('alice@y.tld')
    email.set_subject('Hello')
    email.set_text_body('Hello Alice')
    return email


def test_prepare_message(email):
    prepared = Transport().prepare_message(email)

    assert prepared is not email
    assert 'Date' in prepared.headers
    assert prepared.headers.get('X-Mailer').value.startswith('mailaio/')
    assert 'Return-Path' not in prepared.headers
    assert 'Return-Path' in email.headers
    assert 'X-Mailer' not in email.headers


def test_prepare_message_without_x_mailer(email):
    assert 'X-Mailer' not in Transport(x_mailer=None).prepare_message(email).headers


def test_prepare_message_bcc_only(email):
    email.clear_recipients()
    email.add_bcc_recipient('carol@y.tld')

    prepared = Transport().prepare_message(email)

    assert prepared.headers.get('To').value == 'undisclosed-recipients:;'


def test_prepare_message_requires_from():
    email = Email()
    email.add_recipient('alice@y.tld')

    with pytest.raises(MessageError):
        Transport().prepare_message(email)


def test_prepare_message_requires_recipient(email):
    email.clear_recipients()

    with pytest.raises(MessageError):
        Transport().prepare_message(email)


def test_render_with_dkim(email):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    privkey = key.private_bytes(serialization.Encoding.PEM,
                                serialization.PrivateFormat.PKCS8,
                                serialization.NoEncryption())

    transport = Transport(dkim={'privkey': privkey, 'domain': 'x.tld',
                                'selector': 'mail'})

    assert isinstance(transport.dkim, DkimSigner)

    raw = transport.render(transport.prepare_message(email))

    assert raw.startswith(b'DKIM-Signature: v=1; a=rsa-sha256; c=relaxed; d=x.tld; s=mail;')

    # The body is hashed as transmitted (simple canonicalization):
    body = raw.split(b'\r\n\r\n', 1)[1]
    bh = base64.b64encode(hashlib.sha256(body + b'\r\n').digest())

    assert b'bh=' + bh + b';' in raw


def test_render_without_key_sends_unsigned(email):
    transport = Transport(dkim=DkimSigner(domain='x.tld', selector='mail'))

    with pytest.warns(DkimWarning):
        raw = transport.render(transport.prepare_message(email))

    assert raw.startswith(b'Date: ')


@pytest.mark.asyncio
async def test_handler_transport(email):
    calls = []

    transport = HandlerTransport(handler=lambda *args: calls.append(args),
                                 params=['first', 2])
    await transport.send(email)

    (prepared, first, second), = calls

    assert isinstance(prepared, Email)
    assert prepared is not email
    assert 'X-Mailer' in prepared.headers
    assert (first, second) == ('first', 2)


@pytest.mark.asyncio
async def test_async_handler_transport(email):
    sent = []

    async def handler(email):
        sent.append(email.as_bytes())
        return 'queued'

    transport = get_transport('handler', handler=handler)

    assert await transport.send(email) == 'queued'
    assert len(sent) == 1


@pytest.mark.asyncio
async def test_null_handler(email):
    assert await HandlerTransport().send(email) is None


def test_invalid_handler():
    with pytest.raises(DeliveryError):
        HandlerTransport(handler='print')

    with pytest.raises(DeliveryError):
        HandlerTransport(params='first')


@pytest.mark.asyncio
async def test_smtp_transport(email, smtp_server):
    email.add_cc_recipient('carol@y.tld')
    email.add_bcc_recipient('dave@y.tld')

    transport = SMTPTransport(server='127.0.0.1:{}'.format(smtp_server.port),
                              fqdn='client.example.org', iotimeout=5)

    assert await transport.send(email) == []

    commands = [c for c in smtp_server.received if c.split(' ')[0] in ('MAIL', 'RCPT')]

    assert commands[0].startswith('MAIL FROM:<bob@x.tld> SIZE=')
    assert commands[1:] == ['RCPT TO:<alice@y.tld>', 'RCPT TO:<carol@y.tld>',
                            'RCPT TO:<dave@y.tld>']
    assert smtp_server.received[-1] == 'QUIT'

    message = smtp_server.messages[0]

    assert b'\r\nCc: carol@y.tld\r\n' in message
    assert b'Bcc' not in message
    assert b'dave@y.tld' not in message
    assert b'Return-Path' not in message

    # The message given isn't modified:
    assert 'Bcc' in email.headers


@pytest.mark.asyncio
async def test_smtp_transport_keepalive(email, smtp_server):
    transport = SMTPTransport(server='127.0.0.1:{}'.format(smtp_server.port),
                              keepalive=True, iotimeout=5)

    await transport.send(email)
    await transport.send(email)

    assert transport.client.is_connected
    assert smtp_server.connections == 1
    assert len(smtp_server.messages) == 2

    await transport.close()

    assert not transport.client.is_connected
    assert smtp_server.received[-1] == 'QUIT'


@pytest.mark.asyncio
async def test_smtp_transport_error_closes_connection(email, smtp_server):
    smtp_server.replies['MAIL'] = '553 5.7.1 Sender address rejected'

    transport = SMTPTransport(server='127.0.0.1:{}'.format(smtp_server.port),
                              keepalive=True, iotimeout=5)

    with pytest.raises(SMTPCommandFailedError):
        await transport.send(email)

    assert not transport.client.is_connected
    assert smtp_server.messages == []


def recorder(tmp_path, exit_code=0):
    """
    Returns a command line that stores its standard input and its extra
    arguments in files.
    """
    script = ("import sys; "
              "open(sys.argv[1], 'wb').write(sys.stdin.buffer.read()); "
              "open(sys.argv[2], 'w').write(' '.join(sys.argv[3:])); "
              "sys.exit({})".format(exit_code))

    return ' '.join(shlex.quote(arg) for arg in [
        sys.executable, '-c', script,
        str(tmp_path / 'message'), str(tmp_path / 'args'),
    ])


@pytest.mark.asyncio
async def test_sendmail_transport(email, tmp_path):
    transport = SendmailTransport(command=recorder(tmp_path))

    await transport.send(email)

    message = (tmp_path / 'message').read_bytes()

    assert b'\r\n' not in message
    assert b'\nTo: alice@y.tld\n' in message
    assert message.endswith(b'\n\nHello Alice')
    assert (tmp_path / 'args').read_text() == '-fbob@x.tld'


@pytest.mark.asyncio
async def test_sendmail_transport_keeps_sender_option(email, tmp_path):
    command = recorder(tmp_path) + ' -f other@x.tld'

    await get_transport('sendmail', command=command).send(email)

    assert (tmp_path / 'args').read_text() == '-f other@x.tld'


@pytest.mark.asyncio
async def test_sendmail_transport_failure(email, tmp_path):
    transport = SendmailTransport(command=recorder(tmp_path, exit_code=75))

    with pytest.raises(DeliveryError):
        await transport.send(email)


@pytest.mark.asyncio
async def test_sendmail_transport_missing_program(email, tmp_path):
    transport = SendmailTransport(command=str(tmp_path / 'sendmail') + ' -t -i')

    with pytest.raises(DeliveryError):
        await transport.send(email)


def test_get_transport():
    assert isinstance(get_transport('smtp', server='mail.example.org'), SMTPTransport)
    assert isinstance(get_transport('SENDMAIL'), SendmailTransport)

    with pytest.raises(ValueError):
        get_transport('carrier-pigeon')
