import asyncio
import socket
from contextlib import closing

import pytest
import pytest_asyncio


@pytest.fixture()
def unused_port():
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class MockSMTPServer:
    """
    Scripted SMTP server.

    Replies are looked up in `replies` by the longest matching command
    prefix ('RCPT TO:<bad@example.net>' before 'RCPT'). A list value gives
    successive replies, the last one being repeated. A None value means the
    server never replies. The '*' entry is used for the line following a 334
    reply (AUTH continuations).

    When `batch` is greater than 1, replies are held until `batch` commands
    have been received.
    """
    default_replies = {
        'HELO': '250 mock.example.net',
        'MAIL': '250 2.1.0 Ok',
        'RCPT': '250 2.1.5 Ok',
        'RSET': '250 2.0.0 Ok',
        'NOOP': '250 2.0.0 Ok',
        'VRFY': '252 2.0.0 Cannot VRFY user',
        'EXPN': '250 list@example.net',
        'HELP': '214 See RFC 5321',
        'DATA': '354 End data with <CR><LF>.<CR><LF>',
        '.': '250 2.0.0 Ok: queued',
        'QUIT': '221 2.0.0 Bye',
        'STARTTLS': '220 2.0.0 Ready to start TLS',
        'AUTH': '235 2.7.0 Authentication successful',
        '*': '235 2.7.0 Authentication successful',
    }

    def __init__(self, port):
        self.port = port
        self.greeting = '220 mock.example.net ESMTP ready'
        self.extensions = ['PIPELINING', 'SIZE 1000000', '8BITMIME',
                           'AUTH PLAIN LOGIN CRAM-MD5']
        self.replies = dict(self.default_replies)
        self.batch = 1

        self.received = []
        self.messages = []
        self.connections = 0

        self._server = None
        self._writers = []

    def ehlo_reply(self):
        lines = ['mock.example.net'] + self.extensions
        return '\r\n'.join('250{}{}'.format('-' if i < len(lines) - 1 else ' ', line)
                           for i, line in enumerate(lines))

    def reply_for(self, command):
        if command.upper().startswith('EHLO') and 'EHLO' not in self.replies:
            return self.ehlo_reply()

        matches = [key for key in self.replies
                   if key != '*' and command.upper().startswith(key.upper())]

        if not matches:
            return '500 5.5.2 Command unrecognized'

        key = max(matches, key=len)
        reply = self.replies[key]

        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]

        return reply

    async def handle(self, reader, writer):
        self.connections += 1
        self._writers.append(writer)
        pending = []
        continuation = False

        writer.write('{}\r\n'.format(self.greeting).encode())
        await writer.drain()

        try:
            while True:
                line = await reader.readline()

                if not line:
                    break

                command = line.decode('utf-8').rstrip('\r\n')
                self.received.append(command)

                if continuation:
                    reply = self.replies['*']
                else:
                    reply = self.reply_for(command)

                continuation = reply is not None and reply.startswith('334')

                if reply is None:
                    continue

                pending.append(reply)

                if len(pending) < self.batch and command.upper() not in ('DATA', 'QUIT'):
                    continue

                for r in pending:
                    writer.write('{}\r\n'.format(r).encode())

                pending = []
                await writer.drain()

                if command.upper() == 'DATA' and reply.startswith('354'):
                    data = []

                    while True:
                        data_line = await reader.readline()

                        if not data_line or data_line == b'.\r\n':
                            break

                        data.append(data_line)

                    self.messages.append(b''.join(data))
                    self.received.append('.')

                    writer.write('{}\r\n'.format(self.reply_for('.')).encode())
                    await writer.drain()

                if command.upper() == 'QUIT':
                    break
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def start(self):
        self._server = await asyncio.start_server(self.handle, '127.0.0.1',
                                                  self.port)

    async def stop(self):
        for writer in self._writers:
            writer.close()

        self._server.close()
        await self._server.wait_closed()


@pytest_asyncio.fixture()
async def smtp_server(unused_port):
    server = MockSMTPServer(unused_port)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()
