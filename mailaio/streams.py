#!/usr/bin/env python
# coding: utf-8


from asyncio import (
    IncompleteReadError, LimitOverrunError, StreamReader, StreamWriter,
)


class SMTPStreamReader(StreamReader):
    """
    StreamReader used to read server replies during the SMTP session.

    .. seealso:: `asyncio Streams API <https://docs.python.org/3/library/asyncio-stream.html>`_
    """
    # RFC 5321 § 4.5.3.1.5 says a reply line is max. 512 chars long.
    # We chose to support a bit more :o)
    line_max_length = 8192

    def __init__(self, limit=line_max_length, loop=None):
        """
        Initializes a new SMTPStreamReader instance.

        Args:
            limit (int): Maximal length of data that can be returned in bytes,
                not counting the separator. Defaults to 8192.
            loop (:obj:`asyncio.BaseEventLoop`): Event loop to connect to.
        """
        super().__init__(limit=limit, loop=loop)
        self.max_line_length = limit

    async def read_line(self):
        """
        Reads a reply line, up to and including its line feed.

        A line longer than the limit is truncated: the rest of it is read
        and dropped, so that the next read starts on the next line.

        Returns:
            bytes: The line, or what could be read of it before the
                connection was closed.
        """
        head = None

        while True:
            try:
                line = await self.readuntil(b"\n")
            except IncompleteReadError as e:
                line = e.partial
            except LimitOverrunError as e:
                # The over-long part is still buffered:
                chunk = await self.readexactly(e.consumed)

                if head is None:
                    head = chunk[:self.max_line_length]

                continue

            if head is None:
                return line

            return head

    async def read_reply(self):
        """
        Reads a (possibly multi-line) reply from the server.

        A multi-line reply is made of lines in the form ``250-text``, ended
        by a line in the form ``250 text``. Every line must carry the same
        code.

        Raises:
            ConnectionResetError: If the connection with the server is lost
                (we can't read any response anymore). Or if the server
                replies without a proper return code, or with different
                codes in a multi-line reply.

        Returns:
            (int, str): A (code, full_message) 2-tuple consisting of:

                - server response code ;
                - server response string corresponding to response code
                  (multiline responses are joined with ``\\n``).
        """
        code = None
        messages = []
        go_on = True

        while go_on:
            line = await self.read_line()

            try:
                line_code = int(line[:3])
            except ValueError as e:
                # We either:
                # - Got an empty line (connection is probably down),
                # - Got a line without a valid return code.
                # In both case, it shouldn't happen, hence:
                raise ConnectionResetError("Connection lost.") from e

            if code is None:
                code = line_code
            elif line_code != code:
                raise ConnectionResetError(
                    "Inconsistent reply codes: {} then {}.".format(code, line_code))

            # Check if we have a multiline response:
            go_on = (line[3:4] == b"-")

            message = line[4:].strip(b" \t\r\n").decode("utf-8",
                                                         errors="replace")
            messages.append(message)

        full_message = "\n".join(messages)

        return code, full_message


class SMTPStreamWriter(StreamWriter):
    """
    StreamWriter used to send commands during the SMTP session.

    .. seealso:: `asyncio Streams API <https://docs.python.org/3/library/asyncio-stream.html>`_
    """
    async def send_command(self, command):
        """
        Sends the given command to the server.

        Args:
            command (str): Command to send to the server.

        Raises:
            ConnectionResetError: If the connection with the server is lost.
        """
        command = "{}\r\n".format(command).encode("utf-8")

        self.write(command)

        # Don't forget to drain or the command will stay buffered:
        await self.drain()

    async def send_data(self, data):
        """
        Sends raw bytes to the server.

        Args:
            data (bytes): Data to send, already formatted.
        """
        self.write(data)
        await self.drain()
