#!/usr/bin/env python
# coding: utf-8

"""
Delivery transports.

A transport takes an :class:`~mailaio.message.Email`, checks and completes
its headers, signs it if a :class:`~mailaio.dkim.DkimSigner` is configured,
and hands it over to a delivery agent:

    - :class:`SendmailTransport` pipes it to a local MTA program ;
    - :class:`SMTPTransport` sends it to a SMTP server ;
    - :class:`HandlerTransport` passes it to a user-supplied callable.

Example:

    >>> transport = get_transport("smtp", server="mail.example.org:587",
    ...                           username="alice", password="secret")
    >>> await transport.send(email)
"""

import asyncio
import inspect
import logging
import os
import shlex
from email.utils import formatdate

from mailaio import __version__
from mailaio.dkim import DkimSigner
from mailaio.exceptions import DeliveryError, MessageError
from mailaio.message import Envelope
from mailaio.smtp import SMTP


logger = logging.getLogger(__name__)

X_MAILER = "mailaio/{}".format(__version__)


class Transport:
    """
    Base class for delivery transports.

    Attributes:
        x_mailer (str or None): Value of the X-Mailer header added to sent
            messages. No header is added if empty.
        dkim (DkimSigner or None): Signer used to add a DKIM-Signature
            header to sent messages.
    """
    def __init__(self, x_mailer=X_MAILER, dkim=None):
        """
        Initializes a new :class:`Transport` instance.

        Args:
            x_mailer (str or None): X-Mailer header value.
            dkim (DkimSigner or dict or None): DKIM signer, or the keyword
                arguments to build one with.
        """
        self.x_mailer = x_mailer

        if isinstance(dkim, dict):
            # Line endings are already fixed by the MIME serializer.
            dkim = DkimSigner(**dict(dkim, fixcrlf=False))

        self.dkim = dkim

    def prepare_message(self, email):
        """
        Returns a copy of the given message, ready to be sent.

        - Date and X-Mailer headers are set ;
        - A ``To: undisclosed-recipients:;`` header is added when all the
          recipients are blind copies ;
        - The Return-Path header, which is set by the final delivery agent,
          is removed.

        Raises:
            MessageError: If the message has no From header or no recipient.

        Returns:
            Email: The prepared copy.
        """
        email = email.copy()

        if "From" not in email.headers:
            raise MessageError("The message must have a 'From' header to be "
                               "RFC compliant.")

        if not email.has_recipients():
            raise MessageError("No recipient address given.")

        if "Date" not in email.headers:
            email.headers.set("Date", formatdate(localtime=True))

        if self.x_mailer:
            email.headers.set("X-Mailer", self.x_mailer)

        if "To" not in email.headers and "Cc" not in email.headers:
            email.headers.set("To", "undisclosed-recipients:;")

        email.headers.remove("Return-Path")

        return email

    def render(self, email):
        """
        Serializes the given message, with its DKIM signature if a signer
        is configured.

        Returns:
            bytes: The message, ready to be sent.
        """
        message = email.as_bytes()

        if self.dkim is None:
            return message

        headers, _, body = message.partition(b"\r\n\r\n")
        signature = self.dkim.sign(headers + b"\r\n", body)

        if signature:
            message = signature.encode("ascii") + message

        return message

    async def send(self, email):
        """
        Sends the given message.

        Raises:
            MessageError: If the message can't be sent as is.
            DeliveryError: If the delivery agent refused the message.
        """
        raise NotImplementedError

    async def close(self):
        """
        Releases the resources held by the transport, if any.
        """


class SendmailTransport(Transport):
    """
    Hands messages over to a local sendmail-compatible program.

    The message is written on the standard input of the program, which is
    expected to find the recipients in the message headers (``-t``). The
    sender is given with ``-f`` unless the command already has it.
    """
    default_command = "/usr/sbin/sendmail -t -i"

    def __init__(self, command=None, **kwargs):
        """
        Initializes a new :class:`SendmailTransport` instance.

        Args:
            command (str or None): Command line of the program. Defaults to
                ``/usr/sbin/sendmail -t -i``.
        """
        super().__init__(**kwargs)

        self.command = command or self.__class__.default_command

    async def send(self, email):
        sender = email.get_sender()
        email = self.prepare_message(email)

        message = self.render(email)

        if os.linesep != "\r\n":
            message = message.replace(b"\r\n", os.linesep.encode("ascii"))

        args = shlex.split(self.command)

        if " -f" not in self.command and sender:
            args.append("-f{}".format(sender))

        logger.debug("Running %s", args)

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE)
        except OSError as e:
            raise DeliveryError("Could not execute mail delivery program "
                                "'{}'.".format(args[0])) from e

        _, stderr = await process.communicate(message)

        if process.returncode != 0:
            logger.error("%s exited with code %s: %s", args[0],
                         process.returncode,
                         stderr.decode("utf-8", errors="replace").strip())
            raise DeliveryError("The mail delivery program has returned the "
                                "following error code ({}).".format(
                                    process.returncode))


class SMTPTransport(Transport):
    """
    Sends messages to a SMTP server.

    With ``keepalive``, the connection is kept open between two messages and
    the session is reset with *RSET* before the next one. Otherwise a new
    connection is opened for each message.

    Attributes:
        client (SMTP or None): The SMTP client of the current connection.
    """
    def __init__(self, server="localhost", username=None, password=None,
                 keepalive=False, x_mailer=X_MAILER, dkim=None,
                 **smtp_options):
        """
        Initializes a new :class:`SMTPTransport` instance.

        Args:
            server (str): Server address, ``[scheme://]host[:port]``.
            username (str or None): Username to authenticate with.
            password (str or None): Password to authenticate with.
            keepalive (bool): Keep the connection open after sending.
            **smtp_options: Keyword arguments given to :class:`SMTP`.
        """
        super().__init__(x_mailer=x_mailer, dkim=dkim)

        self.server = server
        self.username = username
        self.password = password
        self.keepalive = keepalive
        self.smtp_options = smtp_options

        self.client = None

    async def connect(self):
        """
        Connects to the server.

        Raises:
            BadImplementationError: If the connection is already established.
            ConnectionError subclass: If the connection fails.
            SMTPException subclass: If the session can't be opened.
        """
        if self.client is None:
            self.client = SMTP(**self.smtp_options)

        await self.client.connect(self.server, self.username, self.password)

    async def send(self, email):
        """
        Sends the given message.

        Recipients are taken from the To, Cc and Bcc headers. The Bcc header
        isn't transmitted.

        Raises:
            MessageError: If the message has no From header or no recipient.
            ConnectionError subclass: If the connection fails.
            SMTPException subclass: If the server refuses the message.

        Returns:
            list: A :class:`~mailaio.exceptions.SMTPCommandFailedError` for
                each refused recipient.
        """
        email = self.prepare_message(email)
        envelope = Envelope.from_email(email)

        email.headers.remove("Bcc")
        message = self.render(email)

        try:
            if self.client is not None and self.client.is_connected:
                await self.client.rset()
            else:
                await self.connect()

            errors = await self.client.sendmail(envelope.sender,
                                                envelope.recipients, message)
        except Exception:
            await self.close()
            raise

        if not self.keepalive:
            await self.close()

        return errors

    async def close(self):
        """
        Ends the session, if any.
        """
        if self.client is not None:
            await self.client.quit()


class HandlerTransport(Transport):
    """
    Passes messages to a user-supplied callable.

    The handler is called with the prepared :class:`~mailaio.message.Email`
    followed by the configured extra parameters. Coroutine functions are
    awaited.
    """
    def __init__(self, handler=None, params=None, **kwargs):
        """
        Initializes a new :class:`HandlerTransport` instance.

        Args:
            handler (callable or None): The handler. None gives a handler
                doing nothing.
            params (list or None): Extra arguments given to the handler.

        Raises:
            DeliveryError: If ``handler`` isn't callable or ``params`` isn't
                a list.
        """
        super().__init__(**kwargs)

        self.set_handler(handler)

        if params is None:
            params = []

        if not isinstance(params, (list, tuple)):
            raise DeliveryError("Invalid option 'params' given. "
                                "Must be a list.")

        self.params = list(params)

    def set_handler(self, handler):
        if handler is None:
            handler = lambda *args: None    # noqa: E731
        elif not callable(handler):
            raise DeliveryError("Invalid handler given. Must be a callable, "
                                "or None for doing nothing.")

        self.handler = handler

    async def send(self, email):
        email = self.prepare_message(email)

        result = self.handler(email, *self.params)

        if inspect.isawaitable(result):
            result = await result

        return result


TRANSPORTS = {
    "sendmail": SendmailTransport,
    "smtp": SMTPTransport,
    "handler": HandlerTransport,
}


def get_transport(kind="smtp", **options):
    """
    Builds a transport.

    Args:
        kind (str): 'sendmail', 'smtp' or 'handler'.
        **options: Keyword arguments of the transport class.

    Raises:
        ValueError: If ``kind`` is unknown.

    Returns:
        Transport: The transport.
    """
    try:
        transport_class = TRANSPORTS[kind.lower()]
    except KeyError:
        raise ValueError("Unknown transport '{}'.".format(kind)) from None

    return transport_class(**options)
