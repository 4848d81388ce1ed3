#!/usr/bin/env python
# coding: utf-8

"""
SMTP/ESMTP client class.
"""

import asyncio
import base64
import errno
import hmac
import logging
import re
import socket
import ssl
from smtplib import quoteaddr
from urllib.parse import urlsplit

from mailaio.exceptions import (
    BadImplementationError,
    SMTPAuthenticationError,
    SMTPCommandFailedError,
    SMTPCommandNotSupportedError,
    SMTPLoginError,
    SMTPMessageTooLargeError,
    SMTPNoRecipientError,
    SMTPTimeoutError,
    SMTPTLSError,
)
from mailaio.streams import SMTPStreamReader, SMTPStreamWriter
from mailaio.utils import address_literal


logger = logging.getLogger(__name__)


class SMTP:
    """
    SMTP or ESMTP client.

    This should follow RFC 5321 (SMTP), RFC 1869 (ESMTP), RFC 4954 (SMTP
    Authentication), RFC 3207 (Secure SMTP over TLS) and RFC 2920 (Command
    Pipelining).

    A session goes through the following states::

        disconnected -> connected -> greeted [-> TLS -> greeted]
            [-> authenticated] -> in transaction -> greeted -> ...
            -> disconnected

    Commands are awaited one after the other: a session never has more than
    one group of commands in flight.

    Attributes:
        hostname (str): Hostname of the SMTP server we are connecting to.
        port (int): Port on which the SMTP server listens for connections.
        timeout (int): Connection timeout, in seconds. Defaults to 30.
        iotimeout (int): Timeout for most server replies, in seconds.
            Defaults to 300. The reply to *DATA* is given half of it, the
            reply to the end of data marker is given twice as much and each
            write is given half of it.
        last_helo_response ((int or None, str or None)): A (code, message)
            2-tuple containing the last *HELO* response.
        last_ehlo_response ((int or None, str or None)): A (code, message)
            2-tuple containing the last *EHLO* response.
        supports_esmtp (bool): True if the server supports ESMTP (set after a
            *EHLO* command, False otherwise.
        esmtp_extensions (dict): ESMTP extensions supported by the SMTP
            server (set after a *EHLO* command). Names are uppercased and
            associated with their (uppercased) parameters, or True if the
            extension has no parameter.
        auth_mechanisms (list of str): Authentication mechanisms supported by
            the SMTP server.
        auth_methods (list of str): Authentication mechanisms we are willing
            to use, ordered by preference.
        pipelining (bool): Whether pipelineable commands should be grouped
            when the server supports the *PIPELINING* extension.
        starttls (bool or None): Whether STARTTLS should be used. If None,
            STARTTLS is used when connecting to port 587.
        ssl_context: SSL context to use. A :class:`ssl.SSLContext` for
            implicit TLS, a :class:`OpenSSL.SSL.Context` for STARTTLS.
        sender (str or None): Default reverse-path, used when
            :meth:`SMTP.rcpt` is called before :meth:`SMTP.mail`.
        debug (bool or callable): If True, protocol lines are logged with the
            INFO level instead of DEBUG. If callable, it is also given each
            protocol line.
        server_info (dict): Information about the current connection
            (``host``, ``port``, ``greeting`` and ``encrypted``).
        response_code (int or None): Code of the last server reply.
        response_text (str or None): Text of the last server reply.
        last_command (str or None): Name of the last command sent to the
            server (``MAIL FROM``, ``RCPT TO``, ``DATA``...).
        reader (:class:`streams.SMTPStreamReader`): SMTP stream reader, used
            to read server responses.
        writer (:class:`streams.SMTPStreamWriter`): SMTP stream writer, used
            to send commands to the server.
        transport (:class:`asyncio.BaseTransport`): Communication channel
            abstraction between client and server.
        loop (:class:`asyncio.BaseEventLoop` or None): Event loop to use.
            Defaults to the running loop.
        use_aioopenssl (bool): If True, the connection is made using the
            aioopenssl module. This is forced when STARTTLS is used.
        _fqdn (str): Client FQDN. Used to identify the client to the
            server.

    Class Attributes:
        _default_port (int): Default port to use. Defaults to 25.
        _implicit_tls (bool): Whether TLS is negotiated as soon as the
            connection is established. Defaults to False.
        _supported_auth_mechanisms (dict): Dict containing the information
            about supported authentication mechanisms, ordered by preference
            of use. The entries consist in :

                - The authentication mechanism name, in uppercase, as given
                  by SMTP servers.
                - The name of the method to call to authenticate using the
                  mechanism.
        _pipelineable_commands (tuple of str): Commands whose reply can be
            read later when the server supports *PIPELINING*.
    """
    _default_port = 25
    _implicit_tls = False

    _supported_auth_mechanisms = {
        "CRAM-MD5": "_auth_cram_md5",
        "PLAIN": "_auth_plain",
        "LOGIN": "_auth_login",
    }

    _pipelineable_commands = (
        "RSET", "MAIL FROM", "SEND FROM", "SOML FROM", "SAML FROM", "RCPT TO",
    )

    def __init__(self, hostname="localhost", port=None, fqdn=None,
                 timeout=30, iotimeout=300, loop=None, use_aioopenssl=False,
                 starttls=None, ssl_context=None, pipelining=False,
                 auth_methods=None, sender=None, debug=False):
        """
        Initializes a new :class:`SMTP` instance.

        Args:
            hostname (str): Hostname of the SMTP server to connect to.
            port (int or None): Port to use to connect to the SMTP server.
                Defaults to 25 (465 for :class:`SMTP_SSL`).
            fqdn (str or None): Client Fully Qualified Domain Name. This is
                used to identify the client to the server. IP addresses are
                turned into address literals.
            timeout (int): Connection timeout, in seconds.
            iotimeout (int): Server reply timeout, in seconds.
            loop (:class:`asyncio.BaseEventLoop`): Event loop to use.
            use_aioopenssl (bool): Use the aioopenssl module to open
                the connection. This is mandatory if you plan on using
                STARTTLS.
            starttls (bool or None): Use STARTTLS after the greeting. If
                None, STARTTLS is used when connecting to port 587.
            ssl_context: SSL context to use.
            pipelining (bool): Group pipelineable commands when the server
                supports it.
            auth_methods (list of str or None): Authentication mechanisms
                allowed, by order of preference. Defaults to CRAM-MD5, PLAIN
                and LOGIN.
            sender (str or None): Default reverse-path. The null
                reverse-path (``<>``) is used if None.
            debug (bool or callable): Protocol logging switch or sink.
        """
        self.hostname = hostname

        if port is None:
            port = self.__class__._default_port

        try:
            self.port = int(port)
        except ValueError:
            self.port = self.__class__._default_port

        self.timeout = timeout
        self.iotimeout = iotimeout
        self._fqdn = fqdn
        self.loop = loop
        self.use_aioopenssl = use_aioopenssl
        self.starttls_mode = starttls
        self.ssl_context = ssl_context
        self.pipelining = pipelining
        self.sender = sender
        self.debug = debug

        if auth_methods is None:
            auth_methods = list(self.__class__._supported_auth_mechanisms)

        self.auth_methods = [method.upper() for method in auth_methods
                             if method.upper()
                             in self.__class__._supported_auth_mechanisms]

        self.reset_state()

    @property
    def fqdn(self):
        """
        Returns the string used to identify the client when initiating a SMTP
        session.

        RFC 5321 `§ 4.1.1.1`_ and `§ 4.1.3`_ tell us what to do:

        - Use the client FQDN ;
        - If it isn't available, we SHOULD fall back to an address literal.

        Returns:
            str: The value that should be used as the client FQDN.

        .. _`§ 4.1.1.1`: https://tools.ietf.org/html/rfc5321#section-4.1.1.1
        .. _`§ 4.1.3`: https://tools.ietf.org/html/rfc5321#section-4.1.3
        """
        if self._fqdn is None:
            # Let's try to retrieve it:
            self._fqdn = socket.getfqdn()

            if "." not in self._fqdn:
                try:
                    info = socket.getaddrinfo(host="localhost",
                                              port=None,
                                              proto=socket.IPPROTO_TCP)
                except socket.gaierror:
                    addr = "127.0.0.1"
                else:
                    # We only consider the first returned result and we're
                    # only interested in getting the IP(v4 or v6) address:
                    addr = info[0][4][0]

                self._fqdn = addr

        return address_literal(self._fqdn)

    @property
    def is_connected(self):
        """
        Tells whether the client is connected to a server.
        """
        return self.writer is not None

    def reset_state(self):
        """
        Resets some attributes to their default values.

        This is especially useful when initializing a newly created
        :class:`SMTP` instance and when closing an existing SMTP session.

        It allows us to use the same SMTP instance and connect several times.
        """
        self.last_helo_response = (None, None)
        self.last_ehlo_response = (None, None)

        self.supports_esmtp = False
        self.esmtp_extensions = {}

        self.auth_mechanisms = []

        self.response_code = None
        self.response_text = None
        self.last_command = None

        self.server_info = {
            "host": "",
            "port": 0,
            "greeting": "",
            "encrypted": False,
        }

        self.reader = None
        self.writer = None
        self.transport = None

        self._pipeline = []
        self._mail_sent = False
        self._in_transaction = False

    @property
    def in_transaction(self):
        """
        Tells whether a mail transaction is open (a *MAIL* command has been
        accepted and the transaction hasn't been completed or reset yet).

        .. seealso:: RFC 5321 `§ 3.3`_

        .. _`§ 3.3`: https://tools.ietf.org/html/rfc5321#section-3.3
        """
        return self._in_transaction

    async def __aenter__(self):
        """
        Enters the asynchronous context manager.

        Also tries to connect to the server.

        Raises:
            ConnectionError subclass: If the connection between client and
                SMTP server can not be established.

        .. seealso:: :meth:`SMTP.connect`
        """
        await self.connect()

        return self

    async def __aexit__(self, *args):
        """
        Exits the asynchronous context manager.

        Closes the connection and resets instance attributes.

        .. seealso:: :meth:`SMTP.quit`
        """
        await self.quit()

    def _parse_server(self, server):
        """
        Splits a server address into its (host, port, implicit_tls) parts.

        Accepted forms are ``host``, ``host:port``, ``[::1]:port`` and
        ``scheme://host:port``. The ``tls``, ``ssl`` and ``smtps`` schemes
        request implicit TLS, ``tcp`` and ``smtp`` a plain connection.

        Raises:
            ValueError: If the server address is invalid.
        """
        if server is None:
            return self.hostname, self.port, self.__class__._implicit_tls

        if "://" not in server:
            scheme = "tls" if self.__class__._implicit_tls else "tcp"
            server = "{}://{}".format(scheme, server)

        url = urlsplit(server)
        scheme = url.scheme.lower()

        if scheme in ("tls", "ssl", "smtps") or re.match(r"^(tls|ssl)v[.0-9]+$",
                                                         scheme):
            implicit_tls = True
        elif scheme in ("tcp", "smtp"):
            implicit_tls = False
        else:
            raise ValueError("Invalid server argument given: "
                             "unknown scheme '{}'.".format(url.scheme))

        if not url.hostname:
            raise ValueError("Invalid server argument given: "
                             "missing hostname.")

        # May raise ValueError too:
        port = url.port

        if port is None:
            if implicit_tls:
                port = 465
            elif self.starttls_mode:
                port = 587
            else:
                port = 25

        return url.hostname, port, implicit_tls

    async def connect(self, server=None, username=None, password=None):
        """
        Connects to the server and opens the session.

        The whole opening sequence is run:

        1. The connection is established (TLS is negotiated straight away if
           the server address requests it) and the server greeting (*220*)
           is read ;
        2. The client says *EHLO* (or *HELO*, if *EHLO* fails) ;
        3. If required, the connection is upgraded with *STARTTLS* and the
           client says *EHLO* again ;
        4. If credentials are given, the client authenticates.

        .. note:: This method is automatically invoked by
            :meth:`SMTP.__aenter__`. The code is mostly borrowed from the
            :func:`asyncio.streams.open_connection` source code.

        Args:
            server (str or None): Server address, ``[scheme://]host[:port]``.
                Defaults to the ``hostname`` and ``port`` given at
                initialization.
            username (str or None): Username to authenticate with.
            password (str or None): Password to authenticate with.

        Raises:
            BadImplementationError: If the client is already connected.
            ValueError: If the server address is invalid.
            ConnectionError subclass: If the connection between client and
                SMTP server can not be established, or if the server doesn't
                greet us with a 220 reply.
            SMTPTimeoutError: If the server didn't answer in time.
            SMTPCommandNotSupportedError: If STARTTLS is required but not
                supported by the server.
            SMTPTLSError: If the TLS negotiation fails.
            SMTPLoginError: If the authentication fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                greeting.
        """
        if self.is_connected:
            raise BadImplementationError(
                "Already connected to {}:{}.".format(self.hostname, self.port))

        host, port, implicit_tls = self._parse_server(server)

        starttls = False if implicit_tls else self.starttls_mode

        if starttls is None:
            starttls = (port == 587)

        if starttls:
            self.use_aioopenssl = True

        self.reset_state()
        self.hostname = host
        self.port = port

        loop = self.loop or asyncio.get_running_loop()

        # First build the reader:
        self.reader = SMTPStreamReader(loop=loop)

        # Then build the protocol:
        protocol = asyncio.StreamReaderProtocol(self.reader, loop=loop)

        # With the just-built reader and protocol, create the connection and
        # get the transport stream:
        conn = {
            "protocol_factory": lambda: protocol,
            "host": host,
            "port": port,
        }

        if self.use_aioopenssl:
            import aioopenssl

            context = self._openssl_context()

            conn.update({
                "use_starttls": not implicit_tls,
                "ssl_context_factory": lambda transport: context,
                "server_hostname": host,    # For SSL
            })

            # This may raise a ConnectionError exception, which we let bubble up.
            coro = aioopenssl.create_starttls_connection(loop, **conn)
        else:
            if implicit_tls:
                conn["ssl"] = self.ssl_context or ssl.create_default_context()

            # This may raise a ConnectionError exception, which we let bubble up.
            coro = loop.create_connection(**conn)

        try:
            self.transport, _ = await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError as e:
            self.reset_state()
            raise SMTPTimeoutError(
                "Connection to {}:{} timed out.".format(host, port)) from e

        if not hasattr(self.transport, "is_closing"):
            # HACK: aioopenssl transports don't always implement is_closing,
            # and thus drain() fails...
            self.transport.is_closing = lambda: False

        # If the connection has been established, build the writer:
        self.writer = SMTPStreamWriter(self.transport, protocol, self.reader,
                                       loop)

        code, message = await self._read_reply()

        if code != 220:
            await self.close()
            raise ConnectionRefusedError(code, message)

        self.server_info = {
            "host": host,
            "port": port,
            "greeting": message,
            "encrypted": implicit_tls,
        }

        await self.hello()

        if starttls:
            await self.starttls()

        if username and password:
            await self.auth(username, password)

        return code, message

    def _openssl_context(self, context=None):
        """
        Returns the pyOpenSSL context to use for TLS negotiation.

        If neither the given ``context`` nor :attr:`ssl_context` can be used,
        a new context checking the server certificate against the system
        trust store is built.
        """
        import OpenSSL

        if context is None:
            context = self.ssl_context

        if isinstance(context, OpenSSL.SSL.Context):
            return context

        context = OpenSSL.SSL.Context(OpenSSL.SSL.TLS_CLIENT_METHOD)
        context.set_default_verify_paths()
        context.set_verify(OpenSSL.SSL.VERIFY_PEER,
                           lambda conn, cert, errnum, depth, ok: bool(ok))

        return context

    def _log(self, line):
        """
        Logs a protocol line and hands it to the debug sink, if any.
        """
        if self.debug:
            logger.info(line)

            if callable(self.debug):
                self.debug(line)
        else:
            logger.debug(line)

    async def _wait(self, coro, timeout, what):
        """
        Awaits the given coroutine for at most ``timeout`` seconds.

        A timeout is fatal to the session: the connection is closed.

        Raises:
            SMTPTimeoutError: If the coroutine didn't complete in time.
        """
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise SMTPTimeoutError(
                "Timed out while {} ({}s).".format(what, timeout)) from e

    async def _read_reply(self, timeout=None):
        """
        Reads a single reply from the server and stores it as the last reply.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.
        """
        if timeout is None:
            timeout = self.iotimeout

        code, message = await self._wait(self.reader.read_reply(), timeout,
                                         "waiting for the server reply")

        for line in message.split("\n"):
            self._log("S: {} {}".format(code, line))

        self.response_code = code
        self.response_text = message

        return code, message

    async def _send_command(self, command, secret=False):
        """
        Sends a command line to the server, with half of the I/O timeout.

        Args:
            command (str): The command line, without the trailing CRLF.
            secret (bool): If True, the last word of the command is masked in
                logs and error messages.

        Returns:
            str: The command line, as it can be shown.
        """
        if not self.is_connected:
            raise ConnectionResetError("The connection was closed!")

        shown = command

        if secret:
            words = command.split(" ")
            shown = " ".join(words[:-1] + ["********"])

        if ":" in shown:
            self.last_command = shown.split(":", 1)[0].strip().upper()
        else:
            self.last_command = shown.split(" ", 1)[0].upper()

        self._log("C: {}".format(shown))

        await self._wait(self.writer.send_command(command),
                         self.iotimeout / 2, "sending data")

        return shown

    async def do_cmd(self, *args, success=None, timeout=None, secret=False):
        """
        Sends the given command to the server.

        The reply is matched against the expected codes as soon as possible:
        if pipelining is enabled and supported by the server, replies to
        pipelineable commands are only read when a non-pipelineable command
        is sent or when :meth:`SMTP.flush` is called.

        Args:
            *args: Command and arguments to be sent to the server.
            success (tuple of int or None): Expected reply codes. Defaults
                to (250,).
            timeout (int or None): Reply timeout. Defaults to
                :attr:`iotimeout`.
            secret (bool): Mask the last argument in logs.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPTimeoutError: If the server didn't answer in time.
            SMTPCommandFailedError: If the command (or a previously deferred
                one) fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response. (None, None) if the reply will be read later.
        """
        if success is None:
            success = (250,)

        cmd = " ".join(args)

        shown = await self._send_command(cmd, secret)
        self._pipeline.append((success, self.last_command, shown))

        if self._can_defer():
            return None, None

        return await self.flush(timeout)

    def _can_defer(self):
        """
        Tells whether the reply to the last command can be read later.
        """
        return (self.pipelining
                and "PIPELINING" in self.esmtp_extensions
                and self.last_command in self.__class__._pipelineable_commands)

    async def _read_pipeline(self, timeout=None):
        """
        Reads the replies to all the pending commands, in order.

        Returns:
            list: A list of (success, command, code, message) 4-tuples.
        """
        pipeline, self._pipeline = self._pipeline, []
        replies = []

        for success, name, shown in pipeline:
            code, message = await self._read_reply(timeout)
            self._track_transaction(name, code in success)
            replies.append((success, shown, code, message))

        return replies

    def _track_transaction(self, command, succeeded):
        """
        Keeps track of the mail transaction state.
        """
        if not succeeded:
            if command == "MAIL FROM":
                self._mail_sent = False

            return

        if command in ("EHLO", "HELO", "RSET", "QUIT", "."):
            self._in_transaction = False
            self._mail_sent = False
        elif command == "MAIL FROM":
            self._in_transaction = True
            self._mail_sent = True

    async def flush(self, timeout=None):
        """
        Reads the replies to all the commands that are still waiting for
        one.

        All the pending replies are read (in the order the commands were
        sent) before any error is raised.

        Args:
            timeout (int or None): Timeout for each reply. Defaults to
                :attr:`iotimeout`.

        Raises:
            SMTPCommandFailedError: For the first command that failed.

        Returns:
            (int, str): A (code, message) 2-tuple containing the last server
                response, or (None, None) if no command was pending.
        """
        replies = await self._read_pipeline(timeout)

        for success, shown, code, message in replies:
            if code not in success:
                raise SMTPCommandFailedError(code, message, shown)

        if not replies:
            return None, None

        return replies[-1][2], replies[-1][3]

    async def hello(self, from_host=None):
        """
        Identifies the client to the server.

        Tries *EHLO* first and falls back to *HELO* if it fails (extensions
        are then unknown).

        Args:
            from_host (str or None): Name to use to identify the client.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the server refuses both greetings.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.
        """
        try:
            return await self.ehlo(from_host)
        except SMTPCommandFailedError:
            return await self.helo(from_host)

    async def helo(self, from_host=None):
        """
        Sends a SMTP 'HELO' command. - Identifies the client and starts the
        session.

        If given ``from_host`` is None, defaults to the client FQDN.

        For further details, please check out `RFC 5321 § 4.1.1.1`_.

        Args:
            from_host (str or None): Name to use to identify the client.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the server refuses our HELO greeting.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.

        .. _`RFC 5321 § 4.1.1.1`: https://tools.ietf.org/html/rfc5321#section-4.1.1.1
        """
        if from_host is None:
            from_host = self.fqdn
        else:
            from_host = address_literal(from_host)

        self.supports_esmtp = False
        self.esmtp_extensions = {}
        self.auth_mechanisms = []

        code, message = await self.do_cmd("HELO", from_host)

        self.last_helo_response = (code, message)

        return code, message

    async def ehlo(self, from_host=None):
        """
        Sends a SMTP 'EHLO' command. - Identifies the client and starts the
        session.

        If given ``from_host`` is None, defaults to the client FQDN.

        For further details, please check out `RFC 5321 § 4.1.1.1`_.

        Args:
            from_host (str or None): Name to use to identify the client.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the server refuses our EHLO greeting.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.

        .. _`RFC 5321 § 4.1.1.1`: https://tools.ietf.org/html/rfc5321#section-4.1.1.1
        """
        if from_host is None:
            from_host = self.fqdn
        else:
            from_host = address_literal(from_host)

        code, message = await self.do_cmd("EHLO", from_host)

        self.last_ehlo_response = (code, message)

        extns, auths = SMTP.parse_esmtp_extensions(message)
        self.esmtp_extensions = extns
        self.auth_mechanisms = auths
        self.supports_esmtp = True

        return code, message

    def has_extension(self, name):
        """
        Tells whether the server supports the given ESMTP extension.

        Args:
            name (str): Extension name (case insensitive).

        Returns:
            str or bool: The extension parameters if any, True if the
                extension has no parameter, False if it isn't supported.
        """
        return self.esmtp_extensions.get(name.upper(), False)

    async def help(self, command_name=None):
        """
        Sends a SMTP 'HELP' command.

        For further details please check out `RFC 5321 § 4.1.1.8`_.

        Args:
            command_name (str or None, optional): Name of a command for which
                you want help. For example, if you want to get help about the
                '*RSET*' command, you'd call ``help('RSET')``.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the HELP command fails.

        Returns:
            Help text as given by the server.

        .. _`RFC 5321 § 4.1.1.8`: https://tools.ietf.org/html/rfc5321#section-4.1.1.8
        """
        args = ["HELP"]

        if command_name:
            args.append(command_name)

        code, message = await self.do_cmd(*args, success=(211, 214))

        return message

    async def rset(self):
        """
        Sends a SMTP 'RSET' command. - Resets the session.

        Nothing is sent if no mail transaction is open, including one whose
        MAIL reply is still pending.

        For further details, please check out `RFC 5321 § 4.1.1.5`_.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the RSET command fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response. (250, None) if there was nothing to reset.

        .. _`RFC 5321 § 4.1.1.5`: https://tools.ietf.org/html/rfc5321#section-4.1.1.5
        """
        if not (self._in_transaction or self._mail_sent or self._pipeline):
            return 250, None

        self._mail_sent = False

        return await self.do_cmd("RSET")

    async def noop(self):
        """
        Sends a SMTP 'NOOP' command. - Doesn't do anything.

        For further details, please check out `RFC 5321 § 4.1.1.9`_.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the NOOP command fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.

        .. _`RFC 5321 § 4.1.1.9`: https://tools.ietf.org/html/rfc5321#section-4.1.1.9
        """
        return await self.do_cmd("NOOP")

    async def vrfy(self, address):
        """
        Sends a SMTP 'VRFY' command. - Tests the validity of the given address.

        For further details, please check out `RFC 5321 § 4.1.1.6`_.

        Args:
            address (str): E-mail address to be checked.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the VRFY command fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.

        .. _`RFC 5321 § 4.1.1.6`: https://tools.ietf.org/html/rfc5321#section-4.1.1.6
        """
        return await self.do_cmd("VRFY", address, success=(250, 251, 252))

    async def expn(self, address):
        """
        Sends a SMTP 'EXPN' command. - Expands a mailing-list.

        For further details, please check out `RFC 5321 § 4.1.1.7`_.

        Args:
            address (str): E-mail address to expand.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the EXPN command fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.

        .. _`RFC 5321 § 4.1.1.7`: https://tools.ietf.org/html/rfc5321#section-4.1.1.7
        """
        return await self.do_cmd("EXPN", address)

    async def mail(self, sender=None, options=None):
        """
        Sends a SMTP 'MAIL' command. - Starts the mail transfer session.

        For further details, please check out `RFC 5321 § 4.1.1.2`_ and
        `§ 3.3`_.

        Args:
            sender (str or None): Sender mailbox (used as reverse-path).
                Defaults to :attr:`sender`, or to the null reverse-path.
            options (list of str or None, optional): Additional options to send
                along with the *MAIL* command.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the MAIL command fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.

        .. _`RFC 5321 § 4.1.1.2`: https://tools.ietf.org/html/rfc5321#section-4.1.1.2
        .. _`§ 3.3`: https://tools.ietf.org/html/rfc5321#section-3.3
        """
        if sender is None:
            sender = self.sender or ""

        if options is None:
            options = []

        from_addr = "FROM:{}".format(quoteaddr(sender))

        self._mail_sent = True

        try:
            return await self.do_cmd("MAIL", from_addr, *options)
        except SMTPCommandFailedError:
            self._mail_sent = False
            raise

    async def rcpt(self, recipient, options=None):
        """
        Sends a SMTP 'RCPT' command. - Indicates a recipient for the e-mail.

        If :meth:`SMTP.mail` hasn't been called yet in this transaction, it
        is called first, with the default sender.

        For further details, please check out `RFC 5321 § 4.1.1.3`_ and
        `§ 3.3`_.

        Args:
            recipient (str): E-mail address of one recipient.
            options (list of str or None, optional): Additional options to send
                along with the *RCPT* command.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the RCPT command fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.

        .. _`RFC 5321 § 4.1.1.3`: https://tools.ietf.org/html/rfc5321#section-4.1.1.3
        .. _`§ 3.3`: https://tools.ietf.org/html/rfc5321#section-3.3
        """
        if not self._mail_sent:
            await self.mail()

        if options is None:
            options = []

        to_addr = "TO:{}".format(quoteaddr(recipient))

        return await self.do_cmd("RCPT", to_addr, *options,
                                 success=(250, 251))

    async def quit(self):
        """
        Sends a SMTP 'QUIT' command. - Ends the session.

        The connection is closed whatever the server replies. Calling this
        method on a closed session does nothing.

        For further details, please check out `RFC 5321 § 4.1.1.10`_.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response. If the connection is already closed when calling this
                method, returns (-1, None).

        .. _`RFC 5321 § 4.1.1.10`: https://tools.ietf.org/html/rfc5321#section-4.1.1.10
        """
        code = -1
        message = None

        if not self.is_connected:
            return code, message

        try:
            code, message = await self.do_cmd("QUIT", success=(221,))
        except ConnectionError:
            # We voluntarily ignore this kind of exceptions since... the
            # connection seems already closed.
            pass
        except (SMTPCommandFailedError, SMTPTimeoutError):
            pass

        await self.close()

        return code, message

    async def data(self, email_message):
        """
        Sends a SMTP 'DATA' command. - Transmits the message to the server.

        The message is prepared (see :meth:`SMTP.prepare_message`), then
        sent between the *DATA* command and the end of data marker.

        For further details, please check out `RFC 5321 § 4.1.1.4`_.

        Args:
            email_message (str or bytes): Message to be sent.

        Raises:
            ConnectionError subclass: If the connection to the server is
                unexpectedely lost.
            SMTPMessageTooLargeError: If the message exceeds the maximal size
                advertised by the server.
            SMTPTimeoutError: If the server didn't answer in time.
            SMTPCommandFailedError: If the DATA command fails, or if the
                server refuses the message.

         Returns:
            (int, str): A (code, message) 2-tuple containing the server last
                response (the one the server sent after all data were sent by
                the client).

        .. seealso: :meth:`SMTP.prepare_message`

        .. _`RFC 5321 § 4.1.1.4`: https://tools.ietf.org/html/rfc5321#section-4.1.1.4
        """
        email_message = SMTP.prepare_message(email_message)

        max_size = self.has_extension("SIZE")

        if isinstance(max_size, str) and max_size.isdigit():
            max_size = int(max_size)

            if max_size and len(email_message) > max_size:
                raise SMTPMessageTooLargeError(
                    "The message length ({}) exceeds the maximum allowed by "
                    "the server ({}).".format(len(email_message), max_size))

        await self.do_cmd("DATA", success=(354,), timeout=self.iotimeout / 2)

        self._log("C: <{} bytes of data>".format(len(email_message)))
        await self._wait(self.writer.send_data(email_message),
                         self.iotimeout / 2, "sending data")

        return await self.do_cmd(".", timeout=self.iotimeout * 2)

    async def auth(self, username, password):
        """
        Tries to authenticate user against the SMTP server.

        Mechanisms are tried in the order of :attr:`auth_methods`, skipping
        those the server doesn't support, until one succeeds.

        Args:
            username (str): Username to authenticate with.
            password (str): Password to use along with the given ``username``.

        Raises:
            ValueError: If the username or the password contain a NUL
                character.
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the server refuses our EHLO/HELO
                greeting.
            SMTPCommandNotSupportedError: If the server doesn't support
                authentication.
            SMTPLoginError: If the authentication failed (either because all
                attempts failed or because there was no suitable authentication
                mechanism).

        Returns:
            (int, str): A (code, message) 2-tuple containing the last server
                response.
        """
        if "\0" in username or "\0" in password:
            raise ValueError("The NUL character is not allowed in the "
                             "username or the password.")

        # EHLO/HELO is required:
        await self.ehlo_or_helo_if_needed()

        if not self.has_extension("AUTH"):
            raise SMTPCommandNotSupportedError(
                "SMTP server doesn't support authentication.")

        errors = []   # To store SMTPAuthenticationErrors
        code = message = None

        # Try to authenticate using all mechanisms supported by both
        # server and client (and only these):
        for auth in self.auth_methods:
            if auth not in self.auth_mechanisms:
                continue

            meth = self.__class__._supported_auth_mechanisms[auth]
            auth_func = getattr(self, meth)

            try:
                code, message = await auth_func(username, password)
            except SMTPAuthenticationError as e:
                errors.append(e)
            else:
                break
        else:
            if not errors:
                err = "Could not find any suitable authentication mechanism."
                errors.append(SMTPAuthenticationError(-1, err))

            raise SMTPLoginError(errors)

        return code, message

    async def starttls(self, context=None):
        """
        Upgrades the connection to the SMTP server into TLS mode.

        If there has been no previous EHLO or HELO command this session, this
        method tries ESMTP EHLO first. The client says EHLO again once the
        connection is encrypted.

        Every failure is fatal: the connection is closed before the exception
        is raised.

        Raises:
            BadImplementationError: If the connection does not use aioopenssl.
            SMTPCommandNotSupportedError: If the server does not support STARTTLS.
            SMTPCommandFailedError: If the STARTTLS command fails
            SMTPTLSError: If the TLS negotiation fails.

        Args:
            context (:obj:`OpenSSL.SSL.Context`): SSL context

        Returns:
            (int, message): A (code, message) 2-tuple containing the server
                response to the STARTTLS command.
        """
        if not self.use_aioopenssl:
            raise BadImplementationError("This connection does not use aioopenssl")

        import OpenSSL

        await self.ehlo_or_helo_if_needed()

        if not self.has_extension("STARTTLS"):
            await self.close()
            raise SMTPCommandNotSupportedError("STARTTLS not supported.")

        try:
            code, message = await self.do_cmd("STARTTLS", success=(220,))
        except SMTPCommandFailedError:
            await self.close()
            raise

        context = self._openssl_context(context)

        try:
            await self._wait(self.transport.starttls(ssl_context=context),
                             self.timeout, "negotiating TLS")
        except (OpenSSL.SSL.Error, OSError) as e:
            await self.close()
            raise SMTPTLSError("Cannot enable TLS encryption: {}".format(e)) from e

        # RFC 3207:
        # The client MUST discard any knowledge obtained from
        # the server, such as the list of SMTP service extensions,
        # which was not obtained from the TLS negotiation itself.
        self.last_ehlo_response = (None, None)
        self.last_helo_response = (None, None)
        self.supports_esmtp = False
        self.esmtp_extensions = {}
        self.auth_mechanisms = []
        self.server_info["encrypted"] = True

        await self.hello()

        return code, message

    async def sendmail(self, sender, recipients, message, mail_options=None,
                       rcpt_options=None):
        """
        Performs an entire e-mail transaction.

        Example:

            >>> try:
            >>>     async with SMTP() as client:
            >>>         try:
            >>>             r = await client.sendmail(sender, recipients, message)
            >>>         except SMTPException:
            >>>             print("Error while sending message.")
            >>>         else:
            >>>             print("Result: {}.".format(r))
            >>> except ConnectionError as e:
            >>>     print(e)
            Result: [].

        Args:
            sender (str): E-mail address of the sender.
            recipients (list of str or str): E-mail(s) address(es) of the
                recipient(s).
            message (str or bytes): Message body.
            mail_options (list of str): ESMTP options (such as *8BITMIME*) to
                send along the *MAIL* command.
            rcpt_options (list of str): ESMTP options (such as *DSN*) to
                send along all the *RCPT* commands.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the server refuses our EHLO/HELO
                greeting.
            SMTPCommandFailedError: If the server refuses our MAIL command.
            SMTPCommandFailedError: If the server refuses our DATA command.
            SMTPNoRecipientError: If the server refuses all given
                recipients.

        Returns:
            list: A list containing a :class:`SMTPCommandFailedError` for
                each recipient that was refused.

                When everything runs smoothly, the returned list is empty.

        .. note:: The connection remains open after. It's your responsibility
            to close it. A good practice is to use the asynchronous context
            manager instead. See :meth:`SMTP.__aenter__` for further details.
        """
        # Make sure `recipients` is a list:
        if isinstance(recipients, str):
            recipients = [recipients]

        # Set some defaults values:
        mail_options = list(mail_options or [])
        rcpt_options = list(rcpt_options or [])

        # EHLO or HELO is required:
        await self.ehlo_or_helo_if_needed()

        if self.has_extension("SIZE"):
            size = len(SMTP.prepare_message(message))
            mail_options.append("SIZE={}".format(size))

        await self.rset()
        await self.mail(sender, mail_options)

        errors = []

        for recipient in recipients:
            try:
                await self.rcpt(recipient, rcpt_options)
            except SMTPCommandFailedError as e:
                if e.command.upper().startswith("MAIL"):
                    raise

                errors.append(e)

        # Replies to pipelined commands:
        for success, shown, code, text in await self._read_pipeline():
            if code in success:
                continue

            error = SMTPCommandFailedError(code, text, shown)

            if not shown.upper().startswith("RCPT"):
                raise error

            errors.append(error)

        if len(recipients) == len(errors):
            # The server refused all our recipients:
            raise SMTPNoRecipientError(errors)

        await self.data(message)

        # If we got here then somebody got our mail:
        return errors

    async def send_mail(self, sender, recipients, message, mail_options=None,
                        rcpt_options=None):
        """
        Alias for :meth:`SMTP.sendmail`.
        """
        return await self.sendmail(sender, recipients, message,
                                   mail_options, rcpt_options)

    async def ehlo_or_helo_if_needed(self):
        """
        Calls :meth:`SMTP.ehlo` and/or :meth:`SMTP.helo` if needed.

        If there hasn't been any previous *EHLO* or *HELO* command this
        session, tries to initiate the session. *EHLO* is tried first.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPCommandFailedError: If the server refuses our EHLO/HELO
                greeting.
        """
        no_helo = self.last_helo_response == (None, None)
        no_ehlo = self.last_ehlo_response == (None, None)

        if no_helo and no_ehlo:
            await self.hello()

    async def close(self):
        """
        Cleans up after the connection to the SMTP server has been closed
        (voluntarily or not).
        """
        if self.writer is not None:
            # Close the transport:
            try:
                self.writer.close()
            except OSError as exc:
                if exc.errno != errno.ENOTCONN:
                    raise

        self.reset_state()

    async def _auth_cram_md5(self, username, password):
        """
        Performs an authentication attemps using the CRAM-MD5 mechanism.

        Protocol:

            1. Send 'AUTH CRAM-MD5' to server ;
            2. If the server replies with a 334 return code, we can go on:

                1) The challenge (sent by the server) is base64-decoded ;
                2) The decoded challenge is hashed using HMAC-MD5 and the user
                   password as key (shared secret) ;
                3) The hashed challenge is converted to a string of lowercase
                   hexadecimal digits ;
                4) The username and a space character are prepended to the hex
                   digits ;
                5) The concatenation is base64-encoded and sent to the server.
                6) If the server replies with a return code of 235, user is
                   authenticated.

        Args:
            username (str): Identifier of the user trying to authenticate.
            password (str): Password for the user.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPAuthenticationError: If the authentication attempt fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.
        """
        mechanism = "CRAM-MD5"

        try:
            code, message = await self.do_cmd("AUTH", mechanism,
                                              success=(334,))

            decoded_challenge = base64.b64decode(message)

            challenge_hash = hmac.new(key=password.encode("utf-8"),
                                      msg=decoded_challenge,
                                      digestmod="md5")

            hex_hash = challenge_hash.hexdigest()
            response = "{} {}".format(username, hex_hash)
            encoded_response = SMTP.b64enc(response)

            code, message = await self.do_cmd(encoded_response,
                                              success=(235, 503),
                                              secret=True)
        except SMTPCommandFailedError as e:
            raise SMTPAuthenticationError(e.code, e.message, mechanism)

        return code, message

    async def _auth_login(self, username, password):
        """
        Performs an authentication attempt using the LOGIN mechanism.

        Protocol:

            1. The username is base64-encoded ;
            2. The string 'AUTH LOGIN' and a space character are prepended to
               the base64-encoded username and sent to the server ;
            3. If the server replies with a 334 return code, we can go on:

                1) The password is base64-encoded and sent to the server ;
                2) If the server replies with a 235 return code, the user is
                   authenticated.

        Args:
            username (str): Identifier of the user trying to authenticate.
            password (str): Password for the user.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPAuthenticationError: If the authentication attempt fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.
        """
        mechanism = "LOGIN"

        try:
            code, message = await self.do_cmd("AUTH", mechanism,
                                              SMTP.b64enc(username),
                                              success=(334,))

            code, message = await self.do_cmd(SMTP.b64enc(password),
                                              success=(235, 503),
                                              secret=True)
        except SMTPCommandFailedError as e:
            raise SMTPAuthenticationError(e.code, e.message, mechanism)

        return code, message

    async def _auth_plain(self, username, password):
        """
        Performs an authentication attempt using the PLAIN mechanism.

        Protocol:

            1. Format the username and password in a suitable way ;
            2. The formatted string is base64-encoded ;
            3. The string 'AUTH PLAIN' and a space character are prepended to
               the base64-encoded username and password and sent to the
               server ;
            4. If the server replies with a 235 return code, user is
               authenticated.

        Args:
            username (str): Identifier of the user trying to authenticate.
            password (str): Password for the user.

        Raises:
            ConnectionResetError: If the connection with the server is
                unexpectedely lost.
            SMTPAuthenticationError: If the authentication attempt fails.

        Returns:
            (int, str): A (code, message) 2-tuple containing the server
                response.
        """
        mechanism = "PLAIN"

        credentials = "\0{}\0{}".format(username, password)
        encoded_credentials = SMTP.b64enc(credentials)

        try:
            code, message = await self.do_cmd("AUTH", mechanism,
                                              encoded_credentials,
                                              success=(235, 503),
                                              secret=True)
        except SMTPCommandFailedError as e:
            raise SMTPAuthenticationError(e.code, e.message, mechanism)

        return code, message

    @staticmethod
    def parse_esmtp_extensions(message):
        """
        Parses the response given by an ESMTP server after a *EHLO* command.

        The response is parsed to build:

        - A dict of supported ESMTP extensions. Names and parameters are
          uppercased, extensions without parameter are associated with True.
        - A list of supported authentication methods.

        The first line of the response (the server greeting) is ignored.

        Returns:
            (dict, list): A (extensions, auth_mechanisms) 2-tuple containing
                the supported extensions and authentication methods.
        """
        extns = {}
        auths = []

        oldstyle_auth_regex = re.compile(r"auth=(?P<auth>.*)", re.IGNORECASE)

        extension_regex = re.compile(r"(?P<feature>[a-z0-9][a-z0-9\-]*) ?",
                                     re.IGNORECASE)

        lines = message.splitlines()

        for line in lines[1:]:
            # To be able to communicate with as many SMTP servers as possible,
            # we have to take the old-style auth advertisement into account.
            match = oldstyle_auth_regex.match(line)

            if match:
                for auth in match.group("auth").upper().split():
                    if auth not in auths:
                        auths.append(auth)

                continue

            # RFC 1869 requires a space between EHLO keyword and parameters.
            # Note that the space isn't present if there are no parameters.
            match = extension_regex.match(line)

            if match:
                feature = match.group("feature").upper()
                params = match.string[match.end("feature"):].strip().upper()

                extns[feature] = params or True

                if feature == "AUTH":
                    for auth in params.split():
                        if auth not in auths:
                            auths.append(auth)

        if auths and "AUTH" not in extns:
            extns["AUTH"] = " ".join(auths)

        return extns, auths

    @staticmethod
    def prepare_message(message):
        """
        Returns the given message in a format suitable for SMTP transmission:

        - Makes sure the message is bytes (:obj:`str` messages are
          UTF-8 encoded) ;
        - Normalizes line endings to '\\r\\n' ;
        - Adds a (second) period at the beginning of lines that start
          with a period ;
        - Makes sure the message ends with '\\r\\n'.

        The end of data marker isn't added: it is sent as a separate command.

        For further details, please check out RFC 5321 `§ 4.1.1.4`_
        and `§ 4.5.2`_.

        .. _`§ 4.1.1.4`: https://tools.ietf.org/html/rfc5321#section-4.1.1.4
        .. _`§ 4.5.2`: https://tools.ietf.org/html/rfc5321#section-4.5.2
        """
        if isinstance(message, bytes):
            bytes_message = message
        else:
            bytes_message = message.encode("utf-8")

        lines = []

        for line in bytes_message.splitlines():
            if line.startswith(b"."):
                line = b"." + line

            lines.append(line)

        # Recompose the message with <CRLF> only:
        bytes_message = b"\r\n".join(lines)

        # Make sure message ends with <CRLF>:
        bytes_message += b"\r\n"

        return bytes_message

    @staticmethod
    def b64enc(s):
        """
        Base64-encodes the given string and returns it as a :obj:`str`.

        This is a simple helper function that takes a str, base64-encodes it
        and returns it as str.
        :mod:`base64` functions are working with :obj:`bytes`, hence this func.

        Args:
            s (str): String to be converted to base64.

        Returns:
            str: A base64-encoded string.
        """
        return base64.b64encode(s.encode("utf-8")).decode("utf-8")

    @staticmethod
    def b64dec(b):
        """
        Base64-decodes the given :obj:`bytes` and converts it to a :obj:`str`.

        Args:
            b (bytes): A base64-encoded bytes.

        Returns:
            str: A base64-decoded string.
        """
        return base64.b64decode(b).decode("utf-8")


class SMTP_SSL(SMTP):
    """
    SMTP or ESMTP client over an SSL channel (implicit TLS).

    Attributes:
        ssl_context (:class:`ssl.SSLContext`): SSL context to use to establish
            the connection with the SMTP server. A
            :class:`OpenSSL.SSL.Context` if aioopenssl is used.

    .. seealso: :class:`SMTP`
    """
    _default_port = 465
    _implicit_tls = True

    def __init__(self, hostname="localhost", port=None, fqdn=None,
                 context=None, **kwargs):
        """
        Initializes a new :class:`SMTP_SSL` instance.

        Sets a real SSL context. If given ``context`` is None, tries to
        create a suitable context.

        Also default port in this case is *465*.

        .. seealso:: :meth:`SMTP.__init__`
        """
        kwargs["starttls"] = False
        super().__init__(hostname, port, fqdn, **kwargs)

        if context is None:
            if self.use_aioopenssl:
                context = self._openssl_context()
            else:
                context = ssl.create_default_context()

        self.ssl_context = context
