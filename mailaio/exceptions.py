#!/usr/bin/env python
# coding: utf-8

"""
Exception and warning classes used in mailaio package.

The exhaustive hierarchy of exceptions that might be raised in the mailaio
package is as follows:

    BaseException
      |
      + Exception
          |
          + SMTPException
          |   |
          |   + SMTPLoginError
          |   + SMTPNoRecipientError
          |   + SMTPCommandNotSupportedError
          |   + SMTPTimeoutError
          |   + SMTPTLSError
          |   + SMTPMessageTooLargeError
          |   + SMTPCommandFailedError
          |       |
          |       + SMTPAuthenticationError
          |
          + BadImplementationError
          |
          + MailError
          |   |
          |   + HeaderError (also a ValueError)
          |   + MessageError
          |   + DeliveryError
          |
          + OSError
          |   |
          |   + ConnectionError
          |       |
          |       + ConnectionRefusedError
          |       + ConnectionResetError
          |
          + Warning
              |
              + UserWarning
                  |
                  + HeaderWarning
                  + DkimWarning

SMTP errors are fatal to the current session. Warnings are advisory: they
are emitted through :mod:`warnings` and never abort message construction.

We made our best to document methods docstrings so you should be able to know
what exceptions a method can raise by reading the method docstring.
"""


class BadImplementationError(Exception):
    """
    Raised when the client is used in a way it doesn't support: trying to
    use STARTTLS with a connection using the regular ssl module, or opening
    a connection while another one is still open.
    """


class SMTPException(Exception):
    """
    Base class for all exceptions related to the SMTP client.

    Attributes:
        message (str): Exception message, ideally providing help for the user.

    .. note:: You SHOULD NOT use this class directly. Instead, you should
        subclass it or use one of the existing subclasses provided in this
        module.
    """
    def __init__(self, message=None):
        """
        Initializes a new instance of SMTPException.

        Args:
            message (str): Exception message.
        """
        super().__init__(message)
        self.message = message

    def __str__(self):
        """
        """
        return str(self.message)


class SMTPLoginError(SMTPException):
    """
    Raised when the client couldn't authenticate to the server.

    Attributes:
        exceptions (list of :obj:`SMTPAuthenticationError`): List of
            exceptions that were raised and that conducted to this exception
            being raised.

    Inherited attributes:
        message: (str): Exception message, ideally providing help for the user.
    """
    def __init__(self, excs):
        """
        Initializes a new instance of SMTPLoginError.

        Args:
            excs (list of :obj:`SMTPAuthenticationError`): List of exceptions
                that were raised and that conducted to this exceptions being
                raised.
        """
        super().__init__("Login failed:\n  {}")
        self.exceptions = excs

    def __str__(self):
        """
        """
        exceptions_str = "\n  ".join([str(e) for e in self.exceptions])

        return self.message.format(exceptions_str)


class SMTPNoRecipientError(SMTPException):
    """
    Raised when the server refuses all recipients addresses.

    Attributes:
        exceptions (list of :obj:`SMTPCommandFailedError`): List of
            exceptions that were raised, caught and that originated this
            exception.

    .. seealso:: :meth:`mailaio.smtp.SMTP.sendmail` source code.
    """
    def __init__(self, excs):
        """
        Initializes a new instance of SMTPNoRecipientError.

        Args:
            excs (list of :obj:`SMTPCommandFailedError`): List of
                exceptions that were raised, caught and that originated this
                exception.
        """
        super().__init__("Could not send e-mail:\n  {}")
        self.exceptions = excs

    def __str__(self):
        """
        """
        exceptions_str = "\n  ".join([str(e) for e in self.exceptions])

        return self.message.format(exceptions_str)


class SMTPCommandNotSupportedError(SMTPException):
    """
    Raised when we need an ESMTP extension the server doesn't advertise
    (e.g. *STARTTLS* or *AUTH*).
    """


class SMTPTimeoutError(SMTPException):
    """
    Raised when the server didn't answer (or didn't accept our data) in the
    allotted time.

    The connection is closed before this exception is raised: the session
    can't be used anymore and the caller has to reconnect.
    """


class SMTPTLSError(SMTPException):
    """
    Raised when the TLS negotiation fails after the server accepted our
    *STARTTLS* command.

    The connection is closed before this exception is raised.
    """


class SMTPMessageTooLargeError(SMTPException):
    """
    Raised before the *DATA* command when the message is larger than the
    maximal size advertised by the server (*SIZE* extension, RFC 1870).
    """


class SMTPCommandFailedError(SMTPException):
    """
    Raised when a command fails.

    Attributes:
        code (int): Error code returned by the SMTP server.
        command (str): Command sent to the server that originated the
            exception.

    Inherited attributes:
        message (str): Server response text, as returned by the server.
    """
    def __init__(self, code, message=None, command=None):
        """
        Initializes a new instance of SMTPCommandFailedError.

        Args:
            code (int): Error code returned by the SMTP server.
            message (str): Server response text.
            command (str): Command sent to the server that originated the
                exception.
        """
        super().__init__(message)
        self.code = code
        self.command = command

    def __str__(self):
        """
        """
        s = "Command \"{}\" failed : [{}] {}"

        return s.format(self.command, self.code, self.message)


class SMTPAuthenticationError(SMTPCommandFailedError):
    """
    Raised when the server rejects our authentication attempt.

    Attributes:
        mechanism (str): Name of the mechanism used to authenticate.

    Inherited attributes:
        message (str): Server response text.
        code (int): Error code returned by the SMTP server.
        command (str): Command sent to the server that originated the
            exception.
   """
    def __init__(self, code, message=None, mechanism=None):
        """
        """
        super().__init__(code, message, "AUTH")
        self.mechanism = mechanism

    def __str__(self):
        """
        """
        s = "Authentication failed"

        if self.mechanism:
            s += " using {} mechanism".format(self.mechanism)

        s += ". [{}] {}".format(self.code, self.message)

        return s


class MailError(Exception):
    """
    Base class for errors raised while building or handing over a message.
    """


class HeaderError(MailError, ValueError):
    """
    Raised when a header field name contains forbidden characters.
    """


class MessageError(MailError):
    """
    Raised when a message can't be sent as it is (no sender, no recipient,
    unreadable attachment, ...).
    """


class DeliveryError(MailError):
    """
    Raised when a non-SMTP delivery fails (local MTA exit status, missing
    handler, ...).
    """


class HeaderWarning(UserWarning):
    """
    Emitted when a header value or parameter had to be altered or dropped.
    """


class DkimWarning(UserWarning):
    """
    Emitted when a DKIM signature can't be produced, or when a DKIM tag
    value is rejected. The message remains sendable without a signature.
    """
