__version__ = "1.0.0"

from .dkim import DkimSigner
from .exceptions import (
    BadImplementationError,
    DeliveryError,
    DkimWarning,
    HeaderError,
    HeaderWarning,
    MailError,
    MessageError,
    SMTPAuthenticationError,
    SMTPCommandFailedError,
    SMTPCommandNotSupportedError,
    SMTPException,
    SMTPLoginError,
    SMTPMessageTooLargeError,
    SMTPNoRecipientError,
    SMTPTimeoutError,
    SMTPTLSError,
)
from .headers import Header, Headers
from .message import Email, Envelope
from .mime import MimePart
from .smtp import SMTP, SMTP_SSL
from .transport import (
    HandlerTransport,
    SendmailTransport,
    SMTPTransport,
    Transport,
    get_transport,
)

__all__ = (
    "SMTP",
    "SMTP_SSL",
    "Email",
    "Envelope",
    "Header",
    "Headers",
    "MimePart",
    "DkimSigner",
    "Transport",
    "SendmailTransport",
    "SMTPTransport",
    "HandlerTransport",
    "get_transport",
    "BadImplementationError",
    "SMTPException",
    "SMTPLoginError",
    "SMTPNoRecipientError",
    "SMTPCommandNotSupportedError",
    "SMTPTimeoutError",
    "SMTPTLSError",
    "SMTPMessageTooLargeError",
    "SMTPCommandFailedError",
    "SMTPAuthenticationError",
    "MailError",
    "HeaderError",
    "MessageError",
    "DeliveryError",
    "HeaderWarning",
    "DkimWarning",
)
