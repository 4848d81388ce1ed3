#!/usr/bin/env python
# coding: utf-8

"""
E-mail composition.

:class:`Email` gathers the message headers, the text and HTML bodies and the
attachments, and assembles them into a MIME tree when the message is
serialized.
"""

import copy
import logging
import mimetypes
import os
import re
import socket
from email.utils import formatdate, make_msgid

from mailaio.exceptions import MessageError
from mailaio.headers import Header, Headers
from mailaio.mime import MimePart
from mailaio.utils import clear_address_list, normalize_newlines


logger = logging.getLogger(__name__)

MULTIPART_NOTICE = "This is a multi-part message in MIME format."

HEADER_SPLIT_REGEX = re.compile(rb"\r\n(?![\t ])")


class Envelope:
    """
    SMTP envelope of a message: the reverse-path and the forward-paths given
    to the *MAIL* and *RCPT* commands.

    The envelope is distinct from the ``From``, ``To``, ``Cc`` and ``Bcc``
    headers: ``Bcc`` recipients are part of the envelope but not of the
    transmitted message.

    Attributes:
        sender (str): Envelope sender address. May be empty (null
            reverse-path).
        recipients (list of str): Envelope recipient addresses, without
            duplicates, in order of appearance.
    """
    def __init__(self, sender, recipients):
        self.sender = sender or ""
        self.recipients = []

        for recipient in recipients:
            if recipient not in self.recipients:
                self.recipients.append(recipient)

    @classmethod
    def from_email(cls, email):
        """
        Builds the envelope of the given :class:`Email`, from its sender and
        its ``To``, ``Cc`` and ``Bcc`` headers.
        """
        recipients = []

        for name in ("To", "Cc", "Bcc"):
            for header in email.headers.get_all(name):
                recipients.extend(clear_address_list(header.value))

        return cls(email.get_sender(), recipients)

    def __repr__(self):
        return "<Envelope {!r} -> {!r}>".format(self.sender, self.recipients)


class Email:
    """
    An e-mail message.

    Headers are stored in a :class:`~mailaio.headers.Headers` block seeded
    with the usual header names, so that they're rendered in a conventional
    order whatever the order they are set in.

    The MIME structure is only built at serialization time (see
    :meth:`Email.as_bytes`), on a copy of the message: serializing never
    modifies the message.

    Attributes:
        charset (str): Default charset of the message. Defaults to 'UTF-8'.
        hostname (str): Host name used to build the Message-ID and the
            Content-ID of embedded parts.
        text_part (MimePart or None): Plain text body.
        html_part (MimePart or None): HTML body.
        attachments (list of MimePart): Attached files.
    """
    PRIORITY_HIGHEST = 1
    PRIORITY_HIGH = 2
    PRIORITY_NORMAL = 3
    PRIORITY_LOW = 4
    PRIORITY_LOWEST = 5

    def __init__(self, charset="UTF-8", hostname=None):
        """
        Initializes a new :class:`Email` instance.

        Args:
            charset (str): Default charset of the message.
            hostname (str or None): Host name for the generated identifiers.
                Defaults to the local host name.
        """
        self._headers = Headers({
            "Return-Path": "",
            "Date": "",
            "From": "",
            "Sender": "",
            "Reply-To": "",
            "To": "",
            "Cc": "",
            "Bcc": "",
            "Subject": "",
            "Message-ID": "",
            "MIME-Version": "",
        })

        self.charset = charset
        self.hostname = hostname or socket.gethostname() or "localhost"

        self._sender = ""
        self.text_part = None
        self.html_part = None
        self.attachments = []

        # Body of a loaded message, kept as is.
        self._raw_body = None

    @property
    def headers(self):
        """
        :class:`~mailaio.headers.Headers` of the message.
        """
        return self._headers

    def _format_address(self, header_name, email, name=None):
        email = email.strip()

        if name:
            name = Header.encode(header_name, name, self.charset, "phrase")
            email = "{} <{}>".format(name, email)

        return email

    def set_from(self, email, name=None):
        """
        Sets the author of the message.

        The address is also used as envelope sender and, if none is set
        yet, as Return-Path.

        Args:
            email (str): Author address.
            name (str or None): Author display name.
        """
        self._sender = email.strip()

        if self._headers.get("Return-Path") is None:
            self.set_return_path(self._sender)

        self._headers.set("From", self._format_address("From", email, name))

    def get_sender(self):
        """
        Returns the envelope sender address: the address given to
        :meth:`Email.set_from` or, failing that, the first address of the
        Return-Path, Sender or From header.

        Returns:
            str: Sender address, or an empty string.
        """
        if self._sender:
            return self._sender

        for name in ("Return-Path", "Sender", "From"):
            header = self._headers.get(name)

            if header is None or isinstance(header, list):
                continue

            addresses = clear_address_list(header.value)

            if addresses:
                return addresses[0]

        return ""

    def add_recipient(self, email, name=None):
        """
        Adds a recipient to the To header.
        """
        self._add_recipient(email, name, "To")

    def add_cc_recipient(self, email, name=None):
        """
        Adds a recipient to the Cc header.
        """
        self._add_recipient(email, name, "Cc")

    def add_bcc_recipient(self, email):
        """
        Adds a blind carbon copy recipient.

        Bcc recipients are stripped from the transmitted message.
        """
        self._add_recipient(email, None, "Bcc")

    def _add_recipient(self, email, name, header_name):
        email = self._format_address(header_name, email, name)
        header = self._headers.get(header_name)

        if header is None:
            self._headers.set(header_name, email)
        else:
            header.append(", " + email)

    def has_recipients(self):
        """
        Tells whether at least one recipient is set (To, Cc or Bcc).
        """
        return any(name in self._headers for name in ("To", "Cc", "Bcc"))

    def clear_recipients(self):
        """
        Removes all the recipients.
        """
        for name in ("To", "Cc", "Bcc"):
            self._headers.remove(name)

    def set_reply_to(self, email=None, name=None):
        """
        Sets the Reply-To header. Defaults to the From header value.
        """
        if email:
            email = self._format_address("Reply-To", email, name)
        else:
            header = self._headers.get("From")

            if header is None:
                raise MessageError("Cannot set Reply-To: From isn't set.")

            email = header.value

        self._headers.set("Reply-To", email)

    def set_notify(self, email=None):
        """
        Requests a read notification, sent to the given address (defaults
        to the sender).
        """
        self._headers.add("Disposition-Notification-To",
                          "<{}>".format((email or self._sender).strip()))

    def set_return_path(self, email=None):
        """
        Sets the address bounces are sent to (defaults to the sender).
        """
        self._headers.set("Return-Path",
                          "<{}>".format((email or self._sender).strip()))

    def set_priority(self, priority):
        """
        Sets the X-Priority header (see the ``PRIORITY_*`` constants).
        """
        if str(priority).isdigit():
            self._headers.set("X-Priority", priority)

    def set_organization(self, organization):
        self._headers.set("Organization",
                          Header.encode("Organization", organization,
                                        self.charset))

    def set_subject(self, subject):
        self._headers.set("Subject",
                          Header.encode("Subject", subject, self.charset))

    def _text_part(self, message, content_type, charset):
        if charset is None:
            charset = self.charset

        part = MimePart(message)
        part.headers.set("Content-Type", content_type)
        part.headers.get("Content-Type").param("charset", charset)

        if isinstance(message, str):
            ascii_only = message.isascii()
        else:
            ascii_only = bytes(message).isascii()

        # Bare 7bit is the default encoding:
        if not ascii_only:
            part.encoding = "8bit"

        self._raw_body = None

        return part

    def set_text_body(self, message, charset=None):
        """
        Sets the plain text body.

        Args:
            message (str or bytes): The body.
            charset (str or None): Charset of the body. Defaults to
                :attr:`charset`.

        Returns:
            MimePart: The text part.
        """
        self.text_part = self._text_part(message, "text/plain", charset)

        return self.text_part

    def remove_text_body(self):
        self.text_part = None

    def set_html_body(self, message, charset=None):
        """
        Sets the HTML body.

        Images embedded with :meth:`Email.attach_from_string` (or
        :meth:`Email.attach`) can be referenced with ``cid:<file name>`` URLs
        (``<img src="cid:logo.png">``).

        Args:
            message (str or bytes): The body.
            charset (str or None): Charset of the body. Defaults to
                :attr:`charset`.

        Returns:
            MimePart: The HTML part.
        """
        self.html_part = self._text_part(message, "text/html", charset)

        return self.html_part

    def remove_html_body(self):
        self.html_part = None

    def attach(self, filename, name=None, content_type=None,
               disposition=None):
        """
        Attaches a file to the message.

        Args:
            filename (str): Path to the file.
            name (str or None): File name shown to the recipient. Defaults to
                the base name of ``filename``.
            content_type (str or None): MIME type of the file. Guessed from
                the file name if not given.
            disposition (str or None): 'inline' or 'attachment' (default).

        Raises:
            MessageError: If the file can't be read.

        Returns:
            MimePart: The attachment part.
        """
        try:
            with open(filename, "rb") as f:
                data = f.read()
        except OSError as e:
            raise MessageError("Cannot read file '{}'".format(filename)) from e

        if not name:
            name = filename

        if not content_type:
            content_type, _ = mimetypes.guess_type(filename)

        return self.attach_from_string(data, name,
                                       content_type or "application/octet-stream",
                                       disposition)

    def attach_from_string(self, data, name,
                           content_type="application/octet-stream",
                           disposition=None):
        """
        Attaches the given data to the message, as a file.

        Args:
            data (bytes or str): File content.
            name (str): File name shown to the recipient.
            content_type (str): MIME type of the data.
            disposition (str or None): 'inline' or 'attachment' (default).

        Returns:
            MimePart: The attachment part.
        """
        if disposition != "inline":
            disposition = "attachment"

        name = os.path.basename(name)

        if isinstance(data, str):
            data = data.encode(self.charset)

        attachment = MimePart(data)
        attachment.headers.set("Content-Type", content_type)
        attachment.headers.get("Content-Type").param("name", name)
        attachment.headers.set("Content-Disposition", disposition)
        attachment.headers.get("Content-Disposition").param("filename", name)
        attachment.headers.get("Content-Disposition").param("size", len(data))
        attachment.encoding = "base64"

        self.attachments.append(attachment)
        self._raw_body = None

        return attachment

    def remove_attachments(self):
        self.attachments = []

    def copy(self):
        """
        Returns a deep copy of the message: headers, bodies and attachments
        included.
        """
        return copy.deepcopy(self)

    def _make_id(self):
        """
        Returns a new unique identifier, usable as Message-ID or Content-ID.
        """
        return make_msgid(domain=self.hostname)

    def _embed(self, html_part, attachments):
        """
        Looks for attachments referenced in the HTML body with a
        ``cid:<file name>`` URL.

        Referenced attachments get a Content-ID and the references are
        rewritten to use it. Attachments that already have a Content-ID are
        embedded too.

        Returns:
            (list, list): An (embedded, remaining) 2-tuple of attachment
                lists.
        """
        body = html_part.body

        if isinstance(body, bytes):
            charset = html_part.headers.get("Content-Type").param("charset")
            body = body.decode(charset or "utf-8")

        embedded = []
        remaining = []

        for attachment in attachments:
            if attachment.headers.get("Content-ID") is None:
                name = attachment.headers.get("Content-Type").param("name")
                regexp = re.compile(r"<([^>]+=\s*)([\"'])cid:"
                                    + re.escape(name or "")
                                    + r"\2([^>]*)>")

                if not name or regexp.search(body) is None:
                    remaining.append(attachment)
                    continue

                cid = self._make_id()[1:-1]
                body = regexp.sub(
                    lambda m: "<{}{}cid:{}{}{}>".format(m.group(1), m.group(2),
                                                        cid, m.group(2),
                                                        m.group(3)),
                    body)
                attachment.headers.set("Content-ID", "<{}>".format(cid))

            embedded.append(attachment)

        html_part.body = body

        return embedded, remaining

    def build(self):
        """
        Assembles the MIME tree of the message.

        - Text and HTML bodies are grouped in a *multipart/alternative* part ;
        - Attachments referenced from the HTML body are grouped with it in a
          *multipart/related* part ;
        - Remaining attachments are grouped with the whole in a
          *multipart/mixed* part.

        The message isn't modified: the tree is built from copies.

        Returns:
            MimePart or None: The root part, None if the message has no body
                at all.
        """
        text_part = copy.deepcopy(self.text_part)
        html_part = copy.deepcopy(self.html_part)
        attachments = copy.deepcopy(self.attachments)

        root = None

        if html_part is not None:
            root = html_part

            if text_part is not None:
                root = MimePart()
                root.add_subpart([text_part, html_part])
                root.headers.set("Content-Type", "multipart/alternative")

            embedded, attachments = self._embed(html_part, attachments)

            if embedded:
                related = MimePart()
                related.add_subpart(root)
                related.add_subpart(embedded)
                related.headers.set("Content-Type", "multipart/related")
                related.headers.get("Content-Type").param(
                    "type", root.headers.get("Content-Type").value)
                root = related
        elif text_part is not None:
            root = text_part

        if attachments:
            if root is not None:
                mixed = MimePart()
                mixed.headers.set("Content-Type", "multipart/mixed")
                mixed.add_subpart(root)
                mixed.add_subpart(attachments)
            elif len(attachments) == 1:
                mixed = attachments[0]
            else:
                mixed = MimePart()
                mixed.headers.set("Content-Type", "multipart/mixed")
                mixed.add_subpart(attachments)

            root = mixed

        # The body of a multipart entity is only seen by clients that don't
        # understand MIME:
        if root is not None and root.is_multipart():
            root.body = MULTIPART_NOTICE

        return root

    def as_bytes(self):
        """
        Serializes the message.

        Date, MIME-Version and Message-ID headers are added if missing. The
        message itself isn't modified.

        Returns:
            bytes: The message, ready to be sent.
        """
        headers = copy.deepcopy(self._headers)

        if headers.get("Date") is None:
            headers.set("Date", formatdate(localtime=True))

        headers.set("MIME-Version", "1.0")

        if headers.get("Message-ID") is None:
            headers.set("Message-ID", self._make_id())

        if self._raw_body is not None:
            return bytes(headers) + self._raw_body

        root = self.build()

        if root is None:
            # The body of a message is optional (RFC 5322 § 3.5).
            return bytes(headers)

        return bytes(headers) + bytes(root)

    def __bytes__(self):
        return self.as_bytes()

    def __str__(self):
        return self.as_bytes().decode("utf-8", errors="replace")

    def save(self, filename):
        """
        Writes the serialized message to the given file.

        Raises:
            MessageError: If the file can't be written.
        """
        try:
            with open(filename, "wb") as f:
                f.write(self.as_bytes())
        except OSError as e:
            raise MessageError("Cannot write file '{}'".format(filename)) from e

    @classmethod
    def from_bytes(cls, raw):
        """
        Builds a message from its serialized form.

        Only the top-level headers are parsed: the body (MIME headers of the
        root part included) is kept as is.

        Args:
            raw (bytes or str): The serialized message.

        Returns:
            Email: The message.
        """
        if isinstance(raw, str):
            raw = raw.encode("utf-8")

        raw = normalize_newlines(raw)
        head, sep, body = raw.partition(b"\r\n\r\n")

        email = cls()

        for line in HEADER_SPLIT_REGEX.split(head):
            # Skips the mbox "From " line, if any:
            if b":" not in line:
                continue

            name, value = line.split(b":", 1)

            try:
                email.headers.add(name.decode("ascii").strip(),
                                  value.decode("utf-8", errors="replace").strip())
            except (UnicodeDecodeError, ValueError):
                logger.warning("Invalid header line skipped: %r", line)

        email._raw_body = b"\r\n" + body if sep else b""

        return email

    @classmethod
    def load(cls, filename):
        """
        Reads a message from a file (see :meth:`Email.from_bytes`).

        Raises:
            MessageError: If the file can't be read.
        """
        try:
            with open(filename, "rb") as f:
                raw = f.read()
        except OSError as e:
            raise MessageError("Cannot read file '{}'".format(filename)) from e

        return cls.from_bytes(raw)
