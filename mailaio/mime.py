#!/usr/bin/env python
# coding: utf-8

"""
MIME parts.

RFC 2045 (MIME format of message bodies), RFC 2046 (media types) and
RFC 5322 § 2.1.1 (line length limits).
"""

import base64
import binascii
import hashlib
import os
import re
import time

from mailaio.headers import Headers
from mailaio.utils import normalize_newlines, wordwrap


# Multipart entities are restricted to these encodings (RFC 2045 § 6.4).
MULTIPART_ENCODINGS = ("7bit", "8bit", "binary")
LEAF_ENCODINGS = MULTIPART_ENCODINGS + ("quoted-printable", "base64")

# RFC 5322 § 2.1.1: a line MUST NOT be longer than 998 characters, and
# SHOULD NOT be longer than 78 characters, excluding the CRLF.
MAX_LINE_LENGTH = 998
TEXT_LINE_LENGTH = 78
BASE64_LINE_LENGTH = 76

LONG_LINE_REGEX = re.compile(rb"[^\r\n]{%d}" % (MAX_LINE_LENGTH + 1))


class MimePart:
    """
    A node of a MIME tree.

    A part without subparts is a leaf holding a body; a part with subparts
    is a multipart entity whose own body, if any, is used as preamble.

    Parts are serialized on demand and nothing is cached: headers, body and
    subparts may be modified between two serializations.

    Attributes:
        body (bytes or str or None): Content of the part. :obj:`str` bodies
            are encoded using the ``charset`` parameter of the Content-Type
            header (UTF-8 if missing).
        subparts (list of :class:`MimePart`): Children of this part.
        wraptext (bool): Whether text (7bit/8bit) bodies are wrapped at 78
            columns. Defaults to True.
    """
    def __init__(self, body=None, headers=None):
        """
        Initializes a new :class:`MimePart` instance.

        Args:
            body (bytes or str or None): Content of the part.
            headers (dict or None): Initial headers.
        """
        self._headers = Headers(headers)
        self.body = body
        self.subparts = []
        self.wraptext = True

    @property
    def headers(self):
        """
        :class:`~mailaio.headers.Headers` of this part.
        """
        return self._headers

    @property
    def encoding(self):
        """
        Content-Transfer-Encoding of this part, lowercased. Defaults to
        '7bit'.
        """
        header = self._headers.get("Content-Transfer-Encoding")

        if header is None:
            return "7bit"

        return header.value.strip().lower()

    @encoding.setter
    def encoding(self, value):
        self._headers.set("Content-Transfer-Encoding", value)

    def add_subpart(self, subpart):
        """
        Adds one or several subparts to this part.

        Args:
            subpart (MimePart or list of MimePart): Part(s) to add.
        """
        if isinstance(subpart, (list, tuple)):
            self.subparts.extend(subpart)
        else:
            self.subparts.append(subpart)

    def is_multipart(self):
        """
        Tells whether this part has subparts.
        """
        return len(self.subparts) > 0

    def _body_bytes(self):
        """
        Returns the body as bytes.
        """
        body = self.body

        if body is None:
            return b""

        if isinstance(body, str):
            charset = "utf-8"
            content_type = self._headers.get("Content-Type")

            if content_type is not None:
                charset = content_type.param("charset") or charset

            body = body.encode(charset)

        return bytes(body)

    @staticmethod
    def make_boundary():
        """
        Returns a new, very likely unique, boundary string.
        """
        seed = "{}{}".format(time.time(), os.urandom(16).hex())

        return "--=_Part_" + hashlib.md5(seed.encode("ascii")).hexdigest()

    def as_bytes(self):
        """
        Serializes this part, headers included.

        Encoding decisions are made here:

        1. The encoding is read from the Content-Transfer-Encoding header. An
           encoding that isn't allowed for this kind of part is dropped
           (multipart entities only accept 7bit, 8bit and binary).
        2. A multipart entity gets a new boundary, checked against the
           content of its subparts, and its subparts are serialized in turn.
        3. A leaf gets its line endings normalized (7bit, 8bit and
           quoted-printable), its text wrapped (7bit and 8bit, if
           :attr:`wraptext` is set). If a line is still longer than 998
           bytes, the encoding is escalated to base64 (binary data) or
           quoted-printable (anything else) and the header updated
           accordingly.

        Returns:
            bytes: The serialized part.
        """
        if self._headers.get("Content-Type") is None:
            self._headers.set("Content-Type", "application/octet-stream")

        encoding = self.encoding

        if self.is_multipart():
            allowed = MULTIPART_ENCODINGS
        else:
            allowed = LEAF_ENCODINGS

        if encoding not in allowed:
            self._headers.remove("Content-Transfer-Encoding")
            encoding = "7bit"

        if self.is_multipart():
            body = self._multipart_body()
        else:
            body, final_encoding = self._encode_body(self._body_bytes(),
                                                     encoding)

            if final_encoding != encoding:
                self.encoding = final_encoding

        return bytes(self._headers) + b"\r\n" + body

    def __bytes__(self):
        return self.as_bytes()

    def _multipart_body(self):
        """
        Builds the body of a multipart entity.
        """
        subparts = [subpart if isinstance(subpart, bytes) else bytes(subpart)
                    for subpart in self.subparts]

        boundary = MimePart.make_boundary()

        while any(boundary.encode("ascii") in subpart for subpart in subparts):
            boundary = MimePart.make_boundary()

        self._headers.get("Content-Type").param("boundary", boundary)
        delimiter = b"--" + boundary.encode("ascii")

        body = normalize_newlines(self._body_bytes())

        if body:
            body += b"\r\n\r\n"

        for subpart in subparts:
            body += delimiter + b"\r\n" + subpart + b"\r\n"

        body += delimiter + b"--\r\n"

        return body

    def _encode_body(self, body, encoding):
        """
        Encodes a leaf body.

        Returns:
            (bytes, str): A (body, encoding) 2-tuple containing the encoded
                body and the encoding that was actually used.
        """
        if encoding in ("7bit", "8bit", "quoted-printable"):
            body = normalize_newlines(body)

        if encoding in ("7bit", "8bit", "binary"):
            text = body

            if encoding != "binary" and self.wraptext:
                text = b"\r\n".join(wordwrap(line, TEXT_LINE_LENGTH, b"\r\n")
                                    for line in text.split(b"\r\n"))

            if LONG_LINE_REGEX.search(text) is None:
                return text, encoding

            # Escalate, the new encoding handles line lengths by itself:
            if encoding == "binary":
                encoding = "base64"
            else:
                encoding = "quoted-printable"
                body = normalize_newlines(body)

        if encoding == "quoted-printable":
            # Hard line breaks are CRLF already. Soft line breaks use a lone
            # LF when the body has no line ending at all.
            encoded = binascii.b2a_qp(body, istext=True)

            return normalize_newlines(encoded), encoding

        encoded = base64.b64encode(body)
        lines = [encoded[i:i + BASE64_LINE_LENGTH]
                 for i in range(0, len(encoded), BASE64_LINE_LENGTH)]

        return b"\r\n".join(lines), encoding
