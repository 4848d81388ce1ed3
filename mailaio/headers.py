#!/usr/bin/env python
# coding: utf-8

"""
Header fields and header blocks.

RFC 5322 (Internet Message Format), RFC 2045 (MIME token grammar),
RFC 2047 (encoded-words) and RFC 2231 (parameter values).
"""

import base64
import logging
import re
import warnings
from urllib.parse import quote

from mailaio.exceptions import HeaderError, HeaderWarning
from mailaio.utils import wordwrap


logger = logging.getLogger(__name__)

NAME_FORBIDDEN_REGEX = re.compile(r"[^\x21-\x39\x3B-\x7E]")
WHITESPACE_REGEX = re.compile(r"[ \t\r\n\x0b\x0c]+")
# token := 1*<any (US-ASCII) CHAR except SPACE, CTLs, or tspecials>
NON_TOKEN_REGEX = re.compile(r"[^\x21\x23-\x27\x2A\x2B\x2D\x2E\x30-\x39"
                             r"\x41-\x5A\x5E-\x7E]")
NON_ATOM_REGEX = re.compile(r"[^A-Za-z0-9!#$%&'*+/=?^_`{|}~-]")
NON_PRINTABLE_REGEX = re.compile(r"[\x00-\x1F\x7F-\U0010FFFF]")
PARAM_REGEX = re.compile(
    r"\s*([\x21-\x39\x3B\x3C\x3E-\x7E]+)\s*=\s*"
    r"(?:\"((?:[^\"\\]|\\.)*)\"|([^;]*))\s*(?:;|$)")

PARAMETERIZED_HEADERS = ("Content-Type", "Content-Disposition")

# Maximal length of an encoded-word (RFC 2047 § 2).
ENCODED_WORD_MAX_LENGTH = 75
# Bytes that must be escaped in a "Q" encoded-word, besides controls and
# non US-ASCII bytes.
Q_SPECIALS = {
    "text": b":=?_",
    "comment": b":=?_\"()",
    "phrase": b"\"#$%&'(),.:;<=>?@[\\]^_`{|}~",
}


class Header:
    """
    A single header field: a name, a value and optional parameters.

    Attributes:
        folding (bool): Whether the header is folded at 78 columns when
            rendered. Defaults to True.

    .. seealso:: RFC 5322 `§ 2.2`_

    .. _`§ 2.2`: https://tools.ietf.org/html/rfc5322#section-2.2
    """
    def __init__(self, name, value):
        """
        Initializes a new :class:`Header` instance.

        ``Content-Type`` and ``Content-Disposition`` values may carry their
        parameters (``text/plain; charset=utf-8``): they are split and stored
        as parameters.

        Args:
            name (str): Header name.
            value (str): Header value.

        Raises:
            HeaderError: If the name contains forbidden characters.
        """
        name = Header.valid_name(name)
        value = Header.sanitize_value(value)

        self.folding = True
        self.params = {}

        if name in PARAMETERIZED_HEADERS and ";" in value:
            value, params = value.split(";", 1)
            value = value.strip()

            for match in PARAM_REGEX.finditer(params):
                pname, quoted, bare = match.groups()

                if quoted is not None:
                    pvalue = re.sub(r"\\(.)", r"\1", quoted)
                else:
                    pvalue = bare.strip()

                self.param(pname, pvalue)

        self._name = name
        self._value = value

    @property
    def name(self):
        """
        Header name, in its normalized form (``Content-Type``).
        """
        return self._name

    @property
    def value(self):
        """
        Header value, without its parameters.
        """
        return self._value

    @value.setter
    def value(self, value):
        self._value = Header.sanitize_value(value)

    @staticmethod
    def valid_name(name):
        """
        Checks and normalizes a header name.

        A header name must only contain printable US-ASCII characters, except
        the colon. Each hyphen-separated word is capitalized
        (``content-type`` gives ``Content-Type``, ``MIME-Version`` is left
        as is).

        Raises:
            HeaderError: If the name contains forbidden characters.

        Returns:
            str: The normalized name.
        """
        if not name or NAME_FORBIDDEN_REGEX.search(name):
            raise HeaderError("'{}' is not a valid header name!".format(name))

        return "-".join(word[:1].upper() + word[1:]
                        for word in name.split("-"))

    @staticmethod
    def sanitize_value(value):
        """
        Collapses every whitespace run (CR and LF included) to a single space.
        """
        if value is None:
            return ""

        return WHITESPACE_REGEX.sub(" ", str(value))

    @staticmethod
    def is_token(s):
        """
        Tells whether the given string is a MIME ``token`` (RFC 2045,
        Appendix A).
        """
        return bool(s) and NON_TOKEN_REGEX.search(s) is None

    def append(self, s):
        """
        Appends the given (sanitized) string to the header value.
        """
        self._value += Header.sanitize_value(s)

    def param(self, name, value=None):
        """
        Gets or sets a header parameter.

        Setting a parameter whose name isn't a valid token is refused (a
        :class:`~mailaio.exceptions.HeaderWarning` is emitted).

        Args:
            name (str): Parameter name.
            value (str or None): New value. If None, the parameter is only
                read.

        Returns:
            str or None: The parameter value, before modification.
        """
        current = self.params.get(name)

        if value is not None:
            if current is None and not Header.is_token(name):
                msg = "Invalid parameter name '{}' dropped.".format(name)
                logger.warning(msg)
                warnings.warn(msg, HeaderWarning, stacklevel=2)
            else:
                self.params[name] = str(value)

        return current

    @staticmethod
    def encode(name, value, charset="UTF-8", token="text"):
        """
        Returns the given value in a form usable in a header.

        If the value only contains printable US-ASCII characters, it is
        returned as is, except for *phrase* and *comment* tokens containing
        characters that aren't allowed unquoted: these are returned as a
        quoted-string.

        Otherwise, the value is turned into one or more RFC 2047
        encoded-words, separated by ``\\r\\n\\t``. The "Q" encoding is used
        when less than a third of the bytes need escaping, "B" otherwise.
        Encoded-words never exceed 75 characters and never split a
        character (nor a ``=XX`` escape sequence) in two.

        Args:
            name (str): Name of the header the value is meant for. The first
                encoded-word is shortened to leave room for it.
            value (str): Value to encode.
            charset (str): Charset to encode non US-ASCII characters with.
            token (str): One of 'text', 'phrase' or 'comment'.

        Returns:
            str: The encoded value.

        .. _`RFC 2047`: https://tools.ietf.org/html/rfc2047
        """
        if not NON_PRINTABLE_REGEX.search(value):
            if token != "text" and NON_ATOM_REGEX.search(value):
                value = '"{}"'.format(value.replace("\\", "\\\\")
                                           .replace('"', '\\"'))

            return value

        specials = Q_SPECIALS.get(token, Q_SPECIALS["text"])
        chars = [c.encode(charset) for c in value]
        raw = b"".join(chars)

        escaped = sum(1 for byte in raw
                      if byte < 0x20 or byte > 0x7E or byte in specials)

        encoding = "Q" if escaped / len(raw) < 0.33 else "B"
        prefix = "=?{}?{}?".format(charset, encoding)
        max_length = ENCODED_WORD_MAX_LENGTH - len(prefix) - len("?=")

        words = []
        chunk = []
        chunk_length = 0
        room = max_length - len(name) - 1

        for char in chars:
            if encoding == "Q":
                encoded = Header._q_encode(char, specials)
                length = len(encoded)
            else:
                # The "B" encoded-text length is always a multiple of 4:
                length = (len(b"".join(chunk) + char) + 2) // 3 * 4
                length -= chunk_length

            if chunk and chunk_length + length > room:
                words.append(chunk)
                chunk = []
                chunk_length = 0
                room = max_length

                if encoding == "B":
                    length = (len(char) + 2) // 3 * 4

            chunk.append(encoded if encoding == "Q" else char)
            chunk_length += length

        words.append(chunk)

        if encoding == "Q":
            words = ["".join(word) for word in words]
        else:
            words = [base64.b64encode(b"".join(word)).decode("ascii")
                     for word in words]

        return "\r\n\t".join("{}{}?=".format(prefix, word) for word in words)

    @staticmethod
    def _q_encode(char, specials):
        """
        Encodes the bytes of a single character using the "Q" encoding.
        """
        encoded = []

        for byte in char:
            if byte == 0x20:
                encoded.append("_")
            elif byte < 0x20 or byte > 0x7E or byte in specials:
                encoded.append("={:02X}".format(byte))
            else:
                encoded.append(chr(byte))

        return "".join(encoded)

    def __str__(self):
        """
        Renders the header as ``Name: value; param=value``, folded at 78
        columns on ``\\r\\n\\t`` if :attr:`folding` is enabled.

        Parameter values that aren't tokens are quoted. Those containing non
        US-ASCII characters use the RFC 2231 extended syntax
        (``name*=UTF-8''...``).
        """
        value = self._value

        for pname, pvalue in self.params.items():
            if not pvalue:
                continue

            if not Header.is_token(pvalue):
                if NON_PRINTABLE_REGEX.search(pvalue):
                    pname += "*"
                    pvalue = "UTF-8''" + quote(pvalue.encode("utf-8"),
                                               safe="")
                else:
                    pvalue = '"{}"'.format(pvalue.replace("\\", "\\\\")
                                                 .replace('"', '\\"'))

            value += "; {}={}".format(pname, pvalue)

        value = "{}: {}".format(self._name, value)

        if self.folding:
            value = wordwrap(value, 78, "\r\n\t")

        return value

    def __repr__(self):
        return "<Header {}: {!r}>".format(self._name, self._value)


class Headers:
    """
    Ordered, case-insensitive collection of :class:`Header` objects.

    A name may occur several times (``Received``, ``DKIM-Signature``...).
    Insertion order is kept: setting an already present name keeps its
    position.
    """
    def __init__(self, headers=None):
        """
        Initializes a new :class:`Headers` instance.

        Args:
            headers (dict or None): Headers to add, name to value. Empty
                values can be used to reserve a position in the block.
        """
        self._headers = {}

        if headers:
            for name, value in headers.items():
                self.add(name, value)

    def add(self, name, value):
        """
        Adds a header. If a header with the same name already exists, the
        new one is appended after it.

        Returns:
            Header: The new header.
        """
        header = Header(name, value)
        key = header.name.lower()

        if self.get(key) is not None:
            current = self._headers[key]

            if not isinstance(current, list):
                self._headers[key] = [current]

            self._headers[key].append(header)
        else:
            self._headers[key] = header

        return header

    def set(self, name, value):
        """
        Sets a header, replacing all headers with the same name.

        Returns:
            Header: The new header.
        """
        header = Header(name, value)
        self._headers[header.name.lower()] = header

        return header

    def get(self, name):
        """
        Returns the header(s) with the given name.

        Returns:
            Header, list of Header or None: None if the header is absent or
                empty.
        """
        header = self._headers.get(name.lower())

        if header is None:
            return None

        if isinstance(header, list) or header.value != "":
            return header

        return None

    def get_all(self, name):
        """
        Returns the non-empty headers with the given name, as a list.
        """
        header = self.get(name)

        if header is None:
            return []

        if not isinstance(header, list):
            return [header]

        return [h for h in header if h.value != ""]

    def remove(self, name):
        """
        Removes all headers with the given name.
        """
        self._headers.pop(name.lower(), None)

    def __contains__(self, name):
        return self.get(name) is not None

    def __iter__(self):
        """
        Iterates over non-empty headers, in order.
        """
        for headers in self._headers.values():
            if not isinstance(headers, list):
                headers = [headers]

            for header in headers:
                if header.value != "":
                    yield header

    def items(self):
        """
        Returns a list of (name, value) 2-tuples for non-empty headers.
        """
        return [(header.name, header.value) for header in self]

    def __str__(self):
        """
        Renders the header block. Every header ends with ``\\r\\n``; the
        blank line separating headers from body isn't included.
        """
        return "".join("{}\r\n".format(header) for header in self)

    def __bytes__(self):
        return str(self).encode("utf-8")
