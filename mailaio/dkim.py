#!/usr/bin/env python
# coding: utf-8

"""
DomainKeys Identified Mail signatures.

.. seealso:: RFC 6376 (DKIM Signatures), RFC 8463 (Ed25519 for DKIM)
"""

import base64
import binascii
import hashlib
import logging
import re
import time
import warnings

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from mailaio.exceptions import DkimWarning
from mailaio.utils import wordwrap


logger = logging.getLogger(__name__)

TAG_NAME_REGEX = re.compile(r"^[a-z][a-z0-9_]*$", re.IGNORECASE)
ALGORITHM_REGEX = re.compile(r"^[a-z][a-z0-9]*-[a-z][a-z0-9]*$", re.IGNORECASE)
HDR_NAME = r"[\x21-\x39\x3B-\x7E]+"
HEADER_LIST_REGEX = re.compile(r"^{0}(?:\s*:\s*{0})*$".format(HDR_NAME))
NON_TAG_VALUE_REGEX = re.compile(r"[^\x21-\x3A\x3C-\x7E\s]")

# Line endings and whitespace are matched in the ASCII sense only: message
# data is handled as latin-1 text, one character per byte.
NEWLINE_REGEX = re.compile(r"\r\n?|\n")
WSP_REGEX = re.compile(r"[ \t]+")
FIELD_SPLIT_REGEX = re.compile(r"\r\n(?![\t ])")

# 80 - len("\r\n\t")
TAG_MAX_LENGTH = 77

HASH_ALGORITHMS = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
}

UNSETTABLE_TAGS = ("v", "z", "q")


def _as_text(data):
    """
    Returns the given data as a latin-1 string holding one character per
    byte of its UTF-8 form, so that byte offsets and lengths are preserved.
    """
    if data is None:
        return ""

    if isinstance(data, str):
        data = data.encode("utf-8")

    return bytes(data).decode("latin-1")


class DkimSigner:
    """
    Computes DKIM-Signature header fields.

    Tags are kept in an ordered mapping and rendered in that order. The
    defaults are::

        v=1; a=rsa-sha256; c=relaxed; d=; s=; h=from:to:subject

    to which ``t`` (signature timestamp, defaults to the signing time),
    ``x`` (expiration, omitted unless after ``t``) and ``l`` (body length,
    omitted unless set) are added.

    Signing never raises: when no signature can be computed (no usable
    private key, ``from`` not signed...), :meth:`DkimSigner.sign` returns an
    empty string and a :class:`~mailaio.exceptions.DkimWarning` is emitted,
    so that the message can still be sent, unsigned.

    Supported algorithms are ``rsa-sha1``, ``rsa-sha256`` and
    ``ed25519-sha256``.
    """
    def __init__(self, privkey=None, passphrase=None, domain=None,
                 selector=None, debug=False, fixcrlf=True, tags=None):
        """
        Initializes a new :class:`DkimSigner` instance.

        Args:
            privkey (str or bytes or None): Private key, either PEM-encoded
                or as a path to a PEM file.
            passphrase (str or bytes or None): Passphrase of the private key.
            domain (str or None): Signing domain (tag ``d``).
            selector (str or None): Selector (tag ``s``).
            debug (bool): If True, copies of the signed headers are added to
                the signature (tag ``z``).
            fixcrlf (bool): If True, line endings of the body are normalized
                to CRLF before signing.
            tags (dict or None): Additional tags, see
                :meth:`DkimSigner.set_tag`.
        """
        self.tags = {
            "v": 1,
            "a": "rsa-sha256",
            "c": "relaxed",
            "d": None,
            "s": None,
            "h": "from:to:subject",
            "t": None,
            "x": -1,
            "l": -1,
        }

        self.debug = False
        self.fixcrlf = True

        self._privkey = None

        self.options(privkey=privkey, passphrase=passphrase, domain=domain,
                     selector=selector, debug=debug, fixcrlf=fixcrlf,
                     tags=tags)

    def options(self, privkey=None, passphrase=None, domain=None,
                selector=None, debug=None, fixcrlf=None, tags=None):
        """
        Sets signer options. Options left to None are left untouched.

        The private key is loaded right away: neither the PEM data nor the
        passphrase are kept.

        Returns:
            dict: The current options.
        """
        tags = dict(tags or {})

        if domain is not None:
            tags["d"] = domain

        if selector is not None:
            tags["s"] = selector

        for name, value in tags.items():
            self.set_tag(name, value)

        if debug is not None:
            self.debug = bool(debug)

        if fixcrlf is not None:
            self.fixcrlf = bool(fixcrlf)

        if privkey is not None:
            self._privkey = self._load_private_key(privkey, passphrase)

        return {
            "privkey": self._privkey,
            "domain": self.tags["d"],
            "selector": self.tags["s"],
            "debug": self.debug,
            "fixcrlf": self.fixcrlf,
            "tags": dict(self.tags),
        }

    @staticmethod
    def _warn(msg):
        logger.warning(msg)
        warnings.warn(msg, DkimWarning, stacklevel=3)

    def _load_private_key(self, privkey, passphrase=None):
        """
        Loads the given private key.

        Returns:
            The private key object, or None if it couldn't be loaded.
        """
        if isinstance(privkey, (rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey)):
            return privkey

        if isinstance(privkey, str):
            privkey = privkey.strip().encode("ascii", errors="replace")

        if isinstance(passphrase, str):
            passphrase = passphrase.encode("utf-8")

        if b"-----BEGIN" not in privkey:
            path = privkey.decode("ascii")

            if path.startswith("file://"):
                path = path[len("file://"):]

            try:
                with open(path, "rb") as f:
                    privkey = f.read()
            except OSError as e:
                self._warn("Cannot read private key file '{}': {}".format(path, e))
                return None

        try:
            return serialization.load_pem_private_key(privkey, passphrase)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            self._warn("Cannot read private key: {}".format(e))

        return None

    def set_tag(self, name, value):
        """
        Sets a DKIM tag, after checking its name and value.

        An invalid value is refused, a
        :class:`~mailaio.exceptions.DkimWarning` is emitted and the previous
        value is kept. Tags ``v``, ``z`` and ``q`` can't be set. Values of
        unknown tags containing characters not allowed in a tag value are
        DKIM-Quoted-Printable encoded.

        ``l`` may be set to True to force the presence of the tag, with the
        full length of the canonicalized body.

        Args:
            name (str): Tag name.
            value: Tag value.

        Returns:
            bool: True if the tag was set.

        .. _`§ 3.2`: https://tools.ietf.org/html/rfc6376#section-3.2
        """
        if not isinstance(name, str) or TAG_NAME_REGEX.match(name) is None:
            self._warn("Invalid dkim tag name '{}'.".format(name))
            return False

        if value is not None and not isinstance(value, (str, bytes, int, float)):
            value = None

        if name in UNSETTABLE_TAGS:
            self._warn("The value for dkim tag '{}' is not settable.".format(name))
            value = None
        elif value is None:
            pass
        elif name == "c":
            for canonicalization in str(value).split("/", 1):
                if canonicalization not in ("relaxed", "simple"):
                    self._warn("Incorrect value for dkim tag 'c'. Acceptable "
                               "values are 'relaxed' or 'simple', or a "
                               "combination of both, separated by a slash.")
                    value = None
                    break
        elif name == "a":
            if ALGORITHM_REGEX.match(str(value)) is None:
                self._warn("Incorrect value for dkim tag 'a'.")
                value = None
        elif name == "h":
            if HEADER_LIST_REGEX.match(str(value)) is None:
                self._warn("Incorrect value for dkim tag 'h'. Must be a list "
                           "of header field names, separated by a colon.")
                value = None
        elif name in ("t", "x"):
            try:
                value = int(value)

                if value < -1:
                    raise ValueError(value)
            except (TypeError, ValueError):
                self._warn("Invalid timestamp value for dkim tag '{}'.".format(name))
                value = None
        elif name == "l":
            if value is not True:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    value = 0
        else:
            value = _as_text(value)

            if NON_TAG_VALUE_REGEX.search(value):
                value = self.encode_quoted_printable(value)

        if value is None:
            return False

        self.tags[name] = value

        return True

    def sign(self, headers, body):
        """
        Computes the DKIM-Signature header field of a message.

        Args:
            headers (str or bytes): Header block of the message.
            body (str or bytes): Body of the message.

        Returns:
            str: The DKIM-Signature header field, ending with CRLF, or an
                empty string if the message couldn't be signed.
        """
        if self._privkey is None:
            self._warn("No private key available, mail not signed.")
            return ""

        headers = NEWLINE_REGEX.sub("\r\n", _as_text(headers))
        body = _as_text(body)

        if self.fixcrlf:
            body = NEWLINE_REGEX.sub("\r\n", body)

        header_canon = self.tags["c"]
        body_canon = "simple"

        if "/" in header_canon:
            header_canon, body_canon = header_canon.split("/", 1)

        crypt_algo, hash_algo = self.tags["a"].lower().split("-", 1)

        if hash_algo not in HASH_ALGORITHMS:
            self._warn("Unsupported hash algorithm '{}'.".format(hash_algo))
            return ""

        tags = dict(self.tags)

        if not tags["t"]:
            tags["t"] = int(time.time())

        if tags["x"] <= tags["t"]:
            del tags["x"]

        # RFC 6376 § 5.4: Determine the Header Fields to Sign
        names_to_sign = [name.strip() for name in tags["h"].lower().split(":")]

        fields = {}

        for field in FIELD_SPLIT_REGEX.split(headers.rstrip()):
            name = field.split(":", 1)[0].strip().lower()
            fields.setdefault(name, []).append(field)

        if "from" not in names_to_sign or not fields.get("from"):
            self._warn("Cannot sign mail without 'from' in tag 'h' or "
                       "message headers.")
            return ""

        signed_headers = ""
        copied_headers = []

        for name in names_to_sign:
            if fields.get(name):
                # Multiple instances of a field are signed from the bottom
                # up (§ 5.4.2).
                field = self.canonicalize_header(fields[name].pop(), header_canon)
                signed_headers += field + "\r\n"

                if self.debug:
                    copied_headers.append(self.encode_quoted_printable(field, "|"))

        if self.debug:
            tags["z"] = "|".join(copied_headers)

        body = self.canonicalize_body(body, body_canon)
        body_length = len(body)

        if tags["l"] is True:
            tags["l"] = body_length
        elif 0 <= tags["l"] <= body_length:
            body = body[:tags["l"]]
        else:
            del tags["l"]

        digest = hashlib.new(hash_algo, body.encode("latin-1")).digest()
        tags["bh"] = base64.b64encode(digest).decode("ascii")

        dkim_header = "DKIM-Signature: "

        for name, value in tags.items():
            if value is None:
                value = ""

            dkim_header += self.split_tag("{}={};".format(name, value)) + " "

        dkim_header = wordwrap(dkim_header, TAG_MAX_LENGTH, "\r\n\t").rstrip()
        dkim_header += "\r\n\t"

        signed_headers += self.canonicalize_header(dkim_header + "b=", header_canon)

        signature = self._sign_data(crypt_algo, hash_algo,
                                    signed_headers.encode("latin-1"))

        if signature is None:
            return ""

        dkim_header += self.split_tag("b=" + base64.b64encode(signature).decode("ascii"))
        dkim_header += "\r\n"

        return dkim_header

    def _sign_data(self, crypt_algo, hash_algo, data):
        """
        Signs the given data with the private key.

        Returns:
            bytes or None: The signature, None if signing failed.
        """
        key = self._privkey
        hash_class = HASH_ALGORITHMS[hash_algo]

        try:
            if crypt_algo == "rsa" and isinstance(key, rsa.RSAPrivateKey):
                return key.sign(data, padding.PKCS1v15(), hash_class())

            if crypt_algo == "ed25519" and isinstance(key, ed25519.Ed25519PrivateKey):
                # RFC 8463 § 3: Ed25519 signs the hash of the data.
                return key.sign(hashlib.new(hash_algo, data).digest())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            self._warn("Could not sign mail: {}".format(e))
            return None

        self._warn("Signing algorithm '{}-{}' doesn't match the private "
                   "key.".format(crypt_algo, hash_algo))

        return None

    @staticmethod
    def canonicalize_header(header, canonicalization="simple"):
        """
        Canonicalizes a header field. Only the 'relaxed' algorithm changes
        anything.

        .. _`§ 3.4.2`: https://tools.ietf.org/html/rfc6376#section-3.4.2
        """
        if canonicalization == "simple":
            return header

        name, value = header.split(":", 1)

        # Unfold, then reduce WSP runs to a single space:
        value = WSP_REGEX.sub(" ", value.replace("\r\n", ""))

        return "{}:{}".format(name.lower().strip(" \t"), value.strip(" \t"))

    @staticmethod
    def canonicalize_body(body, canonicalization="simple"):
        """
        Canonicalizes a message body.

        'simple' ends the body with exactly one CRLF. 'relaxed' also reduces
        whitespace runs to a single space and removes trailing whitespace on
        every line; an empty body stays empty.

        .. _`§ 3.4.3`: https://tools.ietf.org/html/rfc6376#section-3.4.3
        .. _`§ 3.4.4`: https://tools.ietf.org/html/rfc6376#section-3.4.4
        """
        body = body.rstrip("\r\n")

        if canonicalization == "relaxed":
            body = "\r\n".join(WSP_REGEX.sub(" ", line).rstrip(" \t")
                               for line in body.split("\r\n"))

            # Whitespace-only trailing lines became empty:
            body = body.rstrip("\r\n")

            if body != "":
                body += "\r\n"
        else:
            body += "\r\n"

        return body

    @staticmethod
    def split_tag(tag):
        """
        Splits a ``name=value;`` tag in lines short enough for the
        DKIM-Signature header, without cutting header names (``h`` and
        ``z`` tags) nor ``=XX`` escapes. ``b`` and ``bh`` values are split
        at fixed width.
        """
        name = tag.split("=", 1)[0]

        if len(tag) <= TAG_MAX_LENGTH:
            return tag

        if name in ("b", "bh"):
            return "\r\n\t".join(tag[i:i + TAG_MAX_LENGTH]
                                 for i in range(0, len(tag), TAG_MAX_LENGTH))

        lines = []

        while tag:
            chunk = tag[:TAG_MAX_LENGTH]

            if len(tag) > TAG_MAX_LENGTH:
                if name == "z":
                    pipe = chunk.rfind("|")

                    if tag[TAG_MAX_LENGTH] != ":" and pipe > chunk.rfind(":"):
                        chunk = chunk[:pipe + 1]
                elif name == "h":
                    colon = chunk.rfind(":")

                    if (tag[TAG_MAX_LENGTH] != ":" and chunk[-1] != ":"
                            and colon >= 0):
                        chunk = chunk[:colon + 1]

                while len(chunk) > 2 and "=" in chunk[-2:]:
                    chunk = chunk[:-1]

            lines.append(chunk)
            tag = tag[len(chunk):]

        return "\r\n\t".join(lines)

    @staticmethod
    def encode_quoted_printable(s, charlist=""):
        """
        DKIM-Quoted-Printable encoding: quoted-printable without soft line
        breaks, where whitespace, ``;`` and the characters of ``charlist``
        are encoded too.

        .. _`§ 2.11`: https://tools.ietf.org/html/rfc6376#section-2.11
        """
        charlist = re.escape(re.sub(r"[0-9A-F=]", "", charlist))

        encoded = binascii.b2a_qp(_as_text(s).encode("latin-1"), istext=True)
        encoded = encoded.decode("ascii")
        encoded = encoded.replace("=\r\n", "").replace("=\n", "")

        return re.sub(r"[\s;{}]".format(charlist),
                      lambda m: "={:02X}".format(ord(m.group(0))),
                      encoded, flags=re.ASCII)
