#!/usr/bin/env python
# coding: utf-8

"""
Small text helpers shared by the header, MIME and SMTP layers.
"""

import ipaddress
import re


NEWLINE_REGEX = re.compile(rb"\r\n?|\n")

MAIL_SYNTAX_REGEX = re.compile(
    r"^[-!#$%&'*+/0-9=?a-z^_`{|}~]+(?:\.[-!#$%&'*+/0-9=?a-z^_`{|}~]+)*"
    r"@[a-z0-9](?:[-a-z0-9]{0,61}[a-z0-9])?"
    r"(?:\.[a-z0-9](?:[-a-z0-9]{0,61}[a-z0-9])?)+$",
    re.IGNORECASE)

ADDRESS_LIST_REGEX = re.compile(
    r"(?<![^\s,<])[-!#$%&'*+/0-9=?a-z^_`{|}~.]+@[-a-z0-9.]+(?![^\s,>])",
    re.IGNORECASE)


def normalize_newlines(data):
    """
    Converts every line ending (``\\r\\n``, lone ``\\r`` or lone ``\\n``)
    of the given bytes to ``\\r\\n``.

    Args:
        data (bytes): Data to normalize.

    Returns:
        bytes: Normalized data.
    """
    return NEWLINE_REGEX.sub(b"\r\n", data)


def wordwrap(text, width, brk="\r\n"):
    """
    Wraps the given text at ``width`` characters, breaking on spaces only.

    The space where the line is broken is replaced by ``brk``. Words longer
    than ``width`` are never cut. Occurrences of ``brk`` already present in
    the text are kept and restart the line count.

    Works on both :obj:`str` and :obj:`bytes` (``brk`` must be of the same
    type as ``text``).

    Args:
        text (str or bytes): Text to wrap.
        width (int): Maximal line length.
        brk (str or bytes): Line break sequence.

    Returns:
        str or bytes: The wrapped text.
    """
    space = b" " if isinstance(text, bytes) else " "

    if len(text) <= width:
        return text

    segments = []

    for segment in text.split(brk):
        lines = []
        words = segment.split(space)
        line = words[0]

        for word in words[1:]:
            if len(line) + len(word) + 1 > width and line.strip(space):
                lines.append(line)
                line = word
            else:
                line += space + word

        lines.append(line)
        segments.append(brk.join(lines))

    return brk.join(segments)


def check_mail_syntax(address):
    """
    Checks that the given string is a syntactically valid e-mail address
    (dot-atom local part, hostname domain).

    Args:
        address (str): Address to check.

    Returns:
        bool: True if the address looks valid.
    """
    return MAIL_SYNTAX_REGEX.match(address) is not None


def clear_address_list(address_list):
    """
    Extracts the bare addresses from an address list header value, dropping
    display names (``"Bob" <bob@x.tld>, alice@y.tld`` gives
    ``['bob@x.tld', 'alice@y.tld']``).

    Args:
        address_list (str): Header value.

    Returns:
        list of str: Addresses, in order of appearance.
    """
    return ADDRESS_LIST_REGEX.findall(address_list)


def address_literal(host):
    """
    Returns the given host in a form usable in *EHLO*/*HELO* commands.

    Hostnames are returned untouched. IP addresses are turned into address
    literals, as required by RFC 5321 `§ 4.1.3`_.

    Args:
        host (str): Hostname or IP address.

    Returns:
        str: Hostname or address literal.

    .. _`§ 4.1.3`: https://tools.ietf.org/html/rfc5321#section-4.1.3
    """
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return host

    if ip.version == 6:
        return "[IPv6:{}]".format(ip)

    return "[{}]".format(ip)
