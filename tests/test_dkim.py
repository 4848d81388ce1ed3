import base64
import hashlib
import re

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from mailaio import DkimSigner, DkimWarning


HEADERS = 'From: a@d.tld\r\nTo: b@e.tld\r\nSubject: hi\r\n'
BODY = 'hello\r\n'
TIMESTAMP = 1700000000


def pem(key, passphrase=None):
    if passphrase is None:
        encryption = serialization.NoEncryption()
    else:
        encryption = serialization.BestAvailableEncryption(passphrase)

    return key.private_bytes(serialization.Encoding.PEM,
                             serialization.PrivateFormat.PKCS8,
                             encryption).decode('ascii')


def tags_of(header):
    value = re.sub(r'\s+', '', header.split(':', 1)[1])
    return dict(item.split('=', 1) for item in value.split(';') if item)


def signed_data(signed_headers, header):
    """
    Rebuilds the data a verifier checks the signature against (relaxed
    header canonicalization).
    """
    header = re.sub(r'(;\s*b=)[^;]*$', r'\1', header.rstrip('\r\n'))
    name, value = header.split(':', 1)
    value = re.sub(r'[ \t]+', ' ', value.replace('\r\n', ''))
    canonical = '{}:{}'.format(name.lower(), value.strip(' \t'))

    return (signed_headers + canonical).encode('ascii')


@pytest.fixture(scope='module')
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def signer(rsa_key):
    return DkimSigner(privkey=pem(rsa_key), domain='d.tld', selector='sel',
                      tags={'c': 'relaxed/relaxed', 't': TIMESTAMP})


def test_sign_rsa_sha256(signer, rsa_key):
    header = signer.sign(HEADERS, BODY)

    assert header.startswith('DKIM-Signature: v=1; a=rsa-sha256; c=relaxed/relaxed; ')
    assert header.endswith('\r\n')
    assert all(len(line) <= 80 for line in header.split('\r\n'))

    tags = tags_of(header)

    assert list(tags) == ['v', 'a', 'c', 'd', 's', 'h', 't', 'bh', 'b']
    assert tags['d'] == 'd.tld'
    assert tags['s'] == 'sel'
    assert tags['h'] == 'from:to:subject'
    assert tags['t'] == str(TIMESTAMP)
    assert tags['bh'] == base64.b64encode(hashlib.sha256(b'hello\r\n').digest()).decode()

    data = signed_data('from:a@d.tld\r\nto:b@e.tld\r\nsubject:hi\r\n', header)

    rsa_key.public_key().verify(base64.b64decode(tags['b']), data,
                                padding.PKCS1v15(), hashes.SHA256())


def test_sign_is_deterministic(signer):
    assert signer.sign(HEADERS, BODY) == signer.sign(HEADERS, BODY)


def test_sign_rsa_sha1_simple(rsa_key):
    signer = DkimSigner(privkey=pem(rsa_key), domain='d.tld', selector='sel',
                        tags={'a': 'rsa-sha1', 'c': 'simple', 't': TIMESTAMP})

    header = signer.sign(HEADERS, 'hello  \r\n\r\n\r\n')
    tags = tags_of(header)

    assert tags['bh'] == base64.b64encode(hashlib.sha1(b'hello  \r\n').digest()).decode()

    # Simple header canonicalization signs the fields as they are:
    unsigned = re.sub(r'(;\s*b=)[^;]*$', r'\1', header.rstrip('\r\n'))
    data = (HEADERS + unsigned).encode('ascii')

    rsa_key.public_key().verify(base64.b64decode(tags['b']), data,
                                padding.PKCS1v15(), hashes.SHA1())


def test_sign_ed25519():
    key = ed25519.Ed25519PrivateKey.generate()
    signer = DkimSigner(privkey=pem(key), domain='d.tld', selector='ed',
                        tags={'a': 'ed25519-sha256', 'c': 'relaxed/relaxed'})

    header = signer.sign(HEADERS, BODY)
    tags = tags_of(header)
    data = signed_data('from:a@d.tld\r\nto:b@e.tld\r\nsubject:hi\r\n', header)

    assert tags['a'] == 'ed25519-sha256'
    key.public_key().verify(base64.b64decode(tags['b']),
                            hashlib.sha256(data).digest())


def test_encrypted_key_file(rsa_key, tmp_path):
    path = tmp_path / 'dkim.pem'
    path.write_text(pem(rsa_key, b'secret'))

    signer = DkimSigner(privkey=str(path), passphrase='secret',
                        domain='d.tld', selector='sel')

    assert signer.sign(HEADERS, BODY).startswith('DKIM-Signature: ')


def test_missing_key():
    signer = DkimSigner(domain='d.tld', selector='sel')

    with pytest.warns(DkimWarning):
        assert signer.sign(HEADERS, BODY) == ''


def test_unreadable_key(tmp_path):
    with pytest.warns(DkimWarning):
        signer = DkimSigner(privkey=str(tmp_path / 'missing.pem'))

    with pytest.warns(DkimWarning):
        assert signer.sign(HEADERS, BODY) == ''


def test_wrong_passphrase(rsa_key):
    with pytest.warns(DkimWarning):
        DkimSigner(privkey=pem(rsa_key, b'secret'), passphrase='wrong')


def test_algorithm_key_mismatch(rsa_key):
    signer = DkimSigner(privkey=pem(rsa_key), tags={'a': 'ed25519-sha256'})

    with pytest.warns(DkimWarning):
        assert signer.sign(HEADERS, BODY) == ''


def test_from_must_be_signed(rsa_key):
    signer = DkimSigner(privkey=pem(rsa_key), tags={'h': 'to:subject'})

    with pytest.warns(DkimWarning):
        assert signer.sign(HEADERS, BODY) == ''


def test_from_must_be_present(signer):
    with pytest.warns(DkimWarning):
        assert signer.sign('To: b@e.tld\r\n', BODY) == ''


def test_repeated_headers_are_signed_bottom_up(rsa_key):
    signer = DkimSigner(privkey=pem(rsa_key), debug=True,
                        tags={'h': 'from:to:to', 't': TIMESTAMP})

    header = signer.sign('From: a@d.tld\r\nTo: first@e.tld\r\nTo: second@e.tld\r\n',
                         BODY)

    assert tags_of(header)['z'] == 'from:a@d.tld|to:second@e.tld|to:first@e.tld'


def test_body_length_tag(rsa_key):
    signer = DkimSigner(privkey=pem(rsa_key), tags={'l': 3})
    tags = tags_of(signer.sign(HEADERS, BODY))

    assert tags['l'] == '3'
    assert tags['bh'] == base64.b64encode(hashlib.sha256(b'hel').digest()).decode()

    signer.set_tag('l', True)
    assert tags_of(signer.sign(HEADERS, BODY))['l'] == '7'

    signer.set_tag('l', 100)
    assert 'l' not in tags_of(signer.sign(HEADERS, BODY))


def test_expiration_tag(signer):
    signer.set_tag('x', TIMESTAMP)
    assert 'x' not in tags_of(signer.sign(HEADERS, BODY))

    signer.set_tag('x', TIMESTAMP + 3600)
    assert tags_of(signer.sign(HEADERS, BODY))['x'] == str(TIMESTAMP + 3600)


def test_fixcrlf(signer):
    assert tags_of(signer.sign(HEADERS, 'hello\n'))['bh'] == \
        tags_of(signer.sign(HEADERS, BODY))['bh']


@pytest.mark.parametrize('name, value', [
    ('c', 'loose'),
    ('c', 'relaxed/loose'),
    ('a', 'rsa'),
    ('v', 2),
    ('z', 'from:a@d.tld'),
    ('q', 'dns/txt'),
    ('1x', 'a'),
    ('t', 'yesterday'),
    ('h', 'from;to, subject'),
])
def test_invalid_tags_are_refused(signer, name, value):
    before = dict(signer.tags)

    with pytest.warns(DkimWarning):
        assert signer.set_tag(name, value) is False

    assert signer.tags == before


def test_unknown_tag_is_encoded(signer):
    assert signer.set_tag('i', '@d.tld; x')
    assert signer.tags['i'] == '@d.tld=3B=20x'


@pytest.mark.parametrize('body, canonicalization, expected', [
    ('hello  \r\n\r\n\r\n', 'simple', 'hello  \r\n'),
    ('', 'simple', '\r\n'),
    ('a  \t b \r\n \r\nc\r\n\r\n', 'relaxed', 'a b\r\n\r\nc\r\n'),
    ('line \r\n \t \r\n', 'relaxed', 'line\r\n'),
    ('', 'relaxed', ''),
    ('a\x0bb \t\r\n', 'relaxed', 'a\x0bb\r\n'),
    ('a\nb \r\n', 'relaxed', 'a\nb\r\n'),
])
def test_canonicalize_body(body, canonicalization, expected):
    canonical = DkimSigner.canonicalize_body(body, canonicalization)

    assert canonical == expected
    assert DkimSigner.canonicalize_body(canonical, canonicalization) == canonical


def test_canonicalize_header():
    header = 'Subject :  Hello \r\n\t World '

    assert DkimSigner.canonicalize_header(header, 'relaxed') == 'subject:Hello World'
    assert DkimSigner.canonicalize_header(header, 'simple') == header

    # Only SP and HTAB are whitespace:
    assert DkimSigner.canonicalize_header('X-Note: a\x0c  b', 'relaxed') == 'x-note:a\x0c b'


def test_split_header_list():
    tag = 'h={};'.format(':'.join('x-header-{}'.format(i) for i in range(20)))
    lines = DkimSigner.split_tag(tag).split('\r\n\t')

    assert len(lines) > 1
    assert ''.join(lines) == tag
    assert all(len(line) <= 77 for line in lines)
    assert all(line.endswith(':') for line in lines[:-1])


def test_split_base64():
    tag = 'b={};'.format('A' * 200)
    lines = DkimSigner.split_tag(tag).split('\r\n\t')

    assert ''.join(lines) == tag
    assert [len(line) for line in lines] == [77, 77, 49]


def test_split_does_not_cut_escapes():
    tag = 'z={};'.format('=3A' * 40)
    lines = DkimSigner.split_tag(tag).split('\r\n\t')

    assert ''.join(lines) == tag
    assert all(re.match(r'^(z=)?(=3A)*;?$', line) for line in lines)


def test_encode_quoted_printable():
    assert DkimSigner.encode_quoted_printable('a; b|c', '|') == 'a=3B=20b=7Cc'
    assert DkimSigner.encode_quoted_printable('x=y\té') == 'x=3Dy=09=C3=A9'
