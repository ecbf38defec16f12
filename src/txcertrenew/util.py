"""
Utility functions that may prove useful when writing an ACME client.
"""
import hashlib
import json
from datetime import datetime, timezone
from functools import wraps

from josepy.b64 import b64encode
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtensionOID, NameOID
from twisted.internet.defer import maybeDeferred
from twisted.web.http import stringToDatetime

from txcertrenew.errors import InvalidRetryAfter, MalformedPEM


_CURVES = {
    'p256': ec.SECP256R1,
    'p384': ec.SECP384R1,
    'p521': ec.SECP521R1,
}

#: Key types understood by `generate_private_key`.
KEY_TYPES = (
    'ec:p256', 'ec:p384', 'ec:p521', 'rsa:2048', 'rsa:4096')

#: The label under which ``dns-01`` validation records are published.
CHALLENGE_LABEL = '_acme-challenge'

BEGIN_CERTIFICATE = '-----BEGIN CERTIFICATE-----'
END_CERTIFICATE = '-----END CERTIFICATE-----'


def generate_private_key(key_type):
    """
    Generate a random private key using sensible parameters.

    :param str key_type: The type of key to generate. One of `KEY_TYPES`.
    """
    kind, _, size = key_type.partition(':')
    if kind == 'ec' and size in _CURVES:
        return ec.generate_private_key(_CURVES[size]())
    if kind == 'rsa' and size in ('2048', '4096'):
        return rsa.generate_private_key(
            public_exponent=65537, key_size=int(size))
    raise ValueError(key_type)


def tap(f):
    """
    "Tap" a Deferred callback chain with a function whose return value is
    ignored.
    """
    @wraps(f)
    def _cb(res, *a, **kw):
        d = maybeDeferred(f, res, *a, **kw)
        d.addCallback(lambda ignored: res)
        return d
    return _cb


def jose_b64(data):
    """
    JOSE Base-64 encode some bytes, returning text.
    """
    return b64encode(data).decode('ascii')


def encode_csr(csr):
    """
    Encode a CSR the way the ``finalize`` request wants it: unpadded,
    URL-safe Base-64 of the DER encoding.

    :param csr: A `cryptography.x509.CertificateSigningRequest`, the DER
        bytes, or the DER bytes already Base-64 encoded (standard or URL-safe
        alphabet, with or without padding).

    :rtype: str
    """
    if isinstance(csr, x509.CertificateSigningRequest):
        csr = csr.public_bytes(serialization.Encoding.DER)
    if isinstance(csr, bytes):
        return jose_b64(csr)
    return csr.strip().translate(str.maketrans('+/', '-_')).rstrip('=')


def csr_for_names(names, key):
    """
    Generate a certificate signing request for the given names and private key.

    ..  seealso:: `generate_private_key`

    :param ``List[str]``: One or more names (subjectAltName) for which to
        request a certificate.
    :param key: A Cryptography private key object.

    :rtype: `cryptography.x509.CertificateSigningRequest`
    :return: The certificate request message.
    """
    if len(names) == 0:
        raise ValueError('Must have at least one name')
    if len(names[0]) > 64:
        common_name = 'san.too.long.invalid'
    else:
        common_name = names[0]
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .add_extension(
            x509.SubjectAlternativeName(list(map(x509.DNSName, names))),
            critical=False)
        .sign(key, hashes.SHA256()))


def jwk_thumbprint(jwk):
    """
    Compute the RFC 7638 thumbprint of an elliptic curve JWK.

    :param dict jwk: The public JWK, as returned by
        `~txcertrenew.interfaces.IAccountKey.jwk`.

    :rtype: bytes
    :return: The SHA-256 digest of the canonical JSON form of the key.
    """
    canonical = json.dumps(
        {name: jwk[name] for name in ('crv', 'kty', 'x', 'y')},
        sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).digest()


def key_authorization_digest(token, jwk):
    """
    Compute the ``dns-01`` TXT record value for a challenge token.

    :param str token: The challenge token.
    :param dict jwk: The public JWK of the account key.

    :rtype: str
    """
    key_authorization = u'{}.{}'.format(token, jose_b64(jwk_thumbprint(jwk)))
    return jose_b64(hashlib.sha256(key_authorization.encode('utf-8')).digest())


def validation_domain_name(domain_name):
    """
    Get the name the TXT records for a domain are published at.
    """
    return '{}.{}'.format(CHALLENGE_LABEL, domain_name.rstrip('.'))


def parse_retry_after(headers, now, minimum, maximum):
    """
    Work out how long to wait from a ``Retry-After`` header field.

    The value may be delay-seconds or an HTTP-date.  The result is clamped
    to ``[minimum, maximum]``; an absent header field means ``minimum``.

    :param headers: ``twisted.web.http_headers.Headers``.
    :param float now: The current time, in seconds since the epoch.

    :raises InvalidRetryAfter: If the value cannot be parsed.

    :rtype: float
    :return: The delay in seconds.
    """
    raw = headers.getRawHeaders(b'retry-after', [None])[0]
    if raw is None:
        return minimum
    value = raw.strip()
    if value.isdigit():
        delay = int(value)
    else:
        try:
            delay = stringToDatetime(value) - now
        except (ValueError, IndexError):
            raise InvalidRetryAfter(value=raw)
    return float(min(max(delay, minimum), maximum))


def split_pem_chain(text):
    """
    Split a PEM certificate chain into its certificates.

    Nothing but certificates is allowed in the chain, and the contents of
    each block are not checked to be valid Base-64.

    :param str text: The chain, as returned by the ACME server.

    :raises MalformedPEM: If the chain is not well-formed.

    :rtype: ``List[str]``
    :return: The Base-64 DER of every certificate, in order.
    """
    lines = text.splitlines()
    if not lines or lines[0] != BEGIN_CERTIFICATE:
        raise MalformedPEM('does not start with BEGIN CERTIFICATE')
    certificates = []
    current = None
    for line in lines:
        if line == BEGIN_CERTIFICATE:
            if current is not None:
                raise MalformedPEM(
                    'BEGIN CERTIFICATE without prior END CERTIFICATE')
            current = []
        elif line == END_CERTIFICATE:
            if current is None:
                raise MalformedPEM(
                    'END CERTIFICATE without prior BEGIN CERTIFICATE')
            certificates.append(''.join(current))
            current = None
        elif current is not None:
            current.append(line)
        elif line.strip():
            raise MalformedPEM('trailing content after END CERTIFICATE')
    if current is not None:
        raise MalformedPEM(
            'BEGIN CERTIFICATE without corresponding END CERTIFICATE')
    return certificates


def certificate_to_pem(b64der):
    """
    Turn one of the results of `split_pem_chain` back into a PEM block.

    :rtype: bytes
    """
    body = '\n'.join(
        b64der[i:i + 64] for i in range(0, len(b64der), 64))
    return u'{}\n{}\n{}\n'.format(
        BEGIN_CERTIFICATE, body, END_CERTIFICATE).encode('ascii')


def ari_id(certificate):
    """
    Get the ACME Renewal Information identifier of a certificate.

    :param cryptography.x509.Certificate certificate: The certificate.

    :rtype: ``Optional[str]``
    :return: ``base64url(AKI keyIdentifier) "." base64url(serial)``, or
        ``None`` if the certificate has no authority key identifier or its
        serial is not positive.
    """
    try:
        aki = certificate.extensions.get_extension_for_oid(
            ExtensionOID.AUTHORITY_KEY_IDENTIFIER).value
    except x509.ExtensionNotFound:
        return None
    if aki.key_identifier is None:
        return None
    serial = certificate.serial_number
    if serial <= 0:
        return None
    # One extra bit so there is room for the ASN.1 INTEGER sign bit.
    serial_bytes = serial.to_bytes(
        (serial.bit_length() + 8) // 8, byteorder='big', signed=True)
    return u'{}.{}'.format(
        jose_b64(aki.key_identifier), jose_b64(serial_bytes))


def clock_now(clock):
    """
    Get a datetime representing the current time.

    :param clock: An ``IReactorTime`` provider.

    :rtype: `~datetime.datetime`
    :return: A timezone-aware datetime representing the current time.
    """
    return datetime.fromtimestamp(clock.seconds(), tz=timezone.utc)


def const(x):
    """
    Return a constant function.
    """
    return lambda: x


__all__ = [
    'KEY_TYPES', 'generate_private_key', 'tap', 'jose_b64', 'encode_csr',
    'csr_for_names', 'jwk_thumbprint', 'key_authorization_digest',
    'validation_domain_name', 'parse_retry_after', 'split_pem_chain',
    'certificate_to_pem', 'ari_id', 'clock_now', 'const']
