"""
Account keys held in process memory.
"""
import attr
import josepy as jose
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from twisted.internet.defer import succeed
from zope.interface import implementer

from txcertrenew.interfaces import IAccountKey
from txcertrenew.jws import algorithm_for_jwk
from txcertrenew.util import generate_private_key, jose_b64


#: Key types which can be used for an ACME account.
ACCOUNT_KEY_TYPES = (u'ec:p256', u'ec:p384', u'ec:p521')


@implementer(IAccountKey)
@attr.s(frozen=True)
class LocalAccountKey:
    """
    An account key backed by a ``cryptography`` elliptic curve private key.

    :ivar key: The `~cryptography.hazmat.primitives.asymmetric.ec.EllipticCurvePrivateKey`.
    """
    key = attr.ib(
        validator=attr.validators.instance_of(ec.EllipticCurvePrivateKey),
        repr=False)

    def jwk(self):
        return jose.JWKEC(key=self.key.public_key()).to_json()

    def sign(self, buffers):
        alg = algorithm_for_jwk(self.jwk())
        return succeed(jose_b64(alg.sign(self.key, b''.join(buffers))))


def load_or_create_account_key(pem_path, key_type=u'ec:p256'):
    """
    Load the account key from a directory, creating it if it does not exist.

    :type pem_path: ``twisted.python.filepath.FilePath``
    :param pem_path: The directory the key is kept in, as ``account.key``.
    :param str key_type: The type of key to create; one of
        `ACCOUNT_KEY_TYPES`.  An existing key is used whatever its type.

    :rtype: `LocalAccountKey`
    """
    if key_type not in ACCOUNT_KEY_TYPES:
        raise ValueError(
            'Unsupported account key type: {!r}'.format(key_type))
    key_file = pem_path.child(u'account.key')
    if key_file.exists():
        key = serialization.load_pem_private_key(
            key_file.getContent(), password=None)
    else:
        key = generate_private_key(key_type)
        key_file.setContent(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()))
    return LocalAccountKey(key=key)


__all__ = ['ACCOUNT_KEY_TYPES', 'LocalAccountKey', 'load_or_create_account_key']
