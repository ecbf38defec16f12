"""
Tests for `txcertrenew.keys`.
"""
import josepy as jose
from cryptography.hazmat.primitives import serialization
from josepy import jwa
from twisted.python.filepath import FilePath
from twisted.trial.unittest import SynchronousTestCase
from zope.interface.verify import verifyObject

from txcertrenew.interfaces import IAccountKey
from txcertrenew.keys import LocalAccountKey, load_or_create_account_key
from txcertrenew.util import generate_private_key


class LocalAccountKeyTests(SynchronousTestCase):
    """
    `.LocalAccountKey` signs with an in-process key.
    """
    def test_interface(self):
        """
        The `.IAccountKey` interface is correctly implemented.
        """
        verifyObject(
            IAccountKey,
            LocalAccountKey(key=generate_private_key(u'ec:p256')))

    def test_elliptic_curve_only(self):
        """
        Only elliptic curve keys can be used.
        """
        with self.assertRaises(TypeError):
            LocalAccountKey(key=generate_private_key(u'rsa:2048'))

    def test_jwk(self):
        """
        The JWK describes the public key only.
        """
        key = generate_private_key(u'ec:p384')
        jwk = LocalAccountKey(key=key).jwk()
        self.assertEqual({u'kty', u'crv', u'x', u'y'}, set(jwk))
        self.assertEqual(u'P-384', jwk[u'crv'])
        self.assertEqual(
            key.public_key().public_numbers(),
            jose.JWK.from_json(jwk).key.public_numbers())

    def test_sign(self):
        """
        Signatures are over the concatenated buffers.
        """
        key = generate_private_key(u'ec:p256')
        signature = self.successResultOf(
            LocalAccountKey(key=key).sign([b'abc', b'.', b'def']))
        self.assertTrue(
            jwa.ES256.verify(
                key.public_key(), b'abc.def', jose.b64decode(signature)))

    def test_repr(self):
        """
        The private key is not shown.
        """
        self.assertEqual(
            'LocalAccountKey()',
            repr(LocalAccountKey(key=generate_private_key(u'ec:p256'))))


class LoadOrCreateTests(SynchronousTestCase):
    """
    `.load_or_create_account_key` keeps the account key in a directory.
    """
    def setUp(self):
        self.path = FilePath(self.mktemp())
        self.path.makedirs()

    def test_create(self):
        """
        A key is created, and saved, if there is none.
        """
        key = load_or_create_account_key(self.path, u'ec:p384')
        self.assertEqual(u'secp384r1', key.key.curve.name)
        saved = serialization.load_pem_private_key(
            self.path.child(u'account.key').getContent(), password=None)
        self.assertEqual(
            key.key.private_numbers(), saved.private_numbers())

    def test_load(self):
        """
        An existing key is used as it is.
        """
        first = load_or_create_account_key(self.path)
        second = load_or_create_account_key(self.path, u'ec:p521')
        self.assertEqual(first.jwk(), second.jwk())

    def test_unsupported_type(self):
        """
        Only elliptic curve keys can be created.
        """
        with self.assertRaises(ValueError):
            load_or_create_account_key(self.path, u'rsa:2048')
        self.assertFalse(self.path.child(u'account.key').exists())


__all__ = ['LocalAccountKeyTests', 'LoadOrCreateTests']
