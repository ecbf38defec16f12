import stat
from base64 import b64encode
from datetime import datetime, timezone

import pem
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from hypothesis import given
from testtools.assertions import assert_that
from twisted.internet import defer
from twisted.python.filepath import FilePath
from twisted.trial.unittest import TestCase
from zope.interface.verify import verifyObject

from txcertrenew.interfaces import ICertificateStore
from txcertrenew.store import DirectoryStore, StoredCertificate, new_csr
from txcertrenew.test.matchers import CoversDomain
from txcertrenew.test.strategies import dns_names
from txcertrenew.test.test_util import certificate_pem, generate_certificate
from txcertrenew.testing import MemoryStore
from txcertrenew.util import ari_id


NOT_BEFORE = datetime(2025, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2025, 4, 1, tzinfo=timezone.utc)


def _b64der(certificate):
    return b64encode(
        certificate.public_bytes(serialization.Encoding.DER)).decode('ascii')


def _chain(not_after=NOT_AFTER):
    """
    A leaf and an intermediate, as returned by
    `txcertrenew.util.split_pem_chain`.
    """
    leaf = generate_certificate(u'example.com', NOT_BEFORE, not_after)
    intermediate = generate_certificate(
        u'ca.example.net', NOT_BEFORE, NOT_AFTER, serial_number=2)
    return leaf, [_b64der(leaf), _b64der(intermediate)]


class _StoreTestsMixin(object):
    """
    Tests for `txcertrenew.interfaces.ICertificateStore` implementations.
    """
    def test_interface(self):
        verifyObject(ICertificateStore, self.getCertStore())

    @defer.inlineCallbacks
    def test_get_missing(self):
        """
        Getting a non-existent entry results in ``None``.
        """
        cert_store = self.getCertStore()
        result = yield cert_store.get(u'example.com')
        self.assertIsNone(result)

    @defer.inlineCallbacks
    def test_create_csr(self):
        """
        The CSR covers the domain and its wildcard.
        """
        cert_store = self.getCertStore()
        der = yield cert_store.create_csr(u'example', u'example.com')
        csr = x509.load_der_x509_csr(der)
        self.assertTrue(csr.is_signature_valid)
        san = csr.extensions.get_extension_for_class(
            x509.SubjectAlternativeName).value
        self.assertEqual(
            [u'example.com', u'*.example.com'],
            san.get_values_for_type(x509.DNSName))
        # Nothing is stored until the certificate arrives.
        result = yield cert_store.get(u'example')
        self.assertIsNone(result)

    @defer.inlineCallbacks
    def test_merge(self):
        """
        Merging a chain stores it with the key of the CSR.
        """
        cert_store = self.getCertStore()
        der = yield cert_store.create_csr(u'example', u'example.com')
        leaf, certificates = _chain()
        result = yield cert_store.merge(u'example', certificates)
        self.assertIsNone(result)

        stored = yield cert_store.get(u'example')
        self.assertIsInstance(stored, StoredCertificate)
        self.assertEqual(NOT_AFTER, stored.not_after)
        self.assertEqual(ari_id(leaf), stored.ari_id)
        key_object, leaf_object, intermediate_object = stored.pem_objects
        self.assertIsInstance(key_object, pem.PrivateKey)
        self.assertEqual(
            leaf, x509.load_pem_x509_certificate(leaf_object.as_bytes()))
        self.assertIsInstance(intermediate_object, pem.Certificate)

        key = serialization.load_pem_private_key(
            key_object.as_bytes(), password=None)
        self.assertEqual(
            x509.load_der_x509_csr(der).public_key().public_numbers(),
            key.public_key().public_numbers())

    @defer.inlineCallbacks
    def test_merge_replaces(self):
        """
        Merging a second time replaces the certificate.
        """
        cert_store = self.getCertStore()
        for month in (4, 6):
            yield cert_store.create_csr(u'example', u'example.com')
            _, certificates = _chain(
                datetime(2025, month, 1, tzinfo=timezone.utc))
            yield cert_store.merge(u'example', certificates)
        stored = yield cert_store.get(u'example')
        self.assertEqual(
            datetime(2025, 6, 1, tzinfo=timezone.utc), stored.not_after)

    @defer.inlineCallbacks
    def test_merge_without_csr(self):
        """
        There must be a key to merge a certificate with.
        """
        cert_store = self.getCertStore()
        _, certificates = _chain()
        with self.assertRaises(KeyError):
            yield cert_store.merge(u'example', certificates)

    @defer.inlineCallbacks
    def test_key_type(self):
        """
        The certificate key is of the type the store was configured with.
        """
        cert_store = self.getCertStore(key_type=u'ec:p384')
        der = yield cert_store.create_csr(u'example', u'example.com')
        public_key = x509.load_der_x509_csr(der).public_key()
        self.assertIsInstance(public_key, ec.EllipticCurvePublicKey)
        self.assertEqual(u'secp384r1', public_key.curve.name)


class DirectoryStoreTests(_StoreTestsMixin, TestCase):
    """
    Tests for `txcertrenew.store.DirectoryStore`.
    """
    def getCertStore(self, **kwargs):
        """
        Return the certificate store for these tests.
        """
        self.path = FilePath(self.mktemp())
        self.path.makedirs()
        return DirectoryStore(self.path, **kwargs)

    @defer.inlineCallbacks
    def test_files(self):
        """
        The key is kept in ``<name>.key`` until the certificate arrives, and
        then everything is kept in ``<name>.pem``.
        """
        cert_store = self.getCertStore()
        yield cert_store.create_csr(u'example', u'example.com')
        self.assertEqual([u'example.key'], self.path.listdir())
        key_pem = self.path.child(u'example.key').getContent()
        _, certificates = _chain()
        yield cert_store.merge(u'example', certificates)
        self.assertEqual([u'example.pem'], self.path.listdir())
        content = self.path.child(u'example.pem').getContent()
        self.assertTrue(content.startswith(key_pem))
        self.assertEqual(3, len(pem.parse(content)))

    @defer.inlineCallbacks
    def test_existing_file(self):
        """
        A PEM file put in place by hand is read.
        """
        cert_store = self.getCertStore()
        leaf = generate_certificate(u'example.com', NOT_BEFORE, NOT_AFTER)
        self.path.child(u'example.com.pem').setContent(certificate_pem(leaf))
        stored = yield cert_store.get(u'example.com')
        self.assertEqual(NOT_AFTER, stored.not_after)
        self.assertEqual(ari_id(leaf), stored.ari_id)

    @defer.inlineCallbacks
    def test_no_certificate(self):
        """
        A PEM file without a certificate is an error.
        """
        cert_store = self.getCertStore()
        self.path.child(u'example.com.pem').setContent(b'')
        with self.assertRaises(ValueError):
            yield cert_store.get(u'example.com')

    def _write_onstore(self, name):
        script = self.path.child(name + u'.onstore')
        script.setContent(b'#!/bin/sh\necho "stored $1" > onstore.out\n')
        script.chmod(stat.S_IRWXU)

    @defer.inlineCallbacks
    def test_onstore(self):
        """
        If enabled, the ``<name>.onstore`` script is run in the store
        directory after storing a certificate.
        """
        cert_store = self.getCertStore(onstore_scripts=True)
        self._write_onstore(u'example')
        yield cert_store.create_csr(u'example', u'example.com')
        _, certificates = _chain()
        yield cert_store.merge(u'example', certificates)
        self.assertEqual(
            b'stored example\n',
            self.path.child(u'onstore.out').getContent())

    @defer.inlineCallbacks
    def test_onstore_disabled(self):
        cert_store = self.getCertStore()
        self._write_onstore(u'example')
        yield cert_store.create_csr(u'example', u'example.com')
        _, certificates = _chain()
        yield cert_store.merge(u'example', certificates)
        self.assertFalse(self.path.child(u'onstore.out').exists())


class MemoryStoreTests(_StoreTestsMixin, TestCase):
    """
    Tests for `txcertrenew.testing.MemoryStore`.
    """
    def getCertStore(self, **kwargs):
        """
        Return the certificate store for these tests.
        """
        return MemoryStore(**kwargs)

    @defer.inlineCallbacks
    def test_as_dict(self):
        cert_store = self.getCertStore()
        yield cert_store.create_csr(u'example', u'example.com')
        _, certificates = _chain()
        yield cert_store.merge(u'example', certificates)
        result = yield cert_store.as_dict()
        self.assertEqual([u'example'], list(result.keys()))
        self.assertEqual(3, len(pem.parse(result[u'example'])))

    @defer.inlineCallbacks
    def test_initial_certs(self):
        leaf = generate_certificate(u'example.com', NOT_BEFORE, NOT_AFTER)
        cert_store = MemoryStore({u'example.com': certificate_pem(leaf)})
        stored = yield cert_store.get(u'example.com')
        self.assertEqual(NOT_AFTER, stored.not_after)


class NewCSRTests(TestCase):
    """
    `~txcertrenew.store.new_csr` creates a key and a request for it.
    """
    @given(dns_names())
    def test_covers_domain(self, domain_name):
        key_pem, der = new_csr(domain_name, u'ec:p256')
        csr = x509.load_der_x509_csr(der)
        assert_that(csr, CoversDomain(domain_name))
        key = serialization.load_pem_private_key(key_pem, password=None)
        self.assertEqual(
            csr.public_key().public_numbers(),
            key.public_key().public_numbers())


__all__ = ['DirectoryStoreTests', 'MemoryStoreTests', 'NewCSRTests']
