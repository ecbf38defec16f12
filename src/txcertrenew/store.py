"""
``txcertrenew.interfaces.ICertificateStore`` implementations.
"""
import os

import attr
import pem
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from twisted.internet.defer import maybeDeferred, succeed
from twisted.internet.utils import getProcessValue
from zope.interface import implementer

from txcertrenew.interfaces import ICertificateStore
from txcertrenew.util import (
    ari_id, certificate_to_pem, csr_for_names, generate_private_key)


@attr.s(frozen=True)
class StoredCertificate(object):
    """
    A certificate, with its chain and private key, as kept in a store.

    :ivar pem_objects: The ``pem`` objects: the private key, then the
        certificate chain, leaf first.
    :ivar ~datetime.datetime not_after: When the leaf certificate expires.
    :ivar ari_id: The renewal information identifier of the leaf
        certificate, or ``None`` if it has none.
    """
    pem_objects = attr.ib(repr=False)
    not_after = attr.ib()
    ari_id = attr.ib(default=None)

    @classmethod
    def from_pem(cls, content):
        """
        Describe the certificate in a PEM file.

        :param bytes content: The contents of the file.

        :raises ValueError: If there is no certificate in it.
        """
        pem_objects = pem.parse(content)
        certificates = [
            o for o in pem_objects if isinstance(o, pem.Certificate)]
        if not certificates:
            raise ValueError('No certificate found')
        leaf = x509.load_pem_x509_certificate(certificates[0].as_bytes())
        return cls(
            pem_objects=pem_objects,
            not_after=leaf.not_valid_after_utc,
            ari_id=ari_id(leaf))


def private_key_pem(key):
    """
    Serialize a private key for storage.

    :rtype: bytes
    """
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption())


def chain_pem(key_pem, certificates):
    """
    Build the contents of a certificate file.

    :param bytes key_pem: The private key.
    :param certificates: The chain, as returned by
        `txcertrenew.util.split_pem_chain`.

    :rtype: bytes
    """
    return key_pem + b''.join(certificate_to_pem(c) for c in certificates)


def new_csr(domain_name, key_type):
    """
    Create a key and a CSR covering a domain and its wildcard.

    :rtype: ``Tuple[bytes, bytes]``
    :return: The PEM private key and the DER CSR.
    """
    key = generate_private_key(key_type)
    csr = csr_for_names([domain_name, u'*.' + domain_name], key)
    return (
        private_key_pem(key), csr.public_bytes(serialization.Encoding.DER))


@attr.s
@implementer(ICertificateStore)
class DirectoryStore(object):
    """
    A certificate store that keeps certificates in a directory on disk.

    The certificate called ``name`` is kept in ``<name>.pem``, and the key of
    a certificate that is being issued in ``<name>.key``.  If
    ``onstore_scripts`` is true, an executable ``<name>.onstore`` is run
    with the name as its argument whenever a new certificate is stored.
    """
    path = attr.ib()
    key_type = attr.ib(default=u'rsa:2048')
    onstore_scripts = attr.ib(default=False)
    reactor = attr.ib(default=None)

    def _get(self, name):
        """
        Synchronously retrieve an entry.
        """
        p = self.path.child(name + u'.pem')
        if p.isfile():
            return StoredCertificate.from_pem(p.getContent())
        else:
            return None

    def get(self, name):
        return maybeDeferred(self._get, name)

    def _create_csr(self, name, domain_name):
        key_pem, csr = new_csr(domain_name, self.key_type)
        self.path.child(name + u'.key').setContent(key_pem)
        return csr

    def create_csr(self, name, domain_name):
        return maybeDeferred(self._create_csr, name, domain_name)

    def _merge(self, name, certificates):
        key_path = self.path.child(name + u'.key')
        if not key_path.isfile():
            raise KeyError(name)
        self.path.child(name + u'.pem').setContent(
            chain_pem(key_path.getContent(), certificates))
        key_path.remove()

    def merge(self, name, certificates):
        d = maybeDeferred(self._merge, name, certificates)
        d.addCallback(lambda ign: self._run_onstore(name))
        return d

    def _run_onstore(self, name):
        if not self.onstore_scripts:
            return succeed(None)
        onstore_script = self.path.child(name + u'.onstore')
        if not onstore_script.exists():
            return succeed(None)
        d = getProcessValue(
            onstore_script.path.encode(), args=[name.encode()],
            env=os.environ, path=self.path.path.encode(), reactor=self.reactor)
        d.addCallback(lambda ign: None)
        return d


__all__ = [
    'StoredCertificate', 'DirectoryStore', 'private_key_pem', 'chain_pem',
    'new_csr']
