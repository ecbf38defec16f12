# -*- coding: utf-8 -*-
"""
Interface definitions for txcertrenew.
"""
from zope.interface import Attribute, Interface


class IAccountKey(Interface):
    """
    The private key of an ACME account.

    The key material itself may live somewhere else entirely, for example in
    a remote key vault or HSM; the client only ever asks for the public part
    and for signatures.  Only elliptic curve keys are supported.
    """
    def jwk():
        """
        Describe the public key.

        :rtype: ``Dict[str, str]``
        :return: A JSON Web Key with the ``kty``, ``crv``, ``x`` and ``y``
            members; ``crv`` is one of ``P-256``, ``P-384`` or ``P-521``.
        """

    def sign(buffers):
        """
        Sign the concatenation of some byte strings.

        :param buffers: A sequence of ``bytes``.

        :rtype: ``Deferred[str]``
        :return: A deferred firing with the JOSE Base-64 encoded signature, in
            the format required by the JWS algorithm implied by the curve
            (ES256, ES384 or ES512).
        """


class IDNSResponder(Interface):
    """
    Something that can publish the TXT records of ``dns-01`` challenges.
    """
    challenge_type = Attribute(
        """
        The type of challenge this responder is able to respond for; always
        ``u'dns-01'``.
        """)

    def start_responding(domain_name, contents):
        """
        Publish TXT records at ``_acme-challenge.<domain_name>``.

        :param str domain_name: The domain being validated.
        :param contents: The TXT record values; one per pending authorization.

        :rtype: ``Deferred``
        :return: A deferred firing when the records are visible to the ACME
            server.
        """

    def stop_responding(domain_name, contents):
        """
        Remove TXT records previously published with ``start_responding``.

        Removing records which do not exist is not an error.

        :param str domain_name: The domain being validated.
        :param contents: The TXT record values to remove.

        :rtype: ``Deferred``
        """


class ICertificateStore(Interface):
    """
    The place where the managed certificate, and its private key, are kept.
    """
    def get(name):
        """
        Retrieve details about the current certificate.

        :param str name: The certificate name.

        :rtype: ``Deferred[Optional[StoredCertificate]]``
        :return: A deferred firing with the stored certificate, or ``None`` if
            there is no certificate by that name.
        """

    def create_csr(name, domain_name):
        """
        Create a new private key for the certificate and return a
        certificate signing request for it.

        The request covers ``domain_name`` and ``*.domain_name``.  The new
        key is kept aside until `merge` is called.

        :param str name: The certificate name.
        :param str domain_name: The domain the certificate is for.

        :rtype: ``Deferred[bytes]``
        :return: A deferred firing with the DER encoded CSR.
        """

    def merge(name, certificates):
        """
        Store the issued certificate chain together with the key created by
        `create_csr`.

        :param str name: The certificate name.
        :param certificates: The certificate chain, leaf first, as a list of
            base64 encoded DER certificates.

        :rtype: ``Deferred``
        """


__all__ = ['IAccountKey', 'IDNSResponder', 'ICertificateStore']
