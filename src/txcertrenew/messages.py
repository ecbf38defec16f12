"""
ACME protocol messages.

This module provides the request payloads and the resource states that are
not already provided by the `acme` library, or that we want to model more
strictly than it does.

..  seealso:: `acme.messages`
"""
import attr
import josepy as jose
from acme import fields, messages
from constantly import ValueConstant, Values

from txcertrenew.errors import InvalidDirectory, UnexpectedResponse


class AccountStatus(Values):
    """
    Statuses of an ACME account object.
    """
    VALID = ValueConstant('valid')
    DEACTIVATED = ValueConstant('deactivated')
    REVOKED = ValueConstant('revoked')


class OrderStatus(Values):
    """
    Statuses of an ACME order object.
    """
    PENDING = ValueConstant('pending')
    READY = ValueConstant('ready')
    PROCESSING = ValueConstant('processing')
    VALID = ValueConstant('valid')
    INVALID = ValueConstant('invalid')


class AuthorizationStatus(Values):
    """
    Statuses of an ACME authorization object.
    """
    PENDING = ValueConstant('pending')
    VALID = ValueConstant('valid')
    INVALID = ValueConstant('invalid')
    DEACTIVATED = ValueConstant('deactivated')
    EXPIRED = ValueConstant('expired')
    REVOKED = ValueConstant('revoked')


class ChallengeStatus(Values):
    """
    Statuses of an ACME challenge object.
    """
    PENDING = ValueConstant('pending')
    PROCESSING = ValueConstant('processing')
    VALID = ValueConstant('valid')
    INVALID = ValueConstant('invalid')


def lookup_status(statuses, body, operation):
    """
    Get the status of a resource body.

    :param statuses: One of the status containers in this module.
    :param dict body: The decoded JSON body.
    :param str operation: Used to describe the failure.

    :raises UnexpectedResponse: If there is no status, or it is not one of
        ``statuses``.
    """
    try:
        return statuses.lookupByValue(body[u'status'])
    except (KeyError, TypeError, ValueError):
        raise UnexpectedResponse(
            operation=operation, code=200, content_type=None,
            snippet=repr(body)[:200])


@attr.s(frozen=True)
class Directory:
    """
    The resources advertised by an ACME directory.

    :ivar str renewal_info: The ARI base URL, or ``None`` if the CA does not
        support renewal information.
    """
    new_account = attr.ib()
    new_nonce = attr.ib()
    new_order = attr.ib()
    renewal_info = attr.ib(default=None)

    @classmethod
    def from_json(cls, jobj, url):
        """
        Build a directory from its JSON document.

        :raises InvalidDirectory: If a mandatory resource is missing.
        """
        if not isinstance(jobj, dict):
            raise InvalidDirectory(url=url, missing=[])
        missing = [
            name for name in (u'newAccount', u'newNonce', u'newOrder')
            if not isinstance(jobj.get(name), str)]
        if missing:
            raise InvalidDirectory(url=url, missing=missing)
        renewal_info = jobj.get(u'renewalInfo')
        if not isinstance(renewal_info, str):
            renewal_info = None
        return cls(
            new_account=jobj[u'newAccount'],
            new_nonce=jobj[u'newNonce'],
            new_order=jobj[u'newOrder'],
            renewal_info=renewal_info)

    def to_json(self):
        jobj = {
            u'newAccount': self.new_account,
            u'newNonce': self.new_nonce,
            u'newOrder': self.new_order,
        }
        if self.renewal_info is not None:
            jobj[u'renewalInfo'] = self.renewal_info
        return jobj


@attr.s(frozen=True)
class PendingAuthorization:
    """
    An authorization waiting for its ``dns-01`` challenge to be answered.

    :ivar str dns_txt_record_content: The value to publish at
        ``_acme-challenge.<domain>``.
    """
    authorization_url = attr.ib()
    challenge_url = attr.ib()
    dns_txt_record_content = attr.ib()


@attr.s(frozen=True)
class OrderPending:
    """
    An order with at least one authorization still to be completed.
    """
    order_url = attr.ib()
    authorizations = attr.ib(converter=tuple)

    @property
    def dns_txt_record_contents(self):
        return [a.dns_txt_record_content for a in self.authorizations]


@attr.s(frozen=True)
class OrderReady:
    """
    An order whose authorizations are all valid, waiting to be finalized.
    """
    order_url = attr.ib()


@attr.s(frozen=True)
class OrderValid:
    """
    A finalized order; the certificate can be downloaded.
    """
    certificate_url = attr.ib()


class NewAccount(jose.JSONObjectWithFields):
    """
    ACME new account request.

    Unlike `acme.messages.NewRegistration` this takes contact URLs as they
    are, so ``tel:`` or other URL schemes can be used.
    """
    contact = jose.Field('contact')
    terms_of_service_agreed = jose.Field('termsOfServiceAgreed')


class Finalize(jose.JSONObjectWithFields):
    """
    ACME order finalize request.

    :ivar str csr: The JOSE Base-64 encoded DER CSR.
    """
    csr = jose.Field('csr')


class SuggestedWindow(jose.JSONObjectWithFields):
    """
    The window in which the CA would like a certificate to be renewed.
    """
    start = fields.RFC3339Field('start')
    end = fields.RFC3339Field('end', omitempty=True)


class RenewalInfo(jose.JSONObjectWithFields):
    """
    ACME Renewal Information (RFC 9773) about a certificate.
    """
    suggested_window = jose.Field(
        'suggestedWindow', decoder=SuggestedWindow.from_json)
    explanation_url = jose.Field('explanationURL', omitempty=True)


def dns_identifiers(domain_name):
    """
    Get the order identifiers for a domain and its wildcard.

    :rtype: ``List[acme.messages.Identifier]``
    """
    return [
        messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=name)
        for name in (domain_name, u'*.' + domain_name)]


__all__ = [
    'AccountStatus', 'OrderStatus', 'AuthorizationStatus', 'ChallengeStatus',
    'lookup_status', 'Directory', 'PendingAuthorization', 'OrderPending',
    'OrderReady', 'OrderValid', 'NewAccount', 'Finalize', 'SuggestedWindow',
    'RenewalInfo', 'dns_identifiers']
