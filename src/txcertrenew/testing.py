"""
Utilities for testing with txcertrenew.
"""
import json
from collections import OrderedDict

import attr
from josepy import jwa
from josepy.b64 import b64decode
from cryptography.hazmat.primitives.asymmetric import ec
from twisted.internet.defer import fail, maybeDeferred, succeed
from twisted.web.http_headers import Headers
from zope.interface import implementer

from txcertrenew.interfaces import ICertificateStore, IDNSResponder
from txcertrenew.store import StoredCertificate, chain_pem, new_csr
from txcertrenew.util import (
    key_authorization_digest, validation_domain_name)


@implementer(IDNSResponder)
@attr.s
class RecordingDNSResponder(object):
    """
    A responder that only remembers which TXT records would be published.

    :ivar records: The published records, as a mapping from the full record
        name to the set of values.
    :ivar history: ``(operation, domain_name, contents)`` for every call.
    """
    challenge_type = u'dns-01'
    records = attr.ib(default=attr.Factory(dict))
    history = attr.ib(default=attr.Factory(list))

    def start_responding(self, domain_name, contents):
        self.history.append((u'start', domain_name, list(contents)))
        self.records.setdefault(
            validation_domain_name(domain_name), set()).update(contents)

    def stop_responding(self, domain_name, contents):
        self.history.append((u'stop', domain_name, list(contents)))
        values = self.records.get(validation_domain_name(domain_name), set())
        values.difference_update(contents)


@implementer(ICertificateStore)
class MemoryStore(object):
    """
    A certificate store that keeps certificates in memory only.

    :param certs: Initial certificates, as a mapping from name to the
        contents of the PEM file.
    """
    def __init__(self, certs=None, key_type=u'ec:p256'):
        if certs is None:
            self._store = {}
        else:
            self._store = dict(certs)
        self._pending = {}
        self.key_type = key_type

    def get(self, name):
        content = self._store.get(name)
        if content is None:
            return succeed(None)
        return maybeDeferred(StoredCertificate.from_pem, content)

    def create_csr(self, name, domain_name):
        key_pem, csr = new_csr(domain_name, self.key_type)
        self._pending[name] = key_pem
        return succeed(csr)

    def merge(self, name, certificates):
        try:
            key_pem = self._pending.pop(name)
        except KeyError:
            return fail()
        self._store[name] = chain_pem(key_pem, certificates)
        return succeed(None)

    def as_dict(self):
        return succeed(self._store)


@attr.s
class FakeResponse(object):
    """
    An HTTP response with a body that has already arrived, shaped like the
    responses of ``treq``.
    """
    code = attr.ib()
    headers = attr.ib(default=attr.Factory(Headers))
    body = attr.ib(default=b'')

    def content(self):
        return succeed(self.body)


def json_response(code, jobj, content_type=b'application/json', **headers):
    """
    Build a `FakeResponse` with a JSON body.

    :param headers: Extra header fields, with ``_`` instead of ``-`` in their
        names.
    """
    response = FakeResponse(code=code, body=json.dumps(jobj).encode('utf-8'))
    response.headers.setRawHeaders(b'content-type', [content_type])
    for name, value in headers.items():
        response.headers.setRawHeaders(
            name.replace(u'_', u'-').encode('ascii'), [value])
    return response


def problem(code, typ, detail=u''):
    """
    Build a `FakeResponse` carrying an RFC 7807 problem document.
    """
    return json_response(
        code,
        {u'type': u'urn:ietf:params:acme:error:' + typ, u'detail': detail},
        content_type=b'application/problem+json')


_CURVES = {
    u'P-256': (ec.SECP256R1, jwa.ES256),
    u'P-384': (ec.SECP384R1, jwa.ES384),
    u'P-521': (ec.SECP521R1, jwa.ES512),
}


def _verify(jwk, protected, payload, signature):
    """
    Check the signature of a JWS request against a JWK.
    """
    curve, alg = _CURVES[jwk[u'crv']]
    public_key = ec.EllipticCurvePublicNumbers(
        x=int.from_bytes(b64decode(jwk[u'x']), 'big'),
        y=int.from_bytes(b64decode(jwk[u'y']), 'big'),
        curve=curve()).public_key()
    return alg.verify(
        public_key,
        protected.encode('ascii') + b'.' + payload.encode('ascii'),
        b64decode(signature))


@attr.s
class RecordedRequest(object):
    """
    A request received by `FakeACMEServer`.

    :ivar protected: The decoded protected header of a signed request.
    :ivar payload: The decoded payload of a signed request; ``None`` for
        POST-as-GET.
    """
    method = attr.ib()
    path = attr.ib()
    headers = attr.ib(repr=False)
    protected = attr.ib(default=None)
    payload = attr.ib(default=None)


class FakeACMEServer(object):
    """
    A deterministic, in-memory ACME CA.

    It can be given to `txcertrenew.client.Client.from_url` in place of a
    ``treq`` client.  It checks nonces, signatures and ``kid``\\s, records
    every request in `requests`, and issues a certificate for one order at a
    time.  Responses can be replaced with `override`.

    :param str account_status: The status of every account.
    :param valid_identifiers: Identifiers whose authorizations are already
        valid when the order is placed.
    :param bool offer_dns: Whether authorizations offer a ``dns-01``
        challenge.
    :param int challenge_polls: How many polls the challenge stays
        ``processing`` after being answered.
    :param int authorization_polls: How many polls the authorization stays
        ``pending`` after its challenge became valid.
    :param int order_polls: How many polls the order stays ``processing``
        after being finalized.
    :param str retry_after: A ``Retry-After`` value sent with every
        ``processing`` or ``pending`` state, or ``None``.
    :param dns: A `RecordingDNSResponder`; if given, challenges only become
        valid if the expected TXT record is published there.
    :param str certificate_chain: The PEM chain issued.
    :param renewal_info: The renewal information document, or ``None`` for
        a CA without renewal information.
    """
    base = u'https://acme.test'

    def __init__(self, account_status=u'valid', valid_identifiers=(),
                 offer_dns=True, challenge_polls=1, authorization_polls=0,
                 order_polls=1, retry_after=None, dns=None,
                 certificate_chain=u'', renewal_info=None):
        self.account_status = account_status
        self.valid_identifiers = set(valid_identifiers)
        self.offer_dns = offer_dns
        self.challenge_polls = challenge_polls
        self.authorization_polls = authorization_polls
        self.order_polls = order_polls
        self.retry_after = retry_after
        self.dns = dns
        self.certificate_chain = certificate_chain
        self.renewal_info = renewal_info

        self.requests = []
        self.csr = None
        self._nonce_counter = 0
        self._nonces = set()
        self._accounts = OrderedDict()
        self._overrides = {}
        self._order = None
        self._authorizations = OrderedDict()

    def url(self, path):
        return self.base + path

    @property
    def directory_url(self):
        return self.url(u'/directory')

    def directory(self):
        jobj = {
            u'newAccount': self.url(u'/new-account'),
            u'newNonce': self.url(u'/new-nonce'),
            u'newOrder': self.url(u'/new-order'),
        }
        if self.renewal_info is not None:
            jobj[u'renewalInfo'] = self.url(u'/renewal-info')
        return jobj

    def override(self, method, path, *responses):
        """
        Answer the next requests for a path with canned responses, instead
        of processing them.  Signed requests still consume their nonce.
        """
        self._overrides.setdefault((method, path), []).extend(responses)

    def _new_nonce(self):
        self._nonce_counter += 1
        nonce = u'nonce-{}'.format(self._nonce_counter)
        self._nonces.add(nonce)
        return nonce

    def request(self, method, url, headers=None, data=None, timeout=None,
                **kwargs):
        if isinstance(method, bytes):
            method = method.decode('ascii')
        if not url.startswith(self.base):
            return fail(ValueError('Unknown host: {!r}'.format(url)))
        if headers is None:
            headers = Headers()
        path = url[len(self.base):]
        recorded = RecordedRequest(method=method, path=path, headers=headers)
        self.requests.append(recorded)
        if method == u'POST':
            return maybeDeferred(self._post, recorded, data)
        return maybeDeferred(self._unsigned, recorded)

    def _pop_override(self, recorded):
        canned = self._overrides.get((recorded.method, recorded.path))
        if canned:
            return canned.pop(0)
        return None

    def _unsigned(self, recorded):
        canned = self._pop_override(recorded)
        if canned is not None:
            return canned
        if recorded.method == u'GET' and recorded.path == u'/directory':
            return json_response(200, self.directory())
        if recorded.method == u'HEAD' and recorded.path == u'/new-nonce':
            response = FakeResponse(code=200)
            response.headers.setRawHeaders(
                b'replay-nonce', [self._new_nonce().encode('ascii')])
            return response
        if (recorded.method == u'GET' and self.renewal_info is not None and
                recorded.path.startswith(u'/renewal-info/')):
            return json_response(200, self.renewal_info)
        return problem(404, u'malformed', u'Not found')

    def with_nonce(self, response):
        """
        Add a fresh ``Replay-Nonce`` to a response.
        """
        response.headers.setRawHeaders(
            b'replay-nonce', [self._new_nonce().encode('ascii')])
        return response

    def _post(self, recorded, data):
        jwk = self._authenticate(recorded, data)
        if isinstance(jwk, FakeResponse):
            return self.with_nonce(jwk)
        canned = self._pop_override(recorded)
        if canned is not None:
            return canned
        handler = self._route(recorded.path)
        if handler is None:
            return self.with_nonce(problem(404, u'malformed', u'Not found'))
        return self.with_nonce(handler(recorded, jwk))

    def _authenticate(self, recorded, data):
        """
        Check a signed request, returning the JWK it was signed with or a
        problem response.
        """
        try:
            jws = json.loads(data.decode('utf-8'))
            protected = json.loads(b64decode(jws[u'protected']))
            if jws[u'payload']:
                payload = json.loads(b64decode(jws[u'payload']))
            else:
                payload = None
        except (ValueError, KeyError, TypeError):
            return problem(400, u'malformed', u'Not a flattened JWS')
        recorded.protected = protected
        recorded.payload = payload

        nonce = protected.get(u'nonce')
        if nonce not in self._nonces:
            return problem(400, u'badNonce', u'Unknown nonce')
        self._nonces.discard(nonce)
        if protected.get(u'url') != self.url(recorded.path):
            return problem(401, u'unauthorized', u'Wrong url')
        if u'kid' in protected:
            jwk = self._accounts.get(protected[u'kid'])
            if jwk is None:
                return problem(400, u'accountDoesNotExist', u'Unknown kid')
        elif recorded.path == u'/new-account':
            jwk = protected.get(u'jwk')
        else:
            return problem(400, u'malformed', u'A kid is required')
        if not _verify(jwk, jws[u'protected'], jws[u'payload'],
                       jws[u'signature']):
            return problem(400, u'malformed', u'Bad signature')
        return jwk

    def _route(self, path):
        if path == u'/new-account':
            return self._new_account
        if path == u'/new-order':
            return self._new_order
        if self._order is None:
            return None
        if path == u'/order/1':
            return lambda recorded, jwk: self._order_response()
        if path == u'/order/1/finalize':
            return self._finalize
        if path == u'/order/1/certificate':
            return self._certificate
        for identifier, authorization in self._authorizations.items():
            if path == authorization[u'path']:
                return lambda recorded, jwk: self._poll_authorization(
                    authorization)
            if path == authorization[u'challenge_path']:
                return lambda recorded, jwk: self._challenge(
                    recorded, jwk, identifier, authorization)
        return None

    def _new_account(self, recorded, jwk):
        account_url = None
        for url, known in self._accounts.items():
            if known == jwk:
                account_url = url
        code = 200
        if account_url is None:
            code = 201
            account_url = self.url(
                u'/account/{}'.format(len(self._accounts) + 1))
            self._accounts[account_url] = jwk
        return json_response(
            code,
            {u'status': self.account_status,
             u'contact': recorded.payload.get(u'contact', [])},
            location=account_url.encode('ascii'))

    def _new_order(self, recorded, jwk):
        identifiers = [
            i[u'value'] for i in recorded.payload[u'identifiers']]
        self._authorizations = OrderedDict()
        for n, identifier in enumerate(identifiers, 1):
            valid = identifier in self.valid_identifiers
            self._authorizations[identifier] = {
                u'path': u'/authz/{}'.format(n),
                u'challenge_path': u'/authz/{}/dns'.format(n),
                u'token': u'token-{}'.format(n),
                u'status': u'valid' if valid else u'pending',
                u'challenge_status': u'valid' if valid else u'pending',
                u'polls': 0,
            }
        self._order = {
            u'status': u'pending',
            u'identifiers': identifiers,
            u'polls': 0,
        }
        response = self._order_response(code=201)
        response.headers.setRawHeaders(
            b'location', [self.url(u'/order/1').encode('ascii')])
        return response

    def _update_order(self):
        if self._order[u'status'] == u'pending' and all(
                a[u'status'] == u'valid'
                for a in self._authorizations.values()):
            self._order[u'status'] = u'ready'
        elif self._order[u'status'] == u'processing':
            if self._order[u'polls'] >= self.order_polls:
                self._order[u'status'] = u'valid'
            self._order[u'polls'] += 1

    def _order_response(self, code=200, update=True):
        if update:
            self._update_order()
        jobj = {
            u'status': self._order[u'status'],
            u'identifiers': [
                {u'type': u'dns', u'value': i}
                for i in self._order[u'identifiers']],
            u'authorizations': [
                self.url(a[u'path']) for a in self._authorizations.values()],
            u'finalize': self.url(u'/order/1/finalize'),
        }
        if self._order[u'status'] == u'valid':
            jobj[u'certificate'] = self.url(u'/order/1/certificate')
        return self._with_retry_after(
            json_response(code, jobj), self._order[u'status'])

    def _with_retry_after(self, response, status):
        if self.retry_after is not None and status in (
                u'pending', u'processing'):
            response.headers.setRawHeaders(
                b'retry-after', [self.retry_after.encode('ascii')])
        return response

    def _authorization_json(self, identifier, authorization):
        challenges = [{
            u'type': u'http-01',
            u'url': self.url(authorization[u'path'] + u'/http'),
            u'token': authorization[u'token'],
            u'status': u'pending',
        }]
        if self.offer_dns:
            challenges.append({
                u'type': u'dns-01',
                u'url': self.url(authorization[u'challenge_path']),
                u'token': authorization[u'token'],
                u'status': authorization[u'challenge_status'],
            })
        return {
            u'status': authorization[u'status'],
            u'identifier': {
                u'type': u'dns', u'value': identifier.lstrip(u'*.')},
            u'wildcard': identifier.startswith(u'*.'),
            u'challenges': challenges,
        }

    def _poll_authorization(self, authorization):
        if (authorization[u'status'] == u'pending' and
                authorization[u'challenge_status'] == u'valid'):
            if authorization[u'polls'] >= self.authorization_polls:
                authorization[u'status'] = u'valid'
            authorization[u'polls'] += 1
        elif authorization[u'challenge_status'] == u'invalid':
            authorization[u'status'] = u'invalid'
        for identifier, known in self._authorizations.items():
            if known is authorization:
                break
        return self._with_retry_after(
            json_response(
                200, self._authorization_json(identifier, authorization)),
            authorization[u'status'])

    def _challenge(self, recorded, jwk, identifier, authorization):
        status = authorization[u'challenge_status']
        if recorded.payload is not None and status == u'pending':
            authorization[u'challenge_status'] = status = u'processing'
            authorization[u'challenge_answered'] = 0
        elif status == u'processing':
            if authorization[u'challenge_answered'] >= self.challenge_polls:
                status = u'valid'
                if self.dns is not None:
                    expected = key_authorization_digest(
                        authorization[u'token'], jwk)
                    published = self.dns.records.get(
                        validation_domain_name(identifier.lstrip(u'*.')),
                        set())
                    if expected not in published:
                        status = u'invalid'
                authorization[u'challenge_status'] = status
            authorization[u'challenge_answered'] += 1
        jobj = {
            u'type': u'dns-01',
            u'url': self.url(authorization[u'challenge_path']),
            u'token': authorization[u'token'],
            u'status': status,
        }
        if status == u'invalid':
            jobj[u'error'] = {
                u'type': u'urn:ietf:params:acme:error:incorrectResponse',
                u'detail': u'No TXT record found',
            }
        return self._with_retry_after(json_response(200, jobj), status)

    def _finalize(self, recorded, jwk):
        self._update_order()
        if self._order[u'status'] != u'ready':
            return problem(403, u'orderNotReady', u'Order is not ready')
        self.csr = recorded.payload[u'csr']
        self._order[u'status'] = u'processing'
        self._order[u'polls'] = 0
        return self._order_response(update=False)

    def _certificate(self, recorded, jwk):
        if self._order[u'status'] != u'valid':
            return problem(404, u'malformed', u'No certificate yet')
        response = FakeResponse(
            code=200, body=self.certificate_chain.encode('ascii'))
        response.headers.setRawHeaders(
            b'content-type', [b'application/pem-certificate-chain'])
        return response


__all__ = [
    'RecordingDNSResponder', 'MemoryStore', 'FakeResponse', 'json_response',
    'problem', 'RecordedRequest', 'FakeACMEServer']
