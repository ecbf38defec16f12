"""
ACME client API implementation for Twisted.

Extracted from RFC 8555

                              directory
                                  |
                                  +--> newNonce
                                  |
                 +----------------+----------------+
                 |                |                |
                 V                V                V
            newAccount         newOrder       renewalInfo
                 |                |
                 V                V
              account           order --+--> finalize
                                  |     |
                                  |     +--> cert
                                  V
                            authorization
                                  |
                                  V
                              challenge

   +-------------------+--------------------------------+--------------+
   | Action            | Request                        | Response     |
   +-------------------+--------------------------------+--------------+
   | Get directory     | GET  directory                 | 200          |
   | Get nonce         | HEAD newNonce                  | 200 or 204   |
   | Create account    | POST newAccount                | 200/201 ->   |
   |                   |                                | account      |
   | Submit order      | POST newOrder                  | 201 -> order |
   | Fetch challenges  | POST-as-GET authorization urls | 200          |
   | Respond           | POST challenge urls            | 200          |
   | Poll for status   | POST-as-GET order              | 200          |
   | Finalize order    | POST order's finalize url      | 200 or 201   |
   | Download          | POST-as-GET certificate url    | 200          |
   +-------------------+--------------------------------+--------------+

1. client = yield Client.from_url(reactor, DIRECTORY_URL)
2. done automatically for each signed request
3. account = yield client.create_or_get_account(contact_url, key)
4. order = yield account.place_order(domain_name)
5. done as part of place_order()
6. order = yield account.complete_authorization(order), once the TXT
   records are published
7. done as part of complete_authorization() and finalize_order()
8. order = yield account.finalize_order(order, csr)
9. done as part of finalize_order()
10. pem = yield account.download_certificate(order)

Every request made here names the responses it accepts with a *decoder*:
a callable taking the status code, the response headers and the raw body,
and returning the decoded value, or ``None`` if the response is not
acceptable.
"""
import json
from datetime import timezone

import attr
import josepy as jose
from acme import messages as acme_messages
from eliot.twisted import DeferredContext
from treq.client import HTTPClient
from twisted.internet import defer
from twisted.internet.task import deferLater
from twisted.web import http
from twisted.web.client import Agent, HTTPConnectionPool
from twisted.web.http_headers import Headers

from txcertrenew import __version__
from txcertrenew.errors import (
    AuthorizationFailed, MissingLocation, MissingNonce, NoSupportedChallenges,
    OrderStillPending, PollingTimeout, ServerError, UnexpectedResponse,
    UnexpectedStatus)
from txcertrenew.jws import sign_request
from txcertrenew.logging import (
    LOG_ACME_COMPLETE_AUTHORIZATION, LOG_ACME_CONSUME_DIRECTORY,
    LOG_ACME_DOWNLOAD_CERTIFICATE, LOG_ACME_FINALIZE_ORDER,
    LOG_ACME_PLACE_ORDER, LOG_ACME_REGISTER, LOG_ACME_RENEWAL_INFO,
    LOG_ACME_RENEWAL_INFO_FAILED, LOG_ACME_STATE, LOG_ACME_WAIT,
    LOG_JWS_ADD_NONCE, LOG_JWS_DECODE_RESPONSE, LOG_JWS_GET,
    LOG_JWS_GET_NONCE, LOG_JWS_HEAD, LOG_JWS_POST, LOG_JWS_REQUEST)
from txcertrenew.messages import (
    AccountStatus, AuthorizationStatus, ChallengeStatus, Directory, Finalize,
    NewAccount, OrderPending, OrderReady, OrderStatus, OrderValid,
    PendingAuthorization, RenewalInfo, dns_identifiers, lookup_status)
from txcertrenew.util import (
    encode_csr, key_authorization_digest, parse_retry_after, tap)

_DEFAULT_TIMEOUT = 40

JOSE_CONTENT_TYPE = b'application/jose+json'
JSON_ERROR_CONTENT_TYPE = u'application/problem+json'
PEM_CHAIN_TYPE = u'application/pem-certificate-chain'
REPLAY_NONCE_HEADER = b'replay-nonce'
DNS_01 = u'dns-01'

#: How many characters of an unacceptable response body are kept.
SNIPPET_LENGTH = 200


@attr.s(frozen=True)
class Response:
    """
    A fully read HTTP response.

    :ivar int code: The status code.
    :ivar headers: ``twisted.web.http_headers.Headers``.
    :ivar bytes body: The body.
    """
    code = attr.ib()
    headers = attr.ib()
    body = attr.ib(repr=False)


@attr.s(frozen=True)
class Observed:
    """
    The decoded state of a remote ACME object.

    :ivar status: The status, one of the constants in `txcertrenew.messages`.
    :ivar dict body: The decoded JSON document.
    :ivar headers: The response headers; ``Retry-After`` lives here.
    """
    status = attr.ib()
    body = attr.ib(repr=False)
    headers = attr.ib(repr=False)


def _header(headers, name):
    """
    Get the first value of a header field as text, or ``None``.
    """
    value = headers.getRawHeaders(name, [None])[0]
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode('ascii', 'replace')
    return value


def _media_type(headers):
    """
    Get the media type of a response, without any parameters.
    """
    content_type = _header(headers, b'content-type')
    if content_type is None:
        return None
    return content_type.split(u';', 1)[0].strip().lower()


def _json_body(body):
    """
    Parse a JSON body, or return ``None`` if it is not JSON.
    """
    try:
        return json.loads(body.decode('utf-8'))
    except ValueError:
        return None


def _snippet(body):
    return body.decode('utf-8', 'replace')[:SNIPPET_LENGTH]


def _problem(jobj):
    """
    Turn an RFC 7807 problem document into an `acme.messages.Error`, or
    ``None`` if it isn't one.
    """
    if not isinstance(jobj, dict):
        return None
    try:
        return acme_messages.Error.from_json(jobj)
    except (jose.DeserializationError, TypeError, ValueError):
        return None


def unacceptable(operation, response):
    """
    Build the exception for a response that the call site did not accept.

    :rtype: `~txcertrenew.errors.ServerError` for HTTP problem documents,
        `~txcertrenew.errors.UnexpectedResponse` otherwise.
    """
    if _media_type(response.headers) == JSON_ERROR_CONTENT_TYPE:
        error = _problem(_json_body(response.body))
        if error is not None:
            return ServerError(error, operation, response.code)
    return UnexpectedResponse(
        operation=operation,
        code=response.code,
        content_type=_header(response.headers, b'content-type'),
        snippet=_snippet(response.body))


def _location(headers, url):
    location = _header(headers, b'location')
    if location is None:
        raise MissingLocation(url=url)
    return location


def _require(jobj, name, types, operation):
    """
    Get a member of a JSON object, requiring it to be of a certain type.
    """
    value = jobj.get(name)
    if not isinstance(value, types):
        raise UnexpectedResponse(
            operation=operation, code=http.OK, content_type=None,
            snippet=repr(jobj)[:SNIPPET_LENGTH])
    return value


def directory_decoder(url):
    def decode(code, headers, body):
        if code != http.OK:
            return None
        jobj = _json_body(body)
        if jobj is None:
            return None
        return Directory.from_json(jobj, url)
    return decode


def status_decoder(statuses, operation):
    """
    Decode the ``200`` response to a POST-as-GET of an ACME object.
    """
    def decode(code, headers, body):
        if code != http.OK:
            return None
        jobj = _json_body(body)
        if not isinstance(jobj, dict):
            return None
        return Observed(
            status=lookup_status(statuses, jobj, operation),
            body=jobj,
            headers=headers)
    return decode


def account_decoder(url):
    def decode(code, headers, body):
        if code not in (http.OK, http.CREATED):
            return None
        jobj = _json_body(body)
        if not isinstance(jobj, dict):
            return None
        return (
            _location(headers, url),
            lookup_status(AccountStatus, jobj, u'new-account'))
    return decode


def new_order_decoder(url):
    def decode(code, headers, body):
        if code != http.CREATED:
            return None
        return _location(headers, url)
    return decode


def finalize_decoder(code, headers, body):
    if code not in (http.OK, http.CREATED):
        return None
    return code


def certificate_decoder(code, headers, body):
    if code != http.OK or _media_type(headers) != PEM_CHAIN_TYPE:
        return None
    try:
        return body.decode('ascii')
    except UnicodeDecodeError:
        return None


def renewal_info_decoder(code, headers, body):
    if code != http.OK:
        return None
    jobj = _json_body(body)
    if not isinstance(jobj, dict):
        return None
    start = RenewalInfo.from_json(jobj).suggested_window.start
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start


def _default_client(http_client, reactor):
    """
    Make a client if we didn't get one.
    """
    pool = None
    if http_client is None:
        pool = HTTPConnectionPool(reactor)
        http_client = HTTPClient(agent=Agent(reactor, pool=pool))
    return JWSClient(http_client, pool=pool)


class Client(object):
    """
    ACME client interface.

    Holds the directory of an ACME server; signed requests are made by the
    `Account` returned from `create_or_get_account`.

    Should be initialized with `Client.from_url`.

    :ivar float min_retry_after: The shortest wait between two polls of an
        ACME object, in seconds.
    :ivar float max_retry_after: The longest wait between two polls of an
        ACME object, in seconds; longer ``Retry-After`` hints are clamped.
    :ivar max_polls: How many times one ACME object may be polled before
        giving up with `~txcertrenew.errors.PollingTimeout`, or ``None`` to
        never give up.
    """
    def __init__(self, directory, reactor, jws_client, min_retry_after=1,
                 max_retry_after=30, max_polls=None):
        self._client = jws_client
        self._clock = reactor
        self.directory = directory
        self.min_retry_after = min_retry_after
        self.max_retry_after = max_retry_after
        self.max_polls = max_polls

    @classmethod
    def from_url(
        cls, reactor, url, http_client=None, timeout=_DEFAULT_TIMEOUT,
        **kwargs
            ):
        """
        Construct a client from an ACME directory at a given URL.

        At construct time, it validates the ACME directory.

        :param reactor: The Twisted reactor to use.
        :param str url: The URL to fetch the directory from.  See
            `txcertrenew.urls` for constants for various well-known public
            directories.
        :param http_client: A ``treq.client.HTTPClient``, or anything with its
            ``request`` method, or ``None`` to construct one with a private
            connection pool.
        :param int timeout: Number of seconds to wait for an HTTP response
            during ACME server interaction.
        :param kwargs: Passed on to `Client`.

        :raises ~txcertrenew.errors.InvalidDirectory: If the directory lacks a
            mandatory resource.

        :return: The constructed client.
        :rtype: Deferred[`Client`]
        """
        action = LOG_ACME_CONSUME_DIRECTORY(url=url)
        with action.context():
            jws_client = _default_client(http_client, reactor)
            jws_client.timeout = timeout

            def cb_new_client(directory):
                jws_client.new_nonce = directory.new_nonce
                return cls(directory, reactor, jws_client, **kwargs)

            return (
                DeferredContext(
                    jws_client.get(url, directory_decoder(url), u'directory'))
                .addCallback(
                    tap(lambda d: action.add_success_fields(directory=d)))
                .addCallback(cb_new_client)
                .addActionFinish())

    def stop(self):
        """
        Stops the client operation.

        This cancels pending operations, including those of the accounts of
        this client, and does cleanup.

        :return: When operation is done.
        :rtype: Deferred[None]
        """
        return self._client.stop()

    def create_or_get_account(self, contact_url, key):
        """
        Create the account of a key, or find the existing one.

        :param str contact_url: A contact URL for the account, such as
            ``mailto:hostmaster@example.com``.
        :param ~txcertrenew.interfaces.IAccountKey key: The account key.  It
            is only ever asked for its public key and for signatures.

        :raises ~txcertrenew.errors.UnexpectedStatus: If the account is not
            ``valid``.

        :rtype: Deferred[`Account`]
        """
        action = LOG_ACME_REGISTER(contact=contact_url)
        with action.context():
            return (
                DeferredContext(
                    self._create_or_get_account(contact_url, key))
                .addCallback(
                    tap(lambda account: action.add_success_fields(
                        account_url=account.url,
                        status=AccountStatus.VALID.value)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _create_or_get_account(self, contact_url, key):
        jws_client = self._client.bind(key)
        url = self.directory.new_account
        account_url, status = yield jws_client.post(
            url,
            NewAccount(contact=[contact_url], terms_of_service_agreed=True),
            account_decoder(url),
            u'new-account')
        if status != AccountStatus.VALID:
            raise UnexpectedStatus(
                kind=u'account', url=account_url, status=status.value)
        jws_client.kid = account_url
        return Account(client=self, url=account_url, jws_client=jws_client)

    def suggested_renewal_window_start(self, ari_id):
        """
        Ask the CA when the certificate should be renewed.

        This is advisory: every failure is logged and turned into ``None``.

        :param str ari_id: The renewal information identifier of the
            certificate; see `txcertrenew.util.ari_id`.

        :rtype: ``Deferred[Optional[datetime]]``
        :return: The start of the suggested renewal window, or ``None`` if
            there is no suggestion.
        """
        if self.directory.renewal_info is None:
            return defer.succeed(None)
        url = u'{}/{}'.format(self.directory.renewal_info.rstrip(u'/'), ari_id)

        def eb_no_suggestion(f):
            LOG_ACME_RENEWAL_INFO_FAILED.log(reason=f.getErrorMessage())
            return None

        action = LOG_ACME_RENEWAL_INFO(ari_id=ari_id)
        with action.context():
            return (
                DeferredContext(
                    defer.maybeDeferred(
                        self._client.get, url, renewal_info_decoder,
                        u'renewal-info'))
                .addErrback(eb_no_suggestion)
                .addCallback(
                    tap(lambda start: action.add_success_fields(
                        window_start=(
                            None if start is None else start.isoformat()))))
                .addActionFinish())

    def wait(self, kind, url, headers=None):
        """
        Wait before polling an ACME object again.

        :param headers: The headers of the last response about the object;
            ``None`` to wait the minimum.

        :raises ~txcertrenew.errors.InvalidRetryAfter: If the server sent a
            ``Retry-After`` we cannot understand.
        """
        if headers is None:
            delay = float(self.min_retry_after)
        else:
            delay = parse_retry_after(
                headers, self._clock.seconds(),
                self.min_retry_after, self.max_retry_after)
        LOG_ACME_WAIT.log(url=url, kind=kind, delay=delay)
        return deferLater(self._clock, delay, lambda: None)

    def check_polls(self, kind, url, attempts):
        """
        Give up if an object was polled too often.

        :raises ~txcertrenew.errors.PollingTimeout: If ``attempts`` is more
            than the configured limit.
        """
        if self.max_polls is not None and attempts > self.max_polls:
            raise PollingTimeout(kind=kind, url=url, attempts=attempts)


@attr.s
class Account(object):
    """
    An ACME account, as returned by `Client.create_or_get_account`.

    Drives orders through their states::

        pending --------------+
           |                  |
           | All authz        |
           | "valid"          |
           V                  |
         ready ---------------+
           |                  |
           | Receive          |
           | finalize         |
           | request          |
           V                  |
       processing ------------+
           |                  |
           | Certificate      | Error or
           | issued           | Authorization failure
           V                  V
         valid             invalid

    :ivar str url: The account URL; used as the ``kid`` of signed requests.
    """
    client = attr.ib()
    url = attr.ib()
    jws_client = attr.ib(repr=False)

    @property
    def key(self):
        return self.jws_client.key

    def _observe(self, kind, url, statuses, payload=None):
        """
        POST to an ACME object and decode its state.  The payload is
        ``None`` to POST-as-GET.
        """
        operation = u'poll-' + kind

        def cb_log_state(observed):
            LOG_ACME_STATE.log(url=url, kind=kind, status=observed.status.value)
            return observed

        return (
            self.jws_client.post(
                url, payload, status_decoder(statuses, operation), operation)
            .addCallback(cb_log_state))

    def place_order(self, domain_name):
        """
        Order a certificate for a domain and its wildcard.

        :param str domain_name: The domain name; the certificate will cover
            ``domain_name`` and ``*.domain_name``.

        :raises ~txcertrenew.errors.NoSupportedChallenges: If a pending
            authorization has no ``dns-01`` challenge.
        :raises ~txcertrenew.errors.UnexpectedStatus: If the order or one of
            its authorizations is in a status we cannot continue from.

        :rtype: ``Deferred[Union[OrderPending, OrderReady, OrderValid]]``
        """
        action = LOG_ACME_PLACE_ORDER(domain_name=domain_name)
        with action.context():
            return (
                DeferredContext(self._place_order(domain_name))
                .addCallback(
                    tap(lambda order: action.add_success_fields(
                        order=type(order).__name__)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _place_order(self, domain_name):
        url = self.client.directory.new_order
        order_url = yield self.jws_client.post(
            url,
            acme_messages.NewOrder(identifiers=dns_identifiers(domain_name)),
            new_order_decoder(url),
            u'new-order')

        attempts = 0
        while True:
            attempts += 1
            self.client.check_polls(u'order', order_url, attempts)
            order = yield self._observe(u'order', order_url, OrderStatus)
            if order.status == OrderStatus.PROCESSING:
                yield self.client.wait(u'order', order_url, order.headers)
            elif order.status == OrderStatus.PENDING:
                break
            elif order.status == OrderStatus.READY:
                return OrderReady(order_url=order_url)
            elif order.status == OrderStatus.VALID:
                return OrderValid(certificate_url=_require(
                    order.body, u'certificate', str, u'poll-order'))
            else:
                raise UnexpectedStatus(
                    kind=u'order', url=order_url, status=order.status.value)

        authorization_urls = _require(
            order.body, u'authorizations', list, u'poll-order')
        pending = []
        for authorization_url in authorization_urls:
            authorization = yield self._observe(
                u'authorization', authorization_url, AuthorizationStatus)
            if authorization.status == AuthorizationStatus.VALID:
                continue
            if authorization.status != AuthorizationStatus.PENDING:
                raise UnexpectedStatus(
                    kind=u'authorization', url=authorization_url,
                    status=authorization.status.value)
            pending.append(
                self._pending_authorization(
                    authorization_url, authorization.body))
        return OrderPending(order_url=order_url, authorizations=pending)

    def _pending_authorization(self, authorization_url, body):
        """
        Pick the ``dns-01`` challenge of a pending authorization.
        """
        challenges = _require(
            body, u'challenges', list, u'poll-authorization')
        for challenge in challenges:
            if isinstance(challenge, dict) and challenge.get(u'type') == DNS_01:
                break
        else:
            raise NoSupportedChallenges(authorization_url=authorization_url)
        return PendingAuthorization(
            authorization_url=authorization_url,
            challenge_url=_require(
                challenge, u'url', str, u'poll-authorization'),
            dns_txt_record_content=key_authorization_digest(
                _require(challenge, u'token', str, u'poll-authorization'),
                self.key.jwk()))

    @defer.inlineCallbacks
    def complete_authorization(self, order):
        """
        Tell the CA the challenges of an order are ready to be validated,
        and wait for the authorizations to become valid.

        This must only be called once the TXT records of the order are
        visible; removing them afterwards, whatever the outcome, is up to the
        caller.

        :param OrderPending order: The order.

        :raises ~txcertrenew.errors.AuthorizationFailed: If a challenge or
            authorization ends up in any status other than ``valid``.

        :rtype: ``Deferred[OrderReady]``
        """
        for authorization in order.authorizations:
            yield self._complete_authorization(authorization)
        return OrderReady(order_url=order.order_url)

    def _complete_authorization(self, authorization):
        action = LOG_ACME_COMPLETE_AUTHORIZATION(
            authorization_url=authorization.authorization_url,
            challenge_url=authorization.challenge_url)
        with action.context():
            return (
                DeferredContext(self._answer_challenge(authorization))
                .addCallback(
                    lambda _: self._poll_authorization(authorization))
                .addActionFinish())

    @defer.inlineCallbacks
    def _answer_challenge(self, authorization):
        url = authorization.challenge_url
        payload = {}
        attempts = 0
        while True:
            attempts += 1
            self.client.check_polls(u'challenge', url, attempts)
            challenge = yield self._observe(
                u'challenge', url, ChallengeStatus, payload)
            payload = None
            if challenge.status == ChallengeStatus.VALID:
                return challenge
            elif challenge.status == ChallengeStatus.PENDING:
                yield self.client.wait(u'challenge', url)
            elif challenge.status == ChallengeStatus.PROCESSING:
                yield self.client.wait(u'challenge', url, challenge.headers)
            else:
                raise AuthorizationFailed(
                    url=url, status=challenge.status.value,
                    error=_problem(challenge.body.get(u'error')))

    @defer.inlineCallbacks
    def _poll_authorization(self, authorization):
        url = authorization.authorization_url
        attempts = 0
        while True:
            attempts += 1
            self.client.check_polls(u'authorization', url, attempts)
            observed = yield self._observe(
                u'authorization', url, AuthorizationStatus)
            if observed.status == AuthorizationStatus.VALID:
                return observed
            elif observed.status == AuthorizationStatus.PENDING:
                yield self.client.wait(
                    u'authorization', url, observed.headers)
            else:
                raise AuthorizationFailed(
                    url=url, status=observed.status.value)

    def finalize_order(self, order, csr):
        """
        Request issuance of the certificate, and wait until it is issued.

        :param OrderReady order: The order.
        :param csr: The certificate signing request; see
            `txcertrenew.util.encode_csr` for the accepted forms.

        :raises ~txcertrenew.errors.OrderStillPending: If the order is (or goes
            back to) ``pending``.
        :raises ~txcertrenew.errors.UnexpectedStatus: If the order becomes
            ``invalid``.

        :rtype: ``Deferred[OrderValid]``
        """
        action = LOG_ACME_FINALIZE_ORDER(order_url=order.order_url)
        with action.context():
            return (
                DeferredContext(
                    defer.maybeDeferred(
                        self._finalize_order, order.order_url,
                        encode_csr(csr)))
                .addCallback(
                    tap(lambda valid: action.add_success_fields(
                        certificate_url=valid.certificate_url)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _finalize_order(self, order_url, csr):
        attempts = 0
        while True:
            attempts += 1
            self.client.check_polls(u'order', order_url, attempts)
            order = yield self._observe(u'order', order_url, OrderStatus)
            if order.status == OrderStatus.PENDING:
                raise OrderStillPending(url=order_url)
            elif order.status == OrderStatus.PROCESSING:
                yield self.client.wait(u'order', order_url, order.headers)
            elif order.status == OrderStatus.READY:
                yield self.jws_client.post(
                    _require(order.body, u'finalize', str, u'poll-order'),
                    Finalize(csr=csr),
                    finalize_decoder,
                    u'finalize')
            elif order.status == OrderStatus.VALID:
                return OrderValid(certificate_url=_require(
                    order.body, u'certificate', str, u'poll-order'))
            else:
                raise UnexpectedStatus(
                    kind=u'order', url=order_url, status=order.status.value)

    def download_certificate(self, order):
        """
        Download the certificate chain of a valid order.

        :param OrderValid order: The order.

        :rtype: ``Deferred[str]``
        :return: The PEM certificate chain, leaf first.  See
            `txcertrenew.util.split_pem_chain`.
        """
        action = LOG_ACME_DOWNLOAD_CERTIFICATE(
            certificate_url=order.certificate_url)
        with action.context():
            return (
                DeferredContext(
                    self.jws_client.post(
                        order.certificate_url, None, certificate_decoder,
                        u'download-certificate'))
                .addCallback(
                    tap(lambda pem: action.add_success_fields(
                        length=len(pem))))
                .addActionFinish())


class JWSClient(object):
    """
    HTTP client using JWS-signed messages for ACME.

    A client without a key can only make unsigned ``GET`` requests; use
    `bind` to get one for an account key.  Signed requests made through one
    bound client are serialized, since each of them consumes the nonce
    returned by the previous one.
    """
    timeout = _DEFAULT_TIMEOUT

    def __init__(self, http_client, key=None, pool=None, new_nonce=None,
                 user_agent=u'txcertrenew/{}'.format(
                     __version__).encode('ascii'),
                 in_flight=None):
        self._treq = http_client
        self._pool = pool
        self.key = key
        self.new_nonce = new_nonce
        self._user_agent = user_agent
        if in_flight is None:
            in_flight = set()
        self._in_flight = in_flight

        self._nonce = None
        self._lock = defer.DeferredLock()
        self.kid = None

    def bind(self, key):
        """
        Get a client making requests signed by ``key``.

        The new client shares the connections of this one, and has an empty
        nonce cache.

        :param ~txcertrenew.interfaces.IAccountKey key: The account key.
        """
        client = JWSClient(
            self._treq, key=key, new_nonce=self.new_nonce,
            user_agent=self._user_agent, in_flight=self._in_flight)
        client.timeout = self.timeout
        return client

    def _send_request(self, method, url, headers=None, data=None):
        """
        Send HTTP request, and read the whole response.

        :param str method: The HTTP method to use.
        :param str url: The URL to make the request to.

        :return: Deferred firing with the `Response`.
        """
        if headers is None:
            headers = Headers()
        headers.setRawHeaders(b'user-agent', [self._user_agent])
        action = LOG_JWS_REQUEST(method=method, url=url)
        with action.context():
            request = self._treq.request(
                method, url, headers=headers, data=data,
                timeout=self.timeout)
            self._in_flight.add(request)

            def cb_request_done(result):
                self._in_flight.discard(request)
                return result

            def cb_read(response):
                return response.content().addCallback(
                    lambda body: Response(
                        code=response.code, headers=response.headers,
                        body=body))

            return (
                DeferredContext(request)
                .addBoth(cb_request_done)
                .addCallback(cb_read)
                .addCallback(
                    tap(lambda r: action.add_success_fields(
                        code=r.code,
                        content_type=_header(r.headers, b'content-type'))))
                .addActionFinish())

    def _decode(self, response, decode, operation):
        """
        Run the decoder of the call site over a response.

        :raises ~txcertrenew.errors.ServerError: If the decoder refused an
            HTTP problem document.
        :raises ~txcertrenew.errors.UnexpectedResponse: If the decoder refused
            anything else.
        """
        with LOG_JWS_DECODE_RESPONSE(
                content_type=_header(response.headers, b'content-type'),
                operation=operation, code=response.code):
            value = decode(response.code, response.headers, response.body)
            if value is None:
                raise unacceptable(operation, response)
            return value

    def stop(self):
        """
        Stops the operation.

        This cancels pending operations and does cleanup.

        :return: A deferred which fires when the client is stopped.
        """
        for request in list(self._in_flight):
            request.cancel()
        if self._pool is not None:
            return self._pool.closeCachedConnections()
        return defer.succeed(None)

    def head(self, url):
        """
        Send HEAD request without checking the response.

        :param str url: The URL to make the request to.
        """
        with LOG_JWS_HEAD().context():
            return DeferredContext(
                self._send_request(u'HEAD', url)
                ).addActionFinish()

    def get(self, url, decode, operation):
        """
        Send an unsigned GET request and decode the response.

        :param str url: The URL to make the request to.
        :param decode: The decoder accepting the response.
        :param str operation: What the request is for, for diagnostics.

        :raises txcertrenew.errors.ServerError: If server response body
            carries HTTP Problem (RFC 7807).
        :raises txcertrenew.errors.UnexpectedResponse: If the decoder refused
            the response.

        :return: Deferred firing with the decoded value.
        """
        with LOG_JWS_GET().context():
            return (
                DeferredContext(self._send_request(u'GET', url))
                .addCallback(self._decode, decode, operation)
                .addActionFinish())

    def _cb_new_nonce(self, response):
        if response.code not in (http.OK, http.NO_CONTENT):
            raise unacceptable(u'new-nonce', response)
        nonce = _header(response.headers, REPLAY_NONCE_HEADER)
        if nonce is None:
            raise MissingNonce(url=self.new_nonce)
        return nonce

    def _add_nonce(self, response, url):
        """
        Replace the cached nonce with the one from a response we received.

        :raises ~txcertrenew.errors.MissingNonce: If there was none.

        :return: The response, unmodified.
        """
        nonce = _header(response.headers, REPLAY_NONCE_HEADER)
        LOG_JWS_ADD_NONCE.log(present=nonce is not None)
        self._nonce = nonce
        if nonce is None:
            raise MissingNonce(url=url)
        return response

    def _get_nonce(self):
        """
        Get a nonce to use in a request, emptying the cache.
        """
        action = LOG_JWS_GET_NONCE()
        if self._nonce is not None:
            with action:
                nonce, self._nonce = self._nonce, None
                action.add_success_fields(cached=True)
                return defer.succeed(nonce)
        else:
            with action.context():
                return (
                    DeferredContext(self.head(self.new_nonce))
                    .addCallback(self._cb_new_nonce)
                    .addCallback(tap(
                        lambda _: action.add_success_fields(cached=False)))
                    .addActionFinish())

    @defer.inlineCallbacks
    def _signed_request(self, url, payload):
        nonce = yield self._get_nonce()
        jws = yield sign_request(self.key, url, nonce, payload, kid=self.kid)
        headers = Headers({b'content-type': [JOSE_CONTENT_TYPE]})
        response = yield self._send_request(
            u'POST', url, headers=headers,
            data=json.dumps(jws).encode('utf-8'))
        return self._add_nonce(response, url)

    def post(self, url, payload, decode, operation):
        """
        POST a signed payload and decode the response.

        :param str url: The URL to request.
        :param payload: The payload; ``None`` to POST-as-GET.  See
            `txcertrenew.jws.encode_payload`.
        :param decode: The decoder accepting the response.
        :param str operation: What the request is for, for diagnostics.

        :raises txcertrenew.errors.ServerError: If server response body
            carries HTTP Problem (RFC 7807).
        :raises txcertrenew.errors.UnexpectedResponse: If the decoder refused
            the response.
        :raises txcertrenew.errors.MissingNonce: If the response carried no
            ``Replay-Nonce``.
        """
        if self.key is None:
            return defer.fail(
                RuntimeError('Cannot sign requests without an account key'))
        with LOG_JWS_POST().context():
            return (
                DeferredContext(
                    self._lock.run(self._signed_request, url, payload))
                .addCallback(self._decode, decode, operation)
                .addActionFinish())


__all__ = [
    'Client', 'Account', 'JWSClient', 'Response', 'Observed',
    'JOSE_CONTENT_TYPE', 'JSON_ERROR_CONTENT_TYPE',
    'PEM_CHAIN_TYPE', 'REPLAY_NONCE_HEADER', 'unacceptable',
    'directory_decoder', 'status_decoder', 'account_decoder',
    'new_order_decoder', 'finalize_decoder', 'certificate_decoder',
    'renewal_info_decoder']
