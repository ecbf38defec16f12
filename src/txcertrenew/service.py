from datetime import timedelta

import attr
from twisted.application.internet import TimerService
from twisted.application.service import Service
from twisted.internet import defer
from twisted.logger import Logger
from twisted.python.failure import Failure

from txcertrenew.messages import OrderPending, OrderReady, OrderValid
from txcertrenew.util import clock_now, split_pem_chain


log = Logger()


def _default_panic(failure, name):
    log.failure(
        u'PANIC! Unable to renew certificate: {name!r}',
        failure, name=name)


@attr.s(eq=False)
class AcmeRenewalService(Service):
    """
    A service for keeping one certificate up to date by using an ACME server.

    The certificate covers a domain and its wildcard, and is validated with
    ``dns-01`` challenges.

    :type cert_store: `~txcertrenew.interfaces.ICertificateStore`
    :param cert_store: The certificate store containing the certificate to
        manage.

    :type client: `txcertrenew.client.Client`
    :param client: A client, a Deferred of a client, or a callable returning
        either; for example,
        ``partial(Client.from_url, reactor, LETSENCRYPT_STAGING_DIRECTORY)``.

        When the service is stopped, it will automatically call the stop method
        on the client.

    :param clock: ``IReactorTime`` provider; usually the reactor, when not
        testing.

    :type responder: `~txcertrenew.interfaces.IDNSResponder`
    :param responder: Publishes the TXT records of the challenges.
    :type account_key: `~txcertrenew.interfaces.IAccountKey`
    :param account_key: The key of the ACME account.
    :param str contact_url: The contact URL of the account, like
        ``mailto:hostmaster@example.com``.
    :param str domain_name: The domain the certificate is for.
    :param str certificate_name: The name the certificate is stored under;
        the domain name by default.
    :param ~datetime.timedelta check_interval: How often to check whether the
        certificate must be renewed.
    :param ~datetime.timedelta reissue_interval: If the certificate is
        expiring in less time than this interval, it will be reissued.  Used
        when the CA makes no renewal suggestion.
    :param ~datetime.timedelta panic_interval: If the certificate is expiring
        in less time than this interval, and reissuing fails, the panic
        callback will be invoked.

    :type panic: Callable[[Failure, `str`], Deferred]
    :param panic: A callable invoked with the failure and certificate name
        when reissuing fails for a certificate which is missing or expiring in
        the ``panic_interval``.  For example, you could generate a monitoring
        alert.  The default callback logs a message at *CRITICAL* level.
    """
    cert_store = attr.ib()
    _client = attr.ib(
        converter=lambda maybe_callable: (
            maybe_callable() if callable(maybe_callable) else maybe_callable
        )
    )
    _clock = attr.ib()
    _responder = attr.ib()
    _account_key = attr.ib()
    contact_url = attr.ib()
    domain_name = attr.ib()
    certificate_name = attr.ib(default=None)
    check_interval = attr.ib(default=timedelta(days=1))
    reissue_interval = attr.ib(default=timedelta(days=30))
    panic_interval = attr.ib(default=timedelta(days=15))
    _panic = attr.ib(default=_default_panic)

    _waiting = attr.ib(default=attr.Factory(list), init=False)
    _issuing = attr.ib(default=None, init=False)
    _cached_client = attr.ib(default=None, init=False)
    _account = attr.ib(default=None, init=False)
    ready = False
    # Service used to repeatedly call the renewal check.
    _timer_service = None
    # Deferred of the current check.
    # Added to help the automated testing.
    _ongoing_check = None

    def __attrs_post_init__(self):
        if self.certificate_name is None:
            self.certificate_name = self.domain_name

    def _now(self):
        """
        Get the current time.
        """
        return clock_now(self._clock)

    def _get_client(self):
        """
        Get the client, cache it if it's ready.
        """
        if self._cached_client is not None:
            return defer.succeed(self._cached_client)
        client_or_d = self._client
        if isinstance(client_or_d, defer.Deferred):
            new_d = defer.Deferred()

            def got_client(final_client):
                self._cached_client = final_client
                new_d.callback(final_client)
                return final_client

            def got_error(error):
                new_d.errback(error)
                return error

            client_or_d.addCallbacks(got_client, got_error)
            return new_d
        else:
            self._cached_client = client_or_d
            return defer.succeed(client_or_d)

    @defer.inlineCallbacks
    def _get_account(self):
        """
        Get the ACME account, creating it on first use.
        """
        if self._account is None:
            client = yield self._get_client()
            self._account = yield client.create_or_get_account(
                self.contact_url, self._account_key)
        return self._account

    def needs_renewal(self):
        """
        Check whether the certificate should be renewed now.

        A missing certificate always needs to be issued.  Otherwise, if the
        CA suggests a renewal window for the certificate, it is renewed once
        the window has started; if not, it is renewed once it expires within
        the ``reissue_interval``.

        :rtype: ``Deferred[bool]``
        """
        return (
            self.cert_store.get(self.certificate_name)
            .addCallback(self._is_due))

    @defer.inlineCallbacks
    def _is_due(self, stored):
        if stored is None:
            log.info(
                'No certificate found for {name!r}.',
                name=self.certificate_name)
            return True
        now = self._now()
        if stored.ari_id is not None:
            client = yield self._get_client()
            window_start = yield client.suggested_renewal_window_start(
                stored.ari_id)
            if window_start is not None:
                log.info(
                    'Suggested renewal window for {name!r} starts at '
                    '{window_start}.',
                    name=self.certificate_name,
                    window_start=window_start.isoformat())
                return window_start <= now
        log.info(
            'Certificate {name!r} expires at {not_after}.',
            name=self.certificate_name,
            not_after=stored.not_after.isoformat())
        return stored.not_after - now <= self.reissue_interval

    def _panicking(self, stored):
        return (
            stored is None or
            stored.not_after - self._now() <= self.panic_interval)

    @defer.inlineCallbacks
    def renew(self, force=False):
        """
        Issue a new certificate if the current one needs to be renewed.

        Failures are reported through the panic callback if the certificate
        is missing or within the ``panic_interval``, and logged otherwise;
        either way, they are propagated.

        :param bool force: Issue a new certificate even if the current one
            does not need to be renewed.

        :rtype: ``Deferred[bool]``
        :return: A deferred firing with whether a certificate was issued.
        """
        stored = None
        try:
            stored = yield self.cert_store.get(self.certificate_name)
            if not force:
                due = yield self._is_due(stored)
                if not due:
                    log.info(
                        'Certificate {name!r} does not need to be renewed.',
                        name=self.certificate_name)
                    return False
            yield self.issue_cert()
        except Exception:
            failure = Failure()
            if self._panicking(stored):
                yield defer.maybeDeferred(
                    self._panic, failure, self.certificate_name)
            else:
                log.failure(
                    u'Error issuing certificate: {name!r}',
                    failure, name=self.certificate_name)
            failure.raiseException()
        return True

    def _check_certs(self):
        """
        Check the certificate in the store, and reissue it if it is missing or
        due for renewal.
        """
        log.info('Starting scheduled check for certificate renewal.')

        def done_check(ignored):
            self.ready = True
            for d in list(self._waiting):
                d.callback(None)
            self._waiting = []

        self._ongoing_check = (
            self.renew()
            # Already reported by renew.
            .addErrback(lambda f: None)
            .addCallback(done_check))
        return self._ongoing_check

    def issue_cert(self):
        """
        Issue a new certificate.

        If a certificate exists, it will be replaced with the new one.  If
        issuing is already in progress, a second issuing process will *not* be
        started.

        :rtype: ``Deferred``
        :return: A deferred that fires when issuing is complete.
        """
        def finish(result):
            _, waiting = self._issuing
            self._issuing = None
            for d in waiting:
                d.callback(result)

        # d_issue is assigned below, in the conditional, since we may be
        # creating it or using the existing one.
        d = defer.Deferred(lambda _: d_issue.cancel())
        if self._issuing is not None:
            d_issue, waiting = self._issuing
            waiting.append(d)
        else:
            d_issue = self._issue_cert()
            waiting = [d]
            self._issuing = (d_issue, waiting)
            # Add the callback afterwards in case we're using a client
            # implementation that isn't actually async
            d_issue.addBoth(finish)
        return d

    def _stop_responding(self, contents):
        return (
            defer.maybeDeferred(
                self._responder.stop_responding, self.domain_name, contents)
            .addErrback(
                lambda f: log.failure(
                    u'Error removing TXT records for {domain_name!r}',
                    f, domain_name=self.domain_name)))

    @defer.inlineCallbacks
    def _issue_cert(self):
        """
        Drive an order from creation to the stored certificate.
        """
        log.info(
            'Requesting a certificate for {domain_name!r}.',
            domain_name=self.domain_name)
        account = yield self._get_account()
        order = yield account.place_order(self.domain_name)
        while True:
            if isinstance(order, OrderPending):
                contents = order.dns_txt_record_contents
                try:
                    yield defer.maybeDeferred(
                        self._responder.start_responding,
                        self.domain_name, contents)
                    order = yield account.complete_authorization(order)
                finally:
                    yield self._stop_responding(contents)
            elif isinstance(order, OrderReady):
                csr = yield self.cert_store.create_csr(
                    self.certificate_name, self.domain_name)
                order = yield account.finalize_order(order, csr)
            elif isinstance(order, OrderValid):
                chain = yield account.download_certificate(order)
                certificates = split_pem_chain(chain)
                yield self.cert_store.merge(
                    self.certificate_name, certificates)
                log.info(
                    'Stored a new certificate for {domain_name!r} as '
                    '{name!r}.',
                    domain_name=self.domain_name,
                    name=self.certificate_name)
                return certificates
            else:
                raise TypeError('Unknown order state: {!r}'.format(order))

    def when_certs_valid(self):
        """
        Get a notification once the startup check has completed.

        When the service starts, an initial check is made immediately; the
        deferred returned by this function will only fire once reissue has been
        attempted if the certificate needed it.

        ..  note:: The reissue may not have been successful; the panic callback
            will be invoked if the certificate was in the panic interval and
            reissue failed.

        :rtype: ``Deferred``
        :return: A deferred that fires once the initial check has resolved.
        """
        if self.ready:
            return defer.succeed(None)
        d = defer.Deferred()
        self._waiting.append(d)
        return d

    def startService(self):
        """
        Start operating the service.

        See `when_certs_valid` if you want to be notified when the certificate
        from the storage was checked after startup.
        """
        Service.startService(self)
        self._timer_service = TimerService(
            self.check_interval.total_seconds(), self._check_certs)
        self._timer_service.clock = self._clock
        self._timer_service.startService()

    @defer.inlineCallbacks
    def stopService(self):
        Service.stopService(self)
        self.ready = False
        for d in list(self._waiting):
            d.cancel()
        self._waiting = []
        if self._timer_service is not None:
            yield self._timer_service.stopService()
            self._timer_service = None
        if self._cached_client is not None:
            yield self._cached_client.stop()


__all__ = ['AcmeRenewalService']
