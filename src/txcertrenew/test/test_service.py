from datetime import datetime, timedelta, timezone
from functools import partial

from testtools.assertions import assert_that
from testtools.matchers import Equals, HasLength, IsInstance, MatchesListwise
from twisted.internet.defer import CancelledError, Deferred
from twisted.internet.task import Clock
from twisted.python.failure import Failure
from twisted.trial.unittest import SynchronousTestCase

from txcertrenew.client import Client
from txcertrenew.errors import ServerError
from txcertrenew.keys import LocalAccountKey
from txcertrenew.service import AcmeRenewalService, _default_panic
from txcertrenew.test.test_util import certificate_pem, generate_certificate
from txcertrenew.testing import (
    FakeACMEServer, MemoryStore, RecordingDNSResponder, problem)
from txcertrenew.util import ari_id, generate_private_key


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
KEY = LocalAccountKey(key=generate_private_key(u'ec:p256'))


def _certificate(not_after, domain_name=u'example.com'):
    return generate_certificate(
        domain_name, not_before=NOW - timedelta(days=1), not_after=not_after)


def _rfc3339(when):
    return when.strftime(u'%Y-%m-%dT%H:%M:%SZ')


class PausingDNSResponder(RecordingDNSResponder):
    """
    A responder that holds ``start_responding`` until the test fires
    `paused`.
    """
    paused = None

    def start_responding(self, domain_name, contents):
        RecordingDNSResponder.start_responding(self, domain_name, contents)
        self.paused = Deferred()
        return self.paused


class BrokenCleanupDNSResponder(RecordingDNSResponder):
    def stop_responding(self, domain_name, contents):
        RecordingDNSResponder.stop_responding(self, domain_name, contents)
        raise RuntimeError('Cannot remove the records')


class AcmeFixture(object):
    """
    A fixture for setting up an `~txcertrenew.service.AcmeRenewalService`
    talking to a `~txcertrenew.testing.FakeACMEServer`.
    """
    def __init__(self, test_case, not_after=None, responder=None,
                 renewal_info=None, **kwargs):
        self.clock = Clock()
        self.clock.rightNow = NOW.timestamp()
        if responder is None:
            responder = RecordingDNSResponder()
        self.responder = responder
        self.issued = _certificate(NOW + timedelta(days=90))
        intermediate = generate_certificate(
            u'ca.example.net', NOW - timedelta(days=1),
            NOW + timedelta(days=900), serial_number=2)
        self.server = FakeACMEServer(
            dns=responder,
            certificate_chain=(
                certificate_pem(self.issued) +
                certificate_pem(intermediate)).decode('ascii'),
            renewal_info=renewal_info)
        certs = None
        self.existing = None
        if not_after is not None:
            self.existing = _certificate(not_after)
            certs = {u'example.com': certificate_pem(self.existing)}
        self.cert_store = MemoryStore(certs)
        self.service = AcmeRenewalService(
            cert_store=self.cert_store,
            client=partial(
                Client.from_url, self.clock, self.server.directory_url,
                http_client=self.server),
            clock=self.clock,
            responder=self.responder,
            account_key=KEY,
            contact_url=u'mailto:hostmaster@example.com',
            domain_name=u'example.com',
            **kwargs)
        test_case.addCleanup(
            lambda: self.service.running and self.service.stopService())

    def settle(self, d, limit=600):
        """
        Let time pass until ``d`` fires.
        """
        for _ in range(limit):
            if d.called:
                break
            self.clock.advance(1)
        return d

    def stored_not_after(self, name=u'example.com'):
        def cb(stored):
            return None if stored is None else stored.not_after
        return self.cert_store.get(name).addCallback(cb)

    def new_orders(self):
        return [
            r for r in self.server.requests
            if r.method == u'POST' and r.path == u'/new-order']


class NeedsRenewalTests(SynchronousTestCase):
    """
    `~txcertrenew.service.AcmeRenewalService.needs_renewal` decides from the
    stored certificate and the CA's suggestion.
    """
    def needs_renewal(self, **kwargs):
        fixture = AcmeFixture(self, **kwargs)
        return self.successResultOf(fixture.service.needs_renewal())

    def test_missing(self):
        self.assertTrue(self.needs_renewal())

    def test_reissue_interval(self):
        """
        Without a suggestion, a certificate is renewed once it expires within
        the reissue interval.
        """
        self.assertFalse(
            self.needs_renewal(not_after=NOW + timedelta(days=31)))
        self.assertTrue(
            self.needs_renewal(not_after=NOW + timedelta(days=30)))
        self.assertTrue(
            self.needs_renewal(not_after=NOW - timedelta(hours=1)))
        self.assertFalse(
            self.needs_renewal(
                not_after=NOW + timedelta(days=8),
                reissue_interval=timedelta(days=7)))

    def test_window_started(self):
        """
        A suggested window which has started means renewal, however long the
        certificate is still valid.
        """
        self.assertTrue(
            self.needs_renewal(
                not_after=NOW + timedelta(days=60),
                renewal_info={u'suggestedWindow': {
                    u'start': _rfc3339(NOW - timedelta(hours=1)),
                    u'end': _rfc3339(NOW + timedelta(days=1))}}))

    def test_window_not_started(self):
        """
        A suggested window in the future means waiting, even within the
        reissue interval.
        """
        self.assertFalse(
            self.needs_renewal(
                not_after=NOW + timedelta(days=10),
                renewal_info={u'suggestedWindow': {
                    u'start': _rfc3339(NOW + timedelta(days=2)),
                    u'end': _rfc3339(NOW + timedelta(days=3))}}))

    def test_window_request(self):
        """
        The renewal information is asked for with the identifier of the
        stored certificate.
        """
        fixture = AcmeFixture(
            self, not_after=NOW + timedelta(days=60),
            renewal_info={u'suggestedWindow': {
                u'start': _rfc3339(NOW + timedelta(days=2))}})
        self.assertFalse(
            self.successResultOf(fixture.service.needs_renewal()))
        self.assertEqual(
            u'/renewal-info/' + ari_id(fixture.existing),
            fixture.server.requests[-1].path)

    def test_window_unavailable(self):
        """
        If the CA cannot make a suggestion, the reissue interval is used.
        """
        fixture = AcmeFixture(
            self, not_after=NOW + timedelta(days=10),
            renewal_info={u'suggestedWindow': {
                u'start': _rfc3339(NOW + timedelta(days=2))}})
        fixture.server.override(
            u'GET', u'/renewal-info/' + ari_id(fixture.existing),
            problem(503, u'serverInternal'))
        self.assertTrue(
            self.successResultOf(fixture.service.needs_renewal()))


class AcmeRenewalServiceTests(SynchronousTestCase):
    """
    Tests for `txcertrenew.service.AcmeRenewalService`.
    """
    def test_certificate_name(self):
        fixture = AcmeFixture(self)
        self.assertEqual(u'example.com', fixture.service.certificate_name)
        fixture = AcmeFixture(self, certificate_name=u'web')
        self.assertEqual(u'web', fixture.service.certificate_name)

    def test_when_certs_valid_no_cert(self):
        """
        The deferred returned by ``when_certs_valid`` fires once a missing
        certificate has been issued.
        """
        fixture = AcmeFixture(self)
        d = fixture.service.when_certs_valid()
        self.assertNoResult(d)
        fixture.service.startService()
        self.assertIsNone(self.successResultOf(fixture.settle(d)))
        self.assertEqual(
            NOW + timedelta(days=90),
            self.successResultOf(fixture.stored_not_after()))

    def test_when_certs_valid_valid_cert(self):
        """
        The deferred returned by ``when_certs_valid`` fires immediately if
        the certificate does not need renewal, and the CA is only asked for
        its directory.
        """
        fixture = AcmeFixture(self, not_after=NOW + timedelta(days=60))
        fixture.service.startService()
        self.assertIsNone(
            self.successResultOf(fixture.service.when_certs_valid()))
        self.assertEqual(
            [(u'GET', u'/directory')],
            [(r.method, r.path) for r in fixture.server.requests])
        self.assertEqual([], fixture.responder.history)

    def test_records_published_and_removed(self):
        """
        The TXT records are published before the CA is asked to validate
        them, and removed afterwards.
        """
        fixture = AcmeFixture(self)
        d = fixture.service.issue_cert()
        self.successResultOf(fixture.settle(d))
        [start, stop] = fixture.responder.history
        self.assertEqual((u'start', u'example.com'), start[:2])
        self.assertEqual(2, len(start[2]))
        self.assertEqual((u'stop', u'example.com', start[2]), stop)
        self.assertEqual(
            {u'_acme-challenge.example.com': set()},
            fixture.responder.records)

    def test_issue_cert_result(self):
        """
        ``issue_cert`` fires with the stored chain.
        """
        fixture = AcmeFixture(self)
        certificates = self.successResultOf(
            fixture.settle(fixture.service.issue_cert()))
        assert_that(certificates, HasLength(2))
        stored = self.successResultOf(fixture.cert_store.get(u'example.com'))
        self.assertEqual(ari_id(fixture.issued), stored.ari_id)

    def test_certificate_name_storage(self):
        """
        The certificate is stored under its name.
        """
        fixture = AcmeFixture(self, certificate_name=u'web')
        self.successResultOf(fixture.settle(fixture.service.issue_cert()))
        self.assertIsNone(
            self.successResultOf(fixture.stored_not_after()))
        self.assertEqual(
            NOW + timedelta(days=90),
            self.successResultOf(fixture.stored_not_after(u'web')))

    def test_time_marches_on(self):
        """
        A certificate which enters the reissue interval is reissued at the
        next check.
        """
        fixture = AcmeFixture(self, not_after=NOW + timedelta(days=31))
        fixture.service.startService()
        self.successResultOf(fixture.service.when_certs_valid())
        self.assertEqual([], fixture.new_orders())

        fixture.clock.advance(timedelta(days=1).total_seconds())
        self.successResultOf(fixture.settle(fixture.service._ongoing_check))
        self.assertEqual(1, len(fixture.new_orders()))
        self.assertEqual(
            NOW + timedelta(days=90),
            self.successResultOf(fixture.stored_not_after()))

    def test_renew(self):
        """
        ``renew`` only issues a certificate when one is due, unless forced.
        """
        fixture = AcmeFixture(self, not_after=NOW + timedelta(days=60))
        self.assertFalse(self.successResultOf(fixture.service.renew()))
        self.assertEqual([], fixture.new_orders())
        self.assertTrue(
            self.successResultOf(
                fixture.settle(fixture.service.renew(force=True))))
        self.assertEqual(1, len(fixture.new_orders()))

    def test_errors(self):
        """
        If renewal fails within the panic interval, the panic callback is
        invoked; otherwise the error is logged normally.  Either way, the
        error is propagated.
        """
        panics = []
        fixture = AcmeFixture(
            self, not_after=NOW + timedelta(days=20),
            panic=lambda *a: panics.append(a))
        fixture.server.override(
            u'POST', u'/new-order',
            fixture.server.with_nonce(problem(503, u'serverInternal')),
            fixture.server.with_nonce(problem(503, u'serverInternal')))

        self.failureResultOf(fixture.service.renew(), ServerError)
        assert_that(self.flushLoggedErrors(ServerError), HasLength(1))
        self.assertEqual([], panics)

        fixture.clock.advance(timedelta(days=6).total_seconds())
        self.failureResultOf(fixture.service.renew(), ServerError)
        assert_that(
            panics,
            MatchesListwise([
                MatchesListwise([IsInstance(Failure),
                                 Equals(u'example.com')]),
            ]))
        self.assertEqual([], self.flushLoggedErrors(ServerError))

    def test_panic_missing_cert(self):
        """
        Failing to issue a missing certificate is a panic.
        """
        panics = []
        fixture = AcmeFixture(self, panic=lambda *a: panics.append(a))
        fixture.server.override(
            u'POST', u'/new-order',
            fixture.server.with_nonce(problem(503, u'serverInternal')))
        fixture.service.startService()
        self.assertIsNone(
            self.successResultOf(fixture.service.when_certs_valid()))
        assert_that(panics, HasLength(1))

    def test_cleanup_errors(self):
        """
        Failing to remove the TXT records is logged, and does not prevent
        storing the certificate.
        """
        fixture = AcmeFixture(self, responder=BrokenCleanupDNSResponder())
        self.successResultOf(fixture.settle(fixture.service.issue_cert()))
        assert_that(self.flushLoggedErrors(RuntimeError), HasLength(1))
        self.assertEqual(
            NOW + timedelta(days=90),
            self.successResultOf(fixture.stored_not_after()))

    def test_default_panic(self):
        """
        The default panic callback logs a message via ``twisted.logger``.
        """
        try:
            1 / 0
        except BaseException:
            f = Failure()
        _default_panic(f, u'example.com')
        assert_that(self.flushLoggedErrors(ZeroDivisionError), HasLength(1))

    def test_issue_concurrently(self):
        """
        Invoking ``issue_cert`` multiple times concurrently will not start
        multiple issuing processes, only wait for the first process to
        complete.
        """
        fixture = AcmeFixture(self, responder=PausingDNSResponder())
        d1 = fixture.service.issue_cert()
        self.assertNoResult(d1)
        d2 = fixture.service.issue_cert()
        self.assertNoResult(d2)
        self.assertEqual(1, len(fixture.new_orders()))

        fixture.responder.paused.callback(None)
        fixture.settle(d1)
        self.assertEqual(
            self.successResultOf(d1), self.successResultOf(d2))
        self.assertEqual(1, len(fixture.new_orders()))

    def test_cancellation(self):
        """
        Cancelling the deferred returned by ``issue_cert`` cancels the actual
        issuing process, and the records are still removed.
        """
        fixture = AcmeFixture(self, responder=PausingDNSResponder())
        d1 = fixture.service.issue_cert()
        d2 = fixture.service.issue_cert()
        d2.cancel()
        self.failureResultOf(d1, CancelledError)
        self.failureResultOf(d2, CancelledError)
        self.assertEqual(
            [u'start', u'stop'],
            [entry[0] for entry in fixture.responder.history])
        self.assertIsNone(self.successResultOf(fixture.stored_not_after()))

    def test_starting_stopping_cancellation(self):
        """
        Stopping the service cancels the waiters of ``when_certs_valid``.
        """
        fixture = AcmeFixture(self, responder=PausingDNSResponder())
        d = fixture.service.when_certs_valid()
        fixture.service.startService()
        self.assertNoResult(d)
        fixture.service.stopService()
        self.failureResultOf(d, CancelledError)

    def test_stop_checking(self):
        """
        Once stopped, the service does not check the certificate anymore.
        """
        fixture = AcmeFixture(self, not_after=NOW + timedelta(days=31))
        fixture.service.startService()
        self.successResultOf(fixture.service.stopService())
        self.assertFalse(fixture.service.ready)
        fixture.clock.advance(timedelta(days=10).total_seconds())
        self.assertEqual([], fixture.new_orders())


__all__ = ['NeedsRenewalTests', 'AcmeRenewalServiceTests']
