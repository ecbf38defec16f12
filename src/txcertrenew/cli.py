"""
The ``txcertrenew`` command.
"""
import sys
from functools import partial

from eliot import to_file
from twisted.internet import defer, task
from twisted.logger import Logger, globalLogBeginner, textFileLogObserver
from twisted.python import usage
from twisted.python.filepath import FilePath

from txcertrenew.client import Client
from txcertrenew.config import load_settings
from txcertrenew.keys import load_or_create_account_key
from txcertrenew.service import AcmeRenewalService
from txcertrenew.store import DirectoryStore


log = Logger()


class Options(usage.Options):
    synopsis = 'txcertrenew --config PATH [--once] [--force]'

    optParameters = [
        ['config', 'c', None, 'The JSON settings file.'],
    ]

    optFlags = [
        ['once', None,
         'Check the certificate once and exit, instead of running as a '
         'service.'],
        ['force', None,
         'Issue a new certificate even if the current one does not need to '
         'be renewed.  Implies --once.'],
    ]

    def postOptions(self):
        if self['config'] is None:
            raise usage.UsageError('--config is required.')
        if self['force']:
            self['once'] = True


def build_service(reactor, settings):
    """
    Wire up a renewal service from settings.

    The account key and the certificate are kept in ``settings.store_path``,
    which is created if needed; an executable ``<name>.onstore`` script
    there is run after a new certificate is stored.

    :param reactor: The Twisted reactor.
    :param ~txcertrenew.config.Settings settings: The settings.

    :rtype: `~txcertrenew.service.AcmeRenewalService`
    """
    from txcertrenew.challenges._libcloud import LibcloudDNSResponder
    store_path = FilePath(settings.store_path)
    if not store_path.isdir():
        store_path.makedirs()
    responder = LibcloudDNSResponder.create(
        reactor,
        settings.dns.driver,
        settings.dns.username,
        settings.dns.password,
        zone_name=settings.dns.zone_name,
        settle_delay=settings.dns.settle_delay)
    return AcmeRenewalService(
        cert_store=DirectoryStore(
            store_path,
            key_type=settings.certificate_key_type,
            onstore_scripts=True,
            reactor=reactor),
        client=partial(
            Client.from_url, reactor, settings.acme_directory_url,
            timeout=settings.timeout,
            min_retry_after=settings.min_retry_after,
            max_retry_after=settings.max_retry_after,
            max_polls=settings.max_polls),
        clock=reactor,
        responder=responder,
        account_key=load_or_create_account_key(
            store_path, settings.account_key_type),
        contact_url=settings.acme_contact_url,
        domain_name=settings.domain_name,
        certificate_name=settings.certificate_name,
        reissue_interval=settings.reissue_interval,
        panic_interval=settings.panic_interval)


@defer.inlineCallbacks
def _renew_once(service, force):
    try:
        issued = yield service.renew(force=force)
    finally:
        yield service.stopService()
    if not issued:
        log.info('Nothing to do.')


def run(reactor, options):
    """
    Run the command; the result fires when it is done.
    """
    settings = load_settings(FilePath(options['config']))
    service = build_service(reactor, settings)
    if options['once']:
        return _renew_once(service, options['force'])
    service.startService()
    reactor.addSystemEventTrigger('before', 'shutdown', service.stopService)
    # Runs until the reactor is stopped.
    return defer.Deferred()


def main(argv=None):
    options = Options()
    try:
        options.parseOptions(argv)
    except usage.UsageError as e:
        raise SystemExit('{}\n{}'.format(options, e))
    to_file(sys.stdout)
    globalLogBeginner.beginLoggingTo([textFileLogObserver(sys.stderr)])
    task.react(run, [options])


__all__ = ['Options', 'build_service', 'run', 'main']
