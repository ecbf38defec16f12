"""
Exception types for txcertrenew.
"""
import attr


@attr.s
class NotInZone(ValueError):
    """
    The given domain name is not in the configured zone.
    """
    server_name = attr.ib()
    zone_name = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class ZoneNotFound(ValueError):
    """
    The configured zone was not found in the zones at the configured provider.
    """
    zone_name = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class UnexpectedResponse(Exception):
    """
    The server answered with a status code / content type combination that
    the call site does not accept.

    :ivar str operation: What we were trying to do.
    :ivar int code: The HTTP status code.
    :ivar content_type: The Content-Type header field, or ``None``.
    :ivar str snippet: The start of the response body, for diagnostics.
    """
    operation = attr.ib()
    code = attr.ib()
    content_type = attr.ib(default=None)
    snippet = attr.ib(default=u'')

    def __str__(self):
        return repr(self)


class ServerError(Exception):
    """
    The server returned an HTTP problem document (RFC 7807).

    :exc:`acme.messages.Error` isn't usable as an asynchronous exception,
    because it doesn't allow setting the ``__traceback__`` attribute like
    Twisted wants to do when cleaning Failures.  This type exists to wrap such
    an error, as well as provide access to the original response details.
    """
    def __init__(self, message, operation, code):
        Exception.__init__(self, message, operation, code)
        self.message = message
        self.operation = operation
        self.code = code

    def __repr__(self):
        return 'ServerError({!r}, {!r}, {!r})'.format(
            self.message, self.operation, self.code)

    def __str__(self):
        return repr(self)


@attr.s
class MissingNonce(Exception):
    """
    A response that must carry a ``Replay-Nonce`` header field did not.
    """
    url = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class MissingLocation(Exception):
    """
    A resource creation response did not carry a ``Location`` header field.
    """
    url = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class InvalidDirectory(Exception):
    """
    The ACME directory is missing one of the mandatory resources.
    """
    url = attr.ib()
    missing = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class InvalidRetryAfter(ValueError):
    """
    A ``Retry-After`` header field is neither delay-seconds nor an HTTP-date.
    """
    value = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class UnexpectedStatus(Exception):
    """
    A remote ACME object reached a status we cannot continue from.

    :ivar str kind: The kind of object; ``account``, ``order``,
        ``authorization`` or ``challenge``.
    :ivar str url: The URL of the object, if known.
    :ivar str status: The offending status.
    """
    kind = attr.ib()
    url = attr.ib()
    status = attr.ib()

    def __str__(self):
        return repr(self)


class OrderStillPending(UnexpectedStatus):
    """
    The order went back to (or stayed in) ``pending`` during finalization.
    """
    def __init__(self, url):
        UnexpectedStatus.__init__(self, kind=u'order', url=url,
                                  status=u'pending')


@attr.s
class AuthorizationFailed(Exception):
    """
    An attempt was made to complete an authorization, but it failed.

    :ivar str url: The URL of the challenge or authorization which failed.
    :ivar str status: Its final status.
    :ivar error: The problem document attached by the server, if any.
    """
    url = attr.ib()
    status = attr.ib()
    error = attr.ib(default=None)

    def __str__(self):
        return repr(self)


@attr.s
class NoSupportedChallenges(Exception):
    """
    No ``dns-01`` challenge was offered for a pending authorization.
    """
    authorization_url = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class PollingTimeout(Exception):
    """
    An ACME object was polled more often than the configured limit allows.
    """
    kind = attr.ib()
    url = attr.ib()
    attempts = attr.ib()

    def __str__(self):
        return repr(self)


@attr.s
class MalformedPEM(ValueError):
    """
    A certificate chain is not a sequence of well-formed PEM certificate
    blocks.
    """
    reason = attr.ib()

    def __str__(self):
        return 'malformed PEM: {}'.format(self.reason)


@attr.s
class InvalidConfiguration(ValueError):
    """
    A configuration file could not be used.

    :ivar str path: The file.
    :ivar str reason: What is wrong with it.
    """
    path = attr.ib()
    reason = attr.ib()

    def __str__(self):
        return '{}: {}'.format(self.path, self.reason)


__all__ = [
    'NotInZone', 'ZoneNotFound', 'UnexpectedResponse', 'ServerError',
    'MissingNonce', 'MissingLocation', 'InvalidDirectory',
    'InvalidRetryAfter', 'UnexpectedStatus', 'OrderStillPending',
    'AuthorizationFailed', 'NoSupportedChallenges', 'PollingTimeout',
    'MalformedPEM', 'InvalidConfiguration']
