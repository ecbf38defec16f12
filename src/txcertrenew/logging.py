"""
Eliot message and action definitions.
"""
from operator import methodcaller

from eliot import ActionType, Field, MessageType, fields


OPTIONAL_URL = Field.for_types('url', [str, None], 'A URL, if known')

LOG_JWS_SIGN = ActionType(
    'txcertrenew:jws:sign',
    fields(Field.for_types('kid', [str, None], 'The account URL'),
           url=str, alg=str),
    fields(),
    'Signing a message with JWS')

LOG_JWS_HEAD = ActionType(
    'txcertrenew:jws:http:head',
    fields(),
    fields(),
    'A JWSClient HEAD request')

LOG_JWS_GET = ActionType(
    'txcertrenew:jws:http:get',
    fields(),
    fields(),
    'A JWSClient GET request')

LOG_JWS_POST = ActionType(
    'txcertrenew:jws:http:post',
    fields(),
    fields(),
    'A JWSClient POST request')

LOG_JWS_REQUEST = ActionType(
    'txcertrenew:jws:http:request',
    fields(method=str, url=str),
    fields(Field.for_types('content_type',
                           [str, None],
                           'Content-Type header field'),
           code=int),
    'A JWSClient request')

LOG_JWS_DECODE_RESPONSE = ActionType(
    'txcertrenew:jws:http:decode-response',
    fields(Field.for_types('content_type',
                           [str, None],
                           'Content-Type header field'),
           operation=str, code=int),
    fields(),
    'Decoding a JWSClient response')

LOG_JWS_GET_NONCE = ActionType(
    'txcertrenew:jws:nonce:get',
    fields(),
    fields(cached=bool),
    'Consuming a nonce')

LOG_JWS_ADD_NONCE = MessageType(
    'txcertrenew:jws:nonce:add',
    fields(present=bool),
    'Replacing the cached nonce')

DIRECTORY = Field(
    'directory', methodcaller('to_json'), 'An ACME directory')

LOG_ACME_CONSUME_DIRECTORY = ActionType(
    'txcertrenew:acme:client:from-url',
    fields(url=str),
    fields(DIRECTORY),
    'Creating an ACME client from a remote directory')

LOG_ACME_REGISTER = ActionType(
    'txcertrenew:acme:account:create-or-get',
    fields(contact=str),
    fields(account_url=str, status=str),
    'Creating or fetching the account for a key')

LOG_ACME_PLACE_ORDER = ActionType(
    'txcertrenew:acme:order:place',
    fields(domain_name=str),
    fields(order=str),
    'Placing an order')

LOG_ACME_COMPLETE_AUTHORIZATION = ActionType(
    'txcertrenew:acme:authorization:complete',
    fields(authorization_url=str, challenge_url=str),
    fields(),
    'Completing an authorization')

LOG_ACME_FINALIZE_ORDER = ActionType(
    'txcertrenew:acme:order:finalize',
    fields(order_url=str),
    fields(certificate_url=str),
    'Finalizing an order')

LOG_ACME_DOWNLOAD_CERTIFICATE = ActionType(
    'txcertrenew:acme:certificate:download',
    fields(certificate_url=str),
    fields(length=int),
    'Downloading a certificate chain')

LOG_ACME_RENEWAL_INFO = ActionType(
    'txcertrenew:acme:renewal-info:get',
    fields(ari_id=str),
    fields(Field.for_types('window_start',
                           [str, None],
                           'Start of the suggested renewal window')),
    'Querying the suggested renewal window')

LOG_ACME_RENEWAL_INFO_FAILED = MessageType(
    'txcertrenew:acme:renewal-info:failed',
    fields(reason=str),
    'Renewal information is unavailable; ignoring')

LOG_ACME_STATE = MessageType(
    'txcertrenew:acme:state',
    fields(OPTIONAL_URL, kind=str, status=str),
    'Observed the state of a remote object')

LOG_ACME_WAIT = MessageType(
    'txcertrenew:acme:wait',
    fields(OPTIONAL_URL, kind=str, delay=float),
    'Waiting before polling a remote object again')


__all__ = [
    'LOG_JWS_SIGN', 'LOG_JWS_HEAD', 'LOG_JWS_GET', 'LOG_JWS_POST',
    'LOG_JWS_REQUEST', 'LOG_JWS_DECODE_RESPONSE', 'LOG_JWS_GET_NONCE',
    'LOG_JWS_ADD_NONCE', 'LOG_ACME_CONSUME_DIRECTORY', 'LOG_ACME_REGISTER',
    'LOG_ACME_PLACE_ORDER', 'LOG_ACME_COMPLETE_AUTHORIZATION',
    'LOG_ACME_FINALIZE_ORDER', 'LOG_ACME_DOWNLOAD_CERTIFICATE',
    'LOG_ACME_RENEWAL_INFO', 'LOG_ACME_RENEWAL_INFO_FAILED',
    'LOG_ACME_STATE', 'LOG_ACME_WAIT']
