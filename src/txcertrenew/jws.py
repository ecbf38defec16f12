"""
Flattened JWS serialization of ACME requests.

The signature is always computed over the exact encoded ``protected`` and
``payload`` members that are transmitted, so nothing is ever re-serialized
between signing and sending.
"""
import json

import josepy as jose
from eliot.twisted import DeferredContext
from josepy import jwa
from twisted.internet.defer import maybeDeferred

from txcertrenew.logging import LOG_JWS_SIGN
from txcertrenew.util import jose_b64


#: JWS algorithms, by elliptic curve name.
ALGORITHMS = {
    u'P-256': jwa.ES256,
    u'P-384': jwa.ES384,
    u'P-521': jwa.ES512,
}


def algorithm_for_jwk(jwk):
    """
    Pick the JWS algorithm for an account key.

    :param dict jwk: The public JWK of the key.

    :raises ValueError: If the key is not on one of the supported curves.

    :rtype: `josepy.jwa.JWASignature`
    """
    try:
        return ALGORITHMS[jwk[u'crv']]
    except KeyError:
        raise ValueError(
            'Unsupported account key: {!r}'.format(jwk.get(u'crv')))


def encode_json(obj):
    """
    JOSE Base-64 encode the compact JSON serialization of ``obj``.
    """
    return jose_b64(
        json.dumps(obj, separators=(',', ':')).encode('utf-8'))


def encode_payload(payload):
    """
    Encode a request payload.

    :param payload: ``None`` for a POST-as-GET request, a
        `josepy.interfaces.JSONDeSerializable`, or anything `json` can
        serialize.

    :rtype: str
    :return: The empty string for POST-as-GET, the encoded JSON otherwise.
    """
    if payload is None:
        return u''
    if isinstance(payload, jose.JSONDeSerializable):
        payload = payload.to_json()
    return encode_json(payload)


def protected_header(alg, nonce, url, jwk=None, kid=None):
    """
    Build the protected header of a request.

    Exactly one of ``jwk`` and ``kid`` must be given.
    """
    if (jwk is None) == (kid is None):
        raise ValueError('Exactly one of jwk and kid is required')
    header = {u'alg': alg.name, u'nonce': nonce, u'url': url}
    if kid is None:
        header[u'jwk'] = jwk
    else:
        header[u'kid'] = kid
    return header


def signing_input(protected, payload):
    """
    The buffers covered by the signature, as handed to
    `~txcertrenew.interfaces.IAccountKey.sign`.

    :param str protected: The encoded protected header.
    :param str payload: The encoded payload.

    :rtype: ``List[bytes]``
    """
    return [protected.encode('ascii'), b'.', payload.encode('ascii')]


def sign_request(key, url, nonce, payload, kid=None):
    """
    Sign an ACME request.

    :param ~txcertrenew.interfaces.IAccountKey key: The account key.
    :param str url: The URL the request is sent to.
    :param str nonce: A fresh nonce.
    :param payload: See `encode_payload`.
    :param str kid: The account URL; when ``None`` the public key is embedded
        instead, as needed before the account exists.

    :rtype: ``Deferred[Dict[str, str]]``
    :return: The flattened JWS object.
    """
    jwk = key.jwk()
    alg = algorithm_for_jwk(jwk)
    action = LOG_JWS_SIGN(kid=kid, url=url, alg=alg.name)
    with action.context():
        if kid is None:
            header = protected_header(alg, nonce, url, jwk=jwk)
        else:
            header = protected_header(alg, nonce, url, kid=kid)
        protected = encode_json(header)
        encoded_payload = encode_payload(payload)
        return (
            DeferredContext(
                maybeDeferred(
                    key.sign, signing_input(protected, encoded_payload)))
            .addCallback(lambda signature: {
                u'protected': protected,
                u'payload': encoded_payload,
                u'signature': signature,
            })
            .addActionFinish())


__all__ = [
    'ALGORITHMS', 'algorithm_for_jwk', 'encode_json', 'encode_payload',
    'protected_header', 'signing_input', 'sign_request']
