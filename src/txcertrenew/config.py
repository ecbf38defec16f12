"""
Settings for running the renewal service from a JSON file.

A minimal file::

    {
        "acme_contact_url": "mailto:hostmaster@example.com",
        "domain_name": "example.com",
        "store_path": "/var/lib/txcertrenew",
        "dns": {
            "driver": "cloudflare",
            "username": "hostmaster@example.com",
            "password": "api-token"
        }
    }
"""
import json
from datetime import timedelta

import attr
from attr.validators import and_, in_, instance_of, optional

from txcertrenew.errors import InvalidConfiguration
from txcertrenew.keys import ACCOUNT_KEY_TYPES
from txcertrenew.urls import LETSENCRYPT_DIRECTORY
from txcertrenew.util import KEY_TYPES


def _positive(instance, attribute, value):
    if value <= 0:
        raise ValueError(
            '{} must be positive, not {!r}'.format(attribute.name, value))


def _not_negative(instance, attribute, value):
    if value < 0:
        raise ValueError(
            '{} must not be negative, not {!r}'.format(attribute.name, value))


def _domain_name(instance, attribute, value):
    if not value or value.startswith(u'*.') or value != value.strip():
        raise ValueError('Invalid domain name: {!r}'.format(value))


def _number(value):
    """
    Convert a JSON number to a float, refusing booleans.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError('Not a number: {!r}'.format(value))
    return float(value)


def _from_mapping(cls, jobj, what):
    if not isinstance(jobj, dict):
        raise TypeError('{} must be an object'.format(what))
    names = {a.name for a in attr.fields(cls)}
    unknown = sorted(set(jobj) - names)
    if unknown:
        raise ValueError(
            'Unknown {} settings: {}'.format(what, u', '.join(unknown)))
    return cls(**jobj)


@attr.s(frozen=True)
class DNSSettings(object):
    """
    How to reach the DNS provider of the zone the domain is in.

    ``driver`` is a libcloud DNS provider name; the meaning of ``username``
    and ``password`` depends on it.
    """
    driver = attr.ib(validator=instance_of(str))
    username = attr.ib(validator=instance_of(str))
    password = attr.ib(validator=instance_of(str), repr=False)
    zone_name = attr.ib(default=None, validator=optional(instance_of(str)))
    settle_delay = attr.ib(
        default=60.0, converter=_number, validator=_not_negative)

    @classmethod
    def from_json(cls, jobj):
        return _from_mapping(cls, jobj, 'dns')


def _dns_settings(value):
    if isinstance(value, DNSSettings):
        return value
    return DNSSettings.from_json(value)


@attr.s(frozen=True)
class Settings(object):
    """
    Everything needed to keep one certificate renewed.

    :ivar str acme_directory_url: The directory of the CA; Let's Encrypt
        production by default.
    :ivar str acme_contact_url: The account contact, like
        ``mailto:hostmaster@example.com``.
    :ivar str domain_name: The certificate covers this name and its wildcard.
    :ivar str certificate_name: The name the certificate is stored under;
        the domain name by default.
    :ivar str store_path: The directory the account key and the certificate
        are kept in.
    :ivar DNSSettings dns: The DNS provider.
    :ivar max_polls: Give up polling an order or authorization after this
        many attempts; ``None`` to poll for as long as the CA asks.
    """
    acme_contact_url = attr.ib(validator=instance_of(str))
    domain_name = attr.ib(validator=[instance_of(str), _domain_name])
    store_path = attr.ib(validator=instance_of(str))
    dns = attr.ib(converter=_dns_settings)
    acme_directory_url = attr.ib(
        default=LETSENCRYPT_DIRECTORY, validator=instance_of(str))
    certificate_name = attr.ib(
        default=None, validator=optional(instance_of(str)))
    account_key_type = attr.ib(
        default=u'ec:p256', validator=in_(ACCOUNT_KEY_TYPES))
    certificate_key_type = attr.ib(
        default=u'rsa:2048', validator=in_(KEY_TYPES))
    min_retry_after = attr.ib(
        default=1.0, converter=_number, validator=_not_negative)
    max_retry_after = attr.ib(default=30.0, converter=_number)
    max_polls = attr.ib(
        default=None, validator=optional(and_(instance_of(int), _positive)))
    timeout = attr.ib(default=40.0, converter=_number, validator=_positive)
    reissue_days = attr.ib(default=30, validator=[instance_of(int), _positive])
    panic_days = attr.ib(default=15, validator=[instance_of(int), _positive])

    @max_retry_after.validator
    def _check_max_retry_after(self, attribute, value):
        if value < self.min_retry_after:
            raise ValueError(
                'max_retry_after ({!r}) is less than min_retry_after '
                '({!r})'.format(value, self.min_retry_after))

    @property
    def reissue_interval(self):
        return timedelta(days=self.reissue_days)

    @property
    def panic_interval(self):
        return timedelta(days=self.panic_days)

    @classmethod
    def from_json(cls, jobj):
        """
        Build settings from a decoded JSON object.

        :raises TypeError: If a setting has the wrong type or a mandatory one
            is missing.
        :raises ValueError: If a setting has an invalid value, or is unknown.
        """
        return _from_mapping(cls, jobj, 'top-level')


def load_settings(path):
    """
    Read the settings from a JSON file.

    :type path: ``twisted.python.filepath.FilePath``

    :raises ~txcertrenew.errors.InvalidConfiguration: If the file cannot be
        read or does not hold valid settings.

    :rtype: `Settings`
    """
    try:
        jobj = json.loads(path.getContent().decode('utf-8'))
        return Settings.from_json(jobj)
    except (IOError, TypeError, ValueError) as e:
        raise InvalidConfiguration(path=path.path, reason=str(e))


__all__ = ['DNSSettings', 'Settings', 'load_settings']
