LETSENCRYPT_DIRECTORY = u'https://acme-v02.api.letsencrypt.org/directory'


LETSENCRYPT_STAGING_DIRECTORY = (
    u'https://acme-staging-v02.api.letsencrypt.org/directory')


__all__ = ['LETSENCRYPT_DIRECTORY', 'LETSENCRYPT_STAGING_DIRECTORY']
