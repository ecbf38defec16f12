try:
    from ._libcloud import LibcloudDNSResponder
except ImportError:
    # libcloud may not be installed
    pass


__all__ = ['LibcloudDNSResponder']
