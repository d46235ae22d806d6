# -*- coding: utf-8 -*-

# =============================================================================
# URL Decomposer
# =============================================================================
# Splits a URL into the fields an mDNS service record needs. Deliberately
# permissive: malformed input yields empty fields instead of raising.
# =============================================================================

from collections import namedtuple

HTTPS_PORT = 443
DEFAULT_PORT = 80


class UrlParts(namedtuple("UrlParts", ["scheme", "port", "host", "path"])):
    __slots__ = ()

    @property
    def is_complete(self):
        """True when both scheme and host were found."""
        return bool(self.scheme) and bool(self.host)


def decompose(url):
    """
    Decomposes a URL into (scheme, port, host, path).

    Example: "https://example.com/talk" -> ("https", 443, "example.com", "talk")
    """
    segments = url.split("/")
    scheme = segments[0]
    if scheme.endswith(":"):
        scheme = scheme[:-1]
    port = HTTPS_PORT if scheme == "https" else DEFAULT_PORT
    host = segments[2] if len(segments) > 2 else ""
    path = "/".join(segments[3:])
    return UrlParts(scheme, port, host, path)
