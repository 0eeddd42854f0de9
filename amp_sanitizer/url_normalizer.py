"""
Canonical URL keys.

The miss counter and the validation error store are keyed by URL, so
trivially different spellings of one page must map to the same key:
  - scheme and host lower-cased, default ports dropped
  - fragment dropped (never sent to the server)
  - query parameters sorted
  - trailing slash removed from non-root paths
"""

from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Return the canonical form of `url` (unparseable input is returned stripped)."""
    url = (url or "").strip()
    if not url:
        return url

    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return url

    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    netloc = host
    if parsed.username:
        credentials = parsed.username + (f":{parsed.password}" if parsed.password else "")
        netloc = f"{credentials}@{host}"
    if port and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"

    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))

    return urlunparse((scheme, netloc, path, parsed.params, query, ""))
