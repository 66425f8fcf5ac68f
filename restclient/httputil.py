"""URL helpers shared by the AWS signer and the Digest retry."""

from __future__ import annotations

from urllib.parse import quote, urlsplit

# Characters left as-is in an escaped path: RFC 3986 unreserved, sub-delims
# allowed in paths, ':' '@' '/' and '%' so existing escapes survive.
_PATH_SAFE = "/:@!$&'()*+,;=-._~%"


def escaped_path(url: str) -> str:
    """Return the percent-escaped path of url, or "" when it has none."""
    return quote(urlsplit(url).path, safe=_PATH_SAFE)


def request_uri(url: str) -> str:
    """Return the request-target for url: escaped path plus raw query."""
    uri = escaped_path(url) or "/"
    query = urlsplit(url).query
    if query:
        uri += "?" + query
    return uri


def url_host(url: str) -> str:
    """Return host[:port] exactly as written in url, without userinfo."""
    return urlsplit(url).netloc.rpartition("@")[2]
