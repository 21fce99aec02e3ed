"""URL extraction with SSRF protection.

Security requirements:
- SSRF guard: every hop (initial URL and each redirect target) is resolved
  and checked against private/loopback/link-local/reserved ranges before a
  connection is made.
- Allowed URL schemes: https:// and http:// only. No embedded credentials.
- Content-Type whitelist: text/html and text/plain only.
- Max response body: 2 MB.
- Timeout: 12 seconds (connect + read).
- Max redirects: 5.
"""

from __future__ import annotations

import ipaddress
import socket
import urllib.error
import urllib.parse
import urllib.request
from http.client import HTTPResponse

import html2text
from bs4 import BeautifulSoup

_USER_AGENT = "concierge/0.1"
_MAX_BYTES = 2 * 1024 * 1024  # 2 MB
_TIMEOUT = 12  # seconds
_MAX_REDIRECTS = 5
_ALLOWED_SCHEMES = {"https", "http"}
_ALLOWED_CONTENT_TYPES = {"text/html", "text/plain"}
_BLOCKED_HOSTS = {"localhost", "metadata", "metadata.google.internal"}

# html2text converter
_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


class SsrfError(ValueError):
    """Raised when a URL resolves to a private or reserved address."""


class FetchError(RuntimeError):
    """Raised when the page cannot be fetched or is not acceptable text."""


def fetch_url_text(url: str) -> str:
    """Validate, fetch, and convert *url* to plain text."""
    check_url_allowed(url)
    raw, content_type = _fetch(url)
    return _to_plain_text(raw, content_type)


def check_url_allowed(url: str) -> None:
    """Reject URLs that are malformed, credentialed, or resolve to internal addresses.

    Raises:
        ValueError: Bad scheme, missing hostname, embedded credentials.
        SsrfError: Host is blocked or any resolved address is private,
            loopback, link-local, or otherwise reserved.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise ValueError(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )
    if parsed.username or parsed.password:
        raise ValueError("Credentials in URLs are not allowed.")
    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise ValueError(f"URL has no hostname: {url}")
    if hostname in _BLOCKED_HOSTS or hostname.endswith(".local"):
        raise SsrfError(f"Host '{hostname}' is not allowed.")

    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise ValueError(f"DNS resolution failed for '{hostname}': {exc}") from exc

    for addrinfo in addrinfos:
        addr_str = addrinfo[4][0]
        try:
            ip = ipaddress.ip_address(addr_str)
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            raise SsrfError(
                f"URL resolves to private address ({ip}). "
                "Access to internal network addresses is not allowed."
            )


def _fetch(url: str) -> tuple[bytes, str]:
    """Fetch *url* with timeout, redirect limit, size cap, and Content-Type check.

    Returns (body_bytes, content_type_without_params).
    """
    request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    opener = urllib.request.build_opener(_GuardedRedirectHandler(_MAX_REDIRECTS))

    try:
        response: HTTPResponse = opener.open(request, timeout=_TIMEOUT)
    except urllib.error.URLError as exc:
        raise FetchError(f"Failed to fetch URL '{url}': {exc}") from exc

    with response:
        raw_ct = response.headers.get("Content-Type", "text/html")
        ct = raw_ct.split(";")[0].strip().lower()
        if ct not in _ALLOWED_CONTENT_TYPES:
            raise FetchError(
                f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
            )

        body = response.read(_MAX_BYTES + 1)
        if len(body) > _MAX_BYTES:
            raise FetchError(
                f"Response body exceeds {_MAX_BYTES // (1024 * 1024)} MB limit for URL '{url}'."
            )

    return body, ct


def _to_plain_text(body: bytes, content_type: str) -> str:
    """Convert *body* to plain text based on *content_type*."""
    text = body.decode("utf-8", errors="replace")
    if content_type == "text/plain":
        return text

    # HTML: strip non-content tags, then html2text
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all(["script", "style", "noscript", "nav", "footer", "head"]):
        tag.decompose()
    return _h2t.handle(str(soup)).strip()


class _GuardedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Re-run the SSRF check on every redirect target; stop after *max_redirects*."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise FetchError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        check_url_allowed(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)
