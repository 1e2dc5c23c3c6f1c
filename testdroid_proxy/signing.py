"""Time-boxed URL signing using Hawk bewits.

The flashing job downloads the build artifact on its own, so the build URL
handed to it carries a bewit: an HMAC-SHA256 over the request line and an
expiry, encoded into a single ``bewit`` query parameter.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import time
from urllib.parse import urlsplit

BEWIT_TTL = 60 * 60  # seconds

_BEWIT_PARAM = re.compile(r"(?:^|&)bewit=([^&]*)(?:&|$)")


def _resource(url: str) -> tuple[str, str, int]:
    parts = urlsplit(url)
    resource = parts.path or "/"
    if parts.query:
        resource += "?" + parts.query
    port = parts.port or (443 if parts.scheme == "https" else 80)
    return resource, (parts.hostname or "").lower(), port


def _mac(access_token: str, expires: int, resource: str, host: str, port: int) -> str:
    normalized = (
        "hawk.1.bewit\n"
        f"{expires}\n"
        "\n"  # nonce
        "GET\n"
        f"{resource}\n"
        f"{host}\n"
        f"{port}\n"
        "\n"  # payload hash
        "\n"  # ext
    )
    digest = hmac.new(access_token.encode("utf-8"), normalized.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_url(
    url: str,
    client_id: str,
    access_token: str,
    ttl_seconds: int = BEWIT_TTL,
    now: float | None = None,
) -> str:
    """Append a bewit to ``url`` valid for ``ttl_seconds`` from ``now``."""
    issued = int(time.time() if now is None else now)
    expires = issued + ttl_seconds
    resource, host, port = _resource(url)
    mac = _mac(access_token, expires, resource, host, port)
    bewit = base64.urlsafe_b64encode(f"{client_id}\\{expires}\\{mac}\\".encode("utf-8"))
    separator = "&" if urlsplit(url).query else "?"
    return f"{url}{separator}bewit={bewit.decode('ascii').rstrip('=')}"


def verify_signed_url(
    signed_url: str,
    client_id: str,
    access_token: str,
    now: float | None = None,
) -> bool:
    """Check that ``signed_url`` carries a live bewit issued for these credentials."""
    parts = urlsplit(signed_url)
    match = _BEWIT_PARAM.search(parts.query)
    if not match:
        return False

    encoded = match.group(1)
    try:
        decoded = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return False
    fields = decoded.split("\\")
    if len(fields) != 4:
        return False
    bewit_id, expires_text, mac, _ext = fields
    if bewit_id != client_id or not expires_text.isdigit():
        return False

    expires = int(expires_text)
    if expires <= int(time.time() if now is None else now):
        return False

    # Rebuild the URL as it was before the bewit was appended
    start, end = match.span()
    query = parts.query[:start] + ("&" if 0 < start and end < len(parts.query) else "") + parts.query[end:]
    original = parts._replace(query=query).geturl()
    resource, host, port = _resource(original)
    expected = _mac(access_token, expires, resource, host, port)
    return hmac.compare_digest(expected, mac)
