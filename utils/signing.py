# -------------------------------------------------------------------
#  utils/signing.py  – helpers for the non-bearer broker auth modes.
# -------------------------------------------------------------------
"""Signing helpers used by ``modules.broker.build_auth_headers``.

HMAC mode signs ``"{timestamp}:{path}:{body}"`` with HMAC-SHA256 keyed by the
API secret and sends the lower-case hex digest.  Basic mode is the usual
base64 ``key:secret`` pair."""
from __future__ import annotations

import base64
import hashlib
import hmac
import time
from urllib.parse import urlsplit

__all__ = ["stamp", "request_path", "hmac_signature", "basic_token"]


def stamp() -> str:
    """Unix timestamp in whole seconds, as the broker expects it."""
    return str(int(time.time()))


def request_path(url: str) -> str:
    """Path plus query string of ``url`` (the part that gets signed)."""
    parts = urlsplit(url)
    return parts.path + (f"?{parts.query}" if parts.query else "")


def hmac_signature(secret: str, timestamp: str, path: str, body: str = "") -> str:
    to_sign = f"{timestamp}:{path}:{body}"
    return hmac.new(secret.encode(), to_sign.encode(), hashlib.sha256).hexdigest()


def basic_token(api_key: str, api_secret: str) -> str:
    return base64.b64encode(f"{api_key}:{api_secret}".encode()).decode()
