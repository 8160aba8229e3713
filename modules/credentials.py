"""
credentials.py
--------------
Resolve an opaque credential reference (a follower's ``credential_ref`` or
the master account id) into whatever the broker needs to authenticate.

Resolvers are injected into the broker gateway; there is no process-wide
token cache.  The file-backed resolver re-reads its file on every call so a
token rotated on disk takes effect on the next order.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

TOKEN_MASK_LENGTH = 20


@dataclass(frozen=True)
class Credential:
    token: Optional[str] = None
    api_key: str = ""
    api_secret: str = ""
    auth_method: str = "headers"  # headers | basic | hmac; a token always wins


def mask_token(token: Optional[str]) -> str:
    """Keep only the ends of a token so it can appear in logs."""
    if not token:
        return ""
    if len(token) <= TOKEN_MASK_LENGTH:
        return "***"
    return token[:10] + "**...**" + token[-10:]


class CredentialResolver(ABC):
    @abstractmethod
    def resolve(self, ref: str) -> Optional[Credential]:
        """Return the credential for ``ref`` or None when unknown."""
        raise NotImplementedError


class StaticCredentialResolver(CredentialResolver):
    """In-memory mapping of reference -> Credential (or bare token string)."""

    def __init__(self, credentials: Optional[Mapping[str, object]] = None) -> None:
        self._credentials: Dict[str, Credential] = {}
        for ref, value in (credentials or {}).items():
            self._credentials[str(ref)] = (
                value if isinstance(value, Credential) else Credential(token=str(value))
            )

    def resolve(self, ref: str) -> Optional[Credential]:
        return self._credentials.get(str(ref))


class TokenFileCredentialResolver(CredentialResolver):
    """Bearer tokens from a JSON file mapping account id -> token.

    A file that is not JSON is treated as a single raw token belonging to
    ``master_account``.
    """

    def __init__(
        self,
        path: str,
        *,
        master_account: str = "Master",
        auth_method: str = "headers",
        api_key: str = "",
        api_secret: str = "",
    ) -> None:
        self.path = Path(path)
        self.master_account = master_account
        self.auth_method = auth_method
        self.api_key = api_key
        self.api_secret = api_secret

    def _read_tokens(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("Failed reading tokens file %s: %s", self.path, exc)
            return {}
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {self.master_account: raw}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): str(v) for k, v in parsed.items() if v}

    def resolve(self, ref: str) -> Optional[Credential]:
        token = self._read_tokens().get(str(ref))
        if not token:
            return None
        return Credential(
            token=token,
            api_key=self.api_key,
            api_secret=self.api_secret,
            auth_method=self.auth_method,
        )

    def describe(self) -> Dict[str, str]:
        """Masked view of the stored tokens, for diagnostics."""
        return {ref: mask_token(tok) for ref, tok in self._read_tokens().items()}
