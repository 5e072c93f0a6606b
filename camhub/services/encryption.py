"""Credential handling for camera connections.

Passwords are kept Fernet-encrypted in memory behind an opaque handle.
They are decrypted and spliced into a URL only at the point of use;
everything that is logged or returned by the API goes through
``redact_url``.
"""

import logging
import uuid
from typing import Optional
from urllib.parse import quote, unquote, urlparse

from cryptography.fernet import Fernet, InvalidToken

from camhub.config import get_settings

logger = logging.getLogger(__name__)


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key."""
    return Fernet.generate_key().decode()


class SecretStore:
    """In-memory store of encrypted secrets keyed by opaque handles."""

    def __init__(self, key: Optional[str] = None):
        if key is None:
            key = get_settings().encryption_key
        if not key:
            # No key configured: secrets only need to survive this process
            key = generate_encryption_key()
        self._fernet = Fernet(key.encode())
        self._secrets: dict[str, bytes] = {}

    def put(self, secret: str) -> str:
        """Store a secret and return its handle."""
        ref = uuid.uuid4().hex
        self._secrets[ref] = self._fernet.encrypt(secret.encode())
        return ref

    def get(self, ref: Optional[str]) -> Optional[str]:
        """Decrypt the secret behind a handle, or None if unknown."""
        if ref is None:
            return None
        token = self._secrets.get(ref)
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token).decode()
        except InvalidToken:
            logger.error(f"Failed to decrypt secret {ref[:8]}")
            return None

    def discard(self, ref: Optional[str]) -> None:
        if ref is not None:
            self._secrets.pop(ref, None)

    def __contains__(self, ref: object) -> bool:
        return ref in self._secrets

    def __len__(self) -> int:
        return len(self._secrets)


def split_credentials(url: str) -> tuple[str, Optional[str], Optional[str]]:
    """Split a URL into (url without credentials, username, password)."""
    parsed = urlparse(url)
    username = unquote(parsed.username) if parsed.username else None
    password = unquote(parsed.password) if parsed.password else None
    return redact_url(url), username, password


def compose_url(url: str, username: Optional[str], password: Optional[str]) -> str:
    """Return ``url`` with credentials injected into its netloc.

    The result contains a plaintext password and must never be logged.
    """
    if not username:
        return url
    parsed = urlparse(redact_url(url))
    userinfo = quote(username, safe="")
    if password:
        userinfo = f"{userinfo}:{quote(password, safe='')}"
    return parsed._replace(netloc=f"{userinfo}@{parsed.netloc}").geturl()


def redact_url(url: str) -> str:
    """Remove credentials from a URL if present."""
    try:
        parsed = urlparse(url)
        if parsed.username or parsed.password:
            netloc = parsed.hostname or ""
            if ":" in netloc:
                netloc = f"[{netloc}]"
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            return parsed._replace(netloc=netloc).geturl()
    except ValueError:
        pass
    return url


# Global instance
secret_store = SecretStore()
