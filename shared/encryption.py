"""Encryption of secrets cached in the local store."""

import logging
from typing import List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from shared.config import get_env

logger = logging.getLogger(__name__)


def _keys_from_env() -> List[str]:
    raw = get_env("LOCAL_ENCRYPTION_KEY", "")
    return [key.strip() for key in raw.split(",") if key.strip()]


class TokenCipher:
    """
    Seals secrets such as the Drive access token before they are cached.

    ``LOCAL_ENCRYPTION_KEY`` holds one or more comma-separated Fernet keys.
    The first key seals new values; every key is tried when unsealing, so a
    cached token stays readable after the key is changed and can be
    resealed under the new one.
    """

    def __init__(self, keys: Optional[Sequence[str]] = None):
        """
        Initialize the cipher.

        Args:
            keys: Fernet keys, newest first. Defaults to LOCAL_ENCRYPTION_KEY.
                  Without any key an ephemeral one is generated and cached
                  secrets do not survive a restart.

        Raises:
            ValueError: If a key is not a valid Fernet key
        """
        keys = list(keys) if keys is not None else _keys_from_env()
        self.ephemeral = not keys
        if self.ephemeral:
            logger.warning("LOCAL_ENCRYPTION_KEY not set, cached tokens will not survive a restart")
            keys = [Fernet.generate_key().decode()]

        self._fernet = MultiFernet([Fernet(key.encode()) for key in keys])

    def seal(self, secret: str) -> str:
        """
        Encrypt a secret under the primary key.

        Raises:
            ValueError: If the secret is empty
        """
        if not secret:
            raise ValueError("Cannot seal an empty secret")
        return self._fernet.encrypt(secret.encode()).decode()

    def unseal(self, sealed: str, max_age: Optional[int] = None) -> Optional[str]:
        """
        Decrypt a value produced by :meth:`seal`.

        Args:
            sealed: Fernet token
            max_age: Reject values sealed more than this many seconds ago

        Returns:
            The secret, or None if no key opens it, it was tampered with or it expired
        """
        if not sealed:
            return None
        try:
            return self._fernet.decrypt(sealed.encode(), ttl=max_age).decode()
        except InvalidToken:
            return None

    def reseal(self, sealed: str) -> str:
        """
        Re-encrypt a sealed value under the primary key.

        Raises:
            InvalidToken: If no configured key opens the value
        """
        return self._fernet.rotate(sealed.encode()).decode()

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode()
