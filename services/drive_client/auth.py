"""Google Drive authentication state for the current device session."""

import logging
from typing import Optional

import httpx

from shared.config import get_drive_config
from shared.encryption import TokenCipher
from shared.local_store import LocalStore, LocalStorageError
from services.drive_client.errors import AuthRequiredError

logger = logging.getLogger(__name__)

TOKEN_KEY = "drive-token"


class DriveAuthenticator:
    """Holds the Drive access token and caches it encrypted in the local store."""

    def __init__(
        self,
        store: LocalStore,
        cipher: TokenCipher,
        revoke_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the authenticator.

        Args:
            store: Local durable store used to cache the token across restarts
            cipher: Encrypts the cached token at rest
            revoke_url: OAuth token revocation endpoint
            http_client: Optional client used for revocation
        """
        self.store = store
        self.cipher = cipher
        self.revoke_url = revoke_url or get_drive_config()["revoke_url"]
        self.http_client = http_client
        self._access_token: Optional[str] = None

    def restore(self) -> bool:
        """
        Restore a previously cached token.

        Returns:
            True if a token was restored, False otherwise
        """
        try:
            encrypted = self.store.get(TOKEN_KEY)
        except LocalStorageError as e:
            logger.error(f"Could not read cached Drive token: {e}")
            return False

        if not encrypted:
            return False

        token = self.cipher.unseal(encrypted)
        if token is None:
            logger.warning("Cached Drive token could not be decrypted, discarding it")
            self._forget_cached_token()
            return False

        self._access_token = token
        try:
            # Move a token sealed under a retired key onto the current one
            self.store.put(TOKEN_KEY, self.cipher.reseal(encrypted))
        except LocalStorageError as e:
            logger.error(f"Could not reseal cached Drive token: {e}")

        logger.info("Restored Drive access token from local store")
        return True

    def sign_in(self, access_token: str) -> None:
        """
        Accept an access token obtained by the identity provider.

        Args:
            access_token: OAuth bearer token with Drive file scope

        Raises:
            ValueError: If the token is empty
        """
        if not access_token:
            raise ValueError("Access token must not be empty")

        self._access_token = access_token
        try:
            self.store.put(TOKEN_KEY, self.cipher.seal(access_token))
        except LocalStorageError as e:
            # The session still works, it just will not survive a restart
            logger.error(f"Could not cache Drive token: {e}")

        logger.info("Signed in to Google Drive")

    async def sign_out(self) -> None:
        """Revoke the current token and forget it."""
        token = self._access_token
        self._access_token = None
        self._forget_cached_token()

        if not token:
            return

        try:
            if self.http_client is not None:
                await self._revoke(self.http_client, token)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    await self._revoke(client, token)
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation failed: {e}")

        logger.info("Signed out from Google Drive")

    def invalidate(self) -> None:
        """Drop a token the server rejected as expired or revoked."""
        if self._access_token is None:
            return

        logger.warning("Drive access token rejected, sign-in required")
        self._access_token = None
        self._forget_cached_token()

    def is_authenticated(self) -> bool:
        """Check if a token is currently available."""
        return self._access_token is not None

    def get_access_token(self) -> str:
        """
        Get the current bearer token.

        Raises:
            AuthRequiredError: If not signed in
        """
        if self._access_token is None:
            raise AuthRequiredError("Not signed in to Google Drive")
        return self._access_token

    async def _revoke(self, client: httpx.AsyncClient, token: str) -> None:
        response = await client.post(
            self.revoke_url,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"}
        )
        if response.status_code != 200:
            logger.warning(f"Token revocation returned {response.status_code}")

    def _forget_cached_token(self) -> None:
        try:
            self.store.delete(TOKEN_KEY)
        except LocalStorageError as e:
            logger.error(f"Could not delete cached Drive token: {e}")
