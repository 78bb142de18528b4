"""
Shared plumbing for OAuth-backed HTTP storage providers.

OAuthProvider owns the requests session, maps HTTP failures onto the
ProviderError hierarchy, builds consent URLs, exchanges authorization codes
and keeps a connection's access token fresh. Refreshed tokens are encrypted
with the TokenCipher, written back onto the connection, and handed to the
refresh callback so the store can persist them.
"""

from __future__ import annotations

import logging
import tempfile
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import requests

from recipevault.config.credentials import CredentialError, TokenCipher
from recipevault.interchange.errors import ProviderError
from recipevault.providers.base import (
    CloudProvider,
    TokenGrant,
    TokenRefreshCallback,
    TransientProviderError,
)
from recipevault.storage.models import ProviderConnection, utc_now

logger = logging.getLogger(__name__)


class OAuthProvider(CloudProvider):
    """
    Base class for providers reached over HTTPS with OAuth 2 tokens.

    Subclasses set authorize_url, token_url and scope parameters, and
    implement _fetch_account_info().
    """

    authorize_url: str = ""
    token_url: str = ""

    # Refresh this long before the recorded expiry
    expiry_buffer: timedelta = timedelta(0)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        cipher: TokenCipher,
        on_tokens_refreshed: TokenRefreshCallback | None = None,
        timeout: int = 60,
        download_dir: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the provider.

        Args:
            client_id: OAuth application id.
            client_secret: OAuth application secret.
            redirect_uri: Callback URL registered with the provider.
            cipher: Cipher used for stored tokens.
            on_tokens_refreshed: Called with the connection after a refresh.
            timeout: Seconds before an HTTP call is abandoned.
            download_dir: Directory for downloaded archives.
            clock: Source of the current time for expiry checks.
        """
        super().__init__()
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.cipher = cipher
        self.on_tokens_refreshed = on_tokens_refreshed
        self.timeout = timeout
        self.download_dir = download_dir
        self._clock = clock
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Accept": "application/json"})
        return self._session

    def _request(
        self,
        method: str,
        url: str,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Make one HTTP request and classify failures.

        Returns:
            The successful response.

        Raises:
            TransientProviderError: For timeouts, connection errors, 429 and 5xx.
            ProviderError: For any other non-success status.
        """
        session = self._get_session()
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        start_time = time.time()
        try:
            response = session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(
                f"Request timed out: {e}", provider=self.kind.value
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(
                f"Failed to connect: {e}", provider=self.kind.value
            ) from e

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"{self.kind.value} API call: {method} {url} -> "
            f"{response.status_code} ({duration_ms:.0f}ms)"
        )

        if response.status_code == 429 or response.status_code >= 500:
            retry_after = response.headers.get("Retry-After")
            raise TransientProviderError(
                f"Provider returned {response.status_code}",
                provider=self.kind.value,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code in (401, 403):
            raise self._error(
                f"Provider rejected the credentials ({response.status_code}). "
                "Reconnect the account.",
                code="UNAUTHORIZED",
            )
        if not response.ok:
            raise ProviderError(
                f"Provider returned {response.status_code}: {response.text[:200]}",
                provider=self.kind.value,
                details={"status": response.status_code},
            )
        return response

    # -------------------------------------------------------------------------
    # OAuth flow
    # -------------------------------------------------------------------------

    def authorization_params(self) -> dict[str, str]:
        """Provider-specific query parameters for the consent URL."""
        return {}

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
            **self.authorization_params(),
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def exchange_code(self, code: str) -> TokenGrant:
        try:
            response = self._with_retry(
                self._request,
                "POST",
                self.token_url,
                data={
                    "code": code,
                    "grant_type": "authorization_code",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                },
            )
            payload = response.json()
            access_token = payload["access_token"]
        except (ProviderError, ValueError, KeyError) as e:
            logger.error(f"{self.kind.value} token exchange failed: {e}")
            raise self._error(
                "Failed to exchange authorization code for tokens"
            ) from e

        email, name = self._fetch_account_info(access_token)
        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token", ""),
            expires_in=payload.get("expires_in"),
            account_email=email,
            account_name=name,
        )

    def _fetch_account_info(self, access_token: str) -> tuple[str, str]:
        """Return (email, display name) of the connected account."""
        return "", ""

    # -------------------------------------------------------------------------
    # Token lifecycle
    # -------------------------------------------------------------------------

    def _access_token(self, connection: ProviderConnection) -> str:
        """
        Return a usable plaintext access token, refreshing it if expired.

        Raises:
            ProviderError: If the stored token cannot be decrypted or the
                refresh fails (code TOKEN_REFRESH_FAILED).
        """
        expiry = connection.token_expiry
        if expiry is None or expiry > self._clock() + self.expiry_buffer:
            try:
                return self.cipher.decrypt(connection.access_token)
            except CredentialError as e:
                raise self._error(str(e), code="TOKEN_REFRESH_FAILED") from e

        logger.info(f"Refreshing {self.kind.value} token for account {connection.account_id}")
        return self._refresh(connection)

    def _refresh(self, connection: ProviderConnection) -> str:
        try:
            refresh_token = self.cipher.decrypt(connection.refresh_token)
            response = self._with_retry(
                self._request,
                "POST",
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
            payload = response.json()
            access_token = payload["access_token"]
        except (CredentialError, ProviderError, ValueError, KeyError) as e:
            logger.error(f"{self.kind.value} token refresh failed: {e}")
            raise self._error(
                "Failed to refresh access token. Reconnect the account.",
                code="TOKEN_REFRESH_FAILED",
            ) from e

        expires_in = int(payload.get("expires_in") or 3600)
        connection.access_token = self.cipher.encrypt(access_token)
        connection.token_expiry = self._clock() + timedelta(seconds=expires_in)
        if payload.get("refresh_token"):
            connection.refresh_token = self.cipher.encrypt(payload["refresh_token"])

        if self.on_tokens_refreshed is not None:
            self.on_tokens_refreshed(connection)
        return access_token

    # -------------------------------------------------------------------------
    # Downloads
    # -------------------------------------------------------------------------

    def _save_download(self, response: requests.Response) -> Path:
        """Write a download response into a new temporary archive file."""
        if self.download_dir:
            Path(self.download_dir).mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="download-", suffix=".zip", dir=self.download_dir)
        target = Path(name)
        try:
            with open(fd, "wb") as f:
                for chunk in response.iter_content(chunk_size=65536):
                    if chunk:
                        f.write(chunk)
        except (OSError, requests.exceptions.RequestException) as e:
            target.unlink(missing_ok=True)
            raise self._error(f"Backup download failed: {e}") from e
        return target
