"""PADM authentication module.

This module handles:
- OAuth2 password-grant authentication against the PADM API
- Caching the access token and refreshing it before it expires
- Serialising refreshes so concurrent callers share one round trip

The PADM token endpoint does not document a refresh grant, so a refresh
is always a full re-authentication with the configured credentials.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

# Configure module logger
logger = logging.getLogger(__name__)


class PADMError(Exception):
    """Base exception for PADM API errors."""
    pass


class AuthError(PADMError):
    """Exception raised when the credential exchange fails."""
    pass


@dataclass(frozen=True)
class Token:
    """An access token issued by the PADM token endpoint.

    Attributes:
        access_token: Bearer credential for API requests
        issued_at: Unix timestamp when the token was obtained
        expires_at: Unix timestamp when the token expires
        refresh_token: Refresh token, if the endpoint returned one (unused)
    """
    access_token: str
    issued_at: float
    expires_at: float
    refresh_token: Optional[str] = None

    def is_usable(self, now: float, margin: float = 0.0) -> bool:
        """True if the token stays valid for at least `margin` more seconds."""
        return self.expires_at - margin > now


class TokenManager:
    """Owns the PADM access token for one set of credentials.

    Attributes:
        token_url: Full URL of the OAuth2 token endpoint
        username: PADM username
        default_ttl: Token lifetime when the response has no expires_in
        safety_margin: Seconds before expiry at which the token is refreshed
    """

    TOKEN_PATH = "/api/oauth/token"

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        default_ttl: float = 300.0,
        safety_margin: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the token manager.

        Args:
            base_url: PADM base URL, e.g. https://padm.local
            username: PADM username
            password: PADM password
            session: HTTP session to use (shared with the fetcher)
            timeout: Request timeout in seconds
            default_ttl: Token lifetime in seconds if the API omits it
            safety_margin: Refresh this many seconds before expiry
            clock: Time source, injectable for tests
        """
        self.token_url = f"{base_url.rstrip('/')}{self.TOKEN_PATH}"
        self.username = username
        self._password = password
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.default_ttl = default_ttl
        self.safety_margin = safety_margin
        self._clock = clock

        self._lock = threading.Lock()
        self._token: Optional[Token] = None
        self._refresh_count = 0
        self._last_error: Optional[AuthError] = None

    @property
    def refresh_count(self) -> int:
        """Number of authentication round trips performed so far."""
        return self._refresh_count

    def get_valid_token(self) -> Token:
        """Return a token that is valid for at least the safety margin.

        Authenticates on first use and whenever the cached token is within
        the safety margin of expiry. Callers arriving while a refresh is in
        flight wait for it and share its outcome.

        Returns:
            A usable Token

        Raises:
            AuthError: If authentication fails and no unexpired token remains
        """
        # Read before the token so a refresh finishing in between is noticed
        seen_refreshes = self._refresh_count
        token = self._token
        if token is not None and token.is_usable(self._clock(), self.safety_margin):
            return token

        with self._lock:
            now = self._clock()
            token = self._token
            if token is not None and token.is_usable(now, self.safety_margin):
                return token

            # Another caller refreshed while we waited and it failed
            if self._refresh_count != seen_refreshes and self._last_error is not None:
                if token is not None and token.is_usable(now):
                    return token
                raise self._last_error

            return self._refresh(token)

    def invalidate(self) -> None:
        """Drop the cached token so the next call re-authenticates."""
        with self._lock:
            if self._token is not None:
                logger.info("Dropping cached PADM token")
            self._token = None

    def _refresh(self, previous: Optional[Token]) -> Token:
        """Authenticate and cache the new token. Caller must hold the lock."""
        try:
            token = self._authenticate()
        except AuthError as e:
            self._refresh_count += 1
            self._last_error = e
            if previous is not None and previous.is_usable(self._clock()):
                logger.warning(f"Token refresh failed, using current token until it expires: {e}")
                return previous
            raise

        self._refresh_count += 1
        self._last_error = None
        self._token = token
        return token

    def _authenticate(self) -> Token:
        """Perform the password-grant exchange.

        Returns:
            Newly issued Token

        Raises:
            AuthError: On network failure, rejection or a malformed response
        """
        logger.info(f"Authenticating as {self.username} at {self.token_url}")
        issued_at = self._clock()

        try:
            response = self.session.post(
                self.token_url,
                params={"grant_type": "password"},
                data={
                    "grant_type": "password",
                    "username": self.username,
                    "password": self._password,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.HTTPError as e:
            raise AuthError(f"Authentication rejected: {e}") from e
        except requests.RequestException as e:
            raise AuthError(f"Authentication request failed: {e}") from e
        except ValueError as e:
            raise AuthError(f"Malformed authentication response: {e}") from e

        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthError("Authentication response has no access_token")

        ttl = self.default_ttl
        if body.get("expires_in") is not None:
            try:
                ttl = float(body["expires_in"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid expires_in: {body['expires_in']!r}")

        logger.info(f"Authentication successful, token valid for {ttl:.0f}s")
        return Token(
            access_token=body["access_token"],
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            refresh_token=body.get("refresh_token"),
        )
