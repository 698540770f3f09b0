"""PADM variable retrieval module.

This module handles:
- Authenticated GET requests against the PADM variables endpoint
- Classifying failures (transport, auth rejection, malformed body)
- Handing the decoded body to the variable parser
"""

import logging
import time
from typing import Callable, Optional, Sequence

import requests
import urllib3

from padm_exporter.auth import PADMError, Token
from padm_exporter.variables import ParseError, PollCycleResult, VariableDefinition, parse_variables

# Configure module logger
logger = logging.getLogger(__name__)


class TransportError(PADMError):
    """Exception raised on network failures, timeouts and unexpected statuses."""
    pass


class AuthRejectedError(PADMError):
    """Exception raised when the API rejects the bearer token (401/403)."""
    pass


def create_session(tls_insecure: bool = False) -> requests.Session:
    """Create the HTTP session shared by the token manager and the fetcher.

    Args:
        tls_insecure: Disable certificate verification (self-signed PADM appliances)
    """
    session = requests.Session()
    session.headers.update({"Accept": "application/json"})
    if tls_insecure:
        session.verify = False
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return session


class VariableFetcher:
    """Fetches current variable values from the PADM API.

    Attributes:
        variables_url: Full URL of the variables endpoint
        timeout: Request timeout in seconds
    """

    VARIABLES_PATH = "/api/variables"

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.variables_url = f"{base_url.rstrip('/')}{self.VARIABLES_PATH}"
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self._clock = clock

    def fetch(self, token: Token, definitions: Sequence[VariableDefinition]) -> PollCycleResult:
        """Retrieve the configured variables in one request.

        Args:
            token: Valid access token from the TokenManager
            definitions: Configured variable definitions

        Returns:
            PollCycleResult with the values found and the variables missing

        Raises:
            AuthRejectedError: If the API answers 401 or 403
            TransportError: On connection errors, timeouts and other bad statuses
            ParseError: If the response body is malformed
        """
        logger.debug(f"Fetching variables from {self.variables_url}")

        try:
            response = self.session.get(
                self.variables_url,
                headers={"Authorization": f"Bearer {token.access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Request to {self.variables_url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthRejectedError(f"Token rejected with status {response.status_code}")

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise TransportError(str(e)) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ParseError(f"Response is not valid JSON: {e}") from e

        result = parse_variables(payload, definitions, fetched_at=self._clock())

        if result.failed:
            logger.warning(f"Variables missing from response: {', '.join(result.failed)}")
        logger.debug(f"Fetched {len(result.values)}/{len(definitions)} variables")
        return result
