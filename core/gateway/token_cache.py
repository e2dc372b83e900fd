"""
Shared access token for the venue's private endpoints.

Readers holding a valid token never block. When the token is absent or
expired, the first caller becomes the refresher and every concurrent caller
waits on the same Future, so an expiry under load costs exactly one auth
request and everyone sees the same token or the same AuthError.
"""

import threading
import time
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

from core.api.deribit_client import DeribitClient, Timeout, UpstreamError

logger = logging.getLogger(__name__)

TOKEN_VALIDITY_SECONDS = 15 * 60


class AuthError(Exception):
    """Token refresh failed"""


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: float  # monotonic clock

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class TokenCache:

    def __init__(
        self,
        client: DeribitClient,
        client_id: str,
        client_secret: str,
        validity: float = TOKEN_VALIDITY_SECONDS,
        timeout: Optional[Timeout] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._client = client
        self._client_id = client_id
        self._client_secret = client_secret
        self.validity = validity
        self._timeout = timeout
        self._clock = clock

        # Replaced whole, never mutated: readers see old or new pair
        self._token: Optional[CachedToken] = None
        self._inflight: Optional[Future] = None
        self._lock = threading.Lock()
        self.refresh_count = 0

    @property
    def has_valid_token(self) -> bool:
        token = self._token
        return token is not None and token.is_valid(self._clock())

    def get_token(self) -> str:
        """
        Current access token, refreshing it if needed.

        Raises:
            AuthError: the refresh this call waited on failed
        """
        token = self._token
        if token is not None and token.is_valid(self._clock()):
            return token.value

        with self._lock:
            token = self._token
            if token is not None and token.is_valid(self._clock()):
                return token.value
            future = self._inflight
            is_refresher = future is None
            if is_refresher:
                future = Future()
                self._inflight = future

        if not is_refresher:
            return future.result().value

        try:
            token = self._refresh()
        except AuthError as e:
            self._fail(future, e)
            raise
        except Exception as e:
            error = AuthError(f"Failed to obtain access token: {e}")
            self._fail(future, error)
            raise error from e

        with self._lock:
            self._token = token
            self._inflight = None
        future.set_result(token)
        return token.value

    def _fail(self, future: Future, error: AuthError):
        with self._lock:
            self._inflight = None
        future.set_exception(error)

    def invalidate(self, value: str):
        """Drop the cached token if it is still the given (rejected) one"""
        with self._lock:
            if self._token is not None and self._token.value == value:
                self._token = None
                logger.info("Access token invalidated")

    def _refresh(self) -> CachedToken:
        self.refresh_count += 1
        logger.info("Refreshing access token")
        try:
            response = self._client.authenticate(
                self._client_id,
                self._client_secret,
                timeout=self._timeout
            )
            body = response.result_or_raise()
        except UpstreamError as e:
            logger.error(f"Token refresh failed: {e}")
            raise AuthError(f"Failed to obtain access token: {e}") from e

        try:
            access_token = body["result"]["access_token"]
        except (KeyError, TypeError) as e:
            logger.error(f"Token refresh returned no access_token: {body}")
            raise AuthError("Failed to obtain access token: no access_token in response") from e

        return CachedToken(value=access_token, expires_at=self._clock() + self.validity)
