import bisect
import itertools
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

# Order book depths accepted by the venue
VALID_DEPTHS = (1, 5, 10, 20, 50, 100, 1000, 10000)

Timeout = Tuple[float, float]


def snap_depth(depth: int) -> int:
    """
    Snap a requested order book depth to an allowed value.

    Exact matches pass through, otherwise the next larger allowed depth is
    used, or the maximum when nothing larger exists.
    """
    idx = bisect.bisect_left(VALID_DEPTHS, depth)
    if idx == len(VALID_DEPTHS):
        return VALID_DEPTHS[-1]
    return VALID_DEPTHS[idx]


class UpstreamError(Exception):
    """Base class for failures talking to the venue"""


class UpstreamTransportError(UpstreamError):
    """No response: connection refused, DNS failure, timeout"""


class UpstreamRejectedError(UpstreamError):
    """Venue answered with a non-success status or an error body"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamParseError(UpstreamError):
    """Venue answered with something that is not JSON"""


@dataclass
class UpstreamResponse:
    """Raw venue response"""
    status_code: int
    text: str

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except ValueError as e:
            raise UpstreamParseError(f"Invalid JSON from upstream: {e}") from e

    def result_or_raise(self) -> Dict:
        """
        Parsed JSON-RPC body of a successful response.

        Raises:
            UpstreamRejectedError: non-200 status or an `error` member in the body
            UpstreamParseError: body is not a JSON object
        """
        if not self.ok:
            raise UpstreamRejectedError(
                f"HTTP Error: {self.status_code}",
                status_code=self.status_code,
                body=self.text
            )
        body = self.json()
        if not isinstance(body, dict):
            raise UpstreamParseError("Upstream body is not a JSON object")
        if "error" in body:
            raise UpstreamRejectedError(
                f"Upstream error: {body['error']}",
                status_code=self.status_code,
                body=self.text
            )
        return body


class DeribitClient:
    """
    Wrapper for the Deribit REST API (JSON-RPC over HTTP).

    Every thread gets its own requests.Session, so one client may be shared
    between a polling loop and the dispatcher threadpool.
    """

    API_PREFIX = "/api/v2"
    DEFAULT_TIMEOUT: Timeout = (5.0, 5.0)

    def __init__(self, base_url: str, timeout: Optional[Timeout] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._local = threading.local()
        self._ids = itertools.count(1)

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({"Accept": "application/json"})
            self._local.session = session
        return session

    def close(self):
        """Close the calling thread's session"""
        session = getattr(self._local, "session", None)
        if session is not None:
            session.close()
            self._local.session = None

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict] = None,
        body: Optional[Dict] = None,
        token: Optional[str] = None,
        timeout: Optional[Timeout] = None
    ) -> UpstreamResponse:
        url = f"{self.base_url}{self.API_PREFIX}{path}"
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=body,
                headers=headers,
                timeout=timeout or self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"Upstream request to {path} failed: {e}")
            raise UpstreamTransportError(f"Request to {path} failed: {e}") from e

        return UpstreamResponse(status_code=response.status_code, text=response.text)

    def _rpc(
        self,
        method: str,
        params: Dict,
        token: Optional[str] = None,
        timeout: Optional[Timeout] = None
    ) -> UpstreamResponse:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params
        }
        return self._request("POST", f"/{method}", body=body, token=token, timeout=timeout)

    # =========================================================================
    # PUBLIC
    # =========================================================================

    def get_instruments(self, currency: str, kind: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._request(
            "GET",
            "/public/get_instruments",
            params={"currency": currency, "kind": kind},
            timeout=timeout
        )

    def get_order_book(self, instrument_name: str, depth: int, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._request(
            "GET",
            "/public/get_order_book",
            params={"instrument_name": instrument_name, "depth": snap_depth(depth)},
            timeout=timeout
        )

    def authenticate(self, client_id: str, client_secret: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._rpc(
            "public/auth",
            {
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret
            },
            timeout=timeout
        )

    # =========================================================================
    # PRIVATE (bearer token)
    # =========================================================================

    def buy(self, params: Dict, token: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._rpc("private/buy", params, token=token, timeout=timeout)

    def sell(self, params: Dict, token: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._rpc("private/sell", params, token=token, timeout=timeout)

    def edit(self, params: Dict, token: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._rpc("private/edit", params, token=token, timeout=timeout)

    def cancel(self, order_id: str, token: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._rpc("private/cancel", {"order_id": order_id}, token=token, timeout=timeout)

    def get_positions(self, currency: str, kind: str, token: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._rpc(
            "private/get_positions",
            {"currency": currency, "kind": kind},
            token=token,
            timeout=timeout
        )

    def get_open_orders_by_currency(self, currency: str, token: str, timeout: Optional[Timeout] = None) -> UpstreamResponse:
        return self._rpc(
            "private/get_open_orders_by_currency",
            {"currency": currency},
            token=token,
            timeout=timeout
        )
