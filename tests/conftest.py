import json
import threading
import time
from typing import Dict, List, Optional

import pytest

from config.settings import GatewaySettings
from core.api.deribit_client import UpstreamResponse, UpstreamTransportError


class RecordingConnection:
    """Connection handle that keeps everything sent to it"""

    def __init__(self, name: str = "client"):
        self.name = name
        self.sent: List[str] = []
        self._lock = threading.Lock()

    def __repr__(self):
        return f"RecordingConnection({self.name})"

    def send(self, message: str):
        with self._lock:
            self.sent.append(message)

    def json_messages(self) -> List[Dict]:
        with self._lock:
            return [json.loads(m) for m in self.sent]

    def of_type(self, message_type: str) -> List[Dict]:
        return [m for m in self.json_messages() if m.get("type") == message_type]


class FailingConnection(RecordingConnection):

    def send(self, message: str):
        raise ConnectionError("socket closed")


def ok_response(body) -> UpstreamResponse:
    return UpstreamResponse(status_code=200, text=json.dumps(body))


class StubDeribitClient:
    """
    Stand-in for DeribitClient.

    Each method returns the queued/configured UpstreamResponse for its name,
    or raises it if it is an exception. Every call is counted.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.responses: Dict[str, object] = {
            "get_instruments": ok_response({"result": [
                {"instrument_name": "BTC-PERPETUAL"},
                {"instrument_name": "BTC-27DEC24"},
            ]}),
            "get_order_book": ok_response({"result": {"bids": [[100.0, 1.0]], "asks": [[101.0, 2.0]]}}),
            "authenticate": ok_response({"result": {"access_token": "token-1", "expires_in": 900}}),
            "buy": ok_response({"result": {"order": {"order_id": "ord-1"}}}),
            "sell": ok_response({"result": {"order": {"order_id": "ord-2"}}}),
            "edit": ok_response({"result": {"order": {"order_id": "ord-1", "amount": 20}}}),
            "cancel": ok_response({"result": {"order_id": "ord-1", "order_state": "cancelled"}}),
            "get_positions": ok_response({"result": [{"instrument_name": "BTC-PERPETUAL", "size": 10}]}),
            "get_open_orders_by_currency": ok_response({"jsonrpc": "2.0", "result": []}),
        }
        self.closed_by: List[str] = []
        self._lock = threading.Lock()

    def _respond(self, name: str, *args, **kwargs):
        with self._lock:
            self.calls.append((name, args, kwargs))
            response = self.responses[name]
        if callable(response) and not isinstance(response, UpstreamResponse):
            response = response(*args)
        if isinstance(response, Exception):
            raise response
        return response

    def count(self, name: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call[0] == name)

    def calls_to(self, name: str) -> List[tuple]:
        with self._lock:
            return [call for call in self.calls if call[0] == name]

    def close(self):
        with self._lock:
            self.closed_by.append(threading.current_thread().name)

    def get_instruments(self, currency, kind, timeout=None):
        return self._respond("get_instruments", currency, kind)

    def get_order_book(self, instrument_name, depth, timeout=None):
        return self._respond("get_order_book", instrument_name, depth)

    def authenticate(self, client_id, client_secret, timeout=None):
        return self._respond("authenticate", client_id, client_secret)

    def buy(self, params, token, timeout=None):
        return self._respond("buy", params, token)

    def sell(self, params, token, timeout=None):
        return self._respond("sell", params, token)

    def edit(self, params, token, timeout=None):
        return self._respond("edit", params, token)

    def cancel(self, order_id, token, timeout=None):
        return self._respond("cancel", order_id, token)

    def get_positions(self, currency, kind, token, timeout=None):
        return self._respond("get_positions", currency, kind, token)

    def get_open_orders_by_currency(self, currency, token, timeout=None):
        return self._respond("get_open_orders_by_currency", currency, token)


class ManualClock:

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def connection():
    return RecordingConnection()


@pytest.fixture
def stub_client():
    return StubDeribitClient()


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def transport_error():
    return UpstreamTransportError("connection refused")


@pytest.fixture
def fast_settings():
    return GatewaySettings(
        client_id="id",
        client_secret="secret",
        orderbook_interval=0.005,
        positions_pair_delay=0.001,
        positions_pass_delay=0.01,
        open_orders_interval=0.05,
    )


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    """Poll predicate until true or timeout"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())
