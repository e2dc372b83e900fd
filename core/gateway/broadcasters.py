"""
Polling Broadcasters
====================

Three independent loops, one thread each, that poll the venue and push
updates to every registered connection:

- OrderBookBroadcaster: every instrument's book on a fixed 25ms cadence,
  only while at least one client is connected
- PositionsBroadcaster: currency x kind position lists
- OpenOrdersBroadcaster: the open order list, also published out of band
  after order-mutating commands

All loops share one shutdown Event and check it at every wait. A failing
iteration is logged and the loop carries on; only shutdown ends a loop.
"""

import threading
import time
import logging
from typing import Callable, List, Optional, Sequence

from core.api.deribit_client import (
    DeribitClient,
    Timeout,
    UpstreamError,
    UpstreamParseError,
    UpstreamRejectedError,
)
from core.gateway.connection_registry import ConnectionRegistry
from core.gateway.instruments import InstrumentSet
from core.gateway.protocol import OpenOrdersUpdate, OrderBookUpdate, PositionsUpdate
from core.gateway.token_cache import AuthError, TokenCache

logger = logging.getLogger(__name__)


class PollingBroadcaster:
    """Base class: runs run_once() in a daemon thread until shutdown"""

    name = "poller"
    ERROR_DELAY = 0.1  # default seconds to back off after an unexpected error

    def __init__(
        self,
        registry: ConnectionRegistry,
        client: DeribitClient,
        shutdown: threading.Event,
        error_delay: float = ERROR_DELAY
    ):
        self._registry = registry
        self._client = client
        self._shutdown = shutdown
        self.error_delay = error_delay
        self._thread: Optional[threading.Thread] = None
        self.iterations = 0

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_alive:
            logger.warning(f"{self.name} loop already running")
            return
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop thread. Returns True if it has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self):
        logger.info(f"{self.name} loop started")
        try:
            while not self._shutdown.is_set():
                try:
                    self.run_once()
                except Exception as e:
                    logger.error(f"Error in {self.name} loop: {e}", exc_info=True)
                    self._shutdown.wait(self.error_delay)
                self.iterations += 1
        finally:
            # Sessions are per thread; release this loop's
            self._client.close()
            logger.info(f"{self.name} loop stopped")

    def run_once(self):
        raise NotImplementedError

    def _wait(self, seconds: float) -> bool:
        """Sleep unless shut down. Returns False once shutdown is set."""
        if seconds > 0:
            return not self._shutdown.wait(seconds)
        return not self._shutdown.is_set()


class OrderBookBroadcaster(PollingBroadcaster):

    name = "orderbook"

    def __init__(
        self,
        registry: ConnectionRegistry,
        client: DeribitClient,
        instruments: InstrumentSet,
        shutdown: threading.Event,
        interval: float = 0.025,
        depth: int = 20,
        timeout: Optional[Timeout] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], int] = time.time_ns,
        error_delay: float = PollingBroadcaster.ERROR_DELAY
    ):
        super().__init__(registry, client, shutdown, error_delay)
        self._instruments = instruments
        self.interval = interval
        self.depth = depth
        self._timeout = timeout
        self._clock = clock
        self._wall_clock = wall_clock
        self.fetch_count = 0

    def run_once(self):
        cycle_start = self._clock()

        if self._registry.is_empty:
            self._wait(self.interval)
            return

        self.poll_cycle()

        # Fixed cadence: an overrunning cycle starts the next one immediately
        self._wait(self.interval - (self._clock() - cycle_start))

    def poll_cycle(self) -> int:
        """
        Fetch and broadcast every instrument's book once.

        Returns:
            Number of orderbook_update messages broadcast
        """
        timestamp = self._wall_clock()
        published = 0

        for instrument in self._instruments.names:
            if self._shutdown.is_set():
                break

            try:
                data = self._fetch(instrument)
                if data is None:
                    continue

                update = OrderBookUpdate(instrument=instrument, timestamp=timestamp, data=data)
                self._registry.broadcast(update.to_json())
                published += 1
            except Exception as e:
                logger.warning(f"Error processing {instrument}: {e}", exc_info=True)

        return published

    def _fetch(self, instrument: str) -> Optional[dict]:
        self.fetch_count += 1
        try:
            body = self._client.get_order_book(
                instrument, self.depth, timeout=self._timeout
            ).result_or_raise()
        except UpstreamError as e:
            logger.warning(f"Error processing {instrument}: {e}")
            return None

        result = body.get("result")
        if not isinstance(result, dict):
            logger.debug(f"Discarding malformed order book for {instrument}")
            return None
        return result


class PositionsBroadcaster(PollingBroadcaster):

    name = "positions"

    def __init__(
        self,
        registry: ConnectionRegistry,
        client: DeribitClient,
        token_cache: TokenCache,
        shutdown: threading.Event,
        currencies: Sequence[str] = ("BTC", "ETH"),
        kinds: Sequence[str] = ("future", "option"),
        pair_delay: float = 0.1,
        pass_delay: float = 1.0,
        timeout: Optional[Timeout] = None,
        error_delay: float = PollingBroadcaster.ERROR_DELAY
    ):
        super().__init__(registry, client, shutdown, error_delay)
        self._token_cache = token_cache
        self.currencies = list(currencies)
        self.kinds = list(kinds)
        self.pair_delay = pair_delay
        self.pass_delay = pass_delay
        self._timeout = timeout

    def run_once(self):
        for currency in self.currencies:
            for kind in self.kinds:
                if self._shutdown.is_set():
                    return
                self.publish(currency, kind)
                if not self._wait(self.pair_delay):
                    return
        self._wait(self.pass_delay)

    def publish(self, currency: str, kind: str) -> PositionsUpdate:
        """Fetch one (currency, kind) position list and broadcast it, or the error"""
        token = None
        try:
            token = self._token_cache.get_token()
            body = self._client.get_positions(
                currency, kind, token, timeout=self._timeout
            ).result_or_raise()
            if "result" not in body:
                raise UpstreamParseError("Missing result in response")
            update = PositionsUpdate(currency=currency, kind=kind, data=body["result"])
        except (UpstreamError, AuthError) as e:
            logger.warning(f"Positions fetch failed for {currency}/{kind}: {e}")
            _invalidate_on_unauthorized(self._token_cache, token, e)
            update = PositionsUpdate(currency=currency, kind=kind, error=str(e))

        self._registry.broadcast(update.to_json())
        return update


class OpenOrdersBroadcaster(PollingBroadcaster):

    name = "open_orders"

    def __init__(
        self,
        registry: ConnectionRegistry,
        client: DeribitClient,
        token_cache: TokenCache,
        shutdown: threading.Event,
        currency: str = "BTC",
        interval: float = 10.0,
        timeout: Optional[Timeout] = None,
        error_delay: float = PollingBroadcaster.ERROR_DELAY
    ):
        super().__init__(registry, client, shutdown, error_delay)
        self._token_cache = token_cache
        self.currency = currency
        self.interval = interval
        self._timeout = timeout
        # Serializes scheduled and out-of-band publishes
        self._publish_lock = threading.Lock()

    def run_once(self):
        self.publish()
        self._wait(self.interval)

    def publish(self) -> OpenOrdersUpdate:
        """
        Fetch the open order list and broadcast it, or the error.

        Safe to call from any thread; the dispatcher calls it right after
        order-mutating commands.
        """
        with self._publish_lock:
            token = None
            try:
                token = self._token_cache.get_token()
                body = self._client.get_open_orders_by_currency(
                    self.currency, token, timeout=self._timeout
                ).result_or_raise()
                update = OpenOrdersUpdate(data=body)
            except (UpstreamError, AuthError) as e:
                logger.warning(f"Open orders fetch failed: {e}")
                _invalidate_on_unauthorized(self._token_cache, token, e)
                update = OpenOrdersUpdate(error=str(e))

            self._registry.broadcast(update.to_json())
            return update


def _invalidate_on_unauthorized(token_cache: TokenCache, token: Optional[str], error: Exception):
    if token and isinstance(error, UpstreamRejectedError) and error.status_code == 401:
        token_cache.invalidate(token)


def start_all(loops: List[PollingBroadcaster]):
    for loop in loops:
        loop.start()


def join_all(loops: List[PollingBroadcaster], timeout: Optional[float] = None) -> bool:
    """Join every loop. Returns True if all of them exited."""
    return all([loop.join(timeout) for loop in loops])
