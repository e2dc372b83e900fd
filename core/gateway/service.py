import threading
import logging
from typing import Dict, List, Optional, Any

from config.settings import CREDENTIALS_PATH, GatewaySettings, load_settings
from core.api.deribit_client import DeribitClient, UpstreamError
from core.auth.credentials import CredentialManager
from core.gateway.broadcasters import (
    OpenOrdersBroadcaster,
    OrderBookBroadcaster,
    PollingBroadcaster,
    PositionsBroadcaster,
    join_all,
    start_all,
)
from core.gateway.connection_registry import ConnectionRegistry
from core.gateway.dispatcher import CommandDispatcher
from core.gateway.instruments import InstrumentSet, fetch_instrument_names
from core.gateway.token_cache import TokenCache

logger = logging.getLogger(__name__)


class GatewayService:
    """
    Owns and wires every gateway component.

    Shared state (connection set, token, instrument list) lives in explicit
    objects passed to the components that need them. One upstream client is
    shared; it keeps a separate HTTP session per thread.

    Usage:
        service = GatewayService(load_settings())
        service.start()
        ...
        service.stop()
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        client: Optional[DeribitClient] = None,
        registry: Optional[ConnectionRegistry] = None,
        token_cache: Optional[TokenCache] = None
    ):
        if settings is None:
            credentials = CredentialManager(CREDENTIALS_PATH).get_all()
            settings = load_settings(credentials)
        self.settings = settings

        self.client = client or DeribitClient(
            settings.base_url, timeout=settings.private_timeout.as_tuple()
        )
        self.registry = registry or ConnectionRegistry()
        self.token_cache = token_cache or TokenCache(
            self.client,
            settings.client_id,
            settings.client_secret,
            validity=settings.token_validity,
            timeout=settings.auth_timeout.as_tuple()
        )
        self.instruments = InstrumentSet()
        self.shutdown_event = threading.Event()

        self.orderbook = OrderBookBroadcaster(
            self.registry,
            self.client,
            self.instruments,
            self.shutdown_event,
            interval=settings.orderbook_interval,
            depth=settings.orderbook_depth,
            timeout=settings.market_data_timeout.as_tuple(),
            error_delay=settings.loop_error_delay
        )
        self.positions = PositionsBroadcaster(
            self.registry,
            self.client,
            self.token_cache,
            self.shutdown_event,
            currencies=settings.position_currencies,
            kinds=settings.position_kinds,
            pair_delay=settings.positions_pair_delay,
            pass_delay=settings.positions_pass_delay,
            timeout=settings.market_data_timeout.as_tuple(),
            error_delay=settings.loop_error_delay
        )
        self.open_orders = OpenOrdersBroadcaster(
            self.registry,
            self.client,
            self.token_cache,
            self.shutdown_event,
            currency=settings.open_orders_currency,
            interval=settings.open_orders_interval,
            timeout=settings.private_timeout.as_tuple(),
            error_delay=settings.loop_error_delay
        )
        self.dispatcher = CommandDispatcher(
            self.client,
            self.token_cache,
            on_orders_changed=self.open_orders.publish,
            order_timeout=settings.order_timeout.as_tuple(),
            request_timeout=settings.private_timeout.as_tuple()
        )

        self._lock = threading.Lock()
        self._started = False

    @property
    def loops(self) -> List[PollingBroadcaster]:
        return [self.orderbook, self.positions, self.open_orders]

    @property
    def is_running(self) -> bool:
        return self._started and not self.shutdown_event.is_set()

    def start(self):
        """Bootstrap the instrument list and start the polling loops"""
        with self._lock:
            if self._started:
                logger.warning("Gateway already started")
                return
            self._started = True

        logger.info("Starting gateway service...")
        self.refresh_instruments()
        start_all(self.loops)
        logger.info("Gateway service started")

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Signal shutdown and join the loop threads.

        In-flight upstream calls are not cancelled; each loop exits after
        its current step.

        Returns:
            True if every loop exited within the timeout
        """
        logger.info("Stopping gateway service...")
        self.shutdown_event.set()
        stopped = join_all(self.loops, timeout)
        if not stopped:
            logger.warning("Some polling loops did not stop in time")
        self.client.close()
        logger.info("Gateway service stopped")
        return stopped

    def refresh_instruments(self) -> int:
        """
        Reload the order book instrument list from the venue.

        On failure the current list is kept.

        Returns:
            Number of instruments now polled
        """
        try:
            names = fetch_instrument_names(
                self.client,
                self.settings.instruments_currency,
                self.settings.instruments_kind,
                timeout=self.settings.private_timeout.as_tuple()
            )
        except UpstreamError as e:
            logger.error(f"Failed to fetch instruments: {e}")
            return len(self.instruments)

        self.instruments.replace(names)
        logger.info(
            f"Loaded {len(names)} {self.settings.instruments_currency} "
            f"{self.settings.instruments_kind} instruments"
        )
        return len(names)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "connections": len(self.registry),
            "instruments": len(self.instruments),
            "token_cached": self.token_cache.has_valid_token,
            "loops": {loop.name: loop.is_alive for loop in self.loops},
        }
