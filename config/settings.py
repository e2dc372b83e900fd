"""
Global Settings
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

DERIBIT_BASE_URL = os.environ.get("DERIBIT_BASE_URL", "https://test.deribit.com")
CREDENTIALS_PATH = os.environ.get("DERIBIT_CREDENTIALS_PATH", "config/credentials.json")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_DIR = os.environ.get("LOG_DIR", "logs")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


@dataclass
class Timeouts:
    """(connect, read) timeouts in seconds for one class of upstream call"""
    connect: float
    read: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.connect, self.read)


@dataclass
class GatewaySettings:
    """Gateway configuration"""
    # Upstream venue
    base_url: str = DERIBIT_BASE_URL
    client_id: str = ""
    client_secret: str = ""

    # Listening socket
    host: str = "127.0.0.1"
    port: int = 9002

    # Order book loop
    orderbook_interval: float = 0.025  # 25ms
    orderbook_depth: int = 20
    instruments_currency: str = "BTC"
    instruments_kind: str = "future"

    # Positions loop
    position_currencies: List[str] = field(default_factory=lambda: ["BTC", "ETH"])
    position_kinds: List[str] = field(default_factory=lambda: ["future", "option"])
    positions_pair_delay: float = 0.1
    positions_pass_delay: float = 1.0

    # Open orders loop
    open_orders_currency: str = "BTC"
    open_orders_interval: float = 10.0

    # Loop error backoff
    loop_error_delay: float = 0.1

    # Upstream timeouts
    market_data_timeout: Timeouts = field(default_factory=lambda: Timeouts(2.0, 1.0))
    private_timeout: Timeouts = field(default_factory=lambda: Timeouts(5.0, 5.0))
    order_timeout: Timeouts = field(default_factory=lambda: Timeouts(20.0, 20.0))
    auth_timeout: Timeouts = field(default_factory=lambda: Timeouts(5.0, 5.0))

    # Token cache
    token_validity: float = 15 * 60  # seconds

    # Per-connection outbound queue
    send_queue_size: int = 1000

    # Logging
    log_level: str = LOG_LEVEL
    log_dir: str = LOG_DIR


def load_settings(credentials: Optional[dict] = None) -> GatewaySettings:
    """
    Build settings from environment variables.

    Args:
        credentials: Optional dict with client_id/client_secret (e.g. from
            CredentialManager). Environment variables take precedence.
    """
    credentials = credentials or {}
    return GatewaySettings(
        base_url=DERIBIT_BASE_URL,
        client_id=os.environ.get("DERIBIT_CLIENT_ID", credentials.get("client_id", "")),
        client_secret=os.environ.get("DERIBIT_CLIENT_SECRET", credentials.get("client_secret", "")),
        host=os.environ.get("GATEWAY_HOST", "127.0.0.1"),
        port=_env_int("GATEWAY_PORT", 9002),
        orderbook_interval=_env_float("ORDERBOOK_INTERVAL", 0.025),
        orderbook_depth=_env_int("ORDERBOOK_DEPTH", 20),
        open_orders_interval=_env_float("OPEN_ORDERS_INTERVAL", 10.0),
        send_queue_size=_env_int("SEND_QUEUE_SIZE", 1000),
    )
