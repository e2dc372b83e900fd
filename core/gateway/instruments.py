import threading
import logging
from typing import Iterable, Iterator, List, Optional, Tuple

from core.api.deribit_client import DeribitClient, Timeout

logger = logging.getLogger(__name__)


class InstrumentSet:
    """Instruments polled by the order book loop. Replaced whole on refresh."""

    def __init__(self, names: Iterable[str] = ()):
        self._names: Tuple[str, ...] = tuple(names)
        self._lock = threading.Lock()

    @property
    def names(self) -> Tuple[str, ...]:
        return self._names

    def replace(self, names: Iterable[str]):
        with self._lock:
            self._names = tuple(names)

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)


def fetch_instrument_names(
    client: DeribitClient,
    currency: str,
    kind: str,
    timeout: Optional[Timeout] = None
) -> List[str]:
    """
    Instrument names for a currency/kind, in venue order.

    Raises:
        UpstreamError: transport failure, rejection or unparseable body
    """
    body = client.get_instruments(currency, kind, timeout=timeout).result_or_raise()
    return [
        item["instrument_name"]
        for item in body.get("result") or []
        if isinstance(item, dict) and "instrument_name" in item
    ]
