"""
Client channel protocol.

Every message in both directions is a JSON object carrying a `type`
discriminant, so clients can demultiplex pushes and replies without
correlation ids. The one exception is the plain-text INTERNAL_ERROR reply.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

INTERNAL_ERROR = "Internal server error"


class MessageType(str, Enum):
    # Inbound
    ECHO = "echo"
    GET_INSTRUMENTS = "get_instruments"
    PLACE_ORDER = "place_order"
    MODIFY_ORDER = "modify_order"
    CANCEL_ORDER = "cancel_order"

    # Outbound push
    ORDERBOOK_UPDATE = "orderbook_update"
    POSITIONS_UPDATE = "positions_update"
    OPEN_ORDERS_UPDATE = "open_orders_update"

    # Outbound replies
    INSTRUMENTS = "instruments"
    ORDER_RESPONSE = "order_response"
    MODIFY_RESPONSE = "modify_response"
    CANCEL_RESPONSE = "cancel_response"
    ERROR = "error"


class Envelope(BaseModel):
    """Outbound push message"""
    type: MessageType

    def to_json(self) -> str:
        payload = {k: v for k, v in self.model_dump().items() if v is not None}
        payload["type"] = self.type.value
        return json.dumps(payload)


class OrderBookUpdate(Envelope):
    type: MessageType = MessageType.ORDERBOOK_UPDATE
    instrument: str
    timestamp: int  # epoch ns, shared by every instrument in one cycle
    data: Any


class PositionsUpdate(Envelope):
    type: MessageType = MessageType.POSITIONS_UPDATE
    currency: str
    kind: str
    data: Optional[Any] = None
    error: Optional[str] = None


class OpenOrdersUpdate(Envelope):
    type: MessageType = MessageType.OPEN_ORDERS_UPDATE
    data: Optional[Any] = None
    error: Optional[str] = None


def retag(body: Dict[str, Any], message_type: MessageType) -> str:
    """Upstream body re-tagged for the client"""
    tagged = dict(body)
    tagged["type"] = message_type.value
    return json.dumps(tagged)


def error_reply(message_type: MessageType, error: str) -> str:
    return json.dumps({"type": message_type.value, "error": error})
