"""
Command Dispatcher
==================

Handles one inbound client message: parse, validate, forward to the venue,
reply to the originating connection with a `type`-tagged JSON message.

Validation, auth and upstream failures become an `error` field in the
correctly tagged reply. Only unparseable input or an unexpected exception
produces the plain-text INTERNAL_ERROR reply.
"""

import json
import logging
from typing import Any, Callable, Dict, NamedTuple, Optional

from core.api.deribit_client import (
    DeribitClient,
    Timeout,
    UpstreamParseError,
    UpstreamResponse,
    UpstreamTransportError,
)
from core.gateway.connection_registry import Connection
from core.gateway.protocol import INTERNAL_ERROR, MessageType, error_reply, retag
from core.gateway.token_cache import AuthError, TokenCache
from core.gateway.validation import (
    validate_cancel_order,
    validate_get_instruments,
    validate_modify_order,
    validate_place_order,
)

logger = logging.getLogger(__name__)

ORDER_LABEL = "ui_order"

# Optional fields forwarded to the venue when the client sends them
PLACE_ORDER_OPTIONAL = ("post_only", "reduce_only", "time_in_force")
MODIFY_ORDER_OPTIONAL = ("price", "post_only", "reduce_only")


class DispatchResult(NamedTuple):
    reply: str
    orders_changed: bool = False


class CommandDispatcher:
    """
    Per-message handler for the client channel.

    Usage:
        dispatcher = CommandDispatcher(client, token_cache, open_orders.publish)
        dispatcher.handle(connection, raw_message)
    """

    def __init__(
        self,
        client: DeribitClient,
        token_cache: TokenCache,
        on_orders_changed: Optional[Callable[[], Any]] = None,
        order_timeout: Optional[Timeout] = None,
        request_timeout: Optional[Timeout] = None
    ):
        self._client = client
        self._token_cache = token_cache
        self._on_orders_changed = on_orders_changed
        self._order_timeout = order_timeout
        self._request_timeout = request_timeout

        self._handlers: Dict[str, Callable[[Dict], DispatchResult]] = {
            MessageType.GET_INSTRUMENTS.value: self._get_instruments,
            MessageType.PLACE_ORDER.value: self._place_order,
            MessageType.MODIFY_ORDER.value: self._modify_order,
            MessageType.CANCEL_ORDER.value: self._cancel_order,
        }

    def handle(self, connection: Connection, raw_message: str) -> str:
        """
        Handle one message and send the reply on the connection.

        After any command that reached the venue's order endpoints, the open
        order list is re-published to every client before returning.

        Returns:
            The reply that was sent
        """
        try:
            result = self.dispatch(raw_message)
        except Exception as e:
            logger.error(f"Error handling message: {e}", exc_info=True)
            result = DispatchResult(INTERNAL_ERROR)

        connection.send(result.reply)

        if result.orders_changed and self._on_orders_changed is not None:
            try:
                self._on_orders_changed()
            except Exception as e:
                logger.error(f"Open orders broadcast failed: {e}", exc_info=True)

        return result.reply

    def dispatch(self, raw_message: str) -> DispatchResult:
        try:
            message = json.loads(raw_message)
        except ValueError:
            logger.warning("Received unparseable message")
            return DispatchResult(INTERNAL_ERROR)

        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            logger.warning("Received message without a type")
            return DispatchResult(INTERNAL_ERROR)

        message_type = message["type"]

        # Loopback for latency probes: the exact bytes go back
        if message_type == MessageType.ECHO.value:
            return DispatchResult(raw_message)

        handler = self._handlers.get(message_type)
        if handler is None:
            logger.warning(f"Unknown message type: {message_type}")
            return DispatchResult(
                error_reply(MessageType.ERROR, f"Unknown message type: {message_type}")
            )

        return handler(message)

    # =========================================================================
    # Handlers
    # =========================================================================

    def _get_instruments(self, message: Dict) -> DispatchResult:
        validation = validate_get_instruments(message)
        if not validation.ok:
            return DispatchResult(error_reply(MessageType.INSTRUMENTS, validation.error))

        try:
            response = self._client.get_instruments(
                message["currency"], message["kind"], timeout=self._request_timeout
            )
            body = _json_object(response) if response.ok else None
        except (UpstreamTransportError, UpstreamParseError) as e:
            logger.warning(f"Instrument fetch failed: {e}")
            body = None

        if body is None:
            return DispatchResult(error_reply(MessageType.INSTRUMENTS, "Failed to fetch instruments"))
        return DispatchResult(retag(body, MessageType.INSTRUMENTS))

    def _place_order(self, message: Dict) -> DispatchResult:
        reply_type = MessageType.ORDER_RESPONSE
        validation = validate_place_order(message)
        if not validation.ok:
            return DispatchResult(error_reply(reply_type, validation.error))

        data = message["data"]
        params = {
            "instrument_name": data["instrument_name"],
            "amount": data["amount"],
            "type": data["type"],
            "label": ORDER_LABEL,
        }
        if data.get("price") is not None:
            params["price"] = data["price"]
        for field in PLACE_ORDER_OPTIONAL:
            if field in data:
                params[field] = data[field]

        token = self._token(reply_type)
        if isinstance(token, DispatchResult):
            return token

        send = self._client.buy if data["direction"] == "buy" else self._client.sell
        try:
            response = send(params, token, timeout=self._order_timeout)
        except UpstreamTransportError as e:
            logger.error(f"Order request failed: {e}")
            return DispatchResult(error_reply(reply_type, "No response from Deribit API"), True)

        if not response.ok:
            logger.warning(f"Order rejected (HTTP {response.status_code})")
            self._check_unauthorized(response, token)
            return DispatchResult(
                error_reply(reply_type, f"Failed to process order: {response.text}"), True
            )

        logger.info(f"Order placed: {data['direction']} {data['amount']} {data['instrument_name']}")
        return DispatchResult(self._success_reply(response, reply_type, "Error processing order"), True)

    def _modify_order(self, message: Dict) -> DispatchResult:
        reply_type = MessageType.MODIFY_RESPONSE
        validation = validate_modify_order(message)
        if not validation.ok:
            return DispatchResult(error_reply(reply_type, validation.error))

        data = message["data"]
        params = {"order_id": data["order_id"], "amount": data["amount"]}
        for field in MODIFY_ORDER_OPTIONAL:
            if field in data:
                params[field] = data[field]

        token = self._token(reply_type)
        if isinstance(token, DispatchResult):
            return token

        return self._forward(
            lambda: self._client.edit(params, token, timeout=self._request_timeout),
            reply_type,
            token,
            "Error processing modify order"
        )

    def _cancel_order(self, message: Dict) -> DispatchResult:
        reply_type = MessageType.CANCEL_RESPONSE
        validation = validate_cancel_order(message)
        if not validation.ok:
            return DispatchResult(error_reply(reply_type, validation.error))

        order_id = str(message["data"]["order_id"])

        token = self._token(reply_type)
        if isinstance(token, DispatchResult):
            return token

        return self._forward(
            lambda: self._client.cancel(order_id, token, timeout=self._request_timeout),
            reply_type,
            token,
            "Error processing cancel order"
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _token(self, reply_type: MessageType):
        """Access token, or the error reply to send instead"""
        try:
            return self._token_cache.get_token()
        except AuthError as e:
            logger.error(f"{reply_type.value}: {e}")
            return DispatchResult(error_reply(reply_type, str(e)))

    def _forward(
        self,
        call: Callable[[], UpstreamResponse],
        reply_type: MessageType,
        token: str,
        parse_error_prefix: str
    ) -> DispatchResult:
        try:
            response = call()
        except UpstreamTransportError as e:
            logger.error(f"{reply_type.value} request failed: {e}")
            return DispatchResult(error_reply(reply_type, "Failed to send request"), True)

        if not response.ok:
            logger.warning(f"{reply_type.value} rejected (HTTP {response.status_code})")
            self._check_unauthorized(response, token)
            return DispatchResult(error_reply(reply_type, f"HTTP Error: {response.status_code}"), True)

        return DispatchResult(self._success_reply(response, reply_type, parse_error_prefix), True)

    def _success_reply(self, response: UpstreamResponse, reply_type: MessageType, parse_error_prefix: str) -> str:
        try:
            body = _json_object(response)
        except UpstreamParseError as e:
            return error_reply(reply_type, f"{parse_error_prefix}: {e}")
        if body is None:
            return error_reply(reply_type, f"{parse_error_prefix}: unexpected response from Deribit API")
        return retag(body, reply_type)

    def _check_unauthorized(self, response: UpstreamResponse, token: str):
        if response.status_code == 401:
            self._token_cache.invalidate(token)


def _json_object(response: UpstreamResponse) -> Optional[Dict]:
    body = response.json()
    return body if isinstance(body, dict) else None
