import json
import threading
from unittest.mock import MagicMock

import pytest

from core.api.deribit_client import UpstreamResponse, UpstreamTransportError
from core.gateway.broadcasters import OpenOrdersBroadcaster
from core.gateway.connection_registry import ConnectionRegistry
from core.gateway.dispatcher import CommandDispatcher
from core.gateway.protocol import INTERNAL_ERROR
from core.gateway.token_cache import TokenCache
from conftest import RecordingConnection, ok_response

ORDER_CALLS = ("buy", "sell", "edit", "cancel")


@pytest.fixture
def on_orders_changed():
    return MagicMock()


@pytest.fixture
def dispatcher(stub_client, manual_clock, on_orders_changed):
    token_cache = TokenCache(stub_client, "id", "secret", clock=manual_clock)
    return CommandDispatcher(stub_client, token_cache, on_orders_changed=on_orders_changed)


def send(dispatcher, connection, message):
    raw = message if isinstance(message, str) else json.dumps(message)
    return dispatcher.handle(connection, raw)


def upstream_order_calls(stub_client):
    return sum(stub_client.count(name) for name in ORDER_CALLS)


def test_echo_returns_identical_bytes(dispatcher, connection):
    raw = '{"type":"echo","data":"hello"}'
    reply = send(dispatcher, connection, raw)
    assert reply == raw
    assert connection.sent == [raw]


def test_unparseable_message_gets_plain_text_error(dispatcher, connection, on_orders_changed):
    reply = send(dispatcher, connection, "{not json")
    assert reply == INTERNAL_ERROR
    assert connection.sent == [INTERNAL_ERROR]
    on_orders_changed.assert_not_called()


def test_message_without_type_gets_plain_text_error(dispatcher, connection):
    assert send(dispatcher, connection, {"data": {}}) == INTERNAL_ERROR
    assert send(dispatcher, connection, "[1, 2]") == INTERNAL_ERROR


def test_unknown_type_gets_error_envelope(dispatcher, connection):
    reply = json.loads(send(dispatcher, connection, {"type": "subscribe"}))
    assert reply == {"type": "error", "error": "Unknown message type: subscribe"}


def test_limit_order_without_price_never_reaches_upstream(dispatcher, connection, stub_client, on_orders_changed):
    reply = json.loads(send(dispatcher, connection, {
        "type": "place_order",
        "data": {"instrument_name": "BTC-PERPETUAL", "amount": 10, "type": "limit", "direction": "buy"}
    }))

    assert reply["type"] == "order_response"
    assert "price" in reply["error"].lower()
    assert upstream_order_calls(stub_client) == 0
    assert stub_client.count("authenticate") == 0
    on_orders_changed.assert_not_called()


def test_missing_instrument_name_is_named_in_reply(dispatcher, connection, stub_client):
    reply = json.loads(send(dispatcher, connection, {
        "type": "place_order",
        "data": {"amount": 10, "type": "market", "direction": "sell"}
    }))

    assert reply == {"type": "order_response", "error": "Missing required field: instrument_name"}
    assert upstream_order_calls(stub_client) == 0


def test_place_order_without_data(dispatcher, connection, stub_client):
    reply = json.loads(send(dispatcher, connection, {"type": "place_order"}))
    assert reply["type"] == "order_response"
    assert "'data' field missing" in reply["error"]
    assert upstream_order_calls(stub_client) == 0


def test_place_limit_buy_forwards_and_retags(dispatcher, connection, stub_client, on_orders_changed):
    reply = json.loads(send(dispatcher, connection, {
        "type": "place_order",
        "data": {
            "instrument_name": "BTC-PERPETUAL",
            "amount": 10,
            "type": "limit",
            "direction": "buy",
            "price": 50000,
            "post_only": True
        }
    }))

    assert reply["type"] == "order_response"
    assert reply["result"]["order"]["order_id"] == "ord-1"

    (_, (params, token), _), = stub_client.calls_to("buy")
    assert params == {
        "instrument_name": "BTC-PERPETUAL",
        "amount": 10,
        "type": "limit",
        "label": "ui_order",
        "price": 50000,
        "post_only": True
    }
    assert token == "token-1"
    assert stub_client.count("sell") == 0
    on_orders_changed.assert_called_once()


def test_sell_direction_uses_sell_endpoint(dispatcher, connection, stub_client):
    send(dispatcher, connection, {
        "type": "place_order",
        "data": {"instrument_name": "BTC-PERPETUAL", "amount": 10, "type": "market", "direction": "sell"}
    })
    assert stub_client.count("sell") == 1
    assert stub_client.count("buy") == 0


def test_place_order_upstream_rejection_carries_body(dispatcher, connection, stub_client):
    stub_client.responses["buy"] = UpstreamResponse(400, '{"error":{"message":"not_enough_funds"}}')

    reply = json.loads(send(dispatcher, connection, {
        "type": "place_order",
        "data": {"instrument_name": "BTC-PERPETUAL", "amount": 10, "type": "market", "direction": "buy"}
    }))

    assert reply["type"] == "order_response"
    assert reply["error"].startswith("Failed to process order: ")
    assert "not_enough_funds" in reply["error"]


def test_place_order_transport_failure(dispatcher, connection, stub_client, transport_error):
    stub_client.responses["buy"] = transport_error

    reply = json.loads(send(dispatcher, connection, {
        "type": "place_order",
        "data": {"instrument_name": "BTC-PERPETUAL", "amount": 10, "type": "market", "direction": "buy"}
    }))

    assert reply == {"type": "order_response", "error": "No response from Deribit API"}


def test_auth_failure_is_reported_in_reply(dispatcher, connection, stub_client, transport_error, on_orders_changed):
    stub_client.responses["authenticate"] = transport_error

    reply = json.loads(send(dispatcher, connection, {"type": "cancel_order", "data": {"order_id": "ord-1"}}))

    assert reply["type"] == "cancel_response"
    assert "access token" in reply["error"]
    assert stub_client.count("cancel") == 0
    on_orders_changed.assert_not_called()


def test_modify_order_forwards_optional_fields(dispatcher, connection, stub_client, on_orders_changed):
    reply = json.loads(send(dispatcher, connection, {
        "type": "modify_order",
        "data": {"order_id": "ord-1", "amount": 20, "price": 51000, "reduce_only": False}
    }))

    assert reply["type"] == "modify_response"
    (_, (params, _token), _), = stub_client.calls_to("edit")
    assert params == {"order_id": "ord-1", "amount": 20, "price": 51000, "reduce_only": False}
    on_orders_changed.assert_called_once()


def test_modify_order_missing_amount(dispatcher, connection, stub_client):
    reply = json.loads(send(dispatcher, connection, {"type": "modify_order", "data": {"order_id": "ord-1"}}))
    assert reply == {"type": "modify_response", "error": "Missing required field: amount"}
    assert stub_client.count("edit") == 0


def test_cancel_rejection_still_triggers_open_orders(dispatcher, connection, stub_client, on_orders_changed):
    stub_client.responses["cancel"] = UpstreamResponse(400, '{"error":{"message":"order_not_found"}}')

    reply = json.loads(send(dispatcher, connection, {"type": "cancel_order", "data": {"order_id": "nope"}}))

    assert reply == {"type": "cancel_response", "error": "HTTP Error: 400"}
    on_orders_changed.assert_called_once()


def test_cancel_transport_failure(dispatcher, connection, stub_client, transport_error):
    stub_client.responses["cancel"] = transport_error
    reply = json.loads(send(dispatcher, connection, {"type": "cancel_order", "data": {"order_id": "ord-1"}}))
    assert reply == {"type": "cancel_response", "error": "Failed to send request"}


def test_unauthorized_response_invalidates_token(dispatcher, connection, stub_client):
    stub_client.responses["cancel"] = UpstreamResponse(401, '{"error":{"message":"invalid_token"}}')
    send(dispatcher, connection, {"type": "cancel_order", "data": {"order_id": "ord-1"}})

    stub_client.responses["cancel"] = ok_response({"result": {}})
    send(dispatcher, connection, {"type": "cancel_order", "data": {"order_id": "ord-1"}})

    assert stub_client.count("authenticate") == 2


def test_get_instruments_proxies_and_retags(dispatcher, connection, stub_client):
    reply = json.loads(send(dispatcher, connection, {"type": "get_instruments", "currency": "ETH", "kind": "option"}))

    assert reply["type"] == "instruments"
    assert [i["instrument_name"] for i in reply["result"]] == ["BTC-PERPETUAL", "BTC-27DEC24"]
    (_, args, _), = stub_client.calls_to("get_instruments")
    assert args == ("ETH", "option")


def test_get_instruments_failure(dispatcher, connection, stub_client):
    stub_client.responses["get_instruments"] = UpstreamResponse(503, "unavailable")
    reply = json.loads(send(dispatcher, connection, {"type": "get_instruments", "currency": "BTC", "kind": "future"}))
    assert reply == {"type": "instruments", "error": "Failed to fetch instruments"}

    reply = json.loads(send(dispatcher, connection, {"type": "get_instruments", "currency": "BTC"}))
    assert reply == {"type": "instruments", "error": "Missing required field: kind"}


def test_unexpected_exception_becomes_internal_error(dispatcher, connection, stub_client):
    stub_client.responses["edit"] = lambda *args: 1 / 0
    reply = send(dispatcher, connection, {"type": "modify_order", "data": {"order_id": "o", "amount": 1}})
    assert reply == INTERNAL_ERROR


def test_cancel_publishes_open_orders_before_returning(stub_client, manual_clock):
    registry = ConnectionRegistry()
    watcher = RecordingConnection("watcher")
    registry.register(watcher)
    token_cache = TokenCache(stub_client, "id", "secret", clock=manual_clock)
    # Scheduled tick is an hour away; only the out-of-band publish can deliver
    open_orders = OpenOrdersBroadcaster(
        registry, stub_client, token_cache, threading.Event(), interval=3600
    )
    dispatcher = CommandDispatcher(stub_client, token_cache, on_orders_changed=open_orders.publish)
    requester = RecordingConnection("requester")

    send(dispatcher, requester, {"type": "cancel_order", "data": {"order_id": "ord-1"}})

    assert json.loads(requester.sent[0])["type"] == "cancel_response"
    updates = watcher.of_type("open_orders_update")
    assert len(updates) == 1
    assert updates[0]["data"]["result"] == []
