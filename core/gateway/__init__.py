# core/gateway/__init__.py
"""
Trading Gateway Core
====================

Bridges many websocket clients to the venue's synchronous REST API.

Components:
- ConnectionRegistry: thread-safe set of live client connections with broadcast
- TokenCache: shared access token, one in-flight refresh at a time
- OrderBookBroadcaster / PositionsBroadcaster / OpenOrdersBroadcaster:
  background polling loops that push updates to every client
- CommandDispatcher: validates and executes client trading commands
- GatewayService: builds and runs all of the above

Architecture:

    [client] ──▶ CommandDispatcher ──▶ DeribitClient ──▶ [client]

    Polling loops ──▶ DeribitClient ──▶ ConnectionRegistry ──▶ [all clients]
"""

from .connection_registry import ConnectionRegistry
from .token_cache import AuthError, TokenCache
from .broadcasters import OpenOrdersBroadcaster, OrderBookBroadcaster, PositionsBroadcaster
from .dispatcher import CommandDispatcher
from .service import GatewayService

__all__ = [
    'AuthError',
    'CommandDispatcher',
    'ConnectionRegistry',
    'GatewayService',
    'OpenOrdersBroadcaster',
    'OrderBookBroadcaster',
    'PositionsBroadcaster',
    'TokenCache'
]
