"""Network and storage adapters for the engine's ports."""

from parley.adapters.http import EchoTransport, HTTPTransport
from parley.adapters.sqlite import SQLiteHistoryStore, SQLitePersistence, connect_db
from parley.adapters.xmpp import XMPPAgentProvider, xmpp_provider_factory

__all__ = [
    "EchoTransport",
    "HTTPTransport",
    "SQLiteHistoryStore",
    "SQLitePersistence",
    "XMPPAgentProvider",
    "connect_db",
    "xmpp_provider_factory",
]
