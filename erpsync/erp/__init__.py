from erpsync.erp.errors import (
    AuthExpiredError,
    ErpClientError,
    MalformedResponseError,
    RemoteRejectedError,
    TransportError,
)
from erpsync.erp.memory import InMemoryErpClient, RecordingHandler, make_items
from erpsync.erp.protocols import EntityHandler, ErpClient, ErpItem, ErpPage, HandlerRegistry, ItemOutcome

__all__ = [
    "AuthExpiredError",
    "EntityHandler",
    "ErpClient",
    "ErpClientError",
    "ErpItem",
    "ErpPage",
    "HandlerRegistry",
    "InMemoryErpClient",
    "ItemOutcome",
    "MalformedResponseError",
    "RecordingHandler",
    "RemoteRejectedError",
    "TransportError",
    "make_items",
]
