"""Best-effort pushes to client WebSocket connections.

Pipeline handlers run in worker threads while every socket belongs to the
event loop that accepted it, so delivery is scheduled onto that loop and
waited on with a timeout. A push never raises: the transaction store is the
source of truth and a lost message is reported as ``False``.
"""

import asyncio
import concurrent.futures
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from .schemas import StatusMessage, TransactionStatus

logger = logging.getLogger("invoice_import.notifier")


class Notifier(ABC):
    @abstractmethod
    def send(self, connection_id: str, payload: str) -> bool:
        ...

    @abstractmethod
    def disconnect(self, connection_id: str) -> bool:
        ...

    def send_status(self, token: str, connection_id: str, status: TransactionStatus) -> bool:
        message = StatusMessage(transaction_id=token, status=status)
        return self.send(connection_id, message.model_dump_json(by_alias=True))


@dataclass
class Connection:
    websocket: WebSocket
    loop: asyncio.AbstractEventLoop


class ConnectionRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}

    def register(self, connection_id: str, websocket: WebSocket, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._connections[connection_id] = Connection(websocket=websocket, loop=loop)

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def discard(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.pop(connection_id, None)

    def __contains__(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


def _is_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


class WebSocketNotifier(Notifier):
    def __init__(self, registry: ConnectionRegistry, timeout_seconds: float = 2.0) -> None:
        self._registry = registry
        self._timeout_seconds = timeout_seconds

    def _live_connection(self, connection_id: str) -> Optional[Connection]:
        connection = self._registry.get(connection_id)
        if connection is None:
            logger.warning("Connection %s is not registered", connection_id)
            return None
        if not _is_open(connection.websocket) or connection.loop.is_closed():
            logger.warning("Connection %s is gone; dropping registration", connection_id)
            self._registry.discard(connection_id)
            return None
        return connection

    def _run(self, connection: Connection, coro: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is connection.loop:
            coro.close()
            raise RuntimeError("Notifier must not be called from the connection's event loop thread")
        future = asyncio.run_coroutine_threadsafe(coro, connection.loop)
        try:
            future.result(timeout=self._timeout_seconds)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def send(self, connection_id: str, payload: str) -> bool:
        connection = self._live_connection(connection_id)
        if connection is None:
            return False
        try:
            self._run(connection, connection.websocket.send_text(payload))
            return True
        except Exception as exc:
            logger.warning("Error sending to connection %s: %s", connection_id, exc)
            self._registry.discard(connection_id)
            return False

    def disconnect(self, connection_id: str) -> bool:
        connection = self._live_connection(connection_id)
        if connection is None:
            return False
        self._registry.discard(connection_id)
        try:
            self._run(connection, connection.websocket.close(code=1000))
            logger.info("Disconnected connection %s", connection_id)
            return True
        except Exception as exc:
            logger.warning("Error disconnecting connection %s: %s", connection_id, exc)
            return False


class InMemoryNotifier(Notifier):
    """Records pushes instead of delivering them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.connections: Set[str] = set()
        self.messages: List[Tuple[str, str]] = []
        self.disconnected: List[str] = []

    def connect(self, connection_id: str) -> None:
        with self._lock:
            self.connections.add(connection_id)

    def send(self, connection_id: str, payload: str) -> bool:
        with self._lock:
            if connection_id not in self.connections:
                return False
            self.messages.append((connection_id, payload))
            return True

    def disconnect(self, connection_id: str) -> bool:
        with self._lock:
            if connection_id not in self.connections:
                return False
            self.connections.discard(connection_id)
            self.disconnected.append(connection_id)
            return True
