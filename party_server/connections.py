from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Protocol, Tuple

from party_shared.protocol import Action, encode_message

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT = 30.0  # seconds


class Writer(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...


@dataclass(slots=True)
class Connection:
    connection_id: str
    writer: Writer
    client_name: Optional[str] = None
    last_seen: float = field(default_factory=lambda: time.monotonic())
    connected_at: float = field(default_factory=lambda: time.time())
    peer_ip: Optional[str] = None
    peer_port: Optional[int] = None
    bytes_sent: int = 0
    bytes_received: int = 0

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def send(self, action: Action, data: Dict[str, object]) -> None:
        payload = encode_message(action, data)
        self.bytes_sent += len(payload)
        self.writer.write(payload)


class ConnectionHub:
    """Live transport connections keyed by their server-issued identifier.

    Sends are fire-and-forget: frames are queued on each writer in emission
    order and a failing writer is logged, never raised to the caller.
    """

    def __init__(self, *, heartbeat_timeout: float = HEARTBEAT_TIMEOUT) -> None:
        self._connections: Dict[str, Connection] = {}
        self._heartbeat_timeout = heartbeat_timeout

    @property
    def heartbeat_timeout(self) -> float:
        return self._heartbeat_timeout

    def register(
        self,
        writer: Writer,
        *,
        client_name: Optional[str] = None,
        peername: Optional[Tuple[object, ...]] = None,
    ) -> Connection:
        connection = Connection(connection_id=uuid.uuid4().hex, writer=writer, client_name=client_name)
        if peername:
            connection.peer_ip = str(peername[0])
            if len(peername) > 1:
                try:
                    connection.peer_port = int(peername[1])  # type: ignore[call-overload]
                except (TypeError, ValueError):
                    connection.peer_port = None
        self._connections[connection.connection_id] = connection
        logger.info("Registered connection %s (%s)", connection.connection_id, client_name or "anonymous")
        return connection

    def unregister(self, connection_id: str) -> bool:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        try:
            connection.writer.close()
        except Exception:  # pragma: no cover - cleanup best effort
            logger.exception("Error while closing writer for %s", connection_id)
        logger.info("Unregistered connection %s", connection_id)
        return True

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)

    def send_to(self, connection_id: str, action: Action, data: Dict[str, object]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        try:
            connection.send(action, data)
        except Exception:
            logger.exception("Failed to send %s to %s", action.value, connection_id)
            return False
        return True

    def broadcast(self, connection_ids: Iterable[str], action: Action, data: Dict[str, object]) -> int:
        delivered = 0
        for connection_id in connection_ids:
            if self.send_to(connection_id, action, data):
                delivered += 1
        return delivered

    def record_received(self, connection_id: str, num_bytes: int) -> None:
        if num_bytes <= 0:
            return
        connection = self._connections.get(connection_id)
        if connection:
            connection.bytes_received += num_bytes
            connection.touch()

    def mark_heartbeat(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection:
            elapsed = time.monotonic() - connection.last_seen
            connection.touch()
            logger.debug("Heartbeat received from %s (%.2fs since last)", connection_id, elapsed)

    def stale_connections(self, *, now: Optional[float] = None) -> list[str]:
        current = now if now is not None else time.monotonic()
        limit = self._heartbeat_timeout * 2
        return [cid for cid, conn in self._connections.items() if current - conn.last_seen > limit]

    async def heartbeat_watcher(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_timeout)
            for connection_id in self.stale_connections():
                connection = self._connections.get(connection_id)
                if connection is None:
                    continue
                logger.warning("Connection %s timed out", connection_id)
                # closing the writer ends the read loop, which runs the normal disconnect path
                try:
                    connection.writer.close()
                except Exception:
                    logger.exception("Error while closing stale connection %s", connection_id)

    async def close_all(self) -> None:
        connections = list(self._connections.values())
        self._connections.clear()
        waiters = []
        for connection in connections:
            try:
                connection.writer.close()
                wait_closed = getattr(connection.writer, "wait_closed", None)
                if wait_closed is not None:
                    waiters.append(wait_closed())
            except Exception:
                logger.exception("Error while closing writer for %s during shutdown", connection.connection_id)
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)

    def snapshot(self) -> list[dict[str, object]]:
        now_monotonic = time.monotonic()
        return [
            {
                "connection_id": conn.connection_id,
                "client_name": conn.client_name,
                "last_seen_seconds": max(0.0, now_monotonic - conn.last_seen),
                "connected_at": conn.connected_at,
                "peer_ip": conn.peer_ip,
                "peer_port": conn.peer_port,
                "bytes_sent": conn.bytes_sent,
                "bytes_received": conn.bytes_received,
            }
            for conn in self._connections.values()
        ]
