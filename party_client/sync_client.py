from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from party_shared.protocol import Action, ClientIdentity, decode_stream, encode_message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Action, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]

DEFAULT_REQUEST_TIMEOUT = 5.0


class SyncClient:
    """Asyncio client for the watch-party control connection.

    Requests are correlated with their ``ack`` by a client-generated
    ``requestId``; ``host_update`` and ``state_update`` broadcasts are handed
    to ``on_message``. Without an explicit ``heartbeat_interval`` the client
    heartbeats at the interval the server advertises in ``welcome``.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        client_name: Optional[str] = None,
        on_message: Optional[MessageCallback] = None,
        on_disconnect: Optional[DisconnectCallback] = None,
        heartbeat_interval: Optional[float] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._client_name = client_name
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._heartbeat_interval = heartbeat_interval
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._connected = asyncio.Event()
        self._pending: Dict[int, asyncio.Future[dict]] = {}
        self._request_ids = itertools.count(1)
        self._tasks: list[asyncio.Task[None]] = []
        self._stop = False
        self.connection_id: Optional[str] = None
        self._server_heartbeat_interval: Optional[float] = None

    async def connect(self) -> str:
        logger.info("Connecting to server %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        hello = encode_message(Action.HELLO, ClientIdentity(client_name=self._client_name).to_dict())
        await self._send_raw(hello)
        self._tasks.append(asyncio.create_task(self._send_loop()))
        self._tasks.append(asyncio.create_task(self._recv_loop()))
        await self._connected.wait()
        if self._stop or self.connection_id is None:
            raise ConnectionError("Connection closed before handshake completed")
        interval = self._heartbeat_interval or self._server_heartbeat_interval
        if interval:
            self._tasks.append(asyncio.create_task(self._heartbeat_loop(interval)))
        return self.connection_id

    async def close(self) -> None:
        if self._stop and self._writer is None:
            return
        self._stop = True
        self._send_event.set()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                pass
        self._reader = None
        self._writer = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError("connection closed"))
        self._pending.clear()

    async def request(self, action: Action, payload: Optional[Dict[str, Any]] = None, *, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> dict:
        """Send a request and wait for its acknowledgement payload."""
        request_id = next(self._request_ids)
        future: asyncio.Future[dict] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        data = dict(payload or {})
        data["requestId"] = request_id
        self.send(action, data)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request_id, None)

    def send(self, action: Action, payload: Dict[str, Any]) -> None:
        self._send_queue.append(encode_message(action, payload))
        self._send_event.set()

    async def create_room(self) -> dict:
        return await self.request(Action.CREATE_ROOM)

    async def join_room(self, room_id: str, *, host_secret: Optional[str] = None) -> dict:
        payload: Dict[str, Any] = {"roomId": room_id}
        if host_secret:
            payload["hostSecret"] = host_secret
        return await self.request(Action.JOIN_ROOM, payload)

    async def claim_host(self, room_id: str, host_secret: str) -> dict:
        return await self.request(Action.CLAIM_HOST, {"roomId": room_id, "hostSecret": host_secret})

    async def set_video(self, room_id: str, provider: str, url: str) -> dict:
        return await self.request(Action.SET_VIDEO, {"roomId": room_id, "provider": provider, "url": url})

    async def control(self, room_id: str, action: str, time: Optional[float] = None) -> dict:
        payload: Dict[str, Any] = {"roomId": room_id, "action": action}
        if time is not None:
            payload["time"] = time
        return await self.request(Action.CONTROL, payload)

    async def request_state(self, room_id: str) -> dict:
        return await self.request(Action.REQUEST_STATE, {"roomId": room_id})

    def leave_room(self, room_id: str) -> None:
        self.send(Action.LEAVE_ROOM, {"roomId": room_id})

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise RuntimeError("Client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop:
                data = self._send_queue.popleft()
                try:
                    await self._send_raw(data)
                except Exception:
                    logger.exception("Failed to send control message")
                    self._stop = True
                    break

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Server closed control connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    self._route(Action(message["action"]), message["data"])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while receiving from control server")
            disconnect_reason = "recv_error"
        finally:
            if not self._connected.is_set():
                self._stop = True
                self._connected.set()
        await self.close()
        await self._notify_disconnect(disconnect_reason or "connection_closed")

    def _route(self, action: Action, payload: dict) -> None:
        if action == Action.WELCOME:
            self.connection_id = payload.get("connectionId")
            advertised = payload.get("heartbeatInterval")
            if isinstance(advertised, (int, float)) and not isinstance(advertised, bool) and advertised > 0:
                self._server_heartbeat_interval = float(advertised)
            self._connected.set()
            return
        if action == Action.ACK:
            future = self._pending.get(payload.get("requestId"))  # type: ignore[arg-type]
            if future is not None and not future.done():
                future.set_result({key: value for key, value in payload.items() if key != "requestId"})
            return
        if self._on_message is not None:
            asyncio.create_task(self._dispatch(action, payload))

    async def _dispatch(self, action: Action, payload: dict) -> None:
        try:
            result = self._on_message(action, payload)  # type: ignore[misc]
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling control message %s", action)

    async def _heartbeat_loop(self, interval: float) -> None:
        try:
            while not self._stop:
                await asyncio.sleep(interval)
                self.send(Action.HEARTBEAT, {})
        except asyncio.CancelledError:
            pass
