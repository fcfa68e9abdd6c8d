from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from party_shared.protocol import (
    REQUEST_ACTIONS,
    Action,
    ClientIdentity,
    Envelope,
    decode_stream_lenient,
    encode_message,
)

from .connections import ConnectionHub
from .coordinator import SessionCoordinator

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class ControlServer:
    """TCP control plane: handshake, request/ack correlation and disconnects.

    Room semantics live in :class:`SessionCoordinator`; this class only turns
    frames into coordinator calls and results back into ``ack`` frames.
    """

    def __init__(
        self,
        host: str,
        port: int,
        coordinator: SessionCoordinator,
        hub: ConnectionHub,
    ) -> None:
        self._host = host
        self._port = port
        self._coordinator = coordinator
        self._hub = hub
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when started on port 0."""
        if self._server and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Control server listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.info("Incoming TCP connection from %s", peer)

        buffer = b""
        handshake_bytes = 0
        connection_id: Optional[str] = None
        try:
            # Expect initial HELLO with identity
            while connection_id is None:
                data = await reader.read(READ_CHUNK)
                if not data:
                    raise ConnectionError("connection closed before handshake")
                buffer += data
                handshake_bytes += len(data)
                messages, errors, buffer = decode_stream_lenient(buffer)
                if not errors and not messages:
                    continue
                if errors or messages[0]["action"] != Action.HELLO.value:
                    logger.warning("Rejected %s: expected hello as first message", peer)
                    writer.write(encode_message(Action.ERROR, {"reason": "expected hello", "code": "handshake_required"}))
                    await writer.drain()
                    return
                first, rest = messages[0], messages[1:]
                identity = ClientIdentity.from_dict(first["data"])
                connection = self._hub.register(writer, client_name=identity.client_name, peername=peer)
                connection_id = connection.connection_id
                self._hub.record_received(connection_id, handshake_bytes)
                connection.send(
                    Action.WELCOME,
                    {
                        "connectionId": connection_id,
                        "heartbeatInterval": self._hub.heartbeat_timeout,
                    },
                )
                for message in rest:
                    self._handle_message(connection_id, message)
                await writer.drain()
            assert connection_id is not None

            while True:
                data = await reader.read(READ_CHUNK)
                if not data:
                    break
                buffer += data
                self._hub.record_received(connection_id, len(data))
                messages, errors, buffer = decode_stream_lenient(buffer)
                for error in errors:
                    logger.warning("Malformed frame from %s: %s", connection_id, error)
                    self._hub.send_to(connection_id, Action.ERROR, {"reason": error, "code": "malformed_frame"})
                for message in messages:
                    self._handle_message(connection_id, message)
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.info("Connection %s closed: %s", connection_id or peer, exc)
        except Exception as exc:
            logger.exception("Error while handling client %s: %s", peer, exc)
        finally:
            if connection_id:
                self._coordinator.disconnect(connection_id)
                self._hub.unregister(connection_id)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    def _handle_message(self, connection_id: str, message: Envelope) -> None:
        try:
            action = Action(message["action"])
        except ValueError:
            logger.debug("Unknown action %r from %s", message["action"], connection_id)
            self._hub.send_to(
                connection_id,
                Action.ERROR,
                {"reason": f"unknown action {message['action']!r}", "code": "unknown_action"},
            )
            return

        if action == Action.HEARTBEAT:
            self._hub.mark_heartbeat(connection_id)
            return

        if action not in REQUEST_ACTIONS:
            logger.debug("Ignoring %s from %s", action.value, connection_id)
            return

        payload: Dict[str, Any] = dict(message["data"])
        request_id = payload.pop("requestId", None)
        result = self._coordinator.dispatch(connection_id, action, payload)
        if result is None or request_id is None:
            return
        self._hub.send_to(connection_id, Action.ACK, {"requestId": request_id, **result.to_dict()})
