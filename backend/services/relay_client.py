"""
RelayPeer: the channel interface implemented against the WebSocket relay hub
(routers/relay_router.py).

One WebSocket per local peer id carries every logical connection; frames are
tagged with the remote id:

  client → hub   {"op": "connect" | "send" | "close", "to": id, "data"?: ...}
  hub → client   {"op": "open" | "connection" | "data" | "close" | "error",
                  "from"?: id, "to"?: id, "data"?: ..., "kind"?: str}
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from config import settings
from models.errors import PeerIdUnavailableError, TransportError
from services.channel import Connection, Peer

logger = logging.getLogger(__name__)


class RelayConnection(Connection):
    def __init__(self, relay: "RelayPeer", peer: str):
        super().__init__(peer)
        self.relay = relay

    def send(self, data: Any) -> None:
        if not self.is_open:
            raise TransportError(f"Channel to {self.peer} is not open")
        self.relay._send_frame({"op": "send", "to": self.peer, "data": data})

    def close(self) -> None:
        if self.relay._connections.pop(self.peer, None) is None:
            return
        self.is_open = False
        try:
            self.relay._send_frame({"op": "close", "to": self.peer})
        except TransportError:
            # The hub tells the remote side itself once the socket is gone.
            logger.debug(f"Close to {self.peer} not sent: relay socket already closed")
        self.emit("close")


class RelayPeer(Peer):
    def __init__(self, relay_url: str, peer_id: str):
        super().__init__(peer_id)
        self.relay_url = relay_url.rstrip("/")
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._connections: Dict[str, RelayConnection] = {}
        self._pending_sends: Set[asyncio.Task] = set()

    async def open(self) -> str:
        url = f"{self.relay_url}/ws/{self.id}"
        try:
            self._ws = await websockets.connect(url, ping_interval=20, ping_timeout=10, close_timeout=5)
        except OSError as exc:
            raise TransportError(f"Relay unreachable at {url}: {exc}") from exc

        first = json.loads(await self._ws.recv())
        if first.get("op") == "error":
            await self._ws.close()
            self._ws = None
            if first.get("kind") == "unavailable-id":
                raise PeerIdUnavailableError(f"Peer id '{self.id}' is taken")
            raise TransportError(f"Relay refused peer '{self.id}': {first.get('kind')}")

        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"Relay peer open: {self.id}")
        return self.id

    def connect(self, remote_id: str) -> Connection:
        conn = RelayConnection(self, remote_id)
        self._connections[remote_id] = conn
        self._send_frame({"op": "connect", "to": remote_id})
        return conn

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        for conn in list(self._connections.values()):
            conn.close()
        if self._reader is not None:
            self._reader.cancel()
        if self._ws is not None:
            ws, self._ws = self._ws, None
            self._track(asyncio.get_running_loop().create_task(ws.close()))

    # ── Inbound ────────────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Relay sent non-JSON frame to {self.id}")
                    continue
                self._handle_frame(frame)
        except ConnectionClosed:
            pass
        finally:
            if not self.destroyed:
                logger.warning(f"Relay connection lost for {self.id}")
                for conn in list(self._connections.values()):
                    conn.is_open = False
                    conn.emit("close")
                self._connections.clear()
                self._emit_error("network")

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        op = frame.get("op")
        remote = frame.get("from")

        if op == "connection":
            conn = RelayConnection(self, remote)
            self._connections[remote] = conn
            self._emit_connection(conn)
            conn.is_open = True
            conn.emit("open")

        elif op == "open":
            conn = self._connections.get(remote)
            if conn is not None and not conn.is_open:
                conn.is_open = True
                conn.emit("open")

        elif op == "data":
            conn = self._connections.get(remote)
            if conn is not None and conn.is_open:
                conn.emit("data", frame.get("data"))

        elif op == "close":
            conn = self._connections.pop(remote, None)
            if conn is not None:
                conn.is_open = False
                conn.emit("close")

        elif op == "error":
            kind = frame.get("kind", "server-error")
            target = frame.get("to")
            conn = self._connections.pop(target, None) if kind == "peer-unavailable" else None
            if conn is not None:
                conn.emit("error", kind)
            self._emit_error(kind)

        else:
            logger.debug(f"Relay frame ignored by {self.id}: op={op}")

    # ── Outbound ───────────────────────────────────────────────────────────────

    def _send_frame(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportError("Relay socket is not open")
        self._track(asyncio.get_running_loop().create_task(self._ws.send(json.dumps(frame))))

    def _track(self, task: asyncio.Task) -> None:
        self._pending_sends.add(task)
        task.add_done_callback(self._send_done)

    def _send_done(self, task: asyncio.Task) -> None:
        self._pending_sends.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Relay send from {self.id} failed: {task.exception()}")


def relay_peer_factory(relay_url: Optional[str] = None) -> Callable[[str], RelayPeer]:
    """Peer factory for GameSession, bound to the configured relay hub."""
    url = relay_url or settings.relay_url
    return lambda peer_id: RelayPeer(url, peer_id)
