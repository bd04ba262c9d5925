"""
Channel abstraction over the peer transport.

A Peer owns one identity on the signalling side and opens Connections to
other peers. A Connection is a bidirectional, per-sender-ordered message
pipe with `open`, `data`, `close` and `error` events. Nothing here knows
about the game; ChannelManager only adds fire-and-forget fan-out on top.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from models.game import Player, WireModel
from models.messages import encode

logger = logging.getLogger(__name__)

Handler = Callable[..., None]


class EventEmitter:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(*args)


class Connection(EventEmitter, ABC):
    """One end of a channel to the remote peer `peer`."""

    def __init__(self, peer: str):
        super().__init__()
        self.peer = peer
        self.is_open = False

    @abstractmethod
    def send(self, data: Any) -> None:
        """Queue a JSON-serialisable value. Raises TransportError when the channel is gone."""

    @abstractmethod
    def close(self) -> None:
        ...


class Peer(ABC):
    """Local identity on the transport. `id` is only meaningful after open()."""

    def __init__(self, peer_id: str):
        self.id = peer_id
        self.destroyed = False
        self._connection_handlers: List[Callable[[Connection], None]] = []
        self._error_handlers: List[Callable[[str], None]] = []

    @abstractmethod
    async def open(self) -> str:
        """Register `id` with the transport. Raises PeerIdUnavailableError if taken."""

    @abstractmethod
    def connect(self, remote_id: str) -> Connection:
        ...

    @abstractmethod
    def destroy(self) -> None:
        ...

    def on_connection(self, handler: Callable[[Connection], None]) -> None:
        self._connection_handlers.append(handler)

    def on_error(self, handler: Callable[[str], None]) -> None:
        self._error_handlers.append(handler)

    def _emit_connection(self, conn: Connection) -> None:
        for handler in list(self._connection_handlers):
            handler(conn)

    def _emit_error(self, kind: str) -> None:
        for handler in list(self._error_handlers):
            handler(kind)


class ChannelManager:
    """
    Tracks open connections keyed by remote peer id.
    Safe for the single-threaded event loop (no extra locking needed).
    """

    def __init__(self, code: str = ""):
        self.code = code  # log prefix only
        self._connections: Dict[str, Connection] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    def add(self, conn: Connection) -> None:
        self._connections[conn.peer] = conn
        logger.debug(f"[{self.code}] {conn.peer} connected ({self.count()} total)")

    def disconnect(self, peer_id: str) -> Optional[Connection]:
        return self._connections.pop(peer_id, None)

    def get(self, peer_id: Optional[str]) -> Optional[Connection]:
        if peer_id is None:
            return None
        return self._connections.get(peer_id)

    def count(self) -> int:
        return len(self._connections)

    def is_connected(self, peer_id: Optional[str]) -> bool:
        return peer_id is not None and peer_id in self._connections

    def close_all(self) -> None:
        for conn in list(self._connections.values()):
            try:
                conn.close()
            except Exception as exc:
                logger.warning(f"[{self.code}] close {conn.peer} failed: {exc}")
        self._connections.clear()

    # ── Sending ────────────────────────────────────────────────────────────────

    def send_to(self, peer_id: Optional[str], message: WireModel) -> bool:
        """Send one message to one peer. Failures are logged, never retried."""
        conn = self.get(peer_id)
        if conn is None:
            return False
        try:
            conn.send(encode(message))
            return True
        except Exception as exc:
            logger.warning(f"[{self.code}] send_to {peer_id} failed: {exc}")
            self.disconnect(peer_id)
            return False

    def broadcast(self, message: WireModel, exclude: Optional[str] = None) -> None:
        """Send the same message to every connected peer."""
        payload = encode(message)
        for pid, conn in list(self._connections.items()):
            if pid == exclude:
                continue
            try:
                conn.send(payload)
            except Exception as exc:
                logger.warning(f"[{self.code}] broadcast to {pid} failed: {exc}")
                self.disconnect(pid)

    def broadcast_each(
        self,
        players: Iterable[Player],
        build: Callable[[Player], Optional[WireModel]],
        exclude: Optional[str] = None,
    ) -> None:
        """Send a per-recipient message to every player reachable on a connection."""
        for player in list(players):
            ref = player.connection_ref
            if ref is None or ref == exclude or not self.is_connected(ref):
                continue
            message = build(player)
            if message is not None:
                self.send_to(ref, message)
