"""
WebSocket Relay Hub: peer signalling and message relay.

URL: /ws/{peer_id}

Each game client opens one socket under its own peer id (the host uses the
4-letter game code). The hub knows nothing about the game: it only links
pairs of peers and forwards their frames, like a PeerJS server with TURN.

Connection flow:
  1. Accept connection → reject with error frame + close 4409 if id is taken
  2. Send {"op": "open"} to confirm the id
  3. Frame loop (connect / send / close)
  4. On disconnect: tell every linked peer {"op": "close", "from": id}

Client → hub frames:
  connect  open a logical channel to `to`
  send     forward `data` to `to` over an existing channel
  close    tear down the channel to `to`
"""
import json
import logging
from typing import Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])

CLOSE_ID_TAKEN = 4409


class RelayHub:
    """
    Tracks live sockets by peer id and the set of linked peer pairs.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}
        self._links: Dict[str, Set[str]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    def register(self, peer_id: str, ws: WebSocket) -> bool:
        if peer_id in self._sockets:
            return False
        self._sockets[peer_id] = ws
        self._links[peer_id] = set()
        logger.debug(f"[relay] {peer_id} registered ({self.count()} total)")
        return True

    async def unregister(self, peer_id: str) -> None:
        self._sockets.pop(peer_id, None)
        for other in self._links.pop(peer_id, set()):
            self._links.get(other, set()).discard(peer_id)
            await self.send_to(other, {"op": "close", "from": peer_id})

    def count(self) -> int:
        return len(self._sockets)

    def is_connected(self, peer_id: str) -> bool:
        return peer_id in self._sockets

    def linked(self, a: str, b: str) -> bool:
        return b in self._links.get(a, set())

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, peer_id: str, frame: Dict) -> None:
        ws = self._sockets.get(peer_id)
        if ws:
            try:
                await ws.send_json(frame)
            except Exception as exc:
                logger.warning(f"[relay] send_to {peer_id} failed: {exc}")

    # ── Frame handling ─────────────────────────────────────────────────────────

    async def handle(self, sender: str, frame: Dict) -> None:
        op = frame.get("op")
        target: Optional[str] = frame.get("to")

        if op == "connect":
            if not target or not self.is_connected(target):
                await self.send_to(sender, {"op": "error", "kind": "peer-unavailable", "to": target})
                return
            self._links[sender].add(target)
            self._links[target].add(sender)
            await self.send_to(target, {"op": "connection", "from": sender})
            await self.send_to(sender, {"op": "open", "from": target})

        elif op == "send":
            if not target or not self.linked(sender, target):
                await self.send_to(sender, {"op": "error", "kind": "peer-unavailable", "to": target})
                return
            await self.send_to(target, {"op": "data", "from": sender, "data": frame.get("data")})

        elif op == "close":
            if target and self.linked(sender, target):
                self._links[sender].discard(target)
                self._links[target].discard(sender)
                await self.send_to(target, {"op": "close", "from": sender})

        else:
            await self.send_to(sender, {"op": "error", "kind": "bad-frame"})


hub = RelayHub()


@router.websocket("/ws/{peer_id}")
async def relay_endpoint(ws: WebSocket, peer_id: str):
    await ws.accept()
    if not hub.register(peer_id, ws):
        await ws.send_json({"op": "error", "kind": "unavailable-id"})
        await ws.close(code=CLOSE_ID_TAKEN, reason="Peer id in use")
        return

    await ws.send_json({"op": "open", "id": peer_id})

    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await ws.send_json({"op": "error", "kind": "bad-frame"})
                continue
            if not isinstance(frame, dict):
                await ws.send_json({"op": "error", "kind": "bad-frame"})
                continue
            await hub.handle(peer_id, frame)
    except WebSocketDisconnect:
        logger.debug(f"[relay] {peer_id} disconnected")
    finally:
        await hub.unregister(peer_id)
        logger.debug(f"[relay] {peer_id} left ({hub.count()} remaining)")
