"""
GameSession: one running client: transport peer, channels, state and rules.

The session owns the Peer (host id = game code, peer id = random), the
ChannelManager of open connections, the StateStore and the GameMaster, and
routes every inbound value through the MessageRouter.

Reconnection:
- Peer disconnect, local host: the player is removed and the roster re-sent.
- Host disconnect, local peer: the remaining non-bot player becomes host,
  eliminated players first, then lowest id. That player promotes itself;
  everyone else reconnects to it and asks for a stateSync.
- Resume after restart: the host re-opens its game code; a peer opens a fresh
  id, reconnects to the host and asks for a stateSync.
"""
import asyncio
import logging
import random
import time
from functools import partial
from typing import Any, Callable, Optional

from config import Settings, settings
from models.errors import PeerIdUnavailableError, StateDesyncError, ValidationError
from models.game import (
    GameState,
    Phase,
    Player,
    Role,
    WireModel,
    generate_game_code,
    generate_id,
    normalize_game_code,
)
from models.messages import (
    GameCancelledMessage,
    JoinMessage,
    PlayerLeftMessage,
    RequestStateSyncMessage,
)
from agents.game_master import PHASE_SCREENS, GameMaster, Outbox
from routers.message_router import MessageRouter
from services.channel import ChannelManager, Connection, Peer
from services.relay_client import relay_peer_factory
from services.state_store import StateStore, get_snapshot_store
from services.timers import JOIN_TIMEOUT, TimerRegistry
from services.view import GameView, LoggingView, Screen, Severity

logger = logging.getLogger(__name__)

TRANSPORT_ERROR_MESSAGES = {
    "peer-unavailable": "Game not found. Check the code and try again.",
    "unavailable-id": "That game code is already in use. Please try again.",
    "network": "Network error. Check your connection.",
    "server-error": "Connection server error. Please try again later.",
}


def transport_error_message(kind: str) -> str:
    return TRANSPORT_ERROR_MESSAGES.get(kind, f"Connection error: {kind}")


class GameSession(Outbox):
    def __init__(
        self,
        peer_factory: Optional[Callable[[str], Peer]] = None,
        store: Optional[StateStore] = None,
        view: Optional[GameView] = None,
        config: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        timers: Optional[TimerRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or StateStore(get_snapshot_store())
        self.view = view or LoggingView()
        self.config = config or settings
        self.peer_factory = peer_factory or relay_peer_factory(self.config.relay_url)
        self.rng = rng or random.Random()
        self.timers = timers or TimerRegistry()
        self.channels = ChannelManager()
        self.peer: Optional[Peer] = None
        self.host_conn: Optional[Connection] = None
        self.gm = GameMaster(
            self.store,
            self,
            timers=self.timers,
            view=self.view,
            config=self.config,
            rng=self.rng,
            clock=clock,
        )
        self.router = MessageRouter(self)

    @property
    def state(self) -> GameState:
        return self.store.state

    @property
    def host_ref(self) -> str:
        """Peer id the current host is reachable on."""
        host = self.state.host_player
        if host is not None and host.connection_ref:
            return host.connection_ref
        return self.state.code

    # ── Outbox ─────────────────────────────────────────────────────────────────

    def broadcast(self, message: WireModel, exclude: Optional[str] = None) -> None:
        self.channels.broadcast(message, exclude=exclude)

    def broadcast_roster(self, build, exclude: Optional[str] = None) -> None:
        self.channels.broadcast_each(self.state.players, build, exclude=exclude)

    def send_to_host(self, message: WireModel) -> None:
        if self.host_conn is None or not self.channels.send_to(self.host_conn.peer, message):
            logger.warning(f"[{self.state.code}] {message.type} not sent: no channel to host")

    def run_action(self, action: Callable[..., Any], *args: Any) -> Any:
        """Run a local user action; a rejected one becomes an error notification."""
        try:
            return action(*args)
        except ValidationError as exc:
            self.view.notify(str(exc), Severity.ERROR)
            return None

    # ── Transport setup ────────────────────────────────────────────────────────

    async def _open_peer(self, next_id: Callable[[], str]) -> Peer:
        """Open a peer, retrying while the signalling side still holds the id."""
        attempts = self.config.peer_id_retries + 1
        for attempt in range(1, attempts + 1):
            peer = self.peer_factory(next_id())
            try:
                await peer.open()
            except PeerIdUnavailableError:
                peer.destroy()
                if attempt == attempts:
                    raise
                logger.warning(f"Peer id {peer.id} unavailable, retry {attempt}/{self.config.peer_id_retries}")
                await asyncio.sleep(self.config.peer_id_settle_delay)
                continue
            peer.on_connection(self._on_incoming)
            peer.on_error(self._on_peer_error)
            self.peer = peer
            return peer

    def _wire(self, conn: Connection) -> None:
        conn.on("data", partial(self._on_data, conn))
        conn.on("close", partial(self._on_close, conn))

    def _connect_to_host(self, remote_id: str, first_message: WireModel) -> Connection:
        conn = self.peer.connect(remote_id)
        self.host_conn = conn
        conn.on("open", partial(self._on_host_open, conn, first_message))
        self._wire(conn)
        return conn

    def _on_host_open(self, conn: Connection, first_message: WireModel) -> None:
        if conn is not self.host_conn:
            return
        self.channels.add(conn)
        logger.info(f"[{self.state.code}] Connected to host {conn.peer}")
        self.channels.send_to(conn.peer, first_message)

    def _on_incoming(self, conn: Connection) -> None:
        conn.on("open", partial(self.channels.add, conn))
        self._wire(conn)

    def _on_data(self, conn: Connection, data: Any) -> None:
        self.router.handle(data, conn)

    def _on_close(self, conn: Connection) -> None:
        if self.channels.get(conn.peer) is conn:
            self.channels.disconnect(conn.peer)
        elif conn is not self.host_conn:
            return  # superseded or never registered
        self.handle_disconnect(conn.peer)

    def _on_peer_error(self, kind: str) -> None:
        s = self.state
        logger.warning(f"[{s.code}] Transport error: {kind}")
        self.view.notify(transport_error_message(kind), Severity.ERROR)
        if kind == "peer-unavailable" and not s.is_host and not s.players:
            self.reset()
            self.view.refresh(Screen.JOIN)

    def _on_join_timeout(self) -> None:
        logger.warning(f"[{self.state.code}] No answer from host after {self.config.join_timeout_seconds}s")
        self.view.notify("Could not connect to game. Check the code and try again.", Severity.ERROR)
        self.reset()
        self.view.refresh(Screen.JOIN)

    def _start_join_timeout(self) -> None:
        self.timers.schedule(JOIN_TIMEOUT, 0, self.config.join_timeout_seconds, self._on_join_timeout)

    # ── Host / join ────────────────────────────────────────────────────────────

    async def host_game(self, player_name: str) -> str:
        name = (player_name or "").strip()
        if not name:
            raise ValidationError("Please enter your name")
        if self.peer is not None:
            raise ValidationError("Already in a game")

        peer = await self._open_peer(partial(generate_game_code, self.rng))
        with self.store.mutate() as s:
            s.code = peer.id
            s.player_name = name
            s.is_host = True
            s.local_role = None
            s.phase = Phase.LOBBY
            s.winner = None
            s.num_saboteurs = self.config.default_num_saboteurs
            s.players = [Player(id=s.local_player_id, name=name, is_host=True, connection_ref=peer.id)]
        self.channels.code = s.code

        logger.info(f"[{s.code}] Hosting game as {name}")
        self.view.refresh(Screen.HOST_SETUP)
        return s.code

    async def join_game(self, code: str, player_name: str) -> None:
        game_code = normalize_game_code(code)
        name = (player_name or "").strip()
        if not name:
            raise ValidationError("Please enter your name")
        if self.peer is not None:
            raise ValidationError("Already in a game")

        await self._open_peer(partial(generate_id, self.rng))
        with self.store.mutate() as s:
            s.code = game_code
            s.player_name = name
            s.is_host = False
            s.local_role = None
            s.phase = Phase.LOBBY
            s.winner = None
            s.players = []
        self.channels.code = game_code

        logger.info(f"[{game_code}] Joining as {name}")
        self._connect_to_host(game_code, JoinMessage(player_id=s.local_player_id, player_name=name))
        self._start_join_timeout()

    def request_state_sync(self) -> None:
        self.send_to_host(self._sync_request())

    def _sync_request(self) -> RequestStateSyncMessage:
        s = self.state
        return RequestStateSyncMessage(player_id=s.local_player_id, player_name=s.player_name)

    # ── Disconnect and failover ────────────────────────────────────────────────

    def handle_disconnect(self, peer_id: str) -> None:
        s = self.state
        if s.is_host:
            player = s.find_by_connection(peer_id)
            if player is None or player.id == s.local_player_id:
                return
            self.gm.remove_player(player.id)
            self.view.notify(f"{player.name} disconnected", Severity.ERROR)
            return

        if self.host_conn is None or peer_id != self.host_conn.peer:
            return
        self.host_conn = None
        if s.phase == Phase.GAME_OVER:
            self.view.notify("The host has left the game", Severity.ERROR)
            return
        self._fail_over()

    def _fail_over(self) -> None:
        """
        Pick the successor deterministically from the public roster: eliminated
        humans first, then lowest id.
        """
        if self.peer is None or self.peer.destroyed:
            return
        s = self.state
        departed = s.host_player
        with self.store.mutate() as s:
            if departed is not None:
                s.players = [p for p in s.players if p.id != departed.id]
                s.drop_votes_of(departed.id)
            candidates = sorted((p for p in s.players if not p.is_bot), key=lambda p: (not p.eliminated, p.id))
            successor = candidates[0] if candidates else None
            for p in s.players:
                p.is_host = successor is not None and p.id == successor.id

        if successor is None or s.me is None:
            logger.warning(f"[{s.code}] Host lost with nobody to take over")
            self.view.notify("The host has left the game", Severity.ERROR)
            self.reset()
            self.view.refresh(Screen.WELCOME)
            return

        logger.info(f"[{s.code}] Host {departed.name if departed else '?'} gone, {successor.name} takes over")
        if successor.id == s.local_player_id:
            self._promote_self()
            return

        if not successor.connection_ref:
            logger.warning(f"[{s.code}] No channel id known for new host {successor.name}")
            self.view.notify("The host has left the game", Severity.ERROR)
            return
        self.view.notify(f"Host disconnected. {successor.name} is taking over...", Severity.ERROR)
        self._connect_to_host(
            successor.connection_ref,
            self._sync_request(),
        )

    def _promote_self(self) -> None:
        with self.store.mutate() as s:
            s.is_host = True
            me = s.me
            me.is_host = True
            me.connection_ref = self.peer.id
            # A living traitor knows every traitor, so anyone unlabelled is an agent.
            if s.local_role == Role.TRAITOR and not me.eliminated:
                for p in s.players:
                    if p.role is None:
                        p.role = Role.AGENT

        try:
            self._require_role_knowledge()
        except StateDesyncError as exc:
            logger.error(f"[{s.code}] {exc}; restarting in the lobby")
            self._restart_in_lobby()
            return

        self.view.notify("The host left. You are now the host.")
        self.view.refresh(PHASE_SCREENS[s.phase])
        self.gm.resume_as_host()

    def _require_role_knowledge(self) -> None:
        s = self.state
        if s.phase not in (Phase.ACTIVE, Phase.DELIBERATION):
            return
        unknown = [p.name for p in s.alive_players if p.role is None]
        if unknown:
            raise StateDesyncError(f"Roles unknown for {', '.join(unknown)}")

    def _restart_in_lobby(self) -> None:
        self.timers.cancel_all()
        with self.store.mutate() as s:
            for p in s.players:
                p.role = None
                p.eliminated = False
                p.murdered = False
                p.has_voted = False
            s.local_role = None
            s.phase = Phase.LOBBY
            s.winner = None
            s.deliberation_votes = {}
            s.murder_votes = {}
            s.murder_window_open = False
            s.murder_enabled_at = None
            s.deliberation_started_at = None
            s.tie_rounds = 0
        self.view.notify("The host left mid-game. You are now the host: start a new game.", Severity.ERROR)
        self.view.refresh(Screen.HOST_SETUP)

    # ── Resume ─────────────────────────────────────────────────────────────────

    def pending_resume(self) -> Optional[GameState]:
        """Load the last snapshot; a finished game is discarded, not offered."""
        restored = self.store.load()
        if restored is None or not restored.code:
            return None
        if restored.phase == Phase.GAME_OVER:
            self.store.clear()
            return None
        return restored

    async def resume(self) -> None:
        s = self.state
        if not s.code:
            raise ValidationError("No saved game to resume")
        if self.peer is not None:
            raise ValidationError("Already in a game")
        self.channels.code = s.code

        if s.is_host:
            peer = await self._open_peer(lambda: s.code)
            with self.store.mutate() as s:
                me = s.me
                if me is not None:
                    me.connection_ref = peer.id
                    me.is_host = True
            logger.info(f"[{s.code}] Resumed hosting ({len(s.players)} players, phase={s.phase.value})")
            self.view.refresh(Screen.HOST_SETUP if s.phase == Phase.LOBBY else PHASE_SCREENS[s.phase])
            self.gm.resume_as_host()
            return

        await self._open_peer(partial(generate_id, self.rng))
        logger.info(f"[{s.code}] Resuming as {s.player_name}, requesting state from host")
        self._connect_to_host(self.host_ref, self._sync_request())
        self._start_join_timeout()

    # ── Leave / cancel ─────────────────────────────────────────────────────────

    def leave_game(self) -> None:
        s = self.state
        if s.is_host:
            self.cancel_hosting()
            return
        self.send_to_host(PlayerLeftMessage(player_id=s.local_player_id, player_name=s.player_name))
        logger.info(f"[{s.code}] Left the game")
        self.reset()
        self.view.refresh(Screen.WELCOME)

    def cancel_hosting(self) -> None:
        s = self.state
        if not s.is_host:
            raise ValidationError("Only the host can cancel the game")
        self.broadcast(GameCancelledMessage())
        logger.info(f"[{s.code}] Game cancelled by host")
        self.reset()
        self.view.refresh(Screen.WELCOME)

    def on_game_cancelled(self) -> None:
        self.view.notify("The host cancelled the game", Severity.ERROR)
        self.reset()
        self.view.refresh(Screen.WELCOME)

    def reset(self) -> None:
        """Tear down transport and timers, back to an empty lobby with the same identity."""
        self.timers.cancel_all()
        channels, self.channels = self.channels, ChannelManager()
        self.host_conn = None
        channels.close_all()
        if self.peer is not None:
            peer, self.peer = self.peer, None
            peer.destroy()
        self.store.clear()
