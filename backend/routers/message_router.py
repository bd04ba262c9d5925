"""
Message Router: decode, admit and dispatch every inbound channel value.

Admission by kind:
  host → peer      accepted only by a non-host client, only from its host channel
  peer → host      accepted only by the host
  vote, murderVote on the host: the voter must be the player bound to the
                   sending channel; on a peer: only the host's relay counts

Anything that fails decoding or admission is logged and dropped. The dispatch
covers every kind in the Message union; an unknown kind is a protocol error.
"""
import logging
from typing import Any

from models.errors import GameError, ProtocolViolationError
from models.game import Phase, Player
from models.messages import (
    ANY_PEER,
    HOST_TO_PEER,
    PEER_TO_HOST,
    GameStateMessage,
    JoinMessage,
    PlayerJoinedMessage,
    PlayerLeftMessage,
    RequestStateSyncMessage,
    StateSyncMessage,
    decode,
)
from services.channel import Connection
from services.timers import JOIN_TIMEOUT
from services.view import Screen, Severity

logger = logging.getLogger(__name__)


class MessageRouter:
    def __init__(self, session):
        self.session = session

    @property
    def state(self):
        return self.session.state

    @property
    def gm(self):
        return self.session.gm

    def handle(self, data: Any, conn: Connection) -> None:
        code = self.state.code
        try:
            msg = decode(data)
            self._admit(msg, conn)
            logger.debug(f"[{code}] ← {msg.type} from {conn.peer}")
            self._dispatch(msg, conn)
        except ProtocolViolationError as exc:
            logger.warning(f"[{code}] Dropped message from {conn.peer}: {exc}")
        except GameError as exc:
            logger.warning(f"[{code}] Message from {conn.peer} rejected: {exc}")
        except Exception:
            logger.exception(f"[{code}] Unhandled error handling message from {conn.peer}")

    # ── Admission ──────────────────────────────────────────────────────────────

    def _admit(self, msg, conn: Connection) -> None:
        s = self.state
        from_host = conn is self.session.host_conn

        if msg.type in HOST_TO_PEER:
            if s.is_host or not from_host:
                raise ProtocolViolationError(f"'{msg.type}' is only accepted from the host")

        elif msg.type in PEER_TO_HOST:
            if not s.is_host:
                raise ProtocolViolationError(f"'{msg.type}' is only accepted by the host")

        elif msg.type in ANY_PEER:
            if s.is_host:
                voter = s.get_player(msg.voter_id)
                if voter is None or voter.connection_ref != conn.peer:
                    raise ProtocolViolationError(f"'{msg.type}' for {msg.voter_id} sent from another channel")
            elif not from_host:
                raise ProtocolViolationError(f"'{msg.type}' relayed by a non-host peer")

    # ── Dispatch ───────────────────────────────────────────────────────────────

    def _dispatch(self, msg, conn: Connection) -> None:
        gm = self.gm
        msg_type = msg.type

        if msg_type == "join":
            self._on_join(msg, conn)

        elif msg_type == "playerLeft":
            self._on_player_left(msg, conn)

        elif msg_type == "requestStateSync":
            self._on_request_state_sync(msg, conn)

        elif msg_type in ("gameState", "stateSync"):
            first = not self.state.players
            self.session.timers.cancel(JOIN_TIMEOUT)
            if not any(p.id == self.state.local_player_id for p in msg.state.players):
                self._on_dropped_from_game()
                return
            gm.apply_sync(msg.state)
            if first:
                self.session.view.notify("Joined game!")

        elif msg_type == "playerJoined":
            gm.apply_roster(msg.players)
            self.session.view.notify(f"{msg.player_name} joined!")

        elif msg_type == "playerRemoved":
            gm.apply_roster(msg.players)
            if msg.player_name:
                self.session.view.notify(f"{msg.player_name} left the game", Severity.ERROR)

        elif msg_type == "gameStart":
            gm.apply_game_start(msg.players)

        elif msg_type == "deliberationStart":
            gm.apply_deliberation_start(msg.start_time)

        elif msg_type == "vote":
            if self.state.is_host:
                gm.record_vote(msg.voter_id, msg.target_id, sender_ref=conn.peer)
            else:
                gm.apply_vote(msg.voter_id, msg.target_id)

        elif msg_type == "voteTied":
            gm.apply_vote_tied(msg.tied_player_names)

        elif msg_type == "deliberationCancelled":
            gm.apply_deliberation_cancelled()

        elif msg_type == "playerEliminated":
            gm.apply_player_eliminated(msg.player_id, msg.role)

        elif msg_type == "murderTimerStarted":
            gm.start_murder_timer(msg.murder_enabled_at)

        elif msg_type == "murderVote":
            if self.state.is_host:
                gm.record_murder_vote(msg.voter_id, msg.target_id, sender_ref=conn.peer)
            else:
                gm.apply_murder_vote(msg.voter_id, msg.target_id)

        elif msg_type == "playerMurdered":
            gm.apply_player_murdered(msg.player_id, msg.player_name)

        elif msg_type == "gameOver":
            gm.apply_game_over(msg.winner, msg.players)

        elif msg_type == "gameCancelled":
            self.session.on_game_cancelled()

        else:
            raise ProtocolViolationError(f"Unhandled message type '{msg_type}'")

    def _on_dropped_from_game(self) -> None:
        logger.warning(f"[{self.state.code}] Host no longer lists this player")
        self.session.view.notify("You are no longer in this game.", Severity.ERROR)
        self.session.reset()
        self.session.view.refresh(Screen.JOIN)

    # ── Host handlers ──────────────────────────────────────────────────────────

    def _on_join(self, msg: JoinMessage, conn: Connection) -> None:
        s = self.state
        if s.phase != Phase.LOBBY:
            logger.warning(f"[{s.code}] Join from {msg.player_name} ignored: game already in progress")
            return
        player = self._seat(msg.player_id, msg.player_name, conn)
        self.session.channels.send_to(conn.peer, GameStateMessage(state=self.gm.sync_payload(player)))

    def _seat(self, player_id: str, name: str, conn: Connection) -> Player:
        """Lobby only: bind `player_id` to `conn`, adding the player if new, and announce it."""
        with self.gm.store.mutate() as s:
            player = s.get_player(player_id)
            if player is not None:
                player.name = name or player.name
                player.connection_ref = conn.peer
            else:
                player = Player(id=player_id, name=name or "Player", connection_ref=conn.peer)
                s.players.append(player)

        logger.info(f"[{s.code}] {player.name} joined ({len(s.players)} players)")
        self.session.broadcast_roster(
            lambda p: PlayerJoinedMessage(player_name=player.name, players=self.gm.roster_for(p)),
            exclude=conn.peer,
        )
        self.session.view.notify(f"{player.name} joined!")
        self.session.view.refresh(Screen.HOST_SETUP)
        return player

    def _on_player_left(self, msg: PlayerLeftMessage, conn: Connection) -> None:
        s = self.state
        player = s.get_player(msg.player_id)
        if player is None:
            return
        if player.connection_ref != conn.peer:
            raise ProtocolViolationError(f"playerLeft for {msg.player_id} sent from another channel")
        self.session.channels.disconnect(conn.peer)
        self.gm.remove_player(player.id)
        self.session.view.notify(f"{player.name} left the game", Severity.ERROR)

    def _on_request_state_sync(self, msg: RequestStateSyncMessage, conn: Connection) -> None:
        """
        Answer every requester. A known player is rebound to the new channel.
        A player the host already dropped is seated again in the lobby, and
        mid-game gets the spectator view, which no longer lists them.
        """
        s = self.state
        player = s.get_player(msg.player_id)
        if player is not None:
            with self.gm.store.mutate() as s:
                player.connection_ref = conn.peer
            logger.info(f"[{s.code}] {player.name} resynced on {conn.peer}")
        elif s.phase == Phase.LOBBY:
            player = self._seat(msg.player_id, msg.player_name, conn)
        else:
            logger.warning(f"[{s.code}] State sync for dropped player {msg.player_id}: sending spectator view")
        self.session.channels.send_to(conn.peer, StateSyncMessage(state=self.gm.sync_payload(player)))
