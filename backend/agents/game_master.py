"""
Game Master: authoritative game rules, pure deterministic Python.

Responsibilities:
- Phase transitions (Lobby → Active ⇄ Deliberation → Game Over)
- Role assignment (uniform shuffle, first N are traitors)
- Deliberation tabulation and tie re-votes
- Murder window timer, murder tabulation and random tie-break
- Win condition checks
- Per-viewer role redaction for everything the host sends

Host operations mutate the StateStore and push authoritative messages through
the outbox. Peer-side `apply_*` methods replace the local replica wholesale
from host broadcasts.
"""
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from config import Settings, settings
from models.errors import IncompleteVoteError, ValidationError
from models.game import GameState, Phase, Player, Role, Winner, WireModel
from models.messages import (
    DeliberationCancelledMessage,
    DeliberationStartMessage,
    GameOverMessage,
    GameStartMessage,
    MurderTimerStartedMessage,
    MurderVoteMessage,
    PlayerEliminatedMessage,
    PlayerMurderedMessage,
    PlayerRemovedMessage,
    StateSyncMessage,
    SyncPayload,
    VoteMessage,
    VoteTiedMessage,
)
from agents.bot_agent import BotAgent
from services.state_store import StateStore
from services.timers import (
    DELIBERATION_BOTS,
    MURDER_BOTS,
    MURDER_REVEAL,
    MURDER_WINDOW,
    TimerRegistry,
)
from services.view import GameView, LoggingView, Screen, Severity

logger = logging.getLogger(__name__)

PHASE_SCREENS: Dict[Phase, Screen] = {
    Phase.LOBBY: Screen.WAITING_ROOM,
    Phase.ACTIVE: Screen.GAME,
    Phase.DELIBERATION: Screen.DELIBERATION,
    Phase.GAME_OVER: Screen.GAME_OVER,
}


class Outbox(ABC):
    """Where the Game Master sends. GameSession implements this over the channel."""

    @abstractmethod
    def broadcast(self, message: WireModel, exclude: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def broadcast_roster(
        self, build: Callable[[Player], Optional[WireModel]], exclude: Optional[str] = None
    ) -> None:
        """Send `build(player)` to each reachable player; None skips that player."""

    @abstractmethod
    def send_to_host(self, message: WireModel) -> None:
        ...


# ── Pure rules ─────────────────────────────────────────────────────────────────

def assign_roles(players: List[Player], num_saboteurs: int, rng: random.Random) -> List[Player]:
    """Shuffle the roster and make the first `num_saboteurs` traitors, the rest agents."""
    shuffled = list(players)
    rng.shuffle(shuffled)
    for i, player in enumerate(shuffled):
        player.role = Role.TRAITOR if i < num_saboteurs else Role.AGENT
    return shuffled


def tally_votes(votes: Dict[str, str]) -> Dict[str, int]:
    """Return {target_id: vote_count}, in order of each target's first vote."""
    return dict(Counter(votes.values()))


def top_targets(votes: Dict[str, str]) -> List[str]:
    tally = tally_votes(votes)
    if not tally:
        return []
    max_votes = max(tally.values())
    return [target for target, count in tally.items() if count == max_votes]


def resolve_deliberation(votes: Dict[str, str]) -> Dict[str, Any]:
    """
    Deliberation outcome for a complete vote mapping.

    Returns:
    {
        "result": "eliminated" | "tie" | "no_votes",
        "eliminated": Optional[str],  # player id, unique maximum only
        "tally": Dict[str, int],
        "tied": List[str],            # populated on tie
    }
    """
    tally = tally_votes(votes)
    leaders = top_targets(votes)
    if not leaders:
        return {"result": "no_votes", "eliminated": None, "tally": {}, "tied": []}
    if len(leaders) == 1:
        return {"result": "eliminated", "eliminated": leaders[0], "tally": tally, "tied": []}
    return {"result": "tie", "eliminated": None, "tally": tally, "tied": leaders}


def pick_murder_target(votes: Dict[str, str], rng: random.Random) -> Optional[str]:
    """Most-voted target; murder ties are broken uniformly at random, never re-voted."""
    leaders = top_targets(votes)
    if not leaders:
        return None
    return rng.choice(leaders)


def evaluate_winner(players: List[Player], after_deliberation: bool = False) -> Optional[Winner]:
    """
    Agents win when no traitor is alive.
    Traitors win when living agents are no more than living traitors, or, right
    after a deliberation, when agents lead by exactly one (the coming murder
    would even the numbers anyway).
    """
    alive_agents = sum(1 for p in players if not p.eliminated and p.role == Role.AGENT)
    alive_traitors = sum(1 for p in players if not p.eliminated and p.role == Role.TRAITOR)

    if alive_traitors == 0:
        return Winner.AGENTS
    if alive_agents <= alive_traitors:
        return Winner.TRAITORS
    if after_deliberation and alive_agents == alive_traitors + 1:
        return Winner.TRAITORS
    return None


def murder_delay(players: List[Player], config: Settings = settings) -> float:
    alive_traitors = [p for p in players if not p.eliminated and p.role == Role.TRAITOR]
    if alive_traitors and all(p.is_bot for p in alive_traitors):
        return config.bot_murder_delay_seconds
    return config.murder_delay_seconds


def can_see_role(viewer: Optional[Player], player: Player, phase: Phase) -> bool:
    if phase == Phase.GAME_OVER or player.eliminated:
        return True
    if viewer is None:
        return False
    if viewer.id == player.id or viewer.eliminated:
        return True
    return viewer.role == Role.TRAITOR and player.role == Role.TRAITOR


def visible_roster(players: List[Player], viewer: Optional[Player], phase: Phase) -> List[Player]:
    """Copy of the roster with roles the viewer must not know blanked out."""
    return [
        p.model_copy() if can_see_role(viewer, p, phase) else p.model_copy(update={"role": None})
        for p in players
    ]


class GameMaster:
    """
    Rules engine bound to one client's StateStore.
    Host-only operations raise ValidationError when called on a peer.
    """

    def __init__(
        self,
        store: StateStore,
        outbox: Outbox,
        timers: Optional[TimerRegistry] = None,
        view: Optional[GameView] = None,
        config: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.outbox = outbox
        self.timers = timers or TimerRegistry()
        self.view = view or LoggingView()
        self.config = config or settings
        self.rng = rng or random.Random()
        self.clock = clock
        self.bots = BotAgent(self)

    @property
    def state(self) -> GameState:
        return self.store.state

    def _require_host(self, action: str) -> None:
        if not self.state.is_host:
            raise ValidationError(f"Only the host can {action}")

    def _require_phase(self, phase: Phase, message: str) -> None:
        if self.state.phase != phase:
            raise ValidationError(message)

    # ── Views sent to peers ────────────────────────────────────────────────────

    def roster_for(self, viewer: Optional[Player]) -> List[Player]:
        return visible_roster(self.state.players, viewer, self.state.phase)

    def sync_payload(self, viewer: Optional[Player]) -> SyncPayload:
        s = self.state
        sees_murder_votes = viewer is not None and viewer.role == Role.TRAITOR
        return SyncPayload(
            players=self.roster_for(viewer),
            phase=s.phase,
            num_saboteurs=s.num_saboteurs,
            votes=dict(s.deliberation_votes),
            murder_votes=dict(s.murder_votes) if sees_murder_votes else {},
            murder_window_open=s.murder_window_open,
            deliberation_started_at=s.deliberation_started_at,
            winner=s.winner,
        )

    def send_sync_to(self, player_id: str) -> None:
        """Push a full stateSync to one player, e.g. the newly eliminated who now sees every role."""
        self.outbox.broadcast_roster(
            lambda p: StateSyncMessage(state=self.sync_payload(p)) if p.id == player_id else None
        )

    # ── Lobby ──────────────────────────────────────────────────────────────────

    def set_num_saboteurs(self, count: int) -> None:
        self._require_host("change the number of traitors")
        self._require_phase(Phase.LOBBY, "The number of traitors is fixed once the game starts")
        if count < 1:
            raise ValidationError("There must be at least one traitor")
        with self.store.mutate() as s:
            s.num_saboteurs = count

    def start_game(self) -> None:
        self._require_host("start the game")
        self._require_phase(Phase.LOBBY, "The game has already started")
        s = self.state
        total = len(s.players)
        if total < self.config.min_players:
            raise ValidationError(f"Need at least {self.config.min_players} players to start")
        if s.num_saboteurs < 1:
            raise ValidationError("There must be at least one traitor")
        if s.num_saboteurs >= total / 2:
            raise ValidationError("Too many traitors! Must be less than half the players.")

        with self.store.mutate() as s:
            for p in s.players:
                p.eliminated = False
                p.murdered = False
                p.has_voted = False
            s.players = assign_roles(s.players, s.num_saboteurs, self.rng)
            s.phase = Phase.ACTIVE
            s.winner = None
            s.deliberation_votes = {}
            s.murder_votes = {}
            s.murder_window_open = False
            s.murder_enabled_at = None
            s.tie_rounds = 0
            s.resolve_local_role()

        logger.info(f"[{s.code}] Game started: {total} players, {s.num_saboteurs} traitor(s)")
        self.outbox.broadcast_roster(lambda p: GameStartMessage(players=self.roster_for(p)))
        self.view.refresh(Screen.ROLE_REVEAL)

    # ── Deliberation ───────────────────────────────────────────────────────────

    def call_deliberation(self) -> None:
        self._require_host("call a deliberation")
        self._require_phase(Phase.ACTIVE, "A deliberation can only be called during play")

        with self.store.mutate() as s:
            s.phase = Phase.DELIBERATION
            s.deliberation_votes = {}
            s.reset_voted_flags()
            s.deliberation_started_at = self.clock()
            s.vote_round += 1
            s.tie_rounds = 0

        logger.info(f"[{s.code}] Deliberation called (round {s.vote_round})")
        self.outbox.broadcast(DeliberationStartMessage(start_time=s.deliberation_started_at))
        self.view.refresh(Screen.DELIBERATION)
        self.bots.schedule_deliberation_votes()

    def cast_vote(self, target_id: str) -> None:
        """Local player's deliberation vote. Peers apply it locally and ask the host."""
        s = self.state
        self._require_phase(Phase.DELIBERATION, "Votes can only be cast during deliberation")
        me = s.me
        if me is None or me.eliminated:
            raise ValidationError("You have been eliminated and cannot vote!")
        if target_id == me.id and not s.is_host:
            raise ValidationError("You cannot vote for yourself!")
        target = s.get_player(target_id)
        if target is None or target.eliminated:
            raise ValidationError("Invalid vote target")

        if s.is_host:
            self.record_vote(me.id, target_id)
        else:
            self.apply_vote(me.id, target_id)
            self.outbox.send_to_host(VoteMessage(voter_id=me.id, target_id=target_id))

    def record_vote(self, voter_id: str, target_id: str, sender_ref: Optional[str] = None) -> bool:
        """Host: validate, count and relay one deliberation vote. Latest vote per voter wins."""
        s = self.state
        voter = s.get_player(voter_id)
        target = s.get_player(target_id)
        if s.phase != Phase.DELIBERATION:
            logger.warning(f"[{s.code}] Vote from {voter_id} rejected: no deliberation in progress")
            return False
        if voter is None or voter.eliminated:
            logger.warning(f"[{s.code}] Vote from {voter_id} rejected: voter not alive")
            return False
        if target is None or target.eliminated:
            logger.warning(f"[{s.code}] Vote from {voter_id} rejected: invalid target {target_id}")
            return False

        with self.store.mutate() as s:
            s.deliberation_votes[voter_id] = target_id
            voter.has_voted = True

        self.outbox.broadcast(VoteMessage(voter_id=voter_id, target_id=target_id), exclude=sender_ref)
        self.view.refresh(Screen.DELIBERATION)
        if len(self._counted_votes()) == len(s.alive_players):
            self.view.notify("All players have voted! You can now eliminate a player.")
        return True

    def _counted_votes(self) -> Dict[str, str]:
        s = self.state
        alive = {p.id for p in s.alive_players}
        return {v: t for v, t in s.deliberation_votes.items() if v in alive and t in alive}

    def eliminate(self) -> Dict[str, Any]:
        """
        Tabulate a complete deliberation.

        Unique maximum → that player is eliminated and play returns to Active.
        Tie → votes clear and deliberation restarts, unless `max_tie_revotes`
        re-votes already happened, in which case the tie is broken at random.
        Raises IncompleteVoteError while any living player has not voted.
        """
        self._require_host("eliminate a player")
        self._require_phase(Phase.DELIBERATION, "No deliberation in progress")
        s = self.state
        counted = self._counted_votes()
        alive = s.alive_players
        if len(counted) < len(alive):
            raise IncompleteVoteError(len(counted), len(alive))

        outcome = resolve_deliberation(counted)
        if outcome["result"] == "tie":
            cap = self.config.max_tie_revotes
            if cap is not None and s.tie_rounds >= cap:
                chosen = self.rng.choice(outcome["tied"])
                logger.info(f"[{s.code}] Tie between {outcome['tied']} after {s.tie_rounds} re-votes, random pick: {chosen}")
                result = self._eliminate_player(chosen)
                result.update(tally=outcome["tally"], tied=outcome["tied"])
                return result
            self._restart_after_tie(outcome["tied"])
            return outcome

        result = self._eliminate_player(outcome["eliminated"])
        result["tally"] = outcome["tally"]
        return result

    def _restart_after_tie(self, tied: List[str]) -> None:
        s = self.state
        names = [p.name if p else "Unknown" for p in (s.get_player(pid) for pid in tied)]
        with self.store.mutate() as s:
            s.deliberation_votes = {}
            s.reset_voted_flags()
            s.tie_rounds += 1
            s.vote_round += 1

        logger.info(f"[{s.code}] Vote tied between {names}, re-vote #{s.tie_rounds}")
        self.outbox.broadcast(VoteTiedMessage(tied_player_names=names))
        self.view.notify(f"Vote tied between {' and '.join(names)}! Voting again...", Severity.ERROR)
        self.view.refresh(Screen.DELIBERATION)
        self.bots.schedule_deliberation_votes()

    def manual_eliminate(self, target_id: str) -> Dict[str, Any]:
        """Host picks the eliminated player directly, skipping the vote-count gate."""
        self._require_host("eliminate a player")
        self._require_phase(Phase.DELIBERATION, "No deliberation in progress")
        target = self.state.get_player(target_id)
        if target is None or target.eliminated:
            raise ValidationError("Invalid player selection")
        return self._eliminate_player(target_id)

    def _eliminate_player(self, target_id: str) -> Dict[str, Any]:
        with self.store.mutate() as s:
            target = s.get_player(target_id)
            target.eliminated = True
            s.phase = Phase.ACTIVE
            s.deliberation_votes = {}
            s.reset_voted_flags()
            s.drop_votes_of(target_id)
            s.deliberation_started_at = None
            s.tie_rounds = 0
        self.timers.cancel(DELIBERATION_BOTS)

        logger.info(f"[{s.code}] Eliminated {target.name} (role={target.role.value if target.role else None})")
        self.send_sync_to(target.id)
        self.outbox.broadcast(PlayerEliminatedMessage(
            player_id=target.id,
            player_name=target.name,
            role=target.role,
        ))
        self.view.refresh(Screen.ELIMINATION_REVEAL)
        return {"result": "eliminated", "eliminated": target.id, "role": target.role, "tied": []}

    def cancel_deliberation(self) -> None:
        self._require_host("cancel the deliberation")
        self._require_phase(Phase.DELIBERATION, "No deliberation in progress")
        with self.store.mutate() as s:
            s.phase = Phase.ACTIVE
            s.deliberation_votes = {}
            s.reset_voted_flags()
            s.deliberation_started_at = None
            s.tie_rounds = 0
        self.timers.cancel(DELIBERATION_BOTS)

        logger.info(f"[{s.code}] Deliberation cancelled")
        self.outbox.broadcast(DeliberationCancelledMessage())
        self.view.refresh(Screen.GAME)
        if s.murder_window_open:
            # Bot murder votes were keyed to the round the deliberation replaced.
            self.bots.schedule_murder_votes()
            self._schedule_reveal_if_complete()

    def continue_after_elimination(self) -> Optional[Winner]:
        """
        Leave the elimination reveal. On the host this runs the post-deliberation
        win check and, if play goes on, starts the murder timer for everyone.
        """
        s = self.state
        self.view.refresh(Screen.GAME)
        if not s.is_host or s.phase != Phase.ACTIVE:
            return s.winner

        winner = self.check_game_over(after_deliberation=True)
        if winner is not None:
            return winner

        enabled_at = self.clock() + murder_delay(s.players, self.config)
        self.outbox.broadcast(MurderTimerStartedMessage(murder_enabled_at=enabled_at))
        self.start_murder_timer(enabled_at)
        return None

    # ── Murder window ──────────────────────────────────────────────────────────

    def start_murder_timer(self, enabled_at: float) -> None:
        """Open the murder window at absolute time `enabled_at` (host and peers alike)."""
        s = self.state
        if s.phase == Phase.GAME_OVER:
            return

        delay = max(0.0, enabled_at - self.clock())
        with self.store.mutate() as s:
            s.murder_enabled_at = enabled_at
            s.murder_window_open = False
            s.murder_votes = {}
            s.vote_round += 1
        self.timers.cancel(MURDER_BOTS)
        self.timers.cancel(MURDER_REVEAL)
        self.timers.schedule(MURDER_WINDOW, s.vote_round, delay, self._open_murder_window)
        self.view.notify(
            f"Traitors may commit a murder any time from {round(delay)} seconds!",
            Severity.ERROR,
        )

    def _open_murder_window(self) -> None:
        s = self.state
        if s.phase == Phase.GAME_OVER:
            return
        with self.store.mutate() as s:
            s.murder_window_open = True
        logger.info(f"[{s.code}] Murder window open")

        me = s.me
        if s.local_role == Role.TRAITOR and me is not None and not me.eliminated and s.phase == Phase.ACTIVE:
            self.view.notify("You can now vote to murder an agent!")
            self.view.refresh(Screen.GAME)
        if s.is_host:
            self.bots.schedule_murder_votes()
            self._schedule_reveal_if_complete()

    def cast_murder_vote(self, target_id: str) -> None:
        s = self.state
        if not s.murder_window_open or s.phase != Phase.ACTIVE:
            raise ValidationError("The murder window is not open")
        me = s.me
        if s.local_role != Role.TRAITOR or me is None or me.eliminated:
            raise ValidationError("Only living traitors can vote to murder")
        target = s.get_player(target_id)
        if target is None or target.eliminated or target.role == Role.TRAITOR:
            raise ValidationError("Invalid murder target")

        if s.is_host:
            self.record_murder_vote(me.id, target_id)
        else:
            self.apply_murder_vote(me.id, target_id)
            self.outbox.send_to_host(MurderVoteMessage(voter_id=me.id, target_id=target_id))
        self.view.notify("Vote recorded. Waiting for other traitors...")

    def record_murder_vote(self, voter_id: str, target_id: str, sender_ref: Optional[str] = None) -> bool:
        """Host: count a murder vote only from a living traitor against a living agent."""
        s = self.state
        voter = s.get_player(voter_id)
        target = s.get_player(target_id)
        if not s.murder_window_open or s.phase != Phase.ACTIVE:
            logger.warning(f"[{s.code}] Murder vote from {voter_id} rejected: window closed")
            return False
        if voter is None or voter.eliminated or voter.role != Role.TRAITOR:
            logger.warning(f"[{s.code}] Murder vote from {voter_id} rejected: not a living traitor")
            return False
        if target is None or target.eliminated or target.role != Role.AGENT:
            logger.warning(f"[{s.code}] Murder vote from {voter_id} rejected: invalid target {target_id}")
            return False

        with self.store.mutate() as s:
            s.murder_votes[voter_id] = target_id

        message = MurderVoteMessage(voter_id=voter_id, target_id=target_id)
        self.outbox.broadcast_roster(
            lambda p: message if p.role == Role.TRAITOR else None,
            exclude=sender_ref,
        )
        if s.local_role == Role.TRAITOR:
            self.view.refresh(Screen.MURDER_VOTE)
        self._schedule_reveal_if_complete()
        return True

    def _counted_murder_votes(self) -> Dict[str, str]:
        s = self.state
        traitors = {p.id for p in s.alive_with_role(Role.TRAITOR)}
        agents = {p.id for p in s.alive_with_role(Role.AGENT)}
        return {v: t for v, t in s.murder_votes.items() if v in traitors and t in agents}

    def _schedule_reveal_if_complete(self) -> None:
        s = self.state
        traitors = s.alive_with_role(Role.TRAITOR)
        if traitors and len(self._counted_murder_votes()) == len(traitors):
            self.timers.schedule(MURDER_REVEAL, s.vote_round, self.config.auto_reveal_delay, self._auto_reveal)

    def _auto_reveal(self) -> None:
        s = self.state
        if not s.is_host or not s.murder_window_open or s.phase != Phase.ACTIVE:
            return
        if len(self._counted_murder_votes()) < len(s.alive_with_role(Role.TRAITOR)):
            return
        self.reveal_murder()

    def reveal_murder(self) -> str:
        self._require_host("reveal the murder")
        s = self.state
        if not s.murder_window_open:
            raise ValidationError("The murder window is not open")
        counted = self._counted_murder_votes()
        traitors = s.alive_with_role(Role.TRAITOR)
        if not counted or len(counted) < len(traitors):
            raise IncompleteVoteError(len(counted), len(traitors), who="traitors")

        murdered_id = pick_murder_target(counted, self.rng)
        with self.store.mutate() as s:
            victim = s.get_player(murdered_id)
            victim.eliminated = True
            victim.murdered = True
            s.murder_votes = {}
            s.murder_window_open = False
            s.murder_enabled_at = None
            s.drop_votes_of(murdered_id)
        for kind in (MURDER_WINDOW, MURDER_BOTS, MURDER_REVEAL):
            self.timers.cancel(kind)

        logger.info(f"[{s.code}] {victim.name} murdered")
        self.send_sync_to(victim.id)
        self.outbox.broadcast(PlayerMurderedMessage(player_id=victim.id, player_name=victim.name))
        self.view.notify(f"{victim.name} was MURDERED by the traitors!", Severity.ERROR)
        self.view.refresh(Screen.GAME)
        self.check_game_over()
        return murdered_id

    # ── Win condition ──────────────────────────────────────────────────────────

    def check_game_over(self, after_deliberation: bool = False) -> Optional[Winner]:
        """
        Host-side win check. Once the game is over the stored winner is
        returned unchanged by every later call.
        """
        s = self.state
        if s.phase == Phase.GAME_OVER:
            return s.winner
        if not s.is_host or s.phase == Phase.LOBBY:
            return None

        winner = evaluate_winner(s.players, after_deliberation=after_deliberation)
        if winner is None:
            return None

        with self.store.mutate() as s:
            s.phase = Phase.GAME_OVER
            s.winner = winner
            s.deliberation_votes = {}
            s.murder_votes = {}
            s.murder_window_open = False
            s.murder_enabled_at = None
        self.timers.cancel_all()

        logger.info(f"[{s.code}] Game over: {winner.value} win")
        self.outbox.broadcast(GameOverMessage(winner=winner, players=s.players))
        self.view.refresh(Screen.GAME_OVER)
        return winner

    # ── Roster changes (host) ──────────────────────────────────────────────────

    def remove_player(self, player_id: str) -> Optional[Player]:
        s = self.state
        player = s.get_player(player_id)
        if player is None:
            return None
        with self.store.mutate() as s:
            s.players = [p for p in s.players if p.id != player_id]
            s.drop_votes_of(player_id)

        logger.info(f"[{s.code}] Removed {player.name} ({len(s.players)} left)")
        self.outbox.broadcast_roster(lambda p: PlayerRemovedMessage(
            player_id=player.id,
            player_name=player.name,
            players=self.roster_for(p),
        ))
        if s.phase == Phase.LOBBY:
            self.view.refresh(Screen.HOST_SETUP)
        elif s.phase in (Phase.ACTIVE, Phase.DELIBERATION):
            self.check_game_over()
        return player

    def resume_as_host(self) -> Optional[Winner]:
        """Pick the game up after a failover promotion or a host restart."""
        winner = self.check_game_over()
        if winner is not None:
            return winner
        s = self.state
        if s.phase == Phase.DELIBERATION:
            self.bots.schedule_deliberation_votes()
        elif s.murder_window_open:
            self.bots.schedule_murder_votes()
            self._schedule_reveal_if_complete()
        return None

    # ── Peer replica (wholesale replacement from host broadcasts) ──────────────

    def apply_sync(self, payload: SyncPayload) -> None:
        with self.store.mutate() as s:
            s.players = [p.model_copy() for p in payload.players]
            s.phase = payload.phase
            s.num_saboteurs = payload.num_saboteurs
            s.deliberation_votes = dict(payload.votes)
            s.murder_votes = dict(payload.murder_votes)
            s.murder_window_open = payload.murder_window_open
            s.deliberation_started_at = payload.deliberation_started_at
            s.winner = payload.winner
            s.resolve_local_role()
        if s.phase == Phase.GAME_OVER:
            self.timers.cancel_all()
        self.view.refresh(PHASE_SCREENS[s.phase])

    def apply_roster(self, players: List[Player]) -> None:
        with self.store.mutate() as s:
            s.players = [p.model_copy() for p in players]
            s.resolve_local_role()
        if s.phase == Phase.LOBBY:
            self.view.refresh(Screen.WAITING_ROOM)

    def apply_game_start(self, players: List[Player]) -> None:
        with self.store.mutate() as s:
            s.players = [p.model_copy() for p in players]
            s.phase = Phase.ACTIVE
            s.winner = None
            s.deliberation_votes = {}
            s.murder_votes = {}
            s.murder_window_open = False
            s.resolve_local_role()
        self.view.refresh(Screen.ROLE_REVEAL)

    def apply_deliberation_start(self, start_time: float) -> None:
        with self.store.mutate() as s:
            s.phase = Phase.DELIBERATION
            s.deliberation_votes = {}
            s.reset_voted_flags()
            s.deliberation_started_at = start_time
        self.view.refresh(Screen.DELIBERATION)

    def apply_vote(self, voter_id: str, target_id: str) -> None:
        with self.store.mutate() as s:
            s.deliberation_votes[voter_id] = target_id
            voter = s.get_player(voter_id)
            if voter is not None:
                voter.has_voted = True
        if s.phase == Phase.DELIBERATION:
            self.view.refresh(Screen.DELIBERATION)

    def apply_vote_tied(self, tied_names: List[str]) -> None:
        with self.store.mutate() as s:
            s.phase = Phase.DELIBERATION
            s.deliberation_votes = {}
            s.reset_voted_flags()
        self.view.notify(f"Vote tied between {' and '.join(tied_names)}! Voting again...", Severity.ERROR)
        self.view.refresh(Screen.DELIBERATION)

    def apply_deliberation_cancelled(self) -> None:
        with self.store.mutate() as s:
            s.phase = Phase.ACTIVE
            s.deliberation_votes = {}
            s.reset_voted_flags()
            s.deliberation_started_at = None
        self.view.notify("Deliberation cancelled by host", Severity.ERROR)
        self.view.refresh(Screen.GAME)

    def apply_player_eliminated(self, player_id: str, role: Optional[Role]) -> None:
        with self.store.mutate() as s:
            target = s.get_player(player_id)
            if target is not None:
                target.eliminated = True
                target.role = role
            s.phase = Phase.ACTIVE
            s.deliberation_votes = {}
            s.reset_voted_flags()
            s.deliberation_started_at = None
        self.view.refresh(Screen.ELIMINATION_REVEAL)

    def apply_murder_vote(self, voter_id: str, target_id: str) -> None:
        s = self.state
        if s.local_role != Role.TRAITOR:
            logger.debug(f"[{s.code}] Murder vote ignored: local role is not traitor")
            return
        with self.store.mutate() as s:
            s.murder_votes[voter_id] = target_id
        self.view.refresh(Screen.MURDER_VOTE)

    def apply_player_murdered(self, player_id: str, player_name: str) -> None:
        with self.store.mutate() as s:
            target = s.get_player(player_id)
            if target is not None:
                target.eliminated = True
                target.murdered = True
            s.murder_votes = {}
            s.murder_window_open = False
            s.murder_enabled_at = None
        self.timers.cancel(MURDER_WINDOW)
        self.view.notify(f"{player_name} was MURDERED by the traitors!", Severity.ERROR)
        self.view.refresh(Screen.GAME)

    def apply_game_over(self, winner: Winner, players: List[Player]) -> None:
        with self.store.mutate() as s:
            s.players = [p.model_copy() for p in players]
            s.phase = Phase.GAME_OVER
            s.winner = winner
            s.deliberation_votes = {}
            s.murder_votes = {}
            s.murder_window_open = False
            s.murder_enabled_at = None
            s.resolve_local_role()
        self.timers.cancel_all()
        self.view.refresh(Screen.GAME_OVER)
