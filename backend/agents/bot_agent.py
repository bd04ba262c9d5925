"""
Bot Agent: debug voters that let one person play a full game.

Bots live only in the host's roster. They never hold a connection; every bot
vote is produced here and counted through the same GameMaster entry points a
human vote goes through, so host-side eligibility checks apply to bots too.

Each bot votes once per round after an independent uniform delay. Callbacks
are registered with the TimerRegistry under the current vote round, so a bot
timer left over from a superseded round is cancelled rather than fired.
"""
import logging
from functools import partial
from typing import List

from models.errors import ValidationError
from models.game import BOT_NAMES, Phase, Player, Role, generate_id
from models.messages import PlayerJoinedMessage, PlayerRemovedMessage
from services.timers import DELIBERATION_BOTS, MURDER_BOTS
from services.view import Screen

logger = logging.getLogger(__name__)

BOT_ID_PREFIX = "bot-"


class BotAgent:
    def __init__(self, gm):
        self.gm = gm

    @property
    def state(self):
        return self.gm.state

    def _delay(self) -> float:
        cfg = self.gm.config
        return self.gm.rng.uniform(cfg.bot_vote_min_delay, cfg.bot_vote_max_delay)

    # ── Roster ─────────────────────────────────────────────────────────────────

    def add_bots(self) -> List[Player]:
        s = self.state
        if not s.is_host:
            raise ValidationError("Only the host can add bots")
        if s.phase != Phase.LOBBY:
            raise ValidationError("Bots can only be added in the lobby")
        if any(p.is_bot for p in s.players):
            raise ValidationError("Bots have already been added")

        bots = [
            Player(id=f"{BOT_ID_PREFIX}{generate_id(self.gm.rng)}", name=name, is_bot=True)
            for name in BOT_NAMES
        ]
        with self.gm.store.mutate() as s:
            s.players.extend(bots)

        logger.info(f"[{s.code}] Added {len(bots)} bots ({len(s.players)} players)")
        self.gm.outbox.broadcast_roster(lambda p: PlayerJoinedMessage(
            player_name=f"{len(bots)} bots",
            players=self.gm.roster_for(p),
        ))
        self.gm.view.notify(f"Added {len(bots)} bots")
        self.gm.view.refresh(Screen.HOST_SETUP)
        return bots

    def remove_bots(self) -> int:
        s = self.state
        if not s.is_host:
            raise ValidationError("Only the host can remove bots")
        if s.phase != Phase.LOBBY:
            raise ValidationError("Bots can only be removed in the lobby")

        removed = [p for p in s.players if p.is_bot]
        if not removed:
            return 0
        with self.gm.store.mutate() as s:
            s.players = [p for p in s.players if not p.is_bot]

        logger.info(f"[{s.code}] Removed {len(removed)} bots")
        self.gm.outbox.broadcast_roster(lambda p: PlayerRemovedMessage(
            players=self.gm.roster_for(p),
        ))
        self.gm.view.refresh(Screen.HOST_SETUP)
        return len(removed)

    # ── Voting ─────────────────────────────────────────────────────────────────

    def schedule_deliberation_votes(self) -> int:
        """Schedule one vote per living bot for the current deliberation round."""
        s = self.state
        if not s.is_host or s.phase != Phase.DELIBERATION:
            return 0
        bots = [p for p in s.alive_players if p.is_bot and p.id not in s.deliberation_votes]
        for bot in bots:
            self.gm.timers.schedule(
                DELIBERATION_BOTS,
                s.vote_round,
                self._delay(),
                partial(self._deliberation_vote, bot.id, s.vote_round),
            )
        return len(bots)

    def _deliberation_vote(self, bot_id: str, round_id: int) -> None:
        s = self.state
        bot = s.get_player(bot_id)
        if s.phase != Phase.DELIBERATION or s.vote_round != round_id:
            return
        if bot is None or bot.eliminated or bot_id in s.deliberation_votes:
            return
        targets = [p for p in s.alive_players if p.id != bot_id]
        if not targets:
            return
        target = self.gm.rng.choice(targets)
        logger.debug(f"[{s.code}] {bot.name} votes for {target.name}")
        self.gm.record_vote(bot_id, target.id)

    def schedule_murder_votes(self) -> int:
        """Schedule one murder vote per living bot traitor while the window is open."""
        s = self.state
        if not s.is_host or not s.murder_window_open:
            return 0
        bots = [
            p for p in s.alive_with_role(Role.TRAITOR)
            if p.is_bot and p.id not in s.murder_votes
        ]
        for bot in bots:
            self.gm.timers.schedule(
                MURDER_BOTS,
                s.vote_round,
                self._delay(),
                partial(self._murder_vote, bot.id, s.vote_round),
            )
        return len(bots)

    def _murder_vote(self, bot_id: str, round_id: int) -> None:
        s = self.state
        bot = s.get_player(bot_id)
        if not s.murder_window_open or s.phase != Phase.ACTIVE or s.vote_round != round_id:
            return
        if bot is None or bot.eliminated or bot_id in s.murder_votes:
            return
        targets = s.alive_with_role(Role.AGENT)
        if not targets:
            return
        target = self.gm.rng.choice(targets)
        logger.debug(f"[{s.code}] {bot.name} votes to murder {target.name}")
        self.gm.record_murder_vote(bot_id, target.id)
