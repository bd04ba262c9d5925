from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from enum import Enum
import random
import string

from models.errors import ValidationError


class Role(str, Enum):
    AGENT = "agent"
    TRAITOR = "traitor"


class Phase(str, Enum):
    LOBBY = "lobby"
    ACTIVE = "active"
    DELIBERATION = "deliberation"
    GAME_OVER = "game_over"


class Winner(str, Enum):
    AGENTS = "agents"
    TRAITORS = "traitors"


# No I or O: they read as 1 and 0 on a phone screen.
GAME_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ"
GAME_CODE_LENGTH = 4

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_LENGTH = 13

BOT_NAMES: List[str] = ["Bot Alice", "Bot Bob", "Bot Carol", "Bot Dave", "Bot Eve"]


def generate_game_code(rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return "".join(rng.choice(GAME_CODE_ALPHABET) for _ in range(GAME_CODE_LENGTH))


def generate_id(rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return "".join(rng.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


def normalize_game_code(raw: str) -> str:
    """Upper-case and validate a user-typed game code.

    Raises ValidationError when the code is not exactly four letters from
    GAME_CODE_ALPHABET.
    """
    code = (raw or "").strip().upper()
    if len(code) != GAME_CODE_LENGTH or any(c not in GAME_CODE_ALPHABET for c in code):
        raise ValidationError(f"Invalid game code: '{raw}'")
    return code


class WireModel(BaseModel):
    """Base for everything that crosses the channel or lands in a snapshot."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Player(WireModel):
    id: str
    name: str
    role: Optional[Role] = None  # None = unassigned, or hidden from this viewer
    eliminated: bool = False
    murdered: bool = False
    has_voted: bool = False
    is_host: bool = False
    is_bot: bool = False
    connection_ref: Optional[str] = None  # remote peer id the host reaches this player on


# Fields that survive a restart. Votes, timers and round counters are
# re-synced from the host after resume.
PERSISTED_FIELDS = {
    "code",
    "player_name",
    "local_player_id",
    "is_host",
    "local_role",
    "players",
    "num_saboteurs",
    "phase",
    "winner",
    "murder_window_open",
}


class GameState(WireModel):
    code: str = ""
    player_name: str = ""
    local_player_id: str = Field(default_factory=generate_id)
    is_host: bool = False
    local_role: Optional[Role] = None
    players: List[Player] = []
    num_saboteurs: int = 1
    phase: Phase = Phase.LOBBY
    winner: Optional[Winner] = None

    # Transient
    deliberation_votes: Dict[str, str] = {}  # voter_id → target_id
    murder_votes: Dict[str, str] = {}        # voter_id → target_id
    murder_window_open: bool = False
    murder_enabled_at: Optional[float] = None
    deliberation_started_at: Optional[float] = None
    vote_round: int = 0
    tie_rounds: int = 0

    # ── Roster helpers ────────────────────────────────────────────────────────

    def get_player(self, player_id: Optional[str]) -> Optional[Player]:
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    def find_by_connection(self, peer_id: str) -> Optional[Player]:
        for p in self.players:
            if p.connection_ref == peer_id:
                return p
        return None

    @property
    def me(self) -> Optional[Player]:
        return self.get_player(self.local_player_id)

    @property
    def host_player(self) -> Optional[Player]:
        for p in self.players:
            if p.is_host:
                return p
        return None

    @property
    def alive_players(self) -> List[Player]:
        return [p for p in self.players if not p.eliminated]

    def alive_with_role(self, role: Role) -> List[Player]:
        return [p for p in self.players if not p.eliminated and p.role == role]

    def reset_voted_flags(self) -> None:
        for p in self.players:
            p.has_voted = False

    def drop_votes_of(self, player_id: str) -> None:
        """Forget everything a departed player voted, and every vote against them."""
        for votes in (self.deliberation_votes, self.murder_votes):
            for voter, target in list(votes.items()):
                if voter == player_id or target == player_id:
                    votes.pop(voter)
        for p in self.players:
            if p.has_voted and p.id not in self.deliberation_votes:
                p.has_voted = False

    def resolve_local_role(self) -> None:
        me = self.me
        if me is not None:
            self.local_role = me.role

    # ── Snapshot ──────────────────────────────────────────────────────────────

    def to_snapshot(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, include=PERSISTED_FIELDS)

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "GameState":
        known = {cls.model_fields[f].alias or f for f in PERSISTED_FIELDS} | PERSISTED_FIELDS
        return cls.model_validate({k: v for k, v in data.items() if k in known})
