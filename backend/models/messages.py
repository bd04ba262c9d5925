"""
Wire protocol: one pydantic model per message kind, discriminated on `type`.

Every host→peer message that carries roster or vote data is applied by the
receiver as a wholesale replacement of that substructure. Peer→host messages
are requests; the host re-validates them before anything is counted.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from models.errors import ProtocolViolationError
from models.game import Phase, Player, Role, Winner, WireModel


class SyncPayload(WireModel):
    players: List[Player]
    phase: Phase
    num_saboteurs: int
    votes: Dict[str, str] = {}
    murder_votes: Dict[str, str] = {}
    murder_window_open: bool = False
    deliberation_started_at: Optional[float] = None
    winner: Optional[Winner] = None


# ── Peer → host ───────────────────────────────────────────────────────────────

class JoinMessage(WireModel):
    type: Literal["join"] = "join"
    player_id: str
    player_name: str


class PlayerLeftMessage(WireModel):
    type: Literal["playerLeft"] = "playerLeft"
    player_id: str
    player_name: str = ""


class RequestStateSyncMessage(WireModel):
    type: Literal["requestStateSync"] = "requestStateSync"
    player_id: str
    player_name: str = ""  # lets the host re-admit a player it already dropped


# ── Any peer (host re-validates and relays) ───────────────────────────────────

class VoteMessage(WireModel):
    type: Literal["vote"] = "vote"
    voter_id: str
    target_id: str


class MurderVoteMessage(WireModel):
    type: Literal["murderVote"] = "murderVote"
    voter_id: str
    target_id: str


# ── Host → peers ──────────────────────────────────────────────────────────────

class GameStateMessage(WireModel):
    type: Literal["gameState"] = "gameState"
    state: SyncPayload


class StateSyncMessage(WireModel):
    type: Literal["stateSync"] = "stateSync"
    state: SyncPayload


class PlayerJoinedMessage(WireModel):
    type: Literal["playerJoined"] = "playerJoined"
    player_name: str
    players: List[Player]


class PlayerRemovedMessage(WireModel):
    type: Literal["playerRemoved"] = "playerRemoved"
    player_id: Optional[str] = None
    player_name: Optional[str] = None
    players: List[Player]


class GameStartMessage(WireModel):
    type: Literal["gameStart"] = "gameStart"
    players: List[Player]


class DeliberationStartMessage(WireModel):
    type: Literal["deliberationStart"] = "deliberationStart"
    start_time: float


class VoteTiedMessage(WireModel):
    type: Literal["voteTied"] = "voteTied"
    tied_player_names: List[str]


class DeliberationCancelledMessage(WireModel):
    type: Literal["deliberationCancelled"] = "deliberationCancelled"


class PlayerEliminatedMessage(WireModel):
    type: Literal["playerEliminated"] = "playerEliminated"
    player_id: str
    player_name: str
    role: Optional[Role] = None


class MurderTimerStartedMessage(WireModel):
    type: Literal["murderTimerStarted"] = "murderTimerStarted"
    murder_enabled_at: float  # absolute epoch seconds


class PlayerMurderedMessage(WireModel):
    type: Literal["playerMurdered"] = "playerMurdered"
    player_id: str
    player_name: str


class GameOverMessage(WireModel):
    type: Literal["gameOver"] = "gameOver"
    winner: Winner
    players: List[Player]


class GameCancelledMessage(WireModel):
    type: Literal["gameCancelled"] = "gameCancelled"


Message = Annotated[
    Union[
        JoinMessage,
        GameStateMessage,
        PlayerJoinedMessage,
        PlayerLeftMessage,
        PlayerRemovedMessage,
        GameStartMessage,
        DeliberationStartMessage,
        VoteMessage,
        VoteTiedMessage,
        DeliberationCancelledMessage,
        PlayerEliminatedMessage,
        MurderTimerStartedMessage,
        MurderVoteMessage,
        PlayerMurderedMessage,
        GameOverMessage,
        GameCancelledMessage,
        RequestStateSyncMessage,
        StateSyncMessage,
    ],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter = TypeAdapter(Message)

HOST_TO_PEER = frozenset({
    "gameState",
    "stateSync",
    "playerJoined",
    "playerRemoved",
    "gameStart",
    "deliberationStart",
    "voteTied",
    "deliberationCancelled",
    "playerEliminated",
    "murderTimerStarted",
    "playerMurdered",
    "gameOver",
    "gameCancelled",
})
PEER_TO_HOST = frozenset({"join", "playerLeft", "requestStateSync"})
ANY_PEER = frozenset({"vote", "murderVote"})


def encode(message: WireModel) -> Dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True)


def decode(data: Any) -> Message:
    """Parse a raw channel value into a typed message.

    Raises ProtocolViolationError for unknown kinds or malformed payloads.
    """
    try:
        return _message_adapter.validate_python(data)
    except PydanticValidationError as exc:
        kind = data.get("type") if isinstance(data, dict) else type(data).__name__
        raise ProtocolViolationError(f"Undecodable '{kind}' message: {exc.error_count()} error(s)") from exc
