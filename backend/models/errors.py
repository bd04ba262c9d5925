"""
Error taxonomy for the sync core.

ValidationError is raised by local operations before anything is mutated.
ProtocolViolationError is raised while decoding or admitting an inbound
message and is logged by the dispatcher. TransportError covers the channel.
"""


class GameError(Exception):
    """Base for every error raised by the game core."""


class ValidationError(GameError):
    """A local action was rejected: bad counts, bad code, wrong phase or role."""


class IncompleteVoteError(ValidationError):
    """Tabulation was requested before every living player voted."""

    def __init__(self, voted: int, alive: int, who: str = "players"):
        super().__init__(f"Not all {who} have voted yet ({voted}/{alive})")
        self.voted = voted
        self.alive = alive


class ProtocolViolationError(GameError):
    """An inbound message is malformed or was sent by a peer without the privilege."""


class TransportError(GameError):
    """Connect, send or open failure on the peer channel."""


class PeerIdUnavailableError(TransportError):
    """The signalling side still holds the requested peer id."""


class StateDesyncError(GameError):
    """The local replica cannot be trusted to continue as authority."""
