import logging
from abc import ABC, abstractmethod
from enum import Enum

logger = logging.getLogger(__name__)


class Screen(str, Enum):
    WELCOME = "welcome"
    JOIN = "join"
    HOST_SETUP = "host_setup"
    WAITING_ROOM = "waiting_room"
    ROLE_REVEAL = "role_reveal"
    GAME = "game"
    DELIBERATION = "deliberation"
    ELIMINATION_REVEAL = "elimination_reveal"
    MURDER_VOTE = "murder_vote"
    GAME_OVER = "game_over"


class Severity(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class GameView(ABC):
    """Rendering collaborator. Called synchronously after each mutation."""

    @abstractmethod
    def refresh(self, screen: Screen) -> None:
        ...

    @abstractmethod
    def notify(self, text: str, severity: Severity = Severity.SUCCESS) -> None:
        ...


class LoggingView(GameView):
    """Headless view: screen changes and notifications go to the log."""

    def refresh(self, screen: Screen) -> None:
        logger.debug(f"Render {screen.value}")

    def notify(self, text: str, severity: Severity = Severity.SUCCESS) -> None:
        if severity == Severity.ERROR:
            logger.warning(text)
        else:
            logger.info(text)
