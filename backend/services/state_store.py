import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from config import settings
from models.game import GameState

logger = logging.getLogger(__name__)


class SnapshotStore(ABC):
    """Opaque load/save of one serialisable snapshot record."""

    @abstractmethod
    def save(self, snapshot: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """The last saved snapshot, or None."""

    @abstractmethod
    def clear(self) -> None:
        ...


class MemorySnapshotStore(SnapshotStore):
    def __init__(self):
        self.data: Optional[str] = None

    def save(self, snapshot: Dict[str, Any]) -> None:
        self.data = json.dumps(snapshot)

    def load(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.data) if self.data is not None else None

    def clear(self) -> None:
        self.data = None


class JsonFileSnapshotStore(SnapshotStore):
    """Snapshot in a JSON file; a corrupt file is discarded on load."""

    def __init__(self, path: str):
        self.path = path

    def save(self, snapshot: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot, f)
        os.replace(tmp_path, self.path)

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Failed to load game state from {self.path}: {exc}")
            self.clear()
            return None

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


class StateStore:
    """
    Owner of the one GameState instance for this client.

    Mutations go through mutate() (or replace()) so every change that matters
    to other players is persisted before the handler returns.
    """

    def __init__(self, persistence: Optional[SnapshotStore] = None, state: Optional[GameState] = None):
        self.persistence = persistence
        self._state = state or GameState()

    @property
    def state(self) -> GameState:
        return self._state

    def replace(self, state: GameState, persist: bool = True) -> None:
        self._state = state
        if persist:
            self.save()

    @contextmanager
    def mutate(self, persist: bool = True) -> Iterator[GameState]:
        yield self._state
        if persist:
            self.save()

    def save(self) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.save(self._state.to_snapshot())
        except OSError as exc:
            logger.error(f"[{self._state.code}] Failed to save game state: {exc}")

    def load(self) -> Optional[GameState]:
        """Rebuild state from the last snapshot. Transient fields start cleared."""
        if self.persistence is None:
            return None
        snapshot = self.persistence.load()
        if not snapshot:
            return None
        try:
            restored = GameState.from_snapshot(snapshot)
        except ValueError as exc:
            logger.error(f"Discarding unreadable game snapshot: {exc}")
            self.persistence.clear()
            return None
        self._state = restored
        return restored

    def clear(self) -> GameState:
        """Back to an empty lobby, keeping the local name and identity."""
        old = self._state
        self._state = GameState(
            player_name=old.player_name,
            local_player_id=old.local_player_id,
        )
        if self.persistence is not None:
            self.persistence.clear()
        return self._state


_snapshot_store: Optional[SnapshotStore] = None


def get_snapshot_store() -> SnapshotStore:
    """Lazy singleton: the file path is read from settings on first call."""
    global _snapshot_store
    if _snapshot_store is None:
        _snapshot_store = JsonFileSnapshotStore(settings.snapshot_path)
    return _snapshot_store
