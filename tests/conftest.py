"""Pytest configuration and fixtures."""

import asyncio
import random

import pytest

from agents.game_master import GameMaster, Outbox
from config import Settings
from models.game import GameState, Phase, Player, Role
from services.channel import Connection
from services.state_store import MemorySnapshotStore, StateStore
from services.timers import TimerRegistry
from services.view import GameView, Severity


class FakeHandle:
    def __init__(self, kind, delay, fn):
        self.kind = kind
        self.delay = delay
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class ManualTimers(TimerRegistry):
    """Timer registry whose callbacks only run when the test fires them."""

    def __init__(self):
        super().__init__()
        self.handles = []
        self._kind = None

    def schedule(self, kind, round_id, delay, callback):
        self._kind = kind
        super().schedule(kind, round_id, delay, callback)

    def _call_later(self, delay, fn):
        handle = FakeHandle(self._kind, delay, fn)
        self.handles.append(handle)
        return handle

    def live(self, kind=None):
        return [
            h for h in self.handles
            if not h.cancelled and not h.fired and (kind is None or h.kind == kind)
        ]

    def fire_all(self, kind=None, max_passes=20):
        """Fire every live handle, including ones scheduled by fired callbacks."""
        fired = 0
        for _ in range(max_passes):
            batch = self.live(kind)
            if not batch:
                break
            for handle in batch:
                if handle.cancelled:
                    continue
                handle.fired = True
                handle.fn()
                fired += 1
        return fired


class RecordingView(GameView):
    def __init__(self):
        self.screens = []
        self.notes = []

    def refresh(self, screen):
        self.screens.append(screen)

    def notify(self, text, severity=Severity.SUCCESS):
        self.notes.append((text, severity))

    def texts(self):
        return [text for text, _ in self.notes]


class RecordingOutbox(Outbox):
    """Captures host sends; per-player messages go to every non-local player with a channel."""

    def __init__(self, store):
        self.store = store
        self.broadcasts = []
        self.direct = []
        self.to_host = []

    def broadcast(self, message, exclude=None):
        self.broadcasts.append((message, exclude))

    def broadcast_roster(self, build, exclude=None):
        s = self.store.state
        for player in s.players:
            if player.id == s.local_player_id or not player.connection_ref:
                continue
            if player.connection_ref == exclude:
                continue
            message = build(player)
            if message is not None:
                self.direct.append((player.id, message))

    def send_to_host(self, message):
        self.to_host.append(message)

    def types(self):
        return [m.type for m, _ in self.broadcasts]

    def direct_to(self, player_id):
        return [m for pid, m in self.direct if pid == player_id]


class FakeConnection(Connection):
    """Open connection that records what the local side sends."""

    def __init__(self, peer):
        super().__init__(peer)
        self.is_open = True
        self.sent = []

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.is_open = False

    def types(self):
        return [d["type"] for d in self.sent]


def make_players(*specs):
    """specs: (id, name, role) tuples; the first one is the host."""
    players = []
    for i, (pid, name, role) in enumerate(specs):
        players.append(Player(
            id=pid,
            name=name,
            role=role,
            is_host=i == 0,
            connection_ref="ABCD" if i == 0 else f"peer-{pid}",
        ))
    return players


@pytest.fixture
def config():
    """Settings with no .env influence."""
    return Settings(_env_file=None, peer_id_settle_delay=0.0)


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def view():
    return RecordingView()


@pytest.fixture
def host_state():
    """Host lobby with three players, roles unassigned."""
    state = GameState(code="ABCD", player_name="Hana", local_player_id="p1", is_host=True)
    state.players = make_players(("p1", "Hana", None), ("p2", "Ben", None), ("p3", "Cleo", None))
    return state


@pytest.fixture
def host_store(host_state):
    return StateStore(MemorySnapshotStore(), host_state)


@pytest.fixture
def outbox(host_store):
    return RecordingOutbox(host_store)


@pytest.fixture
def clock():
    return lambda: 1000.0


@pytest.fixture
def gm(host_store, outbox, timers, view, config, rng, clock):
    return GameMaster(host_store, outbox, timers=timers, view=view, config=config, rng=rng, clock=clock)


@pytest.fixture
def active_gm(gm):
    """Five players mid-game: p1 host agent, p2 and p3 traitors, p4 and p5 agents."""
    s = gm.state
    s.players = make_players(
        ("p1", "Hana", Role.AGENT),
        ("p2", "Ben", Role.TRAITOR),
        ("p3", "Cleo", Role.TRAITOR),
        ("p4", "Dev", Role.AGENT),
        ("p5", "Eli", Role.AGENT),
    )
    s.num_saboteurs = 2
    s.phase = Phase.ACTIVE
    s.resolve_local_role()
    return gm


async def settle(rounds=30):
    """Let call_soon deliveries on the local network run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
