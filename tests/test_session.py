"""Integration tests: whole sessions talking over the in-process network."""

import asyncio
import random

import pytest

from agents.session import GameSession
from conftest import RecordingView, make_players, settle
from local_transport import LocalNetwork
from models.errors import PeerIdUnavailableError, ValidationError
from models.game import GameState, Phase, Player, Role
from services.relay_client import RelayPeer
from services.state_store import MemorySnapshotStore, StateStore
from services.timers import JOIN_TIMEOUT
from services.view import Screen


@pytest.fixture
def network():
    return LocalNetwork()


def make_session(network, player_id, config, persistence=None, seed=0):
    store = StateStore(persistence or MemorySnapshotStore(), GameState(local_player_id=player_id))
    return GameSession(
        network.create_peer,
        store=store,
        view=RecordingView(),
        config=config,
        rng=random.Random(seed),
    )


async def start_lobby(network, config, *peer_ids, persistence=None):
    host = make_session(network, "h-0", config, seed=1)
    code = await host.host_game("Hana")
    peers = []
    for i, pid in enumerate(peer_ids):
        peer = make_session(network, pid, config, persistence=persistence if i == 0 else None, seed=10 + i)
        await peer.join_game(code.lower(), f"Player {pid}")
        await settle()
        peers.append(peer)
    return host, peers


def shutdown(*sessions):
    for session in sessions:
        session.timers.cancel_all()
        if session.peer is not None:
            session.peer.destroy()


class TestJoin:
    """Tests for hosting and joining."""

    @pytest.mark.asyncio
    async def test_host_and_join(self, network, config):
        host, (a, b) = await start_lobby(network, config, "p-a", "p-b")

        assert len(host.state.code) == 4
        assert [p.id for p in host.state.players] == ["h-0", "p-a", "p-b"]
        assert host.channels.count() == 2
        for peer in (a, b):
            assert peer.state.code == host.state.code
            assert [p.id for p in peer.state.players] == ["h-0", "p-a", "p-b"]
            assert peer.state.phase == Phase.LOBBY
            assert not peer.state.is_host
        assert "Joined game!" in a.view.texts()
        shutdown(host, a, b)

    @pytest.mark.asyncio
    async def test_join_unknown_code(self, network, config):
        peer = make_session(network, "p-a", config)

        await peer.join_game("WXYZ", "Ben")
        await settle()

        assert "Game not found. Check the code and try again." in peer.view.texts()
        assert peer.peer is None
        assert peer.view.screens[-1] == Screen.JOIN

    @pytest.mark.asyncio
    async def test_bad_code_rejected_before_connecting(self, network, config):
        peer = make_session(network, "p-a", config)
        with pytest.raises(ValidationError):
            await peer.join_game("AB", "Ben")
        assert peer.peer is None

    @pytest.mark.asyncio
    async def test_name_required(self, network, config):
        host = make_session(network, "h-0", config)
        with pytest.raises(ValidationError):
            await host.host_game("   ")


class TestPeerIdRetry:
    """Tests for peer id acquisition."""

    @pytest.mark.asyncio
    async def test_retries_until_free(self, network, config):
        await network.create_peer("ZZZZ").open()
        session = make_session(network, "h-0", config)
        ids = iter(["ZZZZ", "ZZZZ", "WXYZ"])

        peer = await session._open_peer(lambda: next(ids))

        assert peer.id == "WXYZ"
        assert network.peers["WXYZ"] is peer

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, network, config):
        await network.create_peer("ZZZZ").open()
        session = make_session(network, "h-0", config)
        attempts = []

        def next_id():
            attempts.append(1)
            return "ZZZZ"

        with pytest.raises(PeerIdUnavailableError):
            await session._open_peer(next_id)
        assert len(attempts) == config.peer_id_retries + 1


class TestGameFlow:
    """Tests for votes travelling between host and peers."""

    @pytest.mark.asyncio
    async def test_vote_relay(self, network, config):
        host, (a, b) = await start_lobby(network, config, "p-a", "p-b")

        host.gm.start_game()
        await settle()
        for peer in (a, b):
            assert peer.state.phase == Phase.ACTIVE
            assert peer.state.local_role == host.state.get_player(peer.state.local_player_id).role

        host.gm.call_deliberation()
        await settle()
        assert a.state.phase == Phase.DELIBERATION

        a.gm.cast_vote("h-0")
        await settle()

        assert host.state.deliberation_votes == {"p-a": "h-0"}
        assert b.state.deliberation_votes == {"p-a": "h-0"}
        assert host.state.get_player("p-a").has_voted
        shutdown(host, a, b)

    @pytest.mark.asyncio
    async def test_elimination_reaches_peers(self, network, config):
        host, (a, b) = await start_lobby(network, config, "p-a", "p-b")
        host.gm.start_game()
        host.gm.call_deliberation()
        await settle()

        host.gm.manual_eliminate("p-b")
        await settle()

        for peer in (a, b):
            target = peer.state.get_player("p-b")
            assert target.eliminated
            assert target.role == host.state.get_player("p-b").role
            assert peer.state.phase == Phase.ACTIVE
        shutdown(host, a, b)

    @pytest.mark.asyncio
    async def test_bots_play_a_deliberation(self, network, config):
        fast = config.model_copy(update={"bot_vote_min_delay": 0.0, "bot_vote_max_delay": 0.01})
        host = make_session(network, "h-0", fast)
        await host.host_game("Hana")
        host.gm.bots.add_bots()
        host.gm.start_game()
        host.gm.call_deliberation()

        target = host.state.players[1].id
        host.gm.cast_vote(target)
        for _ in range(50):
            if len(host.state.deliberation_votes) == len(host.state.players):
                break
            await settle(5)
            await asyncio.sleep(0.01)

        assert len(host.state.deliberation_votes) == len(host.state.players)
        result = host.gm.eliminate()
        assert result["result"] in ("eliminated", "tie")
        shutdown(host)


class TestDisconnect:
    """Tests for leaving, cancelling and dropped connections."""

    @pytest.mark.asyncio
    async def test_peer_leaves(self, network, config):
        host, (a, b) = await start_lobby(network, config, "p-a", "p-b")

        b.leave_game()
        await settle()

        assert [p.id for p in host.state.players] == ["h-0", "p-a"]
        assert [p.id for p in a.state.players] == ["h-0", "p-a"]
        assert b.state.code == ""
        assert b.peer is None
        assert b.state.local_player_id == "p-b"
        shutdown(host, a)

    @pytest.mark.asyncio
    async def test_peer_dropped(self, network, config):
        host, (a, b) = await start_lobby(network, config, "p-a", "p-b")

        network.drop(b.peer.id)
        await settle()

        assert [p.id for p in host.state.players] == ["h-0", "p-a"]
        assert "Player p-b disconnected" in host.view.texts()
        assert [p.id for p in a.state.players] == ["h-0", "p-a"]
        shutdown(host, a)

    @pytest.mark.asyncio
    async def test_host_cancels(self, network, config):
        host, (a, b) = await start_lobby(network, config, "p-a", "p-b")

        host.cancel_hosting()
        await settle()

        assert host.state.code == ""
        for peer in (a, b):
            assert peer.state.code == ""
            assert peer.host_conn is None
            assert "The host cancelled the game" in peer.view.texts()
        shutdown(a, b)


class TestFailover:
    """Tests for host failover."""

    @pytest.mark.asyncio
    async def test_lowest_id_takes_over(self, network, config):
        host, (a, b) = await start_lobby(network, config, "p-b", "p-a")

        network.drop(host.state.code)
        await settle(60)

        # "p-a" sorts first even though it joined second.
        new_host, other = b, a
        assert new_host.state.is_host
        assert new_host.state.me.is_host
        assert not other.state.is_host
        assert other.host_conn.peer == new_host.peer.id
        assert [p.id for p in new_host.state.players] == ["p-b", "p-a"]
        assert other.state.host_player.id == "p-a"
        assert new_host.state.get_player("p-b").connection_ref == other.peer.id
        assert "The host left. You are now the host." in new_host.view.texts()
        shutdown(a, b)

    def promoted(self, network, config, local_id, local_role, players):
        session = make_session(network, local_id, config)
        s = session.state
        s.code = "ABCD"
        s.players = players
        s.phase = Phase.ACTIVE
        s.resolve_local_role()
        assert s.local_role == local_role
        session.peer = network.create_peer(f"peer-{local_id}")
        session._fail_over()
        return session

    def test_traitor_successor_infers_agents(self, network, config):
        players = make_players(
            ("h-0", "Hana", None),
            ("p-a", "Ben", Role.TRAITOR),
            ("p-b", "Cleo", None),
            ("p-c", "Dev", None),
        )
        session = self.promoted(network, config, "p-a", Role.TRAITOR, players)

        s = session.state
        assert s.is_host
        assert [p.id for p in s.players] == ["p-a", "p-b", "p-c"]
        assert s.get_player("p-b").role == Role.AGENT
        assert s.get_player("p-a").connection_ref == "peer-p-a"
        assert s.phase == Phase.ACTIVE

    def test_agent_successor_restarts_in_lobby(self, network, config):
        """With no eliminated human left, a living agent cannot see enough to go on."""
        players = make_players(
            ("h-0", "Hana", None),
            ("p-a", "Ben", Role.AGENT),
            ("p-b", "Cleo", None),
            ("p-c", "Dev", None),
        )
        session = self.promoted(network, config, "p-a", Role.AGENT, players)

        s = session.state
        assert s.is_host
        assert s.phase == Phase.LOBBY
        assert [p.id for p in s.players] == ["p-a", "p-b", "p-c"]
        assert all(p.role is None and not p.eliminated for p in s.players)
        assert s.local_role is None
        assert session.view.screens[-1] == Screen.HOST_SETUP

    def test_eliminated_player_takes_over(self, network, config):
        players = make_players(
            ("h-0", "Hana", Role.AGENT),
            ("p-a", "Ben", Role.TRAITOR),
            ("p-b", "Cleo", Role.AGENT),
            ("p-c", "Dev", Role.AGENT),
            ("p-d", "Eli", Role.AGENT),
        )
        players[3].eliminated = True
        session = self.promoted(network, config, "p-c", Role.AGENT, players)

        s = session.state
        assert s.is_host
        assert s.host_player.id == "p-c"
        assert s.phase == Phase.ACTIVE
        assert "The host left. You are now the host." in session.view.texts()

    @pytest.mark.asyncio
    async def test_living_peer_follows_eliminated_successor(self, network, config):
        players = make_players(
            ("h-0", "Hana", None),
            ("p-a", "Ben", Role.AGENT),
            ("p-b", "Cleo", None),
            ("p-c", "Dev", Role.AGENT),
        )
        players[3].eliminated = True
        session = self.promoted(network, config, "p-a", Role.AGENT, players)

        s = session.state
        assert not s.is_host
        assert s.host_player.id == "p-c"
        assert session.host_conn.peer == "peer-p-c"
        session.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_game_survives_host_loss(self, network, config):
        host, peers = await start_lobby(network, config, "p-a", "p-b", "p-c", "p-d")
        host.gm.start_game()
        host.gm.call_deliberation()
        await settle()
        out = next(p for p in host.state.players if p.role == Role.AGENT and p.id != "h-0")
        host.gm.manual_eliminate(out.id)
        await settle()
        host_was_traitor = host.state.me.role == Role.TRAITOR

        network.drop(host.state.code)
        await settle(80)

        successor = next(p for p in peers if p.state.local_player_id == out.id)
        assert successor.state.is_host
        assert all(p.role is not None for p in successor.state.players)
        assert successor.state.phase == (Phase.GAME_OVER if host_was_traitor else Phase.ACTIVE)
        for other in peers:
            if other is not successor:
                assert other.host_conn.peer == successor.peer.id
                assert other.state.host_player.id == out.id
        shutdown(*peers)

    def test_bots_never_take_over(self, network, config):
        players = make_players(
            ("h-0", "Hana", None),
            ("p-a", "Ben", Role.TRAITOR),
            ("p-b", "Cleo", None),
            ("p-c", "Dev", None),
        )
        players.append(Player(id="bot-1", name="Bot Alice", is_bot=True))
        session = self.promoted(network, config, "p-a", Role.TRAITOR, players)

        assert session.state.get_player("p-a").is_host
        assert not session.state.get_player("bot-1").is_host


class TestResume:
    """Tests for resuming from a saved snapshot."""

    @pytest.mark.asyncio
    async def test_host_resumes_same_code(self, network, config):
        persistence = MemorySnapshotStore()
        host = make_session(network, "h-0", config, persistence=persistence)
        code = await host.host_game("Hana")
        network.drop(code)

        restarted = make_session(network, "h-0", config, persistence=persistence)
        pending = restarted.pending_resume()
        assert pending.code == code
        assert pending.is_host

        await restarted.resume()

        assert network.peers[code] is restarted.peer
        assert restarted.state.me.connection_ref == code
        shutdown(restarted)

    @pytest.mark.asyncio
    async def test_peer_resumes_with_state_sync(self, network, config):
        persistence = MemorySnapshotStore()
        host, (a,) = await start_lobby(network, config, "p-a", persistence=persistence)

        restarted = make_session(network, "p-a", config, persistence=persistence)
        pending = restarted.pending_resume()
        assert not pending.is_host
        assert pending.code == host.state.code

        await restarted.resume()
        await settle()

        assert host.state.get_player("p-a").connection_ref == restarted.peer.id
        assert [p.id for p in restarted.state.players] == ["h-0", "p-a"]
        assert restarted.host_conn.is_open
        shutdown(host, a, restarted)

    @pytest.mark.asyncio
    async def test_peer_resumes_after_crash_in_lobby(self, network, config):
        """The host already dropped the crashed peer; resuming seats it again."""
        persistence = MemorySnapshotStore()
        host, (a,) = await start_lobby(network, config, "p-a", persistence=persistence)
        network.drop(a.peer.id)
        await settle()
        assert [p.id for p in host.state.players] == ["h-0"]

        restarted = make_session(network, "p-a", config, persistence=persistence)
        assert restarted.pending_resume() is not None
        await restarted.resume()
        await settle()

        assert [p.id for p in host.state.players] == ["h-0", "p-a"]
        assert host.state.get_player("p-a").connection_ref == restarted.peer.id
        assert host.state.get_player("p-a").name == "Player p-a"
        assert [p.id for p in restarted.state.players] == ["h-0", "p-a"]
        assert restarted.timers.pending(JOIN_TIMEOUT) == 0
        shutdown(host, restarted)

    @pytest.mark.asyncio
    async def test_peer_resumes_after_removal_mid_game(self, network, config):
        persistence = MemorySnapshotStore()
        host, (a, b, c) = await start_lobby(network, config, "p-a", "p-b", "p-c", persistence=persistence)
        host.gm.start_game()
        await settle()
        network.drop(a.peer.id)
        await settle()
        assert host.state.get_player("p-a") is None

        restarted = make_session(network, "p-a", config, persistence=persistence)
        assert restarted.pending_resume().phase == Phase.ACTIVE
        await restarted.resume()
        await settle()

        assert restarted.state.code == ""
        assert restarted.peer is None
        assert "You are no longer in this game." in restarted.view.texts()
        assert restarted.view.screens[-1] == Screen.JOIN
        assert host.state.get_player("p-a") is None
        shutdown(host, b, c)

    def test_finished_game_not_offered(self, network, config):
        persistence = MemorySnapshotStore()
        state = GameState(code="ABCD", local_player_id="p-a", phase=Phase.GAME_OVER)
        StateStore(persistence, state).save()

        session = make_session(network, "p-a", config, persistence=persistence)

        assert session.pending_resume() is None
        assert persistence.load() is None

    def test_nothing_to_resume(self, network, config):
        session = make_session(network, "p-a", config)
        assert session.pending_resume() is None


class TestTransportDefault:
    def test_relay_is_the_default_transport(self, config):
        relayed = config.model_copy(update={"relay_url": "ws://relay.test"})
        session = GameSession(store=StateStore(MemorySnapshotStore()), config=relayed)

        peer = session.peer_factory("ABCD")

        assert isinstance(peer, RelayPeer)
        assert peer.relay_url == "ws://relay.test"
