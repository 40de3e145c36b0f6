"""Tests for NetworkClient: server command handling, callbacks, live session."""
import asyncio
import threading
import time

import pytest

from snake_relay.network.client import ClientState, NetworkClient
from snake_relay.network.protocol import Command, CommandKind, Direction, GameStateSignal, Role
from snake_relay.network.server import GameServer
from snake_relay.settings import ServerSettings
from tests.conftest import run


def deliver(client: NetworkClient, *frames: str):
    """Feed server frames to the client and run callbacks."""
    for frame in frames:
        client.handle_server_command(Command.from_frame(frame))
    client.poll()


@pytest.fixture
def events():
    return []


@pytest.fixture
def client(events) -> NetworkClient:
    """Client with every callback recording into events."""
    c = NetworkClient()
    c.state = ClientState.IN_LOBBY
    c.on_role_assigned = lambda role: events.append(('role', role))
    c.on_player_id = lambda slot: events.append(('player_id', slot))
    c.on_session_state_changed = lambda state: events.append(('state', state))
    c.on_opponent_direction = lambda direction: events.append(('direction', direction))
    c.on_food_position = lambda x, y: events.append(('food', x, y))
    c.on_session_ended = lambda reason: events.append(('end', reason))
    return c


class TestServerCommands:
    """Server → client commands turn into callbacks on poll()."""

    def test_role_assignment(self, client, events):
        deliver(client, "ASSIGN_ROLE|Player1", "GAME|WAIT")

        assert events == [('role', Role.PLAYER1), ('state', GameStateSignal.WAIT)]
        assert client.is_host
        assert client.state == ClientState.WAITING

    def test_callbacks_wait_for_poll(self, client, events):
        client.handle_server_command(Command.from_frame("MOVE|UP"))
        assert events == []
        client.poll()
        assert events == [('direction', Direction.UP)]

    def test_lifecycle_states(self, client, events):
        deliver(client, "ASSIGN_ROLE|Player2", "GAMESTATE|READY")
        assert client.state == ClientState.READY
        deliver(client, "GAMESTATE|START")
        assert client.state == ClientState.IN_GAME
        deliver(client, "GAME|GAME_OVER")
        assert client.state == ClientState.READY
        deliver(client, "GAME|RESTART")
        assert client.state == ClientState.IN_GAME

    def test_opponent_direction_both_kinds(self, client, events):
        deliver(client, "MOVE|LEFT", "DIRECTION|DOWN")
        assert events == [('direction', Direction.LEFT), ('direction', Direction.DOWN)]

    def test_food_position(self, client, events):
        deliver(client, "FOOD_POSITION|12_7")
        assert events == [('food', 12, 7)]

    def test_player_id(self, client, events):
        deliver(client, "YOUR_ID|1")
        assert events == [('player_id', 1)]
        assert client.player_id == 1

    def test_opponent_left_returns_to_lobby(self, client, events):
        deliver(client, "ASSIGN_ROLE|Player1", "GAME|READY", "GAME|START")
        deliver(client, "GAME|PLAYER_DISCONNECTED", "END|Opponent left")

        assert events[-1] == ('end', "Opponent left")
        assert client.state == ClientState.IN_LOBBY
        assert client.role is None

    @pytest.mark.parametrize("frame", [
        "ASSIGN_ROLE|Player3",
        "YOUR_ID|one",
        "GAME|PAUSE",
        "MOVE|NORTH",
        "FOOD_POSITION|1",
        "JOIN|someone",
    ])
    def test_bad_server_commands_ignored(self, client, events, frame):
        deliver(client, frame)
        assert events == []


class TestOutgoing:
    """Inbound calls queue the right frames."""

    def _drain(self, client: NetworkClient):
        frames = []
        while not client._outgoing.empty():
            frames.append(client._outgoing.get_nowait().to_frame())
        return frames

    def test_calls_queue_frames(self):
        client = NetworkClient(player_name="Alice")
        client.send_join()
        client.send_direction(Direction.RIGHT)
        client.send_food_position(3, 9)
        client.send_start()
        client.send_restart()
        client.send_game_over()
        client.send_leave()

        assert self._drain(client) == [
            "JOIN|Alice",
            "MOVE|RIGHT",
            "FOOD_POSITION|3_9",
            "GAME|PRESS_START",
            "GAME|PRESS_RESTART",
            "GAME|GAME_OVER",
            "LEAVE|",
        ]

    def test_gamestate_dialect(self):
        client = NetworkClient(state_kind=CommandKind.GAMESTATE)
        client.send_start()
        assert self._drain(client) == ["GAMESTATE|PRESS_START"]

    def test_leave_clears_role(self, client):
        deliver(client, "ASSIGN_ROLE|Player1", "GAME|WAIT")
        client.send_leave()
        assert client.role is None
        assert client.state == ClientState.IN_LOBBY


class TestReceiveLoop:
    """Stream handling on the network side, fed from a local reader."""

    def _receive(self, client: NetworkClient, data: bytes):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(data)
            reader.feed_eof()
            client._reader = reader
            client._running = True
            await asyncio.wait_for(client._receive_loop(), 2.0)

        run(scenario())

    def test_frames_become_events(self, client, events):
        self._receive(client, b"ASSIGN_ROLE|Player2\nMOVE|UP\r\nbogus\nFOOD_POSITION|1_2\n")
        client.poll()
        assert events == [('role', Role.PLAYER2), ('direction', Direction.UP), ('food', 1, 2)]

    def test_oversized_frame_ends_connection(self, client, events):
        errors = []
        client.on_error = errors.append

        self._receive(client, b"MOVE|LEFT\nEND|" + b"x" * 5000)
        client.poll()

        assert events == [('direction', Direction.LEFT)]
        assert client.state == ClientState.ERROR
        assert len(errors) == 1
        assert "4096" in errors[0]


class ServerThread:
    """Stream server running on its own event loop thread."""

    def __init__(self):
        self.server = GameServer(ServerSettings(host='127.0.0.1', port=0))
        self.loop = asyncio.new_event_loop()
        self._ready = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_until_complete(self.server.listen())
        self._ready.set()
        self.loop.run_forever()
        self.loop.run_until_complete(self.server.stop())
        self.loop.close()

    def __enter__(self):
        self._thread.start()
        assert self._ready.wait(5.0)
        return self

    def __exit__(self, *exc):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(5.0)

    @property
    def port(self) -> int:
        return self.server.address[1]


def wait_until(predicate, *clients: NetworkClient, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        for c in clients:
            c.poll()
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


class TestLiveSession:
    """Two NetworkClients talking through a real server."""

    def test_full_session(self):
        with ServerThread() as server:
            alice, bob = NetworkClient(), NetworkClient()
            seen = []
            bob.on_opponent_direction = seen.append
            ended = []
            bob.on_session_ended = ended.append

            alice.connect('127.0.0.1', server.port, 'Alice')
            wait_until(lambda: alice.state == ClientState.WAITING, alice)
            bob.connect('127.0.0.1', server.port, 'Bob')
            wait_until(lambda: alice.state == bob.state == ClientState.READY, alice, bob)

            assert alice.role is Role.PLAYER1
            assert bob.role is Role.PLAYER2

            alice.send_start()
            wait_until(lambda: alice.state == bob.state == ClientState.IN_GAME, alice, bob)

            alice.send_direction(Direction.UP)
            wait_until(lambda: seen == [Direction.UP], bob)

            alice.disconnect()
            wait_until(lambda: ended == ["Opponent left"], bob)
            assert bob.state == ClientState.IN_LOBBY

            bob.disconnect()
