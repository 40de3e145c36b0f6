"""Network client for connecting a snake game to the relay server.

Usage:
    client = NetworkClient()
    client.on_role_assigned = lambda role: ...
    client.on_opponent_direction = lambda direction: ...
    client.connect('localhost', 7777, 'Player1')

    # In the game loop
    client.poll()
    client.send_direction(Direction.UP)
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from queue import Empty, Queue
from typing import Any, Callable, Optional

from .protocol import (
    Command, CommandKind, Direction, FrameTooLargeError, GameStateSignal, LineFrameReader,
    ProtocolError, Role,
    cmd_disconnect, cmd_food_position, cmd_game_state, cmd_join, cmd_leave, cmd_move,
    parse_food_position,
)

logger = logging.getLogger(__name__)


class ClientState(Enum):
    """Client connection state."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    IN_LOBBY = auto()   # Connected, not seated
    WAITING = auto()    # Seated, waiting for an opponent
    READY = auto()      # Both seated, waiting for the host to start
    IN_GAME = auto()
    ERROR = auto()


@dataclass
class NetworkClient:
    """Network client for a two-player snake game.

    Runs network I/O in a background thread to not block the game loop.
    Uses queues for thread-safe communication; callbacks run on the thread
    that calls poll().
    """

    # Connection
    host: str = ""
    port: int = 7777
    state_kind: CommandKind = CommandKind.GAME

    # State
    state: ClientState = ClientState.DISCONNECTED
    player_name: str = ""
    role: Optional[Role] = None
    player_id: Optional[int] = None
    error_message: str = ""

    # Internal
    _reader: Optional[asyncio.StreamReader] = None
    _writer: Optional[asyncio.StreamWriter] = None
    _thread: Optional[threading.Thread] = None
    _running: bool = False

    # Thread-safe queues
    _outgoing: Queue = field(default_factory=Queue)
    _incoming: Queue = field(default_factory=Queue)

    # Callbacks (called from main thread via poll)
    on_connected: Optional[Callable[[], None]] = None
    on_disconnected: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_role_assigned: Optional[Callable[[Role], None]] = None
    on_player_id: Optional[Callable[[int], None]] = None
    on_session_state_changed: Optional[Callable[[GameStateSignal], None]] = None
    on_opponent_direction: Optional[Callable[[Direction], None]] = None
    on_food_position: Optional[Callable[[int, int], None]] = None
    on_session_ended: Optional[Callable[[str], None]] = None

    @property
    def is_host(self) -> bool:
        return self.role is Role.PLAYER1

    # =========================================================================
    # PUBLIC API (called from main thread)
    # =========================================================================

    def connect(self, host: str, port: int, player_name: str, auto_join: bool = True):
        """Start connection to server (non-blocking)."""
        if self._running:
            return

        self.host = host
        self.port = port
        self.player_name = player_name
        self.state = ClientState.CONNECTING
        self.error_message = ""

        if auto_join:
            self.send_join(player_name)

        # Start network thread
        self._running = True
        self._thread = threading.Thread(target=self._run_network_thread, daemon=True)
        self._thread.start()

    def disconnect(self):
        """Say goodbye and stop the network thread."""
        if self._running:
            self._queue_message(cmd_disconnect())
        self._running = False
        self._queue_message(None)  # Signal to stop

        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

        self.state = ClientState.DISCONNECTED
        self.role = None

    def send_join(self, player_name: str = ""):
        """Ask to be seated in a session."""
        self._queue_message(cmd_join(player_name or self.player_name))

    def send_leave(self):
        """Leave the current session; the connection stays open."""
        self._queue_message(cmd_leave())
        self._back_to_lobby()

    def send_direction(self, direction: Direction):
        """Tell the opponent where our snake is heading."""
        self._queue_message(cmd_move(direction))

    def send_food_position(self, x: int, y: int):
        self._queue_message(cmd_food_position(x, y))

    def send_start(self):
        """Host only: start the game."""
        self._queue_message(cmd_game_state(GameStateSignal.PRESS_START, self.state_kind))

    def send_restart(self):
        """Host only: restart the game."""
        self._queue_message(cmd_game_state(GameStateSignal.PRESS_RESTART, self.state_kind))

    def send_game_over(self):
        self._queue_message(cmd_game_state(GameStateSignal.GAME_OVER, self.state_kind))

    def poll(self):
        """Process pending messages from network thread.

        Call this from your game loop to handle callbacks.
        """
        while True:
            try:
                msg_type, data = self._incoming.get_nowait()
            except Empty:
                break

            self._handle_incoming(msg_type, data)

    def _queue_message(self, command: Optional[Command]):
        """Queue command for sending."""
        self._outgoing.put(command)

    def _back_to_lobby(self):
        self.role = None
        self.player_id = None
        if self.state not in (ClientState.DISCONNECTED, ClientState.ERROR):
            self.state = ClientState.IN_LOBBY

    def _handle_incoming(self, msg_type: str, data: Any):
        """Handle incoming message in main thread."""
        if msg_type == 'connected':
            self.state = ClientState.IN_LOBBY
            if self.on_connected:
                self.on_connected()

        elif msg_type == 'disconnected':
            self.state = ClientState.DISCONNECTED
            self.role = None
            if self.on_disconnected:
                self.on_disconnected(data)

        elif msg_type == 'error':
            self.state = ClientState.ERROR
            self.error_message = data
            if self.on_error:
                self.on_error(data)

        elif msg_type == 'role':
            self.role = data
            if self.on_role_assigned:
                self.on_role_assigned(data)

        elif msg_type == 'player_id':
            self.player_id = data
            if self.on_player_id:
                self.on_player_id(data)

        elif msg_type == 'game_state':
            self._apply_game_state(data)
            if self.on_session_state_changed:
                self.on_session_state_changed(data)

        elif msg_type == 'direction':
            if self.on_opponent_direction:
                self.on_opponent_direction(data)

        elif msg_type == 'food_position':
            if self.on_food_position:
                self.on_food_position(*data)

        elif msg_type == 'end':
            self._back_to_lobby()
            if self.on_session_ended:
                self.on_session_ended(data)

    def _apply_game_state(self, signal: GameStateSignal):
        if signal == GameStateSignal.WAIT:
            self.state = ClientState.WAITING
        elif signal in (GameStateSignal.READY, GameStateSignal.GAME_OVER):
            self.state = ClientState.READY
        elif signal in (GameStateSignal.START, GameStateSignal.RESTART):
            self.state = ClientState.IN_GAME
        elif signal == GameStateSignal.PLAYER_DISCONNECTED:
            self._back_to_lobby()

    # =========================================================================
    # NETWORK THREAD
    # =========================================================================

    def _run_network_thread(self):
        """Run the async network loop in background thread."""
        try:
            asyncio.run(self._network_main())
        except Exception as e:
            logger.error(f"Network thread error: {e}")
            self._incoming.put(('error', str(e)))

    async def _network_main(self):
        """Main async network loop."""
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=10.0,
            )
            logger.info(f"Connected to {self.host}:{self.port}")
            self._incoming.put(('connected', None))

            recv_task = asyncio.create_task(self._receive_loop())
            send_task = asyncio.create_task(self._send_loop())

            # Wait for either task to finish (server hung up or shutdown)
            done, pending = await asyncio.wait(
                [recv_task, send_task],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()

        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Network error: {e}")
            self._incoming.put(('error', str(e) or type(e).__name__))
        finally:
            await self._cleanup()

    async def _receive_loop(self):
        """Loop receiving commands from server."""
        frame_reader = LineFrameReader()

        while self._running:
            data = await self._reader.read(4096)
            if not data:
                break

            frame_reader.feed(data)

            while True:
                try:
                    command = frame_reader.get_command()
                except FrameTooLargeError as e:
                    # Unframed stream, nothing after it can be trusted
                    logger.error(f"Dropping connection: {e}")
                    self._incoming.put(('error', str(e)))
                    return
                except ProtocolError as e:
                    logger.warning(f"Bad frame from server: {e}")
                    continue
                if command is None:
                    break
                self.handle_server_command(command)

    async def _send_loop(self):
        """Loop sending queued commands to server."""
        loop = asyncio.get_running_loop()
        while self._running:
            # Check queue with timeout to allow shutdown
            try:
                command = await loop.run_in_executor(
                    None,
                    lambda: self._outgoing.get(timeout=0.1)
                )
            except Empty:
                continue
            except RuntimeError:
                # Executor shut down during exit
                break

            if command is None:
                break  # Shutdown signal

            self._writer.write(command.to_bytes())
            await self._writer.drain()

        # Flush anything queued before the shutdown signal (e.g. DISCONNECT)
        while True:
            try:
                command = self._outgoing.get_nowait()
            except Empty:
                break
            if command is not None:
                self._writer.write(command.to_bytes())
        await self._writer.drain()

    def handle_server_command(self, command: Command):
        """Translate a server command into a queued event for poll()."""
        kind = command.kind

        if kind == CommandKind.ASSIGN_ROLE:
            role = Role.parse(command.payload)
            if role is None:
                logger.warning(f"Unknown role: {command.payload!r}")
                return
            self._incoming.put(('role', role))

        elif kind == CommandKind.YOUR_ID:
            try:
                self._incoming.put(('player_id', int(command.payload)))
            except ValueError:
                logger.warning(f"Bad player id: {command.payload!r}")

        elif kind.is_lifecycle:
            signal = GameStateSignal.parse(command.payload)
            if signal is None:
                logger.warning(f"Unknown game state: {command.payload!r}")
                return
            self._incoming.put(('game_state', signal))

        elif kind.is_direction:
            direction = Direction.parse(command.payload)
            if direction is None:
                logger.warning(f"Unknown direction: {command.payload!r}")
                return
            self._incoming.put(('direction', direction))

        elif kind == CommandKind.FOOD_POSITION:
            position = parse_food_position(command.payload)
            if position is None:
                logger.warning(f"Bad food position: {command.payload!r}")
                return
            self._incoming.put(('food_position', position))

        elif kind == CommandKind.END:
            self._incoming.put(('end', command.payload))

        else:
            logger.warning(f"Unhandled command: {command}")

    async def _cleanup(self):
        """Clean up connection."""
        if self._writer:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        self._reader = None
        self._writer = None
        self._running = False
        self._incoming.put(('disconnected', 'Connection closed'))
