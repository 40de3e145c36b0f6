"""Network protocol: command kinds, framing, parsing.

Wire format (UTF-8 text, one command per frame):
    COMMAND_TYPE|payload

Stream transports terminate each frame with "\\n"; datagram transports send
one frame per datagram. The frame is split on the first "|" only, so the
payload reaches the peer exactly as it was sent.

Examples:
    JOIN|Player1
    ASSIGN_ROLE|Player2
    GAME|READY
    MOVE|UP
    FOOD_POSITION|12_7
    END|Opponent left
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


FRAME_SEPARATOR = '|'
FRAME_TERMINATOR = '\n'
FOOD_SEPARATOR = '_'


class ProtocolError(Exception):
    """A frame that cannot be turned into a Command."""


class MalformedFrameError(ProtocolError):
    """Frame without a "|" separator."""


class UnknownCommandError(ProtocolError):
    """Frame with a command type outside the protocol."""

    def __init__(self, name: str):
        super().__init__(f"Unknown command type: {name!r}")
        self.name = name


class FrameTooLargeError(ProtocolError):
    """Stream buffer grew past the frame size limit without a terminator."""


class CommandKind(Enum):
    """Command types on the wire."""
    # Lobby
    JOIN = 'JOIN'                   # Client → Server: join any open session
    ASSIGN_ROLE = 'ASSIGN_ROLE'     # Server → Client: Player1 / Player2
    YOUR_ID = 'YOUR_ID'             # Server → Client: slot index

    # Session lifecycle
    GAME = 'GAME'                   # Both ways: lifecycle signal
    GAMESTATE = 'GAMESTATE'         # Both ways: lifecycle signal (stream dialect)
    START = 'START'                 # Client → Server: host starts the game

    # Relayed gameplay
    MOVE = 'MOVE'
    DIRECTION = 'DIRECTION'
    FOOD_POSITION = 'FOOD_POSITION'

    # Departure
    LEAVE = 'LEAVE'                 # Client → Server: leave session, stay connected
    DISCONNECT = 'DISCONNECT'       # Client → Server: leave session and hang up
    END = 'END'                     # Server → Client: session over, with reason

    @classmethod
    def parse(cls, name: str) -> 'CommandKind':
        try:
            return cls(name)
        except ValueError:
            raise UnknownCommandError(name) from None

    @property
    def is_lifecycle(self) -> bool:
        return self in (CommandKind.GAME, CommandKind.GAMESTATE)

    @property
    def is_direction(self) -> bool:
        return self in (CommandKind.MOVE, CommandKind.DIRECTION)


class GameStateSignal(Enum):
    """Payloads of GAME / GAMESTATE commands."""
    # Server → Client
    WAIT = 'WAIT'
    READY = 'READY'
    START = 'START'
    RESTART = 'RESTART'
    GAME_OVER = 'GAME_OVER'
    PLAYER_DISCONNECTED = 'PLAYER_DISCONNECTED'

    # Client → Server
    PRESS_START = 'PRESS_START'
    PRESS_RESTART = 'PRESS_RESTART'

    @classmethod
    def parse(cls, payload: str) -> Optional['GameStateSignal']:
        try:
            return cls(payload)
        except ValueError:
            return None


class Direction(Enum):
    """Movement intent relayed between snakes."""
    UP = 'UP'
    DOWN = 'DOWN'
    LEFT = 'LEFT'
    RIGHT = 'RIGHT'

    @classmethod
    def parse(cls, payload: str) -> Optional['Direction']:
        try:
            return cls(payload)
        except ValueError:
            return None


class Role(Enum):
    """Seat in a session, decided by arrival order."""
    PLAYER1 = 'Player1'  # host, slot 0
    PLAYER2 = 'Player2'  # guest, slot 1

    @classmethod
    def for_slot(cls, slot: int) -> 'Role':
        return cls.PLAYER1 if slot == 0 else cls.PLAYER2

    @classmethod
    def parse(cls, payload: str) -> Optional['Role']:
        try:
            return cls(payload)
        except ValueError:
            return None

    @property
    def slot(self) -> int:
        return 0 if self is Role.PLAYER1 else 1


@dataclass(frozen=True)
class Command:
    """One protocol message."""
    kind: CommandKind
    payload: str = ''

    def to_frame(self) -> str:
        """Serialize to a frame without terminator."""
        if '\n' in self.payload or '\r' in self.payload:
            raise ValueError(f"Payload of {self.kind.value} contains a line break")
        return f"{self.kind.value}{FRAME_SEPARATOR}{self.payload}"

    def to_bytes(self, terminated: bool = True) -> bytes:
        """Serialize for the wire; stream transports need the terminator."""
        frame = self.to_frame()
        if terminated:
            frame += FRAME_TERMINATOR
        return frame.encode('utf-8')

    @classmethod
    def from_frame(cls, frame: str) -> 'Command':
        """Parse a single frame (a trailing line break is ignored)."""
        frame = frame.rstrip('\r\n')
        if FRAME_SEPARATOR not in frame:
            raise MalformedFrameError(f"Malformed frame: {frame!r}")
        name, payload = frame.split(FRAME_SEPARATOR, 1)
        return cls(kind=CommandKind.parse(name), payload=payload)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Command':
        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedFrameError(f"Frame is not UTF-8: {e}") from None
        return cls.from_frame(text)

    def __str__(self) -> str:
        return f"{self.kind.value}{FRAME_SEPARATOR}{self.payload}"


def parse_food_position(payload: str) -> Optional[Tuple[int, int]]:
    """Parse "x_y" into integer coordinates, or None if malformed."""
    parts = payload.split(FOOD_SEPARATOR)
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


# =============================================================================
# FRAME READER - handles newline-delimited framing over TCP
# =============================================================================

class LineFrameReader:
    """Reads newline-terminated frames from a stream.

    Usage:
        reader = LineFrameReader()
        reader.feed(data_from_socket)
        while True:
            frame = reader.get_frame()
            if frame is None:
                break
            command = Command.from_bytes(frame)
    """

    MAX_FRAME_SIZE = 4096

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE):
        self._buffer = bytearray()
        self.max_frame_size = max_frame_size

    def feed(self, data: bytes):
        """Add received data to buffer."""
        self._buffer.extend(data)

    def get_frame(self) -> Optional[bytes]:
        """Extract next complete frame from buffer, or None if incomplete."""
        end = self._buffer.find(b'\n')
        if end < 0:
            if len(self._buffer) > self.max_frame_size:
                raise FrameTooLargeError(
                    f"No frame terminator within {self.max_frame_size} bytes"
                )
            return None

        frame = bytes(self._buffer[:end])
        del self._buffer[:end + 1]
        return frame.rstrip(b'\r')

    def get_command(self) -> Optional[Command]:
        """Get next complete command, or None if incomplete.

        A frame that fails to parse is consumed before the ProtocolError is
        raised, so the caller can log it and keep reading.
        """
        frame = self.get_frame()
        if frame is None:
            return None
        return Command.from_bytes(frame)

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet returned as a frame."""
        return len(self._buffer)


# =============================================================================
# COMMAND BUILDERS - convenience functions for creating commands
# =============================================================================

def cmd_join(player_name: str) -> Command:
    """Client asks to be seated in any open session."""
    return Command(CommandKind.JOIN, player_name)


def cmd_assign_role(role: Role) -> Command:
    """Tell a client which seat it got."""
    return Command(CommandKind.ASSIGN_ROLE, role.value)


def cmd_your_id(slot: int) -> Command:
    """Tell a client its slot index."""
    return Command(CommandKind.YOUR_ID, str(slot))


def cmd_game_state(signal: GameStateSignal, kind: CommandKind = CommandKind.GAME) -> Command:
    """Lifecycle signal, sent as GAME or GAMESTATE."""
    if not kind.is_lifecycle:
        raise ValueError(f"{kind.value} is not a lifecycle command")
    return Command(kind, signal.value)


def cmd_move(direction: Direction, kind: CommandKind = CommandKind.MOVE) -> Command:
    """Movement intent, sent as MOVE or DIRECTION."""
    if not kind.is_direction:
        raise ValueError(f"{kind.value} is not a direction command")
    return Command(kind, direction.value)


def cmd_food_position(x: int, y: int) -> Command:
    """Food placement."""
    return Command(CommandKind.FOOD_POSITION, f"{x}{FOOD_SEPARATOR}{y}")


def cmd_leave() -> Command:
    return Command(CommandKind.LEAVE)


def cmd_disconnect() -> Command:
    return Command(CommandKind.DISCONNECT)


def cmd_end(reason: str) -> Command:
    """Session is over."""
    return Command(CommandKind.END, reason)
