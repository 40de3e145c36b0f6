"""Client connections and two-player game sessions."""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional, Tuple, TYPE_CHECKING

from .protocol import Command, Role

if TYPE_CHECKING:
    from asyncio import StreamReader, StreamWriter, DatagramTransport


class SessionFullError(Exception):
    """Raised by add_player when both slots are taken."""


class ConnectionState(Enum):
    """Client connection states."""
    CONNECTED = auto()      # Connected, not in a session
    SEATED = auto()         # Occupies a slot in a session
    DISCONNECTED = auto()   # Connection lost or closed


@dataclass(eq=False)
class ClientHandle:
    """A connected peer as seen by the relay.

    Compared by identity: two handles are the same client only if they are
    the same object. Transports subclass this and implement send().
    """
    address: str = ""
    player_name: str = ""
    state: ConnectionState = ConnectionState.CONNECTED
    last_seen: float = field(default_factory=time.monotonic)

    @property
    def is_connected(self) -> bool:
        return self.state != ConnectionState.DISCONNECTED

    @property
    def label(self) -> str:
        """Name for log lines."""
        if self.player_name:
            return f"{self.player_name}@{self.address}"
        return self.address or "?"

    def touch(self):
        """Record activity for idle tracking."""
        self.last_seen = time.monotonic()

    def idle_for(self) -> float:
        return time.monotonic() - self.last_seen

    async def send(self, command: Command):
        raise NotImplementedError

    async def close(self):
        self.state = ConnectionState.DISCONNECTED


@dataclass(eq=False)
class StreamClient(ClientHandle):
    """Client connected over a stream (TCP/TLS); frames end with a newline."""
    reader: Optional['StreamReader'] = None
    writer: Optional['StreamWriter'] = None

    def __post_init__(self):
        if self.writer is not None and not self.address:
            peername = self.writer.get_extra_info('peername')
            if peername:
                self.address = f"{peername[0]}:{peername[1]}"

    async def send(self, command: Command):
        """Send a command to the client."""
        try:
            self.writer.write(command.to_bytes())
            await self.writer.drain()
        except (ConnectionError, OSError):
            self.state = ConnectionState.DISCONNECTED
            raise

    async def close(self):
        """Close the connection."""
        self.state = ConnectionState.DISCONNECTED
        if self.writer is None:
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


@dataclass(eq=False)
class DatagramClient(ClientHandle):
    """Client reached over datagrams; one frame per datagram.

    The datagram listener pushes raw frames into `inbox`; None in the inbox
    tells the client's task to stop.
    """
    transport: Optional['DatagramTransport'] = None
    remote: Optional[Tuple[str, int]] = None
    inbox: 'asyncio.Queue' = field(default_factory=asyncio.Queue)

    def __post_init__(self):
        if self.remote is not None and not self.address:
            self.address = f"{self.remote[0]}:{self.remote[1]}"

    async def send(self, command: Command):
        if self.transport is None or self.transport.is_closing():
            self.state = ConnectionState.DISCONNECTED
            raise ConnectionError("datagram transport closed")
        self.transport.sendto(command.to_bytes(terminated=False), self.remote)

    async def close(self):
        if self.state != ConnectionState.DISCONNECTED:
            self.state = ConnectionState.DISCONNECTED
            self.inbox.put_nowait(None)


class SessionState(Enum):
    """Game session states."""
    WAITING_FOR_SECOND = auto()  # Host seated, waiting for a guest
    READY = auto()               # Both seated, host may start
    IN_GAME = auto()             # Game running
    CLOSED = auto()              # Torn down, no longer in the registry


def new_session_id() -> str:
    return secrets.token_hex(8)


@dataclass(eq=False)
class GameSession:
    """A pairing of two clients for one game.

    Slot 0 is the host (Player1), slot 1 the guest (Player2). Slots fill in
    arrival order and slot 1 is only ever filled while slot 0 is occupied.
    """
    session_id: str = field(default_factory=new_session_id)
    slots: List[Optional[ClientHandle]] = field(default_factory=lambda: [None, None])
    state: SessionState = SessionState.WAITING_FOR_SECOND
    created_at: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_full(self) -> bool:
        """Check if both slots are occupied."""
        return all(slot is not None for slot in self.slots)

    @property
    def is_empty(self) -> bool:
        """Check if no slot is occupied."""
        return all(slot is None for slot in self.slots)

    @property
    def player_count(self) -> int:
        return sum(1 for slot in self.slots if slot is not None)

    @property
    def host(self) -> Optional[ClientHandle]:
        return self.slots[0]

    @property
    def guest(self) -> Optional[ClientHandle]:
        return self.slots[1]

    def occupants(self) -> List[ClientHandle]:
        """Seated clients in slot order."""
        return [slot for slot in self.slots if slot is not None]

    def slot_of(self, client: ClientHandle) -> Optional[int]:
        for i, occupant in enumerate(self.slots):
            if occupant is client:
                return i
        return None

    def has_player(self, client: ClientHandle) -> bool:
        return self.slot_of(client) is not None

    def is_host(self, client: ClientHandle) -> bool:
        return client is not None and self.slots[0] is client

    def role_of(self, client: ClientHandle) -> Optional[Role]:
        slot = self.slot_of(client)
        if slot is None:
            return None
        return Role.for_slot(slot)

    def add_player(self, client: ClientHandle) -> int:
        """Seat a client in the first free slot and return the slot index."""
        if self.is_full:
            raise SessionFullError(f"Session {self.session_id} is full")
        slot = self.slots.index(None)
        self.slots[slot] = client
        return slot

    def opponent_of(self, client: ClientHandle) -> Optional[ClientHandle]:
        """Occupant of the other slot, or None."""
        slot = self.slot_of(client)
        if slot is None:
            return None
        return self.slots[1 - slot]

    def remove_player(self, client: ClientHandle):
        """Clear the client's slot; no-op if it is not seated here."""
        slot = self.slot_of(client)
        if slot is not None:
            self.slots[slot] = None

    def to_dict(self) -> dict:
        """Summary for logs and diagnostics."""
        return {
            'session_id': self.session_id,
            'state': self.state.name,
            'host': self.host.label if self.host else None,
            'guest': self.guest.label if self.guest else None,
            'player_count': self.player_count,
        }
