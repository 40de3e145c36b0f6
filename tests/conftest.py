"""Pytest fixtures for relay testing."""
import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

import pytest

from snake_relay.network.dispatcher import CommandDispatcher
from snake_relay.network.protocol import Command, CommandKind
from snake_relay.network.registry import SessionRegistry
from snake_relay.network.session import ClientHandle, ConnectionState
from snake_relay.settings import ServerSettings


@dataclass(eq=False)
class RecordingClient(ClientHandle):
    """Client handle that records what the relay sends to it.

    Set fail_sends to make every send raise like a dead socket.
    """
    sent: List[Command] = field(default_factory=list)
    closed: bool = False
    fail_sends: bool = False

    async def send(self, command: Command):
        if self.fail_sends:
            self.state = ConnectionState.DISCONNECTED
            raise ConnectionResetError("peer reset")
        self.sent.append(command)

    async def close(self):
        self.closed = True
        self.state = ConnectionState.DISCONNECTED

    def received(self, kind: Optional[CommandKind] = None) -> List[Command]:
        """Commands sent to this client, optionally only one kind."""
        if kind is None:
            return list(self.sent)
        return [c for c in self.sent if c.kind == kind]

    def frames(self) -> List[str]:
        return [c.to_frame() for c in self.sent]

    def clear(self):
        self.sent.clear()


def run(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


@pytest.fixture
def settings() -> ServerSettings:
    return ServerSettings()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def dispatcher(registry: SessionRegistry, settings: ServerSettings) -> CommandDispatcher:
    return CommandDispatcher(registry, settings)


@pytest.fixture
def make_client():
    """Factory fixture for recording clients.

    Usage:
        x = make_client("X")
        y = make_client("Y")
    """
    counter = iter(range(1, 10_000))

    def _make(name: str = "") -> RecordingClient:
        n = next(counter)
        return RecordingClient(address=f"10.0.0.{n}:{5000 + n}", player_name=name)

    return _make


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

async def send(dispatcher: CommandDispatcher, client: ClientHandle, frame: str):
    """Decode a frame and dispatch it as if the client had sent it."""
    await dispatcher.dispatch(client, Command.from_frame(frame))


async def pair(dispatcher: CommandDispatcher, host: RecordingClient, guest: RecordingClient):
    """Join two clients and forget the join traffic."""
    await send(dispatcher, host, "JOIN|P1")
    await send(dispatcher, guest, "JOIN|P2")
    host.clear()
    guest.clear()
