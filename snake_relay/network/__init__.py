"""Network module: protocol, sessions, relay server and client."""

from .protocol import Command, CommandKind, Direction, GameStateSignal, LineFrameReader, Role
from .session import ClientHandle, GameSession, SessionFullError, SessionState
from .registry import SessionRegistry
from .dispatcher import CommandDispatcher
from .server import GameServer, DatagramGameServer, run_server
from .client import NetworkClient, ClientState
