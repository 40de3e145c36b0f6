"""Command dispatcher: matchmaking, relay and session lifecycle.

Takes each decoded Command together with the client that sent it, applies it
to the registry/session state and sends the resulting commands through the
client handles. Transports only decode frames and call dispatch() and
handle_disconnect(); they never touch sessions themselves.
"""

import logging
from typing import Iterable, Optional

from .protocol import (
    Command, CommandKind, GameStateSignal, Role,
    cmd_assign_role, cmd_end, cmd_game_state, cmd_your_id,
)
from .registry import SessionRegistry
from .session import ClientHandle, ConnectionState, GameSession, SessionFullError, SessionState
from ..settings import ServerSettings

logger = logging.getLogger(__name__)

OPPONENT_LEFT = "Opponent left"
GAME_OVER = "Game over"


class CommandDispatcher:
    """Routes client commands against the session registry.

    Usage:
        dispatcher = CommandDispatcher(SessionRegistry(), settings)
        await dispatcher.dispatch(client, Command(CommandKind.JOIN, 'Player1'))
        ...
        await dispatcher.handle_disconnect(client)
    """

    def __init__(self, registry: SessionRegistry, settings: Optional[ServerSettings] = None):
        self.registry = registry
        self.settings = settings or ServerSettings()
        self.state_kind = CommandKind(self.settings.state_command)

        self._handlers = {
            CommandKind.JOIN: self._handle_join,
            CommandKind.MOVE: self._handle_direction,
            CommandKind.DIRECTION: self._handle_direction,
            CommandKind.FOOD_POSITION: self._handle_food_position,
            CommandKind.GAME: self._handle_game_state,
            CommandKind.GAMESTATE: self._handle_game_state,
            CommandKind.START: self._handle_start,
            CommandKind.LEAVE: self._handle_leave,
            CommandKind.DISCONNECT: self._handle_disconnect_command,
        }

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def dispatch(self, client: ClientHandle, command: Command):
        """Route a command to its handler."""
        client.touch()

        handler = self._handlers.get(command.kind)
        if handler is None:
            logger.warning(f"Unexpected command from {client.label}: {command}")
            return

        try:
            await handler(client, command)
        except Exception as e:
            logger.error(f"Error handling {command.kind.value} from {client.label}: {e}")

    async def handle_disconnect(self, client: ClientHandle):
        """Transport lost the client: tear down its session, if any."""
        await self._depart(client, reason="disconnected")
        client.state = ConnectionState.DISCONNECTED

    # =========================================================================
    # HANDLER: LOBBY
    # =========================================================================

    async def _handle_join(self, client: ClientHandle, command: Command):
        """Seat the client and assign its role by arrival order."""
        try:
            seated = await self.registry.join(client)
        except SessionFullError as e:
            logger.error(f"Invariant violated while seating {client.label}: {e}")
            await client.close()
            return

        if seated is None:
            logger.warning(f"{client.label} sent JOIN but is already seated")
            return

        if command.payload:
            client.player_name = command.payload

        session, slot = seated
        ready = session.state == SessionState.READY  # as left by join(), before any await
        role = Role.for_slot(slot)
        logger.info(f"Session {session.session_id}: {client.label} is {role.value}")

        if self.settings.send_player_id:
            await self._send(client, cmd_your_id(slot))
        await self._send(client, cmd_assign_role(role))

        if session.state == SessionState.CLOSED:
            # Torn down while the role was in flight
            return

        if ready:
            await self._broadcast(session.occupants(), self._state(GameStateSignal.READY))
            logger.info(f"Session {session.session_id} ready")
        elif session.state == SessionState.WAITING_FOR_SECOND:
            # A guest seated meanwhile has already sent READY to both
            await self._send(client, self._state(GameStateSignal.WAIT))

    async def _handle_leave(self, client: ClientHandle, command: Command):
        """Leave the session but keep the connection."""
        await self._depart(client, reason="left")

    async def _handle_disconnect_command(self, client: ClientHandle, command: Command):
        """Leave the session and hang up."""
        await self._depart(client, reason="disconnected")
        await client.close()

    async def _depart(self, client: ClientHandle, reason: str):
        left = await self.registry.leave(client)
        if left is None:
            return

        session, remaining = left
        logger.info(f"Session {session.session_id}: {client.label} {reason}")
        if remaining is not None:
            await self._send(remaining, self._state(GameStateSignal.PLAYER_DISCONNECTED))
            await self._send(remaining, cmd_end(OPPONENT_LEFT))

    # =========================================================================
    # HANDLER: RELAY
    # =========================================================================

    async def _handle_direction(self, client: ClientHandle, command: Command):
        """Relay MOVE/DIRECTION to the opponent, kind and payload unchanged."""
        await self._relay(client, command)

    async def _handle_food_position(self, client: ClientHandle, command: Command):
        """Relay FOOD_POSITION to the opponent, payload unchanged."""
        await self._relay(client, command)

    async def _relay(self, client: ClientHandle, command: Command):
        session = self.registry.find_session_for(client)
        if session is None:
            logger.warning(f"{client.label} sent {command.kind.value} but is not in a session")
            return

        opponent = session.opponent_of(client)
        if opponent is None:
            return  # Nobody to relay to yet

        await self._send(opponent, command)
        logger.debug(f"Session {session.session_id}: {client.label} -> {opponent.label}: {command}")

    # =========================================================================
    # HANDLER: LIFECYCLE
    # =========================================================================

    async def _handle_game_state(self, client: ClientHandle, command: Command):
        """GAME / GAMESTATE signals sent by a client."""
        session = self.registry.find_session_for(client)
        if session is None:
            logger.warning(f"{client.label} sent {command} but is not in a session")
            return

        signal = GameStateSignal.parse(command.payload)
        if signal in (GameStateSignal.PRESS_START, GameStateSignal.START):
            await self._start(session, client)
        elif signal in (GameStateSignal.PRESS_RESTART, GameStateSignal.RESTART):
            await self._restart(session, client)
        elif signal == GameStateSignal.GAME_OVER:
            await self._game_over(session, client)
        elif signal == GameStateSignal.READY:
            logger.info(f"Session {session.session_id}: {client.label} is ready")
        else:
            logger.warning(f"Unexpected game state from {client.label}: {command.payload!r}")

    async def _handle_start(self, client: ClientHandle, command: Command):
        """START|<anything> from a client behaves like GAME|PRESS_START."""
        session = self.registry.find_session_for(client)
        if session is None:
            logger.warning(f"{client.label} sent START but is not in a session")
            return
        await self._start(session, client)

    async def _start(self, session: GameSession, client: ClientHandle):
        if not session.is_host(client):
            logger.warning(f"Session {session.session_id}: ignoring start from guest {client.label}")
            return

        async with session.lock:
            if session.state != SessionState.READY:
                logger.warning(
                    f"Session {session.session_id}: cannot start in state {session.state.name}"
                )
                return
            session.state = SessionState.IN_GAME
            occupants = session.occupants()

        await self._broadcast(occupants, self._state(GameStateSignal.START))
        logger.info(f"Session {session.session_id} started")

    async def _restart(self, session: GameSession, client: ClientHandle):
        if not session.is_host(client):
            logger.warning(f"Session {session.session_id}: ignoring restart from guest {client.label}")
            return

        async with session.lock:
            if session.state not in (SessionState.READY, SessionState.IN_GAME):
                logger.warning(
                    f"Session {session.session_id}: cannot restart in state {session.state.name}"
                )
                return
            session.state = SessionState.IN_GAME
            occupants = session.occupants()

        await self._broadcast(occupants, self._state(GameStateSignal.RESTART))
        logger.info(f"Session {session.session_id} restarted")

    async def _game_over(self, session: GameSession, client: ClientHandle):
        async with session.lock:
            if session.state != SessionState.IN_GAME:
                logger.warning(
                    f"Session {session.session_id}: game over in state {session.state.name} ignored"
                )
                return
            session.state = SessionState.READY
            occupants = session.occupants()

        await self._broadcast(occupants, self._state(GameStateSignal.GAME_OVER))
        logger.info(f"Session {session.session_id}: game over reported by {client.label}")

        if self.settings.close_on_game_over:
            former = await self.registry.close_session(session)
            await self._broadcast(former, cmd_end(GAME_OVER))

    # =========================================================================
    # SENDING
    # =========================================================================

    def _state(self, signal: GameStateSignal) -> Command:
        return cmd_game_state(signal, self.state_kind)

    async def _send(self, client: ClientHandle, command: Command):
        """Send to one client; a failed send only marks that client."""
        if not client.is_connected:
            return
        try:
            await client.send(command)
        except (ConnectionError, OSError) as e:
            logger.info(f"Send to {client.label} failed: {e}")
            client.state = ConnectionState.DISCONNECTED

    async def _broadcast(self, clients: Iterable[ClientHandle], command: Command):
        for client in clients:
            await self._send(client, command)
