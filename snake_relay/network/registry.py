"""Session registry: which sessions exist and who sits where."""

import asyncio
import logging
from typing import Dict, Iterator, List, Optional, Tuple

from .session import ClientHandle, ConnectionState, GameSession, SessionState

logger = logging.getLogger(__name__)


class SessionRegistry:
    """All active two-player sessions, in registration order.

    The find/create/remove primitives only touch the in-memory map. join()
    and leave() wrap the check-then-mutate sequences the dispatcher needs in
    the registry lock (and the session lock inside it), so two clients can
    never both see a free slot and both take it.

    Usage:
        registry = SessionRegistry()
        seated = await registry.join(client)
        if seated:
            session, slot = seated
    """

    def __init__(self):
        self._sessions: Dict[str, GameSession] = {}  # session_id -> session
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[GameSession]:
        return iter(list(self._sessions.values()))

    def sessions(self) -> List[GameSession]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> Optional[GameSession]:
        return self._sessions.get(session_id)

    # =========================================================================
    # PRIMITIVES
    # =========================================================================

    def find_open_session(self) -> Optional[GameSession]:
        """First session with a free slot, oldest first."""
        for session in self._sessions.values():
            if not session.is_full and session.state != SessionState.CLOSED:
                return session
        return None

    def create_session(self, first_client: ClientHandle) -> GameSession:
        """Register a new session with first_client as host."""
        session = GameSession()
        while session.session_id in self._sessions:
            session = GameSession()
        session.add_player(first_client)
        self._sessions[session.session_id] = session
        return session

    def find_session_for(self, client: ClientHandle) -> Optional[GameSession]:
        """Session the client is seated in, or None."""
        for session in self._sessions.values():
            if session.has_player(client):
                return session
        return None

    def remove(self, session_id: str):
        """Drop a session; unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.state = SessionState.CLOSED

    # =========================================================================
    # LOCKED OPERATIONS
    # =========================================================================

    async def join(self, client: ClientHandle) -> Optional[Tuple[GameSession, int]]:
        """Seat a client in the oldest open session or a new one.

        Returns (session, slot), or None if the client is already seated.
        SessionFullError escapes only if the session invariants are broken.
        """
        async with self._lock:
            if self.find_session_for(client) is not None:
                return None

            session = self.find_open_session()
            if session is None:
                session = self.create_session(client)
                slot = 0
                logger.info(f"Session {session.session_id} created for {client.label}")
            else:
                async with session.lock:
                    slot = session.add_player(client)
                    if session.is_full:
                        session.state = SessionState.READY
                logger.info(f"Session {session.session_id}: {client.label} seated in slot {slot}")

            client.state = ConnectionState.SEATED
            return session, slot

    async def leave(self, client: ClientHandle) -> Optional[Tuple[GameSession, Optional[ClientHandle]]]:
        """Unseat a client and tear down its session.

        The other occupant, if any, is unseated as well and returned so the
        caller can tell it the game is over. Returns None if the client was
        not seated.
        """
        async with self._lock:
            session = self.find_session_for(client)
            if session is None:
                return None

            async with session.lock:
                remaining = session.opponent_of(client)
                session.remove_player(client)
                if remaining is not None:
                    session.remove_player(remaining)
                    if remaining.state == ConnectionState.SEATED:
                        remaining.state = ConnectionState.CONNECTED
                if client.state == ConnectionState.SEATED:
                    client.state = ConnectionState.CONNECTED

            self.remove(session.session_id)
            logger.info(f"Session {session.session_id} removed ({client.label} left)")
            return session, remaining

    async def close_session(self, session: GameSession) -> List[ClientHandle]:
        """Unseat everyone and drop the session; returns the former occupants."""
        async with self._lock:
            async with session.lock:
                occupants = session.occupants()
                for occupant in occupants:
                    session.remove_player(occupant)
                    if occupant.state == ConnectionState.SEATED:
                        occupant.state = ConnectionState.CONNECTED
            self.remove(session.session_id)
            logger.info(f"Session {session.session_id} closed")
            return occupants
