"""Tests for SessionRegistry matchmaking."""
import asyncio

from snake_relay.network.registry import SessionRegistry
from snake_relay.network.session import ConnectionState, SessionState
from tests.conftest import run


class TestPrimitives:
    """find/create/lookup/remove."""

    def test_empty_registry(self, registry, make_client):
        assert registry.find_open_session() is None
        assert registry.find_session_for(make_client()) is None
        assert len(registry) == 0

    def test_create_session_seats_host(self, registry, make_client):
        x = make_client()
        session = registry.create_session(x)

        assert session.host is x
        assert session.state == SessionState.WAITING_FOR_SECOND
        assert session.session_id in registry
        assert registry.find_session_for(x) is session

    def test_find_open_session_oldest_first(self, registry, make_client):
        first = registry.create_session(make_client())
        second = registry.create_session(make_client())

        assert registry.find_open_session() is first
        first.add_player(make_client())
        assert registry.find_open_session() is second

    def test_remove(self, registry, make_client):
        x = make_client()
        session = registry.create_session(x)

        registry.remove(session.session_id)

        assert registry.get(session.session_id) is None
        assert registry.find_session_for(x) is None
        assert session.state == SessionState.CLOSED

    def test_remove_unknown_id(self, registry):
        registry.remove("nope")
        assert len(registry) == 0


class TestJoin:
    """Locked find-or-create."""

    def test_pairs_in_arrival_order(self, registry, make_client):
        clients = [make_client(f"C{i}") for i in range(6)]

        async def scenario():
            return [await registry.join(c) for c in clients]

        results = run(scenario())

        assert [slot for _, slot in results] == [0, 1, 0, 1, 0, 1]
        for i in range(0, 6, 2):
            host_session, _ = results[i]
            guest_session, _ = results[i + 1]
            assert host_session is guest_session
            assert host_session.host is clients[i]
            assert host_session.guest is clients[i + 1]
            assert host_session.state == SessionState.READY
        assert len(registry) == 3

    def test_join_marks_client_seated(self, registry, make_client):
        x = make_client()
        run(registry.join(x))
        assert x.state == ConnectionState.SEATED

    def test_second_join_rejected(self, registry, make_client):
        x = make_client()

        async def scenario():
            first = await registry.join(x)
            second = await registry.join(x)
            return first, second

        first, second = run(scenario())
        assert first is not None
        assert second is None
        assert len(registry) == 1
        assert first[0].player_count == 1

    def test_concurrent_joins_never_share_host(self, make_client):
        registry = SessionRegistry()
        clients = [make_client() for _ in range(8)]

        async def scenario():
            return await asyncio.gather(*(registry.join(c) for c in clients))

        results = run(scenario())

        assert sorted(slot for _, slot in results) == [0] * 4 + [1] * 4
        for session in registry.sessions():
            assert session.is_full
            assert session.host is not session.guest
        seated = [c for s in registry.sessions() for c in s.occupants()]
        assert len(seated) == len(set(map(id, seated))) == 8


class TestLeave:
    """Locked teardown."""

    def test_leave_returns_remaining_peer(self, registry, make_client):
        x, y = make_client(), make_client()

        async def scenario():
            await registry.join(x)
            await registry.join(y)
            return await registry.leave(x)

        session, remaining = run(scenario())

        assert remaining is y
        assert session.session_id not in registry
        assert session.is_empty
        assert session.state == SessionState.CLOSED
        assert registry.find_session_for(y) is None
        assert y.state == ConnectionState.CONNECTED

    def test_last_player_leaves(self, registry, make_client):
        x = make_client()

        async def scenario():
            await registry.join(x)
            return await registry.leave(x)

        session, remaining = run(scenario())
        assert remaining is None
        assert len(registry) == 0

    def test_leave_unseated(self, registry, make_client):
        assert run(registry.leave(make_client())) is None

    def test_next_joiner_gets_new_session(self, registry, make_client):
        x, y, z = make_client(), make_client(), make_client()

        async def scenario():
            old, _ = await registry.join(x)
            await registry.join(y)
            await registry.leave(x)
            new, slot = await registry.join(z)
            return old, new, slot

        old, new, slot = run(scenario())
        assert new is not old
        assert new.session_id != old.session_id
        assert slot == 0

    def test_close_session(self, registry, make_client):
        x, y = make_client(), make_client()

        async def scenario():
            session, _ = await registry.join(x)
            await registry.join(y)
            return session, await registry.close_session(session)

        session, former = run(scenario())
        assert former == [x, y]
        assert len(registry) == 0
        assert x.state == y.state == ConnectionState.CONNECTED
