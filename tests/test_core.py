"""
Unit tests for the room core — registry, state machine, arbitration, broadcast.
Uses fake connection handles that record every delivered event.
"""
import sys
import os
import asyncio

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import EventType, RoomPhase
from core.arbitration import ArbitrationEngine
from core.broadcast import BroadcastDispatcher
from core.exceptions import (
    InvalidPlayerName,
    InvalidRoomCode,
    NameTaken,
    PhaseInvalid,
    RoomCapacityExceeded,
    RoomNotFound,
    StaleRound,
    UnknownMember,
)
from core.locks import room_lock
from core.room_manager import RoomManager
from core.room_registry import RoomRegistry
from core.state_machine import RoomStateMachine


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeConnection:
    """Records delivered events instead of sending them anywhere."""
    def __init__(self, name=""):
        self.name = name
        self.events = []

    def deliver(self, event):
        self.events.append(event)

    def all(self, event_type):
        return [e for e in self.events if e.event == event_type]

    def last(self, event_type):
        matching = self.all(event_type)
        return matching[-1] if matching else None


class BrokenConnection(FakeConnection):
    def deliver(self, event):
        raise ConnectionError("socket is gone")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry():
    return RoomRegistry(max_rooms=10, grace_seconds=0)


@pytest.fixture
def dispatcher():
    return BroadcastDispatcher()


@pytest.fixture
def manager(registry, dispatcher):
    return RoomManager(registry, dispatcher)


@pytest.fixture
def engine(registry, dispatcher):
    return ArbitrationEngine(registry, dispatcher)


async def join_all(manager, code, *names):
    conns = {}
    for name in names:
        conn = FakeConnection(name)
        await manager.join(code, name, conn)
        conns[name] = conn
    return conns


# =====================================================================
# Registry
# =====================================================================

class TestRegistry:
    @pytest.mark.asyncio
    async def test_code_is_normalized(self, registry):
        room = await registry.get_or_create("  abc123 ")
        assert room.code == "ABC123"
        assert registry.get("abc123") is room
        assert room.phase == RoomPhase.LOBBY
        assert room.members == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["", "   ", "TOOLONG", "AB-12", "ÄBC"])
    async def test_invalid_codes_rejected(self, registry, code):
        with pytest.raises(InvalidRoomCode):
            await registry.get_or_create(code)

    @pytest.mark.asyncio
    async def test_concurrent_first_joins_create_one_room(self, registry):
        rooms = await asyncio.gather(*[registry.get_or_create("new1") for _ in range(25)])
        assert all(r is rooms[0] for r in rooms)
        assert registry.room_count() == 1

    @pytest.mark.asyncio
    async def test_unknown_room_raises(self, registry):
        with pytest.raises(RoomNotFound):
            registry.get("NOPE")

    @pytest.mark.asyncio
    async def test_capacity_exhaustion(self):
        small = RoomRegistry(max_rooms=1, grace_seconds=0)
        await small.get_or_create("ONE")
        with pytest.raises(RoomCapacityExceeded):
            await small.get_or_create("TWO")
        # an existing room is still reachable at capacity
        assert (await small.get_or_create("one")).code == "ONE"

    @pytest.mark.asyncio
    async def test_remove_skips_non_empty_room(self, manager, registry):
        await join_all(manager, "KEEP", "Alice")
        assert await registry.remove("KEEP") is False
        assert registry.get("KEEP").code == "KEEP"

    @pytest.mark.asyncio
    async def test_remove_absent_is_noop(self, registry):
        assert await registry.remove("GHOST") is False

    @pytest.mark.asyncio
    async def test_suggest_code_is_unused(self, registry):
        code = registry.suggest_code()
        assert len(code) == 6
        assert code not in registry.list_codes()


# =====================================================================
# Membership
# =====================================================================

class TestMembership:
    @pytest.mark.asyncio
    async def test_join_broadcasts_ordered_lobby(self, manager):
        conns = await join_all(manager, "ABC123", "Alice", "Bob")
        assert conns["Alice"].last(EventType.LOBBY_UPDATE).data == {"players": ["Alice", "Bob"]}
        assert conns["Bob"].last(EventType.LOBBY_UPDATE).data == {"players": ["Alice", "Bob"]}
        assert len(conns["Alice"].all(EventType.LOBBY_UPDATE)) == 2

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, manager, registry):
        conns = await join_all(manager, "ABC123", "Alice")
        with pytest.raises(NameTaken):
            await manager.join("ABC123", "Alice", FakeConnection())
        room = registry.get("ABC123")
        assert room.player_names() == ["Alice"]
        assert room.members["Alice"].connection is conns["Alice"]

    @pytest.mark.asyncio
    async def test_names_are_case_sensitive(self, manager, registry):
        await join_all(manager, "ABC123", "Alice", "alice")
        assert registry.get("ABC123").player_names() == ["Alice", "alice"]

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, manager):
        with pytest.raises(InvalidPlayerName):
            await manager.join("ABC123", "   ", FakeConnection())

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_joins_admit_one(self, manager, registry):
        results = await asyncio.gather(
            *[manager.join("RACE", "Same", FakeConnection()) for _ in range(10)],
            return_exceptions=True
        )
        admitted = [r for r in results if not isinstance(r, Exception)]
        assert len(admitted) == 1
        assert all(isinstance(r, NameTaken) for r in results if isinstance(r, Exception))
        assert registry.get("RACE").player_names() == ["Same"]

    @pytest.mark.asyncio
    async def test_leave_then_rejoin_same_name(self, manager, registry):
        await join_all(manager, "ABC123", "Alice", "Bob")
        assert await manager.leave("ABC123", "Alice") is True
        await manager.join("ABC123", "Alice", FakeConnection())
        assert registry.get("ABC123").player_names() == ["Bob", "Alice"]

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, manager):
        conns = await join_all(manager, "ABC123", "Alice", "Bob")
        assert await manager.leave("ABC123", "Bob") is True
        assert await manager.leave("ABC123", "Bob") is False
        assert conns["Alice"].last(EventType.LOBBY_UPDATE).data == {"players": ["Alice"]}

    @pytest.mark.asyncio
    async def test_leave_ignores_other_connection(self, manager, registry):
        await join_all(manager, "ABC123", "Alice")
        assert await manager.leave("ABC123", "Alice", FakeConnection()) is False
        assert registry.get("ABC123").player_names() == ["Alice"]

    @pytest.mark.asyncio
    async def test_join_sequence_not_reused_after_leave(self, manager, registry):
        await join_all(manager, "SEQ", "A", "B", "C")
        await manager.leave("SEQ", "B")
        await join_all(manager, "SEQ", "D")
        room = registry.get("SEQ")
        assert room.player_names() == ["A", "C", "D"]
        assert room.members["D"].join_sequence == 4

    @pytest.mark.asyncio
    async def test_last_leave_evicts_room(self, manager, registry):
        await join_all(manager, "GONE", "Alice")
        await manager.leave("GONE", "Alice")
        with pytest.raises(RoomNotFound):
            registry.get("GONE")
        with pytest.raises(RoomNotFound):
            await manager.start_round("GONE")

    @pytest.mark.asyncio
    async def test_grace_period_keeps_room_for_rejoin(self, dispatcher):
        registry = RoomRegistry(max_rooms=10, grace_seconds=0.05)
        manager = RoomManager(registry, dispatcher)
        await join_all(manager, "BACK", "Alice")
        await manager.start_round("BACK")
        await manager.leave("BACK", "Alice")

        await join_all(manager, "BACK", "Alice")
        await asyncio.sleep(0.1)
        room = registry.get("BACK")
        assert room.round_epoch == 1
        assert room.phase == RoomPhase.ACTIVE

        await manager.leave("BACK", "Alice")
        await asyncio.sleep(0.1)
        with pytest.raises(RoomNotFound):
            registry.get("BACK")

    @pytest.mark.asyncio
    async def test_late_joiner_is_synced(self, manager, engine):
        await join_all(manager, "LATE", "Alice")
        await manager.start_round("LATE")
        await engine.submit_buzz("LATE", "Alice", 1)

        late = FakeConnection("Carol")
        await manager.join("LATE", "Carol", late)
        assert late.last(EventType.GAME_STARTED) is not None
        assert late.last(EventType.FIRST_BUZZ).data == {"player": "Alice"}
        assert late.last(EventType.LOBBY_UPDATE).round_epoch == 1


# =====================================================================
# Round lifecycle
# =====================================================================

class TestRoundLifecycle:
    @pytest.mark.asyncio
    async def test_start_round_is_idempotent(self, manager, registry):
        conns = await join_all(manager, "IDEM", "Alice")
        await manager.start_round("IDEM")
        state = await manager.start_round("IDEM")
        assert state["phase"] == RoomPhase.ACTIVE
        assert state["round_epoch"] == 1
        assert len(conns["Alice"].all(EventType.GAME_STARTED)) == 1

    @pytest.mark.asyncio
    async def test_reset_from_lobby_is_invalid(self, manager):
        await join_all(manager, "LOBBY", "Alice")
        with pytest.raises(PhaseInvalid):
            await manager.reset_round("LOBBY")

    @pytest.mark.asyncio
    async def test_reset_while_active_is_noop(self, manager):
        conns = await join_all(manager, "NOOP", "Alice")
        await manager.start_round("NOOP")
        state = await manager.reset_round("NOOP")
        assert state["round_epoch"] == 1
        assert conns["Alice"].all(EventType.ROUND_RESET) == []

    @pytest.mark.asyncio
    async def test_reset_after_win_clears_winner(self, manager, engine, registry):
        conns = await join_all(manager, "RST", "Alice", "Bob")
        await manager.start_round("RST")
        await engine.submit_buzz("RST", "Alice", 1)

        state = await manager.reset_round("RST")
        assert state == {
            "code": "RST",
            "phase": RoomPhase.ACTIVE,
            "players": ["Alice", "Bob"],
            "winner": None,
            "round_epoch": 2,
        }
        assert conns["Bob"].last(EventType.ROUND_RESET).data == {}

    @pytest.mark.asyncio
    async def test_start_after_win_begins_next_round(self, manager, engine):
        await join_all(manager, "NEXT", "Alice")
        await manager.start_round("NEXT")
        await engine.submit_buzz("NEXT", "Alice", 1)
        state = await manager.start_round("NEXT")
        assert state["round_epoch"] == 2
        assert state["winner"] is None

    @pytest.mark.asyncio
    async def test_unknown_room_operations(self, manager):
        with pytest.raises(RoomNotFound):
            await manager.reset_round("NOPE")
        with pytest.raises(RoomNotFound):
            await manager.leave("NOPE", "Alice")
        with pytest.raises(RoomNotFound):
            await manager.get_state("NOPE")


# =====================================================================
# Arbitration
# =====================================================================

class TestArbitration:
    @pytest.mark.asyncio
    async def test_exactly_one_winner_under_concurrency(self, manager, engine):
        names = [f"P{i}" for i in range(12)]
        conns = await join_all(manager, "RUSH", *names)
        await manager.start_round("RUSH")

        outcomes = await asyncio.gather(
            *[engine.submit_buzz("RUSH", name, 1) for name in names]
        )
        winners = [o for o in outcomes if o.won]
        assert len(winners) == 1
        winner = winners[0].winner
        assert all(o.winner == winner for o in outcomes)

        for conn in conns.values():
            first = conn.all(EventType.FIRST_BUZZ)
            assert len(first) == 1
            assert first[0].data == {"player": winner}

    @pytest.mark.asyncio
    async def test_buzz_in_lobby_rejected(self, manager, engine):
        await join_all(manager, "EARLY", "Alice")
        with pytest.raises(PhaseInvalid):
            await engine.submit_buzz("EARLY", "Alice", 0)

    @pytest.mark.asyncio
    async def test_unknown_member_rejected(self, manager, engine):
        await join_all(manager, "WHO", "Alice")
        await manager.start_round("WHO")
        with pytest.raises(UnknownMember):
            await engine.submit_buzz("WHO", "Mallory", 1)

    @pytest.mark.asyncio
    async def test_stale_epoch_rejected_after_reset(self, manager, engine, registry):
        await join_all(manager, "STALE", "Alice", "Bob")
        await manager.start_round("STALE")
        await engine.submit_buzz("STALE", "Alice", 1)
        await manager.reset_round("STALE")

        with pytest.raises(StaleRound):
            await engine.submit_buzz("STALE", "Bob", 1)
        outcome = await engine.submit_buzz("STALE", "Bob", 2)
        assert outcome.won is True
        assert registry.get("STALE").current_winner == "Bob"

    @pytest.mark.asyncio
    async def test_departed_winner_keeps_win(self, manager, engine, registry):
        await join_all(manager, "KEPT", "Alice", "Bob")
        await manager.start_round("KEPT")
        await engine.submit_buzz("KEPT", "Alice", 1)
        await manager.leave("KEPT", "Alice")

        room = registry.get("KEPT")
        assert room.phase == RoomPhase.ROUND_WON
        assert room.current_winner == "Alice"
        outcome = await engine.submit_buzz("KEPT", "Bob", 1)
        assert outcome.won is False
        assert outcome.winner == "Alice"

    @pytest.mark.asyncio
    async def test_leave_racing_buzz_is_consistent(self, manager, engine, registry):
        await join_all(manager, "RACE2", "Alice", "Bob")
        await manager.start_round("RACE2")

        buzz, left = await asyncio.gather(
            engine.submit_buzz("RACE2", "Alice", 1),
            manager.leave("RACE2", "Alice"),
            return_exceptions=True
        )
        assert left is True
        room = registry.get("RACE2")
        if isinstance(buzz, UnknownMember):
            assert room.phase == RoomPhase.ACTIVE
        else:
            assert buzz.won is True
            assert room.current_winner == "Alice"

    @pytest.mark.asyncio
    async def test_full_scenario(self, manager, engine, registry):
        alice, bob = FakeConnection("Alice"), FakeConnection("Bob")
        await manager.join("ABC123", "Alice", alice)
        assert registry.get("ABC123").player_names() == ["Alice"]
        await manager.join("ABC123", "Bob", bob)
        assert alice.last(EventType.LOBBY_UPDATE).data == {"players": ["Alice", "Bob"]}
        assert bob.last(EventType.LOBBY_UPDATE).data == {"players": ["Alice", "Bob"]}

        state = await manager.start_round("ABC123")
        assert (state["phase"], state["round_epoch"]) == (RoomPhase.ACTIVE, 1)
        assert alice.last(EventType.GAME_STARTED) is not None

        a, b = await asyncio.gather(
            engine.submit_buzz("ABC123", "Alice", 1),
            engine.submit_buzz("ABC123", "Bob", 1),
        )
        assert [a.won, b.won].count(True) == 1
        assert len(bob.all(EventType.FIRST_BUZZ)) == 1

        state = await manager.reset_round("ABC123")
        assert (state["phase"], state["round_epoch"]) == (RoomPhase.ACTIVE, 2)
        assert bob.last(EventType.ROUND_RESET) is not None

        with pytest.raises(StaleRound):
            await engine.submit_buzz("ABC123", "Bob", 1)
        outcome = await engine.submit_buzz("ABC123", "Bob", 2)
        assert outcome.won is True
        assert alice.last(EventType.FIRST_BUZZ).data == {"player": "Bob"}


# =====================================================================
# Broadcast & state machine
# =====================================================================

class TestBroadcast:
    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_block_others(self, manager, registry):
        await manager.join("FAIL", "Ghost", BrokenConnection())
        alice = FakeConnection("Alice")
        await manager.join("FAIL", "Alice", alice)

        state = await manager.start_round("FAIL")
        assert state["phase"] == RoomPhase.ACTIVE
        assert alice.last(EventType.GAME_STARTED) is not None

    @pytest.mark.asyncio
    async def test_events_carry_round_epoch(self, manager):
        conns = await join_all(manager, "EPOCH", "Alice")
        await manager.start_round("EPOCH")
        assert conns["Alice"].last(EventType.GAME_STARTED).round_epoch == 1
        assert conns["Alice"].last(EventType.GAME_STARTED).to_wire() == {
            "event": "game_started",
            "data": {},
        }

    def test_send_to_reports_failure(self, dispatcher):
        assert dispatcher.send_to(BrokenConnection(), EventType.ERROR, {"message": "x"}) is False
        ok = FakeConnection()
        assert dispatcher.send_to(ok, EventType.PONG) is True
        assert ok.last(EventType.PONG).data == {}


class TestStateMachine:
    def test_transition_table(self):
        assert RoomStateMachine.can_transition(RoomPhase.LOBBY, RoomPhase.ACTIVE)
        assert RoomStateMachine.can_transition(RoomPhase.ACTIVE, RoomPhase.ROUND_WON)
        assert RoomStateMachine.can_transition(RoomPhase.ROUND_WON, RoomPhase.ACTIVE)
        assert not RoomStateMachine.can_transition(RoomPhase.LOBBY, RoomPhase.ROUND_WON)
        assert not RoomStateMachine.can_transition(RoomPhase.ACTIVE, RoomPhase.LOBBY)
        assert not RoomStateMachine.can_transition(RoomPhase.ROUND_WON, RoomPhase.LOBBY)

    @pytest.mark.asyncio
    async def test_illegal_transition_raises(self, registry):
        room = await registry.get_or_create("SM")
        async with room_lock(room):
            with pytest.raises(PhaseInvalid):
                RoomStateMachine.transition(room, RoomPhase.ROUND_WON, winner="Alice")
        assert room.phase == RoomPhase.LOBBY

    @pytest.mark.asyncio
    async def test_transition_requires_lock(self, registry):
        room = await registry.get_or_create("SM2")
        with pytest.raises(RuntimeError):
            RoomStateMachine.transition(room, RoomPhase.ACTIVE)
