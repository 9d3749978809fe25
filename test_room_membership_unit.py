"""
Unit tests for room membership: join, leave, disconnect and roster fan-out.
Drives RoomCoordinator directly with the recording transport from conftest.
"""
import pytest

from pinchat import events


def _names(users: list[dict]) -> list[str]:
    return [u["userName"] for u in users]


# ─────────────────────────────────────────────
# Join
# ─────────────────────────────────────────────

class TestJoin:
    def test_two_users_see_count_and_roster(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("b", "1234", "Bob")

        for sid in ("a", "b"):
            assert transport.last(sid, events.USER_COUNT_UPDATE) == {"count": 2}
            assert _names(transport.last(sid, events.CURRENT_USERS)["users"]) == ["Alice", "Bob"]

    def test_user_joined_goes_to_others_only(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("b", "1234", "Bob")

        assert transport.received("b", events.USER_JOINED) == []
        joined = transport.last("a", events.USER_JOINED)
        assert joined["userName"] == "Bob"
        assert "Bob" in joined["message"]

    def test_history_sent_to_joiner_only(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        transport.clear()
        coordinator.join_room("b", "1234", "Bob")

        assert transport.received("b", events.CHAT_HISTORY) == [{"messages": []}]
        assert transport.received("a", events.CHAT_HISTORY) == []

    def test_rejoin_same_room_does_not_duplicate_member(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("a", "1234", "Alice")

        assert coordinator.member_count("1234") == 1
        assert [m.sid for m in coordinator.members["1234"]] == ["a"]
        assert transport.last("a", events.USER_COUNT_UPDATE) == {"count": 1}

    def test_rejoin_same_room_refreshes_display_name(self, coordinator):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("a", "1234", "Alicia")

        assert [m.user_name for m in coordinator.members["1234"]] == ["Alicia"]

    def test_rejoin_same_room_keeps_roster_order(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("b", "1234", "Bob")
        coordinator.join_room("a", "1234", "Alice")

        assert [m.user_name for m in coordinator.members["1234"]] == ["Alice", "Bob"]
        assert _names(transport.last("b", events.CURRENT_USERS)["users"]) == ["Alice", "Bob"]
        assert transport.received("b", events.USER_LEFT) == []

    def test_joining_another_room_leaves_the_previous_one(self, coordinator, transport):
        coordinator.join_room("a", "1111", "Alice")
        coordinator.join_room("b", "1111", "Bob")
        coordinator.join_room("a", "2222", "Alice")

        assert coordinator.connections["a"].room == "2222"
        assert coordinator.member_count("1111") == 1
        assert coordinator.member_count("2222") == 1
        assert transport.last("b", events.USER_COUNT_UPDATE) == {"count": 1}
        assert transport.last("b", events.USER_LEFT)["userName"] == "Alice"
        assert "a" not in transport.channels["1111"]

    def test_saved_theme_sent_to_joiner(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.change_theme("a", "1234", "dark")
        coordinator.join_room("b", "1234", "Bob")

        assert transport.received("b", events.THEME_CHANGED) == [{"theme": "dark"}]

    def test_no_theme_event_without_saved_theme(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        assert transport.received("a", events.THEME_CHANGED) == []


class TestMalformedJoin:
    @pytest.mark.parametrize("data", [
        {},
        {"pin": "1234"},
        {"userName": "Alice"},
        {"pin": "", "userName": "Alice"},
        {"pin": "1234", "userName": "   "},
        "not-a-dict",
        None,
    ])
    def test_ignored_without_state_change(self, coordinator, transport, data):
        coordinator.dispatch("a", events.JOIN_ROOM, data)

        assert coordinator.rooms == {}
        assert coordinator.members == {}
        assert transport.inbox == {}

    def test_numeric_pin_is_accepted_as_string(self, coordinator):
        coordinator.dispatch("a", events.JOIN_ROOM, {"pin": 1234, "userName": "Alice"})
        assert coordinator.member_count("1234") == 1

    def test_pin_and_name_are_kept_verbatim(self, coordinator):
        coordinator.dispatch("a", events.JOIN_ROOM, {"pin": " 1234 ", "userName": " Alice"})
        coordinator.dispatch("b", events.JOIN_ROOM, {"pin": "1234", "userName": "Bob"})

        assert coordinator.room_pins() == [" 1234 ", "1234"]
        assert [m.user_name for m in coordinator.members[" 1234 "]] == [" Alice"]

    def test_unknown_event_is_ignored(self, coordinator, transport):
        coordinator.dispatch("a", "launch_rockets", {"pin": "1234"})
        assert transport.inbox == {}


# ─────────────────────────────────────────────
# Delivery catch-up on join
# ─────────────────────────────────────────────

class TestJoinDeliveryCatchUp:
    def test_pending_messages_marked_delivered_and_sender_notified(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.send_message("a", "1234", "m1", message="anyone here?", sender="Alice")
        assert transport.received("a", events.MESSAGE_STATUS_UPDATE) == []

        coordinator.join_room("b", "1234", "Bob")

        assert coordinator.statuses[("1234", "m1")].delivered is True
        assert transport.received("a", events.MESSAGE_STATUS_UPDATE) == [
            {"messageId": "m1", "status": "delivered"}
        ]

    def test_history_entries_are_typed_for_the_viewer(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.send_message("a", "1234", "m1", message="hi", sender="Alice")
        coordinator.leave_room("a", "1234")
        coordinator.join_room("b", "1234", "Bob")
        coordinator.send_message("b", "1234", "m2", message="hey", sender="Bob")
        coordinator.join_room("a", "1234", "Alice")

        history = transport.last("a", events.CHAT_HISTORY)["messages"]
        assert [(m["messageId"], m["type"]) for m in history] == [("m1", "sent"), ("m2", "received")]

    def test_own_messages_do_not_trigger_delivery(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.send_message("a", "1234", "m1", message="note to self", sender="Alice")
        coordinator.join_room("a", "1234", "Alice")

        assert coordinator.statuses[("1234", "m1")].delivered is False

    def test_disconnected_sender_is_not_notified(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.send_message("a", "1234", "m1", message="bye", sender="Alice")
        coordinator.join_room("c", "1234", "Carol")
        coordinator.disconnect("a")
        coordinator.send_message("c", "1234", "m2", message="hello?", sender="Carol")
        transport.clear()

        coordinator.join_room("b", "1234", "Bob")

        assert transport.received("a", events.MESSAGE_STATUS_UPDATE) == []
        assert transport.received("c", events.MESSAGE_STATUS_UPDATE) == [
            {"messageId": "m2", "status": "delivered"}
        ]


# ─────────────────────────────────────────────
# Leave / disconnect
# ─────────────────────────────────────────────

class TestLeave:
    def test_leave_notifies_remaining_members(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("b", "1234", "Bob")
        transport.clear()

        coordinator.leave_room("b", "1234")

        assert transport.last("a", events.USER_COUNT_UPDATE) == {"count": 1}
        assert _names(transport.last("a", events.CURRENT_USERS)["users"]) == ["Alice"]
        assert transport.last("a", events.USER_LEFT)["userName"] == "Bob"
        assert transport.received("b", events.USER_LEFT) == []
        assert coordinator.connections["b"].room is None

    def test_last_member_leaving_schedules_teardown(self, coordinator, scheduler):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.leave_room("a", "1234")

        assert coordinator.member_count("1234") == 0
        assert scheduler.pending(("room-expiry", "1234"))

    def test_leave_with_other_pin_is_ignored(self, coordinator):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.leave_room("a", "9999")
        assert coordinator.member_count("1234") == 1

    def test_leave_without_room_is_noop(self, coordinator, transport):
        coordinator.connect("a")
        coordinator.leave_room("a", "1234")
        assert transport.inbox == {}

    def test_leave_event_without_pin_leaves_current_room(self, coordinator):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.dispatch("a", events.LEAVE_ROOM, {})
        assert coordinator.member_count("1234") == 0


class TestDisconnect:
    def test_disconnect_removes_member_and_connection(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("b", "1234", "Bob")
        coordinator.disconnect("b")

        assert "b" not in coordinator.connections
        assert coordinator.member_count("1234") == 1
        assert transport.last("a", events.USER_LEFT)["userName"] == "Bob"

    def test_disconnect_is_idempotent(self, coordinator, transport):
        coordinator.join_room("a", "1234", "Alice")
        coordinator.join_room("b", "1234", "Bob")
        coordinator.disconnect("b")
        seen = len(transport.inbox["a"])

        coordinator.disconnect("b")
        coordinator.disconnect("b")

        assert len(transport.inbox["a"]) == seen
        assert coordinator.member_count("1234") == 1

    def test_disconnect_without_room(self, coordinator):
        coordinator.connect("a")
        coordinator.disconnect("a")
        assert coordinator.connections == {}


# ─────────────────────────────────────────────
# Membership arithmetic
# ─────────────────────────────────────────────

@pytest.mark.parametrize("joins,leaves", [(1, 0), (3, 1), (5, 5), (8, 3)])
def test_membership_equals_joins_minus_leaves(coordinator, joins, leaves):
    sids = [f"c{i}" for i in range(joins)]
    for sid in sids:
        coordinator.join_room(sid, "room", sid.upper())
    # Repeat joins must not inflate anything.
    for sid in sids:
        coordinator.join_room(sid, "room", sid.upper())
    for i, sid in enumerate(sids[:leaves]):
        if i % 2:
            coordinator.disconnect(sid)
        else:
            coordinator.leave_room(sid, "room")

    assert coordinator.member_count("room") == joins - leaves
    roster = [m.sid for m in coordinator.members["room"]]
    assert len(roster) == len(set(roster)) == joins - leaves


def test_get_current_users_replies_to_requester_only(coordinator, transport):
    coordinator.join_room("a", "1234", "Alice")
    coordinator.join_room("b", "1234", "Bob")
    transport.clear()

    coordinator.dispatch("c", events.GET_CURRENT_USERS, {"pin": "1234"})

    assert _names(transport.last("c", events.CURRENT_USERS)["users"]) == ["Alice", "Bob"]
    assert transport.last("c", events.USER_COUNT_UPDATE) == {"count": 2}
    assert "a" not in transport.inbox and "b" not in transport.inbox
