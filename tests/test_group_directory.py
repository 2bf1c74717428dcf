"""
test_group_directory.py — Tests for local group join-or-create and membership.

Covers:
    • Create when nothing covers the point, join when something does
    • Idempotent re-join
    • Group naming (street → city → coordinate label)
    • Acting-user Delivery and list-update push
    • Owner-only removal, self-removal, auto-disband with cascade
    • leave_group / disband_group / add_members
    • Direct and group chat creation, direct-pair reuse
    • Chat list (is_nearby) and discovery

Run with:
    pytest tests/test_group_directory.py -v
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, insert, select

from conftest import LONDON, ExplodingSink, add_direct_chat, add_user, member_ids
from resqzone.app.core.errors import Forbidden, InvalidInput, InvalidOperation, NotFound
from resqzone.app.core.tables import (
    chat_members,
    chat_messages,
    chat_read_receipts,
    chats,
    user_alerts,
)
from resqzone.app.groups.directory import GroupDirectory, coordinate_label
from resqzone.app.groups.models import AddressHint, Group, JoinResult
from resqzone.app.spatial.geo_index import Coordinate, destination_point


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _near(km: float, bearing: float = 90.0) -> Coordinate:
    return destination_point(LONDON, bearing, km)


async def _count(store, table, *where) -> int:
    stmt = select(func.count()).select_from(table)
    if where:
        stmt = stmt.where(*where)
    return await store.scalar(stmt)


async def _group_of_two(store, directory):
    """Owner founds a group at LONDON, a neighbour 50 m away joins it."""
    owner = await add_user(store, LONDON, first_name="Olive")
    neighbour = await add_user(store, _near(0.05), first_name="Nico")
    created = await directory.join_or_create_local_group(owner, LONDON)
    await directory.join_or_create_local_group(neighbour, _near(0.05))
    return created.group_id, owner, neighbour


async def _add_message(store, chat_id: int, sender: int) -> int:
    written = await store.execute(
        insert(chat_messages).values(chat_id=chat_id, sender_id=sender, message="hello")
    )
    await store.execute(
        insert(chat_read_receipts).values(
            chat_id=chat_id, user_id=sender, message_id=written.insert_id,
        )
    )
    return written.insert_id


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Join or create
# ═══════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestJoinOrCreate:

    async def test_creates_group_when_none_covers(self, store, directory):
        uid = await add_user(store, LONDON)

        result = await directory.join_or_create_local_group(uid, LONDON)

        assert result.created is True
        group = await directory.get_group(result.group_id)
        assert group.is_group
        assert group.is_geo_bound
        assert group.center == LONDON
        assert group.radius_km == 0.2
        assert group.created_by == uid
        [member] = await directory.list_members(result.group_id)
        assert member.user_id == uid
        assert member.role == "owner"

    async def test_joins_covering_group(self, store, directory):
        group_id, owner, neighbour = await _group_of_two(store, directory)

        assert await member_ids(store, group_id) == sorted([owner, neighbour])
        roles = {m.user_id: m.role for m in await directory.list_members(group_id)}
        assert roles == {owner: "owner", neighbour: "member"}
        assert await _count(store, chats) == 1

    async def test_join_reports_not_created(self, store, directory):
        owner = await add_user(store, LONDON)
        joiner = await add_user(store, _near(0.1))
        first = await directory.join_or_create_local_group(owner, LONDON)

        second = await directory.join_or_create_local_group(joiner, _near(0.1))

        assert second.group_id == first.group_id
        assert second.created is False

    async def test_repeat_call_is_idempotent(self, store, directory):
        uid = await add_user(store, LONDON)
        first = await directory.join_or_create_local_group(uid, LONDON)
        again = await directory.join_or_create_local_group(uid, LONDON)

        assert again.group_id == first.group_id
        assert again.created is False
        assert await member_ids(store, first.group_id) == [uid]
        roles = [m.role for m in await directory.list_members(first.group_id)]
        assert roles == ["owner"]

    async def test_outside_radius_founds_second_group(self, store, directory):
        a = await add_user(store, LONDON)
        b = await add_user(store, _near(0.25))
        first = await directory.join_or_create_local_group(a, LONDON)

        second = await directory.join_or_create_local_group(b, _near(0.25))

        assert second.created is True
        assert second.group_id != first.group_id
        assert await _count(store, chats) == 2

    async def test_point_at_radius_joins(self, store, directory):
        a = await add_user(store, LONDON)
        b = await add_user(store, _near(0.2, 10.0))
        first = await directory.join_or_create_local_group(a, LONDON)

        result = await directory.join_or_create_local_group(b, _near(0.2, 10.0))
        assert result == JoinResult(group_id=first.group_id, created=False)

    async def test_nearest_of_two_covering_groups_wins(self, store, directory):
        west = await add_user(store, _near(0.15, 270.0))
        east = await add_user(store, _near(0.15, 90.0))
        west_group = await directory.join_or_create_local_group(west, _near(0.15, 270.0))
        east_group = await directory.join_or_create_local_group(east, _near(0.15, 90.0))
        assert west_group.group_id != east_group.group_id

        joiner = await add_user(store)
        result = await directory.join_or_create_local_group(joiner, _near(0.05, 90.0))

        assert result.group_id == east_group.group_id

    async def test_plain_chats_never_joined(self, store, directory):
        a = await add_user(store, LONDON)
        b = await add_user(store, LONDON)
        direct = await add_direct_chat(store, a, b)

        result = await directory.join_or_create_local_group(a, LONDON)

        assert result.created is True
        assert result.group_id != direct

    async def test_unknown_user(self, directory):
        with pytest.raises(NotFound):
            await directory.join_or_create_local_group(999, LONDON)


@pytest.mark.asyncio
class TestGroupNaming:

    async def _name(self, store, directory, **kwargs) -> str:
        uid = await add_user(store, LONDON)
        result = await directory.join_or_create_local_group(uid, LONDON, **kwargs)
        return (await directory.get_group(result.group_id)).name

    async def test_street_preferred(self, store, directory):
        hint = AddressHint(street="Whitehall", city="London")
        assert await self._name(store, directory, has_address=True, address_hint=hint) == "Whitehall"

    async def test_city_when_no_street(self, store, directory):
        hint = AddressHint(street="  ", city="London")
        assert await self._name(store, directory, has_address=True, address_hint=hint) == "London"

    async def test_coordinate_label_without_address(self, store, directory):
        assert await self._name(store, directory) == "51.50740, -0.12780"
        assert coordinate_label(LONDON) == "51.50740, -0.12780"

    async def test_address_flag_without_hint_rejected(self, store, directory):
        uid = await add_user(store, LONDON)
        with pytest.raises(InvalidInput):
            await directory.join_or_create_local_group(uid, LONDON, has_address=True)
        with pytest.raises(InvalidInput):
            await directory.join_or_create_local_group(
                uid, LONDON, has_address=True, address_hint=AddressHint(),
            )
        assert await _count(store, chats) == 0


@pytest.mark.asyncio
class TestJoinSideEffects:

    async def test_creator_gets_created_notice(self, store, directory):
        uid = await add_user(store, LONDON)
        result = await directory.join_or_create_local_group(uid, LONDON)

        row = await store.fetch_one(select(user_alerts).where(user_alerts.c.user_id == uid))
        assert row["title"] == "New Local Group Created"
        assert row["type"] == "chat"
        assert row["related_id"] == result.group_id
        assert row["urgency"] == "moderate"
        assert row["source"] == "system"

    async def test_joiner_gets_joined_notice(self, store, directory):
        _, owner, neighbour = await _group_of_two(store, directory)

        rows = await store.fetch_all(select(user_alerts).where(user_alerts.c.user_id == neighbour))
        assert [r["title"] for r in rows] == ["Joined Nearby Local Group"]
        assert await _count(store, user_alerts, user_alerts.c.user_id == owner) == 1

    async def test_list_update_pushed_to_user_room(self, store, directory, sink):
        uid = await add_user(store, LONDON)
        result = await directory.join_or_create_local_group(uid, LONDON)

        assert (
            f"user_{uid}",
            "chat:list_update:trigger",
            {"chat_id": result.group_id, "created": True},
        ) in sink.sent

    async def test_exploding_sink_does_not_fail_join(self, store, fanout):
        uid = await add_user(store, LONDON)
        sink = ExplodingSink()
        directory = GroupDirectory(store, sink, fanout)

        result = await directory.join_or_create_local_group(uid, LONDON)

        assert result.created
        assert sink.calls == 1
        assert await member_ids(store, result.group_id) == [uid]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Membership changes
# ═══════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestRemoveMember:

    async def test_owner_removes_member(self, store, directory, sink):
        group_id, owner, neighbour = await _group_of_two(store, directory)

        change = await directory.remove_member(group_id, neighbour, owner)

        assert change.disbanded is False
        assert await member_ids(store, group_id) == [owner]
        assert (
            f"user_{neighbour}", "chat:list_update:trigger",
            {"chat_id": group_id, "removed": True},
        ) in sink.sent

    async def test_non_owner_forbidden(self, store, directory):
        group_id, owner, neighbour = await _group_of_two(store, directory)

        with pytest.raises(Forbidden):
            await directory.remove_member(group_id, owner, neighbour)
        assert await member_ids(store, group_id) == sorted([owner, neighbour])

    async def test_outsider_forbidden(self, store, directory):
        group_id, owner, _ = await _group_of_two(store, directory)
        outsider = await add_user(store)
        with pytest.raises(Forbidden):
            await directory.remove_member(group_id, owner, outsider)

    async def test_owner_cannot_remove_self(self, store, directory):
        group_id, owner, neighbour = await _group_of_two(store, directory)

        with pytest.raises(InvalidOperation):
            await directory.remove_member(group_id, owner, owner)
        assert await member_ids(store, group_id) == sorted([owner, neighbour])

    async def test_sole_owner_cannot_remove_self(self, store, directory):
        owner = await add_user(store, LONDON)
        created = await directory.join_or_create_local_group(owner, LONDON)

        with pytest.raises(InvalidOperation):
            await directory.remove_member(created.group_id, owner, owner)
        assert await member_ids(store, created.group_id) == [owner]
        assert await _count(store, chats, chats.c.id == created.group_id) == 1

    async def test_target_not_a_member(self, store, directory):
        group_id, owner, _ = await _group_of_two(store, directory)
        stranger = await add_user(store)
        with pytest.raises(NotFound):
            await directory.remove_member(group_id, stranger, owner)

    async def test_missing_group(self, store, directory):
        uid = await add_user(store)
        with pytest.raises(NotFound):
            await directory.remove_member(404, uid, uid)


@pytest.mark.asyncio
class TestLeaveGroup:

    async def test_member_leaves(self, store, directory):
        group_id, owner, neighbour = await _group_of_two(store, directory)

        change = await directory.leave_group(group_id, neighbour)

        assert not change.disbanded
        assert await member_ids(store, group_id) == [owner]

    async def test_owner_cannot_leave_others_behind(self, store, directory):
        group_id, owner, _ = await _group_of_two(store, directory)
        with pytest.raises(InvalidOperation):
            await directory.leave_group(group_id, owner)

    async def test_last_member_leaving_disbands_with_cascade(self, store, directory):
        group_id, owner, neighbour = await _group_of_two(store, directory)
        await _add_message(store, group_id, owner)
        await _add_message(store, group_id, neighbour)

        await directory.remove_member(group_id, neighbour, owner)
        change = await directory.leave_group(group_id, owner)

        assert change.disbanded is True
        assert await _count(store, chats, chats.c.id == group_id) == 0
        assert await _count(store, chat_members, chat_members.c.chat_id == group_id) == 0
        assert await _count(store, chat_messages, chat_messages.c.chat_id == group_id) == 0
        assert await _count(
            store, chat_read_receipts, chat_read_receipts.c.chat_id == group_id,
        ) == 0
        with pytest.raises(NotFound):
            await directory.get_group(group_id)

    async def test_not_a_member(self, store, directory):
        group_id, _, _ = await _group_of_two(store, directory)
        stranger = await add_user(store)
        with pytest.raises(NotFound):
            await directory.leave_group(group_id, stranger)

    async def test_disbanded_area_gets_fresh_group(self, store, directory):
        uid = await add_user(store, LONDON)
        first = await directory.join_or_create_local_group(uid, LONDON)
        await directory.leave_group(first.group_id, uid)

        again = await directory.join_or_create_local_group(uid, LONDON)

        assert again.created is True
        assert again.group_id != first.group_id

    async def test_disbanded_group_id_not_handed_to_next_founder(self, store, directory):
        founder = await add_user(store, LONDON)
        first = await directory.join_or_create_local_group(founder, LONDON)
        await directory.leave_group(first.group_id, founder)

        latecomer = await add_user(store, LONDON)
        second = await directory.join_or_create_local_group(latecomer, LONDON)

        assert second.created is True
        assert second.group_id > first.group_id
        stale = await store.fetch_all(
            select(user_alerts.c.related_id).where(user_alerts.c.user_id == founder)
        )
        assert [row["related_id"] for row in stale] == [first.group_id]
        assert await member_ids(store, second.group_id) == [latecomer]


@pytest.mark.asyncio
class TestDisbandGroup:

    async def test_owner_disbands(self, store, directory, sink):
        group_id, owner, neighbour = await _group_of_two(store, directory)
        await _add_message(store, group_id, neighbour)

        former = await directory.disband_group(group_id, owner)

        assert sorted(former) == sorted([owner, neighbour])
        assert await _count(store, chats) == 0
        assert await _count(store, chat_messages) == 0
        rooms = {room for room, _, payload in sink.sent if payload.get("disbanded")}
        assert rooms == {f"chat_{group_id}", f"user_{owner}", f"user_{neighbour}"}

    async def test_member_cannot_disband(self, store, directory):
        group_id, _, neighbour = await _group_of_two(store, directory)
        with pytest.raises(Forbidden):
            await directory.disband_group(group_id, neighbour)
        assert await _count(store, chats) == 1


@pytest.mark.asyncio
class TestAddMembers:

    async def test_member_adds_users(self, store, directory):
        group_id, owner, neighbour = await _group_of_two(store, directory)
        newcomer = await add_user(store)

        added = await directory.add_members(group_id, neighbour, [newcomer, owner, newcomer])

        assert added == [newcomer]
        assert await member_ids(store, group_id) == sorted([owner, neighbour, newcomer])
        rows = await store.fetch_all(select(user_alerts).where(user_alerts.c.user_id == newcomer))
        assert [r["title"] for r in rows] == ["Added to Group"]
        assert rows[0]["urgency"] == "advisory"

    async def test_outsider_forbidden(self, store, directory):
        group_id, _, _ = await _group_of_two(store, directory)
        outsider = await add_user(store)
        with pytest.raises(Forbidden):
            await directory.add_members(group_id, outsider, [outsider])

    async def test_unknown_users_rejected(self, store, directory):
        group_id, owner, _ = await _group_of_two(store, directory)
        with pytest.raises(NotFound):
            await directory.add_members(group_id, owner, [9999])

    async def test_empty_list_rejected(self, store, directory):
        group_id, owner, _ = await _group_of_two(store, directory)
        with pytest.raises(InvalidInput):
            await directory.add_members(group_id, owner, [])

    async def test_nothing_new_sends_nothing(self, store, directory, sink):
        group_id, owner, neighbour = await _group_of_two(store, directory)
        before = await _count(store, user_alerts)
        pushes = len(sink.sent)

        assert await directory.add_members(group_id, owner, [neighbour]) == []
        assert await _count(store, user_alerts) == before
        assert len(sink.sent) == pushes


async def _roles(store, chat_id: int) -> dict:
    rows = await store.fetch_all(
        select(chat_members.c.user_id, chat_members.c.role).where(chat_members.c.chat_id == chat_id)
    )
    return {row["user_id"]: row["role"] for row in rows}


@pytest.mark.asyncio
class TestCreateChat:

    async def test_group_chat_owner_and_members(self, store, directory, sink):
        creator = await add_user(store)
        a = await add_user(store)
        b = await add_user(store)

        result = await directory.create_chat(creator, [a, b, a], is_group=True, name=" Volunteers ")

        assert result.created is True
        assert result.member_ids == [creator, a, b]
        assert await _roles(store, result.chat_id) == {
            creator: "owner", a: "member", b: "member",
        }
        group = await directory.get_group(result.chat_id)
        assert group.is_group is True
        assert group.name == "Volunteers"
        assert group.created_by == creator
        assert group.is_geo_bound is False
        assert (
            f"user_{creator}", "chat:list_update:trigger",
            {"chat_id": result.chat_id, "created": True},
        ) in sink.sent

    async def test_participants_get_one_delivery_each(self, store, directory):
        creator = await add_user(store)
        a = await add_user(store)
        b = await add_user(store)

        result = await directory.create_chat(creator, [a, b], is_group=True)

        rows = await store.fetch_all(select(user_alerts).order_by(user_alerts.c.user_id))
        assert [r["user_id"] for r in rows] == [a, b]
        assert {r["title"] for r in rows} == {"Added to Group"}
        assert rows[0]["message"] == 'You were added to group "Unnamed Group".'
        assert {r["related_id"] for r in rows} == {result.chat_id}
        assert {r["type"] for r in rows} == {"chat"}

    async def test_direct_chat(self, store, directory):
        a = await add_user(store)
        b = await add_user(store)

        result = await directory.create_chat(a, [b], name="ignored")

        group = await directory.get_group(result.chat_id)
        assert group.is_group is False
        assert group.name is None
        assert await _roles(store, result.chat_id) == {a: "owner", b: "member"}
        [row] = await store.fetch_all(select(user_alerts))
        assert row["user_id"] == b
        assert row["title"] == "New Direct Chat"

    async def test_existing_direct_pair_reused(self, store, directory, sink):
        a = await add_user(store)
        b = await add_user(store)
        first = await directory.create_chat(a, [b])
        deliveries = await _count(store, user_alerts)
        pushes = len(sink.sent)

        again = await directory.create_chat(b, [a])

        assert again.created is False
        assert again.chat_id == first.chat_id
        assert await _count(store, chats) == 1
        assert await _count(store, user_alerts) == deliveries
        assert len(sink.sent) == pushes

    async def test_seeded_direct_chat_reused(self, store, directory):
        a = await add_user(store)
        b = await add_user(store)
        chat_id = await add_direct_chat(store, a, b)

        assert (await directory.create_chat(a, [b])).chat_id == chat_id

    async def test_group_with_same_pair_is_not_reused(self, store, directory):
        a = await add_user(store)
        b = await add_user(store)
        group = await directory.create_chat(a, [b], is_group=True, name="Pair")

        direct = await directory.create_chat(a, [b])

        assert direct.created is True
        assert direct.chat_id != group.chat_id

    async def test_direct_chat_takes_one_participant(self, store, directory):
        a = await add_user(store)
        b = await add_user(store)
        c = await add_user(store)
        with pytest.raises(InvalidInput) as exc:
            await directory.create_chat(a, [b, c])
        assert exc.value.details["field"] == "participant_ids"
        assert await _count(store, chats) == 0

    async def test_needs_another_participant(self, store, directory):
        a = await add_user(store)
        with pytest.raises(InvalidInput):
            await directory.create_chat(a, [])
        with pytest.raises(InvalidInput):
            await directory.create_chat(a, [a], is_group=True)

    async def test_unknown_participant(self, store, directory):
        a = await add_user(store)
        with pytest.raises(NotFound) as exc:
            await directory.create_chat(a, [9999], is_group=True)
        assert exc.value.details["user_ids"] == [9999]
        assert await _count(store, chats) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Queries
# ═══════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestListUserGroups:

    async def test_lists_groups_and_direct_chats(self, store, directory):
        me = await add_user(store, LONDON, first_name="Ada", postal_code="SW1A 2")
        friend = await add_user(store, first_name="Bo", last_name="Lee", postal_code="SW1A 2")
        stranger = await add_user(store, first_name="Cy", postal_code="E1 6")
        local = await directory.join_or_create_local_group(me, LONDON)
        near_chat = await add_direct_chat(store, me, friend)
        far_chat = await add_direct_chat(store, me, stranger)

        summaries = {s.group.id: s for s in await directory.list_user_groups(me)}

        assert set(summaries) == {local.group_id, near_chat, far_chat}
        assert summaries[local.group_id].role == "owner"
        assert summaries[local.group_id].display_name == coordinate_label(LONDON)
        assert summaries[local.group_id].is_nearby is False
        assert summaries[near_chat].display_name == "Bo Lee"
        assert summaries[near_chat].is_nearby is True
        assert summaries[far_chat].is_nearby is False

    async def test_no_postal_code_never_nearby(self, store, directory):
        me = await add_user(store)
        other = await add_user(store)
        chat = await add_direct_chat(store, me, other)

        [summary] = await directory.list_user_groups(me)
        assert summary.group.id == chat
        assert summary.is_nearby is False

    async def test_to_dict_shape(self, store, directory):
        uid = await add_user(store, LONDON, first_name="Ada", last_name="King")
        await directory.join_or_create_local_group(uid, LONDON)

        [summary] = await directory.list_user_groups(uid)
        data = summary.to_dict()

        assert data["member_count"] == 1
        assert data["role"] == "owner"
        assert data["members"][0]["name"] == "Ada King"
        assert data["radius_km"] == 0.2

    async def test_unknown_user(self, directory):
        with pytest.raises(NotFound):
            await directory.list_user_groups(12345)

    async def test_empty(self, store, directory):
        uid = await add_user(store)
        assert await directory.list_user_groups(uid) == []


@pytest.mark.asyncio
class TestFindLocalGroups:

    async def test_nearest_first_with_counts(self, store, directory):
        group_id, _, _ = await _group_of_two(store, directory)
        far_owner = await add_user(store)
        far = await directory.join_or_create_local_group(far_owner, _near(0.3))

        found = await directory.find_local_groups(_near(0.18))

        assert [n.group.id for n in found] == [far.group_id, group_id]
        assert [n.member_count for n in found] == [1, 2]
        assert found[0].distance_km == pytest.approx(0.12, abs=1e-5)

    async def test_nothing_nearby(self, store, directory):
        assert await directory.find_local_groups(LONDON) == []


class TestGroupModel:

    def test_half_geofence_rejected(self):
        with pytest.raises(InvalidInput):
            Group(id=1, name="x", center=LONDON, radius_km=None)

    def test_plain_group_from_row(self):
        group = Group.from_row({"id": 3, "name": None, "is_group": False})
        assert not group.is_geo_bound
        assert group.to_dict()["latitude"] is None
