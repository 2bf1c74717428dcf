"""
directory.py — Location-bound community groups and membership.

The directory decides, for a user at a point, whether to join the nearest
local group whose radius covers them or to found a new one there.

═══════════════════════════════════════════════════════════════════════════
JOIN-OR-CREATE FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Load geo-bound  │  every chat with center + radius
    │     groups          │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Nearest         │  nearest_covering_group(point, groups)
    │     covering group  │
    └───┬─────────────┬───┘
        │ found       │ none
        ▼             ▼
    ┌─────────┐   ┌─────────────────────┐
    │ 3. Join │   │ 4. Create at point  │  radius = LOCAL_GROUP_RADIUS_KM
    │ (no-op  │   │    creator = owner  │  name = street | city | "lat, lon"
    │ if      │   └─────────┬───────────┘
    │ member) │             │
    └────┬────┘             │
         └────────┬─────────┘
                  ▼
    ┌─────────────────────┐
    │  5. Announce        │  one Delivery to the user
    │                     │  chat:list_update:trigger → user_{id}
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RACES
═══════════════════════════════════════════════════════════════════════════

Creation: two users with no covering group can each found a group at
nearly the same moment. Step 4 repeats step 2 inside its own transaction,
which narrows the window but does not close it. Duplicate neighbouring
groups are accepted.

Disband: every membership removal locks the chat row, deletes, counts
the remaining members and cascades in one transaction. A join locks the
same row before inserting, so a join never lands in a group that is
being disbanded; if the group is gone the join searches again.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import and_, delete, func, insert, select

from resqzone.app.alerts.fanout import AlertFanout
from resqzone.app.alerts.models import AlertType, DirectedAlertRequest, Urgency
from resqzone.app.core.errors import (
    Forbidden,
    InvalidCoordinate,
    InvalidInput,
    InvalidOperation,
    NotFound,
    PartialFailure,
)
from resqzone.app.core.tables import (
    chat_members,
    chat_messages,
    chat_read_receipts,
    chats,
    users,
)
from resqzone.app.groups.models import (
    AddressHint,
    ChatCreation,
    Group,
    GroupSummary,
    JoinResult,
    Member,
    MemberRole,
    MembershipChange,
    NearbyGroup,
)
from resqzone.app.realtime.sink import (
    EVENT_LIST_UPDATE,
    NotificationSink,
    chat_room,
    safe_push,
    user_room,
)
from resqzone.app.spatial.geo_index import Coordinate, covering_groups, nearest_covering_group

logger = logging.getLogger(__name__)


DEFAULT_LOCAL_RADIUS_KM = 0.2
_JOIN_ATTEMPTS = 3

# ── Delivery texts ──
_CREATED = ("New Local Group Created", "You've created a new local group at your location.")
_JOINED = ("Joined Nearby Local Group", "You've joined a local group near your location.")
_ADDED = ("Added to Group", "You were added to a group chat.")
_UNNAMED_GROUP = "Unnamed Group"


def coordinate_label(point: Coordinate) -> str:
    return f"{point.latitude:.5f}, {point.longitude:.5f}"


class GroupDirectory:
    """Local-group find-or-create, plus chat creation and membership for every chat."""

    def __init__(
        self,
        store,
        sink: NotificationSink,
        fanout: AlertFanout,
        *,
        default_radius_km: float = DEFAULT_LOCAL_RADIUS_KM,
    ):
        if default_radius_km <= 0:
            raise InvalidInput("Local group radius must be positive", field="radius_km")
        self.store = store
        self.sink = sink
        self.fanout = fanout
        self.default_radius_km = default_radius_km

    # ═══════════════════════════════════════════════════════════════════
    # Join or create
    # ═══════════════════════════════════════════════════════════════════

    async def join_or_create_local_group(
        self,
        user_id: int,
        point: Coordinate,
        has_address: bool = False,
        address_hint: Optional[AddressHint] = None,
    ) -> JoinResult:
        """
        Put ``user_id`` into the local group covering ``point``, founding one
        if none does.

        Repeating the call for the same user and point returns the same
        group with ``created=False`` and adds no membership.
        """
        name = self._local_group_name(point, has_address, address_hint)
        await self._require_user(user_id)

        result: Optional[JoinResult] = None
        for _ in range(_JOIN_ATTEMPTS):
            target = nearest_covering_group(point, await self._geo_groups(self.store))
            if target is None:
                break
            if await self._join_existing(target.id, user_id):
                result = JoinResult(group_id=target.id, created=False)
                break
            logger.info(
                "Group %s disbanded during join, searching again", target.id,
                extra={"group_id": target.id, "user_id": user_id},
            )

        if result is None:
            result = await self._create_local_group(user_id, point, name)

        logger.info(
            "User %s %s local group %s",
            user_id, "created" if result.created else "joined", result.group_id,
            extra={
                "user_id": user_id,
                "group_id": result.group_id,
                "lat": point.latitude,
                "lon": point.longitude,
            },
        )

        title, message = _CREATED if result.created else _JOINED
        await self._send_directed([user_id], title, message, Urgency.MODERATE, result.group_id)
        await safe_push(
            self.sink,
            user_room(user_id),
            EVENT_LIST_UPDATE,
            {"chat_id": result.group_id, "created": result.created},
        )
        return result

    def _local_group_name(
        self,
        point: Coordinate,
        has_address: bool,
        address_hint: Optional[AddressHint],
    ) -> str:
        if not has_address:
            return coordinate_label(point)
        label = address_hint.label() if address_hint else None
        if not label:
            raise InvalidInput(
                "Address hint needs a street or a city", field="address",
            )
        return label

    async def _join_existing(self, group_id: int, user_id: int) -> bool:
        """Add a member row; False if the group no longer exists."""
        async with self.store.transaction() as tx:
            locked = await tx.fetch_one(
                select(chats.c.id).where(chats.c.id == group_id).with_for_update()
            )
            if locked is None:
                return False
            await tx.insert_ignore(
                chat_members,
                {"chat_id": group_id, "user_id": user_id, "role": MemberRole.MEMBER.value},
            )
        return True

    async def _create_local_group(self, user_id: int, point: Coordinate, name: str) -> JoinResult:
        async with self.store.transaction() as tx:
            target = nearest_covering_group(point, await self._geo_groups(tx))
            if target is not None:
                await tx.insert_ignore(
                    chat_members,
                    {"chat_id": target.id, "user_id": user_id, "role": MemberRole.MEMBER.value},
                )
                return JoinResult(group_id=target.id, created=False)

            written = await tx.execute(
                insert(chats).values(
                    is_group=True,
                    name=name,
                    latitude=point.latitude,
                    longitude=point.longitude,
                    radius_km=self.default_radius_km,
                    created_by=user_id,
                )
            )
            group_id = written.insert_id
            await tx.execute(
                insert(chat_members).values(
                    chat_id=group_id, user_id=user_id, role=MemberRole.OWNER.value,
                )
            )
        return JoinResult(group_id=group_id, created=True)

    # ═══════════════════════════════════════════════════════════════════
    # Plain chats
    # ═══════════════════════════════════════════════════════════════════

    async def create_chat(
        self,
        user_id: int,
        participant_ids: Sequence[int],
        is_group: bool = False,
        name: Optional[str] = None,
    ) -> ChatCreation:
        """
        Start a direct or group chat owned by ``user_id``.

        A direct chat takes exactly one other participant; if the pair
        already shares one, that chat is returned with ``created=False``
        and nothing is written. Participants get an advisory Delivery.
        """
        participants = [uid for uid in dict.fromkeys(participant_ids) if uid != user_id]
        if not participants:
            raise InvalidInput(
                "'participant_ids' must name at least one other user", field="participant_ids",
            )
        if not is_group and len(participants) > 1:
            raise InvalidInput(
                "A direct chat has exactly one other participant", field="participant_ids",
            )
        if is_group:
            name = (name or "").strip() or None
        else:
            name = None

        everyone = [user_id, *participants]
        async with self.store.transaction() as tx:
            rows = await tx.fetch_all(select(users.c.id).where(users.c.id.in_(everyone)))
            missing = sorted(set(everyone) - {row["id"] for row in rows})
            if missing:
                raise NotFound("User", user_ids=missing)

            if not is_group:
                existing = await self._direct_chat_between(tx, user_id, participants[0])
                if existing is not None:
                    return ChatCreation(chat_id=existing, created=False, member_ids=everyone)

            written = await tx.execute(
                insert(chats).values(is_group=is_group, name=name, created_by=user_id)
            )
            chat_id = written.insert_id
            for uid in everyone:
                role = MemberRole.OWNER if uid == user_id else MemberRole.MEMBER
                await tx.execute(
                    insert(chat_members).values(chat_id=chat_id, user_id=uid, role=role.value)
                )

        logger.info(
            "User %s started %s chat %s with %d participants",
            user_id, "group" if is_group else "direct", chat_id, len(participants),
            extra={"user_id": user_id, "group_id": chat_id, "recipient_count": len(participants)},
        )
        if is_group:
            title = _ADDED[0]
            message = f'You were added to group "{name or _UNNAMED_GROUP}".'
        else:
            title, message = "New Direct Chat", f"You have a new direct chat with user {user_id}."
        await self._send_directed(participants, title, message, Urgency.ADVISORY, chat_id)
        for uid in everyone:
            await safe_push(
                self.sink, user_room(uid), EVENT_LIST_UPDATE, {"chat_id": chat_id, "created": True},
            )
        return ChatCreation(chat_id=chat_id, created=True, member_ids=everyone)

    @staticmethod
    async def _direct_chat_between(tx, user_id: int, other_id: int) -> Optional[int]:
        mine = chat_members.alias("mine")
        theirs = chat_members.alias("theirs")
        return await tx.scalar(
            select(chats.c.id)
            .join(mine, and_(mine.c.chat_id == chats.c.id, mine.c.user_id == user_id))
            .join(theirs, and_(theirs.c.chat_id == chats.c.id, theirs.c.user_id == other_id))
            .where(chats.c.is_group.is_(False))
            .order_by(chats.c.id)
            .limit(1)
        )

    # ═══════════════════════════════════════════════════════════════════
    # Membership changes
    # ═══════════════════════════════════════════════════════════════════

    async def remove_member(
        self, group_id: int, target_user_id: int, requested_by: int,
    ) -> MembershipChange:
        """
        Owner removes another member. The owner cannot remove themselves
        here; ``leave_group`` and ``disband_group`` cover that.
        """
        async with self.store.transaction() as tx:
            await self._lock_group(tx, group_id)
            role = await self._role_of(tx, group_id, requested_by)
            if role != MemberRole.OWNER.value:
                raise Forbidden(
                    "Only the group owner can remove members",
                    group_id=group_id, user_id=requested_by,
                )
            if target_user_id == requested_by:
                raise InvalidOperation(
                    "Owner cannot remove themselves; leave or disband the group instead",
                    group_id=group_id, user_id=requested_by,
                )
            written = await tx.execute(
                delete(chat_members).where(
                    chat_members.c.chat_id == group_id,
                    chat_members.c.user_id == target_user_id,
                )
            )
            if written.affected_rows == 0:
                raise NotFound("Membership", group_id=group_id, user_id=target_user_id)
            disbanded = await self._disband_if_empty(tx, group_id)

        logger.info(
            "User %s removed from group %s by %s (disbanded=%s)",
            target_user_id, group_id, requested_by, disbanded,
            extra={"group_id": group_id, "user_id": target_user_id},
        )
        await safe_push(
            self.sink,
            user_room(target_user_id),
            EVENT_LIST_UPDATE,
            {"chat_id": group_id, "removed": True},
        )
        return MembershipChange(group_id=group_id, user_id=target_user_id, disbanded=disbanded)

    async def leave_group(self, group_id: int, user_id: int) -> MembershipChange:
        """
        Member leaves. An owner may leave only as the last member, which
        disbands the group.
        """
        async with self.store.transaction() as tx:
            await self._lock_group(tx, group_id)
            role = await self._role_of(tx, group_id, user_id)
            if role is None:
                raise NotFound("Membership", group_id=group_id, user_id=user_id)
            if role == MemberRole.OWNER.value and await self._member_count(tx, group_id) > 1:
                raise InvalidOperation(
                    "Owner must remove the other members or disband the group before leaving",
                    group_id=group_id, user_id=user_id,
                )
            await tx.execute(
                delete(chat_members).where(
                    chat_members.c.chat_id == group_id,
                    chat_members.c.user_id == user_id,
                )
            )
            disbanded = await self._disband_if_empty(tx, group_id)

        logger.info(
            "User %s left group %s (disbanded=%s)", user_id, group_id, disbanded,
            extra={"group_id": group_id, "user_id": user_id},
        )
        await safe_push(
            self.sink, user_room(user_id), EVENT_LIST_UPDATE, {"chat_id": group_id, "left": True},
        )
        return MembershipChange(group_id=group_id, user_id=user_id, disbanded=disbanded)

    async def disband_group(self, group_id: int, requested_by: int) -> List[int]:
        """Owner deletes the group outright; returns the former member ids."""
        async with self.store.transaction() as tx:
            await self._lock_group(tx, group_id)
            if await self._role_of(tx, group_id, requested_by) != MemberRole.OWNER.value:
                raise Forbidden(
                    "Only the group owner can disband the group",
                    group_id=group_id, user_id=requested_by,
                )
            rows = await tx.fetch_all(
                select(chat_members.c.user_id).where(chat_members.c.chat_id == group_id)
            )
            former = [row["user_id"] for row in rows]
            await self._cascade_delete(tx, group_id)

        logger.info(
            "Group %s disbanded by %s (%d members)", group_id, requested_by, len(former),
            extra={"group_id": group_id, "user_id": requested_by},
        )
        payload = {"chat_id": group_id, "disbanded": True}
        await safe_push(self.sink, chat_room(group_id), EVENT_LIST_UPDATE, payload)
        for uid in former:
            await safe_push(self.sink, user_room(uid), EVENT_LIST_UPDATE, payload)
        return former

    async def add_members(
        self, group_id: int, requested_by: int, user_ids: Sequence[int],
    ) -> List[int]:
        """
        A member adds other users. Existing members are skipped; returns
        the ids actually added.
        """
        wanted = list(dict.fromkeys(user_ids))
        if not wanted:
            raise InvalidInput("'user_ids' must not be empty", field="user_ids")

        added: List[int] = []
        async with self.store.transaction() as tx:
            await self._lock_group(tx, group_id)
            if await self._role_of(tx, group_id, requested_by) is None:
                raise Forbidden(
                    "Only members can add people to a group",
                    group_id=group_id, user_id=requested_by,
                )
            rows = await tx.fetch_all(select(users.c.id).where(users.c.id.in_(wanted)))
            missing = sorted(set(wanted) - {row["id"] for row in rows})
            if missing:
                raise NotFound("User", user_ids=missing)
            for uid in wanted:
                written = await tx.insert_ignore(
                    chat_members,
                    {"chat_id": group_id, "user_id": uid, "role": MemberRole.MEMBER.value},
                )
                if written.affected_rows:
                    added.append(uid)

        logger.info(
            "%d users added to group %s by %s", len(added), group_id, requested_by,
            extra={"group_id": group_id, "recipient_count": len(added)},
        )
        if added:
            await self._send_directed(added, *_ADDED, Urgency.ADVISORY, group_id)
            for uid in added:
                await safe_push(
                    self.sink, user_room(uid), EVENT_LIST_UPDATE, {"chat_id": group_id},
                )
        return added

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    async def get_group(self, group_id: int) -> Group:
        row = await self.store.fetch_one(select(chats).where(chats.c.id == group_id))
        if row is None:
            raise NotFound("Group", group_id=group_id)
        return Group.from_row(row)

    async def list_members(self, group_id: int) -> List[Member]:
        await self.get_group(group_id)
        rows = await self.store.fetch_all(
            self._members_query().where(chat_members.c.chat_id == group_id)
        )
        return [self._member(row) for row in rows]

    async def list_user_groups(self, user_id: int) -> List[GroupSummary]:
        """Every chat the user belongs to, most recently updated first."""
        user = await self.store.fetch_one(
            select(users.c.id, users.c.postal_code).where(users.c.id == user_id)
        )
        if user is None:
            raise NotFound("User", user_id=user_id)

        rows = await self.store.fetch_all(
            select(chats)
            .join(chat_members, chat_members.c.chat_id == chats.c.id)
            .where(chat_members.c.user_id == user_id)
            .order_by(chats.c.updated_at.desc(), chats.c.id.desc())
        )
        if not rows:
            return []

        chat_ids = [row["id"] for row in rows]
        members: Dict[int, List[Member]] = {cid: [] for cid in chat_ids}
        for row in await self.store.fetch_all(
            self._members_query().where(chat_members.c.chat_id.in_(chat_ids))
        ):
            members[row["chat_id"]].append(self._member(row))

        postal = (user["postal_code"] or "").strip()
        summaries = []
        for row in rows:
            summary = GroupSummary(
                group=Group.from_row(row), viewer_id=user_id, members=members[row["id"]],
            )
            other = summary.other_member
            summary.is_nearby = bool(
                postal and other and (other.postal_code or "").strip() == postal
            )
            summaries.append(summary)
        return summaries

    async def find_local_groups(self, point: Coordinate) -> List[NearbyGroup]:
        """Local groups whose radius covers ``point``, nearest first."""
        covering = covering_groups(point, await self._geo_groups(self.store))
        if not covering:
            return []
        ids = [group.id for group, _ in covering]
        counts = {
            row["chat_id"]: row["member_count"]
            for row in await self.store.fetch_all(
                select(chat_members.c.chat_id, func.count().label("member_count"))
                .where(chat_members.c.chat_id.in_(ids))
                .group_by(chat_members.c.chat_id)
            )
        }
        return [
            NearbyGroup(group=group, distance_km=dist, member_count=counts.get(group.id, 0))
            for group, dist in covering
        ]

    # ═══════════════════════════════════════════════════════════════════
    # Internals
    # ═══════════════════════════════════════════════════════════════════

    async def _require_user(self, user_id: int) -> None:
        if await self.store.scalar(select(users.c.id).where(users.c.id == user_id)) is None:
            raise NotFound("User", user_id=user_id)

    async def _geo_groups(self, executor) -> List[Group]:
        rows = await executor.fetch_all(
            select(chats).where(
                chats.c.is_group.is_(True),
                chats.c.latitude.is_not(None),
                chats.c.longitude.is_not(None),
                chats.c.radius_km.is_not(None),
            )
        )
        groups = []
        for row in rows:
            try:
                groups.append(Group.from_row(row))
            except InvalidCoordinate:
                logger.warning(
                    "Skipping group %s with invalid center", row["id"],
                    extra={"group_id": row["id"]},
                )
        return groups

    @staticmethod
    async def _lock_group(tx, group_id: int) -> None:
        locked = await tx.fetch_one(
            select(chats.c.id).where(chats.c.id == group_id).with_for_update()
        )
        if locked is None:
            raise NotFound("Group", group_id=group_id)

    @staticmethod
    async def _role_of(tx, group_id: int, user_id: int) -> Optional[str]:
        return await tx.scalar(
            select(chat_members.c.role).where(
                chat_members.c.chat_id == group_id,
                chat_members.c.user_id == user_id,
            )
        )

    @staticmethod
    async def _member_count(tx, group_id: int) -> int:
        return await tx.scalar(
            select(func.count()).select_from(chat_members).where(chat_members.c.chat_id == group_id)
        )

    async def _disband_if_empty(self, tx, group_id: int) -> bool:
        if await self._member_count(tx, group_id):
            return False
        await self._cascade_delete(tx, group_id)
        return True

    @staticmethod
    async def _cascade_delete(tx, group_id: int) -> None:
        await tx.execute(delete(chat_read_receipts).where(chat_read_receipts.c.chat_id == group_id))
        await tx.execute(delete(chat_messages).where(chat_messages.c.chat_id == group_id))
        await tx.execute(delete(chat_members).where(chat_members.c.chat_id == group_id))
        await tx.execute(delete(chats).where(chats.c.id == group_id))
        logger.info("Group %s deleted with its messages", group_id, extra={"group_id": group_id})

    @staticmethod
    def _members_query():
        return (
            select(
                chat_members.c.chat_id,
                chat_members.c.user_id,
                chat_members.c.role,
                chat_members.c.joined_at,
                users.c.first_name,
                users.c.last_name,
                users.c.postal_code,
            )
            .join(users, users.c.id == chat_members.c.user_id)
            .order_by(chat_members.c.joined_at, chat_members.c.user_id)
        )

    @staticmethod
    def _member(row) -> Member:
        return Member(
            user_id=row["user_id"],
            role=row["role"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            postal_code=row["postal_code"],
            joined_at=row["joined_at"],
        )

    async def _send_directed(
        self,
        user_ids: List[int],
        title: str,
        message: str,
        urgency: Urgency,
        group_id: int,
    ) -> None:
        request = DirectedAlertRequest(
            user_ids=user_ids,
            title=title,
            message=message,
            urgency=urgency,
            source="system",
            alert_type=AlertType.CHAT,
            related_id=group_id,
        )
        try:
            await self.fanout.send_directed_alert(request)
        except PartialFailure as e:
            logger.warning(
                "Group %s notice not delivered to %s", group_id, e.failed_user_ids,
                extra={"group_id": group_id},
            )
