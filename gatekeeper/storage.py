"""DynamoDB-backed identity store and pending-action ledger.

Both stores share one table. Every multi-step write relies on DynamoDB
conditional expressions for atomicity; there are no in-process locks.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Final

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotFoundError, TransientStoreError
from .models import (
    ChatKind,
    GlobalCursor,
    GroupState,
    Member,
    MemberStatus,
    MessageKind,
    PendingMessage,
    to_iso,
    utc_now,
)

PAGE_SIZE: Final[int] = 100

log: Final = logging.getLogger("gatekeeper.storage")


def is_conditional_failure(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    return code == "ConditionalCheckFailedException"


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        raise TransientStoreError(f"{operation}: {exc}") from exc
    except BotoCoreError as exc:
        raise TransientStoreError(f"{operation}: {exc}") from exc


class _TableStore:
    def __init__(self, table, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._table = table
        self._clock = clock

    def ensure_table(self) -> None:
        if self._table is None:
            raise RuntimeError("Gatekeeper table is not configured")

    def _now(self) -> str:
        return to_iso(self._clock())

    def _get(self, key: dict[str, str], *, consistent: bool = False):
        resp = self._table.get_item(Key=key, ConsistentRead=consistent)
        return resp.get("Item")


class IdentityStore(_TableStore):
    """Members, group state and the global update cursor."""

    # ----- Members -----
    def get_member(self, group_id: int, external_id: int) -> Member:
        self.ensure_table()
        with _store_errors("get member"):
            item = self._get(Member.key(group_id, external_id))
        if not item:
            raise NotFoundError(f"member {external_id} not found in group {group_id}")
        return Member.from_item(item)

    def get_or_create_member(
        self,
        group_id: int,
        external_id: int,
        default_status: MemberStatus,
    ) -> tuple[Member, bool]:
        """Return the member and whether this call created it.

        Read first; on a miss insert with ``attribute_not_exists(pk)`` and, if
        another writer won the race, re-read the row it created.
        """
        self.ensure_table()
        key = Member.key(group_id, external_id)
        with _store_errors("get or create member"):
            item = self._get(key)
            if item:
                return Member.from_item(item), False

            now = self._now()
            member = Member(
                internal_id=str(uuid.uuid4()),
                group_id=group_id,
                external_id=external_id,
                status=default_status,
                created_at=now,
                updated_at=now,
            )
            try:
                self._table.put_item(
                    Item=member.to_item(),
                    ConditionExpression=Attr("pk").not_exists(),
                )
            except ClientError as exc:
                if not is_conditional_failure(exc):
                    raise
                log.debug(
                    "Member %s in group %s created concurrently, re-reading",
                    external_id,
                    group_id,
                )
                item = self._get(key, consistent=True)
                if not item:
                    raise TransientStoreError(
                        f"member {external_id} vanished after insert conflict"
                    ) from exc
                return Member.from_item(item), False

        return member, True

    def set_status(
        self,
        member: Member,
        status: MemberStatus,
        *,
        expected: MemberStatus | None = None,
    ) -> bool:
        """Write a new status; False when ``expected`` no longer holds.

        Any status change releases the member's greeting claim.
        """
        self.ensure_table()
        condition = Attr("internal_id").eq(member.internal_id)
        if expected is not None:
            condition = condition & Attr("status").eq(str(expected))
        with _store_errors("set status"):
            try:
                self._table.update_item(
                    Key=Member.key(member.group_id, member.external_id),
                    UpdateExpression=(
                        "SET #status = :status, updated_at = :now REMOVE greeted_at"
                    ),
                    ExpressionAttributeNames={"#status": "status"},
                    ExpressionAttributeValues={
                        ":status": str(status),
                        ":now": self._now(),
                    },
                    ConditionExpression=condition,
                )
            except ClientError as exc:
                if is_conditional_failure(exc):
                    return False
                raise
        member.status = status
        member.greeted_at = None
        return True

    def record_verification(
        self,
        member: Member,
        provider_id: int,
        *,
        expected: MemberStatus = MemberStatus.JUST_JOINED,
    ) -> bool:
        """Store the provider id and flip the member to active in one write."""
        self.ensure_table()
        with _store_errors("record verification"):
            try:
                self._table.update_item(
                    Key=Member.key(member.group_id, member.external_id),
                    UpdateExpression=(
                        "SET provider_id = :provider, #status = :status, "
                        "updated_at = :now REMOVE greeted_at"
                    ),
                    ExpressionAttributeNames={"#status": "status"},
                    ExpressionAttributeValues={
                        ":provider": str(provider_id),
                        ":status": str(MemberStatus.ACTIVE),
                        ":now": self._now(),
                    },
                    ConditionExpression=Attr("internal_id").eq(member.internal_id)
                    & Attr("status").eq(str(expected)),
                )
            except ClientError as exc:
                if is_conditional_failure(exc):
                    return False
                raise
        member.provider_id = provider_id
        member.status = MemberStatus.ACTIVE
        member.greeted_at = None
        return True

    def claim_greeting(self, member: Member) -> bool:
        """Take the right to greet this member; only one caller wins."""
        self.ensure_table()
        now = self._now()
        with _store_errors("claim greeting"):
            try:
                self._table.update_item(
                    Key=Member.key(member.group_id, member.external_id),
                    UpdateExpression="SET greeted_at = :now",
                    ExpressionAttributeValues={":now": now},
                    ConditionExpression=Attr("internal_id").eq(member.internal_id)
                    & Attr("greeted_at").not_exists(),
                )
            except ClientError as exc:
                if is_conditional_failure(exc):
                    return False
                raise
        member.greeted_at = now
        return True

    def release_greeting(self, member: Member) -> None:
        self.ensure_table()
        with _store_errors("release greeting"):
            try:
                self._table.update_item(
                    Key=Member.key(member.group_id, member.external_id),
                    UpdateExpression="REMOVE greeted_at",
                    ConditionExpression=Attr("internal_id").eq(member.internal_id),
                )
            except ClientError as exc:
                if not is_conditional_failure(exc):
                    raise
        member.greeted_at = None

    # ----- Group state -----
    def get_or_create_group_state(self, group_id: int, kind: ChatKind) -> GroupState:
        self.ensure_table()
        key = GroupState.key(group_id)
        with _store_errors("get or create group state"):
            item = self._get(key)
            if item:
                return GroupState.from_item(item)

            state = GroupState(group_id=group_id, kind=kind, created_at=self._now())
            try:
                self._table.put_item(
                    Item=state.to_item(),
                    ConditionExpression=Attr("pk").not_exists(),
                )
            except ClientError as exc:
                if not is_conditional_failure(exc):
                    raise
                item = self._get(key, consistent=True)
                if not item:
                    raise TransientStoreError(
                        f"group state {group_id} vanished after insert conflict"
                    ) from exc
                return GroupState.from_item(item)
        return state

    def save_group_state(self, state: GroupState) -> None:
        self.ensure_table()
        with _store_errors("save group state"):
            self._table.put_item(Item=state.to_item())

    def list_group_states(self) -> list[GroupState]:
        self.ensure_table()
        states: list[GroupState] = []
        kwargs: dict[str, object] = {
            "FilterExpression": Attr("sk").eq(GroupState.SK_VALUE)
        }
        with _store_errors("list group states"):
            while True:
                resp = self._table.scan(**kwargs)
                states.extend(GroupState.from_item(item) for item in resp.get("Items", []))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        return states

    # ----- Global cursor -----
    def get_cursor(self) -> GlobalCursor:
        self.ensure_table()
        with _store_errors("get cursor"):
            return GlobalCursor.from_item(self._get(GlobalCursor.KEY))

    def advance_cursor(self, update_id: int) -> bool:
        """Move the cursor forward; never moves it back."""
        self.ensure_table()
        with _store_errors("advance cursor"):
            try:
                self._table.update_item(
                    Key=dict(GlobalCursor.KEY),
                    UpdateExpression="SET last_update_id = :update_id",
                    ExpressionAttributeValues={":update_id": update_id},
                    ConditionExpression=Attr("last_update_id").not_exists()
                    | Attr("last_update_id").lt(update_id),
                )
            except ClientError as exc:
                if is_conditional_failure(exc):
                    return False
                raise
        return True


class PendingLedger(_TableStore):
    """Outstanding bot-authored messages awaiting cleanup or a deadline."""

    def add(self, message: PendingMessage) -> None:
        self.ensure_table()
        with _store_errors("add pending message"):
            self._table.put_item(Item=message.to_item())

    def list_for_member(
        self,
        member_id: str,
        group_id: int,
        kind: MessageKind | None = None,
        *,
        limit: int = PAGE_SIZE,
    ) -> list[PendingMessage]:
        """Rows of one member; all kinds when ``kind`` is None."""
        self.ensure_table()
        with _store_errors("list pending messages for member"):
            resp = self._table.query(
                KeyConditionExpression=Key("pk").eq(PendingMessage.PK_TEMPLATE % group_id)
                & Key("sk").begins_with(PendingMessage.SK_PREFIX_TEMPLATE % member_id),
                Limit=limit,
            )
        messages = [PendingMessage.from_item(item) for item in resp.get("Items", [])]
        return [
            message for message in messages if kind is None or message.kind == kind
        ]

    def list_older_than(
        self, cutoff: datetime, *, limit: int = PAGE_SIZE
    ) -> list[PendingMessage]:
        """Oldest first, strictly older than ``cutoff``."""
        self.ensure_table()
        with _store_errors("list expired pending messages"):
            resp = self._table.query(
                IndexName=PendingMessage.INDEX_NAME,
                KeyConditionExpression=Key("gsi1pk").eq(PendingMessage.INDEX_PK_VALUE)
                & Key("gsi1sk").lt(to_iso(cutoff)),
                Limit=limit,
            )
        return [PendingMessage.from_item(item) for item in resp.get("Items", [])]

    def delete_batch(self, messages: Iterable[PendingMessage]) -> int:
        self.ensure_table()
        count = 0
        with _store_errors("delete pending messages"):
            with self._table.batch_writer() as batch:
                for message in messages:
                    batch.delete_item(
                        Key=PendingMessage.key(
                            message.group_id, message.member_id, message.message_id
                        )
                    )
                    count += 1
        return count

    def record_failure(self, message: PendingMessage) -> PendingMessage:
        """Bump the attempt counter of a row that failed to process."""
        self.ensure_table()
        message.attempts += 1
        with _store_errors("record pending failure"):
            try:
                self._table.update_item(
                    Key=PendingMessage.key(
                        message.group_id, message.member_id, message.message_id
                    ),
                    UpdateExpression="SET attempts = :attempts",
                    ExpressionAttributeValues={":attempts": message.attempts},
                    ConditionExpression=Attr("pk").exists(),
                )
            except ClientError as exc:
                if not is_conditional_failure(exc):
                    raise
        return message


__all__ = ["IdentityStore", "PAGE_SIZE", "PendingLedger", "is_conditional_failure"]
