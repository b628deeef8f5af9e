from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import ClassVar

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Format an aware datetime as a sortable UTC string."""
    return value.astimezone(UTC).strftime(ISO_FORMAT)


def from_iso(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=UTC)


class MemberStatus(StrEnum):
    JUST_JOINED = "just_joined"
    ACTIVE = "active"
    BANNED = "banned"
    KICKED = "kicked"


class ChatKind(StrEnum):
    DIRECT = "direct"
    GROUP = "group"
    SUPERGROUP = "supergroup"
    OTHER = "other"

    @property
    def is_group(self) -> bool:
        return self in (ChatKind.GROUP, ChatKind.SUPERGROUP)


class MessageKind(StrEnum):
    GREETING = "greeting"
    # Greeting posted for admin review of a rejoined kicked member.
    REVIEW = "review"


@dataclass(frozen=True, slots=True)
class MessageRef:
    """Address of a platform message."""

    group_id: int
    channel_id: int
    message_id: int


@dataclass(slots=True)
class Member:
    internal_id: str
    group_id: int
    external_id: int
    status: MemberStatus
    provider_id: int | None = None
    created_at: str = ""
    updated_at: str = ""
    greeted_at: str | None = None

    PK_TEMPLATE: ClassVar[str] = "GROUP#%s"
    SK_TEMPLATE: ClassVar[str] = "MEMBER#%s"

    @classmethod
    def key(cls, group_id: int, external_id: int) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % group_id, "sk": cls.SK_TEMPLATE % external_id}

    def to_item(self) -> dict[str, object]:
        item = self.key(self.group_id, self.external_id)
        item.update(
            {
                "internal_id": self.internal_id,
                "group_id": str(self.group_id),
                "external_id": str(self.external_id),
                "status": str(self.status),
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        if self.provider_id is not None:
            item["provider_id"] = str(self.provider_id)
        if self.greeted_at is not None:
            item["greeted_at"] = self.greeted_at
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> Member:
        provider_raw = item.get("provider_id")
        greeted_raw = item.get("greeted_at")
        return cls(
            internal_id=str(item["internal_id"]),
            group_id=int(item["group_id"]),
            external_id=int(item["external_id"]),
            status=MemberStatus(str(item.get("status", MemberStatus.JUST_JOINED))),
            provider_id=int(provider_raw) if provider_raw not in (None, "") else None,
            created_at=str(item.get("created_at", "")),
            updated_at=str(item.get("updated_at", "")),
            greeted_at=str(greeted_raw) if greeted_raw else None,
        )


@dataclass(slots=True)
class GroupState:
    group_id: int
    kind: ChatKind
    bot_role: str | None = None
    admins: list[int] = field(default_factory=list)
    admins_synced_at: str | None = None
    created_at: str = ""

    PK_TEMPLATE: ClassVar[str] = "GROUP#%s"
    SK_VALUE: ClassVar[str] = "STATE"
    ADMIN_ROLE: ClassVar[str] = "administrator"

    @classmethod
    def key(cls, group_id: int) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % group_id, "sk": cls.SK_VALUE}

    @property
    def is_group(self) -> bool:
        return self.kind.is_group

    @property
    def bot_is_admin(self) -> bool | None:
        """None while the role has not been observed yet."""
        if self.bot_role is None:
            return None
        return self.bot_role == self.ADMIN_ROLE

    def to_item(self) -> dict[str, object]:
        item = self.key(self.group_id)
        item.update(
            {
                "group_id": str(self.group_id),
                "kind": str(self.kind),
                "admins": [str(admin) for admin in self.admins],
                "created_at": self.created_at,
            }
        )
        if self.bot_role is not None:
            item["bot_role"] = self.bot_role
        if self.admins_synced_at is not None:
            item["admins_synced_at"] = self.admins_synced_at
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> GroupState:
        raw_kind = str(item.get("kind", ChatKind.OTHER))
        try:
            kind = ChatKind(raw_kind)
        except ValueError:
            kind = ChatKind.OTHER
        admins_raw = item.get("admins") or []
        return cls(
            group_id=int(item["group_id"]),
            kind=kind,
            bot_role=str(item["bot_role"]) if item.get("bot_role") else None,
            admins=[int(admin) for admin in admins_raw],  # type: ignore[union-attr]
            admins_synced_at=(
                str(item["admins_synced_at"]) if item.get("admins_synced_at") else None
            ),
            created_at=str(item.get("created_at", "")),
        )


@dataclass(slots=True)
class PendingMessage:
    group_id: int
    channel_id: int
    message_id: int
    kind: MessageKind
    member_id: str
    member_external_id: int
    created_at: str
    attempts: int = 0

    PK_TEMPLATE: ClassVar[str] = "GROUP#%s"
    SK_PREFIX_TEMPLATE: ClassVar[str] = "PENDING#%s#"
    INDEX_NAME: ClassVar[str] = "pending-by-created"
    INDEX_PK_VALUE: ClassVar[str] = "PENDING"

    @classmethod
    def key(cls, group_id: int, member_id: str, message_id: int) -> dict[str, str]:
        return {
            "pk": cls.PK_TEMPLATE % group_id,
            "sk": f"{cls.SK_PREFIX_TEMPLATE % member_id}{message_id}",
        }

    @property
    def ref(self) -> MessageRef:
        return MessageRef(self.group_id, self.channel_id, self.message_id)

    def age(self, now: datetime) -> float:
        """Seconds elapsed since the message was recorded."""
        return (now - from_iso(self.created_at)).total_seconds()

    def to_item(self) -> dict[str, object]:
        item = self.key(self.group_id, self.member_id, self.message_id)
        item.update(
            {
                "group_id": str(self.group_id),
                "channel_id": str(self.channel_id),
                "message_id": str(self.message_id),
                "kind": str(self.kind),
                "member_id": self.member_id,
                "member_external_id": str(self.member_external_id),
                "created_at": self.created_at,
                "attempts": self.attempts,
                "gsi1pk": self.INDEX_PK_VALUE,
                "gsi1sk": self.created_at,
            }
        )
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> PendingMessage:
        return cls(
            group_id=int(item["group_id"]),
            channel_id=int(item["channel_id"]),
            message_id=int(item["message_id"]),
            kind=MessageKind(str(item.get("kind", MessageKind.GREETING))),
            member_id=str(item["member_id"]),
            member_external_id=int(item["member_external_id"]),
            created_at=str(item["created_at"]),
            attempts=int(item.get("attempts", 0)),
        )

    def __str__(self) -> str:
        return (
            f"PendingMessage({self.message_id}, {self.group_id}, "
            f"{self.kind!s}, {self.member_id})"
        )


@dataclass(slots=True)
class GlobalCursor:
    last_update_id: int = 0

    KEY: ClassVar[dict[str, str]] = {"pk": "GLOBAL", "sk": "CURSOR"}

    @classmethod
    def from_item(cls, item: dict[str, object] | None) -> GlobalCursor:
        if not item:
            return cls()
        return cls(last_update_id=int(item.get("last_update_id", 0)))


__all__ = [
    "ISO_FORMAT",
    "ChatKind",
    "GlobalCursor",
    "GroupState",
    "Member",
    "MemberStatus",
    "MessageKind",
    "MessageRef",
    "PendingMessage",
    "from_iso",
    "to_iso",
    "utc_now",
]
