"""Normalizes platform updates into state machine events.

The platform adapter builds one ``PlatformUpdate`` per inbound event. The
dispatcher classifies it into exactly one ``Event`` and hands it to the
moderator; it owns no state of its own. Every failure stops here: it is
logged and the update is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Final

from .errors import (
    AuthorizationError,
    ClassificationError,
    GatekeeperError,
    NotFoundError,
    TransientStoreError,
)
from .logging_utils import UpdateLogger
from .machine import (
    AdminDecision,
    CallbackAction,
    Event,
    Join,
    Left,
    LinkRequest,
    MembershipChanged,
    Message,
)
from .models import ChatKind, GroupState, MessageRef, from_iso, utc_now
from .moderator import Moderator
from .storage import IdentityStore

ALLOWED_CHAT_KINDS: Final = frozenset(
    {ChatKind.DIRECT, ChatKind.GROUP, ChatKind.SUPERGROUP}
)
MEMBER_ROLES: Final = frozenset({"member", "administrator", "creator"})
LEFT_ROLES: Final = frozenset({"left", "kicked"})
START_COMMANDS: Final = frozenset({"/start", "!start"})
NOT_FOUND_FEEDBACK: Final[str] = "You are not known in that group yet."

log: Final = logging.getLogger("gatekeeper.dispatcher")


@dataclass(frozen=True, slots=True)
class Chat:
    id: int
    kind: ChatKind


@dataclass(frozen=True, slots=True)
class Sender:
    id: int
    is_bot: bool = False
    name: str = ""


@dataclass(frozen=True, slots=True)
class JoinUpdate:
    chat: Chat
    sender: Sender
    notice: MessageRef | None = None
    update_id: int | None = None


@dataclass(frozen=True, slots=True)
class LeftUpdate:
    chat: Chat
    sender: Sender
    notice: MessageRef | None = None
    update_id: int | None = None


@dataclass(frozen=True, slots=True)
class MessageUpdate:
    chat: Chat
    sender: Sender
    message: MessageRef
    text: str = ""
    update_id: int | None = None


@dataclass(frozen=True, slots=True)
class MembershipUpdate:
    chat: Chat
    sender: Sender
    old_role: str | None
    new_role: str | None
    targets_bot: bool = False
    update_id: int | None = None


@dataclass(frozen=True, slots=True)
class CallbackUpdate:
    chat: Chat
    sender: Sender
    data: str
    update_id: int | None = None


PlatformUpdate = JoinUpdate | LeftUpdate | MessageUpdate | MembershipUpdate | CallbackUpdate


def is_member_role(role: str | None) -> bool:
    return role in MEMBER_ROLES


def is_left_role(role: str | None) -> bool:
    return role is None or role in LEFT_ROLES


def check_admin(
    state: GroupState, user_id: int, now: datetime, max_age: timedelta
) -> None:
    """Raise AuthorizationError unless ``user_id`` is a known, fresh admin."""
    if not state.admins:
        raise AuthorizationError("no admins synced for chat")
    if state.admins_synced_at is None or now - from_iso(state.admins_synced_at) > max_age:
        raise AuthorizationError("admin list is stale")
    if user_id not in state.admins:
        raise AuthorizationError(f"user is not one of {len(state.admins)} known admins")


def classify(
    update: PlatformUpdate,
    state: GroupState,
    *,
    now: datetime,
    admin_cache_max_age: timedelta,
) -> Event:
    """Map one update onto exactly one event or raise ClassificationError."""
    chat = update.chat
    if chat.kind is ChatKind.DIRECT:
        if isinstance(update, MessageUpdate):
            return _classify_direct(update)
        raise ClassificationError(f"unexpected {type(update).__name__} in direct chat")

    match update:
        case JoinUpdate():
            return Join(chat.id, update.sender.id, update.sender.is_bot, update.notice)
        case LeftUpdate():
            return Left(chat.id, update.sender.id, update.notice)
        case MembershipUpdate():
            return _classify_membership(update)
        case CallbackUpdate():
            check_admin(state, update.sender.id, now, admin_cache_max_age)
            return _classify_callback(update)
        case MessageUpdate():
            return Message(chat.id, update.sender.id, update.message, update.text)
    raise ClassificationError(f"unknown update {update!r}")


def _classify_direct(update: MessageUpdate) -> LinkRequest:
    tokens = update.text.split()
    if len(tokens) < 2 or tokens[0] not in START_COMMANDS:
        raise ClassificationError("ignoring non-start message")
    try:
        group_id = int(tokens[1])
    except ValueError as exc:
        raise ClassificationError(
            f"failed to parse group id: {exc}", feedback="Invalid group id"
        ) from exc
    return LinkRequest(group_id=group_id, member_id=update.sender.id)


def _classify_membership(update: MembershipUpdate) -> Event:
    chat, target = update.chat, update.sender
    joined = is_left_role(update.old_role) and is_member_role(update.new_role)
    left = is_member_role(update.old_role) and is_left_role(update.new_role)

    if update.targets_bot or joined == left:
        return MembershipChanged(
            chat.id,
            target.id,
            old_role=update.old_role or "left",
            new_role=update.new_role or "left",
            targets_bot=update.targets_bot,
        )
    if joined:
        return Join(chat.id, target.id, is_bot=target.is_bot)
    return Left(chat.id, target.id)


def _classify_callback(update: CallbackUpdate) -> AdminDecision:
    for action in CallbackAction:
        if not action.matches(update.data):
            continue
        tokens = update.data.split("|", 1)
        if len(tokens) != 2:
            raise ClassificationError(
                f"unexpected callback data {update.data!r}", feedback="bad callback data"
            )
        try:
            target_id = int(tokens[1])
        except ValueError as exc:
            raise ClassificationError(
                f"failed to parse target user id: {exc}", feedback="bad user id"
            ) from exc
        return AdminDecision(update.chat.id, target_id, action, admin_id=update.sender.id)
    raise ClassificationError(f"unknown callback action {update.data!r}")


class Dispatcher:
    def __init__(
        self,
        identity: IdentityStore,
        moderator: Moderator,
        *,
        handler_timeout: timedelta,
        admin_cache_max_age: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._identity = identity
        self._moderator = moderator
        self._handler_timeout = handler_timeout
        self._admin_cache_max_age = admin_cache_max_age
        self._clock = clock

    async def dispatch(self, update: PlatformUpdate) -> str | None:
        """Handle one update; returns feedback for the sender, if any."""
        logger = UpdateLogger(log, _update_fields(update))
        try:
            async with asyncio.timeout(self._handler_timeout.total_seconds()):
                return await self._dispatch(update, logger)
        except TimeoutError:
            logger.error("handler timed out after %s", self._handler_timeout)
        except ClassificationError as exc:
            logger.info("dropping update: %s", exc)
            return exc.feedback
        except AuthorizationError as exc:
            logger.warning("sender is not an admin: %s", exc)
            return f"you are not an admin: {exc}"
        except NotFoundError as exc:
            logger.warning("member not found: %s", exc)
            return NOT_FOUND_FEEDBACK
        except GatekeeperError as exc:
            logger.error("failed to handle update: %s", exc)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("unexpected error handling update: %s", exc)
        return None

    async def _dispatch(self, update: PlatformUpdate, logger: UpdateLogger) -> str | None:
        state = self._identity.get_or_create_group_state(update.chat.id, update.chat.kind)
        self._advance_cursor(update, logger)

        if update.chat.kind not in ALLOWED_CHAT_KINDS:
            logger.debug("ignoring update from chat kind %s", update.chat.kind)
            return None

        targets_bot = isinstance(update, MembershipUpdate) and update.targets_bot
        if state.is_group and state.bot_is_admin is False and not targets_bot:
            logger.warning("bot is not an admin, skipping update (role: %s)", state.bot_role)
            return None

        event = classify(
            update,
            state,
            now=self._clock(),
            admin_cache_max_age=self._admin_cache_max_age,
        )
        if isinstance(event, MembershipChanged):
            self._on_membership_changed(event, state, logger)

        decision = await self._moderator.handle(event, logger)
        return decision.feedback

    def _on_membership_changed(
        self, event: MembershipChanged, state: GroupState, logger: UpdateLogger
    ) -> None:
        if not event.targets_bot:
            logger.warning(
                "unexpected member status, old=%s, new=%s", event.old_role, event.new_role
            )
            return
        logger.info("bot role changed from %s to %s", event.old_role, event.new_role)
        state.bot_role = event.new_role
        self._identity.save_group_state(state)

    def _advance_cursor(self, update: PlatformUpdate, logger: UpdateLogger) -> None:
        if update.update_id is None:
            return
        try:
            self._identity.advance_cursor(update.update_id)
        except TransientStoreError as exc:
            logger.error("failed to update last update: %s", exc)


def _update_fields(update: PlatformUpdate) -> dict[str, object]:
    return {
        "update": type(update).__name__,
        "update.id": update.update_id,
        "chat.id": update.chat.id,
        "chat.kind": str(update.chat.kind),
        "sender.id": update.sender.id,
        "sender.name": update.sender.name,
    }


__all__ = [
    "ALLOWED_CHAT_KINDS",
    "CallbackUpdate",
    "Chat",
    "Dispatcher",
    "JoinUpdate",
    "LeftUpdate",
    "MembershipUpdate",
    "MessageUpdate",
    "PlatformUpdate",
    "Sender",
    "check_admin",
    "classify",
]
