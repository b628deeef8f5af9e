"""Runs state machine decisions against the stores and the messaging API."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Final

from .errors import MessagingError
from .logging_utils import UpdateLogger
from .machine import (
    Action,
    ClearPending,
    Decision,
    DeleteMessage,
    RecordVerification,
    ReleaseGreeting,
    RemoveMember,
    SendGreeting,
    SendLoginLink,
    SetStatus,
)
from .messaging import Messenger
from .models import (
    Member,
    MemberStatus,
    MessageKind,
    MessageRef,
    PendingMessage,
    to_iso,
    utc_now,
)
from .oauth import LoginState, OAuthSettings, authorize_url
from .storage import IdentityStore, PendingLedger

REMOVAL_REASON: Final[str] = "Did not log in before the deadline"

log: Final = logging.getLogger("gatekeeper.executor")


class ActionExecutor:
    def __init__(
        self,
        identity: IdentityStore,
        ledger: PendingLedger,
        messenger: Messenger,
        *,
        oauth: OAuthSettings,
        join_timeout: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._identity = identity
        self._ledger = ledger
        self._messenger = messenger
        self._oauth = oauth
        self._join_timeout = join_timeout
        self._clock = clock

    def login_url(self, member: Member) -> str:
        return authorize_url(LoginState(member.external_id, member.group_id), self._oauth)

    async def run(
        self,
        member: Member | None,
        decision: Decision,
        logger: UpdateLogger | None = None,
    ) -> bool:
        """Apply the decision's actions in order.

        Returns False when a conditional status write lost a race; the
        remaining actions are skipped in that case.
        """
        logger = logger or UpdateLogger(log, {})
        for action in decision.actions:
            if member is None and not isinstance(action, DeleteMessage):
                logger.debug("no member record, skipping %s", action)
                continue
            if not await self._apply(member, action, logger):
                logger.warning(
                    "status changed concurrently, skipping remaining actions after %s",
                    action,
                )
                return False
        return True

    async def _apply(
        self, member: Member | None, action: Action, logger: UpdateLogger
    ) -> bool:
        match action:
            case DeleteMessage(message=ref):
                await self.delete_checked(ref, logger)
            case SendGreeting():
                await self._send_greeting(member, logger)
            case SendLoginLink():
                await self._messenger.send_login_link(
                    member.external_id, self.login_url(member)
                )
                logger.info("sent login link")
            case SetStatus(status=status, expected=expected):
                if not self._identity.set_status(member, status, expected=expected):
                    return False
                logger.info("status set to %s", status)
            case RecordVerification(provider_id=provider_id):
                if not self._identity.record_verification(member, provider_id):
                    return False
                logger.info("member verified as provider user %s", provider_id)
            case RemoveMember():
                await self._messenger.remove_member(
                    member.group_id, member.external_id, reason=REMOVAL_REASON
                )
                logger.info("member removed from group")
            case ClearPending():
                await self.clear_pending(member, logger)
            case ReleaseGreeting():
                self._identity.release_greeting(member)
            case _:
                raise TypeError(f"unsupported action {action!r}")
        return True

    async def _send_greeting(self, member: Member, logger: UpdateLogger) -> None:
        if not self._identity.claim_greeting(member):
            logger.info("greeting already sent for this join, skipping")
            return

        admin_review = member.status is MemberStatus.KICKED
        try:
            ref = await self._messenger.send_greeting(
                member.group_id,
                member.external_id,
                login_url=self.login_url(member),
                timeout_minutes=int(self._join_timeout.total_seconds() // 60),
                admin_review=admin_review,
            )
        except Exception:
            # Let the next join event retry the greeting.
            self._identity.release_greeting(member)
            raise

        try:
            self._ledger.add(
                PendingMessage(
                    group_id=member.group_id,
                    channel_id=ref.channel_id,
                    message_id=ref.message_id,
                    kind=MessageKind.REVIEW if admin_review else MessageKind.GREETING,
                    member_id=member.internal_id,
                    member_external_id=member.external_id,
                    created_at=to_iso(self._clock()),
                )
            )
        except Exception:
            # A greeting without a ledger row would never reach its deadline.
            await self.delete_checked(ref, logger)
            self._identity.release_greeting(member)
            raise
        logger.info("greeting %s sent", ref.message_id)

    async def clear_pending(self, member: Member, logger: UpdateLogger) -> int:
        messages = self._ledger.list_for_member(member.internal_id, member.group_id)
        for message in messages:
            await self.delete_checked(message.ref, logger)
        if messages:
            self._ledger.delete_batch(messages)
            logger.info("cleared %d pending messages", len(messages))
        return len(messages)

    async def delete_checked(self, ref: MessageRef, logger: UpdateLogger) -> bool:
        """Best-effort delete; failures are logged and not retried."""
        try:
            await self._messenger.delete_message(ref)
        except MessagingError as exc:
            logger.error("failed to delete message %s: %s", ref.message_id, exc)
            return False
        return True


__all__ = ["ActionExecutor", "REMOVAL_REASON"]
