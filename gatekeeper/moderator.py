"""Loads members for normalized events and drives them through the machine."""

from __future__ import annotations

import dataclasses
import logging
from typing import Final

from .errors import ExternalAPIError, NotFoundError
from .executor import ActionExecutor
from .logging_utils import UpdateLogger
from .machine import (
    FEEDBACK_CONFLICT,
    AdminDecision,
    DeadlineExpired,
    Decision,
    Event,
    Join,
    Left,
    LinkRequest,
    MembershipChanged,
    Message,
    Outcome,
    RejoinPolicy,
    VerificationCallback,
    decide,
)
from .models import Member, MemberStatus
from .oauth import ProviderClient
from .storage import IdentityStore

log: Final = logging.getLogger("gatekeeper.moderator")


class Moderator:
    def __init__(
        self,
        identity: IdentityStore,
        executor: ActionExecutor,
        provider: ProviderClient | None = None,
        *,
        policy: RejoinPolicy = RejoinPolicy.RESET,
    ) -> None:
        self._identity = identity
        self._executor = executor
        self._provider = provider
        self.policy = policy

    async def handle(
        self, event: Event, logger: UpdateLogger | None = None
    ) -> Decision:
        logger = logger or UpdateLogger(log, {})

        if isinstance(event, MembershipChanged) or (
            isinstance(event, Join) and event.is_bot
        ):
            logger.info("ignoring %s", type(event).__name__)
            return decide(None, event, policy=self.policy)

        member, status = self._load(event)
        if member is not None:
            logger = logger.with_member(member)

        if (
            isinstance(event, VerificationCallback)
            and status is MemberStatus.JUST_JOINED
        ):
            provider_id = await self._resolve(event, logger)
            event = dataclasses.replace(event, provider_id=provider_id)

        decision = decide(status, event, policy=self.policy)
        logger.debug(
            "%s: %s -> %s with %d actions",
            type(event).__name__,
            status,
            decision.status,
            len(decision.actions),
        )
        if not await self._executor.run(member, decision, logger):
            return dataclasses.replace(
                decision,
                status=status,
                feedback=FEEDBACK_CONFLICT,
                outcome=Outcome.CONFLICT,
            )
        return decision

    def _load(self, event: Event) -> tuple[Member | None, MemberStatus | None]:
        """Fetch or create the member an event refers to.

        The returned status is None when the record was created by this call
        or does not exist.
        """
        match event:
            case Join():
                member, created = self._identity.get_or_create_member(
                    event.group_id, event.member_id, MemberStatus.JUST_JOINED
                )
                return member, None if created else member.status
            case Message():
                member, created = self._identity.get_or_create_member(
                    event.group_id, event.member_id, MemberStatus.ACTIVE
                )
                return member, None if created else member.status
            case Left() | DeadlineExpired():
                try:
                    member = self._identity.get_member(event.group_id, event.member_id)
                except NotFoundError:
                    return None, None
                return member, member.status
            case VerificationCallback() | AdminDecision() | LinkRequest():
                member = self._identity.get_member(event.group_id, event.member_id)
                return member, member.status
        raise TypeError(f"unsupported event {event!r}")

    async def _resolve(
        self, event: VerificationCallback, logger: UpdateLogger
    ) -> int | None:
        if self._provider is None:
            raise ExternalAPIError("no verification provider configured")
        try:
            provider_id = await self._provider.resolve(event.code)
        except ExternalAPIError as exc:
            logger.error("failed to exchange login code: %s", exc)
            return None
        logger.info("received provider user id %s", provider_id)
        return provider_id


__all__ = ["Moderator"]
