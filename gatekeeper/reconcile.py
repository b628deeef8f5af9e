"""Deadline enforcement and ledger hygiene.

One ``tick`` handles a bounded page of pending messages older than the join
timeout. Each row is processed in isolation; finished rows are deleted in a
single batch at the end of the tick, failed rows stay for the next tick.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Final

from .errors import TransientStoreError
from .logging_utils import UpdateLogger
from .machine import DeadlineExpired, Outcome, RemoveMember
from .models import PendingMessage, utc_now
from .moderator import Moderator
from .storage import PAGE_SIZE, PendingLedger

MAX_ATTEMPTS: Final[int] = 5

log: Final = logging.getLogger("gatekeeper.reconcile")


@dataclass(slots=True)
class TickReport:
    fetched: int = 0
    expired: int = 0
    stale: int = 0
    failed: int = 0
    dropped: int = 0
    deleted: int = 0


class Reconciler:
    def __init__(
        self,
        ledger: PendingLedger,
        moderator: Moderator,
        *,
        join_timeout: timedelta,
        page_size: int = PAGE_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._moderator = moderator
        self._join_timeout = join_timeout
        self._page_size = page_size
        self._clock = clock

    async def tick(self, now: datetime | None = None) -> TickReport:
        now = now or self._clock()
        report = TickReport()

        try:
            messages = self._ledger.list_older_than(
                now - self._join_timeout, limit=self._page_size
            )
        except TransientStoreError as exc:
            log.error("failed to fetch pending messages: %s", exc)
            return report

        report.fetched = len(messages)
        if not messages:
            return report
        log.info("fetched %d old messages, cleaning up", len(messages))

        finished: list[PendingMessage] = []
        for message in messages:
            if await self._process(message, now, report):
                finished.append(message)

        if finished:
            try:
                report.deleted = self._ledger.delete_batch(finished)
            except TransientStoreError as exc:
                log.error("failed to delete pending messages: %s", exc)

        log.info(
            "tick done: %d expired, %d stale, %d failed, %d dropped",
            report.expired,
            report.stale,
            report.failed,
            report.dropped,
        )
        return report

    async def _process(
        self, message: PendingMessage, now: datetime, report: TickReport
    ) -> bool:
        """Return True when the row can be removed from the ledger."""
        logger = UpdateLogger(
            log,
            {
                "message.id": message.message_id,
                "group.id": message.group_id,
                "member.external_id": message.member_external_id,
            },
        )
        event = DeadlineExpired(
            message=message,
            age=message.age(now),
            timeout=self._join_timeout.total_seconds(),
        )
        try:
            decision = await self._moderator.handle(event, logger)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("failed to process pending message: %s", exc)
            report.failed += 1
            if message.attempts + 1 >= MAX_ATTEMPTS:
                logger.error("giving up after %d attempts", message.attempts + 1)
                report.dropped += 1
                return True
            try:
                self._ledger.record_failure(message)
            except TransientStoreError as store_exc:
                logger.error("failed to record attempt: %s", store_exc)
            return False

        removed = decision.outcome is not Outcome.CONFLICT and any(
            isinstance(action, RemoveMember) for action in decision.actions
        )
        if removed:
            logger.info("removed member by timeout")
            report.expired += 1
        else:
            report.stale += 1
        return True


__all__ = ["MAX_ATTEMPTS", "Reconciler", "TickReport"]
