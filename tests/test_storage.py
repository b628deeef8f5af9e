"""Tests for the DynamoDB-backed stores."""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from gatekeeper.errors import NotFoundError, TransientStoreError
from gatekeeper.models import (
    ChatKind,
    Member,
    MemberStatus,
    MessageKind,
    PendingMessage,
    to_iso,
)
from gatekeeper.storage import IdentityStore, PendingLedger

from conftest import GROUP_ID, MEMBER_ID


def pending(member: Member, message_id: int, created_at: str) -> PendingMessage:
    return PendingMessage(
        group_id=member.group_id,
        channel_id=555,
        message_id=message_id,
        kind=MessageKind.GREETING,
        member_id=member.internal_id,
        member_external_id=member.external_id,
        created_at=created_at,
    )


def test_ensure_table_raises_when_missing():
    storage = IdentityStore(None)
    with pytest.raises(RuntimeError):
        storage.ensure_table()


class TestMembers:
    """Member lookup, creation and status writes."""

    def test_get_member_missing_raises_not_found(self, identity):
        """A missing member should raise NotFoundError."""
        with pytest.raises(NotFoundError):
            identity.get_member(GROUP_ID, MEMBER_ID)

    def test_get_or_create_creates_once(self, identity):
        """The second call should return the stored member."""
        created, was_created = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        again, again_created = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.ACTIVE
        )

        assert was_created is True
        assert again_created is False
        assert again.internal_id == created.internal_id
        assert again.status is MemberStatus.JUST_JOINED

    def test_get_or_create_rereads_after_lost_insert(self, table, clock):
        """Losing the insert race should return the winner's row."""
        winner = Member("winner", GROUP_ID, MEMBER_ID, MemberStatus.ACTIVE)
        table.items[("GROUP#42", "MEMBER#7")] = winner.to_item()
        original_get = table.get_item
        reads = []

        def stale_first_read(**kwargs):
            reads.append(kwargs.get("ConsistentRead"))
            if len(reads) == 1:
                return {}
            return original_get(**kwargs)

        table.get_item = stale_first_read
        store = IdentityStore(table, clock=clock)

        member, created = store.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )

        assert created is False
        assert member.internal_id == "winner"
        assert reads == [False, True]

    def test_concurrent_get_or_create_yields_one_record(self, identity):
        """Racing creators should all see the same internal id."""
        barrier = threading.Barrier(4)
        results: list[tuple[Member, bool]] = []

        def worker():
            barrier.wait()
            results.append(
                identity.get_or_create_member(
                    GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
                )
            )

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({member.internal_id for member, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1

    def test_set_status_with_expected_guard(self, identity):
        """A stale expected status should not be overwritten."""
        member, _ = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        assert identity.set_status(
            member, MemberStatus.KICKED, expected=MemberStatus.JUST_JOINED
        )
        stale = Member(
            member.internal_id, GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        assert not identity.set_status(
            stale, MemberStatus.ACTIVE, expected=MemberStatus.JUST_JOINED
        )
        assert identity.get_member(GROUP_ID, MEMBER_ID).status is MemberStatus.KICKED

    def test_set_status_releases_greeting_claim(self, identity):
        """Any status change should allow a new greeting."""
        member, _ = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        assert identity.claim_greeting(member)
        identity.set_status(member, MemberStatus.KICKED)

        stored = identity.get_member(GROUP_ID, MEMBER_ID)
        assert stored.greeted_at is None
        assert identity.claim_greeting(stored)

    def test_record_verification_only_from_just_joined(self, identity):
        """Verification should flip just-joined members to active once."""
        member, _ = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        assert identity.record_verification(member, 1234)
        assert not identity.record_verification(member, 5678)

        stored = identity.get_member(GROUP_ID, MEMBER_ID)
        assert stored.status is MemberStatus.ACTIVE
        assert stored.provider_id == 1234

    def test_record_verification_rejects_recreated_member(self, identity, table):
        """A row recreated under another internal id should not be updated."""
        member, _ = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        table.items[("GROUP#42", "MEMBER#7")]["internal_id"] = "someone-else"
        assert not identity.record_verification(member, 1234)

    def test_claim_greeting_is_exclusive(self, identity):
        """Only the first claim should win until released."""
        member, _ = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        assert identity.claim_greeting(member)
        assert not identity.claim_greeting(member)

        identity.release_greeting(member)
        assert identity.claim_greeting(member)

    def test_client_errors_become_transient(self):
        """Unexpected botocore failures should surface as TransientStoreError."""
        table = MagicMock()
        table.get_item.side_effect = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException"}}, "GetItem"
        )
        with pytest.raises(TransientStoreError):
            IdentityStore(table).get_member(GROUP_ID, MEMBER_ID)

        table.get_item.side_effect = EndpointConnectionError(endpoint_url="http://ddb")
        with pytest.raises(TransientStoreError):
            IdentityStore(table).get_member(GROUP_ID, MEMBER_ID)


class TestGroupStateAndCursor:
    """Group state rows and the global cursor."""

    def test_get_or_create_group_state(self, identity):
        """Group state should be created once and persisted on save."""
        state = identity.get_or_create_group_state(GROUP_ID, ChatKind.GROUP)
        assert state.bot_role is None

        state.bot_role = "administrator"
        state.admins = [1, 2]
        identity.save_group_state(state)

        stored = identity.get_or_create_group_state(GROUP_ID, ChatKind.SUPERGROUP)
        assert stored.kind is ChatKind.GROUP
        assert stored.admins == [1, 2]
        assert stored.bot_is_admin is True

    def test_list_group_states_skips_members(self, identity):
        """Only state rows should be listed."""
        identity.get_or_create_group_state(1, ChatKind.GROUP)
        identity.get_or_create_group_state(2, ChatKind.SUPERGROUP)
        identity.get_or_create_member(1, MEMBER_ID, MemberStatus.ACTIVE)

        states = identity.list_group_states()
        assert sorted(state.group_id for state in states) == [1, 2]

    def test_cursor_only_moves_forward(self, identity):
        """Older update ids should not move the cursor back."""
        assert identity.get_cursor().last_update_id == 0
        assert identity.advance_cursor(10)
        assert not identity.advance_cursor(5)
        assert identity.advance_cursor(11)
        assert identity.get_cursor().last_update_id == 11


class TestPendingLedger:
    """Pending message rows."""

    def test_list_for_member_scopes_to_member(self, identity, ledger):
        """Rows of other members should not be returned."""
        first, _ = identity.get_or_create_member(GROUP_ID, 1, MemberStatus.JUST_JOINED)
        second, _ = identity.get_or_create_member(GROUP_ID, 2, MemberStatus.JUST_JOINED)
        ledger.add(pending(first, 100, "2024-01-01T12:00:00.000000Z"))
        ledger.add(pending(first, 101, "2024-01-01T12:00:01.000000Z"))
        ledger.add(pending(second, 200, "2024-01-01T12:00:00.000000Z"))

        rows = ledger.list_for_member(first.internal_id, GROUP_ID, MessageKind.GREETING)
        assert sorted(row.message_id for row in rows) == [100, 101]

    def test_list_for_member_filters_by_kind(self, identity, ledger):
        member, _ = identity.get_or_create_member(GROUP_ID, 1, MemberStatus.KICKED)
        review = pending(member, 100, "2024-01-01T12:00:00.000000Z")
        review.kind = MessageKind.REVIEW
        ledger.add(review)
        ledger.add(pending(member, 101, "2024-01-01T12:00:01.000000Z"))

        greetings = ledger.list_for_member(
            member.internal_id, GROUP_ID, MessageKind.GREETING
        )
        assert [row.message_id for row in greetings] == [101]
        every_kind = ledger.list_for_member(member.internal_id, GROUP_ID)
        assert sorted(row.kind for row in every_kind) == ["greeting", "review"]

    def test_list_older_than_is_oldest_first_and_bounded(
        self, identity, ledger, clock
    ):
        """Only rows strictly older than the cutoff come back, oldest first."""
        member, _ = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        for offset in (3, 1, 2, 10):
            ledger.add(
                pending(member, offset, to_iso(clock.now + timedelta(minutes=offset)))
            )

        cutoff = clock.now + timedelta(minutes=3)
        rows = ledger.list_older_than(cutoff)
        assert [row.message_id for row in rows] == [1, 2]

        limited = ledger.list_older_than(clock.now + timedelta(hours=1), limit=3)
        assert [row.message_id for row in limited] == [1, 2, 3]

    def test_delete_batch_and_record_failure(self, identity, ledger, table):
        """Failures bump attempts; deleted rows are gone."""
        member, _ = identity.get_or_create_member(
            GROUP_ID, MEMBER_ID, MemberStatus.JUST_JOINED
        )
        row = pending(member, 100, "2024-01-01T12:00:00.000000Z")
        ledger.add(row)

        ledger.record_failure(row)
        stored = ledger.list_for_member(member.internal_id, GROUP_ID, MessageKind.GREETING)
        assert stored[0].attempts == 1

        assert ledger.delete_batch(stored) == 1
        assert ledger.list_for_member(
            member.internal_id, GROUP_ID, MessageKind.GREETING
        ) == []

        # A row deleted concurrently is not resurrected by a failure record.
        ledger.record_failure(row)
        assert not any(key[1].startswith("PENDING#") for key in table.items)

    def test_ledger_requires_table(self):
        with pytest.raises(RuntimeError):
            PendingLedger(None).add(MagicMock())

