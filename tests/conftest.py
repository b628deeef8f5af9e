from __future__ import annotations

import copy
import itertools
import threading
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

import pytest
from boto3.dynamodb.conditions import (
    And,
    AttributeExists,
    AttributeNotExists,
    BeginsWith,
    Equals,
    LessThan,
    Not,
    Or,
)
from botocore.exceptions import ClientError

from gatekeeper.errors import MessagingError
from gatekeeper.executor import ActionExecutor
from gatekeeper.models import MessageRef
from gatekeeper.moderator import Moderator
from gatekeeper.oauth import OAuthSettings
from gatekeeper.storage import IdentityStore, PendingLedger

START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
GROUP_ID = 42
CHANNEL_ID = 555
MEMBER_ID = 7


def conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {
                "Code": "ConditionalCheckFailedException",
                "Message": "The conditional request failed",
            }
        },
        operation,
    )


def evaluate(condition, item: dict | None) -> bool:
    """Evaluate a boto3 condition object against an in-memory item."""
    item = item or {}
    values = condition._values  # type: ignore[attr-defined]
    if isinstance(condition, And):
        return all(evaluate(part, item) for part in values)
    if isinstance(condition, Or):
        return any(evaluate(part, item) for part in values)
    if isinstance(condition, Not):
        return not evaluate(values[0], item)
    if isinstance(condition, AttributeExists):
        return values[0].name in item
    if isinstance(condition, AttributeNotExists):
        return values[0].name not in item

    attr, expected = values[0], values[1]
    current = item.get(attr.name)
    if isinstance(condition, Equals):
        return current == expected
    if isinstance(condition, LessThan):
        return current is not None and current < expected
    if isinstance(condition, BeginsWith):
        return isinstance(current, str) and current.startswith(expected)
    raise NotImplementedError(type(condition).__name__)


def _resolve_name(token: str, names: dict[str, str]) -> str:
    return names.get(token, token)


class FakeBatchWriter:
    def __init__(self, table: FakeTable) -> None:
        self._table = table

    def __enter__(self) -> FakeBatchWriter:
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def put_item(self, *, Item):
        self._table.put_item(Item=Item)

    def delete_item(self, *, Key):
        self._table.delete_item(Key=Key)


class FakeTable:
    """In-memory stand-in for a DynamoDB table resource."""

    def __init__(self) -> None:
        self.items: dict[tuple[str, str], dict[str, object]] = {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    @staticmethod
    def _key(key: dict) -> tuple[str, str]:
        return key["pk"], key["sk"]

    def load(self) -> None:
        return None

    def get_item(self, *, Key, ConsistentRead=False):
        del ConsistentRead
        with self._lock:
            self.calls.append("get_item")
            item = self.items.get(self._key(Key))
            return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(self, *, Item, ConditionExpression=None):
        with self._lock:
            self.calls.append("put_item")
            key = self._key(Item)
            if ConditionExpression is not None and not evaluate(
                ConditionExpression, self.items.get(key)
            ):
                raise conditional_failure("PutItem")
            self.items[key] = copy.deepcopy(Item)

    def delete_item(self, *, Key, ConditionExpression=None):
        with self._lock:
            self.calls.append("delete_item")
            key = self._key(Key)
            if ConditionExpression is not None and not evaluate(
                ConditionExpression, self.items.get(key)
            ):
                raise conditional_failure("DeleteItem")
            self.items.pop(key, None)

    def update_item(
        self,
        *,
        Key,
        UpdateExpression,
        ExpressionAttributeValues=None,
        ExpressionAttributeNames=None,
        ConditionExpression=None,
    ):
        values = ExpressionAttributeValues or {}
        names = ExpressionAttributeNames or {}
        with self._lock:
            self.calls.append("update_item")
            key = self._key(Key)
            current = self.items.get(key)
            if ConditionExpression is not None and not evaluate(
                ConditionExpression, current
            ):
                raise conditional_failure("UpdateItem")

            item = copy.deepcopy(current) if current is not None else dict(Key)
            set_part, _, remove_part = UpdateExpression.partition("REMOVE")
            set_part = set_part.strip()
            if set_part.startswith("SET"):
                for assignment in set_part[3:].split(","):
                    name, _, placeholder = assignment.partition("=")
                    item[_resolve_name(name.strip(), names)] = values[placeholder.strip()]
            for name in remove_part.split(","):
                if name.strip():
                    item.pop(_resolve_name(name.strip(), names), None)
            self.items[key] = item
            return {}

    def query(self, *, KeyConditionExpression, IndexName=None, Limit=None, **_kwargs):
        with self._lock:
            self.calls.append("query")
            sort_key = "gsi1sk" if IndexName else "sk"
            matches = [
                copy.deepcopy(item)
                for item in self.items.values()
                if sort_key in item and evaluate(KeyConditionExpression, item)
            ]
        matches.sort(key=lambda item: item[sort_key])
        if Limit is not None:
            matches = matches[:Limit]
        return {"Items": matches, "Count": len(matches)}

    def scan(self, *, FilterExpression=None, **_kwargs):
        with self._lock:
            self.calls.append("scan")
            items = [
                copy.deepcopy(item)
                for item in self.items.values()
                if FilterExpression is None or evaluate(FilterExpression, item)
            ]
        return {"Items": items, "Count": len(items)}

    def batch_writer(self):
        return FakeBatchWriter(self)


class FakeMessenger:
    """Records outbound platform calls."""

    def __init__(self) -> None:
        self.greetings: list[dict[str, object]] = []
        self.deleted: list[MessageRef] = []
        self.removed: list[tuple[int, int, str]] = []
        self.login_links: list[tuple[int, str]] = []
        self.fail_greeting: Exception | None = None
        self.fail_delete: Exception | None = None
        self.fail_remove: Exception | None = None
        self._ids = itertools.count(1000)

    async def send_greeting(
        self,
        group_id: int,
        member_id: int,
        *,
        login_url: str,
        timeout_minutes: int,
        admin_review: bool = False,
    ) -> MessageRef:
        if self.fail_greeting is not None:
            raise self.fail_greeting
        ref = MessageRef(group_id, CHANNEL_ID, next(self._ids))
        self.greetings.append(
            {
                "group_id": group_id,
                "member_id": member_id,
                "login_url": login_url,
                "timeout_minutes": timeout_minutes,
                "admin_review": admin_review,
                "ref": ref,
            }
        )
        return ref

    async def delete_message(self, ref: MessageRef) -> None:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deleted.append(ref)

    async def remove_member(self, group_id: int, member_id: int, *, reason: str) -> None:
        if self.fail_remove is not None:
            raise self.fail_remove
        self.removed.append((group_id, member_id, reason))

    async def send_login_link(self, member_id: int, login_url: str) -> None:
        self.login_links.append((member_id, login_url))


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@contextmanager
def messaging_failure(messenger: FakeMessenger, attribute: str):
    setattr(messenger, attribute, MessagingError("platform unavailable"))
    try:
        yield
    finally:
        setattr(messenger, attribute, None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def identity(table, clock) -> IdentityStore:
    return IdentityStore(table, clock=clock)


@pytest.fixture
def ledger(table, clock) -> PendingLedger:
    return PendingLedger(table, clock=clock)


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def oauth_settings() -> OAuthSettings:
    return OAuthSettings(
        client_id="client",
        client_secret="secret",
        host="oauth.example.org",
        redirect_url="http://localhost:8080/oauth_callback",
    )


@pytest.fixture
def executor(identity, ledger, messenger, oauth_settings, clock) -> ActionExecutor:
    return ActionExecutor(
        identity,
        ledger,
        messenger,
        oauth=oauth_settings,
        join_timeout=timedelta(minutes=10),
        clock=clock,
    )


@pytest.fixture
def moderator(identity, executor) -> Moderator:
    return Moderator(identity, executor)
