from __future__ import annotations

from typing import Protocol

from .models import MessageRef


class Messenger(Protocol):
    """Outbound calls the core makes against the messaging platform.

    ``delete_message`` must treat an already-deleted message as success and
    raise ``MessagingError`` for any other failure.
    """

    async def send_greeting(
        self,
        group_id: int,
        member_id: int,
        *,
        login_url: str,
        timeout_minutes: int,
        admin_review: bool = False,
    ) -> MessageRef: ...

    async def delete_message(self, ref: MessageRef) -> None: ...

    async def remove_member(self, group_id: int, member_id: int, *, reason: str) -> None: ...

    async def send_login_link(self, member_id: int, login_url: str) -> None: ...


__all__ = ["Messenger"]
