"""Discord binding: update conversion and the outbound messaging API."""

from __future__ import annotations

import logging
from typing import Final

import discord

from gatekeeper.dispatcher import (
    CallbackUpdate,
    Chat,
    JoinUpdate,
    LeftUpdate,
    MembershipUpdate,
    MessageUpdate,
    PlatformUpdate,
    Sender,
)
from gatekeeper.errors import MessagingError
from gatekeeper.machine import CallbackAction
from gatekeeper.models import ChatKind, GroupState, MessageRef

COMMUNITY_FEATURE: Final[str] = "COMMUNITY"
MEMBER_ROLE: Final[str] = "member"
USER_MESSAGE_TYPES: Final = frozenset(
    {discord.MessageType.default, discord.MessageType.reply}
)

GREETING_TEMPLATE: Final[str] = (
    "Welcome, {mention}! This server only admits members with a {provider} "
    "account.\nLog in within {minutes} minutes using the button below or you "
    "will be removed. Your messages are hidden until then."
)
ADMIN_REVIEW_TEMPLATE: Final[str] = (
    "{mention} was removed earlier for not logging in to {provider} and has "
    "rejoined. An admin has to accept or kick them."
)
LOGIN_LINK_TEMPLATE: Final[str] = "Log in with {provider} to get access to the server."

log: Final = logging.getLogger("gatekeeper.discord")


# ----- Update conversion -----
def guild_kind(guild: discord.Guild) -> ChatKind:
    if COMMUNITY_FEATURE in guild.features:
        return ChatKind.SUPERGROUP
    return ChatKind.GROUP


def chat_kind(channel) -> ChatKind:
    if isinstance(channel, discord.DMChannel):
        return ChatKind.DIRECT
    guild = getattr(channel, "guild", None)
    if guild is None:
        return ChatKind.OTHER
    return guild_kind(guild)


def sender_of(user: discord.abc.User) -> Sender:
    return Sender(id=user.id, is_bot=user.bot, name=str(user))


def message_ref(message: discord.Message) -> MessageRef:
    group_id = message.guild.id if message.guild else message.channel.id
    return MessageRef(group_id, message.channel.id, message.id)


def bot_role(member: discord.Member) -> str:
    """The bot counts as admin once it can kick members and delete messages."""
    perms = member.guild_permissions
    if perms.administrator or (perms.kick_members and perms.manage_messages):
        return GroupState.ADMIN_ROLE
    return MEMBER_ROLE


def member_role(member: discord.Member) -> str:
    perms = member.guild_permissions
    if perms.administrator or perms.manage_guild:
        return GroupState.ADMIN_ROLE
    return MEMBER_ROLE


def admin_ids(guild: discord.Guild) -> list[int]:
    return sorted(
        member.id
        for member in guild.members
        if not member.bot and member_role(member) == GroupState.ADMIN_ROLE
    )


def join_update(member: discord.Member) -> JoinUpdate:
    guild = member.guild
    return JoinUpdate(chat=Chat(guild.id, guild_kind(guild)), sender=sender_of(member))


def left_update(member: discord.Member) -> LeftUpdate:
    guild = member.guild
    return LeftUpdate(chat=Chat(guild.id, guild_kind(guild)), sender=sender_of(member))


def message_update(message: discord.Message) -> PlatformUpdate | None:
    """Convert a message; the join system message carries a Join."""
    chat = Chat(
        message.guild.id if message.guild else message.channel.id,
        chat_kind(message.channel),
    )
    sender = sender_of(message.author)
    if message.type is discord.MessageType.new_member:
        return JoinUpdate(
            chat=chat, sender=sender, notice=message_ref(message), update_id=message.id
        )
    if message.type not in USER_MESSAGE_TYPES:
        return None
    return MessageUpdate(
        chat=chat,
        sender=sender,
        message=message_ref(message),
        text=message.content,
        update_id=message.id,
    )


def membership_update(
    before: discord.Member, after: discord.Member, bot_user_id: int | None
) -> MembershipUpdate | None:
    """Role change of a member; None when the effective role is unchanged."""
    targets_bot = after.id == bot_user_id
    role_of = bot_role if targets_bot else member_role
    old_role, new_role = role_of(before), role_of(after)
    if old_role == new_role:
        return None
    guild = after.guild
    return MembershipUpdate(
        chat=Chat(guild.id, guild_kind(guild)),
        sender=sender_of(after),
        old_role=old_role,
        new_role=new_role,
        targets_bot=targets_bot,
    )


def interaction_update(interaction: discord.Interaction) -> CallbackUpdate | None:
    if interaction.type is not discord.InteractionType.component:
        return None
    if interaction.guild is None:
        return None
    data = (interaction.data or {}).get("custom_id")
    if not data:
        return None
    guild = interaction.guild
    return CallbackUpdate(
        chat=Chat(guild.id, guild_kind(guild)),
        sender=sender_of(interaction.user),
        data=str(data),
        update_id=interaction.id,
    )


# ----- Outbound -----
class GreetingView(discord.ui.View):
    """Login link plus admin review buttons.

    Button presses are routed through ``on_interaction`` by custom id, so the
    view needs no callbacks and survives restarts.
    """

    def __init__(self, member_id: int, login_url: str, provider: str) -> None:
        super().__init__(timeout=None)
        self.add_item(
            discord.ui.Button(
                label=f"Log in with {provider}",
                style=discord.ButtonStyle.link,
                url=login_url,
            )
        )
        self.add_item(
            discord.ui.Button(
                label="Accept",
                style=discord.ButtonStyle.success,
                custom_id=CallbackAction.NEW_MEMBER_ACCEPT.custom_id(member_id),
            )
        )
        self.add_item(
            discord.ui.Button(
                label="Kick",
                style=discord.ButtonStyle.danger,
                custom_id=CallbackAction.NEW_MEMBER_KICK.custom_id(member_id),
            )
        )


def render_greeting(
    member_id: int, *, provider: str, timeout_minutes: int, admin_review: bool
) -> str:
    mention = f"<@{member_id}>"
    if admin_review:
        return ADMIN_REVIEW_TEMPLATE.format(mention=mention, provider=provider)
    return GREETING_TEMPLATE.format(
        mention=mention, provider=provider, minutes=timeout_minutes
    )


class DiscordMessenger:
    """Messaging API over Discord REST calls.

    Works on a client that is only logged in, which is how the callback
    server uses it.
    """

    def __init__(
        self,
        client: discord.Client,
        *,
        provider_name: str,
        greeting_channel_id: int | None = None,
    ) -> None:
        self._client = client
        self._provider = provider_name
        self._greeting_channel_id = greeting_channel_id

    async def _guild(self, group_id: int) -> discord.Guild:
        guild = self._client.get_guild(group_id)
        if guild is not None:
            return guild
        try:
            return await self._client.fetch_guild(group_id)
        except discord.HTTPException as exc:
            raise MessagingError(f"failed to fetch guild {group_id}: {exc}") from exc

    async def _greeting_channel(self, group_id: int) -> discord.PartialMessageable:
        channel_id = self._greeting_channel_id
        if channel_id is None:
            guild = await self._guild(group_id)
            channel_id = guild.system_channel_id
        if channel_id is None:
            raise MessagingError(f"guild {group_id} has no channel for greetings")
        return self._client.get_partial_messageable(channel_id, guild_id=group_id)

    async def send_greeting(
        self,
        group_id: int,
        member_id: int,
        *,
        login_url: str,
        timeout_minutes: int,
        admin_review: bool = False,
    ) -> MessageRef:
        channel = await self._greeting_channel(group_id)
        content = render_greeting(
            member_id,
            provider=self._provider,
            timeout_minutes=timeout_minutes,
            admin_review=admin_review,
        )
        try:
            message = await channel.send(
                content,
                view=GreetingView(member_id, login_url, self._provider),
                allowed_mentions=discord.AllowedMentions(users=True),
            )
        except discord.HTTPException as exc:
            raise MessagingError(f"failed to send greeting: {exc}") from exc
        return MessageRef(group_id, channel.id, message.id)

    async def delete_message(self, ref: MessageRef) -> None:
        channel = self._client.get_partial_messageable(
            ref.channel_id, guild_id=ref.group_id
        )
        try:
            await channel.get_partial_message(ref.message_id).delete()
        except discord.NotFound:
            log.debug("Message %s already deleted", ref.message_id)
        except discord.HTTPException as exc:
            raise MessagingError(
                f"failed to delete message {ref.message_id}: {exc}"
            ) from exc

    async def remove_member(self, group_id: int, member_id: int, *, reason: str) -> None:
        guild = await self._guild(group_id)
        try:
            await guild.kick(discord.Object(id=member_id), reason=reason)
        except discord.NotFound:
            log.info("Member %s already gone from guild %s", member_id, group_id)
        except discord.HTTPException as exc:
            raise MessagingError(f"failed to kick {member_id}: {exc}") from exc

    async def send_login_link(self, member_id: int, login_url: str) -> None:
        view = discord.ui.View(timeout=None)
        view.add_item(
            discord.ui.Button(
                label=f"Log in with {self._provider}",
                style=discord.ButtonStyle.link,
                url=login_url,
            )
        )
        try:
            user = self._client.get_user(member_id) or await self._client.fetch_user(
                member_id
            )
            await user.send(LOGIN_LINK_TEMPLATE.format(provider=self._provider), view=view)
        except discord.HTTPException as exc:
            raise MessagingError(f"failed to send login link: {exc}") from exc


__all__ = [
    "DiscordMessenger",
    "GreetingView",
    "admin_ids",
    "bot_role",
    "chat_kind",
    "guild_kind",
    "interaction_update",
    "join_update",
    "left_update",
    "membership_update",
    "message_update",
    "render_greeting",
]
