"""Discord bot runtime: event handlers, reconciliation and admin sync loops."""

from __future__ import annotations

import logging
from typing import Final

import boto3
import discord
from botocore.exceptions import BotoCoreError, ClientError
from discord.ext import tasks

from bots.config import Settings
from bots.discord_adapter import (
    DiscordMessenger,
    admin_ids,
    bot_role,
    guild_kind,
    interaction_update,
    join_update,
    left_update,
    membership_update,
    message_update,
)
from gatekeeper.dispatcher import Dispatcher, PlatformUpdate
from gatekeeper.errors import GatekeeperError, StartupFatalError
from gatekeeper.executor import ActionExecutor
from gatekeeper.messaging import Messenger
from gatekeeper.models import GroupState, PendingMessage, to_iso, utc_now
from gatekeeper.moderator import Moderator
from gatekeeper.oauth import ProviderClient
from gatekeeper.reconcile import Reconciler
from gatekeeper.storage import IdentityStore, PendingLedger

DEFAULT_FEEDBACK: Final[str] = "Done."

log: Final = logging.getLogger("gatekeeper.runtime")


def open_table(settings: Settings, *, dynamodb_resource=None):
    """Return the DynamoDB table, failing fast when it is unreachable.

    The pending-message deadline sweep queries the created-at index, so a
    table without it is rejected at startup.
    """
    dynamodb = dynamodb_resource or boto3.resource(
        "dynamodb",
        region_name=settings.aws_region,
        endpoint_url=settings.ddb_endpoint_url,
    )
    table = dynamodb.Table(settings.table_name)
    try:
        table.load()
    except (BotoCoreError, ClientError) as exc:
        raise StartupFatalError(
            f"Cannot reach DynamoDB table {settings.table_name}: {exc}"
        ) from exc
    indexes = {index["IndexName"] for index in table.global_secondary_indexes or ()}
    if PendingMessage.INDEX_NAME not in indexes:
        raise StartupFatalError(
            f"DynamoDB table {settings.table_name} has no "
            f"{PendingMessage.INDEX_NAME} index"
        )
    return table


def build_moderator(
    settings: Settings,
    table,
    messenger: Messenger,
    *,
    provider: ProviderClient | None = None,
) -> tuple[IdentityStore, PendingLedger, Moderator]:
    identity = IdentityStore(table)
    ledger = PendingLedger(table)
    executor = ActionExecutor(
        identity,
        ledger,
        messenger,
        oauth=settings.oauth,
        join_timeout=settings.join_timeout,
    )
    moderator = Moderator(
        identity, executor, provider, policy=settings.rejoin_policy
    )
    return identity, ledger, moderator


class GatekeeperRuntime:
    def __init__(
        self,
        settings: Settings,
        table,
        *,
        client: discord.Client | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.message_content = True

        self.settings = settings
        self.bot = client or discord.Client(intents=intents)
        self.messenger = DiscordMessenger(
            self.bot,
            provider_name=settings.oauth_provider_name,
            greeting_channel_id=settings.greeting_channel_id,
        )
        self.identity, self.ledger, self.moderator = build_moderator(
            settings, table, self.messenger
        )
        self.dispatcher = Dispatcher(
            self.identity,
            self.moderator,
            handler_timeout=settings.handler_timeout,
            admin_cache_max_age=settings.admin_cache_max_age,
        )
        self.reconciler = Reconciler(
            self.ledger, self.moderator, join_timeout=settings.join_timeout
        )
        self.reconcile_loop = tasks.loop(
            seconds=settings.reconcile_interval.total_seconds()
        )(self.reconcile)
        self.admin_sync_loop = tasks.loop(
            seconds=settings.admin_sync_interval.total_seconds()
        )(self.sync_admins)

        for handler in (
            self.on_ready,
            self.on_member_join,
            self.on_member_remove,
            self.on_member_update,
            self.on_message,
            self.on_interaction,
        ):
            self.bot.event(handler)

    @classmethod
    def create(cls, settings: Settings) -> GatekeeperRuntime:
        return cls(settings, open_table(settings))

    # ----- Lifecycle -----
    async def on_ready(self) -> None:
        if not self.admin_sync_loop.is_running():
            self.admin_sync_loop.start()
        if not self.reconcile_loop.is_running():
            self.reconcile_loop.start()
        log.info("Bot ready as %s (%s)", self.bot.user, self.bot.user.id)

    def stop(self) -> None:
        """Stop the loops; a running iteration is allowed to finish."""
        self.reconcile_loop.stop()
        self.admin_sync_loop.stop()

    def log_cursor(self) -> None:
        try:
            cursor = self.identity.get_cursor()
        except GatekeeperError as exc:
            log.warning("Could not read the update cursor: %s", exc)
            return
        log.info("Resuming after update %s", cursor.last_update_id)

    async def run(self) -> None:
        self.log_cursor()
        try:
            async with self.bot:
                await self.bot.start(self.settings.discord_token)
        finally:
            self.stop()
            log.info("Bot stopped")

    # ----- Event handlers -----
    async def dispatch(self, update: PlatformUpdate | None) -> str | None:
        if update is None:
            return None
        return await self.dispatcher.dispatch(update)

    async def on_member_join(self, member: discord.Member) -> None:
        await self.dispatch(join_update(member))

    async def on_member_remove(self, member: discord.Member) -> None:
        await self.dispatch(left_update(member))

    async def on_member_update(
        self, before: discord.Member, after: discord.Member
    ) -> None:
        bot_user_id = self.bot.user.id if self.bot.user else None
        await self.dispatch(membership_update(before, after, bot_user_id))

    async def on_message(self, message: discord.Message) -> None:
        if self.bot.user is not None and message.author.id == self.bot.user.id:
            return
        feedback = await self.dispatch(message_update(message))
        if not feedback or not isinstance(message.channel, discord.DMChannel):
            return
        try:
            await message.channel.send(feedback)
        except discord.HTTPException as exc:
            log.warning("Failed to reply to %s: %s", message.author.id, exc)

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        update = interaction_update(interaction)
        if update is None:
            return
        # Interactions must be acknowledged within three seconds.
        await interaction.response.defer(ephemeral=True, thinking=True)
        feedback = await self.dispatch(update)
        try:
            await interaction.followup.send(feedback or DEFAULT_FEEDBACK, ephemeral=True)
        except discord.HTTPException as exc:
            log.warning("Failed to answer interaction %s: %s", interaction.id, exc)

    # ----- Periodic work -----
    async def reconcile(self) -> None:
        try:
            await self.reconciler.tick()
        except Exception as exc:  # pylint: disable=broad-except
            log.exception("Reconciliation tick failed: %s", exc)

    async def sync_admins(self) -> None:
        """Refresh the cached bot role and admin list of every guild."""
        try:
            known = {state.group_id: state for state in self.identity.list_group_states()}
        except GatekeeperError as exc:
            log.error("Admin sync skipped: %s", exc)
            return

        synced = 0
        for guild in self.bot.guilds:
            try:
                state = known.get(guild.id) or self.identity.get_or_create_group_state(
                    guild.id, guild_kind(guild)
                )
                self._refresh_state(state, guild)
                self.identity.save_group_state(state)
                synced += 1
            except GatekeeperError as exc:
                log.error("Failed to sync admins for guild %s: %s", guild.id, exc)

        log.info("Admin sync done for %d guilds", synced)

    @staticmethod
    def _refresh_state(state: GroupState, guild: discord.Guild) -> None:
        state.kind = guild_kind(guild)
        state.bot_role = bot_role(guild.me)
        state.admins = admin_ids(guild)
        state.admins_synced_at = to_iso(utc_now())


__all__ = ["GatekeeperRuntime", "build_moderator", "open_table"]
