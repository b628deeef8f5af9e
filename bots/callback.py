"""OAuth callback server.

Serves ``GET /oauth_callback``: decodes the login state, exchanges the code
with the provider and runs the resulting verification through the moderator.
Run with ``python -m bots.callback``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Final

import discord
from aiohttp import web

from bots.config import Settings
from bots.discord_adapter import DiscordMessenger
from bots.runtime import build_moderator, open_table
from gatekeeper.errors import GatekeeperError, NotFoundError, StartupFatalError
from gatekeeper.logging_utils import UpdateLogger, configure_logging
from gatekeeper.machine import Outcome, VerificationCallback
from gatekeeper.moderator import Moderator
from gatekeeper.oauth import LoginState, ProviderClient

CALLBACK_PATH: Final[str] = "/oauth_callback"
INTERNAL_ERROR_TEXT: Final[str] = "Something went wrong, please try again later."

log: Final = logging.getLogger("gatekeeper.callback")

_OUTCOME_STATUS: Final = {
    Outcome.VERIFIED: 200,
    Outcome.UNEXPECTED_STATUS: 409,
    Outcome.CONFLICT: 409,
    Outcome.LOGIN_FAILED: 500,
}


class CallbackHandler:
    def __init__(self, moderator: Moderator, *, handler_timeout: timedelta) -> None:
        self._moderator = moderator
        self._handler_timeout = handler_timeout

    async def handle(self, request: web.Request) -> web.Response:
        code = request.query.get("code", "")
        raw_state = request.query.get("state", "")
        if not code or not raw_state:
            return web.Response(status=400, text="missing code or state")
        try:
            state = LoginState.decode(raw_state)
        except ValueError as exc:
            log.warning("Rejected callback with bad state: %s", exc)
            return web.Response(status=400, text="malformed state")

        logger = UpdateLogger(
            log, {"member.external_id": state.member_id, "group.id": state.group_id}
        )
        event = VerificationCallback(
            group_id=state.group_id, member_id=state.member_id, code=code
        )
        try:
            async with asyncio.timeout(self._handler_timeout.total_seconds()):
                decision = await self._moderator.handle(event, logger)
        except NotFoundError as exc:
            logger.warning("Callback for unknown member: %s", exc)
            return web.Response(status=404, text="member not found")
        except TimeoutError:
            logger.error("Callback timed out after %s", self._handler_timeout)
            return web.Response(status=500, text=INTERNAL_ERROR_TEXT)
        except GatekeeperError as exc:
            logger.error("Callback failed: %s", exc)
            return web.Response(status=500, text=INTERNAL_ERROR_TEXT)

        status = _OUTCOME_STATUS.get(decision.outcome, 200)
        logger.info("Callback finished with %s (%d)", decision.outcome, status)
        return web.Response(status=status, text=decision.feedback or "")


def make_app(moderator: Moderator, *, handler_timeout: timedelta) -> web.Application:
    handler = CallbackHandler(moderator, handler_timeout=handler_timeout)
    app = web.Application()
    app.router.add_get(CALLBACK_PATH, handler.handle)
    return app


async def serve(settings: Settings) -> None:
    table = open_table(settings)
    # REST-only client: deleting greetings needs no gateway connection.
    client = discord.Client(intents=discord.Intents.none())
    try:
        await client.login(settings.discord_token)
    except discord.LoginFailure as exc:
        raise StartupFatalError(f"Discord login failed: {exc}") from exc

    messenger = DiscordMessenger(
        client,
        provider_name=settings.oauth_provider_name,
        greeting_channel_id=settings.greeting_channel_id,
    )
    _, _, moderator = build_moderator(
        settings, table, messenger, provider=ProviderClient(settings.oauth)
    )
    runner = web.AppRunner(
        make_app(moderator, handler_timeout=settings.handler_timeout)
    )
    await runner.setup()
    site = web.TCPSite(runner, settings.callback_host, settings.callback_port)
    try:
        await site.start()
        log.info(
            "Callback server listening on %s:%s%s",
            settings.callback_host,
            settings.callback_port,
            CALLBACK_PATH,
        )
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await client.close()
        log.info("Callback server stopped")


async def main() -> None:
    settings = Settings.load(require_secret=True)
    configure_logging(settings.log_level, debug=settings.debug)
    await serve(settings)


def run() -> None:
    try:
        asyncio.run(main())
    except StartupFatalError as exc:
        log.critical("Startup failed: %s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")


__all__ = ["CALLBACK_PATH", "CallbackHandler", "make_app", "run", "serve"]


if __name__ == "__main__":
    run()
