"""Entry point for running the bot via ``python -m bots``."""

from __future__ import annotations

import asyncio
import logging
from typing import Final

from bots.config import Settings
from bots.runtime import GatekeeperRuntime
from gatekeeper.errors import StartupFatalError
from gatekeeper.logging_utils import configure_logging

log: Final = logging.getLogger("gatekeeper")


async def main() -> None:
    settings = Settings.load()
    configure_logging(settings.log_level, debug=settings.debug)
    runtime = GatekeeperRuntime.create(settings)
    await runtime.run()


def run() -> None:
    try:
        asyncio.run(main())
    except StartupFatalError as exc:
        log.critical("Startup failed: %s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")


if __name__ == "__main__":
    run()
