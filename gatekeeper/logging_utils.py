from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any, Final

from .models import Member

LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

log: Final = logging.getLogger("gatekeeper")


def configure_logging(level: str = "INFO", *, debug: bool = False) -> None:
    resolved = logging.DEBUG if debug else logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level {level!r}")
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    # discord.py is chatty at debug level
    logging.getLogger("discord").setLevel(max(resolved, logging.INFO))


class UpdateLogger(logging.LoggerAdapter):
    """Prefixes every record with the fields of the update being handled."""

    def __init__(self, logger: logging.Logger, fields: dict[str, object]) -> None:
        super().__init__(logger, dict(fields))

    def with_fields(self, **fields: object) -> UpdateLogger:
        merged = dict(self.extra or {})
        merged.update(fields)
        return UpdateLogger(self.logger, merged)

    def with_member(self, member: Member) -> UpdateLogger:
        return self.with_fields(
            **{
                "member.id": member.internal_id,
                "member.external_id": member.external_id,
                "member.provider_id": member.provider_id,
                "member.status": str(member.status),
            }
        )

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        if not self.extra:
            return msg, kwargs
        context = " ".join(f"{key}={value}" for key, value in self.extra.items())
        return f"{msg} [{context}]", kwargs


__all__ = ["LOG_FORMAT", "UpdateLogger", "configure_logging"]
