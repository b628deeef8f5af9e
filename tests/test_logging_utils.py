"""Tests for logging configuration and the update logger."""

import logging
from unittest.mock import patch

import pytest

from gatekeeper.logging_utils import LOG_FORMAT, UpdateLogger, configure_logging
from gatekeeper.models import Member, MemberStatus


def test_update_logger_appends_fields(caplog):
    logger = UpdateLogger(logging.getLogger("gatekeeper.test"), {"chat.id": 42})
    with caplog.at_level(logging.INFO, logger="gatekeeper.test"):
        logger.with_fields(update=10).info("handled %s", "join")
    assert caplog.records[-1].getMessage() == "handled join [chat.id=42 update=10]"


def test_with_member_does_not_mutate_parent(caplog):
    parent = UpdateLogger(logging.getLogger("gatekeeper.test"), {})
    member = Member("abc", 42, 7, MemberStatus.JUST_JOINED)
    child = parent.with_member(member)

    with caplog.at_level(logging.INFO, logger="gatekeeper.test"):
        parent.info("plain")
        child.info("scoped")

    assert caplog.records[-2].getMessage() == "plain"
    assert "member.status=just_joined" in caplog.records[-1].getMessage()


def test_configure_logging_levels():
    with patch("logging.basicConfig") as basic_config:
        configure_logging("warning")
        basic_config.assert_called_once_with(level=logging.WARNING, format=LOG_FORMAT)

        basic_config.reset_mock()
        configure_logging("warning", debug=True)
        basic_config.assert_called_once_with(level=logging.DEBUG, format=LOG_FORMAT)
    assert logging.getLogger("discord").level == logging.INFO


def test_configure_logging_rejects_unknown_level():
    with pytest.raises(ValueError):
        configure_logging("chatty")
