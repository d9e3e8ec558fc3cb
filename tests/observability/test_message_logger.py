"""Tests for protocol message tracing."""

import logging

import pytest

from chargesim.diameter.engine import INBOUND, OUTBOUND
from chargesim.diameter.message import (
    APP_COMMON,
    APP_CREDIT_CONTROL,
    CMD_CREDIT_CONTROL,
    CMD_DEVICE_WATCHDOG,
    create_request,
)
from chargesim.observability.logging import MessageLogger, setup_logging


@pytest.fixture
def ccr():
    message = create_request(APP_CREDIT_CONTROL, CMD_CREDIT_CONTROL, "pgw;1;85255610347")
    message.body.extend([
        ("Origin-Host", "pgw-test01.kit.com"),
        ("CC-Request-Type", "INITIAL_REQUEST"),
        ("CC-Request-Number", 0),
        ("Subscription-Id", [("Subscription-Id-Type", "END_USER_E164"), ("Subscription-Id-Data", "85255610347")]),
        ("Framed-IP-Address", b"\n\x00\x00\x01"),
    ])
    return message


class TestFormat:
    """Tests for the rendered trace blocks."""

    def test_summary_shows_identifying_avps(self, ccr):
        text = MessageLogger(level=1).format(ccr, OUTBOUND)
        lines = text.splitlines()

        assert all(line.startswith(OUTBOUND) for line in lines)
        assert "Credit-Control-Request" in text
        assert "| Session-Id: pgw;1;85255610347" in text
        assert "| Origin-Host: pgw-test01.kit.com" in text
        assert "| CC-Request-Number: 0" in text
        assert "Subscription-Id" not in text

    def test_full_shows_nested_tree(self, ccr):
        text = MessageLogger(level=2).format(ccr, INBOUND)

        assert f"hbh={ccr.hop_by_hop_id}" in text
        assert "Subscription-Id-Data: 85255610347" in text
        assert "Framed-IP-Address: 0a000001" in text

    def test_flag_marks(self, ccr):
        ccr.flags.potentially_retransmitted = True
        assert "(T)" in MessageLogger().format(ccr, OUTBOUND)

        answer = ccr.create_answer()
        answer.flags.error = True
        assert "(!)" in MessageLogger().format(answer, INBOUND)

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            MessageLogger(level=3)


class TestFiltering:
    """Tests for command and application skip lists."""

    def test_skip_command(self, ccr, caplog):
        tracer = MessageLogger(skip_commands=[280])
        dwr = create_request(APP_COMMON, CMD_DEVICE_WATCHDOG)

        with caplog.at_level(logging.INFO, logger="chargesim.messages"):
            tracer(dwr, OUTBOUND)
            tracer(ccr, OUTBOUND)

        assert "Device-Watchdog" not in caplog.text
        assert "Credit-Control-Request" in caplog.text

    def test_skip_application(self, ccr):
        tracer = MessageLogger(skip_applications=[4])
        assert not tracer.should_log(ccr)
        assert tracer.should_log(create_request(APP_COMMON, CMD_DEVICE_WATCHDOG))

    @pytest.mark.asyncio
    async def test_attached_to_connection(self, controller, link, ccr_factory, caplog):
        MessageLogger().attach(link.client)

        with caplog.at_level(logging.INFO, logger="chargesim.messages"):
            await link.client.send_request(ccr_factory(link.client, "sid;1"), timeout=1.0)

        assert "Credit-Control-Request" in caplog.text
        assert "Credit-Control-Answer" in caplog.text
        assert "| Result-Code: DIAMETER_SUCCESS" in caplog.text


class TestSetupLogging:

    @pytest.mark.parametrize("verbose,debug,level", [
        (False, False, logging.WARNING),
        (True, False, logging.INFO),
        (False, True, logging.DEBUG),
    ])
    def test_levels(self, verbose, debug, level):
        root = logging.getLogger()
        saved_level, saved_handlers = root.level, root.handlers[:]
        try:
            setup_logging(verbose=verbose, debug=debug)
            assert root.level == level
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
