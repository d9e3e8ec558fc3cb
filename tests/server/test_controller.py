"""Tests for SessionController."""

import asyncio
import logging
import random

import pytest

from chargesim.diameter.loopback import LoopbackLink
from chargesim.diameter.message import (
    APP_COMMON,
    APP_CREDIT_CONTROL,
    CMD_CAPABILITIES_EXCHANGE,
    CMD_DEVICE_WATCHDOG,
    CMD_RE_AUTH,
    UPDATE_REQUEST,
    find_all,
    find_value,
)
from chargesim.exceptions import ConfigurationError, RequestTimeoutError, TransportUnavailableError
from chargesim.server.config import ControllerConfig
from chargesim.server.controller import SessionController, mapped_ipv6

CLIENT_HOST = "pgw-test01.kit.com"
CLIENT_REALM = "kit.com"
SERVER_HOST = "ocs-test01.epc.mnc006.mcc454.3gppnetwork.org"
SERVER_REALM = "epc.mnc006.mcc454.3gppnetwork.org"


class TestPeerCommands:
    """Tests for CER/DWR/DPR answers."""

    @pytest.mark.asyncio
    async def test_cea(self, controller, link):
        cer = link.client.create_request(APP_COMMON, CMD_CAPABILITIES_EXCHANGE)
        cea = await link.client.send_request(cer, timeout=1.0)

        assert cea.get("Result-Code") == "DIAMETER_SUCCESS"
        assert cea.get("Origin-Host") == SERVER_HOST
        assert cea.get("Origin-Realm") == SERVER_REALM
        assert find_all(cea.body, "Host-IP-Address") == ["172.19.3.1", "fd1e:1dff:97ed::ac13:301"]
        assert cea.get("Vendor-Id") == 10415
        assert cea.get("Product-Name")

    @pytest.mark.asyncio
    async def test_dwa(self, controller, link):
        dwa = await link.client.send_request(link.client.create_request(APP_COMMON, CMD_DEVICE_WATCHDOG), timeout=1.0)
        assert dwa.get("Result-Code") == "DIAMETER_SUCCESS"
        assert dwa.get("Host-IP-Address") is None

    @pytest.mark.asyncio
    async def test_unsupported_command(self, controller, link):
        rar = link.client.create_request(APP_CREDIT_CONTROL, CMD_RE_AUTH, "sid;1")
        answer = await link.client.send_request(rar, timeout=1.0)

        assert answer.get("Result-Code") == "DIAMETER_COMMAND_UNSUPPORTED"
        assert answer.flags.error

    def test_mapped_ipv6(self):
        assert mapped_ipv6("172.19.3.1") == "fd1e:1dff:97ed::ac13:301"
        assert mapped_ipv6("10.0.0.1") == "fd1e:1dff:97ed::a00:1"


class TestCreditControl:
    """Tests for credit-control answers and the session table."""

    @pytest.mark.asyncio
    async def test_success_answer(self, controller, link, ccr_factory):
        ccr = ccr_factory(link.client, "sid;1", UPDATE_REQUEST, 4)
        cca = await link.client.send_request(ccr, timeout=1.0)

        assert cca.session_id == "sid;1"
        assert cca.get("Result-Code") == "DIAMETER_SUCCESS"
        assert cca.get("Origin-Host") == SERVER_HOST
        assert cca.get("Destination-Host") == CLIENT_HOST
        assert cca.get("Destination-Realm") == CLIENT_REALM
        assert cca.get("Auth-Application-Id") == APP_CREDIT_CONTROL
        assert cca.get("CC-Request-Type") == UPDATE_REQUEST
        assert cca.get("CC-Request-Number") == 4

        mscc = cca.get("Multiple-Services-Credit-Control")
        gsu = find_value(mscc, "Granted-Service-Unit")
        assert find_value(gsu, "CC-Time") == 99999
        assert find_value(gsu, "CC-Total-Octets") == 31457280
        assert find_value(mscc, "Volume-Quota-Threshold") == 6291456
        assert find_value(mscc, "Validity-Time") == 3600

    @pytest.mark.asyncio
    async def test_negative_answer_has_no_grant(self, controller, link, ccr_factory):
        controller.policy.update({"DIAMETER_SUCCESS": 0, "DIAMETER_CREDIT_LIMIT_REACHED": 1})

        cca = await link.client.send_request(ccr_factory(link.client, "sid;2"), timeout=1.0)

        assert cca.get("Result-Code") == "DIAMETER_CREDIT_LIMIT_REACHED"
        assert cca.get("Destination-Host") == CLIENT_HOST
        assert cca.get("Multiple-Services-Credit-Control") is None
        assert cca.get("CC-Request-Number") is None

    @pytest.mark.asyncio
    async def test_session_table(self, controller, link, ccr_factory):
        await link.client.send_request(ccr_factory(link.client, "sid;3", number=0), timeout=1.0)
        await link.client.send_request(ccr_factory(link.client, "sid;3", UPDATE_REQUEST, 1), timeout=1.0)

        session = controller.get_session("sid;3")
        assert session.avp == {
            "lastCCRequestType": UPDATE_REQUEST,
            "lastCCRequestNumber": 1,
            "originHost": CLIENT_HOST,
            "originRealm": CLIENT_REALM,
        }
        assert session.connection_id == link.server.connection_id
        assert session.last_activity > 0
        assert controller.session_ids() == ["sid;3"]
        assert controller.total_ccr == 2

    @pytest.mark.asyncio
    async def test_deleted_session_is_recreated_fresh(self, controller, link, ccr_factory):
        await link.client.send_request(ccr_factory(link.client, "sid;4", UPDATE_REQUEST, 7), timeout=1.0)

        assert controller.delete_session("sid;4")
        assert not controller.delete_session("sid;4")
        assert controller.get_session("sid;4") is None

        await link.client.send_request(
            ccr_factory(link.client, "sid;4", UPDATE_REQUEST, 8, origin_host="other.kit.com"), timeout=1.0
        )
        assert controller.get_session("sid;4").avp["originHost"] == "other.kit.com"
        assert controller.get_session("sid;4").avp["lastCCRequestNumber"] == 8

    @pytest.mark.asyncio
    async def test_outcomes_are_counted(self, controller, link, ccr_factory, metrics):
        for number in range(3):
            await link.client.send_request(ccr_factory(link.client, "sid;5", number=number), timeout=1.0)
        assert metrics.value("chargesim_server_outcomes_total", result_code="DIAMETER_SUCCESS") == 3.0
        assert metrics.value("chargesim_server_sessions") == 1.0

    def test_rar_session_ids_preregistered(self, controller_config):
        controller_config.rar_session_ids = ["pre;1", "pre;2"]
        controller = SessionController(controller_config)
        assert controller.session_ids() == ["pre;1", "pre;2"]
        assert controller.get_session("pre;1").avp == {}

    def test_invalid_config(self):
        with pytest.raises(ConfigurationError):
            SessionController(ControllerConfig(delay_ms=-5))


class TestDelays:
    """Tests for answer delays."""

    @pytest.mark.asyncio
    async def test_default_delay_applies_to_credit_control_only(self, controller_config, ccr_factory):
        controller_config.delay_ms = 80
        link = LoopbackLink()
        controller = SessionController(controller_config)
        controller.attach(link.server)
        loop = asyncio.get_running_loop()

        started = loop.time()
        await link.client.send_request(link.client.create_request(APP_COMMON, CMD_DEVICE_WATCHDOG), timeout=1.0)
        assert loop.time() - started < 0.06

        started = loop.time()
        await link.client.send_request(ccr_factory(link.client, "sid;d"), timeout=1.0)
        assert loop.time() - started >= 0.07

    @pytest.mark.asyncio
    async def test_table_delay_overrides(self, controller, link):
        controller.set_delay(CMD_DEVICE_WATCHDOG, 60)
        assert controller.answer_delay(CMD_DEVICE_WATCHDOG) == pytest.approx(0.06)
        loop = asyncio.get_running_loop()

        started = loop.time()
        await link.client.send_request(link.client.create_request(APP_COMMON, CMD_DEVICE_WATCHDOG), timeout=1.0)
        assert loop.time() - started >= 0.05

        assert controller.delete_delay(CMD_DEVICE_WATCHDOG)
        assert not controller.delete_delay(CMD_DEVICE_WATCHDOG)
        assert controller.answer_delay(CMD_DEVICE_WATCHDOG) == 0.0

    @pytest.mark.asyncio
    async def test_delayed_answer_times_out(self, controller, link, ccr_factory):
        controller.set_delay("Credit-Control", 100)

        with pytest.raises(RequestTimeoutError):
            await link.client.send_request(ccr_factory(link.client, "sid;t"), timeout=0.02)
        await asyncio.sleep(0.1)

    @pytest.mark.parametrize("command,delay", [("", 10), (None, 10), ("Credit-Control", "10"), ("Credit-Control", True)])
    def test_invalid_delay(self, controller, command, delay):
        with pytest.raises(ConfigurationError):
            controller.set_delay(command, delay)


class TestConnections:
    """Tests for the live connection set."""

    @pytest.mark.asyncio
    async def test_closed_connection_is_removed(self, controller, link, metrics):
        assert len(controller.connections) == 1
        await link.close()
        assert len(controller.connections) == 0
        assert metrics.value("chargesim_server_connections") == 0.0

    @pytest.mark.asyncio
    async def test_errored_connection_is_removed(self, controller, link, caplog):
        with caplog.at_level(logging.ERROR, logger="chargesim.server.controller"):
            link.server.fail(OSError("socket hang up"))
        assert len(controller.connections) == 0
        assert "socket hang up" in caplog.text

    @pytest.mark.asyncio
    async def test_resolve_prefers_bound_connection(self, controller, link, ccr_factory):
        other = LoopbackLink()
        controller.attach(other.server)
        await link.client.send_request(ccr_factory(link.client, "sid;r"), timeout=1.0)

        for _ in range(10):
            assert controller.resolve_connection("sid;r") is link.server

        await link.close()
        assert controller.resolve_connection("sid;r") is other.server

    @pytest.mark.asyncio
    async def test_resolve_without_connections(self, controller, link):
        await link.close()
        assert controller.resolve_connection("sid;x") is None

        with pytest.raises(TransportUnavailableError) as exc_info:
            controller.require_connection("sid;x")
        assert exc_info.value.details == {"session_id": "sid;x"}


class TestCcrCounter:
    """Tests for the CCR count reporter."""

    @pytest.mark.asyncio
    async def test_rate_and_report(self, controller_config, ccr_factory, caplog):
        controller_config.ccr_count_interval = 0.02
        link = LoopbackLink()
        controller = SessionController(controller_config, rng=random.Random(1))
        controller.attach(link.server)
        assert controller.ccr_rate() == 0.0

        with caplog.at_level(logging.INFO, logger="chargesim.server.controller"):
            await controller.start()
            for number in range(5):
                await link.client.send_request(ccr_factory(link.client, "sid;c", number=number), timeout=1.0)
            await asyncio.sleep(0.05)
            await controller.stop()

        assert controller.total_ccr == 5
        assert controller.ccr_rate() > 0
        assert "CCR total: 5" in caplog.text
