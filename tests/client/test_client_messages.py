"""Tests for the session driver's request builders."""

import random

import pytest

from chargesim.client.config import DriverConfig
from chargesim.client.messages import (
    answer_server_request,
    build_ccr,
    build_cer,
    build_dpr,
    build_dwr,
)
from chargesim.client.models import ClientSession, SessionIdGenerator
from chargesim.diameter.engine import IncomingRequest
from chargesim.diameter.loopback import LoopbackLink
from chargesim.diameter.message import (
    APP_COMMON,
    APP_CREDIT_CONTROL,
    CMD_CAPABILITIES_EXCHANGE,
    CMD_CREDIT_CONTROL,
    CMD_RE_AUTH,
    INITIAL_REQUEST,
    TERMINATION_REQUEST,
    UPDATE_REQUEST,
    create_request,
    find_all,
    find_value,
)


@pytest.fixture
def session():
    generator = SessionIdGenerator("pgw1.kit.com", random.Random(3))
    return ClientSession.create("85255610347", generator, device_ip="10.20.30.40")


@pytest.fixture
def connection():
    return LoopbackLink().client


class TestBuildCcr:
    """Tests for Credit-Control-Request construction."""

    def test_initial_request(self, connection, session):
        config = DriverConfig(origin_host="pgw1.kit.com")
        ccr = build_ccr(connection, config, session, INITIAL_REQUEST, 3900000000)

        assert ccr.command == CMD_CREDIT_CONTROL
        assert ccr.flags.proxiable
        assert ccr.session_id == session.session_id
        assert ccr.get("Origin-Host") == "pgw1.kit.com"
        assert ccr.get("Origin-Realm") == "kit.com"
        assert ccr.get("Destination-Host") is None
        assert ccr.get("CC-Request-Type") == INITIAL_REQUEST
        assert ccr.get("CC-Request-Number") == 0
        assert ccr.get("Event-Timestamp") == 3900000000
        assert ccr.get("Framed-IP-Address") == "10.20.30.40"
        assert ccr.get("Termination-Cause") is None

        ids = find_all(ccr.body, "Subscription-Id")
        assert find_value(ids[0], "Subscription-Id-Data") == "85255610347"
        assert find_value(ids[1], "Subscription-Id-Data") == session.imsi

        mscc = ccr.get("Multiple-Services-Credit-Control")
        assert find_value(mscc, "Rating-Group") == 1
        assert find_value(mscc, "Used-Service-Unit") is None

    def test_destination_included_when_configured(self, connection, session):
        config = DriverConfig(destination_host="ocs1.epc", destination_realm="epc")
        ccr = build_ccr(connection, config, session, INITIAL_REQUEST, 0)
        assert ccr.get("Destination-Host") == "ocs1.epc"
        assert ccr.get("Destination-Realm") == "epc"

    def test_update_request(self, connection, session):
        session.request_number = 3
        ccr = build_ccr(connection, DriverConfig(), session, UPDATE_REQUEST, 0)

        assert ccr.get("CC-Request-Number") == 3
        assert ccr.get("Framed-IP-Address") is None
        mscc = ccr.get("Multiple-Services-Credit-Control")
        assert find_value(mscc, "3GPP-Reporting-Reason") == "VALIDITY_TIME"

    def test_termination_request_reports_elapsed_time(self, connection, session):
        session.initial_timestamp = 3900000000
        session.terminate_timestamp = 3900000042
        ccr = build_ccr(connection, DriverConfig(), session, TERMINATION_REQUEST, 3900000042)

        assert ccr.get("Termination-Cause") == "DIAMETER_LOGOUT"
        used = find_value(ccr.get("Multiple-Services-Credit-Control"), "Used-Service-Unit")
        assert find_value(used, "CC-Time") == 42
        assert find_value(used, "CC-Total-Octets") > 0


class TestPeerRequests:
    """Tests for CER, DWR and DPR construction."""

    def test_peer_identity(self, connection):
        config = DriverConfig(origin_host="pgw1.kit.com", peer_origin_host="peer1.kit.com")
        for build in (build_cer, build_dwr, build_dpr):
            request = build(connection, config, "peer;1")
            assert request.application == APP_COMMON
            assert request.get("Origin-Host") == "peer1.kit.com"
            assert request.get("Origin-Realm") == "kit.com"

    def test_cer_advertises_address(self, connection):
        cer = build_cer(connection, DriverConfig(local_address="172.19.2.9"), None)
        assert cer.get("Host-IP-Address") == "172.19.2.9"
        assert cer.get("Vendor-Id") == 10415

    def test_dpr_cause(self, connection):
        dpr = build_dpr(connection, DriverConfig(), None)
        assert dpr.get("Disconnect-Cause") == "DO_NOT_WANT_TO_TALK_TO_YOU"


class TestAnswerServerRequest:
    """Tests for answers to server-initiated requests."""

    def _incoming(self, application, command):
        request = create_request(application, command, "sid;9")
        return IncomingRequest(message=request, response=request.create_answer(), callback=lambda a: None)

    def test_rar_answered_with_success(self):
        config = DriverConfig(origin_host="pgw1.kit.com")
        answer = answer_server_request(self._incoming(APP_CREDIT_CONTROL, CMD_RE_AUTH), config)

        assert answer.get("Result-Code") == "DIAMETER_SUCCESS"
        assert answer.get("Origin-Host") == "pgw1.kit.com"
        assert answer.session_id == "sid;9"
        assert not answer.flags.error

    def test_cer_answer_carries_capabilities(self):
        answer = answer_server_request(self._incoming(APP_COMMON, CMD_CAPABILITIES_EXCHANGE), DriverConfig())
        assert answer.get("Product-Name") == "chargesim PGW"

    def test_unsupported_command(self):
        answer = answer_server_request(self._incoming(APP_CREDIT_CONTROL, CMD_CREDIT_CONTROL), DriverConfig())
        assert answer.get("Result-Code") == "DIAMETER_COMMAND_UNSUPPORTED"
        assert answer.flags.error
