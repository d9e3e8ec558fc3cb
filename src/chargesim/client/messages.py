"""Request builders for the session driver.

Credit-control requests carry the AVP set of a 3GPP PGW Gy client:
subscriber identity (E.164 and IMSI), one Multiple-Services-Credit-Control
for rating group 1, User-Equipment-Info and PS-Information.
"""

from typing import Optional

from chargesim.client.config import DriverConfig
from chargesim.client.models import ClientSession
from chargesim.diameter.engine import IncomingRequest, PeerConnection
from chargesim.diameter.message import (
    APP_COMMON,
    APP_CREDIT_CONTROL,
    AVPList,
    CMD_CAPABILITIES_EXCHANGE,
    CMD_CREDIT_CONTROL,
    CMD_DEVICE_WATCHDOG,
    CMD_DISCONNECT_PEER,
    CMD_RE_AUTH,
    DIAMETER_COMMAND_UNSUPPORTED,
    DIAMETER_SUCCESS,
    INITIAL_REQUEST,
    TERMINATION_REQUEST,
    UPDATE_REQUEST,
    Message,
)

SERVICE_CONTEXT_ID = "pgw@3gppnetwork.org"
USER_NAME = "sirobit"
ORIGIN_STATE_ID = 123456
VENDOR_ID_3GPP = 10415
PRODUCT_NAME = "chargesim PGW"
IMEISV = bytes([0x40, 0x12, 0x88, 0x88, 0x88, 0x88, 0x18, 0x81])

# Usage reported in the CCR-t
FINAL_TOTAL_OCTETS = 457469
FINAL_INPUT_OCTETS = 56304
FINAL_OUTPUT_OCTETS = 401165


def _ps_information(request_type: str) -> AVPList:
    avps: AVPList = [
        ("3GPP-Charging-Id", bytes([0x0F, 0x65, 0x16, 0x1F])),
        ("3GPP-PDP-Type", "IPv4"),
        ("PDP-Address", "10.83.97.101"),
        ("3GPP-GPRS-Negotiated-QoS-Profile", "08-7408000249f0000f4240"),
        ("SGSN-Address", "203.145.68.61"),
        ("GGSN-Address", "203.145.68.67"),
        ("CG-Address", "10.65.51.1"),
        ("3GPP-IMSI-MCC-MNC", "45403"),
        ("3GPP-GGSN-MCC-MNC", "45403"),
        ("3GPP-NSAPI", "5"),
        ("Called-Station-Id", "pgw.test.com"),
    ]
    if request_type != INITIAL_REQUEST:
        avps.append(("3GPP-Session-Stop-Indicator", bytes([0xFF])))
    avps.extend([
        ("3GPP-Selection-Mode", "0"),
        ("3GPP-Charging-Characteristics", "0800"),
        ("3GPP-SGSN-MCC-MNC", "45403"),
        (
            "3GPP-User-Location-Info",
            bytes([0x82, 0x54, 0xF4, 0x30, 0x08, 0x48, 0x54, 0xF4, 0x30, 0x09, 0x2F, 0xF4, 0x03]),
        ),
        ("3GPP-MS-TimeZone", bytes([0x23, 0x00])),
        ("3GPP-RAT-Type", bytes([0x06])),
    ])
    if request_type == INITIAL_REQUEST:
        avps.append(("PDP-Context-Type", "PRIMARY"))
    avps.append(("Charging-Rule-Base-Name", "up_bypass_h_dra_preprod"))
    return avps


def _credit_control(session: ClientSession, request_type: str) -> AVPList:
    if request_type == INITIAL_REQUEST:
        return [
            ("Requested-Service-Unit", 0),
            ("Rating-Group", 1),
            ("Service-Identifier", 1),
        ]
    if request_type == UPDATE_REQUEST:
        return [
            ("Requested-Service-Unit", 0),
            ("Used-Service-Unit", [
                ("CC-Total-Octets", 0),
                ("CC-Input-Octets", 0),
                ("CC-Output-Octets", 0),
            ]),
            ("Rating-Group", 1),
            ("Service-Identifier", 1),
            ("3GPP-Reporting-Reason", "VALIDITY_TIME"),
        ]
    return [
        ("Used-Service-Unit", [
            ("CC-Time", session.elapsed_seconds),
            ("CC-Total-Octets", FINAL_TOTAL_OCTETS),
            ("CC-Input-Octets", FINAL_INPUT_OCTETS),
            ("CC-Output-Octets", FINAL_OUTPUT_OCTETS),
        ]),
        ("Rating-Group", 1),
        ("Service-Identifier", 1),
        ("3GPP-Reporting-Reason", "FINAL"),
    ]


def build_ccr(
    connection: PeerConnection,
    config: DriverConfig,
    session: ClientSession,
    request_type: str,
    event_timestamp: int,
) -> Message:
    """Build a Credit-Control-Request.

    Args:
        connection: Connection the request is created on.
        config: Driver configuration (identities).
        session: Session the request belongs to.
        request_type: INITIAL_REQUEST, UPDATE_REQUEST or TERMINATION_REQUEST.
        event_timestamp: NTP Event-Timestamp.

    Returns:
        Request ready to send.
    """
    ccr = connection.create_request(APP_CREDIT_CONTROL, CMD_CREDIT_CONTROL, session.session_id)
    ccr.flags.proxiable = True
    ccr.body.extend([
        ("Auth-Application-Id", APP_CREDIT_CONTROL),
        ("Origin-Host", config.origin_host),
        ("Origin-Realm", config.origin_realm),
    ])
    if config.destination_host:
        ccr.body.append(("Destination-Host", config.destination_host))
    if config.destination_realm:
        ccr.body.append(("Destination-Realm", config.destination_realm))

    ccr.body.extend([
        ("Service-Context-Id", SERVICE_CONTEXT_ID),
        ("CC-Request-Type", request_type),
        ("CC-Request-Number", session.request_number),
        ("User-Name", USER_NAME),
        ("Origin-State-Id", ORIGIN_STATE_ID),
        ("Event-Timestamp", event_timestamp),
        ("Subscription-Id", [
            ("Subscription-Id-Type", "END_USER_E164"),
            ("Subscription-Id-Data", session.msisdn),
        ]),
        ("Subscription-Id", [
            ("Subscription-Id-Type", "END_USER_IMSI"),
            ("Subscription-Id-Data", session.imsi),
        ]),
    ])
    if request_type == INITIAL_REQUEST:
        ccr.body.append(("Framed-IP-Address", session.device_ip))
    if request_type == TERMINATION_REQUEST:
        ccr.body.append(("Termination-Cause", "DIAMETER_LOGOUT"))

    ccr.body.extend([
        ("Multiple-Services-Indicator", "MULTIPLE_SERVICES_SUPPORTED"),
        ("Multiple-Services-Credit-Control", _credit_control(session, request_type)),
        ("User-Equipment-Info", [
            ("User-Equipment-Info-Type", "IMEISV"),
            ("User-Equipment-Info-Value", IMEISV),
        ]),
        ("Service-Information", [
            ("PS-Information", _ps_information(request_type)),
        ]),
    ])
    return ccr


def _peer_request(
    connection: PeerConnection,
    config: DriverConfig,
    command: str,
    session_id: Optional[str],
) -> Message:
    request = connection.create_request(APP_COMMON, command, session_id)
    request.body.extend([
        ("Origin-Host", config.peer_host),
        ("Origin-Realm", config.peer_realm),
    ])
    return request


def build_cer(connection: PeerConnection, config: DriverConfig, session_id: Optional[str]) -> Message:
    """Build a Capabilities-Exchange-Request."""
    cer = _peer_request(connection, config, CMD_CAPABILITIES_EXCHANGE, session_id)
    cer.body.extend([
        ("Host-IP-Address", config.local_address),
        ("Vendor-Id", VENDOR_ID_3GPP),
        ("Product-Name", PRODUCT_NAME),
    ])
    return cer


def build_dwr(connection: PeerConnection, config: DriverConfig, session_id: Optional[str]) -> Message:
    """Build a Device-Watchdog-Request."""
    return _peer_request(connection, config, CMD_DEVICE_WATCHDOG, session_id)


def build_dpr(connection: PeerConnection, config: DriverConfig, session_id: Optional[str]) -> Message:
    """Build a Disconnect-Peer-Request."""
    dpr = _peer_request(connection, config, CMD_DISCONNECT_PEER, session_id)
    dpr.body.append(("Disconnect-Cause", "DO_NOT_WANT_TO_TALK_TO_YOU"))
    return dpr


def answer_server_request(incoming: IncomingRequest, config: DriverConfig) -> Message:
    """Fill the answer to a server-initiated request.

    CER, DWR and RAR are answered with DIAMETER_SUCCESS and the driver's
    identity; anything else gets DIAMETER_COMMAND_UNSUPPORTED.
    """
    response = incoming.response
    command = incoming.message.command
    if command in (CMD_CAPABILITIES_EXCHANGE, CMD_DEVICE_WATCHDOG, CMD_RE_AUTH):
        result_code = DIAMETER_SUCCESS
    else:
        result_code = DIAMETER_COMMAND_UNSUPPORTED
        response.flags.error = True

    response.body.extend([
        ("Result-Code", result_code),
        ("Origin-Host", config.origin_host),
        ("Origin-Realm", config.origin_realm),
    ])
    if command == CMD_CAPABILITIES_EXCHANGE:
        response.body.extend([
            ("Host-IP-Address", config.local_address),
            ("Vendor-Id", VENDOR_ID_3GPP),
            ("Product-Name", PRODUCT_NAME),
        ])
    return response
