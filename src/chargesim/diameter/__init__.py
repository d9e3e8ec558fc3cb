"""Diameter message model and protocol engine interface."""

from chargesim.diameter.engine import IncomingRequest, PeerConnection
from chargesim.diameter.loopback import LoopbackConnection, LoopbackLink
from chargesim.diameter.message import (
    APP_COMMON,
    APP_CREDIT_CONTROL,
    CMD_CAPABILITIES_EXCHANGE,
    CMD_CREDIT_CONTROL,
    CMD_DEVICE_WATCHDOG,
    CMD_DISCONNECT_PEER,
    CMD_RE_AUTH,
    DIAMETER_SUCCESS,
    Message,
    MessageFlags,
    create_request,
    find_all,
    find_value,
    is_success,
)

__all__ = [
    "APP_COMMON",
    "APP_CREDIT_CONTROL",
    "CMD_CAPABILITIES_EXCHANGE",
    "CMD_CREDIT_CONTROL",
    "CMD_DEVICE_WATCHDOG",
    "CMD_DISCONNECT_PEER",
    "CMD_RE_AUTH",
    "DIAMETER_SUCCESS",
    "IncomingRequest",
    "LoopbackConnection",
    "LoopbackLink",
    "Message",
    "MessageFlags",
    "PeerConnection",
    "create_request",
    "find_all",
    "find_value",
    "is_success",
]
