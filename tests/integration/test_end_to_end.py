"""Driver and controller running together over the loopback engine."""

import asyncio
from dataclasses import replace

import pytest

from chargesim.client.driver import SessionDriver
from chargesim.client.models import SessionPhase
from chargesim.diameter.engine import INBOUND, OUTBOUND
from chargesim.diameter.message import CMD_CREDIT_CONTROL
from chargesim.server.control import ControlPlane
from chargesim.server.models import InstructionStatus
from chargesim.server.scheduler import RarSweep


class Recorder:
    """Message observer keeping ``(direction, display_name, request_type)``."""

    def __init__(self):
        self.seen = []

    def __call__(self, message, direction):
        self.seen.append((direction, message.display_name, message.get("CC-Request-Type")))

    def names(self, direction):
        return [name for d, name, _ in self.seen if d == direction]


class TestEndToEnd:
    """Full batches against the session controller."""

    @pytest.mark.asyncio
    async def test_rar_after_update_reaches_driver(self, driver_config, controller, link):
        driver = SessionDriver(replace(driver_config, updates=3), link.client)
        session_id = driver.sessions[0].session_id
        control = ControlPlane(controller)
        created = control.add_rar({"session-id": session_id, "instruction": {"timing": "after", "value": 1}})
        recorder = Recorder()
        link.client.add_message_observer(recorder)

        result = await driver.run()
        await asyncio.sleep(0.02)

        assert result.sessions[0].phase is SessionPhase.CLOSED
        instruction = controller.scheduler.get(created["id"])
        assert instruction.status is InstructionStatus.FINISHED
        assert instruction.fired == 1
        assert recorder.names(INBOUND).count("Re-Auth-Request") == 1
        assert recorder.names(OUTBOUND).count("Re-Auth-Answer") == 1

    @pytest.mark.asyncio
    async def test_session_table_tracks_last_request(self, driver_config, controller, link):
        driver = SessionDriver(driver_config, link.client)

        await driver.run()

        details = ControlPlane(controller).get_session(driver.sessions[0].session_id)
        assert details["avp"]["lastCCRequestType"] == "TERMINATION_REQUEST"
        assert details["avp"]["lastCCRequestNumber"] == 3
        assert details["avp"]["originHost"] == driver_config.origin_host

    @pytest.mark.asyncio
    async def test_dpr_follows_terminate(self, driver_config, controller, link):
        recorder = Recorder()
        link.client.add_message_observer(recorder)
        driver = SessionDriver(replace(driver_config, updates=1, dpr_delay_ms=5), link.client)

        result = await driver.run()

        assert result.disconnected
        outbound = [(name, kind) for d, name, kind in recorder.seen if d == OUTBOUND]
        assert outbound[-1] == ("Disconnect-Peer-Request", None)
        terminate = outbound.index(("Credit-Control-Request", "TERMINATION_REQUEST"))
        assert terminate < len(outbound) - 1
        assert len(controller.connections) == 0

    @pytest.mark.asyncio
    async def test_weights_changed_between_batches(self, driver_config, controller, link):
        config = replace(driver_config, msisdns=[], msisdn_start="85255610000", msisdn_end="85255610003")
        control = ControlPlane(controller)
        control.update_result_codes({"DIAMETER_SUCCESS": 0, "DIAMETER_CREDIT_LIMIT_REACHED": 1})
        driver = SessionDriver(config, link.client)

        result = await driver.run()

        assert len(result.failed) == 4
        assert result.exit_code == 1
        control.clear_result_codes()

        retry = await SessionDriver(replace(config, msisdn_start="85255610010", msisdn_end="85255610013"),
                                    link.client).run()
        assert len(retry.closed) == 4

    @pytest.mark.asyncio
    async def test_delayed_answers_force_retransmission(self, driver_config, controller, link):
        ControlPlane(controller).set_delay({"command": CMD_CREDIT_CONTROL, "delay": 60})
        config = replace(driver_config, updates=0, retransmit_timeout_ms=40, max_retransmit=2)
        driver = SessionDriver(config, link.client)

        result = await driver.run()

        session = result.sessions[0]
        assert session.phase is SessionPhase.CLOSED
        assert result.stats.retransmissions >= 2
        # Every retransmission reaches the controller, which records the same request number
        assert controller.get_session(session.session_id).avp["lastCCRequestNumber"] == 1
        await asyncio.sleep(0.1)

    @pytest.mark.asyncio
    async def test_sweep_reaches_driver_sessions(self, driver_config, controller, link):
        driver = SessionDriver(replace(driver_config, keepalive=True), link.client)
        task = asyncio.create_task(driver.run())
        await asyncio.sleep(0)
        while not driver.sessions[0].phase.is_terminal:
            await asyncio.sleep(0.005)

        recorder = Recorder()
        link.client.add_message_observer(recorder)

        sent, answered = await RarSweep(controller, 1.0).sweep()
        inbound, outbound = recorder.names(INBOUND), recorder.names(OUTBOUND)
        await driver.disconnect_peer()
        await task

        assert (sent, answered) == (1, 1)
        assert inbound == ["Re-Auth-Request"]
        assert outbound == ["Re-Auth-Answer"]
