"""Re-Auth scheduling.

``InstructionScheduler`` keeps the RAR instruction table of a session
controller and arms a timer per once/periodic instruction. After
instructions wait for the controller to report a credit-control request
whose CC-Request-Number exceeds their threshold.

``RarSweep`` re-auths every known session at a fixed interval.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from chargesim.diameter.engine import PeerConnection, describe
from chargesim.diameter.message import APP_CREDIT_CONTROL, CMD_RE_AUTH, Message
from chargesim.exceptions import (
    ConfigurationError,
    DuplicateInstructionError,
    InstructionNotFound,
    ProtocolEngineError,
    TransportUnavailableError,
)
from chargesim.observability.metrics import MetricsRegistry
from chargesim.server.models import InstructionStatus, RarInstruction, RarTiming, instruction_id

if TYPE_CHECKING:
    from chargesim.server.controller import SessionController

logger = logging.getLogger(__name__)

AUTHORIZE_ONLY = "AUTHORIZE_ONLY"


def build_rar(connection: PeerConnection, controller: "SessionController", session_id: str) -> Message:
    """Build a Re-Auth-Request toward a session.

    The destination is the Origin-Host/Realm last reported by the session,
    falling back to the configured RAR defaults.
    """
    config = controller.config
    session = controller.sessions.get(session_id)
    avp = session.avp if session else {}

    rar = connection.create_request(APP_CREDIT_CONTROL, CMD_RE_AUTH, session_id)
    rar.flags.proxiable = True
    rar.body.extend([
        ("Origin-Host", config.origin_host),
        ("Origin-Realm", config.origin_realm),
        ("Destination-Host", avp.get("originHost") or config.rar_destination_host),
        ("Destination-Realm", avp.get("originRealm") or config.rar_destination_realm),
        ("Auth-Application-Id", APP_CREDIT_CONTROL),
        ("Re-Auth-Request-Type", AUTHORIZE_ONLY),
    ])
    return rar


def _parse_value(timing: RarTiming, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"RAR instruction value must be an integer: {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise ConfigurationError(f"RAR instruction value must be an integer: {value!r}")
    if value < 0 or (timing is RarTiming.PERIODIC and value == 0):
        raise ConfigurationError(f"Invalid value {value} for {timing.value} RAR instruction")
    return value


class InstructionScheduler:
    """RAR instruction table and timers of one controller.

    Example:
        >>> scheduler = controller.scheduler
        >>> instruction = scheduler.submit(session_id, "once", 500)
        >>> scheduler.cancel(instruction.id)
    """

    def __init__(self, controller: "SessionController", metrics: Optional[MetricsRegistry] = None) -> None:
        self._controller = controller
        self._metrics = metrics
        self._instructions: Dict[str, RarInstruction] = {}
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Table operations
    # =========================================================================

    def submit(self, session_id: Any, timing: Any, value: Any) -> RarInstruction:
        """Register an RAR instruction.

        Args:
            session_id: Target Session-Id. Need not be in the session table.
            timing: ``once``, ``periodic`` or ``after``.
            value: Milliseconds for once/periodic, request-number threshold
                for after.

        Returns:
            The created instruction.

        Raises:
            ConfigurationError: On a missing session id, an unknown timing
                or a bad value.
            DuplicateInstructionError: If the same instruction exists.
        """
        if not isinstance(session_id, str) or not session_id:
            raise ConfigurationError("No session-id in RAR instruction")
        try:
            rar_timing = RarTiming(timing)
        except ValueError:
            raise ConfigurationError(f"Unknown timing {timing!r} in RAR instruction")
        value = _parse_value(rar_timing, value)

        instr_id = instruction_id(session_id, rar_timing.value, value)
        if instr_id in self._instructions:
            raise DuplicateInstructionError("RAR instruction already exists", instr_id)

        instruction = RarInstruction(id=instr_id, session_id=session_id, timing=rar_timing, value=value)
        self._instructions[instr_id] = instruction
        if rar_timing is not RarTiming.AFTER:
            self._arm(instruction)

        if self._metrics:
            self._metrics.instructions_total.labels(timing=rar_timing.value).inc()
        logger.info("RAR instruction %s added: %s %s for %s", instr_id, rar_timing.value, value, session_id)
        return instruction

    def get(self, instr_id: str) -> RarInstruction:
        """Raises InstructionNotFound for an unknown id."""
        try:
            return self._instructions[instr_id]
        except KeyError:
            raise InstructionNotFound(f"RAR instruction {instr_id} not found")

    def list(self) -> List[RarInstruction]:
        return list(self._instructions.values())

    def cancel(self, instr_id: str) -> RarInstruction:
        """Release the instruction's timer and mark it cancelled.

        Finished and errored instructions keep their status.

        Raises:
            InstructionNotFound: For an unknown id.
        """
        instruction = self.get(instr_id)
        instruction.release()
        if instruction.status not in (InstructionStatus.FINISHED, InstructionStatus.ERROR):
            instruction.status = InstructionStatus.CANCELLED
        logger.info("RAR instruction %s cancelled", instr_id)
        return instruction

    def delete(self, instr_id: str) -> RarInstruction:
        """Cancel and remove an instruction.

        Raises:
            InstructionNotFound: For an unknown id.
        """
        instruction = self.cancel(instr_id)
        del self._instructions[instr_id]
        return instruction

    async def shutdown(self) -> None:
        """Release every timer and cancel in-flight RARs."""
        for instruction in self._instructions.values():
            instruction.release()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Triggers
    # =========================================================================

    def on_request_number(self, session_id: str, request_number: int) -> None:
        """Fire pending after-instructions of a session whose threshold is passed."""
        for instruction in list(self._instructions.values()):
            if (
                instruction.timing is RarTiming.AFTER
                and instruction.session_id == session_id
                and instruction.status is InstructionStatus.CREATED
                and instruction.value < request_number
            ):
                logger.debug("CC-Request-Number %d passed threshold of %s", request_number, instruction.id)
                self._dispatch(instruction)

    def _arm(self, instruction: RarInstruction) -> None:
        loop = asyncio.get_running_loop()
        instruction.handle = loop.call_later(instruction.delay, self._dispatch, instruction)

    def _dispatch(self, instruction: RarInstruction) -> None:
        instruction.handle = None
        if instruction.status is InstructionStatus.CANCELLED:
            return
        instruction.status = InstructionStatus.RUNNING
        task = asyncio.ensure_future(self.fire(instruction))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def fire(self, instruction: RarInstruction) -> bool:
        """Send one RAR for an instruction and update its status.

        Periodic instructions are re-armed before the RAR goes out and
        stay running; once and after instructions end finished when an
        answer arrives and error otherwise. No live connection ends any
        instruction in error. A fire that was dispatched before a cancel
        still sends its RAR; the instruction keeps the cancelled status.

        Returns:
            True if an RAA was received.
        """
        cancelled = instruction.status is InstructionStatus.CANCELLED
        try:
            connection = self._controller.require_connection(instruction.session_id)
        except TransportUnavailableError as e:
            logger.warning("%s No more RAR schedule for %s", e.message, instruction.session_id)
            if not cancelled:
                instruction.status = InstructionStatus.ERROR
            if self._metrics:
                self._metrics.record_rar(instruction.timing.value, "no_connection")
            return False

        periodic = instruction.timing is RarTiming.PERIODIC
        if periodic and not cancelled:
            self._arm(instruction)

        instruction.fired += 1
        answered = await self.send_rar(connection, instruction.session_id, trigger=instruction.timing.value)

        if instruction.status is InstructionStatus.CANCELLED or periodic:
            return answered
        instruction.status = InstructionStatus.FINISHED if answered else InstructionStatus.ERROR
        return answered

    async def send_rar(self, connection: PeerConnection, session_id: str, trigger: str = "manual") -> bool:
        """Send an RAR and log the RAA.

        Args:
            connection: Transport to use.
            session_id: Target Session-Id.
            trigger: Metrics label (timing or ``sweep``).

        Returns:
            True if an answer arrived, whatever its Result-Code.
        """
        rar = build_rar(connection, self._controller, session_id)
        try:
            answer = await connection.send_request(rar, timeout=self._controller.config.rar_timeout)
        except ProtocolEngineError as e:
            logger.error("%s RAR for %s failed: %s", describe(connection), session_id, e)
            if self._metrics:
                self._metrics.record_rar(trigger, "failed")
            return False

        logger.info(
            "Received RAA with Session-Id %s (matched? %s), Result-Code %s",
            answer.session_id, answer.session_id == session_id, answer.get("Result-Code"),
        )
        if self._metrics:
            self._metrics.record_rar(trigger, "answered")
        return True


class RarSweep:
    """Periodic Re-Auth of every session in the controller's table."""

    def __init__(self, controller: "SessionController", interval: float) -> None:
        self._controller = controller
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("RAR sweep every %.3fs", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sweep()

    async def sweep(self) -> Tuple[int, int]:
        """Send one RAR per known session, concurrently.

        Returns:
            ``(sent, answered)``.
        """
        controller = self._controller
        session_ids = controller.session_ids()
        if not session_ids:
            return 0, 0
        if not len(controller.connections):
            logger.warning("No connection available!")
            return 0, 0

        logger.info(
            "Start sending RAR for %d sessions; sockets available: %s",
            len(session_ids), ", ".join(controller.connections.addresses()),
        )
        sends = []
        for session_id in session_ids:
            connection = controller.resolve_connection(session_id)
            if connection is None:
                continue
            sends.append(controller.scheduler.send_rar(connection, session_id, trigger="sweep"))

        results = await asyncio.gather(*sends, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        answered = sum(1 for r in results if r is True)
        if errors:
            logger.error("Error sending RAR: %s", errors[0])
        else:
            logger.info("Finished sending RAR for %d sessions", len(sends))
        return len(sends), answered
