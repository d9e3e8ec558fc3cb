"""Control-plane operations over a running controller.

Every operation returns a JSON-ready structure. Mutating operations
return ``{"status": 0, ...}`` on success and ``{"status": 1, "message": ...}``
on failure; they never raise. The HTTP adapter in ``chargesim.server.api``
is a thin router over this class.
"""

import logging
from typing import Any, Dict, List, Mapping

from chargesim.exceptions import (
    ConfigurationError,
    DuplicateInstructionError,
    InstructionNotFound,
)
from chargesim.server.controller import SessionController
from chargesim.server.models import InstructionStatus, format_ms

logger = logging.getLogger(__name__)

API_VERSIONS = [1]
RESOURCES = ["sockets", "session-ids", "rar", "delay", "ccr-result-codes"]
DELAY_FORMAT_MESSAGE = 'Delay instruction must consist of "command" (string) and "delay" (integer)'


def _ok(**payload: Any) -> Dict[str, Any]:
    return {"status": 0, **payload}


def _fail(message: str, **payload: Any) -> Dict[str, Any]:
    return {"status": 1, "message": message, **payload}


class ControlPlane:
    """Inspect and steer a ``SessionController`` at run time.

    Example:
        >>> control = ControlPlane(controller)
        >>> control.update_result_codes({"DIAMETER_CREDIT_LIMIT_REACHED": 1})
        {'status': 0, 'ccr-result-codes': {...}, 'sum': 2.0}
    """

    def __init__(self, controller: SessionController) -> None:
        self.controller = controller

    # =========================================================================
    # Discovery
    # =========================================================================

    def versions(self) -> List[int]:
        return list(API_VERSIONS)

    def resources(self) -> List[str]:
        return list(RESOURCES)

    # =========================================================================
    # Connections and sessions
    # =========================================================================

    def list_connections(self) -> List[str]:
        return self.controller.connections.addresses()

    def list_sessions(self) -> List[str]:
        return self.controller.session_ids()

    def get_session(self, session_id: str) -> Dict[str, Any]:
        """Session details, ``{}`` for an unknown id."""
        session = self.controller.get_session(session_id)
        if session is None:
            return {}
        return session.to_dict(self.controller.connections)

    def delete_session(self, session_id: str) -> Dict[str, Any]:
        return {"status": 0 if self.controller.delete_session(session_id) else 1}

    # =========================================================================
    # Outcome weights
    # =========================================================================

    def get_result_codes(self) -> Dict[str, Any]:
        return _ok(**{"ccr-result-codes": self.controller.policy.weights})

    def update_result_codes(self, weights: Any) -> Dict[str, Any]:
        """Merge outcome weights. All-or-nothing on invalid values."""
        if not isinstance(weights, Mapping):
            return _fail("Value must be a number")
        try:
            merged = self.controller.policy.update(weights)
        except ConfigurationError as e:
            return _fail(e.message)
        return _ok(**{"ccr-result-codes": merged, "sum": self.controller.policy.total})

    def clear_result_codes(self) -> Dict[str, Any]:
        cleared = self.controller.policy.clear()
        logger.info("Outcome weights reset to %s", cleared)
        return _ok(**{"ccr-result-codes": cleared, "sum": self.controller.policy.total})

    # =========================================================================
    # RAR instructions
    # =========================================================================

    def list_rar(self) -> List[Dict[str, Any]]:
        return [instruction.to_dict() for instruction in self.controller.scheduler.list()]

    def add_rar(self, body: Any) -> Dict[str, Any]:
        """Register an RAR instruction.

        Args:
            body: ``{"session-id": ..., "instruction": {"timing": ..., "value": ...}}``.
        """
        if not isinstance(body, Mapping) or not body.get("session-id"):
            return _fail("RAR instruction must consist of a valid session-id")
        instruction = body.get("instruction")
        if not isinstance(instruction, Mapping):
            return _fail("RAR instruction must consist of a valid instruction")

        try:
            created = self.controller.scheduler.submit(
                body["session-id"], instruction.get("timing"), instruction.get("value")
            )
        except DuplicateInstructionError as e:
            return _fail(e.message, id=e.instruction_id)
        except ConfigurationError as e:
            return _fail(e.message)
        return _ok(message=f"RAR instruction added at {format_ms(created.created_at)}", id=created.id)

    def update_rar(self, instr_id: str, body: Any) -> Dict[str, Any]:
        """Only ``{"status": "cancelled"}`` is supported."""
        if not isinstance(body, Mapping) or body.get("status") != InstructionStatus.CANCELLED.value:
            return _fail('Only {"status": "cancelled"} is supported')
        try:
            instruction = self.controller.scheduler.cancel(instr_id)
        except InstructionNotFound as e:
            return _fail(e.message)
        return _ok(id=instruction.id, message=f"RAR instruction status is {instruction.status.value}")

    def delete_rar(self, instr_id: str) -> Dict[str, Any]:
        try:
            self.controller.scheduler.delete(instr_id)
        except InstructionNotFound:
            return {"status": 1}
        return {"status": 0}

    # =========================================================================
    # Answer delays
    # =========================================================================

    def list_delays(self) -> Dict[str, Any]:
        return {command: instruction.to_dict() for command, instruction in self.controller.delays.items()}

    def set_delay(self, body: Any) -> Dict[str, Any]:
        if not isinstance(body, Mapping):
            return _fail(DELAY_FORMAT_MESSAGE)
        try:
            self.controller.set_delay(body.get("command"), body.get("delay"))
        except ConfigurationError:
            return _fail(DELAY_FORMAT_MESSAGE)
        return _ok(message=f"Delay instruction for {body['command']} added")

    def delete_delay(self, command: str) -> Dict[str, Any]:
        return {"status": 0 if self.controller.delete_delay(command) else 1}
