"""Exception hierarchy for the charging-session simulator.

Exception Hierarchy:
    ChargeSimError (base)
    ├── ConfigurationError - Invalid configuration or operator input
    ├── ProtocolEngineError - Failures reported by the protocol engine
    │   ├── RequestTimeoutError - No answer within the timeout
    │   └── ConnectionClosedError - Peer connection closed
    ├── TransportUnavailableError - No live connection for an action
    ├── RetransmissionExhausted - Request timed out on every attempt
    ├── AnswerError - Answer carried a non-success Result-Code
    ├── InvalidStateTransition - Illegal session state change
    ├── DuplicateInstructionError - Instruction already submitted
    └── InstructionNotFound - Unknown instruction id
"""

from typing import Any, Optional


class ChargeSimError(Exception):
    """Base exception for all simulator errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error context.

    Example:
        >>> raise ChargeSimError("Operation failed", {"session_id": "abc"})
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message

    def __repr__(self) -> str:
        """Return detailed string representation."""
        return f"{self.__class__.__name__}({self.message!r}, details={self.details!r})"


class ConfigurationError(ChargeSimError):
    """Raised for invalid configuration or operator input.

    Driver-level configuration errors stop the process before any
    session is created; control-plane input errors are turned into a
    failure status by the control plane.
    """


class ProtocolEngineError(ChargeSimError):
    """Raised by a protocol engine when a request cannot be completed."""


class RequestTimeoutError(ProtocolEngineError):
    """Raised when no answer arrives within the request timeout.

    Attributes:
        timeout: Timeout that expired, in seconds.
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        details = details or {}
        if timeout is not None:
            details["timeout"] = timeout
        super().__init__(message, details)
        self.timeout = timeout


class ConnectionClosedError(ProtocolEngineError):
    """Raised when the peer connection is closed while a request is pending."""


class TransportUnavailableError(ChargeSimError):
    """Raised when an action needs a connection and none is live."""


class RetransmissionExhausted(ChargeSimError):
    """Raised when a request timed out on its first send and every retransmission.

    Attributes:
        attempts: Total number of sends performed.
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        attempts: int = 0,
    ) -> None:
        details = details or {}
        details["attempts"] = attempts
        super().__init__(message, details)
        self.attempts = attempts


class AnswerError(ChargeSimError):
    """Raised when an answer carries a non-success Result-Code.

    Attributes:
        result_code: The Result-Code found in the answer.
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        result_code: Any = None,
    ) -> None:
        details = details or {}
        details["result_code"] = result_code
        super().__init__(message, details)
        self.result_code = result_code


class InvalidStateTransition(ChargeSimError):
    """Raised for a session event that is not valid in the current phase."""


class DuplicateInstructionError(ChargeSimError):
    """Raised when an identical instruction already exists.

    Attributes:
        instruction_id: Id of the existing instruction.
    """

    def __init__(self, message: str, instruction_id: str) -> None:
        super().__init__(message, {"id": instruction_id})
        self.instruction_id = instruction_id


class InstructionNotFound(ChargeSimError):
    """Raised when an instruction id is unknown."""
