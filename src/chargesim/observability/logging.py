"""Console logging and protocol message tracing.

``setup_logging`` configures the root logger with a rich console handler.
``MessageLogger`` is attached to a connection as a message observer and
prints every request and answer crossing it, either as a one-block
summary of the identifying AVPs (level 1) or as the full AVP tree
(level 2).

Example:
    >>> setup_logging(verbose=True)
    >>> tracer = MessageLogger(level=1, skip_commands=[280])
    >>> tracer.attach(link.client)
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from rich.console import Console
from rich.logging import RichHandler

from chargesim.diameter.engine import PeerConnection
from chargesim.diameter.message import Message, iter_avps

logger = logging.getLogger(__name__)

# AVP name fragments shown in summary mode
IMPORTANT_AVPS = ("session-id", "-host", "-realm", "result-code", "cc-request-")

SUMMARY_RULE = "-" * 67
FULL_RULE = "-" * 21


def setup_logging(verbose: bool = False, debug: bool = False, console: Optional[Console] = None) -> None:
    """Set up logging with Rich handler.

    Args:
        verbose: Log at INFO instead of WARNING.
        debug: Log at DEBUG; implies verbose.
        console: Console to write to; stderr by default.
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console or Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


class MessageLogger:
    """Trace Diameter messages on a connection.

    Attributes:
        level: 1 for the summary view, 2 for the full AVP tree.
        skip_commands: Command codes that are not logged.
        skip_applications: Application ids that are not logged.
    """

    def __init__(
        self,
        level: int = 1,
        skip_commands: Optional[Iterable[int]] = None,
        skip_applications: Optional[Iterable[int]] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if level not in (1, 2):
            raise ValueError(f"Invalid message log level: {level}")
        self.level = level
        self.skip_commands = frozenset(skip_commands or ())
        self.skip_applications = frozenset(skip_applications or ())
        self._log = log or logging.getLogger("chargesim.messages")

    def attach(self, connection: PeerConnection) -> None:
        """Start tracing messages on ``connection``."""
        connection.add_message_observer(self)

    def should_log(self, message: Message) -> bool:
        return (
            message.command_code not in self.skip_commands
            and message.application_id not in self.skip_applications
        )

    def format(self, message: Message, direction: str) -> str:
        """Render a message as a block of lines prefixed with ``direction``."""
        stamp = datetime.now().strftime("%Y/%m/%d %H:%M:%S")
        if self.level == 2:
            lines = [
                f"+{FULL_RULE}+",
                f"| {stamp} |",
                f"+{FULL_RULE}+",
                f"{message.display_name} flags={_flag_marks(message) or '-'} "
                f"hbh={message.hop_by_hop_id} e2e={message.end_to_end_id}",
            ]
            for depth, name, value in iter_avps(message.body):
                indent = "  " * depth
                lines.append(f"{indent}{name}" if value is None else f"{indent}{name}: {_render(value)}")
        else:
            header = " ".join(part for part in ("|", stamp, message.display_name, _flag_marks(message)) if part)
            lines = [f"+{SUMMARY_RULE}", header, f"+{SUMMARY_RULE}"]
            for name, value in message.body:
                if any(fragment in name.lower() for fragment in IMPORTANT_AVPS):
                    lines.append(f"| {name}: {_render(value)}")
            lines.append(f"+{SUMMARY_RULE}")
        return "\n".join(f"{direction} {line}" for line in lines)

    def __call__(self, message: Message, direction: str) -> None:
        if self.should_log(message):
            self._log.info("%s", self.format(message, direction))


def _flag_marks(message: Message) -> str:
    marks = []
    if message.flags.error:
        marks.append("(!)")
    if message.flags.potentially_retransmitted:
        marks.append("(T)")
    return " ".join(marks)


def _render(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return str(value)
