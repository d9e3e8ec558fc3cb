"""Prometheus metrics for the simulator.

Every ``MetricsRegistry`` owns its own ``CollectorRegistry`` so that
several drivers and controllers can live in one process (tests create
many) without name clashes in the global registry.
"""

import logging
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)


class MetricsRegistry:
    """Registry of the simulator's Prometheus metrics.

    Metrics are grouped by side: client (session driver), server
    (session controller) and RAR (scheduler and sweep).

    Example:
        >>> metrics = MetricsRegistry()
        >>> metrics.record_client_request("Credit-Control", "INITIAL_REQUEST")
        >>> metrics.value("chargesim_client_requests_total",
        ...               command="Credit-Control", request_type="INITIAL_REQUEST")
        1.0
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize all metrics.

        Args:
            registry: Collector registry to register into; a new one by default.
        """
        self.registry = registry or CollectorRegistry()
        self._create_client_metrics()
        self._create_server_metrics()
        self._create_rar_metrics()
        self._create_info_metrics()

    def _create_client_metrics(self) -> None:
        """Create session driver metrics."""
        self.client_requests_total = Counter(
            name="chargesim_client_requests_total",
            documentation="Requests sent by the session driver, retransmissions included",
            labelnames=["command", "request_type"],
            registry=self.registry,
        )

        self.client_answers_total = Counter(
            name="chargesim_client_answers_total",
            documentation="Credit-control answers received by the session driver",
            labelnames=["request_type", "result_code"],
            registry=self.registry,
        )

        self.client_retransmissions_total = Counter(
            name="chargesim_client_retransmissions_total",
            documentation="Requests resent after a timeout",
            labelnames=["request_type"],
            registry=self.registry,
        )

        self.client_sessions_total = Counter(
            name="chargesim_client_sessions_total",
            documentation="Client sessions by final outcome",
            labelnames=["outcome"],  # closed/failed
            registry=self.registry,
        )

        self.client_active_sessions = Gauge(
            name="chargesim_client_active_sessions",
            documentation="Client sessions not yet closed or failed",
            registry=self.registry,
        )

        self.client_update_latency_seconds = Histogram(
            name="chargesim_client_update_latency_seconds",
            documentation="CCR-u answer latency in seconds",
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 3.0, 5.0, 15.0],
            registry=self.registry,
        )

    def _create_server_metrics(self) -> None:
        """Create session controller metrics."""
        self.server_requests_total = Counter(
            name="chargesim_server_requests_total",
            documentation="Requests received by the session controller",
            labelnames=["command"],
            registry=self.registry,
        )

        self.server_outcomes_total = Counter(
            name="chargesim_server_outcomes_total",
            documentation="Credit-control outcomes drawn by the policy",
            labelnames=["result_code"],
            registry=self.registry,
        )

        self.server_sessions = Gauge(
            name="chargesim_server_sessions",
            documentation="Entries in the server session table",
            registry=self.registry,
        )

        self.server_connections = Gauge(
            name="chargesim_server_connections",
            documentation="Live peer connections",
            registry=self.registry,
        )

    def _create_rar_metrics(self) -> None:
        """Create Re-Auth metrics."""
        self.rar_total = Counter(
            name="chargesim_rar_total",
            documentation="Re-Auth requests by trigger and result",
            labelnames=["trigger", "result"],  # result: answered/failed/no_connection
            registry=self.registry,
        )

        self.instructions_total = Counter(
            name="chargesim_instructions_total",
            documentation="RAR instructions accepted by the scheduler",
            labelnames=["timing"],
            registry=self.registry,
        )

    def _create_info_metrics(self) -> None:
        """Create informational metrics."""
        self.application_info = Info(
            name="chargesim_application",
            documentation="chargesim application information",
            registry=self.registry,
        )
        self.application_info.info(
            {
                "name": "chargesim",
                "description": "Diameter credit-control session simulator",
            }
        )

    # =========================================================================
    # Recording helpers
    # =========================================================================

    def record_client_request(self, command: str, request_type: str = "") -> None:
        self.client_requests_total.labels(command=command, request_type=request_type).inc()

    def record_client_answer(self, request_type: str, result_code: Any) -> None:
        self.client_answers_total.labels(request_type=request_type, result_code=str(result_code)).inc()

    def record_retransmission(self, request_type: str) -> None:
        self.client_retransmissions_total.labels(request_type=request_type).inc()

    def record_session_outcome(self, outcome: str) -> None:
        self.client_sessions_total.labels(outcome=outcome).inc()

    def record_server_request(self, command: str) -> None:
        self.server_requests_total.labels(command=command).inc()

    def record_outcome(self, result_code: str) -> None:
        self.server_outcomes_total.labels(result_code=result_code).inc()

    def record_rar(self, trigger: str, result: str) -> None:
        self.rar_total.labels(trigger=trigger, result=result).inc()

    def value(self, name: str, **labels: str) -> Optional[float]:
        """Return the current value of a sample, None if never recorded."""
        return self.registry.get_sample_value(name, labels)

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all registered metrics.

        Returns:
            Dictionary mapping metric names to metric objects.
        """
        return {
            "client_requests_total": self.client_requests_total,
            "client_answers_total": self.client_answers_total,
            "client_retransmissions_total": self.client_retransmissions_total,
            "client_sessions_total": self.client_sessions_total,
            "client_active_sessions": self.client_active_sessions,
            "client_update_latency_seconds": self.client_update_latency_seconds,
            "server_requests_total": self.server_requests_total,
            "server_outcomes_total": self.server_outcomes_total,
            "server_sessions": self.server_sessions,
            "server_connections": self.server_connections,
            "rar_total": self.rar_total,
            "instructions_total": self.instructions_total,
            "application_info": self.application_info,
        }

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry on ``http://addr:port/metrics``."""
        start_http_server(port, addr=addr, registry=self.registry)
        logger.info("Metrics endpoint listening on %s:%d", addr, port)
