"""Command line interface for the charging-session simulator.

Example:
    $ chargesim -v simulate --msisdn 85255610347 --updates 3
    $ chargesim simulate -c sim.yaml --result-code DIAMETER_CREDIT_LIMIT_REACHED=1 --api 8080
    $ chargesim validate -c sim.yaml

Configuration Priority (highest to lowest):
    1. CLI options
    2. Environment variables (CHARGESIM_DRIVER_*, CHARGESIM_CONTROLLER_*)
    3. Configuration file (``driver:`` and ``controller:`` sections)
    4. Built-in defaults
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from chargesim.client.config import DriverConfig
from chargesim.client.driver import DriverResult, SessionDriver
from chargesim.diameter.loopback import LoopbackLink
from chargesim.exceptions import ConfigurationError
from chargesim.observability.logging import MessageLogger, setup_logging
from chargesim.observability.metrics import MetricsRegistry
from chargesim.server.api import ControlApiServer
from chargesim.server.config import ControllerConfig
from chargesim.server.control import ControlPlane
from chargesim.server.controller import SessionController
from chargesim.settings import ENV_PREFIX, env_overrides, load_yaml, normalize_keys, parse_weights

logger = logging.getLogger(__name__)

console = Console()

DRIVER_ENV_PREFIX = f"{ENV_PREFIX}DRIVER_"
CONTROLLER_ENV_PREFIX = f"{ENV_PREFIX}CONTROLLER_"


# =============================================================================
# Configuration loading
# =============================================================================


def load_configuration(
    config_path: Optional[Path],
    driver_options: Dict[str, Any],
    controller_options: Dict[str, Any],
) -> Tuple[DriverConfig, ControllerConfig]:
    """Merge file, environment and CLI layers into validated configs.

    Args:
        config_path: YAML file with ``driver`` and ``controller`` sections.
        driver_options: CLI values for ``DriverConfig``; None values are ignored.
        controller_options: CLI values for ``ControllerConfig``.

    Returns:
        Tuple of (driver config, controller config).

    Raises:
        ConfigurationError: If any layer is invalid.
    """
    file_data: Dict[str, Any] = load_yaml(config_path) if config_path else {}
    unknown = sorted(set(file_data) - {"driver", "controller"})
    if unknown:
        raise ConfigurationError(f"Unknown configuration sections: {', '.join(unknown)}")

    driver_data = normalize_keys(file_data.get("driver") or {})
    driver_data.update(env_overrides(DriverConfig, DRIVER_ENV_PREFIX))
    driver_data.update({k: v for k, v in driver_options.items() if v is not None})

    controller_data = normalize_keys(file_data.get("controller") or {})
    controller_data.update(env_overrides(ControllerConfig, CONTROLLER_ENV_PREFIX))
    cli_weights = controller_options.pop("result_codes", None)
    controller_data.update({k: v for k, v in controller_options.items() if v is not None})
    if cli_weights:
        merged = dict(controller_data.get("result_codes") or {})
        merged.update(cli_weights)
        controller_data["result_codes"] = merged

    driver_config = DriverConfig.from_dict(driver_data)
    controller_config = ControllerConfig.from_dict(controller_data)
    driver_config.validate()
    controller_config.validate()
    return driver_config, controller_config


# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(package_name="chargesim")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """chargesim - Diameter credit-control session simulator.

    Runs a simulated PGW (session driver) against a simulated OCS
    (session controller) and reports how every session ended.
    """
    setup_logging(verbose=verbose, debug=debug)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug


# =============================================================================
# Simulate Command
# =============================================================================


def _weights_option(ctx: click.Context, param: click.Parameter, value: Tuple[str, ...]) -> Optional[Dict[str, float]]:
    if not value:
        return None
    try:
        return parse_weights(value)
    except ConfigurationError as e:
        raise click.BadParameter(e.message)


@cli.command()
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="YAML configuration file with driver/controller sections")
@click.option("--msisdn", "-m", "msisdns", multiple=True, help="Subscriber number (repeatable)")
@click.option("--msisdn-start", help="First number of an 11-digit MSISDN range")
@click.option("--msisdn-end", help="Last number of the MSISDN range (inclusive)")
@click.option("--device-ip", help="Framed-IP-Address for every session")
@click.option("--updates", "-u", type=int, help="CCR-u per session (default: 10)")
@click.option("--update-interval", type=int, help="Milliseconds before each CCR-u/CCR-t (default: 10)")
@click.option("--dpr-delay", type=int, help="Send DPR this many ms after the first successful CCA-t")
@click.option("--watchdog", type=int, help="DWR interval in ms")
@click.option("--retransmit-timeout", type=int, help="Answer timeout in ms per attempt (default: 14000)")
@click.option("--max-retransmit", type=int, help="Retransmissions per request (default: 1)")
@click.option("--keepalive", is_flag=True, default=None, help="Keep the connection after the batch")
@click.option("--result-code", "result_codes", multiple=True, callback=_weights_option,
              help="Outcome weight NAME=weight (repeatable)")
@click.option("--delay", type=int, help="Delay credit-control answers by ms")
@click.option("--rar-interval", type=int, help="Re-auth every known session every ms")
@click.option("--rar-session-id", "rar_session_ids", multiple=True, help="Session-Id pre-registered for the RAR sweep")
@click.option("--ccr-count", type=float, help="Log the CCR count and rate every n seconds")
@click.option("--api", help="Control API endpoint, [host:]port")
@click.option("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
@click.option("--seed", type=int, help="Seed for the outcome policy")
@click.option("--message-log", type=click.IntRange(0, 2), default=0, show_default=True,
              help="Trace protocol messages: 1 summary, 2 full AVP tree")
@click.option("--skip-command", "skip_commands", multiple=True, type=int, help="Command code not traced")
@click.option("--skip-application", "skip_applications", multiple=True, type=int, help="Application id not traced")
@click.pass_context
def simulate(
    ctx: click.Context,
    config: Optional[Path],
    msisdns: Tuple[str, ...],
    msisdn_start: Optional[str],
    msisdn_end: Optional[str],
    device_ip: Optional[str],
    updates: Optional[int],
    update_interval: Optional[int],
    dpr_delay: Optional[int],
    watchdog: Optional[int],
    retransmit_timeout: Optional[int],
    max_retransmit: Optional[int],
    keepalive: Optional[bool],
    result_codes: Optional[Dict[str, float]],
    delay: Optional[int],
    rar_interval: Optional[int],
    rar_session_ids: Tuple[str, ...],
    ccr_count: Optional[float],
    api: Optional[str],
    metrics_port: Optional[int],
    seed: Optional[int],
    message_log: int,
    skip_commands: Tuple[int, ...],
    skip_applications: Tuple[int, ...],
) -> None:
    """Run a driver batch against the in-process controller.

    Sends CCR-i, then CCR-u per update, then CCR-t for every MSISDN and
    prints how each session ended. Exits non-zero when every session
    failed (and --keepalive is off). Press Ctrl+C once to disconnect
    gracefully, twice to exit immediately.

    Examples:

        # Ten updates for one subscriber
        chargesim -v simulate --msisdn 85255610347

        # Half of the sessions hit the credit limit
        chargesim simulate --msisdn-start 85255610000 --msisdn-end 85255610099 \\
            --result-code DIAMETER_CREDIT_LIMIT_REACHED=1

        # Keep running with the control API on localhost:8080
        chargesim -v simulate --keepalive --api 8080
    """
    driver_options = {
        "msisdn_start": msisdn_start,
        "msisdn_end": msisdn_end,
        "device_ip": device_ip,
        "updates": updates,
        "update_interval_ms": update_interval,
        "dpr_delay_ms": dpr_delay,
        "watchdog_interval_ms": watchdog,
        "retransmit_timeout_ms": retransmit_timeout,
        "max_retransmit": max_retransmit,
        "keepalive": keepalive,
    }
    if msisdns:
        driver_options["msisdns"] = list(msisdns)
    elif msisdn_start or msisdn_end:
        driver_options["msisdns"] = []

    controller_options = {
        "result_codes": result_codes,
        "delay_ms": delay,
        "rar_interval_ms": rar_interval,
        "rar_session_ids": list(rar_session_ids) or None,
        "ccr_count_interval": ccr_count,
        "api": api,
        "seed": seed,
    }

    try:
        driver_config, controller_config = load_configuration(config, driver_options, controller_options)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        sys.exit(1)

    tracer = None
    if message_log:
        tracer = MessageLogger(level=message_log, skip_commands=skip_commands, skip_applications=skip_applications)

    try:
        result = asyncio.run(run_simulation(driver_config, controller_config, tracer, metrics_port))
    except OSError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)

    print_summary(result)
    sys.exit(result.exit_code)


async def run_simulation(
    driver_config: DriverConfig,
    controller_config: ControllerConfig,
    tracer: Optional[MessageLogger] = None,
    metrics_port: Optional[int] = None,
) -> DriverResult:
    """Wire a controller and a driver over a loopback link and run the batch.

    Args:
        driver_config: Validated driver configuration.
        controller_config: Validated controller configuration.
        tracer: Message tracer attached to the driver's connection.
        metrics_port: Port for the Prometheus endpoint, if any.

    Returns:
        The driver result.
    """
    metrics = MetricsRegistry()
    if metrics_port:
        metrics.serve(metrics_port)

    controller = SessionController(controller_config, metrics=metrics)
    link = LoopbackLink(
        client_address=f"{driver_config.local_address}:41000",
        server_address=f"{controller_config.listener}:{controller_config.port}",
    )
    controller.attach(link.server)
    if tracer is not None:
        tracer.attach(link.client)

    driver = SessionDriver(driver_config, link.client, metrics=metrics)

    api_server = None
    address = controller_config.api_address()
    if address is not None:
        api_server = ControlApiServer(ControlPlane(controller), *address)
        await api_server.start()

    loop = asyncio.get_running_loop()
    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, driver.request_shutdown)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported", signum)

    await controller.start()
    try:
        return await driver.run()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        await controller.stop()
        if api_server is not None:
            await api_server.stop()
        await link.close()
        logger.info("CCR total: %d", controller.total_ccr)


def print_summary(result: DriverResult) -> None:
    """Print per-session outcomes and counters."""
    table = Table(title="Sessions")
    table.add_column("MSISDN", style="cyan")
    table.add_column("Session-Id")
    table.add_column("Phase")
    table.add_column("Updates", justify="right")
    table.add_column("Retransmissions", justify="right")
    table.add_column("Result")

    for session in result.sessions:
        phase = session.phase.value
        style = "green" if phase == "closed" else "red"
        table.add_row(
            session.msisdn,
            session.session_id,
            f"[{style}]{phase}[/{style}]",
            str(session.updates_sent),
            str(session.total_retransmissions),
            str(session.failure_reason or session.last_result_code or ""),
        )
    console.print(table)

    summary = result.summary()
    console.print(
        f"\n[bold]Total: {summary['sessions']} session(s), "
        f"[green]{summary['closed']} closed[/green], [red]{summary['failed']} failed[/red][/bold]"
    )
    stats = result.stats
    if stats.update_count:
        console.print(
            f"CCR-u: {stats.update_count} sent, average {stats.average_update_latency:.3f}s, "
            f"{len(stats.slow_updates)} slower than {stats.slow_threshold:.1f}s"
        )


# =============================================================================
# Validate Command
# =============================================================================


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="YAML configuration file to validate")
def validate(config: Path) -> None:
    """Validate a configuration file without running anything."""
    try:
        driver_config, controller_config = load_configuration(config, {}, {})
    except ConfigurationError as e:
        console.print(f"[bold red]Invalid:[/bold red] {e}")
        sys.exit(1)

    table = Table(title=f"Configuration: {config}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("MSISDNs", str(len(driver_config.enumerate_msisdns())))
    table.add_row("Driver Origin-Host", str(driver_config.origin_host))
    table.add_row("Updates per session", str(driver_config.updates))
    table.add_row("Retransmit timeout", f"{driver_config.retransmit_timeout:.3f}s x{driver_config.max_retransmit}")
    table.add_row("Controller Origin-Host", str(controller_config.origin_host))
    table.add_row("Outcome weights", str(controller_config.result_codes or {"DIAMETER_SUCCESS": 1}))
    table.add_row("Control API", str(controller_config.api_address() or "disabled"))
    console.print(table)
    console.print("[green]Configuration is valid[/green]")


def main() -> None:
    """Entry point for the ``chargesim`` console script."""
    cli(obj={})


if __name__ == "__main__":
    main()
