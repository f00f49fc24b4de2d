from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
import uvicorn

from capturectl.config_loader import load_config_or_default
from capturectl.errors import InterfaceListError
from capturectl.logging_setup import setup_logging
from capturectl.services.capture_supervisor import CaptureSupervisor
from capturectl.services.worker_client import FILTER_MODES, CaptureRequest
from capturectl.web.app import create_app

LOGGER = logging.getLogger(__name__)


def _supervisor(ctx: click.Context) -> CaptureSupervisor:
    return ctx.obj["supervisor"]


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML config file (default: $CAPTURECTL_CONFIG or config/capturectl.yaml).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path]) -> None:
    """capturectl commands."""
    setup_logging()
    LOGGER.info("CLI bootstrap start", extra={"category": "CONFIG"})
    try:
        config = load_config_or_default(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.obj = {"config": config, "supervisor": CaptureSupervisor(config)}


@main.command()
@click.option("--output", default="packet_capture.csv", show_default=True, help="Output file name (also the capture key).")
@click.option("--iface", default="", help="Interface id; empty lets the worker choose.")
@click.option("--filter", "filter_mode", type=click.Choice(FILTER_MODES), default="both", show_default=True)
@click.option("--duration", type=int, default=10, show_default=True, help="Seconds to capture, 0 until stopped.")
@click.option("--promiscuous", type=click.Choice(["on", "off"]), default="on", show_default=True)
@click.pass_context
def capture(ctx: click.Context, output: str, iface: str, filter_mode: str, duration: int, promiscuous: str) -> None:
    """Run one capture in the foreground and wait for it to finish."""
    try:
        request = CaptureRequest(output=output, iface=iface, filter=filter_mode, duration=duration, promiscuous=promiscuous)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    LOGGER.info("CLI capture command output=%s duration=%s", output, duration, extra={"category": "CAPTURE"})
    result = _supervisor(ctx).start_capture(request)
    if not result.success:
        click.echo(result.message, err=True)
        sys.exit(1)
    click.echo(f"{result.outcome}: {_supervisor(ctx).artifact_path(request)}")


@main.command()
@click.argument("key", required=False)
@click.option("--all", "stop_everything", is_flag=True, help="Stop every live capture and reset the registry.")
@click.pass_context
def stop(ctx: click.Context, key: Optional[str], stop_everything: bool) -> None:
    """Stop a capture by key, even one started by another process."""
    supervisor = _supervisor(ctx)
    if stop_everything:
        count = supervisor.stop_all()
        click.echo(f"Stopped {count} capture(s); registry cleared.")
        return
    if not key:
        raise click.UsageError("Pass a capture KEY or --all.")
    outcome = supervisor.request_stop(key)
    click.echo(outcome.message)
    if not outcome.success:
        sys.exit(1)


@main.command(name="list")
@click.pass_context
def list_captures(ctx: click.Context) -> None:
    """List captures recorded in the durable registry."""
    records = _supervisor(ctx).list_persisted()
    if not records:
        click.echo("No captures recorded.")
        return
    for record in records:
        click.echo(f"{record.key}\tpid={record.pid}\tstop_file={record.stop_file or '-'}")


@main.command()
@click.pass_context
def interfaces(ctx: click.Context) -> None:
    """Print the worker's interface listing as JSON."""
    try:
        listing = _supervisor(ctx).list_interfaces()
    except InterfaceListError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = {"success": listing.success, "interfaces": [i.to_payload() for i in listing.interfaces]}
    if listing.message:
        payload["message"] = listing.message
    click.echo(json.dumps(payload, indent=2))
    if not listing.success:
        sys.exit(1)


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def web(ctx: click.Context, host: str, port: int) -> None:
    """Start web application."""
    LOGGER.info("CLI web command host=%s port=%s", host, port, extra={"category": "CONFIG"})
    app = create_app(supervisor=_supervisor(ctx))
    uvicorn.run(app, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
