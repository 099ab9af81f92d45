"""CLI entry point for the pairing sidecar."""

from dataclasses import replace
from pathlib import Path

import click

from sidecar import __version__
from sidecar.config import PAIRING_MODES, load_config
from sidecar.errors import ConfigError
from sidecar.logging import setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """Gateway pairing sidecar - auto-approve device pairing requests."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.option(
    "--mode",
    "-m",
    type=click.Choice(PAIRING_MODES),
    default=None,
    help="window: approve for a fixed window then exit. daemon: approve forever.",
)
@click.option(
    "--window",
    "-w",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Pairing window length in seconds (window mode).",
)
@click.pass_context
def run(ctx: click.Context, mode: str | None, window: float | None) -> None:
    """Authenticate to the gateway and approve pairing requests."""
    import asyncio

    from sidecar.app import run_sidecar

    config = ctx.obj["config"]
    pairing = config.pairing
    if mode is not None:
        pairing = replace(pairing, mode=mode)
    if window is not None:
        pairing = replace(pairing, window_seconds=window)
    config = replace(config, pairing=pairing)

    try:
        status = asyncio.run(run_sidecar(config))
    except KeyboardInterrupt:
        status = 0
    raise SystemExit(status)


@main.command()
def identity() -> None:
    """Generate and print an ephemeral device identity."""
    from sidecar.identity import generate_identity

    device = generate_identity()
    click.echo(f"Device ID:  {device.device_id}")
    click.echo(f"Public key: {device.public_key_b64url}")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"sidecar version {__version__}")
