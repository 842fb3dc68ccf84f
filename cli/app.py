from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_config, render_history, render_reading, render_state


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for interacting with the scale inventory service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


def _device(state: CLIState, device_id: Optional[str]) -> str:
    resolved = device_id or state.config.device_id
    if not resolved:
        raise typer.BadParameter("Pass --device or set CLI_DEVICE_ID.")
    return resolved


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Request timeout in seconds.",
    ),
    device: Optional[str] = typer.Option(
        None,
        "--device",
        "-d",
        help="Default scale identifier for device commands (or CLI_DEVICE_ID env).",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout, device_id=device)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("send")
def send_command(
    ctx: typer.Context,
    payload: str = typer.Argument(..., help="Raw payload, e.g. '75.5kg'."),
    device_id: Optional[str] = typer.Option(None, "--device-id", help="Scale identifier."),
    status: Optional[str] = typer.Option(
        None, "--status", help="Out-of-band tag such as stable, unstable, boot or tare."
    ),
) -> None:
    """Push one raw reading and show how it was classified."""
    state = _get_state(ctx)
    result = state.client.send_reading(
        payload, device_id=device_id or state.config.device_id, status=status
    )
    render_reading(result)


@app.command("history")
def history_command(
    ctx: typer.Context,
    device_id: Optional[str] = typer.Option(None, "--device-id", help="Restrict to one scale."),
) -> None:
    """Show stabilized readings kept by the service."""
    state = _get_state(ctx)
    render_history(state.client.get_history(device_id or state.config.device_id))


@app.command("state")
def state_command(
    ctx: typer.Context,
    device_id: Optional[str] = typer.Argument(None, help="Scale identifier."),
) -> None:
    """Show count, configuration and window statistics for a scale."""
    state = _get_state(ctx)
    render_state(state.client.get_state(_device(state, device_id)))


@app.command("configure")
def configure_command(
    ctx: typer.Context,
    device_id: Optional[str] = typer.Argument(None, help="Scale identifier."),
    mass_per_item: Optional[float] = typer.Option(None, "--mass-per-item", help="kg per item."),
    tare_mass: Optional[float] = typer.Option(None, "--tare", help="Container mass in kg."),
    initial_item_count: Optional[int] = typer.Option(None, "--items", help="Baseline item count."),
    error_band: Optional[float] = typer.Option(
        None, "--error-band", help="Symmetric noise band in kg around a zero delta."
    ),
    allow_increase: Optional[bool] = typer.Option(
        None, "--allow-increase/--block-increase", help="Accept added items."
    ),
    allow_decrease: Optional[bool] = typer.Option(
        None, "--allow-decrease/--block-decrease", help="Accept removed items."
    ),
) -> None:
    """Replace a scale's inventory configuration; its count is reset."""
    state = _get_state(ctx)
    changes: Dict[str, Any] = {
        "mass_per_item": mass_per_item,
        "tare_mass": tare_mass,
        "initial_item_count": initial_item_count,
        "allow_increase": allow_increase,
        "allow_decrease": allow_decrease,
    }
    if error_band is not None:
        changes["error_band_min"] = -abs(error_band)
        changes["error_band_max"] = abs(error_band)
    body = {key: value for key, value in changes.items() if value is not None}
    result = state.client.configure(_device(state, device_id), body)
    typer.secho("Configuration applied.", fg=typer.colors.GREEN)
    render_config(result)


@app.command("set-count")
def set_count_command(
    ctx: typer.Context,
    item_count: int = typer.Argument(..., help="New item count."),
    device_id: Optional[str] = typer.Option(None, "--device-id", help="Scale identifier."),
) -> None:
    """Overwrite the current item count of a scale."""
    state = _get_state(ctx)
    if item_count < 0:
        raise typer.BadParameter("Item count must be >= 0.")
    result = state.client.set_count(_device(state, device_id), item_count)
    typer.secho(
        f"{result.get('device_id')} now holds {result.get('item_count')} items.",
        fg=typer.colors.GREEN,
    )
