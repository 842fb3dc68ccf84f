from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_reading(payload: Dict[str, Any]) -> None:
    echo_heading("Reading")
    echo_key_values(
        [
            ("device_id", payload.get("device_id")),
            ("weight_kg", payload.get("weight_kg")),
            ("status", payload.get("status")),
            ("stable_weight_kg", payload.get("stable_weight_kg")),
            ("item_count", payload.get("item_count")),
            ("item_count_delta", payload.get("item_count_delta")),
            ("timestamp", payload.get("timestamp")),
        ]
    )
    delta = payload.get("item_count_delta") or 0
    if delta:
        verb = "added" if delta > 0 else "removed"
        color = typer.colors.GREEN if delta > 0 else typer.colors.YELLOW
        typer.secho(f"{abs(delta)} item(s) {verb}", fg=color)


def render_history(payload: Dict[str, Any]) -> None:
    echo_heading("History")
    entries = payload.get("history") or []
    typer.echo(f"data_points: {payload.get('data_points', len(entries))}")
    if not entries:
        typer.echo("No stabilized readings recorded.")
        return
    for entry in entries:
        typer.echo(
            f"  - {entry.get('timestamp')} {entry.get('device_id')}: "
            f"{entry.get('weight_kg'):.3f} kg, {entry.get('item_count')} items"
        )


def render_config(payload: Dict[str, Any]) -> None:
    echo_heading("Configuration")
    echo_key_values(
        [
            ("mass_per_item", payload.get("mass_per_item")),
            ("tare_mass", payload.get("tare_mass")),
            ("initial_item_count", payload.get("initial_item_count")),
            ("error_band", f"{payload.get('error_band_min')} .. {payload.get('error_band_max')}"),
            ("allow_increase", payload.get("allow_increase")),
            ("allow_decrease", payload.get("allow_decrease")),
        ]
    )


def render_state(payload: Dict[str, Any]) -> None:
    echo_heading(f"Device {payload.get('device_id')}")
    state = payload.get("state") or {}
    if state:
        echo_key_values(
            [
                ("item_count", state.get("current_item_count")),
                ("last_stable_weight_kg", state.get("last_stable_weight_kg")),
            ]
        )
    else:
        typer.echo("No stable reading yet.")

    typer.echo()
    render_config(payload.get("config") or {})

    window = payload.get("window") or {}
    typer.echo()
    echo_heading("Window")
    if window:
        echo_key_values(
            [
                ("samples", window.get("count")),
                ("spread", window.get("spread")),
                ("mean", window.get("mean")),
            ]
        )
    else:
        typer.echo("No samples in the stabilization window.")
