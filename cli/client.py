from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the scale inventory service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def send_reading(
        self,
        payload: str,
        device_id: Optional[str] = None,
        status: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"payload": payload}
        if device_id:
            body["device_id"] = device_id
        if status:
            body["status"] = status
        if timestamp is not None:
            body["timestamp"] = timestamp.isoformat()
        return self._request("POST", "/readings", json=body)

    def get_history(self, device_id: Optional[str] = None) -> Dict[str, Any]:
        params = {"device_id": device_id} if device_id else None
        return self._request("GET", "/history", params=params)

    def get_state(self, device_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/devices/{device_id}/state")

    def configure(self, device_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", f"/devices/{device_id}/config", json=changes)

    def set_count(self, device_id: str, item_count: int) -> Dict[str, Any]:
        return self._request(
            "PUT", f"/devices/{device_id}/count", json={"item_count": item_count}
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            if response.status_code == 404:
                raise typer.BadParameter(f"{path} was not found.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            typer.secho(
                f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True
            )
            raise typer.Exit(code=1) from exc
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        if isinstance(detail, dict):
            detail = f"{detail.get('message')} (field: {detail.get('field')})"
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
