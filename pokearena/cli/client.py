"""Thin HTTP client shared by the CLI commands.

All battle interactions go through the PokeArena server. The CLI only
sends requests and renders the results.
"""

from typing import Any

import requests
import typer
from rich.console import Console

from pokearena.utils.config import get_settings

console = Console()

TOKEN_OPTION = typer.Option(
    ...,
    "--token",
    "-t",
    envvar="POKEARENA_TOKEN",
    help="Bearer token (see `pokearena token`)",
)


def server_url() -> str:
    """Resolve the server URL from config or env."""
    return get_settings().server_url.rstrip("/")


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def error_detail(resp: requests.Response) -> str:
    try:
        return resp.json().get("detail", resp.text)
    except ValueError:
        return resp.text


def call(method: str, path: str, token: str | None = None, **kwargs: Any) -> Any | None:
    """Send a request; print the error and return None when it fails."""
    headers = auth_headers(token) if token else {}
    try:
        resp = requests.request(
            method, f"{server_url()}{path}", headers=headers, timeout=10, **kwargs
        )
    except requests.ConnectionError:
        console.print("[red]Cannot connect to PokeArena server.[/red] Is it running?")
        return None

    if resp.status_code >= 400:
        console.print(f"[red]Error:[/red] {error_detail(resp)}")
        return None
    return resp.json()
