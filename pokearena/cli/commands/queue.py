"""CLI commands for the PvP matchmaking queue."""

import typer
from rich.panel import Panel

from pokearena.cli.client import TOKEN_OPTION, call, console

app = typer.Typer(name="queue", help="PvP matchmaking")


def _render_status(data: dict) -> None:
    if not data.get("in_queue"):
        console.print("[dim]You are not in the matchmaking queue.[/dim]")
        return
    if data.get("matched"):
        console.print(
            Panel(
                f"Battle ID: [bold cyan]{data['battle_id']}[/bold cyan]\n"
                f"vs. [bold]{data.get('matched_with_user_id')}[/bold]",
                title="Opponent found!",
                border_style="green",
            )
        )
        console.print(f"View it with: [bold]pokearena battle status {data['battle_id']}[/bold]")
    else:
        console.print("[yellow]Waiting for an opponent...[/yellow]")
        console.print("[dim]Check again with `pokearena queue status`.[/dim]")


@app.command("join")
def join_queue(
    pokemon: str = typer.Argument(..., help="Pokemon id or name to battle with"),
    token: str = TOKEN_OPTION,
) -> None:
    """Join the matchmaking queue."""
    data = call("POST", "/matchmaking/join", token, json={"pokemon": pokemon})
    if data is not None:
        _render_status(data)


@app.command("status")
def queue_status(token: str = TOKEN_OPTION) -> None:
    """Check whether you have been matched."""
    data = call("GET", "/matchmaking/status", token)
    if data is not None:
        _render_status(data)


@app.command("leave")
def leave_queue(token: str = TOKEN_OPTION) -> None:
    """Leave the matchmaking queue."""
    data = call("POST", "/matchmaking/leave", token)
    if data is None:
        return
    if data.get("left"):
        console.print("[green]Left the queue.[/green]")
    else:
        console.print("[dim]You were not in the queue.[/dim]")
