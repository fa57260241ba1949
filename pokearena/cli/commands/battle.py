"""CLI commands for battles (against the AI or another player)."""

from typing import Any, Optional

import typer
from rich import box
from rich.panel import Panel
from rich.table import Table

from pokearena.cli.client import TOKEN_OPTION, call, console

app = typer.Typer(name="battle", help="Pokemon battles")


def _hp_bar(current: int, maximum: int, width: int = 20) -> str:
    filled = round(width * current / maximum) if maximum else 0
    pct = current / maximum if maximum else 0
    color = "green" if pct > 0.5 else "yellow" if pct > 0.2 else "red"
    return f"[{color}]{'#' * filled}[/{color}][dim]{'-' * (width - filled)}[/dim] {current}/{maximum}"


def render_battle(data: dict[str, Any]) -> None:
    """Print a battle view: both Pokemon, your moves and the log tail."""
    your_side = data.get("your_side")
    console.print(
        Panel(
            f"Mode: [bold]{data['mode']}[/bold]  |  Status: [bold]{data['status']}[/bold]  |  "
            f"Turn: {data['turn_number']}  |  To move: {data.get('current_turn') or '-'}",
            title=f"Battle {data['battle_id'][:12]}...",
            border_style="cyan",
        )
    )

    table = Table(box=box.SIMPLE)
    table.add_column("Side")
    table.add_column("Trainer", style="bold")
    table.add_column("Pokemon")
    table.add_column("Types")
    table.add_column("HP")
    for side in ("player1", "player2"):
        entry = data[side]
        mon = entry["pokemon"]
        marker = " (you)" if side == your_side else ""
        table.add_row(
            side + marker,
            entry["display_name"],
            mon["species_name"].capitalize(),
            "/".join(mon["types"]),
            _hp_bar(mon["current_hp"], mon["max_hp"]),
        )
    console.print(table)

    if your_side:
        moves = data[your_side]["pokemon"].get("moves") or []
        if moves and data["status"] == "active":
            move_table = Table(title="Your Moves", box=box.SIMPLE)
            move_table.add_column("ID", justify="right")
            move_table.add_column("Move", style="bold")
            move_table.add_column("Type")
            move_table.add_column("Power", justify="right")
            for move in moves:
                move_table.add_row(str(move["id"]), move["name"], move["type"], str(move["power"]))
            console.print(move_table)

    for message in data.get("messages", [])[-6:]:
        console.print(f"  {message}")


def render_turn(data: dict[str, Any]) -> None:
    """Print the outcome of an attack, forfeit or timeout claim."""
    for message in data.get("messages", []):
        if "super effective" in message:
            console.print(f"  [green]{message}[/green]")
        elif "not very effective" in message or "doesn't affect" in message:
            console.print(f"  [dim]{message}[/dim]")
        elif "fainted" in message or "wins" in message:
            console.print(f"  [red bold]{message}[/red bold]")
        else:
            console.print(f"  {message}")

    console.print(
        f"\nHP  player1: {_hp_bar(data['player1_hp'], data['player1_max_hp'])}"
        f"\n    player2: {_hp_bar(data['player2_hp'], data['player2_max_hp'])}"
    )
    if data["status"] != "active":
        console.print(f"\n[bold]Battle over: {data['status']}[/bold]")
    elif data.get("mode") == "pvp":
        console.print(f"[dim]Next to move: {data.get('current_turn')}[/dim]")


@app.command("start")
def start_battle(
    pokemon: str = typer.Argument(..., help="Pokemon id or name"),
    opponent: Optional[str] = typer.Option(None, "--opponent", "-o", help="Opponent id or name (random if omitted)"),
    token: str = TOKEN_OPTION,
) -> None:
    """Start a battle against the AI."""
    body: dict[str, Any] = {"pokemon": pokemon}
    if opponent:
        body["opponent_pokemon"] = opponent
    data = call("POST", "/battles/ai", token, json=body)
    if data is None:
        return
    render_battle(data)
    console.print(f"\nAttack with: [bold]pokearena battle attack {data['battle_id']} <move-id>[/bold]")


@app.command("status")
def battle_status(
    battle_id: str = typer.Argument(..., help="Battle ID"),
    token: str = TOKEN_OPTION,
) -> None:
    """View the current state of a battle."""
    data = call("GET", f"/battles/{battle_id}", token)
    if data is not None:
        render_battle(data)


@app.command("attack")
def attack(
    battle_id: str = typer.Argument(..., help="Battle ID"),
    move_id: int = typer.Argument(..., help="Move ID (see `battle status`)"),
    token: str = TOKEN_OPTION,
) -> None:
    """Use a move."""
    data = call("POST", f"/battles/{battle_id}/attack", token, json={"move_id": move_id})
    if data is not None:
        render_turn(data)


@app.command("forfeit")
def forfeit(
    battle_id: str = typer.Argument(..., help="Battle ID to forfeit"),
    token: str = TOKEN_OPTION,
) -> None:
    """Forfeit an active battle."""
    data = call("POST", f"/battles/{battle_id}/forfeit", token)
    if data is not None:
        render_turn(data)


@app.command("timeout")
def claim_timeout(
    battle_id: str = typer.Argument(..., help="Battle ID"),
    token: str = TOKEN_OPTION,
) -> None:
    """Claim the win when your opponent let their turn timer run out."""
    data = call("POST", f"/battles/{battle_id}/timeout", token)
    if data is not None:
        render_turn(data)


@app.command("turns")
def list_turns(
    battle_id: str = typer.Argument(..., help="Battle ID"),
    token: str = TOKEN_OPTION,
) -> None:
    """Show the move-by-move log of a battle."""
    entries = call("GET", f"/battles/{battle_id}/turns", token)
    if entries is None:
        return
    if not entries:
        console.print("[dim]No moves yet.[/dim]")
        return

    table = Table(title="Turn Log", box=box.ROUNDED)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Side")
    table.add_column("Move", style="bold")
    table.add_column("Damage", justify="right")
    table.add_column("Eff.", justify="right")
    table.add_column("Target HP", justify="right")
    for e in entries:
        table.add_row(
            str(e["turn_number"]),
            e["side"],
            e["move_name"],
            str(e["damage"]),
            f"x{e['effectiveness']:g}",
            f"{e['defender_hp_before']} -> {e['defender_hp_after']}",
        )
    console.print(table)


@app.command("history")
def battle_history(
    limit: int = typer.Option(10, "--limit", "-n"),
    token: str = TOKEN_OPTION,
) -> None:
    """View your battle history."""
    data = call("GET", "/battles", token, params={"limit": limit})
    if data is None:
        return
    battles = data["battles"]
    if not battles:
        console.print("[dim]No battles yet.[/dim]")
        return

    table = Table(title="Battle History", box=box.ROUNDED)
    table.add_column("Date", style="dim")
    table.add_column("Mode")
    table.add_column("Matchup", style="bold")
    table.add_column("Status", justify="center")
    table.add_column("Turns", justify="right")
    for b in battles:
        p1, p2 = b["player1"], b["player2"]
        table.add_row(
            b["started_at"][:10],
            b["mode"],
            f"{p1['display_name']} ({p1['species_name']}) vs {p2['display_name']} ({p2['species_name']})",
            b["status"],
            str(b["turn_number"]),
        )
    console.print(table)
    console.print(f"[dim]Showing {len(battles)} of {data['total']} battles[/dim]")
