"""CLI commands for battle stats and the ranking."""

import typer
from rich import box
from rich.panel import Panel
from rich.table import Table

from pokearena.cli.client import TOKEN_OPTION, call, console

app = typer.Typer(name="ranking", help="Battle stats and rankings")


@app.command("show")
def show_ranking(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of entries to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Offset for pagination"),
) -> None:
    """Display the global ranking."""
    data = call("GET", "/ranking", params={"limit": limit, "offset": offset})
    if data is None:
        return

    entries = data["ranking"]
    if not entries:
        console.print("[dim]Ranking is empty.[/dim]")
        return

    table = Table(title="Ranking", box=box.ROUNDED)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Trainer", style="bold")
    table.add_column("Rating", justify="right", style="cyan")
    table.add_column("Rank")
    table.add_column("W", justify="right", style="green")
    table.add_column("L", justify="right", style="red")
    table.add_column("D", justify="right")
    table.add_column("Win%", justify="right")

    for entry in entries:
        # Highlight the top 3
        position = entry["position"]
        rank_num = str(position)
        if position == 1:
            rank_num = "[bold gold1]1[/bold gold1]"
        elif position == 2:
            rank_num = "[bold silver]2[/bold silver]"
        elif position == 3:
            rank_num = "[bold dark_orange3]3[/bold dark_orange3]"

        table.add_row(
            rank_num,
            entry["display_name"],
            str(entry["rating"]),
            entry["rank"],
            str(entry["wins"]),
            str(entry["losses"]),
            str(entry["draws"]),
            f"{entry['win_rate']:.0f}%" if entry["total_battles"] else "-",
        )

    console.print(table)
    console.print(f"[dim]Showing {len(entries)} of {data['total']} trainers (offset {offset})[/dim]")


def _render_stats(data: dict, title: str) -> None:
    stats = data["stats"]
    favorite = stats.get("most_used_pokemon")
    favorite_str = f"{favorite['name'].capitalize()} ({favorite['count']}x)" if favorite else "N/A"
    console.print(
        Panel(
            f"[bold]{stats['display_name']}[/bold]\n\n"
            f"Rating     : [cyan]{stats['rating']}[/cyan] (peak {stats['peak_rating']})\n"
            f"Rank       : {stats['rank']}  |  Position #{stats['position']}\n"
            f"Record     : [green]{stats['wins']}W[/green] / [red]{stats['losses']}L[/red] / "
            f"{stats['draws']}D  ({stats['total_battles']} total)\n"
            f"Win Rate   : {stats['win_rate']:.1f}%\n"
            f"Streak     : {stats['current_win_streak']} (best {stats['best_win_streak']})\n"
            f"Favorite   : {favorite_str}",
            title=title,
            border_style="cyan",
        )
    )

    recent = data.get("recent_battles") or []
    if recent:
        console.print("[bold]Recent battles:[/bold]")
        for b in recent:
            if b.get("winner_user_id") == stats["user_id"]:
                result = "[green]WIN[/green]"
            elif b["status"] in ("draw", "abandoned"):
                result = b["status"].upper()
            else:
                result = "[red]LOSS[/red]"
            console.print(
                f"  {b['started_at'][:10]}  {b['mode']:<3}  "
                f"{b['player1']['species_name']} vs {b['player2']['species_name']}  {result}"
            )


@app.command("me")
def my_stats(token: str = TOKEN_OPTION) -> None:
    """Show your own stats and ranking position."""
    data = call("GET", "/stats/me", token)
    if data is not None:
        _render_stats(data, "Your Battle Profile")


@app.command("user")
def user_stats(
    user_id: str = typer.Argument(..., help="User id"),
    token: str = TOKEN_OPTION,
) -> None:
    """Show another trainer's stats."""
    data = call("GET", f"/stats/{user_id}", token)
    if data is not None:
        _render_stats(data, "Battle Profile")
