"""Main CLI application for PokeArena."""

from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console

from pokearena import __version__
from pokearena.cli.commands import battle, queue, ranking
from pokearena.utils.config import get_settings
from pokearena.utils.logging import setup_logging

# Create main app
app = typer.Typer(
    name="pokearena",
    help="PokeArena - server-authoritative Pokemon battles",
    no_args_is_help=True,
)

# Register sub-commands
app.add_typer(battle.app, name="battle", help="Battles against the AI or other players")
app.add_typer(queue.app, name="queue", help="PvP matchmaking")
app.add_typer(ranking.app, name="ranking", help="Stats and rankings")

console = Console()


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", "-h"),
    port: int = typer.Option(8000, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Run the battle server."""
    import uvicorn

    setup_logging()
    uvicorn.run("pokearena.server:app", host=host, port=port, reload=reload)


@app.command("init-db")
def init_database() -> None:
    """Create the database tables."""
    from pokearena.data.sql_store import create_db_engine, init_db

    config = get_settings()
    if not config.uses_database:
        console.print("[red]POKEARENA_DATABASE_URL is not set.[/red] The in-memory store needs no setup.")
        raise typer.Exit(code=1)
    init_db(create_db_engine(config.database_url, config.database_echo))
    console.print("[green]Database tables created.[/green]")


@app.command("sweep")
def sweep(
    minutes: Optional[int] = typer.Option(None, "--minutes", "-m", help="Idle minutes before a battle is abandoned"),
) -> None:
    """Mark idle battles as abandoned."""
    from pokearena.server import build_services

    config = get_settings()
    if not config.uses_database:
        console.print("[red]POKEARENA_DATABASE_URL is not set.[/red] Nothing to sweep.")
        raise typer.Exit(code=1)
    setup_logging()
    services = build_services(config)
    older_than = timedelta(minutes=minutes) if minutes else None
    count = services.battles.abandon_stale(older_than)
    console.print(f"Abandoned [bold]{count}[/bold] idle battle(s).")


@app.command("token")
def issue_token(
    user_id: str = typer.Argument(..., help="User id (JWT subject)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    minutes: Optional[int] = typer.Option(None, "--minutes", "-m", help="Validity in minutes"),
) -> None:
    """Issue a development token signed with the configured secret."""
    from pokearena.core.auth import create_access_token

    data = {"sub": user_id, "name": name or user_id}
    expires = timedelta(minutes=minutes) if minutes else None
    token = create_access_token(data, expires_delta=expires, config=get_settings())
    typer.echo(token)
    console.print("[dim]export POKEARENA_TOKEN=<token> to use it with the other commands.[/dim]")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"PokeArena v{__version__}")


if __name__ == "__main__":
    app()
