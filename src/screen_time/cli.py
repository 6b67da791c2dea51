"""Command line entry point: run the server or poke a running one."""

from __future__ import annotations

import click
import requests
from rich.console import Console
from rich.table import Table

from .config import DEFAULT_HOST, DEFAULT_PORT, get_settings
from .time_account import format_time

console = Console()

DEFAULT_API_URL = f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"


def _api_url_option(f):
    return click.option(
        "--api-url",
        default=DEFAULT_API_URL,
        show_default=True,
        envvar="SCREEN_TIME_API_URL",
        help="Base URL of a running screen-time server.",
    )(f)


def _request(method: str, url: str, **kwargs) -> dict:
    try:
        response = requests.request(method, url, timeout=5, **kwargs)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise click.ClickException(f"Request to {url} failed: {exc}") from exc
    return response.json()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def main() -> None:
    """Screen-time economy server and client."""


@main.command()
@click.option("--host", default=None, help="Bind address (defaults to SCREEN_TIME_HOST).")
@click.option("--port", type=int, default=None, help="Port (defaults to SCREEN_TIME_PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP server."""
    import uvicorn

    from .api import create_app

    settings = get_settings()
    if host:
        settings.host = host
    if port:
        settings.port = port
    settings.validate()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


@main.command()
@_api_url_option
def status(api_url: str) -> None:
    """Show balance and score info from a running server."""
    time_info = _request("GET", f"{api_url}/api/time")
    score = _request("GET", f"{api_url}/api/score")

    table = Table(title="Screen Time", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Available", format_time(time_info["available_time"]))
    table.add_row("State", f"{time_info['state']} ({time_info['app_state']})")
    table.add_row("Daily score", str(score["dailyScore"]))
    table.add_row("Streak", f"{score['currentStreak']} (best {score['highestStreak']})")
    table.add_row("Overtime penalty", str(score["overtimePenaltyAccum"]))
    table.add_row("Rollover bonus", str(score["dailyRolloverBonus"]))
    table.add_row("All-time high", str(score["allTimeHighScore"]))
    table.add_row("Days played", str(score["totalDaysPlayed"]))
    table.add_row("Weekly average", str(score["weeklyAverage"]))
    console.print(table)


@main.command()
@click.argument("seconds", type=int)
@_api_url_option
def credit(seconds: int, api_url: str) -> None:
    """Add SECONDS of screen time (negative values remove time)."""
    result = _request("POST", f"{api_url}/api/time/credits", json={"seconds": seconds})
    click.echo(f"Available: {format_time(result['available_time'])}")


@main.command()
@click.option("--yes", is_flag=True, help="Confirm erasing all progress.")
@_api_url_option
def erase(yes: bool, api_url: str) -> None:
    """Erase all balance, score and history."""
    if not yes:
        raise click.ClickException("Refusing to erase without --yes")
    _request("POST", f"{api_url}/api/progress/erase")
    click.echo("All progress erased.")


if __name__ == "__main__":  # pragma: no cover
    main()
