"""Command-line interface for the Heatline station monitor."""

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from heatline.autocall import AutoCallEngine
from heatline.calibration import CalibrationRunner
from heatline.calls import CallPipeline
from heatline.errors import ConfigError, HeatlineError
from heatline.ingestion import WeatherPoller
from heatline.ingestion.forecast import refresh_forecast
from heatline.quality import run_health_checks
from heatline.storage import DEFAULT_DB_PATH, Storage
from heatline.timeutil import day_key as to_day_key
from heatline.timeutil import format_local, utcnow

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="heatline",
    help="Station truth temperature, forecast-driven verification calls and calibration",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLE = {
    "pass": "[green]PASS[/green]",
    "warn": "[yellow]WARN[/yellow]",
    "fail": "[red]FAIL[/red]",
}


@contextmanager
def reported_errors() -> Iterator[None]:
    """Turn domain errors into a red message and exit code 1."""
    try:
        yield
    except HeatlineError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=1) from e


def parse_assignments(pairs: list[str]) -> dict[str, object]:
    """Parse ``key=value`` pairs, decoding JSON scalars where possible."""
    values: dict[str, object] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Expected key=value, got: {pair}")
        try:
            values[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            values[key.strip()] = raw
    return values


def build_pipeline(storage: Storage) -> CallPipeline | None:
    try:
        return CallPipeline.from_env(storage)
    except ConfigError as e:
        console.print(f"[yellow]Call pipeline unavailable: {e}[/yellow]")
        return None


@app.command()
def poll(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Fetch the latest station report and update today's state."""
    with reported_errors(), Storage(db_path) as storage:
        result = WeatherPoller(storage).poll_once()

    label = "duplicate" if result.duplicate else "new"
    console.print(
        f"[bold green]{result.source}[/bold green] report ({label}): "
        f"{result.temp_whole_f}°F, high so far {result.high_so_far_whole_f}°F"
    )
    if result.is_new_high:
        console.print("[bold magenta]New daily high![/bold magenta]")


@app.command("refresh-forecast")
def refresh_forecast_command(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Fetch and store the hourly forecast for today."""
    with reported_errors(), Storage(db_path) as storage:
        snapshot = refresh_forecast(storage)
        timezone = storage.load_settings().timezone

    console.print(
        f"Forecast for {snapshot.day_key}: {len(snapshot.hourly)} hourly periods, "
        f"peak {snapshot.predicted_max_temp_f}°F at {format_local(snapshot.predicted_max_at, timezone)}"
    )


@app.command()
def evaluate(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Run one auto-call decision tick."""
    with reported_errors(), Storage(db_path) as storage:
        result = AutoCallEngine(storage, caller=build_pipeline(storage)).evaluate_now()

    if result.duplicate:
        console.print(f"[yellow]Bucket {result.decision_key} already evaluated; nothing to do.[/yellow]")
        return

    style = "green" if result.decision and result.decision.value == "CALL" else "cyan"
    console.print(f"[bold {style}]{result.decision.value}[/bold {style}] {result.reason_code.value}")
    console.print(f"  window: {result.window.value}  calls today: {result.auto_calls_made}")
    if result.reason_detail:
        console.print(f"  detail: {json.dumps(result.reason_detail, default=str)}")


@app.command()
def simulate(
    overrides: list[str] = typer.Option([], "--set", help="Setting override as key=value"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Evaluate what a tick would decide right now, without side effects."""
    with reported_errors(), Storage(db_path) as storage:
        result = AutoCallEngine(storage).simulate_decision(parse_assignments(overrides))

    console.print(
        f"[bold]{result.decision.value}[/bold] {result.reason_code.value} "
        f"(window {result.window.value}, blocked by {result.blocking_guard or 'nothing'})"
    )

    table = Table(title="Guard Chain")
    table.add_column("Guard", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Reason")
    for guard in result.guards:
        table.add_row(
            guard["guard"],
            "[green]PASS[/green]" if guard["passed"] else "[red]BLOCK[/red]",
            guard["reason_code"] or "",
        )
    console.print(table)
    console.print(f"Signals: {result.signals}")


@app.command()
def decisions(
    day: str = typer.Option(None, help="Station day (YYYY-MM-DD), default today"),
    limit: int = typer.Option(20, help="Maximum rows"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Show recent auto-call decisions."""
    with reported_errors(), Storage(db_path) as storage:
        engine = AutoCallEngine(storage)
        rows = engine.get_recent_decisions(day, limit)
        state = engine.get_auto_call_state(day)
        timezone = storage.load_settings().timezone

    table = Table(title="Auto-Call Decisions")
    table.add_column("Evaluated", style="cyan")
    table.add_column("Decision", style="bold")
    table.add_column("Reason")
    table.add_column("Window")
    table.add_column("Call")
    for row in rows:
        table.add_row(
            format_local(row.evaluated_at, timezone) or "",
            row.decision.value,
            row.reason_code.value,
            row.window.value,
            row.call_reference or "",
        )
    console.print(table)

    if state:
        console.print(
            f"Calls made: {state.auto_calls_made}  last call: {format_local(state.last_auto_call_at, timezone)}  "
            f"enabled: {state.enabled}  shadow: {state.shadow_mode}"
        )


@app.command()
def calibrate(
    start: str = typer.Option(..., help="First day (YYYY-MM-DD)"),
    end: str = typer.Option(..., help="Last day (YYYY-MM-DD), inclusive"),
    highs: list[str] = typer.Option(..., "--high", help="Reference high as DAY=VALUE, one per day"),
    station: str = typer.Option(None, help="Station code, default from settings"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Backtest every derivation method against reference highs."""
    reference: dict[str, object] = {}
    for pair in highs:
        day, _, raw = pair.partition("=")
        try:
            reference[day.strip()] = int(raw)
        except ValueError:
            reference[day.strip()] = raw

    console.print(f"[bold blue]Calibrating {start} .. {end}...[/bold blue]")
    with reported_errors(), Storage(db_path) as storage:
        run, evaluation = CalibrationRunner(storage).run_calibration(start, end, reference, station=station)

    table = Table(title="Method Results")
    table.add_column("Method", style="cyan")
    table.add_column("Matched", justify="right")
    table.add_column("Match rate", justify="right", style="bold")
    for result in evaluation.results:
        table.add_row(
            result.method.label,
            f"{result.matched_days}/{result.total_days}",
            f"{result.match_rate:.0%}",
        )
    console.print(table)
    console.print(f"[bold green]Chosen:[/bold green] {run.chosen_method}")
    for mismatch in run.mismatches:
        console.print(
            f"  {mismatch.day_key}: expected {mismatch.expected}, predicted {mismatch.predicted} "
            f"({mismatch.reports_used} reports)"
        )


@app.command()
def call(
    requested_by: str = typer.Option("operator", help="Who is requesting the call"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Place a manual verification call."""
    with reported_errors(), Storage(db_path) as storage:
        record = CallPipeline.from_env(storage).request_call(requested_by)

    console.print(f"[bold green]Call initiated[/bold green] sid={record.call_sid}")
    if record.warning:
        console.print(f"[yellow]{record.warning}[/yellow]")


@app.command("process-recording")
def process_recording(
    recording_sid: str = typer.Option(..., help="Provider recording sid"),
    recording_url: str = typer.Option(..., help="Recording URL without extension"),
    call_sid: str = typer.Option(None, help="Provider call sid"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Download, transcribe and parse a finished recording."""
    with reported_errors(), Storage(db_path) as storage:
        record = CallPipeline.from_env(storage).process_recording(recording_sid, recording_url, call_sid=call_sid)

    console.print(f"Status: [bold]{record.status.value}[/bold]")
    if record.temp_f is not None:
        console.print(f"  {record.temp_c:.1f}°C / {record.temp_f:.1f}°F (unit: {record.assumed_unit})")
    if record.error:
        console.print(f"  [red]{record.failure_stage}: {record.error}[/red]")


@app.command()
def health(
    day: str = typer.Option(None, help="Station day (YYYY-MM-DD), default today"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Run station health checks."""
    console.print("[bold blue]Running health checks...[/bold blue]")

    with reported_errors(), Storage(db_path) as storage:
        day, results = run_health_checks(storage, day)

    table = Table(title=f"Station Health {day}")
    table.add_column("Check", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Message")
    for result in results:
        table.add_row(result.check_name, STATUS_STYLE.get(result.status.value, result.status.value), result.message)
    console.print(table)

    passed = sum(1 for r in results if r.status.value == "pass")
    console.print(f"\n[bold]{passed}/{len(results)} checks passed[/bold]")


@app.command("settings-show")
def settings_show(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Show the effective settings."""
    with reported_errors(), Storage(db_path) as storage:
        settings = storage.load_settings()

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in settings.model_dump(mode="json").items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("settings-set")
def settings_set(
    assignments: list[str] = typer.Argument(..., help="Settings as key=value"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Update stored settings."""
    with reported_errors(), Storage(db_path) as storage:
        storage.save_settings(parse_assignments(assignments))
    console.print("[bold green]Settings saved.[/bold green]")


@app.command()
def status(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Show today's station state, forecast and call status."""
    if not db_path.exists():
        console.print("[yellow]No database found. Run 'heatline poll' first.[/yellow]")
        return

    with reported_errors(), Storage(db_path) as storage:
        settings = storage.load_settings()
        day = to_day_key(utcnow(), settings.timezone)
        stats = storage.get_daily_stats(day)
        forecast = storage.get_latest_forecast(day)
        state = storage.get_auto_call_state(day)
        latest_call = storage.get_latest_phone_call()
        alerts = storage.get_recent_alerts(day, limit=5)

    tz = settings.timezone
    console.print(f"[bold]{settings.station} {day}[/bold]\n")

    if stats:
        stale = "[red]STALE[/red]" if stats.is_stale else "[green]fresh[/green]"
        console.print(f"Current: {stats.current_temp_whole_f}°F  High: {stats.high_so_far_whole_f}°F ({stale})")
        console.print(f"High at: {format_local(stats.time_of_high, tz)}")
    else:
        console.print("[yellow]No observations today.[/yellow]")

    if forecast:
        console.print(
            f"Forecast peak: {forecast.predicted_max_temp_f}°F at {format_local(forecast.predicted_max_at, tz)}"
        )
    if state:
        last_reason = state.last_reason_code.value if state.last_reason_code else "-"
        console.print(f"Auto calls: {state.auto_calls_made}  last reason: {last_reason}")
    if latest_call:
        console.print(f"Latest call: {latest_call.status.value} ({format_local(latest_call.requested_at, tz)})")

    if alerts:
        console.print("\n[bold]Recent alerts:[/bold]")
        for alert in alerts:
            console.print(f"  {format_local(alert.created_at, tz)} {alert.type}")


@app.command()
def watch(
    iterations: int = typer.Option(0, help="Stop after N poll cycles (0 = run forever)"),
    forecast_every_minutes: int = typer.Option(60, help="Forecast refresh interval"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, help="Database path"),
) -> None:
    """Poll, refresh the forecast and evaluate on their own cadences."""
    log = structlog.get_logger()
    console.print("[bold magenta]Watching station (Ctrl+C to stop)[/bold magenta]")

    with Storage(db_path) as storage:
        poller = WeatherPoller(storage)
        engine = AutoCallEngine(storage, caller=build_pipeline(storage))
        next_forecast = next_eval = utcnow()
        cycle = 0
        while iterations <= 0 or cycle < iterations:
            cycle += 1
            now = utcnow()
            settings = storage.load_settings()

            try:
                poller.poll_once(now)
            except HeatlineError as e:
                log.error("watch_poll_failed", error=str(e))

            if now >= next_forecast:
                try:
                    refresh_forecast(storage, now=now)
                except HeatlineError as e:
                    log.error("watch_forecast_failed", error=str(e))
                next_forecast = now + timedelta(minutes=forecast_every_minutes)

            if now >= next_eval:
                try:
                    result = engine.evaluate_now(now)
                except HeatlineError as e:
                    log.error("watch_evaluate_failed", error=str(e))
                else:
                    if not result.duplicate:
                        console.print(f"{format_local(now, settings.timezone)} {result.reason_code.value}")
                next_eval = now + timedelta(minutes=settings.auto_call_eval_every_minutes)

            if iterations <= 0 or cycle < iterations:
                time.sleep(settings.poll_interval_seconds)


if __name__ == "__main__":
    app()
