"""
CLI for interacting with the FlowOps simulator.

This module provides a command-line interface for watching the simulated
pipeline, reading its metrics and logs, triggering deployments, and
running the simulation engine locally.

Commands:
    status: Check API health status
    pipeline: Show the latest run and its steps
    metrics: Show the dashboard metrics
    logs: Show the most recent log entries
    runs: Show the run history
    trigger: Trigger a deployment
    watch: Follow the pipeline in real-time by polling the API
    simulate: Run the engine in-process on a simulated clock
    serve: Start the API server

Version: 0.1.0
"""
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests
import typer
from rich import box
from rich.console import Console
from rich.table import Table

app = typer.Typer(help="CLI for interacting with the FlowOps pipeline simulator")
console = Console()

# Configuration
DEFAULT_BASE = os.getenv("FLOWOPS_API_URL", "http://localhost:8080")
DEFAULT_TIMEOUT = int(os.getenv("FLOWOPS_TIMEOUT", "10"))
MAX_WATCH_TIME = int(os.getenv("FLOWOPS_MAX_WATCH_TIME", "300"))  # 5 minutes
POLL_INTERVAL = float(os.getenv("FLOWOPS_POLL_INTERVAL", "2"))

STATUS_STYLES = {
    "pending": "dim",
    "running": "yellow",
    "success": "green",
    "failed": "red",
}
LEVEL_STYLES = {"INFO": "blue", "SUCCESS": "green", "ERROR": "red"}


def _base_url(base: Optional[str]) -> str:
    """Get the base URL for API requests."""
    return base or DEFAULT_BASE


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class APIClient:
    """Centralized API client for handling HTTP requests."""

    def __init__(self, base_url: str, timeout: int = DEFAULT_TIMEOUT):
        self.base_url = base_url
        self.timeout = timeout
        self.session = requests.Session()

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> requests.Response:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET or POST)
            endpoint: API endpoint path
            params: Query string parameters
            **kwargs: Additional request arguments

        Returns:
            Response object

        Raises:
            requests.RequestException: For HTTP errors
        """
        url = f"{self.base_url}{endpoint}"
        if "timeout" not in kwargs:
            kwargs["timeout"] = self.timeout
        try:
            if method.upper() == "GET":
                response = self.session.get(url, params=params, **kwargs)
            elif method.upper() == "POST":
                response = self.session.post(url, params=params, **kwargs)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            logging.debug(f"API request failed: {e}", exc_info=True)
            raise

    def get(self, endpoint: str, **kwargs) -> requests.Response:
        """Make a GET request."""
        return self._make_request("GET", endpoint, **kwargs)

    def post(self, endpoint: str, **kwargs) -> requests.Response:
        """Make a POST request."""
        return self._make_request("POST", endpoint, **kwargs)


def _handle_api_error(error: requests.RequestException, operation: str) -> None:
    """
    Handle API errors consistently.

    Args:
        error: The request exception that occurred
        operation: Description of the operation that failed
    """
    response = getattr(error, "response", None)
    if response is not None:
        detail = ""
        try:
            detail = response.json().get("detail", "")
        except ValueError:
            pass
        console.print(
            f"[red]API Error ({operation}):[/red] {response.status_code} {detail or error}"
        )
    else:
        console.print(f"[red]API Error ({operation}):[/red] {error}")
    logging.debug(f"API error during {operation}", exc_info=True)


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _pipeline_table(data: Dict[str, Any], stale: bool = False) -> Table:
    run = data["run"]
    title = f"Run #{run['id']} - {run['status']}"
    if stale:
        title += " (stale)"
    table = Table(title=title, box=box.SIMPLE_HEAVY)
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    for step in data.get("steps", []):
        duration = step.get("duration")
        table.add_row(
            step["name"],
            _styled(step["status"]),
            f"{duration}s" if duration is not None else "-",
        )
    return table


def _print_log(entry: Dict[str, Any]) -> None:
    style = LEVEL_STYLES.get(entry["level"], "white")
    console.print(
        f"  [dim]{entry.get('timestamp', '')}[/dim] [{style}]{entry['level']:<7}[/{style}] {entry['message']}"
    )


@app.command("status")
def status(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Check the health status of the FlowOps API."""
    _setup_logging(verbose)
    try:
        api_client = APIClient(_base_url(base), timeout=5)
        health_data = api_client.get("/health").json()
        console.print("[green]FlowOps API is running[/green]")
        console.print(f"[blue]Base URL:[/blue] {_base_url(base)}")
        console.print(f"[blue]Version:[/blue] {health_data.get('version', 'unknown')}")
        console.print(f"[blue]Engine running:[/blue] {health_data.get('engine_running')}")
        console.print(f"[blue]Storage:[/blue] {health_data.get('storage', 'unknown')}")
    except requests.RequestException as e:
        console.print(f"[red]Cannot connect to API:[/red] {e}")
        console.print(f"[blue]Attempted URL:[/blue] {_base_url(base)}")
        raise typer.Exit(1)


@app.command("pipeline")
def pipeline(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the latest run and its steps."""
    _setup_logging(verbose)
    try:
        data = APIClient(_base_url(base)).get("/api/pipeline/latest").json()
        console.print(_pipeline_table(data))
    except requests.RequestException as e:
        _handle_api_error(e, "fetching latest run")
        raise typer.Exit(1)


@app.command("metrics")
def metrics(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the dashboard metrics."""
    _setup_logging(verbose)
    try:
        items = APIClient(_base_url(base)).get("/api/metrics").json()
    except requests.RequestException as e:
        _handle_api_error(e, "fetching metrics")
        raise typer.Exit(1)
    if not items:
        console.print("[yellow]No metrics recorded yet[/yellow]")
        return
    table = Table(title="Metrics", box=box.SIMPLE_HEAVY)
    table.add_column("Metric", style="bold cyan")
    table.add_column("Value", style="bold")
    table.add_column("Trend", style="yellow")
    table.add_column("Description", style="dim")
    for metric in items:
        table.add_row(
            metric["label"],
            metric["value"],
            metric.get("trend") or "-",
            metric.get("description") or "",
        )
    console.print(table)


@app.command("logs")
def logs(
    limit: int = typer.Option(50, "--limit", "-n", min=1, max=50, help="Number of entries"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the most recent log entries, oldest first."""
    _setup_logging(verbose)
    try:
        entries = APIClient(_base_url(base)).get("/api/logs", params={"limit": limit}).json()
    except requests.RequestException as e:
        _handle_api_error(e, "fetching logs")
        raise typer.Exit(1)
    if not entries:
        console.print("[yellow]No log entries yet[/yellow]")
        return
    for entry in entries:
        _print_log(entry)


@app.command("runs")
def runs(
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=100, help="Number of runs"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the run history, newest first."""
    _setup_logging(verbose)
    try:
        items = APIClient(_base_url(base)).get("/api/runs", params={"limit": limit}).json()
    except requests.RequestException as e:
        _handle_api_error(e, "listing runs")
        raise typer.Exit(1)
    if not items:
        console.print("[yellow]No runs recorded yet[/yellow]")
        return
    table = Table(title="Deployment History", box=box.SIMPLE_HEAVY)
    table.add_column("Run", style="bold cyan")
    table.add_column("Status")
    table.add_column("Started", style="blue")
    table.add_column("Finished", style="blue")
    for run in items:
        table.add_row(
            f"#{run['id']}",
            _styled(run["status"]),
            run.get("startTime") or "-",
            run.get("endTime") or "-",
        )
    console.print(table)


@app.command("trigger")
def trigger(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Trigger a deployment."""
    _setup_logging(verbose)
    try:
        result = APIClient(_base_url(base)).post("/api/pipeline/trigger").json()
    except requests.RequestException as e:
        _handle_api_error(e, "triggering deployment")
        raise typer.Exit(1)
    if result["outcome"] == "queued":
        console.print(
            f"[yellow]Deployment queued[/yellow]: starts after run #{result['runId']}"
        )
    else:
        console.print(
            f"[green]Deployment {result['outcome']}[/green]: run #{result['runId']}"
        )
    console.print("[blue]Tip:[/blue] Use 'flowctl watch' to follow the run")


@app.command("watch")
def watch(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    max_time: Optional[int] = typer.Option(None, "--max-time", "-t", help="Maximum watch time in seconds"),
    interval: float = typer.Option(POLL_INTERVAL, "--interval", "-i", help="Polling interval in seconds"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep watching across runs"),
) -> None:
    """
    Watch the pipeline in real-time.

    Polls the API every ``interval`` seconds. When a poll fails the last
    known state is kept and marked stale; polling simply continues.
    """
    _setup_logging(verbose)
    api_client = APIClient(_base_url(base))
    start_time = time.time()
    max_watch_time = max_time or MAX_WATCH_TIME
    last: Optional[Dict[str, Any]] = None
    watched_run: Optional[int] = None
    last_status: Optional[str] = None
    last_log_id = 0

    console.print(f"[blue]Watching pipeline at:[/blue] {_base_url(base)}")
    console.print(f"[blue]Max watch time:[/blue] {max_watch_time} seconds")
    while True:
        if time.time() - start_time > max_watch_time:
            console.print(f"[yellow]Maximum watch time ({max_watch_time}s) exceeded. Exiting.[/yellow]")
            break
        try:
            data = api_client.get("/api/pipeline/latest").json()
            entries: List[Dict[str, Any]] = api_client.get("/api/logs").json()
        except requests.RequestException as e:
            if last is None:
                _handle_api_error(e, "watching pipeline")
                raise typer.Exit(1)
            console.print(f"[yellow]Connection problem, showing last known state:[/yellow] {e}")
            console.print(_pipeline_table(last, stale=True))
            time.sleep(interval)
            continue

        run = data["run"]
        if watched_run is None:
            watched_run = run["id"]
        if not follow and run["id"] != watched_run:
            console.print(f"[blue]Run #{watched_run} was superseded by run #{run['id']}[/blue]")
            break
        for entry in entries:
            if entry["id"] > last_log_id:
                _print_log(entry)
                last_log_id = entry["id"]
        if run["status"] != last_status or last is None:
            console.print(_pipeline_table(data))
            last_status = run["status"]
        last = data
        if not follow and all(
            step["status"] in ("success", "failed") for step in data.get("steps", [])
        ):
            break
        time.sleep(interval)

    if last is not None:
        final = last["run"]["status"]
        if final == "success":
            console.print("[green]Run completed successfully![/green]")
        elif final == "failed":
            console.print("[red]Run failed[/red]")
        else:
            console.print(f"[blue]Last seen status: {final}[/blue]")


@app.command("simulate")
def simulate(
    runs: int = typer.Option(5, "--runs", "-r", min=1, help="Number of runs to simulate"),
    seed: Optional[int] = typer.Option(None, "--seed", "-s", help="Random seed"),
    failure_probability: float = typer.Option(
        0.1, "--failure-probability", "-p", min=0.0, max=1.0, help="Per-stage failure chance"
    ),
    show_logs: bool = typer.Option(False, "--logs", "-l", help="Print every log entry"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Run the simulation engine locally on a simulated clock."""
    _setup_logging(verbose)
    from flowops.config import Settings
    from flowops.engine import PipelineEngine
    from flowops.scheduler import ManualClock, Scheduler

    settings = Settings(random_seed=seed, failure_probability=failure_probability)
    engine = PipelineEngine(settings, scheduler=Scheduler(ManualClock()))
    finished: Dict[int, Dict[str, Any]] = {}
    printed_log_id = 0

    def observe(snapshot) -> None:
        nonlocal printed_log_id
        if show_logs:
            for entry in snapshot.logs:
                if entry.id > printed_log_id:
                    _print_log(entry.model_dump(mode="json"))
                    printed_log_id = entry.id
        if snapshot.run and snapshot.run.id not in finished and snapshot.steps and all(
            step.status.is_terminal for step in snapshot.steps
        ):
            finished[snapshot.run.id] = {
                "status": snapshot.run.status.value,
                "steps": [(s.name, s.status.value, s.duration) for s in snapshot.steps],
            }

    unsubscribe = engine.subscribe(observe)
    engine.start()
    # Generous bound: one run takes well under a minute of simulated time
    for _ in range(runs * 600):
        if len(finished) >= runs:
            break
        engine.scheduler.advance(0.1)
    engine.stop()
    unsubscribe()

    table = Table(title=f"Simulated runs (seed={seed})", box=box.SIMPLE_HEAVY)
    table.add_column("Run", style="bold cyan")
    table.add_column("Status")
    table.add_column("Steps")
    for run_id in sorted(finished)[:runs]:
        details = finished[run_id]
        steps = ", ".join(f"{name}: {status} ({duration}s)" for name, status, duration in details["steps"])
        table.add_row(f"#{run_id}", _styled(details["status"]), steps)
    console.print(table)
    for metric in engine.get_metrics():
        console.print(f"[blue]{metric.label}:[/blue] {metric.value} ({metric.trend or '0'})")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8080, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Start the FlowOps API server."""
    import uvicorn

    uvicorn.run("flowops.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
