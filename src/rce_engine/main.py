"""
RCE Engine - CLI Entry Point.

Configuration Priority:
    1. CLI arguments (--url, --headless, etc.)
    2. Environment variables (RCE__RECORDER__URL, etc.)
    3. Config file (rce.config.yaml)

Usage:
    rce dev --url http://localhost:5173
    rce action browser_click --args '{"selector": "#submit"}'
    rce shot --at +1500
    rce screenshot
    rce stop
"""

import asyncio
import json
import sys
from typing import Any, Dict, NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rce_engine import __version__
from rce_engine.config import Settings, load_config
from rce_engine.control.client import ControlClient
from rce_engine.exceptions import ConfigurationError, NoActiveSessionError, NotRunningError, RCEError
from rce_engine.recorder import Recorder
from rce_engine.replay import PlaywrightReplayer, TimeTravelService
from rce_engine.session import RunMeta, SessionLifecycleManager, Workspace
from rce_engine.timeline.resolver import IndexLocator, Locator, TimestampLocator, parse_locator
from rce_engine.utils.logging import setup_logging

# Create the CLI app
app = typer.Typer(
    name="rce",
    help="Record a browser session and travel back to any frame of it",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)

NOT_RUNNING_MESSAGE = "Recorder not running. Start a recording session with 'rce dev' first."

_options: Dict[str, Any] = {"config": None, "verbose": False}


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
):
    """RCE - browser session recorder with time travel."""
    _options["config"] = config
    _options["verbose"] = verbose


def _load_settings(**overrides: Any) -> Settings:
    try:
        settings = load_config(config_path=_options["config"], **overrides)
    except ConfigurationError as e:
        _fail(e.message, code=e.code)
    level = "DEBUG" if _options["verbose"] or settings.debug else settings.logging.level
    setup_logging(level=level, log_file=settings.logging.file, json_format=settings.logging.json_format)
    return settings


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _fail(message: str, as_json: bool = False, code: Optional[str] = None) -> NoReturn:
    if as_json:
        _print_json({"ok": False, "error": message, "code": code})
    else:
        err_console.print(f"[red]✗ {escape(message)}[/red]")
    raise typer.Exit(1)


def _run(coro: Any, as_json: bool = False) -> Any:
    """Run a coroutine, turning engine errors into a message and exit code 1."""
    try:
        return asyncio.run(coro)
    except NotRunningError:
        _fail(NOT_RUNNING_MESSAGE, as_json, NotRunningError.code)
    except RCEError as e:
        _fail(e.message, as_json, e.code)


def _locator(index: Optional[int], ts: Optional[int], at: Optional[str], as_json: bool) -> Locator:
    given = [value for value in (index, ts, at) if value is not None]
    if len(given) != 1:
        _fail("Provide exactly one of --index, --ts or --at", as_json, "invalid_locator")
    if index is not None:
        return IndexLocator(i=index)
    if ts is not None:
        return TimestampLocator(ts=ts)
    try:
        return parse_locator(at)
    except RCEError as e:
        _fail(e.message, as_json, e.code)


def _service(settings: Settings) -> TimeTravelService:
    """Time-travel service over the run the workspace points to."""
    workspace = Workspace.from_settings(settings)
    run = workspace.current_run()
    if run is None:
        raise NoActiveSessionError("No active run. Start a recording session with 'rce dev' first.")
    return TimeTravelService(run, replayer=PlaywrightReplayer(settings.browser))


# Recording


def _dev(
    restart: bool,
    url: Optional[str],
    server_cmd: Optional[str],
    boot_wait: Optional[int],
    headless: Optional[bool],
    clear_state: bool,
    port: Optional[int],
    as_json: bool,
) -> None:
    overrides: Dict[str, Any] = {"recorder": {}, "browser": {}, "lifecycle": {}}
    if url is not None:
        overrides["recorder"]["url"] = url
    if server_cmd is not None:
        overrides["recorder"]["server_cmd"] = server_cmd
    if boot_wait is not None:
        overrides["recorder"]["boot_wait_ms"] = boot_wait
    if headless is not None:
        overrides["browser"]["headless"] = headless
    if port is not None:
        overrides["lifecycle"]["port"] = port
    settings = _load_settings(**{key: value for key, value in overrides.items() if value})

    recorder = Recorder(settings)
    if clear_state and recorder.workspace.clear_storage_state():
        err_console.print("[dim]Cleared saved browser state[/dim]")

    def on_started(meta: RunMeta) -> None:
        if as_json:
            _print_json({"ok": True, **meta.to_dict()})
        else:
            console.print(f"[green]✓ Recording[/green] {meta.url or '(no url)'}")
            console.print(f"  [dim]Run:[/dim] {meta.run_id}")
            console.print(f"  [dim]Files in:[/dim] {meta.run_dir}")

    report = _run(recorder.run(restart=restart, on_started=on_started), as_json)
    if not report.ok:
        for outcome in report.failed:
            err_console.print(f"[yellow]⚠ Teardown step '{outcome.name}' failed: {escape(str(outcome.error))}[/yellow]")
        raise typer.Exit(1)


@app.command()
def dev(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Start URL for the primary tab"),
    server_cmd: Optional[str] = typer.Option(None, "--server-cmd", help="App dev server command ('none' disables)"),
    boot_wait: Optional[int] = typer.Option(None, "--boot-wait", help="Milliseconds to wait after starting the server"),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="Run the browser headless"),
    clear_state: bool = typer.Option(False, "--clear-state", help="Forget saved cookies and storage first"),
    port: Optional[int] = typer.Option(None, "--port", help="TCP port that must be free before starting"),
    as_json: bool = typer.Option(False, "--json", help="Print run metadata as JSON"),
):
    """
    Start a recording session and keep it running until Ctrl+C or 'rce stop'.

    Examples:
        rce dev --url http://localhost:5173
        rce dev --server-cmd "npm run dev" --boot-wait 3000
    """
    _dev(False, url, server_cmd, boot_wait, headless, clear_state, port, as_json)


@app.command()
def restart(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Start URL for the primary tab"),
    server_cmd: Optional[str] = typer.Option(None, "--server-cmd", help="App dev server command ('none' disables)"),
    boot_wait: Optional[int] = typer.Option(None, "--boot-wait", help="Milliseconds to wait after starting the server"),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="Run the browser headless"),
    clear_state: bool = typer.Option(False, "--clear-state", help="Forget saved cookies and storage first"),
    port: Optional[int] = typer.Option(None, "--port", help="TCP port that must be free before starting"),
    as_json: bool = typer.Option(False, "--json", help="Print run metadata as JSON"),
):
    """Stop the current session (if any) and record a fresh run."""
    _dev(True, url, server_cmd, boot_wait, headless, clear_state, port, as_json)


@app.command()
def stop(
    as_json: bool = typer.Option(False, "--json", help="Print the teardown report as JSON"),
):
    """Stop the recording session of this workspace."""
    settings = _load_settings()
    manager = SessionLifecycleManager(Workspace.from_settings(settings), settings.lifecycle)
    report = _run(manager.stop(), as_json)

    if as_json:
        _print_json({"ok": report.ok, **report.to_dict()})
    elif report.ok:
        console.print("[green]✓ Stopped[/green]")
    else:
        for outcome in report.failed:
            err_console.print(f"[yellow]⚠ {outcome.name}: {escape(str(outcome.error))}[/yellow]")
    if not report.ok:
        raise typer.Exit(1)


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print status as JSON"),
):
    """Show the current run and its processes."""
    settings = _load_settings()
    manager = SessionLifecycleManager(Workspace.from_settings(settings), settings.lifecycle)
    info = manager.status()

    if as_json:
        _print_json(info)
        return

    if not info["run"]:
        console.print("[dim]No run recorded in this workspace[/dim]")
        return

    label = "[green]running[/green]" if info["running"] else "[dim]stopped[/dim]"
    console.print(f"Run {info['run']} ({label})")
    console.print(f"  [dim]Files in:[/dim] {info['runDir']}")

    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Process", style="dim")
    table.add_column("PID")
    table.add_column("Alive")
    for name, proc in info["processes"].items():
        alive = "[green]yes[/green]" if proc["alive"] else "[red]no[/red]"
        table.add_row(name, str(proc["pid"] or "-"), alive if proc["pid"] else "-")
    console.print(table)


# Time travel


@app.command()
def frames(
    tab: Optional[int] = typer.Option(None, "--tab", "-t", help="Only frames of this tab"),
    as_json: bool = typer.Option(False, "--json", help="Print frames as JSON"),
):
    """List the indexed frames of the current run."""
    settings = _load_settings()

    async def _frames():
        service = _service(settings)
        try:
            return service.frames(tab)
        finally:
            await service.close()

    entries = _run(_frames(), as_json)
    if as_json:
        _print_json([entry.to_dict() for entry in entries])
        return
    for entry in entries:
        typer.echo(f"{entry.key}  i={entry.i} tab={entry.tab_id}")


@app.command()
def tabs(
    as_json: bool = typer.Option(False, "--json", help="Print tabs as JSON"),
):
    """List the tabs seen during the current run."""
    settings = _load_settings()

    async def _tabs():
        service = _service(settings)
        try:
            return service.tabs()
        finally:
            await service.close()

    found = _run(_tabs(), as_json)
    if as_json:
        _print_json([tab.to_dict() for tab in found])
        return
    for tab in found:
        typer.echo(f"  Tab {tab.tab_id}: {tab.url}")


@app.command()
def resolve(
    index: Optional[int] = typer.Option(None, "--index", "-i", help="Frame position"),
    ts: Optional[int] = typer.Option(None, "--ts", help="Epoch milliseconds"),
    at: Optional[str] = typer.Option(None, "--at", help="Locator: ts#k, +offset, epoch ms or ISO-8601"),
    tab: Optional[int] = typer.Option(None, "--tab", "-t", help="Resolve within this tab"),
    as_json: bool = typer.Option(False, "--json", help="Print the resolution as JSON"),
):
    """Resolve a locator to a frame of the current run."""
    locator = _locator(index, ts, at, as_json)
    settings = _load_settings()

    async def _resolve():
        service = _service(settings)
        try:
            return service.resolve(locator, tab)
        finally:
            await service.close()

    resolution = _run(_resolve(), as_json)
    if as_json:
        _print_json(resolution.to_dict())
        return
    typer.echo(f"{resolution.frame.key}  i={resolution.index} tab={resolution.tab_id}")


@app.command()
def shot(
    index: Optional[int] = typer.Option(None, "--index", "-i", help="Frame position"),
    ts: Optional[int] = typer.Option(None, "--ts", help="Epoch milliseconds"),
    at: Optional[str] = typer.Option(None, "--at", help="Locator: ts#k, +offset, epoch ms or ISO-8601"),
    tab: Optional[int] = typer.Option(None, "--tab", "-t", help="Resolve within this tab"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output PNG path"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Render a past frame of the current run to a PNG."""
    locator = _locator(index, ts, at, as_json)
    settings = _load_settings()

    async def _shot():
        service = _service(settings)
        try:
            resolution = service.resolve(locator, tab)
            path = await service.shot(resolution, out=out)
            return resolution, path
        finally:
            await service.close()

    resolution, path = _run(_shot(), as_json)
    if as_json:
        _print_json({"ok": True, "path": str(path), "frame": resolution.to_dict()})
        return
    typer.echo(str(path))


@app.command()
def html(
    index: Optional[int] = typer.Option(None, "--index", "-i", help="Frame position"),
    ts: Optional[int] = typer.Option(None, "--ts", help="Epoch milliseconds"),
    at: Optional[str] = typer.Option(None, "--at", help="Locator: ts#k, +offset, epoch ms or ISO-8601"),
    tab: Optional[int] = typer.Option(None, "--tab", "-t", help="Resolve within this tab"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output HTML path"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Rebuild the DOM of a past frame and save it as HTML."""
    locator = _locator(index, ts, at, as_json)
    settings = _load_settings()

    async def _html():
        service = _service(settings)
        try:
            resolution = service.resolve(locator, tab)
            snapshot = await service.html(resolution, out=out)
            return resolution, snapshot
        finally:
            await service.close()

    resolution, snapshot = _run(_html(), as_json)
    if as_json:
        _print_json({"ok": True, "path": snapshot["path"], "bytes": snapshot["bytes"], "frame": resolution.to_dict()})
        return
    typer.echo(snapshot["path"])


@app.command()
def screenshot(
    tab: Optional[int] = typer.Option(None, "--tab", "-t", help="Latest screenshot of this tab"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Print the path of the live view's latest screenshot."""
    settings = _load_settings()
    run = Workspace.from_settings(settings).current_run()
    if run is None:
        _fail("No active run. Start a recording session with 'rce dev' first.", as_json, NoActiveSessionError.code)

    path = run.latest_screenshot(tab)
    if not path.is_file():
        _fail("No latest screenshot available", as_json, "not_found")
    if as_json:
        _print_json({"ok": True, "path": str(path)})
        return
    typer.echo(str(path))


# Control channel


def _client(settings: Settings) -> ControlClient:
    return ControlClient(
        Workspace.from_settings(settings).socket_path,
        request_timeout_s=settings.control.request_timeout_s,
        ping_timeout_s=settings.control.ping_timeout_s,
    )


@app.command()
def action(
    tool: str = typer.Argument(..., help="Command name, e.g. browser_click"),
    args: Optional[str] = typer.Option(None, "--args", "-a", help="JSON arguments (read from stdin if omitted)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait for the reply"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw response as JSON"),
):
    """
    Send one command to the running recorder.

    Examples:
        rce action browser_navigate --args '{"url": "http://localhost:5173/login"}'
        echo '{"selector": "#submit"}' | rce action browser_click
    """
    if args is None and not sys.stdin.isatty():
        args = sys.stdin.read().strip() or None
    try:
        payload = json.loads(args) if args else {}
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON for --args: {e}", as_json, "protocol_error")
    if not isinstance(payload, dict):
        _fail("--args must be a JSON object", as_json, "protocol_error")

    settings = _load_settings()

    async def _action():
        client = _client(settings)
        await client.connect(retries=settings.control.connect_retries)
        try:
            return await client.send_action(tool, payload, timeout_s=timeout)
        finally:
            await client.close()

    response = _run(_action(), as_json)
    if as_json:
        _print_json(response.model_dump(exclude_none=True))
        if not response.ok:
            raise typer.Exit(1)
        return

    if not response.ok:
        if response.code == NotRunningError.code:
            _fail(NOT_RUNNING_MESSAGE)
        _fail(response.error or "Action failed")
    console.print("[green]✓ Action executed successfully[/green]")
    if response.result is not None:
        _print_json(response.result)


@app.command()
def ping():
    """Check that the recorder answers on the control channel."""
    settings = _load_settings()

    async def _ping():
        client = _client(settings)
        await client.connect()
        try:
            return await client.ping()
        finally:
            await client.close()

    if not _run(_ping()):
        _fail("Recorder did not answer the ping")
    console.print("[green]✓ pong[/green]")


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]RCE Engine[/bold] v{__version__}")


if __name__ == "__main__":
    app()
