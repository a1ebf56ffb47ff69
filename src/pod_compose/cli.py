"""
pod-compose command line: up, stop, down, build.
"""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from .adapters import connect
from .composer import Composer
from .errors import ComposeError, CycleError, RuntimeConnectionError, SpecError
from .loader import find_compose_file, load_project
from .report import RunReport
from .scheduler import Scheduler
from .settings import get_settings

console = Console()

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="A docker-compose compatible tool that reconciles running containers with a compose file.",
)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, get_settings().LOG_LEVEL.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    file: Path | None = typer.Option(
        None, "--file", "-f", help="Compose file, searched upwards from cwd by default"
    ),
    project_name: str | None = typer.Option(
        None, "--project-name", "-p", help="Defaults to the compose file's directory name"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    _configure_logging(verbose)
    ctx.obj = {"file": file, "project_name": project_name}


def _composer(ctx: typer.Context, workers: int | None = None, timeout: int | None = None) -> Composer:
    settings = get_settings()
    path = ctx.obj["file"] or find_compose_file()
    project = load_project(path, ctx.obj["project_name"])

    adapter = connect(settings)
    scheduler = Scheduler(
        adapter,
        max_workers=workers or settings.MAX_WORKERS,
        stop_timeout=settings.STOP_TIMEOUT if timeout is None else timeout,
        deadline=settings.DEADLINE,
        console=console,
    )
    return Composer(project, adapter, scheduler, console=console)


def _run(
    ctx: typer.Context,
    command: Callable[[Composer], RunReport],
    workers: int | None = None,
    timeout: int | None = None,
) -> None:
    try:
        composer = _composer(ctx, workers, timeout)

        def handle_signal(signum, frame):
            """Stops dispatching; whatever is already talking to the runtime finishes."""
            console.print(
                f"\n[bold orange1]🛑 Signal {signum} received. Finishing in-flight actions...[/bold orange1]"
            )
            composer.scheduler.cancel()

        previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            report = command(composer)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
    except CycleError as e:
        console.print(Panel.fit(f"[bold red]{e}[/bold red]", title="Dependency cycle"))
        raise typer.Exit(code=1)
    except SpecError as e:
        console.print(f"[bold red]Fatal: {e}[/bold red]")
        raise typer.Exit(code=1)
    except RuntimeConnectionError as e:
        console.print(f"[bold red]CRITICAL: Could not connect to the container runtime.[/bold red] {e}")
        raise typer.Exit(code=1)
    except ComposeError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1)

    report.render(console)
    raise typer.Exit(code=report.exit_code)


@app.command()
def up(
    ctx: typer.Context,
    detach: bool = typer.Option(True, "--detach", "-d", help="Start containers in the background (the only mode)"),
    build: bool = typer.Option(False, "--build", help="Build images before starting the containers"),
    remove_orphans: bool = typer.Option(
        False, "--remove-orphans", help="Remove containers of services no longer in the file"
    ),
    timeout: int | None = typer.Option(None, "--timeout", "-t", help="Seconds to wait when stopping a container"),
    workers: int | None = typer.Option(None, "--workers", "-w", help="Concurrent runtime calls"),
) -> None:
    """Create and start containers, recreating only those whose configuration changed."""
    _run(ctx, lambda c: c.up(remove_orphans=remove_orphans, build=build), workers, timeout)


@app.command()
def stop(
    ctx: typer.Context,
    remove_orphans: bool = typer.Option(False, "--remove-orphans"),
    timeout: int | None = typer.Option(None, "--timeout", "-t"),
    workers: int | None = typer.Option(None, "--workers", "-w"),
) -> None:
    """Stop running containers, dependents first."""
    _run(ctx, lambda c: c.stop(remove_orphans=remove_orphans), workers, timeout)


@app.command()
def down(
    ctx: typer.Context,
    remove_orphans: bool = typer.Option(False, "--remove-orphans"),
    timeout: int | None = typer.Option(None, "--timeout", "-t"),
    workers: int | None = typer.Option(None, "--workers", "-w"),
) -> None:
    """Stop and remove containers, dependents first, then the project network."""
    _run(ctx, lambda c: c.down(remove_orphans=remove_orphans), workers, timeout)


@app.command()
def build(
    ctx: typer.Context,
    pull: bool = typer.Option(False, "--pull", help="Always attempt to pull a newer version of the base images"),
) -> None:
    """Build images for services that declare a build context."""
    _run(ctx, lambda c: c.build(pull=pull))
