"""shipyard command-line interface.

- `shipyard serve`: Run the deployment controller HTTP server
- `shipyard services`: List services from the data directory
- `shipyard token`: Print a signed API token

Example:
    $ shipyard serve --config shipyard.yaml --port 3000
    $ shipyard services --config shipyard.yaml
    $ TOKEN=$(shipyard token)
"""

import logging
from pathlib import Path

import typer
from rich.table import Table

from shipyard import __version__
from shipyard.cli_utils import EXIT_ERROR, EXIT_SUCCESS, console, load_config_or_exit
from shipyard.core.exceptions import ShipyardError
from shipyard.core.logging_setup import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="shipyard",
    help="Multi-tenant deployment controller for bundled Node.js services",
    no_args_is_help=True,
)

CONFIG_OPTION_HELP = "Path to config file (default: ./shipyard.yaml if present)"


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"shipyard {__version__}")
        raise typer.Exit(code=EXIT_SUCCESS)


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Multi-tenant deployment controller for bundled Node.js services."""


@app.command(name="serve")
def serve_command(
    config: Path = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    host: str = typer.Option(None, "--host", help="Bind address (overrides config)"),
    port: int = typer.Option(None, "--port", "-p", help="Bind port (overrides config)"),
    data_dir: Path = typer.Option(None, "--data-dir", help="Data directory (overrides config)"),
    log_file: Path = typer.Option(None, "--log-file", help="Also write logs to this file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run the HTTP server.

    Exits with code 2 on configuration errors.
    """
    import uvicorn

    from shipyard.server import create_app

    server_config = load_config_or_exit(
        config,
        {"host": host, "port": port, "data_dir": data_dir},
    )
    setup_logging(verbose=verbose, log_file=log_file)

    console.print(
        f"[bold]shipyard[/bold] {__version__} on http://{server_config.host}:{server_config.port} "
        f"(data: {server_config.data_dir})"
    )
    app_instance = create_app(server_config)
    try:
        uvicorn.run(
            app_instance,
            host=server_config.host,
            port=server_config.port,
            log_config=None,
        )
    except OSError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=EXIT_ERROR) from None


@app.command(name="services")
def services_command(
    config: Path = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    data_dir: Path = typer.Option(None, "--data-dir", help="Data directory (overrides config)"),
) -> None:
    """List services, release counts and active releases.

    Reads metadata directly; runtime status is not queried.
    """
    from shipyard.deploy.metadata_store import MetadataStore
    from shipyard.deploy.registry import ReleaseRegistry

    server_config = load_config_or_exit(config, {"data_dir": data_dir})

    registry = ReleaseRegistry(MetadataStore(server_config.data_dir))
    try:
        registry.load()
    except ShipyardError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=EXIT_ERROR) from None
    except OSError as e:
        console.print(f"[red]Error reading {server_config.data_dir}:[/red] {e}")
        raise typer.Exit(code=EXIT_ERROR) from None

    if not len(registry):
        console.print(f"[dim]No services in {server_config.data_dir}[/dim]")
        raise typer.Exit(code=EXIT_SUCCESS)

    table = Table(title=f"Services in {server_config.data_dir}")
    table.add_column("Service", style="bold")
    table.add_column("Releases", justify="right")
    table.add_column("Active release")
    table.add_column("Created")
    table.add_column("Env vars", justify="right")

    for name in registry.names():
        service = registry.get(name)
        active = service.active_release
        table.add_row(
            name,
            str(len(service.releases)),
            active.id if active else "[dim]-[/dim]",
            active.created_at if active else "",
            str(len(service.env)),
        )

    console.print(table)


@app.command(name="token")
def token_command(
    config: Path = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
) -> None:
    """Print a freshly signed API token.

    Uses the configured jwt_secret; anyone who can read the config can
    mint tokens this way.
    """
    from shipyard.server.auth import TokenService

    server_config = load_config_or_exit(config)
    tokens = TokenService(server_config.jwt_secret, server_config.token_ttl_seconds)
    # Plain print so the token can be captured by shell substitution
    typer.echo(tokens.issue())


def main() -> None:
    """Console-script entry point."""
    app()


if __name__ == "__main__":
    main()
