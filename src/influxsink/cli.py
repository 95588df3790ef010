"""Command-line interface for influxsink.

Commands:
    - check: Validate a sink configuration file
    - ping: Ping the endpoint a configuration file points at
"""

import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from influxsink.config import SinkConfig, parse_duration
from influxsink.connection import create_client
from influxsink.errors import ConfigError, TransportError

app = typer.Typer(
    name="influxsink",
    help="InfluxDB metrics sink tools",
    add_completion=False,
    no_args_is_help=True,
)


ConfigArgument = Annotated[
    Path,
    typer.Argument(help="Path to the sink configuration file (YAML or JSON)"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


def _load_config(path: Path) -> SinkConfig:
    try:
        return SinkConfig.from_file(path)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _flatten(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    rows = []
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            rows.extend(_flatten(value, f"{name}."))
        else:
            rows.append((name, "" if value == {} else str(value)))
    return rows


@app.command(name="check")
def check_cmd(config_file: ConfigArgument, verbose: VerboseOption = False) -> None:
    """Validate a configuration file and show the resolved settings."""
    _setup_logging(verbose)
    config = _load_config(config_file)

    table = Table(title=f"Sink configuration: {config_file}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in _flatten(config.to_dict(mask_secrets=True)):
        table.add_row(name, value)
    Console().print(table)

    errors = config.validate()
    if errors:
        for error in errors:
            typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(1)

    typer.echo("Configuration is valid")


@app.command(name="ping")
def ping_cmd(
    config_file: ConfigArgument,
    timeout: Annotated[
        Optional[str],
        typer.Option("--timeout", "-t", help="Ping timeout, defaults to the configured timeout"),
    ] = None,
    verbose: VerboseOption = False,
) -> None:
    """Ping the endpoint configured in a configuration file."""
    _setup_logging(verbose)
    config = _load_config(config_file)

    try:
        timeout_seconds = parse_duration(timeout or config.timeout)
        client = create_client(config)
    except (ConfigError, TransportError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    try:
        rtt, version = client.ping(timeout_seconds)
    except TransportError as e:
        typer.echo(f"Error: ping failed: {e}", err=True)
        raise typer.Exit(1)
    finally:
        client.close()

    typer.echo(f"Pinged {config.url} in {rtt * 1000:.1f}ms")
    if version:
        typer.echo(f"  Version: {version}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
