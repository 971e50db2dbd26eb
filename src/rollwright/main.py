"""Command line entry point.

Usage:
    rollwright deploy svc-a staging --sha def456
    rollwright release svc-a production --image localhost/svc-a:build
    rollwright rollback svc-a production --reason "error rate"
    rollwright product-release -e staging -e production
    rollwright tags svc-a
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from rollwright.cli import release as release_cli
from rollwright.config import RollwrightConfig, load_config
from rollwright.logging import set_correlation_id, setup_logging

app = typer.Typer(
    name="rollwright",
    help="Rollwright: GitOps release orchestration",
    no_args_is_help=True,
)

app.command("deploy")(release_cli.deploy)
app.command("release")(release_cli.release)
app.command("rollback")(release_cli.rollback)
app.command("product-release")(release_cli.product_release)
app.command("tags")(release_cli.tags)
app.command("status")(release_cli.status)

console = Console()


class AppContext:
    """State the callback prepares for the release commands.

    Attributes:
        config: Validated configuration for this invocation
        correlation_id: Id stamped on every log line of this invocation
    """

    def __init__(self, config: RollwrightConfig, correlation_id: str):
        self.config = config
        self.correlation_id = correlation_id


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Return the context prepared by the CLI callback.

    Raises:
        RuntimeError: If no command callback has run yet
    """
    if _app_context is None:
        raise RuntimeError("CLI context missing: the rollwright callback has not run")
    return _app_context


def initialize_context(config: RollwrightConfig) -> AppContext:
    global _app_context
    correlation_id = uuid.uuid4().hex[:12]
    set_correlation_id(correlation_id)
    _app_context = AppContext(config, correlation_id)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Rollwright TOML file (default: ./rollwright.toml, then ~/.config/rollwright/config.toml)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log at DEBUG level"),
    ] = False,
) -> None:
    """Load configuration and set up logging before any command runs."""
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging = config.logging.model_copy(update={"level": "DEBUG"})

    setup_logging(config.logging)
    initialize_context(config)


if __name__ == "__main__":
    app()
