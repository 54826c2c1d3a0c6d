"""Thin CLI wrapper for pctl.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console

from pctl import __version__
from pctl.builds import BuildFailedError, BuildOrchestrator
from pctl.builds.logger import ConsoleBuildLogger
from pctl.compose import (
    ComposeError,
    find_services_with_build,
    parse_compose,
    transform_compose,
)
from pctl.config import (
    CONFIG_FILENAME,
    BuildConfig,
    ConfigError,
    Settings,
    default_stack_name,
    get_settings,
    load_settings,
    print_settings_json,
)
from pctl.portainer import PortainerClient

app = typer.Typer(
    name="pctl",
    help="pctl - build Compose service images on a Portainer-managed Docker host",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"pctl version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send library logging to stderr at the configured level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(config_path: Path | None) -> Settings:
    """Load settings from an explicit file, ./pctl.yml, or the environment."""
    try:
        if config_path is not None:
            return load_settings(config_path)
        if Path(CONFIG_FILENAME).exists():
            return load_settings(CONFIG_FILENAME)
        return get_settings()
    except ValidationError as e:
        err_console.print(f"[red]Error: invalid configuration: {e}[/red]")
        raise typer.Exit(code=1) from None
    except ConfigError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """pctl - build Compose service images on a Portainer-managed Docker host."""


ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help=f"Configuration file (default: {CONFIG_FILENAME})"),
]


@app.command()
def config(
    config_path: ConfigOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load(config_path)
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    build = settings.build
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Portainer:[/bold]")
    console.print(f"  URL:                 {settings.portainer_url or '(not set)'}")
    console.print(f"  API token:           {'********' if settings.api_token else '(not set)'}")
    console.print(f"  Environment ID:      {settings.environment_id}")
    console.print(f"  Skip TLS verify:     {settings.skip_tls_verify}")
    console.print()
    console.print("[bold]Stack:[/bold]")
    console.print(f"  Stack name:          {settings.stack_name or default_stack_name()}")
    console.print(f"  Compose file:        {settings.compose_file}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Mode:                {build.mode.value}")
    console.print(f"  Parallel:            {build.parallel}")
    console.print(f"  Tag format:          {build.tag_format}", markup=False)
    console.print(f"  Platforms:           {', '.join(build.platforms)}")
    console.print(f"  Force build:         {build.force_build}")
    console.print(f"  Warn threshold (MB): {build.warn_threshold_mb}")
    if build.extra_build_args:
        console.print("  Extra build args:")
        for key, value in sorted(build.extra_build_args.items()):
            console.print(f"    {key}={value}", markup=False)


def _apply_overrides(
    build: BuildConfig,
    force: bool,
    mode: str | None,
    parallel: str | None,
) -> BuildConfig:
    overrides: dict[str, Any] = {}
    if force:
        overrides["force_build"] = True
    if mode is not None:
        overrides["mode"] = mode
    if parallel is not None:
        overrides["parallel"] = parallel
    if not overrides:
        return build

    try:
        return BuildConfig.model_validate({**build.model_dump(), **overrides})
    except ValidationError as e:
        err_console.print(f"[red]Error: invalid build option: {e}[/red]")
        raise typer.Exit(code=1) from None


@app.command()
def build(
    config_path: ConfigOption = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Rebuild even if the image tag exists"),
    ] = False,
    mode: Annotated[
        str | None,
        typer.Option("--mode", "-m", help="Build mode: remote-build or load"),
    ] = None,
    parallel: Annotated[
        str | None,
        typer.Option("--parallel", "-p", help="'auto' or a positive integer"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the transformed Compose file here"),
    ] = None,
) -> None:
    """Build images for every Compose service with a build directive.

    Unchanged services are skipped. On success the Compose file is printed
    (or written to --output) with each build directive replaced by its
    image tag. If any service fails, nothing is written and the exit code is 1.
    """
    settings = _load(config_path)
    configure_logging(settings.log_level)

    build_config = _apply_overrides(settings.build, force, mode, parallel)
    if not settings.stack_name:
        settings = settings.model_copy(update={"stack_name": default_stack_name()})

    try:
        settings.require_connection()
    except ConfigError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    compose_path = Path(settings.compose_file)
    try:
        content = compose_path.read_text(encoding="utf-8")
    except OSError as e:
        err_console.print(f"[red]Error: failed to read compose file: {e}[/red]")
        raise typer.Exit(code=1) from None

    try:
        services = find_services_with_build(
            parse_compose(content), compose_path.parent
        )
    except ComposeError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    if not services:
        err_console.print("[yellow]No services with build directives found[/yellow]")

    build_logger = ConsoleBuildLogger(console=err_console)
    with PortainerClient(
        settings.portainer_url,
        settings.api_token,
        skip_tls_verify=settings.skip_tls_verify,
        timeout=settings.request_timeout,
    ) as client:
        orchestrator = BuildOrchestrator(
            client,
            build_config,
            settings.environment_id,
            settings.stack_name,
            build_logger,
        )
        try:
            image_tags = orchestrator.build_services(services)
        except BuildFailedError as e:
            logger.debug("Build run failed", exc_info=True)
            err_console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(code=1) from None

    try:
        result = transform_compose(content, image_tags)
    except ComposeError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    err_console.print(result.summary(), markup=False)

    if output is not None:
        output.write_text(result.content, encoding="utf-8")
        err_console.print(f"[green]Wrote {output}[/green]")
    else:
        typer.echo(result.content, nl=False)


__all__ = ["app", "configure_logging"]
