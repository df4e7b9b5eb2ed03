"""Main entry point for the Qwen proxy."""

import os
from pathlib import Path
from typing import Annotated

import typer
import uvicorn

from qwenproxy._version import __version__
from qwenproxy.config.settings import ConfigurationError, Settings
from qwenproxy.core.logging import get_logger, setup_logging


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"qwenproxy {__version__}")
        raise typer.Exit()


def validate_log_level(value: str | None) -> str | None:
    if value is None:
        return None

    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in valid_levels:
        raise typer.BadParameter(f"Log level must be one of: {', '.join(valid_levels)}")
    return value.upper()


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)


@app.callback()
def app_main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """OpenAI-compatible proxy for the Qwen chat service."""


@app.command()
def serve(
    host: Annotated[
        str | None, typer.Option("--host", help="Host to bind the server to")
    ] = None,
    port: Annotated[
        int | None,
        typer.Option(
            "--port", "-p", min=1, max=65535, help="Port to run the server on"
        ),
    ] = None,
    reload: Annotated[
        bool | None,
        typer.Option("--reload/--no-reload", help="Enable auto-reload for development"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            callback=validate_log_level,
            help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        ),
    ] = None,
    json_logs: Annotated[
        bool | None,
        typer.Option("--json-logs/--console-logs", help="Log output format"),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to a TOML configuration file",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
) -> None:
    """Run the proxy server."""
    try:
        settings = Settings.from_config(config_path=config)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from e

    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port
    if reload is not None:
        settings.server.reload = reload
    if log_level is not None:
        settings.logging.level = log_level
    if json_logs is not None:
        settings.logging.format = "json" if json_logs else "console"

    use_json = settings.logging.format == "json" or (
        settings.logging.format == "auto" and not os.isatty(2)
    )
    setup_logging(json_logs=use_json, log_level_name=settings.logging.level)
    logger = get_logger(__name__)

    logger.info(
        "server_config",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.reload,
        url=settings.server_url,
    )

    if settings.server.reload:
        # The reloader imports the app in a fresh process, so the config
        # path has to travel through the environment.
        if config is not None:
            os.environ["CONFIG_FILE"] = str(config)
        uvicorn.run(
            "qwenproxy.api.app:create_app",
            factory=True,
            host=settings.server.host,
            port=settings.server.port,
            reload=True,
            reload_includes=["qwenproxy"],
            log_config=None,
            access_log=False,
        )
        return

    from qwenproxy.api.app import create_app

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
        access_log=False,
    )


def main() -> None:
    """Entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
