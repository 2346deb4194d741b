from __future__ import annotations

from functools import partial
from pathlib import Path

import anyio
import typer

from . import __version__
from .config import ConfigError, load_config, load_settings
from .logging import get_logger, setup_logging
from .loop import RelayStartupError, run_relay

logger = get_logger(__name__)


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Telegram relay for Gemini conversations."""


def run(
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Path to chatrelay.toml (defaults to ./.chatrelay or ~/.chatrelay).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log Telegram and Gemini requests.",
    ),
) -> None:
    """Poll Telegram and relay commands to Gemini."""
    setup_logging(debug=debug)
    try:
        settings, config_path = load_settings(config)
        logger.info(
            "config.loaded", path=str(config_path), db_path=str(settings.db_path)
        )
        anyio.run(partial(run_relay, settings))
    except (ConfigError, RelayStartupError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130) from None


def config_path_cmd(
    config: Path | None = typer.Option(None, "--config", help="Explicit path."),
) -> None:
    """Print the config file that `run` would load."""
    try:
        _, path = load_config(config)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(str(path))


def create_app() -> typer.Typer:
    app = typer.Typer(
        add_completion=False,
        help="Telegram relay for Gemini conversations.",
    )
    app.callback()(app_main)
    app.command(name="run")(run)
    app.command(name="config-path")(config_path_cmd)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
