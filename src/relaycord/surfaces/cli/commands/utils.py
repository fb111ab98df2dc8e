from __future__ import annotations

import importlib.metadata
import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer

from ....core.config import ConfigError, find_config_path, load_config_data
from ....core.logging_utils import setup_logger
from ....discord.config import ClientConfig
from ....discord.errors import ClientConfigError

logger = logging.getLogger("relaycord.cli")


def get_relaycord_version() -> str:
    try:
        return importlib.metadata.version("relaycord")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def load_client_config(path: Optional[Path]) -> ClientConfig:
    """Read the client config from `path`, or the nearest config file above cwd.

    With no config file anywhere, defaults apply and the token still comes from
    the environment.
    """
    config_path = path if path is not None else find_config_path(Path.cwd())
    if config_path is None:
        return ClientConfig.from_raw({})
    try:
        raw = load_config_data(config_path)
        return ClientConfig.from_raw(raw, root=config_path.parent)
    except (ConfigError, ClientConfigError) as exc:
        raise_exit(str(exc), cause=exc)


def configure_logging(config: ClientConfig) -> logging.Logger:
    return setup_logger("relaycord", config.log.level_number, config.log.path)
