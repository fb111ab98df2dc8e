import logging

import typer

from .commands.session import register_session_commands
from .commands.utils import get_relaycord_version
from .commands.utils import (
    raise_exit as _raise_exit,
)

logger = logging.getLogger("relaycord.cli")

app = typer.Typer(add_completion=False)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"relaycord {get_relaycord_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    # `--version` is handled eagerly via `_version_callback`.
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


register_session_commands(app, raise_exit=_raise_exit)
