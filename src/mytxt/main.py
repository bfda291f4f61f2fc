from dataclasses import dataclass, replace
from pathlib import Path

import click

from mytxt.config import Settings, default_config_path, load_settings
from mytxt.logger import configure as configure_logging

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass
class CliContext:
    settings: Settings
    config_path: Path


@click.group("mytxt")
@click.option(
    "--index-dir",
    "index_dir",
    help="Directory holding the index. Overrides MYTXT_INDEX_DIR and the settings file.",
    type=click.Path(dir_okay=True, file_okay=False, path_type=Path),
    default=None,
)
@click.option(
    "--config",
    "config_path",
    help="Settings file. Overrides MYTXT_CONFIG.",
    type=click.Path(dir_okay=False, file_okay=True, path_type=Path),
    default=None,
)
@click.option(
    "--log-level",
    help="Log level. Overrides MYTXT_LOG_LEVEL.",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
)
@click.pass_context
def main(ctx: click.Context, index_dir: Path | None, config_path: Path | None, log_level: str | None):
    """
    Index a directory of documents and search it.
    """
    configure_logging(log_level)

    if config_path is None:
        config_path = default_config_path()
    settings = load_settings(config_path)
    if index_dir is not None:
        settings = replace(settings, index_dir=index_dir)

    ctx.obj = CliContext(settings=settings, config_path=config_path)


def _make_app(cli: CliContext, settings: Settings | None = None):
    from mytxt.app import App

    return App(settings if settings else cli.settings, config_path=cli.config_path)


@main.command("index")
@click.argument(
    "directory",
    type=click.Path(exists=True, dir_okay=True, file_okay=False, path_type=Path),
)
@click.pass_obj
def index_cmd(cli: CliContext, directory: Path):
    """
    Rebuild the index from every eligible file under DIRECTORY.
    """
    from mytxt.shell import run_indexing

    app = _make_app(cli)
    try:
        ok = run_indexing(app, directory)
    finally:
        app.close()
    if not ok:
        raise click.exceptions.Exit(1)


@main.command("search")
@click.argument("query")
@click.option(
    "--limit",
    "-n",
    help="Maximum number of results.",
    type=click.IntRange(min=1),
    default=None,
)
@click.pass_obj
def search_cmd(cli: CliContext, query: str, limit: int | None):
    """
    Search the index for QUERY.
    """
    from mytxt.shell import run_search

    settings = cli.settings
    if limit is not None:
        settings = replace(settings, result_limit=limit)

    app = _make_app(cli, settings)
    try:
        app.open_existing_index()
        ok = run_search(app, query)
    finally:
        app.close()
    if not ok:
        raise click.exceptions.Exit(1)


@main.command("preview")
@click.argument(
    "path",
    type=click.Path(exists=True, dir_okay=False, file_okay=True, path_type=Path),
)
@click.argument("query", required=False, default="")
def preview_cmd(path: Path, query: str):
    """
    Show the text extracted from PATH, highlighting QUERY.
    """
    from mytxt.shell import run_preview

    if not run_preview(path, query):
        raise click.exceptions.Exit(1)


@main.command("shell")
@click.pass_obj
def shell_cmd(cli: CliContext):
    """
    Run the interactive shell.
    """
    from mytxt.shell import run_shell

    app = _make_app(cli)
    try:
        app.open_existing_index()
        run_shell(app)
    finally:
        app.close()


if __name__ == "__main__":
    main()
