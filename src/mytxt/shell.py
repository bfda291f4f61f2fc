"""Terminal front end: rendering and the interactive shell loop."""

import html
import re
import shlex
from pathlib import Path

import click

from mytxt.app import App, Indexing, SearchView
from mytxt.index.extractors import ExtractError, TextExtractor
from mytxt.index.messages import IndexProgressMessage
from mytxt.logger import logging

logger = logging.getLogger(__name__)

PROGRESS_STEPS = 1000
_HIGHLIGHT_RE = re.compile(r"<b>(.*?)</b>", re.DOTALL)

SHELL_HELP = """\
Commands:
  index DIRECTORY       rebuild the index from DIRECTORY
  search QUERY          search the index (Ctrl-C cancels)
  preview PATH [QUERY]  show the text of PATH, highlighting QUERY
  set KEY VALUE         change a setting
  settings              show the current settings
  help                  show this help
  quit                  leave the shell"""


def highlight(text: str) -> str:
    return click.style(text, fg="red", bold=True)


def render_snippet(snippet_html: str) -> str:
    """Turn a ``<b>``-highlighted snippet into styled terminal text on one line."""
    parts = []
    position = 0
    for match in _HIGHLIGHT_RE.finditer(snippet_html):
        parts.append(html.unescape(snippet_html[position : match.start()]))
        parts.append(highlight(html.unescape(match.group(1))))
        position = match.end()
    parts.append(html.unescape(snippet_html[position:]))
    return " ".join("".join(parts).split())


def render_preview(content: str, query: str) -> str:
    """Highlight case-insensitive occurrences of ``query`` in ``content``."""
    query = query.strip()
    if not query:
        return content
    pattern = re.compile(re.escape(query), re.IGNORECASE)
    return pattern.sub(lambda match: highlight(match.group(0)), content)


def echo_search_view(view: SearchView):
    if view.error is not None:
        click.echo(f"Search Error: {view.error}", err=True)
        return
    if view.cancelled:
        click.echo("Search cancelled.")
        return

    duration = f" ({view.duration:.2f}s)" if view.duration is not None else ""
    click.echo(f"{len(view.results)} results{duration}")
    if not view.results:
        click.echo("No results.")
    for result in view.results:
        click.echo(click.style(result.path, bold=True))
        click.echo("  " + render_snippet(result.snippet_html))


def run_indexing(app: App, directory: Path) -> bool:
    """Index ``directory`` with a progress bar. Returns True on success."""
    if not app.start_indexing(directory):
        click.echo(f"Indexing Error: {app.index_error}", err=True)
        return False

    with click.progressbar(length=PROGRESS_STEPS, label="Indexing") as bar:

        def on_message(message):
            if isinstance(message, IndexProgressMessage):
                bar.update(int(message.fraction * PROGRESS_STEPS) - bar.pos)

        app.wait_for_indexing(on_message=on_message)

    if app.index_error is not None:
        click.echo(f"Indexing Error: {app.index_error}", err=True)
        return False
    click.echo("Indexing completed.")
    return True


def run_search(app: App, query: str) -> bool:
    """Search and print the results. Returns False on a search error."""
    handle = app.start_search(query)
    if handle is None:
        click.echo("Search Error: A search is already in progress", err=True)
        return False
    try:
        app.wait_for_search()
    except KeyboardInterrupt:
        app.request_cancel(handle)
        app.wait_for_search()
    echo_search_view(app.search)
    return app.search.error is None


def run_preview(path: Path, query: str = "") -> bool:
    try:
        content = TextExtractor().extract(path)
    except ExtractError as e:
        click.echo(f"Failed to read file for preview: {e}", err=True)
        return False
    click.echo(render_preview(content, query))
    return True


def _shell_index(app: App, argument: str):
    try:
        args = shlex.split(argument)
    except ValueError as e:
        click.echo(f"Invalid arguments: {e}", err=True)
        return
    if len(args) != 1:
        click.echo("Usage: index DIRECTORY", err=True)
        return
    try:
        run_indexing(app, Path(args[0]))
    except KeyboardInterrupt:
        click.echo("\nIndexing continues in the background.")


def _shell_search(app: App, argument: str):
    if not argument:
        click.echo("Usage: search QUERY", err=True)
        return
    run_search(app, argument)


def _shell_preview(app: App, argument: str):
    try:
        args = shlex.split(argument)
    except ValueError as e:
        click.echo(f"Invalid arguments: {e}", err=True)
        return
    if not args:
        click.echo("Usage: preview PATH [QUERY]", err=True)
        return
    run_preview(Path(args[0]), " ".join(args[1:]))


def _shell_set(app: App, argument: str):
    key, _, value = argument.partition(" ")
    if not key or not value.strip():
        click.echo("Usage: set KEY VALUE", err=True)
        return
    try:
        app.change_setting(key, value.strip())
    except ValueError as e:
        click.echo(str(e), err=True)
        return
    app.poll()
    click.echo(f"{key} updated.")


def _shell_settings(app: App, argument: str):
    for key, value in app.settings.to_dict().items():
        click.echo(f"{key} = {value}")


def _shell_help(app: App, argument: str):
    click.echo(SHELL_HELP)


SHELL_COMMANDS = {
    "index": _shell_index,
    "search": _shell_search,
    "preview": _shell_preview,
    "set": _shell_set,
    "settings": _shell_settings,
    "help": _shell_help,
}


def run_shell(app: App):
    click.echo("mytxt shell. Type 'help' for commands.")
    while True:
        app.poll()
        if isinstance(app.state, Indexing):
            click.echo(f"Indexing... {app.state.progress:.0%}")

        try:
            line = click.prompt("mytxt", prompt_suffix="> ", default="", show_default=False)
        except click.Abort:
            click.echo()
            break

        command, _, argument = line.strip().partition(" ")
        if not command:
            continue
        if command in ("quit", "exit"):
            break

        handler = SHELL_COMMANDS.get(command)
        if handler is None:
            click.echo(f"Unknown command: {command}. Type 'help' for commands.", err=True)
            continue
        handler(app, argument.strip())
