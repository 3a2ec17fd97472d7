"""sitesync CLI - typer application entry point."""

from __future__ import annotations

import asyncio
import atexit
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from sitesync.config import ConfigError, SyncConfig, load_config
from sitesync.graph.errors import SitemapError
from sitesync.graph.models import GraphState, Operation
from sitesync.graph.transform import derive_fields, from_graph, to_graph
from sitesync.observability import (
    close_file_logging,
    configure_logging,
    get_logger,
    target_context,
)
from sitesync.persistence.client import SitemapApiClient

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="sitesync",
    help="sitesync: inspect and diff sitemap graphs.",
    no_args_is_help=True,
)
console = Console()
log = get_logger(__name__)

# Global state set by the callback, used by commands
_config_path: Path | None = None


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_dir: Annotated[
        Path | None,
        typer.Option(
            "--log-dir",
            help="Also write all log events to LOG_DIR/debug.jsonl.",
        ),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="YAML config file.",
            envvar="SITESYNC_CONFIG",
        ),
    ] = None,
) -> None:
    """sitesync: inspect and diff sitemap graphs."""
    global _config_path
    _config_path = config

    if log_dir is not None:
        configure_logging(verbosity=verbose, log_to_file=True, logs_dir=log_dir)
        atexit.register(close_file_logging)
    else:
        configure_logging(verbosity=verbose)


def _load_settings() -> SyncConfig:
    try:
        return load_config(_config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _read_graph(path: Path) -> GraphState:
    """Read a graph (``nodes``/``edges``) or tree JSON file.

    Raises:
        typer.Exit: If the file is missing or not valid.
    """
    if not path.exists():
        console.print(f"[red]Error:[/red] File '{path}' not found")
        raise typer.Exit(1)
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] '{path}' is not valid JSON: {e}")
        raise typer.Exit(1) from e

    if isinstance(data, dict) and "nodes" in data and "edges" in data:
        try:
            state = GraphState.model_validate({"nodes": data["nodes"], "edges": data["edges"]})
        except ValidationError as e:
            console.print(f"[red]Error:[/red] '{path}' is not a valid graph: {e.error_count()} error(s)")
            raise typer.Exit(1) from e
        return GraphState(nodes=derive_fields(state.nodes, state.edges), edges=state.edges)
    return to_graph(data)


def _print_graph(state: GraphState, title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Path", style="green")
    table.add_column("Label")
    table.add_column("Children", justify="right")

    for node in sorted(state.nodes, key=lambda n: n.data.full_path):
        table.add_row(
            node.id,
            str(node.classification),
            node.data.full_path,
            node.data.label,
            str(node.data.child_count),
        )
    console.print(table)
    console.print(f"[dim]{len(state.nodes)} nodes, {len(state.edges)} edges[/dim]")


def _describe(op: Operation) -> str:
    if op.type == "CREATE":
        parent = op.data.parent_id or "(root)"
        return f"slug={op.data.slug} parent={parent}"
    if op.type == "UPDATE":
        return ", ".join(sorted(op.data.changed_fields()))
    if op.type == "MOVE":
        return f"new parent={op.new_parent_id or '(root)'}"
    return ""


@app.command()
def version() -> None:
    """Show version information."""
    from sitesync import __version__

    console.print(f"sitesync v{__version__}")


@app.command()
def show(
    tree_file: Annotated[Path, typer.Argument(help="Tree or graph JSON file")],
) -> None:
    """Convert a sitemap file to a graph and list its nodes."""
    state = _read_graph(tree_file)
    _print_graph(state, title=str(tree_file))


@app.command()
def diff(
    before: Annotated[Path, typer.Argument(help="Previous tree or graph JSON file")],
    after: Annotated[Path, typer.Argument(help="Current tree or graph JSON file")],
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the operations as wire-format JSON."),
    ] = False,
) -> None:
    """Print the ordered operations that turn BEFORE into AFTER."""
    previous = _read_graph(before)
    current = _read_graph(after)
    operations = from_graph(current.nodes, current.edges, previous.nodes, previous.edges)

    if as_json:
        typer.echo(json.dumps([op.to_wire() for op in operations], indent=2))
        return

    if not operations:
        console.print("[green]No changes[/green]")
        return

    table = Table(title=f"{before} → {after}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Type", style="bold")
    table.add_column("Node", style="cyan")
    table.add_column("Details")
    for i, op in enumerate(operations, 1):
        table.add_row(str(i), str(op.type), op.node_id, _describe(op))
    console.print(table)


@app.command()
def pull(
    target_id: Annotated[str, typer.Argument(help="Target (website) ID")],
    api_url: Annotated[
        str | None,
        typer.Option("--api-url", help="Sitemap API base URL (overrides config)."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the graph as JSON."),
    ] = False,
) -> None:
    """Load a sitemap from the backend and print it."""
    settings = _load_settings()
    base_url = api_url or settings.api_url

    async def fetch() -> GraphState:
        async with SitemapApiClient(base_url, settings.request_timeout) as client:
            return await client.load(target_id)

    try:
        with target_context(target_id):
            state = asyncio.run(fetch())
    except SitemapError as e:
        log.error("pull_failed", target_id=target_id, code=str(e.code), error=e.message)
        console.print(f"[red]✗[/red] {e.message}")
        raise typer.Exit(1) from None

    if as_json:
        typer.echo(state.model_dump_json(by_alias=True, indent=2))
        return
    _print_graph(state, title=f"{target_id} ({base_url})")
