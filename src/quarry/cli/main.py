import json
import logging
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from quarry.core.config import get_config_manager
from quarry.core.embeddings import dispose_default_backend, get_default_backend
from quarry.core.errors import EmbeddingBackendBusyError, QuarryError
from quarry.core.logging_config import configure_logging
from quarry.core.models import SearchOptions
from quarry.core.search import search_query
from quarry.core.store import DocumentStore, index_directory

app = typer.Typer(help="quarry: local keyword + semantic document search")
console = Console()
logger = logging.getLogger(__name__)

# Searches that timed out keep embedding in the background until their call returns.
BACKEND_DRAIN_SECONDS = 5.0

config_manager = get_config_manager()

# Initialize structured logging
configure_logging(
    log_level=config_manager.get("log_level", "INFO"),
    json_logs=config_manager.get("json_logs", False),
)


def _index_dir() -> Path:
    return Path(config_manager.get("index_dir"))


def _load_store() -> DocumentStore:
    return DocumentStore.load(_index_dir())


def _release_backend() -> None:
    """Dispose the default embedding backend once in-flight searches let go of it."""
    try:
        dispose_default_backend(wait=BACKEND_DRAIN_SECONDS)
    except EmbeddingBackendBusyError as e:
        logger.warning(f"Embedding backend left running at exit: {e}")


@app.command()
def add(
    path: str,
    collection: str = typer.Option(..., "--collection", "-c", help="Collection name"),
    pattern: List[str] = typer.Option(["*.md", "*.txt"], "--pattern", "-p", help="File glob to index"),
    no_embed: bool = typer.Option(False, "--no-embed", help="Index for keyword search only"),
):
    """Index the text files under a directory into a collection."""
    input_path = Path(path)
    if not input_path.is_dir():
        console.print(f"[red]Error:[/] Path {path} is not a directory")
        raise typer.Exit(1)

    try:
        store = _load_store()
        backend = None if no_embed else get_default_backend(config_manager.embedding_config())

        with console.status(f"[bold green]Indexing {input_path} into '{collection}'..."):
            counts = index_directory(store, input_path, collection, backend=backend, patterns=pattern)
            store.save(_index_dir())

        console.print("[green]✅ Indexing complete![/]")
        console.print(f"[bold]Indexed:[/] {counts['indexed']}")
        console.print(f"[bold]Unchanged:[/] {counts['skipped']}")
        console.print(f"[bold]Removed:[/] {counts['removed']}")
    except (QuarryError, OSError) as e:
        console.print(f"[red]Error during indexing:[/] {e}")
        raise typer.Exit(1)
    finally:
        _release_backend()


@app.command()
def query(
    text: str,
    collection: List[str] = typer.Option([], "--collection", "-c", help="Restrict to collection (repeatable)"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum number of results"),
    min_score: float = typer.Option(0.0, "--min-score", help="Drop results scoring below this"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
):
    """Search. Use lex:/vec:/hyde: lines for a structured query."""
    # Shells make real newlines awkward; accept "\n" escapes as line breaks.
    text = text.replace("\\n", "\n")
    start_time = time.time()

    try:
        options = SearchOptions(
            collections=collection,
            limit=limit if limit is not None else config_manager.get("default_limit"),
            min_score=min_score,
        )
        store = _load_store()
        results = search_query(
            store,
            text,
            options,
            timeout=config_manager.get("search_timeout"),
            normalization=config_manager.get("fusion_normalization"),
            rrf_k=config_manager.get("rrf_k"),
            max_workers=config_manager.get("max_workers"),
        )
    except (QuarryError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    finally:
        _release_backend()

    if as_json:
        console.print_json(json.dumps([r.to_dict() for r in results]))
        return

    if not results:
        console.print("[yellow]No results found.[/]")
        return

    execution_time_ms = (time.time() - start_time) * 1000
    console.print(f"[green]Found {len(results)} results[/] [dim]({execution_time_ms:.0f} ms)[/]")
    console.print()
    for i, result in enumerate(results, 1):
        console.print(f"[bold]{i}. {result.path}[/]")
        console.print(f"   [blue]Collection:[/] {result.collection}")
        console.print(f"   [blue]Score:[/] {result.score:.3f}")
        console.print(f"   [blue]Doc id:[/] {result.doc_id}")
        console.print(f"   [green]Snippet:[/] {result.snippet}")
        console.print()


@app.command()
def collections():
    """List collections and their document counts."""
    store = _load_store()
    counts = store.list_collections()
    if not counts:
        console.print("[yellow]No collections indexed yet.[/]")
        return

    table = Table(title="Collections")
    table.add_column("Name", style="bold")
    table.add_column("Documents", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)


@app.command()
def remove(name: str):
    """Remove a collection and its documents."""
    store = _load_store()
    removed = store.remove_collection(name)
    if removed == 0:
        console.print(f"[yellow]Collection '{name}' not found.[/]")
        raise typer.Exit(1)
    store.save(_index_dir())
    console.print(f"[green]Removed '{name}' ({removed} documents)[/]")


@app.command()
def status():
    """Show index statistics."""
    store = _load_store()
    stats = store.stats()

    console.print("[bold]🚀 quarry status[/]")
    console.print()
    console.print(f"[bold]Index:[/] {_index_dir()}")
    console.print(f"  Documents: {stats['documents']}")
    console.print(f"  Collections: {stats['collections']}")
    console.print(f"  Embedded documents: {stats['embedded_documents']}")
    if stats["vector_index"]["dimensions"]:
        console.print(f"  Vector dimensions: {stats['vector_index']['dimensions']}")
    console.print()
    console.print(f"[bold]Embedding backend:[/] {config_manager.get('embed_backend')}")
    console.print(f"[bold]Fusion normalization:[/] {config_manager.get('fusion_normalization')}")


@app.command()
def config(
    action: str = typer.Argument("show", help="show, set, reset or validate"),
    key: Optional[str] = typer.Argument(None, help="Configuration key"),
    value: Optional[str] = typer.Argument(None, help="New value for set"),
):
    """Show or change configuration."""
    if action == "show":
        table = Table(title="Configuration")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for k, v in config_manager.get_all().items():
            table.add_row(k, str(v))
        console.print(table)
    elif action in ("set", "reset"):
        if not key or (action == "set" and value is None):
            console.print(f"[red]Usage:[/] quarry config {action} KEY{' VALUE' if action == 'set' else ''}")
            raise typer.Exit(1)
        try:
            if action == "set":
                config_manager.set(key, value)
            else:
                config_manager.reset(key)
        except (KeyError, ValueError) as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)
        console.print(f"[green]{key} = {config_manager.get(key)}[/]")
    elif action == "validate":
        validation = config_manager.validate()
        for issue in validation["issues"]:
            console.print(f"[red]✗ {issue}[/]")
        for warning in validation["warnings"]:
            console.print(f"[yellow]! {warning}[/]")
        if not validation["valid"]:
            raise typer.Exit(1)
        console.print("[green]✅ Configuration is valid[/]")
    else:
        console.print(f"[red]Unknown action:[/] {action}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
