import logging
import os
from pathlib import Path
from typing import Annotated, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table
from typer import Argument, Exit, Option, Typer

from .config import EngineConfig, embedder_config_from_env, resolve_storage_dir
from .errors import LocalGrepError
from .fs import collect_source_files
from .models import IndexStats, SearchOptions
from .search.searcher import FIND_SIMILAR_MIN_SCORE
from .service import SearchService
from .storage.sharded import ShardedVectorStore

app = Typer(help="Local semantic code search.")
console = Console()

SEARCH_MODES = ("hybrid", "vector", "similar")

StorageDirOption = Annotated[
    Optional[str],
    Option("--storage-dir", "-d", help="Index directory (default: $LOCALGREP_STORAGE_DIR or ~/.localgrep/index)."),
]
ShardsOption = Annotated[
    Optional[int],
    Option("--shards", help="Number of shards; fixed when the index is created."),
]
BackendOption = Annotated[
    Optional[str],
    Option("--backend", "-b", help="Embedding backend: auto, gpu, cpu, genai, openai, hash."),
]
WorkersOption = Annotated[
    Optional[int],
    Option("--workers", "-w", help="Worker count (default: CPU count - 1)."),
]
ExecutorOption = Annotated[
    Optional[str],
    Option("--executor", help="Worker executor: process, thread or inline."),
]


@app.callback()
def configure_logging(
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Show debug logging.")
    ] = False,
) -> None:
    env_verbose = os.getenv("LOCALGREP_VERBOSE", "").lower() in ("1", "true")
    logging.basicConfig(
        level=logging.DEBUG if verbose or env_verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _build_service(
    *,
    storage_dir: str | None,
    shards: int | None = None,
    backend: str | None = None,
    workers: int | None = None,
    executor: str | None = None,
    project_root: str | None = None,
) -> SearchService:
    try:
        config = EngineConfig.from_env(
            storage_dir=storage_dir,
            shard_count=shards,
            worker_count=workers,
            executor=executor,
            project_root=project_root,
            embedder=embedder_config_from_env(backend=backend),
        )
        service = SearchService(config)
        with console.status("Loading embedding model..."):
            status = service.initialize()
    except LocalGrepError as exc:
        console.print(f"[bold red]Error:[/] {exc}")
        raise Exit(code=1)
    if not status.ready:
        console.print(f"[bold red]Search engine unavailable:[/] {status.reason}")
        raise Exit(code=1)
    return service


def _open_store(storage_dir: str | None) -> ShardedVectorStore:
    try:
        return ShardedVectorStore.open_existing(resolve_storage_dir(storage_dir))
    except LocalGrepError as exc:
        console.print(f"[bold red]Error:[/] {exc}")
        raise Exit(code=1)


def _stats_table(stats: IndexStats, storage_dir: str) -> Table:
    table = Table(title=f"Index at {storage_dir}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Files", str(stats.total_files))
    table.add_row("Chunks", str(stats.total_chunks))
    table.add_row("Shards", str(stats.shard_count))
    table.add_row("Model", f"{stats.model or '-'} ({stats.dimensions or '?'} dims)")
    table.add_row("Database size", _format_bytes(stats.database_size))
    table.add_row(
        "Last indexed",
        stats.last_indexed_at.isoformat(timespec="seconds") if stats.last_indexed_at else "never",
    )
    return table


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.2f} GB"


@app.command()
def index(
    folder: Annotated[str, Argument(help="Project folder to index.")] = ".",
    storage_dir: StorageDirOption = None,
    shards: ShardsOption = None,
    backend: BackendOption = None,
    workers: WorkersOption = None,
    executor: ExecutorOption = None,
    force: Annotated[
        bool, Option("--force", help="Re-embed files even when their content is unchanged.")
    ] = False,
) -> None:
    """Index every source file under FOLDER."""
    root = Path(folder).resolve()
    if not root.is_dir():
        console.print(f"[bold red]No such directory:[/] {folder}")
        raise Exit(code=1)

    files = collect_source_files(str(root))
    if not files:
        console.print(f"No indexable files found in {root}")
        raise Exit(code=1)

    service = _build_service(
        storage_dir=storage_dir,
        shards=shards,
        backend=backend,
        workers=workers,
        executor=executor,
        project_root=str(root),
    )
    try:
        with Progress(
            TextColumn("[bold blue]Indexing"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("{task.description}"),
            console=console,
        ) as progress:
            task_id = progress.add_task("", total=len(files))

            def on_progress(current: int, total: int, current_file: str) -> None:
                progress.update(task_id, completed=current, description=current_file)

            result = service.index_files(files, on_progress=on_progress, force=force)
    except LocalGrepError as exc:
        console.print(f"[bold red]Indexing failed:[/] {exc}")
        raise Exit(code=1)
    finally:
        service.dispose()

    console.print(
        f"Indexed [bold]{result.files_processed}[/] files "
        f"([bold]{result.total_chunks}[/] chunks, {result.skipped_files} unchanged) "
        f"in {result.duration_ms / 1000:.1f}s"
    )
    for failure in result.failures:
        console.print(f"[yellow]Failed:[/] {failure.file_path}: {failure.error}")


@app.command()
def search(
    query: Annotated[str, Argument(help="Natural-language or code query.")],
    storage_dir: StorageDirOption = None,
    backend: BackendOption = None,
    top_k: Annotated[int, Option("--top-k", "-k", help="Number of results.")] = 10,
    min_score: Annotated[
        Optional[float], Option("--min-score", help="Minimum cosine similarity.")
    ] = None,
    mode: Annotated[
        str, Option("--mode", help="hybrid, vector or similar.")
    ] = "hybrid",
    context: Annotated[
        bool, Option("--context", help="Show a highlighted snippet instead of the full chunk.")
    ] = False,
) -> None:
    """Search the index."""
    if mode not in SEARCH_MODES:
        console.print(f"[bold red]Unknown mode:[/] {mode} (expected {', '.join(SEARCH_MODES)})")
        raise Exit(code=1)
    service = _build_service(storage_dir=storage_dir, backend=backend, executor="inline")
    if min_score is None:
        min_score = FIND_SIMILAR_MIN_SCORE if mode == "similar" else 0.0
    options = SearchOptions(top_k=top_k, min_score=min_score, return_context=context)
    try:
        if mode == "vector":
            results = service.vector_search(query, options)
        elif mode == "similar":
            results = service.find_similar(query, options)
        else:
            results = service.hybrid_search(query, options)
    except LocalGrepError as exc:
        console.print(f"[bold red]Search failed:[/] {exc}")
        raise Exit(code=1)
    finally:
        service.dispose()

    if not results:
        console.print("No results.")
        return
    for rank, result in enumerate(results, start=1):
        title = f"{rank}. {result.file_path}:{result.start_line}-{result.end_line}"
        if result.symbol:
            title += f" ({result.symbol})"
        console.print(
            Panel(
                result.highlight or result.content,
                title=title,
                title_align="left",
                subtitle=f"score {result.score:.3f}",
                border_style="bold green" if rank == 1 else "blue",
            )
        )


@app.command()
def status(storage_dir: StorageDirOption = None) -> None:
    """Show index statistics without loading a model."""
    store = _open_store(storage_dir)
    console.print(_stats_table(store.get_stats(), store.storage_dir))


@app.command()
def clear(
    storage_dir: StorageDirOption = None,
    yes: Annotated[bool, Option("--yes", "-y", help="Confirm deleting the whole index.")] = False,
) -> None:
    """Delete every indexed chunk."""
    if not yes:
        console.print("[bold red]Refusing to clear the index without --yes[/]")
        raise Exit(code=1)
    store = _open_store(storage_dir)
    try:
        store.clear()
    except LocalGrepError as exc:
        console.print(f"[bold red]Clear failed:[/] {exc}")
        raise Exit(code=1)
    console.print(f"Cleared index at {store.storage_dir}")


@app.command()
def reshard(
    shards: Annotated[int, Argument(help="New shard count.")],
    storage_dir: StorageDirOption = None,
) -> None:
    """Redistribute stored chunks across a new number of shards."""
    store = _open_store(storage_dir)
    old_count = store.shard_count
    try:
        with console.status(f"Resharding {old_count} -> {shards}..."):
            store.reshard(shards)
    except LocalGrepError as exc:
        console.print(f"[bold red]Reshard failed:[/] {exc}")
        raise Exit(code=1)
    console.print(f"Resharded {store.storage_dir} from {old_count} to {shards} shards")


@app.command()
def serve(
    host: Annotated[str, Option("--host", help="Bind address.")] = "127.0.0.1",
    port: Annotated[int, Option("--port", "-p", help="Bind port.")] = 8000,
) -> None:
    """Run the HTTP API."""
    from .server import run_server

    run_server(host=host, port=port)


if __name__ == "__main__":
    app()
