"""Command line entry point for Viking RAG."""

import asyncio
import os
import sys
from collections.abc import Awaitable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.table import Table

from viking_rag.config import Config, get_config, set_config
from viking_rag.embedding_models import list_local_models
from viking_rag.embeddings import DownloadProgress
from viking_rag.engine import RagEngine, create_rag_engine
from viking_rag.exceptions import VikingRagError
from viking_rag.logging import configure_logging, get_logger
from viking_rag.workspace import WorkspaceDocument, collect_workspace_documents

log = get_logger(__name__)
console = Console()

T = TypeVar("T")

cli = typer.Typer(help="Viking RAG - tiered context, embeddings and session memory for codebases")


@cli.callback()
def main(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Load configuration and set up logging."""
    if verbose:
        os.environ["VIKING_LOGGING__LEVEL"] = "DEBUG"
    if config:
        try:
            cfg = Config.load(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()
    set_config(cfg)
    configure_logging(cfg, level="DEBUG" if verbose else None)


def _run(work: Awaitable[T]) -> T:
    try:
        return asyncio.run(work)
    except KeyboardInterrupt:
        log.info("Interrupted")
        sys.exit(130)
    except VikingRagError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _on_download(event: DownloadProgress) -> None:
    if event.stage == "progress" and event.percent is not None:
        console.print(f"[dim]Downloading {event.model_id}: {event.percent:.0f}%[/dim]")
    else:
        console.print(f"[dim]Model {event.model_id}: {event.stage}[/dim]")


def _collect(path: str) -> list[WorkspaceDocument]:
    ws = get_config().workspace
    return collect_workspace_documents(
        path,
        include_extensions=ws.include_extensions,
        exclude_dirs=ws.exclude_dirs,
        max_file_bytes=ws.max_file_bytes,
        max_files=ws.max_files,
    )


def _engine() -> RagEngine:
    return create_rag_engine(get_config(), on_download_progress=_on_download)


@cli.command()
def index(path: str = typer.Argument(".", help="Directory to index")) -> None:
    """Build tiers and embeddings for every file under PATH."""

    async def _index() -> None:
        docs = _collect(path)
        engine = _engine()
        try:
            await engine.start()

            def progress(stage: str, current: int, total: int) -> None:
                if current == total or current % 100 == 0:
                    console.print(f"[dim]{stage}: {current}/{total}[/dim]")

            result = await engine.index_documents(docs, progress)
        finally:
            await engine.close()

        table = Table(title="Index", show_header=True, header_style="bold cyan")
        table.add_column("Documents", justify="right")
        table.add_column("New tiers", justify="right")
        table.add_column("New embeddings", justify="right")
        table.add_column("Keyword docs", justify="right")
        table.add_column("Backend")
        table.add_row(
            str(result.total_documents),
            str(result.tiers_generated),
            str(result.embeddings_computed),
            str(result.keywords_indexed),
            engine.embeddings.backend_identity if engine.embeddings.is_available else "unavailable",
        )
        console.print(table)

    _run(_index())


@cli.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    path: str = typer.Argument(".", help="Directory to search"),
    top_k: int = typer.Option(10, "-k", "--top-k", help="Number of results"),
) -> None:
    """Rank files under PATH by semantic similarity to QUERY (keywords without embeddings)."""

    async def _search() -> None:
        docs = _collect(path)
        engine = _engine()
        try:
            if not await engine.start():
                console.print("[yellow]Embeddings unavailable; using keyword search.[/yellow]")
            hits = await engine.search(query, docs, top_k=top_k)
        finally:
            await engine.close()

        table = Table(title=f"Results for {query!r}", show_header=True, header_style="bold cyan")
        table.add_column("Score", justify="right")
        table.add_column("Path", overflow="fold")
        for hit in hits:
            table.add_row(f"{hit.score:.3f}", hit.path)
        console.print(table)

    _run(_search())


@cli.command()
def tiers(
    prefix: str = typer.Argument("", help="Path prefix, e.g. src/"),
    detail: bool = typer.Option(False, "--detail", help="Show L1 digests instead of L0"),
) -> None:
    """Print cached tier digests for paths starting with PREFIX."""

    async def _tiers() -> None:
        engine = _engine()
        try:
            await engine.tiers.init()
            if detail:
                paths = [p for p in engine.tiers.get_all_paths() if p.startswith(prefix)]
                text = engine.tiers.get_l1_batch(paths)
            else:
                text = engine.tiers.get_directory_l0(prefix)
        finally:
            await engine.close()
        if text:
            console.print(text, markup=False)
        else:
            console.print("[dim]No tiers cached for this prefix.[/dim]")

    _run(_tiers())


@cli.command()
def stats() -> None:
    """Show cache statistics."""

    async def _stats() -> None:
        engine = _engine()
        try:
            await engine.tiers.init()
            await engine.memory.init()
            await engine.embeddings.load_cache()
            await engine.keywords.ensure_ready()
            tier_stats = engine.tiers.get_stats()
            cache_stats = engine.embeddings.get_cache_stats()
            memory_stats = engine.memory.get_stats()
            keyword_docs = engine.keywords.size
        finally:
            await engine.close()

        table = Table(title="Viking RAG", show_header=False, box=None)
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Resources", str(tier_stats.total_resources))
        table.add_row("L0 tokens", str(tier_stats.l0_total_tokens))
        table.add_row("L1 tokens", str(tier_stats.l1_total_tokens))
        table.add_row("Embedding backend", engine.embeddings.backend_identity)
        table.add_row("Cached vectors", str(cache_stats["documents"]))
        table.add_row("Keyword documents", str(keyword_docs))
        table.add_row("Preferences", str(memory_stats.preferences))
        table.add_row("Experiences", str(memory_stats.experiences))
        table.add_row("Memory updated", memory_stats.last_updated or "-")
        console.print(table)

    _run(_stats())


@cli.command()
def memory(
    max_tokens: int = typer.Option(0, "--max-tokens", help="Prompt budget (0 = config default)"),
) -> None:
    """Show learned preferences and the rendered memory prompt."""

    async def _memory() -> None:
        engine = _engine()
        try:
            await engine.memory.init()
            prefs = sorted(engine.memory.get_preferences(), key=lambda p: p.confidence, reverse=True)
            prompt = engine.memory.build_memory_prompt(max_tokens or get_config().memory.max_prompt_tokens)
        finally:
            await engine.close()

        table = Table(title="Preferences", show_header=True, header_style="bold cyan")
        table.add_column("Key")
        table.add_column("Value")
        table.add_column("Confidence", justify="right")
        for pref in prefs:
            table.add_row(pref.key, pref.value, f"{pref.confidence:.0%}")
        console.print(table)
        if prompt:
            console.print(prompt, markup=False)

    _run(_memory())


@cli.command()
def models() -> None:
    """List the local embedding models."""
    table = Table(title="Local Embedding Models", show_header=True, header_style="bold cyan")
    table.add_column("Name")
    table.add_column("Model id", overflow="fold")
    table.add_column("Dims", justify="right")
    table.add_column("Max tokens", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Notes")
    current = get_config().embeddings.local_model
    for spec in list_local_models():
        name = f"* {spec.short_name}" if current in (spec.short_name, spec.model_id) else spec.short_name
        table.add_row(name, spec.model_id, str(spec.dimensions), str(spec.max_tokens), f"{spec.size_mb} MB", spec.description)
    console.print(table)


if __name__ == "__main__":
    cli()
