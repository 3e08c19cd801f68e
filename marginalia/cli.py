import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from marginalia.config import Config
from marginalia.constants import DEFAULT_SEARCH_LIMIT, SNIPPET_TRUNCATE
from marginalia.errors import MarginaliaError
from marginalia.logging import UVICORN_LOG_CONFIG, configure_logging

console = Console()


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """marginalia - search your reading highlights"""
    try:
        ctx.ensure_object(dict)
        ctx.obj["config"] = Config()
    except ValueError as e:
        # Only fail if we're running a command that needs config
        ctx.obj["config_error"] = str(e)

    if ctx.invoked_subcommand is None:
        console.print("[bold]marginalia[/bold] - search your reading highlights\n")
        console.print("Run [cyan]marginalia serve[/cyan] to start the server.")
        console.print("\nUse [cyan]marginalia --help[/cyan] for all commands.")


def _require_config(ctx) -> Config:
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    config = ctx.obj["config"]
    configure_logging(config.log_level)
    return config


def _run(config: Config, fn: Callable[..., Awaitable]):
    from marginalia.server.runtime import Runtime

    async def _main():
        runtime = Runtime(config=config)
        await runtime.connect()
        try:
            return await fn(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(_main())
    except MarginaliaError as e:
        console.print(f"[red]Error:[/red] {e}")
        if e.__cause__ is not None:
            console.print(f"[dim]{e.__cause__}[/dim]")
        raise SystemExit(1) from None


@main.command()
@click.pass_context
def status(ctx):
    """Show database and embedding status."""
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        console.print()
        console.print("[bold]Environment variables:[/bold]")
        console.print("  OPENAI_API_KEY - your OpenAI API key (embeddings)")
        console.print("  MARGINALIA_EMBEDDING_MODEL, MARGINALIA_DATA_DIR, MARGINALIA_LOG_LEVEL")
        raise SystemExit(1)

    config = ctx.obj["config"]

    async def _counts(runtime):
        total = await runtime.highlights.count_highlights()
        missing = await runtime.highlights.count_missing_embeddings(dim=config.embedding.dim)
        return total, missing

    total, missing = _run(config, _counts)

    console.print("[bold]marginalia status[/bold]")
    console.print()
    console.print(f"Database: [cyan]{config.db_path}[/cyan]")
    console.print(f"Embedding model: {config.embedding_model} ({config.embedding.dim} dims)")
    console.print(f"Highlights: {total} ({missing} without embeddings)")


@main.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.pass_context
def serve(ctx, host: str, port: int, reload: bool):
    """Start the marginalia API server."""
    _require_config(ctx)

    import uvicorn

    console.print(f"[bold]marginalia server[/bold] starting on http://{host}:{port}")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    uvicorn.run(
        "marginalia.server.app:app",
        host=host,
        port=port,
        reload=reload,
        log_config=UVICORN_LOG_CONFIG,
    )


@main.command()
@click.argument("query")
@click.option("--user", "user_id", required=True, help="User whose highlights to search")
@click.option(
    "--mode",
    type=click.Choice(["keyword", "semantic", "hybrid"]),
    default="hybrid",
    show_default=True,
)
@click.option("--limit", default=DEFAULT_SEARCH_LIMIT, show_default=True, help="Max results (1-100)")
@click.pass_context
def search(ctx, query: str, user_id: str, mode: str, limit: int):
    """Search highlights from the command line."""
    from marginalia.search.service import build_query

    config = _require_config(ctx)

    async def _search(runtime):
        return await runtime.search.search(build_query(query, mode, limit, user_id=user_id))

    response = _run(config, _search)

    if not response.results:
        console.print("[dim]No matches.[/dim]")
        return

    table = Table(title=f"{response.count} results for {response.query!r} ({response.mode})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Highlight")
    table.add_column("Tags", style="cyan")
    for i, h in enumerate(response.results, start=1):
        snippet = h.text.replace("\n", " ")
        if len(snippet) > SNIPPET_TRUNCATE:
            snippet = snippet[: SNIPPET_TRUNCATE - 1] + "…"
        table.add_row(str(i), f"{h.score:.4f}", snippet, ", ".join(t.name for t in h.tags))
    console.print(table)


@main.command()
@click.option("--user", "user_id", required=True, help="User whose highlights to embed")
@click.pass_context
def embed(ctx, user_id: str):
    """Generate embeddings for highlights that don't have one yet."""
    from marginalia.highlights.embeddings import generate_missing_embeddings

    config = _require_config(ctx)

    async def _embed(runtime):
        return await generate_missing_embeddings(
            runtime.highlights,
            runtime.embedder,
            user_id,
            batch_size=config.backfill_batch_size,
            chunk_size=config.backfill_chunk_size,
        )

    result = _run(config, _embed)
    console.print(f"Embedded [green]{result.processed}[/green] highlights, [red]{result.failed}[/red] failed")


@main.command(name="import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user", "user_id", required=True, help="User who owns the imported highlights")
@click.pass_context
def import_(ctx, path: Path, user_id: str):
    """Import books and highlights from a JSON export."""
    from marginalia.highlights.importer import import_books, load_export

    config = _require_config(ctx)
    try:
        books = load_export(path)
    except ValueError as e:
        console.print(f"[red]Invalid export file:[/red] {e}")
        raise SystemExit(1) from None

    async def _import(runtime):
        return await import_books(runtime.highlights, user_id, books)

    result = _run(config, _import)
    console.print(f"Imported {result.highlights} highlights from {result.books} books")
    console.print("Run [cyan]marginalia embed --user ...[/cyan] to enable semantic search.")


@main.group()
def token():
    """Manage API session tokens."""


@token.command(name="create")
@click.option("--user", "user_id", required=True, help="User the token authenticates as")
@click.pass_context
def token_create(ctx, user_id: str):
    """Issue a bearer token for the search API."""
    config = _require_config(ctx)

    async def _issue(runtime):
        return await runtime.sessions.issue(user_id, expiry_hours=config.session_expiry_hours)

    issued = _run(config, _issue)
    console.print(f"Token for [cyan]{user_id}[/cyan] (shown once, valid {config.session_expiry_hours}h):")
    console.print(issued, highlight=False)


if __name__ == "__main__":
    main()
