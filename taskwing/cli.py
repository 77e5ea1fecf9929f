"""Typer-based CLI for TaskWing."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__, config_manager, crash_log
from .assembler import ContextAssembler
from .config import ensure_project_dirs, memory_db_path
from .embeddings import get_embedder
from .errors import TaskWingError
from .llm import ChatModel, create_chat_model
from .orchestrator import DEFAULT_AGENTS, BootstrapRunner, describe_agents
from .report import get_metrics
from .retrieval import RetrievalEngine
from .storage import KnowledgeStore
from .symbols import SymbolIndex

console = Console()

app = typer.Typer(
    help="TaskWing: an evidence-backed knowledge graph of your repository.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
config_app = typer.Typer(help="Show or change configuration.", no_args_is_help=True)
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    if value:
        typer.echo(f"TaskWing v{__version__}")
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    if not verbose:
        root.setLevel(logging.WARNING)
        return
    root.addHandler(RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False))
    root.setLevel(logging.DEBUG)
    for noisy in ("urllib3", "watchdog"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-V", help="Show version and exit.", callback=version_callback, is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline details to stderr."),
):
    """TaskWing: extract architectural knowledge and retrieve grounded context."""
    setup_logging(verbose)


# ===================================================================
# Helpers
# ===================================================================

def _repo_root(path: Path) -> Path:
    root = path.resolve()
    if not root.is_dir():
        raise typer.BadParameter(f"Not a directory: {path}")
    return root


def _open_store(repo: Path, must_exist: bool = True) -> KnowledgeStore:
    if must_exist and not memory_db_path(repo).exists():
        console.print(f"[red]✗[/red] No knowledge base in {repo}. Run 'taskwing bootstrap' first.")
        raise typer.Exit(1)
    return KnowledgeStore.for_project(repo)


def _chat_model() -> ChatModel:
    return create_chat_model(config_manager.load_llm_config())


def _engine(store: KnowledgeStore, model: Optional[ChatModel] = None) -> RetrievalEngine:
    llm_config = config_manager.load_llm_config()
    return RetrievalEngine(
        store,
        config=config_manager.load_retrieval_config(),
        embedder=get_embedder(llm_config),
        model=model,
    )


@contextmanager
def crash_guard(repo: Path, command: str) -> Iterator[None]:
    """Turn unexpected failures into a crash log and exit code 1."""
    try:
        yield
    except (typer.Exit, typer.Abort, KeyboardInterrupt):
        raise
    except TaskWingError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(1)
    except Exception as exc:  # last-resort handler for the command
        path = crash_log.write_crash_log(repo, exc, command)
        console.print(f"[red]✗[/red] Unexpected error: {exc}")
        if path is not None:
            console.print(f"[dim]Crash log written to {path}[/dim]")
        raise typer.Exit(1)


# ===================================================================
# Analysis
# ===================================================================

@app.command("bootstrap")
def bootstrap(
    path: Path = typer.Argument(Path("."), help="Repository to analyse."),
    agents: str = typer.Option(",".join(DEFAULT_AGENTS), "--agents", "-a",
                               help="Comma-separated agent ids (doc, git, code, react)."),
    workspace: str = typer.Option("root", "--workspace", "-w", help="Workspace tag for the new nodes."),
):
    """Analyse the repository and rebuild its knowledge graph."""
    repo = _repo_root(path)
    crash_log.remember_input(f"bootstrap {repo} --agents {agents}")
    agent_ids = [a.strip() for a in agents.split(",") if a.strip()]
    with crash_guard(repo, "bootstrap"):
        ensure_project_dirs(repo)
        llm_config = config_manager.load_llm_config()
        with _open_store(repo, must_exist=False) as store:
            runner = BootstrapRunner(
                repo, store,
                llm_config=llm_config,
                chain_config=config_manager.load_chain_config(),
                embedder=get_embedder(llm_config),
                agent_ids=agent_ids,
                workspace=workspace,
            )
            with console.status("Analysing...") as status:
                result = runner.bootstrap(progress=lambda name: status.update(f"Running {name} agent..."))
            report_path = runner.save_report(result.report)

    table = Table(title="Agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Findings", justify="right")
    table.add_column("Files", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Status")
    for name, rep in result.report.agent_reports.items():
        status_text = f"[red]{rep.error}[/red]" if rep.error else "[green]ok[/green]"
        table.add_row(name, str(rep.finding_count), str(rep.coverage.files_analyzed),
                      f"{rep.duration:.1f}s", status_text)
    console.print(table)
    console.print(f"[green]✓[/green] {result.report.summary()}")
    console.print(f"  {result.ingest.summary()}")
    console.print(f"[dim]Report: {report_path}[/dim]")
    if result.outputs and all(o.error for o in result.outputs):
        raise typer.Exit(1)


@app.command("index")
def index(path: Path = typer.Argument(Path("."), help="Repository to index.")):
    """Build the symbol index used by the code agent."""
    repo = _repo_root(path)
    with crash_guard(repo, "index"):
        ensure_project_dirs(repo)
        with SymbolIndex.for_project(repo) as symbol_index:
            stats = symbol_index.index_project(repo)
    console.print(f"[green]✓[/green] Indexed {stats['symbols']} symbols from {stats['files']} files.")


@app.command("agents")
def list_agents():
    """List the registered analysis agents."""
    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Description", style="dim")
    for info in describe_agents():
        table.add_row(info["id"], info["name"], info["description"])
    console.print(table)


@app.command("watch")
def watch(
    path: Path = typer.Argument(Path("."), help="Repository to watch."),
    debounce: float = typer.Option(2.0, "--debounce", "-d", help="Seconds of quiet before analysing."),
    agents: str = typer.Option("doc,code", "--agents", "-a", help="Agents to run on each batch."),
):
    """Re-analyse changed files as they are saved."""
    from .watch import watch_repository

    repo = _repo_root(path)
    agent_ids = [a.strip() for a in agents.split(",") if a.strip()]
    with crash_guard(repo, "watch"):
        ensure_project_dirs(repo)
        llm_config = config_manager.load_llm_config()
        with _open_store(repo, must_exist=False) as store:
            runner = BootstrapRunner(
                repo, store,
                llm_config=llm_config,
                chain_config=config_manager.load_chain_config(),
                embedder=get_embedder(llm_config),
                agent_ids=agent_ids,
            )

            def on_batch(files: List[str]) -> None:
                console.print(f"[cyan]↻[/cyan] {len(files)} changed: {', '.join(files[:5])}"
                              + (" ..." if len(files) > 5 else ""))
                try:
                    result = runner.watch_update(files)
                except TaskWingError as exc:
                    console.print(f"  [red]✗[/red] Update failed: {exc}")
                    return
                console.print(f"  [green]✓[/green] {result.ingest.summary()}")
                for name, error in result.errors.items():
                    console.print(f"  [yellow]![/yellow] {name}: {error}")

            console.print(f"[bold green]Watching[/bold green] [cyan]{repo}[/cyan] (Ctrl+C to stop)")
            try:
                watch_repository(repo, on_batch, debounce=debounce)
            except KeyboardInterrupt:
                console.print("\n[yellow]Stopped watching.[/yellow]")
                console.print(str(get_metrics().snapshot()))


# ===================================================================
# Retrieval
# ===================================================================

@app.command("search")
def search(
    query: str = typer.Argument(..., help="What to look for."),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Repository root."),
    limit: int = typer.Option(5, "--limit", "-n", help="Maximum results."),
    node_type: Optional[str] = typer.Option(None, "--type", "-t", help="Only this node type."),
    workspace: str = typer.Option("", "--workspace", "-w", help="Restrict to a workspace."),
    include_root: bool = typer.Option(False, "--include-root", help="With --workspace, also match root nodes."),
    debug: bool = typer.Option(False, "--debug", help="Show per-stage timings and scores."),
):
    """Search the knowledge graph."""
    repo = _repo_root(path)
    crash_log.remember_input(query)
    with crash_guard(repo, "search"):
        with _open_store(repo) as store, _chat_model() as model:
            engine = _engine(store, model)
            if debug:
                response = engine.search_debug(query, limit)
                _print_debug(response)
                return
            results = engine.search(query, limit=limit, node_type=node_type,
                                    workspace=workspace, include_root=include_root)

    if not results:
        console.print("[yellow]No results.[/yellow]")
        return
    table = Table(title=f"Results for '{query}'")
    table.add_column("Score", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Summary")
    table.add_column("ID", style="dim")
    for sn in results:
        summary = sn.node.summary + (f" [dim](via {sn.expanded_from})[/dim]" if sn.is_expanded else "")
        table.add_row(f"{sn.score:.2f}", sn.node.type, summary, sn.node.id)
    console.print(table)


def _print_debug(response) -> None:
    console.print(f"[bold]Query:[/bold] {response.query}")
    console.print(f"[bold]Pipeline:[/bold] {' → '.join(response.pipeline)}")
    console.print("[bold]Timings (ms):[/bold] " + ", ".join(f"{k}={v}" for k, v in response.timings.items()))
    console.print(f"[bold]Candidates:[/bold] {response.total_candidates}")
    table = Table()
    for column in ("ID", "Type", "FTS", "Vector", "Combined", "Rerank", "Flags", "Summary"):
        table.add_column(column)
    for r in response.results:
        flags = ",".join(f for f, on in (("exact", r.is_exact), ("expanded", r.is_expanded)) if on)
        rerank = "-" if r.rerank_score is None else f"{r.rerank_score:.2f}"
        table.add_row(r.id, r.node_type, f"{r.fts_score:.2f}", f"{r.vector_score:.2f}",
                      f"{r.combined_score:.2f}", rerank, flags, r.summary)
    console.print(table)


@app.command("ask")
def ask(
    question: str = typer.Argument(..., help="Question about the codebase."),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Repository root."),
    limit: int = typer.Option(5, "--limit", "-n", help="Knowledge nodes to ground the answer on."),
):
    """Answer a question from the knowledge graph."""
    repo = _repo_root(path)
    crash_log.remember_input(question)
    with crash_guard(repo, "ask"):
        with _open_store(repo) as store, _chat_model() as model:
            engine = _engine(store, model)
            nodes = engine.search(question, limit=limit)
            answer = engine.answer(question, nodes)
    console.print(answer)
    if nodes:
        console.print("\n[dim]Sources: " + ", ".join(sn.node.summary for sn in nodes) + "[/dim]")


@app.command("context")
def context(
    goal: str = typer.Argument(..., help="What you are about to work on."),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Repository root."),
    workspace: str = typer.Option("", "--workspace", "-w", help="Restrict to a workspace (plus root)."),
):
    """Print grounded planning context for a goal."""
    repo = _repo_root(path)
    crash_log.remember_input(goal)
    with crash_guard(repo, "context"):
        with _open_store(repo) as store, _chat_model() as model:
            assembled = ContextAssembler(_engine(store, model), repo).assemble(goal, workspace=workspace)
    console.print(f"[dim]{assembled.strategy}[/dim]")
    typer.echo(assembled.context)


@app.command("doctor")
def doctor(
    path: Path = typer.Option(Path("."), "--path", "-p", help="Repository root."),
    fix: bool = typer.Option(False, "--fix", help="Regenerate embeddings with the configured embedder."),
):
    """Check knowledge base health."""
    repo = _repo_root(path)
    with crash_guard(repo, "doctor"):
        with _open_store(repo) as store:
            engine = _engine(store)
            console.print(f"Nodes: {store.count_nodes()}")
            with SymbolIndex.for_project(repo) as symbol_index:
                stats = symbol_index.stats()
            console.print(f"Symbols: {stats['symbols']} from {stats['files']} files")

            report = engine.check_embedding_consistency()
            if report is None:
                console.print("[green]✓[/green] Embeddings consistent.")
                return
            console.print(f"[yellow]![/yellow] {report.message}")
            if not fix:
                raise typer.Exit(1)
            count = engine.rebuild_embeddings()
            console.print(f"[green]✓[/green] Regenerated embeddings for {count} nodes.")


# ===================================================================
# Config
# ===================================================================

@config_app.command("show")
def config_show(as_json: bool = typer.Option(False, "--json", help="Print as JSON.")):
    """Show the effective configuration."""
    described = config_manager.describe_config()
    if as_json:
        typer.echo(json.dumps(described, indent=2))
        return
    for section, values in described.items():
        console.print(f"[bold]\\[{section}][/bold]")
        for key, value in values.items():
            console.print(f"  {key} = {value!r}")


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="section.name, e.g. retrieval.fts_weight"),
    value: str = typer.Argument(..., help="New value."),
):
    """Set a configuration value."""
    try:
        saved = config_manager.set_config_value(key, value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    if not saved:
        console.print("[red]✗[/red] Could not write the configuration file.")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {key} = {value}")
