from __future__ import annotations

import argparse
import time
from pathlib import Path
from textwrap import shorten
from typing import List, Optional

from rich.markup import escape
from rich.table import Table

from .config import AppConfig, load_config
from .db import Database
from .embeddings import EmbeddingStore, embed_pending
from .errors import InvalidConfiguration, SecondBrainError
from .ingest import Ingestor
from .job_queue import ProcessingQueue
from .log import configure_logging, console
from .models import JobStatus
from .search import Retriever
from .stats import collect_stats
from .watcher import DirectoryWatcher
from .workers import WorkerPool


def _queue(cfg: AppConfig, db: Database) -> ProcessingQueue:
    return ProcessingQueue(
        db,
        max_attempts=cfg.queue_max_attempts,
        stale_after=cfg.queue_stale_after_seconds,
    )


def _status(value: Optional[str]) -> JobStatus:
    try:
        return JobStatus(value)
    except ValueError:
        choices = ", ".join(s.value for s in JobStatus)
        raise InvalidConfiguration(f"Unknown job status {value!r}, expected one of: {choices}") from None


def _ingestor(cfg: AppConfig, db: Database) -> Ingestor:
    return Ingestor(
        db, cfg.chunk_size, cfg.chunk_overlap, ignore_patterns=cfg.watch_ignore_patterns
    )


def _process(cfg: AppConfig, db: Database) -> None:
    ingestor = _ingestor(cfg, db)
    pool = WorkerPool(_queue(cfg, db), ingestor.process_job, concurrency=cfg.worker_concurrency)
    report = pool.run_until_empty()
    console.print(
        f"[green]Processed {report.processed} job(s):[/green] "
        f"{report.completed} done, {report.retried} retried, {report.dead_lettered} failed"
    )


def _embed(cfg: AppConfig, db: Database) -> None:
    from .embedder import SentenceEncoder

    store = EmbeddingStore(db, cfg.embedding_model_name)
    embedded, total = store.stats()
    if embedded == total:
        console.print("[green]All chunks are already embedded.[/green]")
        return
    console.print(f"[green]Encoding {total - embedded} chunk(s)...[/green]")
    encoder = SentenceEncoder(cfg.embedding_model_name, batch_size=cfg.embed_batch_size)
    report = embed_pending(store, encoder, batch_size=cfg.embed_batch_size)
    console.print(f"[green]Embedded {report.embedded} chunk(s), {report.failed} failed.[/green]")


def cmd_ingest(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    root = Path(args.path) if args.path else cfg.data_dir_resolved
    ingestor = _ingestor(cfg, db)
    console.print(f"[green]Scanning:[/green] {root}")
    report = ingestor.scan_directory(_queue(cfg, db), root, priority=args.priority)
    console.print(
        f"[green]Queued {report.queued} file(s)[/green] "
        f"({report.unchanged} unchanged, {report.already_queued} already queued, "
        f"{report.removed} removed)"
    )
    if args.no_process:
        return
    _process(cfg, db)
    if not args.no_embed:
        _embed(cfg, db)


def cmd_watch(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    root = Path(args.path) if args.path else cfg.data_dir_resolved
    ingestor = _ingestor(cfg, db)
    queue = _queue(cfg, db)
    report = ingestor.scan_directory(queue, root, priority=args.priority)
    console.print(
        f"[green]Initial scan of {root}:[/green] {report.queued} queued, {report.removed} removed"
    )

    watcher = DirectoryWatcher(
        ingestor, queue, root, debounce=cfg.watch_debounce_seconds, priority=args.priority
    )
    pool = WorkerPool(queue, ingestor.process_job, concurrency=cfg.worker_concurrency)
    pool.start()
    watcher.start()
    console.print("[cyan]Watching for changes. Press Ctrl+C to stop.[/cyan]")
    try:
        while True:
            time.sleep(min(1.0, cfg.watch_debounce_seconds))
            changes = watcher.poll()
            if changes.queued or changes.removed:
                console.print(
                    f"[green]Queued {changes.queued} file(s)[/green], "
                    f"removed {changes.removed} deleted source(s)"
                )
    except KeyboardInterrupt:
        console.print("[yellow]Stopping...[/yellow]")
    finally:
        watcher.stop(timeout=5)
        pool.stop()
        pool.join(timeout=30)
    console.print(
        f"[green]Processed {pool.report.processed} job(s).[/green] "
        "Run `second-brain embed` to embed new chunks."
    )


def cmd_process(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    _process(cfg, db)


def cmd_embed(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    _embed(cfg, db)


def cmd_queue(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    queue = _queue(cfg, db)
    if args.action == "retry":
        if not args.target:
            raise InvalidConfiguration("queue retry needs a job id")
        queue.retry(args.target)
        console.print(f"[green]Job {args.target} is pending again.[/green]")
        return
    if args.action == "clear":
        removed = queue.clear(_status(args.target))
        console.print(f"[green]Removed {removed} {args.target} job(s).[/green]")
        return

    status = _status(args.target) if args.target else None
    table = Table(title="Queue")
    for column in ("id", "source", "status", "priority", "attempts", "last error"):
        table.add_column(column)
    for job in queue.list_jobs(status, limit=args.limit):
        table.add_row(
            job.id[:8],
            escape(shorten(job.source, width=60, placeholder="...")),
            job.status.value,
            str(job.priority),
            str(job.attempts),
            escape(shorten(job.last_error or "", width=60, placeholder="...")),
        )
    console.print(table)


def cmd_search(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    store = EmbeddingStore(db, cfg.embedding_model_name)
    retriever = Retriever(db, store, candidate_multiplier=cfg.candidate_multiplier)

    query_vector = None
    if not args.lexical and store.dimension() is not None:
        from .embedder import SentenceEncoder

        query_vector = SentenceEncoder(cfg.embedding_model_name).encode_query(args.query)

    weight = cfg.vector_weight if args.weight is None else args.weight
    results = retriever.search(args.query, query_vector, k=args.k or cfg.top_k, vector_weight=weight)
    if not results:
        console.print("[yellow]No results found.[/yellow]")
        return

    table = Table(title=f"Results for {args.query!r}")
    table.add_column("score", justify="right")
    table.add_column("item")
    table.add_column("chunk")
    for result in results:
        preview = shorten(result.content.replace("\n", " "), width=100, placeholder="...")
        table.add_row(f"{result.score:.3f}", escape(f"{result.item_title} #{result.position}"), escape(preview))
    console.print(table)


def cmd_ask(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    from .embedder import SentenceEncoder
    from .query import answer_question, print_answer

    encode_query = None
    if EmbeddingStore(db).dimension() is not None:
        encode_query = SentenceEncoder(cfg.embedding_model_name).encode_query

    answer = answer_question(args.question, cfg, db=db, encode_query=encode_query)
    if answer is None:
        console.print("[yellow]No results found. Did you ingest any content?[/yellow]")
        return
    print_answer(answer)


def cmd_stats(args: argparse.Namespace, cfg: AppConfig, db: Database) -> None:
    stats = collect_stats(db)
    table = Table(title="Second brain")
    table.add_column("metric")
    table.add_column("value", justify="right")
    table.add_row("items", str(stats.total_items))
    for item_type, count in stats.items_by_type.items():
        if count:
            table.add_row(f"  {item_type.value}", str(count))
    table.add_row("chunks", str(stats.total_chunks))
    table.add_row("embedded", f"{stats.embedded_chunks}/{stats.total_chunks}")
    for status, count in stats.jobs_by_status.items():
        table.add_row(f"jobs {status.value}", str(count))
    table.add_row("database size", f"{stats.database_bytes / 1024:.1f} KiB")
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to a config YAML file (default: config.yaml).",
    )

    parser = argparse.ArgumentParser(
        description="Second brain - ingest your notes, documents and recordings, then search and ask questions over them."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest_parser = subparsers.add_parser(
        "ingest", parents=[common], help="Scan a directory, process new or changed files and embed them."
    )
    ingest_parser.add_argument("--path", type=str, default=None, help="Directory to scan (default: data_dir).")
    ingest_parser.add_argument("--priority", type=int, default=0, help="Queue priority for new jobs.")
    ingest_parser.add_argument("--no-process", action="store_true", help="Only enqueue, do not process.")
    ingest_parser.add_argument("--no-embed", action="store_true", help="Skip embedding after processing.")
    ingest_parser.set_defaults(func=cmd_ingest)

    watch_parser = subparsers.add_parser(
        "watch", parents=[common], help="Scan, then queue and process files as they change."
    )
    watch_parser.add_argument("--path", type=str, default=None, help="Directory to watch (default: data_dir).")
    watch_parser.add_argument("--priority", type=int, default=0, help="Queue priority for new jobs.")
    watch_parser.set_defaults(func=cmd_watch)

    process_parser = subparsers.add_parser(
        "process", parents=[common], help="Drain the processing queue with the worker pool."
    )
    process_parser.set_defaults(func=cmd_process)

    queue_parser = subparsers.add_parser("queue", parents=[common], help="Inspect or manage queue jobs.")
    queue_parser.add_argument("action", choices=["list", "retry", "clear"], nargs="?", default="list")
    queue_parser.add_argument(
        "target",
        nargs="?",
        default=None,
        help="Status filter for list/clear, job id for retry.",
    )
    queue_parser.add_argument("--limit", type=int, default=50)
    queue_parser.set_defaults(func=cmd_queue)

    embed_parser = subparsers.add_parser("embed", parents=[common], help="Embed chunks that have no vector yet.")
    embed_parser.set_defaults(func=cmd_embed)

    search_parser = subparsers.add_parser("search", parents=[common], help="Hybrid search over your chunks.")
    search_parser.add_argument("query", type=str)
    search_parser.add_argument("-k", type=int, default=None, help="Number of results (default: top_k).")
    search_parser.add_argument("--weight", type=float, default=None, help="Vector weight in [0, 1].")
    search_parser.add_argument("--lexical", action="store_true", help="Full-text search only.")
    search_parser.set_defaults(func=cmd_search)

    ask_parser = subparsers.add_parser("ask", parents=[common], help="Ask a question over your content.")
    ask_parser.add_argument("question", type=str, help="Question to ask over your notes.")
    ask_parser.set_defaults(func=cmd_ask)

    stats_parser = subparsers.add_parser("stats", parents=[common], help="Show corpus statistics.")
    stats_parser.set_defaults(func=cmd_stats)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_config(Path(args.config))
        configure_logging(cfg.log_level)
        with Database.open(cfg.database_path) as db:
            args.func(args, cfg, db)
    except SecondBrainError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
