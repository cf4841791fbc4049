"""CLI entry point for Ledgerline.

Commands:
    ledgerline ingest FILE --user USER [--type csv|pdf] [--llm]
                                     Ingest a statement and categorize it
    ledgerline categorize --user USER [--llm] [--update-existing]
                                     Re-run categorization over stored rows
    ledgerline assign --user USER --code CODE TXN_ID...
                                     Assign a category by hand
    ledgerline history TXN_ID        Categorization log, newest first
    ledgerline chart                 Print the chart of accounts
    ledgerline watch --user USER [--dir DIR]
                                     Ingest files dropped into a folder
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.categorize.chart import ChartSource
    from src.categorize.engine import CategorizationEngine
    from src.database.repository import Repository
    from src.ingest.pipeline import IngestionPipeline
    from src.orchestration.bus import MessageBus
    from src.orchestration.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on FINANCE_LOG_LEVEL env var."""
    level = os.environ.get("FINANCE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load config from FINANCE_CONFIG_DIR, or None when the directory is absent."""
    from src.config import Config

    config_dir = Path(os.environ.get("FINANCE_CONFIG_DIR", "config"))
    if not config_dir.is_dir():
        logger.info("No config directory at %s; using built-in defaults", config_dir)
        return None
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, migrated."""
    from src.database.repository import Repository

    db_path = os.environ.get("FINANCE_DB_PATH", "finance.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_migrations_dir() -> Path:
    default = Path(__file__).resolve().parent / "database" / "migrations"
    return Path(os.environ.get("FINANCE_MIGRATIONS_DIR", default))


def _get_watch_dir() -> Path:
    return Path(os.environ.get("FINANCE_WATCH_DIR", "import"))


def _get_chart_source(config):
    from src.categorize.chart import StaticChartSource, YamlChartSource

    if config is not None and (config.config_dir / "chart_of_accounts.yaml").exists():
        return YamlChartSource(config)
    return StaticChartSource()


def _get_rules(config) -> dict:
    if config is None or not (config.config_dir / "rules.yaml").exists():
        return {}
    return config.rules


def _get_fallback_code(config) -> str:
    from src.categorize.chart import UNCATEGORIZED_CODE

    if config is None or not (config.config_dir / "rules.yaml").exists():
        return UNCATEGORIZED_CODE
    return config.fallback_account_code


def _make_llm_service():
    """Build the LLM service from ANTHROPIC_API_KEY / FINANCE_LLM_MODEL.

    Without an API key the service answers with mock completions. With
    FINANCE_ENV=development, provider errors fall back to the mock too.
    """
    from src.llm.service import DEFAULT_MODEL, LLMService

    return LLMService(
        api_key=os.environ.get("ANTHROPIC_API_KEY"),
        model=os.environ.get("FINANCE_LLM_MODEL", DEFAULT_MODEL),
        mock_on_error=os.environ.get("FINANCE_ENV", "").lower() == "development",
    )


@dataclass
class _App:
    """Components wired together for one CLI invocation."""
    repo: Repository
    chart_source: ChartSource
    engine: CategorizationEngine
    pipeline: IngestionPipeline
    bus: MessageBus
    orchestrator: Orchestrator


def _assemble(repo, use_llm: bool = False) -> _App:
    from src.categorize.engine import CategorizationEngine
    from src.categorize.llm_client import LLMClassifier
    from src.categorize.rules import RuleCategorizer
    from src.ingest.pipeline import IngestionPipeline
    from src.orchestration.bus import MessageBus
    from src.orchestration.orchestrator import Orchestrator
    from src.telemetry import EventSink

    config = _get_config()
    sink = EventSink()
    chart_source = _get_chart_source(config)
    rules = RuleCategorizer(_get_rules(config))
    fallback_code = _get_fallback_code(config)

    service = _make_llm_service()
    classifier = LLMClassifier(service, sink=sink, model=service.model)
    engine = CategorizationEngine(
        rules, chart_source, classifier=classifier, sink=sink,
        fallback_code=fallback_code,
    )
    bus = MessageBus()
    pipeline = IngestionPipeline(
        repo, chart_source, rules=rules, bus=bus, sink=sink,
        fallback_code=fallback_code,
    )
    orchestrator = Orchestrator(bus, engine, repo, sink=sink, use_llm=use_llm)
    return _App(repo, chart_source, engine, pipeline, bus, orchestrator)


async def _start(app: _App) -> None:
    await app.bus.start()
    await app.orchestrator.start()


async def _stop(app: _App) -> None:
    await app.orchestrator.stop()
    await app.bus.stop()


def _register_upload(repo, path: Path, user_id: str, file_type: str | None):
    """Record the upload row. Raises UnsupportedFileTypeError before any insert."""
    from src.database.models import UploadedFile
    from src.ingest.pipeline import UnsupportedFileTypeError
    from src.parsers.base import file_type_from_path

    file_type = file_type or file_type_from_path(path)
    if file_type is None:
        raise UnsupportedFileTypeError(path.suffix.lstrip(".").lower() or path.name)
    record = UploadedFile(
        user_id=user_id,
        file_path=str(path),
        original_name=path.name,
        file_type=file_type,
    )
    return repo.insert_file(record)


# ── Command handlers ─────────────────────────────────────


def cmd_ingest(args: argparse.Namespace) -> int:
    """Ingest one statement file, then wait for background categorization."""
    from src.ingest.pipeline import IngestionError
    from src.parsers.base import ParseError

    repo = _get_repo()
    app = _assemble(repo, use_llm=args.llm)
    filepath = args.file.resolve()

    async def run(upload):
        await _start(app)
        try:
            result = await app.pipeline.ingest_file(upload.id)
            await app.bus.join()
            return result
        finally:
            await _stop(app)

    try:
        try:
            upload = _register_upload(repo, filepath, args.user, args.type)
            result = asyncio.run(run(upload))
        except (IngestionError, ParseError) as e:
            print(f"Error: {e}")
            return 1

        print(
            f"{filepath.name}: processed={result.processed_count},"
            f" failed={result.failed_count}, dup={result.duplicate_count}"
        )
        for warning in result.warnings:
            print(f"  warning: {warning}")
        for txn in repo.get_transactions_by_file(upload.id):
            print(
                f"  {txn.date}  {txn.description[:40]:<40} {txn.amount:>10.2f}"
                f"  {txn.type:<6} {txn.account_code} ({txn.confidence:.2f})"
            )
        return 0
    finally:
        repo.close()


def cmd_categorize(args: argparse.Namespace) -> int:
    """Re-categorize a user's stored transactions."""
    from src.categorize.engine import apply_categorization_result

    repo = _get_repo()
    app = _assemble(repo, use_llm=args.llm)
    try:
        txns = repo.get_transactions_for_user(args.user)
        if not txns:
            print(f"No transactions for user {args.user}")
            return 0

        async def run():
            result = await app.engine.categorize(
                txns, use_llm=args.llm, update_existing=args.update_existing,
            )
            applied, warnings = await apply_categorization_result(result, repo)
            return result, applied, warnings

        result, applied, warnings = asyncio.run(run())
        print(
            f"Categorized {applied} of {len(txns)} transactions"
            f" (failed={result.failed_count},"
            f" avg confidence={result.metrics.confidence_avg:.2f},"
            f" llm={'yes' if result.metrics.llm_used else 'no'})"
        )
        for warning in warnings:
            print(f"  warning: {warning}")
        return 0
    finally:
        repo.close()


def cmd_assign(args: argparse.Namespace) -> int:
    """Assign a category code to transactions by hand."""
    from src.categorize.manual import assign_user_category

    repo = _get_repo()
    chart_source = _get_chart_source(_get_config())
    try:
        async def run():
            chart = await chart_source.get_full_chart_of_accounts()
            return await assign_user_category(
                repo, chart, args.user, args.txn_ids, args.code,
            )

        try:
            updated = asyncio.run(run())
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        print(f"Assigned {args.code} to {updated} transaction(s)")
        return 0
    finally:
        repo.close()


def cmd_history(args: argparse.Namespace) -> int:
    """Print a transaction's categorization history."""
    repo = _get_repo()
    try:
        txn = repo.get_transaction(args.txn_id)
        if txn is None:
            print(f"Error: Transaction not found: {args.txn_id}")
            return 1
        print(f"{txn.date}  {txn.description}  {txn.amount:.2f} {txn.type}")
        print(f"Current: {txn.account_code}")
        print("-" * 60)
        for cat in repo.get_categorizations(txn.id):
            reasoning = f"  {cat.reasoning}" if cat.reasoning else ""
            print(
                f"  {cat.created_at[:19]}  {cat.source:<6} {cat.category_code}"
                f" ({cat.confidence:.2f}){reasoning}"
            )
        return 0
    finally:
        repo.close()


def cmd_chart(args: argparse.Namespace) -> int:
    """Print the chart of accounts."""
    chart_source = _get_chart_source(_get_config())
    chart = asyncio.run(chart_source.get_full_chart_of_accounts())
    for code, entry in chart.items():
        parent = f"{entry.parent_account} / " if entry.parent_account else ""
        print(f"  {code:<6} {entry.account_type:<12} {parent}{entry.account}")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Ingest statement files dropped into the watch folder."""
    from src.watcher.observer import FileWatcher

    repo = _get_repo()
    app = _assemble(repo, use_llm=args.llm)
    watch_dir = args.dir or _get_watch_dir()

    async def run():
        loop = asyncio.get_running_loop()
        await _start(app)

        def ingest_fn(path: Path):
            upload = _register_upload(repo, path, args.user, None)
            future = asyncio.run_coroutine_threadsafe(
                app.pipeline.ingest_file(upload.id), loop,
            )
            return future.result()

        watcher = FileWatcher(watch_dir=watch_dir, ingest_fn=ingest_fn)
        print(f"Watching {watcher.watch_dir} for statement files... (Ctrl+C to stop)")
        watcher.start()
        try:
            while True:
                await asyncio.sleep(1)
        finally:
            await asyncio.to_thread(watcher.stop)
            await _stop(app)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        repo.close()
    return 0


_COMMANDS = {
    "ingest": cmd_ingest,
    "categorize": cmd_categorize,
    "assign": cmd_assign,
    "history": cmd_history,
    "chart": cmd_chart,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgerline",
        description="Statement ingestion and transaction categorization",
    )
    subparsers = parser.add_subparsers(dest="command")

    # ingest
    ingest_p = subparsers.add_parser("ingest", help="Ingest a statement file")
    ingest_p.add_argument("file", type=Path, help="CSV or PDF statement")
    ingest_p.add_argument("--user", required=True, help="Owning user id")
    ingest_p.add_argument("--type", choices=["csv", "pdf"],
                          help="File type (default: from extension)")
    ingest_p.add_argument("--llm", action="store_true",
                          help="Allow the LLM fallback during categorization")

    # categorize
    cat_p = subparsers.add_parser("categorize", help="Re-run categorization")
    cat_p.add_argument("--user", required=True, help="Owning user id")
    cat_p.add_argument("--llm", action="store_true", help="Allow the LLM fallback")
    cat_p.add_argument("--update-existing", action="store_true",
                       help="Re-examine transactions that already have a confident code")

    # assign
    assign_p = subparsers.add_parser("assign", help="Assign a category by hand")
    assign_p.add_argument("--user", required=True, help="Owning user id")
    assign_p.add_argument("--code", required=True, help="Account code")
    assign_p.add_argument("txn_ids", nargs="+", help="Transaction ids")

    # history
    hist_p = subparsers.add_parser("history", help="Show categorization history")
    hist_p.add_argument("txn_id", help="Transaction id")

    # chart
    subparsers.add_parser("chart", help="Print the chart of accounts")

    # watch
    watch_p = subparsers.add_parser("watch", help="Watch a drop folder")
    watch_p.add_argument("--user", required=True, help="Owning user id")
    watch_p.add_argument("--dir", type=Path, help="Folder to watch (default: FINANCE_WATCH_DIR)")
    watch_p.add_argument("--llm", action="store_true", help="Allow the LLM fallback")

    return parser


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
