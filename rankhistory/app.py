import argparse
import json
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .backfill import BackfillEngine
from .controller import BackfillController, ControllerResult
from .database import BackfillStatus, init_database, get_session_factory
from .env import Settings, load_env
from .logger import get_logger
from .normalize import normalize_slug, normalize_symbol, parse_day
from .quotes import CoinMarketCapClient, QuoteSourceError
from .ranks import compute_ranks
from .schema import validate_token_entry
from .storage import JobStore, SnapshotStore, TokenStore


def _settings(args: argparse.Namespace) -> Settings:
    return args.settings


def _db_path(args: argparse.Namespace) -> Path:
    return Path(args.db) if args.db else _settings(args).db_path


def _stores(args: argparse.Namespace):
    db_path = _db_path(args)
    if not db_path.exists():
        raise SystemExit(f"Database not found: {db_path}. Run 'rankhistory init-db' first.")
    factory = get_session_factory(db_path)
    return JobStore(factory), TokenStore(factory), SnapshotStore(factory)


def _cmc_client(args: argparse.Namespace) -> CoinMarketCapClient:
    settings = _settings(args)
    api_key = getattr(args, "api_key", None) or settings.cmc_api_key
    if not api_key:
        raise SystemExit("CMC_API_KEY not set. Set env var or pass --api-key.")
    return CoinMarketCapClient(api_key, base_url=settings.cmc_api_base)


def _controller(args: argparse.Namespace, quote_source: Optional[CoinMarketCapClient] = None) -> BackfillController:
    job_store, token_store, snapshot_store = _stores(args)
    rate_limit_ms = getattr(args, "rate_limit_ms", None)
    if rate_limit_ms is None:
        rate_limit_ms = _settings(args).rate_limit_ms
    engine = BackfillEngine(job_store, token_store, snapshot_store, quote_source, rate_limit_ms=rate_limit_ms)
    return BackfillController(job_store, engine)


def _parse_day_arg(value: str, flag: str):
    try:
        return parse_day(value)
    except ValueError:
        raise SystemExit(f"{flag} must be a date in YYYY-MM-DD format, got {value!r}")


def _print_result(result: ControllerResult) -> None:
    if not result.success:
        raise SystemExit(result.message)
    if result.job_id:
        print(f"Job: {result.job_id}")
    if result.status:
        print(f"Status: {result.status}")
    print(result.message)


def _print_job(job: Dict[str, Any]) -> None:
    print(f"ID: {job['id']}")
    print(f"  Window: {job['date_range_start']} .. {job['date_range_end']} (scope {job['token_scope']})")
    print(f"  Status: {job['status']}")
    print(f"  Tokens processed: {job['tokens_processed']}")
    print(f"  Last cmcId: {job['last_processed_cmc_id']}")
    print(f"  Started: {job['started_at']}  Completed: {job['completed_at']}")
    errors = job.get("errors") or []
    if errors:
        print(f"  Errors ({len(errors)}):")
        for e in errors[:5]:
            print(f"   - {e}")
        if len(errors) > 5:
            print(f"   ... and {len(errors) - 5} more")


def cmd_init_db(args: argparse.Namespace) -> None:
    db_path = _db_path(args)
    init_database(db_path)
    print(f"Database ready: {db_path}")


def import_token(token_store: TokenStore, entry: Dict[str, Any]) -> Dict[str, Any]:
    errors = validate_token_entry(entry)
    if errors:
        return {"cmc_id": entry.get("cmc_id", entry.get("id")) if isinstance(entry, dict) else None,
                "status": "validation_error", "errors": errors}

    cmc_id = entry.get("cmc_id", entry.get("id"))
    slug = entry.get("slug")
    outcome = token_store.upsert_token(
        cmc_id=cmc_id,
        symbol=normalize_symbol(entry["symbol"]),
        name=entry.get("name"),
        slug=normalize_slug(slug) if slug else None,
        is_tracked=entry.get("is_tracked", True),
    )
    return {"cmc_id": cmc_id, **outcome}


def _import_entries(token_store: TokenStore, entries) -> None:
    new = upd = same = skip = 0
    for entry in entries:
        outcome = import_token(token_store, entry)
        s = outcome["status"]
        if s == "validation_error":
            print(f"[validation_error] {outcome['cmc_id']} - {outcome['errors']}")
            skip += 1
        elif s == "new":
            new += 1
        elif s == "updated":
            upd += 1
        else:
            same += 1
    print(f"Done. new={new} updated={upd} no-change={same} skipped={skip}")


def cmd_import_tokens(args: argparse.Namespace) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    with input_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    entries = data.get("data", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise SystemExit("Token file must be a JSON list (or a CMC listings response)")

    _, token_store, _ = _stores(args)
    _import_entries(token_store, entries)


def cmd_sync_tokens(args: argparse.Namespace) -> None:
    _, token_store, _ = _stores(args)
    client = _cmc_client(args)
    try:
        listings = client.get_listings(limit=args.limit)
    except QuoteSourceError as e:
        raise SystemExit(str(e))
    print(f"Fetched {len(listings)} listings.")
    _import_entries(token_store, listings)


def cmd_start(args: argparse.Namespace) -> None:
    range_start = _parse_day_arg(args.date_from, "--from")
    range_end = _parse_day_arg(args.date_to, "--to")
    scope = args.scope if args.scope is not None else _settings(args).token_scope

    controller = _controller(args, quote_source=_cmc_client(args))
    result = controller.start(range_start, range_end, scope)
    _print_result(result)
    if result.action not in ("started", "resumed"):
        return

    # The run lives on a daemon thread, so this process stays up until it ends.
    print("Running... press Ctrl+C to pause after the current token.")
    try:
        controller.wait(result.job_id)
    except KeyboardInterrupt:
        print("\nPausing...")
        _pause_when_running(controller, result.job_id)

    final = controller.status(result.job_id)
    if final.job:
        _print_job(final.job)


def _pause_when_running(controller: BackfillController, job_id: str, poll: float = 0.5) -> None:
    """Pause a foreground run, waiting for a still-QUEUED job to start first."""
    while True:
        paused = controller.pause(job_id)
        if paused.success or paused.status != BackfillStatus.QUEUED.value:
            print(paused.message)
            break
        if controller.wait(job_id, timeout=poll):
            break
    controller.wait(job_id)


def cmd_pause(args: argparse.Namespace) -> None:
    _print_result(_controller(args).pause(args.job))


def cmd_status(args: argparse.Namespace) -> None:
    result = _controller(args).status(args.job)
    if not result.success:
        raise SystemExit(result.message)
    _print_job(result.job)


def cmd_list(args: argparse.Namespace) -> None:
    result = _controller(args).list_jobs()
    if not result.success:
        raise SystemExit(result.message)
    if not result.jobs:
        print("No backfill jobs.")
        return
    print(f"Found {len(result.jobs)} backfill jobs:\n")
    for job in result.jobs:
        _print_job(job)
        print()


def cmd_compute_ranks(args: argparse.Namespace) -> None:
    range_start = _parse_day_arg(args.date_from, "--from")
    range_end = _parse_day_arg(args.date_to, "--to")
    if range_start > range_end:
        raise SystemExit("--from must not be after --to")
    _, _, snapshot_store = _stores(args)
    ranked = compute_ranks(snapshot_store, range_start, range_end)
    print(f"Ranked {ranked} date(s).")


def main():
    # Load .env if present (CMC_API_KEY, RANKHISTORY_DB, etc.)
    load_env()
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(prog="rankhistory", description="Historical rank backfill for tracked tokens")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help=f"Path to SQLite database (default: {settings.db_path})")
    parser.set_defaults(settings=settings)

    subparsers = parser.add_subparsers(dest="command")
    ini = subparsers.add_parser("init-db", help="Create the database and tables")
    ini.set_defaults(func=cmd_init_db)

    imp = subparsers.add_parser("import-tokens", help="Register tokens from a JSON file")
    imp.add_argument("--input", required=True, help="JSON list of {cmc_id, symbol, name, slug, is_tracked} or a CMC listings response")
    imp.set_defaults(func=cmd_import_tokens)

    syn = subparsers.add_parser("sync-tokens", help="Register tokens from the latest CMC listings")
    syn.add_argument("--limit", type=int, default=settings.token_scope, help=f"Number of listings to fetch (default {settings.token_scope})")
    syn.add_argument("--api-key", help="CoinMarketCap API key (or set CMC_API_KEY)")
    syn.set_defaults(func=cmd_sync_tokens)

    sta = subparsers.add_parser("start", help="Start or resume a backfill for a date window and run it")
    sta.add_argument("--from", dest="date_from", required=True, help="First day, YYYY-MM-DD (inclusive)")
    sta.add_argument("--to", dest="date_to", required=True, help="Last day, YYYY-MM-DD (inclusive)")
    sta.add_argument("--scope", type=int, help=f"Number of tokens by cmcId (default {settings.token_scope})")
    sta.add_argument("--rate-limit-ms", type=int, help=f"Delay between token requests (default {settings.rate_limit_ms})")
    sta.add_argument("--api-key", help="CoinMarketCap API key (or set CMC_API_KEY)")
    sta.set_defaults(func=cmd_start)

    pau = subparsers.add_parser("pause", help="Pause a running backfill after its current token")
    pau.add_argument("--job", required=True, help="Backfill job id")
    pau.set_defaults(func=cmd_pause)

    sts = subparsers.add_parser("status", help="Show a backfill job")
    sts.add_argument("--job", required=True, help="Backfill job id")
    sts.set_defaults(func=cmd_status)

    lst = subparsers.add_parser("list", help="List all backfill jobs")
    lst.set_defaults(func=cmd_list)

    rnk = subparsers.add_parser("compute-ranks", help="Recompute daily ranks for a date window")
    rnk.add_argument("--from", dest="date_from", required=True, help="First day, YYYY-MM-DD")
    rnk.add_argument("--to", dest="date_to", required=True, help="Last day, YYYY-MM-DD")
    rnk.set_defaults(func=cmd_compute_ranks)

    args = parser.parse_args()

    if args.version:
        print(__version__)
        return

    get_logger(level=settings.log_level, log_dir=settings.log_dir)

    if hasattr(args, "func"):
        args.func(args)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
