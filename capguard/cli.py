"""Command-line interface for the CapGuard service."""

import argparse
import asyncio
import json
import sys

import uvicorn

from capguard.config import settings
from capguard.domain.exceptions import DomainException, UnknownJobError
from capguard.domain.models import SettlementStatus
from capguard.infrastructure.database.session import SessionLocal, create_tables
from capguard.infrastructure.observability.logging import setup_logging
from capguard.services.jobs import build_default_orchestrator
from capguard.services.obligations import ObligationAggregator


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="capguard",
        description="Rate-cap excess interest accrual and settlement",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Logging level (default: {settings.log_level})",
    )

    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the HTTP API with scheduled jobs")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    run_parser = sub.add_parser("run", help="Run one job once and exit")
    run_parser.add_argument("job", help="Job name, e.g. daily-accrual")
    run_parser.add_argument("--timeout", type=float, default=None, help="Abort after this many seconds")

    sub.add_parser("pending", help="Print unsettled excess per borrower as JSON")

    history_parser = sub.add_parser("history", help="Print settlement history as JSON")
    history_parser.add_argument("--borrower", default=None, help="Only this borrower address")
    history_parser.add_argument("--market", default=None, help="Only this market id")
    history_parser.add_argument(
        "--status",
        default=None,
        choices=[status.value for status in SettlementStatus],
    )
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--offset", type=int, default=0)

    sub.add_parser("init-db", help="Create database tables")

    return parser


async def _run_job(name: str, timeout: float | None) -> int:
    orchestrator = build_default_orchestrator(settings)
    try:
        result = await orchestrator.run_job(name, timeout=timeout)
    except UnknownJobError as e:
        names = ", ".join(status.name for status in orchestrator.list_jobs())
        print(f"{e}. Available: {names}", file=sys.stderr)
        return 2

    if result.report is not None:
        print(json.dumps(result.report, indent=2, default=str))
    if not result.success:
        print(result.error, file=sys.stderr)
        return 1
    return 0


def _print_pending() -> int:
    print(json.dumps(ObligationAggregator(SessionLocal).pending_by_borrower(), indent=2, default=str))
    return 0


def _print_history(args: argparse.Namespace) -> int:
    rows = ObligationAggregator(SessionLocal).settlement_history(
        status=SettlementStatus(args.status) if args.status else None,
        borrower_address=args.borrower,
        market_id=args.market,
        limit=args.limit,
        offset=args.offset,
    )
    print(json.dumps(rows, indent=2, default=str))
    return 0


def _init_db() -> int:
    create_tables()
    print("Tables created")
    return 0


def _serve(host: str, port: int) -> int:
    uvicorn.run("capguard.api.main:app", host=host, port=port, log_config=None)
    return 0


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.log_level)

    try:
        if args.command == "serve":
            code = _serve(args.host, args.port)
        elif args.command == "run":
            code = asyncio.run(_run_job(args.job, args.timeout))
        elif args.command == "pending":
            code = _print_pending()
        elif args.command == "history":
            code = _print_history(args)
        else:
            code = _init_db()
    except DomainException as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
