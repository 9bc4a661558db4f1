"""
Billsweep CLI

Commands:
  serve    - Run the billing API server
  sweep    - Run a billing sweep (one kind or all)
  history  - Show an owner's ledger history
  summary  - Show an owner's spend summary
  verify   - Verify a resource's billed timeline
"""

import argparse
import json
import os
import sys

from .config import configure_logging


def _engine():
    from .billing import build_engine

    return build_engine()


def cmd_serve(args):
    """Run the billing server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Billsweep on {host}:{port}")

    uvicorn.run(
        "billsweep.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_sweep(args):
    """Run a billing sweep."""
    from .core.errors import SchemaUnavailableError
    from .core.resources import ResourceKind

    engine = _engine()

    try:
        if args.kind == "all":
            results = list(engine.orchestrator.run_all().values())
        else:
            results = [engine.orchestrator.run(ResourceKind(args.kind))]
    except SchemaUnavailableError as e:
        print(f"Sweep aborted: {e}")
        sys.exit(2)

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        for result in results:
            print(f"{result.kind.display_name} sweep")
            print(f"  Billed: {result.billed}")
            print(f"  Failed: {result.failed}")
            print(f"  Skipped: {result.skipped}")
            print(f"  Hours: {result.total_hours}")
            print(f"  Amount: {result.total_amount} {engine.config.currency}")
            for error in result.errors:
                print(f"  ! {error.message}")

    if not all(r.success for r in results):
        sys.exit(1)


def cmd_history(args):
    """Show ledger history for an owner."""
    engine = _engine()
    entries = engine.statements.history(args.owner, limit=args.limit, offset=args.offset)

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return

    if not entries:
        print(f"No ledger entries for {args.owner}")
        return

    for entry in entries:
        status = entry.outcome.value
        if entry.failure_reason:
            status = f"{status} ({entry.failure_reason.value})"
        print(f"{entry.created_at.isoformat()}  {entry.amount:>10}  {status:<32} {entry.description or entry.resource_id}")


def cmd_summary(args):
    """Show the spend summary for an owner."""
    engine = _engine()
    summary = engine.statements.summary(args.owner)

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
        return

    currency = engine.config.currency
    print(f"Billing Summary: {args.owner}")
    print("=" * 40)
    print(f"Spent this month: {summary.spent_this_month} {currency}")
    print(f"Spent all time: {summary.spent_all_time} {currency}")
    for kind, count in summary.active_resources.items():
        print(f"Active {kind}: {count}")
    print(f"Monthly estimate: {summary.monthly_estimate} {currency}")
    print(f"Ledger entries: {summary.billed_entries} billed, {summary.failed_entries} failed")


def cmd_verify(args):
    """Verify a resource's billed timeline."""
    engine = _engine()
    report = engine.statements.verify_timeline(args.resource)

    if report.valid:
        print(f"Timeline OK: {report.billed_entries} billed entries")
    else:
        print(f"Timeline INVALID: {report.error}")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Billsweep - Hourly usage billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Run a billing sweep")
    sweep_parser.add_argument(
        "--kind",
        default="all",
        choices=["all", "vm", "managed_app", "addon"],
        help="Resource kind to sweep",
    )
    sweep_parser.add_argument("--json", action="store_true", help="Print JSON")

    # history
    history_parser = subparsers.add_parser("history", help="Show ledger history")
    history_parser.add_argument("owner", help="Owner ID")
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--offset", type=int, default=0)
    history_parser.add_argument("--json", action="store_true", help="Print JSON")

    # summary
    summary_parser = subparsers.add_parser("summary", help="Show spend summary")
    summary_parser.add_argument("owner", help="Owner ID")
    summary_parser.add_argument("--json", action="store_true", help="Print JSON")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a billed timeline")
    verify_parser.add_argument("resource", help="Resource ID")

    args = parser.parse_args()
    configure_logging(level=args.log_level)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "sweep":
        cmd_sweep(args)
    elif args.command == "history":
        cmd_history(args)
    elif args.command == "summary":
        cmd_summary(args)
    elif args.command == "verify":
        cmd_verify(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
