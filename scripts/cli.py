"""Minimal CLI entry point for running the Support Triage API and manual checks."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

import uvicorn

from support_triage.api.app import create_app
from support_triage.config.settings import SupportTriageSettings
from support_triage.llm.classifier import EmailInput
from support_triage.pipeline.factory import IngestorFactory, open_store


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _add_token_arg(subparser: argparse.ArgumentParser) -> None:
    """Add --token, falling back to the GMAIL_ACCESS_TOKEN environment variable."""
    subparser.add_argument(
        "--token",
        "-t",
        default=os.environ.get("GMAIL_ACCESS_TOKEN"),
        help="Gmail OAuth access token (default: $GMAIL_ACCESS_TOKEN)",
    )


def _validate_args(args: argparse.Namespace) -> None:
    """Reject missing tokens and non-positive page sizes."""
    needs_token = args.command in ("inbox", "refresh", "refresh-batch", "analyze")
    if needs_token and not getattr(args, "token", None):
        print("Error: --token or GMAIL_ACCESS_TOKEN is required", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "page_size", None) is not None and args.page_size <= 0:
        print("Error: --page-size must be positive", file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Support Triage - classify Gmail threads as customer support"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    # inbox command
    inbox_parser = subparsers.add_parser("inbox", help="Ingest one page of inbox threads")
    _add_token_arg(inbox_parser)
    inbox_parser.add_argument("--page-token", dest="page_token", default=None)
    inbox_parser.add_argument("--page-size", dest="page_size", type=int, default=None)
    inbox_parser.add_argument(
        "--force-refresh",
        dest="force_refresh",
        action="store_true",
        help="Ignore cached verdicts",
    )

    # refresh command
    refresh_parser = subparsers.add_parser("refresh", help="Reclassify a single thread")
    _add_token_arg(refresh_parser)
    refresh_parser.add_argument("thread_id", help="Gmail thread ID")

    # refresh-batch command
    batch_parser = subparsers.add_parser("refresh-batch", help="Reclassify several threads")
    _add_token_arg(batch_parser)
    batch_parser.add_argument("thread_ids", nargs="+", help="Gmail thread IDs")

    # analyze command
    analyze_parser = subparsers.add_parser(
        "analyze", help="Classify one email given on the command line"
    )
    _add_token_arg(analyze_parser)
    analyze_parser.add_argument("--subject", "-s", default="")
    analyze_parser.add_argument("--body", "-b", default="")

    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    _validate_args(args)

    settings = SupportTriageSettings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(create_app(settings), host=args.host, port=args.port)
        return

    store = open_store(settings)
    try:
        ingestor = IngestorFactory(settings, store)(args.token)

        if args.command == "inbox":
            page = ingestor.run(
                page_token=args.page_token,
                page_size=args.page_size,
                force_refresh=args.force_refresh,
            )
            print(json.dumps(page.to_dict(), indent=2))

        elif args.command == "refresh":
            email = ingestor.refresh_thread(args.thread_id)
            print(json.dumps(email.to_dict(), indent=2))

        elif args.command == "refresh-batch":
            batch = ingestor.refresh_threads(args.thread_ids)
            print(json.dumps(batch.to_dict(), indent=2))

        elif args.command == "analyze":
            [result] = ingestor.analyze([EmailInput(subject=args.subject, content=args.body)])
            print(json.dumps(result.to_dict() if result else None, indent=2))

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
