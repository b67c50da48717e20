#!/usr/bin/env python3
"""
Run Receiver — consume an SQS queue with a handler from your codebase.

Usage:
    python scripts/run_receiver.py --handler orders.handlers:handle_order
    python scripts/run_receiver.py --config config/settings.yaml --handler app.jobs:process
    python scripts/run_receiver.py --handler app.jobs:process \\
        --queue-url https://sqs.eu-west-1.amazonaws.com/123456789012/orders --concurrency 40

The handler receives a models.schemas.Message and returns
HandlerResult.ACK to have it deleted. Ctrl-C drains in-flight handlers
before exiting.
"""
import argparse
import asyncio
import sys

from dotenv import load_dotenv

from config.settings import ConfigError, load_settings
from job_queue.runner import configure_logging, load_handler, run_receiver


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bounded-concurrency SQS receiver")
    parser.add_argument("--handler", required=True, help="Handler import path, module:function")
    parser.add_argument("--config", default=None, help="Settings YAML (default: $RECEIVER_CONFIG)")
    parser.add_argument("--queue-url", default=None, help="Override receiver.queue_url")
    parser.add_argument("--concurrency", type=int, default=None, help="Override receiver.max_concurrency")
    parser.add_argument("--wait-seconds", type=int, default=None, help="Override receiver.wait_seconds")
    parser.add_argument("--backend", choices=["sqs", "memory"], default=None, help="Queue backend")
    parser.add_argument("--no-auto-delete", action="store_true", help="Never delete acknowledged messages")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, …")
    parser.add_argument("--log-format", choices=["console", "json"], default=None)
    return parser


def apply_overrides(settings, args):
    rc = settings.receiver
    if args.queue_url:
        rc.queue_url = args.queue_url
    if args.concurrency is not None:
        rc.max_concurrency = args.concurrency
    if args.wait_seconds is not None:
        rc.wait_seconds = args.wait_seconds
    if args.backend:
        rc.backend = args.backend
    if args.no_auto_delete:
        rc.auto_delete = False
    if args.log_level:
        settings.logging.level = args.log_level
    if args.log_format:
        settings.logging.format = args.log_format
    return settings


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    settings = apply_overrides(load_settings(args.config), args)
    configure_logging(settings.logging)

    try:
        settings.receiver.validate()
        handler = load_handler(args.handler)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    asyncio.run(run_receiver(settings, handler))
    return 0


if __name__ == "__main__":
    sys.exit(main())
