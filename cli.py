#!/usr/bin/env python3
"""
Command-line interface for the notification dispatch service.

Usage:
    python cli.py [command] [options]

Commands:
    serve       Start the API server (workers included unless --no-workers)
    worker      Run the queue workers without the HTTP API
    event       Dispatch a domain event from the command line
    stats       Print queue counts
    retry       Re-queue terminally failed jobs
    render      Render an email template to stdout
    test        Run the test suite

Examples:
    python cli.py serve --port 3005
    python cli.py worker
    python cli.py event user.registered '{"user": {"id": "u1", "email": "a@b.com", "firstName": "Ann"}}'
    python cli.py retry email
    python cli.py render order-shipped --data '{"orderId": "o1", "trackingNumber": "T1"}'
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import subprocess
import sys

from shared.config import get_settings
from shared.errors import NotificationServiceError

logger = logging.getLogger("cli")


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().service.log_level,
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_json(text: str) -> dict:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        print(f"Invalid JSON: {exc}")
        sys.exit(1)
    if not isinstance(data, dict):
        print("JSON data must be an object")
        sys.exit(1)
    return data


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    sys.exit(subprocess.run(cmd).returncode)


def run_server(host: str, port: int, reload: bool, workers: bool) -> None:
    """Start the API server."""
    cmd = [sys.executable, "-m", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")
    env = dict(os.environ, SERVICE_RUN_WORKERS="true" if workers else "false")

    print(f"Starting server at http://{host}:{port}")
    subprocess.run(cmd, env=env)


async def run_worker() -> None:
    """Process jobs until SIGINT/SIGTERM, then drain and exit."""
    from dispatch.runtime import DispatchRuntime

    runtime = await DispatchRuntime.connect(get_settings())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    runtime.start_workers()
    logger.info("Workers running, press Ctrl+C to stop")
    try:
        await stop.wait()
    finally:
        await runtime.close()


async def run_event(event_type: str, data: dict) -> None:
    from dispatch.runtime import DispatchRuntime

    runtime = await DispatchRuntime.connect(get_settings())
    try:
        result = await runtime.dispatch_event(event_type, data)
        print(json.dumps(result.to_dict(), indent=2))
    except NotificationServiceError as exc:
        print(f"Rejected: {exc.message}")
        sys.exit(1)
    finally:
        await runtime.close()


async def run_stats() -> None:
    from dispatch.runtime import DispatchRuntime

    runtime = await DispatchRuntime.connect(get_settings())
    try:
        print(json.dumps(await runtime.queue_stats(), indent=2))
    finally:
        await runtime.close()


async def run_retry(queue_type: str) -> None:
    from dispatch.runtime import DispatchRuntime

    runtime = await DispatchRuntime.connect(get_settings())
    try:
        retried = await runtime.retry_failed(queue_type)
        for name, count in retried.items():
            print(f"{name}: {count} job(s) re-queued")
    finally:
        await runtime.close()


def run_render(template: str, data: dict) -> None:
    from shared.templates import TemplateRenderer

    settings = get_settings().template
    renderer = TemplateRenderer(settings.templates_dir, settings.locale, settings.currency)
    print(renderer.render(template, data))


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Notification dispatch service CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --reload
  %(prog)s worker
  %(prog)s event order.confirmed '{"order": {"id": "o1"}, "user": {"id": "u1"}}'
  %(prog)s stats
  %(prog)s retry all
  %(prog)s render welcome --data '{"firstName": "Ann"}'
  %(prog)s test -v
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=get_settings().service.host, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=get_settings().service.port, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    serve_parser.add_argument("--no-workers", action="store_true", help="Do not run queue workers in the API process")

    # Worker command
    subparsers.add_parser("worker", help="Run the queue workers")

    # Event command
    event_parser = subparsers.add_parser("event", help="Dispatch a domain event")
    event_parser.add_argument("event_type", help="e.g. order.shipped")
    event_parser.add_argument("data", help="Event payload as JSON")

    # Stats command
    subparsers.add_parser("stats", help="Print queue counts")

    # Retry command
    retry_parser = subparsers.add_parser("retry", help="Re-queue failed jobs")
    retry_parser.add_argument("queue", nargs="?", default="all", choices=["all", "email", "inapp"])

    # Render command
    render_parser = subparsers.add_parser("render", help="Render an email template")
    render_parser.add_argument("template", help="Template name")
    render_parser.add_argument("--data", default="{}", help="Template data as JSON")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    args = parser.parse_args()

    if args.command in ("worker", "event", "stats", "retry"):
        _configure_logging()

    if args.command == "serve":
        run_server(args.host, args.port, args.reload, workers=not args.no_workers)
    elif args.command == "worker":
        asyncio.run(run_worker())
    elif args.command == "event":
        asyncio.run(run_event(args.event_type, _load_json(args.data)))
    elif args.command == "stats":
        asyncio.run(run_stats())
    elif args.command == "retry":
        asyncio.run(run_retry(args.queue))
    elif args.command == "render":
        run_render(args.template, _load_json(args.data))
    elif args.command == "test":
        run_tests(args.pytest_args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
