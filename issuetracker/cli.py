"""
Issue tracker bus CLI.

Usage:
    issuetracker <command> [options]

Commands:
    consume     Run every consumer processor until interrupted
    topics      Show the event type -> topic mapping
    provision   Create missing subscriptions and exit
    run         Run the HTTP application under uvicorn
    version     Show version
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from issuetracker import __version__
from issuetracker.config import BusSettings, get_settings
from issuetracker.exceptions import ConfigurationError


class Colors:
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def color(text: str, c: str) -> str:
    return f"{c}{text}{Colors.ENDC}"


def success(text: str) -> str:
    return color(text, Colors.GREEN)


def error(text: str) -> str:
    return color(text, Colors.FAIL)


def warning(text: str) -> str:
    return color(text, Colors.WARNING)


def info(text: str) -> str:
    return color(text, Colors.CYAN)


def bold(text: str) -> str:
    return color(text, Colors.BOLD)


def configure_logging(settings: BusSettings) -> None:
    """Apply the configured level and format to the root logger."""
    logging.basicConfig(level=settings.log_level, format=settings.log_format)


def load_settings() -> BusSettings | None:
    """Load settings, printing the error instead of a traceback."""
    try:
        settings = get_settings()
    except ConfigurationError as exc:
        print(error(exc.message))
        return None
    configure_logging(settings)
    return settings


# =============================================================================
# Commands
# =============================================================================

def cmd_version(args: argparse.Namespace) -> int:
    print(f"issuetracker {__version__}")
    return 0


def cmd_topics(args: argparse.Namespace) -> int:
    """Show the event type -> topic mapping."""
    settings = load_settings()
    if settings is None:
        return 1

    from issuetracker.messaging.topics import TopicRegistry

    registry = TopicRegistry.from_settings(settings)
    consumed = set(registry.select(settings.consume_topics))

    print()
    print(bold("Topics"))
    print("=" * 50)
    for event_type, topic in registry.items():
        marker = success("consumed") if topic in consumed else info("publish only")
        print(f"  {event_type:<24} {topic:<28} {marker}")
    print()
    print(info(f"Subscription: {settings.subscription_name}"))
    return 0


def cmd_provision(args: argparse.Namespace) -> int:
    """Create missing subscriptions on every consumed topic."""
    settings = load_settings()
    if settings is None:
        return 1

    from issuetracker.messaging.host import BusHost

    async def provision() -> list[str]:
        host = BusHost(settings=settings)
        try:
            await host.start(consume=False)
            return await host.consumer.ensure_subscriptions()
        finally:
            await host.stop()

    created = asyncio.run(provision())

    print()
    if created:
        for topic in created:
            print(success(f"  Created {topic}/subscriptions/{settings.subscription_name}"))
    else:
        print(info("All subscriptions already exist."))
    return 0


def cmd_consume(args: argparse.Namespace) -> int:
    """Run every consumer processor until SIGINT/SIGTERM."""
    settings = load_settings()
    if settings is None:
        return 1

    from issuetracker.messaging.host import BusHost

    print()
    print(bold("Starting Service Bus Consumer"))
    print("=" * 50)
    print(info(f"Broker: {settings.message_broker}"))
    print(info(f"Subscription: {settings.subscription_name}"))
    print(info("Press Ctrl+C to stop"))
    print()

    asyncio.run(BusHost(settings=settings).run_forever())

    print(info("Consumer stopped."))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run the HTTP application."""
    settings = load_settings()
    if settings is None:
        return 1

    import uvicorn

    print(info(f"Starting server at http://{args.host}:{args.port}"))
    uvicorn.run(
        "issuetracker.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="issuetracker",
        description="Issue tracker service bus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  issuetracker topics          Show topic mapping
  issuetracker provision       Create missing subscriptions
  issuetracker consume         Run consumers until Ctrl+C
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    consume_parser = subparsers.add_parser("consume", help="Run consumer processors")
    consume_parser.set_defaults(func=cmd_consume)

    topics_parser = subparsers.add_parser("topics", help="Show topic mapping")
    topics_parser.set_defaults(func=cmd_topics)

    provision_parser = subparsers.add_parser("provision", help="Create missing subscriptions")
    provision_parser.set_defaults(func=cmd_provision)

    run_parser = subparsers.add_parser("run", help="Run the HTTP application")
    run_parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    run_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    run_parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    run_parser.set_defaults(func=cmd_run)

    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    return parser


def cli(args: list[str] | None = None) -> int:
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 0

    return parsed_args.func(parsed_args)


def main() -> None:
    sys.exit(cli())


if __name__ == "__main__":
    main()
