"""Flywheel - Entry Point

Usage:
    python -m flywheel [--config PATH] [--dry-run | --live] [--log-level LEVEL] [COMMAND]

Commands:
    run                 - Start the scheduler and HTTP endpoints (default)
    health              - Query /health on a running instance
    trigger TASK        - Run a scheduled task now on a running instance
    retry-stats         - Print retry queue counts from the database
    version             - Show version

Examples:
    python -m flywheel
    python -m flywheel --config config/production.toml
    python -m flywheel trigger buyback
    python -m flywheel retry-stats
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from flywheel import __version__
from flywheel.services.jobs import TASK_NAMES


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="flywheel",
        description="Fee collection, buyback and burn automation with a durable retry queue",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Flywheel {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Simulate chain transactions and skip swap execution",
    )
    mode.add_argument(
        "--live",
        dest="dry_run",
        action="store_false",
        help="Submit real transactions",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--url",
        default=None,
        help="Base URL of a running instance (default http://localhost:<health.port>)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Start the flywheel")
    subparsers.add_parser("health", help="Check health status")

    trigger = subparsers.add_parser("trigger", help="Run a scheduled task now")
    trigger.add_argument("task", choices=TASK_NAMES, help="Task name")

    subparsers.add_parser("retry-stats", help="Show retry queue counts")
    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    search_paths = [
        Path("config/default.toml"),
        Path("config/production.toml"),
        Path("flywheel.toml"),
        Path("/etc/flywheel/flywheel.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def load_config(args: argparse.Namespace):
    from flywheel.core.config import ConfigManager

    config_path = find_config_file(args.config)
    config = ConfigManager(config_path)
    if args.dry_run is not None:
        config.set("flywheel.dry_run", args.dry_run)
    if args.log_level:
        config.set("flywheel.log_level", args.log_level)
    return config, config_path


def base_url(args: argparse.Namespace) -> str:
    if args.url:
        return args.url.rstrip("/")
    config, _ = load_config(args)
    return f"http://localhost:{config.get_int('health.port', 9090)}"


async def run_flywheel(args: argparse.Namespace) -> int:
    """Run the flywheel until a shutdown signal arrives."""
    import structlog

    from flywheel.app import FlywheelApp
    from flywheel.core.retry import FlywheelError

    config, config_path = load_config(args)

    try:
        app = FlywheelApp(config)
    except FlywheelError as e:
        print(f"Startup failed: {e}", file=sys.stderr)
        return 1

    log = structlog.get_logger()
    log.info(
        "starting_flywheel",
        version=__version__,
        config=str(config_path) if config_path else "defaults",
        dry_run=app.dry_run,
    )

    try:
        await app.run_forever()
        return 0
    except Exception as e:
        log.error("fatal_error", error=str(e), exc_info=True)
        return 1


async def check_health(args: argparse.Namespace) -> int:
    """Check health status."""
    import httpx

    url = f"{base_url(args)}/health"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=5.0)

        data = response.json()
        print(f"Status: {data.get('status', 'unknown')}")
        print(f"Uptime: {data.get('uptime_seconds', 0):.0f}s")
        print(f"Dry run: {data.get('dry_run')}")
        for issue in data.get("issues", []):
            print(f"  issue: {issue}")
        for status, count in (data.get("retry_queue") or {}).items():
            print(f"  retry_queue.{status}: {count}")

        return 0 if data.get("status") == "healthy" else 1

    except httpx.ConnectError:
        print("Cannot connect to flywheel (is it running?)")
        return 1
    except Exception as e:
        print(f"Health check error: {e}")
        return 1


async def trigger_task(args: argparse.Namespace) -> int:
    """Ask a running instance to run a task now."""
    import httpx

    url = f"{base_url(args)}/scheduler/{args.task}/trigger"

    try:
        async with httpx.AsyncClient() as client:
            # The request returns when the task body finishes.
            response = await client.post(url, timeout=None)
    except httpx.ConnectError:
        print("Cannot connect to flywheel (is it running?)")
        return 1

    if response.status_code == 200:
        print(f"Task {args.task} completed")
        return 0
    if response.status_code == 409:
        print(f"Task {args.task} is already running; skipped")
        return 2
    print(f"Trigger failed: HTTP {response.status_code} {response.text}")
    return 1


async def show_retry_stats(args: argparse.Namespace) -> int:
    """Print retry queue counts straight from the database."""
    from flywheel.core.retry import StoreUnavailableError
    from flywheel.services.state_store import StateStore

    config, _ = load_config(args)
    store = StateStore(config=config)
    try:
        await store.connect()
        stats = await store.get_retry_queue_stats()
    except StoreUnavailableError as e:
        print(f"Cannot read retry queue: {e}")
        return 1
    finally:
        await store.close()

    for status, count in stats.to_dict().items():
        print(f"{status:>10}: {count}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Flywheel {__version__}")
        return 0

    if args.command == "health":
        return asyncio.run(check_health(args))

    if args.command == "trigger":
        return asyncio.run(trigger_task(args))

    if args.command == "retry-stats":
        return asyncio.run(show_retry_stats(args))

    return asyncio.run(run_flywheel(args))


if __name__ == "__main__":
    sys.exit(main())
