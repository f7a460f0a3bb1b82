"""Meridian - Entry Point

Usage:
    python -m meridian [--config PATH] [--log-level LEVEL] [run|version]

Commands:
    run     - Start the matcher and settlement core (default)
    version - Show version

Examples:
    python -m meridian
    python -m meridian --config config/production.toml --log-level DEBUG
"""

import argparse
import asyncio
import sys
from pathlib import Path

from meridian import __version__


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="meridian",
        description="Order matching with ledger-backed allocation settlement",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Meridian {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser("run", help="Start the settlement core")
    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def find_config_file(specified: Path | None) -> Path | None:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    search_paths = [
        Path("config/default.toml"),
        Path("meridian.toml"),
        Path("/etc/meridian/meridian.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


async def run_app(args: argparse.Namespace) -> int:
    """Run the application until a shutdown signal."""
    import structlog

    from meridian.app import MeridianApp
    from meridian.core.config import ConfigManager
    from meridian.core.logging import setup_logging

    config_path = find_config_file(args.config)
    config = ConfigManager(config_path)

    setup_logging(
        level=args.log_level or config.get("meridian.log_level", "INFO"),
        json_output=config.get_bool("meridian.log_json", False),
        log_file=config.get("meridian.log_file") or None,
    )
    log = structlog.get_logger()

    log.info(
        "starting_meridian",
        version=__version__,
        config=str(config_path) if config_path else "defaults",
    )

    try:
        app = MeridianApp(config)
        await app.run_forever()
        return 0
    except Exception as e:
        log.error("fatal_error", error=str(e), error_type=type(e).__name__)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Meridian {__version__}")
        return 0

    return asyncio.run(run_app(args))


if __name__ == "__main__":
    sys.exit(main())
