"""
Command-line interface for the Higher Logic to Discourse importer.

Connection details and tuning come from the environment (``HL_ONS_*`` and
``DISCOURSE_*`` variables); see ``config.MigrationConfig``.
"""

from __future__ import annotations

import argparse
import logging
import sys

from .config import MigrationConfig
from .exceptions import MigrationError
from .migrator import HigherLogicMigrator
from .utils import PassError, setup_logging


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Import a Higher Logic community database into Discourse")

    _ = parser.add_argument(
        "--discourse-pass-token",
        help="Path for the Discourse API key in pass utility (default: DISCOURSE_API_KEY, then discourse/api_key)",
    )

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)
    logger = logging.getLogger(__name__)

    try:
        config = MigrationConfig.from_env(discourse_pass_path=args.discourse_pass_token)
        migrator = HigherLogicMigrator.from_config(config)
        stats = migrator.run()
    except (ValueError, PassError):
        logger.exception("Invalid configuration")
        sys.exit(1)
    except MigrationError:
        logger.exception("Import failed")
        sys.exit(1)

    for error in stats.errors:
        logger.error(error)

    sys.exit(0 if stats.success else 1)
