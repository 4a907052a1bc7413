"""
Higher Logic to Discourse Import Tool

Imports users, communities, discussions, library entries and their files,
announcements and blogs from a Higher Logic database into Discourse,
rebuilding threads and skipping whatever an earlier run already imported.
"""

from __future__ import annotations

from .cli import main
from .config import MigrationConfig
from .exceptions import MigrationError
from .migrator import HigherLogicMigrator
from .models import MigrationStats
from .threads import OrphanPolicy
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "HigherLogicMigrator",
    "MigrationConfig",
    "MigrationError",
    "MigrationStats",
    "OrphanPolicy",
    "main",
    "setup_logging",
]
