"""Run configuration, read from ``HL_ONS_*`` and ``DISCOURSE_*`` environment variables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from sqlalchemy.engine import URL

from . import utils
from .threads import OrphanPolicy

logger: logging.Logger = logging.getLogger(__name__)

ALL_STAGES: Final[tuple[str, ...]] = (
    "groups",
    "users",
    "categories",
    "posts",
    "attachments",
    "announcements",
    "blogs",
)

_API_KEY_ENV_VAR: Final[str] = "DISCOURSE_API_KEY"
_DEFAULT_API_KEY_PASS_PATH: Final[str] = "discourse/api_key"


def get_api_key(pass_path: str | None = None, environ: Mapping[str, str] | None = None) -> str | None:
    """Get the Discourse API key from a pass path, env var DISCOURSE_API_KEY, or the default pass location."""
    if pass_path:
        return utils.get_pass_value(pass_path)

    env = os.environ if environ is None else environ
    key = env.get(_API_KEY_ENV_VAR)
    if key:
        return key

    try:
        return utils.get_pass_value(_DEFAULT_API_KEY_PASS_PATH)
    except (ValueError, utils.PassError):
        logger.warning("No Discourse API key specified nor found")
        return None


def _int(env: Mapping[str, str], name: str, default: int, *, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None
    if value < minimum:
        msg = f"{name} must be at least {minimum}, got {value}"
        raise ValueError(msg)
    return value


def _required(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        msg = f"Environment variable {name} is required"
        raise ValueError(msg)
    return value


def _stages(raw: str | None) -> tuple[str, ...]:
    if raw is None or not raw.strip():
        return ALL_STAGES
    requested = [s.strip().lower() for s in raw.split(",") if s.strip()]
    unknown = [s for s in requested if s not in ALL_STAGES]
    if unknown:
        msg = f"Unknown stage(s) in HL_ONS_STAGES: {', '.join(unknown)}; valid: {', '.join(ALL_STAGES)}"
        raise ValueError(msg)
    # Dependency order is fixed regardless of how stages are listed
    return tuple(s for s in ALL_STAGES if s in requested)


def _orphan_policy(raw: str | None) -> OrphanPolicy:
    if raw is None or not raw.strip():
        return OrphanPolicy.PROMOTE
    try:
        return OrphanPolicy(raw.strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in OrphanPolicy)
        msg = f"HL_ONS_ORPHAN_POLICY must be one of {valid}, got {raw!r}"
        raise ValueError(msg) from None


@dataclass(frozen=True)
class MigrationConfig:
    """Everything a run needs to reach both systems and shape the import."""

    host: str
    database: str
    user: str | None
    password: str | None
    discourse_url: str
    discourse_api_key: str
    discourse_api_username: str = "system"
    prefix: str = "dbo."
    attachments_dir: Path = Path("/path/to/attachments")
    batch_size: int = 1000
    batch_retries: int = 0
    orphan_policy: OrphanPolicy = OrphanPolicy.PROMOTE
    stages: tuple[str, ...] = ALL_STAGES
    state_db: str = "sqlite:///hl_import_state.db"
    attachment_workers: int = 4

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, *, discourse_pass_path: str | None = None
    ) -> MigrationConfig:
        env = os.environ if environ is None else environ

        api_key = get_api_key(discourse_pass_path, env)
        if not api_key:
            msg = f"Discourse API key missing: set {_API_KEY_ENV_VAR} or store it in pass"
            raise ValueError(msg)

        return cls(
            host=env.get("HL_ONS_HOST") or "localhost",
            database=_required(env, "HL_ONS_DB"),
            user=env.get("HL_ONS_USER") or None,
            password=env.get("HL_ONS_PW") or None,
            discourse_url=_required(env, "DISCOURSE_URL"),
            discourse_api_key=api_key,
            discourse_api_username=env.get("DISCOURSE_API_USERNAME") or "system",
            prefix=env.get("HL_ONS_PREFIX", "dbo."),
            attachments_dir=Path(env.get("HL_ONS_ATTACHMENTS_DIR") or "/path/to/attachments"),
            batch_size=_int(env, "HL_ONS_BATCH_SIZE", 1000, minimum=1),
            batch_retries=_int(env, "HL_ONS_BATCH_RETRIES", 0, minimum=0),
            orphan_policy=_orphan_policy(env.get("HL_ONS_ORPHAN_POLICY")),
            stages=_stages(env.get("HL_ONS_STAGES")),
            state_db=env.get("HL_ONS_STATE_DB") or "sqlite:///hl_import_state.db",
            attachment_workers=_int(env, "HL_ONS_ATTACHMENT_WORKERS", 4, minimum=1),
        )

    def source_url(self) -> URL:
        return URL.create(
            "mssql+pymssql",
            username=self.user,
            password=self.password,
            host=self.host,
            database=self.database,
        )
