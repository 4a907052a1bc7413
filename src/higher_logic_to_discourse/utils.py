"""
Utility functions for the Higher Logic to Discourse importer.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path format is invalid."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""


def setup_logging(*, verbose: bool = False, log_file: str = "migration.log") -> None:
    """Configure logging for the import run."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(log_file, mode="a")],
    )
    # urllib3 logs every request at DEBUG
    logging.getLogger("urllib3").setLevel(logging.INFO)


def _validate_pass_path(pass_path: str) -> None:
    if not re.fullmatch(r"(?:[A-Za-z0-9_-]+)(?:/[A-Za-z0-9_-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def _run_pass(pass_path: str, passphrase: str | None = None) -> CompletedProcess[str]:
    if passphrase is None:
        return subprocess.run(["pass", pass_path], capture_output=True, text=True, check=True)  # noqa: S603, S607
    env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}
    return subprocess.run(  # noqa: S603
        ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env  # noqa: S607
    )


def get_pass_value(pass_path: str) -> str:
    """Get value from pass utility at specified path."""
    _validate_pass_path(pass_path)

    try:
        return _run_pass(pass_path).stdout.strip()
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if not (e.returncode == 2 and "gpg" in stderr and "public key decryption failed" in stderr):  # noqa: PLR2004
            msg = (
                f"Failed to get value from pass at '{pass_path}'.\n"
                f"Output: {e.stdout.strip()}\n"
                f"Error: {e.stderr.strip()}\n"
                f"Return code: {e.returncode}"
            )
            raise PassError(msg) from e

    # The GPG agent could not prompt; ask here and feed the passphrase to pass.
    # Fails in non-interactive sessions (e.g. pytest).
    try:
        passphrase = input("Enter passphrase for GPG key used by pass: ")
    except EOFError as e:
        msg = "Passphrase input was interrupted. Please run the command in an interactive session."
        raise PassphraseRequiredError(msg) from e

    try:
        return _run_pass(pass_path, passphrase).stdout.strip()
    except subprocess.CalledProcessError as e:
        msg = (
            f"Failed to get value from pass at '{pass_path}' with passphrase.\n"
            f"Output: {e.stdout.strip()}\n"
            f"Error: {e.stderr.strip()}\n"
            f"Return code: {e.returncode}"
        )
        raise PassphraseRequiredError(msg) from e
