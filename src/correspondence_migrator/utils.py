"""
Utility functions for the correspondence migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from collections.abc import Mapping
from typing import Final

from .exceptions import ConfigurationError

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

LOG_FILE: Final[str] = "migration.log"
_PASS_PATH_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?:[A-Za-z0-9_-]+)(?:/[A-Za-z0-9_-]+)*")


class PassError(ConfigurationError):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path does not exist in the password store."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""


def setup_logging(*, verbose: bool = False, log_file: str | None = LOG_FILE) -> None:
    """Configure logging for migration runs: console plus an appending log file."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )
    # Per-request noise from the HTTP stack is only useful when debugging it
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def _validate_pass_path(pass_path: str) -> None:
    if not _PASS_PATH_PATTERN.fullmatch(pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def _describe_failure(pass_path: str, error: subprocess.CalledProcessError, suffix: str = "") -> str:
    return (
        f"Failed to get value from pass at '{pass_path}'{suffix}.\n"
        f"Output: {error.stdout.strip()}\n"
        f"Error: {error.stderr.strip()}\n"
        f"Return code: {error.returncode}"
    )


def _ask_passphrase_and_retry(pass_path: str) -> str:
    # Only works interactively; under pytest or cron input() hits EOF
    try:
        passphrase = input("Enter passphrase for GPG key used by pass: ")
    except EOFError as e:
        msg = "Passphrase input was interrupted. Please run the command in an interactive session."
        raise PassphraseRequiredError(msg) from e

    env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}
    try:
        result = subprocess.run(  # noqa: S603
            ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
        )
    except subprocess.CalledProcessError as e:
        raise PassphraseRequiredError(_describe_failure(pass_path, e, " with passphrase")) from e
    return result.stdout.strip()


def get_pass_value(pass_path: str) -> str:
    """Get a secret from the ``pass`` password manager."""
    _validate_pass_path(pass_path)

    try:
        result = subprocess.run(  # noqa: S603
            ["pass", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The 'pass' utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if e.returncode == 2 and "gpg" in stderr and "public key decryption failed" in stderr:
            return _ask_passphrase_and_retry(pass_path)
        raise PassError(_describe_failure(pass_path, e)) from e

    return result.stdout.strip()


def resolve_secret(
    name: str,
    *,
    pass_path: str | None = None,
    env_var: str | None = None,
    default_pass_path: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    """Look a secret up in an explicit pass path, then an env var, then a default pass path."""
    if pass_path:
        return get_pass_value(pass_path)

    if env_var:
        value = (os.environ if environ is None else environ).get(env_var)
        if value:
            return value

    if default_pass_path:
        try:
            return get_pass_value(default_pass_path)
        except PassError as e:
            logger.debug(f"No {name} at default pass path {default_pass_path}: {e}")

    logger.warning(f"No {name} specified nor found")
    return None
