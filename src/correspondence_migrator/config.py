"""
Runtime settings, read from environment variables and the pass utility.

Secrets (the source API key and the Keycloak password) are resolved in this
order: explicit pass path, environment variable, default pass path.
"""

from __future__ import annotations

import importlib
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from .auth import KeycloakTokenProvider
from .engine import DEFAULT_LEASE_SECONDS, DEFAULT_USER
from .exceptions import ConfigurationError
from .pipelines import DEFAULT_REGISTER_SETTLE_SECONDS
from .utils import resolve_secret

if TYPE_CHECKING:
    from .protocols import DestinationClient

    DestinationFactory = Callable[["MigrationSettings"], DestinationClient]

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_ENV_PREFIX: Final[str] = "CORRMIG_"
_API_KEY_ENV_VAR: Final[str] = "CORRMIG_SOURCE_API_KEY"
_DEFAULT_API_KEY_PASS_PATH: Final[str] = "correspondence-migrator/source_api_key"
_KEYCLOAK_PASSWORD_ENV_VAR: Final[str] = "CORRMIG_KEYCLOAK_PASSWORD"  # noqa: S105
_DEFAULT_KEYCLOAK_PASS_PATH: Final[str] = "correspondence-migrator/keycloak_password"  # noqa: S105

DEFAULT_DATABASE_URL: Final[str] = "sqlite:///migration.db"
DEFAULT_ITEM_DELAY: Final[float] = 0.2


def _env(environ: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    value = environ.get(f"{_ENV_PREFIX}{name}")
    return value if value not in (None, "") else default


def _env_number(environ: Mapping[str, str], name: str, default: float, kind: type[int] | type[float]) -> Any:
    raw = _env(environ, name)
    if raw is None:
        return default
    try:
        value = kind(raw)
    except ValueError as e:
        msg = f"{_ENV_PREFIX}{name} must be a number, got {raw!r}"
        raise ConfigurationError(msg) from e
    if value < 0:
        msg = f"{_ENV_PREFIX}{name} must not be negative, got {raw!r}"
        raise ConfigurationError(msg)
    return value


@dataclass
class MigrationSettings:
    database_url: str = DEFAULT_DATABASE_URL
    source_url: str | None = None
    source_api_key: str | None = None
    item_delay: float = DEFAULT_ITEM_DELAY
    max_retries: int = 3
    lease_seconds: int = DEFAULT_LEASE_SECONDS
    default_user: str = DEFAULT_USER
    register_settle_seconds: float = DEFAULT_REGISTER_SETTLE_SECONDS
    destination_factory: str | None = None
    keycloak_url: str | None = None
    keycloak_realm: str | None = None
    keycloak_client_id: str | None = None
    keycloak_username: str | None = None
    keycloak_password: str | None = None

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        api_key_pass_path: str | None = None,
        keycloak_pass_path: str | None = None,
    ) -> MigrationSettings:
        env = os.environ if environ is None else environ
        settings = cls(
            database_url=_env(env, "DATABASE_URL", DEFAULT_DATABASE_URL) or DEFAULT_DATABASE_URL,
            source_url=_env(env, "SOURCE_URL"),
            item_delay=_env_number(env, "ITEM_DELAY", DEFAULT_ITEM_DELAY, float),
            max_retries=_env_number(env, "MAX_RETRIES", 3, int),
            lease_seconds=_env_number(env, "LEASE_SECONDS", DEFAULT_LEASE_SECONDS, int),
            default_user=_env(env, "DEFAULT_USER", DEFAULT_USER) or DEFAULT_USER,
            register_settle_seconds=_env_number(
                env, "REGISTER_SETTLE_SECONDS", DEFAULT_REGISTER_SETTLE_SECONDS, float
            ),
            destination_factory=_env(env, "DESTINATION_FACTORY"),
            keycloak_url=_env(env, "KEYCLOAK_URL"),
            keycloak_realm=_env(env, "KEYCLOAK_REALM"),
            keycloak_client_id=_env(env, "KEYCLOAK_CLIENT_ID"),
            keycloak_username=_env(env, "KEYCLOAK_USERNAME"),
        )
        if settings.max_retries < 1:
            msg = f"{_ENV_PREFIX}MAX_RETRIES must be at least 1"
            raise ConfigurationError(msg)

        if settings.source_url:
            settings.source_api_key = resolve_secret(
                "source API key",
                pass_path=api_key_pass_path,
                env_var=_API_KEY_ENV_VAR,
                default_pass_path=_DEFAULT_API_KEY_PASS_PATH,
                environ=env,
            )
        if settings.keycloak_url:
            settings.keycloak_password = resolve_secret(
                "Keycloak password",
                pass_path=keycloak_pass_path,
                env_var=_KEYCLOAK_PASSWORD_ENV_VAR,
                default_pass_path=_DEFAULT_KEYCLOAK_PASS_PATH,
                environ=env,
            )
        return settings

    def build_credentials(self) -> KeycloakTokenProvider | None:
        if not self.keycloak_url:
            return None
        missing = [
            name
            for name, value in (
                ("KEYCLOAK_REALM", self.keycloak_realm),
                ("KEYCLOAK_CLIENT_ID", self.keycloak_client_id),
                ("KEYCLOAK_USERNAME", self.keycloak_username),
                ("KEYCLOAK_PASSWORD", self.keycloak_password),
            )
            if not value
        ]
        if missing:
            msg = f"Keycloak is configured but missing: {', '.join(_ENV_PREFIX + name for name in missing)}"
            raise ConfigurationError(msg)
        return KeycloakTokenProvider(
            self.keycloak_url,
            self.keycloak_realm or "",
            self.keycloak_client_id or "",
            self.keycloak_username or "",
            self.keycloak_password or "",
        )

    def build_destination(self) -> DestinationClient:
        """Instantiate the destination client named by ``destination_factory``."""
        if not self.destination_factory:
            msg = f"{_ENV_PREFIX}DESTINATION_FACTORY is not set (expected 'package.module:callable')"
            raise ConfigurationError(msg)
        return load_factory(self.destination_factory)(self)


def load_factory(reference: str) -> DestinationFactory:
    """Resolve a ``module:attribute`` reference to a callable."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        msg = f"Invalid factory reference {reference!r}, expected 'package.module:callable'"
        raise ConfigurationError(msg)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        msg = f"Cannot import {module_name!r} for the destination factory"
        raise ConfigurationError(msg) from e
    factory = getattr(module, attribute, None)
    if not callable(factory):
        msg = f"{reference!r} is not a callable"
        raise ConfigurationError(msg)
    logger.debug(f"Using destination factory {reference}")
    return factory
