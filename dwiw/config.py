"""Configuration loading and local connection defaults."""

from __future__ import annotations

import logging
import random
import socket
from pathlib import Path
from typing import Any, Literal, Mapping

import tomllib
from pydantic import BaseModel, Field, ValidationError

from .retry import ExponentialBackoffRetryPolicy, FixedIntervalRetryPolicy, RetryPolicy

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "dwiw" / "config.toml"

# Environment flags consulted by the resolver.
QUIET_ENV = "DB_DOWN"
VERBOSE_ENV = "DWIW_VERBOSE"
DEBUG_ENV = "DWIW_DEBUG"


class RetrySettings(BaseModel):
    """Retry behaviour stored in config.toml."""

    strategy: Literal["fixed", "backoff"] = "fixed"
    interval: float = 30.0
    max_attempts: int | None = None
    max_delay: float = 60.0

    def build_policy(self) -> RetryPolicy:
        if self.strategy == "backoff":
            return ExponentialBackoffRetryPolicy(
                base_delay=self.interval,
                max_delay=self.max_delay,
                max_attempts=self.max_attempts,
            )
        return FixedIntervalRetryPolicy(self.interval, max_attempts=self.max_attempts)


class ProfileConfig(BaseModel):
    """Named connection profile stored in config.toml."""

    name: str
    database: str | None = None
    user: str | None = None
    password: str | None = None
    host: str | None = None
    port: int | None = None
    timeout: float | None = None
    replicas: list[str] = Field(default_factory=list)

    def as_options(self) -> dict[str, Any]:
        """Connect options defined by this profile."""

        return self.model_dump(exclude={"name", "replicas"}, exclude_none=True)


class AppConfig(BaseModel):
    """Shape of the configuration file."""

    default_profile: str | None = None
    safe: bool = True
    retry: RetrySettings = Field(default_factory=RetrySettings)
    profiles: list[ProfileConfig] = Field(default_factory=list)

    def profile(self, name: str | None) -> ProfileConfig | None:
        """Find a profile by name, falling back to one serving that database."""

        if name is None:
            name = self.default_profile
        if name is None:
            return None
        for profile in self.profiles:
            if profile.name == name:
                return profile
        for profile in self.profiles:
            if profile.database == name:
                return profile
        return None


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    path = path or CONFIG_FILE
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(path), "error": str(exc)})
        return AppConfig()

    data: dict[str, object] = {}
    default_profile = raw.get("default_profile")
    if isinstance(default_profile, str):
        data["default_profile"] = default_profile
    safe = raw.get("safe")
    if isinstance(safe, bool):
        data["safe"] = safe
    retry = raw.get("retry")
    if isinstance(retry, dict):
        try:
            data["retry"] = RetrySettings.model_validate(retry)
        except ValidationError as exc:
            LOG.warning("Ignoring invalid retry settings", extra={"error": str(exc)})
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        parsed: list[ProfileConfig] = []
        for entry in profiles:
            if not isinstance(entry, dict) or not entry.get("name"):
                continue
            try:
                parsed.append(ProfileConfig.model_validate(entry))
            except ValidationError as exc:
                LOG.warning("Skipping invalid profile", extra={"profile": entry.get("name"), "error": str(exc)})
        data["profiles"] = parsed
    return AppConfig(**data)


class LocalConfig:
    """Source of site-specific connection defaults.

    Subclasses normally override :meth:`lookup` only; the ``default_*``
    helpers read from whatever it returns. Override :meth:`find_replica` to
    support read-only replica connections.
    """

    def lookup(self, name: str | None) -> Mapping[str, Any] | None:
        """Connect options for a configuration name, or None if unknown."""

        return None

    def default_database(self, name: str | None = None) -> str | None:
        entry = self.lookup(name)
        return entry.get("database") if entry else None

    def default_user(self, database: str | None) -> str | None:
        entry = self.lookup(database)
        return entry.get("user") if entry else None

    def default_password(self, database: str | None, user: str | None = None) -> str | None:
        entry = self.lookup(database)
        return entry.get("password") if entry else None

    def default_host(self, database: str | None) -> str | None:
        entry = self.lookup(database)
        if not entry:
            return None
        return entry.get("host") or None

    def default_port(self, database: str | None) -> int | None:
        entry = self.lookup(database)
        if not entry or not entry.get("port"):
            return None
        if entry.get("host") == socket.gethostname():
            # Same machine: use the local socket instead of TCP.
            return None
        return int(entry["port"])

    def find_replica(self, name: str | None, options: Mapping[str, Any]) -> dict[str, Any] | None:
        """Return options pointing at a read-only replica, or None if unsupported."""

        return None


class ProfileLocalConfig(LocalConfig):
    """Local defaults served from the profiles of an :class:`AppConfig`."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self._config = config or AppConfig()

    @property
    def config(self) -> AppConfig:
        return self._config

    def lookup(self, name: str | None) -> Mapping[str, Any] | None:
        profile = self._config.profile(name)
        if profile is None:
            return None
        return profile.as_options()

    def find_replica(self, name: str | None, options: Mapping[str, Any]) -> dict[str, Any] | None:
        profile = self._config.profile(name or options.get("database"))
        if profile is None or not profile.replicas:
            return None
        host, _, port = random.choice(profile.replicas).partition(":")
        updated = dict(options)
        updated["host"] = host
        if port:
            updated["port"] = int(port)
        return updated


__all__ = [
    "CONFIG_FILE",
    "AppConfig",
    "LocalConfig",
    "ProfileConfig",
    "ProfileLocalConfig",
    "RetrySettings",
    "load_config",
]
