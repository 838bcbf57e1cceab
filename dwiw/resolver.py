"""Turn caller options plus local defaults into a connection key."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import DEBUG_ENV, QUIET_ENV, VERBOSE_ENV, LocalConfig
from .errors import ConfigurationError
from .models import ConnectionKey

LOG = logging.getLogger(__name__)

LOCAL_HOST_ALIASES = frozenset({"", "none"})


class ConnectOptions(BaseModel):
    """Options accepted by ``ConnectionRegistry.connect``."""

    model_config = ConfigDict(extra="forbid")

    database: str | None = None
    user: str | None = None
    password: str | None = None
    host: str | None = None
    port: int | None = None
    unique: bool = False
    quiet: bool = False
    verbose: bool | None = None
    no_retry: bool = False
    no_abort: bool = False
    timeout: float = 0.0
    proxy: bool = False
    proxy_host: str | None = None
    proxy_port: int | None = None
    proxy_key: str | None = None
    proxy_cipher: str | None = None
    use_replica: bool = False


@dataclass(frozen=True, slots=True)
class ResolvedOptions:
    """Connection key plus the behavioural flags of one connect request."""

    key: ConnectionKey
    unique: bool = False
    quiet: bool = False
    verbose: bool | None = None
    retry: bool = True
    no_abort: bool = False
    timeout: float = 0.0
    config_name: str | None = None


def resolve_options(
    local_config: LocalConfig,
    profile: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    **options: Any,
) -> ResolvedOptions:
    """Merge ``profile`` defaults with explicit options and validate the result.

    ``profile`` names a local configuration entry; when the local config does
    not know it, it is taken as the database name. Raises ConfigurationError
    when a required parameter is missing.
    """

    environ = os.environ if environ is None else environ
    merged: dict[str, Any] = {}
    config_name = profile
    if profile is not None:
        entry = local_config.lookup(profile)
        if entry is None:
            merged["database"] = profile
        else:
            merged.update(entry)
    merged.update(options)
    opts = _validate(merged)

    if opts.use_replica:
        replica = local_config.find_replica(config_name, opts.model_dump(exclude_unset=True))
        if replica is None:
            LOG.warning(
                "Local config cannot find replicas; using primary",
                extra={"config": type(local_config).__name__, "profile": config_name},
            )
        else:
            opts = _validate(replica)

    database = opts.database or local_config.default_database(config_name)
    if not database:
        raise ConfigurationError("missing database parameter to connect")
    lookup_name = config_name or database
    user = opts.user or local_config.default_user(lookup_name)
    if not user:
        raise ConfigurationError("missing user parameter to connect")
    password = opts.password
    if password is None:
        password = local_config.default_password(lookup_name, user)
    if password is None:
        raise ConfigurationError("missing password parameter to connect")
    port = opts.port or local_config.default_port(lookup_name)

    if "host" in opts.model_fields_set:
        host = opts.host or ""
        if host.lower() in LOCAL_HOST_ALIASES:
            host = ""
    else:
        host = local_config.default_host(lookup_name) or ""

    if opts.proxy and not (opts.proxy_host and opts.proxy_port):
        raise ConfigurationError("proxy_host and proxy_port are required when proxy is set")
    if opts.timeout < 0:
        raise ConfigurationError(f"timeout must not be negative (got {opts.timeout})")

    key = ConnectionKey(
        database=database,
        user=user,
        password=password,
        host=host,
        port=port,
        proxy=opts.proxy,
        proxy_host=opts.proxy_host if opts.proxy else None,
        proxy_port=opts.proxy_port if opts.proxy else None,
        proxy_key=opts.proxy_key if opts.proxy else None,
        proxy_cipher=opts.proxy_cipher if opts.proxy else None,
    )
    if environ.get(DEBUG_ENV):
        LOG.debug("Resolved connection", extra={"dsn": key.dsn()})

    verbose = True if environ.get(VERBOSE_ENV) else opts.verbose
    return ResolvedOptions(
        key=key,
        unique=opts.unique,
        quiet=opts.quiet or bool(environ.get(QUIET_ENV)),
        verbose=verbose,
        retry=not opts.no_retry,
        no_abort=opts.no_abort,
        timeout=opts.timeout,
        config_name=lookup_name,
    )


def _validate(options: Mapping[str, Any]) -> ConnectOptions:
    try:
        return ConnectOptions.model_validate(dict(options))
    except ValidationError as exc:
        raise ConfigurationError(f"bad parameters to connect: {exc}") from exc


__all__ = ["ConnectOptions", "ResolvedOptions", "resolve_options"]
