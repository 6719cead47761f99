from __future__ import annotations

import logging
import os
import zlib
from collections.abc import Mapping
from dataclasses import dataclass

from alb_controller.src.errors import ConfigError

LOGGER = logging.getLogger(__name__)

INGRESS_SYNC_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class Configuration:
    """Immutable controller configuration loaded once at startup.

    Attributes:
        cluster_name: Cluster identifier used to find owned cloud resources
            through the cluster ownership tag.
        name_prefix: Prefix for generated load balancer names.  Derived from
            ``cluster_name`` by :func:`generate_name_prefix` when not set.
        namespace: Namespace to watch; empty string watches all namespaces.
        config_map_name: Controller ConfigMap whose changes force a resync.
        sync_rate_limit: Maximum ingress reconciliations per second.
        provider_sync_interval: Seconds between periodic inventory refreshes.
        election_id: Lease name used by the status syncer election.
    """

    cluster_name: str
    name_prefix: str
    namespace: str = ""
    config_map_name: str = "alb-ingress-controller"
    ingress_class: str = "alb"
    sync_rate_limit: float = 0.3
    ingress_sync_interval: float = INGRESS_SYNC_INTERVAL_SECONDS
    provider_sync_interval: float = 3600.0
    election_id: str = "ingress-controller-leader-alb"
    max_retries: int = 5
    resync_period: int = 300
    status_sync_enabled: bool = True
    status_sync_interval: float = 60.0
    health_port: int = 10254
    shutdown_grace_seconds: float = 10.0


def generate_name_prefix(cluster_name: str) -> str:
    """Return the lowercase hex CRC-32 (IEEE) digest of *cluster_name*.

    Every controller instance managing the same cluster must derive the same
    prefix, so this has to stay bit-compatible: polynomial ``0xEDB88320``,
    digest rendered big-endian as eight hex characters.
    """
    checksum = zlib.crc32(cluster_name.encode("utf-8")) & 0xFFFFFFFF
    return checksum.to_bytes(4, "big").hex()


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    values: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def build_configuration_from_env(env: Mapping[str, str] | None = None) -> Configuration:
    """Construct a :class:`Configuration` from environment variables.

    Environment variables (with defaults):
        ``CLUSTER_NAME``: required, no default.
        ``ALB_NAME_PREFIX``: derived from ``CLUSTER_NAME`` when unset.
        ``WATCH_NAMESPACE``: namespace to watch (all namespaces).
        ``CONFIG_MAP_NAME``: controller ConfigMap (``alb-ingress-controller``).
        ``INGRESS_CLASS``: ingress class handled (``alb``).
        ``SYNC_RATE_LIMIT``: ingress reconciliations per second (``0.3``).
        ``PROVIDER_SYNC_INTERVAL_SECONDS``: inventory refresh period (``3600``).
        ``ELECTION_ID``: status election lease name.
        ``SYNC_MAX_RETRIES``: retries per failed work item (``5``).
    """
    values = env if env is not None else os.environ

    cluster_name = values.get("CLUSTER_NAME", "").strip()
    if not cluster_name:
        raise ConfigError("CLUSTER_NAME must be a non-empty string")

    name_prefix = values.get("ALB_NAME_PREFIX", "").strip()
    if not name_prefix:
        name_prefix = generate_name_prefix(cluster_name)
    LOGGER.info("ALB resource names will be prefixed with %s", name_prefix)

    config_map_name = values.get("CONFIG_MAP_NAME", "alb-ingress-controller").strip()
    if not config_map_name:
        raise ConfigError("CONFIG_MAP_NAME must be a non-empty string")

    ingress_class = values.get("INGRESS_CLASS", "alb").strip()
    if not ingress_class:
        raise ConfigError("INGRESS_CLASS must be a non-empty string")

    sync_rate_limit = env_float(values, "SYNC_RATE_LIMIT", 0.3, minimum=0.0)
    if sync_rate_limit <= 0:
        raise ConfigError(f"SYNC_RATE_LIMIT must be > 0, got: {sync_rate_limit}")

    return Configuration(
        cluster_name=cluster_name,
        name_prefix=name_prefix,
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        config_map_name=config_map_name,
        ingress_class=ingress_class,
        sync_rate_limit=sync_rate_limit,
        provider_sync_interval=env_float(
            values, "PROVIDER_SYNC_INTERVAL_SECONDS", 3600.0, minimum=1.0
        ),
        election_id=values.get("ELECTION_ID", "ingress-controller-leader-alb").strip()
        or "ingress-controller-leader-alb",
        max_retries=env_int(values, "SYNC_MAX_RETRIES", 5, minimum=0),
        resync_period=env_int(values, "RESYNC_PERIOD_SECONDS", 300, minimum=1),
        status_sync_enabled=parse_bool(values.get("STATUS_SYNC_ENABLED"), default=True),
        status_sync_interval=env_float(
            values, "STATUS_SYNC_INTERVAL_SECONDS", 60.0, minimum=1.0
        ),
        health_port=env_int(values, "HEALTH_PORT", 10254, minimum=1, maximum=65535),
        shutdown_grace_seconds=env_float(
            values, "SHUTDOWN_GRACE_SECONDS", 10.0, minimum=0.0
        ),
    )
