from __future__ import annotations

import pytest

from alb_controller.src.config import (
    INGRESS_SYNC_INTERVAL_SECONDS,
    Configuration,
    build_configuration_from_env,
    env_float,
    env_int,
    generate_name_prefix,
    parse_bool,
)
from alb_controller.src.errors import ConfigError


# ---------------------------------------------------------------------------
# Name prefix derivation
# ---------------------------------------------------------------------------


def test_generate_name_prefix_is_pinned_for_my_cluster() -> None:
    assert generate_name_prefix("my-cluster") == "81495355"


def test_generate_name_prefix_matches_crc32_check_value() -> None:
    # Standard CRC-32 check input; any compatible implementation yields cbf43926.
    assert generate_name_prefix("123456789") == "cbf43926"


def test_generate_name_prefix_is_stable_across_calls() -> None:
    first = generate_name_prefix("prod")
    assert first == "b5b41197"
    assert all(generate_name_prefix("prod") == first for _ in range(10))


def test_generate_name_prefix_is_eight_lowercase_hex_chars() -> None:
    prefix = generate_name_prefix("")
    assert prefix == "00000000"
    assert len(generate_name_prefix("another-cluster")) == 8
    assert generate_name_prefix("another-cluster") == generate_name_prefix("another-cluster").lower()


# ---------------------------------------------------------------------------
# Environment parsing
# ---------------------------------------------------------------------------


def test_build_configuration_derives_prefix_when_unset() -> None:
    config = build_configuration_from_env({"CLUSTER_NAME": "my-cluster"})

    assert config.cluster_name == "my-cluster"
    assert config.name_prefix == "81495355"
    assert config.ingress_sync_interval == INGRESS_SYNC_INTERVAL_SECONDS
    assert config.provider_sync_interval == 3600.0
    assert config.ingress_class == "alb"
    assert config.namespace == ""


def test_build_configuration_keeps_explicit_prefix() -> None:
    config = build_configuration_from_env(
        {"CLUSTER_NAME": "my-cluster", "ALB_NAME_PREFIX": "custom"}
    )

    assert config.name_prefix == "custom"


def test_build_configuration_reads_overrides() -> None:
    config = build_configuration_from_env(
        {
            "CLUSTER_NAME": "prod",
            "WATCH_NAMESPACE": "web",
            "CONFIG_MAP_NAME": "kube-system/alb-config",
            "SYNC_RATE_LIMIT": "2.5",
            "PROVIDER_SYNC_INTERVAL_SECONDS": "120",
            "ELECTION_ID": "alb-leader",
            "SYNC_MAX_RETRIES": "3",
            "STATUS_SYNC_ENABLED": "false",
            "HEALTH_PORT": "8080",
        }
    )

    assert config.namespace == "web"
    assert config.config_map_name == "kube-system/alb-config"
    assert config.sync_rate_limit == 2.5
    assert config.provider_sync_interval == 120.0
    assert config.election_id == "alb-leader"
    assert config.max_retries == 3
    assert config.status_sync_enabled is False
    assert config.health_port == 8080


def test_build_configuration_requires_cluster_name() -> None:
    with pytest.raises(ConfigError, match="CLUSTER_NAME"):
        build_configuration_from_env({"CLUSTER_NAME": "   "})


def test_build_configuration_rejects_zero_rate_limit() -> None:
    with pytest.raises(ConfigError, match="SYNC_RATE_LIMIT"):
        build_configuration_from_env({"CLUSTER_NAME": "c", "SYNC_RATE_LIMIT": "0"})


def test_build_configuration_rejects_out_of_range_port() -> None:
    with pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535"):
        build_configuration_from_env({"CLUSTER_NAME": "c", "HEALTH_PORT": "70000"})


def test_configuration_is_immutable() -> None:
    config = Configuration(cluster_name="c", name_prefix="p")

    with pytest.raises(AttributeError):
        config.cluster_name = "other"  # type: ignore[misc]


def test_env_int_rejects_non_integer() -> None:
    with pytest.raises(ConfigError, match="must be an integer"):
        env_int({"VALUE": "abc"}, "VALUE", 1)


def test_env_int_uses_default_for_blank_value() -> None:
    assert env_int({"VALUE": " "}, "VALUE", 7) == 7


def test_env_float_enforces_minimum() -> None:
    with pytest.raises(ConfigError, match=">= 1.0"):
        env_float({"VALUE": "0.5"}, "VALUE", 2.0, minimum=1.0)


@pytest.mark.parametrize("value", ["true", "TRUE", "1", "yes", "on", " on "])
def test_parse_bool_truthy(value: str) -> None:
    assert parse_bool(value) is True


def test_parse_bool_default_when_unset() -> None:
    assert parse_bool(None) is False
    assert parse_bool(None, default=True) is True
    assert parse_bool("off", default=True) is False
