from __future__ import annotations

import pytest

from ingress_operator.src.config import ConfigError, ControllerConfig, env_int, load_config


def test_defaults_when_environment_is_empty() -> None:
    config = load_config(env={})

    assert config == ControllerConfig()
    assert config.watch_namespace == ""
    assert config.trigger_annotation == "ingress/http"
    assert config.ingress_class_name == "nginx"
    assert config.ingress_host == "ingressx.com"
    assert config.backend_port == 80
    assert config.worker_count == 5
    assert config.max_retries == 10
    assert config.health_port == 8080
    assert config.log_level == "INFO"


def test_custom_values_are_applied() -> None:
    config = load_config(
        env={
            "WATCH_NAMESPACE": " team-a ",
            "TRIGGER_ANNOTATION": "example.com/expose",
            "INGRESS_CLASS_NAME": "traefik",
            "INGRESS_HOST": "apps.example.org",
            "BACKEND_PORT": "8080",
            "WORKER_COUNT": "2",
            "MAX_RETRIES": "0",
            "WATCH_TIMEOUT_SECONDS": "30",
            "CACHE_SYNC_TIMEOUT_SECONDS": "10",
            "HEALTH_PORT": "9090",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.watch_namespace == "team-a"
    assert config.trigger_annotation == "example.com/expose"
    assert config.ingress_class_name == "traefik"
    assert config.ingress_host == "apps.example.org"
    assert config.backend_port == 8080
    assert config.worker_count == 2
    assert config.max_retries == 0
    assert config.watch_timeout_seconds == 30
    assert config.cache_sync_timeout_seconds == 10
    assert config.health_port == 9090
    assert config.log_level == "DEBUG"


def test_load_config_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_COUNT", "7")

    assert load_config().worker_count == 7


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("WORKER_COUNT", "0", "WORKER_COUNT must be >= 1, got: 0"),
        ("MAX_RETRIES", "-1", "MAX_RETRIES must be >= 0, got: -1"),
        ("BACKEND_PORT", "70000", "BACKEND_PORT must be <= 65535, got: 70000"),
        ("HEALTH_PORT", "abc", "HEALTH_PORT must be an integer"),
    ],
)
def test_invalid_integers_are_rejected(name: str, value: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env={name: value})


@pytest.mark.parametrize("name", ["TRIGGER_ANNOTATION", "INGRESS_CLASS_NAME", "INGRESS_HOST"])
def test_blank_strings_are_rejected(name: str) -> None:
    with pytest.raises(ConfigError, match=f"{name} must be a non-empty string"):
        load_config(env={name: "   "})


def test_config_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        load_config(env={"WORKER_COUNT": "nope"})


def test_env_int_returns_default_when_unset() -> None:
    assert env_int("MISSING", 42, env={}) == 42


def test_env_int_checks_default_against_bounds() -> None:
    with pytest.raises(ConfigError, match="MISSING must be >= 5, got: 1"):
        env_int("MISSING", 1, minimum=5, env={})
