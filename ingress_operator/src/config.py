from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the operator configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable operator configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace both informers are restricted to; empty
            means all namespaces.
        trigger_annotation: Service annotation key that requests an Ingress.
        ingress_class_name: ``spec.ingressClassName`` of created Ingresses.
        ingress_host: Host of the single Ingress rule. The same for every
            Service.
        backend_port: Service port the Ingress routes to.
        worker_count: Number of worker threads.
        max_retries: Backoff re-admissions allowed before a key is dropped.
        watch_timeout_seconds: Server-side timeout of each watch request.
        cache_sync_timeout_seconds: How long startup waits for the caches.
        health_port: Port of the health/metrics server.
        log_level: Root log level name.
    """

    watch_namespace: str = ""
    trigger_annotation: str = "ingress/http"
    ingress_class_name: str = "nginx"
    ingress_host: str = "ingressx.com"
    backend_port: int = 80
    worker_count: int = 5
    max_retries: int = 10
    watch_timeout_seconds: int = 60
    cache_sync_timeout_seconds: int = 120
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
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


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load the operator configuration from environment variables.

    ``WATCH_NAMESPACE`` may be empty (watch every namespace); every other
    string setting must be non-empty, and integers are range-checked.
    """
    values = env if env is not None else os.environ

    return ControllerConfig(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        trigger_annotation=_non_empty(values, "TRIGGER_ANNOTATION", "ingress/http"),
        ingress_class_name=_non_empty(values, "INGRESS_CLASS_NAME", "nginx"),
        ingress_host=_non_empty(values, "INGRESS_HOST", "ingressx.com"),
        backend_port=env_int("BACKEND_PORT", 80, minimum=1, maximum=65535, env=values),
        worker_count=env_int("WORKER_COUNT", 5, minimum=1, env=values),
        max_retries=env_int("MAX_RETRIES", 10, minimum=0, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 60, minimum=1, env=values),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1, env=values
        ),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
