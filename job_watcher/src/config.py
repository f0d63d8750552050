from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

DEFAULT_MONITORED_NAMESPACE = "dev-namespace"
DEFAULT_TARGET_DEPLOYMENT_NAME = "dev-deployment"
DEFAULT_JOB_NAME_PATTERN = r"^dev-job-.+$"

PROCESSED_ANNOTATION_KEY = "job-watcher/processed"
RESTARTED_AT_ANNOTATION_KEY = "kubectl.kubernetes.io/restartedAt"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded once at startup.

    Attributes:
        monitored_namespace: Namespace whose Jobs are watched; the target
            deployment lives here too.
        target_deployment_name: Deployment restarted after a matching Job completes.
        job_name_pattern: Compiled matcher applied to Job names (search semantics).
        startup_cutoff: Jobs created before this instant are never acted on.
    """

    monitored_namespace: str
    target_deployment_name: str
    job_name_pattern: re.Pattern[str]
    startup_cutoff: datetime
    worker_count: int = 2
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    resync_seconds: int = 300
    watch_timeout_seconds: int = 30
    startup_list_attempts: int = 5
    health_port: int = 9440


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
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _env_str(values: Mapping[str, str], name: str, default: str) -> str:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def compile_job_name_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"Invalid JOB_NAME_PATTERN {pattern!r}: {exc}") from exc


def load_config(
    env: Mapping[str, str] | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> ControllerConfig:
    """Load controller config from the environment.

    Empty policy variables fall back to their defaults. A job-name pattern
    that does not compile, or an out-of-range numeric setting, raises
    :class:`ConfigError` so the process can exit non-zero before any
    watch is opened.

    The startup cutoff is captured here, once, and carried on the returned
    config rather than kept in module state.
    """
    values = env if env is not None else os.environ

    monitored_namespace = _env_str(values, "MONITORED_NAMESPACE", DEFAULT_MONITORED_NAMESPACE)
    target_deployment_name = _env_str(
        values, "TARGET_DEPLOYMENT_NAME", DEFAULT_TARGET_DEPLOYMENT_NAME
    )
    job_name_pattern = compile_job_name_pattern(
        _env_str(values, "JOB_NAME_PATTERN", DEFAULT_JOB_NAME_PATTERN)
    )

    try:
        worker_count = env_int("WORKER_COUNT", 2, minimum=1, env=values)
        backoff_base_seconds = env_float("BACKOFF_BASE_SECONDS", 1.0, minimum=0.001, env=values)
        backoff_max_seconds = env_float(
            "BACKOFF_MAX_SECONDS", 300.0, minimum=backoff_base_seconds, env=values
        )
        resync_seconds = env_int("RESYNC_SECONDS", 300, minimum=0, env=values)
        watch_timeout_seconds = env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1, env=values)
        startup_list_attempts = env_int("STARTUP_LIST_ATTEMPTS", 5, minimum=1, env=values)
        health_port = env_int("HEALTH_PORT", 9440, minimum=1, maximum=65535, env=values)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    startup_cutoff = now_fn() if now_fn is not None else datetime.now(UTC)

    return ControllerConfig(
        monitored_namespace=monitored_namespace,
        target_deployment_name=target_deployment_name,
        job_name_pattern=job_name_pattern,
        startup_cutoff=startup_cutoff,
        worker_count=worker_count,
        backoff_base_seconds=backoff_base_seconds,
        backoff_max_seconds=backoff_max_seconds,
        resync_seconds=resync_seconds,
        watch_timeout_seconds=watch_timeout_seconds,
        startup_list_attempts=startup_list_attempts,
        health_port=health_port,
    )
