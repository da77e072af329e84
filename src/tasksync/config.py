from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, cast

import yaml

from .errors import TaskSyncError

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_CONFIG_FILE = "tasksync.config.yaml"


class ConfigError(TaskSyncError):
    pass


@dataclass
class TrackerConfig:
    token: str
    repository: str  # owner/name
    api_url: str = DEFAULT_API_URL
    max_retries: int = 3
    retry_delay_ms: int = 1000
    rate_limit_buffer: int = 100
    timeout_seconds: float = 30.0
    label_prefix: str = "task:"


@dataclass
class SyncConfig:
    version: int
    config_file: Path
    source_root: Path
    source_pattern: str
    state_file: Path
    tracker: TrackerConfig
    logging_json_enabled: bool = False
    logging_level: str = "INFO"
    env_auth_load_dotenv: bool = True
    env_auth_dotenv_path: str | None = None

    def with_repository(self, repository: str | None) -> SyncConfig:
        if not repository:
            return self
        return replace(self, tracker=replace(self.tracker, repository=repository))


def _resolve_env_var(value: Any) -> Any:
    """Resolve environment variable if value starts with $."""
    if isinstance(value, str) and value.startswith('$'):
        return os.getenv(value[1:], '')
    return value


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return cast(dict[str, Any], value)


def _int_option(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Config option '{key}' must be an integer, got {value!r}") from exc


def _float_option(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Config option '{key}' must be a number, got {value!r}") from exc


def load_config(path: str | Path, *, token: str | None = None) -> SyncConfig:
    """Load ``tasksync.config.yaml``.

    ``token`` wins over the file; a missing or empty token in the file falls
    back to the environment (after optionally loading ``.env``).
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f'Configuration file not found: {p}')
    try:
        raw_any: Any = yaml.safe_load(p.read_text(encoding='utf-8')) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f'Invalid YAML in {p}: {exc}') from exc
    if not isinstance(raw_any, dict):
        raise ConfigError(f'Configuration root in {p} must be a mapping')
    raw = cast(dict[str, Any], raw_any)
    src = _section(raw, 'source')
    trk = _section(raw, 'tracker')
    state = _section(raw, 'state')
    logging_config = _section(raw, 'logging')
    env_auth = _section(raw, 'environment')

    load_dotenv = bool(env_auth.get('load_dotenv', True))
    dotenv_path = env_auth.get('dotenv_path')

    resolved_token = token or _resolve_env_var(trk.get('token')) or ''
    if not resolved_token:
        from .env_auth import EnvAuthConfig, EnvironmentAuthManager  # noqa: PLC0415

        manager = EnvironmentAuthManager(
            EnvAuthConfig(load_dotenv=load_dotenv, dotenv_path=dotenv_path, base_dir=str(p.parent))
        )
        resolved_token = manager.get_github_token() or ''

    repository = os.environ.get('TASKSYNC_REPOSITORY') or _resolve_env_var(trk.get('repository')) or ''

    source_root = p.parent / str(src.get('root', '.'))
    state_file = source_root / str(state.get('file', '.tasksync/sync-state.json'))

    tracker = TrackerConfig(
        token=str(resolved_token).strip(),
        repository=str(repository).strip(),
        api_url=str(trk.get('api_url') or DEFAULT_API_URL),
        max_retries=_int_option(trk, 'max_retries', 3),
        retry_delay_ms=_int_option(trk, 'retry_delay_ms', 1000),
        rate_limit_buffer=_int_option(trk, 'rate_limit_buffer', 100),
        timeout_seconds=_float_option(trk, 'timeout_seconds', 30.0),
        label_prefix=str(trk.get('label_prefix', 'task:')),
    )
    if tracker.max_retries < 0 or tracker.retry_delay_ms < 0 or tracker.rate_limit_buffer < 0:
        raise ConfigError('max_retries, retry_delay_ms and rate_limit_buffer must be non-negative')
    if tracker.timeout_seconds <= 0:
        raise ConfigError('timeout_seconds must be positive')

    return SyncConfig(
        version=_int_option(raw, 'version', 1),
        config_file=p,
        source_root=source_root,
        source_pattern=str(src.get('pattern', '**/tasks.md')),
        state_file=state_file,
        tracker=tracker,
        logging_json_enabled=bool(logging_config.get('json_enabled', False)),
        logging_level=str(logging_config.get('level', 'INFO')),
        env_auth_load_dotenv=load_dotenv,
        env_auth_dotenv_path=dotenv_path,
    )


__all__ = ["ConfigError", "TrackerConfig", "SyncConfig", "load_config", "DEFAULT_API_URL", "DEFAULT_CONFIG_FILE"]
