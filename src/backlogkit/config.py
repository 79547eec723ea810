from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, cast

import yaml

from .env_auth import EnvAuthConfig, create_environment_credentials
from .logging import get_logger

DEFAULT_CONFIG_FILE = "backlog.config.yaml"
DEFAULT_TOKEN_CACHE = "backlog_oauth2cache.json"
DEFAULT_DOMAIN = "backlog.com"
CONFIG_VERSION = 1


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class BacklogConfig:
    space_key: str = ""
    domain: str = DEFAULT_DOMAIN
    project_key: str = ""
    # OAuth2 application registered on the Backlog developer site
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    # Keep the cache file out of version control
    token_cache_path: str = DEFAULT_TOKEN_CACHE
    logging_json_enabled: bool = False
    logging_level: str = "INFO"
    retry_reference_reads: bool = False
    env_load_dotenv: bool = True
    env_dotenv_path: str | None = None
    source_file: Path | None = None

    @property
    def base_url(self) -> str:
        return f"https://{self.space_key}.{self.domain}"

    def resolve_token_cache(self) -> Path:
        """Token cache location; relative paths sit next to the config file."""
        path = Path(self.token_cache_path)
        if path.is_absolute() or self.source_file is None:
            return path
        return self.source_file.parent / path


def _resolve_env_var(value: Any) -> Any:
    """Resolve environment variable if value starts with $."""
    if isinstance(value, str) and value.startswith('$'):
        return os.getenv(value[1:], value)  # Fallback to original if not found
    return value


def _is_set(value: str) -> bool:
    """False for empty values and $VAR references that did not resolve."""
    return bool(value) and not value.startswith('$')


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name, {}) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Configuration section '{name}' must be a mapping")
    return cast(dict[str, Any], section)


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def parse_config(
    raw: dict[str, Any], source_file: Path | None = None, *, resolve_env: bool = True
) -> BacklogConfig:
    resolve: Callable[[Any], Any] = _resolve_env_var if resolve_env else (lambda value: value)
    backlog = _section(raw, 'backlog')
    oauth = _section(raw, 'oauth')
    logging_config = _section(raw, 'logging')
    behavior = _section(raw, 'behavior')
    environment = _section(raw, 'environment')
    return BacklogConfig(
        space_key=_str(resolve(backlog.get('space_key'))),
        domain=_str(backlog.get('domain') or DEFAULT_DOMAIN),
        project_key=_str(resolve(backlog.get('project_key'))),
        client_id=_str(resolve(oauth.get('client_id'))),
        client_secret=_str(resolve(oauth.get('client_secret'))),
        redirect_uri=_str(resolve(oauth.get('redirect_uri'))),
        token_cache_path=_str(oauth.get('token_cache_file') or DEFAULT_TOKEN_CACHE),
        logging_json_enabled=bool(logging_config.get('json_enabled', False)),
        logging_level=_str(logging_config.get('level') or 'INFO'),
        retry_reference_reads=bool(behavior.get('retry_reference_reads', False)),
        env_load_dotenv=bool(environment.get('load_dotenv', True)),
        env_dotenv_path=environment.get('dotenv_path'),
        source_file=source_file,
    )


def to_document(cfg: BacklogConfig) -> dict[str, Any]:
    return {
        'version': CONFIG_VERSION,
        'backlog': {
            'space_key': cfg.space_key,
            'domain': cfg.domain,
            'project_key': cfg.project_key,
        },
        'oauth': {
            'client_id': cfg.client_id,
            'client_secret': cfg.client_secret,
            'redirect_uri': cfg.redirect_uri,
            'token_cache_file': cfg.token_cache_path,
        },
        'logging': {
            'json_enabled': cfg.logging_json_enabled,
            'level': cfg.logging_level,
        },
        'behavior': {
            'retry_reference_reads': cfg.retry_reference_reads,
        },
        'environment': {
            'load_dotenv': cfg.env_load_dotenv,
            'dotenv_path': cfg.env_dotenv_path,
        },
    }


def read_document(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f'Configuration file not found: {p}')
    try:
        raw = yaml.safe_load(p.read_text(encoding='utf-8')) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f'Invalid configuration file {p}: {exc}') from exc
    if not isinstance(raw, dict):
        raise ConfigError(f'Configuration file {p} must contain a mapping')
    return cast(dict[str, Any], raw)


def load_config(path: str | Path) -> BacklogConfig:
    return parse_config(read_document(path), source_file=Path(path))


def save_config(cfg: BacklogConfig, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(yaml.safe_dump(to_document(cfg), sort_keys=False), encoding='utf-8')
    return p


# Fields that may hold $VAR references or be filled from the environment
_ENV_BACKED_FIELDS = ("space_key", "project_key", "client_id", "client_secret", "redirect_uri")


class ConfigStore:
    """Named configuration record, created with defaults on first access.

    ``load`` loads the dotenv file before ``$VAR`` references are resolved,
    and fills empty client credentials from ``BACKLOG_CLIENT_ID`` /
    ``BACKLOG_CLIENT_SECRET``. ``save`` writes unchanged fields back as they
    appeared in the file, so resolved secrets never reach the disk.
    """

    def __init__(self, path: str | Path = DEFAULT_CONFIG_FILE):
        self.path = Path(path)
        self.logger = get_logger()
        # field -> (value returned by load, value as written in the file)
        self._file_values: dict[str, tuple[str, str]] = {}

    def exists(self) -> bool:
        return self.path.exists()

    def create(self) -> BacklogConfig:
        cfg = BacklogConfig(source_file=self.path)
        self.save(cfg)
        self.logger.log_operation("config_created", config_path=str(self.path))
        return cfg

    def load(self) -> BacklogConfig:
        if not self.exists():
            self.create()
        raw = read_document(self.path)
        environment = _section(raw, 'environment')
        env = create_environment_credentials(
            EnvAuthConfig(
                load_dotenv=bool(environment.get('load_dotenv', True)),
                dotenv_path=environment.get('dotenv_path'),
            ),
            base_dir=self.path.parent,
        )
        cfg = parse_config(raw, source_file=self.path)
        cfg = replace(
            cfg,
            client_id=cfg.client_id if _is_set(cfg.client_id) else env.client_id() or "",
            client_secret=cfg.client_secret if _is_set(cfg.client_secret) else env.client_secret() or "",
        )
        written = parse_config(raw, source_file=self.path, resolve_env=False)
        self._file_values = {
            name: (getattr(cfg, name), getattr(written, name)) for name in _ENV_BACKED_FIELDS
        }
        return cfg

    def save(self, cfg: BacklogConfig) -> Path:
        unchanged = {
            name: written
            for name, (loaded, written) in self._file_values.items()
            if getattr(cfg, name) == loaded
        }
        path = save_config(replace(cfg, **unchanged), self.path)
        self.logger.debug("Saved configuration", config_path=str(path))
        return path


__all__ = [
    "BacklogConfig",
    "ConfigError",
    "ConfigStore",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_TOKEN_CACHE",
    "load_config",
    "parse_config",
    "read_document",
    "save_config",
]
