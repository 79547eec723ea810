"""Environment-based OAuth client credentials.

Lets the client id / secret live in environment variables or a ``.env`` file
instead of the persisted configuration document (which is usually committed
alongside the project).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .logging import get_logger

DOTENV_CANDIDATES = (".env", ".env.local")


@dataclass
class EnvAuthConfig:
    """Configuration for environment-based credentials."""

    load_dotenv: bool = True
    dotenv_path: str | None = None
    client_id_var: str = "BACKLOG_CLIENT_ID"
    client_secret_var: str = "BACKLOG_CLIENT_SECRET"


class EnvironmentCredentials:
    """Reads OAuth client credentials from the process environment."""

    def __init__(self, config: EnvAuthConfig, base_dir: Path | None = None):
        self.config = config
        self.base_dir = base_dir or Path.cwd()
        self.logger = get_logger()
        self.dotenv_loaded: Path | None = None
        if config.load_dotenv:
            self._load_dotenv()

    def _load_dotenv(self) -> None:
        if self.config.dotenv_path:
            candidates = [self.base_dir / self.config.dotenv_path]
        else:
            candidates = [self.base_dir / name for name in DOTENV_CANDIDATES]
        for env_path in candidates:
            if env_path.exists():
                load_dotenv(env_path)
                self.dotenv_loaded = env_path
                self.logger.debug(f"Loaded environment variables from {env_path}")
                return

    def client_id(self) -> str | None:
        return os.getenv(self.config.client_id_var) or None

    def client_secret(self) -> str | None:
        return os.getenv(self.config.client_secret_var) or None

    def missing(self) -> list[str]:
        return [
            var
            for var, value in (
                (self.config.client_id_var, self.client_id()),
                (self.config.client_secret_var, self.client_secret()),
            )
            if not value
        ]


def create_environment_credentials(
    config: EnvAuthConfig | None = None, base_dir: Path | None = None
) -> EnvironmentCredentials:
    return EnvironmentCredentials(config or EnvAuthConfig(), base_dir)


__all__ = ["EnvAuthConfig", "EnvironmentCredentials", "create_environment_credentials"]
