"""Token discovery from the environment.

Config files may leave ``tracker.token`` empty; the token is then taken from
``GITHUB_TOKEN`` (or the configured variable) and a few common aliases,
optionally after loading a ``.env`` file next to the config.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .logging import get_logger

TOKEN_ALTERNATIVES = ("GH_TOKEN", "GITHUB_ACCESS_TOKEN", "GH_ACCESS_TOKEN", "GITHUB_PAT")
DOTENV_CANDIDATES = (".env", ".env.local")


@dataclass
class EnvAuthConfig:
    """Where to look for the token."""

    load_dotenv: bool = True
    dotenv_path: str | None = None
    github_token_var: str = "GITHUB_TOKEN"
    base_dir: str | None = None  # relative dotenv paths resolve here (default: cwd)


class EnvironmentAuthManager:
    def __init__(self, config: EnvAuthConfig):
        self.config = config
        self.logger = get_logger()
        self._dotenv_file: Path | None = None
        self._token_source: str | None = None
        if config.load_dotenv:
            self._dotenv_file = self._load_dotenv()

    @property
    def dotenv_loaded(self) -> bool:
        return self._dotenv_file is not None

    @property
    def token_source(self) -> str | None:
        """Name of the variable the last token came from."""
        return self._token_source

    def _dotenv_candidates(self) -> list[Path]:
        base = Path(self.config.base_dir) if self.config.base_dir else Path.cwd()
        names = [self.config.dotenv_path] if self.config.dotenv_path else list(DOTENV_CANDIDATES)
        return [base / name for name in names]

    def _load_dotenv(self) -> Path | None:
        for env_path in self._dotenv_candidates():
            if env_path.is_file():
                # existing variables win over the file
                load_dotenv(env_path, override=False)
                self.logger.debug(f"Loaded environment variables from {env_path}")
                return env_path
        return None

    def get_github_token(self) -> str | None:
        for name in (self.config.github_token_var, *TOKEN_ALTERNATIVES):
            value = (os.getenv(name) or "").strip()
            if value:
                self._token_source = name
                self.logger.debug(f"Found GitHub token in {name}")
                return value
        self._token_source = None
        return None


__all__ = ["DOTENV_CANDIDATES", "EnvAuthConfig", "EnvironmentAuthManager", "TOKEN_ALTERNATIVES"]
