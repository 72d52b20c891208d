"""Server settings loaded from the environment."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, Field, ValidationError

from gitvault.exceptions import ConfigError
from gitvault.models.repository import RepoConfigFile


def parse_listen_addr(addr: str) -> tuple[str, int]:
    """Split ``host:port`` (host optional) into its parts."""
    host, sep, port = addr.strip().rpartition(":")
    if not sep:
        host, port = "", addr.strip()
    try:
        return host or "0.0.0.0", int(port)
    except ValueError as e:
        raise ConfigError(f"invalid listen address: {addr!r}") from e


class ServerConfig(BaseModel):
    """Process-level settings."""

    listen_host: str = "0.0.0.0"
    listen_port: int = Field(default=8080, ge=0, le=65535)
    data_directory: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    repo_config: Path | None = Field(default=None, description="YAML/JSON repository file")
    repos: str = Field(default="", description="Comma-separated remote URLs")
    github_push_token: str | None = Field(default=None, repr=False)
    jwt_private_key: Path | None = None
    jwt_public_key: Path | None = None
    jwt_signin_username: str | None = None
    jwt_signin_password: str | None = Field(default=None, repr=False)
    request_timeout: float = Field(default=60.0, gt=0, description="Per-request deadline in seconds")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServerConfig":
        """Build settings from environment variables."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        if env.get("LISTEN_ADDR"):
            values["listen_host"], values["listen_port"] = parse_listen_addr(env["LISTEN_ADDR"])

        mapping = {
            "DATA_DIRECTORY": "data_directory",
            "GITVAULT_REPO_CONFIG": "repo_config",
            "GITVAULT_REPOS": "repos",
            "GITHUB_PUSH_TOKEN": "github_push_token",
            "GITVAULT_JWT_PRIVATE_KEY": "jwt_private_key",
            "GITVAULT_JWT_PUBLIC_KEY": "jwt_public_key",
            "GITVAULT_JWT_SIGNIN_USERNAME": "jwt_signin_username",
            "GITVAULT_JWT_SIGNIN_PASSWORD": "jwt_signin_password",
            "GITVAULT_REQUEST_TIMEOUT": "request_timeout",
        }
        for var, name in mapping.items():
            if env.get(var):
                values[name] = env[var]

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"invalid server configuration: {e}") from e

    def load_repositories(self) -> RepoConfigFile:
        """Load the repository list from the config file and/or URL list."""
        repositories = []
        if self.repo_config is not None:
            repositories.extend(RepoConfigFile.from_yaml(self.repo_config).repositories)
        if self.repos:
            repositories.extend(RepoConfigFile.from_urls(self.repos).repositories)
        return RepoConfigFile.parse(
            {"repositories": [r.model_dump() for r in repositories]},
            source="server configuration",
        )

    @property
    def signin_enabled(self) -> bool:
        return bool(self.jwt_private_key and self.jwt_signin_username and self.jwt_signin_password)

    @property
    def public_enabled(self) -> bool:
        return self.jwt_public_key is not None
