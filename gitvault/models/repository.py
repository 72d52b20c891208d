"""Repository configuration models."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from gitvault.exceptions import ConfigError

# Capitalised keys used by older JSON repository files
_LEGACY_KEYS = {
    "URL": "url",
    "Url": "url",
    "Alias": "alias",
    "Public": "public",
    "Depth": "depth",
}
_LEGACY_CREDENTIAL_KEYS = {
    "PrivateKey": "private_key",
    "Username": "username",
    "Password": "password",
}


def derive_alias(url: str) -> str:
    """Derive a short alias from a remote URL.

    ``git@github.com:cresta/gitdb-reference.git`` -> ``gitdb-reference``
    """
    trimmed = url.strip().rstrip("/")
    name = re.split(r"[/:]", trimmed)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or trimmed


def sanitize_dir(value: str) -> str:
    """Replace everything but ASCII letters, digits and '-' with '_'."""
    return re.sub(r"[^A-Za-z0-9-]", "_", value)


class Credential(BaseModel):
    """Credentials used to authenticate against a remote.

    ``username``/``password`` apply to HTTP(S) remotes, ``private_key`` to SSH
    and scp-style remotes.
    """

    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    private_key: Path | None = Field(default=None, description="Path to an SSH private key")

    model_config = {"frozen": True, "extra": "forbid"}


class RepositoryConfig(BaseModel):
    """One configured remote repository."""

    url: str = Field(..., min_length=1, description="Remote URL to clone")
    alias: str = Field(default="", description="Short name used in request paths")
    credential: Credential | None = None
    public: bool = Field(default=False, description="Reachable through /public routes")
    depth: int | None = Field(default=1, ge=1, description="Fetch depth, None for full history")

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, str):
            data = {"url": data}
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for old, new in _LEGACY_KEYS.items():
            if old in data:
                data.setdefault(new, data.pop(old))
        legacy_credential = {
            new: data.pop(old) for old, new in _LEGACY_CREDENTIAL_KEYS.items() if old in data
        }
        legacy_credential = {k: v for k, v in legacy_credential.items() if v}
        if legacy_credential and not data.get("credential"):
            data["credential"] = legacy_credential
        if not data.get("alias") and data.get("url"):
            data["alias"] = derive_alias(str(data["url"]))
        return data

    @property
    def directory_prefix(self) -> str:
        """Prefix for the temporary directory this repository is cloned into."""
        return "gitvault_repo_" + sanitize_dir(self.url)


class RepoConfigFile(BaseModel):
    """The full list of repositories served by one process."""

    repositories: list[RepositoryConfig] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "Repositories" in data:
            data = dict(data)
            data.setdefault("repositories", data.pop("Repositories"))
        return data

    @model_validator(mode="after")
    def _check_unique(self) -> "RepoConfigFile":
        aliases: set[str] = set()
        urls: set[str] = set()
        for repo in self.repositories:
            if repo.alias in aliases:
                raise ValueError(f"duplicate repository alias: {repo.alias}")
            if repo.url in urls:
                raise ValueError(f"duplicate repository url: {repo.url}")
            aliases.add(repo.alias)
            urls.add(repo.url)
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "RepoConfigFile":
        """Load repository configuration from a YAML (or JSON) file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"unable to read repository config {path}: {e}") from e
        return cls.parse(data or {}, source=str(path))

    @classmethod
    def from_urls(cls, urls: str) -> "RepoConfigFile":
        """Build a configuration from a comma-separated list of URLs."""
        entries = [u.strip() for u in urls.split(",") if u.strip()]
        return cls.parse({"repositories": entries}, source="url list")

    @classmethod
    def parse(cls, data: Any, source: str = "config") -> "RepoConfigFile":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"invalid repository config in {source}: {e}") from e
