"""Data models for gitvault."""

from gitvault.models.file_stat import FileStat
from gitvault.models.repository import (
    Credential,
    RepoConfigFile,
    RepositoryConfig,
    derive_alias,
    sanitize_dir,
)
from gitvault.models.server import ServerConfig

__all__ = [
    # Repository config
    "Credential",
    "RepositoryConfig",
    "RepoConfigFile",
    "derive_alias",
    "sanitize_dir",
    # Listings
    "FileStat",
    # Server
    "ServerConfig",
]
