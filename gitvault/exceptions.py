"""Exception hierarchy for gitvault.

Every error carries the HTTP status it maps to, so the routing layer can pick
a response code without inspecting messages.
"""

from __future__ import annotations


class GitVaultError(Exception):
    """Base exception for all gitvault errors."""

    status_code: int = 500

    def __init__(self, message: str, repo: str | None = None) -> None:
        super().__init__(message)
        self.repo = repo


class ConfigError(GitVaultError):
    """Raised when the repository or server configuration is invalid."""


class CloneError(GitVaultError):
    """Raised when the initial clone of a remote fails."""


class FetchError(GitVaultError):
    """Raised when refreshing a checkout from its remote fails.

    The checkout keeps its last good state.
    """


class RepositoryCorruptError(GitVaultError):
    """Raised when the local object store cannot be walked."""


class OperationCancelledError(GitVaultError):
    """Raised when a request is cancelled or runs past its deadline."""

    status_code = 504


class NotFoundError(GitVaultError):
    """Base class for everything a caller asked for that does not exist."""

    status_code = 404


class UnknownRepositoryError(NotFoundError):
    """Raised when no repository is configured under an alias or URL."""

    def __init__(self, repo: str) -> None:
        super().__init__(f"unable to find repo {repo}", repo=repo)


class UnknownBranchError(NotFoundError):
    """Raised when a branch has no remote-tracking reference."""

    def __init__(self, branch: str, repo: str | None = None) -> None:
        message = f"unknown branch {branch}"
        if repo:
            message = f"unable to find branch {branch} for repo {repo}"
        super().__init__(message, repo=repo)
        self.branch = branch


class FileNotInTreeError(NotFoundError):
    """Raised when a path does not name a file in the branch's tree."""

    def __init__(self, path: str, branch: str, repo: str | None = None) -> None:
        super().__init__(f"unable to find file {path} in branch {branch}", repo=repo)
        self.path = path
        self.branch = branch


class DirectoryNotInTreeError(NotFoundError):
    """Raised when a path does not name a directory in the branch's tree."""

    def __init__(self, path: str, branch: str, repo: str | None = None) -> None:
        super().__init__(f"directory not found {path}", repo=repo)
        self.path = path
        self.branch = branch
