"""Repository directory - routes alias-addressed requests to checkouts."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from types import MappingProxyType
from typing import IO, Iterable, Iterator, Mapping

from gitvault.checkout import BlobStream, Checkout
from gitvault.context import RequestContext
from gitvault.exceptions import (
    FetchError,
    GitVaultError,
    OperationCancelledError,
    UnknownRepositoryError,
)
from gitvault.models.file_stat import FileStat
from gitvault.models.repository import RepositoryConfig

logger = logging.getLogger(__name__)


def normalize_remote_url(url: str) -> str:
    """Canonical form used to match webhook URLs against configured remotes."""
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


class RepositoryDirectory:
    """Read-only map from alias to Checkout, built once at startup."""

    def __init__(
        self,
        checkouts: Mapping[str, Checkout],
        configs: Mapping[str, RepositoryConfig] | None = None,
    ) -> None:
        self._checkouts: Mapping[str, Checkout] = MappingProxyType(dict(checkouts))
        self._configs: Mapping[str, RepositoryConfig] = MappingProxyType(dict(configs or {}))
        by_url: dict[str, Checkout] = {}
        for checkout in self._checkouts.values():
            by_url.setdefault(checkout.remote_url, checkout)
            by_url.setdefault(normalize_remote_url(checkout.remote_url), checkout)
        self._by_url: Mapping[str, Checkout] = MappingProxyType(by_url)

    @classmethod
    def from_config(
        cls,
        ctx: RequestContext,
        repositories: Iterable[RepositoryConfig],
        data_directory: str | Path,
    ) -> "RepositoryDirectory":
        """Clone every repository into its own fresh directory.

        The first clone failure aborts. Checkouts already cloned are closed,
        but their directories stay on disk.
        """
        data_directory = Path(data_directory)
        data_directory.mkdir(parents=True, exist_ok=True)
        checkouts: dict[str, Checkout] = {}
        configs: dict[str, RepositoryConfig] = {}
        try:
            for config in repositories:
                destination = tempfile.mkdtemp(prefix=config.directory_prefix, dir=data_directory)
                checkouts[config.alias] = Checkout.clone(
                    ctx.with_fields(repo=config.alias),
                    config.url,
                    destination,
                    credential=config.credential,
                    depth=config.depth,
                    alias=config.alias,
                )
                configs[config.alias] = config
        except BaseException:
            for checkout in checkouts.values():
                checkout.close()
            raise
        logger.info(f"Loaded {len(checkouts)} repositories into {data_directory}")
        return cls(checkouts, configs)

    # --- Lookup ---

    def get(self, alias: str) -> Checkout:
        checkout = self._checkouts.get(alias)
        if checkout is None:
            raise UnknownRepositoryError(alias)
        return checkout

    def by_remote_url(self, url: str) -> Checkout:
        checkout = self._by_url.get(url) or self._by_url.get(normalize_remote_url(url))
        if checkout is None:
            raise UnknownRepositoryError(url)
        return checkout

    def aliases(self) -> list[str]:
        return list(self._checkouts)

    def is_public(self, alias: str) -> bool:
        config = self._configs.get(alias)
        return config is not None and config.public

    def __contains__(self, alias: object) -> bool:
        return alias in self._checkouts

    def __len__(self) -> int:
        return len(self._checkouts)

    def __iter__(self) -> Iterator[str]:
        return iter(self._checkouts)

    # --- Reads ---

    def get_file(self, ctx: RequestContext, alias: str, branch: str, path: str) -> BlobStream:
        return self.get(alias).get_file(ctx, branch, path)

    def list_dir(self, ctx: RequestContext, alias: str, branch: str, dir: str) -> list[FileStat]:
        return self.get(alias).ls_dir(ctx, branch, dir)

    def list_files(self, ctx: RequestContext, alias: str, branch: str) -> list[str]:
        return self.get(alias).ls_files(ctx, branch)

    def zip_dir(
        self, ctx: RequestContext, alias: str, branch: str, dir: str, into: IO[bytes]
    ) -> int:
        return self.get(alias).zip_content(ctx, into, dir, branch)

    # --- Refresh ---

    def refresh(self, ctx: RequestContext, alias: str) -> bool:
        return self.get(alias).refresh(ctx)

    def refresh_all(self, ctx: RequestContext) -> list[str]:
        """Refresh every repository in configuration order.

        Stops at the first failure. Repositories refreshed before it keep
        their new state. Returns the aliases whose tracking refs moved.
        """
        changed: list[str] = []
        for alias, checkout in self._checkouts.items():
            try:
                if checkout.refresh(ctx):
                    changed.append(alias)
            except OperationCancelledError:
                raise
            except GitVaultError as e:
                raise FetchError(f"unable to refresh {alias}: {e}", repo=alias) from e
        return changed

    def close(self) -> None:
        for checkout in self._checkouts.values():
            checkout.close()
