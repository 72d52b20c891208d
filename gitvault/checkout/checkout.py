"""Concurrency-safe local copy of one remote git repository."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Mapping, TypeVar

from dulwich.errors import NotGitRepository
from dulwich.objects import S_ISGITLINK, Blob, Commit, ShaFile, Tag, Tree
from dulwich.repo import Repo

from gitvault.checkout.archive import write_archive
from gitvault.checkout.locking import ReadWriteLock
from gitvault.checkout.stream import BlobStream
from gitvault.checkout.transport import open_transport
from gitvault.context import RequestContext
from gitvault.exceptions import (
    CloneError,
    DirectoryNotInTreeError,
    FetchError,
    FileNotInTreeError,
    GitVaultError,
    OperationCancelledError,
    RepositoryCorruptError,
    UnknownBranchError,
)
from gitvault.models.file_stat import FileStat
from gitvault.models.repository import Credential

logger = logging.getLogger(__name__)

HEADS_PREFIX = b"refs/heads/"
TRACKING_PREFIX = b"refs/remotes/origin/"
REMOTE_NAME = b"origin"

_T = TypeVar("_T", bound=ShaFile)


@dataclass(frozen=True)
class Reference:
    """A branch resolved through its tracking ref down to a tree."""

    branch: str
    ref: bytes
    commit: str
    tree: bytes
    commit_time: int


def split_path(path: str) -> list[str]:
    """Split a repository path into segments, ignoring empty ones."""
    return [segment for segment in path.split("/") if segment]


def _encode(segment: str) -> bytes:
    return segment.encode("utf-8", "surrogateescape")


def _decode(name: bytes) -> str:
    return name.decode("utf-8", "surrogateescape")


class Checkout:
    """A bare local clone guarded by a shared/exclusive lock.

    Reads (branch resolution, tree walks, blob streaming, archives) hold the
    lock shared; ``refresh`` holds it exclusively, so a reader sees either the
    whole pre-refresh or the whole post-refresh object graph.
    """

    def __init__(
        self,
        path: str | Path,
        remote_url: str,
        credential: Credential | None = None,
        depth: int | None = 1,
        alias: str | None = None,
    ) -> None:
        self.path = Path(path).resolve()
        self.remote_url = remote_url
        self.credential = credential
        self.depth = depth
        self.alias = alias or remote_url
        self.lock = ReadWriteLock()
        try:
            self._repo = Repo(str(self.path))
        except NotGitRepository as e:
            raise RepositoryCorruptError(f"not a git repository: {self.path}", repo=self.alias) from e

    def __repr__(self) -> str:
        return f"Checkout(alias={self.alias!r}, path={str(self.path)!r})"

    # --- Clone and refresh ---

    @classmethod
    def clone(
        cls,
        ctx: RequestContext,
        remote_url: str,
        destination: str | Path,
        credential: Credential | None = None,
        depth: int | None = 1,
        alias: str | None = None,
    ) -> "Checkout":
        """Create a bare clone of ``remote_url`` in ``destination``.

        Every remote branch is fetched into ``refs/remotes/origin/*``.
        ``destination`` must not exist or must be an empty directory.
        """
        destination = Path(destination)
        log = ctx.with_fields(repo=alias or remote_url).logger(logger)

        created = not destination.exists()
        if not created and (not destination.is_dir() or any(destination.iterdir())):
            raise CloneError(f"clone destination is not empty: {destination}", repo=alias)

        log.info(f"Cloning {remote_url} into {destination}")
        started = time.monotonic()
        try:
            destination.mkdir(parents=True, exist_ok=True)
            repo = Repo.init_bare(str(destination), mkdir=False)
            try:
                config = repo.get_config()
                config.set((b"remote", REMOTE_NAME), b"url", remote_url.encode("utf-8"))
                config.set(
                    (b"remote", REMOTE_NAME),
                    b"fetch",
                    b"+" + HEADS_PREFIX + b"*:" + TRACKING_PREFIX + b"*",
                )
                config.write_to_path()
            finally:
                repo.close()

            checkout = cls(destination, remote_url, credential=credential, depth=depth, alias=alias)
            try:
                checkout._fetch(ctx)
            except BaseException:
                checkout.close()
                raise
        except Exception as e:
            _discard(destination, created)
            if isinstance(e, CloneError):
                raise
            raise CloneError(f"unable to clone {remote_url}: {e}", repo=alias) from e

        log.info(f"Cloned {remote_url} in {time.monotonic() - started:.2f}s")
        return checkout

    def refresh(self, ctx: RequestContext) -> bool:
        """Fetch the remote and move the tracking refs.

        Holds the lock exclusively for the whole operation. Returns whether
        any tracking ref changed; an up-to-date remote is a successful no-op.
        """
        ctx = ctx.with_fields(repo=self.alias)
        ctx.raise_if_done()
        if not self.lock.acquire_write(timeout=ctx.remaining(), abort=lambda: ctx.cancelled):
            ctx.raise_if_done()
            raise OperationCancelledError("deadline exceeded waiting for refresh lock", repo=self.alias)
        try:
            return self._fetch(ctx)
        except GitVaultError:
            raise
        except Exception as e:
            raise FetchError(f"unable to fetch {self.remote_url}: {e}", repo=self.alias) from e
        finally:
            self.lock.release_write()

    def _fetch(self, ctx: RequestContext) -> bool:
        """Fetch into the object store, then update tracking refs.

        Callers hold the exclusive lock (or own the checkout outright, as
        during clone).
        """
        log = ctx.logger(logger)
        ctx.raise_if_done()
        client, path = open_transport(self.remote_url, self.credential)

        def progress(data: bytes) -> None:
            ctx.raise_if_done()
            if data:
                log.debug(f"remote: {data.decode('utf-8', 'replace').strip()}")

        def determine_wants(refs: Mapping[bytes, bytes], depth: int | None = None) -> list[bytes]:
            heads = {
                name: sha
                for name, sha in refs.items()
                if name.startswith(HEADS_PREFIX) and sha
            }
            return self._repo.object_store.determine_wants_all(heads, depth)

        result = client.fetch(
            path,
            self._repo,
            determine_wants=determine_wants,
            progress=progress,
            depth=self.depth,
        )
        # Objects fetched so far stay unreferenced if we stop here
        ctx.raise_if_done()
        changed = self._update_tracking_refs(result.refs)
        if changed:
            log.info(f"Updated tracking refs from {self.remote_url}")
        else:
            log.debug(f"Already up to date with {self.remote_url}")
        return changed

    def _update_tracking_refs(self, remote_refs: Mapping[bytes, bytes | None]) -> bool:
        wanted = {
            TRACKING_PREFIX + name[len(HEADS_PREFIX):]: sha
            for name, sha in remote_refs.items()
            if name.startswith(HEADS_PREFIX) and sha and not name.endswith(b"^{}")
        }
        for name, sha in wanted.items():
            if sha not in self._repo.object_store:
                raise FetchError(
                    f"remote ref {_decode(name)} points at missing object {_decode(sha)}",
                    repo=self.alias,
                )

        current = {
            name: sha
            for name, sha in self._repo.get_refs().items()
            if name.startswith(TRACKING_PREFIX)
        }
        changed = False
        for name, sha in wanted.items():
            if current.get(name) != sha:
                self._repo.refs[name] = sha
                changed = True
        for name in current.keys() - wanted.keys():
            logger.info(f"Pruning tracking ref {_decode(name)} for {self.alias}")
            self._repo.refs.remove_if_equals(name, None)
            changed = True
        return changed

    def close(self) -> None:
        self._repo.close()

    # --- Reads ---

    def _acquire_shared(self, ctx: RequestContext) -> None:
        ctx.raise_if_done()
        if not self.lock.acquire_read(timeout=ctx.remaining(), abort=lambda: ctx.cancelled):
            ctx.raise_if_done()
            raise OperationCancelledError("deadline exceeded waiting for read lock", repo=self.alias)

    def _open(self) -> Repo:
        # Pack readers are not thread-safe; every read gets its own handle
        try:
            return Repo(str(self.path))
        except NotGitRepository as e:
            raise RepositoryCorruptError(f"checkout disappeared: {self.path}", repo=self.alias) from e

    @contextmanager
    def reading(self, ctx: RequestContext) -> Iterator[Repo]:
        """Hold the shared lock and yield a request-local repository handle."""
        self._acquire_shared(ctx)
        try:
            repo = self._open()
            try:
                yield repo
            finally:
                repo.close()
        finally:
            self.lock.release_read()

    def _load(self, repo: Repo, sha: bytes, kind: type[_T]) -> _T:
        try:
            obj = repo[sha]
        except KeyError as e:
            raise RepositoryCorruptError(f"missing object {_decode(sha)}", repo=self.alias) from e
        except Exception as e:
            raise RepositoryCorruptError(f"unable to read object {_decode(sha)}: {e}", repo=self.alias) from e
        if not isinstance(obj, kind):
            raise RepositoryCorruptError(
                f"object {_decode(sha)} is a {obj.type_name.decode()}, expected {kind.type_name.decode()}",
                repo=self.alias,
            )
        return obj

    def resolve(self, ctx: RequestContext, repo: Repo, branch: str) -> Reference:
        """Resolve ``branch`` to its commit and root tree.

        The caller must hold the lock in at least shared mode.
        """
        ctx.raise_if_done()
        if not branch or any(part in ("", ".", "..") for part in branch.split("/")):
            raise UnknownBranchError(branch, repo=self.alias)
        ref = TRACKING_PREFIX + _encode(branch)
        try:
            sha = repo.refs[ref]
        except KeyError:
            raise UnknownBranchError(branch, repo=self.alias) from None

        obj = self._load(repo, sha, ShaFile)
        while isinstance(obj, Tag):
            obj = self._load(repo, obj.object[1], ShaFile)
        if not isinstance(obj, Commit):
            raise RepositoryCorruptError(f"branch {branch} does not point at a commit", repo=self.alias)
        return Reference(
            branch=branch,
            ref=ref,
            commit=_decode(obj.id),
            tree=obj.tree,
            commit_time=obj.commit_time,
        )

    def resolve_branch(self, ctx: RequestContext, branch: str) -> Reference:
        """Resolve ``branch`` under a shared lock of its own."""
        with self.reading(ctx) as repo:
            return self.resolve(ctx, repo, branch)

    def _lookup(
        self, ctx: RequestContext, repo: Repo, tree_id: bytes, segments: list[str]
    ) -> tuple[int, bytes] | None:
        """Walk ``segments`` from ``tree_id``; None when any step is missing."""
        mode, sha = stat.S_IFDIR, tree_id
        for segment in segments:
            ctx.raise_if_done()
            if not stat.S_ISDIR(mode):
                return None
            tree = self._load(repo, sha, Tree)
            try:
                mode, sha = tree[_encode(segment)]
            except KeyError:
                return None
        return mode, sha

    def get_file(self, ctx: RequestContext, branch: str, path: str) -> BlobStream:
        """Open a stream over the file at ``path`` on ``branch``.

        Branch and path are resolved before this returns. The stream keeps
        the shared lock until it is exhausted or closed.
        """
        self._acquire_shared(ctx)
        try:
            repo = self._open()
            try:
                ref = self.resolve(ctx, repo, branch)
                entry = self._lookup(ctx, repo, ref.tree, split_path(path))
                if entry is None or stat.S_ISDIR(entry[0]) or S_ISGITLINK(entry[0]):
                    raise FileNotInTreeError(path, branch, repo=self.alias)
            except BaseException:
                repo.close()
                raise
        except BaseException:
            self.lock.release_read()
            raise
        return BlobStream(repo, entry[1], release=self.lock.release_read, name=path)

    def ls_dir(self, ctx: RequestContext, branch: str, dir: str) -> list[FileStat]:
        """List the immediate children of ``dir`` on ``branch``, sorted by name."""
        with self.reading(ctx) as repo:
            ref = self.resolve(ctx, repo, branch)
            entry = self._lookup(ctx, repo, ref.tree, split_path(dir))
            if entry is None or not stat.S_ISDIR(entry[0]):
                raise DirectoryNotInTreeError(dir, branch, repo=self.alias)
            tree = self._load(repo, entry[1], Tree)
            stats = [
                FileStat(name=_decode(item.path), mode=item.mode, hash=_decode(item.sha))
                for item in tree.items()
            ]
        return sorted(stats, key=lambda s: s.name)

    def iter_files(
        self, ctx: RequestContext, repo: Repo, tree_id: bytes, prefix: str = ""
    ) -> Iterator[tuple[str, int, bytes]]:
        """Yield ``(path, mode, sha)`` for every file below ``tree_id``.

        Submodule entries are skipped. The caller holds the shared lock.
        """
        tree = self._load(repo, tree_id, Tree)
        for item in tree.items():
            ctx.raise_if_done()
            path = prefix + _decode(item.path)
            if stat.S_ISDIR(item.mode):
                yield from self.iter_files(ctx, repo, item.sha, path + "/")
            elif S_ISGITLINK(item.mode):
                continue
            else:
                yield path, item.mode, item.sha

    def ls_files(self, ctx: RequestContext, branch: str) -> list[str]:
        """Every file path on ``branch``, depth first."""
        with self.reading(ctx) as repo:
            ref = self.resolve(ctx, repo, branch)
            return [path for path, _mode, _sha in self.iter_files(ctx, repo, ref.tree)]

    def read_blob(self, repo: Repo, sha: bytes) -> bytes:
        return self._load(repo, sha, Blob).data

    def zip_content(self, ctx: RequestContext, into: IO[bytes], prefix: str, branch: str) -> int:
        """Write a zip of the files under ``prefix`` to ``into``; return the count."""
        return write_archive(ctx, self, into, prefix, branch)


def _discard(destination: Path, created: bool) -> None:
    """Remove what a failed clone left behind."""
    if not destination.exists():
        return
    if created:
        shutil.rmtree(destination, ignore_errors=True)
        return
    for child in destination.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child, ignore_errors=True)
        else:
            os.unlink(child)
