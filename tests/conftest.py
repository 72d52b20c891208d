"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import stat
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Generator

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from dulwich.objects import Blob, Commit, Tree
from dulwich.repo import Repo
from fastapi import FastAPI
from fastapi.testclient import TestClient

from gitvault.api import create_app
from gitvault.checkout import Checkout
from gitvault.context import RequestContext
from gitvault.directory import RepositoryDirectory
from gitvault.models import RepositoryConfig, ServerConfig

MASTER_FILES: dict[str, bytes] = {
    "README.md": b"# gitvault fixture\n",
    "on_master.txt": b"true\n",
    "adir/file_in_directory.txt": b"file_in_directory\n",
    "adir/subdir/subdir_file.txt": b"file1\n",
    "adir/subdir/subdir_file2.txt": b"file2\n",
}

STAGING_FILES: dict[str, bytes] = {
    "on_staging.txt": b"staging\n",
    "adir/file_in_directory.txt": b"file_in_directory\n",
}

PUSH_TOKEN = "webhook-secret"
SIGNIN_USER = "user"
SIGNIN_PASSWORD = "pass"


class RemoteRepo:
    """A bare repository on local disk standing in for a git remote."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.repo = Repo.init_bare(str(path), mkdir=True)
        self.snapshots: dict[str, dict] = {}
        self._clock = 1_700_000_000

    @property
    def url(self) -> str:
        return str(self.path)

    def _write_tree(self, files: dict) -> bytes:
        tree = Tree()
        subdirs: dict[str, dict] = {}
        for path, value in files.items():
            head, _, rest = path.partition("/")
            if rest:
                subdirs.setdefault(head, {})[rest] = value
                continue
            mode, content = value if isinstance(value, tuple) else (0o100644, value)
            blob = Blob.from_string(content)
            self.repo.object_store.add_object(blob)
            tree.add(head.encode("utf-8"), mode, blob.id)
        for name, sub in subdirs.items():
            tree.add(name.encode("utf-8"), stat.S_IFDIR, self._write_tree(sub))
        self.repo.object_store.add_object(tree)
        return tree.id

    def commit(self, branch: str, files: dict, message: str = "update") -> str:
        """Commit ``files`` as the full content of ``branch``."""
        ref = b"refs/heads/" + branch.encode("utf-8")
        parents = [self.repo.refs[ref]] if ref in self.repo.refs else []
        self._clock += 60

        commit = Commit()
        commit.tree = self._write_tree(files)
        commit.parents = parents
        commit.author = commit.committer = b"Test <test@example.com>"
        commit.author_time = commit.commit_time = self._clock
        commit.author_timezone = commit.commit_timezone = 0
        commit.encoding = b"UTF-8"
        commit.message = message.encode("utf-8")
        self.repo.object_store.add_object(commit)
        self.repo.refs[ref] = commit.id
        self.snapshots[branch] = dict(files)
        return commit.id.decode("ascii")

    def update(self, branch: str, changes: dict, message: str = "update") -> str:
        """Apply ``changes`` on top of the branch; a None value deletes a file."""
        files = dict(self.snapshots.get(branch, {}))
        for path, value in changes.items():
            if value is None:
                files.pop(path, None)
            else:
                files[path] = value
        return self.commit(branch, files, message)

    def delete_branch(self, branch: str) -> None:
        del self.repo.refs[b"refs/heads/" + branch.encode("utf-8")]
        self.snapshots.pop(branch, None)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext.background()


@pytest.fixture
def remote_repo(temp_dir: Path) -> Generator[RemoteRepo, None, None]:
    """Remote with a ``master`` and a ``staging`` branch."""
    remote = RemoteRepo(temp_dir / "remote.git")
    remote.commit("master", MASTER_FILES, "initial master")
    remote.commit("staging", STAGING_FILES, "initial staging")
    yield remote
    remote.repo.close()


@pytest.fixture
def checkout(
    ctx: RequestContext, remote_repo: RemoteRepo, temp_dir: Path
) -> Generator[Checkout, None, None]:
    co = Checkout.clone(ctx, remote_repo.url, temp_dir / "checkout", alias="remote")
    yield co
    co.close()


@pytest.fixture
def directory(
    ctx: RequestContext, remote_repo: RemoteRepo, temp_dir: Path
) -> Generator[RepositoryDirectory, None, None]:
    repositories = [RepositoryConfig(url=remote_repo.url, public=True)]
    d = RepositoryDirectory.from_config(ctx, repositories, temp_dir / "data")
    yield d
    d.close()


@pytest.fixture
def rsa_keys(temp_dir: Path) -> tuple[Path, Path]:
    """PEM key pair on disk as (private, public)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = temp_dir / "jwt.key"
    public_path = temp_dir / "jwt.pub"
    private_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    public_path.write_bytes(
        key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return private_path, public_path


@pytest.fixture
def server_config(temp_dir: Path, rsa_keys: tuple[Path, Path]) -> ServerConfig:
    private_path, public_path = rsa_keys
    return ServerConfig(
        data_directory=temp_dir / "data",
        github_push_token=PUSH_TOKEN,
        jwt_private_key=private_path,
        jwt_public_key=public_path,
        jwt_signin_username=SIGNIN_USER,
        jwt_signin_password=SIGNIN_PASSWORD,
        request_timeout=30,
    )


@pytest.fixture
def fastapi_app(directory: RepositoryDirectory, server_config: ServerConfig) -> FastAPI:
    return create_app(directory, server_config)


@pytest.fixture
def api_client(fastapi_app: FastAPI) -> TestClient:
    """Create a test client for the FastAPI app."""
    return TestClient(fastapi_app)


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _BackgroundCall(threading.Thread):
    """Run a callable on a thread and keep its result or exception."""

    def __init__(self, fn: Callable[[], object]) -> None:
        super().__init__(daemon=True)
        self.fn = fn
        self.result: object = None
        self.error: BaseException | None = None

    def run(self) -> None:
        try:
            self.result = self.fn()
        except BaseException as e:
            self.error = e


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return _wait_until


@pytest.fixture
def run_in_thread() -> Generator[Callable[[Callable[[], object]], _BackgroundCall], None, None]:
    """Start callables on daemon threads; joins them at teardown."""
    threads: list[_BackgroundCall] = []

    def start(fn: Callable[[], object]) -> _BackgroundCall:
        thread = _BackgroundCall(fn)
        threads.append(thread)
        thread.start()
        return thread

    yield start
    for thread in threads:
        thread.join(timeout=10)
