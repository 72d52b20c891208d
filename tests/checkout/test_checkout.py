"""Tests for cloning, refreshing and reading a Checkout."""

from __future__ import annotations

import shutil
import time

import pytest

from gitvault.checkout import Checkout
from gitvault.context import RequestContext
from gitvault.exceptions import (
    CloneError,
    DirectoryNotInTreeError,
    FetchError,
    FileNotInTreeError,
    NotFoundError,
    OperationCancelledError,
    UnknownBranchError,
)
from gitvault.models.file_stat import MODE_EXECUTABLE, MODE_SYMLINK

MASTER_LISTING = [
    "README.md",
    "adir/file_in_directory.txt",
    "adir/subdir/subdir_file.txt",
    "adir/subdir/subdir_file2.txt",
    "on_master.txt",
]


def read_file(checkout: Checkout, branch: str, path: str) -> bytes:
    return checkout.get_file(RequestContext.background(), branch, path).readall()


class TestClone:
    """Tests for Checkout.clone."""

    def test_clone_tracks_every_branch(self, ctx, checkout, remote_repo):
        master = remote_repo.repo.refs[b"refs/heads/master"].decode()
        staging = remote_repo.repo.refs[b"refs/heads/staging"].decode()

        assert checkout.resolve_branch(ctx, "master").commit == master
        assert checkout.resolve_branch(ctx, "staging").commit == staging

    def test_clone_is_bare(self, checkout):
        assert (checkout.path / "objects").is_dir()
        assert not (checkout.path / "on_master.txt").exists()

    def test_clone_into_empty_existing_dir(self, ctx, remote_repo, temp_dir):
        destination = temp_dir / "empty"
        destination.mkdir()

        co = Checkout.clone(ctx, remote_repo.url, destination)
        try:
            assert co.ls_files(ctx, "master") == MASTER_LISTING
        finally:
            co.close()

    def test_clone_refuses_non_empty_dir(self, ctx, remote_repo, temp_dir):
        destination = temp_dir / "busy"
        destination.mkdir()
        (destination / "keep.txt").write_text("mine")

        with pytest.raises(CloneError):
            Checkout.clone(ctx, remote_repo.url, destination)
        assert (destination / "keep.txt").read_text() == "mine"

    def test_clone_missing_remote_cleans_up(self, ctx, temp_dir):
        destination = temp_dir / "never"

        with pytest.raises(CloneError) as exc_info:
            Checkout.clone(ctx, str(temp_dir / "does-not-exist.git"), destination)
        assert exc_info.value.status_code == 500
        assert not destination.exists()

    def test_clone_failure_empties_existing_dir(self, ctx, temp_dir):
        destination = temp_dir / "provided"
        destination.mkdir()

        with pytest.raises(CloneError):
            Checkout.clone(ctx, str(temp_dir / "does-not-exist.git"), destination)
        assert destination.is_dir()
        assert list(destination.iterdir()) == []

    def test_clone_cancelled(self, remote_repo, temp_dir):
        ctx = RequestContext.background()
        ctx.cancel()

        with pytest.raises(CloneError, match="cancelled"):
            Checkout.clone(ctx, remote_repo.url, temp_dir / "cancelled")
        assert not (temp_dir / "cancelled").exists()


class TestResolveBranch:
    """Tests for branch resolution."""

    def test_unknown_branch(self, ctx, checkout):
        with pytest.raises(UnknownBranchError) as exc_info:
            checkout.resolve_branch(ctx, "nope")
        assert exc_info.value.branch == "nope"
        assert "nope" in str(exc_info.value)

    @pytest.mark.parametrize("branch", ["", "..", "a//b", "../master"])
    def test_malformed_branch(self, ctx, checkout, branch):
        with pytest.raises(UnknownBranchError):
            checkout.resolve_branch(ctx, branch)

    def test_resolution_releases_lock(self, ctx, checkout):
        checkout.resolve_branch(ctx, "master")
        assert checkout.lock.stats["readers"] == 0


class TestGetFile:
    """Tests for streaming file content."""

    def test_read_root_file(self, checkout):
        assert read_file(checkout, "master", "on_master.txt") == b"true\n"

    def test_read_nested_file(self, checkout):
        assert read_file(checkout, "master", "adir/subdir/subdir_file2.txt") == b"file2\n"

    def test_leading_slash_ignored(self, checkout):
        assert read_file(checkout, "master", "/adir/file_in_directory.txt") == b"file_in_directory\n"

    def test_branches_are_independent(self, checkout):
        assert read_file(checkout, "staging", "on_staging.txt") == b"staging\n"
        with pytest.raises(FileNotInTreeError):
            checkout.get_file(RequestContext.background(), "master", "on_staging.txt")

    def test_missing_file(self, ctx, checkout):
        with pytest.raises(FileNotInTreeError) as exc_info:
            checkout.get_file(ctx, "master", "nothing.txt")
        assert exc_info.value.status_code == 404

    def test_directory_is_not_a_file(self, ctx, checkout):
        with pytest.raises(FileNotInTreeError):
            checkout.get_file(ctx, "master", "adir")

    def test_path_through_file(self, ctx, checkout):
        with pytest.raises(FileNotInTreeError):
            checkout.get_file(ctx, "master", "on_master.txt/inner")

    def test_unknown_branch_distinct_from_missing_file(self, ctx, checkout):
        with pytest.raises(UnknownBranchError):
            checkout.get_file(ctx, "nope", "on_master.txt")
        with pytest.raises(FileNotInTreeError):
            checkout.get_file(ctx, "master", "nope.txt")
        # Both are still "not found" to callers that don't care which
        assert issubclass(UnknownBranchError, NotFoundError)
        assert issubclass(FileNotInTreeError, NotFoundError)

    def test_stream_holds_read_lock_until_closed(self, ctx, checkout):
        stream = checkout.get_file(ctx, "master", "on_master.txt")
        assert checkout.lock.stats["readers"] == 1

        stream.close()
        assert checkout.lock.stats["readers"] == 0
        stream.close()
        assert checkout.lock.stats["readers"] == 0

    def test_stream_releases_lock_when_exhausted(self, ctx, checkout):
        stream = checkout.get_file(ctx, "master", "adir/subdir/subdir_file.txt")
        assert b"".join(stream) == b"file1\n"
        assert stream.closed
        assert checkout.lock.stats["readers"] == 0

    def test_stream_chunks(self, ctx, checkout, remote_repo):
        remote_repo.update("master", {"big.bin": bytes(range(256)) * 10})
        checkout.refresh(ctx)

        stream = checkout.get_file(ctx, "master", "big.bin")
        stream.chunk_size = 1000
        chunks = list(stream)
        assert [len(c) for c in chunks] == [1000, 1000, 560]
        assert b"".join(chunks) == bytes(range(256)) * 10

    def test_content_loaded_on_first_read(self, ctx, checkout):
        with checkout.get_file(ctx, "master", "adir/subdir/subdir_file.txt") as stream:
            assert stream._data is None
            assert stream.read(2) == b"fi"
            assert stream._data is not None
            assert stream.read() == b"le1\n"
        assert stream._data is None

    def test_errors_release_lock(self, ctx, checkout):
        with pytest.raises(FileNotInTreeError):
            checkout.get_file(ctx, "master", "nothing.txt")
        with pytest.raises(UnknownBranchError):
            checkout.get_file(ctx, "nope", "on_master.txt")
        assert checkout.lock.stats["readers"] == 0

    def test_cancelled_read(self, checkout):
        ctx = RequestContext.background()
        ctx.cancel()

        with pytest.raises(OperationCancelledError) as exc_info:
            checkout.get_file(ctx, "master", "on_master.txt")
        assert exc_info.value.status_code == 504
        assert checkout.lock.stats["readers"] == 0

    def test_executable_and_symlink(self, ctx, checkout, remote_repo):
        remote_repo.update(
            "master",
            {
                "run.sh": (MODE_EXECUTABLE, b"#!/bin/sh\necho hi\n"),
                "link": (MODE_SYMLINK, b"on_master.txt"),
            },
        )
        checkout.refresh(ctx)

        assert read_file(checkout, "master", "run.sh") == b"#!/bin/sh\necho hi\n"
        assert read_file(checkout, "master", "link") == b"on_master.txt"
        modes = {s.name: s.mode for s in checkout.ls_dir(ctx, "master", "")}
        assert modes["run.sh"] == MODE_EXECUTABLE
        assert modes["link"] == MODE_SYMLINK


class TestLsDir:
    """Tests for directory listings."""

    def test_root_listing_sorted(self, ctx, checkout):
        names = [s.name for s in checkout.ls_dir(ctx, "master", "")]
        assert names == ["README.md", "adir", "on_master.txt"]

    @pytest.mark.parametrize("root", ["", "/", "//"])
    def test_root_spellings(self, ctx, checkout, root):
        assert len(checkout.ls_dir(ctx, "master", root)) == 3

    def test_subdirectory(self, ctx, checkout):
        stats = checkout.ls_dir(ctx, "master", "adir")
        assert [s.name for s in stats] == ["file_in_directory.txt", "subdir"]
        assert stats[0].is_file
        assert stats[1].is_dir

    def test_slashes_ignored(self, ctx, checkout):
        assert checkout.ls_dir(ctx, "master", "/adir/") == checkout.ls_dir(ctx, "master", "adir")

    def test_staging_subdirectory(self, ctx, checkout):
        stats = checkout.ls_dir(ctx, "staging", "adir")
        assert [s.name for s in stats] == ["file_in_directory.txt"]

    def test_hash_matches_blob(self, ctx, checkout, remote_repo):
        stats = {s.name: s for s in checkout.ls_dir(ctx, "master", "")}
        tree = remote_repo.repo[remote_repo.repo[b"refs/heads/master"].tree]
        assert stats["on_master.txt"].hash == tree[b"on_master.txt"][1].decode()

    def test_missing_directory(self, ctx, checkout):
        with pytest.raises(DirectoryNotInTreeError) as exc_info:
            checkout.ls_dir(ctx, "master", "missing")
        assert "missing" in str(exc_info.value)

    def test_file_is_not_a_directory(self, ctx, checkout):
        with pytest.raises(DirectoryNotInTreeError):
            checkout.ls_dir(ctx, "master", "on_master.txt")

    def test_unknown_branch(self, ctx, checkout):
        with pytest.raises(UnknownBranchError):
            checkout.ls_dir(ctx, "nope", "")


class TestLsFiles:
    """Tests for recursive file listings."""

    def test_master(self, ctx, checkout):
        assert checkout.ls_files(ctx, "master") == MASTER_LISTING

    def test_staging(self, ctx, checkout):
        assert checkout.ls_files(ctx, "staging") == [
            "adir/file_in_directory.txt",
            "on_staging.txt",
        ]

    def test_unknown_branch(self, ctx, checkout):
        with pytest.raises(UnknownBranchError):
            checkout.ls_files(ctx, "nope")


class TestRefresh:
    """Tests for refreshing from the remote."""

    def test_up_to_date_is_noop(self, ctx, checkout):
        before = checkout.ls_files(ctx, "master")

        assert checkout.refresh(ctx) is False
        assert checkout.refresh(ctx) is False
        assert checkout.ls_files(ctx, "master") == before

    def test_picks_up_new_commit(self, ctx, checkout, remote_repo):
        sha = remote_repo.update("master", {"on_master.txt": b"false\n"})

        assert checkout.refresh(ctx) is True
        assert checkout.resolve_branch(ctx, "master").commit == sha
        assert read_file(checkout, "master", "on_master.txt") == b"false\n"
        # Untouched branch stays where it was
        assert read_file(checkout, "staging", "on_staging.txt") == b"staging\n"

    def test_new_branch(self, ctx, checkout, remote_repo):
        remote_repo.commit("feature", {"feature.txt": b"new\n"})

        checkout.refresh(ctx)
        assert read_file(checkout, "feature", "feature.txt") == b"new\n"

    def test_deleted_branch_is_pruned(self, ctx, checkout, remote_repo):
        remote_repo.delete_branch("staging")

        assert checkout.refresh(ctx) is True
        with pytest.raises(UnknownBranchError):
            checkout.ls_files(ctx, "staging")
        assert checkout.ls_files(ctx, "master") == MASTER_LISTING

    def test_unreachable_remote_keeps_state(self, ctx, checkout, remote_repo, temp_dir):
        remote_repo.update("master", {"on_master.txt": b"false\n"})
        shutil.move(str(remote_repo.path), str(temp_dir / "moved.git"))

        with pytest.raises(FetchError):
            checkout.refresh(ctx)
        assert read_file(checkout, "master", "on_master.txt") == b"true\n"
        assert checkout.lock.stats["writer"] == 0

    def test_cancelled_refresh_changes_nothing(self, checkout, remote_repo):
        remote_repo.update("master", {"on_master.txt": b"false\n"})
        ctx = RequestContext.background()
        ctx.cancel()

        with pytest.raises(OperationCancelledError):
            checkout.refresh(ctx)
        assert read_file(checkout, "master", "on_master.txt") == b"true\n"

    def test_lock_wait_respects_deadline(self, ctx, checkout):
        stream = checkout.get_file(ctx, "master", "on_master.txt")
        try:
            with pytest.raises(OperationCancelledError):
                checkout.refresh(RequestContext.with_timeout(0.1))
        finally:
            stream.close()
        assert checkout.lock.stats == {"readers": 0, "writer": 0, "writers_waiting": 0}

    def test_cancel_while_waiting_for_lock(self, ctx, checkout, remote_repo, run_in_thread, wait_until):
        remote_repo.update("master", {"on_master.txt": b"false\n"})
        stream = checkout.get_file(ctx, "master", "on_master.txt")
        try:
            refresh_ctx = RequestContext.background()
            refresher = run_in_thread(lambda: checkout.refresh(refresh_ctx))
            assert wait_until(lambda: checkout.lock.stats["writers_waiting"] == 1)

            refresh_ctx.cancel()
            refresher.join(timeout=5)

            # The refresh gave up while the reader still holds the lock
            assert not refresher.is_alive()
            assert isinstance(refresher.error, OperationCancelledError)
            assert checkout.lock.stats == {"readers": 1, "writer": 0, "writers_waiting": 0}

            # New readers are no longer parked behind it
            assert read_file(checkout, "master", "on_master.txt") == b"true\n"
        finally:
            stream.close()

    def test_cancel_while_waiting_to_read(self, checkout, run_in_thread):
        assert checkout.lock.acquire_write(timeout=1)
        try:
            read_ctx = RequestContext.background()
            reader = run_in_thread(lambda: checkout.ls_dir(read_ctx, "master", ""))
            # Let the reader park on the lock
            time.sleep(0.1)
            assert reader.is_alive()

            read_ctx.cancel()
            reader.join(timeout=5)
            assert isinstance(reader.error, OperationCancelledError)
        finally:
            checkout.lock.release_write()

    def test_reader_never_sees_torn_state(self, ctx, checkout, remote_repo, run_in_thread, wait_until):
        old = {
            "on_master.txt": b"true\n",
            "adir/subdir/subdir_file.txt": b"file1\n",
        }
        remote_repo.update(
            "master",
            {"on_master.txt": b"false\n", "adir/subdir/subdir_file.txt": b"changed\n"},
        )

        # A reader that is mid-stream holds the shared lock
        stream = checkout.get_file(ctx, "master", "on_master.txt")
        refresher = run_in_thread(lambda: checkout.refresh(RequestContext.background()))
        assert wait_until(lambda: checkout.lock.stats["writers_waiting"] == 1)

        # The refresh cannot move refs while the read is in flight
        assert refresher.is_alive()
        assert stream.read() == old["on_master.txt"]
        stream.close()

        refresher.join(timeout=10)
        assert refresher.error is None
        assert refresher.result is True
        assert read_file(checkout, "master", "on_master.txt") == b"false\n"
        assert read_file(checkout, "master", "adir/subdir/subdir_file.txt") == b"changed\n"

    def test_refreshes_are_serialized(self, checkout, remote_repo, run_in_thread):
        remote_repo.update("master", {"on_master.txt": b"false\n"})

        calls = [run_in_thread(lambda: checkout.refresh(RequestContext.background())) for _ in range(4)]
        for call in calls:
            call.join(timeout=10)

        assert all(call.error is None for call in calls)
        # Exactly one of them moved the ref; the rest found nothing new
        assert sorted(call.result for call in calls) == [False, False, False, True]
        assert read_file(checkout, "master", "on_master.txt") == b"false\n"
