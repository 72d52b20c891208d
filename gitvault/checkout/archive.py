"""Zip packaging of a branch subtree."""

from __future__ import annotations

import logging
import time
import zipfile
from typing import IO, TYPE_CHECKING

from gitvault.context import RequestContext

if TYPE_CHECKING:
    from gitvault.checkout.checkout import Checkout

logger = logging.getLogger(__name__)

# Zip timestamps cannot predate 1980
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def matches_prefix(path: str, prefix: str) -> bool:
    """Whether ``path`` is ``prefix`` itself or lies below it."""
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


def entry_name(path: str, prefix: str) -> str:
    """Name of ``path`` inside an archive rooted at ``prefix``."""
    if not prefix:
        return path
    if path == prefix:
        return path.rsplit("/", 1)[-1]
    return path[len(prefix) + 1:]


def write_archive(
    ctx: RequestContext,
    checkout: Checkout,
    into: IO[bytes],
    prefix: str,
    branch: str,
) -> int:
    """Write every file on ``branch`` under ``prefix`` into a zip on ``into``.

    The shared lock is held until the last entry is written, so the archive
    reflects exactly one state of the branch. Returns the number of files
    written; zero means nothing matched.
    """
    prefix = prefix.strip("/")
    count = 0
    with checkout.reading(ctx) as repo:
        ref = checkout.resolve(ctx, repo, branch)
        date_time = max(_ZIP_EPOCH, time.gmtime(ref.commit_time)[:6])
        with zipfile.ZipFile(into, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path, mode, sha in checkout.iter_files(ctx, repo, ref.tree):
                if not matches_prefix(path, prefix):
                    continue
                ctx.raise_if_done()
                info = zipfile.ZipInfo(entry_name(path, prefix), date_time=date_time)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = (mode & 0xFFFF) << 16
                zf.writestr(info, checkout.read_blob(repo, sha))
                count += 1

    ctx.logger(logger).debug(f"Packed {count} files under '{prefix}' from {ref.commit[:12]}")
    return count
