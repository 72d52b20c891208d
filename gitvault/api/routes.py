"""FastAPI router for gitvault.

Usage:
    from fastapi import FastAPI
    from gitvault.api import create_router
    from gitvault.directory import RepositoryDirectory

    app = FastAPI()
    directory = RepositoryDirectory.from_config(ctx, repositories, "/var/lib/gitvault")

    # Mount at the root
    app.include_router(create_router(directory))

    # Or read-only under a prefix behind an extra dependency
    app.include_router(
        create_router(directory, prefix="/public", dependencies=[...], include_refresh=False)
    )
"""

import logging
import tempfile
from typing import IO, Annotated, Any, Iterator, Sequence
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, params
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from gitvault.context import RequestContext
from gitvault.directory import RepositoryDirectory
from gitvault.exceptions import GitVaultError
from gitvault.models.file_stat import FileStat

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
# Archives larger than this spill from memory to disk
SPOOL_MAX_SIZE = 16 * 1024 * 1024


def http_error(err: GitVaultError) -> HTTPException:
    """Translate a gitvault error into the matching HTTP error."""
    if err.status_code >= 500:
        logger.error(f"Request failed: {err}", exc_info=err)
    else:
        logger.info(f"Not found: {err}")
    return HTTPException(status_code=err.status_code, detail=str(err))


def _iter_file(f: IO[bytes]) -> Iterator[bytes]:
    while chunk := f.read(CHUNK_SIZE):
        yield chunk


def _archive_name(repo: str, branch: str, dir: str) -> str:
    parts = [repo, branch, *[p for p in dir.split("/") if p]]
    return "-".join(parts).replace('"', "_") + ".zip"


def content_disposition(filename: str) -> str:
    """Attachment header value that survives non-ASCII file names.

    Header values go out as latin-1, so the plain ``filename`` carries an
    ASCII fallback and ``filename*`` carries the UTF-8 name (RFC 6266).
    """
    fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
    if fallback == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


class GitVaultAPI:
    """Encapsulates the directory and per-request settings for the routes."""

    def __init__(self, directory: RepositoryDirectory, request_timeout: float | None = 60.0) -> None:
        self.directory = directory
        self.request_timeout = request_timeout

    def context(self, route: str, **fields: Any) -> RequestContext:
        """Fresh context for one request, carrying its deadline and log fields."""
        ctx = RequestContext.with_timeout(self.request_timeout, route=route)
        return ctx.with_fields(**fields)


def create_router(
    directory: RepositoryDirectory,
    *,
    prefix: str = "",
    tags: list[str] | None = None,
    dependencies: Sequence[params.Depends] | None = None,
    request_timeout: float | None = 60.0,
    include_refresh: bool = True,
) -> APIRouter:
    """Create a FastAPI router serving files, listings and archives.

    Args:
        directory: Repository directory to serve from
        prefix: URL prefix for all routes
        tags: OpenAPI tags for the router
        dependencies: Extra dependencies run before every route, e.g. an
            access check
        request_timeout: Deadline in seconds applied to each request
        include_refresh: Also mount ``/refresh`` and ``/refreshall``

    Returns:
        APIRouter that can be included in a FastAPI app
    """
    if tags is None:
        tags = ["gitvault"]

    router = APIRouter(prefix=prefix, tags=tags, dependencies=list(dependencies or []))
    api = GitVaultAPI(directory, request_timeout=request_timeout)

    def get_directory() -> RepositoryDirectory:
        return api.directory

    # Route functions are plain ``def`` so each request runs on its own
    # worker thread; all git work below is blocking.

    # --- File endpoint ---

    @router.get("/file/{repo}/{branch}/{path:path}", response_class=StreamingResponse)
    def get_file(
        repo: str,
        branch: str,
        path: str,
        directory: Annotated[RepositoryDirectory, Depends(get_directory)],
    ) -> StreamingResponse:
        """Stream the raw content of one file."""
        ctx = api.context("file", repo=repo, branch=branch, path=path)
        if not path.strip("/"):
            raise HTTPException(status_code=404, detail="no file path given")
        try:
            stream = directory.get_file(ctx, repo, branch, path)
        except GitVaultError as e:
            raise http_error(e)
        return StreamingResponse(
            iter(stream),
            media_type="application/octet-stream",
            background=BackgroundTask(stream.close),
        )

    # --- Listing endpoints ---

    @router.get("/ls/{repo}/{branch}", response_model=list[FileStat])
    @router.get("/ls/{repo}/{branch}/{dir:path}", response_model=list[FileStat])
    def list_dir(
        repo: str,
        branch: str,
        directory: Annotated[RepositoryDirectory, Depends(get_directory)],
        dir: str = "",
    ) -> list[FileStat]:
        """List the immediate children of a directory, sorted by name."""
        ctx = api.context("ls", repo=repo, branch=branch, path=dir)
        try:
            return directory.list_dir(ctx, repo, branch, dir)
        except GitVaultError as e:
            raise http_error(e)

    # --- Archive endpoints ---

    @router.get("/zip/{repo}/{branch}", response_class=StreamingResponse)
    @router.get("/zip/{repo}/{branch}/{dir:path}", response_class=StreamingResponse)
    def zip_dir(
        repo: str,
        branch: str,
        directory: Annotated[RepositoryDirectory, Depends(get_directory)],
        dir: str = "",
    ) -> StreamingResponse:
        """Download every file below a directory as a zip archive."""
        ctx = api.context("zip", repo=repo, branch=branch, path=dir)
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        try:
            count = directory.zip_dir(ctx, repo, branch, dir, spool)
        except GitVaultError as e:
            spool.close()
            raise http_error(e)
        except BaseException:
            spool.close()
            raise
        if count == 0:
            spool.close()
            raise HTTPException(status_code=404, detail=f"no files found under {dir or '/'}")
        ctx.logger(logger).debug(f"Serving archive with {count} files")
        try:
            spool.seek(0)
            return StreamingResponse(
                _iter_file(spool),
                media_type="application/zip",
                headers={"Content-Disposition": content_disposition(_archive_name(repo, branch, dir))},
                background=BackgroundTask(spool.close),
            )
        except BaseException:
            spool.close()
            raise

    if not include_refresh:
        return router

    # --- Refresh endpoints ---

    @router.api_route("/refresh/{repo}", methods=["GET", "POST"], response_class=PlainTextResponse)
    def refresh(
        repo: str,
        directory: Annotated[RepositoryDirectory, Depends(get_directory)],
    ) -> str:
        """Fetch one repository from its remote."""
        ctx = api.context("refresh", repo=repo)
        try:
            directory.refresh(ctx, repo)
        except GitVaultError as e:
            raise http_error(e)
        return "OK"

    @router.api_route("/refreshall", methods=["GET", "POST"], response_class=PlainTextResponse)
    def refresh_all(
        directory: Annotated[RepositoryDirectory, Depends(get_directory)],
    ) -> str:
        """Fetch every repository in configuration order, stopping at the first failure."""
        ctx = api.context("refreshall")
        try:
            changed = directory.refresh_all(ctx)
        except GitVaultError as e:
            raise http_error(e)
        ctx.logger(logger).info(f"Refreshed {len(directory)} repositories, {len(changed)} changed")
        return "OK"

    return router
