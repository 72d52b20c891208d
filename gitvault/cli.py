"""CLI commands for gitvault."""

from __future__ import annotations

import logging
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click
import httpx
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from gitvault.context import RequestContext
from gitvault.directory import RepositoryDirectory
from gitvault.exceptions import GitVaultError
from gitvault.models.file_stat import FileStat
from gitvault.models.server import ServerConfig, parse_listen_addr

console = Console()
err_console = Console(stderr=True)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
        force=True,
    )


def get_settings(ctx: click.Context) -> ServerConfig:
    return ctx.obj["settings"]


@contextmanager
def open_directory(settings: ServerConfig, alias: str | None = None) -> Iterator[RepositoryDirectory]:
    """Clone the configured repositories (or just ``alias``) into a scratch dir."""
    try:
        repositories = settings.load_repositories().repositories
    except GitVaultError as e:
        raise click.ClickException(str(e))
    if alias is not None:
        repositories = [r for r in repositories if r.alias == alias]
        if not repositories:
            raise click.ClickException(f"unable to find repo {alias}")
    with tempfile.TemporaryDirectory(prefix="gitvault_cli_") as workdir:
        try:
            directory = RepositoryDirectory.from_config(
                RequestContext.background(), repositories, workdir
            )
        except GitVaultError as e:
            raise click.ClickException(str(e))
        try:
            yield directory
        finally:
            directory.close()


def _mode(stat: FileStat) -> str:
    return f"{stat.mode:06o}"


@click.group()
@click.option("--data-dir", default=None, help="Directory checkouts are cloned into (DATA_DIRECTORY)")
@click.option(
    "--config",
    "repo_config",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Repository config file (GITVAULT_REPO_CONFIG)",
)
@click.option("--repos", default=None, help="Comma-separated remote URLs (GITVAULT_REPOS)")
@click.option("--log-level", default="INFO", type=click.Choice(LOG_LEVELS, case_sensitive=False))
@click.pass_context
def main(
    ctx: click.Context,
    data_dir: str | None,
    repo_config: str | None,
    repos: str | None,
    log_level: str,
) -> None:
    """gitvault - serve files from git repositories over HTTP."""
    ctx.ensure_object(dict)
    setup_logging(log_level.upper())
    try:
        settings = ServerConfig.from_env()
    except GitVaultError as e:
        raise click.ClickException(str(e))
    overrides: dict[str, object] = {}
    if data_dir:
        overrides["data_directory"] = Path(data_dir)
    if repo_config:
        overrides["repo_config"] = Path(repo_config)
    if repos:
        overrides["repos"] = repos
    ctx.obj["settings"] = settings.model_copy(update=overrides)


@main.command()
@click.pass_context
def repos(ctx: click.Context) -> None:
    """List configured repositories without cloning them."""
    try:
        repositories = get_settings(ctx).load_repositories().repositories
    except GitVaultError as e:
        raise click.ClickException(str(e))

    table = Table(title="Repositories")
    table.add_column("Alias", style="cyan")
    table.add_column("URL")
    table.add_column("Public", style="yellow")
    table.add_column("Depth", justify="right", style="green")

    for repo in repositories:
        table.add_row(
            repo.alias,
            repo.url,
            "yes" if repo.public else "no",
            str(repo.depth) if repo.depth else "full",
        )

    console.print(table)


@main.command("ls")
@click.argument("repo")
@click.argument("branch")
@click.argument("dir", default="")
@click.pass_context
def ls_command(ctx: click.Context, repo: str, branch: str, dir: str) -> None:
    """List a directory of a repository branch."""
    with open_directory(get_settings(ctx), repo) as directory:
        try:
            stats = directory.list_dir(RequestContext.background(), repo, branch, dir)
        except GitVaultError as e:
            raise click.ClickException(str(e))

    table = Table(title=f"{repo}@{branch}:/{dir.strip('/')}")
    table.add_column("Name", style="cyan")
    table.add_column("Mode", style="yellow")
    table.add_column("Hash", style="dim")

    for stat in stats:
        name = f"{stat.name}/" if stat.is_dir else stat.name
        table.add_row(name, _mode(stat), stat.hash)

    console.print(table)


@main.command()
@click.argument("repo")
@click.argument("branch")
@click.argument("path")
@click.pass_context
def cat(ctx: click.Context, repo: str, branch: str, path: str) -> None:
    """Write one file of a repository branch to stdout."""
    out = sys.stdout.buffer
    with open_directory(get_settings(ctx), repo) as directory:
        try:
            with directory.get_file(RequestContext.background(), repo, branch, path) as stream:
                for chunk in stream:
                    out.write(chunk)
        except GitVaultError as e:
            raise click.ClickException(str(e))
    out.flush()


@main.command("zip")
@click.argument("repo")
@click.argument("branch")
@click.argument("dir", default="")
@click.option("--output", "-o", required=True, type=click.Path(dir_okay=False), help="Zip file to write")
@click.pass_context
def zip_command(ctx: click.Context, repo: str, branch: str, dir: str, output: str) -> None:
    """Package a directory of a repository branch as a zip archive."""
    with open_directory(get_settings(ctx), repo) as directory:
        try:
            with open(output, "wb") as f:
                count = directory.zip_dir(RequestContext.background(), repo, branch, dir, f)
        except GitVaultError as e:
            Path(output).unlink(missing_ok=True)
            raise click.ClickException(str(e))

    if count == 0:
        Path(output).unlink(missing_ok=True)
        raise click.ClickException(f"no files found under {dir or '/'}")
    console.print(f"[green]Wrote {count} files to {output}[/green]")


@main.command()
@click.argument("repo", required=False)
@click.option("--server", default=None, help="Refresh through a running server, e.g. http://localhost:8080")
@click.pass_context
def refresh(ctx: click.Context, repo: str | None, server: str | None) -> None:
    """Fetch one repository (or all of them) from the remote."""
    if server:
        path = f"/refresh/{repo}" if repo else "/refreshall"
        try:
            response = httpx.post(server.rstrip("/") + path, timeout=None)
        except httpx.HTTPError as e:
            console.print("[dim]Make sure the server is running: gitvault serve[/dim]")
            raise click.ClickException(f"request failed: {e}")
        if response.status_code != 200:
            raise click.ClickException(f"{response.status_code}: {response.text}")
        console.print(f"[green]Refreshed {repo or 'all repositories'}[/green]")
        return

    with open_directory(get_settings(ctx), repo) as directory:
        with console.status("Fetching..."):
            try:
                if repo:
                    changed = [repo] if directory.refresh(RequestContext.background(), repo) else []
                else:
                    changed = directory.refresh_all(RequestContext.background())
            except GitVaultError as e:
                raise click.ClickException(str(e))

        table = Table(title="Refresh Results")
        table.add_column("Repository", style="cyan")
        table.add_column("Status", style="green")
        for alias in directory.aliases():
            table.add_row(alias, "updated" if alias in changed else "up to date")
        console.print(table)


@main.command()
@click.option("--host", default=None, help="Host to bind (default from LISTEN_ADDR)")
@click.option("--port", "-p", default=None, type=int, help="Port to bind (default from LISTEN_ADDR)")
@click.option("--listen", default=None, help="host:port to bind, overrides LISTEN_ADDR")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, listen: str | None) -> None:
    """Clone every repository and start the API server."""
    import uvicorn

    from gitvault.api import create_app

    settings = get_settings(ctx)
    if listen:
        try:
            settings = settings.model_copy(
                update=dict(zip(("listen_host", "listen_port"), parse_listen_addr(listen)))
            )
        except GitVaultError as e:
            raise click.ClickException(str(e))
    host = host or settings.listen_host
    port = port if port is not None else settings.listen_port

    try:
        repositories = settings.load_repositories().repositories
        with console.status(f"Cloning {len(repositories)} repositories..."):
            directory = RepositoryDirectory.from_config(
                RequestContext.background(), repositories, settings.data_directory
            )
        app = create_app(directory, settings)
    except GitVaultError as e:
        raise click.ClickException(str(e))

    console.print(f"[green]Serving {len(directory)} repositories at http://{host}:{port}[/green]")
    uvicorn.run(app, host=host, port=port, log_config=None)
