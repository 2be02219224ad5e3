"""Command-line entry point for the SCM scan engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Annotated, NoReturn

import orjson
import typer
from pydantic import SecretStr

from scmscan.config import ScannerSettings, load_settings
from scmscan.errors import ScmScanError
from scmscan.models import Credential, ScanRequest, ScanResult, ToolType
from scmscan.orchestrator import ScanOrchestrator
from scmscan.store import JsonlScanStore

app = typer.Typer(add_completion=False, help="Scan Git hosting platforms into a normalized record store.")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", help="Enable verbose logging output.")] = False,
) -> None:
    """Configure logging before executing a sub-command."""
    _configure_logging(verbose)


@app.command()
def scan(
    repository_url: Annotated[str, typer.Argument(help="Clone or browse URL of the repository.")],
    tool_type: Annotated[ToolType, typer.Option("--tool-type", help="Hosting tool of the repository.")],
    name: Annotated[str | None, typer.Option("--name", help="Repository display name.")] = None,
    branch: Annotated[str | None, typer.Option("--branch", help="Branch to scan; defaults to all.")] = None,
    username: Annotated[str | None, typer.Option("--username", help="Username for basic auth.")] = None,
    token: Annotated[
        str,
        typer.Option("--token", envvar="SCMSCAN_TOKEN", help="Access token or app password.", show_default=False),
    ] = "",
    since: Annotated[datetime | None, typer.Option("--since", help="Window start.")] = None,
    until: Annotated[datetime | None, typer.Option("--until", help="Window end.")] = None,
    last_scan_from: Annotated[
        int | None,
        typer.Option("--last-scan-from", help="Epoch-millis watermark of the previous scan."),
    ] = None,
    clone: Annotated[bool, typer.Option("--clone", help="Walk a local clone instead of the REST API.")] = False,
    strategy: Annotated[str | None, typer.Option("--strategy", help="Explicit commit fetch strategy.")] = None,
    config_id: Annotated[str, typer.Option("--config-id", help="Scan configuration id.")] = "default",
    limit: Annotated[int, typer.Option("--limit", min=0, help="Maximum commits kept; 0 means no limit.")] = 0,
    store_dir: Annotated[Path | None, typer.Option("--store-dir", help="Override the store directory.")] = None,
) -> None:
    """Scan one repository and persist its commits, merge requests and users."""
    try:
        settings = _patched_settings(load_settings(), store_dir=store_dir)
        request = ScanRequest(
            repository_url=repository_url,
            repository_name=name,
            branch_name=branch,
            credential=Credential(username=username, token=SecretStr(token)),
            tool_type=tool_type,
            config_id=config_id,
            clone_enabled=clone,
            since=since,
            until=until,
            last_scan_from=last_scan_from,
            limit=limit,
            commit_fetch_strategy=strategy,
        )
    except ValueError as exc:
        _handle_settings_error(exc)
    orchestrator = ScanOrchestrator(settings)
    try:
        result = asyncio.run(orchestrator.scan_repository(request))
    except ScmScanError as exc:
        typer.secho(f"Scan failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    _echo_result(result)
    if not result.success:
        raise typer.Exit(code=1)


@app.command("scan-file")
def scan_file(
    path: Annotated[Path, typer.Argument(help="JSON file holding a list of scan requests.", exists=True)],
    store_dir: Annotated[Path | None, typer.Option("--store-dir", help="Override the store directory.")] = None,
) -> None:
    """Scan every repository listed in a JSON file concurrently."""
    try:
        settings = _patched_settings(load_settings(), store_dir=store_dir)
        payload = orjson.loads(path.read_bytes())
        if not isinstance(payload, list):
            msg = f"{path} must contain a JSON list of scan requests"
            raise ValueError(msg)
        requests = [ScanRequest.model_validate(item) for item in payload]
    except ValueError as exc:
        _handle_settings_error(exc)
    orchestrator = ScanOrchestrator(settings)
    results = asyncio.run(orchestrator.scan_many(requests))
    for result in results:
        _echo_result(result)
    failed = sum(1 for result in results if not result.success)
    typer.echo(f"Scanned {len(results)} repositories ({failed} failed).")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def doctor() -> None:
    """Validate configuration and report the store location."""
    try:
        settings = load_settings()
    except ValueError as exc:
        _handle_settings_error(exc)
    try:
        store = JsonlScanStore(settings.store_dir)
    except OSError as exc:
        typer.secho(f"Store at {settings.store_dir} is not usable: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    counts = store.counts()
    typer.echo(f"Store: {store.path}")
    typer.echo(
        "Records: {users} users, {commits} commits, {merge_requests} merge requests".format(**counts),
    )
    typer.echo(f"GitHub API: {settings.github_api_url}")
    typer.echo(f"GitLab host: {settings.gitlab_api_url}")
    typer.echo(f"Bitbucket Cloud API: {settings.bitbucket_cloud_api_url}")


def _echo_result(result: ScanResult) -> None:
    label = result.repository_name or result.repository_url
    status = "ok" if result.success else f"failed: {result.error_message}"
    typer.echo(
        f"{label}: {result.commits_found} commits, {result.merge_requests_found} merge requests, "
        f"{result.users_found} users in {result.duration_ms}ms ({status})",
    )


def _patched_settings(settings: ScannerSettings, *, store_dir: Path | None) -> ScannerSettings:
    if store_dir is not None:
        settings = settings.model_copy(update={"store_dir": store_dir})
    return settings


def _handle_settings_error(exc: ValueError) -> NoReturn:
    typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


if __name__ == "__main__":
    app()
