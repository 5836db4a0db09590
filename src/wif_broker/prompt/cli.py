"""Console front end: acquire a token and prove it works.

Pattern: Prompt Renderer
-------------------------
The CLI is a collaborator of the engine, not part of it.  It:

  1. Builds a ``CredentialProvider`` from an already validated configuration.
  2. Acquires a token and shows a redacted prefix and the expiry.
  3. Optionally lists the projects the identity can see through Cloud
     Resource Manager, using the bearer-token adapter.

Failures are rendered cause by cause so the operator sees the server's
explanation (``invalid_grant``, a missing IAM binding, ...), while the exit
message itself stays generic.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import httpx
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from wif_broker.config.configuration import CredentialConfiguration
from wif_broker.diagnostics import error_chain, redact_token
from wif_broker.errors import CredentialError
from wif_broker.provider.credential_provider import CredentialProvider
from wif_broker.provider.http_auth import GoogleBearerAuth

logger = logging.getLogger(__name__)
console = Console()

PROJECTS_SEARCH_URL = "https://cloudresourcemanager.googleapis.com/v3/projects:search"


def _print_banner(config: CredentialConfiguration) -> None:
    console.print(
        Panel(
            "[bold]Workload Identity Federation[/bold]\n"
            f"Audience: {config.audience}\n"
            f"Impersonate: {config.service_account_email or '(none)'}",
            border_style="blue",
        )
    )


def _print_failure(exc: BaseException) -> None:
    console.print("[red]Authentication failed:[/red]")
    for cause in error_chain(exc):
        console.print(f"  [red]-[/red] {type(cause).__name__}: {escape(str(cause))}")


async def _list_projects(provider: CredentialProvider, timeout: float | None) -> list[str]:
    project_ids: list[str] = []
    async with httpx.AsyncClient(
        auth=GoogleBearerAuth(provider, timeout=timeout), timeout=timeout
    ) as client:
        page_token = None
        while True:
            params = {"pageToken": page_token} if page_token else {}
            response = await client.get(PROJECTS_SEARCH_URL, params=params)
            response.raise_for_status()
            payload = response.json()
            project_ids.extend(p["projectId"] for p in payload.get("projects", []))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return project_ids


async def _run(config: CredentialConfiguration, list_projects: bool, timeout: float | None) -> None:
    async with CredentialProvider.from_configuration(config) as provider:
        token = await provider.get_access_token(timeout=timeout)
        console.print(
            f"\n  [green]Acquired[/green] Google access token "
            f"[bold]{redact_token(token.token)}[/bold] (expires {token.expiry.isoformat()})"
        )
        if token.impersonated_account:
            console.print(f"  Impersonating: [bold]{token.impersonated_account}[/bold]")

        if not list_projects:
            return

        project_ids = await _list_projects(provider, timeout)
        table = Table(title="Accessible Projects")
        table.add_column("#", style="cyan")
        table.add_column("Project ID", style="bold")
        for index, project_id in enumerate(project_ids, start=1):
            table.add_row(str(index), project_id)
        console.print(table)


def run_cli(
    config: CredentialConfiguration,
    list_projects: bool = False,
    timeout: float | None = None,
) -> None:
    """Main entry point for the console front end."""
    _print_banner(config)
    try:
        asyncio.run(_run(config, list_projects, timeout))
    except (CredentialError, TimeoutError, httpx.HTTPError) as exc:
        _print_failure(exc)
        logger.debug("Authentication failed", exc_info=True)
        console.print("\n[red]Authentication failed, see output above for details.[/red]")
        sys.exit(1)
    console.print("\n[dim]Authentication successful.[/dim]")
