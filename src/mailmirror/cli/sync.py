"""Foreground sync and export commands."""

import click
from click import argument, option
from rich.console import Console

from ..errors import MailMirrorError

from .utils import (
    export_coordinator,
    fail,
    get_account,
    get_registry,
    load_project,
    require_init,
    sync_coordinator,
)


@click.command(no_args_is_help=True)
@require_init
@argument('account')
def sync(account: str):
    """Download every folder of ACCOUNT (id or email) into the local store.

    \b
    Examples:
      mailmirror sync user@example.com
      mailmirror s 3f2a9c1e-...
    """
    config = load_project()
    acct = get_account(get_registry(config), account)
    coordinator = sync_coordinator(config)
    console = Console()

    def on_folder(entry: dict):
        if "error" in entry:
            console.print(f"  [red]✗[/] {entry['mailbox']}: [red]{entry['error']}[/]")
            return
        line = f"  [green]✓[/] {entry['mailbox']}: {entry['count']:,} messages"
        if entry["skipped"]:
            line += f" [yellow]({entry['skipped']} skipped)[/]"
        console.print(line)

    console.print(f"[bold]Syncing {acct.email}[/]")
    try:
        result = coordinator.run(acct, on_folder=on_folder)
    except MailMirrorError as e:
        fail(str(e))
    finally:
        coordinator.shutdown()
    coordinator.record_sync(acct)
    console.print(
        f"[bold green]Done:[/] {result['totalMessages']:,} messages "
        f"in {result['mailboxCount']} folders from {result['host']}"
    )


@click.command(no_args_is_help=True)
@require_init
@option('-f', '--folder', 'folders', multiple=True, help="Folder to export (repeatable; default: all stored)")
@argument('source')
@argument('target')
def export(folders: tuple[str, ...], source: str, target: str):
    """Replay SOURCE's stored mail into the TARGET account.

    \b
    Examples:
      mailmirror export old@example.com new@example.org
      mailmirror x old@example.com new@example.org -f INBOX -f Sent
    """
    config = load_project()
    registry = get_registry(config)
    src = get_account(registry, source)
    tgt = get_account(registry, target)
    coordinator = export_coordinator(config)
    console = Console()

    def on_folder(entry: dict):
        status = entry["status"]
        name = entry["mailbox"]
        if status == "skipped":
            console.print(f"  [dim]- {name}: no messages[/]")
        elif status == "failed":
            console.print(f"  [red]✗[/] {name}: {entry['exported']}/{entry['total']} [red]{entry.get('error', '')}[/]")
        elif entry.get("failed"):
            console.print(f"  [yellow]![/] {name}: {entry['exported']}/{entry['total']} ({entry['failed']} failed)")
        else:
            console.print(f"  [green]✓[/] {name}: {entry['exported']}/{entry['total']}")

    console.print(f"[bold]Exporting {src.email} → {tgt.email}[/]")
    try:
        result = coordinator.run(src, tgt, list(folders) or None, on_folder=on_folder)
    except MailMirrorError as e:
        fail(str(e))
    finally:
        coordinator.shutdown()
    if not result["results"]:
        console.print(result.get("message", "Nothing to export"))
        return
    console.print(f"[bold green]Done:[/] {result['totalExported']:,} messages exported")
