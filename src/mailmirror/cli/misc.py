"""Miscellaneous commands: init, folders, serve."""

from pathlib import Path

import click
from click import argument, echo, option

from ..config import MIRROR_DIR, CONFIG_FILE, init_project
from ..errors import NotFoundError

from .utils import get_registry, get_store, load_project, require_init


@click.command()
def init():
    """Initialize a mailmirror project in the current directory.

    Creates .mailmirror/config.yaml and the data directory.
    """
    root = Path.cwd()
    config_path = root / MIRROR_DIR / CONFIG_FILE
    if config_path.exists():
        echo(f"Already initialized: {root / MIRROR_DIR}")
        return
    config = init_project(root)
    echo(f"Initialized mailmirror project: {config.root / MIRROR_DIR}")
    echo(f"  data:     {config.data_path}")
    echo(f"  accounts: {config.accounts_path}")


@click.command(no_args_is_help=True)
@require_init
@argument('account')
def folders(account: str):
    """List folders stored locally for ACCOUNT (id or email).

    \b
    Examples:
      mailmirror folders user@example.com
    """
    config = load_project()
    acct = get_registry(config).resolve(account)
    email = acct.email if acct else account
    store = get_store(config)
    names = store.list_local_folders(email)
    if not names:
        echo(f"No stored folders for {email}. Run: mailmirror sync {email}")
        return
    for name in names:
        try:
            summary = store.read_summary(email, name)
        except NotFoundError:
            echo(f"{name}: (no summary)")
            continue
        echo(f"{name}: {summary.message_count:,} messages (downloaded {summary.downloaded_at})")


@click.command()
@require_init
@option('-h', '--host', default="127.0.0.1", help="Bind address")
@option('-p', '--port', type=int, default=8765, help="Port")
def serve(host: str, port: int):
    """Run the HTTP API (accounts, background sync/export, stored mail)."""
    from ..web import main as web_main

    config = load_project()
    web_main(host=host, port=port, config=config)
