"""CLI package for mailmirror - IMAP backup and migration.

- account.py: Account management (add, ls, rm)
- sync.py: Foreground sync and export
- misc.py: init, folders, serve
- utils.py: Shared utilities and helpers
"""

import click
from dotenv import load_dotenv

from .utils import AliasGroup

from .account import account
from .misc import folders, init, serve
from .sync import export, sync


@click.group(cls=AliasGroup, aliases={
    'a': 'account',
    'f': 'folders',
    'i': 'init',
    's': 'sync',
    'w': 'serve',
    'x': 'export',
})
def main():
    """Back up IMAP accounts locally and replay them elsewhere."""
    load_dotenv()


main.add_command(account)

main.add_command(export)
main.add_command(folders)
main.add_command(init)
main.add_command(serve)
main.add_command(sync)


__all__ = [
    'main',
    'account',
    'export',
    'folders',
    'init',
    'serve',
    'sync',
]
