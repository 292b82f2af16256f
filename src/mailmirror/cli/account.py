"""Account management commands."""

import click
from click import argument, echo, option

from ..errors import NotFoundError

from .utils import (
    AliasGroup,
    fail,
    format_last_sync,
    get_account,
    get_password,
    get_registry,
    load_project,
    require_init,
)


@click.group(cls=AliasGroup, aliases={
    'a': 'add',
    'l': 'ls',
    'r': 'rm',
})
def account():
    """Manage IMAP accounts."""
    pass


@account.command("add", no_args_is_help=True)
@require_init
@option('-H', '--host', help="IMAP host (discovered from the email domain if omitted)")
@option('-p', '--password', 'password_opt', help="Password (prompts if not provided)")
@option('-P', '--port', type=int, help="IMAP port (default from config)")
@option('-T', '--no-tls', is_flag=True, help="Connect in plaintext, upgrading via STARTTLS when offered")
@option('-u', '--username', help="Login name, if different from the email address")
@argument('email')
def account_add(
    host: str | None,
    password_opt: str | None,
    port: int | None,
    no_tls: bool,
    username: str | None,
    email: str,
):
    """Add an account.

    \b
    Examples:
      mailmirror account add user@example.com
      mailmirror account add user@example.com -H imap.example.com -P 143 -T
      echo "$PASS" | mailmirror a a user@example.com
    """
    if "@" not in email:
        fail(f"Not an email address: {email}")
    config = load_project()
    registry = get_registry(config)
    if registry.find_by_email(email):
        fail(f"Account '{email}' already exists.")
    password = get_password(password_opt)
    acct = registry.add(
        email=email,
        password=password,
        host=host,
        port=port or config.port,
        username=username,
        tls=not no_tls,
    )
    echo(f"Account '{email}' saved ({acct.id})")


@account.command("ls")
@require_init
def account_ls():
    """List accounts.

    \b
    Examples:
      mailmirror account ls
      mailmirror a l
    """
    config = load_project()
    accounts = get_registry(config).list()
    if not accounts:
        echo("No accounts. Add one with: mailmirror account add user@example.com")
        return
    for acct in sorted(accounts, key=lambda a: a.email):
        host = acct.host or "(discover)"
        echo(f"  {acct.id[:8]}  {acct.email:30} {host:25} last sync: {format_last_sync(acct.last_sync)}")


@account.command("rm", no_args_is_help=True)
@require_init
@argument('ref')
def account_rm(ref: str):
    """Remove an account by id or email.

    Locally stored mail is kept.
    """
    config = load_project()
    registry = get_registry(config)
    acct = get_account(registry, ref)
    try:
        registry.remove(acct.id)
    except NotFoundError as e:
        fail(str(e))
    echo(f"Account '{acct.email}' removed")
