"""Shared CLI utilities and helpers."""

import sys
from datetime import datetime, timezone
from functools import wraps

import click
import humanize
from click import prompt

from ..accounts import Account, AccountRegistry
from ..config import MirrorConfig, find_root, load_config
from ..export import ExportCoordinator
from ..log import setup_logging
from ..store import MailboxStore
from ..sync import SyncCoordinator


def err(*args, **kwargs):
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def fail(msg: str):
    err(f"Error: {msg}")
    sys.exit(1)


def get_password(password_opt: str | None) -> str:
    """Get password from option, stdin (if piped), or prompt."""
    if password_opt:
        return password_opt
    elif not sys.stdin.isatty():
        return sys.stdin.readline().rstrip("\n")
    else:
        return prompt("Password", hide_input=True)


def require_init(f):
    """Decorator that requires a .mailmirror directory to exist."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not find_root():
            err("Not in a mailmirror project. Run 'mailmirror init' first.")
            sys.exit(1)
        return f(*args, **kwargs)
    return wrapper


def load_project() -> MirrorConfig:
    """Load the project config and configure logging from it."""
    config = load_config()
    setup_logging(config.log_level, config.log_path)
    return config


def get_registry(config: MirrorConfig) -> AccountRegistry:
    return AccountRegistry(config.accounts_path)


def get_store(config: MirrorConfig) -> MailboxStore:
    return MailboxStore(config.data_path)


def get_account(registry: AccountRegistry, ref: str) -> Account:
    """Resolve an account by id or email, exiting if it is unknown."""
    account = registry.resolve(ref)
    if not account:
        err(f"Account '{ref}' not found.")
        err("  mailmirror account add user@example.com")
        sys.exit(1)
    return account


def sync_coordinator(config: MirrorConfig) -> SyncCoordinator:
    return SyncCoordinator(get_registry(config), get_store(config), config=config)


def export_coordinator(config: MirrorConfig) -> ExportCoordinator:
    return ExportCoordinator(get_registry(config), get_store(config), config=config)


def format_last_sync(value: str | None) -> str:
    """'3 minutes ago'-style rendering of an ISO timestamp."""
    if not value:
        return "never"
    try:
        when = datetime.fromisoformat(value)
    except ValueError:
        return value
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return humanize.naturaltime(datetime.now(timezone.utc) - when)


class AliasGroup(click.Group):
    """Click Group that supports command aliases."""

    def __init__(self, *args, aliases: dict[str, str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}
        self._cmd_aliases: dict[str, list[str]] = {}
        for alias, cmd in self.aliases.items():
            self._cmd_aliases.setdefault(cmd, []).append(alias)

    def get_command(self, ctx, cmd_name):
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return super().get_command(ctx, cmd_name)

    def resolve_command(self, ctx, args):
        _, cmd_name, args = super().resolve_command(ctx, args)
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return _, cmd_name, args

    def format_commands(self, ctx, formatter):
        """List commands with their aliases, e.g. `account (a)`."""
        rows = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            aliases = self._cmd_aliases.get(subcommand, [])
            name = f"{subcommand} ({', '.join(sorted(aliases))})" if aliases else subcommand
            rows.append((name, cmd.get_short_help_str(limit=formatter.width)))

        if rows:
            with formatter.section("Commands"):
                formatter.write_dl(rows)
