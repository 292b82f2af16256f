"""Account registry backed by a YAML file."""

import threading
import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path

import yaml

from .errors import NotFoundError
from .session import DEFAULT_PORT, SessionConfig


@dataclass
class Account:
    """An IMAP account the service can sync from or export to."""
    id: str
    email: str
    password: str
    host: str | None = None
    port: int = DEFAULT_PORT
    username: str | None = None
    tls: bool = True
    created_at: str | None = None
    last_sync: str | None = None
    status: str = "active"

    @property
    def login_user(self) -> str:
        return self.username or self.email

    def session_config(self, host: str, timeout: float | None = 30.0) -> SessionConfig:
        return SessionConfig(
            host=host,
            port=self.port,
            username=self.login_user,
            password=self.password,
            tls=self.tls,
            timeout=timeout,
        )

    def to_dict(self, include_password: bool = True) -> dict:
        data = {
            "id": self.id,
            "email": self.email,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "tls": self.tls,
            "createdAt": self.created_at,
            "lastSync": self.last_sync,
            "status": self.status,
        }
        if include_password:
            data["password"] = self.password
        return data


_FIELDS = {f.name for f in fields(Account)}


class AccountRegistry:
    """Keyed record store for accounts (`accounts.yaml`)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Account]:
        if not self.path.exists():
            return {}
        with open(self.path) as f:
            data = yaml.safe_load(f) or {}
        accounts = {}
        for acct_id, acct_data in data.get("accounts", {}).items():
            known = {k: v for k, v in acct_data.items() if k in _FIELDS and k != "id"}
            accounts[acct_id] = Account(id=acct_id, **known)
        return accounts

    def _save(self, accounts: dict[str, Account]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"accounts": {}}
        for acct_id, acct in accounts.items():
            acct_data = {
                "email": acct.email,
                "password": acct.password,
                "port": acct.port,
                "tls": acct.tls,
                "status": acct.status,
            }
            if acct.host:
                acct_data["host"] = acct.host
            if acct.username:
                acct_data["username"] = acct.username
            if acct.created_at:
                acct_data["created_at"] = acct.created_at
            if acct.last_sync:
                acct_data["last_sync"] = acct.last_sync
            data["accounts"][acct_id] = acct_data
        with open(self.path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def list(self) -> list[Account]:
        with self._lock:
            return list(self._load().values())

    def get(self, account_id: str) -> Account | None:
        with self._lock:
            return self._load().get(account_id)

    def find_by_email(self, email: str) -> Account | None:
        for acct in self.list():
            if acct.email.lower() == email.lower():
                return acct
        return None

    def resolve(self, ref: str) -> Account | None:
        """Look up by id, falling back to email address."""
        return self.get(ref) or self.find_by_email(ref)

    def add(
        self,
        email: str,
        password: str,
        host: str | None = None,
        port: int = DEFAULT_PORT,
        username: str | None = None,
        tls: bool = True,
    ) -> Account:
        account = Account(
            id=str(uuid.uuid4()),
            email=email,
            password=password,
            host=host or None,
            port=port,
            username=username or None,
            tls=tls,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            accounts = self._load()
            accounts[account.id] = account
            self._save(accounts)
        return account

    def update(self, account_id: str, **changes) -> Account:
        """Apply field changes. `id` and `created_at` cannot be changed."""
        with self._lock:
            accounts = self._load()
            if account_id not in accounts:
                raise NotFoundError(f"Account {account_id} not found")
            account = accounts[account_id]
            for key, value in changes.items():
                if key in ("id", "created_at") or key not in _FIELDS:
                    continue
                setattr(account, key, value)
            self._save(accounts)
            return account

    def remove(self, account_id: str) -> Account:
        with self._lock:
            accounts = self._load()
            if account_id not in accounts:
                raise NotFoundError(f"Account {account_id} not found")
            account = accounts.pop(account_id)
            self._save(accounts)
            return account
