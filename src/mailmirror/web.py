"""HTTP API for account management, background sync/export and browsing stored mail.

Run with: mailmirror serve
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import uvicorn

from .accounts import AccountRegistry
from .config import MirrorConfig, load_config
from .errors import ConflictError, NotFoundError
from .export import ExportCoordinator
from .store import MailboxStore
from .sync import SyncCoordinator

# Request body keys accepted by PUT /api/accounts/{id}, mapped to Account fields
_UPDATABLE = {
    "email": "email",
    "host": "host",
    "port": "port",
    "username": "username",
    "password": "password",
    "tls": "tls",
    "status": "status",
}


def error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def read_body(request: Request) -> dict | None:
    """Parse a JSON object body; None if it is missing or malformed."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def create_app(
    config: MirrorConfig | None = None,
    sync: SyncCoordinator | None = None,
    exports: ExportCoordinator | None = None,
) -> FastAPI:
    config = config or load_config()
    accounts = AccountRegistry(config.accounts_path)
    store = MailboxStore(config.data_path)
    sync = sync or SyncCoordinator(accounts, store, config=config)
    exports = exports or ExportCoordinator(accounts, store, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        sync.shutdown(wait=False)
        exports.shutdown(wait=False)

    app = FastAPI(title="mailmirror", lifespan=lifespan)
    app.state.config = config
    app.state.accounts = accounts
    app.state.store = store
    app.state.sync = sync
    app.state.exports = exports

    @app.get("/api/health")
    def api_health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    # --- Accounts ---

    @app.get("/api/accounts")
    def api_accounts():
        return [a.to_dict(include_password=False) for a in accounts.list()]

    @app.get("/api/accounts/{account_id}")
    def api_account(account_id: str):
        account = accounts.get(account_id)
        if not account:
            return error("Account not found", 404)
        return account.to_dict(include_password=False)

    @app.post("/api/accounts")
    async def api_add_account(request: Request):
        body = await read_body(request)
        if body is None:
            return error("Request body must be a JSON object", 400)
        if not body.get("email") or not body.get("password"):
            return error("Missing required fields: email, password", 400)
        try:
            port = int(body.get("port") or config.port)
        except (TypeError, ValueError):
            return error(f"Invalid port: {body.get('port')!r}", 400)
        tls = body.get("tls", True)
        if not isinstance(tls, bool):
            return error(f"Invalid tls: {tls!r}", 400)
        account = accounts.add(
            email=body["email"],
            password=body["password"],
            host=body.get("host"),
            port=port,
            username=body.get("username"),
            tls=tls,
        )
        return JSONResponse(account.to_dict(include_password=False), status_code=201)

    @app.put("/api/accounts/{account_id}")
    async def api_update_account(account_id: str, request: Request):
        body = await read_body(request)
        if body is None:
            return error("Request body must be a JSON object", 400)
        changes = {_UPDATABLE[k]: v for k, v in body.items() if k in _UPDATABLE}
        if "port" in changes:
            try:
                changes["port"] = int(changes["port"])
            except (TypeError, ValueError):
                return error(f"Invalid port: {changes['port']!r}", 400)
        if "tls" in changes and not isinstance(changes["tls"], bool):
            return error(f"Invalid tls: {changes['tls']!r}", 400)
        try:
            account = accounts.update(account_id, **changes)
        except NotFoundError:
            return error("Account not found", 404)
        return account.to_dict(include_password=False)

    @app.delete("/api/accounts/{account_id}")
    def api_delete_account(account_id: str):
        try:
            account = accounts.remove(account_id)
        except NotFoundError:
            return error("Account not found", 404)
        return {"message": "Account deleted", "account": account.to_dict(include_password=False)}

    # --- Sync / export ---
    # Export routes come first so "export" is never taken for an account id.

    @app.post("/api/sync/export")
    async def api_start_export(request: Request):
        body = await read_body(request) or {}
        source_id = body.get("sourceAccountId")
        target_id = body.get("targetAccountId")
        if not source_id or not target_id:
            return error("Missing required fields: sourceAccountId, targetAccountId", 400)
        mailboxes = body.get("mailboxes")
        if mailboxes is not None and not isinstance(mailboxes, list):
            return error("mailboxes must be a list of folder names", 400)
        try:
            handle = exports.start(source_id, target_id, mailboxes)
        except NotFoundError:
            return error("Source or target account not found", 404)
        except ConflictError:
            return error("Export already in progress for these accounts", 409)
        return JSONResponse({
            "message": "Export started",
            "exportId": handle.export_id,
            "sourceEmail": handle.source.email,
            "targetEmail": handle.target.email,
        }, status_code=202)

    @app.get("/api/sync/export/{export_id:path}/status")
    def api_export_status(export_id: str):
        return exports.status(export_id)

    @app.post("/api/sync/{account_id}")
    def api_start_sync(account_id: str):
        try:
            handle = sync.start(account_id)
        except NotFoundError:
            return error("Account not found", 404)
        except ConflictError:
            return error("Sync already in progress for this account", 409)
        return JSONResponse({
            "message": "Sync started",
            "accountId": account_id,
            "email": handle.account.email,
        }, status_code=202)

    @app.get("/api/sync/{account_id}/status")
    def api_sync_status(account_id: str):
        return sync.status(account_id)

    # --- Stored mail ---

    @app.get("/api/mailboxes/{email}")
    def api_mailboxes(email: str):
        if not store.has_account(email):
            return error("Account data not found", 404)
        return {"mailboxes": store.list_local_folders(email)}

    @app.get("/api/mailboxes/{email}/{folder:path}/summary")
    def api_summary(email: str, folder: str):
        try:
            return store.read_summary(email, folder).to_dict()
        except NotFoundError:
            return error("Summary not found", 404)

    @app.get("/api/mailboxes/{email}/{folder:path}/messages/{uid}")
    def api_message(email: str, folder: str, uid: int):
        try:
            return store.get_message(email, folder, uid).to_dict()
        except NotFoundError:
            return error("Message not found", 404)

    return app


def main(host: str = "127.0.0.1", port: int = 8765, config: MirrorConfig | None = None):
    """Run the web server."""
    app = create_app(config)
    print(f"Starting mailmirror API at http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="warning")
