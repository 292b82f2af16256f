"""Tests for the HTTP API."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from mailmirror.accounts import AccountRegistry
from mailmirror.export import ExportCoordinator
from mailmirror.store import MailboxStore
from mailmirror.sync import SyncCoordinator
from mailmirror.web import create_app

from conftest import FakeSession, ImmediateExecutor, make_message, session_factory, unreachable


def build_client(config, sync_session=None, export_session=None, executor=None) -> TestClient:
    accounts = AccountRegistry(config.accounts_path)
    store = MailboxStore(config.data_path)

    def factory(session):
        if session is None:
            return unreachable
        return session if callable(session) else session_factory(session)

    sync = SyncCoordinator(
        accounts, store,
        executor=executor or ImmediateExecutor(),
        session_factory=factory(sync_session),
        discover=pytest.fail,
        config=config,
    )
    exports = ExportCoordinator(
        accounts, store,
        executor=executor or ImmediateExecutor(),
        session_factory=factory(export_session),
        discover=pytest.fail,
        config=config,
    )
    return TestClient(create_app(config, sync=sync, exports=exports))


@pytest.fixture
def client(config):
    return build_client(config)


def add_account(client, email="a@x.com", **extra) -> dict:
    body = {"email": email, "password": "secret", "host": "imap.x.com", **extra}
    resp = client.post("/api/accounts", json=body)
    assert resp.status_code == 201
    return resp.json()


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


class TestAccounts:
    def test_crud(self, client):
        created = add_account(client, username="alice", port="143")
        assert "password" not in created
        assert created["port"] == 143
        assert created["username"] == "alice"

        listed = client.get("/api/accounts").json()
        assert [a["email"] for a in listed] == ["a@x.com"]
        assert all("password" not in a for a in listed)

        fetched = client.get(f"/api/accounts/{created['id']}").json()
        assert fetched["id"] == created["id"]

        updated = client.put(
            f"/api/accounts/{created['id']}",
            json={"host": "mail.x.com", "id": "hijack", "createdAt": "never"},
        ).json()
        assert updated["host"] == "mail.x.com"
        assert updated["id"] == created["id"]
        assert updated["createdAt"] == created["createdAt"]

        deleted = client.delete(f"/api/accounts/{created['id']}")
        assert deleted.json()["message"] == "Account deleted"
        assert client.get(f"/api/accounts/{created['id']}").status_code == 404

    def test_missing_fields(self, client):
        resp = client.post("/api/accounts", json={"email": "a@x.com"})
        assert resp.status_code == 400
        assert "password" in resp.json()["error"]

    def test_tls_must_be_boolean(self, client):
        resp = client.post("/api/accounts", json={"email": "a@x.com", "password": "p", "tls": "false"})
        assert resp.status_code == 400
        assert "tls" in resp.json()["error"]
        assert client.get("/api/accounts").json() == []

        created = add_account(client, tls=False)
        assert created["tls"] is False
        resp = client.put(f"/api/accounts/{created['id']}", json={"tls": "true"})
        assert resp.status_code == 400
        assert client.get(f"/api/accounts/{created['id']}").json()["tls"] is False

    def test_bad_body(self, client):
        resp = client.post("/api/accounts", content=b"not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_unknown(self, client):
        assert client.get("/api/accounts/nope").status_code == 404
        assert client.put("/api/accounts/nope", json={"host": "h"}).status_code == 404
        assert client.delete("/api/accounts/nope").status_code == 404


class TestSync:
    def test_trigger_and_poll(self, config):
        session = FakeSession(folders={"INBOX": [make_message(1), make_message(2)]})
        client = build_client(config, sync_session=session)
        acct = add_account(client)

        assert client.get(f"/api/sync/{acct['id']}/status").json() == {"status": "idle"}
        resp = client.post(f"/api/sync/{acct['id']}")
        assert resp.status_code == 202
        assert resp.json() == {"message": "Sync started", "accountId": acct["id"], "email": "a@x.com"}

        status = client.get(f"/api/sync/{acct['id']}/status").json()
        assert status["status"] == "completed"
        assert status["result"]["totalMessages"] == 2
        assert client.get(f"/api/accounts/{acct['id']}").json()["lastSync"] is not None

    def test_unreachable_fails(self, client):
        acct = add_account(client)
        client.post(f"/api/sync/{acct['id']}")
        status = client.get(f"/api/sync/{acct['id']}/status").json()
        assert status["status"] == "failed"
        assert "refused" in status["error"]

    def test_unknown_account(self, client):
        resp = client.post("/api/sync/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Account not found"}

    def test_conflict(self, config):
        release = threading.Event()

        def slow(session_config):
            release.wait(5)
            return FakeSession(folders={})

        executor = ThreadPoolExecutor(max_workers=2)
        client = build_client(config, sync_session=slow, executor=executor)
        acct = add_account(client)
        assert client.post(f"/api/sync/{acct['id']}").status_code == 202
        resp = client.post(f"/api/sync/{acct['id']}")
        assert resp.status_code == 409
        assert client.get(f"/api/sync/{acct['id']}/status").json()["status"] == "running"
        release.set()
        executor.shutdown(wait=True)
        assert client.get(f"/api/sync/{acct['id']}/status").json()["status"] == "completed"


class TestExport:
    def test_trigger_and_poll(self, config):
        session = FakeSession()
        client = build_client(config, export_session=session)
        src = add_account(client, "a@x.com")
        tgt = add_account(client, "b@y.com")
        store = MailboxStore(config.data_path)
        store.write_messages("a@x.com", "INBOX", [make_message(1), make_message(2), make_message(3)])
        store.write_messages("a@x.com", "Drafts", [])

        resp = client.post("/api/sync/export", json={"sourceAccountId": src["id"], "targetAccountId": tgt["id"]})
        assert resp.status_code == 202
        body = resp.json()
        export_id = f"{src['id']}->{tgt['id']}"
        assert body == {
            "message": "Export started",
            "exportId": export_id,
            "sourceEmail": "a@x.com",
            "targetEmail": "b@y.com",
        }

        status = client.get(f"/api/sync/export/{export_id}/status").json()
        assert status["status"] == "completed"
        result = status["result"]
        assert result["totalExported"] == 3
        assert {r["mailbox"]: r["status"] for r in result["results"]} == {"INBOX": "success", "Drafts": "skipped"}

    def test_selected_mailboxes(self, config):
        session = FakeSession()
        client = build_client(config, export_session=session)
        src = add_account(client, "a@x.com")
        tgt = add_account(client, "b@y.com")
        store = MailboxStore(config.data_path)
        store.write_messages("a@x.com", "INBOX", [make_message(1)])
        store.write_messages("a@x.com", "Sent", [make_message(2)])

        client.post("/api/sync/export", json={
            "sourceAccountId": src["id"],
            "targetAccountId": tgt["id"],
            "mailboxes": ["Sent"],
        })
        assert list(session.appended) == ["Sent"]

    def test_missing_fields(self, client):
        resp = client.post("/api/sync/export", json={"sourceAccountId": "x"})
        assert resp.status_code == 400

    def test_bad_mailboxes(self, client):
        resp = client.post("/api/sync/export", json={
            "sourceAccountId": "x", "targetAccountId": "y", "mailboxes": "INBOX",
        })
        assert resp.status_code == 400

    def test_unknown_accounts(self, client):
        src = add_account(client)
        resp = client.post("/api/sync/export", json={"sourceAccountId": src["id"], "targetAccountId": "nope"})
        assert resp.status_code == 404

    def test_idle_status(self, client):
        assert client.get("/api/sync/export/a->b/status").json() == {"status": "idle"}

    def test_conflict(self, config):
        release = threading.Event()

        def slow(session_config):
            release.wait(5)
            return FakeSession()

        executor = ThreadPoolExecutor(max_workers=2)
        client = build_client(config, export_session=slow, executor=executor)
        src = add_account(client, "a@x.com")
        tgt = add_account(client, "b@y.com")
        MailboxStore(config.data_path).write_messages("a@x.com", "INBOX", [make_message(1)])
        body = {"sourceAccountId": src["id"], "targetAccountId": tgt["id"]}
        assert client.post("/api/sync/export", json=body).status_code == 202
        assert client.post("/api/sync/export", json=body).status_code == 409
        release.set()
        executor.shutdown(wait=True)


class TestMailboxes:
    def test_browse(self, config, client):
        store = MailboxStore(config.data_path)
        store.write_messages("a@x.com", "INBOX", [make_message(1), make_message(2)])
        store.write_messages("a@x.com", "Work/Projects", [make_message(7)])

        assert client.get("/api/mailboxes/a@x.com").json() == {"mailboxes": ["INBOX", "Work/Projects"]}

        summary = client.get("/api/mailboxes/a@x.com/INBOX/summary").json()
        assert summary["message_count"] == 2
        assert [m["uid"] for m in summary["messages"]] == [1, 2]

        nested = client.get("/api/mailboxes/a@x.com/Work/Projects/summary").json()
        assert nested["folder"] == "Work/Projects"

        message = client.get("/api/mailboxes/a@x.com/INBOX/messages/2").json()
        assert message["subject"] == "Message 2"
        assert message["from"] == "Alice <alice@x.com>"

    def test_not_found(self, client):
        assert client.get("/api/mailboxes/none@x.com").status_code == 404
        assert client.get("/api/mailboxes/none@x.com/INBOX/summary").status_code == 404
        assert client.get("/api/mailboxes/none@x.com/INBOX/messages/1").status_code == 404
