"""
API endpoint tests for the Client Verification Portal

Uses httpx.AsyncClient against the ASGI app with the database, config,
mail dispatcher and progress broker swapped for test instances through
FastAPI dependency overrides. The progress WebSocket is exercised with
Starlette's TestClient.
"""

import csv
import io
import pytest
from datetime import timedelta

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from httpx import AsyncClient, ASGITransport
from fastapi.testclient import TestClient

import api.server as server
from auth import SCOPE_ADMIN, create_access_token, totp_now
from create_admin import create_admin
from database.models import RecordStatus, utc_now
from database.repositories import ContactRecordRepository
from errors import GENERIC_TOKEN_MESSAGE
from progress import ProgressBroker
from tokens import TokenIssuer

pytest_plugins = ['pytest_asyncio']

HEADER = ["Client Number", "First Name", "Last Name", "Phone Number",
          "Alt Number", "Address", "Email", "Group and Template"]

ROWS = [
    ["C-1", "Ada", "Lovelace", "555-0101", "", "1 First St", "ada@example.com", "Group A"],
    ["C-2", "Grace", "Hopper", "555-0102", "555-0202", "2 Second St", "grace@example.com", ""],
    ["C-3", "Alan", "Turing", "555-0103", "", "3 Third St", "alan@example.com", "Group B"],
]


def csv_upload(rows=ROWS, name="clients.csv"):
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(HEADER)
    writer.writerows(rows)
    return {"file": (name, buffer.getvalue().encode("utf-8"), "text/csv")}


@pytest.fixture
def broker():
    return ProgressBroker()


@pytest.fixture
def app(session, provider, config, dispatcher, broker, monkeypatch):
    monkeypatch.setattr(server, "MAX_UPLOAD_SIZE_MB", "")

    def _get_db():
        yield session

    server.app.dependency_overrides.update({
        server.get_db: _get_db,
        server.get_provider: lambda: provider,
        server.get_config_instance: lambda: config,
        server.get_dispatcher: lambda: dispatcher,
        server.get_broker: lambda: broker,
    })
    yield server.app
    server.app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin(session):
    account, _ = create_admin(session, "admin@example.com", "correct-horse")
    session.commit()
    return account


@pytest.fixture
def admin_headers(admin, config):
    token = create_access_token(admin.id, SCOPE_ADMIN, config.auth)
    return {"Authorization": f"Bearer {token}"}


# ============================================
# AUTH
# ============================================

class TestAuthEndpoints:

    @pytest.mark.asyncio
    async def test_login_and_me(self, client, admin):
        response = await client.post(
            "/api/auth/login",
            json={"email": "admin@example.com", "password": "correct-horse"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["requires2FA"] is False
        assert data["admin"]["twoFactorEnabled"] is False

        me = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"}
        )
        assert me.status_code == 200
        assert me.json()["email"] == "admin@example.com"

    @pytest.mark.asyncio
    async def test_bad_password(self, client, admin):
        response = await client.post(
            "/api/auth/login",
            json={"email": "admin@example.com", "password": "battery-staple"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_admin_routes_need_a_session(self, client):
        for path in ("/api/auth/me", "/api/admin/users", "/api/admin/stats", "/api/admin/export"):
            response = await client.get(path)
            assert response.status_code == 401, path
            assert response.json()["error"]["code"] == "NOT_AUTHENTICATED"

    @pytest.mark.asyncio
    async def test_two_factor_flow(self, client, session):
        _, secret = create_admin(session, "second@example.com", "correct-horse", enable_2fa=True)
        session.commit()

        login = await client.post(
            "/api/auth/login",
            json={"email": "second@example.com", "password": "correct-horse"}
        )
        assert login.status_code == 200
        assert login.json()["requires2FA"] is True
        pending = {"Authorization": f"Bearer {login.json()['token']}"}

        blocked = await client.get("/api/auth/me", headers=pending)
        assert blocked.status_code == 401
        assert blocked.json()["error"]["code"] == "INVALID_SCOPE"

        verified = await client.post(
            "/api/auth/verify-2fa", json={"code": totp_now(secret)}, headers=pending
        )
        assert verified.status_code == 200
        full = {"Authorization": f"Bearer {verified.json()['token']}"}
        me = await client.get("/api/auth/me", headers=full)
        assert me.json()["twoFactorEnabled"] is True


# ============================================
# ROSTER
# ============================================

class TestRosterEndpoints:

    @pytest.mark.asyncio
    async def test_search(self, client, admin_headers, make_record):
        make_record()
        make_record(client_number="C-2", first_name="Grace", last_name="Hopper", email="grace@example.com")

        response = await client.get("/api/admin/users", params={"search": "grace"}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        user = data["users"][0]
        assert user["first_name"] == "Grace"
        assert user["hasChanges"] is False
        assert "verification_token" not in user

    @pytest.mark.asyncio
    async def test_pagination(self, client, admin_headers, make_record):
        for i in range(5):
            make_record(client_number=f"C-{i}", email=f"c{i}@example.com")

        response = await client.get("/api/admin/users", params={"page": 2, "limit": 2}, headers=admin_headers)

        data = response.json()
        assert data["total"] == 5
        assert data["page"] == 2
        assert len(data["users"]) == 2

    @pytest.mark.asyncio
    async def test_limit_out_of_range(self, client, admin_headers):
        response = await client.get("/api/admin/users", params={"limit": 1000}, headers=admin_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_edit(self, client, admin_headers, make_record):
        record = make_record()

        response = await client.put(
            f"/api/admin/users/{record.id}",
            json={"phone_number": "555-9999"},
            headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["phone_number"] == "555-9999"
        assert data["first_name"] == "Ada"
        assert data["status"] == "pending"

    @pytest.mark.asyncio
    async def test_edit_rejects_bad_email(self, client, admin_headers, make_record):
        record = make_record()
        response = await client.put(
            f"/api/admin/users/{record.id}", json={"email": "nope"}, headers=admin_headers
        )
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "email"

    @pytest.mark.asyncio
    async def test_edit_missing_record(self, client, admin_headers):
        response = await client.put("/api/admin/users/999", json={}, headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_stats(self, client, admin_headers, make_record):
        make_record()
        response = await client.get("/api/admin/stats", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {
            "totalUsers": 1,
            "confirmed": 0,
            "updated": 0,
            "pending": 1,
            "confirmationRate": 0.0,
            "todayUpdates": 0,
            "recentUpdateCount": 0,
        }

    @pytest.mark.asyncio
    async def test_export_csv(self, client, admin_headers, make_record):
        make_record()
        response = await client.get("/api/admin/export", params={"format": "csv"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="client_records_')
        assert disposition.endswith('.csv"')
        lines = response.content.decode("utf-8-sig").splitlines()
        assert lines[0].startswith("ID,Client Number,First Name")
        assert len(lines) == 2

    @pytest.mark.asyncio
    async def test_export_bad_format(self, client, admin_headers):
        response = await client.get("/api/admin/export", params={"format": "pdf"}, headers=admin_headers)
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "format"


# ============================================
# IMPORT / RESEND
# ============================================

class TestImportEndpoints:

    @pytest.mark.asyncio
    async def test_import_csv(self, client, admin_headers, session, transport):
        response = await client.post("/api/admin/import", files=csv_upload(), headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["filename"] == "clients.csv"
        assert data["total_rows"] == 3
        assert data["successful"] == 3
        assert data["created"] == 3
        assert data["failures"] == []
        assert data["bulkUpdate"]["updatedCount"] == 3
        assert data["bulkUpdate"]["emailsSent"] == 3
        assert data["processing_time_ms"] >= 0
        assert sorted(transport.recipients) == ["ada@example.com", "alan@example.com", "grace@example.com"]

        session.expire_all()
        assert ContactRecordRepository(session).count() == 3

    @pytest.mark.asyncio
    async def test_import_reports_row_failures(self, client, admin_headers):
        rows = ROWS + [["C-4", "Bad", "Row", "555-0104", "", "4 Fourth St", "not-an-email", ""]]
        response = await client.post("/api/admin/import", files=csv_upload(rows), headers=admin_headers)

        data = response.json()
        assert data["successful"] == 3
        assert data["failures"][0]["row"] == 5
        assert data["failures"][0]["field"] == "email"

    @pytest.mark.asyncio
    async def test_unsupported_extension(self, client, admin_headers):
        response = await client.post(
            "/api/admin/import",
            files={"file": ("clients.txt", b"anything", "text/plain")},
            headers=admin_headers
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_FILE"

    @pytest.mark.asyncio
    async def test_upload_too_large(self, client, admin_headers, config):
        config.importing.max_upload_size_mb = 1
        response = await client.post(
            "/api/admin/import",
            files={"file": ("big.csv", b"x" * (1024 * 1024 + 1), "text/csv")},
            headers=admin_headers
        )
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "FILE_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_resend(self, client, admin_headers, session, transport, make_record):
        record = make_record()

        response = await client.post(f"/api/admin/resend-email/{record.id}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert transport.recipients == ["ada@example.com"]
        session.refresh(record)
        assert record.verification_token is not None

    @pytest.mark.asyncio
    async def test_resend_missing_record(self, client, admin_headers):
        response = await client.post("/api/admin/resend-email/999", headers=admin_headers)
        assert response.status_code == 404


class TestProgressSocket:

    def test_socket_relays_import_progress(self, app, admin_headers, transport):
        client = TestClient(app)
        with client.websocket_connect("/api/ws/progress/chan-1") as ws:
            response = client.post(
                "/api/admin/import",
                files=csv_upload(),
                data={"channel_id": "chan-1"},
                headers=admin_headers
            )
            assert response.status_code == 200
            events = [ws.receive_json() for _ in range(3)]

        assert [e["progress"] for e in events] == [33.33, 66.67, 100.0]

    def test_socket_closes_on_unreadable_file(self, app, admin_headers):
        client = TestClient(app)
        with client.websocket_connect("/api/ws/progress/chan-2") as ws:
            response = client.post(
                "/api/admin/import",
                files={"file": ("clients.xlsx", b"not a workbook", "application/octet-stream")},
                data={"channel_id": "chan-2"},
                headers=admin_headers
            )
            assert response.status_code == 422
            event = ws.receive_json()

        assert event["progress"] == 100.0
        assert "XLSX" in event["error"]

    def test_socket_closes_on_rejected_upload(self, app, admin_headers):
        client = TestClient(app)
        with client.websocket_connect("/api/ws/progress/chan-3") as ws:
            response = client.post(
                "/api/admin/import",
                files={"file": ("clients.txt", b"anything", "text/plain")},
                data={"channel_id": "chan-3"},
                headers=admin_headers
            )
            assert response.status_code == 422
            event = ws.receive_json()

        assert event == {"progress": 100.0, "error": "Unsupported file type: .txt"}


# ============================================
# PUBLIC VERIFICATION
# ============================================

class TestVerifyEndpoints:

    @pytest.mark.asyncio
    async def test_fetch(self, client, session, make_record):
        record = make_record(group_template="Group A")
        token = TokenIssuer(session).issue(record)
        session.commit()

        response = await client.get(f"/api/verify/{token}")

        assert response.status_code == 200
        data = response.json()
        assert data["hasChanges"] is False
        assert data["user"]["client_number"] == "C-1001"
        assert data["user"]["group_template"] == "Group A"
        assert "verification_token" not in data["user"]
        assert "token_expiry" not in data["user"]

    @pytest.mark.asyncio
    async def test_expired_token_leaks_nothing(self, client, session, make_record):
        record = make_record()
        token = TokenIssuer(session, validity_hours=1).issue(record, now=utc_now() - timedelta(hours=2))
        session.commit()

        response = await client.get(f"/api/verify/{token}")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["message"] == GENERIC_TOKEN_MESSAGE
        assert "Ada" not in response.text
        assert "C-1001" not in response.text

    @pytest.mark.asyncio
    async def test_unknown_and_expired_look_the_same(self, client, session, make_record):
        record = make_record()
        token = TokenIssuer(session, validity_hours=1).issue(record, now=utc_now() - timedelta(hours=2))
        session.commit()

        expired = (await client.get(f"/api/verify/{token}")).json()["error"]
        unknown = (await client.get("/api/verify/does-not-exist")).json()["error"]
        assert expired["code"] == unknown["code"]
        assert expired["message"] == unknown["message"]

    @pytest.mark.asyncio
    async def test_confirm_is_single_use(self, client, session, make_record):
        record = make_record()
        token = TokenIssuer(session).issue(record)
        session.commit()

        first = await client.post(f"/api/verify/{token}", json={"action": "confirm"})
        assert first.status_code == 200
        assert first.json()["message"] == "Thank you for confirming your details."
        assert first.json()["user"]["status"] == "confirmed"

        second = await client.post(f"/api/verify/{token}", json={"action": "confirm"})
        assert second.status_code == 404
        assert second.json()["error"]["message"] == GENERIC_TOKEN_MESSAGE

    @pytest.mark.asyncio
    async def test_update(self, client, session, make_record):
        record = make_record()
        token = TokenIssuer(session).issue(record)
        session.commit()

        response = await client.post(
            f"/api/verify/{token}",
            json={"action": "update", "phone_number": "555-7777"}
        )

        assert response.status_code == 200
        assert response.json()["user"]["phone_number"] == "555-7777"
        session.refresh(record)
        assert record.status == RecordStatus.UPDATED
        assert record.has_changes is True
        assert record.verification_token is None

    @pytest.mark.asyncio
    async def test_unknown_action(self, client, session, make_record):
        record = make_record()
        token = TokenIssuer(session).issue(record)
        session.commit()

        response = await client.post(f"/api/verify/{token}", json={"action": "delete"})

        assert response.status_code == 422
        assert response.json()["error"]["field"] == "action"


# ============================================
# HEALTH
# ============================================

class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client, make_record):
        make_record()
        response = await client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["records"] == 1
        assert data["memory_usage_mb"] > 0


class TestErrorFormat:

    @pytest.mark.asyncio
    async def test_request_validation_uses_error_envelope(self, client):
        response = await client.post("/api/auth/login", json={"email": "admin@example.com"})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "password"
        assert "timestamp" in error

    @pytest.mark.asyncio
    async def test_unknown_route(self, client):
        response = await client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "HTTP_404"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        response = await client.get("/api/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert int(response.headers["X-Processing-Time-MS"]) >= 0

    @pytest.mark.asyncio
    async def test_optional_keys_are_omitted(self, client):
        response = await client.get("/api/verify/unknown-token")
        error = response.json()["error"]
        assert "suggestion" not in error
