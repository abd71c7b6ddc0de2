"""
Тесты для API
"""
import base64

import pytest
from fastapi.testclient import TestClient

from certrepo.api import CertificateAPI, error_status_code
from certrepo.models import UserStatus, UserType
from certrepo.exceptions import (
    BackupError, CertificateNotFoundError, InvalidStatusError, PasswordValidationError, ShareTokenError
)

TEST_PASSWORD = "Password123"


class TestErrorMapping:
    """Тесты соответствия исключений кодам ответа"""

    def test_codes(self):
        assert error_status_code(PasswordValidationError("weak")) == 400
        assert error_status_code(CertificateNotFoundError("missing")) == 404
        assert error_status_code(InvalidStatusError("bad")) == 409
        assert error_status_code(ShareTokenError("expired")) == 403
        assert error_status_code(BackupError("broken")) == 500


class TestCertificateAPI:
    """Тесты для API сертификатов"""

    @pytest.fixture
    def api(self, db_manager, file_storage):
        """Фикстура для API"""
        return CertificateAPI(db_manager, file_storage)

    @pytest.fixture
    def client(self, api):
        """Тестовый клиент"""
        return TestClient(api.app)

    @pytest.fixture
    def login(self, client):
        """Заголовки авторизации для пользователя"""
        def factory(user):
            response = client.post("/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
            assert response.status_code == 200, response.text
            return {"Authorization": f"Bearer {response.json()['access_token']}"}
        return factory

    @pytest.fixture
    def issued(self, client, login, ca_user, recipient):
        """Сертификат, выпущенный через API"""
        headers = login(ca_user)
        response = client.post("/certificates", headers=headers, json={
            "title": "Diploma in Agriculture",
            "recipient_email": recipient.email,
            "recipient_name": recipient.display_name,
        })
        assert response.status_code == 201, response.text
        certificate_id = response.json()["id"]

        response = client.post(f"/certificates/{certificate_id}/issue", headers=headers)
        assert response.status_code == 200, response.text
        return response.json()

    def test_register_and_login(self, client):
        """Тест регистрации и входа"""
        response = client.post("/auth/register", json={
            "email": "new.student@upm.edu.my",
            "password": "Secret123",
            "display_name": "New Student",
        })
        assert response.status_code == 201
        assert "password_hash" not in response.json()

        response = client.post("/auth/login", json={"email": "new.student@upm.edu.my", "password": "Secret123"})
        assert response.status_code == 200
        token = response.json()["access_token"]

        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["email"] == "new.student@upm.edu.my"

    def test_register_invalid_domain(self, client):
        response = client.post("/auth/register", json={
            "email": "someone@gmail.com",
            "password": "Secret123",
            "display_name": "Someone",
        })
        assert response.status_code == 400

    def test_unauthenticated(self, client):
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401

    def test_wrong_password(self, client, recipient):
        response = client.post("/auth/login", json={"email": recipient.email, "password": "Nope12345"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"

    def test_public_verification(self, client, issued):
        """Проверка по коду доступна без авторизации"""
        response = client.get(f"/verify/{issued['verification_code']}")

        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is True
        assert data["certificate"]["id"] == issued["id"]
        assert data["method"] == "api"

    def test_verification_of_unknown_code(self, client):
        response = client.get("/verify/NOPE0000")
        assert response.status_code == 200
        assert response.json()["is_valid"] is False
        assert response.json()["reason"] == "Certificate not found"

    def test_create_with_utc_expiry(self, client, login, ca_user, recipient):
        """Срок действия в формате ISO-8601 с Z принимается"""
        headers = login(ca_user)
        response = client.post("/certificates", headers=headers, json={
            "title": "Workshop",
            "recipient_email": recipient.email,
            "expires_at": "2030-01-01T00:00:00Z",
        })
        assert response.status_code == 201, response.text
        assert response.json()["status_info"]["is_expired"] is False

        response = client.patch(f"/certificates/{response.json()['id']}", headers=headers,
                                json={"expires_at": "2020-01-01T00:00:00+08:00"})
        assert response.status_code == 200, response.text
        assert response.json()["status_info"]["is_expired"] is True

    def test_issue_twice(self, client, login, ca_user, issued):
        response = client.post(f"/certificates/{issued['id']}/issue", headers=login(ca_user))
        assert response.status_code == 409

    def test_revoke_without_reason(self, client, login, ca_user, issued):
        response = client.post(f"/certificates/{issued['id']}/revoke", headers=login(ca_user), json={"reason": ""})
        assert response.status_code == 400

        response = client.post(f"/certificates/{issued['id']}/revoke", headers=login(ca_user),
                               json={"reason": "Issued to wrong student"})
        assert response.status_code == 200
        assert response.json()["status"] == "revoked"

    def test_plain_user_cannot_create(self, client, login, recipient):
        response = client.post("/certificates", headers=login(recipient), json={
            "title": "Fake", "recipient_email": recipient.email
        })
        assert response.status_code == 403

    def test_recipient_lists_own_certificates(self, client, login, recipient, issued):
        response = client.get("/certificates", headers=login(recipient))
        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == [issued["id"]]

    def test_history_requires_access(self, client, login, make_user, recipient, issued):
        outsider = make_user()
        path = f"/certificates/{issued['id']}/history"

        assert client.get(path, headers=login(outsider)).status_code == 403
        response = client.get(path, headers=login(recipient))
        assert response.status_code == 200
        assert "issued" in [t["action"] for t in response.json()]

    def test_unknown_certificate(self, client, login, admin):
        assert client.get("/certificates/missing", headers=login(admin)).status_code == 404

    def test_share_link_hides_password(self, client, login, recipient, issued):
        headers = login(recipient)
        response = client.post(f"/certificates/{issued['id']}/share", headers=headers, json={"password": "pin1234"})
        assert response.status_code == 201
        token = response.json()["token"]
        assert response.json()["password"] is None

        certificate = client.get(f"/certificates/{issued['id']}", headers=headers).json()
        assert "password" not in certificate["share_tokens"][0]

        assert client.post(f"/share/{token}", json={"password": "wrong"}).status_code == 403
        response = client.post(f"/share/{token}", json={"password": "pin1234"})
        assert response.status_code == 200
        assert response.json()["is_valid"] is True

    def test_public_verification_hides_share_links(self, client, login, recipient, issued):
        client.post(f"/certificates/{issued['id']}/share", headers=login(recipient), json={})

        certificate = client.get(f"/verify/{issued['verification_code']}").json()["certificate"]
        assert "share_tokens" not in certificate

        owned = client.get(f"/certificates/{issued['id']}", headers=login(recipient)).json()
        assert len(owned["share_tokens"]) == 1

    def test_document_upload(self, client, login, recipient):
        headers = login(recipient)
        response = client.post("/documents", headers=headers, json={
            "file_name": "transcript.pdf",
            "content_base64": base64.b64encode(b"%PDF-1.4").decode("ascii"),
            "metadata": {"name": "Transcript", "type": "transcript"},
        })
        assert response.status_code == 201, response.text
        document_id = response.json()["id"]

        response = client.get(f"/documents/{document_id}", headers=headers)
        assert base64.b64decode(response.json()["content_base64"]) == b"%PDF-1.4"

    def test_document_upload_bad_base64(self, client, login, recipient):
        response = client.post("/documents", headers=login(recipient), json={
            "file_name": "transcript.pdf",
            "content_base64": "***",
            "metadata": {"name": "Transcript"},
        })
        assert response.status_code == 400

    def test_notifications(self, client, login, recipient, ca_user, issued):
        headers = login(recipient)
        response = client.get("/notifications", headers=headers, params={"unread_only": True})
        assert response.status_code == 200
        notifications = response.json()
        assert "certificate_issued" in [n["type"] for n in notifications]

        notification_id = notifications[0]["id"]
        assert client.post(f"/notifications/{notification_id}/read", headers=login(ca_user)).status_code == 404
        assert client.post(f"/notifications/{notification_id}/read", headers=headers).status_code == 204

        unread = client.get("/notifications", headers=headers, params={"unread_only": True}).json()
        assert notification_id not in [n["id"] for n in unread]

    def test_client_request_flow(self, client, login, make_user, client_user, ca_user):
        """Запрос клиента: отправка, одобрение CA, подтверждение и выпуск"""
        headers = login(client_user)
        response = client.post("/requests", headers=headers, json={
            "title": "Industrial Training Completion",
            "description": "Twelve week placement",
            "purpose": "Graduation requirement",
            "certificate_type": "completion",
        })
        assert response.status_code == 201, response.text
        request_id = response.json()["id"]
        assert response.json()["status"] == "draft"

        response = client.post(f"/requests/{request_id}/submit", headers=headers)
        assert response.status_code == 200, response.text
        assert response.json()["assigned_ca_id"] == ca_user.id

        ca_headers = login(ca_user)
        response = client.post(f"/requests/{request_id}/review", headers=ca_headers, json={"action": "bogus"})
        assert response.status_code == 400
        assert "Invalid action" in response.json()["detail"]

        response = client.post(f"/requests/{request_id}/review", headers=ca_headers, json={"action": "approve"})
        assert response.status_code == 200
        assert response.json()["status"] == "under_review"

        assert client.get(f"/requests/{request_id}", headers=login(make_user())).status_code == 403
        assert [r["id"] for r in client.get("/requests", headers=ca_headers).json()] == [request_id]

        response = client.post(f"/requests/{request_id}/confirm", headers=headers)
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "issued"

        certificate = client.get(f"/certificates/{response.json()['certificate_id']}", headers=headers).json()
        assert certificate["status"] == "issued"
        assert certificate["recipient_id"] == client_user.id

        response = client.post(f"/requests/{request_id}/cancel", headers=headers, json={"reason": "Too late"})
        assert response.status_code == 409

    def test_admin_routes_require_admin(self, client, login, ca_user):
        assert client.get("/admin/users", headers=login(ca_user)).status_code == 403

    def test_application_approval(self, client, login, admin, make_user):
        applicant = make_user(UserType.CA, status=UserStatus.PENDING)
        headers = login(admin)

        response = client.get("/admin/applications", headers=headers)
        assert [u["id"] for u in response.json()] == [applicant.id]

        response = client.post(f"/admin/applications/{applicant.id}/approve", headers=headers, json={})
        assert response.status_code == 200
        assert response.json()["status"] == "active"

        response = client.post(f"/admin/applications/{applicant.id}/approve", headers=headers, json={})
        assert response.status_code == 409

    def test_bulk_status_unknown_value(self, client, login, admin, recipient):
        response = client.post("/admin/users/bulk-status", headers=login(admin), json={
            "user_ids": [recipient.id], "status": "bogus"
        })
        assert response.status_code == 400
        assert "Unknown user status" in response.json()["detail"]

    def test_reports(self, client, login, admin, issued):
        response = client.get("/admin/reports/system-overview", headers=login(admin), params={"export_csv": True})
        assert response.status_code == 200
        assert response.json()["certificates"]["issuedCount"] == 1
        assert response.json()["csvPath"].startswith("reports/")

    def test_backup_and_restore(self, client, login, admin, issued):
        headers = login(admin)
        response = client.post("/admin/backups", headers=headers, json={"description": "manual"})
        assert response.status_code == 201
        backup_id = response.json()["id"]

        assert [b["id"] for b in client.get("/admin/backups", headers=headers).json()] == [backup_id]

        response = client.post(f"/admin/backups/{backup_id}/restore", headers=headers,
                               json={"create_backup_before_restore": False})
        assert response.status_code == 200
        assert response.json()["success"] is True

        assert client.get("/admin/backups/full_0/download", headers=headers).status_code == 404

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["components"]["database"]["status"] == "healthy"
