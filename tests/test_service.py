"""
Тесты сервиса сертификатов
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from certrepo.models import (
    ApprovalStep, CertificateFilter, CertificateRequest, CertificateStatus, CertificateType, CertificateUpdate,
    TemplateRequest, UserType
)
from certrepo.exceptions import (
    CertificateNotFoundError, InvalidStatusError, PermissionDeniedError, ShareTokenError, ValidationError
)


class TestCertificateCreation:
    """Тесты создания сертификатов"""

    def test_create_with_utc_expiry(self, certificate_service, ca_user, recipient):
        """Срок действия в UTC не мешает вычислению статуса"""
        expires_at = datetime.now(timezone.utc) + timedelta(days=10)
        request = CertificateRequest(title="Workshop", recipient_email=recipient.email, expires_at=expires_at)

        certificate = certificate_service.create_certificate(request, ca_user.id)

        assert certificate.expires_at.tzinfo is None
        assert certificate.expires_at == expires_at.astimezone().replace(tzinfo=None)
        assert not certificate.is_expired
        assert certificate.status_info["days_left"] in (9, 10)

    def test_create_draft(self, certificate_service, ca_user, certificate_request, recipient):
        """Тест создания черновика"""
        certificate = certificate_service.create_certificate(certificate_request, ca_user.id)

        assert certificate.status == CertificateStatus.DRAFT
        assert certificate.issuer_id == ca_user.id
        assert certificate.recipient_id == recipient.id
        assert len(certificate.verification_code) == 8
        assert certificate.metadata["createdBy"] == ca_user.id
        assert certificate.template_id is not None

        history = certificate_service.get_certificate_history(certificate.id)
        assert [t.action for t in history] == ["created"]

    def test_create_with_approval_is_pending(self, certificate_service, ca_user, recipient):
        """Сертификат с согласованием создается в статусе pending"""
        request = CertificateRequest(
            title="Dean's List",
            recipient_email=recipient.email,
            requires_approval=True,
            approval_steps=[ApprovalStep(step_name="Dean", order=1)],
        )
        certificate = certificate_service.create_certificate(request, ca_user.id)

        assert certificate.status == CertificateStatus.PENDING
        assert certificate.current_approval_step == certificate.approval_steps[0].id

    def test_plain_user_cannot_create(self, certificate_service, recipient, certificate_request):
        """Обычный пользователь не может создавать сертификаты"""
        with pytest.raises(PermissionDeniedError):
            certificate_service.create_certificate(certificate_request, recipient.id)

    def test_empty_title_rejected(self, certificate_service, ca_user, recipient):
        request = CertificateRequest(title="  ", recipient_email=recipient.email)
        with pytest.raises(ValidationError):
            certificate_service.create_certificate(request, ca_user.id)

    def test_verification_codes_are_unique(self, certificate_service, ca_user, certificate_request):
        codes = {
            certificate_service.create_certificate(certificate_request, ca_user.id).verification_code
            for _ in range(5)
        }
        assert len(codes) == 5


class TestCertificateLifecycle:
    """Тесты жизненного цикла"""

    @pytest.fixture
    def pending_certificate(self, certificate_service, ca_user, recipient, make_user):
        approver = make_user(UserType.CA, display_name="Dean")
        request = CertificateRequest(
            title="Research Award",
            recipient_email=recipient.email,
            requires_approval=True,
            approval_steps=[
                ApprovalStep(step_name="Head of Department", order=1),
                ApprovalStep(step_name="Dean", approver_id=approver.id, order=2),
            ],
        )
        return certificate_service.create_certificate(request, ca_user.id), approver

    def test_issue_draft(self, issued_certificate):
        """Тест выпуска черновика"""
        assert issued_certificate.status == CertificateStatus.ISSUED
        assert issued_certificate.issued_at is not None
        assert issued_certificate.is_active

    def test_issue_exports_file(self, issued_certificate, file_storage):
        """Выпущенный сертификат выгружается в хранилище"""
        files = file_storage.list_objects("certificates")
        assert any(issued_certificate.verification_code in path for path in files)

    def test_ca_cannot_issue_before_approval(self, certificate_service, ca_user, pending_certificate):
        certificate, _ = pending_certificate
        with pytest.raises(InvalidStatusError, match="requires approval"):
            certificate_service.issue_certificate(certificate.id, ca_user.id)

    def test_admin_can_issue_pending(self, certificate_service, admin, pending_certificate):
        certificate, _ = pending_certificate
        issued = certificate_service.issue_certificate(certificate.id, admin.id)
        assert issued.status == CertificateStatus.ISSUED

    def test_full_approval_chain(self, certificate_service, ca_user, pending_certificate):
        """Сертификат становится approved после всех шагов"""
        certificate, approver = pending_certificate
        first, second = certificate.approval_steps

        certificate = certificate_service.approve_certificate(certificate.id, ca_user.id, first.id)
        assert certificate.status == CertificateStatus.PENDING
        assert certificate.current_approval_step == second.id

        certificate = certificate_service.approve_certificate(certificate.id, approver.id, second.id, "ok")
        assert certificate.status == CertificateStatus.APPROVED
        assert certificate.current_approval_step is None

        issued = certificate_service.issue_certificate(certificate.id, ca_user.id)
        assert issued.status == CertificateStatus.ISSUED

    def test_step_assigned_to_another_approver(self, certificate_service, ca_user, pending_certificate):
        certificate, _ = pending_certificate
        second = certificate.approval_steps[1]
        with pytest.raises(PermissionDeniedError):
            certificate_service.approve_certificate(certificate.id, ca_user.id, second.id)

    def test_step_cannot_be_approved_twice(self, certificate_service, ca_user, pending_certificate):
        certificate, _ = pending_certificate
        first = certificate.approval_steps[0]
        certificate_service.approve_certificate(certificate.id, ca_user.id, first.id)
        with pytest.raises(InvalidStatusError):
            certificate_service.approve_certificate(certificate.id, ca_user.id, first.id)

    def test_reject_requires_reason(self, certificate_service, ca_user, pending_certificate):
        certificate, _ = pending_certificate
        with pytest.raises(ValidationError):
            certificate_service.reject_certificate(certificate.id, ca_user.id, certificate.approval_steps[0].id, "")

    def test_rejected_is_terminal(self, certificate_service, ca_user, admin, pending_certificate):
        certificate, _ = pending_certificate
        rejected = certificate_service.reject_certificate(
            certificate.id, ca_user.id, certificate.approval_steps[0].id, "Incomplete records"
        )
        assert rejected.status == CertificateStatus.REJECTED
        with pytest.raises(InvalidStatusError):
            certificate_service.issue_certificate(certificate.id, admin.id)

    def test_submit_draft(self, certificate_service, ca_user, certificate_request):
        certificate = certificate_service.create_certificate(certificate_request, ca_user.id)
        submitted = certificate_service.submit_certificate(certificate.id, ca_user.id)
        assert submitted.status == CertificateStatus.PENDING

    def test_revoke_requires_reason(self, certificate_service, ca_user, issued_certificate):
        """Отзыв без причины ничего не меняет"""
        with pytest.raises(ValidationError, match="reason"):
            certificate_service.revoke_certificate(issued_certificate.id, ca_user.id, "   ")

        current = certificate_service.get_certificate(issued_certificate.id)
        assert current.status == CertificateStatus.ISSUED
        assert not current.is_revoked

    def test_revoke_is_irreversible(self, certificate_service, ca_user, admin, issued_certificate):
        revoked = certificate_service.revoke_certificate(issued_certificate.id, ca_user.id, "Issued in error")
        assert revoked.status == CertificateStatus.REVOKED
        assert revoked.revocation_reason == "Issued in error"

        with pytest.raises(InvalidStatusError):
            certificate_service.issue_certificate(revoked.id, admin.id)
        with pytest.raises(InvalidStatusError):
            certificate_service.revoke_certificate(revoked.id, admin.id, "again")

    def test_other_ca_cannot_revoke(self, certificate_service, make_user, issued_certificate):
        other_ca = make_user(UserType.CA)
        with pytest.raises(PermissionDeniedError):
            certificate_service.revoke_certificate(issued_certificate.id, other_ca.id, "not mine")

    def test_history_records_every_change(self, certificate_service, ca_user, issued_certificate):
        certificate_service.revoke_certificate(issued_certificate.id, ca_user.id, "Duplicate")
        actions = [t.action for t in certificate_service.get_certificate_history(issued_certificate.id)]
        assert sorted(actions) == ["created", "issued", "revoked"]


class TestCertificateEditing:
    """Тесты изменения и удаления"""

    def test_update_draft(self, certificate_service, ca_user, certificate_request):
        certificate = certificate_service.create_certificate(certificate_request, ca_user.id)
        updated = certificate_service.update_certificate(
            certificate.id, ca_user.id, CertificateUpdate(title="Master of Science", metadata={"gpa": "3.9"})
        )
        assert updated.title == "Master of Science"
        assert updated.metadata["gpa"] == "3.9"
        assert updated.metadata["createdBy"] == ca_user.id

    def test_update_with_utc_expiry(self, certificate_service, ca_user, certificate_request):
        """Срок действия с часовым поясом приводится к локальному времени"""
        certificate = certificate_service.create_certificate(certificate_request, ca_user.id)
        expires_at = datetime.now(timezone.utc) - timedelta(hours=1)

        updated = certificate_service.update_certificate(
            certificate.id, ca_user.id, CertificateUpdate(expires_at=expires_at)
        )
        assert updated.expires_at.tzinfo is None
        assert updated.is_expired

    def test_issued_cannot_be_edited(self, certificate_service, ca_user, issued_certificate):
        with pytest.raises(InvalidStatusError):
            certificate_service.update_certificate(issued_certificate.id, ca_user.id, CertificateUpdate(title="X"))

    def test_delete_draft(self, certificate_service, ca_user, certificate_request):
        certificate = certificate_service.create_certificate(certificate_request, ca_user.id)
        assert certificate_service.delete_certificate(certificate.id, ca_user.id)
        with pytest.raises(CertificateNotFoundError):
            certificate_service.get_certificate(certificate.id)

    def test_issued_cannot_be_deleted(self, certificate_service, ca_user, issued_certificate):
        with pytest.raises(InvalidStatusError, match="revoked"):
            certificate_service.delete_certificate(issued_certificate.id, ca_user.id)


class TestVerification:
    """Тесты проверки сертификатов"""

    def test_valid_certificate(self, certificate_service, issued_certificate):
        result = certificate_service.verify_certificate(issued_certificate.verification_code)

        assert result.is_valid
        assert result.reason is None
        assert result.certificate.id == issued_certificate.id
        assert certificate_service.get_certificate(issued_certificate.id).verification_count == 1

    def test_code_is_case_insensitive(self, certificate_service, issued_certificate):
        assert certificate_service.verify_certificate(issued_certificate.verification_code.lower()).is_valid

    def test_lookup_by_id(self, certificate_service, issued_certificate):
        assert certificate_service.verify_certificate(issued_certificate.id).is_valid

    def test_not_found_is_recorded(self, certificate_service):
        """Проверка несуществующего кода тоже записывается"""
        result = certificate_service.verify_certificate("ZZZZZZZZ")

        assert not result.is_valid
        assert result.reason == "Certificate not found"
        assert certificate_service.certificate_repo.count_verifications() == 1

    def test_every_verification_is_recorded(self, certificate_service, issued_certificate):
        for _ in range(3):
            certificate_service.verify_certificate(issued_certificate.verification_code, method="qr_code")
        assert certificate_service.certificate_repo.count_verifications(issued_certificate.id) == 3

    def test_revoked_certificate(self, certificate_service, ca_user, issued_certificate):
        certificate_service.revoke_certificate(issued_certificate.id, ca_user.id, "Fraud")
        result = certificate_service.verify_certificate(issued_certificate.verification_code)
        assert not result.is_valid
        assert result.reason == "Certificate has been revoked"

    def test_draft_is_not_valid(self, certificate_service, ca_user, certificate_request):
        certificate = certificate_service.create_certificate(certificate_request, ca_user.id)
        result = certificate_service.verify_certificate(certificate.verification_code)
        assert not result.is_valid
        assert result.reason == "Certificate status is draft"

    def test_expired_certificate(self, certificate_service, ca_user, recipient):
        """Истекший сертификат недействителен, хотя хранится как issued"""
        request = CertificateRequest(
            title="Short Course",
            recipient_email=recipient.email,
            expires_at=datetime.now() - timedelta(days=1),
        )
        certificate = certificate_service.create_certificate(request, ca_user.id)
        certificate_service.issue_certificate(certificate.id, ca_user.id)

        result = certificate_service.verify_certificate(certificate.verification_code)
        assert not result.is_valid
        assert result.reason == "Certificate has expired"
        assert result.certificate.status == CertificateStatus.ISSUED
        assert result.certificate.effective_status == CertificateStatus.EXPIRED

    def test_record_failure_does_not_change_result(self, certificate_service, issued_certificate):
        """Ошибка записи журнала проверок не влияет на результат"""
        with patch.object(certificate_service.certificate_repo, "add_verification_record",
                          side_effect=RuntimeError("disk full")):
            result = certificate_service.verify_certificate(issued_certificate.verification_code)
        assert result.is_valid


class TestShareTokens:
    """Тесты ссылок доступа"""

    def test_share_and_open(self, certificate_service, recipient, issued_certificate):
        token = certificate_service.create_share_token(issued_certificate.id, recipient.id)
        assert len(token.token) == 32
        assert token.password is None

        result = certificate_service.verify_certificate_by_token(token.token)
        assert result.is_valid
        assert result.method == "share_link"

        certificate = certificate_service.get_certificate(issued_certificate.id)
        assert certificate.access_count == 1
        assert certificate.share_tokens[0].current_access == 1

    def test_password_protected(self, certificate_service, recipient, issued_certificate):
        token = certificate_service.create_share_token(issued_certificate.id, recipient.id, password="s3cret")

        stored = certificate_service.get_certificate(issued_certificate.id).share_tokens[0]
        assert stored.password != "s3cret"

        with pytest.raises(ShareTokenError):
            certificate_service.verify_certificate_by_token(token.token, "wrong")
        assert certificate_service.verify_certificate_by_token(token.token, "s3cret").is_valid

    def test_access_limit(self, certificate_service, recipient, issued_certificate):
        token = certificate_service.create_share_token(issued_certificate.id, recipient.id, max_access=1)
        certificate_service.verify_certificate_by_token(token.token)
        with pytest.raises(ShareTokenError):
            certificate_service.verify_certificate_by_token(token.token)

    def test_unknown_token(self, certificate_service):
        with pytest.raises(ShareTokenError):
            certificate_service.verify_certificate_by_token("missing")

    def test_draft_cannot_be_shared(self, certificate_service, ca_user, certificate_request):
        certificate = certificate_service.create_certificate(certificate_request, ca_user.id)
        with pytest.raises(InvalidStatusError):
            certificate_service.create_share_token(certificate.id, ca_user.id)


class TestQueriesAndStatistics:
    """Тесты выборок и статистики"""

    def test_user_certificates(self, certificate_service, ca_user, recipient, issued_certificate):
        assert [c.id for c in certificate_service.get_user_certificates(recipient.id)] == [issued_certificate.id]
        assert [c.id for c in certificate_service.get_user_certificates(ca_user.id, "issuer")] == [issued_certificate.id]

    def test_filter_by_status(self, certificate_service, ca_user, certificate_request, issued_certificate):
        certificate_service.create_certificate(certificate_request, ca_user.id)
        drafts = certificate_service.get_certificates(CertificateFilter(status=CertificateStatus.DRAFT))
        assert len(drafts) == 1

    def test_statistics(self, certificate_service, ca_user, certificate_request, issued_certificate):
        certificate_service.create_certificate(certificate_request, ca_user.id)
        certificate_service.verify_certificate(issued_certificate.verification_code)

        stats = certificate_service.get_statistics(ca_user.id)
        assert stats["total"] == 2
        assert stats["issued"] == 1
        assert stats["by_status"]["draft"] == 1
        assert stats["total_verifications"] == 1
        assert len(stats["monthly"]) == 12
        assert stats["monthly"][datetime.now().strftime("%Y-%m")] == 2

    def test_format_certificate_info(self, certificate_service, issued_certificate):
        info = certificate_service.format_certificate_info(issued_certificate, detailed=True)
        assert issued_certificate.verification_code in info
        assert "Valid" in info


class TestTemplates:
    """Тесты шаблонов сертификатов"""

    def test_default_template_created_once(self, certificate_service, ca_user):
        first = certificate_service.get_default_template_id(ca_user.id)
        assert certificate_service.get_default_template_id(ca_user.id) == first
        assert [t.id for t in certificate_service.get_templates()] == [first]

    def test_create_template(self, certificate_service, ca_user):
        template = certificate_service.create_template(
            TemplateRequest(name="  Workshop  ", type=CertificateType.PARTICIPATION), ca_user.id
        )
        assert template.name == "Workshop"
        assert template.created_by == ca_user.id

    def test_plain_user_cannot_create_template(self, certificate_service, recipient):
        with pytest.raises(PermissionDeniedError):
            certificate_service.create_template(TemplateRequest(name="Fake"), recipient.id)
