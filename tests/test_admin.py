"""
Тесты сервиса администратора
"""
import pytest

from certrepo.models import UserStatus, UserType
from certrepo.exceptions import InvalidStatusError, PermissionDeniedError, ValidationError


@pytest.fixture
def applicant(make_user):
    """Заявка на роль CA"""
    return make_user(UserType.CA, status=UserStatus.PENDING, display_name="Faculty of Science")


class TestRoleApplications:
    """Тесты заявок на роли"""

    def test_pending_applications(self, admin_service, applicant, make_user):
        make_user(UserType.USER, status=UserStatus.PENDING)
        applications = admin_service.get_role_applications()
        assert [u.id for u in applications] == [applicant.id]

    def test_approve(self, admin_service, admin, applicant):
        user = admin_service.approve_application(admin.id, applicant.id, "Welcome")

        assert user.status == UserStatus.ACTIVE
        assert user.approved_by == admin.id
        activities = admin_service.get_admin_activities(admin_id=admin.id)
        assert [a.action for a in activities] == ["ca_application_approved"]
        assert activities[0].target_user_id == applicant.id

    def test_second_approval_fails(self, admin_service, admin, applicant, make_user):
        """Повторное одобрение отклоняется и не пишет журнал"""
        other_admin = make_user(UserType.ADMIN, email="system.admin@upm.edu.my")
        admin_service.approve_application(admin.id, applicant.id)

        with pytest.raises(InvalidStatusError, match="not in pending status"):
            admin_service.approve_application(other_admin.id, applicant.id)
        assert len(admin_service.get_admin_activities()) == 1

    def test_reject_requires_reason(self, admin_service, admin, applicant):
        with pytest.raises(ValidationError):
            admin_service.reject_application(admin.id, applicant.id, "")

    def test_reject(self, admin_service, admin, applicant):
        user = admin_service.reject_application(admin.id, applicant.id, "Missing documents")
        assert user.status == UserStatus.SUSPENDED
        assert user.status_reason == "Missing documents"

    def test_non_admin_cannot_approve(self, admin_service, ca_user, applicant):
        with pytest.raises(PermissionDeniedError):
            admin_service.approve_application(ca_user.id, applicant.id)

    def test_notification_sent(self, admin_service, admin, applicant):
        admin_service.approve_application(admin.id, applicant.id)
        notifications = admin_service.notification_repo.get_for_user(applicant.id)
        assert notifications[0].type == "account_approved"


class TestUserManagement:
    """Тесты управления пользователями"""

    def test_suspend_and_reactivate(self, admin_service, admin, recipient):
        suspended = admin_service.suspend_user(admin.id, recipient.id, "Policy violation")
        assert suspended.status == UserStatus.SUSPENDED

        with pytest.raises(InvalidStatusError, match="already suspended"):
            admin_service.suspend_user(admin.id, recipient.id, "again")

        reactivated = admin_service.reactivate_user(admin.id, recipient.id)
        assert reactivated.status == UserStatus.ACTIVE

        with pytest.raises(InvalidStatusError, match="not suspended"):
            admin_service.reactivate_user(admin.id, recipient.id)

    def test_cannot_suspend_self(self, admin_service, admin):
        with pytest.raises(PermissionDeniedError):
            admin_service.suspend_user(admin.id, admin.id, "test")

    def test_delete_is_soft(self, admin_service, admin, recipient):
        deleted = admin_service.delete_user(admin.id, recipient.id, "Graduated")
        assert deleted.status == UserStatus.INACTIVE
        assert admin_service.get_user_details(recipient.id)["user"].status == UserStatus.INACTIVE

    def test_bulk_update(self, admin_service, admin, make_user):
        first = make_user()
        second = make_user(status=UserStatus.SUSPENDED)

        result = admin_service.bulk_update_user_status(
            admin.id, [first.id, second.id, admin.id], "suspended", "Audit"
        )
        assert result["updated"] == [first.id]
        assert set(result["failed"]) == {second.id, admin.id}

    def test_bulk_update_unknown_status(self, admin_service, admin, recipient):
        with pytest.raises(ValidationError, match="Unknown user status"):
            admin_service.bulk_update_user_status(admin.id, [recipient.id], "bogus")
        assert admin_service.get_user_details(recipient.id)["user"].status == UserStatus.ACTIVE

    def test_user_statistics(self, admin_service, admin, recipient, applicant):
        stats = admin_service.get_user_statistics()
        assert stats["total"] == 3
        assert stats["pending"] == 1
        assert stats["by_type"]["ca"] == 1

    def test_audit_filter_by_target(self, admin_service, admin, recipient, applicant):
        admin_service.approve_application(admin.id, applicant.id)
        admin_service.suspend_user(admin.id, recipient.id, "Spam")

        entries = admin_service.audit_repo.get_admin_activities(user_id=recipient.id)
        assert [e.action for e in entries] == ["user_suspended"]

    def test_system_health(self, admin_service, admin):
        health = admin_service.get_system_health()
        assert health["status"] == "healthy"
        assert health["counts"]["users"] == 1
