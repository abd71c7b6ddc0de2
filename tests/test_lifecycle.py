"""
Тесты таблицы переходов статусов
"""
import pytest

from certrepo.lifecycle import (
    ALLOWED_TRANSITIONS, REQUEST_TRANSITIONS, USER_ACTION_SOURCES, bulk_status_sources, can_transition,
    ensure_request_transition, ensure_transition,
    terminal_statuses
)
from certrepo.models import CertificateStatus, RequestStatus, UserStatus
from certrepo.exceptions import InvalidStatusError


class TestCertificateTransitions:
    """Тесты переходов статусов сертификата"""

    @pytest.mark.parametrize("current, target", [
        ("draft", "pending"),
        ("draft", "issued"),
        ("pending", "approved"),
        ("pending", "rejected"),
        ("pending", "issued"),
        ("approved", "issued"),
        ("issued", "revoked"),
    ])
    def test_allowed(self, current, target):
        """Тест разрешенных переходов"""
        assert can_transition(current, target)
        ensure_transition(CertificateStatus(current), CertificateStatus(target))

    @pytest.mark.parametrize("current, target", [
        ("revoked", "issued"),
        ("rejected", "pending"),
        ("issued", "draft"),
        ("approved", "rejected"),
        ("draft", "revoked"),
    ])
    def test_forbidden(self, current, target):
        """Тест запрещенных переходов"""
        assert not can_transition(current, target)
        with pytest.raises(InvalidStatusError, match=f"from {current} to {target}"):
            ensure_transition(current, target)

    def test_expired_is_never_a_target(self):
        """Истечение срока вычисляется, а не сохраняется"""
        for targets in ALLOWED_TRANSITIONS.values():
            assert CertificateStatus.EXPIRED not in targets

    def test_terminal_statuses(self):
        """Тест конечных статусов"""
        assert set(terminal_statuses()) == {
            CertificateStatus.REJECTED, CertificateStatus.REVOKED, CertificateStatus.EXPIRED
        }


class TestUserActionSources:
    """Тесты исходных статусов для действий администратора"""

    def test_only_pending_applications_can_be_reviewed(self):
        assert USER_ACTION_SOURCES["approve"] == {UserStatus.PENDING}
        assert USER_ACTION_SOURCES["reject"] == {UserStatus.PENDING}

    def test_reactivate_requires_suspension(self):
        assert USER_ACTION_SOURCES["reactivate"] == {UserStatus.SUSPENDED}
        assert UserStatus.SUSPENDED not in USER_ACTION_SOURCES["suspend"]

    def test_deleted_user_cannot_be_deleted_again(self):
        assert UserStatus.INACTIVE not in USER_ACTION_SOURCES["delete"]

    def test_bulk_change_from_any_other_status(self):
        assert bulk_status_sources(UserStatus.ACTIVE) == {
            UserStatus.PENDING, UserStatus.SUSPENDED, UserStatus.INACTIVE
        }


class TestRequestTransitions:
    """Тесты переходов статусов клиентского запроса"""

    def test_every_status_has_entry(self):
        assert set(REQUEST_TRANSITIONS) == set(RequestStatus)

    @pytest.mark.parametrize("current, target", [
        ("draft", "submitted"),
        ("submitted", "under_review"),
        ("changes_requested", "draft"),
        ("under_review", "approved"),
        ("approved", "issued"),
    ])
    def test_allowed(self, current, target):
        ensure_request_transition(current, target)

    @pytest.mark.parametrize("current, target", [
        ("draft", "under_review"),
        ("submitted", "issued"),
        ("rejected", "cancelled"),
        ("issued", "cancelled"),
    ])
    def test_forbidden(self, current, target):
        with pytest.raises(InvalidStatusError, match="request status"):
            ensure_request_transition(current, target)
