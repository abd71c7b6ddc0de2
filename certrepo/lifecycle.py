"""
Таблицы переходов статусов сертификата, клиентского запроса и пользователя.

Статус expired не хранится: он вычисляется при чтении из expires_at,
поэтому переходов в него нет.
"""

from typing import Dict, FrozenSet, Iterable, Union
from .models import CertificateStatus, RequestStatus, UserStatus
from .exceptions import InvalidStatusError


ALLOWED_TRANSITIONS: Dict[CertificateStatus, FrozenSet[CertificateStatus]] = {
    CertificateStatus.DRAFT: frozenset({CertificateStatus.PENDING, CertificateStatus.ISSUED}),
    CertificateStatus.PENDING: frozenset({
        CertificateStatus.APPROVED,
        CertificateStatus.REJECTED,
        CertificateStatus.ISSUED,
    }),
    CertificateStatus.APPROVED: frozenset({CertificateStatus.ISSUED}),
    CertificateStatus.REJECTED: frozenset(),
    CertificateStatus.ISSUED: frozenset({CertificateStatus.REVOKED}),
    CertificateStatus.REVOKED: frozenset(),
    CertificateStatus.EXPIRED: frozenset(),
}

# Допустимые исходные статусы для административных действий над пользователями
USER_ACTION_SOURCES: Dict[str, FrozenSet[UserStatus]] = {
    "approve": frozenset({UserStatus.PENDING}),
    "reject": frozenset({UserStatus.PENDING}),
    "suspend": frozenset({UserStatus.PENDING, UserStatus.ACTIVE, UserStatus.INACTIVE}),
    "reactivate": frozenset({UserStatus.SUSPENDED}),
    "delete": frozenset({UserStatus.PENDING, UserStatus.ACTIVE, UserStatus.SUSPENDED}),
}


def bulk_status_sources(target: UserStatus) -> FrozenSet[UserStatus]:
    """Массовое изменение статуса допускается из любого другого статуса."""
    return frozenset(UserStatus) - {target}


REQUEST_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.SUBMITTED, RequestStatus.CANCELLED}),
    RequestStatus.SUBMITTED: frozenset({
        RequestStatus.UNDER_REVIEW,
        RequestStatus.CHANGES_REQUESTED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.UNDER_REVIEW: frozenset({RequestStatus.APPROVED, RequestStatus.CANCELLED}),
    RequestStatus.CHANGES_REQUESTED: frozenset({
        RequestStatus.DRAFT,
        RequestStatus.SUBMITTED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.APPROVED: frozenset({RequestStatus.ISSUED, RequestStatus.CANCELLED}),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.ISSUED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}


def ensure_request_transition(current: Union[str, RequestStatus], target: Union[str, RequestStatus]):
    """
    Проверяет переход клиентского запроса между статусами.

    Raises:
        InvalidStatusError: Если переход запрещен
    """
    current_status = RequestStatus(current)
    target_status = RequestStatus(target)
    if target_status not in REQUEST_TRANSITIONS[current_status]:
        raise InvalidStatusError(
            f"Cannot change request status from {current_status.value} to {target_status.value}"
        )


def _as_status(value: Union[str, CertificateStatus]) -> CertificateStatus:
    return value if isinstance(value, CertificateStatus) else CertificateStatus(value)


def can_transition(current: Union[str, CertificateStatus],
                   target: Union[str, CertificateStatus]) -> bool:
    """
    Проверяет, разрешен ли переход между статусами сертификата.

    Args:
        current: Текущий сохраненный статус
        target: Целевой статус

    Returns:
        bool: True если переход разрешен
    """
    return _as_status(target) in ALLOWED_TRANSITIONS[_as_status(current)]


def ensure_transition(current: Union[str, CertificateStatus],
                      target: Union[str, CertificateStatus]):
    """
    Проверяет переход и выбрасывает исключение, если он запрещен.

    Raises:
        InvalidStatusError: Если переход запрещен
    """
    current_status = _as_status(current)
    target_status = _as_status(target)
    if not can_transition(current_status, target_status):
        raise InvalidStatusError(
            f"Cannot change certificate status from {current_status.value} to {target_status.value}"
        )


def terminal_statuses() -> Iterable[CertificateStatus]:
    """Статусы, из которых нет переходов."""
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if not targets]
