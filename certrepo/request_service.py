"""
Клиентские запросы на выпуск сертификатов.

Клиент создает черновик и отправляет его на рассмотрение. Система назначает
активного CA той же организации, а если такого нет, любого активного CA.
CA одобряет запрос, отклоняет его или возвращает на доработку. Одобренный
запрос клиент подтверждает, после чего сертификат создается и выпускается
от имени одобрившего.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from .models import (
    CertificateRequest, CertificateStatus, ClientRequest, ClientRequestCreate, ClientRequestUpdate,
    RequestHistoryEntry, RequestStatus, ReviewAction, User, UserStatus, UserType
)
from .database import (
    AuditRepository, ClientRequestRepository, DatabaseManager, NotificationRepository,
    UserRepository, get_db_manager
)
from .lifecycle import ensure_request_transition
from .service import CertificateService
from .storage import FileStorage, get_file_storage
from .validators import DataValidator
from .exceptions import *

logger = logging.getLogger(__name__)

# Одобрение CA ждет подтверждения клиента
REVIEW_OUTCOMES = {
    ReviewAction.APPROVE: RequestStatus.UNDER_REVIEW,
    ReviewAction.REJECT: RequestStatus.REJECTED,
    ReviewAction.REQUEST_CHANGES: RequestStatus.CHANGES_REQUESTED,
}

REVIEW_MESSAGES = {
    ReviewAction.APPROVE: ("Certificate Request Approved",
                           "Your certificate request '{title}' has been approved. Please confirm it."),
    ReviewAction.REJECT: ("Certificate Request Rejected",
                          "Your certificate request '{title}' has been rejected: {comments}"),
    ReviewAction.REQUEST_CHANGES: ("Changes Requested",
                                   "Changes have been requested for '{title}': {comments}"),
}


class RequestService:
    """Сервис клиентских запросов на сертификаты."""

    def __init__(self, db_manager: DatabaseManager = None, file_storage: FileStorage = None,
                 certificate_service: CertificateService = None):
        db_manager = db_manager or get_db_manager()
        self.request_repo = ClientRequestRepository(db_manager)
        self.user_repo = UserRepository(db_manager)
        self.audit_repo = AuditRepository(db_manager)
        self.notification_repo = NotificationRepository(db_manager)
        self.certificate_service = certificate_service or CertificateService(
            db_manager, file_storage or get_file_storage()
        )
        self.validator = DataValidator()

    def create_request(self, client_id: str, data: ClientRequestCreate) -> ClientRequest:
        """
        Создает черновик запроса.

        Args:
            client_id: ID клиента
            data: Данные запроса

        Returns:
            ClientRequest: Созданный запрос в статусе draft

        Raises:
            PermissionDeniedError: Если пользователь не активный клиент или администратор
            ValidationError: При ошибке валидации
            DatabaseError: При ошибке БД
        """
        logger.info(f"Создание запроса на сертификат '{data.title}' клиентом {client_id}")

        try:
            client = self._require_user(client_id)
            if not client.is_active or client.user_type not in (UserType.CLIENT, UserType.ADMIN):
                raise PermissionDeniedError("Only active clients can create certificate requests")

            organization_name = (data.organization_name or client.organization_name or "").strip()
            errors = self.validator.validate_request(data.title, data.description, data.purpose,
                                                     organization_name)
            if errors:
                raise ValidationError("; ".join(errors))

            now = datetime.now()
            request = self.request_repo.create_request({
                "id": str(uuid.uuid4()),
                "client_id": client.id,
                "client_name": client.display_name,
                "client_email": client.email,
                "organization_name": organization_name,
                "certificate_type": data.certificate_type,
                "title": data.title.strip(),
                "description": data.description.strip(),
                "purpose": data.purpose.strip(),
                "requested_data": dict(data.requested_data),
                "attachment_urls": list(data.attachment_urls),
                "status": RequestStatus.DRAFT,
                "history": [],
                "priority": data.priority,
                "tags": list(data.tags),
                "metadata": {
                    "createdBy": client.id,
                    "createdByEmail": client.email,
                    "requestSource": "api",
                    "version": "1.0",
                },
                "created_at": now,
                "updated_at": now,
            })

            self._log_activity("request_created", client.id, {"requestId": request.id})
            logger.info(f"Запрос {request.id} создан")
            return request

        except Exception as e:
            logger.error(f"Ошибка создания запроса на сертификат: {e}")
            if isinstance(e, CertificateRepositoryError):
                raise
            raise DatabaseError(f"Unexpected error while creating certificate request: {e}")

    def submit_request(self, request_id: str, client_id: str) -> ClientRequest:
        """
        Отправляет запрос на рассмотрение и назначает CA.

        Raises:
            PermissionDeniedError: Если запрос чужой
            InvalidStatusError: Если запрос нельзя отправить или нет доступного CA
        """
        client = self._require_user(client_id)
        request = self.get_request(request_id)
        self._ensure_owner(request, client, "submit")

        ca = self._find_available_ca(request.organization_name)
        if ca is None:
            raise InvalidStatusError("No certificate authority available for this organization")

        def change(current: ClientRequest) -> Dict[str, Any]:
            self._ensure_owner(current, client, "submit")
            if not current.can_edit:
                raise InvalidStatusError(f"Request cannot be submitted in status {current.status.value}")
            ensure_request_transition(current.status, RequestStatus.SUBMITTED)
            now = datetime.now()
            return {
                "status": RequestStatus.SUBMITTED,
                "submitted_at": now,
                "assigned_ca_id": ca.id,
                "assigned_ca_name": ca.display_name,
                "assigned_at": now,
                "current_reviewer_id": ca.id,
                "history": self._with_history(current, client, "submitted", "Request submitted for review"),
            }

        request = self._apply(request_id, change, "submit")
        self._log_activity("request_submitted", client.id, {"requestId": request_id, "caId": ca.id})
        self._notify(ca.id, "certificate_request", "New Certificate Request",
                     f"You have a new certificate request from {request.client_name}",
                     {"requestId": request_id, "certificateType": request.certificate_type.value})
        return request

    def review_request(self, request_id: str, reviewer_id: str, action: str,
                       comments: str = None, changes: Dict[str, Any] = None) -> ClientRequest:
        """
        Решение CA по запросу: approve, reject или request_changes.

        Одобренный запрос переходит в under_review и ждет подтверждения клиента.
        Для отклонения и возврата на доработку комментарий обязателен.

        Raises:
            ValidationError: Неизвестное действие или пустой комментарий
            PermissionDeniedError: Если рецензент не назначенный CA и не администратор
            InvalidStatusError: Если запрос не ждет рассмотрения
        """
        try:
            review_action = ReviewAction(action)
        except ValueError:
            raise ValidationError(f"Invalid action: {action}")

        if review_action == ReviewAction.REJECT:
            comments = self.validator.require_reason(comments, "reject a request")
        elif review_action == ReviewAction.REQUEST_CHANGES:
            comments = self.validator.require_reason(comments, "request changes")

        reviewer = self._require_user(reviewer_id)
        if not reviewer.can_issue_certificates:
            raise PermissionDeniedError("Only certificate authorities and administrators can review requests")

        target = REVIEW_OUTCOMES[review_action]

        def change(current: ClientRequest) -> Dict[str, Any]:
            if current.assigned_ca_id != reviewer.id and not reviewer.is_admin:
                raise PermissionDeniedError("You are not assigned to review this request")
            if not current.requires_review:
                raise InvalidStatusError(f"Request is not awaiting review (status {current.status.value})")
            ensure_request_transition(current.status, target)

            updates = {
                "status": target,
                "history": self._with_history(current, reviewer, review_action.value, comments, changes),
            }
            if review_action == ReviewAction.APPROVE:
                updates["approved_at"] = datetime.now()
                updates["approved_by"] = reviewer.id
            elif review_action == ReviewAction.REJECT:
                updates["rejection_reason"] = comments
                updates["current_reviewer_id"] = None
            else:
                updates["change_request_comments"] = comments
                updates["current_reviewer_id"] = None
            return updates

        request = self._apply(request_id, change, review_action.value)
        self._log_activity("request_reviewed", reviewer.id,
                           {"requestId": request_id, "action": review_action.value})

        title, message = REVIEW_MESSAGES[review_action]
        self._notify(request.client_id, "certificate_request_update", title,
                     message.format(title=request.title, comments=comments or ""),
                     {"requestId": request_id, "action": review_action.value, "status": target.value})
        return request

    def confirm_request(self, request_id: str, client_id: str) -> ClientRequest:
        """
        Подтверждение одобренного запроса клиентом и выпуск сертификата.

        Сертификат выпускается от имени одобрившего CA. Если выпуск не удался,
        запрос остается в статусе approved и подтверждение можно повторить.

        Returns:
            ClientRequest: Запрос в статусе issued со ссылкой на сертификат

        Raises:
            PermissionDeniedError: Если запрос чужой или одобривший потерял права
            InvalidStatusError: Если запрос не ждет подтверждения
        """
        client = self._require_user(client_id)

        def confirm(current: ClientRequest) -> Dict[str, Any]:
            self._ensure_owner(current, client, "confirm")
            if current.status == RequestStatus.APPROVED:
                return {}
            if current.status != RequestStatus.UNDER_REVIEW:
                raise InvalidStatusError("Request is not pending client confirmation")
            ensure_request_transition(current.status, RequestStatus.APPROVED)
            return {
                "status": RequestStatus.APPROVED,
                "history": self._with_history(current, client, "client_approved",
                                              "Client confirmed the approved request"),
            }

        request = self._apply(request_id, confirm, "confirm")
        issuer_id = request.approved_by or request.assigned_ca_id

        try:
            certificate_id = request.certificate_id
            if not certificate_id:
                certificate = self.certificate_service.create_certificate(
                    self._certificate_request(request, issuer_id), issuer_id
                )
                certificate_id = certificate.id
                request = self._apply(request_id, lambda current: {"certificate_id": certificate_id},
                                      "link certificate")

            certificate = self.certificate_service.get_certificate(certificate_id)
            if certificate.status != CertificateStatus.ISSUED:
                self.certificate_service.issue_certificate(certificate_id, issuer_id)
        except Exception as e:
            logger.error(f"Ошибка выпуска сертификата по запросу {request_id}: {e}")
            raise

        def mark_issued(current: ClientRequest) -> Dict[str, Any]:
            ensure_request_transition(current.status, RequestStatus.ISSUED)
            return {"status": RequestStatus.ISSUED, "issued_at": datetime.now()}

        request = self._apply(request_id, mark_issued, "issue")
        self._log_activity("request_confirmed", client.id,
                           {"requestId": request_id, "certificateId": request.certificate_id})
        logger.info(f"По запросу {request_id} выпущен сертификат {request.certificate_id}")
        return request

    def update_request(self, request_id: str, client_id: str, update: ClientRequestUpdate) -> ClientRequest:
        """
        Изменяет черновик или запрос, возвращенный на доработку.

        Запрос, возвращенный на доработку, снова становится черновиком.

        Raises:
            PermissionDeniedError: Если запрос чужой
            InvalidStatusError: Если запрос нельзя редактировать
            ValidationError: При ошибке валидации
        """
        client = self._require_user(client_id)
        fields = update.model_dump(exclude_none=True)
        for name in ("title", "description", "purpose"):
            if name in fields:
                fields[name] = fields[name].strip()

        def change(current: ClientRequest) -> Dict[str, Any]:
            self._ensure_owner(current, client, "update")
            if not current.can_edit:
                raise InvalidStatusError(f"Request cannot be edited in status {current.status.value}")

            errors = self.validator.validate_request(
                fields.get("title", current.title),
                fields.get("description", current.description),
                fields.get("purpose", current.purpose),
                current.organization_name,
            )
            if errors:
                raise ValidationError("; ".join(errors))

            updates = dict(fields)
            if current.status == RequestStatus.CHANGES_REQUESTED:
                ensure_request_transition(current.status, RequestStatus.DRAFT)
                updates["status"] = RequestStatus.DRAFT
                updates["change_request_comments"] = None
            return updates

        return self._apply(request_id, change, "update")

    def cancel_request(self, request_id: str, user_id: str, reason: str) -> ClientRequest:
        """
        Отменяет активный запрос. Отменить может клиент или администратор.

        Raises:
            ValidationError: Если причина пустая
            PermissionDeniedError: Если запрос чужой
            InvalidStatusError: Если запрос уже завершен
        """
        reason = self.validator.require_reason(reason, "cancel a request")
        user = self._require_user(user_id)

        def change(current: ClientRequest) -> Dict[str, Any]:
            if not user.is_admin:
                self._ensure_owner(current, user, "cancel")
            if not current.is_active:
                raise InvalidStatusError(f"Request cannot be cancelled in status {current.status.value}")
            ensure_request_transition(current.status, RequestStatus.CANCELLED)
            metadata = dict(current.metadata)
            metadata.update({"cancelledReason": reason, "cancelledAt": datetime.now().isoformat()})
            return {
                "status": RequestStatus.CANCELLED,
                "current_reviewer_id": None,
                "metadata": metadata,
                "history": self._with_history(current, user, "cancelled", reason),
            }

        request = self._apply(request_id, change, "cancel")
        self._log_activity("request_cancelled", user.id, {"requestId": request_id, "reason": reason})
        self._notify(request.assigned_ca_id, "certificate_request_cancelled", "Certificate Request Cancelled",
                     f"Request '{request.title}' has been cancelled", {"requestId": request_id})
        return request

    def get_request(self, request_id: str) -> ClientRequest:
        """
        Получает запрос по ID.

        Raises:
            RequestNotFoundError: Если запрос не найден
        """
        request = self.request_repo.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Certificate request {request_id} not found")
        return request

    def get_request_for_user(self, request_id: str, user_id: str) -> ClientRequest:
        """Запрос для клиента, назначенного CA или администратора."""
        request = self.get_request(request_id)
        user = self._require_user(user_id)
        if user.id not in (request.client_id, request.assigned_ca_id) and not user.is_admin:
            raise PermissionDeniedError("You do not have access to this request")
        return request

    def get_requests_for_user(self, user_id: str, status: Optional[RequestStatus] = None) -> List[ClientRequest]:
        """Администратор видит все запросы, CA назначенные ему, остальные свои."""
        user = self._require_user(user_id)
        try:
            if user.is_admin:
                return self.request_repo.get_requests(status=status)
            if user.user_type == UserType.CA:
                return self.request_repo.get_requests(assigned_ca_id=user.id, status=status)
            return self.request_repo.get_requests(client_id=user.id, status=status)
        except Exception as e:
            logger.error(f"Ошибка получения запросов пользователя {user_id}: {e}")
            raise DatabaseError(f"Failed to load certificate requests: {e}")

    def _find_available_ca(self, organization_name: str) -> Optional[User]:
        authorities = sorted(
            self.user_repo.get_users(user_type=UserType.CA, status=UserStatus.ACTIVE),
            key=lambda user: user.created_at
        )
        organization = (organization_name or "").strip().lower()
        for authority in authorities:
            if (authority.organization_name or "").strip().lower() == organization:
                return authority
        return authorities[0] if authorities else None

    @staticmethod
    def _certificate_request(request: ClientRequest, issuer_id: str) -> CertificateRequest:
        metadata = dict(request.requested_data)
        metadata.update({"requestId": request.id, "purpose": request.purpose, "approvedByCA": issuer_id})
        return CertificateRequest(
            title=request.title,
            description=request.description,
            type=request.certificate_type,
            recipient_id=request.client_id,
            recipient_email=request.client_email,
            recipient_name=request.client_name,
            organization_name=request.organization_name,
            tags=list(request.tags),
            metadata=metadata,
        )

    @staticmethod
    def _with_history(request: ClientRequest, user: User, action: str,
                      comments: str = None, changes: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        entry = RequestHistoryEntry(
            reviewer_id=user.id,
            reviewer_name=user.display_name,
            reviewer_role=user.user_type.value,
            action=action,
            comments=comments,
            changes=changes,
        )
        return [item.model_dump(mode="json") for item in request.history + [entry]]

    @staticmethod
    def _ensure_owner(request: ClientRequest, user: User, action: str):
        if request.client_id != user.id:
            raise PermissionDeniedError(f"You can only {action} your own requests")

    def _apply(self, request_id: str, change, action: str) -> ClientRequest:
        """Выполняет изменение запроса с пробросом доменных ошибок."""
        try:
            request = self.request_repo.apply_change(request_id, change)
            logger.info(f"Запрос {request_id}: {action}, статус {request.status.value}")
            return request
        except Exception as e:
            logger.error(f"Ошибка операции {action} над запросом {request_id}: {e}")
            if isinstance(e, CertificateRepositoryError):
                raise
            raise DatabaseError(f"Error while updating certificate request: {e}")

    def _require_user(self, user_id: str) -> User:
        user = self.user_repo.get_user_by_id(user_id) if user_id else None
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def _log_activity(self, action: str, user_id: str, details: dict = None):
        try:
            self.audit_repo.log_activity("certificate_request", action, user_id, None, details)
        except Exception as e:
            logger.warning(f"Не удалось записать действие {action}: {e}")

    def _notify(self, user_id: Optional[str], notification_type: str, title: str,
                message: str, data: dict = None):
        if not user_id:
            return
        try:
            self.notification_repo.create_notification(user_id, notification_type, title, message, data)
        except Exception as e:
            logger.warning(f"Не удалось отправить уведомление пользователю {user_id}: {e}")


_request_service: Optional[RequestService] = None


def get_request_service() -> RequestService:
    """Возвращает экземпляр сервиса клиентских запросов."""
    global _request_service
    if _request_service is None:
        _request_service = RequestService()
    return _request_service
