"""
Администрирование: заявки на роли, управление пользователями, статистика и журнал.

Изменение статуса пользователя и запись в журнал администратора
выполняются одной транзакцией.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from .models import AdminActivity, User, UserStatus, UserType
from .database import (
    AuditRepository, CertificateRepository, DatabaseManager, DocumentRepository,
    NotificationRepository, UserRepository, get_db_manager
)
from .storage import FileStorage, get_file_storage
from .lifecycle import USER_ACTION_SOURCES, bulk_status_sources
from .validators import DataValidator
from .exceptions import *

logger = logging.getLogger(__name__)

APPLICANT_TYPES = (UserType.CA, UserType.CLIENT)


class AdminService:
    """Сервис администратора."""

    def __init__(self, db_manager: DatabaseManager = None, file_storage: FileStorage = None):
        self.db_manager = db_manager or get_db_manager()
        self.user_repo = UserRepository(self.db_manager)
        self.certificate_repo = CertificateRepository(self.db_manager)
        self.document_repo = DocumentRepository(self.db_manager)
        self.audit_repo = AuditRepository(self.db_manager)
        self.notification_repo = NotificationRepository(self.db_manager)
        self.file_storage = file_storage or get_file_storage()
        self.validator = DataValidator()

    def require_admin(self, admin_id: str) -> User:
        """
        Проверяет, что пользователь является активным администратором.

        Raises:
            PermissionDeniedError: Если пользователь не активный администратор
        """
        admin = self.user_repo.get_user_by_id(admin_id) if admin_id else None
        if admin is None or not admin.is_admin or not admin.is_active:
            raise PermissionDeniedError("Administrator privileges required")
        return admin

    # Статистика

    def get_user_statistics(self) -> Dict:
        """Количество пользователей по статусам, ролям и месяцам регистрации."""
        users = self.user_repo.get_users()
        now = datetime.now()
        this_month = now.strftime("%Y-%m")
        last_month = (now.replace(day=1) - timedelta(days=1)).strftime("%Y-%m")
        by_status = Counter(u.status.value for u in users)

        return {
            "total": len(users),
            "active": by_status.get(UserStatus.ACTIVE.value, 0),
            "pending": by_status.get(UserStatus.PENDING.value, 0),
            "suspended": by_status.get(UserStatus.SUSPENDED.value, 0),
            "inactive": by_status.get(UserStatus.INACTIVE.value, 0),
            "by_type": dict(Counter(u.user_type.value for u in users)),
            "this_month": sum(1 for u in users if u.created_at.strftime("%Y-%m") == this_month),
            "last_month": sum(1 for u in users if u.created_at.strftime("%Y-%m") == last_month),
        }

    def get_certificate_statistics(self) -> Dict:
        """Количество сертификатов по статусам и типам."""
        certificates = self.certificate_repo.get_all_certificates()
        by_status = Counter(c.effective_status.value for c in certificates)
        now = datetime.now()
        this_month = now.strftime("%Y-%m")

        return {
            "total": len(certificates),
            "by_status": dict(by_status),
            "by_type": dict(Counter(c.type.value for c in certificates)),
            "issued": by_status.get("issued", 0),
            "pending": by_status.get("pending", 0),
            "revoked": by_status.get("revoked", 0),
            "expired": by_status.get("expired", 0),
            "this_month": sum(1 for c in certificates if c.created_at.strftime("%Y-%m") == this_month),
        }

    def get_document_statistics(self) -> Dict:
        """Количество документов по статусам и типам."""
        documents = self.document_repo.get_documents()
        by_status = Counter(d.status.value for d in documents)

        return {
            "total": len(documents),
            "by_status": dict(by_status),
            "by_type": dict(Counter(d.type.value for d in documents)),
            "verified": by_status.get("verified", 0),
            "pending": by_status.get("pending", 0) + by_status.get("uploaded", 0),
            "rejected": by_status.get("rejected", 0),
            "total_size": sum(d.file_size for d in documents),
        }

    # Заявки на роли

    def get_role_applications(self, status: str = UserStatus.PENDING.value,
                              search: str = None) -> List[User]:
        """Заявки CA и клиентов в указанном статусе."""
        users = self.user_repo.get_users(status=status, search=search)
        return [u for u in users if u.user_type in APPLICANT_TYPES]

    def approve_application(self, admin_id: str, user_id: str, comments: str = None) -> User:
        """
        Одобряет заявку CA или клиента (pending → active).

        Повторное одобрение отклоняется: статус проверяется под блокировкой строки.

        Args:
            admin_id: ID администратора
            user_id: ID заявителя
            comments: Комментарий администратора

        Returns:
            User: Активированный пользователь

        Raises:
            InvalidStatusError: Если заявка не в статусе pending
        """
        admin = self.require_admin(admin_id)
        logger.info(f"Одобрение заявки {user_id} администратором {admin_id}")

        def change(user: User) -> Dict:
            self._ensure_applicant(user)
            if user.status not in USER_ACTION_SOURCES["approve"]:
                raise InvalidStatusError("Application is not in pending status")
            return {
                "status": UserStatus.ACTIVE,
                "approved_by": admin.id,
                "approved_at": datetime.now(),
                "status_reason": comments,
            }

        user = self._apply(user_id, change, admin.id, "ca_application_approved",
                           {"comments": comments})
        self._notify(user.id, "account_approved", "Application approved",
                     "Your application has been approved. You can now sign in.")
        return user

    def reject_application(self, admin_id: str, user_id: str, reason: str) -> User:
        """
        Отклоняет заявку CA или клиента (pending → suspended).

        Raises:
            ValidationError: Если причина пустая
            InvalidStatusError: Если заявка не в статусе pending
        """
        reason = self.validator.require_reason(reason, "reject an application")
        admin = self.require_admin(admin_id)
        logger.info(f"Отклонение заявки {user_id} администратором {admin_id}")

        def change(user: User) -> Dict:
            self._ensure_applicant(user)
            if user.status not in USER_ACTION_SOURCES["reject"]:
                raise InvalidStatusError("Application is not in pending status")
            return {
                "status": UserStatus.SUSPENDED,
                "rejected_by": admin.id,
                "rejected_at": datetime.now(),
                "status_reason": reason,
            }

        user = self._apply(user_id, change, admin.id, "ca_application_rejected", {"reason": reason})
        self._notify(user.id, "account_rejected", "Application rejected",
                     f"Your application was rejected. Reason: {reason}")
        return user

    # Управление пользователями

    def get_users(self, user_type: str = None, status: str = None, search: str = None,
                  limit: int = None) -> List[User]:
        return self.user_repo.get_users(user_type=user_type, status=status, search=search, limit=limit)

    def get_user_details(self, user_id: str) -> Dict:
        """
        Пользователь с его сертификатами, документами и последними действиями.

        Raises:
            UserNotFoundError: Если пользователь не найден
        """
        user = self.user_repo.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")

        received = self.certificate_repo.get_certificates_by_recipient(user.id, user.email)
        issued = [c for c in self.certificate_repo.get_all_certificates() if c.issuer_id == user.id]
        documents = self.document_repo.get_documents(uploader_id=user.id)

        return {
            "user": user,
            "certificates_received": len(received),
            "certificates_issued": len(issued),
            "documents": len(documents),
            "recent_activities": self.audit_repo.get_activities(user_id=user.id, limit=20),
            "admin_actions": self.audit_repo.get_admin_activities(user_id=user.id, limit=20),
        }

    def suspend_user(self, admin_id: str, user_id: str, reason: str) -> User:
        """
        Блокирует пользователя.

        Raises:
            InvalidStatusError: Если пользователь уже заблокирован
        """
        reason = self.validator.require_reason(reason, "suspend a user")
        admin = self.require_admin(admin_id)
        if admin.id == user_id:
            raise PermissionDeniedError("Administrators cannot suspend their own account")

        def change(user: User) -> Dict:
            if user.status not in USER_ACTION_SOURCES["suspend"]:
                raise InvalidStatusError("User is already suspended")
            return {
                "status": UserStatus.SUSPENDED,
                "suspended_by": admin.id,
                "suspended_at": datetime.now(),
                "status_reason": reason,
            }

        user = self._apply(user_id, change, admin.id, "user_suspended", {"reason": reason})
        self._notify(user.id, "account_suspended", "Account suspended",
                     f"Your account has been suspended. Reason: {reason}")
        return user

    def reactivate_user(self, admin_id: str, user_id: str, comments: str = None) -> User:
        """
        Снимает блокировку (suspended → active).

        Raises:
            InvalidStatusError: Если пользователь не заблокирован
        """
        admin = self.require_admin(admin_id)

        def change(user: User) -> Dict:
            if user.status not in USER_ACTION_SOURCES["reactivate"]:
                raise InvalidStatusError("User is not suspended")
            return {
                "status": UserStatus.ACTIVE,
                "suspended_by": None,
                "suspended_at": None,
                "status_reason": comments,
            }

        user = self._apply(user_id, change, admin.id, "user_reactivated", {"comments": comments})
        self._notify(user.id, "account_reactivated", "Account reactivated",
                     "Your account has been reactivated.")
        return user

    def delete_user(self, admin_id: str, user_id: str, reason: str = None) -> User:
        """
        Мягкое удаление пользователя (статус inactive). Записи не удаляются.

        Raises:
            InvalidStatusError: Если пользователь уже удален
        """
        admin = self.require_admin(admin_id)
        if admin.id == user_id:
            raise PermissionDeniedError("Administrators cannot delete their own account")

        def change(user: User) -> Dict:
            if user.status not in USER_ACTION_SOURCES["delete"]:
                raise InvalidStatusError("User is already deleted")
            return {"status": UserStatus.INACTIVE, "status_reason": reason}

        return self._apply(user_id, change, admin.id, "user_deleted", {"reason": reason})

    def bulk_update_user_status(self, admin_id: str, user_ids: List[str], status: str,
                                reason: str = None) -> Dict:
        """
        Меняет статус нескольких пользователей. Каждый пользователь обрабатывается
        отдельной транзакцией, ошибки собираются в результат.

        Returns:
            Dict: updated (список ID) и failed (ID → причина)
        """
        admin = self.require_admin(admin_id)
        try:
            target_status = UserStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown user status: {status}")
        result = {"updated": [], "failed": {}}

        for user_id in user_ids:
            if user_id == admin.id:
                result["failed"][user_id] = "Cannot change own status"
                continue

            def change(user: User) -> Dict:
                if user.status not in bulk_status_sources(target_status):
                    raise InvalidStatusError(f"User is already {target_status.value}")
                return {"status": target_status, "status_reason": reason}

            try:
                self._apply(user_id, change, admin.id, "bulk_status_update",
                            {"status": target_status.value, "reason": reason})
                result["updated"].append(user_id)
            except CertificateRepositoryError as e:
                result["failed"][user_id] = str(e)

        logger.info(f"Массовое изменение статуса: {len(result['updated'])} успешно, "
                    f"{len(result['failed'])} с ошибками")
        return result

    def get_admin_activities(self, admin_id: str = None, action: str = None,
                             limit: int = 100) -> List[AdminActivity]:
        return self.audit_repo.get_admin_activities(admin_id=admin_id, action=action, limit=limit)

    def get_system_health(self) -> Dict:
        """Состояние БД и хранилища с основными счетчиками."""
        health = {"timestamp": datetime.now().isoformat(), "components": {}}

        database_ok = self.db_manager.health_check()
        health["components"]["database"] = {"status": "healthy" if database_ok else "unhealthy"}

        try:
            storage_stats = self.file_storage.get_storage_stats()
            health["components"]["storage"] = {
                "status": "healthy",
                "files": storage_stats["total_files"],
                "size": storage_stats["total_size"],
            }
        except Exception as e:
            health["components"]["storage"] = {"status": "unhealthy", "message": str(e)}

        if database_ok:
            health["counts"] = {
                "users": self.user_repo.count_users(),
                "pending_applications": len(self.get_role_applications()),
            }

        health["status"] = "healthy" if all(
            c["status"] == "healthy" for c in health["components"].values()
        ) else "unhealthy"
        return health

    def _apply(self, user_id: str, change, admin_id: str, action: str, details: dict) -> User:
        try:
            user = self.user_repo.apply_admin_action(user_id, change, admin_id, action, details)
            logger.info(f"Пользователь {user_id}: {action}, статус {user.status.value}")
            return user
        except Exception as e:
            logger.error(f"Ошибка действия {action} над пользователем {user_id}: {e}")
            if isinstance(e, CertificateRepositoryError):
                raise
            raise DatabaseError(f"Error while updating user: {e}")

    @staticmethod
    def _ensure_applicant(user: User):
        if user.user_type not in APPLICANT_TYPES:
            raise ValidationError("Only certificate authority and client applications can be reviewed")

    def _notify(self, user_id: str, notification_type: str, title: str, message: str):
        try:
            self.notification_repo.create_notification(user_id, notification_type, title, message)
        except Exception as e:
            logger.warning(f"Не удалось отправить уведомление пользователю {user_id}: {e}")


_admin_service: Optional[AdminService] = None


def get_admin_service() -> AdminService:
    """Возвращает экземпляр сервиса администратора."""
    global _admin_service
    if _admin_service is None:
        _admin_service = AdminService()
    return _admin_service
