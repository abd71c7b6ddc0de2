"""
Загрузка и проверка документов пользователей.
"""

import hashlib
import logging
import uuid
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional
from .models import Document, DocumentMetadata, DocumentStatus, User, UserType
from .database import (
    AuditRepository, DatabaseManager, DocumentRepository, NotificationRepository,
    UserRepository, get_db_manager
)
from .storage import FileStorage, get_file_storage
from .validators import DataValidator
from .exceptions import *

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = (DocumentStatus.UPLOADED, DocumentStatus.PENDING, DocumentStatus.PROCESSING)


class DocumentService:
    """Сервис документов."""

    def __init__(self, db_manager: DatabaseManager = None, file_storage: FileStorage = None):
        db_manager = db_manager or get_db_manager()
        self.document_repo = DocumentRepository(db_manager)
        self.user_repo = UserRepository(db_manager)
        self.audit_repo = AuditRepository(db_manager)
        self.notification_repo = NotificationRepository(db_manager)
        self.file_storage = file_storage or get_file_storage()
        self.validator = DataValidator()

    def upload_document(self, uploader_id: str, file_name: str, content: bytes,
                        metadata: DocumentMetadata) -> Document:
        """
        Загружает документ в хранилище и сохраняет его метаданные.

        Args:
            uploader_id: ID пользователя
            file_name: Исходное имя файла
            content: Содержимое файла
            metadata: Описание документа

        Returns:
            Document: Сохраненный документ

        Raises:
            FileValidationError: Если файл пустой, слишком большой или недопустимого типа
            StorageError: При ошибке записи файла
        """
        logger.info(f"Загрузка документа {file_name} пользователем {uploader_id}")
        uploader = self._require_user(uploader_id)

        valid, message = self.validator.file_validator.validate(file_name, len(content or b""))
        if not valid:
            raise FileValidationError(message)

        document_id = str(uuid.uuid4())
        safe_name = file_name.replace("/", "_").replace("\\", "_")
        storage_path = f"documents/{uploader.id}/{document_id}_{safe_name}"

        size = self.file_storage.put_bytes(storage_path, content)
        now = datetime.now()

        try:
            document = self.document_repo.create_document({
                "id": document_id,
                "name": metadata.name.strip(),
                "description": metadata.description,
                "type": metadata.type,
                "status": DocumentStatus.PENDING,
                "uploader_id": uploader.id,
                "uploader_name": uploader.display_name,
                "file_name": file_name,
                "mime_type": self.validator.file_validator.guess_mime_type(file_name),
                "file_size": size,
                "storage_path": storage_path,
                "hash": hashlib.sha256(content).hexdigest(),
                "associated_certificate_id": metadata.associated_certificate_id,
                "tags": list(metadata.tags),
                "uploaded_at": now,
                "updated_at": now,
            })
        except Exception as e:
            logger.error(f"Ошибка сохранения метаданных документа {document_id}: {e}")
            self.file_storage.delete(storage_path)
            raise DatabaseError(f"Error while saving document: {e}")

        self._log_activity("document_uploaded", uploader.id, {"documentId": document.id, "size": size})
        logger.info(f"Документ {document.id} загружен ({document.file_size_formatted})")
        return document

    def get_document(self, document_id: str) -> Document:
        """
        Получает документ по ID.

        Raises:
            DocumentNotFoundError: Если документ не найден
        """
        document = self.document_repo.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return document

    def get_document_content(self, document_id: str, user_id: str) -> bytes:
        """Содержимое документа для владельца, CA или администратора."""
        document = self.get_document(document_id)
        self._ensure_can_view(document, self._require_user(user_id))
        return self.file_storage.get_bytes(document.storage_path)

    def get_documents_by_user(self, user_id: str) -> List[Document]:
        return self.document_repo.get_documents(uploader_id=user_id)

    def search_documents(self, doc_type: str = None, status: str = None, search: str = None,
                         uploader_id: str = None, limit: int = None) -> List[Document]:
        return self.document_repo.get_documents(uploader_id=uploader_id, doc_type=doc_type,
                                                status=status, search=search, limit=limit)

    def verify_document(self, document_id: str, verifier_id: str, comments: str = None) -> Document:
        """
        Подтверждает документ.

        Raises:
            PermissionDeniedError: Если проверяющий не CA/администратор
            InvalidStatusError: Если документ уже рассмотрен
        """
        verifier = self._require_reviewer(verifier_id)

        def change(document: Document) -> Dict:
            if document.status not in REVIEWABLE_STATUSES:
                raise InvalidStatusError(f"Document is already {document.status.value}")
            return {
                "status": DocumentStatus.VERIFIED,
                "verifier_id": verifier.id,
                "verified_at": datetime.now(),
                "verification_comments": comments,
            }

        document = self.document_repo.apply_change(document_id, change)
        self._log_activity("document_verified", verifier.id, {"documentId": document_id})
        self._notify(document.uploader_id, "document_verified", "Document verified",
                     f"Your document '{document.name}' has been verified.", {"documentId": document_id})
        logger.info(f"Документ {document_id} подтвержден пользователем {verifier_id}")
        return document

    def reject_document(self, document_id: str, verifier_id: str, reason: str) -> Document:
        """
        Отклоняет документ с указанием причины.

        Raises:
            ValidationError: Если причина пустая
        """
        reason = self.validator.require_reason(reason, "reject a document")
        verifier = self._require_reviewer(verifier_id)

        def change(document: Document) -> Dict:
            if document.status not in REVIEWABLE_STATUSES:
                raise InvalidStatusError(f"Document is already {document.status.value}")
            return {
                "status": DocumentStatus.REJECTED,
                "verifier_id": verifier.id,
                "verified_at": datetime.now(),
                "rejection_reason": reason,
            }

        document = self.document_repo.apply_change(document_id, change)
        self._log_activity("document_rejected", verifier.id, {"documentId": document_id, "reason": reason})
        self._notify(document.uploader_id, "document_rejected", "Document rejected",
                     f"Your document '{document.name}' was rejected: {reason}", {"documentId": document_id})
        logger.info(f"Документ {document_id} отклонен пользователем {verifier_id}")
        return document

    def delete_document(self, document_id: str, user_id: str) -> bool:
        """
        Удаляет документ и его файл. Удалять может владелец или администратор.
        """
        document = self.get_document(document_id)
        user = self._require_user(user_id)
        if document.uploader_id != user.id and not user.is_admin:
            raise PermissionDeniedError("Only the uploader or an administrator can delete this document")

        try:
            self.file_storage.delete(document.storage_path)
        except StorageError as e:
            logger.warning(f"Не удалось удалить файл документа {document_id}: {e}")

        result = self.document_repo.delete_document(document_id)
        if result:
            self._log_activity("document_deleted", user.id, {"documentId": document_id})
        return result

    def get_statistics(self, uploader_id: str = None) -> Dict:
        """Статистика документов по статусам и типам."""
        documents = self.document_repo.get_documents(uploader_id=uploader_id)
        total_size = sum(d.file_size for d in documents)
        return {
            "total": len(documents),
            "by_status": dict(Counter(d.status.value for d in documents)),
            "by_type": dict(Counter(d.type.value for d in documents)),
            "total_size": total_size,
            "pending_review": sum(1 for d in documents if d.status in REVIEWABLE_STATUSES),
        }

    def _require_user(self, user_id: str) -> User:
        user = self.user_repo.get_user_by_id(user_id) if user_id else None
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def _require_reviewer(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if not user.can_issue_certificates:
            raise PermissionDeniedError("Only certificate authorities and administrators can review documents")
        return user

    @staticmethod
    def _ensure_can_view(document: Document, user: User):
        if document.uploader_id == user.id or (user.is_active and user.user_type in (UserType.CA, UserType.ADMIN)):
            return
        raise PermissionDeniedError("You do not have access to this document")

    def _log_activity(self, action: str, user_id: str, details: dict = None):
        try:
            self.audit_repo.log_activity("document", action, user_id, None, details)
        except Exception as e:
            logger.warning(f"Не удалось записать действие {action}: {e}")

    def _notify(self, user_id: str, notification_type: str, title: str, message: str, data: dict = None):
        try:
            self.notification_repo.create_notification(user_id, notification_type, title, message, data)
        except Exception as e:
            logger.warning(f"Не удалось отправить уведомление пользователю {user_id}: {e}")


_document_service: Optional[DocumentService] = None


def get_document_service() -> DocumentService:
    """Возвращает экземпляр сервиса документов."""
    global _document_service
    if _document_service is None:
        _document_service = DocumentService()
    return _document_service
