"""
HTTP API репозитория сертификатов
"""
import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, validator

from .models import (
    Certificate, CertificateFilter, CertificateRequest, CertificateStatus, CertificateType,
    CertificateUpdate, ClientRequestCreate, ClientRequestUpdate, DocumentMetadata, RegistrationRequest,
    RequestStatus, TemplateRequest, User, UserType,
    VerificationResult, to_local_naive
)
from .database import DatabaseManager, get_db_manager
from .storage import FileStorage, get_file_storage
from .service import CertificateService
from .auth_service import AuthService
from .document_service import DocumentService
from .admin_service import AdminService
from .reports_service import ReportsService
from .backup_service import BackupService
from .request_service import RequestService
from .exceptions import *


# Модели запросов API
class LoginRequest(BaseModel):
    """Вход по email и паролю"""
    email: str
    password: str


class TokenResponse(BaseModel):
    """Токен доступа"""
    access_token: str
    token_type: str = "bearer"
    user: User


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class ReasonRequest(BaseModel):
    """Действие с обязательной причиной"""
    reason: str = ""


class CommentsRequest(BaseModel):
    comments: Optional[str] = None


class ApprovalDecisionRequest(BaseModel):
    """Решение по шагу согласования"""
    step_id: str
    comments: Optional[str] = None
    reason: Optional[str] = None


class ShareRequest(BaseModel):
    validity_days: Optional[int] = Field(None, ge=1, le=365)
    password: Optional[str] = None
    max_access: Optional[int] = Field(None, ge=1)


class ShareAccessRequest(BaseModel):
    password: Optional[str] = None


class DocumentUploadRequest(BaseModel):
    """Загрузка документа: содержимое файла в base64"""
    file_name: str
    content_base64: str
    metadata: DocumentMetadata


class BulkStatusRequest(BaseModel):
    user_ids: List[str]
    status: str
    reason: Optional[str] = None


class BackupRequest(BaseModel):
    description: Optional[str] = None


class IncrementalBackupRequest(BaseModel):
    last_backup_time: datetime

    @validator('last_backup_time')
    def normalize_last_backup_time(cls, v):
        return to_local_naive(v)


class ReviewRequest(BaseModel):
    """Решение CA по клиентскому запросу"""
    action: str = Field(..., description="approve, reject или request_changes")
    comments: Optional[str] = None
    changes: Optional[Dict[str, Any]] = None


class RestoreRequest(BaseModel):
    create_backup_before_restore: bool = True


# Коды ответа для ошибок приложения, подклассы раньше базовых
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (PermissionDeniedError, 403),
    (ShareTokenError, 403),
    (NotFoundError, 404),
    (InvalidStatusError, 409),
    (UserExistsError, 409),
)


def error_status_code(error: Exception) -> int:
    """HTTP код для исключения приложения"""
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_cls):
            return status_code
    return 500


def certificate_to_response(certificate: Optional[Certificate], public: bool = False) -> Optional[Dict[str, Any]]:
    """
    Сертификат для ответа API: с производным статусом и без хешей паролей ссылок.
    В публичных ответах ссылки доступа не показываются.
    """
    if certificate is None:
        return None
    data = certificate.model_dump(mode="json", exclude={"share_tokens"} if public else None)
    for share_token in data.get("share_tokens", []):
        share_token.pop("password", None)
    data["status_info"] = certificate.status_info
    data["verification_url"] = certificate.verification_url
    return data


def verification_to_response(result: VerificationResult) -> Dict[str, Any]:
    data = result.model_dump(mode="json", exclude={"certificate"})
    data["certificate"] = certificate_to_response(result.certificate, public=True)
    return data


class CertificateAPI:
    """API для работы с сертификатами"""

    def __init__(
            self,
            db_manager: DatabaseManager = None,
            file_storage: FileStorage = None,
            lifespan=None
    ):
        self.db_manager = db_manager or get_db_manager()
        self.file_storage = file_storage or get_file_storage()
        self.logger = logging.getLogger(__name__)

        self.certificate_service = CertificateService(self.db_manager, self.file_storage)
        self.auth_service = AuthService(self.db_manager)
        self.document_service = DocumentService(self.db_manager, self.file_storage)
        self.admin_service = AdminService(self.db_manager, self.file_storage)
        self.reports_service = ReportsService(self.db_manager, self.file_storage)
        self.backup_service = BackupService(self.db_manager, self.file_storage)
        self.request_service = RequestService(self.db_manager, self.file_storage, self.certificate_service)

        # Создание FastAPI приложения
        self.app = FastAPI(
            title="Digital Certificate Repository API",
            description="API для выпуска, проверки и администрирования сертификатов",
            version="1.0.0",
            lifespan=lifespan
        )

        self.security = HTTPBearer(auto_error=False)

        self._setup_error_handlers()
        self._setup_routes()

    def _current_user(self, credentials: Optional[HTTPAuthorizationCredentials] = None) -> User:
        """Пользователь по токену из заголовка Authorization"""
        if credentials is None or not credentials.credentials:
            raise AuthenticationError("Not authenticated")
        return self.auth_service.get_current_user(credentials.credentials)

    def _accessible_certificate(self, certificate_id: str, user: User) -> Certificate:
        """Сертификат, если пользователь его получатель, выпускающий или администратор"""
        certificate = self.certificate_service.get_certificate(certificate_id)
        related = user.id in (certificate.recipient_id, certificate.issuer_id) \
            or user.email == certificate.recipient_email
        if not (related or user.is_admin):
            raise PermissionDeniedError("You do not have access to this certificate")
        return certificate

    def _setup_error_handlers(self):
        """Преобразование исключений приложения в ответы"""

        @self.app.exception_handler(CertificateRepositoryError)
        async def repository_error_handler(request, exc: CertificateRepositoryError):
            status_code = error_status_code(exc)
            if status_code >= 500:
                self.logger.error(f"Ошибка обработки {request.method} {request.url.path}: {exc}")
                detail = "Internal server error"
            else:
                self.logger.warning(f"{request.method} {request.url.path}: {exc}")
                detail = str(exc)
            return JSONResponse(status_code=status_code, content={"detail": detail})

    def _setup_routes(self):
        """Настройка маршрутов API"""

        def current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(self.security)) -> User:
            return self._current_user(credentials)

        def admin_user(user: User = Depends(current_user)) -> User:
            return self.admin_service.require_admin(user.id)

        # Аутентификация

        @self.app.post("/auth/register", response_model=User, status_code=201, tags=["auth"])
        def register(request: RegistrationRequest):
            """Регистрация пользователя"""
            return self.auth_service.register(request)

        @self.app.post("/auth/login", response_model=TokenResponse, tags=["auth"])
        def login(request: LoginRequest):
            """Вход и получение токена"""
            user, token = self.auth_service.sign_in(request.email, request.password)
            return TokenResponse(access_token=token, user=user)

        @self.app.get("/auth/me", response_model=User, tags=["auth"])
        def me(user: User = Depends(current_user)):
            return user

        @self.app.patch("/auth/me", response_model=User, tags=["auth"])
        def update_profile(updates: Dict[str, Any], user: User = Depends(current_user)):
            return self.auth_service.update_profile(user.id, updates)

        @self.app.post("/auth/password", status_code=204, tags=["auth"])
        def change_password(request: PasswordChangeRequest, user: User = Depends(current_user)):
            self.auth_service.change_password(user.id, request.current_password, request.new_password)

        # Публичная проверка

        @self.app.get("/verify/{code}", tags=["verification"])
        def verify_certificate(code: str, method: str = Query("api")):
            """Проверка сертификата по коду без авторизации"""
            return verification_to_response(self.certificate_service.verify_certificate(code, method=method))

        @self.app.post("/share/{token}", tags=["verification"])
        def open_share_link(token: str, request: Optional[ShareAccessRequest] = None):
            """Проверка сертификата по ссылке доступа"""
            password = request.password if request else None
            return verification_to_response(self.certificate_service.verify_certificate_by_token(token, password))

        # Сертификаты

        @self.app.get("/certificates/stats", tags=["certificates"])
        def certificate_statistics(user: User = Depends(current_user)):
            """Статистика: администратору по всем сертификатам, остальным по своим"""
            return self.certificate_service.get_statistics(None if user.is_admin else user.id)

        @self.app.get("/certificates/templates", tags=["certificates"])
        def list_templates(active_only: bool = True, user: User = Depends(current_user)):
            return self.certificate_service.get_templates(active_only)

        @self.app.post("/certificates/templates", status_code=201, tags=["certificates"])
        def create_template(request: TemplateRequest, user: User = Depends(current_user)):
            return self.certificate_service.create_template(request, user.id)

        @self.app.get("/certificates", tags=["certificates"])
        def list_certificates(
                role: str = Query("recipient", pattern="^(recipient|issuer|all)$"),
                status: Optional[CertificateStatus] = None,
                type: Optional[CertificateType] = None,
                search: Optional[str] = None,
                limit: Optional[int] = Query(None, ge=1, le=1000),
                user: User = Depends(current_user)
        ):
            """Сертификаты пользователя; role=all доступен администратору"""
            if role == "all":
                self.admin_service.require_admin(user.id)
                certificates = self.certificate_service.get_certificates(
                    CertificateFilter(status=status, type=type, search=search), limit
                )
            else:
                certificates = self.certificate_service.get_user_certificates(user.id, role)
                if status:
                    certificates = [c for c in certificates if c.effective_status == status]
            return [certificate_to_response(c) for c in certificates]

        @self.app.post("/certificates", status_code=201, tags=["certificates"])
        def create_certificate(request: CertificateRequest, user: User = Depends(current_user)):
            """Создание сертификата"""
            return certificate_to_response(self.certificate_service.create_certificate(request, user.id))

        @self.app.get("/certificates/{certificate_id}", tags=["certificates"])
        def get_certificate(certificate_id: str, user: User = Depends(current_user)):
            return certificate_to_response(self._accessible_certificate(certificate_id, user))

        @self.app.patch("/certificates/{certificate_id}", tags=["certificates"])
        def update_certificate(certificate_id: str, update: CertificateUpdate, user: User = Depends(current_user)):
            return certificate_to_response(self.certificate_service.update_certificate(certificate_id, user.id, update))

        @self.app.delete("/certificates/{certificate_id}", status_code=204, tags=["certificates"])
        def delete_certificate(certificate_id: str, user: User = Depends(current_user)):
            self.certificate_service.delete_certificate(certificate_id, user.id)

        @self.app.post("/certificates/{certificate_id}/submit", tags=["certificates"])
        def submit_certificate(certificate_id: str, user: User = Depends(current_user)):
            return certificate_to_response(self.certificate_service.submit_certificate(certificate_id, user.id))

        @self.app.post("/certificates/{certificate_id}/approve", tags=["certificates"])
        def approve_certificate(certificate_id: str, request: ApprovalDecisionRequest,
                                user: User = Depends(current_user)):
            return certificate_to_response(self.certificate_service.approve_certificate(
                certificate_id, user.id, request.step_id, request.comments
            ))

        @self.app.post("/certificates/{certificate_id}/reject", tags=["certificates"])
        def reject_certificate(certificate_id: str, request: ApprovalDecisionRequest,
                               user: User = Depends(current_user)):
            return certificate_to_response(self.certificate_service.reject_certificate(
                certificate_id, user.id, request.step_id, request.reason
            ))

        @self.app.post("/certificates/{certificate_id}/issue", tags=["certificates"])
        def issue_certificate(certificate_id: str, user: User = Depends(current_user)):
            return certificate_to_response(self.certificate_service.issue_certificate(certificate_id, user.id))

        @self.app.post("/certificates/{certificate_id}/revoke", tags=["certificates"])
        def revoke_certificate(certificate_id: str, request: ReasonRequest, user: User = Depends(current_user)):
            return certificate_to_response(
                self.certificate_service.revoke_certificate(certificate_id, user.id, request.reason)
            )

        @self.app.post("/certificates/{certificate_id}/share", status_code=201, tags=["certificates"])
        def share_certificate(certificate_id: str, request: ShareRequest, user: User = Depends(current_user)):
            return self.certificate_service.create_share_token(
                certificate_id, user.id, request.validity_days, request.password, request.max_access
            )

        @self.app.get("/certificates/{certificate_id}/history", tags=["certificates"])
        def certificate_history(certificate_id: str, user: User = Depends(current_user)):
            self._accessible_certificate(certificate_id, user)
            return self.certificate_service.get_certificate_history(certificate_id)

        # Клиентские запросы на сертификаты

        @self.app.post("/requests", status_code=201, tags=["requests"])
        def create_request(request: ClientRequestCreate, user: User = Depends(current_user)):
            """Создание черновика запроса"""
            return self.request_service.create_request(user.id, request)

        @self.app.get("/requests", tags=["requests"])
        def list_requests(status: Optional[RequestStatus] = None, user: User = Depends(current_user)):
            """Свои запросы; CA видит назначенные, администратор все"""
            return self.request_service.get_requests_for_user(user.id, status)

        @self.app.get("/requests/{request_id}", tags=["requests"])
        def get_request(request_id: str, user: User = Depends(current_user)):
            return self.request_service.get_request_for_user(request_id, user.id)

        @self.app.patch("/requests/{request_id}", tags=["requests"])
        def update_request(request_id: str, update: ClientRequestUpdate, user: User = Depends(current_user)):
            return self.request_service.update_request(request_id, user.id, update)

        @self.app.post("/requests/{request_id}/submit", tags=["requests"])
        def submit_request(request_id: str, user: User = Depends(current_user)):
            return self.request_service.submit_request(request_id, user.id)

        @self.app.post("/requests/{request_id}/review", tags=["requests"])
        def review_request(request_id: str, request: ReviewRequest, user: User = Depends(current_user)):
            return self.request_service.review_request(
                request_id, user.id, request.action, request.comments, request.changes
            )

        @self.app.post("/requests/{request_id}/confirm", tags=["requests"])
        def confirm_request(request_id: str, user: User = Depends(current_user)):
            """Подтверждение клиентом и выпуск сертификата"""
            return self.request_service.confirm_request(request_id, user.id)

        @self.app.post("/requests/{request_id}/cancel", tags=["requests"])
        def cancel_request(request_id: str, request: ReasonRequest, user: User = Depends(current_user)):
            return self.request_service.cancel_request(request_id, user.id, request.reason)

        # Документы

        @self.app.post("/documents", status_code=201, tags=["documents"])
        def upload_document(request: DocumentUploadRequest, user: User = Depends(current_user)):
            try:
                content = base64.b64decode(request.content_base64, validate=True)
            except (binascii.Error, ValueError):
                raise FileValidationError("File content is not valid base64")
            return self.document_service.upload_document(user.id, request.file_name, content, request.metadata)

        @self.app.get("/documents", tags=["documents"])
        def list_documents(
                mine: bool = True,
                doc_type: Optional[str] = None,
                status: Optional[str] = None,
                search: Optional[str] = None,
                user: User = Depends(current_user)
        ):
            """Свои документы; mine=false для CA и администратора"""
            if mine:
                return self.document_service.search_documents(doc_type, status, search, uploader_id=user.id)
            if not user.can_issue_certificates:
                raise PermissionDeniedError("Only certificate authorities and administrators can list all documents")
            return self.document_service.search_documents(doc_type, status, search)

        @self.app.get("/documents/{document_id}", tags=["documents"])
        def get_document(document_id: str, user: User = Depends(current_user)):
            document = self.document_service.get_document(document_id)
            content = self.document_service.get_document_content(document_id, user.id)
            data = document.model_dump(mode="json")
            data["content_base64"] = base64.b64encode(content).decode("ascii")
            return data

        @self.app.post("/documents/{document_id}/verify", tags=["documents"])
        def verify_document(document_id: str, request: CommentsRequest, user: User = Depends(current_user)):
            return self.document_service.verify_document(document_id, user.id, request.comments)

        @self.app.post("/documents/{document_id}/reject", tags=["documents"])
        def reject_document(document_id: str, request: ReasonRequest, user: User = Depends(current_user)):
            return self.document_service.reject_document(document_id, user.id, request.reason)

        @self.app.delete("/documents/{document_id}", status_code=204, tags=["documents"])
        def delete_document(document_id: str, user: User = Depends(current_user)):
            self.document_service.delete_document(document_id, user.id)

        # Уведомления

        @self.app.get("/notifications", tags=["notifications"])
        def list_notifications(unread_only: bool = False, limit: int = Query(50, ge=1, le=500),
                               user: User = Depends(current_user)):
            return self.certificate_service.get_notifications(user.id, unread_only, limit)

        @self.app.post("/notifications/{notification_id}/read", status_code=204, tags=["notifications"])
        def mark_notification_read(notification_id: str, user: User = Depends(current_user)):
            self.certificate_service.mark_notification_read(notification_id, user.id)

        # Администрирование

        @self.app.get("/admin/users", tags=["admin"])
        def list_users(user_type: Optional[UserType] = None, status: Optional[str] = None,
                       search: Optional[str] = None, admin: User = Depends(admin_user)):
            return self.admin_service.get_users(user_type, status, search)

        @self.app.get("/admin/users/{user_id}", tags=["admin"])
        def user_details(user_id: str, admin: User = Depends(admin_user)):
            return self.admin_service.get_user_details(user_id)

        @self.app.post("/admin/users/{user_id}/suspend", tags=["admin"])
        def suspend_user(user_id: str, request: ReasonRequest, admin: User = Depends(admin_user)):
            return self.admin_service.suspend_user(admin.id, user_id, request.reason)

        @self.app.post("/admin/users/{user_id}/reactivate", tags=["admin"])
        def reactivate_user(user_id: str, request: CommentsRequest, admin: User = Depends(admin_user)):
            return self.admin_service.reactivate_user(admin.id, user_id, request.comments)

        @self.app.delete("/admin/users/{user_id}", tags=["admin"])
        def delete_user(user_id: str, reason: Optional[str] = None, admin: User = Depends(admin_user)):
            return self.admin_service.delete_user(admin.id, user_id, reason)

        @self.app.post("/admin/users/bulk-status", tags=["admin"])
        def bulk_status(request: BulkStatusRequest, admin: User = Depends(admin_user)):
            return self.admin_service.bulk_update_user_status(admin.id, request.user_ids,
                                                              request.status, request.reason)

        @self.app.get("/admin/applications", tags=["admin"])
        def role_applications(status: str = "pending", search: Optional[str] = None,
                              admin: User = Depends(admin_user)):
            return self.admin_service.get_role_applications(status, search)

        @self.app.post("/admin/applications/{user_id}/approve", tags=["admin"])
        def approve_application(user_id: str, request: CommentsRequest, admin: User = Depends(admin_user)):
            return self.admin_service.approve_application(admin.id, user_id, request.comments)

        @self.app.post("/admin/applications/{user_id}/reject", tags=["admin"])
        def reject_application(user_id: str, request: ReasonRequest, admin: User = Depends(admin_user)):
            return self.admin_service.reject_application(admin.id, user_id, request.reason)

        @self.app.get("/admin/stats", tags=["admin"])
        def admin_statistics(admin: User = Depends(admin_user)):
            return {
                "users": self.admin_service.get_user_statistics(),
                "certificates": self.admin_service.get_certificate_statistics(),
                "documents": self.admin_service.get_document_statistics(),
            }

        @self.app.get("/admin/activities", tags=["admin"])
        def admin_activities(admin_id: Optional[str] = None, action: Optional[str] = None,
                             limit: int = Query(100, ge=1, le=1000), admin: User = Depends(admin_user)):
            return self.admin_service.get_admin_activities(admin_id, action, limit)

        @self.app.get("/admin/health", tags=["admin"])
        def system_health(admin: User = Depends(admin_user)):
            return self.admin_service.get_system_health()

        # Отчеты

        @self.app.get("/admin/reports/system-overview", tags=["reports"])
        def system_overview_report(export_csv: bool = False, admin: User = Depends(admin_user)):
            return self._with_export(self.reports_service.generate_system_overview_report(), export_csv)

        @self.app.get("/admin/reports/ca-performance", tags=["reports"])
        def ca_performance_report(export_csv: bool = False, admin: User = Depends(admin_user)):
            return self._with_export(self.reports_service.generate_ca_performance_report(), export_csv)

        @self.app.get("/admin/reports/audit-trail", tags=["reports"])
        def audit_trail_report(
                start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None,
                user_id: Optional[str] = None,
                action: Optional[str] = None,
                export_csv: bool = False,
                admin: User = Depends(admin_user)
        ):
            report = self.reports_service.generate_audit_trail_report(
                to_local_naive(start_date), to_local_naive(end_date), user_id, action
            )
            return self._with_export(report, export_csv)

        # Резервные копии

        @self.app.get("/admin/backups", tags=["backups"])
        def backup_history(limit: int = Query(50, ge=1, le=500), admin: User = Depends(admin_user)):
            return self.backup_service.get_backup_history(limit)

        @self.app.post("/admin/backups", status_code=201, tags=["backups"])
        def create_backup(request: BackupRequest, admin: User = Depends(admin_user)):
            return self.backup_service.create_full_backup(admin.id, request.description)

        @self.app.post("/admin/backups/incremental", status_code=201, tags=["backups"])
        def create_incremental_backup(request: IncrementalBackupRequest, admin: User = Depends(admin_user)):
            return self.backup_service.create_incremental_backup(admin.id, request.last_backup_time)

        @self.app.post("/admin/backups/cleanup", tags=["backups"])
        def cleanup_backups(retention_days: Optional[int] = Query(None, ge=1),
                            max_files: Optional[int] = Query(None, ge=1),
                            admin: User = Depends(admin_user)):
            return {"deleted": self.backup_service.cleanup_old_backups(retention_days, max_files)}

        @self.app.get("/admin/backups/{backup_id}", tags=["backups"])
        def backup_status(backup_id: str, admin: User = Depends(admin_user)):
            return self.backup_service.get_backup_status(backup_id)

        @self.app.get("/admin/backups/{backup_id}/download", tags=["backups"])
        def backup_download_url(backup_id: str, admin: User = Depends(admin_user)):
            result = self.backup_service.generate_backup_download_url(backup_id)
            return JSONResponse(status_code=200 if result["success"] else 404, content=result)

        @self.app.post("/admin/backups/{backup_id}/restore", tags=["backups"])
        def restore_backup(backup_id: str, request: RestoreRequest, admin: User = Depends(admin_user)):
            return self.backup_service.restore_from_backup(backup_id, admin.id,
                                                           request.create_backup_before_restore)

        @self.app.delete("/admin/backups/{backup_id}", status_code=204, tags=["backups"])
        def delete_backup(backup_id: str, admin: User = Depends(admin_user)):
            self.backup_service.delete_backup(backup_id)

        @self.app.get("/health", tags=["monitoring"])
        def health_check():
            """Проверка здоровья API, БД и хранилища"""
            health = {
                "status": "healthy",
                "timestamp": datetime.now().isoformat(),
                "components": {"api": {"status": "healthy", "message": "API is running"}}
            }

            if self.db_manager.health_check():
                health["components"]["database"] = {"status": "healthy", "message": "Database connection is active"}
            else:
                health["components"]["database"] = {"status": "unhealthy", "message": "Database is unavailable"}

            storage_path = self.file_storage.base_path
            if storage_path.exists() and storage_path.is_dir():
                health["components"]["file_storage"] = {"status": "healthy",
                                                        "message": f"Storage directory exists: {storage_path}"}
            else:
                health["components"]["file_storage"] = {"status": "unhealthy",
                                                        "message": "Storage directory not found"}

            all_healthy = all(c["status"] == "healthy" for c in health["components"].values())
            health["status"] = "healthy" if all_healthy else "unhealthy"
            return JSONResponse(content=health, status_code=200 if all_healthy else 503)

    def _with_export(self, report: Dict[str, Any], export_csv: bool) -> Dict[str, Any]:
        if export_csv:
            report["csvPath"] = self.reports_service.export_report_to_csv(report)
        return report
