"""
Pydantic модели для валидации и сериализации данных репозитория сертификатов.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, validator
from config.settings import get_settings


class UserType(str, Enum):
    """Роль пользователя."""
    USER = "user"
    CLIENT = "client"
    CA = "ca"
    ADMIN = "admin"


class UserStatus(str, Enum):
    """Статус учетной записи."""
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class CertificateStatus(str, Enum):
    """Статус сертификата."""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ISSUED = "issued"
    REVOKED = "revoked"
    EXPIRED = "expired"


class CertificateType(str, Enum):
    """Тип сертификата."""
    ACADEMIC = "academic"
    PROFESSIONAL = "professional"
    ACHIEVEMENT = "achievement"
    COMPLETION = "completion"
    PARTICIPATION = "participation"
    RECOGNITION = "recognition"
    CUSTOM = "custom"


class ApprovalStatus(str, Enum):
    """Статус шага согласования."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentType(str, Enum):
    """Тип документа."""
    CERTIFICATE = "certificate"
    DIPLOMA = "diploma"
    TRANSCRIPT = "transcript"
    LICENSE = "license"
    IDENTIFICATION = "identification"
    OTHER = "other"


class DocumentStatus(str, Enum):
    """Статус документа."""
    UPLOADED = "uploaded"
    PENDING = "pending"
    PROCESSING = "processing"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RequestStatus(str, Enum):
    """Статус клиентского запроса на сертификат."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    # CA одобрил, ждет подтверждения клиента
    UNDER_REVIEW = "under_review"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    ISSUED = "issued"
    CANCELLED = "cancelled"


class ReviewAction(str, Enum):
    """Решение CA по клиентскому запросу."""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"


class BackupType(str, Enum):
    """Тип резервной копии."""
    FULL_SYSTEM = "full_system"
    INCREMENTAL = "incremental"


def _new_id() -> str:
    return str(uuid.uuid4())


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Приводит время с часовым поясом к локальному времени без пояса."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class User(BaseModel):
    """Модель пользователя. Хэш пароля в модель не попадает."""
    id: str
    email: str
    display_name: str = ""
    user_type: UserType = UserType.USER
    status: UserStatus = UserStatus.PENDING
    organization_name: Optional[str] = None
    business_license: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    phone_number: Optional[str] = None
    status_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    suspended_by: Optional[str] = None
    suspended_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_admin(self) -> bool:
        return self.user_type == UserType.ADMIN

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def can_issue_certificates(self) -> bool:
        """Выпускать сертификаты могут только активные CA и администраторы."""
        return self.is_active and self.user_type in (UserType.CA, UserType.ADMIN)

    class Config:
        """Конфигурация модели."""
        from_attributes = True


class RegistrationRequest(BaseModel):
    """Модель запроса на регистрацию."""
    email: str = Field(..., min_length=3, max_length=255, description="Университетский email")
    password: str = Field(..., description="Пароль")
    display_name: str = Field(..., min_length=1, max_length=255, description="Отображаемое имя")
    user_type: UserType = Field(default=UserType.USER, description="Запрашиваемая роль")
    organization_name: Optional[str] = None
    business_license: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    phone_number: Optional[str] = None

    @validator('email')
    def normalize_email(cls, v):
        return v.strip().lower()

    @validator('display_name')
    def strip_display_name(cls, v):
        return v.strip()

    class Config:
        """Конфигурация модели."""
        json_schema_extra = {
            "example": {
                "email": "ali.hassan@upm.edu.my",
                "password": "Str0ngPass",
                "display_name": "Ali Hassan",
                "user_type": "ca",
                "organization_name": "Faculty of Computer Science"
            }
        }


class ApprovalStep(BaseModel):
    """Шаг согласования сертификата."""
    id: str = Field(default_factory=_new_id)
    step_name: str
    approver_id: Optional[str] = None
    approver_name: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_at: Optional[datetime] = None
    comments: Optional[str] = None
    order: int = 0


class ShareToken(BaseModel):
    """Ссылка для доступа к сертификату третьим лицам."""
    token: str
    certificate_id: str
    shared_by: str
    created_at: datetime = Field(default_factory=datetime.now)
    expires_at: datetime
    password: Optional[str] = None
    max_access: int = 100
    current_access: int = 0
    is_active: bool = True

    @property
    def is_expired(self) -> bool:
        return datetime.now() > self.expires_at

    @property
    def is_exhausted(self) -> bool:
        return self.current_access >= self.max_access

    @property
    def is_valid(self) -> bool:
        """Ссылка активна, не истекла и лимит обращений не исчерпан."""
        return self.is_active and not self.is_expired and not self.is_exhausted


class Certificate(BaseModel):
    """Модель сертификата со статусом, вычисляемым на момент чтения."""
    id: str
    template_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    type: CertificateType = CertificateType.ACADEMIC
    recipient_id: Optional[str] = None
    recipient_email: str
    recipient_name: str = ""
    issuer_id: str
    issuer_name: str = ""
    organization_name: Optional[str] = None
    status: CertificateStatus = CertificateStatus.DRAFT
    verification_code: str
    verification_id: str
    qr_code: Optional[str] = None
    digital_signature: Optional[str] = None
    hash: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    is_verified: bool = False
    is_revoked: bool = False
    revocation_reason: Optional[str] = None
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    requires_approval: bool = False
    approval_steps: List[ApprovalStep] = Field(default_factory=list)
    current_approval_step: Optional[str] = None
    share_tokens: List[ShareToken] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    verification_count: int = 0
    access_count: int = 0
    share_count: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_expired(self) -> bool:
        """Проверяет, истек ли срок действия сертификата."""
        return self.expires_at is not None and datetime.now() > self.expires_at

    @property
    def is_active(self) -> bool:
        """Сертификат выпущен, не отозван и не истек."""
        return self.status == CertificateStatus.ISSUED and not self.is_revoked and not self.is_expired

    @property
    def days_left(self) -> Optional[int]:
        """Количество дней до истечения срока или None для бессрочных."""
        if self.expires_at is None:
            return None
        return max((self.expires_at - datetime.now()).days, 0)

    @property
    def is_near_expiry(self) -> bool:
        days = self.days_left
        return days is not None and not self.is_expired and 0 < days <= get_settings().near_expiry_days

    @property
    def effective_status(self) -> CertificateStatus:
        """Статус с учетом истечения срока действия."""
        if self.status == CertificateStatus.ISSUED and self.is_expired:
            return CertificateStatus.EXPIRED
        return self.status

    @property
    def verification_url(self) -> str:
        return f"{get_settings().verification_base_url}?id={self.id}&code={self.verification_code}"

    @property
    def status_info(self) -> dict:
        """Возвращает детальную информацию о статусе сертификата."""
        status = self.effective_status
        texts = {
            CertificateStatus.DRAFT: "Draft",
            CertificateStatus.PENDING: "Pending approval",
            CertificateStatus.APPROVED: "Approved",
            CertificateStatus.REJECTED: "Rejected",
            CertificateStatus.ISSUED: "Valid",
            CertificateStatus.REVOKED: "Revoked",
            CertificateStatus.EXPIRED: "Expired",
        }
        text = texts[status]
        if status == CertificateStatus.ISSUED and self.is_near_expiry:
            text = f"Expires in {self.days_left} days"

        return {
            "status": status.value,
            "text": text,
            "is_expired": self.is_expired,
            "is_near_expiry": self.is_near_expiry,
            "days_left": self.days_left
        }

    def to_dict(self) -> dict:
        """Конвертирует объект в словарь для JSON сериализации."""
        data = self.model_dump(mode="json", exclude={"share_tokens"})
        status = self.status_info
        data.update({
            "effective_status": status["status"],
            "status_text": status["text"],
            "is_expired": status["is_expired"],
            "is_active": self.is_active,
            "days_left": status["days_left"],
            "verification_url": self.verification_url
        })
        return data

    class Config:
        """Конфигурация модели."""
        from_attributes = True
        json_schema_extra = {
            "example": {
                "id": "0b6f3c1e-52f0-4a8e-9d1c-3f4a5b6c7d8e",
                "title": "Bachelor of Computer Science",
                "type": "academic",
                "recipient_email": "student@upm.edu.my",
                "issuer_id": "ca-user-id",
                "status": "issued",
                "verification_code": "K7M2Q9XA",
                "verification_id": "9F2C4B7A1D3E5F60"
            }
        }


class CertificateRequest(BaseModel):
    """Модель запроса на создание сертификата."""
    title: str = Field(..., max_length=255, description="Название сертификата")
    description: Optional[str] = None
    type: CertificateType = CertificateType.ACADEMIC
    recipient_id: Optional[str] = None
    recipient_email: str = Field(..., description="Email получателя")
    recipient_name: str = ""
    template_id: Optional[str] = None
    organization_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    requires_approval: bool = False
    approval_steps: List[ApprovalStep] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @validator('recipient_email')
    def normalize_recipient_email(cls, v):
        return v.strip().lower()

    @validator('expires_at')
    def normalize_expires_at(cls, v):
        return to_local_naive(v)

    class Config:
        """Конфигурация модели."""
        json_schema_extra = {
            "example": {
                "title": "Certificate of Completion: Data Science Bootcamp",
                "type": "completion",
                "recipient_email": "student@upm.edu.my",
                "recipient_name": "Nur Aisyah",
                "expires_at": "2027-12-31T00:00:00"
            }
        }


class CertificateUpdate(BaseModel):
    """Изменяемые поля сертификата."""
    title: Optional[str] = None
    description: Optional[str] = None
    recipient_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    @validator('expires_at')
    def normalize_expires_at(cls, v):
        return to_local_naive(v)


class CertificateFilter(BaseModel):
    """Модель фильтра поиска сертификатов."""
    status: Optional[CertificateStatus] = None
    type: Optional[CertificateType] = None
    issuer_id: Optional[str] = None
    recipient_id: Optional[str] = None
    search: Optional[str] = Field(None, description="Поиск по названию и получателю")
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


class CertificateTemplate(BaseModel):
    """Шаблон сертификата."""
    id: str
    name: str
    description: Optional[str] = None
    type: CertificateType = CertificateType.ACADEMIC
    organization_name: Optional[str] = None
    created_by: Optional[str] = None
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    design: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    class Config:
        from_attributes = True


class TemplateRequest(BaseModel):
    """Запрос на создание шаблона."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: CertificateType = CertificateType.ACADEMIC
    organization_name: Optional[str] = None
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    design: Dict[str, Any] = Field(default_factory=dict)


class CertificateTransaction(BaseModel):
    """Запись истории изменений сертификата."""
    id: str
    certificate_id: str
    action: str
    performed_by: str
    performed_at: datetime
    details: Optional[dict] = None

    class Config:
        from_attributes = True


class VerificationResult(BaseModel):
    """Результат проверки сертификата."""
    is_valid: bool
    verification_code: str
    certificate: Optional[Certificate] = None
    reason: Optional[str] = None
    method: str = "manual_input"
    verified_at: datetime = Field(default_factory=datetime.now)


class Document(BaseModel):
    """Метаданные загруженного документа."""
    id: str
    name: str
    description: Optional[str] = None
    type: DocumentType = DocumentType.OTHER
    status: DocumentStatus = DocumentStatus.UPLOADED
    uploader_id: str
    uploader_name: str = ""
    file_name: str
    mime_type: str
    file_size: int = 0
    storage_path: str
    hash: Optional[str] = None
    verifier_id: Optional[str] = None
    verified_at: Optional[datetime] = None
    verification_comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    associated_certificate_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    uploaded_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def file_size_formatted(self) -> str:
        if self.file_size < 1024:
            return f"{self.file_size} B"
        if self.file_size < 1024 * 1024:
            return f"{self.file_size / 1024:.1f} KB"
        return f"{self.file_size / (1024 * 1024):.1f} MB"

    class Config:
        from_attributes = True


class DocumentMetadata(BaseModel):
    """Описание загружаемого документа."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: DocumentType = DocumentType.OTHER
    associated_certificate_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class RequestHistoryEntry(BaseModel):
    """Запись истории клиентского запроса."""
    id: str = Field(default_factory=_new_id)
    reviewer_id: str
    reviewer_name: str = ""
    reviewer_role: str
    action: str
    comments: Optional[str] = None
    changes: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ClientRequest(BaseModel):
    """
    Запрос клиента на выпуск сертификата.

    Клиент создает черновик и отправляет его; система назначает CA,
    который одобряет, отклоняет или возвращает запрос на доработку.
    После подтверждения клиентом выпускается сертификат.
    """
    id: str
    client_id: str
    client_name: str = ""
    client_email: str
    organization_name: str
    certificate_type: CertificateType = CertificateType.ACADEMIC
    title: str
    description: str
    purpose: str
    requested_data: Dict[str, Any] = Field(default_factory=dict)
    attachment_urls: List[str] = Field(default_factory=list)
    assigned_ca_id: Optional[str] = None
    assigned_ca_name: Optional[str] = None
    assigned_at: Optional[datetime] = None
    status: RequestStatus = RequestStatus.DRAFT
    history: List[RequestHistoryEntry] = Field(default_factory=list)
    current_reviewer_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    change_request_comments: Optional[str] = None
    approved_by: Optional[str] = None
    certificate_id: Optional[str] = None
    priority: int = 3
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None

    @property
    def can_edit(self) -> bool:
        return self.status in (RequestStatus.DRAFT, RequestStatus.CHANGES_REQUESTED)

    @property
    def is_active(self) -> bool:
        return self.status not in (RequestStatus.CANCELLED, RequestStatus.REJECTED, RequestStatus.ISSUED)

    @property
    def requires_review(self) -> bool:
        return self.status == RequestStatus.SUBMITTED

    class Config:
        from_attributes = True


class ClientRequestCreate(BaseModel):
    """Данные нового клиентского запроса."""
    title: str
    description: str
    purpose: str
    certificate_type: CertificateType = CertificateType.ACADEMIC
    organization_name: Optional[str] = Field(None, description="По умолчанию организация клиента")
    requested_data: Dict[str, Any] = Field(default_factory=dict)
    attachment_urls: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    priority: int = Field(3, ge=1, le=5, description="1 - низкий, 3 - обычный, 5 - высокий")

    class Config:
        """Конфигурация модели."""
        json_schema_extra = {
            "example": {
                "title": "Industrial Training Completion",
                "description": "Twelve week placement at the Faculty of Engineering workshop",
                "purpose": "Graduation requirement",
                "certificate_type": "completion",
                "organization_name": "Faculty of Engineering"
            }
        }


class ClientRequestUpdate(BaseModel):
    """Изменяемые поля клиентского запроса."""
    title: Optional[str] = None
    description: Optional[str] = None
    purpose: Optional[str] = None
    requested_data: Optional[Dict[str, Any]] = None
    attachment_urls: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    priority: Optional[int] = Field(None, ge=1, le=5)


class Activity(BaseModel):
    """Запись журнала действий пользователей."""
    id: str
    type: str
    action: str
    user_id: Optional[str] = None
    certificate_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    class Config:
        from_attributes = True


class AdminActivity(BaseModel):
    """Запись журнала действий администраторов (только добавление)."""
    id: str
    action: str
    admin_id: str
    target_user_id: Optional[str] = None
    target_user_email: Optional[str] = None
    target_user_name: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    class Config:
        from_attributes = True


class Notification(BaseModel):
    """Уведомление пользователя."""
    id: str
    user_id: str
    type: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


class BackupRecord(BaseModel):
    """Запись о резервной копии."""
    id: str
    type: BackupType
    initiated_by: str
    description: Optional[str] = None
    storage_path: str
    download_url: str
    size: int = 0
    statistics: Dict[str, Any] = Field(default_factory=dict)
    version: str = "1.0"
    created_at: datetime

    @property
    def size_formatted(self) -> str:
        from .backup_service import format_file_size
        return format_file_size(self.size)

    class Config:
        from_attributes = True
