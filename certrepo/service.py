"""
Основная бизнес-логика для работы с сертификатами: жизненный цикл,
проверка по коду, ссылки доступа, шаблоны и статистика.
"""

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from config.settings import get_settings
from .models import (
    ApprovalStatus, Certificate, CertificateFilter, CertificateRequest, CertificateStatus,
    CertificateTemplate, CertificateTransaction, CertificateUpdate, Notification, ShareToken,
    TemplateRequest, User, UserType, VerificationResult
)
from .database import (
    AuditRepository, CertificateRepository, DatabaseManager, NotificationRepository,
    TemplateRepository, UserRepository, get_db_manager
)
from .storage import FileStorage, get_file_storage
from .generator import VerificationCodeGenerator
from .validators import DataValidator
from .lifecycle import ensure_transition
from .security import get_password_hash, verify_password
from .exceptions import *

# Настройка логирования
logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (CertificateStatus.DRAFT, CertificateStatus.PENDING)
DELETABLE_STATUSES = (CertificateStatus.DRAFT, CertificateStatus.PENDING, CertificateStatus.REJECTED)


class CertificateService:
    """Сервис для работы с сертификатами."""

    def __init__(self, db_manager: DatabaseManager = None, file_storage: FileStorage = None):
        """
        Инициализация сервиса.

        Args:
            db_manager: Менеджер БД (по умолчанию глобальный)
            file_storage: Файловое хранилище (по умолчанию глобальное)
        """
        db_manager = db_manager or get_db_manager()
        self.certificate_repo = CertificateRepository(db_manager)
        self.user_repo = UserRepository(db_manager)
        self.template_repo = TemplateRepository(db_manager)
        self.audit_repo = AuditRepository(db_manager)
        self.notification_repo = NotificationRepository(db_manager)
        self.file_storage = file_storage or get_file_storage()
        self.code_generator = VerificationCodeGenerator()
        self.validator = DataValidator()
        self.settings = get_settings()

    def create_certificate(self, request: CertificateRequest, issuer_id: str) -> Certificate:
        """
        Создает новый сертификат.

        Статус pending, если требуется согласование, иначе draft.

        Args:
            request: Запрос на создание сертификата
            issuer_id: ID выпускающего пользователя (CA или администратор)

        Returns:
            Certificate: Созданный сертификат

        Raises:
            ValidationError: При ошибке валидации
            PermissionDeniedError: Если пользователь не может выпускать сертификаты
            GenerationError: При ошибке генерации кода
            DatabaseError: При ошибке БД
        """
        logger.info(f"Создание сертификата '{request.title}' пользователем {issuer_id}")

        try:
            errors = self.validator.validate_certificate(request.title, request.recipient_email)
            if errors:
                raise ValidationError("; ".join(errors))

            if request.requires_approval and not request.approval_steps:
                raise ValidationError("Approval steps are required when approval is required")

            issuer = self._require_user(issuer_id)
            if not issuer.can_issue_certificates:
                raise PermissionDeniedError(
                    "Only active certificate authorities and administrators can create certificates"
                )

            template_id = request.template_id
            if template_id:
                if not self.template_repo.get_template(template_id):
                    raise TemplateNotFoundError(f"Template {template_id} not found")
            else:
                template_id = self.get_default_template_id(issuer_id)

            recipient_id = request.recipient_id
            if not recipient_id:
                recipient = self.user_repo.get_user_by_email(request.recipient_email)
                recipient_id = recipient.id if recipient else None

            certificate_id = str(uuid.uuid4())
            verification_id = self.code_generator.generate_verification_id()
            verification_code = self.code_generator.generate_verification_code(
                self.certificate_repo.get_existing_codes()
            )
            now = datetime.now()

            steps = sorted(request.approval_steps, key=lambda step: step.order)
            steps = [step.model_copy(update={"status": ApprovalStatus.PENDING, "approved_at": None})
                     for step in steps]

            status = CertificateStatus.PENDING if request.requires_approval else CertificateStatus.DRAFT
            metadata = dict(request.metadata)
            metadata.update({
                "createdBy": issuer_id,
                "verificationUrl": (
                    f"{self.settings.verification_base_url}?id={certificate_id}&code={verification_code}"
                ),
            })

            certificate_data = {
                "id": certificate_id,
                "template_id": template_id,
                "title": request.title.strip(),
                "description": request.description,
                "type": request.type,
                "recipient_id": recipient_id,
                "recipient_email": request.recipient_email,
                "recipient_name": request.recipient_name,
                "issuer_id": issuer.id,
                "issuer_name": issuer.display_name,
                "organization_name": request.organization_name or issuer.organization_name,
                "status": status,
                "verification_code": verification_code,
                "verification_id": verification_id,
                "qr_code": self.code_generator.generate_qr_data(
                    self.settings.verification_base_url, certificate_id, verification_id
                ),
                "hash": self.code_generator.generate_hash(
                    certificate_id, verification_id, request.title, now
                ),
                "expires_at": request.expires_at,
                "requires_approval": request.requires_approval,
                "approval_steps": [step.model_dump(mode="json") for step in steps],
                "current_approval_step": steps[0].id if steps else None,
                "share_tokens": [],
                "tags": list(request.tags),
                "metadata": metadata,
                "created_at": now,
                "updated_at": now,
            }

            certificate = self.certificate_repo.create_certificate(certificate_data, issuer_id)

            self._log_activity("certificate_created", issuer_id, certificate.id,
                               {"title": certificate.title, "status": certificate.status.value})
            self._notify(
                certificate.recipient_id,
                "certificate_created",
                "New certificate",
                f"A certificate '{certificate.title}' has been created for you.",
                {"certificateId": certificate.id}
            )

            logger.info(f"Сертификат {certificate.id} создан, код {verification_code}")
            return certificate

        except Exception as e:
            logger.error(f"Ошибка создания сертификата: {e}")
            if isinstance(e, CertificateRepositoryError):
                raise
            raise DatabaseError(f"Unexpected error while creating certificate: {e}")

    def submit_certificate(self, certificate_id: str, user_id: str) -> Certificate:
        """
        Отправляет черновик на согласование (draft → pending).

        Raises:
            InvalidStatusError: Если сертификат не черновик
        """
        logger.info(f"Отправка сертификата {certificate_id} на согласование пользователем {user_id}")
        user = self._require_user(user_id)

        def change(certificate: Certificate) -> Dict:
            self._ensure_can_manage(certificate, user)
            ensure_transition(certificate.status, CertificateStatus.PENDING)
            pending_steps = [s for s in certificate.approval_steps if s.status == ApprovalStatus.PENDING]
            return {
                "status": CertificateStatus.PENDING,
                "current_approval_step": pending_steps[0].id if pending_steps else None,
            }

        return self._apply(certificate_id, change, "submitted", user_id)

    def approve_certificate(self, certificate_id: str, approver_id: str, step_id: str,
                            comments: str = None) -> Certificate:
        """
        Согласует шаг. Сертификат становится approved, когда согласованы все шаги.

        Args:
            certificate_id: ID сертификата
            approver_id: ID согласующего
            step_id: ID шага согласования
            comments: Комментарий

        Returns:
            Certificate: Обновленный сертификат

        Raises:
            InvalidStatusError: Если сертификат не ожидает согласования или шаг уже обработан
            PermissionDeniedError: Если шаг назначен другому пользователю
        """
        logger.info(f"Согласование шага {step_id} сертификата {certificate_id} пользователем {approver_id}")
        approver = self._require_user(approver_id)

        def change(certificate: Certificate) -> Dict:
            step = self._take_pending_step(certificate, step_id, approver)
            step.status = ApprovalStatus.APPROVED
            step.approved_at = datetime.now()
            step.approver_id = approver.id
            step.approver_name = approver.display_name
            step.comments = comments

            pending_steps = sorted(
                (s for s in certificate.approval_steps if s.status == ApprovalStatus.PENDING),
                key=lambda s: s.order
            )
            updates = {"approval_steps": [s.model_dump(mode="json") for s in certificate.approval_steps]}
            if pending_steps:
                updates["current_approval_step"] = pending_steps[0].id
            else:
                ensure_transition(certificate.status, CertificateStatus.APPROVED)
                updates["status"] = CertificateStatus.APPROVED
                updates["current_approval_step"] = None
            return updates

        certificate = self._apply(certificate_id, change, "approved_step", approver_id,
                                  {"stepId": step_id, "comments": comments})

        if certificate.status == CertificateStatus.APPROVED:
            self._notify(certificate.issuer_id, "certificate_approved", "Certificate approved",
                         f"Certificate '{certificate.title}' is fully approved and ready to issue.",
                         {"certificateId": certificate.id})
        return certificate

    def reject_certificate(self, certificate_id: str, approver_id: str, step_id: str,
                           reason: str) -> Certificate:
        """
        Отклоняет сертификат на шаге согласования (pending → rejected).

        Raises:
            ValidationError: Если причина не указана
        """
        reason = self.validator.require_reason(reason, "reject a certificate")
        logger.info(f"Отклонение сертификата {certificate_id} пользователем {approver_id}")
        approver = self._require_user(approver_id)

        def change(certificate: Certificate) -> Dict:
            step = self._take_pending_step(certificate, step_id, approver)
            step.status = ApprovalStatus.REJECTED
            step.approved_at = datetime.now()
            step.approver_id = approver.id
            step.approver_name = approver.display_name
            step.comments = reason
            ensure_transition(certificate.status, CertificateStatus.REJECTED)
            return {
                "approval_steps": [s.model_dump(mode="json") for s in certificate.approval_steps],
                "status": CertificateStatus.REJECTED,
                "current_approval_step": None,
            }

        certificate = self._apply(certificate_id, change, "rejected", approver_id,
                                  {"stepId": step_id, "reason": reason})
        self._notify(certificate.issuer_id, "certificate_rejected", "Certificate rejected",
                     f"Certificate '{certificate.title}' was rejected: {reason}",
                     {"certificateId": certificate.id})
        return certificate

    def issue_certificate(self, certificate_id: str, issuer_id: str) -> Certificate:
        """
        Выпускает сертификат (draft/pending/approved → issued).

        Сертификат, требующий согласования, CA может выпустить только после
        согласования всех шагов; администратор может выпустить его из pending.

        Raises:
            PermissionDeniedError: Если пользователь не CA/администратор
            InvalidStatusError: Если переход недопустим
        """
        logger.info(f"Выпуск сертификата {certificate_id} пользователем {issuer_id}")
        issuer = self._require_user(issuer_id)
        if not issuer.can_issue_certificates:
            raise PermissionDeniedError("Only certificate authorities and administrators can issue certificates")

        def change(certificate: Certificate) -> Dict:
            self._ensure_can_manage(certificate, issuer)
            ensure_transition(certificate.status, CertificateStatus.ISSUED)
            if (certificate.requires_approval and certificate.status != CertificateStatus.APPROVED
                    and not issuer.is_admin):
                raise InvalidStatusError("Certificate requires approval before issuing")
            now = datetime.now()
            return {
                "status": CertificateStatus.ISSUED,
                "issued_at": now,
                "completed_at": now,
                "is_verified": True,
                "current_approval_step": None,
            }

        certificate = self._apply(certificate_id, change, "issued", issuer_id)

        # Сохраняем выгрузку в файловое хранилище
        try:
            path = self.file_storage.save_certificate(certificate)
            logger.info(f"Сертификат {certificate.id} сохранен в файловое хранилище: {path}")
        except Exception as e:
            logger.warning(f"Ошибка сохранения сертификата в файл: {e}")

        self._log_activity("certificate_issued", issuer_id, certificate.id, {"title": certificate.title})
        self._notify(certificate.recipient_id, "certificate_issued", "Certificate issued",
                     f"Your certificate '{certificate.title}' has been issued. "
                     f"Verification code: {certificate.verification_code}",
                     {"certificateId": certificate.id})
        return certificate

    def revoke_certificate(self, certificate_id: str, revoked_by: str, reason: str) -> Certificate:
        """
        Отзывает выпущенный сертификат. Отзыв необратим.

        Args:
            certificate_id: ID сертификата
            revoked_by: ID пользователя
            reason: Причина отзыва (обязательна)

        Returns:
            Certificate: Отозванный сертификат

        Raises:
            ValidationError: Если причина пустая (ничего не записывается)
            InvalidStatusError: Если сертификат не выпущен
        """
        reason = self.validator.require_reason(reason, "revoke a certificate")
        logger.info(f"Отзыв сертификата {certificate_id} пользователем {revoked_by}")
        user = self._require_user(revoked_by)

        def change(certificate: Certificate) -> Dict:
            self._ensure_can_manage(certificate, user)
            ensure_transition(certificate.status, CertificateStatus.REVOKED)
            return {
                "status": CertificateStatus.REVOKED,
                "is_revoked": True,
                "revocation_reason": reason,
                "revoked_by": revoked_by,
                "revoked_at": datetime.now(),
            }

        certificate = self._apply(certificate_id, change, "revoked", revoked_by, {"reason": reason})

        self._log_activity("certificate_revoked", revoked_by, certificate.id, {"reason": reason})
        self._notify(certificate.recipient_id, "certificate_revoked", "Certificate revoked",
                     f"Your certificate '{certificate.title}' has been revoked. Reason: {reason}",
                     {"certificateId": certificate.id})
        return certificate

    def verify_certificate(self, verification_code: str, verifier_id: str = None,
                           method: str = "manual_input") -> VerificationResult:
        """
        Проверяет сертификат по коду проверки (или по ID).

        Сертификат действителен, только если он выпущен, не отозван и не истек.
        Каждая проверка записывается в журнал; ошибки записи не влияют на результат.
        Цифровая подпись не проверяется.

        Args:
            verification_code: Код проверки или ID сертификата
            verifier_id: ID проверяющего (None для анонимной проверки)
            method: Способ проверки (manual_input, qr_code, share_link, api)

        Returns:
            VerificationResult: Результат проверки

        Raises:
            DatabaseError: Если поиск сертификата не удался
        """
        code = (verification_code or "").strip()
        logger.info(f"Проверка сертификата {code} пользователем {verifier_id}")

        try:
            certificate = self.certificate_repo.get_certificate_by_code(code.upper()) if code else None
            if certificate is None and code:
                certificate = self.certificate_repo.get_certificate_by_id(code)
        except Exception as e:
            logger.error(f"Ошибка поиска сертификата {code}: {e}")
            raise DatabaseError(f"Error while verifying certificate: {e}")

        reason = self._invalid_reason(certificate)
        result = VerificationResult(
            is_valid=reason is None,
            verification_code=code,
            certificate=certificate,
            reason=reason,
            method=method
        )

        if certificate is not None:
            try:
                self.certificate_repo.increment_counters(certificate.id, verification_count=1)
            except Exception as e:
                logger.warning(f"Не удалось увеличить счетчик проверок {certificate.id}: {e}")

        self._record_verification(result, verifier_id)

        logger.info(f"Сертификат {code}: {'действителен' if result.is_valid else reason}")
        return result

    def create_share_token(self, certificate_id: str, shared_by: str, validity_days: int = None,
                           password: str = None, max_access: int = None) -> ShareToken:
        """
        Создает ссылку доступа к действующему сертификату.

        Args:
            certificate_id: ID сертификата
            shared_by: ID пользователя
            validity_days: Срок действия ссылки (по умолчанию из настроек)
            password: Необязательный пароль ссылки
            max_access: Лимит обращений (по умолчанию из настроек)

        Returns:
            ShareToken: Созданная ссылка (без пароля)

        Raises:
            InvalidStatusError: Если сертификат не действует
        """
        logger.info(f"Создание ссылки доступа к сертификату {certificate_id} пользователем {shared_by}")
        user = self._require_user(shared_by)
        validity_days = validity_days or self.settings.share_token_validity_days
        max_access = max_access or self.settings.share_token_max_access

        share_token = ShareToken(
            token=self.code_generator.generate_share_token(),
            certificate_id=certificate_id,
            shared_by=shared_by,
            expires_at=datetime.now() + timedelta(days=validity_days),
            password=get_password_hash(password) if password else None,
            max_access=max_access
        )

        def change(certificate: Certificate) -> Dict:
            is_owner = user.id in (certificate.recipient_id, certificate.issuer_id)
            if not (is_owner or user.is_admin):
                raise PermissionDeniedError("Only the recipient, issuer or an administrator can share a certificate")
            if not certificate.is_active:
                raise InvalidStatusError("Only active certificates can be shared")
            tokens = [t.model_dump(mode="json") for t in certificate.share_tokens]
            tokens.append(share_token.model_dump(mode="json"))
            return {"share_tokens": tokens, "share_count": certificate.share_count + 1}

        self._apply(certificate_id, change, "shared", shared_by,
                    {"expiresAt": share_token.expires_at.isoformat(), "maxAccess": max_access})
        return share_token.model_copy(update={"password": None})

    def verify_certificate_by_token(self, token: str, password: str = None) -> VerificationResult:
        """
        Проверяет сертификат по ссылке доступа и учитывает обращение.

        Raises:
            ShareTokenError: Если ссылка не найдена, недействительна или пароль неверен
        """
        logger.info("Проверка сертификата по ссылке доступа")
        certificate = self.certificate_repo.find_by_share_token(token)
        if certificate is None:
            raise ShareTokenError("Share link is invalid or has expired")

        def change(current: Certificate) -> Dict:
            tokens = list(current.share_tokens)
            share_token = next((t for t in tokens if t.token == token), None)
            if share_token is None or not share_token.is_valid:
                raise ShareTokenError("Share link is invalid or has expired")
            if share_token.password and not verify_password(password or "", share_token.password):
                raise ShareTokenError("Invalid share link password")
            share_token.current_access += 1
            return {
                "share_tokens": [t.model_dump(mode="json") for t in tokens],
                "access_count": current.access_count + 1,
                "verification_count": current.verification_count + 1,
            }

        certificate = self._apply(certificate.id, change, "accessed_via_link", "anonymous")
        reason = self._invalid_reason(certificate)
        result = VerificationResult(
            is_valid=reason is None,
            verification_code=certificate.verification_code,
            certificate=certificate,
            reason=reason,
            method="share_link"
        )
        self._record_verification(result, None)
        return result

    def get_certificate(self, certificate_id: str) -> Certificate:
        """
        Получает сертификат по ID.

        Raises:
            CertificateNotFoundError: Если сертификат не найден
        """
        certificate = self.certificate_repo.get_certificate_by_id(certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(f"Certificate {certificate_id} not found")
        return certificate

    def get_certificates(self, certificate_filter: CertificateFilter = None,
                         limit: int = None) -> List[Certificate]:
        """
        Поиск сертификатов по фильтру.

        Args:
            certificate_filter: Параметры поиска
            limit: Максимальное количество

        Returns:
            List[Certificate]: Список найденных сертификатов
        """
        try:
            certificates = self.certificate_repo.get_certificates(certificate_filter, limit)
            logger.info(f"Найдено сертификатов: {len(certificates)}")
            return certificates
        except Exception as e:
            logger.error(f"Ошибка поиска сертификатов: {e}")
            raise DatabaseError(f"Error while searching certificates: {e}")

    def get_user_certificates(self, user_id: str, role: str = "recipient") -> List[Certificate]:
        """
        Сертификаты пользователя как получателя (по ID и email) или как выпускающего.

        Args:
            user_id: ID пользователя
            role: recipient или issuer

        Returns:
            List[Certificate]: Список сертификатов
        """
        logger.info(f"Получение сертификатов пользователя {user_id} ({role})")
        user = self._require_user(user_id)

        try:
            if role == "issuer":
                return self.certificate_repo.get_certificates(CertificateFilter(issuer_id=user.id))
            return self.certificate_repo.get_certificates_by_recipient(user.id, user.email)
        except Exception as e:
            logger.error(f"Ошибка получения сертификатов пользователя {user_id}: {e}")
            raise DatabaseError(f"Error while loading user certificates: {e}")

    def update_certificate(self, certificate_id: str, user_id: str, update: CertificateUpdate) -> Certificate:
        """
        Изменяет черновик или сертификат на согласовании.

        Raises:
            InvalidStatusError: Если сертификат уже согласован, выпущен или отозван
        """
        user = self._require_user(user_id)
        changes = update.model_dump(exclude_none=True)
        if "title" in changes and not changes["title"].strip():
            raise ValidationError("Certificate title is required")

        def change(certificate: Certificate) -> Dict:
            self._ensure_can_manage(certificate, user)
            if certificate.status not in EDITABLE_STATUSES:
                raise InvalidStatusError("Only draft or pending certificates can be edited")
            if "metadata" in changes:
                changes["metadata"] = {**certificate.metadata, **changes["metadata"]}
            return changes

        return self._apply(certificate_id, change, "updated", user_id, {"fields": sorted(changes)})

    def delete_certificate(self, certificate_id: str, user_id: str) -> bool:
        """
        Удаляет невыпущенный сертификат. Выпущенные сертификаты отзываются, а не удаляются.

        Returns:
            bool: True если сертификат удален
        """
        user = self._require_user(user_id)
        certificate = self.get_certificate(certificate_id)
        self._ensure_can_manage(certificate, user)
        if certificate.status not in DELETABLE_STATUSES:
            raise InvalidStatusError("Issued certificates must be revoked, not deleted")

        result = self.certificate_repo.delete_certificate(certificate_id, user_id)
        if result:
            self._log_activity("certificate_deleted", user_id, certificate_id, {"title": certificate.title})
            logger.info(f"Сертификат {certificate_id} удален")
        return result

    def get_certificate_history(self, certificate_id: str) -> List[CertificateTransaction]:
        """История изменений сертификата, новые первыми."""
        self.get_certificate(certificate_id)
        return self.certificate_repo.get_certificate_history(certificate_id)

    def get_statistics(self, issuer_id: str = None) -> Dict:
        """
        Статистика сертификатов по статусам, типам и месяцам.

        Args:
            issuer_id: Ограничить сертификатами одного выпускающего

        Returns:
            Dict: Статистика
        """
        logger.info("Получение статистики сертификатов")

        try:
            certificates = self.certificate_repo.get_certificates(CertificateFilter(issuer_id=issuer_id))

            by_status = Counter(c.effective_status.value for c in certificates)
            by_type = Counter(c.type.value for c in certificates)

            now = datetime.now()
            months = []
            year, month = now.year, now.month
            for _ in range(12):
                months.append(f"{year:04d}-{month:02d}")
                month -= 1
                if month == 0:
                    year, month = year - 1, 12
            monthly = {key: 0 for key in reversed(months)}
            for certificate in certificates:
                key = certificate.created_at.strftime("%Y-%m")
                if key in monthly:
                    monthly[key] += 1

            return {
                "total": len(certificates),
                "by_status": dict(by_status),
                "by_type": dict(by_type),
                "monthly": monthly,
                "issued": by_status.get(CertificateStatus.ISSUED.value, 0),
                "pending": by_status.get(CertificateStatus.PENDING.value, 0),
                "revoked": by_status.get(CertificateStatus.REVOKED.value, 0),
                "expired": by_status.get(CertificateStatus.EXPIRED.value, 0),
                "near_expiry": sum(1 for c in certificates if c.is_active and c.is_near_expiry),
                "total_verifications": sum(c.verification_count for c in certificates),
                "last_updated": now.isoformat()
            }

        except Exception as e:
            logger.error(f"Ошибка получения статистики: {e}")
            raise DatabaseError(f"Error while building certificate statistics: {e}")

    def create_template(self, request: TemplateRequest, user_id: str) -> CertificateTemplate:
        """
        Создает шаблон сертификата.

        Raises:
            PermissionDeniedError: Если пользователь не CA/администратор
        """
        user = self._require_user(user_id)
        if not user.can_issue_certificates:
            raise PermissionDeniedError("Only certificate authorities and administrators can create templates")

        template = self.template_repo.create_template({
            "id": str(uuid.uuid4()),
            "name": request.name.strip(),
            "description": request.description,
            "type": request.type,
            "organization_name": request.organization_name or user.organization_name,
            "created_by": user.id,
            "fields": request.fields,
            "design": request.design,
            "is_active": True,
        })
        logger.info(f"Создан шаблон {template.id} '{template.name}'")
        return template

    def get_templates(self, active_only: bool = True) -> List[CertificateTemplate]:
        return self.template_repo.get_templates(active_only)

    def get_default_template_id(self, user_id: str) -> str:
        """
        Возвращает ID первого активного шаблона, создавая шаблон по умолчанию при отсутствии.
        """
        templates = self.template_repo.get_templates(active_only=True)
        if templates:
            return templates[0].id

        template = self.template_repo.create_template({
            "id": str(uuid.uuid4()),
            "name": "Default Certificate Template",
            "description": "Standard university certificate layout",
            "type": "academic",
            "organization_name": "Universiti Putra Malaysia",
            "created_by": user_id,
            "fields": [
                {"name": "recipientName", "label": "Recipient Name", "required": True},
                {"name": "title", "label": "Certificate Title", "required": True},
                {"name": "issuedAt", "label": "Issue Date", "required": True},
            ],
            "design": {"orientation": "landscape", "primaryColor": "#1B5E20"},
            "is_active": True,
        })
        logger.info(f"Создан шаблон по умолчанию {template.id}")
        return template.id

    def get_notifications(self, user_id: str, unread_only: bool = False,
                          limit: int = 50) -> List[Notification]:
        """Уведомления пользователя, новые первыми."""
        try:
            return self.notification_repo.get_for_user(user_id, unread_only, limit)
        except Exception as e:
            logger.error(f"Ошибка получения уведомлений пользователя {user_id}: {e}")
            raise DatabaseError(f"Failed to load notifications: {e}")

    def mark_notification_read(self, notification_id: str, user_id: str):
        """
        Отмечает уведомление прочитанным.

        Raises:
            NotFoundError: Если уведомление не найдено или принадлежит другому пользователю
        """
        try:
            updated = self.notification_repo.mark_read(notification_id, user_id)
        except Exception as e:
            logger.error(f"Ошибка обновления уведомления {notification_id}: {e}")
            raise DatabaseError(f"Failed to update notification: {e}")

        if not updated:
            raise NotFoundError(f"Notification {notification_id} not found")

    def format_certificate_info(self, certificate: Certificate, detailed: bool = False) -> str:
        """
        Форматирует информацию о сертификате для отображения.

        Args:
            certificate: Сертификат
            detailed: Подробная информация

        Returns:
            str: Отформатированная информация
        """
        status = certificate.status_info
        emoji = {
            "issued": "✅", "expired": "⚠️", "revoked": "❌", "rejected": "❌",
            "pending": "⏳", "approved": "🟢", "draft": "📝",
        }.get(status["status"], "•")

        info = [
            f"🆔 ID: {certificate.id}",
            f"🔑 Код проверки: {certificate.verification_code}",
            f"📄 Название: {certificate.title}",
            f"👤 Получатель: {certificate.recipient_name or certificate.recipient_email}",
            f"🏛 Выдан: {certificate.issuer_name or certificate.issuer_id}",
            f"{emoji} Статус: {status['text']}",
        ]

        if certificate.expires_at:
            info.append(f"📅 Действует до: {certificate.expires_at.strftime('%d.%m.%Y')}")

        if certificate.is_revoked and certificate.revocation_reason:
            info.append(f"🚫 Причина отзыва: {certificate.revocation_reason}")

        if detailed:
            info.extend([
                f"📝 Создан: {certificate.created_at.strftime('%d.%m.%Y %H:%M')}",
                f"🔍 Проверок: {certificate.verification_count}",
                f"🔗 Ссылка: {certificate.verification_url}",
            ])

        return "\n".join(info)

    def _apply(self, certificate_id: str, change, action: str, user_id: str,
               details: dict = None) -> Certificate:
        """Выполняет изменение сертификата с пробросом доменных ошибок."""
        try:
            certificate = self.certificate_repo.apply_change(certificate_id, change, action, user_id, details)
            logger.info(f"Сертификат {certificate_id}: {action}, статус {certificate.status.value}")
            return certificate
        except Exception as e:
            logger.error(f"Ошибка операции {action} над сертификатом {certificate_id}: {e}")
            if isinstance(e, CertificateRepositoryError):
                raise
            raise DatabaseError(f"Error while updating certificate: {e}")

    def _require_user(self, user_id: str) -> User:
        user = self.user_repo.get_user_by_id(user_id) if user_id else None
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    @staticmethod
    def _ensure_can_manage(certificate: Certificate, user: User):
        if user.is_admin and user.is_active:
            return
        if user.id != certificate.issuer_id or not user.can_issue_certificates:
            raise PermissionDeniedError("Only the issuing authority or an administrator can manage this certificate")

    @staticmethod
    def _take_pending_step(certificate: Certificate, step_id: str, approver: User):
        if certificate.status != CertificateStatus.PENDING:
            raise InvalidStatusError("Certificate is not pending approval")

        step = next((s for s in certificate.approval_steps if s.id == step_id), None)
        if step is None:
            raise ValidationError(f"Approval step {step_id} not found")
        if step.status != ApprovalStatus.PENDING:
            raise InvalidStatusError("Approval step has already been processed")

        if step.approver_id:
            if step.approver_id != approver.id and not approver.is_admin:
                raise PermissionDeniedError("This approval step is assigned to another approver")
        elif not approver.can_issue_certificates:
            raise PermissionDeniedError("Only certificate authorities and administrators can approve certificates")
        return step

    @staticmethod
    def _invalid_reason(certificate: Optional[Certificate]) -> Optional[str]:
        if certificate is None:
            return "Certificate not found"
        if certificate.is_revoked or certificate.status == CertificateStatus.REVOKED:
            return "Certificate has been revoked"
        if certificate.status != CertificateStatus.ISSUED:
            return f"Certificate status is {certificate.status.value}"
        if certificate.is_expired:
            return "Certificate has expired"
        return None

    def _record_verification(self, result: VerificationResult, verifier_id: Optional[str]):
        try:
            self.certificate_repo.add_verification_record({
                "verification_code": result.verification_code,
                "certificate_id": result.certificate.id if result.certificate else None,
                "verified_by": verifier_id,
                "is_valid": result.is_valid,
                "reason": result.reason,
                "method": result.method,
            })
        except Exception as e:
            logger.warning(f"Не удалось записать проверку {result.verification_code}: {e}")

    def _log_activity(self, action: str, user_id: str, certificate_id: str = None, details: dict = None):
        try:
            self.audit_repo.log_activity("certificate", action, user_id, certificate_id, details)
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


# Глобальный экземпляр сервиса создается при первом обращении
_certificate_service: Optional[CertificateService] = None


def get_certificate_service() -> CertificateService:
    """Возвращает экземпляр сервиса сертификатов."""
    global _certificate_service
    if _certificate_service is None:
        _certificate_service = CertificateService()
    return _certificate_service
