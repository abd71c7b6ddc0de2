"""
Регистрация, вход и профиль пользователя.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, Optional, Tuple
from config.settings import get_settings
from .models import RegistrationRequest, User, UserStatus, UserType
from .database import AuditRepository, DatabaseManager, UserRepository, get_db_manager
from .validators import DataValidator
from .security import create_access_token, get_password_hash, verify_password, verify_token
from .exceptions import *

logger = logging.getLogger(__name__)

# Роли, требующие одобрения администратором
ROLES_REQUIRING_APPROVAL = (UserType.CA, UserType.CLIENT, UserType.ADMIN)

PROFILE_FIELDS = ("display_name", "organization_name", "business_license", "description",
                  "address", "phone_number")


class AuthService:
    """Сервис аутентификации пользователей."""

    def __init__(self, db_manager: DatabaseManager = None):
        db_manager = db_manager or get_db_manager()
        self.user_repo = UserRepository(db_manager)
        self.audit_repo = AuditRepository(db_manager)
        self.validator = DataValidator()
        self.settings = get_settings()

    def register(self, request: RegistrationRequest) -> User:
        """
        Регистрирует пользователя.

        CA, клиенты и администраторы создаются в статусе pending и ждут
        одобрения, обычные пользователи сразу активны.

        Args:
            request: Данные регистрации

        Returns:
            User: Созданный пользователь

        Raises:
            ValidationError: При ошибке валидации
            UserExistsError: Если email уже зарегистрирован
        """
        logger.info(f"Регистрация пользователя {request.email} с ролью {request.user_type.value}")

        errors = self.validator.validate_registration(
            request.email, request.password, request.display_name,
            wants_admin=request.user_type == UserType.ADMIN
        )
        if errors:
            logger.warning(f"Ошибка валидации регистрации {request.email}: {errors}")
            raise ValidationError("; ".join(errors))

        if self.user_repo.get_user_by_email(request.email):
            raise UserExistsError("An account with this email already exists")

        status = UserStatus.PENDING if request.user_type in ROLES_REQUIRING_APPROVAL else UserStatus.ACTIVE
        now = datetime.now()

        try:
            user = self.user_repo.create_user({
                "id": str(uuid.uuid4()),
                "email": request.email,
                "display_name": request.display_name,
                "user_type": request.user_type,
                "status": status,
                "organization_name": request.organization_name,
                "business_license": request.business_license,
                "description": request.description,
                "address": request.address,
                "phone_number": request.phone_number,
                "password_hash": get_password_hash(request.password),
                "profile": {},
                "created_at": now,
                "updated_at": now,
            })
        except Exception as e:
            logger.error(f"Ошибка создания пользователя {request.email}: {e}")
            raise DatabaseError(f"Error while creating account: {e}")

        self._log_activity("user_registered", user.id, {"userType": user.user_type.value})
        logger.info(f"Пользователь {user.id} зарегистрирован со статусом {user.status.value}")
        return user

    def create_admin(self, email: str, password: str, display_name: str) -> User:
        """
        Создает активного администратора напрямую (первичная настройка через CLI).

        Raises:
            ValidationError: При ошибке валидации
            UserExistsError: Если email уже зарегистрирован
        """
        request = RegistrationRequest(email=email, password=password, display_name=display_name,
                                      user_type=UserType.ADMIN)
        errors = self.validator.validate_registration(request.email, request.password,
                                                      request.display_name, wants_admin=True)
        if errors:
            raise ValidationError("; ".join(errors))
        if self.user_repo.get_user_by_email(request.email):
            raise UserExistsError("An account with this email already exists")

        now = datetime.now()
        user = self.user_repo.create_user({
            "id": str(uuid.uuid4()),
            "email": request.email,
            "display_name": request.display_name,
            "user_type": UserType.ADMIN,
            "status": UserStatus.ACTIVE,
            "password_hash": get_password_hash(request.password),
            "approved_at": now,
            "profile": {},
            "created_at": now,
            "updated_at": now,
        })
        logger.info(f"Создан администратор {user.email}")
        return user

    def sign_in(self, email: str, password: str) -> Tuple[User, str]:
        """
        Вход по email и паролю.

        Args:
            email: Email
            password: Пароль

        Returns:
            Tuple[User, str]: Пользователь и токен доступа

        Raises:
            AuthenticationError: При неверных данных или неактивной учетной записи
        """
        email = (email or "").strip().lower()
        logger.info(f"Вход пользователя {email}")

        if not self.settings.is_valid_email_domain(email):
            raise AuthenticationError(
                f"Only UPM email addresses ({self.settings.allowed_email_domain}) are allowed"
            )

        user, password_hash = self.user_repo.get_credentials(email)
        if user is None or not verify_password(password or "", password_hash):
            logger.warning(f"Неудачная попытка входа {email}")
            raise AuthenticationError("Invalid email or password")

        self._ensure_can_sign_in(user)

        user = self.user_repo.update_user(user.id, {"last_login_at": datetime.now()})
        self._log_activity("login", user.id, {"email": user.email})

        token = create_access_token({"sub": user.id, "role": user.user_type.value})
        return user, token

    def get_current_user(self, token: str) -> User:
        """
        Возвращает пользователя по токену доступа.

        Raises:
            AuthenticationError: Если токен недействителен или учетная запись неактивна
        """
        payload = verify_token(token)
        user = self.user_repo.get_user_by_id(payload["sub"])
        if user is None:
            raise AuthenticationError("User no longer exists")
        self._ensure_can_sign_in(user)
        return user

    def change_password(self, user_id: str, current_password: str, new_password: str):
        """
        Меняет пароль пользователя.

        Raises:
            AuthenticationError: Если текущий пароль неверен
            PasswordValidationError: Если новый пароль не соответствует политике
        """
        if not verify_password(current_password or "", self.user_repo.get_password_hash(user_id)):
            raise AuthenticationError("Current password is incorrect")

        valid, message = self.validator.password_validator.validate(new_password)
        if not valid:
            raise PasswordValidationError(message)

        self.user_repo.update_user(user_id, {"password_hash": get_password_hash(new_password)})
        self._log_activity("password_changed", user_id)
        logger.info(f"Пароль пользователя {user_id} изменен")

    def update_profile(self, user_id: str, updates: Dict) -> User:
        """
        Обновляет поля профиля. Роль и статус через профиль не меняются.

        Raises:
            ValidationError: Если передано недопустимое поле
        """
        unknown = set(updates) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "display_name" in updates and not (updates["display_name"] or "").strip():
            raise ValidationError("Display name is required")

        user = self.user_repo.update_user(user_id, updates)
        self._log_activity("profile_updated", user_id, {"fields": sorted(updates)})
        return user

    @staticmethod
    def _ensure_can_sign_in(user: User):
        if user.status == UserStatus.SUSPENDED:
            raise AuthenticationError("Your account has been suspended. Contact administrator.")
        if user.status == UserStatus.PENDING:
            raise AuthenticationError(
                "Your account is pending approval. Please wait for administrator approval."
            )
        if user.status == UserStatus.INACTIVE:
            raise AuthenticationError("Your account has been deactivated. Contact administrator.")

    def _log_activity(self, action: str, user_id: Optional[str], details: dict = None):
        try:
            self.audit_repo.log_activity("auth", action, user_id, None, details)
        except Exception as e:
            logger.warning(f"Не удалось записать действие {action}: {e}")


# Глобальный экземпляр сервиса создается при первом обращении
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    """Возвращает экземпляр сервиса аутентификации."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service
