"""
Модуль валидации входных данных: email, пароли, сертификаты и файлы.
"""

import re
from pathlib import Path
from typing import List, Optional, Tuple
from config.settings import get_settings
from .exceptions import *


# Ключевые слова, одно из которых должно присутствовать в email администратора
ADMIN_EMAIL_KEYWORDS = ("admin", "system", "registrar", "vc", "dvc", "gs", "dean", "director")

REQUEST_TITLE_MAX_LENGTH = 100
REQUEST_DESCRIPTION_MAX_LENGTH = 1000

ALLOWED_FILE_EXTENSIONS = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}


class EmailValidator:
    """Валидатор университетских адресов электронной почты."""

    def __init__(self, allowed_domain: str = None):
        self.pattern = re.compile(r'^[\w.+-]+@[\w-]+(\.[\w-]+)+$')
        self.allowed_domain = (allowed_domain or get_settings().allowed_email_domain).lower()

    def validate(self, email: str) -> bool:
        """
        Валидация email.

        Args:
            email: Адрес для валидации

        Returns:
            bool: True если адрес корректен и принадлежит домену университета
        """
        if not email:
            return False
        email = email.strip().lower()
        return bool(self.pattern.match(email)) and email.endswith(self.allowed_domain)

    def is_admin_email(self, email: str) -> bool:
        """Проверяет, похож ли адрес на служебный адрес администрации."""
        local_part = email.strip().lower().split("@")[0]
        return any(keyword in local_part for keyword in ADMIN_EMAIL_KEYWORDS)


class PasswordValidator:
    """Валидатор политики паролей."""

    def __init__(self, min_length: int = None):
        self.min_length = min_length or get_settings().password_min_length

    def validate(self, password: str) -> Tuple[bool, str]:
        """
        Валидация пароля.

        Args:
            password: Пароль

        Returns:
            Tuple[bool, str]: (валиден ли пароль, сообщение об ошибке)
        """
        if not password or len(password) < self.min_length:
            return False, f"Password must be at least {self.min_length} characters"

        if not (re.search(r'[A-Z]', password) and re.search(r'[a-z]', password)
                and re.search(r'\d', password)):
            return False, "Password must contain uppercase, lowercase, and number"

        return True, ""


class FileValidator:
    """Валидатор загружаемых файлов."""

    def __init__(self, max_size_bytes: int = None):
        self.max_size_bytes = max_size_bytes or get_settings().max_document_size_bytes

    def validate(self, file_name: str, size: int) -> Tuple[bool, str]:
        """
        Валидация файла по имени и размеру.

        Returns:
            Tuple[bool, str]: (валиден ли файл, сообщение об ошибке)
        """
        if size <= 0:
            return False, "File is empty"

        if size > self.max_size_bytes:
            limit_mb = self.max_size_bytes // (1024 * 1024)
            return False, f"File size exceeds {limit_mb}MB limit"

        if self.guess_mime_type(file_name) is None:
            allowed = ", ".join(sorted(ALLOWED_FILE_EXTENSIONS))
            return False, f"File type not allowed. Allowed types: {allowed}"

        return True, ""

    @staticmethod
    def guess_mime_type(file_name: str) -> Optional[str]:
        extension = Path(file_name).suffix.lower().lstrip(".")
        return ALLOWED_FILE_EXTENSIONS.get(extension)


class DataValidator:
    """Общий валидатор для всех типов данных."""

    def __init__(self):
        self.email_validator = EmailValidator()
        self.password_validator = PasswordValidator()
        self.file_validator = FileValidator()

    def validate_registration(self, email: str, password: str, display_name: str,
                              wants_admin: bool = False) -> List[str]:
        """
        Валидация данных регистрации.

        Returns:
            List[str]: Список ошибок валидации (пустой если все в порядке)
        """
        errors = []

        if not self.email_validator.validate(email):
            errors.append(
                f"Only UPM email addresses ({self.email_validator.allowed_domain}) are allowed"
            )
        elif wants_admin and not self.email_validator.is_admin_email(email):
            errors.append("Admin accounts require an official administrative UPM email")

        password_valid, password_error = self.password_validator.validate(password)
        if not password_valid:
            errors.append(password_error)

        if not display_name or not display_name.strip():
            errors.append("Display name is required")

        return errors

    def validate_certificate(self, title: str, recipient_email: str) -> List[str]:
        """
        Валидация данных сертификата.

        Returns:
            List[str]: Список ошибок валидации
        """
        errors = []

        if not title or not title.strip():
            errors.append("Certificate title is required")

        if not recipient_email or "@" not in recipient_email:
            errors.append("Valid recipient email is required")

        return errors

    def validate_request(self, title: str, description: str, purpose: str,
                         organization_name: str) -> List[str]:
        """
        Валидация клиентского запроса на сертификат.

        Returns:
            List[str]: Список ошибок валидации
        """
        errors = []

        for label, value in (("Title", title), ("Description", description),
                             ("Purpose", purpose), ("Organization name", organization_name)):
            if not value or not value.strip():
                errors.append(f"{label} cannot be empty")

        if title and len(title.strip()) > REQUEST_TITLE_MAX_LENGTH:
            errors.append(f"Title cannot exceed {REQUEST_TITLE_MAX_LENGTH} characters")

        if description and len(description.strip()) > REQUEST_DESCRIPTION_MAX_LENGTH:
            errors.append(f"Description cannot exceed {REQUEST_DESCRIPTION_MAX_LENGTH} characters")

        return errors

    def require_reason(self, reason: Optional[str], action: str) -> str:
        """
        Проверяет, что причина действия указана.

        Raises:
            ValidationError: Если причина пустая
        """
        if reason is None or not reason.strip():
            raise ValidationError(f"A reason is required to {action}")
        return reason.strip()
