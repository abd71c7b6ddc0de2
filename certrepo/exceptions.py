"""
Кастомные исключения для репозитория сертификатов.
"""


class CertificateRepositoryError(Exception):
    """Базовое исключение для всех ошибок системы."""
    pass


class ValidationError(CertificateRepositoryError):
    """Ошибка валидации входных данных."""
    pass


class EmailValidationError(ValidationError):
    """Ошибка валидации адреса электронной почты."""
    pass


class PasswordValidationError(ValidationError):
    """Пароль не соответствует политике."""
    pass


class FileValidationError(ValidationError):
    """Ошибка валидации загружаемого файла."""
    pass


class AuthenticationError(CertificateRepositoryError):
    """Ошибка аутентификации."""
    pass


class PermissionDeniedError(CertificateRepositoryError):
    """Недостаточно прав для операции."""
    pass


class NotFoundError(CertificateRepositoryError):
    """Объект не найден."""
    pass


class UserNotFoundError(NotFoundError):
    """Пользователь не найден."""
    pass


class CertificateNotFoundError(NotFoundError):
    """Сертификат не найден."""
    pass


class DocumentNotFoundError(NotFoundError):
    """Документ не найден."""
    pass


class TemplateNotFoundError(NotFoundError):
    """Шаблон сертификата не найден."""
    pass


class RequestNotFoundError(NotFoundError):
    """Клиентский запрос на сертификат не найден."""
    pass


class BackupNotFoundError(NotFoundError):
    """Резервная копия не найдена."""
    pass


class UserExistsError(CertificateRepositoryError):
    """Пользователь с таким email уже существует."""
    pass


class InvalidStatusError(CertificateRepositoryError):
    """Операция недопустима в текущем статусе объекта."""
    pass


class ShareTokenError(CertificateRepositoryError):
    """Ссылка для доступа недействительна."""
    pass


class DatabaseError(CertificateRepositoryError):
    """Ошибка работы с базой данных."""
    pass


class StorageError(CertificateRepositoryError):
    """Ошибка работы с файловым хранилищем."""
    pass


class GenerationError(CertificateRepositoryError):
    """Ошибка генерации кодов сертификата."""
    pass


class BackupError(CertificateRepositoryError):
    """Ошибка резервного копирования или восстановления."""
    pass
