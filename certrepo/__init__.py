"""
Репозиторий цифровых сертификатов университета.

Основные компоненты:
- service: выпуск, согласование, отзыв и проверка сертификатов
- auth_service, admin_service: учетные записи и администрирование
- document_service: документы пользователей
- request_service: клиентские запросы на выпуск сертификатов
- reports_service, backup_service: отчеты, резервные копии и восстановление
- api: HTTP API на FastAPI
"""

from .service import get_certificate_service
from .auth_service import get_auth_service
from .admin_service import get_admin_service
from .document_service import get_document_service
from .reports_service import get_reports_service
from .backup_service import get_backup_service
from .request_service import get_request_service
from .models import Certificate, CertificateRequest, CertificateStatus, User, UserType, VerificationResult
from .database import get_db_manager, set_db_manager, get_certificate_repo
from .storage import get_file_storage, set_file_storage

__version__ = "1.0.0"

__all__ = [
    'get_certificate_service',
    'get_auth_service',
    'get_admin_service',
    'get_document_service',
    'get_reports_service',
    'get_backup_service',
    'get_request_service',
    'Certificate',
    'CertificateRequest',
    'CertificateStatus',
    'User',
    'UserType',
    'VerificationResult',
    'get_db_manager',
    'set_db_manager',
    'get_certificate_repo',
    'get_file_storage',
    'set_file_storage'
]
