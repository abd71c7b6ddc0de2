"""
Общие фикстуры для тестов
"""
import uuid
from datetime import datetime

import pytest

from certrepo.database import DatabaseManager, UserRepository
from certrepo.storage import FileStorage
from certrepo.models import CertificateRequest, UserStatus, UserType
from certrepo.security import get_password_hash
from certrepo.service import CertificateService
from certrepo.admin_service import AdminService
from certrepo.auth_service import AuthService
from certrepo.document_service import DocumentService
from certrepo.reports_service import ReportsService
from certrepo.backup_service import BackupService
from certrepo.request_service import RequestService

TEST_PASSWORD = "Password123"


@pytest.fixture
def db_manager():
    """БД в памяти с созданными таблицами"""
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def file_storage(tmp_path):
    """Временное файловое хранилище"""
    return FileStorage(tmp_path / "storage")


@pytest.fixture
def make_user(db_manager):
    """Фабрика пользователей, создаваемых напрямую в БД"""
    repo = UserRepository(db_manager)

    def factory(user_type=UserType.USER, status=UserStatus.ACTIVE, email=None, display_name=None,
                organization_name=None):
        user_id = str(uuid.uuid4())
        now = datetime.now()
        return repo.create_user({
            "id": user_id,
            "email": email or f"{user_type.value}.{user_id[:8]}@upm.edu.my",
            "display_name": display_name or f"Test {user_type.value}",
            "user_type": user_type,
            "status": status,
            "organization_name": organization_name,
            "password_hash": get_password_hash(TEST_PASSWORD),
            "profile": {},
            "created_at": now,
            "updated_at": now,
        })

    return factory


@pytest.fixture
def admin(make_user):
    return make_user(UserType.ADMIN, email="admin.office@upm.edu.my", display_name="System Admin")


@pytest.fixture
def ca_user(make_user):
    return make_user(UserType.CA, display_name="Faculty of Engineering")


@pytest.fixture
def recipient(make_user):
    return make_user(UserType.USER, email="student.one@upm.edu.my", display_name="Student One")


@pytest.fixture
def certificate_service(db_manager, file_storage):
    return CertificateService(db_manager, file_storage)


@pytest.fixture
def admin_service(db_manager, file_storage):
    return AdminService(db_manager, file_storage)


@pytest.fixture
def auth_service(db_manager):
    return AuthService(db_manager)


@pytest.fixture
def document_service(db_manager, file_storage):
    return DocumentService(db_manager, file_storage)


@pytest.fixture
def reports_service(db_manager, file_storage):
    return ReportsService(db_manager, file_storage)


@pytest.fixture
def backup_service(db_manager, file_storage):
    return BackupService(db_manager, file_storage)


@pytest.fixture
def certificate_request(recipient):
    """Запрос на сертификат без согласования"""
    return CertificateRequest(
        title="Bachelor of Computer Science",
        recipient_email=recipient.email,
        recipient_name=recipient.display_name,
    )


@pytest.fixture
def issued_certificate(certificate_service, ca_user, certificate_request):
    """Выпущенный сертификат"""
    certificate = certificate_service.create_certificate(certificate_request, ca_user.id)
    return certificate_service.issue_certificate(certificate.id, ca_user.id)


@pytest.fixture
def client_user(make_user):
    return make_user(UserType.CLIENT, email="industry.partner@upm.edu.my", display_name="Industry Partner",
                     organization_name="Faculty of Engineering")


@pytest.fixture
def request_service(db_manager, file_storage, certificate_service):
    return RequestService(db_manager, file_storage, certificate_service)
