"""
Модели SQLAlchemy и репозитории для работы с базой данных.

Таблицы названы по коллекциям исходного документного хранилища
(users, certificates, documents, backup_records, admin_activities ...).
Репозитории возвращают pydantic модели, собранные внутри сессии.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from sqlalchemy import (
    create_engine, Column, String, Integer, BigInteger, DateTime,
    Boolean, Text, JSON, Index, inspect, or_, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from config.settings import get_settings
from . import models
from .exceptions import *

logger = logging.getLogger(__name__)

# Базовый класс для моделей
Base = declarative_base()

# JSONB в PostgreSQL, обычный JSON в остальных СУБД
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Модель пользователя."""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=False, default="")
    user_type = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    organization_name = Column(String(255), nullable=True)
    business_license = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    address = Column(Text, nullable=True)
    phone_number = Column(String(50), nullable=True)
    password_hash = Column(String(255), nullable=True)
    status_reason = Column(Text, nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(64), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    suspended_by = Column(String(64), nullable=True)
    suspended_at = Column(DateTime, nullable=True)
    last_login_at = Column(DateTime, nullable=True)
    profile = Column(JSONType, nullable=True, default=dict)
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.now, nullable=False, index=True)

    __table_args__ = (
        Index('idx_users_type_status', 'user_type', 'status'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, status={self.status})>"


class Certificate(Base):
    """Модель сертификата."""

    __tablename__ = "certificates"

    id = Column(String(64), primary_key=True, default=_new_id)
    template_id = Column(String(64), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(30), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=False, index=True)
    recipient_name = Column(String(255), nullable=False, default="")
    issuer_id = Column(String(64), nullable=False, index=True)
    issuer_name = Column(String(255), nullable=False, default="")
    organization_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, index=True)
    verification_code = Column(String(16), unique=True, nullable=False, index=True)
    verification_id = Column(String(32), nullable=False, index=True)
    qr_code = Column(Text, nullable=True)
    digital_signature = Column(Text, nullable=True)
    hash = Column(String(64), nullable=True)
    issued_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    completed_at = Column(DateTime, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_revoked = Column(Boolean, default=False, nullable=False)
    revocation_reason = Column(Text, nullable=True)
    revoked_by = Column(String(64), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    requires_approval = Column(Boolean, default=False, nullable=False)
    approval_steps = Column(JSONType, nullable=True, default=list)
    current_approval_step = Column(String(64), nullable=True)
    share_tokens = Column(JSONType, nullable=True, default=list)
    tags = Column(JSONType, nullable=True, default=list)
    # Атрибут metadata зарезервирован декларативной базой
    cert_metadata = Column("metadata", JSONType, nullable=True, default=dict)
    verification_count = Column(Integer, default=0, nullable=False)
    access_count = Column(Integer, default=0, nullable=False)
    share_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.now, nullable=False, index=True)

    __table_args__ = (
        Index('idx_certificate_issuer_status', 'issuer_id', 'status'),
        Index('idx_certificate_recipient', 'recipient_id', 'recipient_email'),
    )

    def __repr__(self):
        return f"<Certificate(id={self.id}, code={self.verification_code}, status={self.status})>"


class CertificateTemplate(Base):
    """Модель шаблона сертификата."""

    __tablename__ = "certificate_templates"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(30), nullable=False)
    organization_name = Column(String(255), nullable=True)
    created_by = Column(String(64), nullable=True)
    fields = Column(JSONType, nullable=True, default=list)
    design = Column(JSONType, nullable=True, default=dict)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, nullable=False)


class Document(Base):
    """Модель метаданных документа."""

    __tablename__ = "documents"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(30), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    uploader_id = Column(String(64), nullable=False, index=True)
    uploader_name = Column(String(255), nullable=False, default="")
    file_name = Column(String(255), nullable=False)
    mime_type = Column(String(120), nullable=False)
    file_size = Column(BigInteger, default=0, nullable=False)
    storage_path = Column(String(512), nullable=False)
    hash = Column(String(64), nullable=True)
    verifier_id = Column(String(64), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    verification_comments = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    associated_certificate_id = Column(String(64), nullable=True)
    tags = Column(JSONType, nullable=True, default=list)
    uploaded_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.now, nullable=False, index=True)


class ClientRequest(Base):
    """Клиентский запрос на выпуск сертификата."""

    __tablename__ = "certificate_requests"

    id = Column(String(64), primary_key=True, default=_new_id)
    client_id = Column(String(64), nullable=False, index=True)
    client_name = Column(String(255), nullable=False, default="")
    client_email = Column(String(255), nullable=False)
    organization_name = Column(String(255), nullable=False)
    certificate_type = Column(String(30), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    purpose = Column(Text, nullable=False)
    requested_data = Column(JSONType, nullable=True, default=dict)
    attachment_urls = Column(JSONType, nullable=True, default=list)
    assigned_ca_id = Column(String(64), nullable=True, index=True)
    assigned_ca_name = Column(String(255), nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    status = Column(String(30), nullable=False, index=True)
    history = Column(JSONType, nullable=True, default=list)
    current_reviewer_id = Column(String(64), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    change_request_comments = Column(Text, nullable=True)
    approved_by = Column(String(64), nullable=True)
    certificate_id = Column(String(64), nullable=True)
    priority = Column(Integer, default=3, nullable=False)
    tags = Column(JSONType, nullable=True, default=list)
    request_metadata = Column("metadata", JSONType, nullable=True, default=dict)
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    issued_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ClientRequest(id={self.id}, client={self.client_id}, status={self.status})>"


class CertificateTransaction(Base):
    """Модель истории изменений сертификатов."""

    __tablename__ = "certificate_transactions"

    id = Column(String(64), primary_key=True, default=_new_id)
    certificate_id = Column(String(64), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    performed_by = Column(String(64), nullable=False)
    performed_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    details = Column(JSONType, nullable=True)


class CertificateVerification(Base):
    """Запись о проверке сертификата."""

    __tablename__ = "certificate_verifications"

    id = Column(String(64), primary_key=True, default=_new_id)
    verification_code = Column(String(64), nullable=False, index=True)
    certificate_id = Column(String(64), nullable=True, index=True)
    verified_by = Column(String(64), nullable=True)
    is_valid = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=True)
    method = Column(String(30), nullable=False, default="manual_input")
    verified_at = Column(DateTime, default=datetime.now, nullable=False, index=True)


class Activity(Base):
    """Журнал действий пользователей."""

    __tablename__ = "activities"

    id = Column(String(64), primary_key=True, default=_new_id)
    type = Column(String(50), nullable=False)
    action = Column(String(80), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    certificate_id = Column(String(64), nullable=True)
    details = Column(JSONType, nullable=True, default=dict)
    timestamp = Column(DateTime, default=datetime.now, nullable=False, index=True)


class AdminActivity(Base):
    """Журнал действий администраторов."""

    __tablename__ = "admin_activities"

    id = Column(String(64), primary_key=True, default=_new_id)
    action = Column(String(80), nullable=False, index=True)
    admin_id = Column(String(64), nullable=False, index=True)
    target_user_id = Column(String(64), nullable=True, index=True)
    target_user_email = Column(String(255), nullable=True)
    target_user_name = Column(String(255), nullable=True)
    details = Column(JSONType, nullable=True, default=dict)
    timestamp = Column(DateTime, default=datetime.now, nullable=False, index=True)


class Notification(Base):
    """Уведомление пользователя."""

    __tablename__ = "notifications"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONType, nullable=True, default=dict)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)


class BackupRecord(Base):
    """Запись о резервной копии."""

    __tablename__ = "backup_records"

    id = Column(String(64), primary_key=True)
    type = Column(String(20), nullable=False)
    initiated_by = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    storage_path = Column(String(512), nullable=False)
    download_url = Column(String(1024), nullable=False)
    size = Column(BigInteger, default=0, nullable=False)
    statistics = Column(JSONType, nullable=True, default=dict)
    version = Column(String(10), nullable=False, default="1.0")
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)


class RestorationLog(Base):
    """Журнал восстановления из резервной копии."""

    __tablename__ = "restoration_logs"

    id = Column(String(64), primary_key=True)
    backup_id = Column(String(64), nullable=False, index=True)
    initiated_by = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False)
    safety_backup_id = Column(String(64), nullable=True)
    steps = Column(JSONType, nullable=True, default=list)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)


# Коллекции, попадающие в резервную копию
COLLECTIONS: Dict[str, Type[Base]] = {
    "users": User,
    "certificates": Certificate,
    "documents": Document,
    "certificate_requests": ClientRequest,
    "certificate_templates": CertificateTemplate,
    "notifications": Notification,
}


def row_to_dict(row: Base) -> Dict[str, Any]:
    """
    Конвертирует строку таблицы в словарь с именами колонок.

    Args:
        row: ORM объект

    Returns:
        Dict[str, Any]: Значения колонок
    """
    mapper = inspect(row).mapper
    return {attr.columns[0].name: getattr(row, attr.key) for attr in mapper.column_attrs}


def to_model(model_cls, row: Base):
    """Собирает pydantic модель из строки; пустые колонки получают значения модели по умолчанию."""
    return model_cls(**{key: value for key, value in row_to_dict(row).items() if value is not None})


def _coerce_value(column, value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(column.type, DateTime) and isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def dict_to_row(model_cls: Type[Base], data: Dict[str, Any]) -> Base:
    """
    Создает ORM объект из словаря с именами колонок. Лишние ключи игнорируются.

    Args:
        model_cls: Класс таблицы
        data: Значения колонок

    Returns:
        Base: Новый ORM объект
    """
    mapper = inspect(model_cls)
    kwargs = {}
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        if column.name in data:
            kwargs[attr.key] = _coerce_value(column, data[column.name])
    return model_cls(**kwargs)


def _apply_updates(row: Base, updates: Dict[str, Any]):
    """Применяет изменения по именам колонок."""
    mapper = inspect(row).mapper
    columns = {attr.columns[0].name: attr for attr in mapper.column_attrs}
    for name, value in updates.items():
        attr = columns.get(name)
        if attr is None:
            raise DatabaseError(f"Unknown column {name} for {row.__tablename__}")
        setattr(row, attr.key, _coerce_value(attr.columns[0], value))


class DatabaseManager:
    """Менеджер для работы с базой данных."""

    def __init__(self, database_url: str = None, echo: bool = False):
        """
        Инициализация менеджера БД.

        Args:
            database_url: URL подключения к БД
            echo: Логировать SQL запросы
        """
        if database_url is None:
            database_url = get_settings().database_url

        engine_kwargs = {"pool_pre_ping": True, "echo": echo}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # Одна общая in-memory база для всех сессий
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_recycle"] = 3600

        self.database_url = database_url
        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False, bind=self.engine)

    def create_tables(self):
        """Создает все таблицы в базе данных."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Таблицы базы данных созданы успешно")

    def get_session(self) -> Session:
        """Возвращает новую сессию для работы с БД."""
        return self.SessionLocal()

    def health_check(self) -> bool:
        """Проверяет подключение к базе данных."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            logger.error(f"Ошибка подключения к БД: {e}")
            return False


class UserRepository:
    """Репозиторий пользователей."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _to_model(row: User) -> models.User:
        return to_model(models.User, row)

    def create_user(self, user_data: dict) -> models.User:
        """
        Создает пользователя.

        Args:
            user_data: Данные пользователя, включая password_hash

        Returns:
            models.User: Созданный пользователь
        """
        with self.db_manager.get_session() as session:
            user = dict_to_row(User, user_data)
            session.add(user)
            session.commit()
            return self._to_model(user)

    def get_user_by_id(self, user_id: str) -> Optional[models.User]:
        with self.db_manager.get_session() as session:
            user = session.get(User, user_id)
            return self._to_model(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[models.User]:
        with self.db_manager.get_session() as session:
            user = session.query(User).filter(User.email == email.strip().lower()).first()
            return self._to_model(user) if user else None

    def get_credentials(self, email: str) -> Tuple[Optional[models.User], Optional[str]]:
        """
        Возвращает пользователя и хэш его пароля.

        Returns:
            Tuple: (пользователь или None, хэш пароля или None)
        """
        with self.db_manager.get_session() as session:
            user = session.query(User).filter(User.email == email.strip().lower()).first()
            if not user:
                return None, None
            return self._to_model(user), user.password_hash

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self.db_manager.get_session() as session:
            user = session.get(User, user_id)
            return user.password_hash if user else None

    def get_users(self, user_type: str = None, status: str = None, search: str = None,
                  limit: int = None) -> List[models.User]:
        """
        Получает пользователей по фильтрам, новые первыми.

        Args:
            user_type: Роль
            status: Статус
            search: Подстрока email, имени или организации
            limit: Максимальное количество

        Returns:
            List[models.User]: Список пользователей
        """
        with self.db_manager.get_session() as session:
            query = session.query(User)

            if user_type:
                query = query.filter(User.user_type == getattr(user_type, "value", user_type))

            if status:
                query = query.filter(User.status == getattr(status, "value", status))

            if search:
                pattern = f"%{search.strip()}%"
                query = query.filter(or_(
                    User.email.ilike(pattern),
                    User.display_name.ilike(pattern),
                    User.organization_name.ilike(pattern)
                ))

            query = query.order_by(User.created_at.desc())
            if limit:
                query = query.limit(limit)

            return [self._to_model(user) for user in query.all()]

    def update_user(self, user_id: str, updates: dict) -> models.User:
        """
        Обновляет поля пользователя.

        Raises:
            UserNotFoundError: Если пользователь не найден
        """
        with self.db_manager.get_session() as session:
            user = session.get(User, user_id)
            if not user:
                raise UserNotFoundError(f"User {user_id} not found")
            _apply_updates(user, dict(updates, updated_at=datetime.now()))
            session.commit()
            return self._to_model(user)

    def apply_admin_action(self, user_id: str,
                           change: Callable[[models.User], Dict[str, Any]],
                           admin_id: str, action: str, details: dict = None) -> models.User:
        """
        Атомарно изменяет пользователя и записывает действие администратора.

        Строка пользователя блокируется на время транзакции, функция change
        получает актуальное состояние и может отказать через исключение.

        Args:
            user_id: ID пользователя
            change: Функция, возвращающая изменения полей
            admin_id: ID администратора
            action: Код действия для журнала
            details: Дополнительные детали журнала

        Returns:
            models.User: Обновленный пользователь

        Raises:
            UserNotFoundError: Если пользователь не найден
        """
        with self.db_manager.get_session() as session:
            user = session.query(User).filter(User.id == user_id).with_for_update().first()
            if not user:
                raise UserNotFoundError(f"User {user_id} not found")

            updates = change(self._to_model(user))
            _apply_updates(user, dict(updates, updated_at=datetime.now()))

            session.add(AdminActivity(
                action=action,
                admin_id=admin_id,
                target_user_id=user.id,
                target_user_email=user.email,
                target_user_name=user.display_name,
                details=details or {},
                timestamp=datetime.now()
            ))
            session.commit()
            return self._to_model(user)

    def count_users(self) -> int:
        with self.db_manager.get_session() as session:
            return session.query(User).count()


class CertificateRepository:
    """Репозиторий для работы с сертификатами."""

    def __init__(self, db_manager: DatabaseManager):
        """
        Инициализация репозитория.

        Args:
            db_manager: Менеджер базы данных
        """
        self.db_manager = db_manager

    @staticmethod
    def _to_model(row: Certificate) -> models.Certificate:
        return to_model(models.Certificate, row)

    def create_certificate(self, certificate_data: dict, performed_by: str) -> models.Certificate:
        """
        Создает новый сертификат с записью в историю.

        Args:
            certificate_data: Данные сертификата по именам колонок
            performed_by: ID пользователя, создавшего сертификат

        Returns:
            models.Certificate: Созданный сертификат
        """
        with self.db_manager.get_session() as session:
            certificate = dict_to_row(Certificate, certificate_data)
            session.add(certificate)
            session.flush()

            self._add_transaction(
                session,
                certificate.id,
                "created",
                performed_by,
                {"title": certificate.title, "status": certificate.status}
            )
            session.commit()
            return self._to_model(certificate)

    def get_certificate_by_id(self, certificate_id: str) -> Optional[models.Certificate]:
        """
        Получает сертификат по ID.

        Args:
            certificate_id: ID сертификата

        Returns:
            Optional[models.Certificate]: Сертификат или None
        """
        with self.db_manager.get_session() as session:
            certificate = session.get(Certificate, certificate_id)
            return self._to_model(certificate) if certificate else None

    def get_certificate_by_code(self, verification_code: str) -> Optional[models.Certificate]:
        """Получает сертификат по коду проверки."""
        with self.db_manager.get_session() as session:
            certificate = session.query(Certificate).filter(
                Certificate.verification_code == verification_code
            ).first()
            return self._to_model(certificate) if certificate else None

    def get_existing_codes(self) -> set:
        """
        Получает множество всех существующих кодов проверки.

        Returns:
            set: Множество кодов
        """
        with self.db_manager.get_session() as session:
            result = session.query(Certificate.verification_code).all()
            return {row.verification_code for row in result}

    def get_certificates(self, certificate_filter: models.CertificateFilter = None,
                         limit: int = None) -> List[models.Certificate]:
        """
        Поиск сертификатов по фильтру, новые первыми.

        Args:
            certificate_filter: Параметры фильтра
            limit: Максимальное количество

        Returns:
            List[models.Certificate]: Найденные сертификаты
        """
        certificate_filter = certificate_filter or models.CertificateFilter()
        with self.db_manager.get_session() as session:
            query = session.query(Certificate)

            if certificate_filter.status:
                query = query.filter(Certificate.status == certificate_filter.status.value)

            if certificate_filter.type:
                query = query.filter(Certificate.type == certificate_filter.type.value)

            if certificate_filter.issuer_id:
                query = query.filter(Certificate.issuer_id == certificate_filter.issuer_id)

            if certificate_filter.recipient_id:
                query = query.filter(Certificate.recipient_id == certificate_filter.recipient_id)

            if certificate_filter.search:
                pattern = f"%{certificate_filter.search.strip()}%"
                query = query.filter(or_(
                    Certificate.title.ilike(pattern),
                    Certificate.recipient_name.ilike(pattern),
                    Certificate.recipient_email.ilike(pattern)
                ))

            if certificate_filter.created_from:
                query = query.filter(Certificate.created_at >= certificate_filter.created_from)

            if certificate_filter.created_to:
                query = query.filter(Certificate.created_at <= certificate_filter.created_to)

            query = query.order_by(Certificate.created_at.desc())
            if limit:
                query = query.limit(limit)

            return [self._to_model(row) for row in query.all()]

    def get_certificates_by_recipient(self, recipient_id: str, recipient_email: str) -> List[models.Certificate]:
        """Сертификаты получателя по ID и по email без дублей."""
        with self.db_manager.get_session() as session:
            rows = session.query(Certificate).filter(or_(
                Certificate.recipient_id == recipient_id,
                Certificate.recipient_email == recipient_email.lower()
            )).order_by(Certificate.created_at.desc()).all()
            return [self._to_model(row) for row in rows]

    def get_all_certificates(self) -> List[models.Certificate]:
        with self.db_manager.get_session() as session:
            return [self._to_model(row) for row in session.query(Certificate).all()]

    def find_by_share_token(self, token: str) -> Optional[models.Certificate]:
        """
        Ищет сертификат, содержащий ссылку доступа с данным токеном.

        Args:
            token: Токен ссылки

        Returns:
            Optional[models.Certificate]: Сертификат или None
        """
        with self.db_manager.get_session() as session:
            for row in session.query(Certificate).filter(Certificate.share_count > 0).all():
                if any(item.get("token") == token for item in (row.share_tokens or [])):
                    return self._to_model(row)
            return None

    def apply_change(self, certificate_id: str,
                     change: Callable[[models.Certificate], Dict[str, Any]],
                     action: str, performed_by: str, details: dict = None) -> models.Certificate:
        """
        Атомарно изменяет сертификат и добавляет запись в историю.

        Args:
            certificate_id: ID сертификата
            change: Функция, получающая актуальный сертификат и возвращающая изменения
            action: Выполненное действие
            performed_by: ID пользователя
            details: Дополнительные детали

        Returns:
            models.Certificate: Обновленный сертификат

        Raises:
            CertificateNotFoundError: Если сертификат не найден
        """
        with self.db_manager.get_session() as session:
            certificate = session.query(Certificate).filter(
                Certificate.id == certificate_id
            ).with_for_update().first()

            if not certificate:
                raise CertificateNotFoundError(f"Certificate {certificate_id} not found")

            updates = change(self._to_model(certificate))
            _apply_updates(certificate, dict(updates, updated_at=datetime.now()))

            self._add_transaction(session, certificate_id, action, performed_by, details)
            session.commit()
            return self._to_model(certificate)

    def increment_counters(self, certificate_id: str, **increments: int):
        """
        Увеличивает счетчики сертификата одним запросом.

        Args:
            certificate_id: ID сертификата
            increments: Имя счетчика и прирост
        """
        values = {getattr(Certificate, name): getattr(Certificate, name) + amount
                  for name, amount in increments.items()}
        with self.db_manager.get_session() as session:
            session.query(Certificate).filter(Certificate.id == certificate_id).update(
                values, synchronize_session=False
            )
            session.commit()

    def delete_certificate(self, certificate_id: str, performed_by: str) -> bool:
        """
        Удаляет сертификат с записью в историю.

        Returns:
            bool: True если сертификат удален, False если не найден
        """
        with self.db_manager.get_session() as session:
            certificate = session.get(Certificate, certificate_id)
            if not certificate:
                return False

            session.delete(certificate)
            self._add_transaction(session, certificate_id, "deleted", performed_by,
                                  {"title": certificate.title})
            session.commit()
            return True

    def add_verification_record(self, record: dict):
        """
        Добавляет запись о проверке сертификата.

        Args:
            record: verification_code, certificate_id, verified_by, is_valid, reason, method
        """
        with self.db_manager.get_session() as session:
            session.add(dict_to_row(CertificateVerification, dict(record, verified_at=datetime.now())))
            session.commit()

    def count_verifications(self, certificate_id: str = None) -> int:
        with self.db_manager.get_session() as session:
            query = session.query(CertificateVerification)
            if certificate_id:
                query = query.filter(CertificateVerification.certificate_id == certificate_id)
            return query.count()

    def _add_transaction(self, session: Session, certificate_id: str,
                         action: str, user_id: str, details: dict = None):
        """
        Добавляет запись в историю изменений.

        Args:
            session: Сессия БД
            certificate_id: ID сертификата
            action: Выполненное действие
            user_id: ID пользователя
            details: Дополнительные детали
        """
        session.add(CertificateTransaction(
            certificate_id=certificate_id,
            action=action,
            performed_by=str(user_id),
            performed_at=datetime.now(),
            details=details
        ))

    def get_certificate_history(self, certificate_id: str) -> List[models.CertificateTransaction]:
        """
        Получает историю изменений сертификата, новые первыми.

        Args:
            certificate_id: ID сертификата

        Returns:
            List[models.CertificateTransaction]: Записи истории
        """
        with self.db_manager.get_session() as session:
            rows = session.query(CertificateTransaction).filter(
                CertificateTransaction.certificate_id == certificate_id
            ).order_by(CertificateTransaction.performed_at.desc()).all()
            return [to_model(models.CertificateTransaction, row) for row in rows]


class TemplateRepository:
    """Репозиторий шаблонов сертификатов."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def create_template(self, template_data: dict) -> models.CertificateTemplate:
        with self.db_manager.get_session() as session:
            template = dict_to_row(CertificateTemplate, template_data)
            session.add(template)
            session.commit()
            return to_model(models.CertificateTemplate, template)

    def get_template(self, template_id: str) -> Optional[models.CertificateTemplate]:
        with self.db_manager.get_session() as session:
            template = session.get(CertificateTemplate, template_id)
            return to_model(models.CertificateTemplate, template) if template else None

    def get_templates(self, active_only: bool = True) -> List[models.CertificateTemplate]:
        with self.db_manager.get_session() as session:
            query = session.query(CertificateTemplate)
            if active_only:
                query = query.filter(CertificateTemplate.is_active == True)
            rows = query.order_by(CertificateTemplate.created_at.asc()).all()
            return [to_model(models.CertificateTemplate, row) for row in rows]


class DocumentRepository:
    """Репозиторий метаданных документов."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _to_model(row: Document) -> models.Document:
        return to_model(models.Document, row)

    def create_document(self, document_data: dict) -> models.Document:
        with self.db_manager.get_session() as session:
            document = dict_to_row(Document, document_data)
            session.add(document)
            session.commit()
            return self._to_model(document)

    def get_document(self, document_id: str) -> Optional[models.Document]:
        with self.db_manager.get_session() as session:
            document = session.get(Document, document_id)
            return self._to_model(document) if document else None

    def get_documents(self, uploader_id: str = None, doc_type: str = None, status: str = None,
                      search: str = None, limit: int = None) -> List[models.Document]:
        """
        Поиск документов по фильтрам, новые первыми.

        Returns:
            List[models.Document]: Найденные документы
        """
        with self.db_manager.get_session() as session:
            query = session.query(Document)

            if uploader_id:
                query = query.filter(Document.uploader_id == uploader_id)

            if doc_type:
                query = query.filter(Document.type == getattr(doc_type, "value", doc_type))

            if status:
                query = query.filter(Document.status == getattr(status, "value", status))

            if search:
                pattern = f"%{search.strip()}%"
                query = query.filter(or_(Document.name.ilike(pattern), Document.file_name.ilike(pattern)))

            query = query.order_by(Document.uploaded_at.desc())
            if limit:
                query = query.limit(limit)

            return [self._to_model(row) for row in query.all()]

    def apply_change(self, document_id: str,
                     change: Callable[[models.Document], Dict[str, Any]]) -> models.Document:
        """
        Атомарно изменяет документ.

        Raises:
            DocumentNotFoundError: Если документ не найден
        """
        with self.db_manager.get_session() as session:
            document = session.query(Document).filter(Document.id == document_id).with_for_update().first()
            if not document:
                raise DocumentNotFoundError(f"Document {document_id} not found")

            updates = change(self._to_model(document))
            _apply_updates(document, dict(updates, updated_at=datetime.now()))
            session.commit()
            return self._to_model(document)

    def delete_document(self, document_id: str) -> bool:
        with self.db_manager.get_session() as session:
            document = session.get(Document, document_id)
            if not document:
                return False
            session.delete(document)
            session.commit()
            return True


class ClientRequestRepository:
    """Репозиторий клиентских запросов на сертификаты."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _to_model(row: ClientRequest) -> models.ClientRequest:
        return to_model(models.ClientRequest, row)

    def create_request(self, request_data: dict) -> models.ClientRequest:
        with self.db_manager.get_session() as session:
            request = dict_to_row(ClientRequest, request_data)
            session.add(request)
            session.commit()
            return self._to_model(request)

    def get_request(self, request_id: str) -> Optional[models.ClientRequest]:
        with self.db_manager.get_session() as session:
            request = session.get(ClientRequest, request_id)
            return self._to_model(request) if request else None

    def get_requests(self, client_id: str = None, assigned_ca_id: str = None,
                     status: str = None) -> List[models.ClientRequest]:
        """
        Поиск запросов по клиенту, назначенному CA и статусу, новые первыми.

        Returns:
            List[models.ClientRequest]: Найденные запросы
        """
        with self.db_manager.get_session() as session:
            query = session.query(ClientRequest)

            if client_id:
                query = query.filter(ClientRequest.client_id == client_id)

            if assigned_ca_id:
                query = query.filter(ClientRequest.assigned_ca_id == assigned_ca_id)

            if status:
                query = query.filter(ClientRequest.status == getattr(status, "value", status))

            rows = query.order_by(ClientRequest.created_at.desc()).all()
            return [self._to_model(row) for row in rows]

    def apply_change(self, request_id: str,
                     change: Callable[[models.ClientRequest], Dict[str, Any]]) -> models.ClientRequest:
        """
        Атомарно изменяет запрос. Функция change получает текущее состояние
        и возвращает изменения по именам колонок.

        Raises:
            RequestNotFoundError: Если запрос не найден
        """
        with self.db_manager.get_session() as session:
            request = session.query(ClientRequest).filter(
                ClientRequest.id == request_id
            ).with_for_update().first()
            if not request:
                raise RequestNotFoundError(f"Certificate request {request_id} not found")

            updates = change(self._to_model(request))
            _apply_updates(request, dict(updates, updated_at=datetime.now()))
            session.commit()
            return self._to_model(request)


class AuditRepository:
    """Журналы действий пользователей и администраторов."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def log_activity(self, activity_type: str, action: str, user_id: str = None,
                     certificate_id: str = None, details: dict = None) -> models.Activity:
        with self.db_manager.get_session() as session:
            activity = Activity(
                type=activity_type,
                action=action,
                user_id=user_id,
                certificate_id=certificate_id,
                details=details or {},
                timestamp=datetime.now()
            )
            session.add(activity)
            session.commit()
            return to_model(models.Activity, activity)

    def get_activities(self, since: datetime = None, user_id: str = None,
                       limit: int = None) -> List[models.Activity]:
        with self.db_manager.get_session() as session:
            query = session.query(Activity)
            if since:
                query = query.filter(Activity.timestamp >= since)
            if user_id:
                query = query.filter(Activity.user_id == user_id)
            query = query.order_by(Activity.timestamp.desc())
            if limit:
                query = query.limit(limit)
            return [to_model(models.Activity, row) for row in query.all()]

    def add_admin_activity(self, action: str, admin_id: str, target: models.User = None,
                           details: dict = None) -> models.AdminActivity:
        """Добавляет запись в журнал администратора вне транзакции изменения пользователя."""
        with self.db_manager.get_session() as session:
            activity = AdminActivity(
                action=action,
                admin_id=admin_id,
                target_user_id=target.id if target else None,
                target_user_email=target.email if target else None,
                target_user_name=target.display_name if target else None,
                details=details or {},
                timestamp=datetime.now()
            )
            session.add(activity)
            session.commit()
            return to_model(models.AdminActivity, activity)

    def get_admin_activities(self, admin_id: str = None, action: str = None,
                             user_id: str = None, start_date: datetime = None,
                             end_date: datetime = None, limit: int = None) -> List[models.AdminActivity]:
        """
        Журнал администратора по фильтрам, новые первыми.

        Args:
            admin_id: Только действия этого администратора
            action: Код действия
            user_id: Пользователь как исполнитель или как цель действия
            start_date: Начало периода
            end_date: Конец периода
            limit: Максимальное количество

        Returns:
            List[models.AdminActivity]: Записи журнала
        """
        with self.db_manager.get_session() as session:
            query = session.query(AdminActivity)

            if admin_id:
                query = query.filter(AdminActivity.admin_id == admin_id)

            if user_id:
                query = query.filter(or_(
                    AdminActivity.admin_id == user_id,
                    AdminActivity.target_user_id == user_id
                ))

            if action:
                query = query.filter(AdminActivity.action == action)

            if start_date:
                query = query.filter(AdminActivity.timestamp >= start_date)

            if end_date:
                query = query.filter(AdminActivity.timestamp <= end_date)

            query = query.order_by(AdminActivity.timestamp.desc())
            if limit:
                query = query.limit(limit)

            return [to_model(models.AdminActivity, row) for row in query.all()]


class NotificationRepository:
    """Репозиторий уведомлений."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def create_notification(self, user_id: str, notification_type: str, title: str,
                            message: str, data: dict = None) -> models.Notification:
        with self.db_manager.get_session() as session:
            notification = Notification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                data=data or {},
                created_at=datetime.now()
            )
            session.add(notification)
            session.commit()
            return to_model(models.Notification, notification)

    def get_for_user(self, user_id: str, unread_only: bool = False,
                     limit: int = 50) -> List[models.Notification]:
        with self.db_manager.get_session() as session:
            query = session.query(Notification).filter(Notification.user_id == user_id)
            if unread_only:
                query = query.filter(Notification.read == False)
            rows = query.order_by(Notification.created_at.desc()).limit(limit).all()
            return [to_model(models.Notification, row) for row in rows]

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        with self.db_manager.get_session() as session:
            updated = session.query(Notification).filter(
                Notification.id == notification_id,
                Notification.user_id == user_id
            ).update({Notification.read: True}, synchronize_session=False)
            session.commit()
            return updated > 0


class BackupRepository:
    """Выгрузка и загрузка коллекций, журнал резервных копий."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _collection(name: str) -> Type[Base]:
        try:
            return COLLECTIONS[name]
        except KeyError:
            raise BackupError(f"Unknown collection: {name}")

    def dump_collection(self, name: str, since: datetime = None) -> List[Dict[str, Any]]:
        """
        Выгружает коллекцию целиком или только измененные после since.

        Args:
            name: Имя коллекции
            since: Нижняя граница updated_at (или created_at)

        Returns:
            List[Dict[str, Any]]: Строки по именам колонок
        """
        model_cls = self._collection(name)
        with self.db_manager.get_session() as session:
            query = session.query(model_cls)
            if since is not None:
                if hasattr(model_cls, "updated_at"):
                    timestamp_column = model_cls.updated_at
                else:
                    timestamp_column = model_cls.created_at
                query = query.filter(timestamp_column > since)
            return [row_to_dict(row) for row in query.all()]

    def restore_collection(self, name: str, records: List[Dict[str, Any]], replace: bool = True) -> int:
        """
        Записывает строки коллекции одной транзакцией.

        Args:
            name: Имя коллекции
            records: Строки по именам колонок
            replace: True - удалить текущие строки и вставить заново,
                     False - обновить или добавить по ID

        Returns:
            int: Количество записанных строк
        """
        model_cls = self._collection(name)
        with self.db_manager.get_session() as session:
            try:
                if replace:
                    session.query(model_cls).delete(synchronize_session=False)
                    session.add_all(dict_to_row(model_cls, record) for record in records)
                else:
                    for record in records:
                        session.merge(dict_to_row(model_cls, record))
                session.commit()
            except Exception:
                session.rollback()
                raise
        return len(records)

    def count(self, name: str) -> int:
        with self.db_manager.get_session() as session:
            return session.query(self._collection(name)).count()

    def create_record(self, record_data: dict) -> models.BackupRecord:
        with self.db_manager.get_session() as session:
            record = dict_to_row(BackupRecord, record_data)
            session.add(record)
            session.commit()
            return to_model(models.BackupRecord, record)

    def get_record(self, backup_id: str) -> Optional[models.BackupRecord]:
        with self.db_manager.get_session() as session:
            record = session.get(BackupRecord, backup_id)
            return to_model(models.BackupRecord, record) if record else None

    def get_records(self, limit: int = 50) -> List[models.BackupRecord]:
        with self.db_manager.get_session() as session:
            query = session.query(BackupRecord).order_by(BackupRecord.created_at.desc())
            if limit:
                query = query.limit(limit)
            return [to_model(models.BackupRecord, row) for row in query.all()]

    def delete_record(self, backup_id: str) -> bool:
        with self.db_manager.get_session() as session:
            record = session.get(BackupRecord, backup_id)
            if not record:
                return False
            session.delete(record)
            session.commit()
            return True

    def save_restoration_log(self, log_data: dict):
        with self.db_manager.get_session() as session:
            session.merge(dict_to_row(RestorationLog, log_data))
            session.commit()

    def get_restoration_log(self, restoration_id: str) -> Optional[dict]:
        with self.db_manager.get_session() as session:
            log = session.get(RestorationLog, restoration_id)
            return row_to_dict(log) if log else None


# Глобальный менеджер БД создается при первом обращении
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Возвращает менеджер БД."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def set_db_manager(db_manager: DatabaseManager):
    """Подменяет глобальный менеджер БД (CLI с явным URL, тесты)."""
    global _db_manager
    _db_manager = db_manager


def get_certificate_repo() -> CertificateRepository:
    """Возвращает репозиторий сертификатов."""
    return CertificateRepository(get_db_manager())

