"""
Резервное копирование и восстановление.

Резервная копия - один JSON документ в хранилище (backups/<id>.backup)
с разделами metadata, collections и statistics. Сжатие не применяется,
содержимое только кодируется в UTF-8.
"""

import json
import logging
import uuid
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from config.settings import get_settings
from .models import BackupRecord, BackupType
from .database import BackupRepository, DatabaseManager, get_db_manager
from .storage import FileStorage, get_file_storage
from .security import create_access_token
from .exceptions import *

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"

FULL_BACKUP_COLLECTIONS = (
    "users", "certificates", "documents", "certificate_requests", "certificate_templates", "notifications"
)
INCREMENTAL_BACKUP_COLLECTIONS = ("users", "certificates", "documents", "certificate_requests")

# Порядок восстановления: сертификаты и документы ссылаются на пользователей
RESTORE_ORDER = (
    "users", "certificates", "documents", "certificate_requests", "certificate_templates", "notifications"
)

DOWNLOAD_URL_TTL = timedelta(hours=1)


def format_file_size(size: int) -> str:
    """
    Форматирует размер в байтах для отображения.

    Args:
        size: Размер в байтах

    Returns:
        str: Например "0 B", "512 B", "1.5 KB", "2.0 MB"
    """
    if not size or size <= 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{int(value)} B" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class BackupService:
    """Сервис резервного копирования."""

    def __init__(self, db_manager: DatabaseManager = None, file_storage: FileStorage = None):
        self.backup_repo = BackupRepository(db_manager or get_db_manager())
        self.file_storage = file_storage or get_file_storage()
        self.settings = get_settings()

    def create_full_backup(self, initiated_by: str, description: str = None) -> BackupRecord:
        """
        Создает полную резервную копию всех коллекций.

        Args:
            initiated_by: ID администратора
            description: Описание копии

        Returns:
            BackupRecord: Запись о созданной копии

        Raises:
            BackupError: При ошибке выгрузки или записи
        """
        backup_id = self._new_backup_id("full")
        logger.info(f"Создание полной резервной копии {backup_id} пользователем {initiated_by}")

        try:
            collections = {name: self.backup_repo.dump_collection(name) for name in FULL_BACKUP_COLLECTIONS}
            return self._store_backup(backup_id, BackupType.FULL_SYSTEM, f"backups/{backup_id}.backup",
                                      initiated_by, description, collections)
        except CertificateRepositoryError:
            raise
        except Exception as e:
            logger.error(f"Ошибка создания резервной копии {backup_id}: {e}")
            raise BackupError(f"Backup failed: {e}")

    def create_incremental_backup(self, initiated_by: str, last_backup_time: datetime) -> BackupRecord:
        """
        Создает инкрементальную копию: строки, измененные после last_backup_time.

        Raises:
            BackupError: При ошибке выгрузки или записи
        """
        backup_id = self._new_backup_id("incremental")
        logger.info(f"Создание инкрементальной копии {backup_id} с {last_backup_time}")

        try:
            collections = {
                name: self.backup_repo.dump_collection(name, since=last_backup_time)
                for name in INCREMENTAL_BACKUP_COLLECTIONS
            }
            return self._store_backup(backup_id, BackupType.INCREMENTAL,
                                      f"backups/incremental/{backup_id}.backup", initiated_by,
                                      f"Incremental backup since {last_backup_time.isoformat()}",
                                      collections, {"lastBackupTime": last_backup_time.isoformat()})
        except CertificateRepositoryError:
            raise
        except Exception as e:
            logger.error(f"Ошибка создания инкрементальной копии {backup_id}: {e}")
            raise BackupError(f"Incremental backup failed: {e}")

    def get_backup_history(self, limit: int = 50) -> List[BackupRecord]:
        """История резервных копий, новые первыми. При ошибке возвращает пустой список."""
        try:
            return self.backup_repo.get_records(limit=limit)
        except Exception as e:
            logger.error(f"Ошибка получения истории резервных копий: {e}")
            return []

    def get_backup_status(self, backup_id: str) -> Dict[str, Any]:
        """
        Состояние копии: запись в журнале и наличие файла в хранилище.

        Raises:
            BackupNotFoundError: Если копия не найдена
        """
        record = self._require_record(backup_id)
        return {
            "backupId": record.id,
            "type": record.type.value,
            "createdAt": record.created_at.isoformat(),
            "size": record.size,
            "sizeFormatted": record.size_formatted,
            "fileExists": self.file_storage.exists(record.storage_path),
            "statistics": record.statistics,
        }

    def restore_from_backup(self, backup_id: str, initiated_by: str,
                            create_backup_before_restore: bool = True) -> Dict[str, Any]:
        """
        Восстанавливает данные из резервной копии.

        Полная копия заменяет содержимое каждой таблицы, инкрементальная
        обновляет строки по ID. Каждая таблица записывается отдельно: ошибка
        одной таблицы попадает в failedSteps, остальные продолжают
        восстанавливаться, уже записанные таблицы не откатываются.

        Args:
            backup_id: ID копии
            initiated_by: ID администратора
            create_backup_before_restore: Сначала сделать страховочную полную копию

        Returns:
            Dict[str, Any]: success, restorationId, completedAt, stepsCompleted, failedSteps

        Raises:
            BackupNotFoundError: Если копия не найдена
            BackupError: Если файл поврежден или страховочная копия не создана
        """
        record = self._require_record(backup_id)
        restoration_id = f"restore_{int(datetime.now().timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"
        started_at = datetime.now()
        logger.info(f"Восстановление {restoration_id} из копии {backup_id} пользователем {initiated_by}")

        safety_backup_id = None
        if create_backup_before_restore:
            safety_backup = self.create_full_backup(initiated_by, f"Safety backup before restoring {backup_id}")
            safety_backup_id = safety_backup.id

        backup_data = self._load_backup(record)
        replace = backup_data["metadata"].get("type", record.type.value) == BackupType.FULL_SYSTEM.value
        collections = backup_data.get("collections", {})

        steps_completed: List[str] = []
        failed_steps: List[Dict[str, str]] = []
        for name in RESTORE_ORDER:
            if name not in collections:
                continue
            try:
                count = self.backup_repo.restore_collection(name, collections[name], replace=replace)
                steps_completed.append(name)
                logger.info(f"Коллекция {name} восстановлена: {count} записей")
            except Exception as e:
                logger.error(f"Ошибка восстановления коллекции {name}: {e}")
                failed_steps.append({"step": name, "error": str(e)})

        completed_at = datetime.now()
        status = "completed" if not failed_steps else ("partial" if steps_completed else "failed")
        try:
            self.backup_repo.save_restoration_log({
                "id": restoration_id,
                "backup_id": backup_id,
                "initiated_by": initiated_by,
                "status": status,
                "safety_backup_id": safety_backup_id,
                "steps": {"completed": steps_completed, "failed": failed_steps},
                "started_at": started_at,
                "completed_at": completed_at,
            })
        except Exception as e:
            logger.warning(f"Не удалось записать журнал восстановления {restoration_id}: {e}")

        logger.info(f"Восстановление {restoration_id} завершено со статусом {status}")
        return {
            "success": not failed_steps,
            "restorationId": restoration_id,
            "safetyBackupId": safety_backup_id,
            "completedAt": completed_at.isoformat(),
            "stepsCompleted": steps_completed,
            "failedSteps": failed_steps,
        }

    def cleanup_old_backups(self, retention_days: int = None, max_files: int = None) -> int:
        """
        Удаляет копии старше срока хранения и копии сверх лимита количества.

        Args:
            retention_days: Срок хранения в днях (по умолчанию из настроек)
            max_files: Сколько последних копий оставить (по умолчанию из настроек)

        Returns:
            int: Количество удаленных копий
        """
        if retention_days is None:
            retention_days = self.settings.backup_retention_days
        if max_files is None:
            max_files = self.settings.max_backup_files
        cutoff = datetime.now() - timedelta(days=retention_days)
        logger.info(f"Очистка резервных копий старше {cutoff:%Y-%m-%d %H:%M}, лимит {max_files}")

        # Новые первыми: все после max_files и все старше срока
        records = self.backup_repo.get_records(limit=None)
        expired = [r for i, r in enumerate(records) if i >= max_files or r.created_at < cutoff]

        deleted = 0
        for record in expired:
            try:
                self._delete(record)
                deleted += 1
            except Exception as e:
                logger.warning(f"Не удалось удалить копию {record.id}: {e}")

        logger.info(f"Удалено резервных копий: {deleted}")
        return deleted

    def generate_backup_download_url(self, backup_id: str) -> Dict[str, Any]:
        """
        Ссылка на скачивание копии со сроком действия один час.

        Returns:
            Dict[str, Any]: success, downloadUrl, expiresAt, filename или success=False и error
        """
        try:
            record = self._require_record(backup_id)
            if not self.file_storage.exists(record.storage_path):
                raise BackupNotFoundError(f"Backup file for {backup_id} is missing")

            token = create_access_token({"sub": backup_id, "scope": "backup_download"},
                                        expires_delta=DOWNLOAD_URL_TTL)
            return {
                "success": True,
                "downloadUrl": f"{self.file_storage.url_for(record.storage_path)}?token={token}",
                "expiresAt": (datetime.now() + DOWNLOAD_URL_TTL).isoformat(),
                "filename": record.storage_path.rsplit("/", 1)[-1],
            }
        except Exception as e:
            logger.error(f"Ошибка генерации ссылки для копии {backup_id}: {e}")
            return {"success": False, "error": str(e)}

    def delete_backup(self, backup_id: str) -> bool:
        """
        Удаляет файл копии и запись о ней.

        Raises:
            BackupNotFoundError: Если копия не найдена
        """
        record = self._require_record(backup_id)
        self._delete(record)
        logger.info(f"Резервная копия {backup_id} удалена")
        return True

    def _store_backup(self, backup_id: str, backup_type: BackupType, storage_path: str, initiated_by: str,
                      description: Optional[str], collections: Dict[str, List[Dict[str, Any]]],
                      extra_metadata: Dict[str, Any] = None) -> BackupRecord:
        created_at = datetime.now()
        statistics = {name: len(rows) for name, rows in collections.items()}
        statistics["totalRecords"] = sum(len(rows) for rows in collections.values())

        metadata = {
            "backupId": backup_id,
            "type": backup_type.value,
            "initiatedBy": initiated_by,
            "description": description,
            "createdAt": created_at.isoformat(),
            "version": BACKUP_VERSION,
            "statistics": statistics,
        }
        metadata.update(extra_metadata or {})

        payload = json.dumps(
            {"metadata": metadata, "collections": collections, "statistics": statistics},
            default=_json_default, ensure_ascii=False
        ).encode("utf-8")
        size = self.file_storage.put_bytes(storage_path, payload)

        record = self.backup_repo.create_record({
            "id": backup_id,
            "type": backup_type,
            "initiated_by": initiated_by,
            "description": description,
            "storage_path": storage_path,
            "download_url": self.file_storage.url_for(storage_path),
            "size": size,
            "statistics": statistics,
            "version": BACKUP_VERSION,
            "created_at": created_at,
        })
        logger.info(f"Резервная копия {backup_id} сохранена: {statistics['totalRecords']} записей, "
                    f"{format_file_size(size)}")
        return record

    def _load_backup(self, record: BackupRecord) -> Dict[str, Any]:
        try:
            raw = self.file_storage.get_bytes(record.storage_path)
        except StorageError as e:
            raise BackupError(f"Backup file for {record.id} could not be read: {e}")

        if not raw:
            raise BackupError(f"Backup {record.id} is empty")
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BackupError(f"Backup {record.id} is corrupted: {e}")
        if not isinstance(data, dict) or "metadata" not in data:
            raise BackupError(f"Backup {record.id} has no metadata")
        return data

    def _new_backup_id(self, prefix: str) -> str:
        millis = int(datetime.now().timestamp() * 1000)
        while self.backup_repo.get_record(f"{prefix}_{millis}") is not None:
            millis += 1
        return f"{prefix}_{millis}"

    def _require_record(self, backup_id: str) -> BackupRecord:
        record = self.backup_repo.get_record(backup_id)
        if record is None:
            raise BackupNotFoundError(f"Backup {backup_id} not found")
        return record

    def _delete(self, record: BackupRecord):
        self.file_storage.delete(record.storage_path)
        self.backup_repo.delete_record(record.id)


_backup_service: Optional[BackupService] = None


def get_backup_service() -> BackupService:
    """Возвращает экземпляр сервиса резервного копирования."""
    global _backup_service
    if _backup_service is None:
        _backup_service = BackupService()
    return _backup_service
