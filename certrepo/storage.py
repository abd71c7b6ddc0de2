"""
Файловое хранилище объектов: резервные копии, документы и выгрузки сертификатов.

Пути объектов относительные ("backups/full_1700000000000.backup"),
корень задается настройкой storage_path.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union
from config.settings import get_settings
from .models import Certificate
from .exceptions import StorageError

logger = logging.getLogger(__name__)


class FileStorage:
    """Класс для работы с файловым хранилищем"""

    def __init__(self, base_path: Union[str, Path] = None):
        if base_path is None:
            base_path = get_settings().storage_path
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, object_path: str) -> Path:
        """Возвращает абсолютный путь объекта, не выходящий за корень хранилища."""
        path = (self.base_path / object_path).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Недопустимый путь объекта: {object_path}")
        return path

    def put_bytes(self, object_path: str, data: bytes) -> int:
        """
        Сохраняет объект.

        Args:
            object_path: Относительный путь объекта
            data: Содержимое

        Returns:
            int: Размер записанных данных в байтах

        Raises:
            StorageError: При ошибке записи
        """
        path = self._resolve(object_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            os.chmod(path, 0o644)
            return len(data)
        except OSError as e:
            raise StorageError(f"Ошибка сохранения файла {object_path}: {e}")

    def get_bytes(self, object_path: str) -> bytes:
        """
        Читает объект.

        Raises:
            StorageError: Если объект не найден или не читается
        """
        path = self._resolve(object_path)
        if not path.is_file():
            raise StorageError(f"Файл не найден: {object_path}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Ошибка чтения файла {object_path}: {e}")

    def exists(self, object_path: str) -> bool:
        return self._resolve(object_path).is_file()

    def delete(self, object_path: str) -> bool:
        """
        Удаляет объект.

        Returns:
            bool: True если объект был удален, False если его не было
        """
        path = self._resolve(object_path)
        if not path.is_file():
            return False
        try:
            path.unlink()
            return True
        except OSError as e:
            raise StorageError(f"Ошибка удаления файла {object_path}: {e}")

    def size(self, object_path: str) -> int:
        path = self._resolve(object_path)
        return path.stat().st_size if path.is_file() else 0

    def url_for(self, object_path: str) -> str:
        """Ссылка на объект для записи в метаданных."""
        return self._resolve(object_path).as_uri()

    def list_objects(self, prefix: str = "") -> List[str]:
        """Относительные пути объектов под префиксом."""
        root = self._resolve(prefix) if prefix else self.base_path.resolve()
        if not root.exists():
            return []
        base = self.base_path.resolve()
        return sorted(str(p.relative_to(base)) for p in root.rglob("*") if p.is_file())

    def save_certificate(self, certificate: Certificate) -> str:
        """
        Сохраняет выгрузку сертификата в JSON.

        Структура папок: certificates/YYYY/MM/{verification_code}_{id}.json

        Args:
            certificate: Объект сертификата

        Returns:
            str: Относительный путь сохраненного файла
        """
        moment = certificate.issued_at or certificate.created_at
        object_path = (
            f"certificates/{moment.year}/{moment.month:02d}/"
            f"{certificate.verification_code}_{certificate.id}.json"
        )
        payload = json.dumps(certificate.to_dict(), ensure_ascii=False, indent=2)
        self.put_bytes(object_path, payload.encode("utf-8"))
        return object_path

    def get_storage_stats(self) -> Dict:
        """
        Статистика хранилища по верхним каталогам.

        Returns:
            Dict: Количество файлов и размер по каталогам
        """
        stats = {"total_files": 0, "total_size": 0, "folders": {}}
        base = self.base_path.resolve()
        for path in base.rglob("*"):
            if not path.is_file():
                continue
            size = path.stat().st_size
            folder = path.relative_to(base).parts[0] if len(path.relative_to(base).parts) > 1 else "."
            folder_stats = stats["folders"].setdefault(folder, {"files": 0, "size": 0})
            folder_stats["files"] += 1
            folder_stats["size"] += size
            stats["total_files"] += 1
            stats["total_size"] += size
        stats["last_updated"] = datetime.now().isoformat()
        return stats


# Глобальное хранилище создается при первом обращении
_file_storage: Optional[FileStorage] = None


def get_file_storage() -> FileStorage:
    """Возвращает файловое хранилище."""
    global _file_storage
    if _file_storage is None:
        _file_storage = FileStorage()
    return _file_storage


def set_file_storage(file_storage: FileStorage):
    """Подменяет глобальное хранилище."""
    global _file_storage
    _file_storage = file_storage
