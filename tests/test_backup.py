"""
Тесты резервного копирования и восстановления
"""
import json
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from certrepo.backup_service import format_file_size
from certrepo.database import UserRepository
from certrepo.models import BackupType, CertificateStatus
from certrepo.exceptions import BackupError, BackupNotFoundError


class TestFormatFileSize:
    """Тесты форматирования размера"""

    @pytest.mark.parametrize("size, expected", [
        (0, "0 B"),
        (512, "512 B"),
        (1536, "1.5 KB"),
        (1024 * 1024, "1.0 MB"),
        (3 * 1024 ** 3, "3.0 GB"),
    ])
    def test_format(self, size, expected):
        assert format_file_size(size) == expected


class TestFullBackup:
    """Тесты полной резервной копии"""

    def test_create(self, backup_service, admin, issued_certificate, file_storage):
        record = backup_service.create_full_backup(admin.id, "nightly")

        assert record.id.startswith("full_")
        assert record.type == BackupType.FULL_SYSTEM
        assert record.storage_path == f"backups/{record.id}.backup"
        assert record.statistics["users"] == 3
        assert record.statistics["certificates"] == 1
        assert record.size == file_storage.size(record.storage_path)

        payload = json.loads(file_storage.get_bytes(record.storage_path).decode("utf-8"))
        assert payload["metadata"]["backupId"] == record.id
        assert payload["metadata"]["initiatedBy"] == admin.id
        assert payload["collections"]["certificates"][0]["id"] == issued_certificate.id

    def test_history_and_status(self, backup_service, admin):
        record = backup_service.create_full_backup(admin.id)

        assert [r.id for r in backup_service.get_backup_history()] == [record.id]
        status = backup_service.get_backup_status(record.id)
        assert status["fileExists"]
        assert status["sizeFormatted"] == record.size_formatted

    def test_history_returns_empty_on_error(self, backup_service):
        with patch.object(backup_service.backup_repo, "get_records", side_effect=RuntimeError("db down")):
            assert backup_service.get_backup_history() == []

    def test_unknown_backup(self, backup_service):
        with pytest.raises(BackupNotFoundError):
            backup_service.get_backup_status("full_0")


class TestIncrementalBackup:
    """Тесты инкрементальной копии"""

    def test_only_changed_rows(self, backup_service, admin, recipient, make_user, db_manager):
        cutoff = datetime.now()
        changed = UserRepository(db_manager).update_user(recipient.id, {"display_name": "Renamed Student"})
        new_user = make_user()

        record = backup_service.create_incremental_backup(admin.id, cutoff)

        assert record.type == BackupType.INCREMENTAL
        assert record.storage_path.startswith("backups/incremental/")
        payload = json.loads(backup_service.file_storage.get_bytes(record.storage_path))
        user_ids = {row["id"] for row in payload["collections"]["users"]}
        assert user_ids == {changed.id, new_user.id}
        assert set(payload["collections"]) == {"users", "certificates", "documents", "certificate_requests"}


class TestRestore:
    """Тесты восстановления"""

    def test_round_trip(self, backup_service, certificate_service, admin, ca_user, issued_certificate,
                        certificate_request, make_user):
        """Восстановление возвращает содержимое таблиц на момент копии"""
        record = backup_service.create_full_backup(admin.id)

        certificate_service.revoke_certificate(issued_certificate.id, ca_user.id, "Mistake")
        certificate_service.create_certificate(certificate_request, ca_user.id)
        make_user()

        result = backup_service.restore_from_backup(record.id, admin.id, create_backup_before_restore=False)

        assert result["success"]
        assert result["failedSteps"] == []
        assert result["stepsCompleted"][:3] == ["users", "certificates", "documents"]

        restored = certificate_service.get_certificate(issued_certificate.id)
        assert restored.status == CertificateStatus.ISSUED
        assert not restored.is_revoked
        assert restored.verification_code == issued_certificate.verification_code
        assert restored.issued_at == issued_certificate.issued_at
        assert len(certificate_service.get_certificates()) == 1
        assert backup_service.backup_repo.count("users") == 3

    def test_restoration_log(self, backup_service, admin):
        record = backup_service.create_full_backup(admin.id)
        result = backup_service.restore_from_backup(record.id, admin.id, create_backup_before_restore=False)

        log = backup_service.backup_repo.get_restoration_log(result["restorationId"])
        assert log["backup_id"] == record.id
        assert log["status"] == "completed"

    def test_safety_backup(self, backup_service, admin):
        record = backup_service.create_full_backup(admin.id)
        result = backup_service.restore_from_backup(record.id, admin.id)

        assert result["safetyBackupId"] not in (None, record.id)
        assert len(backup_service.get_backup_history()) == 2

    def test_failed_table_does_not_stop_others(self, backup_service, admin, issued_certificate):
        """Ошибка одной таблицы записывается, остальные восстанавливаются"""
        record = backup_service.create_full_backup(admin.id)
        original = backup_service.backup_repo.restore_collection

        def failing(name, records, replace=True):
            if name == "certificates":
                raise RuntimeError("constraint violation")
            return original(name, records, replace=replace)

        with patch.object(backup_service.backup_repo, "restore_collection", side_effect=failing):
            result = backup_service.restore_from_backup(record.id, admin.id, create_backup_before_restore=False)

        assert not result["success"]
        assert [step["step"] for step in result["failedSteps"]] == ["certificates"]
        assert "users" in result["stepsCompleted"]
        assert "documents" in result["stepsCompleted"]
        log = backup_service.backup_repo.get_restoration_log(result["restorationId"])
        assert log["status"] == "partial"

    def test_corrupted_backup(self, backup_service, admin, file_storage):
        record = backup_service.create_full_backup(admin.id)
        file_storage.put_bytes(record.storage_path, b"{not json")

        with pytest.raises(BackupError, match="corrupted"):
            backup_service.restore_from_backup(record.id, admin.id, create_backup_before_restore=False)

    def test_backup_without_metadata(self, backup_service, admin, file_storage):
        record = backup_service.create_full_backup(admin.id)
        file_storage.put_bytes(record.storage_path, b'{"collections": {}}')

        with pytest.raises(BackupError, match="metadata"):
            backup_service.restore_from_backup(record.id, admin.id, create_backup_before_restore=False)

    def test_incremental_restore_upserts(self, backup_service, admin, recipient, make_user, db_manager):
        cutoff = datetime.now() - timedelta(seconds=1)
        record = backup_service.create_incremental_backup(admin.id, cutoff)
        extra = make_user()

        result = backup_service.restore_from_backup(record.id, admin.id, create_backup_before_restore=False)

        assert result["success"]
        assert UserRepository(db_manager).get_user_by_id(extra.id) is not None


class TestMaintenance:
    """Тесты обслуживания копий"""

    def test_download_url(self, backup_service, admin):
        record = backup_service.create_full_backup(admin.id)
        result = backup_service.generate_backup_download_url(record.id)

        assert result["success"]
        assert result["filename"] == f"{record.id}.backup"
        assert "token=" in result["downloadUrl"]

    def test_download_url_for_unknown_backup(self, backup_service):
        result = backup_service.generate_backup_download_url("full_0")
        assert not result["success"]
        assert "not found" in result["error"]

    def test_delete(self, backup_service, admin, file_storage):
        record = backup_service.create_full_backup(admin.id)
        assert backup_service.delete_backup(record.id)
        assert not file_storage.exists(record.storage_path)
        assert backup_service.get_backup_history() == []

    def test_cleanup(self, backup_service, admin):
        backup_service.create_full_backup(admin.id)
        assert backup_service.cleanup_old_backups(retention_days=30) == 0
        assert backup_service.cleanup_old_backups(retention_days=0) == 1

    def test_cleanup_keeps_newest(self, backup_service, admin):
        """Копии сверх лимита удаляются, последние остаются"""
        for _ in range(3):
            backup_service.create_full_backup(admin.id)
        newest = backup_service.get_backup_history()[0].id

        assert backup_service.cleanup_old_backups(retention_days=30, max_files=1) == 2
        assert [r.id for r in backup_service.get_backup_history()] == [newest]
