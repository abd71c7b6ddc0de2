"""
Отчеты администратора.

Каждый отчет строится полным чтением таблиц и подсчетом в памяти.
Раздел отчета, который не удалось построить, содержит {"error": "..."}.
"""

import csv
import io
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from .models import CertificateStatus, UserType
from .database import (
    AuditRepository, CertificateRepository, DatabaseManager, DocumentRepository,
    UserRepository, get_db_manager
)
from .storage import FileStorage, get_file_storage
from .exceptions import *

logger = logging.getLogger(__name__)

ACTIVITY_WINDOW_DAYS = 30


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _month_key(moment: Optional[datetime]) -> Optional[str]:
    return moment.strftime("%Y-%m") if moment else None


class ReportsService:
    """Сервис отчетов."""

    def __init__(self, db_manager: DatabaseManager = None, file_storage: FileStorage = None):
        db_manager = db_manager or get_db_manager()
        self.user_repo = UserRepository(db_manager)
        self.certificate_repo = CertificateRepository(db_manager)
        self.document_repo = DocumentRepository(db_manager)
        self.audit_repo = AuditRepository(db_manager)
        self.file_storage = file_storage or get_file_storage()

    def generate_system_overview_report(self) -> Dict[str, Any]:
        """
        Сводный отчет по пользователям, сертификатам, документам и активности.

        Returns:
            Dict[str, Any]: Отчет с разделами users, certificates, documents, activity
        """
        now = datetime.now()
        logger.info("Построение сводного отчета")

        return {
            "reportId": f"SYS-{_millis(now)}",
            "generatedAt": now.isoformat(),
            "type": "system_overview",
            "users": self._section("users", self._generate_user_report),
            "certificates": self._section("certificates", self._generate_certificate_report),
            "documents": self._section("documents", self._generate_document_report),
            "activity": self._section("activity", self._generate_activity_report),
        }

    def generate_ca_performance_report(self) -> Dict[str, Any]:
        """
        Отчет о работе удостоверяющих центров: выпущенные сертификаты и проверенные документы.
        """
        now = datetime.now()
        logger.info("Построение отчета по CA")

        def build() -> Dict[str, Any]:
            cas = self.user_repo.get_users(user_type=UserType.CA)
            certificates = self.certificate_repo.get_all_certificates()
            documents = self.document_repo.get_documents()

            issued_by = Counter(c.issuer_id for c in certificates if c.issued_at is not None)
            reviewed_by = Counter(d.verifier_id for d in documents if d.verifier_id)

            performance = [
                {
                    "caId": ca.id,
                    "name": ca.display_name,
                    "email": ca.email,
                    "organization": ca.organization_name,
                    "status": ca.status.value,
                    "certificatesIssued": issued_by.get(ca.id, 0),
                    "documentsReviewed": reviewed_by.get(ca.id, 0),
                }
                for ca in cas
            ]
            performance.sort(key=lambda item: item["certificatesIssued"], reverse=True)
            statuses = Counter(ca.status.value for ca in cas)

            return {
                "totalCAs": len(cas),
                "activeCAs": statuses.get("active", 0),
                "pendingCAs": statuses.get("pending", 0),
                "caPerformance": performance,
            }

        report = {
            "reportId": f"CA-{_millis(now)}",
            "generatedAt": now.isoformat(),
            "type": "ca_performance",
        }
        report.update(self._section("ca_performance", build))
        return report

    def generate_audit_trail_report(self, start_date: datetime = None, end_date: datetime = None,
                                    user_id: str = None, action: str = None) -> Dict[str, Any]:
        """
        Журнал действий администраторов за период с распределениями.

        Args:
            start_date: Начало периода
            end_date: Конец периода
            user_id: Пользователь как исполнитель или как цель
            action: Код действия

        Returns:
            Dict[str, Any]: Отчет с записями журнала, новые первыми
        """
        now = datetime.now()
        logger.info(f"Построение журнала аудита: {start_date} - {end_date}, user={user_id}, action={action}")

        def build() -> Dict[str, Any]:
            entries = self.audit_repo.get_admin_activities(
                action=action, user_id=user_id, start_date=start_date, end_date=end_date
            )
            return {
                "totalEntries": len(entries),
                "actionDistribution": dict(Counter(e.action for e in entries)),
                "userDistribution": dict(Counter(e.admin_id for e in entries)),
                "dailyDistribution": dict(Counter(e.timestamp.strftime("%Y-%m-%d") for e in entries)),
                "entries": [e.model_dump(mode="json") for e in entries],
            }

        report = {
            "reportId": f"AUD-{_millis(now)}",
            "generatedAt": now.isoformat(),
            "type": "audit_trail",
            "filters": {
                "startDate": start_date.isoformat() if start_date else None,
                "endDate": end_date.isoformat() if end_date else None,
                "userId": user_id,
                "action": action,
            },
        }
        report.update(self._section("audit_trail", build))
        return report

    def export_report_to_csv(self, report: Dict[str, Any]) -> str:
        """
        Сохраняет отчет в CSV (key,value) в хранилище.

        Вложенные словари разворачиваются в ключи через точку, списки
        записываются как количество элементов.

        Args:
            report: Отчет

        Returns:
            str: Путь к файлу в хранилище

        Raises:
            StorageError: При ошибке записи
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["key", "value"])
        for key, value in self._flatten(report):
            writer.writerow([key, value])

        report_id = report.get("reportId") or f"REPORT-{_millis(datetime.now())}"
        object_path = f"reports/{report_id}.csv"
        self.file_storage.put_bytes(object_path, buffer.getvalue().encode("utf-8"))
        logger.info(f"Отчет {report_id} выгружен в {object_path}")
        return object_path

    def _generate_user_report(self) -> Dict[str, Any]:
        users = self.user_repo.get_users()
        monthly = Counter(_month_key(u.created_at) for u in users)

        return {
            "totalUsers": len(users),
            "roleDistribution": dict(Counter(u.user_type.value for u in users)),
            "statusDistribution": dict(Counter(u.status.value for u in users)),
            "monthlyRegistrations": dict(sorted(monthly.items())),
            "averageUsersPerMonth": round(len(users) / len(monthly), 2) if monthly else 0,
        }

    def _generate_certificate_report(self) -> Dict[str, Any]:
        certificates = self.certificate_repo.get_all_certificates()
        by_status = Counter(c.effective_status.value for c in certificates)
        monthly_issued = Counter(
            _month_key(c.issued_at) for c in certificates
            if c.issued_at and c.status == CertificateStatus.ISSUED
        )

        return {
            "totalCertificates": len(certificates),
            "statusDistribution": dict(by_status),
            "typeDistribution": dict(Counter(c.type.value for c in certificates)),
            "monthlyIssued": dict(sorted(monthly_issued.items())),
            "issuedCount": by_status.get(CertificateStatus.ISSUED.value, 0),
            "pendingCount": by_status.get(CertificateStatus.PENDING.value, 0)
                            + by_status.get(CertificateStatus.DRAFT.value, 0),
            "revokedCount": by_status.get(CertificateStatus.REVOKED.value, 0),
            "expiredCount": by_status.get(CertificateStatus.EXPIRED.value, 0),
        }

    def _generate_document_report(self) -> Dict[str, Any]:
        documents = self.document_repo.get_documents()
        total_bytes = sum(d.file_size for d in documents)
        monthly_storage: Dict[str, int] = defaultdict(int)
        for document in documents:
            monthly_storage[_month_key(document.uploaded_at)] += document.file_size

        return {
            "totalDocuments": len(documents),
            "typeDistribution": dict(Counter(d.type.value for d in documents)),
            "statusDistribution": dict(Counter(d.status.value for d in documents)),
            "totalStorageBytes": total_bytes,
            "totalStorageMB": round(total_bytes / (1024 * 1024), 2),
            "averageFileSizeBytes": round(total_bytes / len(documents)) if documents else 0,
            "monthlyStorageUsage": dict(sorted(monthly_storage.items())),
        }

    def _generate_activity_report(self) -> Dict[str, Any]:
        since = datetime.now() - timedelta(days=ACTIVITY_WINDOW_DAYS)
        activities = self.audit_repo.get_activities(since=since)
        daily = Counter(a.timestamp.strftime("%Y-%m-%d") for a in activities)
        most_active_day = max(daily.items(), key=lambda item: item[1]) if daily else None

        return {
            "periodDays": ACTIVITY_WINDOW_DAYS,
            "totalActivities": len(activities),
            "actionDistribution": dict(Counter(a.action for a in activities)),
            "dailyActivity": dict(sorted(daily.items())),
            "mostActiveDay": {"date": most_active_day[0], "count": most_active_day[1]} if most_active_day else None,
            "averageActivitiesPerDay": round(len(activities) / ACTIVITY_WINDOW_DAYS, 2),
        }

    @staticmethod
    def _section(name: str, builder) -> Dict[str, Any]:
        try:
            return builder()
        except Exception as e:
            logger.error(f"Ошибка построения раздела отчета {name}: {e}")
            return {"error": str(e)}

    def _flatten(self, data: Any, prefix: str = "") -> List[tuple]:
        rows = []
        if isinstance(data, dict):
            for key, value in data.items():
                full_key = f"{prefix}.{key}" if prefix else str(key)
                rows.extend(self._flatten(value, full_key))
        elif isinstance(data, list):
            rows.append((prefix, len(data)))
        else:
            rows.append((prefix, "" if data is None else data))
        return rows


_reports_service: Optional[ReportsService] = None


def get_reports_service() -> ReportsService:
    """Возвращает экземпляр сервиса отчетов."""
    global _reports_service
    if _reports_service is None:
        _reports_service = ReportsService()
    return _reports_service
