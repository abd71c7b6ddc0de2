"""
CLI интерфейс репозитория сертификатов
"""
import argparse
import json
import logging
import sys
from datetime import datetime

from config.settings import configure_logging, get_settings
from certrepo.database import DatabaseManager, set_db_manager
from certrepo.storage import FileStorage, set_file_storage
from certrepo.service import CertificateService
from certrepo.auth_service import AuthService
from certrepo.admin_service import AdminService
from certrepo.reports_service import ReportsService
from certrepo.backup_service import BackupService, format_file_size
from certrepo.exceptions import CertificateRepositoryError

# Действия из CLI записываются от этого имени
CLI_ACTOR = "cli"


class CertificateCLI:
    """CLI интерфейс для обслуживания репозитория"""

    def __init__(self, database_url: str = None, storage_path: str = None):
        self.setup_logging()
        self.setup_storage(database_url, storage_path)

    def setup_logging(self):
        """Настройка логирования"""
        configure_logging(get_settings())
        self.logger = logging.getLogger(__name__)

    def setup_storage(self, database_url: str = None, storage_path: str = None):
        """Настройка хранилищ и сервисов"""
        self.db_manager = DatabaseManager(database_url)
        self.file_storage = FileStorage(storage_path)
        set_db_manager(self.db_manager)
        set_file_storage(self.file_storage)

        self.certificate_service = CertificateService(self.db_manager, self.file_storage)
        self.auth_service = AuthService(self.db_manager)
        self.admin_service = AdminService(self.db_manager, self.file_storage)
        self.reports_service = ReportsService(self.db_manager, self.file_storage)
        self.backup_service = BackupService(self.db_manager, self.file_storage)

    def init_db(self, args):
        """Создание таблиц"""
        self.db_manager.create_tables()
        print("✓ Таблицы БД созданы")

    def create_admin(self, args):
        """Создание администратора"""
        user = self.auth_service.create_admin(args.email, args.password, args.name)
        print(f"✓ Администратор создан:")
        print(f"  ID: {user.id}")
        print(f"  Email: {user.email}")

    def verify_certificate(self, args):
        """Проверка сертификата по коду"""
        result = self.certificate_service.verify_certificate(args.code, method="cli")

        if result.certificate is None:
            print(f"✗ Сертификат {args.code} не найден")
            return 1

        print(self.certificate_service.format_certificate_info(result.certificate, detailed=True))
        if result.is_valid:
            print("  Статус: ✓ ДЕЙСТВИТЕЛЕН")
            return 0
        print(f"  Статус: ✗ НЕДЕЙСТВИТЕЛЕН ({result.reason})")
        return 1

    def show_statistics(self, args):
        """Сводная статистика"""
        stats = {
            "users": self.admin_service.get_user_statistics(),
            "certificates": self.admin_service.get_certificate_statistics(),
            "documents": self.admin_service.get_document_statistics(),
        }
        self._print_json(stats)

    def generate_report(self, args):
        """Построение отчета"""
        if args.type == "system":
            report = self.reports_service.generate_system_overview_report()
        elif args.type == "ca":
            report = self.reports_service.generate_ca_performance_report()
        else:
            report = self.reports_service.generate_audit_trail_report(
                start_date=args.start, end_date=args.end, user_id=args.user, action=args.action
            )

        if args.csv:
            path = self.reports_service.export_report_to_csv(report)
            print(f"✓ Отчет {report['reportId']} сохранен: {path}")
        else:
            self._print_json(report)

    def create_backup(self, args):
        """Создание резервной копии"""
        if args.incremental:
            if not args.since:
                print("✗ Для инкрементальной копии нужен --since")
                return 1
            record = self.backup_service.create_incremental_backup(CLI_ACTOR, args.since)
        else:
            record = self.backup_service.create_full_backup(CLI_ACTOR, args.description)

        print(f"✓ Резервная копия создана:")
        print(f"  ID: {record.id}")
        print(f"  Тип: {record.type.value}")
        print(f"  Размер: {record.size_formatted}")
        print(f"  Записей: {record.statistics.get('totalRecords', 0)}")
        return 0

    def restore_backup(self, args):
        """Восстановление из резервной копии"""
        result = self.backup_service.restore_from_backup(
            args.backup_id, CLI_ACTOR, create_backup_before_restore=not args.no_safety_backup
        )
        if result["safetyBackupId"]:
            print(f"  Страховочная копия: {result['safetyBackupId']}")
        print(f"  Восстановлено: {', '.join(result['stepsCompleted']) or '-'}")
        for failed in result["failedSteps"]:
            print(f"  ✗ {failed['step']}: {failed['error']}")

        if result["success"]:
            print(f"✓ Восстановление {result['restorationId']} завершено")
            return 0
        print(f"✗ Восстановление {result['restorationId']} завершено с ошибками")
        return 1

    def list_backups(self, args):
        """Список резервных копий"""
        records = self.backup_service.get_backup_history(args.limit)
        if not records:
            print("  Резервные копии не найдены")
            return

        for record in records:
            print(f"  {record.id}  {record.type.value:<12} {record.created_at:%d.%m.%Y %H:%M}  "
                  f"{format_file_size(record.size)}")

    def cleanup_backups(self, args):
        """Удаление устаревших резервных копий"""
        deleted = self.backup_service.cleanup_old_backups(args.days, args.keep)
        print(f"✓ Удалено резервных копий: {deleted}")

    @staticmethod
    def _print_json(data):
        print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    """Парсер аргументов командной строки"""
    parser = argparse.ArgumentParser(
        description="Обслуживание репозитория цифровых сертификатов",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Примеры использования:
  %(prog)s init-db
  %(prog)s create-admin --email admin@upm.edu.my --password 'Secret123' --name "System Admin"
  %(prog)s verify AB12CD34
  %(prog)s report audit --start 2024-01-01 --csv
  %(prog)s backup --description "before upgrade"
  %(prog)s restore full_1700000000000
        """
    )
    parser.add_argument('--database-url', help='URL БД (по умолчанию из настроек)')
    parser.add_argument('--storage-path', help='Каталог файлового хранилища')

    subparsers = parser.add_subparsers(dest='command', help='Доступные команды')

    subparsers.add_parser('init-db', help='Создание таблиц БД')

    admin_parser = subparsers.add_parser('create-admin', help='Создание администратора')
    admin_parser.add_argument('--email', required=True, help='Email администратора')
    admin_parser.add_argument('--password', required=True, help='Пароль')
    admin_parser.add_argument('--name', required=True, help='Отображаемое имя')

    verify_parser = subparsers.add_parser('verify', help='Проверка сертификата')
    verify_parser.add_argument('code', help='Код проверки или ID сертификата')

    subparsers.add_parser('stats', help='Сводная статистика')

    report_parser = subparsers.add_parser('report', help='Построение отчета')
    report_parser.add_argument('type', choices=['system', 'ca', 'audit'], help='Тип отчета')
    report_parser.add_argument('--start', type=datetime.fromisoformat, help='Начало периода (ISO)')
    report_parser.add_argument('--end', type=datetime.fromisoformat, help='Конец периода (ISO)')
    report_parser.add_argument('--user', help='ID пользователя')
    report_parser.add_argument('--action', help='Код действия')
    report_parser.add_argument('--csv', action='store_true', help='Сохранить в CSV')

    backup_parser = subparsers.add_parser('backup', help='Создание резервной копии')
    backup_parser.add_argument('--description', help='Описание')
    backup_parser.add_argument('--incremental', action='store_true', help='Только изменения')
    backup_parser.add_argument('--since', type=datetime.fromisoformat, help='Нижняя граница изменений (ISO)')

    restore_parser = subparsers.add_parser('restore', help='Восстановление из резервной копии')
    restore_parser.add_argument('backup_id', help='ID резервной копии')
    restore_parser.add_argument('--no-safety-backup', action='store_true',
                                help='Не создавать страховочную копию')

    list_parser = subparsers.add_parser('backups', help='Список резервных копий')
    list_parser.add_argument('--limit', type=int, default=50, help='Количество записей')

    cleanup_parser = subparsers.add_parser('cleanup-backups', help='Удаление устаревших копий')
    cleanup_parser.add_argument('--days', type=int, help='Срок хранения в днях')
    cleanup_parser.add_argument('--keep', type=int, help='Сколько последних копий оставить')

    return parser


COMMANDS = {
    'init-db': CertificateCLI.init_db,
    'create-admin': CertificateCLI.create_admin,
    'verify': CertificateCLI.verify_certificate,
    'stats': CertificateCLI.show_statistics,
    'report': CertificateCLI.generate_report,
    'backup': CertificateCLI.create_backup,
    'restore': CertificateCLI.restore_backup,
    'backups': CertificateCLI.list_backups,
    'cleanup-backups': CertificateCLI.cleanup_backups,
}


def main(argv=None) -> int:
    """Главная функция CLI"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    cli = CertificateCLI(args.database_url, args.storage_path)
    try:
        return COMMANDS[args.command](cli, args) or 0
    except CertificateRepositoryError as e:
        print(f"✗ Ошибка: {e}")
        cli.logger.error(f"Команда {args.command} завершилась ошибкой: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
