"""
FastAPI сервер репозитория сертификатов
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import configure_logging, get_settings
from certrepo.api import CertificateAPI
from certrepo.database import DatabaseManager, set_db_manager
from certrepo.storage import FileStorage, set_file_storage


def create_app(database_url: str = None, storage_path: str = None) -> FastAPI:
    """
    Создание FastAPI приложения.

    Args:
        database_url: URL БД (по умолчанию из настроек)
        storage_path: Каталог файлового хранилища (по умолчанию из настроек)
    """
    settings = get_settings()
    configure_logging(settings)

    # Настройка хранилищ
    db_manager = DatabaseManager(database_url)
    file_storage = FileStorage(storage_path)
    set_db_manager(db_manager)
    set_file_storage(file_storage)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Управление жизненным циклом приложения"""
        logging.info("Запуск API сервера...")
        db_manager.create_tables()
        logging.info("Таблицы БД проверены")

        yield

        logging.info("Остановка API сервера...")
        db_manager.engine.dispose()

    certificate_api = CertificateAPI(db_manager, file_storage, lifespan=lifespan)
    app = certificate_api.app
    app.state.certificate_api = certificate_api

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower()
    )
