"""
FastAPI сервер для API сертификатов
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from certrepo.api import CertificateAPI
from certrepo.service import CertificateService
from config.settings import Settings, get_settings


def setup_logging(settings: Settings):
    """Настройка логирования"""
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(settings.log_file, encoding='utf-8'),
            logging.StreamHandler()
        ]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""
    db_manager = app.state.certificate_api.service.repository.db_manager
    logging.info("Запуск API сервера...")
    db_manager.create_tables()
    logging.info("Подключение к БД установлено")

    yield

    logging.info("Остановка API сервера...")
    db_manager.dispose()


def create_app(service: CertificateService = None, settings: Settings = None) -> FastAPI:
    """Создание FastAPI приложения"""
    settings = settings or get_settings()
    setup_logging(settings)
    settings.create_directories()

    certificate_api = CertificateAPI(service or CertificateService(settings=settings), settings.api_key or None)
    app = certificate_api.app
    app.router.lifespan_context = lifespan
    app.state.certificate_api = certificate_api

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


if __name__ == "__main__":
    current_settings = get_settings()
    uvicorn.run(
        "api_server:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=current_settings.debug,
        workers=1 if current_settings.debug else 4
    )
