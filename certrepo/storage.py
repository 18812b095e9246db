"""
Модуль для работы с файлами сертификатов.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from .exceptions import RenderingError, StorageError
from .models import Certificate

logger = logging.getLogger(__name__)


class ArtifactRenderer(Protocol):
    """Контракт генератора файла сертификата (PDF, JSON и т.д.)."""

    extension: str

    def render(self, certificate: Certificate) -> bytes:
        ...


class JsonArtifactRenderer:
    """Формирует JSON документ сертификата."""

    extension = "json"

    def render(self, certificate: Certificate) -> bytes:
        """
        Сериализует сертификат в JSON.

        Args:
            certificate: Сертификат

        Returns:
            bytes: Содержимое файла

        Raises:
            RenderingError: При ошибке сериализации
        """
        try:
            return json.dumps(certificate.to_dict(), ensure_ascii=False, indent=2).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise RenderingError(f"Ошибка формирования файла сертификата {certificate.id}: {e}") from e


class ArtifactStorage:
    """Файловое хранилище сертификатов со структурой папок YYYY/MM/."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def path_for(self, certificate: Certificate, extension: str) -> Path:
        # Структура папок по дате создания: YYYY/MM/
        year = certificate.created_at.year
        month = certificate.created_at.month
        return self.base_path / str(year) / f"{month:02d}" / f"{certificate.id}.{extension}"

    def save(self, certificate: Certificate, content: bytes, extension: str) -> Path:
        """
        Сохранение файла сертификата.

        Args:
            certificate: Сертификат
            content: Содержимое файла
            extension: Расширение файла

        Returns:
            Path: Путь к сохраненному файлу

        Raises:
            StorageError: При ошибке записи
        """
        file_path = self.path_for(certificate, extension)

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, 'wb') as f:
                f.write(content)

            # Установка прав доступа
            os.chmod(file_path, 0o644)

        except OSError as e:
            raise StorageError(f"Ошибка сохранения файла: {e}") from e

        logger.info(f"Файл сертификата {certificate.id} сохранен: {file_path}")
        return file_path

    def load(self, artifact_path: str) -> Optional[bytes]:
        """
        Загрузка файла сертификата.

        Args:
            artifact_path: Путь, сохраненный в записи сертификата

        Returns:
            Optional[bytes]: Содержимое или None если файла нет
        """
        file_path = Path(artifact_path)
        if not file_path.exists():
            return None

        try:
            with open(file_path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Ошибка чтения файла: {e}") from e

    def delete(self, artifact_path: str) -> bool:
        """
        Удаление файла сертификата.

        Returns:
            bool: True если файл был удален
        """
        file_path = Path(artifact_path)
        if not file_path.exists():
            return False

        try:
            file_path.unlink()
        except OSError as e:
            raise StorageError(f"Ошибка удаления файла: {e}") from e

        logger.info(f"Файл сертификата удален: {file_path}")
        return True

    def get_storage_stats(self) -> Dict:
        """
        Статистика файлового хранилища.

        Returns:
            Dict: Число файлов и их суммарный размер
        """
        total_files = 0
        total_size = 0

        for file_path in self.base_path.rglob("*"):
            if file_path.is_file():
                total_files += 1
                total_size += file_path.stat().st_size

        return {
            "total_files": total_files,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "base_path": str(self.base_path),
        }
