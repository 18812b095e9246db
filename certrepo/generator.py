"""
Генератор идентификаторов, кодов проверки и токенов доступа.
"""

import hashlib
import secrets
import string
import uuid
from datetime import datetime
from typing import Optional, Set, Tuple
from urllib.parse import parse_qs, urlsplit

from .exceptions import GenerationError, ValidationError


class IdentifierGenerator:
    """Генератор идентификаторов на криптографически стойком источнике случайности."""

    def __init__(self, share_token_length: int = 32):
        # Символы кода проверки: латинские буквы в верхнем регистре + цифры
        self.code_characters = string.ascii_uppercase + string.digits
        # Символы токена: буквы обоих регистров + цифры
        self.token_characters = string.ascii_letters + string.digits
        self.code_length = 8
        self.verification_id_length = 16
        self.share_token_length = share_token_length
        self.max_attempts = 1000

    def generate_certificate_id(self) -> str:
        """Глобально уникальный ID сертификата."""
        return str(uuid.uuid4())

    def generate_verification_code(self) -> str:
        """
        Генерирует код проверки.

        Формат: 8 символов из [A-Z0-9], например K7QM2XP9

        Returns:
            str: Код проверки
        """
        return ''.join(secrets.choice(self.code_characters) for _ in range(self.code_length))

    def generate_verification_id(self) -> str:
        """
        Генерирует короткий ID для ссылок проверки.

        Returns:
            str: Первые 16 hex-символов случайного UUID в верхнем регистре
        """
        return uuid.uuid4().hex[:self.verification_id_length].upper()

    def generate_share_token(self, existing_tokens: Optional[Set[str]] = None) -> str:
        """
        Генерирует токен доступа.

        Args:
            existing_tokens: Множество существующих токенов для проверки уникальности

        Returns:
            str: Уникальный токен

        Raises:
            GenerationError: Если не удалось сгенерировать уникальный токен
        """
        if existing_tokens is None:
            existing_tokens = set()

        for attempt in range(self.max_attempts):
            token = ''.join(secrets.choice(self.token_characters) for _ in range(self.share_token_length))

            if token not in existing_tokens:
                return token

        raise GenerationError(
            f"Не удалось сгенерировать уникальный токен за {self.max_attempts} попыток"
        )

    def validate_verification_code_format(self, code: str) -> bool:
        """
        Проверяет корректность формата кода проверки.

        Args:
            code: Код для проверки

        Returns:
            bool: True если формат корректен, False иначе
        """
        if not code or len(code) != self.code_length:
            return False

        return all(c in self.code_characters for c in code)

    def validate_verification_id_format(self, verification_id: str) -> bool:
        if not verification_id or len(verification_id) != self.verification_id_length:
            return False

        return all(c in string.hexdigits.upper() for c in verification_id)


class IntegrityHasher:
    """
    Формирует печать целостности сертификата и содержимое QR-кода.

    Хэш считается один раз при создании и дальше хранится как есть:
    в него входит момент вычисления, который не совпадает с сохраненными
    полями, поэтому пересчитать его по записи в БД нельзя.
    """

    def __init__(self, verification_base_url: str):
        self.verification_base_url = verification_base_url.rstrip('/')

    def compute_hash(self, certificate_id: str, verification_id: str, title: str,
                     timestamp: datetime) -> str:
        """
        Вычисляет SHA-256 печать.

        Args:
            certificate_id: ID сертификата
            verification_id: ID для проверки
            title: Название сертификата
            timestamp: Момент вычисления

        Returns:
            str: Hex-дайджест
        """
        millis = int(timestamp.timestamp() * 1000)
        payload = f"{certificate_id}{verification_id}{title}{millis}"
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def build_qr_payload(self, certificate_id: str, verification_id: str) -> str:
        """Формирует строку для QR-кода: {base_url}/{certificate_id}?v={verification_id}."""
        return f"{self.verification_base_url}/{certificate_id}?v={verification_id}"

    def parse_qr_payload(self, payload: str) -> Tuple[str, str]:
        """
        Разбирает строку QR-кода.

        Args:
            payload: Содержимое QR-кода

        Returns:
            Tuple[str, str]: (ID сертификата, ID для проверки)

        Raises:
            ValidationError: Если строка не соответствует формату
        """
        parts = urlsplit(payload or "")
        certificate_id = parts.path.rstrip('/').rsplit('/', 1)[-1]
        verification_ids = parse_qs(parts.query).get('v', [])

        if not certificate_id or not verification_ids or not verification_ids[0]:
            raise ValidationError(f"Некорректное содержимое QR-кода: {payload}")

        return certificate_id, verification_ids[0]
