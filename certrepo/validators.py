"""
Модуль валидации входных данных для сертификатов.
"""

import re
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .exceptions import EmailValidationError, PeriodValidationError, ValidationError


class EmailValidator:
    """Валидатор email получателя."""

    def __init__(self):
        self.email_pattern = re.compile(r'^[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$')

    def validate(self, email: str) -> bool:
        """
        Валидация email.

        Args:
            email: Адрес для проверки

        Returns:
            bool: True если адрес корректен, False иначе
        """
        if not email or len(email) > 254:
            return False

        local_part = email.split('@', 1)[0]
        if len(local_part) > 64 or local_part.startswith('.') or local_part.endswith('.') or '..' in email:
            return False

        return bool(self.email_pattern.match(email))

    def check(self, email: str) -> str:
        """То же, что validate, но с исключением."""
        if not self.validate(email):
            raise EmailValidationError(f"Некорректный email получателя: {email}")
        return email


class TitleValidator:
    """Валидатор названия сертификата."""

    max_length = 200

    def validate(self, title: str) -> bool:
        if not title or not title.strip():
            return False
        return len(title.strip()) <= self.max_length


class PeriodValidator:
    """Валидатор сроков действия сертификатов и токенов."""

    def validate_expiry(self, issued_at: datetime, expires_at: Optional[datetime]) -> Tuple[bool, str]:
        """
        Дата окончания, если указана, должна быть строго позже даты выпуска.

        Args:
            issued_at: Дата выпуска
            expires_at: Дата окончания действия

        Returns:
            Tuple[bool, str]: (валиден ли период, сообщение об ошибке)
        """
        if expires_at is None:
            return True, ""

        if expires_at <= issued_at:
            return False, "Дата окончания действия должна быть позже даты выпуска"

        return True, ""

    def validate_token_validity(self, validity: timedelta, max_days: int) -> timedelta:
        """
        Валидация срока действия токена.

        Args:
            validity: Запрошенный срок
            max_days: Максимально допустимый срок в днях

        Returns:
            timedelta: Срок действия

        Raises:
            PeriodValidationError: При некорректном сроке
        """
        if validity <= timedelta(0):
            raise PeriodValidationError("Срок действия токена должен быть положительным")

        if validity > timedelta(days=max_days):
            raise PeriodValidationError(f"Срок действия токена не может превышать {max_days} дн")

        return validity


class ShareLimitValidator:
    """Валидатор лимита обращений по токену."""

    def validate(self, max_access: int, upper_bound: int) -> bool:
        return isinstance(max_access, int) and not isinstance(max_access, bool) and 1 <= max_access <= upper_bound


class ApprovalChainValidator:
    """Валидатор цепочки согласования."""

    def validate(self, steps: list) -> List[str]:
        """
        Валидация шагов согласования.

        Args:
            steps: Шаги согласования

        Returns:
            List[str]: Список ошибок
        """
        errors = []
        ids = [step.id for step in steps]

        if len(ids) != len(set(ids)):
            errors.append("ID шагов согласования должны быть уникальны")

        if any(not step_id for step_id in ids):
            errors.append("ID шага согласования не может быть пустым")

        return errors


class DataValidator:
    """Общий валидатор для всех типов данных."""

    def __init__(self):
        self.email_validator = EmailValidator()
        self.title_validator = TitleValidator()
        self.period_validator = PeriodValidator()
        self.share_limit_validator = ShareLimitValidator()
        self.approval_chain_validator = ApprovalChainValidator()

    def validate_all(self, title: str, recipient_email: str, issued_at: datetime,
                     expires_at: Optional[datetime] = None,
                     approval_steps: Optional[list] = None) -> List[str]:
        """
        Валидация всех данных сертификата.

        Args:
            title: Название
            recipient_email: Email получателя
            issued_at: Дата выпуска
            expires_at: Дата окончания действия
            approval_steps: Шаги согласования

        Returns:
            List[str]: Список ошибок валидации (пустой если все в порядке)
        """
        errors = []

        if not self.title_validator.validate(title):
            errors.append("Название сертификата не может быть пустым или длиннее "
                          f"{self.title_validator.max_length} символов")

        if not self.email_validator.validate((recipient_email or "").strip()):
            errors.append(f"Некорректный email получателя: {recipient_email}")

        period_valid, period_error = self.period_validator.validate_expiry(issued_at, expires_at)
        if not period_valid:
            errors.append(period_error)

        errors.extend(self.approval_chain_validator.validate(approval_steps or []))

        return errors

    def validate_request(self, request, issued_at: datetime) -> None:
        """
        Проверяет запрос на создание сертификата.

        Args:
            request: CertificateRequest
            issued_at: Дата выпуска

        Raises:
            ValidationError: Если найдены ошибки
        """
        errors = self.validate_all(
            title=request.title,
            recipient_email=request.recipient_email,
            issued_at=issued_at,
            expires_at=request.expires_at,
            approval_steps=request.approval_steps,
        )
        if errors:
            raise ValidationError("; ".join(errors))
