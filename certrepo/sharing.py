"""
Токены доступа к сертификату.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from .clock import Clock
from .exceptions import (
    CertificateNotFoundError, InvalidStateError, PermissionDeniedError, ShareTokenNotFoundError,
    ValidationError
)
from .generator import IdentifierGenerator
from .models import ShareToken, TransactionAction, TransactionRecord
from .permissions import SettingsPermissionChecker
from .validators import PeriodValidator, ShareLimitValidator

logger = logging.getLogger(__name__)


class ShareTokenManager:
    """Выдача и деактивация токенов доступа."""

    def __init__(self, repository, generator: IdentifierGenerator, permissions: SettingsPermissionChecker,
                 clock: Clock, default_validity_days: int = 7, max_validity_days: int = 90,
                 max_access_limit: int = 100):
        self.repository = repository
        self.generator = generator
        self.permissions = permissions
        self.clock = clock
        self.default_validity = timedelta(days=default_validity_days)
        self.max_validity_days = max_validity_days
        self.max_access_limit = max_access_limit
        self.period_validator = PeriodValidator()
        self.share_limit_validator = ShareLimitValidator()

    def create_share_token(self, certificate_id: str, shared_by: str, validity: Optional[timedelta] = None,
                           password: Optional[str] = None, max_access: Optional[int] = None) -> ShareToken:
        """
        Создает токен доступа к сертификату.

        Args:
            certificate_id: ID сертификата
            shared_by: Кто делится сертификатом
            validity: Срок действия (по умолчанию из настроек)
            password: Пароль для доступа
            max_access: Лимит обращений (по умолчанию максимальный из настроек)

        Returns:
            ShareToken: Новый токен

        Raises:
            ValidationError: Некорректный срок или лимит
            CertificateNotFoundError: Сертификат не найден
            InvalidStateError: Сертификат нельзя распространять в текущем статусе
        """
        logger.info(f"Создание токена доступа к сертификату {certificate_id} пользователем {shared_by}")

        validity = self.period_validator.validate_token_validity(
            validity if validity is not None else self.default_validity, self.max_validity_days
        )
        if max_access is None:
            max_access = self.max_access_limit
        if not self.share_limit_validator.validate(max_access, self.max_access_limit):
            raise ValidationError(f"Лимит обращений должен быть от 1 до {self.max_access_limit}")
        password = password or None

        now = self.clock.now()

        def write(session) -> ShareToken:
            certificate = self.repository.get_for_update(session, certificate_id)
            if certificate is None:
                raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")
            if not certificate.can_be_shared:
                raise InvalidStateError(
                    f"Сертификатом в статусе «{certificate.status_display_name}» нельзя поделиться"
                )

            share_token = ShareToken(
                token=self.generator.generate_share_token({t.token for t in certificate.share_tokens}),
                certificate_id=certificate_id,
                shared_by=str(shared_by),
                created_at=now,
                expires_at=now + validity,
                password=password,
                max_access=max_access,
            )
            self.repository.add_share_token(session, share_token)
            self.repository.increment_share_count(session, certificate_id, now)
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.SHARED,
                performed_by=str(shared_by),
                timestamp=now,
                details={
                    "expires_at": share_token.expires_at.isoformat(),
                    "max_access": max_access,
                    "password_protected": share_token.is_password_protected,
                },
            ))
            return share_token

        share_token = self.repository.run_transaction(write)

        logger.info(f"Токен доступа к сертификату {certificate_id} создан, действует до {share_token.expires_at}")
        return share_token

    def deactivate_share_token(self, token: str, deactivated_by: str) -> ShareToken:
        """
        Деактивирует токен. Сам токен не удаляется.

        Деактивировать может автор токена, CA или администратор.

        Raises:
            ShareTokenNotFoundError: Токен не найден
            PermissionDeniedError: Недостаточно прав
        """
        logger.info(f"Деактивация токена доступа пользователем {deactivated_by}")
        now = self.clock.now()

        def write(session) -> ShareToken:
            share_token = self.repository.get_share_token(token, session)
            if share_token is None:
                raise ShareTokenNotFoundError("Токен доступа не найден")

            if str(deactivated_by) != share_token.shared_by and not self.permissions.can_issue(deactivated_by):
                raise PermissionDeniedError("Деактивировать токен может только его автор, CA или администратор")

            if share_token.is_active:
                self.repository.set_share_token_active(session, token, False)
                self.repository.add_transaction_record(session, TransactionRecord(
                    certificate_id=share_token.certificate_id,
                    action=TransactionAction.SHARE_TOKEN_DEACTIVATED,
                    performed_by=str(deactivated_by),
                    timestamp=now,
                    details={"token_created_at": share_token.created_at.isoformat()},
                ))
            return share_token.model_copy(update={"is_active": False})

        share_token = self.repository.run_transaction(write)

        logger.info(f"Токен доступа к сертификату {share_token.certificate_id} деактивирован")
        return share_token

    def list_share_tokens(self, certificate_id: str) -> List[ShareToken]:
        """Все токены сертификата, включая неактивные."""
        if self.repository.get(certificate_id) is None:
            raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")
        return self.repository.list_share_tokens(certificate_id)
