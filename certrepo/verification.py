"""
Проверка подлинности сертификатов по идентификатору, коду, QR-коду и токену доступа.
"""

import logging
import secrets
from datetime import datetime
from typing import Optional

from .clock import Clock
from .exceptions import (
    CertificateNotFoundError, ExhaustedTokenError, ExpiredTokenError, InactiveTokenError,
    InvalidPasswordError, ShareTokenNotFoundError, ValidationError
)
from .generator import IdentifierGenerator, IntegrityHasher
from .models import (
    Certificate, CertificateStatus, ShareToken, TransactionAction, TransactionRecord, VerificationResult
)

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


class VerificationService:
    """
    Проверка сертификатов.

    Каждое обращение увеличивает счетчики одним UPDATE на стороне БД,
    поэтому параллельные проверки не теряют инкременты. Статус
    сертификата при проверке не меняется.
    """

    def __init__(self, repository, generator: IdentifierGenerator, hasher: IntegrityHasher, clock: Clock):
        self.repository = repository
        self.generator = generator
        self.hasher = hasher
        self.clock = clock

    def verify_by_id(self, certificate_id: str, verified_by: str = ANONYMOUS,
                     method: str = "direct_verification") -> Certificate:
        """
        Проверка сертификата по ID.

        Args:
            certificate_id: ID сертификата
            verified_by: Кто проверяет
            method: Способ проверки для журнала

        Returns:
            Certificate: Сертификат с обновленными счетчиками

        Raises:
            CertificateNotFoundError: Сертификат не найден
        """
        logger.info(f"Проверка сертификата {certificate_id} ({method}) пользователем {verified_by}")
        now = self.clock.now()

        def write(session) -> Certificate:
            if not self.repository.increment_verification(session, certificate_id, now):
                raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")

            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.ACCESSED,
                performed_by=str(verified_by or ANONYMOUS),
                timestamp=now,
                details={"method": method},
            ))
            return self.repository.reload(session, certificate_id)

        return self.repository.run_transaction(write)

    def verify_by_code(self, code: str, verified_by: str = ANONYMOUS) -> Certificate:
        """
        Проверка по восьмизначному коду проверки.

        Raises:
            ValidationError: Некорректный формат кода
            CertificateNotFoundError: Сертификат не найден
        """
        code = (code or "").strip().upper()
        if not self.generator.validate_verification_code_format(code):
            raise ValidationError(f"Некорректный формат кода проверки: {code}")

        certificate = self.repository.find_by_verification_code(code)
        if certificate is None:
            raise CertificateNotFoundError(f"Сертификат с кодом {code} не найден")

        return self.verify_by_id(certificate.id, verified_by, method="verification_code")

    def verify_by_verification_id(self, verification_id: str, verified_by: str = ANONYMOUS) -> Certificate:
        verification_id = (verification_id or "").strip().upper()
        if not self.generator.validate_verification_id_format(verification_id):
            raise ValidationError(f"Некорректный формат ID проверки: {verification_id}")

        certificate = self.repository.find_by_verification_id(verification_id)
        if certificate is None:
            raise CertificateNotFoundError(f"Сертификат с ID проверки {verification_id} не найден")

        return self.verify_by_id(certificate.id, verified_by, method="verification_id")

    def verify_qr_payload(self, payload: str, verified_by: str = ANONYMOUS) -> Certificate:
        """
        Проверка по содержимому QR-кода.

        ID проверки из QR-кода должен совпадать с сохраненным у сертификата.
        """
        certificate_id, verification_id = self.hasher.parse_qr_payload(payload)

        certificate = self.repository.get(certificate_id)
        if certificate is None or certificate.verification_id != verification_id.upper():
            raise CertificateNotFoundError("Сертификат по QR-коду не найден")

        return self.verify_by_id(certificate_id, verified_by, method="qr_code")

    def verify_by_token(self, token: str, password: Optional[str] = None,
                        accessed_by: str = ANONYMOUS) -> Certificate:
        """
        Доступ к сертификату по токену.

        Проверки выполняются по порядку: активность, срок действия, лимит
        обращений, пароль. Счетчик токена увеличивается условным UPDATE,
        который не срабатывает, если лимит исчерпан параллельным запросом.

        Args:
            token: Значение токена
            password: Пароль, если токен защищен
            accessed_by: Кто обращается

        Returns:
            Certificate: Сертификат с обновленными счетчиками

        Raises:
            ShareTokenNotFoundError: Токен не найден
            InactiveTokenError: Токен деактивирован
            ExpiredTokenError: Срок действия истек
            ExhaustedTokenError: Лимит обращений исчерпан
            InvalidPasswordError: Неверный пароль
        """
        logger.info("Обращение к сертификату по токену доступа")
        now = self.clock.now()

        def write(session) -> Certificate:
            share_token = self.repository.get_share_token(token, session)
            if share_token is None:
                raise ShareTokenNotFoundError("Токен доступа не найден")

            self.check_token(share_token, password, now)

            if not self.repository.consume_share_token(session, token, now):
                # Лимит исчерпан или токен изменен параллельным запросом
                session.expire_all()
                latest = self.repository.get_share_token(token, session)
                if latest is None:
                    raise ShareTokenNotFoundError("Токен доступа не найден")
                self.check_token(latest, password, now)
                raise ExhaustedTokenError("Лимит обращений по токену исчерпан")

            certificate_id = share_token.certificate_id
            self.repository.increment_verification(session, certificate_id, now, via_token=True)
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.ACCESSED_VIA_TOKEN,
                performed_by=str(accessed_by or ANONYMOUS),
                timestamp=now,
                details={"shared_by": share_token.shared_by, "max_access": share_token.max_access},
            ))
            return self.repository.reload(session, certificate_id)

        try:
            certificate = self.repository.run_transaction(write)
        except (ShareTokenNotFoundError, InactiveTokenError, ExpiredTokenError,
                ExhaustedTokenError, InvalidPasswordError) as e:
            logger.warning(f"Отказ в доступе по токену: {e}")
            raise

        logger.info(f"Доступ к сертификату {certificate.id} по токену предоставлен")
        return certificate

    @staticmethod
    def check_token(share_token: ShareToken, password: Optional[str], now: datetime) -> None:
        """
        Проверяет, можно ли использовать токен.

        Raises:
            InactiveTokenError, ExpiredTokenError, ExhaustedTokenError, InvalidPasswordError
        """
        if not share_token.is_active:
            raise InactiveTokenError("Токен доступа деактивирован")

        if share_token.is_expired_at(now):
            raise ExpiredTokenError(f"Срок действия токена истек {share_token.expires_at.isoformat()}")

        if share_token.is_exhausted:
            raise ExhaustedTokenError("Лимит обращений по токену исчерпан")

        if share_token.is_password_protected:
            supplied = (password or "").encode('utf-8')
            if not secrets.compare_digest(supplied, share_token.password.encode('utf-8')):
                raise InvalidPasswordError("Неверный пароль токена доступа")

    def assess(self, certificate: Certificate, now: Optional[datetime] = None) -> VerificationResult:
        """
        Оценивает действительность сертификата.

        Args:
            certificate: Сертификат
            now: Момент проверки (по умолчанию текущее время)

        Returns:
            VerificationResult: Результат проверки
        """
        now = now or self.clock.now()

        if certificate.is_revoked:
            valid, message = False, f"Сертификат отозван: {certificate.revocation_reason or 'причина не указана'}"
        elif certificate.status != CertificateStatus.ISSUED:
            valid, message = False, f"Сертификат не выпущен (статус: {certificate.status_display_name})"
        elif certificate.is_expired_at(now):
            valid, message = False, "Срок действия сертификата истек"
        else:
            valid, message = True, "Сертификат действителен"

        return VerificationResult(
            certificate_id=certificate.id,
            exists=True,
            valid=valid,
            status=certificate.status,
            message=message,
        )
