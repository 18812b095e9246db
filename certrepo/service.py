"""
Основная бизнес-логика для работы с сертификатами.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Dict, List, Optional

from config.settings import Settings, get_settings
from .approval import ApprovalWorkflow
from .clock import Clock, SystemClock
from .database import CertificateRepository, get_certificate_repo
from .exceptions import (
    CertificateError, CertificateNotFoundError, DatabaseError, StorageError, ValidationError
)
from .generator import IdentifierGenerator, IntegrityHasher
from .lifecycle import LifecycleManager
from .models import (
    Certificate, CertificateFilter, CertificateRequest, CertificateStatistics, CertificateStatus,
    ShareToken, TransactionRecord, VerificationResult
)
from .notifications import DatabaseNotificationDispatcher, NotificationDispatcher, NotificationService
from .permissions import SettingsPermissionChecker
from .sharing import ShareTokenManager
from .storage import ArtifactRenderer, ArtifactStorage, JsonArtifactRenderer
from .verification import ANONYMOUS, VerificationService

# Настройка логирования
logger = logging.getLogger(__name__)


def last_month_keys(now: datetime, count: int = 12) -> List[str]:
    """Ключи YYYY-MM для последних count месяцев, от старых к новым."""
    year, month = now.year, now.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return list(reversed(keys))


class CertificateService:
    """Сервис для работы с сертификатами."""

    def __init__(self, repository: CertificateRepository = None, settings: Settings = None,
                 clock: Clock = None, dispatcher: NotificationDispatcher = None,
                 renderer: ArtifactRenderer = None, artifact_storage: ArtifactStorage = None,
                 permissions: SettingsPermissionChecker = None):
        """
        Инициализация сервиса.

        Все зависимости можно передать явно, иначе они создаются из настроек.
        """
        self.settings = settings or get_settings()
        self.repository = repository or get_certificate_repo()
        self.clock = clock or SystemClock()
        self.permissions = permissions or SettingsPermissionChecker(self.settings)
        self.generator = IdentifierGenerator(self.settings.share_token_length)
        self.hasher = IntegrityHasher(self.settings.verification_base_url)
        self.notifications = NotificationService(
            dispatcher or DatabaseNotificationDispatcher(self.repository, self.clock)
        )
        self.artifact_storage = artifact_storage or ArtifactStorage(self.settings.artifacts_path)

        self.lifecycle = LifecycleManager(
            repository=self.repository,
            generator=self.generator,
            hasher=self.hasher,
            notifications=self.notifications,
            permissions=self.permissions,
            renderer=renderer or JsonArtifactRenderer(),
            artifact_storage=self.artifact_storage,
            clock=self.clock,
            default_issuer_name=self.settings.default_issuer_name,
        )
        self.approval = ApprovalWorkflow(self.repository, self.notifications, self.clock)
        self.sharing = ShareTokenManager(
            repository=self.repository,
            generator=self.generator,
            permissions=self.permissions,
            clock=self.clock,
            default_validity_days=self.settings.default_share_token_validity_days,
            max_validity_days=self.settings.max_share_token_validity_days,
            max_access_limit=self.settings.max_share_token_access,
        )
        self.verification = VerificationService(self.repository, self.generator, self.hasher, self.clock)

    @contextmanager
    def _operation(self, description: str):
        """Логирует ошибку операции и оборачивает непредвиденные исключения в DatabaseError."""
        try:
            yield
        except StorageError as e:
            logger.error(f"Ошибка хранилища: {description}: {e}")
            raise
        except CertificateError as e:
            logger.warning(f"Операция отклонена: {description}: {e}")
            raise
        except Exception as e:
            logger.exception(f"Неожиданная ошибка: {description}")
            raise DatabaseError(f"Неожиданная ошибка ({description}): {e}") from e

    # --- Жизненный цикл ---

    def create_certificate(self, request: CertificateRequest) -> Certificate:
        """
        Создает новый сертификат.

        Raises:
            ValidationError: При ошибке валидации
            GenerationError: При ошибке генерации идентификаторов
            DatabaseError: При ошибке БД
        """
        with self._operation("создание сертификата"):
            return self.lifecycle.create_certificate(request)

    def issue_certificate(self, certificate_id: str, issuer_id: str) -> Certificate:
        with self._operation(f"выпуск сертификата {certificate_id}"):
            return self.lifecycle.issue_certificate(certificate_id, issuer_id)

    def revoke_certificate(self, certificate_id: str, revoked_by: str, reason: str) -> Certificate:
        with self._operation(f"отзыв сертификата {certificate_id}"):
            return self.lifecycle.revoke_certificate(certificate_id, revoked_by, reason)

    def delete_certificate(self, certificate_id: str, deleted_by: str) -> bool:
        with self._operation(f"удаление сертификата {certificate_id}"):
            return self.lifecycle.delete_certificate(certificate_id, deleted_by)

    # --- Согласование ---

    def approve_certificate(self, certificate_id: str, approver_id: str, step_id: str,
                            comments: Optional[str] = None) -> Certificate:
        with self._operation(f"согласование сертификата {certificate_id}"):
            return self.approval.approve_certificate(certificate_id, approver_id, step_id, comments)

    def reject_certificate(self, certificate_id: str, approver_id: str, step_id: str,
                           comments: Optional[str] = None) -> Certificate:
        with self._operation(f"отклонение сертификата {certificate_id}"):
            return self.approval.reject_certificate(certificate_id, approver_id, step_id, comments)

    # --- Токены доступа ---

    def create_share_token(self, certificate_id: str, shared_by: str, validity: Optional[timedelta] = None,
                           password: Optional[str] = None, max_access: Optional[int] = None) -> ShareToken:
        with self._operation(f"создание токена для сертификата {certificate_id}"):
            return self.sharing.create_share_token(certificate_id, shared_by, validity, password, max_access)

    def deactivate_share_token(self, token: str, deactivated_by: str) -> ShareToken:
        with self._operation("деактивация токена доступа"):
            return self.sharing.deactivate_share_token(token, deactivated_by)

    def list_share_tokens(self, certificate_id: str) -> List[ShareToken]:
        with self._operation(f"получение токенов сертификата {certificate_id}"):
            return self.sharing.list_share_tokens(certificate_id)

    # --- Проверка ---

    def verify_by_id(self, certificate_id: str, verified_by: str = ANONYMOUS) -> Certificate:
        with self._operation(f"проверка сертификата {certificate_id}"):
            return self.verification.verify_by_id(certificate_id, verified_by)

    def verify_by_token(self, token: str, password: Optional[str] = None,
                        accessed_by: str = ANONYMOUS) -> Certificate:
        with self._operation("доступ по токену"):
            return self.verification.verify_by_token(token, password, accessed_by)

    def verify_by_code(self, code: str, verified_by: str = ANONYMOUS) -> Certificate:
        with self._operation(f"проверка по коду {code}"):
            return self.verification.verify_by_code(code, verified_by)

    def verify_by_verification_id(self, verification_id: str, verified_by: str = ANONYMOUS) -> Certificate:
        with self._operation(f"проверка по ID проверки {verification_id}"):
            return self.verification.verify_by_verification_id(verification_id, verified_by)

    def verify_qr_payload(self, payload: str, verified_by: str = ANONYMOUS) -> Certificate:
        with self._operation("проверка по QR-коду"):
            return self.verification.verify_qr_payload(payload, verified_by)

    def assess(self, certificate: Certificate) -> VerificationResult:
        return self.verification.assess(certificate)

    # --- Чтение ---

    def get_certificate(self, certificate_id: str) -> Certificate:
        """
        Получает сертификат по ID без учета проверки.

        Raises:
            CertificateNotFoundError: Сертификат не найден
        """
        with self._operation(f"получение сертификата {certificate_id}"):
            certificate = self.repository.get(certificate_id)
            if certificate is None:
                raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")
            return certificate

    def get_certificate_artifact(self, certificate_id: str) -> Optional[bytes]:
        """Содержимое сформированного файла сертификата или None."""
        certificate = self.get_certificate(certificate_id)
        if not certificate.has_artifact:
            return None
        with self._operation(f"чтение файла сертификата {certificate_id}"):
            return self.artifact_storage.load(certificate.artifact_path)

    def search_certificates(self, certificate_filter: CertificateFilter) -> List[Certificate]:
        """
        Поиск сертификатов по критериям.

        Args:
            certificate_filter: Параметры поиска

        Returns:
            List[Certificate]: Список найденных сертификатов
        """
        logger.info(f"Поиск сертификатов: {certificate_filter.model_dump(exclude_none=True)}")

        with self._operation("поиск сертификатов"):
            certificates = self.repository.query(certificate_filter)

        logger.info(f"Найдено сертификатов: {len(certificates)}")
        return certificates

    def get_user_certificates(self, user_id: str, role: str = "recipient", email: Optional[str] = None,
                              limit: int = 100) -> List[Certificate]:
        """
        Получает сертификаты пользователя.

        Args:
            user_id: ID пользователя
            role: recipient - полученные, issuer - выпущенные
            email: Email получателя (для поиска полученных по адресу)
            limit: Максимальное число сертификатов

        Returns:
            List[Certificate]: Список сертификатов пользователя
        """
        if role == "issuer":
            certificate_filter = CertificateFilter(issuer_id=str(user_id), limit=limit)
        elif role == "recipient":
            certificate_filter = CertificateFilter(recipient_id=str(user_id), recipient_email=email, limit=limit)
        else:
            raise ValidationError(f"Неизвестная роль: {role}")

        logger.info(f"Получение сертификатов пользователя {user_id} (роль: {role})")
        with self._operation(f"получение сертификатов пользователя {user_id}"):
            return self.repository.query(certificate_filter)

    def get_organization_certificates(self, organization_id: str,
                                      status: Optional[CertificateStatus] = None,
                                      limit: int = 100) -> List[Certificate]:
        certificate_filter = CertificateFilter(
            organization_id=organization_id,
            statuses=[status] if status else None,
            limit=limit,
        )
        with self._operation(f"получение сертификатов организации {organization_id}"):
            return self.repository.query(certificate_filter)

    def get_certificate_history(self, certificate_id: str) -> List[TransactionRecord]:
        with self._operation(f"получение журнала сертификата {certificate_id}"):
            return self.repository.get_certificate_history(certificate_id)

    def get_notifications(self, user_id: str) -> List[Dict]:
        with self._operation(f"получение уведомлений пользователя {user_id}"):
            return self.repository.get_notifications(user_id)

    def get_statistics(self, issuer_id: Optional[str] = None,
                       organization_id: Optional[str] = None) -> CertificateStatistics:
        """
        Получает статистику по сертификатам.

        Args:
            issuer_id: Только сертификаты выпускающего
            organization_id: Только сертификаты организации

        Returns:
            CertificateStatistics: Статистика
        """
        logger.info(f"Получение статистики сертификатов (issuer={issuer_id}, organization={organization_id})")

        with self._operation("получение статистики"):
            rows = self.repository.get_statistics_rows(issuer_id, organization_id)

        now = self.clock.now()
        stats = CertificateStatistics(certificates_by_month={key: 0 for key in last_month_keys(now)})

        for status, certificate_type, created_at, expires_at, share_count in rows:
            stats.total_certificates += 1
            stats.certificates_by_status[status] = stats.certificates_by_status.get(status, 0) + 1
            stats.certificates_by_type[certificate_type] = stats.certificates_by_type.get(certificate_type, 0) + 1

            if expires_at is not None and now > expires_at:
                stats.expired_certificates += 1
            if share_count:
                stats.shared_certificates += 1

            month_key = created_at.strftime("%Y-%m")
            if month_key in stats.certificates_by_month:
                stats.certificates_by_month[month_key] += 1

        by_status = stats.certificates_by_status
        stats.issued_certificates = by_status.get(CertificateStatus.ISSUED.value, 0)
        stats.pending_certificates = by_status.get(CertificateStatus.PENDING.value, 0)
        stats.approved_certificates = by_status.get(CertificateStatus.APPROVED.value, 0)
        stats.rejected_certificates = by_status.get(CertificateStatus.REJECTED.value, 0)
        stats.revoked_certificates = by_status.get(CertificateStatus.REVOKED.value, 0)

        return stats

    def health_check(self) -> bool:
        return self.repository.db_manager.health_check()


@lru_cache()
def get_certificate_service() -> CertificateService:
    """Возвращает экземпляр сервиса сертификатов."""
    return CertificateService()
