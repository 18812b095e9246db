"""
Жизненный цикл сертификата: создание, выпуск, отзыв и удаление.
"""

import logging
from typing import Optional

from .approval import select_next_pending_step
from .clock import Clock
from .exceptions import (
    CertificateError, CertificateNotFoundError, GenerationError, InvalidStateError, RenderingError,
    StorageError
)
from .generator import IdentifierGenerator, IntegrityHasher
from .models import (
    ApprovalStepStatus, Certificate, CertificateMetadata, CertificateRequest, CertificateStatus,
    TransactionAction, TransactionRecord
)
from .notifications import NotificationService, NotificationTemplate
from .permissions import SettingsPermissionChecker
from .storage import ArtifactRenderer, ArtifactStorage
from .validators import DataValidator

logger = logging.getLogger(__name__)

# Статусы, из которых сертификат можно выпустить
ISSUABLE_STATUSES = (CertificateStatus.DRAFT, CertificateStatus.APPROVED)


class LifecycleManager:
    """Переходы между статусами сертификата."""

    def __init__(self, repository, generator: IdentifierGenerator, hasher: IntegrityHasher,
                 notifications: NotificationService, permissions: SettingsPermissionChecker,
                 renderer: ArtifactRenderer, artifact_storage: ArtifactStorage, clock: Clock,
                 default_issuer_name: str = "Certificate Authority"):
        self.repository = repository
        self.generator = generator
        self.hasher = hasher
        self.notifications = notifications
        self.permissions = permissions
        self.renderer = renderer
        self.artifact_storage = artifact_storage
        self.clock = clock
        self.default_issuer_name = default_issuer_name
        self.validator = DataValidator()

    def create_certificate(self, request: CertificateRequest) -> Certificate:
        """
        Создает новый сертификат.

        Сертификат, запись в журнале и уведомление получателю сохраняются
        в одной транзакции.

        Args:
            request: Запрос на создание сертификата

        Returns:
            Certificate: Созданный сертификат (draft или pending)

        Raises:
            ValidationError: При ошибке валидации
            GenerationError: При ошибке генерации кода проверки
            DatabaseError: При ошибке БД
        """
        logger.info(f"Создание сертификата «{request.title}» пользователем {request.issuer_id}")

        now = self.clock.now()
        self.validator.validate_request(request, issued_at=now)

        steps = []
        if request.requires_approval:
            for position, step in enumerate(request.approval_steps):
                steps.append(step.model_copy(update={
                    "position": position,
                    "status": ApprovalStepStatus.PENDING,
                    "approved_at": None,
                    "comments": None,
                }))
        elif request.approval_steps:
            logger.warning(
                f"Шаги согласования для «{request.title}» проигнорированы: согласование не требуется"
            )

        status = CertificateStatus.PENDING if steps else CertificateStatus.DRAFT
        next_step = select_next_pending_step(steps)

        certificate_id = self.generator.generate_certificate_id()
        verification_id = self.generator.generate_verification_id()
        qr_code = self.hasher.build_qr_payload(certificate_id, verification_id)

        metadata = CertificateMetadata.from_storage(request.metadata)
        metadata.created_by = str(request.issuer_id)
        metadata.verification_url = qr_code

        def write(session) -> Certificate:
            certificate = Certificate(
                id=certificate_id,
                verification_id=verification_id,
                verification_code=self._unique_verification_code(session),
                issuer_id=str(request.issuer_id),
                issuer_name=request.issuer_name or self.default_issuer_name,
                recipient_id=request.recipient_id,
                recipient_email=request.recipient_email,
                recipient_name=request.recipient_name,
                organization_id=request.organization_id,
                organization_name=request.organization_name,
                title=request.title,
                description=request.description,
                type=request.type,
                course_name=request.course_name,
                course_code=request.course_code,
                grade=request.grade,
                credits=request.credits,
                achievement=request.achievement,
                metadata=metadata,
                tags=request.tags,
                notes=request.notes,
                issued_at=now,
                completed_at=request.completed_at,
                expires_at=request.expires_at,
                created_at=now,
                updated_at=now,
                hash=self.hasher.compute_hash(certificate_id, verification_id, request.title, self.clock.now()),
                qr_code=qr_code,
                status=status,
                requires_approval=request.requires_approval,
                approval_steps=steps,
                current_approval_step=next_step.id if next_step else None,
            )

            self.repository.put(session, certificate)
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.CREATED,
                performed_by=certificate.issuer_id,
                timestamp=now,
                details={
                    "title": certificate.title,
                    "status": status.value,
                    "recipient_email": certificate.recipient_email,
                    "approval_steps": len(steps),
                },
            ))

            # Получатель, совпадающий с выпускающим, не уведомляется
            if certificate.recipient_id != certificate.issuer_id:
                self.notifications.enqueue(
                    session,
                    self.repository,
                    certificate.recipient_id or certificate.recipient_email,
                    NotificationTemplate.CERTIFICATE_CREATED,
                    {
                        "certificate_id": certificate_id,
                        "title": certificate.title,
                        "issuer_name": certificate.issuer_name,
                        "recipient_email": certificate.recipient_email,
                    },
                    now,
                )
            return certificate

        certificate = self.repository.run_transaction(write)

        logger.info(f"Сертификат {certificate.id} создан, статус: {certificate.status.value}")
        return certificate

    def issue_certificate(self, certificate_id: str, issuer_id: str) -> Certificate:
        """
        Выпускает сертификат.

        Если файл сертификата еще не сформирован, он формируется до записи
        в БД. При ошибке транзакции сформированный файл удаляется.

        Args:
            certificate_id: ID сертификата
            issuer_id: Кто выпускает

        Returns:
            Certificate: Выпущенный сертификат

        Raises:
            PermissionDeniedError: Нет прав CA или администратора
            CertificateNotFoundError: Сертификат не найден
            InvalidStateError: Статус не draft и не approved
            RenderingError: Ошибка формирования файла
        """
        logger.info(f"Выпуск сертификата {certificate_id} пользователем {issuer_id}")
        self.permissions.require_issuer(issuer_id, "выпуск сертификата")

        certificate = self.repository.get(certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")
        self._check_issuable(certificate)

        now = self.clock.now()
        period_valid, _ = self.validator.period_validator.validate_expiry(now, certificate.expires_at)
        if not period_valid:
            raise InvalidStateError(f"Срок действия сертификата {certificate_id} истек до выпуска")

        artifact_path = certificate.artifact_path
        rendered = False
        if not certificate.has_artifact:
            content = self._render(certificate)
            artifact_path = str(self.artifact_storage.save(certificate, content, self.renderer.extension))
            rendered = True

        def write(session) -> Certificate:
            current = self.repository.get_for_update(session, certificate_id)
            if current is None:
                raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")
            self._check_issuable(current)

            metadata = current.metadata
            metadata.artifact_storage_path = artifact_path

            updated = self.repository.update(session, certificate_id, {
                "status": CertificateStatus.ISSUED,
                "issued_at": now,
                "is_verified": True,
                "artifact_path": artifact_path,
                "meta": metadata.to_storage(),
                "updated_at": now,
            }, expected_statuses=ISSUABLE_STATUSES)
            if updated != 1:
                raise InvalidStateError(f"Сертификат {certificate_id} изменен параллельной операцией")
            if rendered:
                self.repository.add_transaction_record(session, TransactionRecord(
                    certificate_id=certificate_id,
                    action=TransactionAction.ARTIFACT_RENDERED,
                    performed_by=str(issuer_id),
                    timestamp=now,
                    details={"artifact_path": artifact_path},
                ))
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.ISSUED,
                performed_by=str(issuer_id),
                timestamp=now,
                details={"previous_status": current.status.value},
            ))
            return self.repository.reload(session, certificate_id)

        try:
            issued = self.repository.run_transaction(write)
        except CertificateError:
            if rendered and not self._artifact_in_use(certificate_id, artifact_path):
                self._discard_artifact(artifact_path)
            raise

        logger.info(f"Сертификат {certificate_id} выпущен")
        self.notifications.safe_dispatch(
            issued.recipient_id or issued.recipient_email,
            NotificationTemplate.CERTIFICATE_ISSUED,
            {"certificate_id": issued.id, "title": issued.title, "recipient_email": issued.recipient_email},
        )
        return issued

    def revoke_certificate(self, certificate_id: str, revoked_by: str, reason: str) -> Certificate:
        """
        Отзывает сертификат. Отзыв окончателен.

        Args:
            certificate_id: ID сертификата
            revoked_by: Кто отзывает
            reason: Причина отзыва

        Returns:
            Certificate: Отозванный сертификат

        Raises:
            CertificateNotFoundError: Сертификат не найден
            InvalidStateError: Сертификат уже отозван
        """
        logger.info(f"Отзыв сертификата {certificate_id} пользователем {revoked_by}")
        now = self.clock.now()
        reason = (reason or "").strip()

        def write(session) -> Certificate:
            current = self.repository.get_for_update(session, certificate_id)
            if current is None:
                raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")
            if current.is_revoked or current.status == CertificateStatus.REVOKED:
                raise InvalidStateError(f"Сертификат {certificate_id} уже отозван")

            updated = self.repository.update(session, certificate_id, {
                "status": CertificateStatus.REVOKED,
                "is_revoked": True,
                "revocation_reason": reason,
                "updated_at": now,
            }, expected_statuses=[current.status])
            if updated != 1:
                raise InvalidStateError(f"Сертификат {certificate_id} изменен параллельной операцией")
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.REVOKED,
                performed_by=str(revoked_by),
                timestamp=now,
                details={"reason": reason, "previous_status": current.status.value},
            ))
            return self.repository.reload(session, certificate_id)

        revoked = self.repository.run_transaction(write)

        logger.info(f"Сертификат {certificate_id} отозван: {reason}")
        self.notifications.safe_dispatch(
            revoked.recipient_id or revoked.recipient_email,
            NotificationTemplate.CERTIFICATE_REVOKED,
            {"certificate_id": revoked.id, "title": revoked.title, "reason": reason},
        )
        return revoked

    def delete_certificate(self, certificate_id: str, deleted_by: str) -> bool:
        """
        Удаляет сертификат вместе с шагами, токенами и файлом.
        Журнал операций сохраняется.

        Args:
            certificate_id: ID сертификата
            deleted_by: Кто удаляет

        Returns:
            bool: True если сертификат удален
        """
        logger.info(f"Удаление сертификата {certificate_id} пользователем {deleted_by}")
        self.permissions.require_issuer(deleted_by, "удаление сертификата")
        now = self.clock.now()

        def write(session) -> Certificate:
            current = self.repository.get_for_update(session, certificate_id)
            if current is None:
                raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")

            self.repository.delete(session, certificate_id)
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.DELETED,
                performed_by=str(deleted_by),
                timestamp=now,
                details={"title": current.title, "status": current.status.value},
            ))
            return current

        deleted = self.repository.run_transaction(write)

        if deleted.artifact_path:
            self._discard_artifact(deleted.artifact_path)

        logger.info(f"Сертификат {certificate_id} удален")
        return True

    def _check_issuable(self, certificate: Certificate) -> None:
        if certificate.is_revoked or certificate.status not in ISSUABLE_STATUSES:
            raise InvalidStateError(
                f"Сертификат {certificate.id} нельзя выпустить из статуса «{certificate.status_display_name}»"
            )

    def _unique_verification_code(self, session) -> str:
        for attempt in range(self.generator.max_attempts):
            code = self.generator.generate_verification_code()
            if self.repository.find_by_verification_code(code, session) is None:
                return code

        raise GenerationError("Не удалось сгенерировать уникальный код проверки")

    def _render(self, certificate: Certificate) -> bytes:
        """Формирует файл сертификата. Любой сбой рендерера считается RenderingError."""
        try:
            return self.renderer.render(certificate)
        except RenderingError:
            raise
        except Exception as e:
            logger.error(f"Ошибка формирования файла сертификата {certificate.id}: {e}")
            raise RenderingError(f"Не удалось сформировать файл сертификата: {e}") from e

    def _artifact_in_use(self, certificate_id: str, artifact_path: Optional[str]) -> bool:
        # Параллельный выпуск мог сохранить файл по тому же пути
        current = self.repository.get(certificate_id)
        return current is not None and current.artifact_path == artifact_path

    def _discard_artifact(self, artifact_path: Optional[str]) -> None:
        try:
            self.artifact_storage.delete(artifact_path)
        except StorageError as e:
            logger.warning(f"Не удалось удалить файл сертификата {artifact_path}: {e}")
