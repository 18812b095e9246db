"""
Цепочка согласования сертификата.
"""

import logging
from typing import List, Optional, Tuple

from .clock import Clock
from .exceptions import ApprovalStepNotFoundError, CertificateNotFoundError, InvalidStateError
from .models import (
    ApprovalStep, ApprovalStepStatus, Certificate, CertificateStatus, TransactionAction,
    TransactionRecord
)
from .notifications import NotificationService, NotificationTemplate

logger = logging.getLogger(__name__)


def select_next_pending_step(steps: List[ApprovalStep]) -> Optional[ApprovalStep]:
    """
    Выбирает следующий шаг, ожидающий решения.

    Args:
        steps: Шаги согласования

    Returns:
        Optional[ApprovalStep]: Шаг с наименьшим order (при равенстве - с
        наименьшей позицией в исходном списке) или None, если ожидающих шагов нет
    """
    pending = [step for step in steps if step.status == ApprovalStepStatus.PENDING]
    if not pending:
        return None
    return min(pending, key=lambda step: (step.order, step.position))


class ApprovalWorkflow:
    """Согласование и отклонение шагов цепочки."""

    def __init__(self, repository, notifications: NotificationService, clock: Clock):
        self.repository = repository
        self.notifications = notifications
        self.clock = clock

    def approve_certificate(self, certificate_id: str, approver_id: str, step_id: str,
                            comments: Optional[str] = None) -> Certificate:
        """
        Согласует шаг цепочки.

        Args:
            certificate_id: ID сертификата
            approver_id: Кто согласует
            step_id: ID шага
            comments: Комментарий

        Returns:
            Certificate: Обновленный сертификат

        Raises:
            CertificateNotFoundError: Сертификат не найден
            ApprovalStepNotFoundError: Шаг не найден
            InvalidStateError: Сертификат или шаг не ожидают согласования
        """
        logger.info(f"Согласование шага {step_id} сертификата {certificate_id} пользователем {approver_id}")
        now = self.clock.now()

        def write(session) -> Tuple[Certificate, bool]:
            _, step = self._load_pending_step(session, certificate_id, step_id)

            step.status = ApprovalStepStatus.APPROVED
            step.approved_at = now
            step.comments = comments
            step.approver_id = str(approver_id)
            self._save_step(session, certificate_id, step)

            # Остальные шаги могли быть рассмотрены параллельно
            steps = self.repository.reload(session, certificate_id).approval_steps
            next_step = select_next_pending_step(steps)
            completed = all(s.status == ApprovalStepStatus.APPROVED for s in steps)

            self._save_status(session, certificate_id, {
                "status": CertificateStatus.APPROVED if completed else CertificateStatus.PENDING,
                "current_approval_step": None if completed else next_step.id,
                "updated_at": now,
            })
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.APPROVED,
                performed_by=str(approver_id),
                timestamp=now,
                details={
                    "step_id": step.id,
                    "step_name": step.step_name,
                    "comments": comments,
                    "chain_completed": completed,
                    "next_step": None if completed else next_step.id,
                },
            ))
            return self.repository.reload(session, certificate_id), completed

        certificate, completed = self.repository.run_transaction(write)

        if completed:
            logger.info(f"Цепочка согласования сертификата {certificate_id} завершена")
            self.notifications.safe_dispatch(
                certificate.issuer_id,
                NotificationTemplate.CERTIFICATE_APPROVED,
                {"certificate_id": certificate.id, "title": certificate.title},
            )
        else:
            logger.info(f"Сертификат {certificate_id} ожидает шаг {certificate.current_approval_step}")

        return certificate

    def reject_certificate(self, certificate_id: str, approver_id: str, step_id: str,
                           comments: Optional[str] = None) -> Certificate:
        """
        Отклоняет шаг цепочки. Сертификат переходит в статус rejected,
        оставшиеся шаги больше не рассматриваются.

        Args:
            certificate_id: ID сертификата
            approver_id: Кто отклоняет
            step_id: ID шага
            comments: Причина отклонения

        Returns:
            Certificate: Обновленный сертификат
        """
        logger.info(f"Отклонение шага {step_id} сертификата {certificate_id} пользователем {approver_id}")
        now = self.clock.now()

        def write(session) -> Tuple[Certificate, ApprovalStep]:
            _, step = self._load_pending_step(session, certificate_id, step_id)

            step.status = ApprovalStepStatus.REJECTED
            step.approved_at = now
            step.comments = comments
            step.approver_id = str(approver_id)
            self._save_step(session, certificate_id, step)

            self._save_status(session, certificate_id, {
                "status": CertificateStatus.REJECTED,
                "current_approval_step": None,
                "updated_at": now,
            })
            self.repository.add_transaction_record(session, TransactionRecord(
                certificate_id=certificate_id,
                action=TransactionAction.REJECTED,
                performed_by=str(approver_id),
                timestamp=now,
                details={"step_id": step.id, "step_name": step.step_name, "comments": comments},
            ))
            return self.repository.reload(session, certificate_id), step

        certificate, step = self.repository.run_transaction(write)

        logger.info(f"Сертификат {certificate_id} отклонен на шаге {step_id}")
        self.notifications.safe_dispatch(
            certificate.issuer_id,
            NotificationTemplate.CERTIFICATE_REJECTED,
            {
                "certificate_id": certificate.id,
                "title": certificate.title,
                "step_name": step.step_name or step.id,
                "comments": comments,
            },
        )
        return certificate

    def _load_pending_step(self, session, certificate_id: str, step_id: str) -> Tuple[Certificate, ApprovalStep]:
        certificate = self.repository.get_for_update(session, certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(f"Сертификат {certificate_id} не найден")

        if certificate.is_revoked or certificate.status != CertificateStatus.PENDING:
            raise InvalidStateError(
                f"Сертификат {certificate_id} не ожидает согласования "
                f"(статус: {certificate.status_display_name})"
            )

        step = certificate.find_step(step_id)
        if step is None:
            raise ApprovalStepNotFoundError(f"Шаг согласования {step_id} не найден")

        if step.status != ApprovalStepStatus.PENDING:
            raise InvalidStateError(f"Шаг согласования {step_id} уже рассмотрен")

        return certificate, step

    def _save_step(self, session, certificate_id: str, step: ApprovalStep) -> None:
        if not self.repository.update_step(session, certificate_id, step):
            raise InvalidStateError(f"Шаг согласования {step.id} уже рассмотрен")

    def _save_status(self, session, certificate_id: str, values: dict) -> None:
        updated = self.repository.update(session, certificate_id, values,
                                         expected_statuses=[CertificateStatus.PENDING])
        if updated != 1:
            raise InvalidStateError(f"Сертификат {certificate_id} не ожидает согласования")
