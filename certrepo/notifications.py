"""
Уведомления пользователей о событиях жизненного цикла сертификата.

Доставка выполняется по принципу best-effort: ошибка отправки логируется
и никогда не откатывает операцию, которая ее вызвала.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

from .clock import Clock, SystemClock
from .exceptions import DispatchError

logger = logging.getLogger(__name__)


class NotificationTemplate(str, Enum):
    """Тип уведомления."""
    CERTIFICATE_CREATED = "certificate_created"
    CERTIFICATE_ISSUED = "certificate_issued"
    CERTIFICATE_APPROVED = "certificate_approved"
    CERTIFICATE_REJECTED = "certificate_rejected"
    CERTIFICATE_REVOKED = "certificate_revoked"


TEMPLATE_TEXTS = {
    NotificationTemplate.CERTIFICATE_CREATED: (
        "Новый сертификат",
        "Для вас создан сертификат «{title}» от {issuer_name}",
    ),
    NotificationTemplate.CERTIFICATE_ISSUED: (
        "Сертификат выпущен",
        "Сертификат «{title}» выпущен и доступен для проверки",
    ),
    NotificationTemplate.CERTIFICATE_APPROVED: (
        "Сертификат согласован",
        "Все шаги согласования сертификата «{title}» пройдены, его можно выпускать",
    ),
    NotificationTemplate.CERTIFICATE_REJECTED: (
        "Сертификат отклонен",
        "Сертификат «{title}» отклонен на шаге «{step_name}»",
    ),
    NotificationTemplate.CERTIFICATE_REVOKED: (
        "Сертификат отозван",
        "Сертификат «{title}» отозван. Причина: {reason}",
    ),
}


def render_notification(template: NotificationTemplate, payload: Dict[str, Any]) -> Tuple[str, str]:
    """
    Формирует заголовок и текст уведомления.

    Args:
        template: Тип уведомления
        payload: Данные для подстановки

    Returns:
        Tuple[str, str]: (заголовок, текст)
    """
    title, message = TEMPLATE_TEXTS[template]
    values = {"title": "", "issuer_name": "", "step_name": "", "reason": ""}
    values.update({key: value for key, value in payload.items() if value is not None})
    return title, message.format(**values)


class NotificationDispatcher(Protocol):
    """Контракт доставки уведомлений."""

    def notify(self, recipient: str, template: NotificationTemplate, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationDispatcher:
    """Пишет уведомления в лог. Используется, когда доставка не настроена."""

    def notify(self, recipient: str, template: NotificationTemplate, payload: Dict[str, Any]) -> None:
        title, message = render_notification(template, payload)
        logger.info(f"Уведомление для {recipient} [{template.value}]: {title}. {message}")


class DatabaseNotificationDispatcher:
    """Складывает уведомления в таблицу notifications отдельной транзакцией."""

    def __init__(self, repository, clock: Optional[Clock] = None):
        self.repository = repository
        self.clock = clock or SystemClock()

    def notify(self, recipient: str, template: NotificationTemplate, payload: Dict[str, Any]) -> None:
        title, message = render_notification(template, payload)
        now = self.clock.now()

        self.repository.run_transaction(lambda session: self.repository.add_notification(
            session,
            user_id=recipient,
            notification_type=template.value,
            title=title,
            message=message,
            created_at=now,
            certificate_id=payload.get("certificate_id"),
            recipient_email=payload.get("recipient_email"),
            data=payload,
        ))


class DispatchMetrics:
    """Счетчики доставки уведомлений."""

    def __init__(self):
        self._lock = threading.Lock()
        self.sent = 0
        self.failed = 0
        self.last_error: Optional[str] = None

    def record_success(self):
        with self._lock:
            self.sent += 1

    def record_failure(self, error: Exception):
        with self._lock:
            self.failed += 1
            self.last_error = str(error)

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {"sent": self.sent, "failed": self.failed, "last_error": self.last_error}


class NotificationService:
    """Отправка уведомлений через внедренный диспетчер."""

    def __init__(self, dispatcher: NotificationDispatcher, metrics: Optional[DispatchMetrics] = None):
        self.dispatcher = dispatcher
        self.metrics = metrics or DispatchMetrics()

    def safe_dispatch(self, recipient: str, template: NotificationTemplate, payload: Dict[str, Any]) -> bool:
        """
        Отправляет уведомление, не пропуская наружу ошибки доставки.

        Args:
            recipient: ID пользователя или email
            template: Тип уведомления
            payload: Данные уведомления

        Returns:
            bool: True если уведомление доставлено
        """
        if not recipient:
            logger.warning(f"Уведомление {template.value} пропущено: не указан получатель")
            return False

        try:
            self.dispatcher.notify(recipient, template, payload)
        except Exception as e:
            error = e if isinstance(e, DispatchError) else DispatchError(str(e))
            self.metrics.record_failure(error)
            logger.error(f"Ошибка отправки уведомления {template.value} для {recipient}: {e}")
            return False

        self.metrics.record_success()
        return True

    def enqueue(self, session, repository, recipient: str, template: NotificationTemplate,
                payload: Dict[str, Any], created_at: datetime) -> None:
        """
        Ставит уведомление в очередь внутри транзакции вызывающей операции.

        В отличие от safe_dispatch, ошибка здесь откатывает всю транзакцию.
        """
        title, message = render_notification(template, payload)
        repository.add_notification(
            session,
            user_id=recipient,
            notification_type=template.value,
            title=title,
            message=message,
            created_at=created_at,
            certificate_id=payload.get("certificate_id"),
            recipient_email=payload.get("recipient_email"),
            data=payload,
        )
