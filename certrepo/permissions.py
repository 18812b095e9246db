"""
Проверка прав пользователей.
"""

import logging

from config.settings import Settings, get_settings
from .exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)


class SettingsPermissionChecker:
    """Роли берутся из списков CA_USERS и ADMIN_USERS в настройках."""

    def __init__(self, settings: Settings = None):
        self.settings = settings or get_settings()

    def is_ca(self, user_id: str) -> bool:
        return self.settings.is_ca(user_id)

    def is_admin(self, user_id: str) -> bool:
        return self.settings.is_admin(user_id)

    def can_issue(self, user_id: str) -> bool:
        """Выпускать и удалять сертификаты могут CA и администраторы."""
        return self.is_ca(user_id) or self.is_admin(user_id)

    def require_issuer(self, user_id: str, action: str) -> None:
        """
        Проверяет права CA или администратора.

        Args:
            user_id: ID пользователя
            action: Описание действия для сообщения об ошибке

        Raises:
            PermissionDeniedError: Если прав недостаточно
        """
        if not self.can_issue(user_id):
            logger.warning(f"Пользователь {user_id} не имеет прав на {action}")
            raise PermissionDeniedError(f"Недостаточно прав на {action}: требуется роль CA или администратора")
