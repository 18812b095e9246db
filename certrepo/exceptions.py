"""
Кастомные исключения для системы сертификатов.
"""


class CertificateError(Exception):
    """Базовое исключение для всех ошибок сертификатов."""
    pass


class ValidationError(CertificateError):
    """Ошибка валидации входных данных."""
    pass


class EmailValidationError(ValidationError):
    """Ошибка валидации email получателя."""
    pass


class PeriodValidationError(ValidationError):
    """Ошибка валидации периода действия."""
    pass


class NotFoundError(CertificateError):
    """Запрошенный объект не существует."""
    pass


class CertificateNotFoundError(NotFoundError):
    """Сертификат не найден."""
    pass


class ApprovalStepNotFoundError(NotFoundError):
    """Шаг согласования не найден."""
    pass


class ShareTokenNotFoundError(NotFoundError):
    """Токен доступа не найден."""
    pass


class PermissionDeniedError(CertificateError):
    """У пользователя нет прав CA или администратора."""
    pass


class InvalidStateError(CertificateError):
    """Операция недопустима в текущем статусе сертификата."""
    pass


class ShareTokenError(CertificateError):
    """Базовая ошибка проверки токена доступа."""
    pass


class InactiveTokenError(ShareTokenError):
    """Токен деактивирован."""
    pass


class ExpiredTokenError(ShareTokenError):
    """Срок действия токена истек."""
    pass


class ExhaustedTokenError(ShareTokenError):
    """Исчерпан лимит обращений по токену."""
    pass


class InvalidPasswordError(ShareTokenError):
    """Неверный пароль токена."""
    pass


class StorageError(CertificateError):
    """Ошибка работы с хранилищем."""
    pass


class DatabaseError(StorageError):
    """Ошибка работы с базой данных."""
    pass


class GenerationError(CertificateError):
    """Ошибка генерации идентификаторов."""
    pass


class RenderingError(CertificateError):
    """Ошибка формирования файла сертификата."""
    pass


class DispatchError(CertificateError):
    """Ошибка доставки уведомления."""
    pass
