"""
Pydantic модели для валидации и сериализации данных сертификатов.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, validator

from .clock import ensure_aware
from .exceptions import ValidationError
from .validators import EmailValidator


class CertificateType(str, Enum):
    """Тип сертификата."""
    ACADEMIC = "academic"
    PROFESSIONAL = "professional"
    ACHIEVEMENT = "achievement"
    COMPLETION = "completion"
    PARTICIPATION = "participation"
    RECOGNITION = "recognition"
    CUSTOM = "custom"


class CertificateStatus(str, Enum):
    """Статус сертификата в процессе выпуска."""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ISSUED = "issued"
    REVOKED = "revoked"


class ApprovalStepStatus(str, Enum):
    """Статус шага согласования."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransactionAction(str, Enum):
    """Действие, записываемое в журнал операций."""
    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    ISSUED = "issued"
    REVOKED = "revoked"
    DELETED = "deleted"
    SHARED = "shared"
    SHARE_TOKEN_DEACTIVATED = "share_token_deactivated"
    ARTIFACT_RENDERED = "artifact_rendered"
    ACCESSED = "accessed"
    ACCESSED_VIA_TOKEN = "accessed_via_token"


# Таблицы соответствия между значениями enum и строками в хранилище.
# Любое значение из БД, отсутствующее в таблице, считается ошибкой данных.
CERTIFICATE_TYPE_STORAGE = {
    CertificateType.ACADEMIC: "academic",
    CertificateType.PROFESSIONAL: "professional",
    CertificateType.ACHIEVEMENT: "achievement",
    CertificateType.COMPLETION: "completion",
    CertificateType.PARTICIPATION: "participation",
    CertificateType.RECOGNITION: "recognition",
    CertificateType.CUSTOM: "custom",
}

CERTIFICATE_STATUS_STORAGE = {
    CertificateStatus.DRAFT: "draft",
    CertificateStatus.PENDING: "pending",
    CertificateStatus.APPROVED: "approved",
    CertificateStatus.REJECTED: "rejected",
    CertificateStatus.ISSUED: "issued",
    CertificateStatus.REVOKED: "revoked",
}

APPROVAL_STEP_STATUS_STORAGE = {
    ApprovalStepStatus.PENDING: "pending",
    ApprovalStepStatus.APPROVED: "approved",
    ApprovalStepStatus.REJECTED: "rejected",
}

TRANSACTION_ACTION_STORAGE = {
    TransactionAction.CREATED: "created",
    TransactionAction.APPROVED: "approved",
    TransactionAction.REJECTED: "rejected",
    TransactionAction.ISSUED: "issued",
    TransactionAction.REVOKED: "revoked",
    TransactionAction.DELETED: "deleted",
    TransactionAction.SHARED: "shared",
    TransactionAction.SHARE_TOKEN_DEACTIVATED: "share_token_deactivated",
    TransactionAction.ARTIFACT_RENDERED: "artifact_rendered",
    TransactionAction.ACCESSED: "accessed",
    TransactionAction.ACCESSED_VIA_TOKEN: "accessed_via_token",
}

STATUS_DISPLAY_NAMES = {
    CertificateStatus.DRAFT: "Черновик",
    CertificateStatus.PENDING: "На согласовании",
    CertificateStatus.APPROVED: "Согласован",
    CertificateStatus.REJECTED: "Отклонен",
    CertificateStatus.ISSUED: "Выпущен",
    CertificateStatus.REVOKED: "Отозван",
}


STORAGE_TABLES = {
    CertificateType: CERTIFICATE_TYPE_STORAGE,
    CertificateStatus: CERTIFICATE_STATUS_STORAGE,
    ApprovalStepStatus: APPROVAL_STEP_STATUS_STORAGE,
    TransactionAction: TRANSACTION_ACTION_STORAGE,
}


def to_storage(value: Enum) -> str:
    """
    Преобразует значение enum в строку для хранилища.

    Args:
        value: Значение одного из enum модуля

    Returns:
        str: Строковое представление
    """
    return STORAGE_TABLES[type(value)][value]


def from_storage(enum_cls, raw: str):
    """
    Восстанавливает значение enum из строки хранилища.

    Args:
        enum_cls: Класс enum
        raw: Строка из БД

    Returns:
        Значение enum

    Raises:
        ValidationError: Если строка неизвестна
    """
    for member, stored in STORAGE_TABLES[enum_cls].items():
        if stored == raw:
            return member
    raise ValidationError(f"Неизвестное значение {enum_cls.__name__}: {raw!r}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalStep(BaseModel):
    """Шаг цепочки согласования."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="ID шага")
    step_name: str = Field(default="", description="Название шага")
    order: int = Field(default=0, description="Порядок шага в цепочке")
    approver_id: str = Field(default="", description="ID согласующего")
    approver_name: str = Field(default="", description="Имя согласующего")
    approver_email: str = Field(default="", description="Email согласующего")
    status: ApprovalStepStatus = Field(default=ApprovalStepStatus.PENDING, description="Статус шага")
    approved_at: Optional[datetime] = Field(None, description="Время решения")
    comments: Optional[str] = Field(None, description="Комментарий согласующего")
    position: int = Field(default=0, description="Позиция шага в исходном списке")

    @validator('id')
    def validate_id(cls, v):
        """Валидация ID шага."""
        if not v or not v.strip():
            raise ValidationError("ID шага согласования не может быть пустым")
        return v.strip()

    class Config:
        """Конфигурация модели."""
        from_attributes = True


class ShareToken(BaseModel):
    """Токен для доступа к сертификату без авторизации."""
    token: str = Field(..., description="Секретное значение токена")
    certificate_id: str = Field(..., description="ID сертификата")
    shared_by: str = Field(..., description="Кто поделился сертификатом")
    created_at: datetime = Field(default_factory=utc_now, description="Дата создания")
    expires_at: datetime = Field(..., description="Дата окончания действия")
    password: Optional[str] = Field(None, description="Пароль для доступа")
    max_access: int = Field(default=100, ge=1, description="Максимальное число обращений")
    current_access: int = Field(default=0, ge=0, description="Текущее число обращений")
    is_active: bool = Field(default=True, description="Активен ли токен")

    @property
    def is_exhausted(self) -> bool:
        """Проверяет, исчерпан ли лимит обращений."""
        return self.current_access >= self.max_access

    @property
    def is_password_protected(self) -> bool:
        return self.password is not None

    def is_expired_at(self, now: datetime) -> bool:
        """Проверяет, истек ли токен на момент now."""
        return now >= self.expires_at

    class Config:
        """Конфигурация модели."""
        from_attributes = True


class CertificateMetadata(BaseModel):
    """
    Метаданные сертификата.

    Известные поля типизированы, все остальное попадает в extra.
    """
    created_by: Optional[str] = Field(None, description="Кто создал сертификат")
    verification_url: Optional[str] = Field(None, description="Ссылка для проверки")
    artifact_storage_path: Optional[str] = Field(None, description="Путь к файлу сертификата")
    blockchain_hash: Optional[str] = Field(None, description="Внешний хэш привязки")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Дополнительные поля")

    @classmethod
    def from_storage(cls, data: Optional[dict]) -> "CertificateMetadata":
        """Разбирает словарь из БД, раскладывая неизвестные ключи в extra."""
        data = dict(data or {})
        known = {name: data.pop(name) for name in list(data) if name in cls.model_fields and name != "extra"}
        extra = dict(data.pop("extra", None) or {})
        extra.update(data)
        return cls(**known, extra=extra)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")


class CertificateRequest(BaseModel):
    """Модель запроса на создание сертификата."""
    issuer_id: str = Field(..., description="ID выпускающего (CA)")
    issuer_name: Optional[str] = Field(None, description="Имя выпускающего")
    recipient_id: str = Field(default="", description="ID получателя")
    recipient_email: str = Field(..., description="Email получателя")
    recipient_name: str = Field(default="", description="Имя получателя")
    organization_id: str = Field(default="", description="ID организации")
    organization_name: str = Field(default="", description="Название организации")
    title: str = Field(..., description="Название сертификата")
    description: str = Field(default="", description="Описание")
    type: CertificateType = Field(default=CertificateType.COMPLETION, description="Тип сертификата")
    course_name: str = Field(default="", description="Название курса")
    course_code: str = Field(default="", description="Код курса")
    grade: str = Field(default="", description="Оценка")
    credits: Optional[float] = Field(None, description="Кредиты")
    achievement: str = Field(default="", description="Достижение")
    completed_at: Optional[datetime] = Field(None, description="Дата завершения обучения")
    expires_at: Optional[datetime] = Field(None, description="Дата окончания действия")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Дополнительные метаданные")
    tags: List[str] = Field(default_factory=list, description="Теги")
    notes: Optional[str] = Field(None, description="Заметки")
    requires_approval: bool = Field(default=False, description="Нужна ли цепочка согласования")
    approval_steps: List[ApprovalStep] = Field(default_factory=list, description="Шаги согласования")

    @validator('title')
    def validate_title(cls, v):
        """Название не может быть пустым."""
        title = v.strip()
        if not title:
            raise ValidationError("Название сертификата не может быть пустым")
        return title

    @validator('recipient_email')
    def validate_recipient_email(cls, v):
        """Валидация email получателя."""
        email = v.strip()
        EmailValidator().check(email)
        return email

    @validator('completed_at', 'expires_at')
    def validate_timezone(cls, v):
        """Даты без часового пояса считаются UTC."""
        return ensure_aware(v)

    @validator('approval_steps')
    def validate_approval_steps(cls, v):
        """ID шагов должны быть уникальны."""
        seen = set()
        for step in v:
            if step.id in seen:
                raise ValidationError(f"Повторяющийся ID шага согласования: {step.id}")
            seen.add(step.id)
        return v

    class Config:
        """Конфигурация модели."""
        json_schema_extra = {
            "example": {
                "issuer_id": "ca-001",
                "recipient_id": "student-042",
                "recipient_email": "student@university.edu",
                "recipient_name": "Иван Петров",
                "organization_id": "upm",
                "title": "Основы машинного обучения",
                "type": "completion",
                "requires_approval": True,
                "approval_steps": [
                    {"id": "s1", "step_name": "Кафедра", "order": 0, "approver_id": "head-1"},
                    {"id": "s2", "step_name": "Деканат", "order": 1, "approver_id": "dean-1"}
                ]
            }
        }


class Certificate(BaseModel):
    """Модель сертификата."""
    id: str = Field(..., description="Глобальный ID сертификата")
    verification_id: str = Field(..., description="Короткий ID для проверки")
    verification_code: str = Field(..., min_length=8, max_length=8, description="Код проверки")

    issuer_id: str = Field(..., description="ID выпускающего")
    issuer_name: str = Field(default="", description="Имя выпускающего")
    recipient_id: str = Field(default="", description="ID получателя")
    recipient_email: str = Field(..., description="Email получателя")
    recipient_name: str = Field(default="", description="Имя получателя")
    organization_id: str = Field(default="", description="ID организации")
    organization_name: str = Field(default="", description="Название организации")

    title: str = Field(..., description="Название")
    description: str = Field(default="", description="Описание")
    type: CertificateType = Field(default=CertificateType.COMPLETION, description="Тип")
    course_name: str = Field(default="")
    course_code: str = Field(default="")
    grade: str = Field(default="")
    credits: Optional[float] = None
    achievement: str = Field(default="")
    metadata: CertificateMetadata = Field(default_factory=CertificateMetadata)
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None

    issued_at: datetime = Field(..., description="Дата выпуска")
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_accessed_at: Optional[datetime] = None

    hash: str = Field(..., description="Печать целостности")
    qr_code: str = Field(..., description="Содержимое QR-кода")
    artifact_path: Optional[str] = Field(None, description="Путь к файлу сертификата")

    status: CertificateStatus = Field(default=CertificateStatus.DRAFT)
    requires_approval: bool = False
    approval_steps: List[ApprovalStep] = Field(default_factory=list)
    current_approval_step: Optional[str] = None

    share_tokens: List[ShareToken] = Field(default_factory=list)
    share_count: int = 0
    verification_count: int = 0
    access_count: int = 0
    is_verified: bool = False
    is_revoked: bool = False
    revocation_reason: Optional[str] = None

    @property
    def status_display_name(self) -> str:
        return STATUS_DISPLAY_NAMES[self.status]

    def is_expired_at(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return now > self.expires_at

    @property
    def can_be_shared(self) -> bool:
        """Поделиться можно только согласованным или выпущенным сертификатом."""
        return not self.is_revoked and self.status in (CertificateStatus.ISSUED, CertificateStatus.APPROVED)

    @property
    def has_artifact(self) -> bool:
        return bool(self.artifact_path)

    def find_step(self, step_id: str) -> Optional[ApprovalStep]:
        for step in self.approval_steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict:
        """Конвертирует объект в словарь для JSON сериализации (без секретов токенов)."""
        return {
            "id": self.id,
            "verification_id": self.verification_id,
            "verification_code": self.verification_code,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "issuer_name": self.issuer_name,
            "recipient_name": self.recipient_name,
            "recipient_email": self.recipient_email,
            "organization_name": self.organization_name,
            "course_name": self.course_name,
            "course_code": self.course_code,
            "grade": self.grade,
            "issued_at": self.issued_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "status": self.status.value,
            "status_text": self.status_display_name,
            "hash": self.hash,
            "qr_code": self.qr_code,
            "is_verified": self.is_verified,
            "is_revoked": self.is_revoked,
        }

    class Config:
        """Конфигурация модели."""
        from_attributes = True


class TransactionRecord(BaseModel):
    """Запись журнала операций над сертификатом."""
    id: Optional[int] = None
    certificate_id: str = Field(..., description="ID сертификата")
    action: TransactionAction = Field(..., description="Выполненное действие")
    performed_by: str = Field(..., description="Кто выполнил действие")
    timestamp: datetime = Field(default_factory=utc_now, description="Время выполнения")
    details: Dict[str, Any] = Field(default_factory=dict, description="Дополнительные детали")

    class Config:
        """Конфигурация модели."""
        from_attributes = True


class CertificateFilter(BaseModel):
    """Параметры поиска сертификатов."""
    statuses: Optional[List[CertificateStatus]] = None
    types: Optional[List[CertificateType]] = None
    issuer_id: Optional[str] = None
    recipient_id: Optional[str] = None
    recipient_email: Optional[str] = None
    organization_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search_term: Optional[str] = None
    tags: Optional[List[str]] = None
    is_verified: Optional[bool] = None
    limit: int = Field(default=20, ge=1, le=500)


class CertificateStatistics(BaseModel):
    """Статистика по сертификатам."""
    total_certificates: int = 0
    issued_certificates: int = 0
    pending_certificates: int = 0
    approved_certificates: int = 0
    rejected_certificates: int = 0
    revoked_certificates: int = 0
    expired_certificates: int = 0
    shared_certificates: int = 0
    certificates_by_type: Dict[str, int] = Field(default_factory=dict)
    certificates_by_status: Dict[str, int] = Field(default_factory=dict)
    certificates_by_month: Dict[str, int] = Field(default_factory=dict)


class VerificationResult(BaseModel):
    """Результат проверки подлинности сертификата."""
    certificate_id: str
    exists: bool
    valid: bool
    status: Optional[CertificateStatus] = None
    message: str
