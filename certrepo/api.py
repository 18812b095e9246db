"""
API для работы с сертификатами
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .exceptions import (
    CertificateError, ExhaustedTokenError, ExpiredTokenError, InvalidStateError, NotFoundError,
    PermissionDeniedError, ShareTokenError, StorageError, ValidationError
)
from .models import (
    ApprovalStepStatus, Certificate, CertificateFilter, CertificateRequest, CertificateStatistics,
    CertificateStatus, CertificateType, ShareToken
)
from .service import CertificateService


# Модели для API
class ActorRequest(BaseModel):
    """Кто выполняет действие"""
    actor_id: str


class ApprovalRequest(BaseModel):
    """Решение по шагу согласования"""
    approver_id: str
    step_id: str
    comments: Optional[str] = None


class RevokeRequest(BaseModel):
    revoked_by: str
    reason: str = ""


class ShareRequest(BaseModel):
    """Запрос на создание токена доступа"""
    shared_by: str
    validity_days: Optional[int] = Field(None, ge=1, description="Срок действия в днях")
    password: Optional[str] = None
    max_access: Optional[int] = Field(None, ge=1, description="Лимит обращений")


class TokenAccessRequest(BaseModel):
    password: Optional[str] = None


class QRVerifyRequest(BaseModel):
    payload: str


class ApprovalStepResponse(BaseModel):
    id: str
    step_name: str
    order: int
    approver_id: str
    status: ApprovalStepStatus
    approved_at: Optional[datetime] = None
    comments: Optional[str] = None


class CertificateResponse(BaseModel):
    """Модель ответа с сертификатом (без секретов токенов)"""
    id: str
    verification_id: str
    verification_code: str
    title: str
    description: str
    type: CertificateType
    issuer_id: str
    issuer_name: str
    recipient_id: str
    recipient_email: str
    recipient_name: str
    organization_id: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    created_at: datetime
    status: CertificateStatus
    status_text: str
    requires_approval: bool
    current_approval_step: Optional[str] = None
    approval_steps: List[ApprovalStepResponse] = []
    hash: str
    qr_code: str
    share_count: int
    verification_count: int
    access_count: int
    is_verified: bool
    is_revoked: bool
    revocation_reason: Optional[str] = None

    @classmethod
    def from_certificate(cls, certificate: Certificate) -> "CertificateResponse":
        return cls(
            **certificate.model_dump(include=set(cls.model_fields) - {"approval_steps", "status_text"}),
            status_text=certificate.status_display_name,
            approval_steps=[ApprovalStepResponse(**step.model_dump()) for step in certificate.approval_steps],
        )


class ShareTokenResponse(BaseModel):
    """Модель ответа с токеном доступа"""
    token: str
    certificate_id: str
    shared_by: str
    created_at: datetime
    expires_at: datetime
    max_access: int
    current_access: int
    is_active: bool
    password_protected: bool

    @classmethod
    def from_token(cls, share_token: ShareToken) -> "ShareTokenResponse":
        return cls(
            **share_token.model_dump(exclude={"password"}),
            password_protected=share_token.is_password_protected,
        )


class VerifyResponse(BaseModel):
    """Модель ответа проверки сертификата"""
    certificate_id: str
    exists: bool
    valid: bool
    details: Optional[CertificateResponse] = None
    message: str


def error_status(exc: CertificateError) -> int:
    """HTTP статус для исключения предметной области."""
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, PermissionDeniedError):
        return 403
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, InvalidStateError):
        return 409
    if isinstance(exc, (ExpiredTokenError, ExhaustedTokenError)):
        return 410
    if isinstance(exc, ShareTokenError):
        return 403
    return 500


class CertificateAPI:
    """API для работы с сертификатами"""

    def __init__(self, service: CertificateService, api_key: Optional[str] = None):
        self.service = service
        self.api_key = api_key
        self.logger = logging.getLogger(__name__)

        # Создание FastAPI приложения
        self.app = FastAPI(
            title="Certificate Repository API",
            description="API для выпуска, согласования и проверки сертификатов",
            version="1.0.0"
        )
        self.app.add_exception_handler(CertificateError, self._handle_certificate_error)

        self.router = APIRouter(dependencies=[Depends(self._verify_api_key)])
        self._setup_routes()
        self.app.include_router(self.router)

    def _verify_api_key(self, credentials: Optional[HTTPAuthorizationCredentials] = Depends(
            HTTPBearer(auto_error=False))) -> bool:
        """Проверка API ключа"""
        if not self.api_key:
            return True
        if credentials is None or credentials.credentials != self.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")
        return True

    async def _handle_certificate_error(self, request: Request, exc: CertificateError) -> JSONResponse:
        status_code = error_status(exc)
        if isinstance(exc, StorageError) or status_code == 500:
            self.logger.error(f"Ошибка обработки {request.url.path}: {exc}")
            detail = "Внутренняя ошибка сервера"
        else:
            self.logger.warning(f"Запрос {request.url.path} отклонен: {exc}")
            detail = str(exc)
        return JSONResponse(status_code=status_code, content={"detail": detail, "error": type(exc).__name__})

    def _verify_response(self, certificate: Certificate) -> VerifyResponse:
        result = self.service.assess(certificate)
        return VerifyResponse(
            certificate_id=certificate.id,
            exists=True,
            valid=result.valid,
            details=CertificateResponse.from_certificate(certificate),
            message=result.message,
        )

    def _setup_routes(self):
        """Настройка маршрутов API"""
        router = self.router

        @router.post("/certificates", response_model=CertificateResponse, status_code=201)
        def create_certificate(request: CertificateRequest):
            """Создание нового сертификата"""
            certificate = self.service.create_certificate(request)
            self.logger.info(f"Создан сертификат {certificate.id} для {certificate.recipient_email}")
            return CertificateResponse.from_certificate(certificate)

        @router.get("/certificates", response_model=List[CertificateResponse])
        def search_certificates(
                issuer_id: Optional[str] = None,
                recipient_id: Optional[str] = None,
                recipient_email: Optional[str] = None,
                organization_id: Optional[str] = None,
                status: Optional[CertificateStatus] = None,
                type: Optional[CertificateType] = None,
                search: Optional[str] = None,
                limit: int = Query(20, ge=1, le=500),
        ):
            """Поиск сертификатов"""
            certificate_filter = CertificateFilter(
                issuer_id=issuer_id,
                recipient_id=recipient_id,
                recipient_email=recipient_email,
                organization_id=organization_id,
                statuses=[status] if status else None,
                types=[type] if type else None,
                search_term=search,
                limit=limit,
            )
            return [CertificateResponse.from_certificate(c) for c in self.service.search_certificates(certificate_filter)]

        @router.get("/certificates/{certificate_id}", response_model=CertificateResponse)
        def get_certificate(certificate_id: str):
            """Получение сертификата без учета проверки"""
            return CertificateResponse.from_certificate(self.service.get_certificate(certificate_id))

        @router.get("/certificates/{certificate_id}/history")
        def get_certificate_history(certificate_id: str) -> List[Dict[str, Any]]:
            """Журнал операций над сертификатом"""
            return [record.model_dump(mode="json") for record in self.service.get_certificate_history(certificate_id)]

        @router.post("/certificates/{certificate_id}/issue", response_model=CertificateResponse)
        def issue_certificate(certificate_id: str, request: ActorRequest):
            """Выпуск сертификата"""
            return CertificateResponse.from_certificate(
                self.service.issue_certificate(certificate_id, request.actor_id)
            )

        @router.post("/certificates/{certificate_id}/approve", response_model=CertificateResponse)
        def approve_certificate(certificate_id: str, request: ApprovalRequest):
            """Согласование шага"""
            return CertificateResponse.from_certificate(self.service.approve_certificate(
                certificate_id, request.approver_id, request.step_id, request.comments
            ))

        @router.post("/certificates/{certificate_id}/reject", response_model=CertificateResponse)
        def reject_certificate(certificate_id: str, request: ApprovalRequest):
            """Отклонение шага"""
            return CertificateResponse.from_certificate(self.service.reject_certificate(
                certificate_id, request.approver_id, request.step_id, request.comments
            ))

        @router.post("/certificates/{certificate_id}/revoke", response_model=CertificateResponse)
        def revoke_certificate(certificate_id: str, request: RevokeRequest):
            """Отзыв сертификата"""
            return CertificateResponse.from_certificate(
                self.service.revoke_certificate(certificate_id, request.revoked_by, request.reason)
            )

        @router.delete("/certificates/{certificate_id}")
        def delete_certificate(certificate_id: str, deleted_by: str):
            """Удаление сертификата"""
            self.service.delete_certificate(certificate_id, deleted_by)
            return {"deleted": True, "certificate_id": certificate_id}

        @router.post("/certificates/{certificate_id}/share", response_model=ShareTokenResponse, status_code=201)
        def create_share_token(certificate_id: str, request: ShareRequest):
            """Создание токена доступа"""
            validity = timedelta(days=request.validity_days) if request.validity_days else None
            share_token = self.service.create_share_token(
                certificate_id, request.shared_by, validity, request.password, request.max_access
            )
            return ShareTokenResponse.from_token(share_token)

        @router.get("/certificates/{certificate_id}/share-tokens", response_model=List[ShareTokenResponse])
        def list_share_tokens(certificate_id: str):
            """Токены доступа к сертификату"""
            return [ShareTokenResponse.from_token(t) for t in self.service.list_share_tokens(certificate_id)]

        @router.post("/share-tokens/{token}/deactivate", response_model=ShareTokenResponse)
        def deactivate_share_token(token: str, request: ActorRequest):
            """Деактивация токена доступа"""
            return ShareTokenResponse.from_token(self.service.deactivate_share_token(token, request.actor_id))

        @router.post("/shared/{token}", response_model=VerifyResponse)
        def access_by_token(token: str, request: TokenAccessRequest):
            """Доступ к сертификату по токену"""
            return self._verify_response(self.service.verify_by_token(token, request.password))

        @router.get("/verify/{certificate_id}", response_model=VerifyResponse)
        def verify_certificate(certificate_id: str):
            """Проверка сертификата по ID"""
            try:
                certificate = self.service.verify_by_id(certificate_id)
            except NotFoundError:
                return VerifyResponse(
                    certificate_id=certificate_id,
                    exists=False,
                    valid=False,
                    message="Сертификат не найден"
                )
            return self._verify_response(certificate)

        @router.get("/verify/code/{code}", response_model=VerifyResponse)
        def verify_by_code(code: str):
            """Проверка сертификата по коду проверки"""
            try:
                certificate = self.service.verify_by_code(code)
            except NotFoundError:
                return VerifyResponse(
                    certificate_id="",
                    exists=False,
                    valid=False,
                    message="Сертификат с таким кодом не найден"
                )
            return self._verify_response(certificate)

        @router.post("/verify/qr", response_model=VerifyResponse)
        def verify_qr(request: QRVerifyRequest):
            """Проверка сертификата по содержимому QR-кода"""
            return self._verify_response(self.service.verify_qr_payload(request.payload))

        @router.get("/statistics", response_model=CertificateStatistics)
        def get_statistics(issuer_id: Optional[str] = None, organization_id: Optional[str] = None):
            """Статистика по сертификатам"""
            return self.service.get_statistics(issuer_id=issuer_id, organization_id=organization_id)

        @self.app.get("/health")
        def health_check():
            """Проверка здоровья API"""
            healthy = self.service.health_check()
            return JSONResponse(
                status_code=200 if healthy else 503,
                content={
                    "status": "healthy" if healthy else "unhealthy",
                    "timestamp": self.service.clock.now().isoformat(),
                    "notifications": self.service.notifications.metrics.as_dict(),
                },
            )
