"""
Модели SQLAlchemy и репозиторий для работы с базой данных.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    create_engine, func, or_, select, text, update
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.types import TypeDecorator

from config.settings import get_settings
from .exceptions import DatabaseError
from .models import (
    ApprovalStep, ApprovalStepStatus, Certificate, CertificateFilter, CertificateMetadata,
    CertificateStatus, CertificateType, ShareToken, TransactionAction, TransactionRecord,
    from_storage, to_storage
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Базовый класс для моделей
Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """DateTime, который всегда возвращает aware-значение в UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class CertificateRecord(Base):
    """Модель сертификата."""

    __tablename__ = "certificates"

    # Идентификаторы
    id = Column(String(36), primary_key=True)
    verification_id = Column(String(32), unique=True, nullable=False)
    verification_code = Column(String(8), unique=True, nullable=False)

    # Участники
    issuer_id = Column(String(128), nullable=False, index=True)
    issuer_name = Column(String(255), nullable=False, default="")
    recipient_id = Column(String(128), nullable=False, default="", index=True)
    recipient_email = Column(String(254), nullable=False, index=True)
    recipient_name = Column(String(255), nullable=False, default="")
    organization_id = Column(String(128), nullable=False, default="", index=True)
    organization_name = Column(String(255), nullable=False, default="")

    # Содержимое
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    type = Column(String(32), nullable=False)
    course_name = Column(String(255), nullable=False, default="")
    course_code = Column(String(64), nullable=False, default="")
    grade = Column(String(32), nullable=False, default="")
    credits = Column(Float, nullable=True)
    achievement = Column(Text, nullable=False, default="")
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    tags = Column(JSONType, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    # Даты
    issued_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    last_accessed_at = Column(UTCDateTime, nullable=True)

    # Целостность
    hash = Column(String(64), nullable=False)
    qr_code = Column(String(512), nullable=False)
    artifact_path = Column(String(1024), nullable=True)

    # Согласование
    status = Column(String(16), nullable=False, index=True)
    requires_approval = Column(Boolean, nullable=False, default=False)
    current_approval_step = Column(String(64), nullable=True)

    # Счетчики и флаги
    share_count = Column(Integer, nullable=False, default=0, server_default=text('0'))
    verification_count = Column(Integer, nullable=False, default=0, server_default=text('0'))
    access_count = Column(Integer, nullable=False, default=0, server_default=text('0'))
    is_verified = Column(Boolean, nullable=False, default=False)
    is_revoked = Column(Boolean, nullable=False, default=False)
    revocation_reason = Column(Text, nullable=True)

    approval_steps = relationship(
        "ApprovalStepRecord",
        order_by="ApprovalStepRecord.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    share_tokens = relationship(
        "ShareTokenRecord",
        order_by="ShareTokenRecord.created_at",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_certificate_issuer_created', 'issuer_id', 'created_at'),
        Index('idx_certificate_organization_status', 'organization_id', 'status'),
    )

    def __repr__(self):
        return f"<CertificateRecord(id={self.id}, status={self.status})>"


class ApprovalStepRecord(Base):
    """Модель шага согласования."""

    __tablename__ = "approval_steps"

    certificate_id = Column(String(36), ForeignKey("certificates.id", ondelete="CASCADE"), primary_key=True)
    step_id = Column(String(64), primary_key=True)
    step_name = Column(String(255), nullable=False, default="")
    step_order = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)
    approver_id = Column(String(128), nullable=False, default="")
    approver_name = Column(String(255), nullable=False, default="")
    approver_email = Column(String(254), nullable=False, default="")
    status = Column(String(16), nullable=False)
    approved_at = Column(UTCDateTime, nullable=True)
    comments = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ApprovalStepRecord(certificate_id={self.certificate_id}, step_id={self.step_id})>"


class ShareTokenRecord(Base):
    """Модель токена доступа. Значение токена является первичным ключом."""

    __tablename__ = "share_tokens"

    token = Column(String(128), primary_key=True)
    certificate_id = Column(String(36), ForeignKey("certificates.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    shared_by = Column(String(128), nullable=False)
    created_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    password = Column(String(255), nullable=True)
    max_access = Column(Integer, nullable=False)
    current_access = Column(Integer, nullable=False, default=0, server_default=text('0'))
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<ShareTokenRecord(certificate_id={self.certificate_id}, active={self.is_active})>"


class TransactionRow(Base):
    """Журнал операций. Записи только добавляются и переживают удаление сертификата."""

    __tablename__ = "certificate_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    certificate_id = Column(String(36), nullable=False)
    action = Column(String(64), nullable=False)
    performed_by = Column(String(128), nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)
    details = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_transactions_certificate_id', 'certificate_id'),
        Index('idx_transactions_timestamp', 'timestamp'),
        Index('idx_transactions_action', 'action'),
    )

    def __repr__(self):
        return f"<TransactionRow(certificate_id={self.certificate_id}, action={self.action})>"


class NotificationRow(Base):
    """Очередь пользовательских уведомлений."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), nullable=False, index=True)
    recipient_email = Column(String(254), nullable=True)
    type = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    certificate_id = Column(String(36), nullable=True)
    data = Column(JSONType, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False)


def _connect_args(database_url: str, timeout: Optional[int]) -> Dict[str, Any]:
    """Параметры драйвера: таймаут ожидания блокировки или выполнения запроса."""
    if database_url.startswith("sqlite"):
        args = {"check_same_thread": False}
        if timeout:
            args["timeout"] = timeout
        return args
    if database_url.startswith("postgresql") and timeout:
        return {"options": f"-c statement_timeout={timeout * 1000}"}
    return {}


class DatabaseManager:
    """Менеджер для работы с базой данных."""

    def __init__(self, database_url: str = None, echo: bool = None, statement_timeout: int = None):
        """
        Инициализация менеджера БД.

        Args:
            database_url: URL подключения к БД
            echo: Логировать SQL запросы
            statement_timeout: Таймаут операций в секундах
        """
        if database_url is None or echo is None or statement_timeout is None:
            settings = get_settings()
            database_url = database_url or settings.database_url
            echo = settings.db_echo if echo is None else echo
            statement_timeout = settings.db_statement_timeout if statement_timeout is None else statement_timeout

        self.database_url = database_url
        self.engine = create_engine(
            database_url,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=echo,
            connect_args=_connect_args(database_url, statement_timeout),
        )

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_tables(self):
        """Создает все таблицы в базе данных."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Таблицы базы данных созданы успешно")

    def get_session(self) -> Session:
        """Возвращает новую сессию для работы с БД."""
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Открывает транзакцию. Все изменения внутри блока фиксируются вместе
        или откатываются вместе.

        Raises:
            DatabaseError: При ошибке драйвера или БД
        """
        session = self.get_session()
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Транзакция откатена: {e}")
            raise DatabaseError(f"Ошибка транзакции: {e}") from e
        finally:
            session.close()

    def health_check(self) -> bool:
        """Проверяет подключение к базе данных."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                return True
        except SQLAlchemyError as e:
            logger.error(f"Ошибка подключения к БД: {e}")
            return False

    def dispose(self):
        self.engine.dispose()


class CertificateRepository:
    """
    Репозиторий сертификатов.

    Методы, принимающие session, работают внутри транзакции вызывающего кода.
    Счетчики меняются только серверными инкрементами (col = col + 1).
    """

    def __init__(self, db_manager: DatabaseManager):
        """
        Инициализация репозитория.

        Args:
            db_manager: Менеджер базы данных
        """
        self.db_manager = db_manager

    def run_transaction(self, fn: Callable[[Session], T]) -> T:
        """
        Выполняет fn(session) в одной транзакции.

        Args:
            fn: Функция, получающая сессию

        Returns:
            Результат fn
        """
        with self.db_manager.transaction() as session:
            return fn(session)

    # --- Чтение ---

    def get(self, certificate_id: str, session: Optional[Session] = None) -> Optional[Certificate]:
        """
        Получает сертификат по ID.

        Args:
            certificate_id: ID сертификата
            session: Сессия текущей транзакции (необязательно)

        Returns:
            Optional[Certificate]: Сертификат или None
        """
        if session is not None:
            record = session.get(CertificateRecord, certificate_id)
            return self.to_model(record) if record else None

        try:
            with self.db_manager.get_session() as own_session:
                record = own_session.get(CertificateRecord, certificate_id)
                return self.to_model(record) if record else None
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка получения сертификата: {e}") from e

    def get_for_update(self, session: Session, certificate_id: str) -> Optional[Certificate]:
        """
        Читает сертификат с блокировкой строки до конца транзакции.

        SQLite блокировку строк не поддерживает, поэтому переходы статусов
        дополнительно записываются через update(..., expected_statuses=...).
        """
        record = session.get(CertificateRecord, certificate_id, with_for_update=True)
        return self.to_model(record) if record else None

    def reload(self, session: Session, certificate_id: str) -> Optional[Certificate]:
        """
        Перечитывает сертификат внутри транзакции.

        Массовые UPDATE не синхронизируют объекты сессии, поэтому
        перед чтением все загруженные объекты помечаются устаревшими.
        """
        session.expire_all()
        record = session.get(CertificateRecord, certificate_id)
        return self.to_model(record) if record else None

    def find_by_verification_code(self, code: str, session: Optional[Session] = None) -> Optional[Certificate]:
        return self._find_one(CertificateRecord.verification_code == code, session)

    def find_by_verification_id(self, verification_id: str,
                                session: Optional[Session] = None) -> Optional[Certificate]:
        return self._find_one(CertificateRecord.verification_id == verification_id, session)

    def _find_one(self, condition, session: Optional[Session]) -> Optional[Certificate]:
        statement = select(CertificateRecord).where(condition).limit(1)
        if session is not None:
            record = session.scalars(statement).first()
            return self.to_model(record) if record else None

        try:
            with self.db_manager.get_session() as own_session:
                record = own_session.scalars(statement).first()
                return self.to_model(record) if record else None
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка поиска сертификата: {e}") from e

    def query(self, certificate_filter: Optional[CertificateFilter] = None, order_by: str = "created_at",
              descending: bool = True, limit: Optional[int] = None) -> List[Certificate]:
        """
        Поиск сертификатов по фильтру.

        Args:
            certificate_filter: Критерии поиска
            order_by: Поле сортировки
            descending: Сортировка по убыванию
            limit: Максимальное число результатов

        Returns:
            List[Certificate]: Найденные сертификаты
        """
        certificate_filter = certificate_filter or CertificateFilter()
        statement = select(CertificateRecord)

        if certificate_filter.issuer_id:
            statement = statement.where(CertificateRecord.issuer_id == certificate_filter.issuer_id)
        if certificate_filter.organization_id:
            statement = statement.where(CertificateRecord.organization_id == certificate_filter.organization_id)
        if certificate_filter.recipient_id and certificate_filter.recipient_email:
            statement = statement.where(or_(
                CertificateRecord.recipient_id == certificate_filter.recipient_id,
                CertificateRecord.recipient_email == certificate_filter.recipient_email,
            ))
        elif certificate_filter.recipient_id:
            statement = statement.where(CertificateRecord.recipient_id == certificate_filter.recipient_id)
        elif certificate_filter.recipient_email:
            statement = statement.where(CertificateRecord.recipient_email == certificate_filter.recipient_email)
        if certificate_filter.statuses:
            statement = statement.where(
                CertificateRecord.status.in_([to_storage(s) for s in certificate_filter.statuses])
            )
        if certificate_filter.types:
            statement = statement.where(
                CertificateRecord.type.in_([to_storage(t) for t in certificate_filter.types])
            )
        if certificate_filter.start_date:
            statement = statement.where(CertificateRecord.created_at >= certificate_filter.start_date)
        if certificate_filter.end_date:
            statement = statement.where(CertificateRecord.created_at <= certificate_filter.end_date)
        if certificate_filter.is_verified is not None:
            statement = statement.where(CertificateRecord.is_verified == certificate_filter.is_verified)
        if certificate_filter.search_term:
            pattern = f"%{certificate_filter.search_term.lower()}%"
            statement = statement.where(or_(
                func.lower(CertificateRecord.title).like(pattern),
                func.lower(CertificateRecord.description).like(pattern),
                func.lower(CertificateRecord.recipient_name).like(pattern),
            ))

        column = getattr(CertificateRecord, order_by, None)
        if column is None:
            raise DatabaseError(f"Неизвестное поле сортировки: {order_by}")
        statement = statement.order_by(column.desc() if descending else column.asc())

        try:
            with self.db_manager.get_session() as session:
                records = session.scalars(statement).all()
                certificates = [self.to_model(record) for record in records]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка поиска сертификатов: {e}") from e

        # Теги хранятся в JSON, поэтому фильтруются после выборки
        if certificate_filter.tags:
            wanted = set(certificate_filter.tags)
            certificates = [cert for cert in certificates if wanted.intersection(cert.tags)]

        limit = limit or certificate_filter.limit
        return certificates[:limit]

    # --- Запись ---

    def put(self, session: Session, certificate: Certificate) -> None:
        """
        Добавляет сертификат вместе с шагами согласования и токенами.

        Args:
            session: Сессия транзакции
            certificate: Сертификат
        """
        record = CertificateRecord(
            id=certificate.id,
            verification_id=certificate.verification_id,
            verification_code=certificate.verification_code,
            issuer_id=certificate.issuer_id,
            issuer_name=certificate.issuer_name,
            recipient_id=certificate.recipient_id,
            recipient_email=certificate.recipient_email,
            recipient_name=certificate.recipient_name,
            organization_id=certificate.organization_id,
            organization_name=certificate.organization_name,
            title=certificate.title,
            description=certificate.description,
            type=to_storage(certificate.type),
            course_name=certificate.course_name,
            course_code=certificate.course_code,
            grade=certificate.grade,
            credits=certificate.credits,
            achievement=certificate.achievement,
            meta=certificate.metadata.to_storage(),
            tags=list(certificate.tags),
            notes=certificate.notes,
            issued_at=certificate.issued_at,
            completed_at=certificate.completed_at,
            expires_at=certificate.expires_at,
            created_at=certificate.created_at,
            updated_at=certificate.updated_at,
            last_accessed_at=certificate.last_accessed_at,
            hash=certificate.hash,
            qr_code=certificate.qr_code,
            artifact_path=certificate.artifact_path,
            status=to_storage(certificate.status),
            requires_approval=certificate.requires_approval,
            current_approval_step=certificate.current_approval_step,
            share_count=certificate.share_count,
            verification_count=certificate.verification_count,
            access_count=certificate.access_count,
            is_verified=certificate.is_verified,
            is_revoked=certificate.is_revoked,
            revocation_reason=certificate.revocation_reason,
        )
        record.approval_steps = [self._step_to_record(certificate.id, step) for step in certificate.approval_steps]
        record.share_tokens = [self._token_to_record(token) for token in certificate.share_tokens]
        session.add(record)
        session.flush()

    def update(self, session: Session, certificate_id: str, values: Dict[str, Any],
               expected_statuses: Optional[Iterable[CertificateStatus]] = None) -> int:
        """
        Частичное обновление полей сертификата.

        Если переданы expected_statuses, строка обновляется только когда
        сертификат не отозван и его текущий статус входит в этот набор.
        Так переход статуса не перезаписывает параллельное изменение.

        Args:
            session: Сессия транзакции
            certificate_id: ID сертификата
            values: Новые значения колонок
            expected_statuses: Допустимые текущие статусы

        Returns:
            int: Число обновленных строк
        """
        values = {key: (to_storage(value) if isinstance(value, (CertificateStatus, CertificateType)) else value)
                  for key, value in values.items()}
        statement = update(CertificateRecord).where(CertificateRecord.id == certificate_id)
        if expected_statuses is not None:
            statement = (
                statement
                .where(CertificateRecord.status.in_([to_storage(status) for status in expected_statuses]))
                .where(CertificateRecord.is_revoked.is_(False))
            )
        result = session.execute(
            statement.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def update_step(self, session: Session, certificate_id: str, step: ApprovalStep) -> bool:
        """
        Сохраняет решение по шагу согласования.

        Returns:
            bool: False если шаг уже рассмотрен другой транзакцией
        """
        result = session.execute(
            update(ApprovalStepRecord)
            .where(ApprovalStepRecord.certificate_id == certificate_id)
            .where(ApprovalStepRecord.step_id == step.id)
            .where(ApprovalStepRecord.status == to_storage(ApprovalStepStatus.PENDING))
            .values(
                status=to_storage(step.status),
                approver_id=step.approver_id,
                approved_at=step.approved_at,
                comments=step.comments,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete(self, session: Session, certificate_id: str) -> bool:
        record = session.get(CertificateRecord, certificate_id)
        if record is None:
            return False
        session.delete(record)
        session.flush()
        return True

    # --- Счетчики ---

    def increment_verification(self, session: Session, certificate_id: str, now: datetime,
                               via_token: bool = False) -> bool:
        """
        Атомарно увеличивает счетчики проверок.

        Args:
            session: Сессия транзакции
            certificate_id: ID сертификата
            now: Время обращения
            via_token: Обращение по токену (увеличивает также access_count)

        Returns:
            bool: False если сертификат не найден
        """
        values = {
            "verification_count": CertificateRecord.verification_count + 1,
            "last_accessed_at": now,
        }
        if via_token:
            values["access_count"] = CertificateRecord.access_count + 1
        return self.update(session, certificate_id, values) == 1

    def increment_share_count(self, session: Session, certificate_id: str, now: datetime) -> bool:
        values = {"share_count": CertificateRecord.share_count + 1, "updated_at": now}
        return self.update(session, certificate_id, values) == 1

    # --- Токены доступа ---

    def add_share_token(self, session: Session, share_token: ShareToken) -> None:
        session.add(self._token_to_record(share_token))
        session.flush()

    def get_share_token(self, token: str, session: Optional[Session] = None) -> Optional[ShareToken]:
        """
        Ищет токен по точному значению (первичный ключ).

        Args:
            token: Значение токена
            session: Сессия транзакции (необязательно)

        Returns:
            Optional[ShareToken]: Токен или None
        """
        if session is not None:
            record = session.get(ShareTokenRecord, token)
            return self._token_to_model(record) if record else None

        try:
            with self.db_manager.get_session() as own_session:
                record = own_session.get(ShareTokenRecord, token)
                return self._token_to_model(record) if record else None
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка получения токена: {e}") from e

    def consume_share_token(self, session: Session, token: str, now: datetime) -> bool:
        """
        Условный инкремент current_access одним UPDATE.

        Строка обновляется только если токен активен, не истек и лимит не исчерпан,
        поэтому параллельные обращения не могут превысить max_access.

        Returns:
            bool: True если обращение засчитано
        """
        result = session.execute(
            update(ShareTokenRecord)
            .where(ShareTokenRecord.token == token)
            .where(ShareTokenRecord.is_active.is_(True))
            .where(ShareTokenRecord.expires_at > now)
            .where(ShareTokenRecord.current_access < ShareTokenRecord.max_access)
            .values(current_access=ShareTokenRecord.current_access + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_share_token_active(self, session: Session, token: str, is_active: bool) -> bool:
        result = session.execute(
            update(ShareTokenRecord)
            .where(ShareTokenRecord.token == token)
            .values(is_active=is_active)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_share_tokens(self, certificate_id: str) -> List[ShareToken]:
        statement = (
            select(ShareTokenRecord)
            .where(ShareTokenRecord.certificate_id == certificate_id)
            .order_by(ShareTokenRecord.created_at)
        )
        try:
            with self.db_manager.get_session() as session:
                return [self._token_to_model(record) for record in session.scalars(statement).all()]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка получения токенов: {e}") from e

    # --- Журнал и уведомления ---

    def add_transaction_record(self, session: Session, record: TransactionRecord) -> None:
        """
        Добавляет запись в журнал операций.

        Args:
            session: Сессия транзакции
            record: Запись журнала
        """
        session.add(TransactionRow(
            certificate_id=record.certificate_id,
            action=to_storage(record.action),
            performed_by=str(record.performed_by),
            timestamp=record.timestamp,
            details=record.details,
        ))

    def get_certificate_history(self, certificate_id: str) -> List[TransactionRecord]:
        """
        Получает журнал операций над сертификатом (сначала новые).

        Args:
            certificate_id: ID сертификата

        Returns:
            List[TransactionRecord]: Записи журнала
        """
        statement = (
            select(TransactionRow)
            .where(TransactionRow.certificate_id == certificate_id)
            .order_by(TransactionRow.timestamp.desc(), TransactionRow.id.desc())
        )
        try:
            with self.db_manager.get_session() as session:
                return [
                    TransactionRecord(
                        id=row.id,
                        certificate_id=row.certificate_id,
                        action=from_storage(TransactionAction, row.action),
                        performed_by=row.performed_by,
                        timestamp=row.timestamp,
                        details=row.details or {},
                    )
                    for row in session.scalars(statement).all()
                ]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка получения журнала: {e}") from e

    def add_notification(self, session: Session, user_id: str, notification_type: str, title: str,
                         message: str, created_at: datetime, certificate_id: Optional[str] = None,
                         recipient_email: Optional[str] = None, data: Optional[dict] = None) -> None:
        """Ставит уведомление в очередь в рамках текущей транзакции."""
        session.add(NotificationRow(
            user_id=user_id,
            recipient_email=recipient_email,
            type=notification_type,
            title=title,
            message=message,
            certificate_id=certificate_id,
            data=data or {},
            created_at=created_at,
        ))

    def get_notifications(self, user_id: str) -> List[dict]:
        statement = (
            select(NotificationRow)
            .where(NotificationRow.user_id == user_id)
            .order_by(NotificationRow.created_at.desc())
        )
        try:
            with self.db_manager.get_session() as session:
                return [
                    {
                        "id": row.id,
                        "user_id": row.user_id,
                        "type": row.type,
                        "title": row.title,
                        "message": row.message,
                        "certificate_id": row.certificate_id,
                        "data": row.data or {},
                        "is_read": row.is_read,
                        "created_at": row.created_at,
                    }
                    for row in session.scalars(statement).all()
                ]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка получения уведомлений: {e}") from e

    # --- Статистика ---

    def get_statistics_rows(self, issuer_id: Optional[str] = None,
                            organization_id: Optional[str] = None) -> List[tuple]:
        """
        Выбирает поля, нужные для статистики.

        Returns:
            List[tuple]: (status, type, created_at, expires_at, share_count)
        """
        statement = select(
            CertificateRecord.status,
            CertificateRecord.type,
            CertificateRecord.created_at,
            CertificateRecord.expires_at,
            CertificateRecord.share_count,
        )
        if issuer_id:
            statement = statement.where(CertificateRecord.issuer_id == issuer_id)
        if organization_id:
            statement = statement.where(CertificateRecord.organization_id == organization_id)

        try:
            with self.db_manager.get_session() as session:
                return [tuple(row) for row in session.execute(statement).all()]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ошибка получения статистики: {e}") from e

    # --- Преобразования ---

    def to_model(self, record: CertificateRecord) -> Certificate:
        """
        Конвертирует объект БД в Pydantic модель.

        Args:
            record: Объект сертификата из БД

        Returns:
            Certificate: Pydantic модель сертификата
        """
        return Certificate(
            id=record.id,
            verification_id=record.verification_id,
            verification_code=record.verification_code,
            issuer_id=record.issuer_id,
            issuer_name=record.issuer_name or "",
            recipient_id=record.recipient_id or "",
            recipient_email=record.recipient_email,
            recipient_name=record.recipient_name or "",
            organization_id=record.organization_id or "",
            organization_name=record.organization_name or "",
            title=record.title,
            description=record.description or "",
            type=from_storage(CertificateType, record.type),
            course_name=record.course_name or "",
            course_code=record.course_code or "",
            grade=record.grade or "",
            credits=record.credits,
            achievement=record.achievement or "",
            metadata=CertificateMetadata.from_storage(record.meta),
            tags=list(record.tags or []),
            notes=record.notes,
            issued_at=record.issued_at,
            completed_at=record.completed_at,
            expires_at=record.expires_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            last_accessed_at=record.last_accessed_at,
            hash=record.hash,
            qr_code=record.qr_code,
            artifact_path=record.artifact_path,
            status=from_storage(CertificateStatus, record.status),
            requires_approval=record.requires_approval,
            approval_steps=[self._step_to_model(step) for step in record.approval_steps],
            current_approval_step=record.current_approval_step,
            share_tokens=[self._token_to_model(token) for token in record.share_tokens],
            share_count=record.share_count or 0,
            verification_count=record.verification_count or 0,
            access_count=record.access_count or 0,
            is_verified=bool(record.is_verified),
            is_revoked=bool(record.is_revoked),
            revocation_reason=record.revocation_reason,
        )

    @staticmethod
    def _step_to_record(certificate_id: str, step: ApprovalStep) -> ApprovalStepRecord:
        return ApprovalStepRecord(
            certificate_id=certificate_id,
            step_id=step.id,
            step_name=step.step_name,
            step_order=step.order,
            position=step.position,
            approver_id=step.approver_id,
            approver_name=step.approver_name,
            approver_email=step.approver_email,
            status=to_storage(step.status),
            approved_at=step.approved_at,
            comments=step.comments,
        )

    @staticmethod
    def _step_to_model(record: ApprovalStepRecord) -> ApprovalStep:
        return ApprovalStep(
            id=record.step_id,
            step_name=record.step_name or "",
            order=record.step_order,
            position=record.position,
            approver_id=record.approver_id or "",
            approver_name=record.approver_name or "",
            approver_email=record.approver_email or "",
            status=from_storage(ApprovalStepStatus, record.status),
            approved_at=record.approved_at,
            comments=record.comments,
        )

    @staticmethod
    def _token_to_record(share_token: ShareToken) -> ShareTokenRecord:
        return ShareTokenRecord(
            token=share_token.token,
            certificate_id=share_token.certificate_id,
            shared_by=share_token.shared_by,
            created_at=share_token.created_at,
            expires_at=share_token.expires_at,
            password=share_token.password,
            max_access=share_token.max_access,
            current_access=share_token.current_access,
            is_active=share_token.is_active,
        )

    @staticmethod
    def _token_to_model(record: ShareTokenRecord) -> ShareToken:
        return ShareToken(
            token=record.token,
            certificate_id=record.certificate_id,
            shared_by=record.shared_by,
            created_at=record.created_at,
            expires_at=record.expires_at,
            password=record.password,
            max_access=record.max_access,
            current_access=record.current_access,
            is_active=bool(record.is_active),
        )


# Глобальный менеджер БД создается при первом обращении
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Возвращает менеджер БД."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def get_certificate_repo() -> CertificateRepository:
    """Возвращает репозиторий сертификатов."""
    return CertificateRepository(get_db_manager())
